from sqlalchemy import Column, Integer, String, Boolean, JSON, DateTime, Text
from sqlalchemy.sql import func
from relayhub.database import Base

class DecisionRule(Base):
    __tablename__ = "decision_rules"
    
    id = Column(Integer, primary_key=True, index=True)
    device_id = Column(String, nullable=False, index=True)
    rule_id = Column(String, unique=True, nullable=False)  # operator-chosen id, >= 3 chars
    rule_name = Column(String, nullable=False)
    rule_description = Column(Text)
    rule_json = Column(JSON, nullable=False)  # full rule document as validated
    enabled = Column(Boolean, default=True)
    priority = Column(Integer, default=50)
    created_by = Column(String)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

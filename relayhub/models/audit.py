from sqlalchemy import Column, Integer, String, JSON, DateTime
from sqlalchemy.sql import func
from relayhub.database import Base

class AuditLog(Base):
    __tablename__ = "audit_logs"
    
    id = Column(Integer, primary_key=True, index=True)
    device_id = Column(String, index=True)
    action = Column(String, nullable=False)  # "rule_created", "engine_status_changed", ...
    details = Column(JSON, default=dict)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

from sqlalchemy import Column, Integer, String, Boolean, JSON, DateTime, BigInteger, Text
from sqlalchemy.sql import func
from relayhub.database import Base

class RuleExecution(Base):
    __tablename__ = "rule_executions"
    
    id = Column(Integer, primary_key=True, index=True)
    device_id = Column(String, nullable=False, index=True)
    rule_id = Column(String, nullable=False, index=True)
    rule_name = Column(String, nullable=False)
    action_type = Column(String, nullable=False)  # "relay_pulse", "blocked:cooldown", ...
    action_details = Column(JSON, default=dict)
    success = Column(Boolean, nullable=False)
    error_message = Column(Text)
    execution_time_ms = Column(Integer)
    timestamp = Column(BigInteger, nullable=False)  # epoch ms
    created_at = Column(DateTime(timezone=True), server_default=func.now())

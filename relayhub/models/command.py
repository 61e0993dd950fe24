import uuid

from sqlalchemy import Column, Integer, String, Boolean, DateTime, Text
from sqlalchemy.sql import func
from relayhub.database import Base

class RelayCommand(Base):
    __tablename__ = "relay_commands"
    
    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    device_id = Column(String, nullable=False, index=True)
    relay_number = Column(Integer, nullable=False)
    action = Column(String, nullable=False)  # "on", "off"
    duration_seconds = Column(Integer)
    status = Column(String, nullable=False, default="pending", index=True)  # pending, sent, completed, failed
    created_by = Column(String, default="web_interface")
    rule_execution_id = Column(Integer)
    error_message = Column(Text)
    stale_alerted = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, nullable=False)
    sent_at = Column(DateTime)
    completed_at = Column(DateTime)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

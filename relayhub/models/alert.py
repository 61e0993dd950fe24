from sqlalchemy import Column, Integer, String, Boolean, JSON, DateTime, BigInteger
from sqlalchemy.sql import func
from relayhub.database import Base

class SystemAlert(Base):
    __tablename__ = "system_alerts"
    
    id = Column(Integer, primary_key=True, index=True)
    device_id = Column(String, nullable=False, index=True)
    alert_type = Column(String, nullable=False)  # critical, warning, info
    alert_category = Column(String, nullable=False)  # safety, sensor, relay, system
    message = Column(String, nullable=False)
    details = Column(JSON, default=dict)
    timestamp = Column(BigInteger, nullable=False)
    acknowledged = Column(Boolean, default=False, nullable=False)
    acknowledged_at = Column(DateTime(timezone=True))
    acknowledged_by = Column(String)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

from sqlalchemy import Column, Integer, String, Boolean, JSON, DateTime
from sqlalchemy.sql import func
from relayhub.database import Base

class DeviceStatus(Base):
    __tablename__ = "device_status"
    
    device_id = Column(String, primary_key=True)
    last_seen = Column(DateTime)
    is_online = Column(Boolean, default=False, nullable=False)  # last persisted value, recomputed on read
    relay_states = Column(JSON, default=list)  # always 16 booleans
    wifi_rssi = Column(Integer)
    free_heap = Column(Integer)
    uptime_seconds = Column(Integer)
    firmware_version = Column(String)
    ip_address = Column(String)
    errors = Column(JSON, default=list)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

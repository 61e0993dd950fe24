from pydantic import BaseModel
from datetime import datetime
from typing import Optional, List

class DeviceStatusReport(BaseModel):
    device_id: str
    relay_states: Optional[List[bool]] = None
    wifi_rssi: Optional[int] = None
    free_heap: Optional[int] = None
    uptime_seconds: Optional[int] = None
    firmware_version: Optional[str] = None
    ip_address: Optional[str] = None
    errors: List[str] = []

class DeviceStatusResponse(BaseModel):
    device_id: str
    last_seen: Optional[datetime] = None
    is_online: bool = False
    relay_states: List[bool] = []
    wifi_rssi: Optional[int] = None
    free_heap: Optional[int] = None
    uptime_seconds: Optional[int] = None
    firmware_version: Optional[str] = None
    ip_address: Optional[str] = None
    errors: List[str] = []
    
    class Config:
        from_attributes = True

class OnlineStatus(BaseModel):
    is_online: bool
    last_seen: Optional[datetime] = None
    minutes_since_last_seen: Optional[int] = None

from pydantic import BaseModel
from datetime import datetime
from typing import Optional, Dict, Union

class SensorIngest(BaseModel):
    device_id: str
    readings: Dict[str, Union[bool, float]]
    observed_at: Optional[datetime] = None

class SensorReadingResponse(BaseModel):
    id: int
    device_id: str
    name: str
    value: float
    observed_at: datetime
    
    class Config:
        from_attributes = True

from sqlalchemy import Column, Integer, String, DateTime, Float
from relayhub.database import Base

class SensorReading(Base):
    __tablename__ = "sensor_readings"
    
    id = Column(Integer, primary_key=True, index=True)
    device_id = Column(String, nullable=False, index=True)
    name = Column(String, nullable=False, index=True)  # "ph", "temp_water", "water_level_ok", ...
    value = Column(Float, nullable=False)
    observed_at = Column(DateTime, nullable=False)

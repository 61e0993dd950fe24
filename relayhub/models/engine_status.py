from sqlalchemy import Column, Integer, String, Boolean, JSON, DateTime, BigInteger
from sqlalchemy.sql import func
from relayhub.database import Base

class EngineStatus(Base):
    __tablename__ = "decision_engine_status"
    
    id = Column(Integer, primary_key=True, index=True)
    device_id = Column(String, unique=True, nullable=False)
    engine_enabled = Column(Boolean, default=True, nullable=False)
    dry_run_mode = Column(Boolean, default=False, nullable=False)
    emergency_mode = Column(Boolean, default=False, nullable=False)
    manual_override = Column(Boolean, default=False, nullable=False)
    locked_relays = Column(JSON, default=list)
    total_rules = Column(Integer, default=0)
    total_evaluations = Column(BigInteger, default=0)
    total_actions = Column(BigInteger, default=0)
    total_safety_blocks = Column(BigInteger, default=0)
    last_evaluation = Column(DateTime)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

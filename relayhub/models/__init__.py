from relayhub.database import Base
from .rule import DecisionRule
from .rule_execution import RuleExecution
from .alert import SystemAlert
from .engine_status import EngineStatus
from .command import RelayCommand
from .device_status import DeviceStatus
from .sensor import SensorReading
from .audit import AuditLog

__all__ = [
    "Base",
    "DecisionRule",
    "RuleExecution",
    "SystemAlert",
    "EngineStatus",
    "RelayCommand",
    "DeviceStatus",
    "SensorReading",
    "AuditLog"
]

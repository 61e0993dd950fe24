from .rule import Rule, RuleAction, SafetyCheck, Condition, ValidationReport, RuleRecordResponse
from .command import CommandCreate, CommandStatusUpdate, CommandResponse
from .device_status import DeviceStatusReport, DeviceStatusResponse, OnlineStatus
from .engine import (
    EngineStatusResponse, EngineStatusUpdate, AlertResponse, AlertAcknowledge,
    RuleExecutionResponse, EvaluateRequest, RuleOutcome, EvaluationResult,
)
from .sensor import SensorIngest, SensorReadingResponse

__all__ = [
    "Rule",
    "RuleAction",
    "SafetyCheck",
    "Condition",
    "ValidationReport",
    "RuleRecordResponse",
    "CommandCreate",
    "CommandStatusUpdate",
    "CommandResponse",
    "DeviceStatusReport",
    "DeviceStatusResponse",
    "OnlineStatus",
    "EngineStatusResponse",
    "EngineStatusUpdate",
    "AlertResponse",
    "RuleExecutionResponse",
    "EvaluateRequest",
    "AlertAcknowledge",
    "RuleOutcome",
    "EvaluationResult",
    "SensorIngest",
    "SensorReadingResponse"
]

"""
Rule, condition and action shapes shared by the API, the validator and the evaluator.

Conditions form a tagged tree keyed on ``type``; each variant only carries the
fields it needs.
"""
from pydantic import AliasChoices, BaseModel, Field
from typing import Annotated, Any, Dict, List, Literal, Optional, Union
from datetime import datetime

MAX_RELAYS = 16
MAX_DURATION_MS = 86_400_000  # 24h
MIN_PULSE_MS = 100
MIN_PERIODIC_INTERVAL_MS = 1000
MAX_EXECUTIONS_PER_HOUR = 3600
MIN_TEXT_LENGTH = 3

CONDITION_TYPES = ("sensor_compare", "relay_state", "system_status", "composite")
COMPARE_OPERATORS = ("<", "<=", ">", ">=", "==", "!=", "between", "outside")
RANGE_OPERATORS = ("between", "outside")
LOGIC_OPERATORS = ("AND", "OR")
ACTION_TYPES = (
    "relay_on", "relay_off", "relay_pulse", "relay_pwm",
    "system_alert", "log_event", "backend_update",
)
RELAY_ACTION_TYPES = ("relay_on", "relay_off", "relay_pulse", "relay_pwm")
MESSAGE_ACTION_TYPES = ("system_alert", "log_event")
TRIGGER_TYPES = ("periodic", "on_change", "scheduled")

CompareOperator = Literal["<", "<=", ">", ">=", "==", "!=", "between", "outside"]


class SensorCompareCondition(BaseModel):
    type: Literal["sensor_compare"] = "sensor_compare"
    sensor_name: str
    operator: CompareOperator = Field(validation_alias=AliasChoices("operator", "op"))
    value_min: Optional[float] = None
    value_max: Optional[float] = None
    negate: bool = False


class RelayStateCondition(BaseModel):
    type: Literal["relay_state"] = "relay_state"
    sensor_name: str  # "relay_<n>"
    value_min: Optional[float] = None
    negate: bool = False

    @property
    def relay_index(self) -> Optional[int]:
        suffix = self.sensor_name[len("relay_"):] if self.sensor_name.startswith("relay_") else ""
        if not suffix.isdigit():
            return None
        return int(suffix)


class SystemStatusCondition(BaseModel):
    type: Literal["system_status"] = "system_status"
    sensor_name: str
    value_min: Optional[float] = None
    operator: Optional[CompareOperator] = Field(default=None, validation_alias=AliasChoices("operator", "op"))
    value_max: Optional[float] = None
    negate: bool = False


class CompositeCondition(BaseModel):
    type: Literal["composite"] = "composite"
    logic_operator: Literal["AND", "OR"]
    sub_conditions: List["Condition"] = Field(min_length=1)
    negate: bool = False


Condition = Annotated[
    Union[SensorCompareCondition, RelayStateCondition, SystemStatusCondition, CompositeCondition],
    Field(discriminator="type"),
]

CompositeCondition.model_rebuild()


class RuleAction(BaseModel):
    type: Literal[
        "relay_on", "relay_off", "relay_pulse", "relay_pwm",
        "system_alert", "log_event", "backend_update",
    ]
    target_relay: Optional[int] = None
    duration_ms: Optional[int] = None
    value: Optional[float] = None
    message: Optional[str] = None

    @property
    def is_relay_action(self) -> bool:
        return self.type in RELAY_ACTION_TYPES


class SafetyCheck(BaseModel):
    name: str
    condition: Condition
    error_message: str = ""
    is_critical: bool = False


class Rule(BaseModel):
    id: str
    name: str
    description: Optional[str] = None
    enabled: bool = True
    priority: int = 50
    condition: Condition
    actions: List[RuleAction]
    safety_checks: List[SafetyCheck] = []
    trigger_type: Literal["periodic", "on_change", "scheduled"] = "periodic"
    trigger_interval_ms: Optional[int] = None
    cooldown_ms: int = 0
    max_executions_per_hour: int = 0

    def target_relays(self) -> List[int]:
        return [a.target_relay for a in self.actions if a.is_relay_action and a.target_relay is not None]


class ValidationReport(BaseModel):
    valid: bool
    errors: List[str] = []
    warnings: List[str] = []


class RuleRecordResponse(BaseModel):
    id: int
    device_id: str
    rule_id: str
    rule_name: str
    rule_description: Optional[str] = None
    rule_json: Dict[str, Any]
    enabled: bool
    priority: int
    created_by: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True

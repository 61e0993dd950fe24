from pydantic import BaseModel
from datetime import datetime
from typing import Optional, List, Dict, Any, Union

class EngineStatusResponse(BaseModel):
    device_id: str
    engine_enabled: bool = True
    dry_run_mode: bool = False
    emergency_mode: bool = False
    manual_override: bool = False
    locked_relays: List[int] = []
    total_rules: int = 0
    total_evaluations: int = 0
    total_actions: int = 0
    total_safety_blocks: int = 0
    last_evaluation: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    
    class Config:
        from_attributes = True

class EngineStatusUpdate(BaseModel):
    engine_enabled: Optional[bool] = None
    dry_run_mode: Optional[bool] = None
    emergency_mode: Optional[bool] = None
    manual_override: Optional[bool] = None
    locked_relays: Optional[List[int]] = None

class AlertResponse(BaseModel):
    id: int
    device_id: str
    alert_type: str
    alert_category: str
    message: str
    details: Optional[Dict[str, Any]] = None
    timestamp: int
    acknowledged: bool
    acknowledged_at: Optional[datetime] = None
    acknowledged_by: Optional[str] = None
    created_at: Optional[datetime] = None
    
    class Config:
        from_attributes = True

class AlertAcknowledge(BaseModel):
    acknowledged_by: Optional[str] = "operator"

class RuleExecutionResponse(BaseModel):
    id: int
    device_id: str
    rule_id: str
    rule_name: str
    action_type: str
    action_details: Optional[Dict[str, Any]] = None
    success: bool
    error_message: Optional[str] = None
    execution_time_ms: Optional[int] = None
    timestamp: int
    created_at: Optional[datetime] = None
    
    class Config:
        from_attributes = True

class EvaluateRequest(BaseModel):
    device_id: str
    sensors: Optional[Dict[str, Union[bool, float]]] = None
    relay_states: Optional[List[bool]] = None
    trigger: Optional[str] = None

class RuleOutcome(BaseModel):
    rule_id: str
    rule_name: str
    condition_met: bool
    admitted: bool = False
    reason: Optional[str] = None
    category: Optional[str] = None
    warnings: List[str] = []
    execution_id: Optional[int] = None
    command_ids: List[str] = []
    dry_run: bool = False

class EvaluationResult(BaseModel):
    device_id: str
    skipped: bool = False
    reason: Optional[str] = None
    rules_evaluated: int = 0
    rules_fired: int = 0
    actions_executed: int = 0
    safety_blocks: int = 0
    outcomes: List[RuleOutcome] = []

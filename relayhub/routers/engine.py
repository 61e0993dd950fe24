from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session
from typing import Optional
import logging

from relayhub.database import get_db, settings
from relayhub.models.rule_execution import RuleExecution
from relayhub.routers.events import publish_event
from relayhub.schemas.engine import (
    AlertAcknowledge,
    AlertResponse,
    EngineStatusResponse,
    EngineStatusUpdate,
    EvaluateRequest,
    EvaluationResult,
    RuleExecutionResponse,
)
from relayhub.schemas.rule import TRIGGER_TYPES
from relayhub.services.alerts import acknowledge, unacknowledged
from relayhub.services.command_queue import get_command_queue
from relayhub.services.errors import AlertNotFoundError, InvalidCommandError, StoreError
from relayhub.services.rule_engine import RuleEngine, build_snapshot, get_engine_status, update_engine_status

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/engine", tags=["engine"])

@router.get("/status")
def get_status(device_id: Optional[str] = None, db: Session = Depends(get_db)):
    """Engine flags and counters with open alerts and recent executions"""
    device_id = device_id or settings.default_device_id
    status = get_engine_status(db, device_id)
    alerts = unacknowledged(db, device_id, limit=10)
    executions = db.query(RuleExecution).filter(
        RuleExecution.device_id == device_id
    ).order_by(RuleExecution.timestamp.desc(), RuleExecution.id.desc()).limit(20).all()

    return {
        "success": True,
        "status": EngineStatusResponse.model_validate(status),
        "unacknowledged_alerts": [AlertResponse.model_validate(a) for a in alerts],
        "recent_executions": [RuleExecutionResponse.model_validate(e) for e in executions],
    }

@router.post("/status")
def post_status(changes: EngineStatusUpdate, device_id: Optional[str] = None, db: Session = Depends(get_db)):
    device_id = device_id or settings.default_device_id
    try:
        status = update_engine_status(db, device_id, changes)
    except InvalidCommandError as e:
        raise HTTPException(status_code=400, detail=str(e))

    response = EngineStatusResponse.model_validate(status)
    publish_event({"type": "engine_status", "status": response.model_dump(mode="json")})
    return {"success": True, "message": "Engine status updated", "status": response}

@router.post("/evaluate", response_model=EvaluationResult)
def evaluate(request: EvaluateRequest, db: Session = Depends(get_db)):
    """Run the device's rules now, optionally with caller-supplied readings"""
    if request.trigger is not None and request.trigger not in TRIGGER_TYPES:
        raise HTTPException(status_code=400, detail=f"Unknown trigger '{request.trigger}'")

    try:
        snapshot = build_snapshot(db, request.device_id, request.sensors, request.relay_states)
        result = RuleEngine(db, queue=get_command_queue(db)).evaluate(
            request.device_id, snapshot, trigger=request.trigger
        )
    except StoreError as e:
        logger.error(f"Error evaluating rules for {request.device_id}: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))

    if result.actions_executed or result.safety_blocks:
        publish_event({"type": "evaluation", "result": result.model_dump(mode="json")})
    return result

@router.post("/alerts/{alert_id}/ack", response_model=AlertResponse)
def ack_alert(alert_id: int, request: Optional[AlertAcknowledge] = None, db: Session = Depends(get_db)):
    try:
        alert = acknowledge(db, alert_id, request.acknowledged_by if request else None)
    except AlertNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    publish_event({"type": "alert_acknowledged", "alert_id": alert_id})
    return alert

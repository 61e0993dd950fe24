from fastapi import APIRouter, Body, Depends, HTTPException
from sqlalchemy.orm import Session
from typing import Any, Dict, Optional, Tuple
import logging

from relayhub.database import get_db, settings
from relayhub.models.rule import DecisionRule
from relayhub.schemas.rule import Rule, RuleRecordResponse, ValidationReport
from relayhub.services.audit import record_audit
from relayhub.services.errors import RuleValidationError
from relayhub.services.gate import get_gate
from relayhub.services.rule_validator import describe_rule, load_rule, validate_rule

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/rules", tags=["rules"])

def _get_record(db: Session, rule_id: str, device_id: Optional[str]) -> DecisionRule:
    record = db.query(DecisionRule).filter(
        DecisionRule.rule_id == rule_id,
        DecisionRule.device_id == (device_id or settings.default_device_id)
    ).first()
    if not record:
        raise HTTPException(status_code=404, detail=f"Rule {rule_id} not found")
    return record

def _checked_rule(raw: Any) -> Tuple[Rule, ValidationReport]:
    report = validate_rule(raw)
    if not report.valid:
        raise HTTPException(status_code=400, detail={"errors": report.errors, "warnings": report.warnings})
    try:
        rule = load_rule(raw, report)
    except RuleValidationError as e:
        raise HTTPException(status_code=400, detail={"errors": e.report.errors, "warnings": e.report.warnings})
    return rule, report

@router.get("")
def list_rules(device_id: Optional[str] = None, db: Session = Depends(get_db)):
    """Rules of a device, highest priority first"""
    device_id = device_id or settings.default_device_id
    records = db.query(DecisionRule).filter(
        DecisionRule.device_id == device_id
    ).order_by(DecisionRule.priority.desc(), DecisionRule.id.asc()).all()
    rules = [RuleRecordResponse.model_validate(r) for r in records]
    return {"success": True, "rules": rules, "count": len(rules)}

@router.post("", status_code=201)
def create_rule(
    raw: Dict[str, Any] = Body(...),
    device_id: Optional[str] = None,
    created_by: str = "web_interface",
    db: Session = Depends(get_db)
):
    device_id = device_id or settings.default_device_id
    rule, report = _checked_rule(raw)

    if db.query(DecisionRule).filter(DecisionRule.rule_id == rule.id).first():
        raise HTTPException(status_code=409, detail=f"Rule {rule.id} already exists")

    record = DecisionRule(
        device_id=device_id,
        rule_id=rule.id,
        rule_name=rule.name,
        rule_description=rule.description,
        rule_json=rule.model_dump(),
        enabled=rule.enabled,
        priority=rule.priority,
        created_by=created_by,
    )
    db.add(record)
    record_audit(db, "rule_created", device_id, {"rule_id": rule.id, "created_by": created_by}, commit=False)
    db.commit()
    db.refresh(record)

    logger.info(f"Rule {rule.id} created for {device_id}")
    return {
        "success": True,
        "rule": RuleRecordResponse.model_validate(record),
        "warnings": report.warnings,
    }

@router.post("/validate", response_model=ValidationReport)
def validate(raw: Any = Body(...)):
    """Structural validation without saving"""
    return validate_rule(raw)

@router.get("/{rule_id}")
def get_rule(rule_id: str, device_id: Optional[str] = None, db: Session = Depends(get_db)):
    record = _get_record(db, rule_id, device_id)
    return {"success": True, "rule": RuleRecordResponse.model_validate(record)}

@router.get("/{rule_id}/describe")
def describe(rule_id: str, device_id: Optional[str] = None, db: Session = Depends(get_db)):
    record = _get_record(db, rule_id, device_id)
    rule = Rule.model_validate(record.rule_json)
    return {"success": True, "rule_id": rule_id, "description": describe_rule(rule)}

@router.put("/{rule_id}")
def update_rule(
    rule_id: str,
    raw: Dict[str, Any] = Body(...),
    device_id: Optional[str] = None,
    db: Session = Depends(get_db)
):
    """Replace a rule document; the rule id cannot change"""
    record = _get_record(db, rule_id, device_id)
    raw = dict(raw)
    raw.setdefault("id", rule_id)
    if raw["id"] != rule_id:
        raise HTTPException(status_code=400, detail="Rule id cannot be changed")
    rule, report = _checked_rule(raw)

    record.rule_name = rule.name
    record.rule_description = rule.description
    record.rule_json = rule.model_dump()
    record.enabled = rule.enabled
    record.priority = rule.priority
    record_audit(db, "rule_updated", record.device_id, {"rule_id": rule_id}, commit=False)
    db.commit()
    db.refresh(record)

    logger.info(f"Rule {rule_id} updated")
    return {
        "success": True,
        "rule": RuleRecordResponse.model_validate(record),
        "warnings": report.warnings,
    }

@router.delete("/{rule_id}")
def delete_rule(rule_id: str, device_id: Optional[str] = None, db: Session = Depends(get_db)):
    record = _get_record(db, rule_id, device_id)
    db.delete(record)
    record_audit(db, "rule_deleted", record.device_id, {"rule_id": rule_id}, commit=False)
    db.commit()
    get_gate().forget(rule_id)

    logger.info(f"Rule {rule_id} deleted")
    return {"success": True, "message": f"Rule {rule_id} deleted"}

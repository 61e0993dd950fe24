#!/usr/bin/env python3
"""
Print a device's stored rules with their validation report and description
"""
import sys
import json

from relayhub.database import SessionLocal, settings
from relayhub.models.rule import DecisionRule
from relayhub.schemas.rule import Rule
from relayhub.services.rule_engine import get_engine_status
from relayhub.services.rule_validator import describe_rule, validate_rule

device_id = sys.argv[1] if len(sys.argv) > 1 else settings.default_device_id

db = SessionLocal()
try:
    status = get_engine_status(db, device_id)
    print(f'Device: {device_id}')
    print(f'  Engine enabled: {status.engine_enabled}  dry run: {status.dry_run_mode}')
    print(f'  Emergency: {status.emergency_mode}  manual override: {status.manual_override}')
    print(f'  Locked relays: {status.locked_relays or []}')

    rules = db.query(DecisionRule).filter(
        DecisionRule.device_id == device_id
    ).order_by(DecisionRule.priority.desc()).all()
    print(f'\nRules ({len(rules)}):')
    for record in rules:
        report = validate_rule(record.rule_json)
        print(f'  {record.rule_id}: {record.rule_name} (priority {record.priority}, enabled {record.enabled})')
        print(f'    Valid: {report.valid}')
        for error in report.errors:
            print(f'    ERROR: {error}')
        for warning in report.warnings:
            print(f'    warning: {warning}')
        if report.valid:
            print(f'    {describe_rule(Rule.model_validate(record.rule_json))}')
        else:
            print(f'    Rule: {json.dumps(record.rule_json, indent=4)}')
        print()
finally:
    db.close()

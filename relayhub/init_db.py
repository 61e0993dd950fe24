"""
Database initialization script
Creates the schema, the default device's engine status and the demo rules
"""
from relayhub.database import SessionLocal, engine, settings
from relayhub.models import Base
from relayhub.models.engine_status import EngineStatus
from relayhub.models.rule import DecisionRule
from relayhub.services.rule_validator import parse_rule


def default_rules():
    """pH correction and periodic circulation for the default hydroponics controller"""
    # the safety condition describes the hazard unless checks must hold to pass
    low_water = 1 if settings.safety_check_policy == "require_true" else 0

    return [
        {
            "id": "ph_low_control",
            "name": "Low pH correction",
            "description": "Pulses the pH up pump when pH < 5.8",
            "enabled": True,
            "priority": 80,
            "condition": {"type": "sensor_compare", "sensor_name": "ph", "operator": "<", "value_min": 5.8},
            "actions": [
                {"type": "relay_pulse", "target_relay": 2, "duration_ms": 5000, "message": "Correcting low pH"},
            ],
            "safety_checks": [
                {
                    "name": "Water level check",
                    "condition": {"type": "system_status", "sensor_name": "water_level_ok", "value_min": low_water},
                    "error_message": "Water level low",
                    "is_critical": False,
                },
            ],
            "trigger_type": "periodic",
            "trigger_interval_ms": 30000,
            "cooldown_ms": 300000,
            "max_executions_per_hour": 6,
        },
        {
            "id": "circulation_control",
            "name": "Periodic circulation",
            "description": "Runs the circulation pump for 10 minutes every 30 minutes",
            "enabled": True,
            "priority": 60,
            "condition": {"type": "system_status", "sensor_name": "water_level_ok", "value_min": 1},
            "actions": [
                {"type": "relay_pulse", "target_relay": 6, "duration_ms": 600000, "message": "Periodic circulation"},
            ],
            "trigger_type": "periodic",
            "trigger_interval_ms": 1800000,
            "cooldown_ms": 0,
        },
    ]


def init_database():
    """Initialize database with the default device's engine status and rules"""

    Base.metadata.create_all(bind=engine)

    db = SessionLocal()
    try:
        device_id = settings.default_device_id
        if db.query(EngineStatus).filter(EngineStatus.device_id == device_id).count() > 0:
            print("Database already initialized")
            return

        db.add(EngineStatus(device_id=device_id, locked_relays=[]))

        created = []
        if settings.seed_default_rules:
            for raw in default_rules():
                rule = parse_rule(raw)
                if db.query(DecisionRule).filter(DecisionRule.rule_id == rule.id).first():
                    continue
                db.add(DecisionRule(
                    device_id=device_id,
                    rule_id=rule.id,
                    rule_name=rule.name,
                    rule_description=rule.description,
                    rule_json=rule.model_dump(),
                    enabled=rule.enabled,
                    priority=rule.priority,
                    created_by="system",
                ))
                created.append(rule.id)

        db.commit()
        print("Database initialized successfully!")
        print(f"Engine status created for {device_id}")
        if created:
            print(f"Created rules: {', '.join(created)}")

    except Exception as e:
        db.rollback()
        print(f"Error initializing database: {e}")
        raise
    finally:
        db.close()

if __name__ == "__main__":
    init_database()

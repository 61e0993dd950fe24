"""
Rule engine from evaluation to device-confirmed outcome
"""
from datetime import timedelta

from relayhub.database import get_utc_datetime, settings
from relayhub.models.alert import SystemAlert
from relayhub.models.engine_status import EngineStatus
from relayhub.models.rule import DecisionRule
from relayhub.models.rule_execution import RuleExecution
from relayhub.services.command_queue import DatabaseCommandQueue
from relayhub.services.condition_evaluator import SensorSnapshot
from relayhub.services.errors import StoreError
from relayhub.services.gate import get_gate, reset_gate
from relayhub.services.rule_engine import RuleEngine, handle_command_report, report_stale_commands
from relayhub.services.rule_validator import parse_rule

DEVICE = "ESP32_TEST_001"


def ph_rule(**overrides):
    rule = {
        "id": "ph_low_control",
        "name": "Low pH correction",
        "priority": 80,
        "condition": {"type": "sensor_compare", "sensor_name": "ph", "operator": "<", "value_min": 5.8},
        "actions": [{"type": "relay_pulse", "target_relay": 2, "duration_ms": 5000}],
        "trigger_type": "periodic",
        "trigger_interval_ms": 30000,
        "cooldown_ms": 300000,
        "max_executions_per_hour": 6,
    }
    rule.update(overrides)
    return rule


def store_rule(db, raw, device_id=DEVICE):
    rule = parse_rule(raw)
    db.add(DecisionRule(
        device_id=device_id,
        rule_id=rule.id,
        rule_name=rule.name,
        rule_json=rule.model_dump(),
        enabled=rule.enabled,
        priority=rule.priority,
    ))
    db.commit()
    return rule


def test_low_ph_pulses_pump_then_cooldown_blocks(client, db):
    assert client.post("/api/v1/rules", params={"device_id": DEVICE}, json=ph_rule()).status_code == 201

    result = client.post("/api/v1/engine/evaluate", json={"device_id": DEVICE, "sensors": {"ph": 5.5}}).json()
    assert result["rules_fired"] == 1
    outcome = result["outcomes"][0]
    assert outcome["admitted"] is True
    assert len(outcome["command_ids"]) == 1

    commands = client.get("/api/v1/commands", params={"device_id": DEVICE}).json()["commands"]
    assert len(commands) == 1
    assert commands[0]["relay_number"] == 2
    assert commands[0]["action"] == "on"
    assert commands[0]["duration_seconds"] == 5
    assert commands[0]["rule_execution_id"] == outcome["execution_id"]

    later = get_utc_datetime() + timedelta(seconds=10)
    again = RuleEngine(db).evaluate(DEVICE, SensorSnapshot(values={"ph": 5.5}), now=later)
    assert again.outcomes[0].admitted is False
    assert again.outcomes[0].category == "cooldown"
    assert client.get("/api/v1/commands", params={"device_id": DEVICE}).json()["commands"] == []

    client.put("/api/v1/commands", json={"command_id": commands[0]["id"], "status": "completed"})

    executions = db.query(RuleExecution).order_by(RuleExecution.id).all()
    assert [(e.action_type, e.success) for e in executions] == [("relay_pulse", True), ("blocked:cooldown", False)]

    status = client.get("/api/v1/engine/status", params={"device_id": DEVICE}).json()
    assert status["status"]["total_evaluations"] == 2
    assert status["status"]["total_actions"] == 1
    assert len(status["recent_executions"]) == 2


def test_rules_do_not_fire_on_missing_data(db):
    store_rule(db, ph_rule())
    result = RuleEngine(db).evaluate(DEVICE, SensorSnapshot(values={"tds": 700}))
    assert result.rules_fired == 0
    assert result.outcomes[0].reason == "Missing or stale data"
    assert db.query(RuleExecution).count() == 0


def test_priority_order_and_disabled_rules(db):
    store_rule(db, ph_rule(id="low_priority", priority=10, cooldown_ms=0))
    store_rule(db, ph_rule(id="high_priority", priority=90, cooldown_ms=0))
    store_rule(db, ph_rule(id="disabled_rule", enabled=False))
    result = RuleEngine(db).evaluate(DEVICE, SensorSnapshot(values={"ph": 5.0}))
    assert [o.rule_id for o in result.outcomes] == ["high_priority", "low_priority"]


def test_device_failure_marks_execution_and_alerts(client, db):
    store_rule(db, ph_rule())
    RuleEngine(db).evaluate(DEVICE, SensorSnapshot(values={"ph": 5.5}))
    command = client.get("/api/v1/commands", params={"device_id": DEVICE}).json()["commands"][0]

    client.put("/api/v1/commands", json={"command_id": command["id"], "status": "failed", "error_message": "Relay stuck"})

    db.expire_all()
    execution = db.query(RuleExecution).one()
    assert execution.success is False
    assert "Relay stuck" in execution.error_message
    alert = db.query(SystemAlert).one()
    assert (alert.alert_type, alert.alert_category) == ("warning", "relay")


def test_critical_safety_block_engages_emergency(db):
    store_rule(db, ph_rule(safety_checks=[{
        "name": "Water level",
        "condition": {"type": "system_status", "sensor_name": "water_level_ok", "value_min": 0},
        "error_message": "Water level low",
        "is_critical": True,
    }]))
    store_rule(db, ph_rule(
        id="nutrient_dose", priority=10, cooldown_ms=0,
        actions=[{"type": "relay_on", "target_relay": 1}],
    ))

    result = RuleEngine(db).evaluate(DEVICE, SensorSnapshot(values={"ph": 5.5, "water_level_ok": False}))
    assert result.safety_blocks == 1
    by_rule = {o.rule_id: o for o in result.outcomes}
    assert by_rule["ph_low_control"].category == "safety"
    assert by_rule["nutrient_dose"].category == "emergency"

    alert = db.query(SystemAlert).one()
    assert (alert.alert_type, alert.alert_category) == ("critical", "safety")
    status = db.query(EngineStatus).filter(EngineStatus.device_id == DEVICE).one()
    assert status.emergency_mode is True
    assert status.total_safety_blocks == 1


def test_critical_block_without_escalation(db, monkeypatch):
    monkeypatch.setattr(settings, "critical_alert_engages_emergency", False)
    store_rule(db, ph_rule(safety_checks=[{
        "name": "Water level",
        "condition": {"type": "system_status", "sensor_name": "water_level_ok", "value_min": 0},
        "error_message": "Water level low",
        "is_critical": True,
    }]))
    RuleEngine(db).evaluate(DEVICE, SensorSnapshot(values={"ph": 5.5}))
    status = db.query(EngineStatus).filter(EngineStatus.device_id == DEVICE).one()
    assert status.emergency_mode is False


def test_dry_run_enqueues_nothing(client, db):
    store_rule(db, ph_rule(actions=[
        {"type": "relay_pulse", "target_relay": 2, "duration_ms": 1500},
        {"type": "system_alert", "message": "pH correction started"},
    ]))
    client.post("/api/v1/engine/status", params={"device_id": DEVICE}, json={"dry_run_mode": True})

    result = RuleEngine(db).evaluate(DEVICE, SensorSnapshot(values={"ph": 5.5}))
    assert result.outcomes[0].admitted
    assert result.outcomes[0].dry_run
    assert result.outcomes[0].command_ids == []
    assert DatabaseCommandQueue(db).list(DEVICE) == []
    assert db.query(SystemAlert).count() == 0
    assert db.query(RuleExecution).one().action_details["dry_run"] is True


def test_actions_map_to_commands_and_alerts(db):
    store_rule(db, ph_rule(actions=[
        {"type": "relay_pulse", "target_relay": 2, "duration_ms": 1500},
        {"type": "relay_pwm", "target_relay": 4, "value": 0},
        {"type": "relay_pwm", "target_relay": 5, "value": 40},
        {"type": "system_alert", "message": "pH correction started"},
        {"type": "log_event", "message": "pH low"},
    ]))
    RuleEngine(db).evaluate(DEVICE, SensorSnapshot(values={"ph": 5.5}))

    commands = DatabaseCommandQueue(db).list(DEVICE)
    assert [(c.relay_number, c.action, c.duration_seconds) for c in commands] == [
        (2, "on", 2), (4, "off", None), (5, "on", None),
    ]
    alert = db.query(SystemAlert).one()
    assert (alert.alert_type, alert.alert_category, alert.message) == ("info", "system", "pH correction started")


def test_engine_disabled_skips_evaluation(client, db):
    store_rule(db, ph_rule())
    client.post("/api/v1/engine/status", params={"device_id": DEVICE}, json={"engine_enabled": False})
    result = RuleEngine(db).evaluate(DEVICE, SensorSnapshot(values={"ph": 5.5}))
    assert result.skipped
    assert result.rules_evaluated == 0


class FailingQueue(DatabaseCommandQueue):
    def enqueue(self, *args, **kwargs):
        raise StoreError("store unavailable")


def test_failed_enqueue_releases_reservation(db):
    rule = store_rule(db, ph_rule())
    result = RuleEngine(db, queue=FailingQueue(db)).evaluate(DEVICE, SensorSnapshot(values={"ph": 5.5}))
    assert result.outcomes[0].admitted is False
    assert result.outcomes[0].category == "dispatch"

    execution = db.query(RuleExecution).one()
    assert execution.success is False
    assert execution.error_message == "store unavailable"
    assert get_gate().last_fire(rule.id) is None

    retry = RuleEngine(db).evaluate(DEVICE, SensorSnapshot(values={"ph": 5.5}))
    assert retry.outcomes[0].admitted is True


def test_periodic_trigger_respects_interval(db):
    store_rule(db, ph_rule(cooldown_ms=0))
    store_rule(db, ph_rule(id="on_change_rule", trigger_type="on_change", trigger_interval_ms=None, cooldown_ms=0))
    t0 = get_utc_datetime()
    snapshot = SensorSnapshot(values={"ph": 6.5})
    engine = RuleEngine(db)

    first = engine.evaluate(DEVICE, snapshot, trigger="periodic", now=t0)
    assert [o.rule_id for o in first.outcomes] == ["ph_low_control"]
    assert engine.evaluate(DEVICE, snapshot, trigger="periodic", now=t0 + timedelta(seconds=10)).rules_evaluated == 0
    assert engine.evaluate(DEVICE, snapshot, trigger="periodic", now=t0 + timedelta(seconds=31)).rules_evaluated == 1


def test_cooldown_survives_restart(db):
    store_rule(db, ph_rule())
    RuleEngine(db).evaluate(DEVICE, SensorSnapshot(values={"ph": 5.5}))

    # fresh process: gate history comes back from recorded executions
    reset_gate()
    again = RuleEngine(db).evaluate(DEVICE, SensorSnapshot(values={"ph": 5.5}),
                                    now=get_utc_datetime() + timedelta(seconds=10))
    assert again.outcomes[0].category == "cooldown"


def test_stale_commands_raise_one_alert(db):
    queue = DatabaseCommandQueue(db)
    now = get_utc_datetime()
    queue.enqueue(DEVICE, 1, "on", now=now - timedelta(seconds=settings.command_stale_seconds + 60))

    assert report_stale_commands(db, queue, now) == 1
    assert report_stale_commands(db, queue, now) == 0
    alert = db.query(SystemAlert).one()
    assert (alert.alert_type, alert.alert_category) == ("warning", "relay")
    assert queue.list(DEVICE)[0].status == "pending"


def test_completed_report_raises_nothing(db):
    queue = DatabaseCommandQueue(db)
    command = queue.enqueue(DEVICE, 1, "on")
    handle_command_report(db, queue.report(command.id, "completed"))
    assert db.query(SystemAlert).count() == 0


class SecondEnqueueFails(DatabaseCommandQueue):
    def __init__(self, db):
        super().__init__(db)
        self.calls = 0

    def enqueue(self, *args, **kwargs):
        self.calls += 1
        if self.calls == 2:
            raise StoreError("store unavailable")
        return super().enqueue(*args, **kwargs)


def test_partial_dispatch_keeps_cooldown(db):
    rule = store_rule(db, ph_rule(actions=[
        {"type": "relay_on", "target_relay": 1},
        {"type": "relay_on", "target_relay": 2},
    ]))
    t0 = get_utc_datetime()

    first = RuleEngine(db, queue=SecondEnqueueFails(db)).evaluate(
        DEVICE, SensorSnapshot(values={"ph": 5.5}), now=t0)
    outcome = first.outcomes[0]
    assert outcome.admitted is True
    assert outcome.category == "dispatch"
    assert len(outcome.command_ids) == 1
    assert first.actions_executed == 1
    assert get_gate().last_fire(rule.id) is not None

    execution = db.query(RuleExecution).one()
    assert execution.success is False
    assert execution.action_details["command_ids"] == outcome.command_ids
    assert execution.action_details["failed_action"] == 2

    again = RuleEngine(db, queue=SecondEnqueueFails(db)).evaluate(
        DEVICE, SensorSnapshot(values={"ph": 5.5}), now=t0 + timedelta(seconds=30))
    assert again.outcomes[0].category == "cooldown"

    relay_1 = [c for c in DatabaseCommandQueue(db).list(DEVICE) if c.relay_number == 1]
    assert len(relay_1) == 1

    # fresh process: the partly dispatched fire still holds the cooldown
    reset_gate()
    restarted = RuleEngine(db).evaluate(DEVICE, SensorSnapshot(values={"ph": 5.5}),
                                        now=t0 + timedelta(seconds=60))
    assert restarted.outcomes[0].category == "cooldown"

"""
Rate and safety gate
"""
import threading
from datetime import timedelta

from relayhub.database import get_utc_datetime
from relayhub.services.condition_evaluator import SensorSnapshot
from relayhub.services.gate import EngineFlags, Gate
from relayhub.services.rule_validator import parse_rule


def make_rule(**overrides):
    raw = {
        "id": "ph_low_control",
        "name": "Low pH correction",
        "condition": {"type": "sensor_compare", "sensor_name": "ph", "operator": "<", "value_min": 5.8},
        "actions": [{"type": "relay_pulse", "target_relay": 2, "duration_ms": 5000}],
        "trigger_type": "periodic",
        "trigger_interval_ms": 30000,
        "cooldown_ms": 300000,
        "max_executions_per_hour": 0,
    }
    raw.update(overrides)
    return parse_rule(raw)


def water_check(value_min, critical=True):
    return {
        "name": "Water level",
        "condition": {"type": "system_status", "sensor_name": "water_level_ok", "value_min": value_min},
        "error_message": "Water level low",
        "is_critical": critical,
    }


SNAPSHOT = SensorSnapshot(values={"ph": 5.5, "water_level_ok": True})


def test_cooldown():
    gate = Gate()
    rule = make_rule()
    t0 = get_utc_datetime()

    assert gate.admit(rule, SNAPSHOT, now=t0).admitted
    second = gate.admit(rule, SNAPSHOT, now=t0 + timedelta(seconds=10))
    assert not second.admitted
    assert second.category == "cooldown"
    assert gate.admit(rule, SNAPSHOT, now=t0 + timedelta(milliseconds=299999)).category == "cooldown"
    assert gate.admit(rule, SNAPSHOT, now=t0 + timedelta(milliseconds=300000)).admitted


def test_hourly_cap_is_a_rolling_window():
    gate = Gate()
    rule = make_rule(cooldown_ms=0, max_executions_per_hour=2)
    t0 = get_utc_datetime()

    assert gate.admit(rule, SNAPSHOT, now=t0).admitted
    assert gate.admit(rule, SNAPSHOT, now=t0 + timedelta(seconds=1)).admitted
    third = gate.admit(rule, SNAPSHOT, now=t0 + timedelta(seconds=2))
    assert not third.admitted
    assert third.category == "rate_limit"
    assert gate.admit(rule, SNAPSHOT, now=t0 + timedelta(seconds=3601)).admitted


def test_emergency_mode_allows_only_safe_actions():
    gate = Gate()
    flags = EngineFlags(emergency_mode=True)
    pump = make_rule()
    shutdown = make_rule(id="pump_off", actions=[{"type": "relay_off", "target_relay": 2}])

    decision = gate.admit(pump, SNAPSHOT, flags)
    assert not decision.admitted
    assert decision.category == "emergency"
    assert gate.admit(shutdown, SNAPSHOT, flags).admitted


def test_locked_relay_rejects_rule():
    decision = Gate().admit(make_rule(), SNAPSHOT, EngineFlags(locked_relays=[2, 7]))
    assert not decision.admitted
    assert decision.category == "lock"
    assert "2" in decision.reason


def test_manual_override_suspends_automatic_triggers_only():
    gate = Gate()
    flags = EngineFlags(manual_override=True)
    assert gate.admit(make_rule(), SNAPSHOT, flags).category == "override"
    scheduled = make_rule(id="scheduled_flush", trigger_type="scheduled", trigger_interval_ms=None)
    assert gate.admit(scheduled, SNAPSHOT, flags).admitted


def test_critical_safety_check_blocks_when_hazard_holds():
    gate = Gate(safety_policy="block_when_true")
    rule = make_rule(safety_checks=[water_check(0)])

    blocked = gate.admit(rule, SensorSnapshot(values={"ph": 5.5, "water_level_ok": False}))
    assert not blocked.admitted
    assert blocked.category == "safety"
    assert blocked.critical
    assert blocked.reason == "Water level low"

    assert gate.admit(rule, SensorSnapshot(values={"ph": 5.5, "water_level_ok": True})).admitted


def test_require_true_policy():
    gate = Gate(safety_policy="require_true")
    rule = make_rule(safety_checks=[water_check(1)])
    assert not gate.admit(rule, SensorSnapshot(values={"water_level_ok": False})).admitted
    assert gate.admit(rule, SensorSnapshot(values={"water_level_ok": True})).admitted


def test_missing_safety_data_fails_closed():
    decision = Gate().admit(make_rule(safety_checks=[water_check(0)]), SensorSnapshot(values={"ph": 5.5}))
    assert not decision.admitted
    assert decision.critical
    assert "data unavailable" in decision.reason


def test_non_critical_safety_failure_only_warns():
    rule = make_rule(safety_checks=[water_check(0, critical=False)])
    decision = Gate().admit(rule, SensorSnapshot(values={"ph": 5.5, "water_level_ok": False}))
    assert decision.admitted
    assert decision.warnings == ["Water level low"]


def test_release_rolls_back_reservation():
    gate = Gate()
    rule = make_rule(max_executions_per_hour=1)
    t0 = get_utc_datetime()

    decision = gate.admit(rule, SNAPSHOT, now=t0)
    assert decision.admitted
    gate.release(rule.id, decision.fired_at)

    assert gate.last_fire(rule.id) is None
    assert gate.admit(rule, SNAPSHOT, now=t0 + timedelta(seconds=1)).admitted


def test_seeded_history_counts_towards_cooldown():
    gate = Gate()
    rule = make_rule()
    now = get_utc_datetime()
    gate.seed(rule.id, [now - timedelta(seconds=10)])
    assert gate.knows(rule.id)
    assert gate.admit(rule, SNAPSHOT, now=now).category == "cooldown"


def test_lock_timeout_fails_closed():
    gate = Gate(lock_timeout=0.05)
    rule = make_rule()
    with gate._locks.hold(rule.id):
        decision = gate.admit(rule, SNAPSHOT)
    assert not decision.admitted
    assert decision.category == "timeout"


def test_concurrent_admissions_reserve_once():
    gate = Gate()
    rule = make_rule()
    now = get_utc_datetime()
    barrier = threading.Barrier(8)
    results = []

    def worker():
        barrier.wait()
        results.append(gate.admit(rule, SNAPSHOT, now=now).admitted)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert results.count(True) == 1

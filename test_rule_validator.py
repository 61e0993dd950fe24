"""
Rule validation and descriptions
"""
import copy

import pytest

from relayhub.schemas.rule import ValidationReport
from relayhub.services.errors import RuleValidationError
from relayhub.services.rule_validator import describe_rule, load_rule, parse_rule, validate_rule


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


def test_valid_rule_has_no_errors():
    report = validate_rule(ph_rule())
    assert report.valid
    assert report.errors == []


@pytest.mark.parametrize("raw", [None, [], "rule", 42])
def test_non_object_is_rejected_without_raising(raw):
    report = validate_rule(raw)
    assert not report.valid
    assert report.errors == ["Rule must be an object"]


def test_rule_without_actions_is_invalid():
    report = validate_rule(ph_rule(actions=[]))
    assert not report.valid
    assert "Rule must have at least one action" in report.errors


def test_short_id_and_name():
    report = validate_rule(ph_rule(id="ab", name="  x  "))
    assert "Rule id must be at least 3 characters" in report.errors
    assert "Rule name must be at least 3 characters" in report.errors


def test_priority_range():
    assert "Priority must be between 0 and 100" in validate_rule(ph_rule(priority=101)).errors
    assert "Priority must be between 0 and 100" in validate_rule(ph_rule(priority=-1)).errors
    assert validate_rule(ph_rule(priority=0)).valid


def test_nested_errors_carry_positions():
    condition = {
        "type": "composite",
        "logic_operator": "AND",
        "sub_conditions": [
            {"type": "sensor_compare", "sensor_name": "ph", "operator": "<", "value_min": 5.8},
            {
                "type": "composite",
                "logic_operator": "OR",
                "sub_conditions": [{"type": "sensor_compare", "sensor_name": "ph"}],
            },
        ],
    }
    report = validate_rule(ph_rule(condition=condition))
    assert not report.valid
    assert "Sub-condition 2: Sub-condition 1: Comparison operator is required" in report.errors
    assert "Sub-condition 2: Sub-condition 1: At least one value (min or max) must be specified" in report.errors


def test_action_errors_carry_positions():
    actions = [
        {"type": "relay_on", "target_relay": 1},
        {"type": "relay_pulse", "target_relay": 2, "duration_ms": 50},
        {"type": "relay_off", "target_relay": 16},
        {"type": "system_alert", "message": "hi"},
    ]
    report = validate_rule(ph_rule(actions=actions))
    assert "Action 2: Pulse duration must be at least 100ms" in report.errors
    assert "Action 3: Relay id must be between 0 and 15" in report.errors
    assert "Action 4: Message must be at least 3 characters" in report.errors
    assert not any(e.startswith("Action 1:") for e in report.errors)


def test_unknown_types_are_reported():
    report = validate_rule(ph_rule(
        condition={"type": "weather", "sensor_name": "ph"},
        actions=[{"type": "relay_toggle", "target_relay": 1}],
    ))
    assert "Unknown condition type 'weather'" in report.errors
    assert "Action 1: Unknown action type 'relay_toggle'" in report.errors


def test_range_operators_need_ordered_bounds():
    missing = validate_rule(ph_rule(condition={
        "type": "sensor_compare", "sensor_name": "ph", "operator": "between", "value_min": 5.5,
    }))
    assert "Operator 'between' requires both value_min and value_max" in missing.errors

    reversed_bounds = validate_rule(ph_rule(condition={
        "type": "sensor_compare", "sensor_name": "ph", "operator": "outside", "value_min": 7, "value_max": 5,
    }))
    assert "value_min must not be greater than value_max" in reversed_bounds.errors


def test_unknown_sensor_is_rejected():
    report = validate_rule(ph_rule(condition={
        "type": "sensor_compare", "sensor_name": "co2", "operator": ">", "value_min": 800,
    }))
    assert "Unknown sensor 'co2'" in report.errors


def test_custom_sensor_catalogue():
    rule = ph_rule(condition={"type": "sensor_compare", "sensor_name": "co2", "operator": ">", "value_min": 800})
    assert validate_rule(rule, known_sensors=["co2"]).valid


def test_relay_state_name_format():
    bad = validate_rule(ph_rule(condition={"type": "relay_state", "sensor_name": "relay_16"}))
    assert "Relay state must name a relay as 'relay_<0-15>'" in bad.errors
    good = validate_rule(ph_rule(condition={"type": "relay_state", "sensor_name": "relay_15", "value_min": 1}))
    assert good.valid


def test_periodic_rule_needs_interval():
    report = validate_rule(ph_rule(trigger_interval_ms=None))
    assert "Periodic interval must be at least 1000ms (1 second)" in report.errors
    assert validate_rule(ph_rule(trigger_type="on_change", trigger_interval_ms=None)).valid


def test_limits_on_cooldown_and_hourly_cap():
    report = validate_rule(ph_rule(cooldown_ms=86_400_001, max_executions_per_hour=3601))
    assert "Cooldown cannot exceed 24 hours" in report.errors
    assert "Maximum executions per hour cannot exceed 3600" in report.errors


def test_safety_check_errors_carry_positions():
    report = validate_rule(ph_rule(safety_checks=[
        {"name": "Water", "condition": {"type": "system_status", "sensor_name": "water_level_ok"}, "error_message": "Low"},
        {"condition": {"type": "system_status"}},
    ]))
    assert "Safety check 2: Name is required" in report.errors
    assert "Safety check 2: Parameter name is required" in report.errors
    assert "Safety check 2: error_message is empty" in report.warnings
    assert not any(e.startswith("Safety check 1:") for e in report.errors)


def test_rule_without_any_rate_limit_warns():
    report = validate_rule(ph_rule(cooldown_ms=0, max_executions_per_hour=0))
    assert report.valid
    assert "Rule has no cooldown or hourly cap and may actuate on every evaluation" in report.warnings


def test_validation_is_pure_and_idempotent():
    raw = ph_rule(actions=[], priority=500)
    snapshot = copy.deepcopy(raw)
    first = validate_rule(raw)
    second = validate_rule(raw)
    assert first == second
    assert raw == snapshot


def test_very_deep_nesting_is_reported():
    condition = {"type": "sensor_compare", "sensor_name": "ph", "operator": "<", "value_min": 5.8}
    for _ in range(40):
        condition = {"type": "composite", "logic_operator": "AND", "sub_conditions": [condition]}
    report = validate_rule(ph_rule(condition=condition))
    assert not report.valid
    assert any("nesting exceeds" in e for e in report.errors)


def test_parse_rule_accepts_op_alias():
    rule = parse_rule(ph_rule(condition={"type": "sensor_compare", "sensor_name": "ph", "op": "<", "value_min": 5.8}))
    assert rule.condition.operator == "<"
    assert rule.target_relays() == [2]


def test_parse_rule_raises_with_report():
    with pytest.raises(RuleValidationError) as exc:
        parse_rule(ph_rule(actions=[]))
    assert "Rule must have at least one action" in exc.value.report.errors


def test_describe_simple_rule():
    rule = parse_rule(ph_rule())
    assert describe_rule(rule) == (
        "When pH less than 5.8, pulses pH Up Pump for 5s. Waits 300 seconds before running again"
    )


def test_describe_nested_composite():
    rule = parse_rule(ph_rule(
        condition={
            "type": "composite",
            "logic_operator": "AND",
            "sub_conditions": [
                {"type": "sensor_compare", "sensor_name": "ph", "operator": "<", "value_min": 5.8},
                {
                    "type": "composite",
                    "logic_operator": "OR",
                    "sub_conditions": [
                        {"type": "sensor_compare", "sensor_name": "temp_water", "operator": ">", "value_min": 25},
                        {"type": "relay_state", "sensor_name": "relay_2", "value_min": 1},
                    ],
                },
            ],
        },
        actions=[
            {"type": "relay_off", "target_relay": 5},
            {"type": "system_alert", "message": "Check the tank"},
        ],
        cooldown_ms=0,
    ))
    assert describe_rule(rule) == (
        "When pH less than 5.8 and (Water temperature greater than 25 or pH Up Pump is on), "
        'turns off Heater and sends alert: "Check the tank"'
    )


def test_describe_relay_state_defaults_to_off():
    rule = parse_rule(ph_rule(condition={"type": "relay_state", "sensor_name": "relay_6"}))
    assert describe_rule(rule).startswith("When Circulation Pump is off,")


@pytest.mark.parametrize("overrides,message", [
    ({"actions": [{"type": "relay_on", "target_relay": 1, "message": 123}]}, "Action 1: message must be text"),
    ({"actions": [{"type": "relay_on", "target_relay": 1, "value": "high"}]}, "Action 1: value must be a number"),
    ({"actions": [{"type": "system_alert", "message": "Tank low", "target_relay": "two"}]},
     "Action 1: target_relay must be an integer"),
    ({"description": 42}, "description must be text"),
    ({"trigger_type": "on_change", "trigger_interval_ms": "soon"}, "trigger_interval_ms must be an integer"),
    ({"cooldown_ms": None}, "cooldown_ms must be an integer"),
    ({"safety_checks": None}, "safety_checks must be a list"),
    ({"safety_checks": [{
        "name": "Water",
        "condition": {"type": "system_status", "sensor_name": "water_level_ok", "value_min": 0},
        "error_message": 7,
    }]}, "Safety check 1: error_message must be text"),
])
def test_mistyped_optional_fields_are_reported(overrides, message):
    report = validate_rule(ph_rule(**overrides))
    assert not report.valid
    assert message in report.errors
    with pytest.raises(RuleValidationError):
        parse_rule(ph_rule(**overrides))


def test_every_accepted_rule_loads():
    raw = ph_rule(
        description="Corrects low pH",
        trigger_type="on_change",
        trigger_interval_ms=None,
        actions=[
            {"type": "relay_pulse", "target_relay": 2, "duration_ms": 1500, "message": "dose"},
            {"type": "log_event", "message": "pH low", "value": 5.5},
        ],
    )
    assert validate_rule(raw).valid
    assert parse_rule(raw).description == "Corrects low pH"


def test_load_rule_reports_model_errors_with_location():
    raw = ph_rule(actions=[{"type": "relay_on", "target_relay": 1, "message": 123}])
    with pytest.raises(RuleValidationError) as exc:
        load_rule(raw, ValidationReport(valid=True, warnings=["checked elsewhere"]))
    assert not exc.value.report.valid
    assert any(e.startswith("actions.0.message:") for e in exc.value.report.errors)
    assert exc.value.report.warnings == ["checked elsewhere"]

"""
Structural validation and plain-language descriptions of automation rules.

``validate_rule`` works on the raw JSON document so that a single pass can
report every defect, including ones the typed model could not even load.
"""
import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple

from pydantic import BaseModel, ValidationError

from relayhub.database import settings
from relayhub.schemas.rule import (
    ACTION_TYPES,
    COMPARE_OPERATORS,
    CONDITION_TYPES,
    LOGIC_OPERATORS,
    MAX_DURATION_MS,
    MAX_EXECUTIONS_PER_HOUR,
    MAX_RELAYS,
    MESSAGE_ACTION_TYPES,
    MIN_PERIODIC_INTERVAL_MS,
    MIN_PULSE_MS,
    MIN_TEXT_LENGTH,
    RANGE_OPERATORS,
    RELAY_ACTION_TYPES,
    TRIGGER_TYPES,
    CompositeCondition,
    RelayStateCondition,
    Rule,
    RuleAction,
    SensorCompareCondition,
    SystemStatusCondition,
    ValidationReport,
)
from relayhub.services.errors import RuleValidationError

logger = logging.getLogger(__name__)

MAX_CONDITION_DEPTH = 16
BOOLEAN_STATUSES = ("water_level_ok", "wifi_connected", "backend_connected")

SENSOR_DISPLAY_NAMES = {
    "ph": "pH",
    "tds": "TDS",
    "ec": "Conductivity",
    "temp_water": "Water temperature",
    "temp_environment": "Air temperature",
    "humidity": "Humidity",
    "water_level_ok": "Water level",
}

RELAY_DISPLAY_NAMES = [
    "Main Pump", "Nutrient Pump", "pH Up Pump", "pH Down Pump",
    "Fan", "Heater", "Circulation Pump", "Oxygenation Pump",
    "Inlet Valve", "Outlet Valve", "Agitator", "Grow Light",
    "Spare 1", "Spare 2", "Spare 3", "Spare 4",
]

OPERATOR_DESCRIPTIONS = {
    "<": "less than",
    "<=": "less than or equal to",
    ">": "greater than",
    ">=": "greater than or equal to",
    "==": "equal to",
    "!=": "different from",
    "between": "between",
    "outside": "outside",
}


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _is_int(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    return isinstance(value, int) or (isinstance(value, float) and value.is_integer())


def _text_ok(value: Any) -> bool:
    return isinstance(value, str) and len(value.strip()) >= MIN_TEXT_LENGTH


def _prefixed(prefix: str, messages: Sequence[str]) -> List[str]:
    return [f"{prefix}: {m}" for m in messages]


def _check_bounds(condition: Dict[str, Any], op: Any, errors: List[str], warnings: List[str]):
    value_min = condition.get("value_min")
    value_max = condition.get("value_max")

    if value_min is not None and not _is_number(value_min):
        errors.append("value_min must be a number")
    if value_max is not None and not _is_number(value_max):
        errors.append("value_max must be a number")

    if value_min is None and value_max is None:
        errors.append("At least one value (min or max) must be specified")
        return

    if op in RANGE_OPERATORS:
        if value_min is None or value_max is None:
            errors.append(f"Operator '{op}' requires both value_min and value_max")
        elif _is_number(value_min) and _is_number(value_max) and value_min > value_max:
            errors.append("value_min must not be greater than value_max")
    elif op in COMPARE_OPERATORS and value_min is not None and value_max is not None:
        warnings.append(f"value_max is ignored by operator '{op}'")


def _check_sensor_name(name: Any, errors: List[str], missing_message: str, known: Sequence[str]) -> bool:
    if not isinstance(name, str) or not name.strip():
        errors.append(missing_message)
        return False
    if name not in known:
        errors.append(f"Unknown sensor '{name}'")
        return False
    return True


def validate_condition(condition: Any, known_sensors: Optional[Sequence[str]] = None,
                       depth: int = 0) -> Tuple[List[str], List[str]]:
    """Validate one condition node and, for composites, every descendant."""
    known = list(known_sensors) if known_sensors is not None else settings.known_sensors
    errors: List[str] = []
    warnings: List[str] = []

    if not isinstance(condition, dict):
        return ["Condition must be an object"], warnings
    if depth > MAX_CONDITION_DEPTH:
        return [f"Condition nesting exceeds {MAX_CONDITION_DEPTH} levels"], warnings

    ctype = condition.get("type")
    if not ctype:
        return ["Condition type is required"], warnings
    if ctype not in CONDITION_TYPES:
        return [f"Unknown condition type '{ctype}'"], warnings

    negate = condition.get("negate")
    if negate is not None and not isinstance(negate, bool):
        errors.append("negate must be a boolean")

    op = condition.get("operator", condition.get("op"))

    if ctype == "sensor_compare":
        _check_sensor_name(condition.get("sensor_name"), errors,
                           "Sensor name is required for sensor comparison", known)
        if not op:
            errors.append("Comparison operator is required")
        elif op not in COMPARE_OPERATORS:
            errors.append(f"Unknown comparison operator '{op}'")
        _check_bounds(condition, op, errors, warnings)

    elif ctype == "relay_state":
        name = condition.get("sensor_name")
        if not isinstance(name, str) or not name.strip():
            errors.append("Parameter name is required")
        else:
            relay = RelayStateCondition.model_construct(sensor_name=name).relay_index
            if relay is None or not 0 <= relay < MAX_RELAYS:
                errors.append(f"Relay state must name a relay as 'relay_<0-{MAX_RELAYS - 1}>'")
        if condition.get("value_min") is not None and not _is_number(condition.get("value_min")):
            errors.append("value_min must be a number")

    elif ctype == "system_status":
        _check_sensor_name(condition.get("sensor_name"), errors, "Parameter name is required", known)
        if op is not None:
            if op not in COMPARE_OPERATORS:
                errors.append(f"Unknown comparison operator '{op}'")
            else:
                _check_bounds(condition, op, errors, warnings)
        elif condition.get("value_min") is not None and not _is_number(condition.get("value_min")):
            errors.append("value_min must be a number")
        if op is None and condition.get("value_max") is not None and not _is_number(condition.get("value_max")):
            errors.append("value_max must be a number")

    elif ctype == "composite":
        if condition.get("logic_operator") not in LOGIC_OPERATORS:
            errors.append("Logic operator must be AND or OR for composite conditions")
        subs = condition.get("sub_conditions")
        if not isinstance(subs, list) or len(subs) == 0:
            errors.append("Composite conditions must have at least one sub-condition")
        else:
            for index, sub in enumerate(subs):
                sub_errors, sub_warnings = validate_condition(sub, known, depth + 1)
                errors.extend(_prefixed(f"Sub-condition {index + 1}", sub_errors))
                warnings.extend(_prefixed(f"Sub-condition {index + 1}", sub_warnings))

    return errors, warnings


def validate_action(action: Any) -> Tuple[List[str], List[str]]:
    errors: List[str] = []
    warnings: List[str] = []

    if not isinstance(action, dict):
        return ["Action must be an object"], warnings

    atype = action.get("type")
    if not atype:
        return ["Action type is required"], warnings
    if atype not in ACTION_TYPES:
        return [f"Unknown action type '{atype}'"], warnings

    duration = action.get("duration_ms")
    if duration is not None:
        if not _is_int(duration):
            errors.append("duration_ms must be an integer")
            duration = None
        elif duration < 0:
            errors.append("duration_ms must not be negative")
        elif duration > MAX_DURATION_MS:
            errors.append("Duration cannot exceed 24 hours")

    if atype in RELAY_ACTION_TYPES:
        relay = action.get("target_relay")
        if not _is_int(relay) or not 0 <= relay < MAX_RELAYS:
            errors.append(f"Relay id must be between 0 and {MAX_RELAYS - 1}")
        if atype == "relay_pulse" and (duration is None or duration < MIN_PULSE_MS):
            errors.append(f"Pulse duration must be at least {MIN_PULSE_MS}ms")
        if atype == "relay_pwm":
            value = action.get("value")
            if not _is_number(value) or not 0 <= value <= 100:
                errors.append("PWM value must be between 0 and 100")

    if atype in MESSAGE_ACTION_TYPES and not _text_ok(action.get("message")):
        errors.append(f"Message must be at least {MIN_TEXT_LENGTH} characters")
    elif action.get("message") is not None and not isinstance(action.get("message"), str):
        errors.append("message must be text")

    if atype not in RELAY_ACTION_TYPES:
        relay = action.get("target_relay")
        if relay is not None and not _is_int(relay):
            errors.append("target_relay must be an integer")
    if atype != "relay_pwm" and action.get("value") is not None and not _is_number(action.get("value")):
        errors.append("value must be a number")

    return errors, warnings


def _validate_safety_check(check: Any, known: Sequence[str]) -> Tuple[List[str], List[str]]:
    if not isinstance(check, dict):
        return ["Safety check must be an object"], []

    errors: List[str] = []
    warnings: List[str] = []
    if not isinstance(check.get("name"), str) or not check["name"].strip():
        errors.append("Name is required")
    if "condition" not in check or check.get("condition") is None:
        errors.append("Condition is required")
    else:
        cond_errors, cond_warnings = validate_condition(check["condition"], known)
        errors.extend(cond_errors)
        warnings.extend(cond_warnings)
    if "error_message" in check and not isinstance(check["error_message"], str):
        errors.append("error_message must be text")
    elif not check.get("error_message"):
        warnings.append("error_message is empty")
    if "is_critical" in check and not isinstance(check["is_critical"], bool):
        errors.append("is_critical must be a boolean")
    return errors, warnings


def _validate_rule(rule: Dict[str, Any], known: Sequence[str]) -> ValidationReport:
    errors: List[str] = []
    warnings: List[str] = []

    if not _text_ok(rule.get("id")):
        errors.append(f"Rule id must be at least {MIN_TEXT_LENGTH} characters")
    if not _text_ok(rule.get("name")):
        errors.append(f"Rule name must be at least {MIN_TEXT_LENGTH} characters")

    if rule.get("description") is not None and not isinstance(rule["description"], str):
        errors.append("description must be text")

    if "enabled" in rule and not isinstance(rule["enabled"], bool):
        errors.append("enabled must be a boolean")

    priority = rule.get("priority", 50)
    if not _is_int(priority) or not 0 <= priority <= 100:
        errors.append("Priority must be between 0 and 100")

    if rule.get("condition") is None:
        errors.append("Condition is required")
    else:
        cond_errors, cond_warnings = validate_condition(rule["condition"], known)
        errors.extend(cond_errors)
        warnings.extend(cond_warnings)

    actions = rule.get("actions")
    if not isinstance(actions, list) or len(actions) == 0:
        errors.append("Rule must have at least one action")
    else:
        for index, action in enumerate(actions):
            action_errors, action_warnings = validate_action(action)
            errors.extend(_prefixed(f"Action {index + 1}", action_errors))
            warnings.extend(_prefixed(f"Action {index + 1}", action_warnings))

    checks = rule.get("safety_checks")
    if "safety_checks" in rule:
        if not isinstance(checks, list):
            errors.append("safety_checks must be a list")
        else:
            for index, check in enumerate(checks):
                check_errors, check_warnings = _validate_safety_check(check, known)
                errors.extend(_prefixed(f"Safety check {index + 1}", check_errors))
                warnings.extend(_prefixed(f"Safety check {index + 1}", check_warnings))

    trigger_type = rule.get("trigger_type", "periodic")
    if trigger_type not in TRIGGER_TYPES:
        errors.append(f"Unknown trigger type '{trigger_type}'")
    if trigger_type == "periodic":
        interval = rule.get("trigger_interval_ms")
        if not _is_int(interval) or interval < MIN_PERIODIC_INTERVAL_MS:
            errors.append(f"Periodic interval must be at least {MIN_PERIODIC_INTERVAL_MS}ms (1 second)")
    elif rule.get("trigger_interval_ms") is not None and not _is_int(rule["trigger_interval_ms"]):
        errors.append("trigger_interval_ms must be an integer")

    cooldown = rule.get("cooldown_ms", 0)
    if not _is_int(cooldown):
        errors.append("cooldown_ms must be an integer")
        cooldown = 0
    elif cooldown < 0:
        errors.append("Cooldown must not be negative")
    elif cooldown > MAX_DURATION_MS:
        errors.append("Cooldown cannot exceed 24 hours")

    max_per_hour = rule.get("max_executions_per_hour", 0)
    if not _is_int(max_per_hour):
        errors.append("max_executions_per_hour must be an integer")
        max_per_hour = 0
    elif max_per_hour < 0:
        errors.append("Maximum executions per hour must not be negative")
    elif max_per_hour > MAX_EXECUTIONS_PER_HOUR:
        errors.append(f"Maximum executions per hour cannot exceed {MAX_EXECUTIONS_PER_HOUR}")

    has_relay_action = isinstance(actions, list) and any(
        isinstance(a, dict) and a.get("type") in RELAY_ACTION_TYPES for a in actions
    )
    if has_relay_action and not cooldown and not max_per_hour:
        warnings.append("Rule has no cooldown or hourly cap and may actuate on every evaluation")

    return ValidationReport(valid=len(errors) == 0, errors=errors, warnings=warnings)


def validate_rule(rule: Any, known_sensors: Optional[Sequence[str]] = None) -> ValidationReport:
    """
    Validate a rule document. Never raises: every defect, at any nesting
    depth, is reported in the returned ValidationReport.
    """
    known = list(known_sensors) if known_sensors is not None else settings.known_sensors
    if isinstance(rule, BaseModel):
        rule = rule.model_dump()
    if not isinstance(rule, dict):
        return ValidationReport(valid=False, errors=["Rule must be an object"])
    try:
        return _validate_rule(rule, known)
    except Exception as e:
        logger.exception(f"Unexpected error validating rule {rule.get('id')!r}: {e}")
        return ValidationReport(valid=False, errors=[f"Rule could not be validated: {e}"])


def load_rule(raw: Any, report: ValidationReport) -> Rule:
    """Load an already validated document, turning model errors into a RuleValidationError"""
    if isinstance(raw, Rule):
        return raw
    try:
        return Rule.model_validate(raw)
    except ValidationError as e:
        errors = [
            f"{'.'.join(str(part) for part in err['loc']) or 'rule'}: {err['msg']}"
            for err in e.errors()
        ]
        logger.warning(f"Rule {raw.get('id')!r} passed validation but could not be loaded: {errors}")
        raise RuleValidationError(ValidationReport(valid=False, errors=errors, warnings=report.warnings))


def parse_rule(raw: Any, known_sensors: Optional[Sequence[str]] = None) -> Rule:
    """Validate then load the typed Rule; raises RuleValidationError on any defect"""
    report = validate_rule(raw, known_sensors)
    if not report.valid:
        raise RuleValidationError(report)
    return load_rule(raw, report)


# ---------- Descriptions ----------

def _fmt(value: Optional[float]) -> str:
    if value is None:
        return "?"
    return f"{value:g}"


def sensor_display_name(name: str) -> str:
    return SENSOR_DISPLAY_NAMES.get(name, name)


def relay_display_name(relay: Optional[int]) -> str:
    if relay is not None and 0 <= relay < len(RELAY_DISPLAY_NAMES):
        return RELAY_DISPLAY_NAMES[relay]
    return f"Relay {relay}"


def _describe_comparison(subject: str, op: str, value_min, value_max) -> str:
    if op == "between":
        return f"{subject} between {_fmt(value_min)} and {_fmt(value_max)}"
    if op == "outside":
        return f"{subject} outside {_fmt(value_min)} to {_fmt(value_max)}"
    bound = value_min if value_min is not None else value_max
    return f"{subject} {OPERATOR_DESCRIPTIONS.get(op, op)} {_fmt(bound)}"


def describe_condition(condition) -> str:
    if isinstance(condition, SensorCompareCondition):
        text = _describe_comparison(sensor_display_name(condition.sensor_name), condition.operator,
                                    condition.value_min, condition.value_max)
    elif isinstance(condition, RelayStateCondition):
        expected_on = condition.value_min is not None and condition.value_min > 0
        text = f"{relay_display_name(condition.relay_index)} is {'on' if expected_on else 'off'}"
    elif isinstance(condition, SystemStatusCondition):
        if condition.operator:
            text = _describe_comparison(f"system {condition.sensor_name}", condition.operator,
                                        condition.value_min, condition.value_max)
        else:
            expected_ok = condition.value_min is not None and condition.value_min > 0
            text = f"system {condition.sensor_name} {'OK' if expected_ok else 'with problem'}"
    elif isinstance(condition, CompositeCondition):
        connector = " and " if condition.logic_operator == "AND" else " or "
        parts = []
        for sub in condition.sub_conditions:
            part = describe_condition(sub)
            if isinstance(sub, CompositeCondition) and len(sub.sub_conditions) > 1 and not sub.negate:
                part = f"({part})"
            parts.append(part)
        text = connector.join(parts)
    else:
        return "unspecified condition"

    if condition.negate:
        return f"not ({text})"
    return text


def describe_action(action: RuleAction) -> str:
    relay = relay_display_name(action.target_relay)
    if action.type == "relay_pulse":
        return f"pulses {relay} for {_fmt((action.duration_ms or 0) / 1000)}s"
    if action.type == "relay_on":
        if action.duration_ms:
            return f"turns on {relay} for {_fmt(action.duration_ms / 1000)}s"
        return f"turns on {relay}"
    if action.type == "relay_off":
        return f"turns off {relay}"
    if action.type == "relay_pwm":
        return f"sets {relay} to {_fmt(action.value)}%"
    if action.type == "system_alert":
        return f'sends alert: "{action.message}"'
    if action.type == "log_event":
        return f'logs "{action.message}"'
    return "updates the backend"


def describe_rule(rule: Rule) -> str:
    """Deterministic plain-language rendering of a rule; not a semantic check"""
    description = f"When {describe_condition(rule.condition)}, "
    description += " and ".join(describe_action(a) for a in rule.actions)
    if rule.cooldown_ms and rule.cooldown_ms > 0:
        description += f". Waits {_fmt(rule.cooldown_ms / 1000)} seconds before running again"
    return description

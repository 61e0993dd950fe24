"""
Server-side condition evaluation.

Nodes evaluate to True, False or None (indeterminate). Missing or stale data
is indeterminate, it propagates through composites with Kleene logic and
through ``negate``, and an indeterminate top-level result never fires a rule.
"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Union
import logging

from relayhub.database import settings, get_utc_datetime
from relayhub.schemas.rule import (
    CompositeCondition,
    RelayStateCondition,
    SensorCompareCondition,
    SystemStatusCondition,
)

logger = logging.getLogger(__name__)

EQUALITY_TOLERANCE = 0.01


@dataclass
class SensorSnapshot:
    """Latest known values for one device, with per-value observation times."""
    values: Dict[str, Union[bool, float]] = field(default_factory=dict)
    observed_at: Dict[str, datetime] = field(default_factory=dict)
    relay_states: Optional[List[bool]] = None

    def get(self, name: str, now: Optional[datetime] = None,
            stale_seconds: Optional[int] = None) -> Optional[Union[bool, float]]:
        value = self.values.get(name)
        if value is None:
            return None
        observed = self.observed_at.get(name)
        if observed is not None:
            now = now or get_utc_datetime()
            horizon = settings.sensor_stale_seconds if stale_seconds is None else stale_seconds
            if now - observed > timedelta(seconds=horizon):
                logger.debug(f"Reading '{name}' is stale (observed {observed.isoformat()})")
                return None
        return value


def _compare(value: float, op: str, value_min: Optional[float], value_max: Optional[float]) -> Optional[bool]:
    if op in ("between", "outside"):
        if value_min is None or value_max is None:
            return None
        inside = value_min <= value <= value_max
        return inside if op == "between" else not inside

    bound = value_min if value_min is not None else value_max
    if bound is None:
        return None

    if op == "<":
        return value < bound
    if op == "<=":
        return value <= bound
    if op == ">":
        return value > bound
    if op == ">=":
        return value >= bound
    if op == "==":
        return abs(value - bound) < EQUALITY_TOLERANCE
    if op == "!=":
        return abs(value - bound) >= EQUALITY_TOLERANCE

    logger.warning(f"Unknown operator: {op}")
    return None


def _expected_true(value_min: Optional[float]) -> bool:
    return value_min is not None and value_min > 0


def _all(results: List[Optional[bool]]) -> Optional[bool]:
    if any(r is False for r in results):
        return False
    if any(r is None for r in results):
        return None
    return True


def _any(results: List[Optional[bool]]) -> Optional[bool]:
    if any(r is True for r in results):
        return True
    if any(r is None for r in results):
        return None
    return False


def evaluate_condition_state(condition, snapshot: SensorSnapshot,
                             now: Optional[datetime] = None) -> Optional[bool]:
    """Tri-state evaluation: True, False, or None when data is missing or stale"""
    now = now or get_utc_datetime()

    if isinstance(condition, SensorCompareCondition):
        value = snapshot.get(condition.sensor_name, now)
        if value is None:
            result = None
        else:
            result = _compare(float(value), condition.operator, condition.value_min, condition.value_max)

    elif isinstance(condition, RelayStateCondition):
        relay = condition.relay_index
        states = snapshot.relay_states
        if states is None or relay is None or relay >= len(states):
            result = None
        else:
            result = bool(states[relay]) == _expected_true(condition.value_min)

    elif isinstance(condition, SystemStatusCondition):
        value = snapshot.get(condition.sensor_name, now)
        if value is None:
            result = None
        elif condition.operator:
            result = _compare(float(value), condition.operator, condition.value_min, condition.value_max)
        else:
            result = bool(value) == _expected_true(condition.value_min)

    elif isinstance(condition, CompositeCondition):
        results = [evaluate_condition_state(sub, snapshot, now) for sub in condition.sub_conditions]
        result = _all(results) if condition.logic_operator == "AND" else _any(results)

    else:
        logger.warning(f"Invalid condition format: {condition}")
        return None

    if result is not None and condition.negate:
        return not result
    return result


def evaluate_condition(condition, snapshot: SensorSnapshot, now: Optional[datetime] = None) -> bool:
    """True only when the condition definitely holds"""
    return evaluate_condition_state(condition, snapshot, now) is True

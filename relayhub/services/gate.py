"""
Rate and safety gate applied to every rule whose condition fired.

Fire history (cooldown and the rolling hourly window) lives in process and
is serialized per rule id. Admission reserves the fire before any command
is dispatched; ``release`` rolls a reservation back.
"""
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Deque, Dict, Iterable, List, Optional
import logging
import threading

from relayhub.database import settings, get_utc_datetime
from relayhub.schemas.rule import Rule
from relayhub.services.condition_evaluator import SensorSnapshot, evaluate_condition_state
from relayhub.services.errors import GateRejection
from relayhub.services.resilience import KeyedLock

logger = logging.getLogger(__name__)

EMERGENCY_SAFE_ACTIONS = ("relay_off", "system_alert", "log_event")
OVERRIDE_SUSPENDED_TRIGGERS = ("periodic", "on_change")
HOURLY_WINDOW = timedelta(hours=1)


@dataclass
class EngineFlags:
    engine_enabled: bool = True
    dry_run_mode: bool = False
    emergency_mode: bool = False
    manual_override: bool = False
    locked_relays: List[int] = field(default_factory=list)

    @classmethod
    def from_status(cls, status) -> "EngineFlags":
        if status is None:
            return cls()
        return cls(
            engine_enabled=bool(status.engine_enabled),
            dry_run_mode=bool(status.dry_run_mode),
            emergency_mode=bool(status.emergency_mode),
            manual_override=bool(status.manual_override),
            locked_relays=list(status.locked_relays or []),
        )


@dataclass
class GateDecision:
    admitted: bool
    reason: Optional[str] = None
    category: Optional[str] = None
    critical: bool = False
    warnings: List[str] = field(default_factory=list)
    fired_at: Optional[datetime] = None

    def to_rejection(self) -> GateRejection:
        return GateRejection(self.reason or "Rejected", self.category or "gate", self.critical)


def _reject(reason: str, category: str, critical: bool = False, warnings: Optional[List[str]] = None) -> GateDecision:
    logger.info(f"Gate rejected: {reason}")
    return GateDecision(admitted=False, reason=reason, category=category, critical=critical,
                        warnings=warnings or [])


class Gate:
    def __init__(self, lock_timeout: Optional[float] = None, safety_policy: Optional[str] = None):
        self.lock_timeout = settings.gate_lock_timeout_seconds if lock_timeout is None else lock_timeout
        self.safety_policy = safety_policy or settings.safety_check_policy
        self._locks = KeyedLock()
        self._state_guard = threading.Lock()
        self._last_fire: Dict[str, datetime] = {}
        self._previous_fire: Dict[str, Optional[datetime]] = {}
        self._windows: Dict[str, Deque[datetime]] = {}

    def knows(self, rule_id: str) -> bool:
        with self._state_guard:
            return rule_id in self._windows

    def seed(self, rule_id: str, fire_times: Iterable[datetime]):
        """Restore fire history (e.g. from recorded executions) for a rule seen for the first time"""
        times = sorted(fire_times)
        with self._locks.hold(rule_id):
            with self._state_guard:
                if rule_id in self._windows:
                    return
                self._windows[rule_id] = deque(times)
                if times:
                    self._last_fire[rule_id] = times[-1]

    def forget(self, rule_id: str):
        with self._locks.hold(rule_id):
            with self._state_guard:
                self._windows.pop(rule_id, None)
                self._last_fire.pop(rule_id, None)
                self._previous_fire.pop(rule_id, None)
        self._locks.discard(rule_id)

    def last_fire(self, rule_id: str) -> Optional[datetime]:
        with self._state_guard:
            return self._last_fire.get(rule_id)

    def _safety_failed(self, state: Optional[bool]) -> bool:
        if state is None:
            return True
        if self.safety_policy == "require_true":
            return state is False
        return state is True

    def admit(self, rule: Rule, snapshot: SensorSnapshot, flags: Optional[EngineFlags] = None,
              now: Optional[datetime] = None) -> GateDecision:
        """
        Decide whether a fired rule may act now.

        Checks run in order: manual override, emergency mode, locked relays,
        cooldown, hourly cap, safety checks. An admitted decision has already
        recorded the fire.
        """
        flags = flags or EngineFlags()
        now = now or get_utc_datetime()

        if flags.manual_override and rule.trigger_type in OVERRIDE_SUSPENDED_TRIGGERS:
            return _reject("Manual override active", "override")

        if flags.emergency_mode:
            blocked = [a.type for a in rule.actions if a.type not in EMERGENCY_SAFE_ACTIONS]
            if blocked:
                return _reject(f"Emergency mode active: {', '.join(sorted(set(blocked)))} blocked", "emergency")

        locked = sorted(set(rule.target_relays()) & set(flags.locked_relays or []))
        if locked:
            return _reject(f"Relay(s) {', '.join(str(r) for r in locked)} locked", "lock")

        with self._locks.hold(rule.id, timeout=self.lock_timeout) as acquired:
            if not acquired:
                return _reject(f"Gate busy for rule {rule.id}", "timeout")

            with self._state_guard:
                last = self._last_fire.get(rule.id)
                window = self._windows.setdefault(rule.id, deque())
                while window and now - window[0] >= HOURLY_WINDOW:
                    window.popleft()

            if rule.cooldown_ms > 0 and last is not None:
                elapsed_ms = (now - last).total_seconds() * 1000
                if elapsed_ms < rule.cooldown_ms:
                    remaining = int((rule.cooldown_ms - elapsed_ms) / 1000)
                    return _reject(f"Cooldown active ({remaining}s remaining)", "cooldown")

            if rule.max_executions_per_hour > 0 and len(window) >= rule.max_executions_per_hour:
                return _reject(f"Hourly limit reached ({rule.max_executions_per_hour}/h)", "rate_limit")

            warnings: List[str] = []
            for check in rule.safety_checks:
                state = evaluate_condition_state(check.condition, snapshot, now)
                if not self._safety_failed(state):
                    continue
                message = check.error_message or f"Safety check '{check.name}' failed"
                if state is None:
                    message += " (data unavailable)"
                if check.is_critical:
                    return _reject(message, "safety", critical=True, warnings=warnings)
                logger.warning(f"Rule {rule.id}: non-critical safety check failed: {message}")
                warnings.append(message)

            with self._state_guard:
                self._previous_fire[rule.id] = last
                self._last_fire[rule.id] = now
                window.append(now)

        return GateDecision(admitted=True, warnings=warnings, fired_at=now)

    def release(self, rule_id: str, fired_at: datetime):
        """Undo the reservation made by an admitted decision whose dispatch failed"""
        with self._locks.hold(rule_id):
            with self._state_guard:
                window = self._windows.get(rule_id)
                if window and fired_at in window:
                    window.remove(fired_at)
                if self._last_fire.get(rule_id) == fired_at:
                    previous = self._previous_fire.pop(rule_id, None)
                    if previous is None:
                        self._last_fire.pop(rule_id, None)
                    else:
                        self._last_fire[rule_id] = previous
        logger.info(f"Released gate reservation for rule {rule_id}")


_gate: Optional[Gate] = None
_gate_guard = threading.Lock()


def get_gate() -> Gate:
    global _gate
    with _gate_guard:
        if _gate is None:
            _gate = Gate()
        return _gate


def reset_gate():
    global _gate
    with _gate_guard:
        _gate = None

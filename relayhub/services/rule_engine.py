"""
Rule engine: evaluates a device's enabled rules against a sensor snapshot,
runs admitted rules through the gate and turns their actions into relay
commands, alerts and log lines. Every attempt is recorded as a RuleExecution.
"""
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Tuple, Union
import logging
import math
import threading
import time

from sqlalchemy.orm import Session

from relayhub.database import settings, get_utc_datetime, to_epoch_ms
from relayhub.models.engine_status import EngineStatus
from relayhub.models.rule import DecisionRule
from relayhub.models.rule_execution import RuleExecution
from relayhub.schemas.command import CommandResponse
from relayhub.schemas.engine import EngineStatusUpdate, EvaluationResult, RuleOutcome
from relayhub.schemas.rule import MAX_RELAYS, Rule, RuleAction
from relayhub.services.alerts import raise_alert
from relayhub.services.audit import record_audit
from relayhub.services.command_queue import CommandQueue, get_command_queue
from relayhub.services.condition_evaluator import SensorSnapshot, evaluate_condition_state
from relayhub.services.errors import DeliveryTimeout, ExecutionFailure, InvalidCommandError, StoreError
from relayhub.services.gate import EngineFlags, Gate, GateDecision, get_gate
from relayhub.services.liveness import get_status, telemetry_values
from relayhub.services.readings import latest_readings

logger = logging.getLogger(__name__)

# (device_id, rule_id) -> last periodic evaluation
_last_periodic_run: Dict[Tuple[str, str], datetime] = {}
_periodic_guard = threading.Lock()


def reset_engine_state():
    with _periodic_guard:
        _last_periodic_run.clear()


def get_engine_status(db: Session, device_id: str) -> EngineStatus:
    status = db.query(EngineStatus).filter(EngineStatus.device_id == device_id).first()
    if status is None:
        status = EngineStatus(
            device_id=device_id,
            engine_enabled=True,
            dry_run_mode=False,
            emergency_mode=False,
            manual_override=False,
            locked_relays=[],
            total_rules=0,
            total_evaluations=0,
            total_actions=0,
            total_safety_blocks=0,
        )
        db.add(status)
        db.commit()
        db.refresh(status)
        logger.info(f"Created engine status for {device_id}")
    return status


def update_engine_status(db: Session, device_id: str, changes: EngineStatusUpdate) -> EngineStatus:
    """Apply operator flag changes; unspecified fields keep their value"""
    values = changes.model_dump(exclude_unset=True, exclude_none=True)
    if "locked_relays" in values:
        relays = values["locked_relays"]
        if any(r < 0 or r >= MAX_RELAYS for r in relays):
            raise InvalidCommandError(f"Locked relays must be between 0 and {MAX_RELAYS - 1}")
        values["locked_relays"] = sorted(set(relays))

    status = get_engine_status(db, device_id)
    previous = {key: getattr(status, key) for key in values}
    for key, value in values.items():
        setattr(status, key, value)
    record_audit(db, "engine_status_changed", device_id, {"before": previous, "after": values}, commit=False)
    db.commit()
    db.refresh(status)
    logger.info(f"Engine status for {device_id} updated: {values}")
    return status


def load_rules(db: Session, device_id: str) -> List[Rule]:
    """Enabled rules for a device, highest priority first"""
    records = db.query(DecisionRule).filter(
        DecisionRule.device_id == device_id,
        DecisionRule.enabled == True,
    ).order_by(DecisionRule.priority.desc(), DecisionRule.id.asc()).all()

    rules = []
    for record in records:
        try:
            rules.append(Rule.model_validate(record.rule_json))
        except ValueError as e:
            logger.error(f"Stored rule {record.rule_id} could not be loaded: {e}")
    return rules


def build_snapshot(db: Session, device_id: str,
                   sensors: Optional[Dict[str, Union[bool, float]]] = None,
                   relay_states: Optional[List[bool]] = None,
                   now: Optional[datetime] = None) -> SensorSnapshot:
    """
    Combine stored readings, device telemetry and any values supplied by the
    caller (which count as observed now).
    """
    now = now or get_utc_datetime()
    snapshot = SensorSnapshot()

    for name, reading in latest_readings(db, device_id).items():
        snapshot.values[name] = reading.value
        snapshot.observed_at[name] = reading.observed_at

    status = get_status(db, device_id, now)
    if status.last_seen is not None:
        snapshot.relay_states = list(status.relay_states)
        for name, value in telemetry_values(status, now).items():
            snapshot.values.setdefault(name, value)
            derived_now = name in ("wifi_connected", "backend_connected")
            snapshot.observed_at.setdefault(name, now if derived_now else status.last_seen)

    for name, value in (sensors or {}).items():
        snapshot.values[name] = value
        snapshot.observed_at[name] = now
    if relay_states is not None:
        snapshot.relay_states = list(relay_states)

    return snapshot


def _action_label(rule: Rule) -> str:
    if len(rule.actions) == 1:
        return rule.actions[0].type
    return "multiple"


def _command_for(action: RuleAction) -> Tuple[str, Optional[int]]:
    """(on/off, duration_seconds) for a relay action"""
    if action.type == "relay_off":
        return "off", None
    if action.type == "relay_pwm":
        # devices without PWM: any duty above zero means on
        return ("on" if (action.value or 0) > 0 else "off"), None
    duration = int(math.ceil(action.duration_ms / 1000)) if action.duration_ms else None
    return "on", duration


class RuleEngine:
    def __init__(self, db: Session, gate: Optional[Gate] = None, queue: Optional[CommandQueue] = None):
        self.db = db
        self.gate = gate or get_gate()
        self.queue = queue or get_command_queue(db)

    def _recent_fires(self, device_id: str, rule_id: str, now: datetime) -> List[datetime]:
        since = to_epoch_ms(now - timedelta(hours=1))
        rows = self.db.query(
            RuleExecution.timestamp, RuleExecution.success, RuleExecution.action_details
        ).filter(
            RuleExecution.device_id == device_id,
            RuleExecution.rule_id == rule_id,
            ~RuleExecution.action_type.like("blocked:%"),
            RuleExecution.timestamp >= since,
        ).all()
        # a fire counts once anything reached the queue, even if the execution later failed
        return [
            datetime.fromtimestamp(row.timestamp / 1000, tz=timezone.utc).replace(tzinfo=None)
            for row in rows
            if row.success or (row.action_details or {}).get("command_ids")
        ]

    def _record(self, device_id: str, rule: Rule, action_type: str, details: dict, success: bool,
                error_message: Optional[str], started: float, now: datetime) -> RuleExecution:
        execution = RuleExecution(
            device_id=device_id,
            rule_id=rule.id,
            rule_name=rule.name,
            action_type=action_type,
            action_details=details,
            success=success,
            error_message=error_message,
            execution_time_ms=int((time.monotonic() - started) * 1000),
            timestamp=to_epoch_ms(now),
        )
        self.db.add(execution)
        self.db.commit()
        self.db.refresh(execution)
        return execution

    def _due(self, device_id: str, rule: Rule, now: datetime) -> bool:
        interval = rule.trigger_interval_ms or 0
        key = (device_id, rule.id)
        with _periodic_guard:
            last = _last_periodic_run.get(key)
            if last is not None and (now - last).total_seconds() * 1000 < interval:
                return False
            _last_periodic_run[key] = now
        return True

    def _on_critical_block(self, status: EngineStatus, flags: EngineFlags, rule: Rule, decision: GateDecision):
        raise_alert(
            self.db, status.device_id, "critical", "safety",
            f"Rule '{rule.name}' blocked: {decision.reason}",
            {"rule_id": rule.id, "reason": decision.reason},
        )
        if settings.critical_alert_engages_emergency and not status.emergency_mode:
            status.emergency_mode = True
            flags.emergency_mode = True
            record_audit(self.db, "emergency_mode_engaged", status.device_id,
                         {"rule_id": rule.id, "reason": decision.reason}, commit=False)
            self.db.commit()
            logger.warning(f"Emergency mode engaged for {status.device_id} after critical safety block")

    def _dispatch(self, device_id: str, rule: Rule, flags: EngineFlags, decision: GateDecision,
                  started: float, now: datetime) -> RuleOutcome:
        details = {
            "actions": [a.model_dump(exclude_none=True) for a in rule.actions],
            "dry_run": flags.dry_run_mode,
            "warnings": decision.warnings,
        }
        execution = self._record(device_id, rule, _action_label(rule), details, True, None, started, now)
        outcome = RuleOutcome(
            rule_id=rule.id, rule_name=rule.name, condition_met=True, admitted=True,
            warnings=decision.warnings, execution_id=execution.id, dry_run=flags.dry_run_mode,
        )

        for index, action in enumerate(rule.actions):
            if action.is_relay_action:
                command, duration = _command_for(action)
                if flags.dry_run_mode:
                    logger.info(f"[DRY RUN] {rule.id}: would send relay {action.target_relay} -> {command}")
                    continue
                try:
                    queued = self.queue.enqueue(
                        device_id, action.target_relay, command,
                        duration_seconds=duration,
                        created_by=f"rule:{rule.id}",
                        rule_execution_id=execution.id,
                    )
                except (InvalidCommandError, StoreError) as e:
                    logger.error(f"Rule {rule.id}: could not queue relay {action.target_relay} command: {e}")
                    execution.success = False
                    execution.error_message = str(e)
                    execution.action_details = dict(
                        details, command_ids=list(outcome.command_ids), failed_action=index + 1,
                    )
                    execution.execution_time_ms = int((time.monotonic() - started) * 1000)
                    self.db.commit()
                    outcome.reason = str(e)
                    outcome.category = "dispatch"
                    if outcome.command_ids:
                        # earlier commands are already queued, so the reservation stays
                        logger.warning(f"Rule {rule.id} partially dispatched: {len(outcome.command_ids)} command(s) queued")
                    else:
                        self.gate.release(rule.id, decision.fired_at)
                        outcome.admitted = False
                    return outcome
                outcome.command_ids.append(queued.id)

            elif action.type == "system_alert":
                if flags.dry_run_mode:
                    logger.info(f"[DRY RUN] {rule.id}: would raise alert '{action.message}'")
                    continue
                raise_alert(self.db, device_id, "info", "system", action.message,
                            {"rule_id": rule.id, "execution_id": execution.id})

            else:
                logger.info(f"Rule {rule.id} ({action.type}): {action.message or rule.name}")

        execution.action_details = dict(details, command_ids=list(outcome.command_ids))
        execution.execution_time_ms = int((time.monotonic() - started) * 1000)
        self.db.commit()
        return outcome

    def evaluate(self, device_id: str, snapshot: Optional[SensorSnapshot] = None,
                 trigger: Optional[str] = None, now: Optional[datetime] = None) -> EvaluationResult:
        """
        Evaluate every enabled rule of a device once.

        ``trigger`` restricts evaluation to rules of that trigger type; a
        periodic trigger also skips rules whose interval has not elapsed.
        Without a trigger every enabled rule is considered.
        """
        now = now or get_utc_datetime()
        status = get_engine_status(self.db, device_id)
        if not status.engine_enabled:
            logger.info(f"Engine disabled for {device_id}, skipping evaluation")
            return EvaluationResult(device_id=device_id, skipped=True, reason="Engine disabled")

        flags = EngineFlags.from_status(status)
        snapshot = snapshot if snapshot is not None else build_snapshot(self.db, device_id, now=now)
        rules = load_rules(self.db, device_id)
        result = EvaluationResult(device_id=device_id)

        for rule in rules:
            if trigger and rule.trigger_type != trigger:
                continue
            if trigger == "periodic" and not self._due(device_id, rule, now):
                continue

            started = time.monotonic()
            result.rules_evaluated += 1
            state = evaluate_condition_state(rule.condition, snapshot, now)
            if state is not True:
                result.outcomes.append(RuleOutcome(
                    rule_id=rule.id, rule_name=rule.name, condition_met=False,
                    reason="Missing or stale data" if state is None else None,
                ))
                continue

            result.rules_fired += 1
            if not self.gate.knows(rule.id):
                self.gate.seed(rule.id, self._recent_fires(device_id, rule.id, now))

            decision = self.gate.admit(rule, snapshot, flags, now)
            if not decision.admitted:
                logger.info(f"Rule {rule.id} not executed: {decision.to_rejection()}")
                execution = self._record(
                    device_id, rule, f"blocked:{decision.category}",
                    {"reason": decision.reason, "warnings": decision.warnings},
                    False, decision.reason, started, now,
                )
                if decision.critical:
                    result.safety_blocks += 1
                    self._on_critical_block(status, flags, rule, decision)
                result.outcomes.append(RuleOutcome(
                    rule_id=rule.id, rule_name=rule.name, condition_met=True, admitted=False,
                    reason=decision.reason, category=decision.category, warnings=decision.warnings,
                    execution_id=execution.id,
                ))
                continue

            outcome = self._dispatch(device_id, rule, flags, decision, started, now)
            if outcome.category == "dispatch":
                result.actions_executed += len(outcome.command_ids)
            elif outcome.admitted:
                result.actions_executed += len(rule.actions)
            result.outcomes.append(outcome)

        status.total_rules = len(rules)
        status.total_evaluations = (status.total_evaluations or 0) + 1
        status.total_actions = (status.total_actions or 0) + result.actions_executed
        status.total_safety_blocks = (status.total_safety_blocks or 0) + result.safety_blocks
        status.last_evaluation = now
        self.db.commit()

        if result.rules_fired:
            logger.info(
                f"Evaluated {device_id}: {result.rules_evaluated} rule(s), {result.rules_fired} fired, "
                f"{result.actions_executed} action(s)"
            )
        return result


def handle_command_report(db: Session, command: CommandResponse):
    """Propagate a device-reported failure to its rule execution and raise an alert"""
    if command.status != "failed":
        return

    failure = ExecutionFailure(command.id, command.error_message)
    logger.warning(str(failure))

    if command.rule_execution_id is not None:
        execution = db.query(RuleExecution).filter(RuleExecution.id == command.rule_execution_id).first()
        if execution is not None:
            execution.success = False
            execution.error_message = f"Device reported failure: {command.error_message}"
            db.commit()

    raise_alert(
        db, command.device_id, "warning", "relay",
        f"Relay {command.relay_number} command '{command.action}' failed: {command.error_message}",
        {"command_id": command.id, "rule_execution_id": command.rule_execution_id},
    )


def report_stale_commands(db: Session, queue: Optional[CommandQueue] = None,
                          now: Optional[datetime] = None) -> int:
    """Raise one warning per command stuck in pending/sent; commands are not requeued"""
    now = now or get_utc_datetime()
    queue = queue or get_command_queue(db)
    stale = queue.find_stale(now)
    for command in stale:
        since = command.sent_at if command.status == "sent" and command.sent_at else command.created_at
        timeout = DeliveryTimeout(command.id, command.status, (now - since).total_seconds())
        raise_alert(
            db, command.device_id, "warning", "relay", str(timeout),
            {"command_id": command.id, "relay_number": command.relay_number, "status": command.status},
        )
    queue.mark_stale_alerted([c.id for c in stale])
    return len(stale)

"""
Relay command queue for devices that poll for work.

Lifecycle: pending --poll--> sent --report--> completed | failed.
Two backends share the same interface: ``DatabaseCommandQueue`` persists to
``relay_commands``; ``TransientCommandQueue`` keeps commands in process and
drops terminal ones after a retention period.
"""
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Dict, List, Optional
import logging
import threading
import uuid

from sqlalchemy import and_, or_, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from relayhub.database import settings, get_utc_datetime
from relayhub.models.command import RelayCommand
from relayhub.schemas.command import COMMAND_ACTIONS, COMMAND_STATUSES, TERMINAL_STATUSES, CommandResponse
from relayhub.schemas.rule import MAX_RELAYS
from relayhub.services.errors import CommandNotFoundError, InvalidCommandError, StoreError
from relayhub.services.resilience import KeyedLock, retry_read

logger = logging.getLogger(__name__)

DEFAULT_FAILURE_MESSAGE = "Unspecified error"


def normalize_command(relay_number, action) -> str:
    """Validate relay/action and return the lower-cased action"""
    if isinstance(relay_number, bool) or not isinstance(relay_number, int) or not 0 <= relay_number < MAX_RELAYS:
        raise InvalidCommandError(f"Invalid relay_number (must be 0-{MAX_RELAYS - 1})")
    if not isinstance(action, str) or action.lower() not in COMMAND_ACTIONS:
        raise InvalidCommandError("Invalid action (must be 'on' or 'off')")
    return action.lower()


def normalize_status(status) -> str:
    if not isinstance(status, str) or status.lower() not in COMMAND_STATUSES:
        raise InvalidCommandError(f"Invalid status. Must be: {', '.join(COMMAND_STATUSES)}")
    return status.lower()


class CommandQueue(ABC):
    """Interface shared by both backends; every method is scoped by device id."""

    @abstractmethod
    def enqueue(self, device_id: str, relay_number: int, action: str,
                duration_seconds: Optional[int] = None, created_by: Optional[str] = None,
                rule_execution_id: Optional[int] = None, now: Optional[datetime] = None) -> CommandResponse:
        raise NotImplementedError

    @abstractmethod
    def poll(self, device_id: str, now: Optional[datetime] = None) -> List[CommandResponse]:
        raise NotImplementedError

    @abstractmethod
    def report(self, command_id: str, status: str, error_message: Optional[str] = None,
               now: Optional[datetime] = None) -> CommandResponse:
        raise NotImplementedError

    @abstractmethod
    def list(self, device_id: str, status: Optional[str] = None) -> List[CommandResponse]:
        raise NotImplementedError

    @abstractmethod
    def get(self, command_id: str) -> CommandResponse:
        raise NotImplementedError

    @abstractmethod
    def find_stale(self, now: Optional[datetime] = None,
                   stale_seconds: Optional[int] = None) -> List[CommandResponse]:
        raise NotImplementedError

    @abstractmethod
    def mark_stale_alerted(self, command_ids: List[str]):
        raise NotImplementedError

    def evict(self, now: Optional[datetime] = None) -> int:
        """Drop expired terminal commands; persistent backends keep history"""
        return 0


# Shared across sessions so concurrent polls for one device serialize
_device_locks = KeyedLock()


class DatabaseCommandQueue(CommandQueue):
    def __init__(self, db: Session):
        self.db = db

    def _commit(self, context: str):
        try:
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Error committing {context}: {str(e)}")
            raise StoreError(f"Could not save {context}: {e}") from e

    def enqueue(self, device_id, relay_number, action, duration_seconds=None, created_by=None,
                rule_execution_id=None, now=None):
        action = normalize_command(relay_number, action)
        command = RelayCommand(
            id=str(uuid.uuid4()),
            device_id=device_id,
            relay_number=relay_number,
            action=action,
            duration_seconds=duration_seconds,
            status="pending",
            created_by=created_by or "web_interface",
            rule_execution_id=rule_execution_id,
            created_at=now or get_utc_datetime(),
        )
        self.db.add(command)
        self._commit(f"command for {device_id}")
        self.db.refresh(command)
        logger.info(f"Command queued: {device_id} relay {relay_number} -> {action} ({command.id})")
        return CommandResponse.model_validate(command)

    def poll(self, device_id, now=None):
        now = now or get_utc_datetime()
        with _device_locks.hold(device_id, timeout=settings.store_timeout_seconds) as acquired:
            if not acquired:
                logger.warning(f"Poll for {device_id} skipped: another poll still running")
                return []

            pending = retry_read(
                lambda: self.db.query(RelayCommand)
                .filter(RelayCommand.device_id == device_id, RelayCommand.status == "pending")
                .order_by(RelayCommand.created_at.asc())
                .all(),
                db=self.db,
                context=f"pending commands for {device_id}",
            )
            ordered_ids = [c.id for c in pending]

            delivered = []
            for command_id in ordered_ids:
                result = self.db.execute(
                    update(RelayCommand)
                    .where(RelayCommand.id == command_id, RelayCommand.status == "pending")
                    .values(status="sent", sent_at=now)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 1:
                    delivered.append(command_id)
            self._commit(f"poll for {device_id}")

            if not delivered:
                return []

            rows = self.db.query(RelayCommand).filter(RelayCommand.id.in_(delivered)).all()
            by_id = {row.id: row for row in rows}
            commands = [CommandResponse.model_validate(by_id[cid]) for cid in delivered if cid in by_id]

        logger.info(f"Delivered {len(commands)} command(s) to {device_id}")
        return commands

    def report(self, command_id, status, error_message=None, now=None):
        status = normalize_status(status)
        now = now or get_utc_datetime()
        command = self.db.query(RelayCommand).filter(RelayCommand.id == command_id).first()
        if not command:
            raise CommandNotFoundError(f"Command {command_id} not found")

        if command.status in TERMINAL_STATUSES and command.status != status:
            logger.warning(f"Command {command_id} moved from terminal '{command.status}' to '{status}'")

        command.status = status
        if status == "sent" and command.sent_at is None:
            command.sent_at = now
        if status in TERMINAL_STATUSES:
            command.completed_at = now
        if status == "failed":
            command.error_message = error_message or DEFAULT_FAILURE_MESSAGE

        self._commit(f"status of command {command_id}")
        self.db.refresh(command)
        logger.info(f"Command {command_id} -> {status}")
        return CommandResponse.model_validate(command)

    def list(self, device_id, status=None):
        query = self.db.query(RelayCommand).filter(RelayCommand.device_id == device_id)
        if status:
            query = query.filter(RelayCommand.status == normalize_status(status))
        rows = retry_read(lambda: query.order_by(RelayCommand.created_at.asc()).all(), db=self.db,
                          context=f"commands for {device_id}")
        return [CommandResponse.model_validate(r) for r in rows]

    def get(self, command_id):
        command = retry_read(
            lambda: self.db.query(RelayCommand).filter(RelayCommand.id == command_id).first(),
            db=self.db,
        )
        if not command:
            raise CommandNotFoundError(f"Command {command_id} not found")
        return CommandResponse.model_validate(command)

    def find_stale(self, now=None, stale_seconds=None):
        now = now or get_utc_datetime()
        cutoff = now - timedelta(seconds=settings.command_stale_seconds if stale_seconds is None else stale_seconds)
        rows = retry_read(
            lambda: self.db.query(RelayCommand)
            .filter(
                RelayCommand.stale_alerted == False,
                or_(
                    and_(RelayCommand.status == "pending", RelayCommand.created_at < cutoff),
                    and_(RelayCommand.status == "sent", RelayCommand.sent_at < cutoff),
                ),
            )
            .order_by(RelayCommand.created_at.asc())
            .all(),
            db=self.db,
            context="stale commands",
        )
        return [CommandResponse.model_validate(r) for r in rows]

    def mark_stale_alerted(self, command_ids):
        if not command_ids:
            return
        self.db.query(RelayCommand).filter(RelayCommand.id.in_(command_ids)).update(
            {RelayCommand.stale_alerted: True}, synchronize_session=False
        )
        self._commit("stale command flags")


class TransientCommandQueue(CommandQueue):
    """
    In-process queue for deployments without a command table.

    Each device owns its own ordered map of commands, touched only under that
    device's lock. A small id -> device index lets report/get find the owner.
    Commands are lost on restart. Terminal commands are removed once they
    are older than ``retention_seconds``.
    """

    def __init__(self, retention_seconds: Optional[int] = None):
        self.retention_seconds = settings.transient_retention_seconds if retention_seconds is None else retention_seconds
        self._locks = KeyedLock()
        self._index_guard = threading.Lock()
        self._devices: Dict[str, Dict[str, CommandResponse]] = {}
        self._owners: Dict[str, str] = {}

    def _bucket(self, device_id: str) -> Dict[str, CommandResponse]:
        with self._index_guard:
            return self._devices.setdefault(device_id, {})

    def _device_of(self, command_id: str) -> str:
        with self._index_guard:
            device_id = self._owners.get(command_id)
        if device_id is None:
            raise CommandNotFoundError(f"Command {command_id} not found")
        return device_id

    def _expired(self, command: CommandResponse, now: datetime) -> bool:
        if command.status not in TERMINAL_STATUSES or command.completed_at is None:
            return False
        return now - command.completed_at > timedelta(seconds=self.retention_seconds)

    def _evict_device(self, bucket: Dict[str, CommandResponse], now: datetime) -> int:
        # caller holds the device lock
        expired = [cid for cid, command in bucket.items() if self._expired(command, now)]
        for cid in expired:
            del bucket[cid]
        if expired:
            with self._index_guard:
                for cid in expired:
                    self._owners.pop(cid, None)
        return len(expired)

    def enqueue(self, device_id, relay_number, action, duration_seconds=None, created_by=None,
                rule_execution_id=None, now=None):
        action = normalize_command(relay_number, action)
        command = CommandResponse(
            id=str(uuid.uuid4()),
            device_id=device_id,
            relay_number=relay_number,
            action=action,
            duration_seconds=duration_seconds,
            status="pending",
            created_by=created_by or "web_interface",
            rule_execution_id=rule_execution_id,
            created_at=now or get_utc_datetime(),
        )
        with self._locks.hold(device_id):
            self._bucket(device_id)[command.id] = command
            with self._index_guard:
                self._owners[command.id] = device_id
        logger.info(f"Command queued (memory): {device_id} relay {relay_number} -> {action} ({command.id})")
        return command.model_copy()

    def poll(self, device_id, now=None):
        now = now or get_utc_datetime()
        delivered = []
        with self._locks.hold(device_id):
            bucket = self._bucket(device_id)
            self._evict_device(bucket, now)
            for cid, command in bucket.items():
                if command.status != "pending":
                    continue
                command = command.model_copy(update={"status": "sent", "sent_at": now})
                bucket[cid] = command
                delivered.append(command.model_copy())
        if delivered:
            logger.info(f"Delivered {len(delivered)} command(s) to {device_id} (memory)")
        return delivered

    def report(self, command_id, status, error_message=None, now=None):
        status = normalize_status(status)
        now = now or get_utc_datetime()
        device_id = self._device_of(command_id)
        with self._locks.hold(device_id):
            bucket = self._bucket(device_id)
            command = bucket.get(command_id)
            if command is None:
                raise CommandNotFoundError(f"Command {command_id} not found")
            changes = {"status": status}
            if status == "sent" and command.sent_at is None:
                changes["sent_at"] = now
            if status in TERMINAL_STATUSES:
                changes["completed_at"] = now
            if status == "failed":
                changes["error_message"] = error_message or DEFAULT_FAILURE_MESSAGE
            command = command.model_copy(update=changes)
            bucket[command_id] = command
        logger.info(f"Command {command_id} -> {status} (memory)")
        return command.model_copy()

    def list(self, device_id, status=None):
        status = normalize_status(status) if status else None
        with self._locks.hold(device_id):
            commands = list(self._bucket(device_id).values())
        return [c.model_copy() for c in commands if status is None or c.status == status]

    def get(self, command_id):
        device_id = self._device_of(command_id)
        with self._locks.hold(device_id):
            command = self._bucket(device_id).get(command_id)
        if command is None:
            raise CommandNotFoundError(f"Command {command_id} not found")
        return command.model_copy()

    def _device_ids(self) -> List[str]:
        with self._index_guard:
            return list(self._devices.keys())

    def find_stale(self, now=None, stale_seconds=None):
        now = now or get_utc_datetime()
        horizon = timedelta(seconds=settings.command_stale_seconds if stale_seconds is None else stale_seconds)
        stale = []
        for device_id in self._device_ids():
            with self._locks.hold(device_id):
                commands = list(self._bucket(device_id).values())
            for command in commands:
                if command.stale_alerted:
                    continue
                if command.status == "pending" and now - command.created_at > horizon:
                    stale.append(command.model_copy())
                elif command.status == "sent" and command.sent_at and now - command.sent_at > horizon:
                    stale.append(command.model_copy())
        return sorted(stale, key=lambda c: c.created_at)

    def mark_stale_alerted(self, command_ids):
        for cid in command_ids:
            try:
                device_id = self._device_of(cid)
            except CommandNotFoundError:
                continue
            with self._locks.hold(device_id):
                bucket = self._bucket(device_id)
                command = bucket.get(cid)
                if command is not None:
                    bucket[cid] = command.model_copy(update={"stale_alerted": True})

    def evict(self, now=None):
        now = now or get_utc_datetime()
        removed = 0
        for device_id in self._device_ids():
            with self._locks.hold(device_id):
                removed += self._evict_device(self._bucket(device_id), now)
        if removed:
            logger.info(f"Evicted {removed} finished command(s) from memory queue")
        return removed


_transient_queue: Optional[TransientCommandQueue] = None
_transient_guard = threading.Lock()


def get_transient_queue() -> TransientCommandQueue:
    global _transient_queue
    with _transient_guard:
        if _transient_queue is None:
            _transient_queue = TransientCommandQueue()
        return _transient_queue


def reset_transient_queue():
    global _transient_queue
    with _transient_guard:
        _transient_queue = None


def get_command_queue(db: Session) -> CommandQueue:
    if settings.command_queue_backend == "memory":
        return get_transient_queue()
    return DatabaseCommandQueue(db)

"""
Device liveness: every contact refreshes ``last_seen``; ``is_online`` is
recomputed from it on read and the stored flag follows.
"""
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional
import logging

from sqlalchemy.orm import Session

from relayhub.database import settings, get_utc_datetime
from relayhub.models.device_status import DeviceStatus
from relayhub.schemas.device_status import DeviceStatusReport, DeviceStatusResponse, OnlineStatus
from relayhub.schemas.rule import MAX_RELAYS
from relayhub.services.errors import DeviceNotFoundError
from relayhub.services.resilience import retry_read

logger = logging.getLogger(__name__)


def normalize_relay_states(states: Optional[List[Any]]) -> List[bool]:
    """Exactly MAX_RELAYS booleans: pad with False, drop extras"""
    if not states:
        return [False] * MAX_RELAYS
    normalized = [bool(s) for s in states[:MAX_RELAYS]]
    return normalized + [False] * (MAX_RELAYS - len(normalized))


def is_online(last_seen: Optional[datetime], now: Optional[datetime] = None) -> bool:
    if last_seen is None:
        return False
    now = now or get_utc_datetime()
    return now - last_seen < timedelta(seconds=settings.online_window_seconds)


def online_status(status: DeviceStatusResponse, now: Optional[datetime] = None) -> OnlineStatus:
    now = now or get_utc_datetime()
    minutes = None
    if status.last_seen is not None:
        minutes = int((now - status.last_seen).total_seconds() // 60)
    return OnlineStatus(is_online=status.is_online, last_seen=status.last_seen, minutes_since_last_seen=minutes)


def report_contact(db: Session, report: DeviceStatusReport, now: Optional[datetime] = None) -> DeviceStatusResponse:
    """Upsert the device row from a status report and mark it online"""
    now = now or get_utc_datetime()
    status = db.query(DeviceStatus).filter(DeviceStatus.device_id == report.device_id).first()
    was_online = bool(status.is_online) if status else False
    if status is None:
        status = DeviceStatus(device_id=report.device_id)
        db.add(status)

    status.last_seen = now
    status.is_online = True
    status.relay_states = normalize_relay_states(report.relay_states)
    status.wifi_rssi = report.wifi_rssi
    status.free_heap = report.free_heap
    status.uptime_seconds = report.uptime_seconds
    status.firmware_version = report.firmware_version
    status.ip_address = report.ip_address
    status.errors = list(report.errors or [])

    db.commit()
    db.refresh(status)

    if not was_online:
        logger.info(f"Device {report.device_id} is online")
    return DeviceStatusResponse.model_validate(status)


def touch(db: Session, device_id: str, now: Optional[datetime] = None):
    """Record a contact that carried no telemetry (e.g. a command poll)"""
    now = now or get_utc_datetime()
    status = db.query(DeviceStatus).filter(DeviceStatus.device_id == device_id).first()
    if status is None:
        status = DeviceStatus(device_id=device_id, relay_states=normalize_relay_states(None), errors=[])
        db.add(status)
    status.last_seen = now
    status.is_online = True
    db.commit()


def get_status(db: Session, device_id: str, now: Optional[datetime] = None) -> DeviceStatusResponse:
    """
    Current status with ``is_online`` recomputed; the stored flag is written
    back when it changed. Unknown devices get a default offline record.
    """
    now = now or get_utc_datetime()
    status = retry_read(
        lambda: db.query(DeviceStatus).filter(DeviceStatus.device_id == device_id).first(),
        db=db,
        context=f"status of {device_id}",
    )
    if status is None:
        return DeviceStatusResponse(device_id=device_id, is_online=False,
                                    relay_states=normalize_relay_states(None), errors=[])

    online = is_online(status.last_seen, now)
    if online != bool(status.is_online):
        status.is_online = online
        db.commit()
        db.refresh(status)
        logger.info(f"Device {device_id} is {'online' if online else 'offline'}")

    response = DeviceStatusResponse.model_validate(status)
    response.relay_states = normalize_relay_states(response.relay_states)
    return response


def require_registered(db: Session, device_id: str):
    if not db.query(DeviceStatus).filter(DeviceStatus.device_id == device_id).first():
        raise DeviceNotFoundError(f"Device {device_id} not found")


def sweep_offline(db: Session, now: Optional[datetime] = None) -> int:
    """Flip devices whose last contact fell outside the online window"""
    now = now or get_utc_datetime()
    cutoff = now - timedelta(seconds=settings.online_window_seconds)
    stale = db.query(DeviceStatus).filter(
        DeviceStatus.is_online == True,
        DeviceStatus.last_seen <= cutoff,
    ).all()
    for status in stale:
        status.is_online = False
        logger.info(f"Device {status.device_id} is offline (last seen {status.last_seen.isoformat()})")
    if stale:
        db.commit()
    return len(stale)


def telemetry_values(status: DeviceStatusResponse, now: Optional[datetime] = None) -> Dict[str, Any]:
    """System parameters a device status contributes to a rule snapshot"""
    values: Dict[str, Any] = {"wifi_connected": is_online(status.last_seen, now)}
    if status.last_seen is not None:
        values["backend_connected"] = values["wifi_connected"]
    if status.free_heap is not None:
        values["free_heap"] = status.free_heap
    if status.uptime_seconds is not None:
        values["uptime"] = status.uptime_seconds
    return values

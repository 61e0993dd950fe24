"""
Sensor reading storage and latest-value lookup per device
"""
from datetime import datetime, timezone
from typing import Dict, List, Optional, Union
import logging

from sqlalchemy import func
from sqlalchemy.orm import Session

from relayhub.database import get_utc_datetime
from relayhub.models.sensor import SensorReading
from relayhub.services.resilience import retry_read

logger = logging.getLogger(__name__)


def store_readings(db: Session, device_id: str, readings: Dict[str, Union[bool, float]],
                   observed_at: Optional[datetime] = None) -> List[SensorReading]:
    ts = observed_at or get_utc_datetime()
    if ts.tzinfo is not None:
        ts = ts.astimezone(timezone.utc).replace(tzinfo=None)

    rows = []
    for name, value in readings.items():
        if value is None:
            continue
        row = SensorReading(device_id=device_id, name=name, value=float(value), observed_at=ts)
        db.add(row)
        rows.append(row)
    db.commit()
    logger.info(f"Stored {len(rows)} reading(s) for {device_id}")
    return rows


def latest_readings(db: Session, device_id: str) -> Dict[str, SensorReading]:
    """Most recent reading for every sensor name of a device"""
    latest = (
        db.query(SensorReading.name, func.max(SensorReading.observed_at).label("observed_at"))
        .filter(SensorReading.device_id == device_id)
        .group_by(SensorReading.name)
        .subquery()
    )
    rows = retry_read(
        lambda: db.query(SensorReading)
        .join(latest, (SensorReading.name == latest.c.name) & (SensorReading.observed_at == latest.c.observed_at))
        .filter(SensorReading.device_id == device_id)
        .order_by(SensorReading.id.asc())
        .all(),
        db=db,
        context=f"latest readings for {device_id}",
    )
    # same-timestamp duplicates: the later insert wins
    return {row.name: row for row in rows}

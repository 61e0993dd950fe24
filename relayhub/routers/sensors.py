# relayhub/routers/sensors.py
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
import logging

from relayhub.database import get_db, settings
from relayhub.schemas.sensor import SensorIngest
from relayhub.services.readings import latest_readings, store_readings
from relayhub.services.rule_engine import RuleEngine

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/sensors", tags=["sensors"])

# ---------- Ingest: readings pushed by the controller ----------
@router.post("/ingest")
def ingest(payload: SensorIngest, db: Session = Depends(get_db)):
    known = set(settings.known_sensors)
    accepted = {name: value for name, value in payload.readings.items() if name in known}
    ignored = sorted(set(payload.readings) - set(accepted))
    if ignored:
        logger.warning(f"Ignoring unknown sensor(s) from {payload.device_id}: {', '.join(ignored)}")

    rows = store_readings(db, payload.device_id, accepted, payload.observed_at)

    # on_change rules react to fresh readings
    result = RuleEngine(db).evaluate(payload.device_id, trigger="on_change")

    return {
        "success": True,
        "stored": len(rows),
        "ignored": ignored,
        "rules_fired": result.rules_fired,
    }

# ---------- Latest reading per sensor ----------
@router.get("/{device_id}/latest")
def latest_for_device(device_id: str, db: Session = Depends(get_db)):
    readings = latest_readings(db, device_id)
    return {
        "device_id": device_id,
        "readings": {
            name: {
                "value": row.value,
                "observed_at": row.observed_at.isoformat(),
            }
            for name, row in sorted(readings.items())
        },
    }

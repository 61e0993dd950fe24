"""
System alerts raised by the rule engine and the scheduler
"""
from typing import Any, Dict, List, Optional
import logging

from sqlalchemy.orm import Session

from relayhub.database import get_utc_datetime, to_epoch_ms
from relayhub.models.alert import SystemAlert
from relayhub.services.errors import AlertNotFoundError

logger = logging.getLogger(__name__)

ALERT_TYPES = ("critical", "warning", "info")
ALERT_CATEGORIES = ("safety", "sensor", "relay", "system")


def raise_alert(db: Session, device_id: str, alert_type: str, category: str, message: str,
                details: Optional[Dict[str, Any]] = None, commit: bool = True) -> SystemAlert:
    if alert_type not in ALERT_TYPES:
        raise ValueError(f"Unknown alert type '{alert_type}'")
    if category not in ALERT_CATEGORIES:
        raise ValueError(f"Unknown alert category '{category}'")

    alert = SystemAlert(
        device_id=device_id,
        alert_type=alert_type,
        alert_category=category,
        message=message,
        details=details or {},
        timestamp=to_epoch_ms(get_utc_datetime()),
        acknowledged=False,
    )
    db.add(alert)
    if commit:
        db.commit()
        db.refresh(alert)
    else:
        db.flush()

    log = logger.error if alert_type == "critical" else logger.warning if alert_type == "warning" else logger.info
    log(f"[{alert_type.upper()}/{category}] {device_id}: {message}")
    return alert


def unacknowledged(db: Session, device_id: str, limit: int = 10) -> List[SystemAlert]:
    return db.query(SystemAlert).filter(
        SystemAlert.device_id == device_id,
        SystemAlert.acknowledged == False,
    ).order_by(SystemAlert.timestamp.desc(), SystemAlert.id.desc()).limit(limit).all()


def acknowledge(db: Session, alert_id: int, acknowledged_by: Optional[str] = None) -> SystemAlert:
    alert = db.query(SystemAlert).filter(SystemAlert.id == alert_id).first()
    if not alert:
        raise AlertNotFoundError(f"Alert {alert_id} not found")
    if not alert.acknowledged:
        alert.acknowledged = True
        alert.acknowledged_at = get_utc_datetime()
        alert.acknowledged_by = acknowledged_by or "operator"
        db.commit()
        db.refresh(alert)
        logger.info(f"Alert {alert_id} acknowledged by {alert.acknowledged_by}")
    return alert

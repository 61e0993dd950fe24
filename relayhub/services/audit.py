from typing import Any, Dict, Optional
import logging

from sqlalchemy.orm import Session

from relayhub.models.audit import AuditLog

logger = logging.getLogger(__name__)


def record_audit(db: Session, action: str, device_id: Optional[str] = None,
                 details: Optional[Dict[str, Any]] = None, commit: bool = True) -> AuditLog:
    entry = AuditLog(device_id=device_id, action=action, details=details or {})
    db.add(entry)
    if commit:
        db.commit()
    logger.info(f"Audit: {action} ({device_id or '-'})")
    return entry

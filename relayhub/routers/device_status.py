from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session
from typing import Optional
import logging

from relayhub.database import get_db, settings
from relayhub.routers.events import publish_event
from relayhub.schemas.device_status import DeviceStatusReport
from relayhub.services.errors import StoreError
from relayhub.services.liveness import get_status, online_status, report_contact

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/device/status", tags=["device-status"])

@router.post("")
def post_device_status(report: DeviceStatusReport, db: Session = Depends(get_db)):
    """Device heartbeat with telemetry and relay states"""
    status = report_contact(db, report)
    publish_event({"type": "device_status", "device_id": status.device_id, "is_online": True})
    return {"success": True, "message": "Status updated successfully", "status": status}

@router.get("")
def get_device_status(device_id: Optional[str] = None, db: Session = Depends(get_db)):
    device_id = device_id or settings.default_device_id
    try:
        status = get_status(db, device_id)
    except StoreError as e:
        logger.error(f"Error reading status of {device_id}: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))
    return {"success": True, "status": status, "online_status": online_status(status)}

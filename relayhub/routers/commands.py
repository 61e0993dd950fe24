from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session
from typing import Optional
import logging

from relayhub.database import get_db, settings
from relayhub.routers.events import publish_event
from relayhub.schemas.command import CommandCreate, CommandStatusUpdate
from relayhub.services.command_queue import CommandQueue, get_command_queue
from relayhub.services.errors import CommandNotFoundError, DeviceNotFoundError, InvalidCommandError, StoreError
from relayhub.services.liveness import require_registered, touch
from relayhub.services.rule_engine import handle_command_report

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/commands", tags=["commands"])

def get_queue(db: Session = Depends(get_db)) -> CommandQueue:
    return get_command_queue(db)

@router.post("", status_code=201)
def create_command(
    payload: CommandCreate,
    db: Session = Depends(get_db),
    queue: CommandQueue = Depends(get_queue)
):
    """Queue a relay command for a device"""
    device_id = payload.device_id or settings.default_device_id

    if settings.require_registered_device:
        try:
            require_registered(db, device_id)
        except DeviceNotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e))

    try:
        command = queue.enqueue(
            device_id,
            payload.relay_number,
            payload.action,
            duration_seconds=payload.duration_seconds,
            created_by=payload.created_by,
        )
    except InvalidCommandError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except StoreError as e:
        logger.error(f"Error creating command: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))

    publish_event({"type": "command_created", "command": command.model_dump(mode="json")})
    return {"success": True, "message": "Command created successfully", "command": command}

@router.get("")
def list_commands(
    device_id: Optional[str] = None,
    status: str = "pending",
    db: Session = Depends(get_db),
    queue: CommandQueue = Depends(get_queue)
):
    """
    Pending commands are handed to the polling device and marked sent;
    any other status is listed read-only.
    """
    device_id = device_id or settings.default_device_id
    try:
        if status == "pending":
            commands = queue.poll(device_id)
            touch(db, device_id)
        else:
            commands = queue.list(device_id, status)
    except InvalidCommandError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except StoreError as e:
        logger.error(f"Error fetching commands for {device_id}: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))

    if status == "pending" and commands:
        publish_event({"type": "commands_sent", "device_id": device_id, "command_ids": [c.id for c in commands]})
    return {"success": True, "commands": commands, "count": len(commands)}

@router.get("/{command_id}")
def get_command(command_id: str, queue: CommandQueue = Depends(get_queue)):
    try:
        command = queue.get(command_id)
    except CommandNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {"success": True, "command": command}

@router.put("")
def update_command(
    payload: CommandStatusUpdate,
    db: Session = Depends(get_db),
    queue: CommandQueue = Depends(get_queue)
):
    """Device reports the outcome of a command"""
    try:
        command = queue.report(payload.command_id, payload.status, payload.error_message)
    except InvalidCommandError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except CommandNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except StoreError as e:
        logger.error(f"Error updating command {payload.command_id}: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))

    handle_command_report(db, command)
    publish_event({"type": "command_updated", "command": command.model_dump(mode="json")})
    return {"success": True, "message": "Command status updated", "command": command}

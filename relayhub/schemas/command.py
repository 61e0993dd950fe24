from pydantic import BaseModel
from datetime import datetime
from typing import Optional

COMMAND_ACTIONS = ("on", "off")
COMMAND_STATUSES = ("pending", "sent", "completed", "failed")
TERMINAL_STATUSES = ("completed", "failed")

class CommandCreate(BaseModel):
    device_id: Optional[str] = None
    relay_number: int
    action: str
    duration_seconds: Optional[int] = None
    created_by: str = "web_interface"

class CommandStatusUpdate(BaseModel):
    command_id: str
    status: str
    error_message: Optional[str] = None

class CommandResponse(BaseModel):
    id: str
    device_id: str
    relay_number: int
    action: str
    duration_seconds: Optional[int] = None
    status: str
    created_by: Optional[str] = None
    rule_execution_id: Optional[int] = None
    error_message: Optional[str] = None
    stale_alerted: bool = False
    created_at: datetime
    sent_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    
    class Config:
        from_attributes = True

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

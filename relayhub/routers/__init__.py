from .commands import router as commands_router
from .device_status import router as device_status_router
from .rules import router as rules_router
from .engine import router as engine_router
from .health import router as health_router

__all__ = [
    "commands_router",
    "device_status_router",
    "rules_router",
    "engine_router",
    "health_router"
]

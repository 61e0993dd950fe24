# relayhub/main.py
import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from relayhub.database import engine, settings
from relayhub.models import Base
from relayhub.init_db import init_database
from relayhub.services.scheduler import start_scheduler, stop_scheduler

# Routers
from relayhub.routers import sensors
from relayhub.routers import events as events_router
from relayhub.routers import (
    commands_router,
    device_status_router,
    rules_router,
    engine_router,
    health_router,
)

logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)


def create_app() -> FastAPI:
    app = FastAPI(
        title="RelayHub Control API",
        description="Rule automation and command delivery for poll-based relay controllers",
        version="1.0.0",
    )

    # CORS for the dashboard dev server (Vite on :5173)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:5173", "http://127.0.0.1:5173"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["*"],
    )

    # Mount routers
    app.include_router(health_router)            # /healthz, /api/v1/health
    app.include_router(events_router.router)     # /api/v1/events/sse
    app.include_router(commands_router)          # /api/v1/commands
    app.include_router(device_status_router)     # /api/v1/device/status
    app.include_router(rules_router)             # /api/v1/rules/...
    app.include_router(engine_router)            # /api/v1/engine/...
    app.include_router(sensors.router)           # /api/v1/sensors/ingest ...

    # Startup: DB + init + scheduler (idempotent)
    @app.on_event("startup")
    async def _startup():
        Base.metadata.create_all(bind=engine)
        init_database()
        if settings.scheduler_enabled:
            start_scheduler()

    @app.on_event("shutdown")
    async def _shutdown():
        stop_scheduler()

    return app


app = create_app()

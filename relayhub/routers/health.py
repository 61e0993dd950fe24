from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from relayhub.database import get_db, settings

router = APIRouter(tags=["health"])

@router.get("/healthz")
async def health_check():
    """Health check endpoint"""
    return {"status": "ok", "service": "relayhub-api"}

@router.get("/api/v1/health")
def api_health_check(db: Session = Depends(get_db)):
    """API health check endpoint, including a store round-trip"""
    try:
        db.execute(text("SELECT 1"))
        database = "ok"
    except SQLAlchemyError as e:
        database = f"error: {e}"
    return {
        "status": "ok" if database == "ok" else "degraded",
        "api_version": "v1",
        "database": database,
        "command_queue": settings.command_queue_backend,
    }

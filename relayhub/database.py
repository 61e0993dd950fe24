from datetime import datetime, timezone
from typing import List

from sqlalchemy import create_engine
from sqlalchemy.ext.declarative import declarative_base
from sqlalchemy.orm import sessionmaker
from pydantic_settings import BaseSettings
import os
from dotenv import load_dotenv

load_dotenv()

DEFAULT_SENSORS = (
    "ph,tds,ec,temp_water,temp_environment,humidity,"
    "water_level_ok,wifi_connected,backend_connected,free_heap,uptime"
)


class Settings(BaseSettings):
    database_url: str = os.getenv("DATABASE_URL", "sqlite:///./relayhub.db")
    store_timeout_seconds: float = float(os.getenv("STORE_TIMEOUT_SECONDS", "5"))
    debug: bool = os.getenv("DEBUG", "false").lower() == "true"

    default_device_id: str = os.getenv("DEFAULT_DEVICE_ID", "ESP32_HIDRO_001")
    require_registered_device: bool = os.getenv("REQUIRE_REGISTERED_DEVICE", "false").lower() == "true"

    # "database" or "memory"
    command_queue_backend: str = os.getenv("COMMAND_QUEUE_BACKEND", "database")
    transient_retention_seconds: int = int(os.getenv("TRANSIENT_RETENTION_SECONDS", "300"))
    command_stale_seconds: int = int(os.getenv("COMMAND_STALE_SECONDS", "300"))

    online_window_seconds: int = int(os.getenv("ONLINE_WINDOW_SECONDS", "120"))
    sensor_stale_seconds: int = int(os.getenv("SENSOR_STALE_SECONDS", "600"))

    rule_tick_seconds: int = int(os.getenv("RULE_TICK_SECONDS", "30"))
    gate_lock_timeout_seconds: float = float(os.getenv("GATE_LOCK_TIMEOUT_SECONDS", "2"))
    # "block_when_true" or "require_true"
    safety_check_policy: str = os.getenv("SAFETY_CHECK_POLICY", "block_when_true")
    critical_alert_engages_emergency: bool = os.getenv("CRITICAL_ALERT_ENGAGES_EMERGENCY", "true").lower() == "true"
    known_sensors_csv: str = os.getenv("KNOWN_SENSORS", DEFAULT_SENSORS)

    scheduler_enabled: bool = os.getenv("SCHEDULER_ENABLED", "true").lower() == "true"
    liveness_sweep_enabled: bool = os.getenv("LIVENESS_SWEEP_ENABLED", "false").lower() == "true"
    seed_default_rules: bool = os.getenv("SEED_DEFAULT_RULES", "true").lower() == "true"

    @property
    def known_sensors(self) -> List[str]:
        return [s.strip() for s in self.known_sensors_csv.split(",") if s.strip()]


settings = Settings()


def _connect_args(url: str, timeout: float) -> dict:
    if "sqlite" in url:
        return {"check_same_thread": False, "timeout": timeout}
    if url.startswith("postgresql"):
        return {"connect_timeout": int(timeout), "options": f"-c statement_timeout={int(timeout * 1000)}"}
    return {}


engine_options = {}
if "sqlite" not in settings.database_url:
    engine_options["pool_timeout"] = settings.store_timeout_seconds

engine = create_engine(
    settings.database_url,
    connect_args=_connect_args(settings.database_url, settings.store_timeout_seconds),
    **engine_options,
)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


def get_utc_datetime() -> datetime:
    """Naive UTC now, matching how timestamps are stored"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_epoch_ms(value: datetime) -> int:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp() * 1000)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()

"""
Shared fixtures: a throwaway SQLite database, no scheduler, no seeded rules
"""
import os
import tempfile

_tmpdir = tempfile.mkdtemp(prefix="relayhub-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_tmpdir, 'relayhub_test.db')}"
os.environ["SCHEDULER_ENABLED"] = "false"
os.environ["SEED_DEFAULT_RULES"] = "false"
os.environ["COMMAND_QUEUE_BACKEND"] = "database"

import pytest
from fastapi.testclient import TestClient

from relayhub.database import SessionLocal, engine
from relayhub.models import Base
from relayhub.services.command_queue import reset_transient_queue
from relayhub.services.gate import reset_gate
from relayhub.services.rule_engine import reset_engine_state


@pytest.fixture(autouse=True)
def fresh_state():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    reset_gate()
    reset_transient_queue()
    reset_engine_state()
    yield


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def client():
    from relayhub.main import app
    return TestClient(app)

"""
Pytest configuration and shared fixtures for the Alert Engine test suite.
"""
import os
import sys

# ============================================================================
# CRITICAL: Set test environment BEFORE importing the application
# In-memory SQLite shared through a StaticPool; no background scheduler.
# ============================================================================
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["SCHEDULER_ENABLED"] = "false"
os.environ["DISPATCH_WEBHOOK_URL"] = ""

# Add parent directory to path FIRST
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

# Clear the settings cache to ensure our env vars are picked up
from alert_engine.config import get_settings
get_settings.cache_clear()

import pytest
from typing import Generator
from sqlalchemy.orm import sessionmaker, Session
from fastapi.testclient import TestClient

from alert_engine.database import Base, get_db, engine
from alert_engine.dependencies import (
    get_escalation_queue,
    get_notification_dispatcher,
    get_rule_cache_dependency,
)
from alert_engine.main import app
from alert_engine.schemas import DispatchAction, DispatchResult
from alert_engine.services.notification_dispatcher import NotificationDispatcher
from alert_engine.services.rule_cache import RuleCache, get_rule_cache
from alert_engine.services.scheduler_service import EscalationQueue


# ============================================================================
# Test doubles for the outer boundaries
# ============================================================================

class FakeQueue(EscalationQueue):
    """In-memory stand-in for the durable timer queue."""

    def __init__(self):
        self.scheduled = {}
        self.cancelled = []

    def schedule(self, escalation_job_id, fire_at):
        self.scheduled[escalation_job_id] = fire_at

    def cancel(self, escalation_job_id):
        self.scheduled.pop(escalation_job_id, None)
        self.cancelled.append(escalation_job_id)


class FakeDispatcher(NotificationDispatcher):
    """Records every action; succeeds unless told otherwise."""

    def __init__(self, success: bool = True):
        self.success = success
        self.actions = []

    def dispatch(self, action: DispatchAction) -> DispatchResult:
        self.actions.append(action)
        if self.success:
            return DispatchResult(success=True, provider_message_id=f"msg-{len(self.actions)}")
        return DispatchResult(success=False, error="channel unavailable")


# ============================================================================
# Database Fixtures
# ============================================================================

@pytest.fixture(scope="function")
def test_db_engine():
    """Create all tables on the in-memory engine and wipe data after the test."""
    Base.metadata.create_all(bind=engine)

    yield engine

    # Clean up - delete all data but keep schema for speed
    with engine.connect() as conn:
        for table in reversed(Base.metadata.sorted_tables):
            conn.execute(table.delete())
        conn.commit()


@pytest.fixture(scope="function")
def test_db_session(test_db_engine) -> Generator[Session, None, None]:
    """Create a test database session."""
    TestingSessionLocal = sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=test_db_engine
    )

    session = TestingSessionLocal()

    try:
        yield session
    finally:
        session.rollback()
        session.close()


# Alias for tests that use db_session
@pytest.fixture(scope="function")
def db_session(test_db_session) -> Generator[Session, None, None]:
    yield test_db_session


# ============================================================================
# Engine Fixtures
# ============================================================================

@pytest.fixture
def fake_queue() -> FakeQueue:
    return FakeQueue()


@pytest.fixture
def fake_dispatcher() -> FakeDispatcher:
    return FakeDispatcher()


@pytest.fixture
def rule_cache() -> RuleCache:
    return RuleCache(ttl_seconds=60)


@pytest.fixture(autouse=True)
def clear_global_rule_cache():
    """The process-wide cache must not leak rules between tests."""
    get_rule_cache().clear()
    yield
    get_rule_cache().clear()


@pytest.fixture
def workspace_id() -> str:
    return "ws-test"


@pytest.fixture
def headers(workspace_id) -> dict:
    return {"X-Workspace-Id": workspace_id}


# ============================================================================
# API Fixtures
# ============================================================================

@pytest.fixture(scope="function")
def test_client(test_db_session, fake_queue, fake_dispatcher, rule_cache) -> Generator[TestClient, None, None]:
    """Create a FastAPI test client wired to the test database and fakes."""
    def override_get_db():
        try:
            yield test_db_session
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_escalation_queue] = lambda: fake_queue
    app.dependency_overrides[get_notification_dispatcher] = lambda: fake_dispatcher
    app.dependency_overrides[get_rule_cache_dependency] = lambda: rule_cache

    with TestClient(app) as client:
        yield client

    app.dependency_overrides.clear()

"""
Pytest fixtures and test configuration for marketflow tests.
"""

from datetime import datetime, timedelta, timezone

import pytest

from marketflow.blocks import InMemoryBlockService
from marketflow.cache import InMemoryTagCache
from marketflow.config import WorkflowSettings
from marketflow.engine import WorkflowEngine
from marketflow.notifications import NotificationDispatcher, RecordingTransport
from marketflow.storage import InMemoryEntityStore, SQLiteEntityStore

T0 = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


def days(n: float) -> timedelta:
    return timedelta(days=n)


@pytest.fixture
def now():
    """The engine clock: every operation without an explicit time runs at T0."""
    return T0


@pytest.fixture
def settings():
    """Default settings, isolated from any .env or environment variables."""
    return WorkflowSettings(_env_file=None)


@pytest.fixture
def store():
    """Create in-memory entity store for testing."""
    return InMemoryEntityStore()


@pytest.fixture
def sqlite_store(tmp_path):
    """Create a SQLite entity store in a temporary directory."""
    return SQLiteEntityStore(tmp_path / "marketflow.db")


@pytest.fixture
def blocks():
    return InMemoryBlockService()


@pytest.fixture
def cache():
    return InMemoryTagCache()


@pytest.fixture
def transport():
    return RecordingTransport()


@pytest.fixture
def dispatcher(transport, blocks):
    """Dispatcher with one recording transport; shut down after the test."""
    d = NotificationDispatcher([transport], blocks, max_workers=2)
    yield d
    d.shutdown()


@pytest.fixture
def engine(store, blocks, cache, dispatcher, settings):
    """Create workflow engine with in-memory collaborators and a fixed clock."""
    return WorkflowEngine(
        store=store,
        blocks=blocks,
        cache=cache,
        dispatcher=dispatcher,
        settings=settings,
        clock=lambda: T0,
    )


@pytest.fixture
def owner(engine):
    return engine.register_user("Olivia Owner", "owner@example.com", verified=True)


@pytest.fixture
def worker(engine):
    return engine.register_user("Wes Worker", "worker@example.com", verified=True)


@pytest.fixture
def other(engine):
    return engine.register_user("Otto Other", "other@example.com", verified=True)


@pytest.fixture
def admin(engine):
    return engine.register_user("Ada Admin", "admin@example.com", is_admin=True, verified=True)


@pytest.fixture
def open_job(engine, owner):
    return engine.create_job(
        owner.id,
        "Logo design",
        description="Vector logo for a bakery",
        budget_min=100,
        budget_max=200,
        deadline=T0 + days(14),
    )


@pytest.fixture
def assigned_job(engine, owner, worker, open_job):
    return engine.assign_user(owner.id, open_job.id, worker.id)


@pytest.fixture
def completed_job(engine, owner, assigned_job):
    return engine.complete_job(owner.id, assigned_job.id)


@pytest.fixture
def held_payment(engine, owner, completed_job):
    payment = engine.create_payment(owner.id, completed_job.id, 150)
    return engine.hold_payment(owner.id, payment.id)

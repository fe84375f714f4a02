"""Test fixtures using a real SQLite database file via aiosqlite.

The schema comes from the same SQL migrations production runs, so the
compare-and-swap statements execute against a real database engine.
"""

from datetime import UTC, datetime, timedelta

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from stagesync.config import Settings
from stagesync.presence import PresenceTracker
from stagesync.state import VersionedStateStore, default_registry
from stagesync.storage.database import Database
from stagesync.storage.migrator import run_migrations

# ---------------------------------------------------------------------------
# Fake clock for presence expiry
# ---------------------------------------------------------------------------


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2025, 9, 14, 20, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


# ---------------------------------------------------------------------------
# Database fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings pointed at a throwaway SQLite file."""
    return Settings(DATABASE_URL=f"sqlite+aiosqlite:///{tmp_path / 'stagesync.db'}")


@pytest_asyncio.fixture
async def db(settings):
    """Connected database with migrations applied."""
    database = Database(settings)
    await database.connect()
    await run_migrations(database.engine)
    yield database
    await database.disconnect()


@pytest.fixture
def store(db, settings) -> VersionedStateStore:
    return VersionedStateStore(db, default_registry(), timeout=settings.db_timeout)


# ---------------------------------------------------------------------------
# Presence fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def presence(clock, settings) -> PresenceTracker:
    return PresenceTracker(ttl_seconds=settings.presence_ttl_seconds, clock=clock)


# ---------------------------------------------------------------------------
# App fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def app(store, presence, db, settings):
    """Starlette app wired to the test store and tracker."""
    from stagesync.api.rest import create_app

    return create_app(store, presence, db, settings)


@pytest_asyncio.fixture
async def client(app):
    """Async HTTP client using httpx ASGITransport."""
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c


# ---------------------------------------------------------------------------
# Payload helpers
# ---------------------------------------------------------------------------


@pytest.fixture
def monitoring_payload() -> dict:
    return {
        "acknowledgedAlerts": {"alert-churn": True},
        "deltaOverrides": {"delta-owner-earnings": "on-track"},
    }


@pytest.fixture
def memo_payload() -> dict:
    return {
        "sections": {"thesis": "Durable moat in regional distribution."},
        "reviewChecklist": {"sources-cited": True, "risks-listed": False},
        "attachments": {"chart-1": {"include": True, "caption": "Revenue bridge"}},
        "commentThreads": {
            "thesis": [
                {
                    "id": "c-1",
                    "author": "analyst-a",
                    "message": "Quantify the moat?",
                    "status": "open",
                    "createdAt": "2025-09-14T15:00:00.000Z",
                }
            ]
        },
    }

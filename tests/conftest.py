"""Test fixtures for the sync engine.

Provides:
- A file-backed SQLite engine per test with every sync table created
- A session factory bound to it (the same callable shape repositories use)
- RecordingObserver for asserting on emitted sync events
- FakeClock / recorded sleeps so rate limiting and delays run instantly
"""

from __future__ import annotations

from collections.abc import AsyncGenerator

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from src.syncengine.config import get_settings
from src.syncengine.core.database import SessionFactory, init_db, make_session_factory
from src.syncengine.sync.observer import SyncObserver


@pytest.fixture(autouse=True)
def _fresh_settings():
    """Settings are cached; clear so per-test env overrides apply."""
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest_asyncio.fixture
async def engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    """SQLite engine on a temp file with all sync tables created."""
    db_engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'sync.db'}")
    await init_db(db_engine)
    yield db_engine
    await db_engine.dispose()


@pytest.fixture
def session_factory(engine) -> SessionFactory:
    return make_session_factory(engine)


# ── Time helpers ────────────────────────────────────────────────────────────


class FakeClock:
    """Monotonic clock advanced only by the paired sleep()."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += max(seconds, 0.0)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


class RecordedSleep:
    """Awaitable sleep that records durations without waiting."""

    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)

    @property
    def total(self) -> float:
        return sum(self.calls)


@pytest.fixture
def recorded_sleep() -> RecordedSleep:
    return RecordedSleep()


# ── Observer ────────────────────────────────────────────────────────────────


class RecordingObserver(SyncObserver):
    """Observer that keeps every event as (name, payload) tuples."""

    def __init__(self) -> None:
        self.events: list[tuple[str, dict]] = []

    def names(self) -> list[str]:
        return [name for name, _ in self.events]

    def of(self, name: str) -> list[dict]:
        return [payload for event, payload in self.events if event == name]

    def rate_limit_wait(self, limiter, wait_seconds):
        self.events.append(("rate_limit_wait", {"limiter": limiter, "wait_seconds": wait_seconds}))

    def fetch_attempt(self, url, attempt, outcome, status_code):
        self.events.append(
            (
                "fetch_attempt",
                {"url": url, "attempt": attempt, "outcome": outcome, "status_code": status_code},
            )
        )

    def retry_scheduled(self, url, attempt, delay_seconds, reason):
        self.events.append(
            ("retry_scheduled", {"attempt": attempt, "delay_seconds": delay_seconds, "reason": reason})
        )

    def page_fetched(self, page_index, page_size, total):
        self.events.append(("page_fetched", {"page": page_index, "size": page_size, "total": total}))

    def page_failed(self, page_index, error, consecutive_errors):
        self.events.append(
            ("page_failed", {"page": page_index, "error": error, "consecutive": consecutive_errors})
        )

    def transform_failures(self, label, failures, total):
        self.events.append(("transform_failures", {"label": label, "failed": len(failures), "total": total}))

    def batch_committed(self, entity, batch_index, size):
        self.events.append(("batch_committed", {"entity": entity, "batch": batch_index, "size": size}))

    def batch_failed(self, entity, batch_index, size, error):
        self.events.append(
            ("batch_failed", {"entity": entity, "batch": batch_index, "size": size, "error": error})
        )

    def drift_finding(self, connector, action, field_count):
        self.events.append(("drift_finding", {"connector": connector, "action": action, "fields": field_count}))

    def sync_completed(self, tenant_id, connector, result):
        self.events.append(("sync_completed", {"tenant_id": tenant_id, "connector": connector, "result": result}))


@pytest.fixture
def observer() -> RecordingObserver:
    return RecordingObserver()

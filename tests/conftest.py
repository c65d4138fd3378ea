"""
WikiBlocks Backend — Test Configuration (conftest.py)
=======================================================

What:  Shared pytest fixtures for the entire test suite.
How:   Every test gets its own SQLite file (aiosqlite) with the schema
       created from Base.metadata, a controllable clock, and services wired
       against both. Nothing touches a real PostgreSQL server.

Fixture Hierarchy (all function-scoped):
    session_factory ─┬─ history_queue ── recorder ─┬─ block_service
                     │                             │
    clock ───────────┴─────────────────────────────┴─ retention_service
                     ├─ page_service
                     ├─ timeline_service
                     └─ test_client (full app over ASGITransport)
"""

import os

# Override settings for testing BEFORE any wikiblocks imports
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///./wikiblocks_test.db"
os.environ["LOG_LEVEL"] = "WARNING"
os.environ["HISTORY_WORKERS"] = "1"
os.environ["HISTORY_RETRY_MIN_WAIT"] = "0"
os.environ["HISTORY_RETRY_MAX_WAIT"] = "0"

from datetime import datetime, timedelta, timezone
from typing import Optional
from unittest.mock import MagicMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from wikiblocks.database import Base, build_session_factory
from wikiblocks.models.history import HistoryRecord
from wikiblocks.schemas.page import PageCreate
from wikiblocks.services.block_service import BlockService
from wikiblocks.services.history_queue import HistoryWriteQueue
from wikiblocks.services.history_recorder import HistoryRecorder
from wikiblocks.services.history_store import HistoryStore
from wikiblocks.services.page_service import PageService
from wikiblocks.services.retention_service import RetentionService
from wikiblocks.services.timeline_service import TimelineService

OWNER = 1
OTHER_OWNER = 2


class FakeClock:
    """
    Callable clock that advances by `step` on every call.

    step=timedelta(0) gives a fixed clock. `advance()` jumps forward
    explicitly, e.g. to age records past a retention window.
    """

    def __init__(self, start: datetime, step: timedelta = timedelta(seconds=1)):
        self.now = start
        self.step = step

    def __call__(self) -> datetime:
        current = self.now
        self.now = self.now + self.step
        return current

    def advance(self, delta: timedelta) -> None:
        self.now = self.now + delta


def naive(value: datetime) -> datetime:
    """SQLite hands timestamps back without tzinfo; compare wall-clock UTC."""
    return value.replace(tzinfo=None)


async def fetch_history(factory, page_id: Optional[int] = None):
    """All history rows (optionally for one page) in insertion order."""
    async with factory() as session:
        stmt = select(HistoryRecord).order_by(HistoryRecord.id)
        if page_id is not None:
            stmt = stmt.where(HistoryRecord.page_id == page_id)
        result = await session.execute(stmt)
        return list(result.scalars().all())


# ══════════════════════════════════════════════════════════════════════════
# Storage
# ══════════════════════════════════════════════════════════════════════════

@pytest_asyncio.fixture
async def session_factory(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'wikiblocks.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield build_session_factory(engine)
    await engine.dispose()


@pytest.fixture
def untouchable_factory():
    """A session factory that must never be called."""
    return MagicMock(spec=async_sessionmaker)


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def store():
    return HistoryStore()


# ══════════════════════════════════════════════════════════════════════════
# Services
# ══════════════════════════════════════════════════════════════════════════

@pytest_asyncio.fixture
async def history_queue(session_factory, store):
    queue = HistoryWriteQueue(
        session_factory=session_factory,
        store=store,
        maxsize=100,
        workers=1,
        max_attempts=3,
        min_wait=0,
        max_wait=0,
    )
    yield queue
    await queue.stop()


@pytest.fixture
def recorder(history_queue, store, clock):
    return HistoryRecorder(queue=history_queue, store=store, clock=clock)


@pytest.fixture
def page_service(session_factory, store):
    return PageService(session_factory, store, slug_max_attempts=5)


@pytest.fixture
def block_service(session_factory, recorder, store):
    return BlockService(session_factory, recorder, store)


@pytest.fixture
def timeline_service(session_factory, store):
    return TimelineService(session_factory, store, preview_text_length=20, max_limit=50)


@pytest.fixture
def retention_service(session_factory, store, clock):
    return RetentionService(session_factory, store, clock=clock)


@pytest_asyncio.fixture
async def page(page_service):
    return await page_service.create_page(OWNER, PageCreate(title="Sprint Notes"))


# ══════════════════════════════════════════════════════════════════════════
# HTTP
# ══════════════════════════════════════════════════════════════════════════

@pytest_asyncio.fixture
async def app(session_factory, clock):
    """
    A fresh app wired to the per-test database and clock.

    ASGITransport does not run the lifespan, so the history queue starts
    lazily on the first submit and is stopped here.
    """
    from wikiblocks.main import create_app

    application = create_app(session_factory=session_factory, clock=clock)
    yield application
    await application.state.services.history_queue.stop()


@pytest_asyncio.fixture
async def test_client(app):
    transport = ASGITransport(app=app)
    async with AsyncClient(
        transport=transport,
        base_url="http://test",
        headers={"X-User-ID": str(OWNER)},
    ) as client:
        yield client

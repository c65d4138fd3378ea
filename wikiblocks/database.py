"""
WikiBlocks Backend — Database Engine & Session Management
===========================================================

What:  Async SQLAlchemy engine construction, session factory, declarative
       base, and the transactional `session_scope` helper used by services.
Why:   Centralizes all database connection logic in one place.
How:   `build_engine()` creates an async engine with connection pooling;
       `build_session_factory()` wraps it in an `async_sessionmaker`.
       Services never import the module-level engine; they receive a
       session factory explicitly, which lets tests inject their own.
Who:   The app factory (main.py) wires the module-level factory into the
       services container; tests build a throwaway SQLite factory.

Connection Pooling Strategy:
    pool_size=20:     Persistent connections for normal load
    max_overflow=10:  Temporary connections for traffic spikes (total max = 30)
    pool_pre_ping:    Validates connections before use (catches stale connections)
    pool_recycle=3600: Recycles connections every hour

    SQLite URLs skip the pool arguments: aiosqlite engines pick their own
    pool class and reject QueuePool sizing options for in-memory databases.
"""

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Tuple, Type

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from wikiblocks.config import settings
from wikiblocks.exceptions import FatalTransactionError, WikiBlocksError

logger = logging.getLogger(__name__)


def build_engine(database_url: str) -> AsyncEngine:
    """
    Create an async engine for the given URL.

    Pool sizing comes from settings for server databases; SQLite is used
    for tests and local experiments and gets the driver defaults.
    """
    if database_url.startswith("sqlite"):
        return create_async_engine(database_url, echo=settings.log_level == "DEBUG")

    return create_async_engine(
        database_url,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        pool_pre_ping=settings.db_pool_pre_ping,
        pool_recycle=3600,
        # SQL logging is noisy; only useful during development
        echo=settings.log_level == "DEBUG",
    )


def build_session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """
    Create the session factory handed to every service.

    expire_on_commit=False: services serialize ORM objects after commit;
    without this, attribute access after commit would trigger lazy loads
    outside the session context.
    """
    return async_sessionmaker(bind, class_=AsyncSession, expire_on_commit=False)


# ── Module-level Engine ───────────────────────────────────────────────────
# Used by the application factory and the health check only.
engine = build_engine(settings.database_url)
async_session_factory = build_session_factory(engine)


class Base(DeclarativeBase):
    """
    Base class for all SQLAlchemy ORM models.

    Registers every model with a single metadata object, which Alembic
    reads for migrations and tests use for `create_all`.
    """
    pass


@asynccontextmanager
async def session_scope(
    factory: async_sessionmaker[AsyncSession],
) -> AsyncIterator[AsyncSession]:
    """
    Open a session that commits on success and rolls back on any error.

    How it works:
        1. Creates a new session from the injected factory
        2. Yields it to the caller (the caller performs queries/writes)
        3. On success: commits the transaction
        4. On error: rolls back and re-raises
        5. Always: closes the session (returns connection to pool)

    Example usage in a service:
        async with session_scope(self._session_factory) as session:
            session.add(page)
    """
    async with factory() as session:
        try:
            yield session
            await session.commit()
        except BaseException:
            # Roll back for ANY failure, including cancellation, so a
            # half-written mutation never reaches the database
            await session.rollback()
            raise
        finally:
            await session.close()


async def dispose_engine() -> None:
    """
    Gracefully close all connections in the module-level pool.

    Called during application shutdown (lifespan handler).
    """
    await engine.dispose()


@asynccontextmanager
async def mutation_scope(
    factory: async_sessionmaker[AsyncSession],
    action: str,
    passthrough: Tuple[Type[Exception], ...] = (),
    **context: Any,
) -> AsyncIterator[AsyncSession]:
    """
    `session_scope` for primary mutations.

    Application errors (not found, validation) and the exception types in
    `passthrough` are re-raised unchanged after the rollback, so a caller
    can retry them. Anything else, including a failed commit, is logged and
    re-raised as FatalTransactionError.
    """
    try:
        async with session_scope(factory) as session:
            yield session
    except WikiBlocksError:
        raise
    except passthrough:
        raise
    except Exception as e:
        logger.error(f"{action} failed, transaction rolled back: {e}", extra=context)
        raise FatalTransactionError(context={"action": action, **context}) from e

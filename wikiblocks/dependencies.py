"""
WikiBlocks Backend — Service Wiring & Request Dependencies
============================================================

What:  Builds the service graph once per application and exposes FastAPI
       dependencies for it and for the caller's owner id.
Why:   Services take their session factory and clock as constructor
       arguments instead of importing globals, so tests can wire the whole
       graph against a throwaway SQLite database and a fake clock.
How:   `build_services()` is called by the app factory and the container is
       stored on `app.state.services`; route handlers get it through
       `Depends(get_services)`.
"""

from dataclasses import dataclass
from typing import Optional

from fastapi import Header, Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from wikiblocks.config import Settings
from wikiblocks.exceptions import AuthenticationError
from wikiblocks.services.block_service import BlockService
from wikiblocks.services.history_queue import HistoryWriteQueue
from wikiblocks.services.history_recorder import HistoryRecorder
from wikiblocks.services.history_store import HistoryStore
from wikiblocks.services.page_service import PageService
from wikiblocks.services.retention_service import RetentionService
from wikiblocks.services.timeline_service import TimelineService
from wikiblocks.utils import Clock, utcnow


@dataclass
class ServiceContainer:
    history_queue: HistoryWriteQueue
    recorder: HistoryRecorder
    pages: PageService
    blocks: BlockService
    timeline: TimelineService
    retention: RetentionService


def build_services(
    session_factory: async_sessionmaker[AsyncSession],
    app_settings: Settings,
    clock: Clock = utcnow,
) -> ServiceContainer:
    store = HistoryStore()
    queue = HistoryWriteQueue(
        session_factory=session_factory,
        store=store,
        maxsize=app_settings.history_queue_maxsize,
        workers=app_settings.history_workers,
        max_attempts=app_settings.history_retry_max_attempts,
        min_wait=app_settings.history_retry_min_wait,
        max_wait=app_settings.history_retry_max_wait,
    )
    recorder = HistoryRecorder(queue=queue, store=store, clock=clock)
    return ServiceContainer(
        history_queue=queue,
        recorder=recorder,
        pages=PageService(session_factory, store, slug_max_attempts=app_settings.slug_max_attempts),
        blocks=BlockService(session_factory, recorder, store),
        timeline=TimelineService(
            session_factory,
            store,
            preview_text_length=app_settings.preview_text_length,
            max_limit=app_settings.history_max_limit,
        ),
        retention=RetentionService(session_factory, store, clock=clock),
    )


def get_services(request: Request) -> ServiceContainer:
    return request.app.state.services


def get_owner_id(x_user_id: Optional[str] = Header(default=None)) -> int:
    """
    The authenticated user id forwarded by the gateway in X-User-ID.

    Missing, non-numeric or non-positive values are rejected with 401.
    """
    if x_user_id is None or not x_user_id.strip().isdigit():
        raise AuthenticationError()
    owner_id = int(x_user_id.strip())
    if owner_id < 1:
        raise AuthenticationError()
    return owner_id

"""
WikiBlocks Backend — History Write Queue
==========================================

What:  Background writer for best-effort history records (create, update,
       snapshot).
Why:   A history write must never fail or slow down the block mutation that
       triggered it. Submitting to a queue after the primary commit keeps the
       request path independent of history storage, while retries and
       counters keep lost writes visible instead of silently swallowed.
How:   A bounded asyncio.Queue served by N worker tasks. Each job opens its
       own session via the injected factory and is retried with tenacity on
       SQLAlchemyError other than IntegrityError (exponential backoff with
       jitter). A job whose page has been deleted meanwhile is skipped.

Lifecycle:
    start()  → spawns workers (also done lazily by the first submit)
    drain()  → waits until every queued job has been processed
    stop()   → drain, then cancel workers (FastAPI lifespan shutdown)

Failure Accounting:
    submitted  jobs accepted onto the queue
    succeeded  jobs written
    retried    individual retry sleeps (one job can add several)
    failed     jobs given up on after the last attempt or a non-retryable error
    dropped    jobs rejected because the queue was full
    skipped    jobs whose page no longer existed when they were written
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    retry_if_not_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)

from wikiblocks.database import session_scope
from wikiblocks.exceptions import TransientHistoryWriteError
from wikiblocks.services.history_store import HistoryStore

logger = logging.getLogger(__name__)


@dataclass
class HistoryJob:
    """One pending history insert, captured at submit time."""
    owner_id: int
    page_id: int
    block_id: Optional[int]
    operation: str
    created_at: datetime
    block_data: Optional[Dict[str, Any]] = None
    snapshot_data: Optional[Dict[str, Any]] = None
    request_id: str = ""

    def describe(self) -> Dict[str, Any]:
        return {
            "operation": self.operation,
            "page_id": self.page_id,
            "block_id": self.block_id,
            "request_id": self.request_id,
        }


@dataclass
class QueueStats:
    submitted: int = 0
    succeeded: int = 0
    failed: int = 0
    retried: int = 0
    dropped: int = 0
    skipped: int = 0

    def as_dict(self) -> Dict[str, int]:
        return {
            "submitted": self.submitted,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "retried": self.retried,
            "dropped": self.dropped,
            "skipped": self.skipped,
        }


@dataclass
class HistoryWriteQueue:
    """
    Fire-and-forget writer with bounded memory and retrying workers.

    Construct once per application (see dependencies.build_services) and
    share it between the recorder and the health check.
    """

    session_factory: async_sessionmaker[AsyncSession]
    store: HistoryStore
    maxsize: int = 1000
    workers: int = 2
    max_attempts: int = 3
    min_wait: float = 0.5
    max_wait: float = 5.0
    stats: QueueStats = field(default_factory=QueueStats)
    _queue: Optional["asyncio.Queue[HistoryJob]"] = field(default=None, init=False, repr=False)
    _tasks: List["asyncio.Task[None]"] = field(default_factory=list, init=False, repr=False)

    # ── Lifecycle ─────────────────────────────────────────────────────────

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    @property
    def pending(self) -> int:
        return self._queue.qsize() if self._queue is not None else 0

    def start(self) -> None:
        """
        Spawn the worker tasks. Idempotent.

        Must be called from inside a running event loop; the queue is bound
        to the loop that first uses it.
        """
        if self._queue is None:
            self._queue = asyncio.Queue(maxsize=self.maxsize)
        if self.running:
            return
        self._tasks = [
            asyncio.create_task(self._worker(self._queue, i), name=f"history-writer-{i}")
            for i in range(self.workers)
        ]
        logger.info("History write queue started", extra={"workers": self.workers})

    async def drain(self) -> None:
        """Block until every job submitted so far has succeeded or failed."""
        if self._queue is None:
            return
        await self._queue.join()

    async def stop(self) -> None:
        """Flush outstanding jobs, then cancel the workers."""
        if self._queue is not None and self.running:
            await self.drain()
        for task in self._tasks:
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("History write queue stopped", extra=self.stats.as_dict())

    def snapshot_stats(self) -> Dict[str, int]:
        counters = self.stats.as_dict()
        counters["pending"] = self.pending
        return counters

    # ── Submission ────────────────────────────────────────────────────────

    def submit(self, job: HistoryJob) -> bool:
        """
        Enqueue a job without waiting. Returns False when it was dropped.

        Never raises: a full queue is a lost history entry, not a failed
        request.
        """
        self.start()
        try:
            self._queue.put_nowait(job)
        except asyncio.QueueFull:
            self.stats.dropped += 1
            error = TransientHistoryWriteError(
                message="History queue is full; entry dropped",
                context=job.describe(),
            )
            logger.error(error.message, extra=error.context)
            return False
        self.stats.submitted += 1
        return True

    # ── Workers ───────────────────────────────────────────────────────────

    async def _worker(self, queue: "asyncio.Queue[HistoryJob]", index: int) -> None:
        while True:
            job = await queue.get()
            try:
                if await self._write_with_retry(job):
                    self.stats.succeeded += 1
                else:
                    self.stats.skipped += 1
                    logger.info("History write skipped, page deleted", extra=job.describe())
            except Exception as e:
                self.stats.failed += 1
                error = TransientHistoryWriteError(
                    context={**job.describe(), "error": str(e), "worker": index},
                )
                logger.error(
                    f"{error.message}: {type(e).__name__}",
                    extra=error.context,
                )
            finally:
                queue.task_done()

    async def _write_with_retry(self, job: HistoryJob) -> bool:
        retrying = AsyncRetrying(
            # What: Only transient storage errors are worth retrying; bad
            # payloads (TypeError from json encoding) and constraint
            # violations fail immediately
            retry=(
                retry_if_exception_type(SQLAlchemyError)
                & retry_if_not_exception_type(IntegrityError)
            ),
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential_jitter(
                initial=self.min_wait,
                max=self.max_wait,
                jitter=self.min_wait,
            ),
            before_sleep=self._before_retry,
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                return await self._write(job)
        return False

    async def _write(self, job: HistoryJob) -> bool:
        """Insert the record; False when its page is gone and nothing was written."""
        async with session_scope(self.session_factory) as session:
            if not await self.store.page_exists(session, job.page_id):
                return False
            await self.store.add(
                session,
                owner_id=job.owner_id,
                page_id=job.page_id,
                block_id=job.block_id,
                operation=job.operation,
                created_at=job.created_at,
                block_data=job.block_data,
                snapshot_data=job.snapshot_data,
                created_by=job.owner_id,
            )
        return True

    def _before_retry(self, retry_state: RetryCallState) -> None:
        self.stats.retried += 1
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            f"Retrying history write (attempt {retry_state.attempt_number}/{self.max_attempts})",
            extra={"error": str(exc)},
        )

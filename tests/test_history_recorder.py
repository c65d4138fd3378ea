"""
WikiBlocks Backend — History Recorder & Write Queue Tests
===========================================================

What we test:
    ✅ Payload shapes for create / update / delete / snapshot records
    ✅ Timestamps come from the clock at record time
    ✅ Missing ids are rejected before any storage access
    ✅ Best-effort writes never raise into the caller
    ✅ Queue retries storage errors, counts failures and drops
    ✅ Constraint violations are not retried; jobs for deleted pages are skipped
    ✅ Delete records join the caller's transaction
"""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from conftest import OWNER, fetch_history, naive
from wikiblocks.database import session_scope
from wikiblocks.exceptions import ValidationError
from wikiblocks.middleware.request_id import request_id_var
from wikiblocks.services.history_queue import HistoryJob, HistoryWriteQueue
from wikiblocks.services.history_recorder import HistoryRecorder, compute_change_count
from wikiblocks.utils import safe_parse_json


def _block(block_id=10, text="Hello", block_type="text"):
    return {
        "id": block_id,
        "page_id": 1,
        "owner_id": OWNER,
        "type": block_type,
        "properties": {"title": [[text]]},
        "format": {},
        "order_index": 0,
    }


class TestComputeChangeCount:
    def test_identical_arrays(self):
        assert compute_change_count([_block()], [_block(block_id=99)]) == 0

    def test_changed_position_counts(self):
        assert compute_change_count([_block(text="a")], [_block(text="b")]) == 1

    def test_extra_positions_count(self):
        assert compute_change_count([], [_block(), _block()]) == 2
        assert compute_change_count([_block(), _block()], [_block()]) == 1


class TestRecorderPayloads:
    @pytest.mark.asyncio
    async def test_create_record(self, recorder, history_queue, session_factory, page, clock):
        expected_time = clock.now
        await recorder.record_block_create(OWNER, page.id, 10, _block())
        await history_queue.drain()

        [record] = await fetch_history(session_factory, page.id)
        assert record.operation == "create"
        assert record.block_id == 10
        assert record.created_by == OWNER
        assert record.snapshot_data is None
        assert safe_parse_json(record.block_data)["type"] == "text"
        assert naive(record.created_at) == naive(expected_time)

    @pytest.mark.asyncio
    async def test_update_record_merges_changes(self, recorder, history_queue, session_factory, page):
        old = _block(text="before")
        await recorder.record_block_update(
            OWNER, page.id, 10, old, {"properties": {"title": [["after"]]}}
        )
        await history_queue.drain()

        [record] = await fetch_history(session_factory, page.id)
        data = safe_parse_json(record.block_data)
        assert data["old"]["properties"] == {"title": [["before"]]}
        assert data["new"]["properties"] == {"title": [["after"]]}
        # Untouched fields carry over into `new`
        assert data["new"]["type"] == "text"
        assert data["new"]["id"] == 10

    @pytest.mark.asyncio
    async def test_snapshot_record(self, recorder, history_queue, session_factory, page):
        blocks = [_block(1, "one"), _block(2, "two", "heading")]
        await recorder.record_page_snapshot(OWNER, page.id, [], blocks)
        await history_queue.drain()

        [record] = await fetch_history(session_factory, page.id)
        assert record.operation == "snapshot"
        assert record.block_id is None
        assert record.block_data is None
        snapshot = safe_parse_json(record.snapshot_data)
        assert snapshot["blocks"] == blocks
        assert snapshot["page_id"] == page.id
        assert snapshot["owner_id"] == OWNER
        assert snapshot["change_count"] == 2
        assert "saved_at" in snapshot

    @pytest.mark.asyncio
    async def test_snapshot_explicit_change_count(self, recorder, history_queue, session_factory, page):
        await recorder.record_page_snapshot(OWNER, page.id, [], [_block()], change_count=7)
        await history_queue.drain()
        [record] = await fetch_history(session_factory, page.id)
        assert safe_parse_json(record.snapshot_data)["change_count"] == 7

    @pytest.mark.asyncio
    async def test_snapshot_rejects_non_list(self, recorder):
        with pytest.raises(ValidationError):
            await recorder.record_page_snapshot(OWNER, 1, [], {"not": "a list"})

    @pytest.mark.asyncio
    async def test_timestamp_taken_at_record_time(self, recorder, history_queue, session_factory, page, clock):
        first = clock.now
        await recorder.record_block_create(OWNER, page.id, 1, _block(1))
        clock.advance(timedelta(hours=1))
        await recorder.record_block_create(OWNER, page.id, 2, _block(2))
        await history_queue.drain()

        records = await fetch_history(session_factory, page.id)
        assert naive(records[0].created_at) == naive(first)
        assert records[1].created_at - records[0].created_at >= timedelta(hours=1)

    @pytest.mark.asyncio
    async def test_job_carries_request_id(self, store, clock):
        queue = MagicMock()
        recorder = HistoryRecorder(queue=queue, store=store, clock=clock)
        token = request_id_var.set("req-123")
        try:
            await recorder.record_block_create(OWNER, 1, 5, _block())
        finally:
            request_id_var.reset(token)
        job = queue.submit.call_args.args[0]
        assert job.request_id == "req-123"


class TestRecorderValidation:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("owner_id", [None, 0, "x"])
    async def test_missing_owner_rejected_without_submit(self, store, clock, owner_id):
        queue = MagicMock()
        recorder = HistoryRecorder(queue=queue, store=store, clock=clock)
        with pytest.raises(ValidationError):
            await recorder.record_block_create(owner_id, 1, 5, _block())
        with pytest.raises(ValidationError):
            await recorder.record_block_update(owner_id, 1, 5, _block(), {"type": "h1"})
        with pytest.raises(ValidationError):
            await recorder.record_page_snapshot(owner_id, 1, [], [])
        queue.submit.assert_not_called()

    @pytest.mark.asyncio
    async def test_delete_record_rejects_missing_owner_before_storage(self, clock):
        store = MagicMock()
        store.add = AsyncMock()
        session = AsyncMock()
        recorder = HistoryRecorder(queue=MagicMock(), store=store, clock=clock)
        with pytest.raises(ValidationError):
            await recorder.record_block_delete(session, None, 1, 5, _block())
        store.add.assert_not_awaited()
        session.execute.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_submit_failure_never_raises(self, store, clock):
        queue = MagicMock()
        queue.submit.side_effect = RuntimeError("queue exploded")
        recorder = HistoryRecorder(queue=queue, store=store, clock=clock)
        await recorder.record_block_create(OWNER, 1, 5, _block())
        await recorder.record_page_snapshot(OWNER, 1, [], [_block()])


class TestDeleteRecordTransaction:
    @pytest.mark.asyncio
    async def test_rolled_back_with_caller(self, recorder, session_factory, page):
        with pytest.raises(RuntimeError):
            async with session_scope(session_factory) as session:
                await recorder.record_block_delete(session, OWNER, page.id, 10, _block())
                raise RuntimeError("delete failed")
        assert await fetch_history(session_factory, page.id) == []

    @pytest.mark.asyncio
    async def test_committed_with_caller(self, recorder, session_factory, page):
        async with session_scope(session_factory) as session:
            record = await recorder.record_block_delete(session, OWNER, page.id, 10, _block())
            assert record.id is not None
        [stored] = await fetch_history(session_factory, page.id)
        assert stored.operation == "delete"
        assert safe_parse_json(stored.block_data)["id"] == 10

    @pytest.mark.asyncio
    async def test_unknown_operation_rejected_by_storage(self, store, session_factory, page, clock):
        with pytest.raises(IntegrityError):
            async with session_scope(session_factory) as session:
                await store.add(
                    session,
                    owner_id=OWNER,
                    page_id=page.id,
                    block_id=10,
                    operation="rename",
                    created_at=clock(),
                    block_data=_block(),
                )
        assert await fetch_history(session_factory, page.id) == []


class TestHistoryWriteQueue:
    def _job(self, page_id, clock):
        return HistoryJob(
            owner_id=OWNER,
            page_id=page_id,
            block_id=1,
            operation="create",
            created_at=clock(),
            block_data=_block(1),
        )

    @pytest.mark.asyncio
    async def test_retries_storage_errors_then_succeeds(self, session_factory, store, page, clock):
        queue = HistoryWriteQueue(session_factory, store, workers=1, max_attempts=3, min_wait=0, max_wait=0)
        original_add = store.add
        calls = {"n": 0}

        async def flaky_add(session, **kwargs):
            calls["n"] += 1
            if calls["n"] == 1:
                raise OperationalError("INSERT", {}, Exception("database is locked"))
            return await original_add(session, **kwargs)

        store.add = flaky_add
        try:
            assert queue.submit(self._job(page.id, clock))
            await queue.drain()
        finally:
            await queue.stop()

        assert queue.stats.retried == 1
        assert queue.stats.succeeded == 1
        assert queue.stats.failed == 0
        assert len(await fetch_history(session_factory, page.id)) == 1

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self, store, clock):
        factory = MagicMock()
        queue = HistoryWriteQueue(factory, store, workers=1, max_attempts=2, min_wait=0, max_wait=0)
        queue._write = AsyncMock(side_effect=OperationalError("INSERT", {}, Exception("down")))
        try:
            queue.submit(self._job(1, clock))
            await queue.drain()
        finally:
            await queue.stop()

        assert queue._write.await_count == 2
        assert queue.stats.failed == 1
        assert queue.stats.retried == 1
        assert queue.stats.succeeded == 0

    @pytest.mark.asyncio
    async def test_non_storage_errors_are_not_retried(self, store, clock):
        queue = HistoryWriteQueue(MagicMock(), store, workers=1, max_attempts=3, min_wait=0, max_wait=0)
        queue._write = AsyncMock(side_effect=TypeError("not serializable"))
        try:
            queue.submit(self._job(1, clock))
            await queue.drain()
        finally:
            await queue.stop()
        assert queue._write.await_count == 1
        assert queue.stats.failed == 1

    @pytest.mark.asyncio
    async def test_integrity_errors_are_not_retried(self, store, clock):
        queue = HistoryWriteQueue(MagicMock(), store, workers=1, max_attempts=3, min_wait=0, max_wait=0)
        queue._write = AsyncMock(
            side_effect=IntegrityError("INSERT", {}, Exception("CHECK constraint failed"))
        )
        try:
            queue.submit(self._job(1, clock))
            await queue.drain()
        finally:
            await queue.stop()
        assert queue._write.await_count == 1
        assert queue.stats.failed == 1
        assert queue.stats.retried == 0

    @pytest.mark.asyncio
    async def test_job_for_deleted_page_is_skipped(
        self, session_factory, store, page_service, page, clock
    ):
        queue = HistoryWriteQueue(session_factory, store, workers=1, min_wait=0, max_wait=0)
        await page_service.delete_page(OWNER, page.id)
        try:
            assert queue.submit(self._job(page.id, clock))
            await queue.drain()
        finally:
            await queue.stop()

        assert queue.stats.skipped == 1
        assert queue.stats.succeeded == 0
        assert queue.stats.failed == 0
        assert await fetch_history(session_factory, page.id) == []

    @pytest.mark.asyncio
    async def test_full_queue_drops_instead_of_blocking(self, store, clock):
        queue = HistoryWriteQueue(MagicMock(), store, maxsize=1, workers=1)
        release = asyncio.Event()

        async def blocked_write(job):
            await release.wait()
            return True

        queue._write = blocked_write
        try:
            assert queue.submit(self._job(1, clock)) is True
            # Let the worker take the first job off the queue
            await asyncio.sleep(0)
            assert queue.submit(self._job(1, clock)) is True
            assert queue.submit(self._job(1, clock)) is False
            assert queue.stats.dropped == 1
            assert queue.snapshot_stats()["pending"] == 1
            release.set()
            await queue.drain()
        finally:
            await queue.stop()
        assert queue.stats.submitted == 2
        assert queue.stats.succeeded == 2

    @pytest.mark.asyncio
    async def test_stop_is_safe_before_start(self, store):
        queue = HistoryWriteQueue(MagicMock(), store)
        await queue.stop()
        assert queue.snapshot_stats() == {
            "submitted": 0, "succeeded": 0, "failed": 0,
            "retried": 0, "dropped": 0, "skipped": 0, "pending": 0,
        }

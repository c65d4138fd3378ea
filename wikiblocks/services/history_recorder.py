"""
WikiBlocks Backend — History Recorder
=======================================

What:  Turns block mutations into history records.
Why:   The block service should only say "this happened"; deciding the
       payload shape, which writes are mandatory and which are
       best-effort belongs in one place.
How:   create / update / snapshot records are captured immediately (payload
       and timestamp) and handed to the HistoryWriteQueue. Delete records are
       written on the caller's session so they share the delete's
       transaction.

Write guarantees:
    record_block_create    best-effort, never raises after validation
    record_block_update    best-effort, never raises after validation
    record_page_snapshot   best-effort, never raises after validation
    record_block_delete    mandatory, errors propagate to the caller
"""

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from wikiblocks.exceptions import ValidationError
from wikiblocks.middleware.request_id import request_id_var
from wikiblocks.models.history import (
    OPERATION_CREATE,
    OPERATION_DELETE,
    OPERATION_SNAPSHOT,
    OPERATION_UPDATE,
    HistoryRecord,
)
from wikiblocks.services.history_queue import HistoryJob, HistoryWriteQueue
from wikiblocks.services.history_store import HistoryStore
from wikiblocks.utils import Clock, isoformat, require_id, utcnow

logger = logging.getLogger(__name__)

_COMPARED_FIELDS = ("type", "properties", "format")


def compute_change_count(
    previous_blocks: List[Dict[str, Any]], new_blocks: List[Dict[str, Any]]
) -> int:
    """
    Count positions that differ between two ordered block arrays.

    Positions present in only one array always count. Block ids and
    timestamps are ignored because a bulk save reassigns them.
    """
    changed = abs(len(previous_blocks) - len(new_blocks))
    for old, new in zip(previous_blocks, new_blocks):
        old = old if isinstance(old, dict) else {}
        new = new if isinstance(new, dict) else {}
        if any(old.get(key) != new.get(key) for key in _COMPARED_FIELDS):
            changed += 1
    return changed


class HistoryRecorder:
    def __init__(
        self,
        queue: HistoryWriteQueue,
        store: HistoryStore,
        clock: Clock = utcnow,
    ):
        self._queue = queue
        self._store = store
        self._clock = clock

    def _submit(self, job: HistoryJob) -> None:
        try:
            self._queue.submit(job)
        except Exception as e:
            # Losing a history entry is acceptable; failing the mutation is not
            logger.warning(
                f"Could not queue {job.operation} history entry: {e}",
                extra=job.describe(),
            )

    def _job(
        self,
        operation: str,
        owner_id: int,
        page_id: int,
        block_id: Optional[int],
        **payload: Any,
    ) -> HistoryJob:
        return HistoryJob(
            owner_id=owner_id,
            page_id=page_id,
            block_id=block_id,
            operation=operation,
            created_at=self._clock(),
            request_id=request_id_var.get(""),
            **payload,
        )

    async def record_block_create(
        self,
        owner_id: Any,
        page_id: Any,
        block_id: Optional[int],
        block_payload: Dict[str, Any],
    ) -> None:
        owner_id = require_id(owner_id, "owner_id")
        page_id = require_id(page_id, "page_id")
        self._submit(
            self._job(OPERATION_CREATE, owner_id, page_id, block_id, block_data=dict(block_payload))
        )

    async def record_block_update(
        self,
        owner_id: Any,
        page_id: Any,
        block_id: Optional[int],
        old_block: Dict[str, Any],
        proposed_changes: Dict[str, Any],
    ) -> None:
        """
        Record an update as an {old, new} pair.

        `new` is the old block with the proposed changes laid over it, i.e.
        what the block looks like once the update is applied.
        """
        owner_id = require_id(owner_id, "owner_id")
        page_id = require_id(page_id, "page_id")
        old = dict(old_block)
        payload = {"old": old, "new": {**old, **proposed_changes}}
        self._submit(self._job(OPERATION_UPDATE, owner_id, page_id, block_id, block_data=payload))

    async def record_block_delete(
        self,
        session: AsyncSession,
        owner_id: Any,
        page_id: Any,
        block_id: Optional[int],
        block_snapshot: Dict[str, Any],
    ) -> HistoryRecord:
        """
        Write the delete record inside the caller's transaction.

        The record is flushed but not committed; it becomes durable only
        together with the delete itself. Any storage error propagates so the
        caller rolls both back.
        """
        owner_id = require_id(owner_id, "owner_id")
        page_id = require_id(page_id, "page_id")
        return await self._store.add(
            session,
            owner_id=owner_id,
            page_id=page_id,
            block_id=block_id,
            operation=OPERATION_DELETE,
            created_at=self._clock(),
            block_data=dict(block_snapshot),
            created_by=owner_id,
        )

    async def record_page_snapshot(
        self,
        owner_id: Any,
        page_id: Any,
        previous_blocks: List[Dict[str, Any]],
        new_blocks: List[Dict[str, Any]],
        change_count: Optional[int] = None,
    ) -> None:
        """Record the full new block array of a page save."""
        owner_id = require_id(owner_id, "owner_id")
        page_id = require_id(page_id, "page_id")
        if not isinstance(new_blocks, list):
            raise ValidationError(message="new_blocks must be a list", field="new_blocks")
        previous = previous_blocks if isinstance(previous_blocks, list) else []
        if change_count is None:
            change_count = compute_change_count(previous, new_blocks)

        job = self._job(OPERATION_SNAPSHOT, owner_id, page_id, None)
        job.snapshot_data = {
            "page_id": page_id,
            "blocks": list(new_blocks),
            "saved_at": isoformat(job.created_at),
            "owner_id": owner_id,
            "change_count": change_count,
        }
        self._submit(job)

"""
WikiBlocks Backend — Timeline Service
=======================================

What:  Read side of page history: paginated listing, the timeline feed,
       recent snapshots, single entries, and reconstructing a page as of a
       history record.
Why:   The editor's history panel and "view this version" both need
       history decoded into display-ready shapes; none of that belongs in
       the route handlers.
How:   Opens a short read session per call, always checks that the page
       belongs to the caller before touching history, and decodes stored
       JSON with safe_parse_json so one corrupt row never breaks a listing.

Reconstruction:
    Snapshot records carry the whole ordered block array, so a page can be
    rebuilt exactly from them. Create/update/delete records only describe a
    single block; for those the page's CURRENT blocks are returned and
    `is_full_snapshot` is False so the client can label the view.
"""

import logging
import math
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from wikiblocks.exceptions import DatabaseError, NotFoundError, ValidationError
from wikiblocks.models.history import (
    OPERATION_CREATE,
    OPERATION_DELETE,
    OPERATION_SNAPSHOT,
    OPERATION_UPDATE,
    HistoryRecord,
)
from wikiblocks.schemas.history import (
    HistoricalPage,
    HistoryEntry,
    PageAtHistory,
    PageHistory,
    SnapshotSummary,
    TimelineEntry,
)
from wikiblocks.services.history_store import HistoryRow, HistoryStore
from wikiblocks.services.queries import load_owned_page, load_page_blocks
from wikiblocks.utils import (
    block_to_dict,
    block_types,
    extract_block_text,
    require_id,
    safe_parse_json,
)

logger = logging.getLogger(__name__)

OPERATION_LABELS = {
    OPERATION_CREATE: "Created",
    OPERATION_UPDATE: "Updated",
    OPERATION_DELETE: "Deleted",
    OPERATION_SNAPSHOT: "Saved",
}


def operation_text(operation: str) -> str:
    return OPERATION_LABELS.get(operation, "Updated")


def _diff_block(block_data: Dict[str, Any]) -> Dict[str, Any]:
    """The block a diff payload is about: `new` for updates, else the bare block."""
    for key in ("new", "old"):
        candidate = block_data.get(key)
        if isinstance(candidate, dict):
            return candidate
    return block_data


def _snapshot_blocks(snapshot: Dict[str, Any]) -> Optional[List[Any]]:
    blocks = snapshot.get("blocks")
    return blocks if isinstance(blocks, list) else None


class TimelineService:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        store: HistoryStore,
        preview_text_length: int = 100,
        max_limit: int = 200,
    ):
        self._session_factory = session_factory
        self._store = store
        self._preview_text_length = preview_text_length
        self._max_limit = max_limit

    def _check_limit(self, limit: Any) -> int:
        if isinstance(limit, bool) or not isinstance(limit, int) or not 1 <= limit <= self._max_limit:
            raise ValidationError(
                message=f"limit must be between 1 and {self._max_limit}",
                field="limit",
            )
        return limit

    # ── Reconstruction ────────────────────────────────────────────────────

    async def get_page_at_history(
        self, page_id: Any, history_id: Any, owner_id: Any
    ) -> Optional[PageAtHistory]:
        """
        Return the page as of `history_id`, or None when that record does
        not exist for this page and owner.

        Raises:
            ValidationError: missing owner, page or history id
            NotFoundError:   page missing or owned by someone else
            DatabaseError:   storage failure
        """
        owner_id = require_id(owner_id, "owner_id")
        page_id = require_id(page_id, "page_id")
        history_id = require_id(history_id, "history_id")

        try:
            async with self._session_factory() as session:
                page = await load_owned_page(session, owner_id, page_id)
                record = await self._store.get_for_page(session, history_id, page_id, owner_id)
                if record is None:
                    return None

                snapshot = safe_parse_json(record.snapshot_data)
                blocks = _snapshot_blocks(snapshot)
                is_full_snapshot = blocks is not None
                if blocks is None:
                    live = await load_page_blocks(session, owner_id, page_id)
                    blocks = [block_to_dict(b) for b in live]
        except SQLAlchemyError as e:
            logger.error(f"Failed to load page {page_id} at history {history_id}: {e}")
            raise DatabaseError(context={"page_id": page_id, "history_id": history_id})

        return PageAtHistory(
            page=HistoricalPage(
                id=page.id,
                title=page.title,
                icon=page.icon,
                cover_image=page.cover_image,
            ),
            blocks=blocks,
            history_id=record.id,
            snapshot_time=record.created_at,
            operation=record.operation,
            is_full_snapshot=is_full_snapshot,
            snapshot_data=snapshot,
        )

    # ── Listings ──────────────────────────────────────────────────────────

    async def get_timeline_entries(
        self, page_id: Any, owner_id: Any, limit: int = 50
    ) -> List[TimelineEntry]:
        """Newest-first feed of records that carry a payload."""
        owner_id = require_id(owner_id, "owner_id")
        page_id = require_id(page_id, "page_id")
        limit = self._check_limit(limit)

        try:
            async with self._session_factory() as session:
                await load_owned_page(session, owner_id, page_id)
                rows = await self._store.list_timeline(session, page_id, owner_id, limit)
        except SQLAlchemyError as e:
            logger.error(f"Failed to load timeline for page {page_id}: {e}")
            raise DatabaseError(context={"page_id": page_id})

        return [self._to_timeline_entry(row) for row in rows]

    def _to_timeline_entry(self, row: HistoryRow) -> TimelineEntry:
        record, live_type, _ = row
        block_data = safe_parse_json(record.block_data)
        snapshot = safe_parse_json(record.snapshot_data)

        blocks = _snapshot_blocks(snapshot)
        if blocks is not None:
            first = blocks[0] if blocks else None
            preview_content = extract_block_text(first, self._preview_text_length)
            preview = block_types(blocks)
            payload_type = None
        else:
            block = _diff_block(block_data)
            preview_content = extract_block_text(block, self._preview_text_length)
            payload_type = block.get("type") if isinstance(block.get("type"), str) else None
            preview = [payload_type] if payload_type else []

        created_at = record.created_at
        return TimelineEntry(
            id=record.id,
            timestamp=created_at,
            date=created_at.strftime("%Y-%m-%d"),
            time=created_at.strftime("%H:%M"),
            operation=record.operation,
            operation_text=operation_text(record.operation),
            block_id=record.block_id,
            block_type=live_type or payload_type,
            preview_content=preview_content,
            preview=preview,
            has_snapshot=bool(snapshot),
            has_block_data=bool(block_data),
        )

    async def get_page_history(
        self, page_id: Any, owner_id: Any, page: int = 1, limit: int = 20
    ) -> PageHistory:
        """Offset-paginated history with joined block type and page title."""
        owner_id = require_id(owner_id, "owner_id")
        page_id = require_id(page_id, "page_id")
        if isinstance(page, bool) or not isinstance(page, int) or page < 1:
            raise ValidationError(message="page must be >= 1", field="page")
        limit = self._check_limit(limit)

        try:
            async with self._session_factory() as session:
                await load_owned_page(session, owner_id, page_id)
                total = await self._store.count_for_page(session, page_id, owner_id)
                rows = await self._store.list_for_page(
                    session, page_id, owner_id, offset=(page - 1) * limit, limit=limit
                )
        except SQLAlchemyError as e:
            logger.error(f"Failed to load history for page {page_id}: {e}")
            raise DatabaseError(context={"page_id": page_id})

        return PageHistory(
            history=[HistoryStore.to_entry(row) for row in rows],
            total=total,
            page=page,
            limit=limit,
            total_pages=math.ceil(total / limit),
        )

    async def get_recent_snapshots(
        self, page_id: Any, owner_id: Any, limit: int = 20
    ) -> List[SnapshotSummary]:
        owner_id = require_id(owner_id, "owner_id")
        page_id = require_id(page_id, "page_id")
        limit = self._check_limit(limit)

        try:
            async with self._session_factory() as session:
                await load_owned_page(session, owner_id, page_id)
                records = await self._store.list_snapshots(session, page_id, owner_id, limit)
        except SQLAlchemyError as e:
            logger.error(f"Failed to load snapshots for page {page_id}: {e}")
            raise DatabaseError(context={"page_id": page_id})

        return [self._to_snapshot_summary(record) for record in records]

    @staticmethod
    def _to_snapshot_summary(record: HistoryRecord) -> SnapshotSummary:
        snapshot = safe_parse_json(record.snapshot_data)
        blocks = _snapshot_blocks(snapshot) or []
        change_count = snapshot.get("change_count", 1)
        if isinstance(change_count, bool) or not isinstance(change_count, int):
            change_count = 1
        return SnapshotSummary(
            id=record.id,
            timestamp=record.created_at,
            date=record.created_at.strftime("%Y-%m-%d"),
            time=record.created_at.strftime("%H:%M"),
            operation=record.operation,
            preview=block_types(blocks),
            block_count=len(blocks),
            change_count=change_count,
        )

    async def get_history_entry(self, history_id: Any, owner_id: Any) -> HistoryEntry:
        owner_id = require_id(owner_id, "owner_id")
        history_id = require_id(history_id, "history_id")

        try:
            async with self._session_factory() as session:
                row = await self._store.get_by_id(session, history_id, owner_id)
        except SQLAlchemyError as e:
            logger.error(f"Failed to load history entry {history_id}: {e}")
            raise DatabaseError(context={"history_id": history_id})

        if row is None:
            raise NotFoundError(resource="history entry", resource_id=str(history_id))
        return HistoryStore.to_entry(row)

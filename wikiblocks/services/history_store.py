"""
WikiBlocks Backend — History Data Access
==========================================

What:  All SQL touching the `block_history` table.
Why:   The recorder, the write queue, the timeline service, the retention
       service and the block service all read or write history; one store
       keeps ordering, joins and JSON handling consistent between them.
How:   Stateless methods that run on a session handed in by the caller, so
       the same insert can join the caller's transaction (mandatory delete
       records) or run in its own (queued best-effort writes).

Ordering:
    Every listing is ORDER BY created_at DESC, id ASC: newest first, and
    records sharing a timestamp keep their insertion order.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import and_, delete, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from wikiblocks.models.block import Block
from wikiblocks.models.history import OPERATION_SNAPSHOT, HistoryRecord
from wikiblocks.models.page import Page
from wikiblocks.schemas.history import HistoryEntry
from wikiblocks.utils import dump_json, safe_parse_json

# (record, live block type, page title)
HistoryRow = Tuple[HistoryRecord, Optional[str], Optional[str]]

_NEWEST_FIRST = (HistoryRecord.created_at.desc(), HistoryRecord.id.asc())


def _has_payload(column) -> Any:
    return and_(column.isnot(None), column != "", column != "{}")


class HistoryStore:
    """Data access for history records. Holds no state."""

    async def add(
        self,
        session: AsyncSession,
        *,
        owner_id: int,
        page_id: int,
        block_id: Optional[int],
        operation: str,
        created_at: datetime,
        block_data: Optional[Dict[str, Any]] = None,
        snapshot_data: Optional[Dict[str, Any]] = None,
        created_by: Optional[int] = None,
    ) -> HistoryRecord:
        """Insert one record and flush it so it gets its id inside the caller's transaction."""
        record = HistoryRecord(
            owner_id=owner_id,
            page_id=page_id,
            block_id=block_id,
            operation=operation,
            block_data=dump_json(block_data),
            snapshot_data=dump_json(snapshot_data),
            created_by=created_by or owner_id,
            created_at=created_at,
        )
        session.add(record)
        await session.flush()
        return record

    def _joined(self):
        return (
            select(HistoryRecord, Block.type, Page.title)
            .outerjoin(Block, Block.id == HistoryRecord.block_id)
            .outerjoin(Page, Page.id == HistoryRecord.page_id)
        )

    async def get_for_page(
        self, session: AsyncSession, history_id: int, page_id: int, owner_id: int
    ) -> Optional[HistoryRecord]:
        """A record only if it belongs to BOTH the given page and owner."""
        result = await session.execute(
            select(HistoryRecord).where(
                HistoryRecord.id == history_id,
                HistoryRecord.page_id == page_id,
                HistoryRecord.owner_id == owner_id,
            )
        )
        return result.scalar_one_or_none()

    async def get_by_id(
        self, session: AsyncSession, history_id: int, owner_id: int
    ) -> Optional[HistoryRow]:
        result = await session.execute(
            self._joined().where(
                HistoryRecord.id == history_id,
                HistoryRecord.owner_id == owner_id,
            )
        )
        row = result.first()
        return tuple(row) if row is not None else None

    async def count_for_page(self, session: AsyncSession, page_id: int, owner_id: int) -> int:
        result = await session.execute(
            select(func.count(HistoryRecord.id)).where(
                HistoryRecord.page_id == page_id,
                HistoryRecord.owner_id == owner_id,
            )
        )
        return result.scalar() or 0

    async def list_for_page(
        self, session: AsyncSession, page_id: int, owner_id: int, offset: int, limit: int
    ) -> List[HistoryRow]:
        result = await session.execute(
            self._joined()
            .where(HistoryRecord.page_id == page_id, HistoryRecord.owner_id == owner_id)
            .order_by(*_NEWEST_FIRST)
            .offset(offset)
            .limit(limit)
        )
        return [tuple(row) for row in result.all()]

    async def list_timeline(
        self, session: AsyncSession, page_id: int, owner_id: int, limit: int
    ) -> List[HistoryRow]:
        """Records that carry a diff payload or a snapshot payload."""
        result = await session.execute(
            self._joined()
            .where(
                HistoryRecord.page_id == page_id,
                HistoryRecord.owner_id == owner_id,
                or_(
                    _has_payload(HistoryRecord.block_data),
                    _has_payload(HistoryRecord.snapshot_data),
                ),
            )
            .order_by(*_NEWEST_FIRST)
            .limit(limit)
        )
        return [tuple(row) for row in result.all()]

    async def list_snapshots(
        self, session: AsyncSession, page_id: int, owner_id: int, limit: int
    ) -> List[HistoryRecord]:
        result = await session.execute(
            select(HistoryRecord)
            .where(
                HistoryRecord.page_id == page_id,
                HistoryRecord.owner_id == owner_id,
                HistoryRecord.operation == OPERATION_SNAPSHOT,
            )
            .order_by(*_NEWEST_FIRST)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def delete_older_than(
        self, session: AsyncSession, cutoff: datetime, owner_id: Optional[int] = None
    ) -> int:
        """
        Delete records created strictly before `cutoff`.

        Returns the driver's affected-row count for this single statement,
        i.e. exactly the number of rows removed.
        """
        stmt = delete(HistoryRecord).where(HistoryRecord.created_at < cutoff)
        if owner_id is not None:
            stmt = stmt.where(HistoryRecord.owner_id == owner_id)
        result = await session.execute(stmt.execution_options(synchronize_session=False))
        return result.rowcount or 0

    async def page_exists(self, session: AsyncSession, page_id: int) -> bool:
        result = await session.execute(select(Page.id).where(Page.id == page_id))
        return result.scalar_one_or_none() is not None

    async def delete_for_page(self, session: AsyncSession, page_id: int) -> int:
        result = await session.execute(
            delete(HistoryRecord)
            .where(HistoryRecord.page_id == page_id)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0

    @staticmethod
    def to_entry(row: HistoryRow) -> HistoryEntry:
        """Decode a joined row; corrupt payload JSON becomes {}."""
        record, block_type, page_title = row
        return HistoryEntry(
            id=record.id,
            owner_id=record.owner_id,
            page_id=record.page_id,
            block_id=record.block_id,
            operation=record.operation,
            block_data=safe_parse_json(record.block_data),
            snapshot_data=safe_parse_json(record.snapshot_data),
            created_by=record.created_by,
            created_at=record.created_at,
            block_type=block_type,
            page_title=page_title,
        )

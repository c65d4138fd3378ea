"""
WikiBlocks Backend — Block History SQLAlchemy Model
=====================================================

What:  ORM model for the append-only `block_history` table.
Why:   Every change to a page's blocks leaves an immutable record so the
       page can be browsed on a timeline and reconstructed at a past save.

Record kinds (operation column):
    create    block_data = the new block
    update    block_data = {"old": <block before>, "new": <old merged with changes>}
    delete    block_data = the block as it was just before deletion
    snapshot  snapshot_data = {"page_id", "blocks": [...], "saved_at",
                               "owner_id", "change_count"}

Table Design Rationale:
    - Rows are inserted or deleted, never updated
    - block_id has no foreign key: the block is usually gone (delete) or
      replaced (bulk save) while its history must survive
    - page_id cascades: deleting a page removes its history
    - Payloads are JSON *text*, not a JSON column type, so a corrupt row
      can be detected and degraded to {} on read instead of failing the
      whole listing inside the driver's result processing
    - (page_id, created_at DESC) serves every timeline query;
      created_at DESC alone serves retention sweeps
"""

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import CheckConstraint, DateTime, ForeignKey, Index, Integer, String, Text, text
from sqlalchemy.orm import Mapped, mapped_column

from wikiblocks.database import Base

OPERATION_CREATE = "create"
OPERATION_UPDATE = "update"
OPERATION_DELETE = "delete"
OPERATION_SNAPSHOT = "snapshot"

OPERATIONS = (OPERATION_CREATE, OPERATION_UPDATE, OPERATION_DELETE, OPERATION_SNAPSHOT)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class HistoryRecord(Base):
    """One immutable audit-log entry for a page's block collection."""

    __tablename__ = "block_history"

    # Sequential id: breaks ties between records sharing a timestamp
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    owner_id: Mapped[int] = mapped_column(Integer, nullable=False)

    page_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("pages.id", ondelete="CASCADE"),
        nullable=False,
    )

    # NULL for whole-page operations (snapshots)
    block_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    operation: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        comment="create, update, delete or snapshot",
    )

    block_data: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        comment="JSON text: diff payload for create/update/delete",
    )

    snapshot_data: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        comment="JSON text: full ordered block array for snapshot records",
    )

    created_by: Mapped[int] = mapped_column(Integer, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
    )

    __table_args__ = (
        CheckConstraint(
            "operation IN (" + ", ".join(f"'{op}'" for op in OPERATIONS) + ")",
            name="ck_block_history_operation",
        ),
        Index("idx_block_history_page_created", "page_id", created_at.desc()),
        Index("idx_block_history_created", created_at.desc()),
        Index("idx_block_history_owner", "owner_id"),
        {"sqlite_autoincrement": True},
    )

    def __repr__(self) -> str:
        return (
            f"<HistoryRecord(id={self.id}, page_id={self.page_id}, "
            f"operation='{self.operation}', created_at='{self.created_at}')>"
        )

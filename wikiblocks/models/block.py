"""
WikiBlocks Backend — Block SQLAlchemy Model
=============================================

What:  ORM model representing the `blocks` table.
Why:   A block is the atomic content unit of a page (paragraph, heading,
       image, ...). Its `type` tells the frontend how to render it;
       `properties` and `format` are opaque nested JSON.

Ordering:
    order_index reflects the array position at the last bulk save (0..N-1).
    It is NOT unique: single-block creates and reorders can leave duplicates
    until the next save, so readers order by (order_index, id).

Nesting:
    parent_id points at another block of the same page (toggles, list items).
    Deleting a parent deletes its descendants (ON DELETE CASCADE).
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy import JSON, DateTime, ForeignKey, Index, Integer, String, text
from sqlalchemy.orm import Mapped, mapped_column

from wikiblocks.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Block(Base):
    """A content unit belonging to exactly one page and one owner."""

    __tablename__ = "blocks"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    owner_id: Mapped[int] = mapped_column(Integer, nullable=False)

    page_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("pages.id", ondelete="CASCADE"),
        nullable=False,
    )

    parent_id: Mapped[Optional[int]] = mapped_column(
        Integer,
        ForeignKey("blocks.id", ondelete="CASCADE"),
        nullable=True,
        default=None,
    )

    type: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        comment="Renderable kind: text, heading, image, todo, ...",
    )

    properties: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)

    format: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)

    order_index: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        server_default=text("0"),
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
    )

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        onupdate=_utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
    )

    __table_args__ = (
        Index("idx_blocks_page_order", "page_id", "order_index"),
        Index("idx_blocks_parent_id", "parent_id"),
        # Bulk saves delete then reinsert; ids must never be reused
        {"sqlite_autoincrement": True},
    )

    def __repr__(self) -> str:
        return f"<Block(id={self.id}, page_id={self.page_id}, type='{self.type}')>"

"""
WikiBlocks Backend — Page SQLAlchemy Model
============================================

What:  ORM model representing the `pages` table.
Why:   A page is the top-level document a user owns; blocks and history
       entries hang off it.
Who:   Used by PageService for CRUD, by BlockService/TimelineService for
       ownership checks, and by Alembic for schema management.

Table Design Rationale:
    - Integer primary key: sequential ids double as the insertion-order
      tie-breaker used by history listings
    - owner_id: every read/write is filtered by owner
    - slug: unique per owner (uq_pages_owner_slug), not globally; two users
      can both have a "sprint-notes" page
    - content: free-form JSON document metadata
    - parent_id: optional nesting under another page of the same owner;
      deleting the parent moves its children to the top level (SET NULL)
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from wikiblocks.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Page(Base):
    """
    A top-level document owned by a single user, composed of ordered blocks.

    Query Patterns:
        - Owner's pages: WHERE owner_id = :owner ORDER BY created_at DESC
        - Slug lookup:   WHERE owner_id = :owner AND slug = :slug
          → served by the unique constraint's index
        - Children:      WHERE owner_id = :owner AND parent_id = :page
    """

    __tablename__ = "pages"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    owner_id: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        comment="Owning user id, enforced on every read and write",
    )

    parent_id: Mapped[Optional[int]] = mapped_column(
        Integer,
        ForeignKey("pages.id", ondelete="SET NULL"),
        nullable=True,
        default=None,
    )

    title: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        default="Untitled",
        server_default=text("'Untitled'"),
    )

    # What: URL-safe identifier derived from the title
    # Regenerated on title change; never collides within the owner's pages
    slug: Mapped[str] = mapped_column(String(300), nullable=False)

    content: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)

    icon: Mapped[str] = mapped_column(String(32), nullable=False, default="📄")

    cover_image: Mapped[Optional[str]] = mapped_column(
        String(500),
        nullable=True,
        default=None,
        comment="Reference to an uploaded cover image (storage is external)",
    )

    is_published: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        server_default=text("false"),
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
        UniqueConstraint("owner_id", "slug", name="uq_pages_owner_slug"),
        Index("idx_pages_owner_created", "owner_id", created_at.desc()),
        Index("idx_pages_parent_id", "parent_id"),
        {"sqlite_autoincrement": True},
    )

    def __repr__(self) -> str:
        return f"<Page(id={self.id}, owner_id={self.owner_id}, slug='{self.slug}')>"

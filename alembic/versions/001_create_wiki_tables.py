"""Create pages, blocks and block_history tables

Revision ID: 001
Revises: None
Create Date: 2026-10-17 00:00:00.000000+00:00

What:  Initial schema: pages, their ordered blocks, and the append-only
       block history.
How:   Integer autoincrement keys everywhere; history payloads are TEXT
       holding JSON so corrupt rows can be degraded on read.

Rollback: downgrade() drops all three tables (destructive).
"""

from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa

# revision identifiers
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamp(name: str) -> sa.Column:
    return sa.Column(
        name,
        sa.DateTime(timezone=True),
        server_default=sa.text("CURRENT_TIMESTAMP"),
        nullable=False,
    )


def upgrade() -> None:
    op.create_table(
        "pages",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column(
            "owner_id",
            sa.Integer(),
            nullable=False,
            comment="Owning user id, enforced on every read and write",
        ),
        sa.Column("parent_id", sa.Integer(), nullable=True),
        sa.Column("title", sa.String(255), nullable=False, server_default=sa.text("'Untitled'")),
        sa.Column("slug", sa.String(300), nullable=False),
        sa.Column("content", sa.JSON(), nullable=False),
        sa.Column("icon", sa.String(32), nullable=False),
        sa.Column(
            "cover_image",
            sa.String(500),
            nullable=True,
            comment="Reference to an uploaded cover image (storage is external)",
        ),
        sa.Column("is_published", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.PrimaryKeyConstraint("id"),
        # Slugs are unique per owner, not globally
        sa.UniqueConstraint("owner_id", "slug", name="uq_pages_owner_slug"),
        sa.ForeignKeyConstraint(["parent_id"], ["pages.id"], ondelete="SET NULL"),
        sqlite_autoincrement=True,
    )
    op.create_index(
        "idx_pages_owner_created",
        "pages",
        ["owner_id", sa.text("created_at DESC")],
    )
    op.create_index("idx_pages_parent_id", "pages", ["parent_id"])

    op.create_table(
        "blocks",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("owner_id", sa.Integer(), nullable=False),
        sa.Column("page_id", sa.Integer(), nullable=False),
        sa.Column("parent_id", sa.Integer(), nullable=True),
        sa.Column("type", sa.String(50), nullable=False),
        sa.Column("properties", sa.JSON(), nullable=False),
        sa.Column("format", sa.JSON(), nullable=False),
        sa.Column("order_index", sa.Integer(), nullable=False, server_default=sa.text("0")),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["page_id"], ["pages.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["parent_id"], ["blocks.id"], ondelete="CASCADE"),
        sqlite_autoincrement=True,
    )
    op.create_index("idx_blocks_page_order", "blocks", ["page_id", "order_index"])
    op.create_index("idx_blocks_parent_id", "blocks", ["parent_id"])

    op.create_table(
        "block_history",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("owner_id", sa.Integer(), nullable=False),
        sa.Column("page_id", sa.Integer(), nullable=False),
        # No FK: history outlives the block it describes
        sa.Column("block_id", sa.Integer(), nullable=True),
        sa.Column(
            "operation",
            sa.String(20),
            nullable=False,
            comment="create, update, delete or snapshot",
        ),
        sa.Column(
            "block_data",
            sa.Text(),
            nullable=True,
            comment="JSON text: diff payload for create/update/delete",
        ),
        sa.Column(
            "snapshot_data",
            sa.Text(),
            nullable=True,
            comment="JSON text: full ordered block array for snapshot records",
        ),
        sa.Column("created_by", sa.Integer(), nullable=False),
        _timestamp("created_at"),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint(
            "operation IN ('create', 'update', 'delete', 'snapshot')",
            name="ck_block_history_operation",
        ),
        sa.ForeignKeyConstraint(["page_id"], ["pages.id"], ondelete="CASCADE"),
        sqlite_autoincrement=True,
    )
    # Serves every per-page timeline query
    op.create_index(
        "idx_block_history_page_created",
        "block_history",
        ["page_id", sa.text("created_at DESC")],
    )
    # Serves retention sweeps
    op.create_index(
        "idx_block_history_created",
        "block_history",
        [sa.text("created_at DESC")],
    )
    op.create_index("idx_block_history_owner", "block_history", ["owner_id"])


def downgrade() -> None:
    op.drop_index("idx_block_history_owner", table_name="block_history")
    op.drop_index("idx_block_history_created", table_name="block_history")
    op.drop_index("idx_block_history_page_created", table_name="block_history")
    op.drop_table("block_history")
    op.drop_index("idx_blocks_parent_id", table_name="blocks")
    op.drop_index("idx_blocks_page_order", table_name="blocks")
    op.drop_table("blocks")
    op.drop_index("idx_pages_parent_id", table_name="pages")
    op.drop_index("idx_pages_owner_created", table_name="pages")
    op.drop_table("pages")

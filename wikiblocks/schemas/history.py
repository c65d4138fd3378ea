"""
WikiBlocks Backend — History & Timeline Schemas
=================================================

What:  Response models for the history subsystem: paginated history,
       display-oriented timeline entries, snapshot summaries, the
       reconstructed page-at-history view and the cleanup result.

Payload fields (block_data, snapshot_data) are always dicts here. Rows with
corrupt stored JSON surface as {} rather than failing the response.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class HistoryEntry(BaseModel):
    """A decoded history record joined with the live block type and page title."""
    id: int
    owner_id: int
    page_id: int
    block_id: Optional[int] = None
    operation: str
    block_data: Dict[str, Any] = Field(default_factory=dict)
    snapshot_data: Dict[str, Any] = Field(default_factory=dict)
    created_by: int
    created_at: datetime
    block_type: Optional[str] = Field(
        default=None, description="Type of the live block (null once deleted)"
    )
    page_title: Optional[str] = None


class PageHistory(BaseModel):
    """Offset-paginated history listing for one page."""
    history: List[HistoryEntry]
    total: int
    page: int
    limit: int
    total_pages: int


class TimelineEntry(BaseModel):
    """
    One row of the timeline UI.

    operation_text is the human label: Created, Updated, Deleted or Saved.
    preview holds up to three block type tags for the thumbnail strip.
    """
    id: int
    timestamp: datetime
    date: str = Field(description="YYYY-MM-DD")
    time: str = Field(description="HH:MM")
    operation: str
    operation_text: str
    block_id: Optional[int] = None
    block_type: Optional[str] = None
    preview_content: str = ""
    preview: List[str] = Field(default_factory=list)
    has_snapshot: bool
    has_block_data: bool


class SnapshotSummary(BaseModel):
    """Condensed timeline item for snapshot records only."""
    id: int
    timestamp: datetime
    date: str
    time: str
    operation: str
    preview: List[str] = Field(default_factory=list)
    block_count: int
    change_count: int


class HistoricalPage(BaseModel):
    id: int
    title: str
    icon: str
    cover_image: Optional[str] = None


class PageAtHistory(BaseModel):
    """
    A page's block collection as of one history record.

    is_full_snapshot is False when the record was a diff (create, update,
    delete): diff records alone cannot rebuild a whole page, so `blocks`
    then holds the page's CURRENT blocks instead.
    """
    page: HistoricalPage
    blocks: List[Dict[str, Any]]
    is_historical: bool = True
    history_id: int
    snapshot_time: datetime
    operation: str
    is_full_snapshot: bool
    snapshot_data: Dict[str, Any] = Field(default_factory=dict)


class RestoreResult(BaseModel):
    message: str = "Snapshot restored"
    page_id: int
    history_id: int
    count: int


class CleanupResponse(BaseModel):
    message: str
    deleted_count: int
    days_to_keep: int

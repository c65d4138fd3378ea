"""
WikiBlocks Backend — Block Request/Response Schemas
=====================================================

What:  Pydantic models for single-block CRUD and the editor's bulk save.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class BlockFields(BaseModel):
    type: str = Field(min_length=1, max_length=50)
    properties: Dict[str, Any] = Field(default_factory=dict)
    format: Dict[str, Any] = Field(default_factory=dict)
    parent_id: Optional[int] = Field(default=None, ge=1)


class BlockInput(BlockFields):
    """
    One element of a bulk save.

    A bulk save deletes the page's blocks and reinserts the array, so every
    saved block gets a fresh id and its array position as order_index.
    The incoming `id` is only a reference key: another element's
    `parent_id` may point at it and is rewritten to the new id.
    """
    id: Optional[int] = None


class BlockCreate(BlockFields):
    """Body of POST /api/blocks. order_index defaults to the end of the page."""
    page_id: int = Field(ge=1)
    order_index: Optional[int] = Field(default=None, ge=0)


class BlockUpdate(BaseModel):
    """Body of PATCH /api/blocks/{id}; only fields present are applied."""
    type: Optional[str] = Field(default=None, min_length=1, max_length=50)
    properties: Optional[Dict[str, Any]] = None
    format: Optional[Dict[str, Any]] = None
    order_index: Optional[int] = Field(default=None, ge=0)
    parent_id: Optional[int] = Field(
        default=None, ge=1, description="Another block of the same page; null un-nests"
    )


class BlockResponse(BaseModel):
    id: int
    page_id: int
    owner_id: int
    parent_id: Optional[int] = None
    type: str
    properties: Dict[str, Any]
    format: Dict[str, Any]
    order_index: int
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class BlockListResponse(BaseModel):
    count: int
    blocks: List[BlockResponse]


class SaveBlocksRequest(BaseModel):
    """
    Body of PUT /api/pages/{page_id}/blocks (the editor's Ctrl+S).

    `blocks` is typed loosely so a non-array payload reaches the service and
    is rejected there with the same ValidationError the service gives every
    other caller.
    """
    blocks: Any = None
    save_history: bool = Field(
        default=False,
        description="Record a full snapshot of the saved array in the page history",
    )


class SaveBlocksResponse(BaseModel):
    message: str = "Blocks saved successfully"
    count: int
    blocks: List[BlockResponse]


class ReorderBlocksRequest(BaseModel):
    block_ids: List[int] = Field(description="Block ids in their new display order")


class MessageResponse(BaseModel):
    message: str

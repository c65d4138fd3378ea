"""
WikiBlocks Backend — Page Request/Response Schemas
====================================================

What:  Pydantic models defining the page API contract.
Why:   Strict input validation, automatic serialization, and OpenAPI docs.
       Kept separate from the ORM model so the API never leaks columns it
       does not mean to expose.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from wikiblocks.schemas.block import BlockResponse


class PageCreate(BaseModel):
    """Body of POST /api/pages. Every field is optional; title defaults to Untitled."""
    title: Optional[str] = Field(default=None, max_length=255)
    parent_id: Optional[int] = Field(default=None, ge=1, description="Nest under this page")
    content: Dict[str, Any] = Field(default_factory=dict)
    icon: Optional[str] = Field(default=None, max_length=32)
    cover_image: Optional[str] = Field(default=None, max_length=500)
    is_published: bool = Field(default=False)


class PageUpdate(BaseModel):
    """
    Body of PATCH /api/pages/{id}.

    Only fields that are present in the request are applied
    (`model_dump(exclude_unset=True)`), so clients can clear cover_image
    by sending null explicitly, or move a page to the top level with
    `"parent_id": null`.
    """
    title: Optional[str] = Field(default=None, max_length=255)
    parent_id: Optional[int] = Field(default=None, ge=1)
    content: Optional[Dict[str, Any]] = None
    icon: Optional[str] = Field(default=None, max_length=32)
    cover_image: Optional[str] = Field(default=None, max_length=500)
    is_published: Optional[bool] = None


class PageResponse(BaseModel):
    id: int
    owner_id: int
    parent_id: Optional[int] = None
    title: str
    slug: str
    content: Dict[str, Any]
    icon: str
    cover_image: Optional[str] = None
    is_published: bool
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class PageDetailResponse(BaseModel):
    """GET /api/pages/{id}; blocks are included only with ?include_blocks=true."""
    page: PageResponse
    blocks: Optional[List[BlockResponse]] = None


class PageListResponse(BaseModel):
    count: int = Field(description="Number of pages returned")
    pages: List[PageResponse]


class PageTreeNode(PageResponse):
    """A page with its nested child pages, newest first at every level."""
    children: List["PageTreeNode"] = Field(default_factory=list)


class PageTreeResponse(BaseModel):
    count: int = Field(description="Total number of pages in the tree")
    pages: List[PageTreeNode] = Field(description="Top-level pages")

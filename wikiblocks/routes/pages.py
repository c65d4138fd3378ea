"""
WikiBlocks Backend — Page Route Handlers
==========================================

What:  Page CRUD and the page tree under /api/pages.
How:   Thin handlers: read the owner from X-User-ID, call PageService (and
       BlockService for ?include_blocks), serialize with the page schemas.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, status

from wikiblocks.dependencies import ServiceContainer, get_owner_id, get_services
from wikiblocks.schemas.block import BlockResponse, MessageResponse
from wikiblocks.schemas.common import ErrorResponse
from wikiblocks.schemas.page import (
    PageCreate,
    PageDetailResponse,
    PageListResponse,
    PageResponse,
    PageTreeResponse,
    PageUpdate,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["Pages"])

_NOT_FOUND = {404: {"description": "Page not found", "model": ErrorResponse}}


def _count_nodes(nodes) -> int:
    return sum(1 + _count_nodes(n.children) for n in nodes)


@router.post(
    "/pages",
    response_model=PageResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a page",
)
async def create_page(
    body: Optional[PageCreate] = None,
    owner_id: int = Depends(get_owner_id),
    services: ServiceContainer = Depends(get_services),
) -> PageResponse:
    page = await services.pages.create_page(owner_id, body)
    return PageResponse.model_validate(page)


@router.get(
    "/pages",
    response_model=PageListResponse,
    summary="List or search the caller's pages",
    description=(
        "With `q` the titles are searched (at least 2 characters); otherwise pages "
        "are listed newest first, optionally only the children of `parent_id`."
    ),
)
async def list_pages(
    q: Optional[str] = Query(default=None, description="Title search term"),
    published: Optional[bool] = Query(default=None, description="Filter by publish state"),
    parent_id: Optional[int] = Query(default=None, ge=1, description="List this page's children"),
    owner_id: int = Depends(get_owner_id),
    services: ServiceContainer = Depends(get_services),
) -> PageListResponse:
    if q is not None:
        pages = await services.pages.search_pages(owner_id, q)
    else:
        pages = await services.pages.list_pages(owner_id, published=published, parent_id=parent_id)
    return PageListResponse(
        count=len(pages),
        pages=[PageResponse.model_validate(p) for p in pages],
    )


@router.get(
    "/pages/tree",
    response_model=PageTreeResponse,
    summary="The caller's pages as a nested tree",
)
async def get_page_tree(
    owner_id: int = Depends(get_owner_id),
    services: ServiceContainer = Depends(get_services),
) -> PageTreeResponse:
    roots = await services.pages.get_page_tree(owner_id)
    return PageTreeResponse(count=_count_nodes(roots), pages=roots)


@router.get(
    "/pages/slug/{slug}",
    response_model=PageResponse,
    responses=_NOT_FOUND,
    summary="Get a page by its slug",
)
async def get_page_by_slug(
    slug: str,
    owner_id: int = Depends(get_owner_id),
    services: ServiceContainer = Depends(get_services),
) -> PageResponse:
    page = await services.pages.get_page_by_slug(owner_id, slug)
    return PageResponse.model_validate(page)


@router.get(
    "/pages/{page_id}",
    response_model=PageDetailResponse,
    responses=_NOT_FOUND,
    summary="Get a page, optionally with its blocks",
)
async def get_page(
    page_id: int,
    include_blocks: bool = Query(default=False),
    owner_id: int = Depends(get_owner_id),
    services: ServiceContainer = Depends(get_services),
) -> PageDetailResponse:
    page = await services.pages.get_page(owner_id, page_id)
    blocks = None
    if include_blocks:
        live = await services.blocks.get_page_blocks(owner_id, page_id)
        blocks = [BlockResponse.model_validate(b) for b in live]
    return PageDetailResponse(page=PageResponse.model_validate(page), blocks=blocks)


@router.patch(
    "/pages/{page_id}",
    response_model=PageResponse,
    responses=_NOT_FOUND,
    summary="Update page fields",
)
async def update_page(
    page_id: int,
    body: PageUpdate,
    owner_id: int = Depends(get_owner_id),
    services: ServiceContainer = Depends(get_services),
) -> PageResponse:
    page = await services.pages.update_page(owner_id, page_id, body)
    return PageResponse.model_validate(page)


@router.delete(
    "/pages/{page_id}",
    response_model=MessageResponse,
    responses=_NOT_FOUND,
    summary="Delete a page with its blocks and history",
)
async def delete_page(
    page_id: int,
    owner_id: int = Depends(get_owner_id),
    services: ServiceContainer = Depends(get_services),
) -> MessageResponse:
    await services.pages.delete_page(owner_id, page_id)
    return MessageResponse(message="Page deleted successfully")

"""
WikiBlocks Backend — Block Route Handlers
===========================================

What:  Block reads and mutations, including the editor's bulk save.
Why:   PUT /api/pages/{page_id}/blocks is the editor's save action; with
       `save_history: true` it also produces a snapshot in the page history.
"""

import logging

from fastapi import APIRouter, Depends, status

from wikiblocks.dependencies import ServiceContainer, get_owner_id, get_services
from wikiblocks.schemas.block import (
    BlockCreate,
    BlockListResponse,
    BlockResponse,
    BlockUpdate,
    MessageResponse,
    ReorderBlocksRequest,
    SaveBlocksRequest,
    SaveBlocksResponse,
)
from wikiblocks.schemas.common import ErrorResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["Blocks"])

_ERRORS = {
    400: {"description": "Invalid block payload", "model": ErrorResponse},
    404: {"description": "Page or block not found", "model": ErrorResponse},
    500: {"description": "Change rolled back", "model": ErrorResponse},
}


def _block_list(blocks) -> BlockListResponse:
    return BlockListResponse(
        count=len(blocks),
        blocks=[BlockResponse.model_validate(b) for b in blocks],
    )


@router.get(
    "/pages/{page_id}/blocks",
    response_model=BlockListResponse,
    responses=_ERRORS,
    summary="List a page's blocks in display order",
)
async def get_page_blocks(
    page_id: int,
    owner_id: int = Depends(get_owner_id),
    services: ServiceContainer = Depends(get_services),
) -> BlockListResponse:
    return _block_list(await services.blocks.get_page_blocks(owner_id, page_id))


@router.put(
    "/pages/{page_id}/blocks",
    response_model=SaveBlocksResponse,
    responses=_ERRORS,
    summary="Replace all blocks of a page",
)
async def save_page_blocks(
    page_id: int,
    body: SaveBlocksRequest,
    owner_id: int = Depends(get_owner_id),
    services: ServiceContainer = Depends(get_services),
) -> SaveBlocksResponse:
    saved = await services.blocks.save_page_blocks(
        owner_id, page_id, body.blocks, save_history=body.save_history
    )
    return SaveBlocksResponse(
        count=len(saved),
        blocks=[BlockResponse.model_validate(b) for b in saved],
    )


@router.post(
    "/pages/{page_id}/blocks/reorder",
    response_model=BlockListResponse,
    responses=_ERRORS,
    summary="Reorder a page's blocks",
)
async def reorder_blocks(
    page_id: int,
    body: ReorderBlocksRequest,
    owner_id: int = Depends(get_owner_id),
    services: ServiceContainer = Depends(get_services),
) -> BlockListResponse:
    return _block_list(await services.blocks.reorder_blocks(owner_id, page_id, body.block_ids))


@router.post(
    "/blocks",
    response_model=BlockResponse,
    status_code=status.HTTP_201_CREATED,
    responses=_ERRORS,
    summary="Create a block",
)
async def create_block(
    body: BlockCreate,
    owner_id: int = Depends(get_owner_id),
    services: ServiceContainer = Depends(get_services),
) -> BlockResponse:
    block = await services.blocks.create_block(owner_id, body)
    return BlockResponse.model_validate(block)


@router.patch(
    "/blocks/{block_id}",
    response_model=BlockResponse,
    responses=_ERRORS,
    summary="Update a block",
)
async def update_block(
    block_id: int,
    body: BlockUpdate,
    owner_id: int = Depends(get_owner_id),
    services: ServiceContainer = Depends(get_services),
) -> BlockResponse:
    block = await services.blocks.update_block(owner_id, block_id, body)
    return BlockResponse.model_validate(block)


@router.delete(
    "/blocks/{block_id}",
    response_model=MessageResponse,
    responses=_ERRORS,
    summary="Delete a block",
)
async def delete_block(
    block_id: int,
    owner_id: int = Depends(get_owner_id),
    services: ServiceContainer = Depends(get_services),
) -> MessageResponse:
    await services.blocks.delete_block(owner_id, block_id)
    return MessageResponse(message="Block deleted successfully")

"""
WikiBlocks Backend — Ownership-Scoped Lookups
===============================================

What:  Query helpers shared by the page, block and history services.
Why:   Every read and write must be filtered by owner; keeping the lookups
       in one place means no service can forget the owner predicate.
How:   Each helper runs on the caller's session (so it joins the caller's
       transaction) and raises NotFoundError for missing AND cross-owner
       rows alike.
"""

from typing import List

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from wikiblocks.exceptions import NotFoundError
from wikiblocks.models.block import Block
from wikiblocks.models.page import Page


async def load_owned_page(session: AsyncSession, owner_id: int, page_id: int) -> Page:
    result = await session.execute(
        select(Page).where(Page.id == page_id, Page.owner_id == owner_id)
    )
    page = result.scalar_one_or_none()
    if page is None:
        raise NotFoundError(resource="page", resource_id=str(page_id))
    return page


async def load_owned_block(session: AsyncSession, owner_id: int, block_id: int) -> Block:
    result = await session.execute(
        select(Block).where(Block.id == block_id, Block.owner_id == owner_id)
    )
    block = result.scalar_one_or_none()
    if block is None:
        raise NotFoundError(resource="block", resource_id=str(block_id))
    return block


async def load_page_blocks(session: AsyncSession, owner_id: int, page_id: int) -> List[Block]:
    """Live blocks of a page in display order (order_index, then insertion)."""
    result = await session.execute(
        select(Block)
        .where(Block.page_id == page_id, Block.owner_id == owner_id)
        .order_by(Block.order_index.asc(), Block.id.asc())
    )
    return list(result.scalars().all())


async def count_page_blocks(session: AsyncSession, page_id: int) -> int:
    result = await session.execute(
        select(func.count(Block.id)).where(Block.page_id == page_id)
    )
    return result.scalar() or 0

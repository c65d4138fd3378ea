"""
WikiBlocks Backend — Block Service
====================================

What:  Block CRUD, the editor's bulk save, reordering and snapshot restore.
Why:   Every block mutation also has to leave a history record; this
       service decides when, and on which side of the commit, that happens.
How:   The mutation runs in its own transaction. After it commits, the
       create / update / snapshot record is handed to the HistoryRecorder,
       which queues it. Deletes are the exception: their history record is
       written inside the delete transaction, so a rolled-back delete
       leaves no trace in history and a committed one always does.

Bulk Save Flow (PUT /api/pages/{id}/blocks):
    ┌──────────────┐    ┌───────────────┐    ┌──────────────┐    ┌──────────────┐
    │ Validate     │───▶│ Delete page's │───▶│ Insert array │───▶│ Commit, then │
    │ block array  │    │ blocks        │    │ order = i    │    │ queue snap.  │
    └──────────────┘    └───────────────┘    └──────────────┘    └──────────────┘

    Concurrent saves to the same page: the last commit wins.

Nesting:
    Blocks nest through parent_id within one page. A bulk save reinserts
    every block, so parent_id values in the array refer to other elements'
    incoming ids and are rewritten to the new ids after the insert.
    Deleting a block deletes everything nested below it.
"""

import logging
from typing import Any, Dict, List, Optional, Union

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from wikiblocks.database import mutation_scope
from wikiblocks.exceptions import DatabaseError, NotFoundError, ValidationError
from wikiblocks.models.block import Block
from wikiblocks.models.history import OPERATION_SNAPSHOT
from wikiblocks.schemas.block import BlockCreate, BlockInput, BlockUpdate
from wikiblocks.schemas.history import RestoreResult
from wikiblocks.services.history_recorder import HistoryRecorder
from wikiblocks.services.history_store import HistoryStore
from wikiblocks.services.queries import (
    count_page_blocks,
    load_owned_block,
    load_owned_page,
    load_page_blocks,
)
from wikiblocks.utils import block_to_dict, require_id, safe_parse_json

logger = logging.getLogger(__name__)

_UPDATABLE_FIELDS = ("type", "properties", "format", "order_index", "parent_id")
_NULLABLE_FIELDS = ("parent_id",)


def _validate_block_array(blocks: Any) -> List[BlockInput]:
    if not isinstance(blocks, list):
        raise ValidationError(message="blocks must be an array", field="blocks")
    validated = []
    for index, raw in enumerate(blocks):
        try:
            validated.append(BlockInput.model_validate(raw))
        except PydanticValidationError as e:
            raise ValidationError(
                message=f"Invalid block at position {index}",
                field=f"blocks[{index}]",
                context={"errors": e.errors(include_url=False, include_context=False)},
            )
    _check_array_nesting(validated)
    return validated


def _check_array_nesting(inputs: List[BlockInput]) -> None:
    """parent_id must name another element's id in the same array, without cycles."""
    parents: Dict[int, Optional[int]] = {}
    for index, item in enumerate(inputs):
        if item.id is None:
            continue
        if item.id in parents:
            raise ValidationError(
                message=f"Duplicate block id {item.id}", field=f"blocks[{index}]"
            )
        parents[item.id] = item.parent_id

    for index, item in enumerate(inputs):
        if item.parent_id is None:
            continue
        if item.parent_id not in parents:
            raise ValidationError(
                message=f"Block at position {index} references unknown parent {item.parent_id}",
                field=f"blocks[{index}]",
            )
        seen = {item.id}
        current: Optional[int] = item.parent_id
        while current is not None:
            if current in seen:
                raise ValidationError(
                    message=f"Block at position {index} is nested inside itself",
                    field=f"blocks[{index}]",
                )
            seen.add(current)
            current = parents.get(current)


async def _check_parent_block(
    session: AsyncSession,
    owner_id: int,
    page_id: int,
    parent_id: Optional[int],
    block_id: Optional[int] = None,
) -> None:
    if parent_id is None:
        return
    if parent_id == block_id:
        raise ValidationError(message="A block cannot be its own parent", field="parent_id")
    result = await session.execute(
        select(Block.id, Block.parent_id).where(
            Block.page_id == page_id, Block.owner_id == owner_id
        )
    )
    parents = dict(result.all())
    if parent_id not in parents:
        raise ValidationError(message="Parent block not found on this page", field="parent_id")

    # Walking up from the new parent must never reach the block itself
    seen = set()
    current = parent_id
    while current is not None and current not in seen:
        if current == block_id:
            raise ValidationError(
                message="A block cannot be nested under its own descendant",
                field="parent_id",
            )
        seen.add(current)
        current = parents.get(current)


async def _descendants(session: AsyncSession, block: Block) -> List[Block]:
    """Every block nested below `block`, parents before children."""
    result = await session.execute(
        select(Block)
        .where(Block.page_id == block.page_id, Block.owner_id == block.owner_id)
        .order_by(Block.order_index.asc(), Block.id.asc())
    )
    children: Dict[int, List[Block]] = {}
    for candidate in result.scalars().all():
        if candidate.parent_id is not None:
            children.setdefault(candidate.parent_id, []).append(candidate)

    found: List[Block] = []
    seen = {block.id}
    pending = list(children.get(block.id, []))
    while pending:
        current = pending.pop(0)
        if current.id in seen:
            continue
        seen.add(current.id)
        found.append(current)
        pending.extend(children.get(current.id, []))
    return found


class BlockService:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        recorder: HistoryRecorder,
        store: HistoryStore,
    ):
        self._session_factory = session_factory
        self._recorder = recorder
        self._store = store

    # ── Reads ─────────────────────────────────────────────────────────────

    async def get_page_blocks(self, owner_id: Any, page_id: Any) -> List[Block]:
        owner_id = require_id(owner_id, "owner_id")
        page_id = require_id(page_id, "page_id")
        try:
            async with self._session_factory() as session:
                await load_owned_page(session, owner_id, page_id)
                return await load_page_blocks(session, owner_id, page_id)
        except SQLAlchemyError as e:
            logger.error(f"Failed to load blocks for page {page_id}: {e}")
            raise DatabaseError(context={"page_id": page_id})

    # ── Single-block mutations ────────────────────────────────────────────

    async def create_block(self, owner_id: Any, data: BlockCreate) -> Block:
        """Insert one block; without an order_index it goes to the end of the page."""
        owner_id = require_id(owner_id, "owner_id")
        page_id = require_id(data.page_id, "page_id")

        async with mutation_scope(
            self._session_factory, "create block", owner_id=owner_id, page_id=page_id
        ) as session:
            await load_owned_page(session, owner_id, page_id)
            await _check_parent_block(session, owner_id, page_id, data.parent_id)
            order_index = data.order_index
            if order_index is None:
                order_index = await count_page_blocks(session, page_id)
            block = Block(
                owner_id=owner_id,
                page_id=page_id,
                parent_id=data.parent_id,
                type=data.type,
                properties=data.properties,
                format=data.format,
                order_index=order_index,
            )
            session.add(block)
            await session.flush()
            payload = block_to_dict(block)

        await self._recorder.record_block_create(owner_id, page_id, block.id, payload)
        return block

    async def update_block(
        self, owner_id: Any, block_id: Any, changes: Union[BlockUpdate, Dict[str, Any]]
    ) -> Block:
        """
        Apply type / properties / format / order_index / parent_id changes.

        Other keys are ignored; a change set with none of these fields is a
        ValidationError raised before any storage access. An explicit null
        parent_id moves the block to the top level of its page.
        """
        owner_id = require_id(owner_id, "owner_id")
        block_id = require_id(block_id, "block_id")
        if isinstance(changes, BlockUpdate):
            changes = changes.model_dump(exclude_unset=True)
        updates = {
            key: value
            for key, value in (changes or {}).items()
            if key in _UPDATABLE_FIELDS and (value is not None or key in _NULLABLE_FIELDS)
        }
        if not updates:
            raise ValidationError(message="No valid fields to update", field="changes")

        async with mutation_scope(
            self._session_factory, "update block", owner_id=owner_id, block_id=block_id
        ) as session:
            block = await load_owned_block(session, owner_id, block_id)
            if "parent_id" in updates:
                await _check_parent_block(
                    session, owner_id, block.page_id, updates["parent_id"], block.id
                )
            old_block = block_to_dict(block)
            for key, value in updates.items():
                setattr(block, key, value)
            await session.flush()

        await self._recorder.record_block_update(
            owner_id, block.page_id, block.id, old_block, updates
        )
        return block

    async def delete_block(self, owner_id: Any, block_id: Any) -> None:
        """
        Delete a block, its nested blocks, and record it in history atomically.

        One delete record is written for the block; nested blocks removed
        with it are listed under "descendants" in that record's block_data.

        Raises:
            NotFoundError:         block missing or owned by someone else
            FatalTransactionError: either write failed; neither was kept
        """
        owner_id = require_id(owner_id, "owner_id")
        block_id = require_id(block_id, "block_id")

        async with mutation_scope(
            self._session_factory, "delete block", owner_id=owner_id, block_id=block_id
        ) as session:
            block = await load_owned_block(session, owner_id, block_id)
            descendants = await _descendants(session, block)
            snapshot = block_to_dict(block)
            if descendants:
                snapshot["descendants"] = [block_to_dict(d) for d in descendants]
            await self._recorder.record_block_delete(
                session, owner_id, block.page_id, block.id, snapshot
            )
            if descendants:
                await session.execute(
                    delete(Block)
                    .where(Block.id.in_([d.id for d in descendants]))
                    .execution_options(synchronize_session=False)
                )
            await self._remove_block(session, block)

        logger.info(
            f"Deleted block {block_id}",
            extra={"owner_id": owner_id, "descendants": len(descendants)},
        )

    async def _remove_block(self, session: AsyncSession, block: Block) -> None:
        await session.delete(block)
        await session.flush()

    # ── Whole-page mutations ──────────────────────────────────────────────

    async def save_page_blocks(
        self,
        owner_id: Any,
        page_id: Any,
        blocks: Any,
        save_history: bool = False,
    ) -> List[Block]:
        """
        Replace a page's blocks with `blocks`, in array order.

        Every saved block gets a fresh id and order_index equal to its array
        position. An element's parent_id names another element's incoming
        id and is rewritten to that element's new id. With save_history the
        saved array is recorded as a snapshot once the save has committed.
        """
        owner_id = require_id(owner_id, "owner_id")
        page_id = require_id(page_id, "page_id")
        inputs = _validate_block_array(blocks)

        async with mutation_scope(
            self._session_factory, "save blocks", owner_id=owner_id, page_id=page_id
        ) as session:
            await load_owned_page(session, owner_id, page_id)
            previous = [block_to_dict(b) for b in await load_page_blocks(session, owner_id, page_id)]

            await session.execute(
                delete(Block)
                .where(Block.page_id == page_id)
                .execution_options(synchronize_session=False)
            )
            saved = [
                Block(
                    owner_id=owner_id,
                    page_id=page_id,
                    type=item.type,
                    properties=item.properties,
                    format=item.format,
                    order_index=index,
                )
                for index, item in enumerate(inputs)
            ]
            session.add_all(saved)
            await session.flush()

            new_ids = {
                item.id: block.id for item, block in zip(inputs, saved) if item.id is not None
            }
            nested = [(item, block) for item, block in zip(inputs, saved) if item.parent_id]
            for item, block in nested:
                block.parent_id = new_ids[item.parent_id]
            if nested:
                await session.flush()
            new_blocks = [block_to_dict(b) for b in saved]

        logger.info(
            f"Saved {len(saved)} blocks on page {page_id}",
            extra={"owner_id": owner_id, "save_history": save_history},
        )
        if save_history:
            await self._recorder.record_page_snapshot(owner_id, page_id, previous, new_blocks)
        return saved

    async def reorder_blocks(self, owner_id: Any, page_id: Any, block_ids: Any) -> List[Block]:
        """
        Set order_index to each listed block's position in `block_ids`.

        Ids that are not blocks of this page are ignored. Returns the page's
        blocks in their new order.
        """
        owner_id = require_id(owner_id, "owner_id")
        page_id = require_id(page_id, "page_id")
        if not isinstance(block_ids, list):
            raise ValidationError(message="block_ids must be an array", field="block_ids")

        async with mutation_scope(
            self._session_factory, "reorder blocks", owner_id=owner_id, page_id=page_id
        ) as session:
            await load_owned_page(session, owner_id, page_id)
            by_id = {b.id: b for b in await load_page_blocks(session, owner_id, page_id)}
            for position, block_id in enumerate(block_ids):
                block = by_id.get(block_id)
                if block is not None:
                    block.order_index = position
            await session.flush()
            ordered = await load_page_blocks(session, owner_id, page_id)

        return ordered

    async def restore_snapshot(self, owner_id: Any, history_id: Any) -> RestoreResult:
        """
        Make a snapshot's block array the page's current content.

        The restore goes through save_page_blocks with history enabled, so
        restoring is itself recorded as a new snapshot.
        """
        owner_id = require_id(owner_id, "owner_id")
        history_id = require_id(history_id, "history_id")

        try:
            async with self._session_factory() as session:
                row = await self._store.get_by_id(session, history_id, owner_id)
        except SQLAlchemyError as e:
            logger.error(f"Failed to load history entry {history_id}: {e}")
            raise DatabaseError(context={"history_id": history_id})
        if row is None:
            raise NotFoundError(resource="history entry", resource_id=str(history_id))

        record = row[0]
        if record.operation != OPERATION_SNAPSHOT:
            raise ValidationError(
                message="Only snapshot entries can be restored",
                field="history_id",
            )
        blocks = safe_parse_json(record.snapshot_data).get("blocks")
        if not isinstance(blocks, list):
            raise ValidationError(
                message="Snapshot has no block data to restore",
                field="history_id",
            )

        saved = await self.save_page_blocks(owner_id, record.page_id, blocks, save_history=True)
        return RestoreResult(page_id=record.page_id, history_id=record.id, count=len(saved))

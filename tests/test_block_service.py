"""
WikiBlocks Backend — Block Service Tests
==========================================

What we test:
    ✅ Bulk save replaces blocks in array order with fresh ids
    ✅ Snapshots are recorded only when asked for
    ✅ Delete writes exactly one history record, atomically with the delete
    ✅ A failing delete leaves both the block and history untouched
    ✅ Updates, reorder and restore
    ✅ Nesting: parent ids are remapped on save, kept by restore, and
       deleting a parent takes its children with it
    ✅ Ownership: other owners' pages and blocks are not found
"""

from unittest.mock import AsyncMock, patch

import pytest

from conftest import OTHER_OWNER, OWNER, fetch_history
from wikiblocks.exceptions import FatalTransactionError, NotFoundError, ValidationError
from wikiblocks.schemas.block import BlockCreate, BlockUpdate
from wikiblocks.schemas.page import PageCreate
from wikiblocks.services.block_service import BlockService
from wikiblocks.utils import safe_parse_json


def _blocks(*texts):
    return [{"type": "text", "properties": {"title": [[t]]}} for t in texts]


class TestSavePageBlocks:
    @pytest.mark.asyncio
    async def test_replaces_blocks_in_array_order(self, block_service, page):
        first = await block_service.save_page_blocks(OWNER, page.id, _blocks("a", "b", "c"))
        second = await block_service.save_page_blocks(OWNER, page.id, _blocks("z", "y"))

        live = await block_service.get_page_blocks(OWNER, page.id)
        assert [b.properties["title"][0][0] for b in live] == ["z", "y"]
        assert [b.order_index for b in live] == [0, 1]
        # Ids are never reused after a bulk delete
        assert min(b.id for b in second) > max(b.id for b in first)

    @pytest.mark.asyncio
    async def test_incoming_ids_are_ignored(self, block_service, page):
        payload = [{"id": 999, "type": "todo", "properties": {}, "format": {"checked": True}}]
        [saved] = await block_service.save_page_blocks(OWNER, page.id, payload)
        assert saved.id != 999
        assert saved.format == {"checked": True}

    @pytest.mark.asyncio
    async def test_empty_array_clears_page(self, block_service, page):
        await block_service.save_page_blocks(OWNER, page.id, _blocks("a"))
        assert await block_service.save_page_blocks(OWNER, page.id, []) == []
        assert await block_service.get_page_blocks(OWNER, page.id) == []

    @pytest.mark.asyncio
    async def test_snapshot_only_with_save_history(
        self, block_service, history_queue, session_factory, page
    ):
        await block_service.save_page_blocks(OWNER, page.id, _blocks("a"))
        await block_service.save_page_blocks(OWNER, page.id, _blocks("a", "b"), save_history=True)
        await history_queue.drain()

        [record] = await fetch_history(session_factory, page.id)
        snapshot = safe_parse_json(record.snapshot_data)
        assert record.operation == "snapshot"
        assert [b["properties"]["title"][0][0] for b in snapshot["blocks"]] == ["a", "b"]
        assert snapshot["change_count"] == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("payload", [None, {"type": "text"}, "blocks"])
    async def test_non_list_rejected(self, block_service, page, payload):
        with pytest.raises(ValidationError) as exc_info:
            await block_service.save_page_blocks(OWNER, page.id, payload)
        assert exc_info.value.field == "blocks"

    @pytest.mark.asyncio
    async def test_invalid_element_rejected_with_position(self, block_service, page):
        with pytest.raises(ValidationError) as exc_info:
            await block_service.save_page_blocks(OWNER, page.id, [{"type": "text"}, {"properties": {}}])
        assert exc_info.value.field == "blocks[1]"

    @pytest.mark.asyncio
    async def test_other_owner_cannot_save(self, block_service, page):
        with pytest.raises(NotFoundError):
            await block_service.save_page_blocks(OTHER_OWNER, page.id, _blocks("x"))

    @pytest.mark.asyncio
    async def test_missing_owner_rejected_before_storage(self, untouchable_factory, recorder, store):
        service = BlockService(untouchable_factory, recorder, store)
        with pytest.raises(ValidationError):
            await service.save_page_blocks(None, 1, _blocks("a"))
        with pytest.raises(ValidationError):
            await service.delete_block(None, 1)
        with pytest.raises(ValidationError):
            await service.update_block(None, 1, {"type": "h1"})
        untouchable_factory.assert_not_called()


class TestCreateAndUpdate:
    @pytest.mark.asyncio
    async def test_create_appends_and_records(
        self, block_service, history_queue, session_factory, page
    ):
        await block_service.save_page_blocks(OWNER, page.id, _blocks("a", "b"))
        block = await block_service.create_block(
            OWNER, BlockCreate(page_id=page.id, type="heading", properties={"title": [["H"]]})
        )
        await history_queue.drain()

        assert block.order_index == 2
        [record] = await fetch_history(session_factory, page.id)
        assert record.operation == "create"
        assert record.block_id == block.id
        assert safe_parse_json(record.block_data)["type"] == "heading"

    @pytest.mark.asyncio
    async def test_create_on_foreign_page_not_found(self, block_service, page):
        with pytest.raises(NotFoundError):
            await block_service.create_block(OTHER_OWNER, BlockCreate(page_id=page.id, type="text"))

    @pytest.mark.asyncio
    async def test_update_applies_allowed_fields_only(
        self, block_service, history_queue, session_factory, page
    ):
        [block] = await block_service.save_page_blocks(OWNER, page.id, _blocks("a"))
        updated = await block_service.update_block(
            OWNER, block.id, {"type": "quote", "page_id": 12345, "owner_id": 99}
        )
        await history_queue.drain()

        assert updated.type == "quote"
        assert updated.page_id == page.id
        assert updated.owner_id == OWNER
        [record] = await fetch_history(session_factory, page.id)
        data = safe_parse_json(record.block_data)
        assert data["old"]["type"] == "text"
        assert data["new"]["type"] == "quote"

    @pytest.mark.asyncio
    async def test_empty_update_rejected(self, block_service, page):
        [block] = await block_service.save_page_blocks(OWNER, page.id, _blocks("a"))
        with pytest.raises(ValidationError):
            await block_service.update_block(OWNER, block.id, {"unknown": 1})

    @pytest.mark.asyncio
    async def test_update_foreign_block_not_found(self, block_service, page):
        [block] = await block_service.save_page_blocks(OWNER, page.id, _blocks("a"))
        with pytest.raises(NotFoundError):
            await block_service.update_block(OTHER_OWNER, block.id, {"type": "h1"})


class TestDeleteBlock:
    @pytest.mark.asyncio
    async def test_exactly_one_delete_record(self, block_service, session_factory, page):
        [block, keep] = await block_service.save_page_blocks(OWNER, page.id, _blocks("gone", "kept"))

        await block_service.delete_block(OWNER, block.id)

        live = await block_service.get_page_blocks(OWNER, page.id)
        assert [b.id for b in live] == [keep.id]
        records = await fetch_history(session_factory, page.id)
        assert [(r.operation, r.block_id) for r in records] == [("delete", block.id)]
        assert safe_parse_json(records[0].block_data)["properties"] == {"title": [["gone"]]}

    @pytest.mark.asyncio
    async def test_failed_delete_keeps_block_and_adds_no_history(
        self, block_service, session_factory, page
    ):
        [block] = await block_service.save_page_blocks(OWNER, page.id, _blocks("a"))

        with patch.object(
            block_service, "_remove_block", AsyncMock(side_effect=RuntimeError("disk full"))
        ):
            with pytest.raises(FatalTransactionError):
                await block_service.delete_block(OWNER, block.id)

        assert [b.id for b in await block_service.get_page_blocks(OWNER, page.id)] == [block.id]
        assert await fetch_history(session_factory, page.id) == []

    @pytest.mark.asyncio
    async def test_failed_history_write_keeps_block(
        self, block_service, recorder, session_factory, page
    ):
        [block] = await block_service.save_page_blocks(OWNER, page.id, _blocks("a"))

        with patch.object(
            recorder, "record_block_delete", AsyncMock(side_effect=RuntimeError("history down"))
        ):
            with pytest.raises(FatalTransactionError):
                await block_service.delete_block(OWNER, block.id)

        assert len(await block_service.get_page_blocks(OWNER, page.id)) == 1

    @pytest.mark.asyncio
    async def test_delete_foreign_block_not_found(self, block_service, session_factory, page):
        [block] = await block_service.save_page_blocks(OWNER, page.id, _blocks("a"))
        with pytest.raises(NotFoundError):
            await block_service.delete_block(OTHER_OWNER, block.id)
        assert await fetch_history(session_factory, page.id) == []


class TestReorderAndRestore:
    @pytest.mark.asyncio
    async def test_reorder(self, block_service, page):
        a, b, c = await block_service.save_page_blocks(OWNER, page.id, _blocks("a", "b", "c"))
        ordered = await block_service.reorder_blocks(OWNER, page.id, [c.id, a.id, b.id, 424242])
        assert [blk.id for blk in ordered] == [c.id, a.id, b.id]
        assert [blk.order_index for blk in ordered] == [0, 1, 2]

    @pytest.mark.asyncio
    async def test_reorder_requires_list(self, block_service, page):
        with pytest.raises(ValidationError):
            await block_service.reorder_blocks(OWNER, page.id, "1,2,3")

    @pytest.mark.asyncio
    async def test_restore_snapshot(
        self, block_service, timeline_service, history_queue, page
    ):
        await block_service.save_page_blocks(OWNER, page.id, _blocks("v1-a", "v1-b"), save_history=True)
        await history_queue.drain()
        [v1] = await timeline_service.get_recent_snapshots(page.id, OWNER)
        await block_service.save_page_blocks(OWNER, page.id, _blocks("v2"), save_history=True)

        result = await block_service.restore_snapshot(OWNER, v1.id)
        await history_queue.drain()

        assert result.count == 2
        assert result.page_id == page.id
        live = await block_service.get_page_blocks(OWNER, page.id)
        assert [b.properties["title"][0][0] for b in live] == ["v1-a", "v1-b"]
        # The restore is itself a new snapshot
        assert len(await timeline_service.get_recent_snapshots(page.id, OWNER)) == 3

    @pytest.mark.asyncio
    async def test_restore_rejects_non_snapshot(self, block_service, session_factory, page):
        [block] = await block_service.save_page_blocks(OWNER, page.id, _blocks("a"))
        await block_service.delete_block(OWNER, block.id)
        [record] = await fetch_history(session_factory, page.id)
        with pytest.raises(ValidationError):
            await block_service.restore_snapshot(OWNER, record.id)

    @pytest.mark.asyncio
    async def test_restore_foreign_entry_not_found(self, block_service, session_factory, page):
        [block] = await block_service.save_page_blocks(OWNER, page.id, _blocks("a"))
        await block_service.delete_block(OWNER, block.id)
        [record] = await fetch_history(session_factory, page.id)
        with pytest.raises(NotFoundError):
            await block_service.restore_snapshot(OTHER_OWNER, record.id)


def _tree():
    """root > child > grandchild, plus a sibling at the top level."""
    return [
        {"id": 1, "type": "toggle", "properties": {"title": [["root"]]}},
        {"id": 2, "type": "text", "properties": {"title": [["child"]]}, "parent_id": 1},
        {"id": 3, "type": "text", "properties": {"title": [["grandchild"]]}, "parent_id": 2},
        {"id": 4, "type": "text", "properties": {"title": [["sibling"]]}},
    ]


class TestNesting:
    @pytest.mark.asyncio
    async def test_save_rewrites_parent_ids(self, block_service, page):
        await block_service.save_page_blocks(OWNER, page.id, _blocks("old"))
        root, child, grandchild, sibling = await block_service.save_page_blocks(
            OWNER, page.id, _tree()
        )

        assert root.parent_id is None
        assert child.parent_id == root.id
        assert grandchild.parent_id == child.id
        assert sibling.parent_id is None
        assert root.id != 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "payload",
        [
            # parent not in the array
            [{"id": 1, "type": "text"}, {"type": "text", "parent_id": 7}],
            # two elements claim the same id
            [{"id": 1, "type": "text"}, {"id": 1, "type": "text"}],
            # nested inside each other
            [{"id": 1, "type": "text", "parent_id": 2}, {"id": 2, "type": "text", "parent_id": 1}],
        ],
    )
    async def test_bad_nesting_rejected_with_position(self, block_service, page, payload):
        await block_service.save_page_blocks(OWNER, page.id, _blocks("kept"))
        with pytest.raises(ValidationError) as exc_info:
            await block_service.save_page_blocks(OWNER, page.id, payload)
        assert exc_info.value.field.startswith("blocks[")
        assert len(await block_service.get_page_blocks(OWNER, page.id)) == 1

    @pytest.mark.asyncio
    async def test_restore_keeps_nesting(
        self, block_service, timeline_service, history_queue, page
    ):
        await block_service.save_page_blocks(OWNER, page.id, _tree(), save_history=True)
        await history_queue.drain()
        [nested] = await timeline_service.get_recent_snapshots(page.id, OWNER)
        await block_service.save_page_blocks(OWNER, page.id, _blocks("flat"), save_history=True)

        await block_service.restore_snapshot(OWNER, nested.id)

        root, child, grandchild, sibling = await block_service.get_page_blocks(OWNER, page.id)
        assert child.parent_id == root.id
        assert grandchild.parent_id == child.id
        assert sibling.parent_id is None

    @pytest.mark.asyncio
    async def test_create_under_parent_on_same_page_only(self, block_service, page_service, page):
        [parent] = await block_service.save_page_blocks(OWNER, page.id, _blocks("parent"))
        child = await block_service.create_block(
            OWNER, BlockCreate(page_id=page.id, type="text", parent_id=parent.id)
        )
        assert child.parent_id == parent.id

        elsewhere = await page_service.create_page(OWNER, PageCreate(title="Elsewhere"))
        with pytest.raises(ValidationError) as exc_info:
            await block_service.create_block(
                OWNER, BlockCreate(page_id=elsewhere.id, type="text", parent_id=parent.id)
            )
        assert exc_info.value.field == "parent_id"

    @pytest.mark.asyncio
    async def test_update_moves_and_unnests(self, block_service, page):
        root, child, grandchild, sibling = await block_service.save_page_blocks(
            OWNER, page.id, _tree()
        )

        moved = await block_service.update_block(OWNER, sibling.id, BlockUpdate(parent_id=root.id))
        assert moved.parent_id == root.id

        unnested = await block_service.update_block(
            OWNER, child.id, BlockUpdate.model_validate({"parent_id": None})
        )
        assert unnested.parent_id is None

    @pytest.mark.asyncio
    async def test_update_cannot_create_cycle(self, block_service, page):
        root, child, grandchild, _ = await block_service.save_page_blocks(OWNER, page.id, _tree())

        with pytest.raises(ValidationError):
            await block_service.update_block(OWNER, root.id, {"parent_id": grandchild.id})
        with pytest.raises(ValidationError):
            await block_service.update_block(OWNER, child.id, {"parent_id": child.id})

        live = {b.id: b.parent_id for b in await block_service.get_page_blocks(OWNER, page.id)}
        assert live[root.id] is None

    @pytest.mark.asyncio
    async def test_delete_parent_removes_children_with_one_record(
        self, block_service, session_factory, page
    ):
        root, child, grandchild, sibling = await block_service.save_page_blocks(
            OWNER, page.id, _tree()
        )

        await block_service.delete_block(OWNER, root.id)

        live = await block_service.get_page_blocks(OWNER, page.id)
        assert [b.id for b in live] == [sibling.id]
        [record] = await fetch_history(session_factory, page.id)
        assert (record.operation, record.block_id) == ("delete", root.id)
        data = safe_parse_json(record.block_data)
        assert [d["id"] for d in data["descendants"]] == [child.id, grandchild.id]

    @pytest.mark.asyncio
    async def test_delete_leaf_has_no_descendants_key(self, block_service, session_factory, page):
        _, _, grandchild, _ = await block_service.save_page_blocks(OWNER, page.id, _tree())
        await block_service.delete_block(OWNER, grandchild.id)
        [record] = await fetch_history(session_factory, page.id)
        assert "descendants" not in safe_parse_json(record.block_data)

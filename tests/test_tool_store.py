import asyncio

import pytest

from widgetsmith.crud.tool import ToolStore, default_tool_name
from widgetsmith.exceptions import IllegalTransitionError, LimitExceededError, ToolNotFoundError
from widgetsmith.services.locks import KeyedLocks


@pytest.mark.asyncio
async def test_create_starts_in_generating_with_placeholder_name(session_factory, store, trace_logger):
    async with session_factory() as db:
        tool = await store.create(db, "owner-1", None, "A world clock")
    assert tool.status == "generating"
    assert tool.generation == 1
    assert tool.name == default_tool_name()
    assert tool.last_result is None
    trace_logger.log_event.assert_any_await("tool_created", {"tool_id": tool.id, "owner_id": "owner-1"})


@pytest.mark.asyncio
async def test_limit_is_enforced_and_deleting_frees_a_slot(session_factory, trace_logger):
    store = ToolStore(10, KeyedLocks("owner"), trace_logger)
    async with session_factory() as db:
        tools = [await store.create(db, "owner-1", f"Tool {i}", "desc") for i in range(10)]

        with pytest.raises(LimitExceededError) as exc_info:
            await store.create(db, "owner-1", "Eleventh", "desc")
        assert exc_info.value.status_code == 429
        assert await store.count_live(db, "owner-1") == 10

        assert await store.delete(db, tools[0].id, "owner-1") is True
        eleventh = await store.create(db, "owner-1", "Eleventh", "desc")
        assert eleventh.status == "generating"
        assert await store.count_live(db, "owner-1") == 10


@pytest.mark.asyncio
async def test_concurrent_creates_cannot_overshoot_the_limit(session_factory, trace_logger):
    store = ToolStore(3, KeyedLocks("owner"), trace_logger)

    async def create(i):
        async with session_factory() as db:
            return await store.create(db, "owner-1", f"Tool {i}", "desc")

    results = await asyncio.gather(*(create(i) for i in range(6)), return_exceptions=True)
    created = [r for r in results if not isinstance(r, Exception)]
    rejected = [r for r in results if isinstance(r, LimitExceededError)]
    assert len(created) == 3
    assert len(rejected) == 3


@pytest.mark.asyncio
async def test_delete_is_idempotent_and_final(session_factory, store):
    async with session_factory() as db:
        tool = await store.create(db, "owner-1", "Clock", "desc")
        assert await store.delete(db, tool.id, "owner-1") is True
        assert await store.delete(db, tool.id, "owner-1") is False
        assert await store.delete(db, "unknown-id", "owner-1") is False

        with pytest.raises(ToolNotFoundError):
            await store.get(db, tool.id)
        with pytest.raises(ToolNotFoundError):
            await store.update(db, tool.id, {"name": "New"})
        assert await store.list_by_owner(db, "owner-1") == []


@pytest.mark.asyncio
async def test_other_owners_cannot_see_or_delete(session_factory, store):
    async with session_factory() as db:
        tool = await store.create(db, "owner-1", "Clock", "desc")
        with pytest.raises(ToolNotFoundError):
            await store.get(db, tool.id, "owner-2")
        assert await store.delete(db, tool.id, "owner-2") is False
        assert (await store.get(db, tool.id, "owner-1")).status == "generating"


@pytest.mark.asyncio
async def test_update_validates_status_transitions(session_factory, store):
    async with session_factory() as db:
        tool = await store.create(db, "owner-1", "Clock", "desc")
        with pytest.raises(IllegalTransitionError):
            await store.update(db, tool.id, {"status": "draft"})

        updated = await store.update(db, tool.id, {"status": "error", "error_message": "boom"})
        assert updated.status == "error"

        renamed = await store.update(db, tool.id, {"name": "Renamed", "status": "error"})
        assert renamed.name == "Renamed"

        with pytest.raises(IllegalTransitionError):
            await store.update(db, tool.id, {"status": "generating"})


@pytest.mark.asyncio
async def test_compare_and_set_never_resurrects_a_deleted_tool(session_factory, store):
    async with session_factory() as db:
        tool = await store.create(db, "owner-1", "Clock", "desc")
        await store.delete(db, tool.id, "owner-1")
        changed = await store.compare_and_set(
            db, tool.id, "generating", {"status": "ready"}, expected_generation=1,
        )
        assert changed is False
        assert await store.find(db, tool.id) is None


@pytest.mark.asyncio
async def test_compare_and_set_checks_generation(session_factory, store):
    async with session_factory() as db:
        tool = await store.create(db, "owner-1", "Clock", "desc")
        assert await store.compare_and_set(db, tool.id, "generating", {"status": "error", "error_message": "x"},
                                           expected_generation=2) is False
        assert await store.compare_and_set(db, tool.id, "generating", {"status": "error", "error_message": "x"},
                                           expected_generation=1) is True


@pytest.mark.asyncio
async def test_list_is_ordered_by_position_and_reorder_applies(session_factory, store):
    async with session_factory() as db:
        first = await store.create(db, "owner-1", "First", "desc")
        second = await store.create(db, "owner-1", "Second", "desc")
        assert [t.id for t in await store.list_by_owner(db, "owner-1")] == [first.id, second.id]

        changed = await store.reorder(db, "owner-1", [
            {"id": first.id, "position": 5},
            {"id": second.id, "position": 1},
            {"id": "missing", "position": 0},
        ])
        assert changed == 2
        assert [t.id for t in await store.list_by_owner(db, "owner-1")] == [second.id, first.id]


@pytest.mark.asyncio
async def test_interrupted_generations_are_failed_and_others_left_alone(session_factory, store, trace_logger):
    async with session_factory() as db:
        orphan = await store.create(db, "owner-1", "Orphan", "desc")
        done = await store.create(db, "owner-1", "Done", "desc")
        gone = await store.create(db, "owner-2", "Gone", "desc")
        await store.compare_and_set(db, done.id, "generating", {"status": "ready"}, expected_generation=1)
        await store.delete(db, gone.id, "owner-2")

        failed = await store.fail_interrupted_generations(db, "interrupted")

        assert failed == [orphan.id]
        assert (await store.get(db, orphan.id)).status == "error"
        assert (await store.get(db, orphan.id)).error_message == "interrupted"
        assert (await store.get(db, done.id)).status == "ready"
        assert await store.find(db, gone.id) is None
        assert await store.fail_interrupted_generations(db, "interrupted") == []
    trace_logger.log_event.assert_any_await("generations_interrupted", {"tool_ids": [orphan.id]})

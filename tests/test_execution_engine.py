import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from conftest import CLOCK_CODE, ECHO_CODE
from widgetsmith.exceptions import NotReadyError, SandboxTimeoutError, ToolNotFoundError
from widgetsmith.services.execution_engine import ExecutionEngine, normalize_result


async def make_ready_tool(session_factory, store, code=ECHO_CODE, schema=None, current=None):
    async with session_factory() as db:
        tool = await store.create(db, "owner-1", "Echo", "echo params")
        await store.compare_and_set(db, tool.id, "generating", {
            "status": "ready",
            "generated_code": code,
            "parameters_schema": schema or {},
            "current_parameters": current or {},
        }, expected_generation=1)
        return await store.get(db, tool.id)


def test_normalize_result_accepts_known_shapes():
    assert normalize_result({"type": "html", "content": "<p>x</p>"}).content == "<p>x</p>"
    assert normalize_result({"type": "json", "content": {"a": 1}}).content == json.dumps({"a": 1})


@pytest.mark.parametrize("output", [None, "plain string", {"type": "pdf", "content": "x"}, {"type": "html"}])
def test_normalize_result_turns_garbage_into_error(output):
    assert normalize_result(output).type == "error"


@pytest.mark.asyncio
async def test_execute_merges_parameters_and_persists_result(session_factory, store, engine, broker):
    tool = await make_ready_tool(session_factory, store, schema={"count": 1, "label": "x"}, current={"label": "keep"})
    queue = broker.new_queue()
    broker.subscribe(tool.id, queue)

    outcome = await engine.execute(tool.id, "owner-1", {"count": "3"})

    assert outcome.success is True
    assert json.loads(outcome.result.content) == {"label": "keep", "count": 3.0}
    async with session_factory() as db:
        stored = await store.get(db, tool.id)
    assert stored.status == "ready"
    assert stored.current_parameters == {"label": "keep", "count": 3.0}
    assert stored.last_result == outcome.result.model_dump()
    assert stored.execution_count == 1
    event = queue.get_nowait()
    assert event["event"] == "result"
    assert event["toolId"] == tool.id


@pytest.mark.asyncio
async def test_execute_on_generating_tool_is_not_ready_and_mutates_nothing(session_factory, store, engine):
    async with session_factory() as db:
        tool = await store.create(db, "owner-1", "Clock", "desc")

    with pytest.raises(NotReadyError) as exc_info:
        await engine.execute(tool.id, "owner-1", {"a": 1})
    assert exc_info.value.status_code == 409

    async with session_factory() as db:
        stored = await store.get(db, tool.id)
    assert stored.last_result is None
    assert stored.current_parameters == {}


@pytest.mark.asyncio
async def test_execute_on_deleted_tool_fails(session_factory, store, engine):
    tool = await make_ready_tool(session_factory, store)
    async with session_factory() as db:
        await store.delete(db, tool.id, "owner-1")
    with pytest.raises(ToolNotFoundError):
        await engine.execute(tool.id, "owner-1", {})


@pytest.mark.asyncio
async def test_render_exception_becomes_error_result_and_tool_stays_ready(session_factory, store, engine):
    code = "def render(params):\n    raise ValueError('bad input')\n"
    tool = await make_ready_tool(session_factory, store, code=code)

    outcome = await engine.execute(tool.id, "owner-1", {})

    assert outcome.success is False
    assert outcome.result.type == "error"
    assert "bad input" in outcome.error
    async with session_factory() as db:
        stored = await store.get(db, tool.id)
    assert stored.status == "ready"
    assert stored.error_message is None
    assert stored.last_result["type"] == "error"


@pytest.mark.asyncio
async def test_timeout_becomes_error_result(session_factory, store, broker, tool_locks, trace_logger):
    sandbox = MagicMock()
    sandbox.run_render = AsyncMock(side_effect=SandboxTimeoutError(5))
    engine = ExecutionEngine(session_factory, store, sandbox, broker, tool_locks, trace_logger)
    tool = await make_ready_tool(session_factory, store)

    outcome = await engine.execute(tool.id, "owner-1", {})

    assert outcome.result.type == "error"
    assert outcome.result.content == "Timeout: execution took longer than 5 seconds"


@pytest.mark.asyncio
async def test_executions_of_one_tool_are_serialized(session_factory, store, broker, tool_locks, trace_logger):
    running = 0
    peak = 0

    async def slow_render(code, params):
        nonlocal running, peak
        running += 1
        peak = max(peak, running)
        await asyncio.sleep(0.05)
        running -= 1
        return {"status": "success", "output": {"type": "html", "content": "ok"}}

    sandbox = MagicMock()
    sandbox.run_render = AsyncMock(side_effect=slow_render)
    engine = ExecutionEngine(session_factory, store, sandbox, broker, tool_locks, trace_logger)
    tool = await make_ready_tool(session_factory, store)

    await asyncio.gather(*(engine.execute(tool.id, "owner-1", {"i": i}) for i in range(3)))

    assert peak == 1
    async with session_factory() as db:
        assert (await store.get(db, tool.id)).execution_count == 3


@pytest.mark.asyncio
async def test_real_clock_widget_renders_html(session_factory, store, engine):
    tool = await make_ready_tool(
        session_factory, store, code=CLOCK_CODE, schema={"tz1": "Europe/Berlin", "showSeconds": True},
    )
    outcome = await engine.execute(tool.id, "owner-1", {})
    assert outcome.result.type == "html"
    assert "Europe/Berlin" in outcome.result.content


@pytest.mark.asyncio
async def test_regenerate_during_render_reports_not_ready(session_factory, store, broker, tool_locks, trace_logger):
    started = asyncio.Event()
    release = asyncio.Event()

    async def slow_render(code, params):
        started.set()
        await release.wait()
        return {"status": "success", "output": {"type": "html", "content": "late"}}

    sandbox = MagicMock()
    sandbox.run_render = AsyncMock(side_effect=slow_render)
    engine = ExecutionEngine(session_factory, store, sandbox, broker, tool_locks, trace_logger)
    tool = await make_ready_tool(session_factory, store)
    queue = broker.new_queue()
    broker.subscribe(tool.id, queue)

    execution = asyncio.create_task(engine.execute(tool.id, "owner-1", {"a": 1}))
    await started.wait()
    async with session_factory() as db:
        assert await store.compare_and_set(
            db, tool.id, "ready", {"status": "generating", "generation": 2}, regenerate=True,
        )
    release.set()

    with pytest.raises(NotReadyError) as exc_info:
        await execution
    assert exc_info.value.status_code == 409
    assert exc_info.value.current == "generating"
    async with session_factory() as db:
        stored = await store.get(db, tool.id)
    assert stored.last_result is None
    assert stored.execution_count == 0
    assert queue.empty()

import asyncio
from unittest.mock import MagicMock

import pytest

from widgetsmith.api.events import _handle_message
from widgetsmith.exceptions import RateLimitExceededError
from widgetsmith.schemas.tool import ToolResult
from widgetsmith.services.event_broker import ToolEventBroker
from widgetsmith.services.locks import KeyedLocks
from widgetsmith.services.rate_limiter import RateLimiter


@pytest.mark.asyncio
async def test_events_reach_only_subscribers_of_that_tool():
    broker = ToolEventBroker()
    a, b = broker.new_queue(), broker.new_queue()
    broker.subscribe("t1", a)
    broker.subscribe("t2", b)

    delivered = await broker.publish_updated("t1", "ready", generation=1, refresh_interval=1000)

    assert delivered == 1
    assert a.get_nowait() == {
        "event": "updated", "toolId": "t1", "status": "ready", "error": None,
        "generation": 1, "refreshInterval": 1000,
    }
    assert b.empty()


@pytest.mark.asyncio
async def test_closed_tool_drops_subscribers_and_suppresses_events():
    broker = ToolEventBroker()
    queue = broker.new_queue()
    broker.subscribe("t1", queue)
    broker.close_tool("t1")

    assert await broker.publish_result("t1", ToolResult(type="html", content="x")) == 0
    assert queue.empty()
    assert broker.subscribe("t1", queue) is False
    assert broker.subscriber_count("t1") == 0


@pytest.mark.asyncio
async def test_full_queue_drops_event_without_blocking():
    broker = ToolEventBroker()
    queue = broker.new_queue(maxsize=1)
    broker.subscribe("t1", queue)
    await broker.publish_updated("t1", "generating", generation=1)
    assert await broker.publish_updated("t1", "ready", generation=1) == 0
    assert queue.qsize() == 1


def test_unsubscribe_all_forgets_the_queue():
    broker = ToolEventBroker()
    queue = broker.new_queue()
    broker.subscribe("t1", queue)
    broker.subscribe("t2", queue)
    broker.unsubscribe_all(queue)
    assert broker.subscriber_count("t1") == 0
    assert broker.subscriber_count("t2") == 0


def test_rate_limiter_sliding_window():
    now = [0.0]
    limiter = RateLimiter({"generation": 2}, window_seconds=3600, clock=lambda: now[0])
    limiter.check("owner-1", "generation")
    limiter.check("owner-1", "generation")
    with pytest.raises(RateLimitExceededError) as exc_info:
        limiter.check("owner-1", "generation")
    assert exc_info.value.status_code == 429

    limiter.check("owner-2", "generation")
    limiter.check("owner-1", "execution")

    now[0] = 3600.0
    limiter.check("owner-1", "generation")
    assert limiter.remaining("owner-1", "generation") == 1


@pytest.mark.asyncio
async def test_keyed_locks_serialize_per_key_and_clean_up():
    locks = KeyedLocks("tool")
    order = []

    async def worker(key, label):
        async with locks.hold(key):
            assert locks.is_held(key)
            order.append(f"{label}-start")
            await asyncio.sleep(0.01)
            order.append(f"{label}-end")

    await asyncio.gather(worker("a", "1"), worker("a", "2"))
    assert order == ["1-start", "1-end", "2-start", "2-end"]
    assert len(locks) == 0


@pytest.mark.asyncio
async def test_replies_to_a_full_push_queue_are_dropped():
    broker = ToolEventBroker()
    websocket = MagicMock()
    websocket.app.state.event_broker = broker
    queue = broker.new_queue(maxsize=1)
    queue.put_nowait({"event": "updated"})

    await _handle_message(websocket, "owner-1", queue, "not a command")
    await _handle_message(websocket, "owner-1", queue, {"action": "unsubscribe", "toolId": "t1"})

    assert queue.qsize() == 1
    assert queue.get_nowait() == {"event": "updated"}

# widgetsmith/api/events.py
import asyncio
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect, status

from widgetsmith.core.auth import decode_owner_id
from widgetsmith.schemas.tool import ToolUpdatedEvent

logger = logging.getLogger(__name__)

router = APIRouter()


def _offer(queue: asyncio.Queue, message: Dict[str, Any]) -> bool:
    """Queues a reply for the writer; a full queue drops it like a broker event."""
    try:
        queue.put_nowait(message)
        return True
    except asyncio.QueueFull:
        logger.warning(f"Push queue full, dropping '{message.get('event')}' reply")
        return False


async def _handle_message(websocket: WebSocket, owner_id: str, queue: asyncio.Queue, message: Any) -> None:
    state = websocket.app.state
    broker = state.event_broker

    if not isinstance(message, dict) or message.get("action") not in ("subscribe", "unsubscribe"):
        _offer(queue, {"event": "error", "error": "Expected {\"action\": \"subscribe\"|\"unsubscribe\", \"toolId\": ...}"})
        return
    tool_id = message.get("toolId")
    if not isinstance(tool_id, str) or not tool_id:
        _offer(queue, {"event": "error", "error": "toolId is required"})
        return

    if message["action"] == "unsubscribe":
        broker.unsubscribe(tool_id, queue)
        _offer(queue, {"event": "unsubscribed", "toolId": tool_id})
        return

    async with state.session_factory() as db:
        tool = await state.tool_store.find(db, tool_id, owner_id)
    if tool is None or not broker.subscribe(tool_id, queue):
        _offer(queue, {"event": "error", "toolId": tool_id, "error": f"Tool {tool_id} not found"})
        return

    _offer(queue, {"event": "subscribed", "toolId": tool_id})
    # Current state right away, so a reconnecting client does not wait for the next change
    snapshot = ToolUpdatedEvent(
        tool_id=tool.id,
        status=tool.status,
        error=tool.error_message,
        generation=tool.generation,
        refresh_interval=tool.refresh_interval,
    )
    _offer(queue, snapshot.model_dump(by_alias=True))


async def _pump_events(websocket: WebSocket, queue: asyncio.Queue) -> None:
    while True:
        event: Dict[str, Any] = await queue.get()
        await websocket.send_json(event)


async def _read_messages(websocket: WebSocket, owner_id: str, queue: asyncio.Queue) -> None:
    while True:
        try:
            message = await websocket.receive_json()
        except ValueError:
            _offer(queue, {"event": "error", "error": "Messages must be JSON"})
            continue
        await _handle_message(websocket, owner_id, queue, message)


@router.websocket("/ws/tools")
async def tool_events(websocket: WebSocket, token: Optional[str] = Query(None)):
    """
    Push channel. Clients send `{"action": "subscribe"|"unsubscribe", "toolId"}`
    and receive `updated` / `result` events for their own tools.
    """
    owner_id = decode_owner_id(token)
    if owner_id is None:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()
    broker = websocket.app.state.event_broker
    queue = broker.new_queue()
    logger.info(f"Push connection opened for owner {owner_id}")

    reader = asyncio.create_task(_read_messages(websocket, owner_id, queue))
    writer = asyncio.create_task(_pump_events(websocket, queue))
    try:
        done, pending = await asyncio.wait({reader, writer}, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        for task in done:
            exc = task.exception()
            if exc is not None and not isinstance(exc, WebSocketDisconnect):
                logger.error(f"Push connection for owner {owner_id} failed: {exc}", exc_info=exc)
    finally:
        reader.cancel()
        writer.cancel()
        broker.unsubscribe_all(queue)
        logger.info(f"Push connection closed for owner {owner_id}")

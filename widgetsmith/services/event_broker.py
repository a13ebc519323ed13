# widgetsmith/services/event_broker.py
import asyncio
import logging
from typing import Any, Dict, Optional, Set

from widgetsmith.schemas.tool import ToolResult, ToolResultEvent, ToolUpdatedEvent

logger = logging.getLogger(__name__)


class ToolEventBroker:
    """
    Fan-out of per-tool events to subscriber queues.

    A subscriber is an `asyncio.Queue` (one per push connection) that can
    follow any number of tools. Publishing never blocks: a full queue drops
    the event for that subscriber, who catches up through polling.
    Once a tool is closed (deleted) nothing more is delivered for it.
    """

    def __init__(self, max_closed_ids: int = 10000):
        self._subscribers: Dict[str, Set[asyncio.Queue]] = {}
        self._closed: Dict[str, None] = {}
        self._max_closed_ids = max_closed_ids

    def new_queue(self, maxsize: int = 100) -> asyncio.Queue:
        return asyncio.Queue(maxsize=maxsize)

    def subscribe(self, tool_id: str, queue: asyncio.Queue) -> bool:
        if tool_id in self._closed:
            return False
        self._subscribers.setdefault(tool_id, set()).add(queue)
        return True

    def unsubscribe(self, tool_id: str, queue: asyncio.Queue) -> None:
        queues = self._subscribers.get(tool_id)
        if not queues:
            return
        queues.discard(queue)
        if not queues:
            del self._subscribers[tool_id]

    def unsubscribe_all(self, queue: asyncio.Queue) -> None:
        for tool_id in list(self._subscribers):
            self.unsubscribe(tool_id, queue)

    def subscriber_count(self, tool_id: str) -> int:
        return len(self._subscribers.get(tool_id, ()))

    def close_tool(self, tool_id: str) -> None:
        """Drops all subscriptions for a deleted tool and suppresses later events."""
        self._subscribers.pop(tool_id, None)
        self._closed[tool_id] = None
        while len(self._closed) > self._max_closed_ids:
            self._closed.pop(next(iter(self._closed)))

    async def publish(self, tool_id: str, event: Dict[str, Any]) -> int:
        """Returns how many subscribers received the event."""
        if tool_id in self._closed:
            logger.debug(f"Suppressed '{event.get('event')}' for closed tool {tool_id}")
            return 0
        delivered = 0
        for queue in list(self._subscribers.get(tool_id, ())):
            try:
                queue.put_nowait(event)
                delivered += 1
            except asyncio.QueueFull:
                logger.warning(f"Subscriber queue full, dropping '{event.get('event')}' for tool {tool_id}")
        return delivered

    async def publish_updated(
        self,
        tool_id: str,
        status: str,
        generation: int,
        error: Optional[str] = None,
        refresh_interval: int = 0,
    ) -> int:
        event = ToolUpdatedEvent(
            tool_id=tool_id,
            status=status,
            error=error,
            generation=generation,
            refresh_interval=refresh_interval,
        )
        return await self.publish(tool_id, event.model_dump(by_alias=True))

    async def publish_result(self, tool_id: str, payload: ToolResult) -> int:
        event = ToolResultEvent(tool_id=tool_id, payload=payload)
        return await self.publish(tool_id, event.model_dump(by_alias=True))

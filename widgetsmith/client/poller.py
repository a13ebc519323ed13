# widgetsmith/client/poller.py
import asyncio
import logging
from typing import Any, Dict, Optional

import httpx

from widgetsmith.client.reconciler import ToolReconciler
from widgetsmith.core.config import settings
from widgetsmith.services.lifecycle import ToolStatus

logger = logging.getLogger(__name__)


class ToolPoller:
    """
    Polling fallback for clients that may miss push events.

    Re-fetches a tool every `interval` seconds while it is `generating` and
    feeds each snapshot into the reconciler. Stops once the status leaves
    `generating` or the tool is gone.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        reconciler: ToolReconciler,
        interval: Optional[float] = None,
        api_prefix: Optional[str] = None,
    ):
        self.client = client
        self.reconciler = reconciler
        self.interval = settings.POLL_INTERVAL_SECONDS if interval is None else interval
        self.api_prefix = (api_prefix or settings.API_V1_STR).rstrip("/")
        self._tasks: Dict[str, asyncio.Task] = {}

    async def poll_once(self, tool_id: str) -> Optional[Dict[str, Any]]:
        """Fetches and applies one snapshot. Returns None when the tool no longer exists."""
        response = await self.client.get(f"{self.api_prefix}/tools/{tool_id}")
        if response.status_code == 404:
            self.reconciler.remove(tool_id)
            return None
        response.raise_for_status()
        snapshot = response.json()["tool"]
        self.reconciler.apply_snapshot(snapshot)
        return snapshot

    async def poll_until_settled(self, tool_id: str, max_polls: Optional[int] = None) -> Optional[str]:
        """
        Polls until the tool leaves `generating`. Returns the settled status,
        or None if the tool disappeared. Transient HTTP failures are retried
        on the next tick.
        """
        polls = 0
        while max_polls is None or polls < max_polls:
            polls += 1
            try:
                snapshot = await self.poll_once(tool_id)
            except httpx.HTTPError as e:
                logger.warning(f"Polling tool {tool_id} failed: {e}")
            else:
                if snapshot is None:
                    return None
                local = self.reconciler.get(tool_id)
                if local is not None and local.status != ToolStatus.GENERATING.value:
                    return local.status
            await asyncio.sleep(self.interval)
        local = self.reconciler.get(tool_id)
        return local.status if local else None

    def start(self, tool_id: str) -> asyncio.Task:
        task = self._tasks.get(tool_id)
        if task is not None and not task.done():
            return task
        task = asyncio.create_task(self.poll_until_settled(tool_id), name=f"poll-{tool_id}")
        self._tasks[tool_id] = task
        return task

    def stop(self, tool_id: str) -> None:
        task = self._tasks.pop(tool_id, None)
        if task is not None:
            task.cancel()

    async def close(self) -> None:
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

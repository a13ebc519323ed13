# widgetsmith/client/reconciler.py
"""
Client-side view of tools fed by two lossy channels: push events and polled
snapshots. Both may repeat or reorder a transition, so every update is merged
with one rule:

* a higher `generation` always wins (an explicit regenerate started a new cycle)
* within one generation, or when the generation is unknown, status only moves
  forward (`generating` < `ready` | `error`); anything older is ignored
* a `result` always replaces the held result
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional, Set

from widgetsmith.services.lifecycle import ToolStatus, status_rank

logger = logging.getLogger(__name__)


@dataclass
class LocalTool:
    id: str
    status: str
    generation: Optional[int] = None
    name: Optional[str] = None
    error: Optional[str] = None
    refresh_interval: int = 0
    parameters_schema: Dict[str, Any] = field(default_factory=dict)
    current_parameters: Dict[str, Any] = field(default_factory=dict)
    result: Optional[Dict[str, Any]] = None
    result_at: Optional[str] = None


class ToolReconciler:
    def __init__(self):
        self.tools: Dict[str, LocalTool] = {}
        self._auto_executed: Set[str] = set()

    def get(self, tool_id: str) -> Optional[LocalTool]:
        return self.tools.get(tool_id)

    def _accepts(self, local: Optional[LocalTool], status: str, generation: Optional[int]) -> bool:
        if local is None:
            return True
        if generation is not None and local.generation is not None:
            if generation > local.generation:
                return True
            if generation < local.generation:
                return False
        return status_rank(status) >= status_rank(local.status)

    def apply_snapshot(self, tool: Mapping[str, Any]) -> bool:
        """Merges a REST / poll snapshot (camelCase tool dict). Returns whether it was applied."""
        tool_id = tool["id"]
        status = tool["status"]
        generation = tool.get("generation")
        local = self.tools.get(tool_id)

        if status == ToolStatus.DELETED.value:
            self.remove(tool_id)
            return True
        if not self._accepts(local, status, generation):
            logger.debug(f"Ignored stale snapshot for {tool_id}: {status} (gen {generation})")
            return False

        if local is None:
            local = LocalTool(id=tool_id, status=status)
            self.tools[tool_id] = local
        local.status = status
        if generation is not None:
            local.generation = generation
        local.name = tool.get("name", local.name)
        local.error = tool.get("errorMessage")
        local.refresh_interval = tool.get("refreshInterval", local.refresh_interval) or 0
        local.parameters_schema = dict(tool.get("parametersSchema") or local.parameters_schema)
        local.current_parameters = dict(tool.get("currentParameters") or local.current_parameters)
        if tool.get("lastResult") is not None:
            local.result = dict(tool["lastResult"])
            local.result_at = tool.get("lastResultAt")
        return True

    def apply_updated(self, event: Mapping[str, Any]) -> bool:
        """Merges an `updated` push event. Applying the same event twice changes nothing."""
        tool_id = event["toolId"]
        status = event["status"]
        generation = event.get("generation")
        local = self.tools.get(tool_id)

        if status == ToolStatus.DELETED.value:
            self.remove(tool_id)
            return True
        if not self._accepts(local, status, generation):
            logger.debug(f"Ignored stale update for {tool_id}: {status} (gen {generation})")
            return False

        if local is None:
            local = LocalTool(id=tool_id, status=status)
            self.tools[tool_id] = local
        local.status = status
        if generation is not None:
            local.generation = generation
        local.error = event.get("error") if status == ToolStatus.ERROR.value else None
        if "refreshInterval" in event:
            local.refresh_interval = event["refreshInterval"] or 0
        return True

    def apply_result(self, event: Mapping[str, Any]) -> bool:
        local = self.tools.get(event["toolId"])
        if local is None:
            return False
        local.result = dict(event["payload"])
        local.result_at = datetime.now(timezone.utc).isoformat()
        return True

    def apply_event(self, event: Mapping[str, Any]) -> bool:
        """Dispatches a raw push message by its `event` field."""
        kind = event.get("event")
        if kind == "updated":
            return self.apply_updated(event)
        if kind == "result":
            return self.apply_result(event)
        return False

    def apply_local_execution(
        self,
        tool_id: str,
        parameters: Mapping[str, Any],
        result: Mapping[str, Any],
        executed_at: Optional[str] = None,
    ) -> bool:
        """Optimistic merge after this client executed the tool itself."""
        local = self.tools.get(tool_id)
        if local is None:
            return False
        local.current_parameters = {**local.current_parameters, **parameters}
        local.result = dict(result)
        local.result_at = executed_at or datetime.now(timezone.utc).isoformat()
        return True

    def should_auto_execute(self, tool_id: str) -> bool:
        """
        True exactly once per tool: when it is ready and has no result yet.
        Reconnects and repeated events never trigger a second run.
        """
        local = self.tools.get(tool_id)
        if local is None or tool_id in self._auto_executed:
            return False
        if local.status != ToolStatus.READY.value or local.result is not None:
            return False
        self._auto_executed.add(tool_id)
        return True

    def remove(self, tool_id: str) -> None:
        self.tools.pop(tool_id, None)

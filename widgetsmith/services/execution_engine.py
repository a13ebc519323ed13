# widgetsmith/services/execution_engine.py
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from widgetsmith.crud.tool import ToolStore
from widgetsmith.exceptions import CodeValidationError, ExecutionFailedError, NotReadyError, ToolNotFoundError
from widgetsmith.schemas.tool import ToolResult
from widgetsmith.services.event_broker import ToolEventBroker
from widgetsmith.services.lifecycle import ToolStatus
from widgetsmith.services.locks import KeyedLocks
from widgetsmith.services.parameters import resolve_effective_parameters
from widgetsmith.services.sandbox_executor import SandboxService
from widgetsmith.utils.logger import TraceLogger

logger = logging.getLogger(__name__)

RESULT_TYPES = ("html", "svg", "json", "error")


def error_result(message: str) -> ToolResult:
    return ToolResult(type="error", content=message or "Unknown error")


def normalize_result(output: Any) -> ToolResult:
    """
    Validates what render() returned. Only `{"type": ..., "content": ...}`
    with a known type passes; a json result with non-string content is
    serialized. Anything else becomes an error result.
    """
    if not isinstance(output, dict):
        return error_result(f"Invalid result format: render() must return a dict, got {type(output).__name__}")
    result_type = output.get("type")
    if result_type not in RESULT_TYPES:
        return error_result(f"Invalid result type: {result_type!r}")
    content = output.get("content")
    if result_type == "json" and not isinstance(content, str):
        try:
            content = json.dumps(content, default=str)
        except (TypeError, ValueError) as e:
            return error_result(f"Result content is not JSON serializable: {e}")
    if content is None:
        return error_result("Result content is missing")
    if not isinstance(content, str):
        content = str(content)
    return ToolResult(type=result_type, content=content)


@dataclass
class ExecutionOutcome:
    success: bool
    result: ToolResult
    error: Optional[str]
    executed_at: datetime
    parameters: Dict[str, Any] = field(default_factory=dict)


class ExecutionEngine:
    """
    Runs a tool's render() against merged parameters and records the result.

    Execution failures (timeouts, exceptions, malformed results) never raise;
    they come back as an `error` result and the tool stays `ready`.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        store: ToolStore,
        sandbox: SandboxService,
        broker: ToolEventBroker,
        tool_locks: KeyedLocks,
        trace_logger: Optional[TraceLogger] = None,
    ):
        self.session_factory = session_factory
        self.store = store
        self.sandbox = sandbox
        self.broker = broker
        self.tool_locks = tool_locks
        self.trace_logger = trace_logger

    async def render(
        self,
        code: str,
        schema: Optional[Mapping[str, Any]],
        current: Optional[Mapping[str, Any]],
        requested: Optional[Mapping[str, Any]] = None,
    ) -> ExecutionOutcome:
        """Pure execution, no persistence. Used directly for the first run after generation."""
        params = resolve_effective_parameters(schema, current, requested)
        try:
            payload = await self.sandbox.run_render(code, params)
            if payload["status"] == "success":
                result = normalize_result(payload.get("output"))
            else:
                result = error_result(payload.get("message") or "render() failed")
        except (ExecutionFailedError, CodeValidationError) as e:
            result = error_result(str(e))
        except Exception as e:
            logger.error(f"Unexpected sandbox failure: {e}", exc_info=True)
            result = error_result(f"Execution error: {e}")

        failed = result.type == "error"
        return ExecutionOutcome(
            success=not failed,
            result=result,
            error=result.content if failed else None,
            executed_at=datetime.now(timezone.utc),
            parameters=params,
        )

    async def execute(self, tool_id: str, owner_id: str, params: Optional[Mapping[str, Any]] = None) -> ExecutionOutcome:
        """
        Executes a ready tool. Raises NotReadyError (nothing mutated) if the
        tool is not ready, ToolNotFoundError if it is unknown or deleted.
        """
        # Checked before waiting on the lock: a generation cycle holds it for minutes
        async with self.session_factory() as db:
            tool = await self.store.get(db, tool_id, owner_id)
            if tool.status != ToolStatus.READY.value:
                raise NotReadyError(tool_id, tool.status)

        async with self.tool_locks.hold(tool_id):
            return await self.execute_locked(tool_id, owner_id, params)

    async def execute_locked(self, tool_id: str, owner_id: str, params: Optional[Mapping[str, Any]] = None) -> ExecutionOutcome:
        """Like execute(), for callers already holding the tool's lock."""
        async with self.session_factory() as db:
            tool = await self.store.get(db, tool_id, owner_id)
            if tool.status != ToolStatus.READY.value:
                raise NotReadyError(tool_id, tool.status)
            code, schema, current = tool.generated_code, tool.parameters_schema, tool.current_parameters
            execution_count = tool.execution_count or 0

        outcome = await self.render(code, schema, current, params)

        async with self.session_factory() as db:
            persisted = await self.store.compare_and_set(
                db,
                tool_id,
                ToolStatus.READY.value,
                {
                    "last_result": outcome.result.model_dump(),
                    "last_result_at": outcome.executed_at,
                    "current_parameters": outcome.parameters,
                    "execution_count": execution_count + 1,
                },
            )
            if not persisted:
                # Deleted or sent back to generating while rendering
                current = await self.store.find(db, tool_id, owner_id)
                if current is None:
                    logger.info(f"Execution result for tool {tool_id} discarded; tool is gone.")
                    raise ToolNotFoundError(tool_id)
                logger.info(f"Execution result for tool {tool_id} discarded; tool is {current.status}.")
                raise NotReadyError(tool_id, current.status)

        await self.broker.publish_result(tool_id, outcome.result)
        if self.trace_logger:
            await self.trace_logger.log_event("execution_completed", {
                "tool_id": tool_id,
                "success": outcome.success,
                "result_type": outcome.result.type,
            })
        logger.info(f"Tool {tool_id} executed ({outcome.result.type}).")
        return outcome

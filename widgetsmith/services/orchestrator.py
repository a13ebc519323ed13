# widgetsmith/services/orchestrator.py
import asyncio
import logging
from typing import Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from widgetsmith.crud.tool import ToolStore
from widgetsmith.exceptions import GenerationInProgressError, IllegalTransitionError
from widgetsmith.models.tool import CustomTool
from widgetsmith.services.code_generator import CodeGenerationService, GenerationOutcome
from widgetsmith.services.event_broker import ToolEventBroker
from widgetsmith.services.execution_engine import ExecutionEngine
from widgetsmith.services.lifecycle import ToolStatus, validate_transition
from widgetsmith.services.locks import KeyedLocks
from widgetsmith.services.parameters import initial_parameters
from widgetsmith.utils.logger import TraceLogger

logger = logging.getLogger(__name__)

INTERRUPTED_GENERATION_MESSAGE = "Generation was interrupted by a server restart. Please regenerate the tool."


class GenerationOrchestrator:
    """
    Runs generation cycles in the background, one per tool at a time.

    A cycle holds the tool's lock from the generation call until the terminal
    status is committed, so no execution interleaves with it. Completions are
    committed with compare-and-set on (status=generating, generation=N); when
    the tool was deleted or has moved to another cycle, the completion is
    discarded and nothing is published.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        store: ToolStore,
        generator: CodeGenerationService,
        engine: ExecutionEngine,
        broker: ToolEventBroker,
        tool_locks: KeyedLocks,
        trace_logger: TraceLogger,
        generation_timeout: float = 300.0,
    ):
        self.session_factory = session_factory
        self.store = store
        self.generator = generator
        self.engine = engine
        self.broker = broker
        self.tool_locks = tool_locks
        self.trace_logger = trace_logger
        self.generation_timeout = generation_timeout
        self._jobs: Dict[str, asyncio.Task] = {}

    async def recover_interrupted(self) -> List[str]:
        """Fails cycles orphaned by a previous shutdown or crash so they can be regenerated."""
        async with self.session_factory() as db:
            return await self.store.fail_interrupted_generations(db, INTERRUPTED_GENERATION_MESSAGE)

    def is_running(self, tool_id: str) -> bool:
        task = self._jobs.get(tool_id)
        return task is not None and not task.done()

    def job_for(self, tool_id: str) -> Optional[asyncio.Task]:
        return self._jobs.get(tool_id)

    def start_generation(
        self,
        tool_id: str,
        owner_id: str,
        description: str,
        generation: int,
        adopt_generated_name: bool = False,
    ) -> asyncio.Task:
        """Schedules the cycle and returns immediately."""
        if self.is_running(tool_id):
            raise GenerationInProgressError(tool_id)
        task = asyncio.create_task(
            self._run_generation(tool_id, owner_id, description, generation, adopt_generated_name),
            name=f"generate-{tool_id}-{generation}",
        )
        self._jobs[tool_id] = task
        task.add_done_callback(lambda t, key=tool_id: self._forget(key, t))
        return task

    def _forget(self, tool_id: str, task: asyncio.Task) -> None:
        if self._jobs.get(tool_id) is task:
            del self._jobs[tool_id]
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Generation job for tool {tool_id} crashed", exc_info=task.exception())

    def check_can_regenerate(self, tool: CustomTool) -> None:
        """Raises GenerationInProgressError or IllegalTransitionError without changing anything."""
        if self.is_running(tool.id):
            raise GenerationInProgressError(tool.id)
        validate_transition(tool.id, tool.status, ToolStatus.GENERATING, regenerate=True)

    async def regenerate(
        self,
        db: AsyncSession,
        tool_id: str,
        owner_id: str,
        description: str,
        name: Optional[str] = None,
    ) -> CustomTool:
        """
        Explicit regenerate: ready|error -> generating with a new cycle number.
        A new `name` is written in the same UPDATE as the status change.
        The previous result stays visible until the new cycle completes.
        """
        tool = await self.store.get(db, tool_id, owner_id)
        self.check_can_regenerate(tool)

        next_generation = (tool.generation or 1) + 1
        values = {
            "status": ToolStatus.GENERATING.value,
            "generation": next_generation,
            "description": description,
            "error_message": None,
        }
        if name is not None:
            values["name"] = name
        switched = await self.store.compare_and_set(
            db,
            tool_id,
            tool.status,
            values,
            expected_generation=tool.generation,
            regenerate=True,
        )
        if not switched:
            current = await self.store.get(db, tool_id, owner_id)
            validate_transition(tool_id, current.status, ToolStatus.GENERATING, regenerate=True)
            raise IllegalTransitionError(tool_id, current.status, ToolStatus.GENERATING.value)

        tool = await self.store.get(db, tool_id, owner_id)
        await self.broker.publish_updated(
            tool_id, ToolStatus.GENERATING.value, next_generation, refresh_interval=tool.refresh_interval,
        )
        self.start_generation(tool_id, owner_id, description, next_generation)
        return tool

    async def _run_generation(
        self,
        tool_id: str,
        owner_id: str,
        description: str,
        generation: int,
        adopt_generated_name: bool,
    ) -> None:
        await self.trace_logger.log_event("generation_started", {"tool_id": tool_id, "generation": generation})
        async with self.tool_locks.hold(tool_id):
            try:
                outcome = await asyncio.wait_for(self.generator.generate(description), timeout=self.generation_timeout)
            except asyncio.TimeoutError:
                outcome = GenerationOutcome.failure(
                    f"Code generation took longer than {self.generation_timeout:g} seconds."
                )
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Generation service failed for tool {tool_id}: {e}", exc_info=True)
                outcome = GenerationOutcome.failure(f"Code generation failed: {e}")

            if outcome.success:
                await self._complete_success(tool_id, owner_id, generation, outcome, adopt_generated_name)
            else:
                await self._complete_failure(tool_id, generation, outcome.error or "Code generation failed.")

    async def _complete_success(
        self,
        tool_id: str,
        owner_id: str,
        generation: int,
        outcome: GenerationOutcome,
        adopt_generated_name: bool,
    ) -> None:
        async with self.session_factory() as db:
            tool = await self.store.find(db, tool_id, owner_id)
            if tool is None or tool.status != ToolStatus.GENERATING.value or tool.generation != generation:
                await self._discard(tool_id, generation, "tool deleted or cycle superseded")
                return
            current_parameters = tool.current_parameters

        params = initial_parameters(outcome.parameters, current_parameters)
        first_run = await self.engine.render(outcome.code, outcome.parameters, params)

        values = {
            "status": ToolStatus.READY.value,
            "generated_code": outcome.code,
            "parameters_schema": outcome.parameters,
            "current_parameters": first_run.parameters,
            "refresh_interval": outcome.refresh_interval,
            "last_result": first_run.result.model_dump(),
            "last_result_at": first_run.executed_at,
            "error_message": None,
        }
        if adopt_generated_name and outcome.name:
            values["name"] = outcome.name

        try:
            async with self.session_factory() as db:
                committed = await self.store.compare_and_set(
                    db, tool_id, ToolStatus.GENERATING.value, values, expected_generation=generation,
                )
        except IllegalTransitionError as e:
            await self._reject(tool_id, generation, e)
            return
        if not committed:
            await self._discard(tool_id, generation, "tool deleted or cycle superseded")
            return

        # Result first, so no subscriber sees `ready` without it
        await self.broker.publish_result(tool_id, first_run.result)
        await self.broker.publish_updated(
            tool_id, ToolStatus.READY.value, generation, refresh_interval=outcome.refresh_interval,
        )
        await self.trace_logger.log_event("generation_completed", {
            "tool_id": tool_id,
            "generation": generation,
            "status": ToolStatus.READY.value,
            "first_result_type": first_run.result.type,
        })
        logger.info(f"✅ Tool {tool_id} generated (cycle {generation}).")

    async def _complete_failure(self, tool_id: str, generation: int, message: str) -> None:
        try:
            async with self.session_factory() as db:
                committed = await self.store.compare_and_set(
                    db,
                    tool_id,
                    ToolStatus.GENERATING.value,
                    {"status": ToolStatus.ERROR.value, "error_message": message},
                    expected_generation=generation,
                )
        except IllegalTransitionError as e:
            await self._reject(tool_id, generation, e)
            return
        if not committed:
            await self._discard(tool_id, generation, "tool deleted or cycle superseded")
            return

        await self.broker.publish_updated(tool_id, ToolStatus.ERROR.value, generation, error=message)
        await self.trace_logger.log_event("generation_completed", {
            "tool_id": tool_id,
            "generation": generation,
            "status": ToolStatus.ERROR.value,
            "error": message,
        })
        logger.warning(f"Generation for tool {tool_id} (cycle {generation}) failed: {message}")

    async def _discard(self, tool_id: str, generation: int, reason: str) -> None:
        logger.info(f"Generation result for tool {tool_id} (cycle {generation}) discarded: {reason}")
        await self.trace_logger.log_event("generation_discarded", {
            "tool_id": tool_id, "generation": generation, "reason": reason,
        })

    async def _reject(self, tool_id: str, generation: int, error: IllegalTransitionError) -> None:
        logger.warning(f"Rejected completion for tool {tool_id} (cycle {generation}): {error.message}")
        await self.trace_logger.log_event("transition_rejected", {
            "tool_id": tool_id, "generation": generation, "from": error.current, "to": error.target,
        })

    async def shutdown(self) -> None:
        jobs = [task for task in self._jobs.values() if not task.done()]
        for task in jobs:
            task.cancel()
        if jobs:
            await asyncio.gather(*jobs, return_exceptions=True)
            logger.info(f"Cancelled {len(jobs)} running generation job(s).")
        self._jobs.clear()

# widgetsmith/crud/tool.py
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from widgetsmith.exceptions import IllegalTransitionError, LimitExceededError, ToolNotFoundError
from widgetsmith.models.tool import CustomTool
from widgetsmith.services.lifecycle import ToolStatus, validate_transition
from widgetsmith.services.locks import KeyedLocks
from widgetsmith.utils.logger import TraceLogger

logger = logging.getLogger(__name__)

# Columns a patch may touch; everything else is owned by the store itself.
UPDATABLE_FIELDS = frozenset({
    "name", "description", "status", "generation", "parameters_schema", "current_parameters",
    "generated_code", "last_result", "last_result_at", "error_message", "refresh_interval",
    "position", "execution_count",
})


def default_tool_name(now: Optional[datetime] = None) -> str:
    return f"Tool {(now or datetime.now()).strftime('%d.%m.%Y')}"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ToolStore:
    """
    Persistence for custom tools.

    **Parameters**
    * `max_tools`: live (non-deleted) tools allowed per owner
    * `owner_locks`: serializes count check and insert per owner
    * `trace_logger`: receives `tool_created` / `tool_deleted` events

    Reads filter out deleted rows, so a deleted id behaves like an unknown one.
    Status changes are written with conditional UPDATEs that exclude deleted
    rows; a concurrent delete therefore always wins.
    """

    def __init__(self, max_tools: int, owner_locks: KeyedLocks, trace_logger: Optional[TraceLogger] = None):
        self.max_tools = max_tools
        self.owner_locks = owner_locks
        self.trace_logger = trace_logger

    async def find(self, db: AsyncSession, tool_id: str, owner_id: Optional[str] = None) -> Optional[CustomTool]:
        stmt = select(CustomTool).where(
            CustomTool.id == tool_id,
            CustomTool.status != ToolStatus.DELETED.value,
        )
        if owner_id is not None:
            stmt = stmt.where(CustomTool.owner_id == owner_id)
        # Conditional UPDATEs bypass the identity map; always reload
        result = await db.execute(stmt.execution_options(populate_existing=True))
        return result.scalar_one_or_none()

    async def get(self, db: AsyncSession, tool_id: str, owner_id: Optional[str] = None) -> CustomTool:
        tool = await self.find(db, tool_id, owner_id)
        if tool is None:
            raise ToolNotFoundError(tool_id)
        return tool

    async def count_live(self, db: AsyncSession, owner_id: str) -> int:
        result = await db.execute(
            select(func.count(CustomTool.id)).where(
                CustomTool.owner_id == owner_id,
                CustomTool.status != ToolStatus.DELETED.value,
            )
        )
        return result.scalar_one()

    async def list_by_owner(self, db: AsyncSession, owner_id: str) -> List[CustomTool]:
        result = await db.execute(
            select(CustomTool)
            .where(CustomTool.owner_id == owner_id, CustomTool.status != ToolStatus.DELETED.value)
            .order_by(CustomTool.position.asc(), CustomTool.created_at.desc())
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def create(self, db: AsyncSession, owner_id: str, name: Optional[str], description: str) -> CustomTool:
        """
        Inserts a tool in `generating` (cycle 1). The limit check and the insert
        happen under the owner's lock, so concurrent creates cannot overshoot.
        """
        async with self.owner_locks.hold(owner_id):
            current_count = await self.count_live(db, owner_id)
            if current_count >= self.max_tools:
                logger.info(f"Owner {owner_id} hit the tool limit ({current_count}/{self.max_tools}).")
                raise LimitExceededError(self.max_tools)

            max_position = (await db.execute(
                select(func.max(CustomTool.position)).where(
                    CustomTool.owner_id == owner_id,
                    CustomTool.status != ToolStatus.DELETED.value,
                )
            )).scalar_one_or_none()

            tool = CustomTool(
                owner_id=owner_id,
                name=(name or "").strip() or default_tool_name(),
                description=description.strip(),
                status=ToolStatus.GENERATING.value,
                generation=1,
                parameters_schema={},
                current_parameters={},
                refresh_interval=0,
                position=(max_position + 1) if max_position is not None else 0,
                execution_count=0,
            )
            db.add(tool)
            await db.commit()
            await db.refresh(tool)

        logger.info(f"Tool created: {tool.id} ('{tool.name}') for owner {owner_id}")
        if self.trace_logger:
            await self.trace_logger.log_event("tool_created", {"tool_id": tool.id, "owner_id": owner_id})
        return tool

    async def update(
        self,
        db: AsyncSession,
        tool_id: str,
        patch: Mapping[str, Any],
        owner_id: Optional[str] = None,
        regenerate: bool = False,
    ) -> CustomTool:
        """
        Field-level last-writer-wins. A `status` in the patch is validated
        against the lifecycle rules and written only if the row still holds the
        status the validation saw.
        """
        unknown = set(patch) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Fields cannot be updated: {sorted(unknown)}")

        tool = await self.get(db, tool_id, owner_id)
        stmt = update(CustomTool).where(
            CustomTool.id == tool_id,
            CustomTool.status != ToolStatus.DELETED.value,
        )
        if "status" in patch:
            validate_transition(tool_id, tool.status, patch["status"], regenerate=regenerate)
            stmt = stmt.where(CustomTool.status == tool.status)

        values = dict(patch)
        if "status" in values:
            values["status"] = ToolStatus(values["status"]).value
        if values:
            result = await db.execute(stmt.values(**values))
            await db.commit()
            if result.rowcount == 0:
                # Deleted (or moved on) between the read and the write
                current = await self.find(db, tool_id, owner_id)
                if current is None or "status" not in values:
                    raise ToolNotFoundError(tool_id)
                raise IllegalTransitionError(tool_id, current.status, values["status"])

        return await self.get(db, tool_id, owner_id)

    async def compare_and_set(
        self,
        db: AsyncSession,
        tool_id: str,
        expected_status: str,
        values: Dict[str, Any],
        expected_generation: Optional[int] = None,
        regenerate: bool = False,
    ) -> bool:
        """
        Single conditional UPDATE guarded by the expected status (and cycle).
        Returns False when the row moved on, e.g. it was deleted meanwhile.
        """
        if "status" in values:
            validate_transition(tool_id, expected_status, values["status"], regenerate=regenerate)
            values = {**values, "status": ToolStatus(values["status"]).value}

        stmt = update(CustomTool).where(
            CustomTool.id == tool_id,
            CustomTool.status == ToolStatus(expected_status).value,
        )
        if expected_generation is not None:
            stmt = stmt.where(CustomTool.generation == expected_generation)
        result = await db.execute(stmt.values(**values))
        await db.commit()
        return result.rowcount == 1

    async def delete(self, db: AsyncSession, tool_id: str, owner_id: str) -> bool:
        """
        Soft delete into the absorbing `deleted` status. Idempotent: returns
        False when the id is unknown or already deleted.
        """
        result = await db.execute(
            update(CustomTool)
            .where(
                CustomTool.id == tool_id,
                CustomTool.owner_id == owner_id,
                CustomTool.status != ToolStatus.DELETED.value,
            )
            .values(status=ToolStatus.DELETED.value, deleted_at=utcnow(), error_message=None)
        )
        await db.commit()
        deleted = result.rowcount == 1
        if deleted:
            logger.info(f"Tool deleted: {tool_id}")
            if self.trace_logger:
                await self.trace_logger.log_event("tool_deleted", {"tool_id": tool_id, "owner_id": owner_id})
        return deleted

    async def reorder(self, db: AsyncSession, owner_id: str, items: Iterable[Mapping[str, Any]]) -> int:
        """Applies `{id, position}` pairs; ids the owner does not have are skipped."""
        changed = 0
        for item in items:
            result = await db.execute(
                update(CustomTool)
                .where(
                    CustomTool.id == item["id"],
                    CustomTool.owner_id == owner_id,
                    CustomTool.status != ToolStatus.DELETED.value,
                )
                .values(position=item["position"])
            )
            changed += result.rowcount
        await db.commit()
        return changed

    async def fail_interrupted_generations(self, db: AsyncSession, message: str) -> List[str]:
        """
        Moves tools left in `generating` by a previous process to `error`.
        Only valid at startup, before any generation job of this process runs.
        """
        result = await db.execute(
            select(CustomTool.id, CustomTool.generation).where(CustomTool.status == ToolStatus.GENERATING.value)
        )
        failed = []
        for tool_id, generation in result.all():
            if await self.compare_and_set(
                db,
                tool_id,
                ToolStatus.GENERATING.value,
                {"status": ToolStatus.ERROR.value, "error_message": message},
                expected_generation=generation,
            ):
                failed.append(tool_id)
        if failed:
            logger.warning(f"Marked {len(failed)} interrupted generation(s) as failed.")
            if self.trace_logger:
                await self.trace_logger.log_event("generations_interrupted", {"tool_ids": failed})
        return failed

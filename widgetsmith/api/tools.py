# widgetsmith/api/tools.py
import logging
from typing import List

from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from widgetsmith.api.deps import get_broker, get_engine, get_orchestrator, get_rate_limiter, get_store
from widgetsmith.core.auth import get_current_owner
from widgetsmith.crud.tool import ToolStore
from widgetsmith.exceptions import InvalidRequestError, NotReadyError
from widgetsmith.models.base import get_db
from widgetsmith.schemas.tool import (
    ExamplePrompt,
    ExecuteRequest,
    ExecuteResponse,
    MessageResponse,
    ParametersUpdate,
    ReorderRequest,
    ToolCreate,
    ToolLimits,
    ToolListResponse,
    ToolRead,
    ToolResponse,
    ToolResult,
    ToolResultResponse,
    ToolUpdate,
)
from widgetsmith.services.code_generator import EXAMPLE_PROMPTS
from widgetsmith.services.event_broker import ToolEventBroker
from widgetsmith.services.execution_engine import ExecutionEngine
from widgetsmith.services.orchestrator import GenerationOrchestrator
from widgetsmith.services.parameters import resolve_effective_parameters
from widgetsmith.services.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/generate", response_model=ToolResponse, status_code=status.HTTP_201_CREATED)
async def create_tool(
    tool_in: ToolCreate,
    db: AsyncSession = Depends(get_db),
    owner_id: str = Depends(get_current_owner),
    store: ToolStore = Depends(get_store),
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
    rate_limiter: RateLimiter = Depends(get_rate_limiter),
):
    """
    **Create a tool from a description.**

    The tool is returned immediately in `generating`; the generated code and
    the first result arrive later through the push channel or polling.
    """
    rate_limiter.check(owner_id, "generation")
    tool = await store.create(db, owner_id, tool_in.name, tool_in.description)
    orchestrator.start_generation(
        tool.id,
        owner_id,
        tool.description,
        tool.generation,
        adopt_generated_name=not (tool_in.name and tool_in.name.strip()),
    )
    return ToolResponse(tool=ToolRead.model_validate(tool), message="Tool is being generated...")


@router.get("", response_model=ToolListResponse)
async def list_tools(
    db: AsyncSession = Depends(get_db),
    owner_id: str = Depends(get_current_owner),
    store: ToolStore = Depends(get_store),
):
    """
    **List the caller's tools** together with the per-user limit.
    """
    tools = await store.list_by_owner(db, owner_id)
    return ToolListResponse(
        tools=[ToolRead.model_validate(tool) for tool in tools],
        limits=ToolLimits(current_count=len(tools), max_tools=store.max_tools),
    )


@router.get("/examples", response_model=List[ExamplePrompt])
async def list_examples():
    """**Example descriptions** for inspiration."""
    return [ExamplePrompt(**example) for example in EXAMPLE_PROMPTS]


@router.put("/reorder", response_model=MessageResponse)
async def reorder_tools(
    reorder_in: ReorderRequest,
    db: AsyncSession = Depends(get_db),
    owner_id: str = Depends(get_current_owner),
    store: ToolStore = Depends(get_store),
):
    """**Update dashboard positions.** Unknown ids are ignored."""
    changed = await store.reorder(db, owner_id, [item.model_dump() for item in reorder_in.items])
    return MessageResponse(message=f"{changed} tool(s) reordered")


@router.get("/{tool_id}", response_model=ToolResponse)
async def read_tool(
    tool_id: str,
    db: AsyncSession = Depends(get_db),
    owner_id: str = Depends(get_current_owner),
    store: ToolStore = Depends(get_store),
):
    """
    **Retrieve a tool by its ID.**

    Also the polling fallback for clients without a push connection.
    """
    tool = await store.get(db, tool_id, owner_id)
    return ToolResponse(tool=ToolRead.model_validate(tool))


@router.put("/{tool_id}", response_model=ToolResponse)
async def update_tool(
    tool_id: str,
    tool_in: ToolUpdate,
    db: AsyncSession = Depends(get_db),
    owner_id: str = Depends(get_current_owner),
    store: ToolStore = Depends(get_store),
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
    rate_limiter: RateLimiter = Depends(get_rate_limiter),
):
    """
    **Update a tool.**

    Name and description are plain edits. With `regenerate: true` the code is
    generated again from the (possibly new) description; the previous result
    stays visible until the new cycle completes.
    """
    tool = await store.get(db, tool_id, owner_id)

    if tool_in.regenerate:
        # Rejected requests must not use up a generation slot
        orchestrator.check_can_regenerate(tool)
        rate_limiter.check(owner_id, "generation")
        description = tool_in.description or tool.description
        tool = await orchestrator.regenerate(db, tool_id, owner_id, description, name=tool_in.name)
        return ToolResponse(tool=ToolRead.model_validate(tool), message="Tool is being regenerated...")

    patch = tool_in.model_dump(exclude_unset=True, exclude={"regenerate"}, exclude_none=True)
    if not patch:
        raise InvalidRequestError("Nothing to update: provide a name, a description or regenerate=true.")
    tool = await store.update(db, tool_id, patch, owner_id=owner_id)
    return ToolResponse(tool=ToolRead.model_validate(tool), message="Tool updated")


@router.delete("/{tool_id}", response_model=MessageResponse)
async def delete_tool(
    tool_id: str,
    db: AsyncSession = Depends(get_db),
    owner_id: str = Depends(get_current_owner),
    store: ToolStore = Depends(get_store),
    broker: ToolEventBroker = Depends(get_broker),
):
    """
    **Delete a tool by its ID.**

    Idempotent: deleting an unknown or already deleted tool succeeds too.
    """
    deleted = await store.delete(db, tool_id, owner_id)
    if deleted:
        broker.close_tool(tool_id)
    return MessageResponse(message="Tool deleted")


@router.post("/{tool_id}/execute", response_model=ExecuteResponse)
async def execute_tool(
    tool_id: str,
    execute_in: ExecuteRequest,
    owner_id: str = Depends(get_current_owner),
    engine: ExecutionEngine = Depends(get_engine),
    rate_limiter: RateLimiter = Depends(get_rate_limiter),
):
    """
    **Execute a ready tool** with optional parameter overrides.

    Execution errors are returned inline as an `error` result; a tool that is
    not ready yields 409 with `{success: false, error}`.
    """
    rate_limiter.check(owner_id, "execution")
    try:
        outcome = await engine.execute(tool_id, owner_id, execute_in.parameters)
    except NotReadyError as e:
        return JSONResponse(status_code=e.status_code, content={"success": False, "error": e.message})
    return ExecuteResponse(
        success=outcome.success,
        result=outcome.result,
        error=outcome.error,
        executed_at=outcome.executed_at,
    )


@router.post("/{tool_id}/parameters", response_model=ToolResponse)
async def update_parameters(
    tool_id: str,
    parameters_in: ParametersUpdate,
    db: AsyncSession = Depends(get_db),
    owner_id: str = Depends(get_current_owner),
    store: ToolStore = Depends(get_store),
):
    """**Persist parameter values** without executing the tool."""
    tool = await store.get(db, tool_id, owner_id)
    merged = resolve_effective_parameters(tool.parameters_schema, tool.current_parameters, parameters_in.parameters)
    tool = await store.update(db, tool_id, {"current_parameters": merged}, owner_id=owner_id)
    return ToolResponse(tool=ToolRead.model_validate(tool), message="Parameters saved")


@router.get("/{tool_id}/result", response_model=ToolResultResponse)
async def read_result(
    tool_id: str,
    db: AsyncSession = Depends(get_db),
    owner_id: str = Depends(get_current_owner),
    store: ToolStore = Depends(get_store),
):
    """**The last rendered result** of a tool, if any."""
    tool = await store.get(db, tool_id, owner_id)
    result = ToolResult(**tool.last_result) if tool.last_result else None
    error = tool.error_message
    if result is not None and result.type == "error" and not error:
        error = result.content
    return ToolResultResponse(
        success=result is not None and result.type != "error",
        result=result,
        rendered_at=tool.last_result_at,
        error=error,
    )

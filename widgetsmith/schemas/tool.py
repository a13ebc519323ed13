# widgetsmith/schemas/tool.py
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class CamelModel(BaseModel):
    """Fields are snake_case in Python and camelCase on the wire."""
    model_config = ConfigDict(populate_by_name=True)


# --- Results ---

class ToolResult(BaseModel):
    type: Literal["html", "svg", "json", "error"]
    content: str


# --- Requests ---

class ToolCreate(BaseModel):
    name: Optional[str] = Field(None, max_length=200, description="Display name. A placeholder is used when omitted.")
    description: str = Field(..., min_length=1, description="Natural-language description used as the generation prompt.")


class ToolUpdate(BaseModel):
    name: Optional[str] = Field(None, max_length=200)
    description: Optional[str] = Field(None, min_length=1)
    regenerate: bool = Field(False, description="Regenerate the code from the (new) description.")


class ExecuteRequest(BaseModel):
    parameters: Dict[str, Any] = Field(default_factory=dict)


class ParametersUpdate(BaseModel):
    parameters: Dict[str, Any]


class ReorderItem(BaseModel):
    id: str
    position: int = Field(..., ge=0)


class ReorderRequest(BaseModel):
    items: List[ReorderItem]


# --- Responses ---

class ToolRead(CamelModel):
    """Client view of a tool. The generated code is never part of it."""
    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    id: str
    name: str
    description: str
    status: str
    generation: int
    parameters_schema: Dict[str, Any] = Field(default_factory=dict, alias="parametersSchema")
    current_parameters: Dict[str, Any] = Field(default_factory=dict, alias="currentParameters")
    last_result: Optional[ToolResult] = Field(None, alias="lastResult")
    last_result_at: Optional[datetime] = Field(None, alias="lastResultAt")
    error_message: Optional[str] = Field(None, alias="errorMessage")
    refresh_interval: int = Field(0, alias="refreshInterval")
    position: int = 0
    execution_count: int = Field(0, alias="executionCount")
    created_at: Optional[datetime] = Field(None, alias="createdAt")
    updated_at: Optional[datetime] = Field(None, alias="updatedAt")


class ToolResponse(BaseModel):
    tool: ToolRead
    message: Optional[str] = None


class ToolLimits(CamelModel):
    current_count: int = Field(..., alias="currentCount")
    max_tools: int = Field(..., alias="maxTools")


class ToolListResponse(BaseModel):
    tools: List[ToolRead]
    limits: ToolLimits


class ExecuteResponse(CamelModel):
    success: bool
    result: ToolResult
    error: Optional[str] = None
    executed_at: datetime = Field(..., alias="executedAt")


class ToolResultResponse(CamelModel):
    success: bool
    result: Optional[ToolResult] = None
    rendered_at: Optional[datetime] = Field(None, alias="renderedAt")
    error: Optional[str] = None


class MessageResponse(BaseModel):
    message: str


class ExamplePrompt(BaseModel):
    title: str
    description: str


# --- Push events ---

class ToolUpdatedEvent(CamelModel):
    event: Literal["updated"] = "updated"
    tool_id: str = Field(..., alias="toolId")
    status: str
    error: Optional[str] = None
    generation: int
    refresh_interval: int = Field(0, alias="refreshInterval")


class ToolResultEvent(CamelModel):
    event: Literal["result"] = "result"
    tool_id: str = Field(..., alias="toolId")
    payload: ToolResult

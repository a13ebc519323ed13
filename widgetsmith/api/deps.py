# widgetsmith/api/deps.py
"""Accessors for the services the lifespan puts on `app.state`."""
from fastapi import Request

from widgetsmith.crud.tool import ToolStore
from widgetsmith.services.event_broker import ToolEventBroker
from widgetsmith.services.execution_engine import ExecutionEngine
from widgetsmith.services.orchestrator import GenerationOrchestrator
from widgetsmith.services.rate_limiter import RateLimiter


def get_store(request: Request) -> ToolStore:
    return request.app.state.tool_store


def get_engine(request: Request) -> ExecutionEngine:
    return request.app.state.execution_engine


def get_orchestrator(request: Request) -> GenerationOrchestrator:
    return request.app.state.orchestrator


def get_broker(request: Request) -> ToolEventBroker:
    return request.app.state.event_broker


def get_rate_limiter(request: Request) -> RateLimiter:
    return request.app.state.rate_limiter

# widgetsmith/exceptions.py
from fastapi import HTTPException, status


class CustomException(HTTPException):
    """Base class for errors that are rejected synchronously to the caller."""
    def __init__(self, status_code: int, detail: str):
        super().__init__(status_code=status_code, detail=detail)

    @property
    def message(self) -> str:
        return self.detail


class ToolNotFoundError(CustomException):
    def __init__(self, tool_id: str):
        self.tool_id = tool_id
        super().__init__(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Tool {tool_id} not found",
        )


class LimitExceededError(CustomException):
    def __init__(self, max_tools: int):
        self.max_tools = max_tools
        super().__init__(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail=f"You have reached the maximum of {max_tools} tools. Delete a tool to create a new one.",
        )


class RateLimitExceededError(CustomException):
    def __init__(self, kind: str, limit: int):
        self.kind = kind
        self.limit = limit
        super().__init__(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail=f"You have reached the limit of {limit} {kind} requests per hour. Please wait a while.",
        )


class IllegalTransitionError(CustomException):
    def __init__(self, tool_id: str, current: str, target: str):
        self.tool_id = tool_id
        self.current = current
        self.target = target
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Tool {tool_id} cannot move from '{current}' to '{target}'",
        )


class GenerationInProgressError(IllegalTransitionError):
    def __init__(self, tool_id: str):
        super().__init__(tool_id, "generating", "generating")
        self.detail = f"Tool {tool_id} is still being generated. Please wait until it finishes."


class NotReadyError(CustomException):
    def __init__(self, tool_id: str, current: str):
        self.tool_id = tool_id
        self.current = current
        if current == "generating":
            detail = "Tool is still being generated. Please wait a moment."
        else:
            detail = f"Tool cannot be executed. Status: {current}"
        super().__init__(status_code=status.HTTP_409_CONFLICT, detail=detail)


class InvalidRequestError(CustomException):
    def __init__(self, detail: str):
        super().__init__(status_code=status.HTTP_400_BAD_REQUEST, detail=detail)


# --- Errors that never reach an HTTP caller ---
# Generation failures travel through the `updated` event and the poll endpoint;
# execution failures become {type: "error"} results.

class GenerationFailedError(Exception):
    """The external generation service returned no usable code."""


class CodeValidationError(Exception):
    """Generated code failed static validation."""


class ExecutionFailedError(Exception):
    """render() raised, produced garbage, or the sandbox itself failed."""


class SandboxTimeoutError(ExecutionFailedError):
    def __init__(self, seconds: float):
        self.seconds = seconds
        super().__init__(f"Timeout: execution took longer than {seconds:g} seconds")

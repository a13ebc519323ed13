# widgetsmith/services/lifecycle.py
"""
Transition rules for a tool's status.

Every status change in the store and the orchestrator goes through
`validate_transition`, so duplicate or out-of-order generation completions
are rejected instead of silently rewriting state.
"""
from enum import Enum
from typing import Dict, FrozenSet, Optional

from widgetsmith.exceptions import GenerationInProgressError, IllegalTransitionError


class ToolStatus(str, Enum):
    DRAFT = "draft"
    GENERATING = "generating"
    READY = "ready"
    ERROR = "error"
    DELETED = "deleted"


# Transitions that need no explicit user intent.
_ALLOWED: Dict[ToolStatus, FrozenSet[ToolStatus]] = {
    ToolStatus.DRAFT: frozenset({ToolStatus.GENERATING}),
    ToolStatus.GENERATING: frozenset({ToolStatus.READY, ToolStatus.ERROR}),
    ToolStatus.READY: frozenset({ToolStatus.READY}),
    ToolStatus.ERROR: frozenset({ToolStatus.ERROR}),
    ToolStatus.DELETED: frozenset(),
}

# Transitions only reachable through an explicit regenerate request.
_REGENERATE_FROM: FrozenSet[ToolStatus] = frozenset({ToolStatus.READY, ToolStatus.ERROR})

# Client-side ordering within one generation cycle.
STATUS_RANK: Dict[ToolStatus, int] = {
    ToolStatus.DRAFT: 0,
    ToolStatus.GENERATING: 1,
    ToolStatus.READY: 2,
    ToolStatus.ERROR: 2,
    ToolStatus.DELETED: 3,
}

TERMINAL_GENERATION_STATES: FrozenSet[ToolStatus] = frozenset({ToolStatus.READY, ToolStatus.ERROR})


def is_transition_allowed(current: ToolStatus, target: ToolStatus, regenerate: bool = False) -> bool:
    current, target = ToolStatus(current), ToolStatus(target)
    if current is ToolStatus.DELETED:
        return False
    if target is ToolStatus.DELETED:
        return True
    if target is ToolStatus.GENERATING and current in _REGENERATE_FROM:
        return regenerate
    return target in _ALLOWED[current]


def validate_transition(
    tool_id: str,
    current: ToolStatus,
    target: ToolStatus,
    regenerate: bool = False,
) -> ToolStatus:
    """
    Returns the target status if the move is legal, raises otherwise.
    A regenerate while a job is already running raises GenerationInProgressError.
    """
    current, target = ToolStatus(current), ToolStatus(target)
    if current is ToolStatus.GENERATING and target is ToolStatus.GENERATING:
        raise GenerationInProgressError(tool_id)
    if not is_transition_allowed(current, target, regenerate=regenerate):
        raise IllegalTransitionError(tool_id, current.value, target.value)
    return target


def status_rank(status: Optional[str]) -> int:
    if status is None:
        return -1
    return STATUS_RANK[ToolStatus(status)]

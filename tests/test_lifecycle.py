import pytest

from widgetsmith.exceptions import GenerationInProgressError, IllegalTransitionError
from widgetsmith.services.lifecycle import (
    ToolStatus,
    is_transition_allowed,
    status_rank,
    validate_transition,
)


@pytest.mark.parametrize("current,target", [
    ("draft", "generating"),
    ("generating", "ready"),
    ("generating", "error"),
    ("ready", "ready"),
    ("error", "error"),
    ("draft", "deleted"),
    ("generating", "deleted"),
    ("ready", "deleted"),
    ("error", "deleted"),
])
def test_plain_transitions_are_allowed(current, target):
    assert validate_transition("t1", current, target) == ToolStatus(target)


@pytest.mark.parametrize("current", ["ready", "error"])
def test_generating_needs_explicit_regenerate(current):
    with pytest.raises(IllegalTransitionError):
        validate_transition("t1", current, "generating")
    assert validate_transition("t1", current, "generating", regenerate=True) is ToolStatus.GENERATING


def test_regenerate_while_generating_is_rejected_as_in_progress():
    with pytest.raises(GenerationInProgressError) as exc_info:
        validate_transition("t1", "generating", "generating", regenerate=True)
    assert exc_info.value.status_code == 409
    assert isinstance(exc_info.value, IllegalTransitionError)


@pytest.mark.parametrize("target", ["draft", "generating", "ready", "error", "deleted"])
def test_deleted_is_absorbing(target):
    assert not is_transition_allowed("deleted", target, regenerate=True)
    with pytest.raises(IllegalTransitionError):
        validate_transition("t1", "deleted", target, regenerate=True)


@pytest.mark.parametrize("current,target", [
    ("ready", "error"),
    ("error", "ready"),
    ("generating", "draft"),
    ("ready", "draft"),
    ("draft", "ready"),
])
def test_illegal_transitions(current, target):
    with pytest.raises(IllegalTransitionError):
        validate_transition("t1", current, target)


def test_status_rank_orders_generating_before_terminal_states():
    assert status_rank("generating") < status_rank("ready")
    assert status_rank("ready") == status_rank("error")
    assert status_rank(None) < status_rank("draft")

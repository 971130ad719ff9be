"""Run lifecycle shared by eval runs and workflow runs."""

from __future__ import annotations

from enum import Enum


class RunStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.COMPLETED, RunStatus.FAILED)


class InvalidTransitionError(Exception):
    """Raised when a run is asked to move to a status it cannot reach."""

    def __init__(self, current: str, target: str):
        super().__init__(f"Cannot transition run from '{current}' to '{target}'")
        self.current = current
        self.target = target


_TRANSITIONS: dict[RunStatus, frozenset[RunStatus]] = {
    RunStatus.PENDING: frozenset({RunStatus.RUNNING}),
    RunStatus.RUNNING: frozenset({RunStatus.COMPLETED, RunStatus.FAILED}),
    RunStatus.COMPLETED: frozenset(),
    RunStatus.FAILED: frozenset(),
}


def can_transition(current: RunStatus | str, target: RunStatus | str) -> bool:
    """Return True if ``current -> target`` is a legal forward step."""
    try:
        return RunStatus(target) in _TRANSITIONS[RunStatus(current)]
    except ValueError:
        return False


def transition(current: RunStatus | str, target: RunStatus | str) -> RunStatus:
    """Validate ``current -> target`` and return the target status.

    Raises:
        InvalidTransitionError: for unknown statuses, backward moves, skips
            past ``running``, or any move out of a terminal state.
    """
    if not can_transition(current, target):
        raise InvalidTransitionError(str(getattr(current, "value", current)), str(getattr(target, "value", target)))
    return RunStatus(target)

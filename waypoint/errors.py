"""Exception hierarchy for waypoint workflows."""

from __future__ import annotations

from typing import Optional


class WaypointError(Exception):
    """Base class for all waypoint errors."""


class TaskError(WaypointError):
    """A task attempt did not succeed."""

    retryable = True

    def __init__(self, message: str, task_name: Optional[str] = None) -> None:
        super().__init__(message)
        self.task_name = task_name


class TaskTimeout(TaskError):
    """The task body exceeded its timeout window."""

    def __init__(self, task_name: str, timeout_seconds: float) -> None:
        super().__init__(
            f"Task timed out after {timeout_seconds:g} seconds", task_name=task_name
        )
        self.timeout_seconds = timeout_seconds


class TaskBodyError(TaskError):
    """The task body raised or reported failure."""


class ApprovalError(TaskError):
    """An approval gate ended without approval. Never retried."""

    retryable = False

    def __init__(
        self, message: str, task_name: Optional[str] = None, reason: Optional[str] = None
    ) -> None:
        super().__init__(message, task_name=task_name)
        self.reason = reason


class ApprovalRejected(ApprovalError):
    """An external actor rejected the gate."""


class ApprovalTimedOut(ApprovalError):
    """Nobody decided before the gate's timeout elapsed."""


class SkipEvaluationError(WaypointError):
    """A skip condition could not be evaluated. Always handled fail-open."""


class WorkflowCancelled(WaypointError):
    """The run was cancelled from outside."""


class CheckpointIOError(WaypointError):
    """Reading or writing the checkpoint document failed."""


class InvalidTransition(WaypointError, ValueError):
    """A task status change that the state machine does not allow."""


class DefinitionError(WaypointError, ValueError):
    """A workflow definition document is invalid."""

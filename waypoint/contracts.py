"""Core data contracts for waypoint workflows."""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .constants import DEFAULT_RETRY_DELAY_SECONDS
from .errors import InvalidTransition


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TaskKind(str, Enum):
    NORMAL = "Normal"
    APPROVAL_GATE = "ApprovalGate"


class TaskStatus(str, Enum):
    PENDING = "Pending"
    RUNNING = "Running"
    COMPLETED = "Completed"
    FAILED = "Failed"
    SKIPPED = "Skipped"
    AWAITING_APPROVAL = "AwaitingApproval"


TERMINAL_STATUSES = frozenset(
    {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.SKIPPED}
)
DONE_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.SKIPPED})

_ALLOWED_TRANSITIONS: Dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PENDING: frozenset({TaskStatus.RUNNING, TaskStatus.SKIPPED}),
    TaskStatus.RUNNING: frozenset(
        {
            TaskStatus.COMPLETED,
            TaskStatus.FAILED,
            TaskStatus.SKIPPED,
            TaskStatus.AWAITING_APPROVAL,
        }
    ),
    TaskStatus.AWAITING_APPROVAL: frozenset(
        {TaskStatus.COMPLETED, TaskStatus.FAILED}
    ),
    TaskStatus.COMPLETED: frozenset(),
    TaskStatus.FAILED: frozenset(),
    TaskStatus.SKIPPED: frozenset(),
}


class ErrorAction(str, Enum):
    """Workflow-level reaction to a task that failed all its attempts."""

    STOP = "Stop"
    CONTINUE = "Continue"


class ApprovalDecision(str, Enum):
    APPROVED = "Approved"
    REJECTED = "Rejected"
    TIMED_OUT = "TimedOut"


class WorkflowTask(BaseModel):
    """One schedulable step: its definition plus its mutable run state.

    ``body`` and ``rollback`` hold executable units (any callable taking a
    :class:`~waypoint.context.TaskExecutionContext`). They are never
    serialized; checkpoints only carry run state.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    # Definition
    name: str
    title: str = ""
    description: Optional[str] = None
    group: Optional[str] = None
    order: int = 0
    kind: TaskKind = TaskKind.NORMAL
    retry_count: int = Field(default=0, ge=0)
    retry_delay_seconds: float = Field(default=DEFAULT_RETRY_DELAY_SECONDS, ge=0)
    timeout_seconds: float = Field(default=0, ge=0)
    continue_on_error: bool = False
    skip_condition: Optional[str] = None
    skip_reason: Optional[str] = None
    arguments: Dict[str, Any] = Field(default_factory=dict)
    body: Any = Field(default=None, exclude=True)
    rollback: Any = Field(default=None, exclude=True)

    # Approval gate options
    approval_message: Optional[str] = None
    approval_timeout_seconds: float = Field(default=0, ge=0)
    require_reason: bool = False

    # Run state
    status: TaskStatus = TaskStatus.PENDING
    progress_percent: int = 0
    progress_message: str = ""
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    error_message: Optional[str] = None
    output_lines: List[str] = Field(default_factory=list)
    approval_decision: Optional[ApprovalDecision] = None
    approval_reason: Optional[str] = None
    attempts: int = 0

    @property
    def display_title(self) -> str:
        return self.title or self.name

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_done(self) -> bool:
        """Completed or Skipped: nothing left to execute."""
        return self.status in DONE_STATUSES

    @property
    def is_approval_gate(self) -> bool:
        return self.kind == TaskKind.APPROVAL_GATE

    @property
    def duration(self) -> Optional[timedelta]:
        if self.start_time is None:
            return None
        return (self.end_time or utcnow()) - self.start_time

    def transition(self, new_status: TaskStatus) -> None:
        """Move to ``new_status`` if the state machine allows it."""
        if new_status not in _ALLOWED_TRANSITIONS[self.status]:
            raise InvalidTransition(
                f"Task '{self.name}' cannot move from {self.status.value} to {new_status.value}"
            )
        self.status = new_status
        if new_status == TaskStatus.RUNNING:
            self.start_time = utcnow()
            self.end_time = None
        elif new_status in TERMINAL_STATUSES:
            self.end_time = utcnow()

    def reset(self) -> None:
        """Return to Pending, dropping all run state. Used when restoring."""
        self.status = TaskStatus.PENDING
        self.progress_percent = 0
        self.progress_message = ""
        self.start_time = None
        self.end_time = None
        self.error_message = None
        self.output_lines = []
        self.approval_decision = None
        self.approval_reason = None
        self.attempts = 0

    def reset_progress(self) -> None:
        self.progress_percent = 0

    def add_output_line(self, level: str, message: str) -> str:
        line = f"[{level}] {message}"
        self.output_lines.append(line)
        return line


class WorkflowRun(BaseModel):
    """One end-to-end execution of an ordered task list."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    run_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    title: str = "Workflow"
    tasks: List[WorkflowTask] = Field(default_factory=list)
    current_index: int = -1
    is_completed: bool = False
    has_failed: bool = False
    was_cancelled: bool = False
    reboot_pending: bool = False
    reboot_reason: Optional[str] = None
    reboot_count: int = 0
    error_action: ErrorAction = ErrorAction.STOP
    wizard_inputs: Dict[str, Any] = Field(default_factory=dict)
    log_file_path: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    saved_at: Optional[datetime] = None

    def ordered_tasks(self) -> List[WorkflowTask]:
        """Tasks by ascending ``order``; ties keep definition order."""
        return sorted(self.tasks, key=lambda task: task.order)

    @property
    def current_task(self) -> Optional[WorkflowTask]:
        if 0 <= self.current_index < len(self.tasks):
            return self.tasks[self.current_index]
        return None

    def get_task(self, name: str) -> Optional[WorkflowTask]:
        return next((task for task in self.tasks if task.name == name), None)

    def counts(self) -> Dict[TaskStatus, int]:
        result = {status: 0 for status in TaskStatus}
        for task in self.tasks:
            result[task.status] += 1
        return result

    @property
    def overall_progress(self) -> float:
        """Percentage of the run that is done, counting the running task partially."""
        if not self.tasks:
            return 0.0
        done = sum(1 for task in self.tasks if task.is_done)
        current = self.current_task
        partial = 0.0
        if current is not None and current.status == TaskStatus.RUNNING:
            partial = current.progress_percent / 100.0
        return (done + partial) / len(self.tasks) * 100

    def all_done(self) -> bool:
        return all(task.is_done for task in self.tasks)


class RunOutcome(str, Enum):
    COMPLETED_SUCCESSFULLY = "CompletedSuccessfully"
    COMPLETED_WITH_FAILURES = "CompletedWithFailures"
    HALTED_FOR_REBOOT = "HaltedForReboot"
    CANCELLED = "Cancelled"


class RunResult(BaseModel):
    """Summary handed back by :meth:`TaskOrchestrator.run`."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    run_id: str
    outcome: RunOutcome
    completed: int = 0
    failed: int = 0
    skipped: int = 0
    pending: int = 0
    aborted: bool = False
    failed_task: Optional[str] = None
    error: Optional[BaseException] = Field(default=None, exclude=True)
    reboot_reason: Optional[str] = None
    checkpoint_path: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.outcome == RunOutcome.COMPLETED_SUCCESSFULLY

    @classmethod
    def from_run(cls, run: WorkflowRun, outcome: RunOutcome, **extra: Any) -> "RunResult":
        counts = run.counts()
        return cls(
            run_id=run.run_id,
            outcome=outcome,
            completed=counts[TaskStatus.COMPLETED],
            failed=counts[TaskStatus.FAILED],
            skipped=counts[TaskStatus.SKIPPED],
            pending=counts[TaskStatus.PENDING],
            reboot_reason=run.reboot_reason if run.reboot_pending else None,
            **extra,
        )


class EventKind(str, Enum):
    RUN_STARTED = "run_started"
    RUN_FINISHED = "run_finished"
    TASK_STARTED = "task_started"
    TASK_PROGRESS = "task_progress"
    TASK_OUTPUT = "task_output"
    TASK_RETRYING = "task_retrying"
    TASK_COMPLETED = "task_completed"
    TASK_FAILED = "task_failed"
    TASK_SKIPPED = "task_skipped"
    APPROVAL_REQUESTED = "approval_requested"
    APPROVAL_DECIDED = "approval_decided"
    REBOOT_REQUESTED = "reboot_requested"


class WorkflowEvent(BaseModel):
    """State-change notification published to presentation adapters."""

    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    kind: EventKind
    run_id: str
    task_name: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)
    data: Dict[str, Any] = Field(default_factory=dict)

    def to_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str) -> "WorkflowEvent":
        return cls.model_validate_json(data)

"""Loading workflow definitions from YAML or JSON documents."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .bodies import CommandBody, resolve_body
from .constants import DEFAULT_RETRY_DELAY_SECONDS
from .contracts import ErrorAction, TaskKind, TaskStatus, WorkflowTask
from .errors import DefinitionError

logger = logging.getLogger(__name__)


def _match_enum(value: Any, enum_cls: type) -> Any:
    """Accept enum values case-insensitively ("continue" -> "Continue")."""
    if isinstance(value, str):
        for member in enum_cls:
            if member.value.lower() == value.strip().lower():
                return member
    return value


class TaskDefinition(BaseModel):
    """One entry of the ``tasks`` list."""

    model_config = ConfigDict(extra="forbid")

    name: str = Field(min_length=1)
    title: str = ""
    description: Optional[str] = None
    group: Optional[str] = None
    order: Optional[int] = None
    kind: TaskKind = TaskKind.NORMAL
    retry_count: int = Field(default=0, ge=0)
    retry_delay_seconds: Optional[float] = Field(default=None, ge=0)
    timeout_seconds: float = Field(default=0, ge=0)
    continue_on_error: bool = False
    error_action: Optional[ErrorAction] = None
    skip_condition: Optional[str] = None
    skip_reason: Optional[str] = None
    arguments: Dict[str, Any] = Field(default_factory=dict)

    body: Optional[str] = None
    command: Optional[List[str]] = None
    cwd: Optional[str] = None
    env: Dict[str, str] = Field(default_factory=dict)
    rollback: Optional[str] = None
    rollback_command: Optional[List[str]] = None

    approval_message: Optional[str] = None
    approval_timeout_seconds: float = Field(default=0, ge=0)
    require_reason: bool = False

    pre_completed: bool = False
    pre_completed_message: Optional[str] = None

    @field_validator("kind", mode="before")
    @classmethod
    def _normalize_kind(cls, value: Any) -> Any:
        return _match_enum(value, TaskKind)

    @field_validator("error_action", mode="before")
    @classmethod
    def _normalize_error_action(cls, value: Any) -> Any:
        return _match_enum(value, ErrorAction)

    @model_validator(mode="after")
    def _check_body(self) -> "TaskDefinition":
        if self.body and self.command:
            raise ValueError(f"task '{self.name}' sets both body and command")
        if self.rollback and self.rollback_command:
            raise ValueError(f"task '{self.name}' sets both rollback and rollback_command")
        if self.command is not None and not self.command:
            raise ValueError(f"task '{self.name}' has an empty command")
        return self

    def to_task(self, position: int, default_retry_delay: float) -> WorkflowTask:
        task = WorkflowTask(
            name=self.name,
            title=self.title,
            description=self.description,
            group=self.group,
            order=self.order if self.order is not None else position + 1,
            kind=self.kind,
            retry_count=self.retry_count,
            retry_delay_seconds=(
                self.retry_delay_seconds
                if self.retry_delay_seconds is not None
                else default_retry_delay
            ),
            timeout_seconds=self.timeout_seconds,
            continue_on_error=(
                self.continue_on_error or self.error_action == ErrorAction.CONTINUE
            ),
            skip_condition=self.skip_condition,
            skip_reason=self.skip_reason,
            arguments=dict(self.arguments),
            approval_message=self.approval_message,
            approval_timeout_seconds=self.approval_timeout_seconds,
            require_reason=self.require_reason,
        )

        if self.body:
            task.body = resolve_body(self.body)
        elif self.command:
            task.body = CommandBody(self.command, cwd=self.cwd, env=self.env or None)
        if self.rollback:
            task.rollback = resolve_body(self.rollback)
        elif self.rollback_command:
            task.rollback = CommandBody(self.rollback_command, cwd=self.cwd, env=self.env or None)

        if self.pre_completed:
            task.status = TaskStatus.COMPLETED
            task.progress_percent = 100
            task.progress_message = self.pre_completed_message or "Completed (from previous run)"
            logger.info(f"Task '{task.name}' pre-completed from resume state")
        return task


class WorkflowDefinition(BaseModel):
    """A workflow document: title, defaults and the task list."""

    model_config = ConfigDict(extra="forbid")

    title: str = "Workflow"
    description: Optional[str] = None
    error_action: Optional[ErrorAction] = None
    tasks: List[TaskDefinition] = Field(min_length=1)

    @field_validator("error_action", mode="before")
    @classmethod
    def _normalize_error_action(cls, value: Any) -> Any:
        return _match_enum(value, ErrorAction)

    @field_validator("tasks")
    @classmethod
    def _unique_names(cls, tasks: List[TaskDefinition]) -> List[TaskDefinition]:
        seen = set()
        for task in tasks:
            if task.name in seen:
                raise ValueError(f"duplicate task name '{task.name}'")
            seen.add(task.name)
        return tasks

    def build_tasks(
        self, default_retry_delay: float = DEFAULT_RETRY_DELAY_SECONDS
    ) -> List[WorkflowTask]:
        """Create fresh :class:`WorkflowTask` objects with their bodies resolved."""
        tasks = [
            definition.to_task(position, default_retry_delay)
            for position, definition in enumerate(self.tasks)
        ]
        for task in tasks:
            logger.debug(f"Loaded workflow task: {task.name} ({task.display_title})")
        return tasks


def parse_definition(data: Mapping[str, Any]) -> WorkflowDefinition:
    try:
        return WorkflowDefinition.model_validate(data)
    except ValidationError as exc:
        raise DefinitionError(f"Invalid workflow definition: {exc}") from exc


def load_definition(path: str | Path) -> WorkflowDefinition:
    """Read a workflow definition from a YAML or JSON file."""

    path = Path(path)
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except OSError as exc:
        raise DefinitionError(f"Cannot read workflow definition {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise DefinitionError(f"Cannot parse workflow definition {path}: {exc}") from exc

    if not isinstance(data, dict):
        raise DefinitionError(f"Workflow definition {path} must be a mapping")
    definition = parse_definition(data)
    logger.info(f"Loaded workflow '{definition.title}' with {len(definition.tasks)} task(s)")
    return definition

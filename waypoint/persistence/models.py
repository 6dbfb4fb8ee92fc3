"""Data models for the persisted checkpoint document."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field

from ..constants import CHECKPOINT_SCHEMA_VERSION
from ..contracts import TaskStatus, utcnow


class TaskCheckpoint(BaseModel):
    """Run state of one task at the moment the checkpoint was written."""

    name: str
    title: str = ""
    status: TaskStatus = TaskStatus.PENDING
    progress_percent: int = 0
    progress_message: str = ""
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    error_message: Optional[str] = None
    output_lines: list[str] = Field(default_factory=list)


class Checkpoint(BaseModel):
    """Durable snapshot used to resume a run after a restart."""

    schema_version: str = CHECKPOINT_SCHEMA_VERSION
    run_id: str
    title: str = "Workflow"
    current_index: int = 0
    reboot_count: int = 0
    reboot_reason: Optional[str] = None
    tasks: list[TaskCheckpoint] = Field(default_factory=list)
    wizard_inputs: dict[str, Any] = Field(default_factory=dict)
    shared_data: dict[str, Any] = Field(default_factory=dict)
    log_file_path: Optional[str] = None
    saved_by: Optional[str] = None
    computer_name: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    saved_at: datetime = Field(default_factory=utcnow)

    def task(self, name: str) -> Optional[TaskCheckpoint]:
        return next((t for t in self.tasks if t.name == name), None)

    def to_json(self) -> str:
        return self.model_dump_json(indent=2)

    @classmethod
    def from_json(cls, data: str | bytes) -> "Checkpoint":
        return cls.model_validate_json(data)

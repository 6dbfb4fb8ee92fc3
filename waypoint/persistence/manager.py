"""Saving and restoring run progress across process restarts."""

from __future__ import annotations

import getpass
import logging
import platform
from typing import Any, Mapping, Optional

from pydantic_core import to_jsonable_python

from ..contracts import DONE_STATUSES, WorkflowRun, utcnow
from ..data_store import SharedDataStore
from ..errors import CheckpointIOError
from .models import Checkpoint, TaskCheckpoint
from .repository import CheckpointStore

logger = logging.getLogger(__name__)


def _current_user() -> Optional[str]:
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return None


class CheckpointManager:
    """Writes, reads and clears the resume snapshot of a workflow run.

    Checkpoint IO problems are logged and swallowed: a failed write must not
    abort a reboot, it only means the run cannot be resumed.
    """

    def __init__(
        self, store: CheckpointStore, logger: Optional[logging.Logger] = None
    ) -> None:
        self._store = store
        self._logger = logger or logging.getLogger(__name__)

    @property
    def location(self) -> str:
        return self._store.location

    def build(
        self,
        run: WorkflowRun,
        shared_data: Mapping[str, Any],
        wizard_inputs: Mapping[str, Any],
    ) -> Checkpoint:
        next_index = next(
            (i for i, task in enumerate(run.tasks) if not task.is_done),
            len(run.tasks),
        )
        return Checkpoint(
            run_id=run.run_id,
            title=run.title,
            current_index=next_index,
            reboot_count=run.reboot_count,
            reboot_reason=run.reboot_reason,
            tasks=[
                TaskCheckpoint(
                    name=task.name,
                    title=task.title,
                    status=task.status,
                    progress_percent=task.progress_percent,
                    progress_message=task.progress_message,
                    start_time=task.start_time,
                    end_time=task.end_time,
                    error_message=task.error_message,
                    output_lines=list(task.output_lines),
                )
                for task in run.tasks
            ],
            wizard_inputs=to_jsonable_python(dict(wizard_inputs), serialize_unknown=True),
            shared_data=to_jsonable_python(dict(shared_data), serialize_unknown=True),
            log_file_path=run.log_file_path,
            saved_by=_current_user(),
            computer_name=platform.node() or None,
            created_at=run.created_at,
            saved_at=utcnow(),
        )

    def save(
        self,
        run: WorkflowRun,
        shared_data: Mapping[str, Any],
        wizard_inputs: Mapping[str, Any],
    ) -> Optional[str]:
        """Persist the run. Returns the checkpoint location, or ``None`` on failure."""
        checkpoint = self.build(run, shared_data, wizard_inputs)
        try:
            location = self._store.write(checkpoint)
        except CheckpointIOError as exc:
            self._logger.error(f"Failed to save workflow state: {exc}")
            return None
        run.saved_at = checkpoint.saved_at
        self._logger.info(f"Workflow state saved to: {location}")
        return location

    def load(self) -> Optional[Checkpoint]:
        try:
            checkpoint = self._store.read()
        except CheckpointIOError as exc:
            self._logger.warning(f"Ignoring unreadable checkpoint: {exc}")
            return None
        if checkpoint is not None:
            self._logger.info(
                f"Found checkpoint for '{checkpoint.title}' "
                f"(run {checkpoint.run_id}, resume at task {checkpoint.current_index})"
            )
        return checkpoint

    def clear(self) -> bool:
        try:
            removed = self._store.delete()
        except CheckpointIOError as exc:
            self._logger.warning(f"Failed to clear workflow state: {exc}")
            return False
        if removed:
            self._logger.info(f"Cleared workflow state at: {self._store.location}")
        return removed

    def exists(self) -> bool:
        return self._store.exists()

    @staticmethod
    def matches(checkpoint: Checkpoint, run: WorkflowRun) -> bool:
        """Whether ``checkpoint`` was written for a run of the same workflow."""
        if checkpoint.title != run.title:
            return False
        saved_names = {task.name for task in checkpoint.tasks}
        return saved_names == {task.name for task in run.tasks}

    def apply(
        self,
        checkpoint: Checkpoint,
        run: WorkflowRun,
        shared_data: SharedDataStore,
    ) -> int:
        """Restore ``checkpoint`` onto ``run`` and return the resume index.

        Completed and Skipped tasks keep their recorded state and will not run
        again. Every other task goes back to Pending. Wizard inputs recorded in
        the checkpoint take precedence over the ones supplied to this launch.
        """
        for task in run.tasks:
            saved = checkpoint.task(task.name)
            if saved is None or saved.status not in DONE_STATUSES:
                task.reset()
                continue
            task.status = saved.status
            task.progress_percent = saved.progress_percent
            task.progress_message = saved.progress_message or "Completed (from previous run)"
            task.start_time = saved.start_time
            task.end_time = saved.end_time
            task.error_message = saved.error_message
            task.output_lines = list(saved.output_lines)

        shared_data.replace(checkpoint.shared_data)
        run.wizard_inputs = {**run.wizard_inputs, **checkpoint.wizard_inputs}
        run.run_id = checkpoint.run_id
        run.reboot_count = checkpoint.reboot_count
        run.created_at = checkpoint.created_at
        run.reboot_pending = False
        run.reboot_reason = None

        resume_index = next(
            (i for i, task in enumerate(run.tasks) if not task.is_done),
            len(run.tasks),
        )
        done = sum(1 for task in run.tasks if task.is_done)
        self._logger.info(
            f"Restored {done} finished task(s) from checkpoint; "
            f"resuming at index {resume_index}"
        )
        return resume_index

"""Execution context handed to task bodies."""

from __future__ import annotations

import logging
import threading
from enum import Enum
from types import MappingProxyType
from typing import Any, List, Mapping, Optional, Protocol

from .constants import AUTO_PROGRESS_CAP, AUTO_PROGRESS_START, AUTO_PROGRESS_STEP
from .contracts import WorkflowTask
from .data_store import SharedDataStore

logger = logging.getLogger(__name__)


class ProgressMode(str, Enum):
    """How a task's progress bar advances during one attempt."""

    AUTO = "auto"
    MANUAL = "manual"


class TaskController(Protocol):
    """Orchestrator-side operations the context forwards to."""

    shared_data: SharedDataStore

    @property
    def wizard_inputs(self) -> Mapping[str, Any]: ...

    @property
    def current_task_index(self) -> int: ...

    @property
    def total_task_count(self) -> int: ...

    def record_output(self, task: WorkflowTask, level: str, message: str) -> None: ...

    def record_progress(
        self, task: WorkflowTask, percent: Optional[int], message: Optional[str]
    ) -> None: ...

    def request_skip(self, reason: str) -> None: ...

    def request_reboot(self, reason: str) -> None: ...


class TaskExecutionContext:
    """Facade a task body uses to report progress and talk to the workflow.

    A fresh context is created for every attempt. Apart from the progress mode
    and the auto-progress counter it holds no state of its own: every call is
    forwarded to the orchestrator, which owns the task. Once the attempt is
    over the context is detached and further calls are ignored, so a body that
    outlives its timeout cannot touch the task any more.
    """

    def __init__(self, task: WorkflowTask, controller: TaskController) -> None:
        self._task = task
        self._controller = controller
        self._progress_mode = ProgressMode.AUTO
        self._output_count = 0
        self._detached = threading.Event()

    # ------------------------------------------------------------------
    # Task information
    @property
    def task_name(self) -> str:
        return self._task.name

    @property
    def task_title(self) -> str:
        return self._task.display_title

    @property
    def arguments(self) -> Mapping[str, Any]:
        return MappingProxyType(self._task.arguments)

    @property
    def wizard_inputs(self) -> Mapping[str, Any]:
        return MappingProxyType(dict(self._controller.wizard_inputs))

    @property
    def current_task_index(self) -> int:
        return self._controller.current_task_index

    @property
    def total_task_count(self) -> int:
        return self._controller.total_task_count

    @property
    def progress_mode(self) -> ProgressMode:
        return self._progress_mode

    @property
    def cancellation_requested(self) -> bool:
        """True once the attempt is over (timeout, cancel or completion).

        Long-running synchronous bodies should poll this and return early.
        """
        return self._detached.is_set()

    def detach(self) -> None:
        self._detached.set()

    # ------------------------------------------------------------------
    # Progress and output
    def write_output(self, message: Any, level: str = "OUTPUT") -> None:
        if self._detached.is_set():
            return
        text = "" if message is None else str(message)
        self._controller.record_output(self._task, level or "OUTPUT", text)

        if self._progress_mode == ProgressMode.AUTO:
            self._output_count += 1
            percent = min(
                AUTO_PROGRESS_CAP,
                AUTO_PROGRESS_START + self._output_count * AUTO_PROGRESS_STEP,
            )
            self._controller.record_progress(self._task, percent, text)

    def update_progress(self, percent: int, message: Optional[str] = None) -> None:
        """Set progress directly; auto-progress stays off for the rest of the attempt."""
        if self._detached.is_set():
            return
        self._progress_mode = ProgressMode.MANUAL
        percent = max(0, min(100, int(percent)))
        self._controller.record_progress(self._task, percent, message)

    def set_status(self, message: str) -> None:
        if self._detached.is_set():
            return
        self._controller.record_progress(self._task, None, message)

    # ------------------------------------------------------------------
    # Shared data
    def set_data(self, key: str, value: Any) -> None:
        if self._detached.is_set():
            logger.debug(f"Ignoring late data write for '{key}' from {self._task.name}")
            return
        self._controller.shared_data.set(key, value)

    def get_data(self, key: str, default: Any = None) -> Any:
        return self._controller.shared_data.get(key, default)

    def has_data(self, key: str) -> bool:
        return self._controller.shared_data.has(key)

    def get_data_keys(self) -> List[str]:
        return self._controller.shared_data.keys()

    def get_wizard_value(self, name: str, default: Any = None) -> Any:
        return self._controller.wizard_inputs.get(name, default)

    # ------------------------------------------------------------------
    # Flow control
    def skip_task(self, reason: Optional[str] = None) -> None:
        if self._detached.is_set():
            return
        self._controller.request_skip(reason or "Skipped by script")

    def request_reboot(self, reason: Optional[str] = None) -> None:
        if self._detached.is_set():
            return
        self._controller.request_reboot(reason or "Reboot required to continue")

"""Event sink that writes events to the standard logger."""

from __future__ import annotations

import logging
from typing import Optional

from ..contracts import EventKind, WorkflowEvent
from .base import BaseEventSink

_LEVELS = {
    EventKind.TASK_FAILED: logging.ERROR,
    EventKind.TASK_RETRYING: logging.WARNING,
    EventKind.REBOOT_REQUESTED: logging.WARNING,
    EventKind.TASK_PROGRESS: logging.DEBUG,
}


class LoggingEventSink(BaseEventSink):
    """Render each event as one log record."""

    def __init__(self, logger: Optional[logging.Logger] = None) -> None:
        self._logger = logger or logging.getLogger(__name__)

    def publish(self, event: WorkflowEvent) -> None:
        level = _LEVELS.get(event.kind, logging.INFO)
        task = f" [{event.task_name}]" if event.task_name else ""
        details = " ".join(f"{key}={value}" for key, value in event.data.items())
        self._logger.log(level, f"{event.kind.value}{task} {details}".rstrip())

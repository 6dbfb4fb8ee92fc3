"""Base event sink interface for waypoint notifications."""

from __future__ import annotations

import abc

from ..contracts import WorkflowEvent


class BaseEventSink(metaclass=abc.ABCMeta):
    """Abstract receiver of workflow state-change events.

    The orchestrator publishes from the event loop and, for synchronous task
    bodies, from worker threads. Implementations must therefore be
    thread-safe and must not block.
    """

    @abc.abstractmethod
    def publish(self, event: WorkflowEvent) -> None:
        """Deliver one event."""
        raise NotImplementedError

    def close(self) -> None:
        """Release resources (no-op by default)."""
        pass


class NullEventSink(BaseEventSink):
    """Discards every event."""

    def publish(self, event: WorkflowEvent) -> None:
        pass

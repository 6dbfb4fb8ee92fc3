"""Event sink factory and initialization."""

from __future__ import annotations

import os
from typing import Optional

from ..config import WaypointConfig, load_config
from .base import BaseEventSink, NullEventSink
from .inmemory import InMemoryEventBus
from .log_sink import LoggingEventSink


def get_event_sink(
    backend: Optional[str] = None, config: Optional[WaypointConfig] = None
) -> BaseEventSink:
    """Factory function to get the configured event sink."""

    config = config or load_config()
    backend = (
        backend
        or os.getenv("WAYPOINT_EVENTS")
        or config.events.backend
    ).lower()

    if backend == "inmemory":
        return InMemoryEventBus()
    elif backend == "logging":
        return LoggingEventSink()
    elif backend == "null":
        return NullEventSink()
    else:
        raise ValueError(f"Unsupported event backend: {backend}")


__all__ = [
    "BaseEventSink",
    "InMemoryEventBus",
    "LoggingEventSink",
    "NullEventSink",
    "get_event_sink",
]

"""In-memory event bus for presentation adapters and tests."""

from __future__ import annotations

import asyncio
import logging
import threading
from collections import deque
from typing import AsyncIterator, Callable, Deque, List, Optional, Tuple

from ..contracts import EventKind, WorkflowEvent
from .base import BaseEventSink

logger = logging.getLogger(__name__)

EventCallback = Callable[[WorkflowEvent], None]


class InMemoryEventBus(BaseEventSink):
    """Fan events out to callbacks and async streams, keeping a history.

    Callbacks run on the publishing thread; an adapter that renders on its
    own thread should marshal there itself. Async streams are fed through
    ``call_soon_threadsafe`` so they can be consumed from the event loop.
    """

    def __init__(self, history_limit: Optional[int] = None) -> None:
        self.history: Deque[WorkflowEvent] = deque(maxlen=history_limit)
        self._subscribers: List[EventCallback] = []
        self._streams: List[Tuple[asyncio.AbstractEventLoop, asyncio.Queue]] = []
        self._lock = threading.Lock()

    def publish(self, event: WorkflowEvent) -> None:
        with self._lock:
            self.history.append(event)
            subscribers = list(self._subscribers)
            streams = list(self._streams)

        for callback in subscribers:
            try:
                callback(event)
            except Exception as exc:
                logger.error(f"Event subscriber failed on {event.kind.value}: {exc}")

        for loop, queue in streams:
            try:
                loop.call_soon_threadsafe(queue.put_nowait, event)
            except RuntimeError:
                logger.debug("Dropping event for a stream whose loop is closed")

    def subscribe(self, callback: EventCallback) -> Callable[[], None]:
        """Register ``callback``; returns a function that unregisters it."""
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    async def stream(
        self, lifespan: Optional[float] = None, stop_on_finish: bool = True
    ) -> AsyncIterator[WorkflowEvent]:
        """Yield events as they are published.

        Args:
            lifespan: Maximum time in seconds to keep listening. If None, runs
                until the run finishes (or indefinitely with ``stop_on_finish``
                disabled).
            stop_on_finish: Stop after yielding a ``run_finished`` event.
        """
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue = asyncio.Queue()
        entry = (loop, queue)
        with self._lock:
            self._streams.append(entry)

        deadline = loop.time() + lifespan if lifespan else None
        try:
            while True:
                timeout = None
                if deadline is not None:
                    timeout = deadline - loop.time()
                    if timeout <= 0:
                        break
                try:
                    event = await asyncio.wait_for(queue.get(), timeout)
                except asyncio.TimeoutError:
                    break
                yield event
                if stop_on_finish and event.kind == EventKind.RUN_FINISHED:
                    break
        finally:
            with self._lock:
                if entry in self._streams:
                    self._streams.remove(entry)

    def events_of(self, kind: EventKind) -> List[WorkflowEvent]:
        with self._lock:
            return [event for event in self.history if event.kind == kind]

    def clear(self) -> None:
        with self._lock:
            self.history.clear()

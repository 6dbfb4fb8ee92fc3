"""Storage abstraction for workflow checkpoints."""

from __future__ import annotations

from typing import Optional, Protocol

from .models import Checkpoint


class CheckpointStore(Protocol):
    """Protocol for checkpoint storage backends.

    Implementations raise :class:`~waypoint.errors.CheckpointIOError` when the
    underlying storage cannot be read or written.
    """

    @property
    def location(self) -> str:
        """Human readable location of the stored document."""

    def write(self, checkpoint: Checkpoint) -> str:
        """Persist ``checkpoint``, replacing any previous one. Returns the location."""

    def read(self) -> Optional[Checkpoint]:
        """Return the stored checkpoint or ``None`` when there is none."""

    def delete(self) -> bool:
        """Remove the stored checkpoint. Returns True if something was deleted."""

    def exists(self) -> bool:
        """Whether a checkpoint is currently stored."""

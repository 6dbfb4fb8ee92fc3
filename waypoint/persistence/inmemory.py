"""In-memory implementation of the checkpoint store."""

from __future__ import annotations

from typing import Optional

from .models import Checkpoint
from .repository import CheckpointStore


class InMemoryCheckpointStore(CheckpointStore):
    """Keep the checkpoint in local memory.

    Useful for tests. The serialized JSON is stored rather than the model so a
    read behaves like a reload from disk.
    """

    def __init__(self) -> None:
        self._document: Optional[str] = None

    @property
    def location(self) -> str:
        return "memory://"

    def write(self, checkpoint: Checkpoint) -> str:
        self._document = checkpoint.to_json()
        return self.location

    def read(self) -> Optional[Checkpoint]:
        if self._document is None:
            return None
        return Checkpoint.from_json(self._document)

    def delete(self) -> bool:
        existed = self._document is not None
        self._document = None
        return existed

    def exists(self) -> bool:
        return self._document is not None

"""Checkpoint persistence for waypoint runs."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

from ..config import WaypointConfig, load_config
from ..constants import CHECKPOINT_DIRNAME, CHECKPOINT_FILENAME
from .file import FileCheckpointStore
from .inmemory import InMemoryCheckpointStore
from .manager import CheckpointManager
from .models import Checkpoint, TaskCheckpoint
from .repository import CheckpointStore

MEMORY_LOCATION = "memory://"


def default_checkpoint_path() -> Path:
    """Per-user location of the checkpoint document."""

    state_home = os.getenv("XDG_STATE_HOME")
    base = Path(state_home) if state_home else Path.home() / ".local" / "state"
    return base / CHECKPOINT_DIRNAME / CHECKPOINT_FILENAME


def get_checkpoint_store(
    location: Optional[str] = None, config: Optional[WaypointConfig] = None
) -> CheckpointStore:
    """Factory function to obtain a checkpoint store.

    The backend is selected from ``location`` which can be provided
    explicitly, via environment variable ``WAYPOINT_CHECKPOINT_PATH``, or from
    loaded configuration. ``memory://`` selects the in-memory store; anything
    else is treated as a file path. Without any setting the per-user default
    path is used.
    """

    if location is None:
        config = config or load_config()
        location = (
            os.getenv("WAYPOINT_CHECKPOINT_PATH") or config.checkpoint.location
        )

    if not location:
        return FileCheckpointStore(default_checkpoint_path())
    if location == MEMORY_LOCATION:
        return InMemoryCheckpointStore()
    if location.startswith("file://"):
        location = location.replace("file://", "", 1)
    return FileCheckpointStore(location)


__all__ = [
    "Checkpoint",
    "TaskCheckpoint",
    "CheckpointStore",
    "CheckpointManager",
    "FileCheckpointStore",
    "InMemoryCheckpointStore",
    "default_checkpoint_path",
    "get_checkpoint_store",
    "MEMORY_LOCATION",
]

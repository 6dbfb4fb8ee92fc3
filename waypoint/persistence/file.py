"""JSON file implementation of the checkpoint store."""

from __future__ import annotations

import os
import tempfile
from pathlib import Path
from typing import Optional

from pydantic import ValidationError

from ..errors import CheckpointIOError
from .models import Checkpoint
from .repository import CheckpointStore


class FileCheckpointStore(CheckpointStore):
    """Persist the checkpoint as an indented JSON document.

    Writes go to a temporary file in the same directory which is flushed,
    fsync'ed and then moved over the target, so a crash never leaves a
    half-written checkpoint behind.
    """

    def __init__(self, path: str | Path):
        self.path = Path(path).expanduser()

    @property
    def location(self) -> str:
        return str(self.path)

    def write(self, checkpoint: Checkpoint) -> str:
        document = checkpoint.to_json()
        tmp_name: Optional[str] = None
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                prefix=f".{self.path.name}.", dir=self.path.parent
            )
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(document)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, self.path)
            tmp_name = None
        except OSError as exc:
            raise CheckpointIOError(
                f"Failed to write checkpoint to {self.path}: {exc}"
            ) from exc
        finally:
            if tmp_name is not None and os.path.exists(tmp_name):
                os.remove(tmp_name)
        return self.location

    def read(self) -> Optional[Checkpoint]:
        try:
            data = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise CheckpointIOError(
                f"Failed to read checkpoint from {self.path}: {exc}"
            ) from exc
        try:
            return Checkpoint.from_json(data)
        except (ValidationError, ValueError) as exc:
            raise CheckpointIOError(
                f"Checkpoint at {self.path} is not valid: {exc}"
            ) from exc

    def delete(self) -> bool:
        try:
            self.path.unlink()
        except FileNotFoundError:
            return False
        except OSError as exc:
            raise CheckpointIOError(
                f"Failed to delete checkpoint {self.path}: {exc}"
            ) from exc
        return True

    def exists(self) -> bool:
        return self.path.is_file()

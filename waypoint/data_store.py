"""In-memory key/value store shared between the tasks of one run."""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterator, List, Mapping, Optional

logger = logging.getLogger(__name__)


class SharedDataStore:
    """Values written by one task body and read by later ones.

    Lives for a single run and is included verbatim in checkpoints. Writes go
    through :class:`~waypoint.context.TaskExecutionContext`; only one body runs
    at a time, so no locking is needed.
    """

    def __init__(self, initial: Optional[Mapping[str, Any]] = None) -> None:
        self._data: Dict[str, Any] = dict(initial or {})

    def set(self, key: str, value: Any) -> None:
        if not key:
            logger.warning("Ignoring shared data write with an empty key")
            return
        self._data[key] = value
        logger.info(f"Workflow data set: {key} = {value!r}")

    def get(self, key: str, default: Any = None) -> Any:
        if not key:
            return default
        return self._data.get(key, default)

    def has(self, key: str) -> bool:
        return bool(key) and key in self._data

    def keys(self) -> List[str]:
        return list(self._data.keys())

    def snapshot(self) -> Dict[str, Any]:
        """Shallow copy of the current contents."""
        return dict(self._data)

    def replace(self, data: Mapping[str, Any]) -> None:
        """Swap in restored contents (used when resuming from a checkpoint)."""
        self._data = dict(data)

    def __contains__(self, key: object) -> bool:
        return key in self._data

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

"""In-memory storage backend implementation."""

import asyncio
import copy
from typing import Any, Callable, Dict, Iterable, Mapping, Optional

import structlog

from ..domain.errors import StorageError
from .base import StorageBackend

logger = structlog.get_logger()


class InMemoryBackend(StorageBackend):
    """Process-local backend for tests and ephemeral runs.

    ``fail_on_set`` lets callers simulate a full or broken medium: when it
    returns True for a pending write, the write raises ``StorageError``.
    """

    def __init__(
        self,
        initial: Optional[Mapping[str, Any]] = None,
        fail_on_set: Optional[Callable[[Mapping[str, Any]], bool]] = None,
    ) -> None:
        self._data: Dict[str, Any] = copy.deepcopy(dict(initial or {}))
        self._lock = asyncio.Lock()
        self.fail_on_set = fail_on_set
        self.set_calls = 0
        logger.info("memory_backend_initialized", keys=len(self._data))

    async def get(self, keys: Iterable[str]) -> Dict[str, Any]:
        async with self._lock:
            return {k: copy.deepcopy(self._data[k]) for k in keys if k in self._data}

    async def set(self, entries: Mapping[str, Any]) -> None:
        async with self._lock:
            self.set_calls += 1
            if self.fail_on_set is not None and self.fail_on_set(entries):
                logger.error("memory_backend_write_rejected", keys=sorted(entries))
                raise StorageError("Storage quota exceeded")
            for key, value in entries.items():
                self._data[key] = copy.deepcopy(value)

    async def remove(self, keys: Iterable[str]) -> None:
        async with self._lock:
            for key in keys:
                self._data.pop(key, None)

    def snapshot(self) -> Dict[str, Any]:
        """Copy of everything stored, for inspection."""
        return copy.deepcopy(self._data)

"""Base key-value persistence interface."""

from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, Mapping


class StorageBackend(ABC):
    """Abstract local key-value storage.

    Implementations may fail on ``set`` (quota, I/O); they signal this by
    raising :class:`~parley_chat.domain.errors.StorageError`.
    """

    @abstractmethod
    async def get(self, keys: Iterable[str]) -> Dict[str, Any]:
        """Return the stored values for the keys that exist."""
        pass

    @abstractmethod
    async def set(self, entries: Mapping[str, Any]) -> None:
        """Store every entry, replacing existing values."""
        pass

    @abstractmethod
    async def remove(self, keys: Iterable[str]) -> None:
        """Delete the given keys; missing keys are ignored."""
        pass

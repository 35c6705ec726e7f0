"""Bounded de-duplication cache for completion replies."""

import hashlib
import json
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Optional, Sequence

import structlog

logger = structlog.get_logger()

KEY_TURNS = 3
IMAGE_PREFIX_CHARS = 100


def make_cache_key(
    history: Sequence[Mapping[str, Any]],
    images: Sequence[Mapping[str, Any]] = (),
    scope: Optional[int] = None,
) -> str:
    """Hash of the last few (role, content) turns, image prefixes and the scope."""
    parts = {
        "scope": scope,
        "turns": [[str(m.get("role")), str(m.get("content"))] for m in history[-KEY_TURNS:]],
        "images": [str(img.get("data", ""))[:IMAGE_PREFIX_CHARS] for img in images],
    }
    payload = json.dumps(parts, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


@dataclass
class CacheEntry:
    reply: str
    scope: Optional[int]
    stored_at: float


class ResponseCache:
    """FIFO-bounded reply cache, optionally expiring entries after ``ttl`` seconds.

    Entries remember the conversation they were produced for so that
    deleting a conversation can purge exactly its replies.
    """

    def __init__(
        self,
        max_entries: int = 20,
        ttl: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_entries = max(1, max_entries)
        self.ttl = ttl
        self._clock = clock
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: str) -> Optional[str]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self.ttl is not None and self._clock() - entry.stored_at > self.ttl:
            del self._entries[key]
            return None
        return entry.reply

    def put(self, key: str, reply: str, scope: Optional[int] = None) -> None:
        if key in self._entries:
            del self._entries[key]
        while len(self._entries) >= self.max_entries:
            self._entries.popitem(last=False)
        self._entries[key] = CacheEntry(reply=reply, scope=scope, stored_at=self._clock())
        logger.debug("response_cached", size=len(self._entries))

    def purge(self, scope: Optional[int] = None) -> int:
        """Remove the entries of one conversation, or everything when ``scope`` is None."""
        if scope is None:
            removed = len(self._entries)
            self._entries.clear()
        else:
            stale = [k for k, e in self._entries.items() if e.scope == scope]
            for key in stale:
                del self._entries[key]
            removed = len(stale)
        logger.info("response_cache_purged", scope=scope, removed=removed)
        return removed

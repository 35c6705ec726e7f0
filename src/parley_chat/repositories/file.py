"""JSON-file storage backend implementation."""

import asyncio
import base64
import json
import os
from pathlib import Path
from typing import Any, Dict, Iterable, Mapping, Union

import structlog

from ..domain.errors import StorageError
from .base import StorageBackend

logger = structlog.get_logger()

_BYTES_TAG = "__bytes__"


def _encode(value: Any) -> Any:
    if isinstance(value, (bytes, bytearray)):
        return {_BYTES_TAG: base64.b64encode(bytes(value)).decode("ascii")}
    return value


def _decode(value: Any) -> Any:
    if isinstance(value, dict) and set(value) == {_BYTES_TAG}:
        return base64.b64decode(value[_BYTES_TAG])
    return value


class JsonFileBackend(StorageBackend):
    """Stores every key in one JSON document, replaced atomically on write."""

    def __init__(self, path: Union[str, Path]) -> None:
        self.path = Path(path)
        self._lock = asyncio.Lock()

    def _read(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.error("file_backend_read_failed", path=str(self.path), error=str(e))
            raise StorageError(f"Failed to read {self.path}: {e}") from e
        if not isinstance(data, dict):
            raise StorageError(f"Unexpected document in {self.path}")
        return data

    def _write(self, data: Dict[str, Any]) -> None:
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(data, f)
            os.replace(tmp_path, self.path)
        except (OSError, TypeError, ValueError) as e:
            logger.error("file_backend_write_failed", path=str(self.path), error=str(e))
            raise StorageError(f"Failed to write {self.path}: {e}") from e

    async def get(self, keys: Iterable[str]) -> Dict[str, Any]:
        async with self._lock:
            data = await asyncio.to_thread(self._read)
        return {k: _decode(data[k]) for k in keys if k in data}

    async def set(self, entries: Mapping[str, Any]) -> None:
        async with self._lock:
            data = await asyncio.to_thread(self._read)
            data.update({k: _encode(v) for k, v in entries.items()})
            await asyncio.to_thread(self._write, data)

    async def remove(self, keys: Iterable[str]) -> None:
        async with self._lock:
            data = await asyncio.to_thread(self._read)
            for key in keys:
                data.pop(key, None)
            await asyncio.to_thread(self._write, data)

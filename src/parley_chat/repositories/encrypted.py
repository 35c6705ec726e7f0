"""Encrypted persistence for conversations and the service credential.

Conversations are written as one AES-GCM blob (``nonce || ciphertext``)
next to an unencrypted index carrying only titles, activity timestamps and
a has-messages flag, so quick-access surfaces can list conversations without
the key. Routine saves are debounced; identity-sensitive ones are forced.
"""

import asyncio
import json
import os
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

import structlog
from pydantic import BaseModel

from ..domain.errors import DecryptionFailure, StorageError
from ..domain.models import DEFAULT_TITLE, parse_timestamp, utcnow
from ..domain.validation import is_valid_entry, parse_conversation_id
from .base import StorageBackend
from .crypto import NONCE_BYTES, AesGcmCipher, Cipher

logger = structlog.get_logger()

KEY_CONVERSATIONS = "encryptedConversations"
KEY_INDEX = "conversationIndex"
KEY_ENCRYPTION = "encryptionKey"
KEY_CREDENTIAL = "encryptedCredential"
KEY_LEGACY_CREDENTIAL = "encryptedOpenAIKey"
KEY_NEXT_ID = "nextId"
KEY_ACTIVE_ID = "activeId"

CONVERSATION_KEYS = (KEY_CONVERSATIONS, KEY_INDEX, KEY_NEXT_ID, KEY_ACTIVE_ID)

DEFAULT_SAVE_DELAY = 1.0
DEFAULT_CREDENTIAL_TTL = 5 * 60.0


@dataclass
class StoredState:
    """What :meth:`EncryptedStore.load` found; ``chats`` is still unvalidated."""

    chats: Dict[Any, Any]
    next_id: int = 1
    active_id: Optional[int] = None


class IndexEntry(BaseModel):
    """One row of the unencrypted conversation index."""

    id: int
    title: str
    last_activity_at: datetime
    has_messages: bool


def _as_bytes(value: Any) -> Optional[bytes]:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    if isinstance(value, list) and all(isinstance(b, int) and 0 <= b < 256 for b in value):
        return bytes(value)
    return None


def _serialize(value: Any) -> Any:
    to_dict = getattr(value, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    if isinstance(value, Mapping):
        return dict(value)
    return value


def build_index(chats: Mapping[Any, Any]) -> Dict[str, Dict[str, Any]]:
    """Index rows for the entries that pass the id and shape checks."""
    index: Dict[str, Dict[str, Any]] = {}
    for key, data in chats.items():
        conversation_id = parse_conversation_id(key)
        if conversation_id is None or not is_valid_entry(data):
            logger.warning("index_entry_skipped", key=str(key))
            continue
        index[str(conversation_id)] = {
            "title": data.get("title") or DEFAULT_TITLE,
            "lastActivityAt": data.get("last_activity_at") or utcnow().isoformat(),
            "hasMessages": len(data["messages"]) > 0,
        }
    return index


class EncryptedStore:
    """Encrypts, persists and restores conversation state."""

    def __init__(
        self,
        backend: StorageBackend,
        cipher: Optional[Cipher] = None,
        save_delay: float = DEFAULT_SAVE_DELAY,
        credential_ttl: float = DEFAULT_CREDENTIAL_TTL,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.backend = backend
        self.cipher = cipher or AesGcmCipher()
        self.save_delay = save_delay
        self.credential_ttl = credential_ttl
        self._clock = clock

        self._key: Optional[bytes] = None
        self._key_lock = asyncio.Lock()
        self._pending: Optional[asyncio.Task] = None
        self._credential: Optional[str] = None
        self._credential_cached_at = 0.0
        self.writes = 0

    # -- key management and encryption ------------------------------------

    async def get_or_create_key(self) -> bytes:
        """Per-installation key, generated and stored on first use."""
        if self._key is not None:
            return self._key
        async with self._key_lock:
            if self._key is None:
                stored = (await self.backend.get([KEY_ENCRYPTION])).get(KEY_ENCRYPTION)
                key = _as_bytes(stored)
                if key is None or len(key) != self.cipher.key_size:
                    if stored is not None:
                        logger.warning("encryption_key_unusable_regenerating")
                    key = self.cipher.generate_key()
                    await self.backend.set({KEY_ENCRYPTION: key})
                    logger.info("encryption_key_generated")
                self._key = key
        return self._key

    async def encrypt(self, value: Any) -> bytes:
        key = await self.get_or_create_key()
        plaintext = json.dumps(value, ensure_ascii=False).encode("utf-8")
        nonce = os.urandom(NONCE_BYTES)
        return nonce + self.cipher.encrypt(key, nonce, plaintext)

    async def decrypt(self, blob: Any) -> Any:
        """Decrypt a stored value; plain strings are read as legacy JSON."""
        if isinstance(blob, str):
            logger.warning("legacy_plaintext_value_read")
            try:
                return json.loads(blob)
            except json.JSONDecodeError as e:
                raise DecryptionFailure("Legacy value is not valid JSON") from e

        data = _as_bytes(blob)
        if data is None or len(data) <= NONCE_BYTES:
            raise DecryptionFailure("Stored value is not an encrypted blob")

        key = await self.get_or_create_key()
        plaintext = self.cipher.decrypt(key, data[:NONCE_BYTES], data[NONCE_BYTES:])
        try:
            return json.loads(plaintext.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise DecryptionFailure("Decrypted payload is not valid JSON") from e

    # -- conversations ------------------------------------------------------

    async def save(
        self,
        conversations: Mapping[Any, Any],
        next_id: int,
        active_id: Optional[int],
    ) -> bool:
        """Write the encrypted blob, the index and the id scalars.

        Failures are logged and the write abandoned; the next save retries.
        """
        try:
            chats = {str(cid): _serialize(value) for cid, value in conversations.items()}
            blob = await self.encrypt(chats)
            await self.backend.set(
                {
                    KEY_CONVERSATIONS: blob,
                    KEY_INDEX: build_index(chats),
                    KEY_NEXT_ID: next_id,
                    KEY_ACTIVE_ID: active_id,
                }
            )
        except StorageError as e:
            logger.error("conversation_save_failed", error=str(e))
            return False
        except (TypeError, ValueError) as e:
            logger.error("conversation_serialization_failed", error=str(e))
            return False

        self.writes += 1
        logger.info("conversations_saved", count=len(chats), next_id=next_id, active_id=active_id)
        return True

    def debounced_save(
        self,
        conversations: Mapping[Any, Any],
        next_id: int,
        active_id: Optional[int],
        delay: Optional[float] = None,
    ) -> asyncio.Task:
        """Schedule a save after ``delay`` seconds, superseding any pending one."""
        self.cancel_pending()
        wait = self.save_delay if delay is None else delay
        task = asyncio.get_running_loop().create_task(
            self._delayed_save(conversations, next_id, active_id, wait)
        )
        self._pending = task
        return task

    async def force_save(
        self,
        conversations: Mapping[Any, Any],
        next_id: int,
        active_id: Optional[int],
    ) -> bool:
        """Cancel any pending debounced save and write now."""
        self.cancel_pending()
        return await self.save(conversations, next_id, active_id)

    def cancel_pending(self) -> None:
        if self._pending is not None and not self._pending.done():
            self._pending.cancel()
        self._pending = None

    @property
    def has_pending_save(self) -> bool:
        return self._pending is not None and not self._pending.done()

    async def wait_pending(self) -> None:
        """Wait for the currently scheduled debounced save, if any."""
        task = self._pending
        if task is not None:
            try:
                await task
            except asyncio.CancelledError:
                # superseded by a newer save
                pass

    async def _delayed_save(
        self,
        conversations: Mapping[Any, Any],
        next_id: int,
        active_id: Optional[int],
        delay: float,
    ) -> None:
        await asyncio.sleep(delay)
        if self._pending is asyncio.current_task():
            self._pending = None
        await self.save(conversations, next_id, active_id)

    async def load(self) -> StoredState:
        """Read persisted state; unreadable blobs yield an empty state."""
        try:
            result = await self.backend.get([KEY_CONVERSATIONS, KEY_NEXT_ID, KEY_ACTIVE_ID])
        except StorageError as e:
            logger.error("conversation_load_failed", error=str(e))
            return StoredState(chats={})

        chats: Dict[Any, Any] = {}
        blob = result.get(KEY_CONVERSATIONS)
        if blob is not None:
            try:
                chats = self._normalize(await self.decrypt(blob))
            except DecryptionFailure as e:
                logger.warning("conversation_blob_unreadable_starting_fresh", error=str(e))
            except StorageError as e:
                logger.error("encryption_key_unavailable", error=str(e))

        next_id = result.get(KEY_NEXT_ID)
        if isinstance(next_id, bool) or not isinstance(next_id, int) or next_id <= 0:
            if next_id is not None:
                logger.warning("stored_next_id_invalid", value=repr(next_id))
            next_id = 1

        raw_active = result.get(KEY_ACTIVE_ID)
        active_id = parse_conversation_id(raw_active) if raw_active is not None else None

        logger.info("conversations_loaded", count=len(chats))
        return StoredState(chats=chats, next_id=next_id, active_id=active_id)

    @staticmethod
    def _normalize(decoded: Any) -> Dict[Any, Any]:
        """Canonical ordered mapping from a decoded blob (object or pair list)."""
        if isinstance(decoded, Mapping):
            return dict(decoded)
        if isinstance(decoded, list) and all(
            isinstance(pair, (list, tuple)) and len(pair) == 2 for pair in decoded
        ):
            return {key: value for key, value in decoded}
        logger.warning("conversation_blob_unexpected_shape", type=type(decoded).__name__)
        return {}

    async def reset_conversations(self) -> None:
        """Remove every conversation key; the credential and key are kept."""
        self.cancel_pending()
        logger.warning("conversation_data_reset")
        await self.backend.remove(CONVERSATION_KEYS)

    # -- index --------------------------------------------------------------

    async def prune_index(self, valid_ids: Iterable[int]) -> int:
        """Drop index rows that no longer match a surviving conversation."""
        keep_ids = set(valid_ids)
        try:
            index = (await self.backend.get([KEY_INDEX])).get(KEY_INDEX)
            if not isinstance(index, Mapping):
                return 0
            kept = {
                key: entry
                for key, entry in index.items()
                if parse_conversation_id(key) in keep_ids and isinstance(entry, Mapping)
            }
            removed = len(index) - len(kept)
            if removed:
                await self.backend.set({KEY_INDEX: kept})
                logger.info("index_pruned", removed=removed)
            return removed
        except StorageError as e:
            logger.error("index_prune_failed", error=str(e))
            return 0

    async def recent_conversations(self, limit: int = 5) -> List[IndexEntry]:
        """Most recently active conversations that have messages, from the index only."""
        index = (await self.backend.get([KEY_INDEX])).get(KEY_INDEX)
        if not isinstance(index, Mapping):
            return []

        entries: List[IndexEntry] = []
        for key, row in index.items():
            conversation_id = parse_conversation_id(key)
            if conversation_id is None or not isinstance(row, Mapping):
                continue
            if not row.get("hasMessages"):
                continue
            entries.append(
                IndexEntry(
                    id=conversation_id,
                    title=row.get("title") or DEFAULT_TITLE,
                    last_activity_at=parse_timestamp(row.get("lastActivityAt")),
                    has_messages=True,
                )
            )
        entries.sort(key=lambda e: e.last_activity_at, reverse=True)
        return entries[:limit]

    # -- credential ---------------------------------------------------------

    async def save_credential(self, secret: str) -> None:
        """Encrypt and store the API key. Raises ``StorageError`` on failure."""
        self.invalidate_cache()
        blob = await self.encrypt(secret)
        await self.backend.set({KEY_CREDENTIAL: blob})
        logger.info("credential_saved")

    async def get_credential(self) -> Optional[str]:
        """Decrypted API key, served from memory while the cache is fresh."""
        now = self._clock()
        if self._credential is not None and now - self._credential_cached_at < self.credential_ttl:
            return self._credential

        result = await self.backend.get([KEY_CREDENTIAL, KEY_LEGACY_CREDENTIAL])
        blob = result.get(KEY_CREDENTIAL)
        if blob is None:
            blob = result.get(KEY_LEGACY_CREDENTIAL)
        if blob is None:
            return None

        try:
            secret = await self.decrypt(blob)
        except DecryptionFailure:
            self.invalidate_cache()
            logger.error("credential_decryption_failed")
            raise

        if not isinstance(secret, str) or not secret:
            return None
        self._credential = secret
        self._credential_cached_at = now
        return secret

    def invalidate_cache(self) -> None:
        self._credential = None
        self._credential_cached_at = 0.0

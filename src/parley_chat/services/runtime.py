"""Wires the chat core together from :class:`Settings`."""

from typing import Any, Dict, Optional

import httpx
import structlog

from ..config import Settings, load_settings
from ..domain.events import EventBus, EventType
from ..repositories.base import StorageBackend
from ..repositories.crypto import Cipher
from ..repositories.encrypted import EncryptedStore
from ..repositories.file import JsonFileBackend
from ..repositories.memory import InMemoryBackend
from .completion import CompletionClient, DirectCompletionClient, ThreadCompletionClient
from .directory import Confirm, ConversationDirectory
from .messaging import MessageDispatcher
from .response_cache import ResponseCache

logger = structlog.get_logger()


def build_client(
    settings: Settings,
    store: EncryptedStore,
    http_client: Optional[httpx.AsyncClient] = None,
) -> CompletionClient:
    options: Dict[str, Any] = {
        "http_client": http_client,
        "cache": ResponseCache(max_entries=settings.cache_size),
        "min_request_interval": settings.min_request_interval,
        "request_timeout": settings.request_timeout,
        "test_timeout": settings.test_timeout,
    }
    if settings.api_base_url:
        options["base_url"] = settings.api_base_url

    if settings.client_variant == "thread":
        if not settings.assistant_id:
            logger.warning("assistant_id_not_configured")
        return ThreadCompletionClient(
            store,
            assistant_id=settings.assistant_id or "",
            max_poll_attempts=settings.poll_max_attempts,
            **options,
        )
    return DirectCompletionClient(
        store,
        model=settings.model,
        history_limit=settings.history_limit,
        **options,
    )


class ChatRuntime:
    """Owns one instance of every core component for the process."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        backend: Optional[StorageBackend] = None,
        cipher: Optional[Cipher] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        confirm: Optional[Confirm] = None,
    ) -> None:
        self.settings = settings or load_settings()
        if backend is None:
            if self.settings.data_path:
                backend = JsonFileBackend(self.settings.data_path)
            else:
                backend = InMemoryBackend()

        self.bus = EventBus()
        self.store = EncryptedStore(
            backend,
            cipher,
            save_delay=self.settings.save_delay,
            credential_ttl=self.settings.credential_ttl,
        )
        self.client = build_client(self.settings, self.store, http_client)
        self.directory = ConversationDirectory(self.bus, self.store, confirm)
        self.dispatcher = MessageDispatcher(self.directory, self.client, self.bus, self.store)
        self.bus.subscribe(EventType.CACHE_CLEAR, self._on_cache_clear)
        self.started = False

    async def start(self) -> None:
        """Load persisted state into the directory; repeated calls are no-ops."""
        if self.started:
            return
        state = await self.store.load()
        await self.directory.initialize_from_store(state)
        self.started = True
        self.bus.publish(EventType.APP_READY, {"conversations": len(self.directory)})
        logger.info("chat_runtime_started", conversations=len(self.directory))

    async def shutdown(self) -> None:
        if self.started:
            await self.directory.force_save()
        self.directory.close()
        await self.client.close()
        self.started = False
        logger.info("chat_runtime_stopped")

    async def save_credential(self, api_key: str) -> bool:
        """Store ``api_key`` only if the completion service accepts it."""
        if not await self.client.test_connection(api_key):
            return False
        await self.store.save_credential(api_key)
        return True

    def _on_cache_clear(self, payload: Any) -> None:
        scope = payload.get("conversation_id") if isinstance(payload, dict) else None
        self.client.purge_cache(scope)

"""In-memory directory of conversations with id allocation and the active pointer.

Routine mutations (messages, activation) are persisted through the store's
debounced save; deletions and renames force an immediate write so external
consumers of the index see them without delay.
"""

import inspect
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union
from urllib.parse import urlsplit

import structlog

from ..domain.events import ConversationChange, EventBus, EventType
from ..domain.models import DEFAULT_TITLE, Conversation
from ..domain.validation import next_id_floor, parse_conversation_id, validate_entries
from ..repositories.encrypted import EncryptedStore, StoredState

logger = structlog.get_logger()

UNKNOWN_SOURCE = "Unknown Source"

Confirm = Callable[[Conversation], Union[bool, Awaitable[bool]]]


def domain_from_url(url: str) -> str:
    """Hostname of ``url`` without a leading ``www.``."""
    try:
        host = urlsplit(url).hostname
    except ValueError:
        host = None
    if not host:
        return UNKNOWN_SOURCE
    if host.startswith("www."):
        host = host[len("www."):]
    return host or UNKNOWN_SOURCE


class ConversationDirectory:
    """Owns every conversation plus the next-id counter and the active id."""

    def __init__(
        self,
        bus: EventBus,
        store: EncryptedStore,
        confirm: Optional[Confirm] = None,
    ) -> None:
        self.bus = bus
        self.store = store
        self.confirm = confirm
        self._conversations: Dict[int, Conversation] = {}
        self.next_id = 1
        self.active_id: Optional[int] = None
        self._unsubscribe = bus.subscribe(EventType.CHAT_UPDATED, self._on_conversation_changed)

    def __len__(self) -> int:
        return len(self._conversations)

    def __contains__(self, conversation_id: object) -> bool:
        return conversation_id in self._conversations

    # -- loading ------------------------------------------------------------

    async def initialize_from_store(self, state: StoredState) -> int:
        """Rebuild the directory from persisted state.

        Returns the number of dropped entries. When anything was dropped the
        repaired state is written back immediately.
        """
        valid, dropped = validate_entries(state.chats)
        self._conversations = {
            conversation_id: Conversation.from_dict(conversation_id, data, bus=self.bus)
            for conversation_id, data in valid.items()
        }

        floor = next_id_floor(self._conversations)
        stored_next = parse_conversation_id(state.next_id)
        self.next_id = max(stored_next, floor) if stored_next is not None else floor
        if stored_next != self.next_id:
            logger.warning("next_id_clamped", stored=state.next_id, next_id=self.next_id)

        self.active_id = state.active_id if state.active_id in self._conversations else None
        if state.active_id is not None and self.active_id is None:
            logger.warning("active_id_cleared", stored=state.active_id)

        if dropped:
            logger.warning("conversation_directory_repaired", dropped=dropped, kept=len(self._conversations))
            await self.force_save()
        await self.store.prune_index(self._conversations)

        self.bus.publish(
            EventType.CHAT_LOADED,
            {"type": "initialized", "count": len(self._conversations), "active_id": self.active_id},
        )
        logger.info("conversation_directory_initialized", count=len(self._conversations), next_id=self.next_id)
        return dropped

    # -- queries ------------------------------------------------------------

    def get(self, conversation_id: int) -> Optional[Conversation]:
        return self._conversations.get(conversation_id)

    @property
    def active(self) -> Optional[Conversation]:
        if self.active_id is None:
            return None
        return self._conversations.get(self.active_id)

    def all(self) -> Dict[int, Conversation]:
        return dict(self._conversations)

    def sorted_by_activity(self) -> List[Conversation]:
        """Most recently touched first."""
        return sorted(self._conversations.values(), key=lambda c: c.last_activity_at, reverse=True)

    def find_empty(self) -> Optional[int]:
        return next((cid for cid, c in self._conversations.items() if c.is_empty), None)

    def search(self, query: Optional[str] = "") -> List[Conversation]:
        """Case-insensitive search over titles and message content.

        Untouched drafts (default title, no messages) never match a non-empty
        query.
        """
        term = (query or "").strip()
        if not term:
            results = list(self._conversations.values())
        else:
            results = [
                c
                for c in self._conversations.values()
                if not (c.title == DEFAULT_TITLE and c.is_empty) and c.matches(term)
            ]
        self.bus.publish(
            EventType.CHAT_SEARCH,
            {"query": term.lower(), "results": results, "total": len(results)},
        )
        self.bus.publish(EventType.UI_HISTORY, {"conversations": results})
        return results

    # -- mutations ------------------------------------------------------------

    async def create_new(
        self,
        force_new: bool = False,
        title: Optional[str] = None,
        source_url: Optional[str] = None,
    ) -> Conversation:
        """Activate the existing empty draft, or allocate a new conversation."""
        if not force_new:
            empty_id = self.find_empty()
            if empty_id is not None:
                logger.info("empty_conversation_reused", conversation_id=empty_id)
                return await self.activate(empty_id)

        conversation = Conversation(
            id=self.next_id,
            title=title or DEFAULT_TITLE,
            source_url=source_url,
            bus=self.bus,
        )
        self.next_id += 1
        self._conversations[conversation.id] = conversation
        self.bus.publish(
            EventType.CHAT_CREATED,
            {"conversation": conversation, "total": len(self._conversations)},
        )
        logger.info("conversation_created", conversation_id=conversation.id)
        return await self.activate(conversation.id)

    async def create_new_with_seed_text(self, text: str, source_url: Optional[str] = None) -> Conversation:
        """Open a conversation to receive ``text``; titled by the source domain when known."""
        empty_id = self.find_empty()
        if empty_id is not None:
            conversation = self._conversations[empty_id]
            if source_url:
                conversation.title = domain_from_url(source_url)
                conversation.source_url = source_url
        else:
            conversation = await self.create_new(
                force_new=True,
                title=domain_from_url(source_url) if source_url else None,
                source_url=source_url,
            )

        self.bus.publish(EventType.UI_PREFILL, {"text": text, "source": source_url})
        return await self.activate(conversation.id)

    async def activate(self, conversation_id: int) -> Optional[Conversation]:
        conversation = self._conversations.get(conversation_id)
        if conversation is None:
            logger.warning("conversation_not_found", conversation_id=conversation_id)
            return None

        self.active_id = conversation_id
        self.bus.publish(
            EventType.CHAT_LOADED,
            {"type": "selected", "conversation": conversation, "conversation_id": conversation_id},
        )
        self.bus.publish(EventType.UI_RENDER, conversation)
        self.bus.publish(EventType.UI_HISTORY, {"conversations": None})
        self.bus.publish(EventType.UI_HEADER, conversation)
        self.schedule_save()
        return conversation

    async def continue_with_context(
        self, conversation_id: int, text: str, source_url: Optional[str] = None
    ) -> Optional[Conversation]:
        conversation = self._conversations.get(conversation_id)
        if conversation is None:
            return None
        if source_url:
            conversation.last_source_url = source_url
        await self.activate(conversation_id)
        self.bus.publish(EventType.UI_PREFILL, {"text": text, "source": source_url})
        return conversation

    async def delete(self, conversation_id: int, confirm: Optional[Confirm] = None) -> bool:
        """Remove a conversation after confirmation and rebalance the active pointer."""
        conversation = self._conversations.get(conversation_id)
        if conversation is None:
            return False
        if not await self._confirmed(conversation, confirm):
            logger.info("conversation_delete_declined", conversation_id=conversation_id)
            return False

        del self._conversations[conversation_id]
        conversation.attach(None)

        if self.active_id == conversation_id:
            remaining = self.sorted_by_activity()
            if remaining:
                await self.activate(remaining[0].id)
            else:
                self.active_id = None
                await self.create_new()

        self.bus.publish(
            EventType.CHAT_DELETED,
            {
                "conversation_id": conversation_id,
                "title": conversation.title,
                "remaining": len(self._conversations),
            },
        )
        self.bus.publish(EventType.UI_HISTORY, {"conversations": None})
        # a cached reply must not outlive its conversation
        self.bus.publish(
            EventType.CACHE_CLEAR,
            {"reason": "conversation_deleted", "conversation_id": conversation_id},
        )
        await self.force_save()
        logger.info("conversation_deleted", conversation_id=conversation_id)
        return True

    async def rename(self, conversation_id: int, new_title: Optional[str]) -> bool:
        conversation = self._conversations.get(conversation_id)
        if conversation is None or not isinstance(new_title, str):
            return False
        title = new_title.strip()
        if not title or title == conversation.title:
            return False

        old_title = conversation.title
        conversation.title = title
        self.bus.publish(
            EventType.CHAT_RENAMED,
            {
                "conversation_id": conversation_id,
                "old_title": old_title,
                "new_title": conversation.title,
            },
        )
        self.bus.publish(EventType.UI_HISTORY, {"conversations": None})
        await self.force_save()
        return True

    async def retitle_from_context(self, conversation_id: int) -> bool:
        """Re-derive the title from the first message."""
        conversation = self._conversations.get(conversation_id)
        if conversation is None:
            return False
        old_title = conversation.title
        if not conversation.retitle():
            return False
        if conversation.title != old_title:
            self.bus.publish(
                EventType.CHAT_RENAMED,
                {
                    "conversation_id": conversation_id,
                    "old_title": old_title,
                    "new_title": conversation.title,
                },
            )
            await self.force_save()
        return True

    # -- persistence ----------------------------------------------------------

    def schedule_save(self) -> None:
        try:
            self.store.debounced_save(self._conversations.copy(), self.next_id, self.active_id)
        except RuntimeError:
            logger.warning("save_not_scheduled_without_event_loop")

    async def force_save(self) -> bool:
        saved = await self.store.force_save(self._conversations.copy(), self.next_id, self.active_id)
        if saved:
            self.bus.publish(EventType.STORAGE_SAVED, {"count": len(self._conversations)})
        else:
            self.bus.publish(EventType.STORAGE_ERROR, {"operation": "force_save"})
        return saved

    def _on_conversation_changed(self, change: Any) -> None:
        if isinstance(change, ConversationChange) and change.conversation_id in self._conversations:
            self.schedule_save()

    async def _confirmed(self, conversation: Conversation, override: Optional[Confirm]) -> bool:
        check = override or self.confirm
        if check is None:
            return True
        result = check(conversation)
        if inspect.isawaitable(result):
            result = await result
        return bool(result)

    def close(self) -> None:
        self._unsubscribe()

    # -- diagnostics ----------------------------------------------------------

    def validate_integrity(self) -> List[str]:
        """Human-readable list of invariant violations; empty when consistent."""
        issues: List[str] = []
        for key, conversation in self._conversations.items():
            if parse_conversation_id(key) is None:
                issues.append(f"invalid conversation id {key!r}")
            elif conversation.id != key:
                issues.append(f"conversation {conversation.id} registered under id {key}")
        if self.active_id is not None and self.active_id not in self._conversations:
            issues.append(f"active id {self.active_id} does not reference a conversation")
        floor = next_id_floor(self._conversations)
        if self.next_id < floor:
            issues.append(f"next id {self.next_id} is not above the highest id ({floor - 1})")
        return issues

    def diagnostics(self) -> Dict[str, Any]:
        return {
            "conversation_count": len(self._conversations),
            "next_id": self.next_id,
            "active_id": self.active_id,
            "empty_id": self.find_empty(),
            "total_messages": sum(c.message_count for c in self._conversations.values()),
            "pending_save": self.store.has_pending_save,
            "integrity_issues": self.validate_integrity(),
        }

"""Domain models for the chat application."""

import re
import secrets
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Union

import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import InvalidMessage
from .events import ConversationChange, EventBus, EventType

logger = structlog.get_logger()

DEFAULT_TITLE = "New Chat"
IMAGE_TITLE = "Image message"
IMAGE_PLACEHOLDER = "[Image]"
IMAGE_DATA_PREFIX = "data:image/"

MAX_CONTENT_CHARS = 50_000
TRUNCATION_MARKER = "... [truncated]"
MAX_TITLE_CHARS = 100
AUTO_TITLE_CHARS = 30

# "<quoted excerpt>" optionally followed by a blank line and free text
_QUOTED_EXCERPT = re.compile(r'^"(.+?)"(?:\n\n(.*))?$', re.DOTALL)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> datetime:
    """Best-effort parse of a stored timestamp; unreadable values become now."""
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return utcnow()
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return utcnow()


def new_message_id() -> str:
    """Time-based id with a random suffix, e.g. ``msg_1718000000000_3f9a1c2b7``."""
    return f"msg_{int(time.time() * 1000)}_{secrets.token_hex(5)[:9]}"


def derive_title(content: str) -> str:
    """Title rule shared by every automatic (re)titling path.

    A quoted excerpt followed by a blank line and free text is titled by the
    free text; a bare quoted excerpt by the quoted text; anything else by the
    raw content. The result is capped at 30 characters plus an ellipsis.
    """
    text = content
    match = _QUOTED_EXCERPT.match(content)
    if match:
        free_text = (match.group(2) or "").strip()
        text = free_text or match.group(1)
    text = text.strip()
    if len(text) > AUTO_TITLE_CHARS:
        return text[:AUTO_TITLE_CHARS] + "..."
    return text


def sanitize_title(title: Any) -> str:
    if not isinstance(title, str):
        return DEFAULT_TITLE
    return title.strip()[:MAX_TITLE_CHARS] or DEFAULT_TITLE


def sanitize_content(content: Any) -> str:
    if content is None:
        return ""
    text = content if isinstance(content, str) else str(content)
    text = text.strip()
    if len(text) > MAX_CONTENT_CHARS:
        logger.warning("message_content_truncated", length=len(text))
        text = text[:MAX_CONTENT_CHARS] + TRUNCATION_MARKER
    return text


class MessageRole(str, Enum):
    """Author of a conversation turn."""

    USER = "user"
    ASSISTANT = "assistant"


class Attachment(BaseModel):
    """Inline image attached to a message."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    data: str
    mime_type: str = Field(default="", alias="mimeType")
    file_name: str = Field(alias="fileName")

    @classmethod
    def validated(cls, raw: Any) -> Optional["Attachment"]:
        """Return a valid attachment built from ``raw`` or None if it must be dropped."""
        if isinstance(raw, Attachment):
            candidate: Mapping[str, Any] = raw.model_dump(by_alias=True)
        elif isinstance(raw, Mapping):
            candidate = raw
        else:
            return None

        data = candidate.get("data")
        file_name = candidate.get("fileName", candidate.get("file_name"))
        if not isinstance(data, str) or not data.startswith(IMAGE_DATA_PREFIX):
            logger.warning("attachment_dropped", reason="invalid_data")
            return None
        if not isinstance(file_name, str) or not file_name:
            logger.warning("attachment_dropped", reason="missing_file_name")
            return None

        mime_type = candidate.get("mimeType", candidate.get("mime_type")) or ""
        if not mime_type:
            mime_type = data[len("data:"):].split(";", 1)[0].split(",", 1)[0]
        return cls(data=data, mime_type=mime_type, file_name=file_name)


def filter_attachments(raw: Optional[Iterable[Any]]) -> Tuple[Attachment, ...]:
    if not raw:
        return ()
    kept = (Attachment.validated(item) for item in raw)
    return tuple(a for a in kept if a is not None)


class Message(BaseModel):
    """Immutable conversation turn.

    Build instances through :meth:`create` (or :meth:`from_dict` for stored
    data) so content is trimmed and capped and invalid attachments filtered.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_message_id)
    role: MessageRole
    content: str
    attachments: Tuple[Attachment, ...] = ()
    created_at: datetime = Field(default_factory=utcnow)
    is_loading: bool = False
    is_error: bool = False

    @classmethod
    def create(
        cls,
        content: Any,
        role: Union[MessageRole, str] = MessageRole.USER,
        attachments: Optional[Iterable[Any]] = None,
        *,
        id: Optional[str] = None,
        created_at: Any = None,
        is_loading: bool = False,
        is_error: bool = False,
    ) -> "Message":
        try:
            role = MessageRole(role)
        except ValueError:
            raise InvalidMessage(f'Message role must be "user" or "assistant", got {role!r}')

        text = sanitize_content(content)
        images = filter_attachments(attachments)
        if not text and not images:
            raise InvalidMessage("Message must have content or a valid attachment")

        fields: Dict[str, Any] = {
            "role": role,
            "content": text or IMAGE_PLACEHOLDER,
            "attachments": images,
            "is_loading": bool(is_loading),
            "is_error": bool(is_error),
        }
        if id:
            fields["id"] = str(id)
        if created_at is not None:
            fields["created_at"] = parse_timestamp(created_at)
        try:
            return cls(**fields)
        except ValidationError as e:
            raise InvalidMessage(str(e)) from e

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Message":
        """Rebuild a stored message; accepts the older camelCase layout as well."""
        return cls.create(
            data.get("content"),
            data.get("role", data.get("type")),
            data.get("attachments", data.get("images")),
            id=data.get("id"),
            created_at=data.get("created_at", data.get("timestamp")),
            is_loading=data.get("is_loading", data.get("isLoading", False)),
            is_error=data.get("is_error", data.get("isError", False)),
        )

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)

    def update(self, **changes: Any) -> "Message":
        """Return a new message with ``changes`` merged over this one."""
        merged: Dict[str, Any] = {
            "content": self.content,
            "role": self.role,
            "attachments": self.attachments,
            "id": self.id,
            "created_at": self.created_at,
            "is_loading": self.is_loading,
            "is_error": self.is_error,
        }
        merged.update(changes)
        content = merged.pop("content")
        role = merged.pop("role")
        attachments = merged.pop("attachments")
        return Message.create(content, role, attachments, **merged)

    @property
    def has_attachments(self) -> bool:
        return bool(self.attachments)

    def preview(self, max_length: int = 50) -> str:
        if len(self.content) > max_length:
            return self.content[:max_length] + "..."
        return self.content


class Conversation:
    """Mutable aggregate owning an ordered sequence of messages.

    Messages are only added, replaced or removed through the methods below;
    every mutation refreshes ``last_activity_at`` and publishes a
    :class:`ConversationChange` on ``chat:updated`` when a bus is attached.
    """

    def __init__(
        self,
        id: int,
        title: str = DEFAULT_TITLE,
        messages: Optional[Iterable[Message]] = None,
        last_activity_at: Optional[datetime] = None,
        source_url: Optional[str] = None,
        last_source_url: Optional[str] = None,
        bus: Optional[EventBus] = None,
    ) -> None:
        self._id = id
        self._title = sanitize_title(title)
        self._messages: List[Message] = list(messages or [])
        self._last_activity_at = last_activity_at or utcnow()
        # attribution only, never sent to the completion service
        self.source_url = source_url
        self.last_source_url = last_source_url
        self._bus = bus

    @property
    def id(self) -> int:
        return self._id

    @property
    def title(self) -> str:
        return self._title

    @title.setter
    def title(self, value: str) -> None:
        title = sanitize_title(value)
        if title != self._title:
            self._title = title
            self._touch()
            self._emit("titleUpdated", {"title": title})

    @property
    def messages(self) -> Tuple[Message, ...]:
        return tuple(self._messages)

    @property
    def last_activity_at(self) -> datetime:
        return self._last_activity_at

    @property
    def is_empty(self) -> bool:
        return not self._messages

    @property
    def message_count(self) -> int:
        return len(self._messages)

    def attach(self, bus: Optional[EventBus]) -> None:
        self._bus = bus

    def get_message(self, message_id: str) -> Optional[Message]:
        return next((m for m in self._messages if m.id == message_id), None)

    def last_message(self) -> Optional[Message]:
        return self._messages[-1] if self._messages else None

    def add_message(
        self,
        content: Union[Message, str],
        role: Union[MessageRole, str] = MessageRole.USER,
        attachments: Optional[Iterable[Any]] = None,
        *,
        is_loading: bool = False,
        is_error: bool = False,
    ) -> Message:
        """Append a message; the first one titles a still-default conversation.

        Raises :class:`InvalidMessage` when ``content`` cannot form a message.
        """
        if isinstance(content, Message):
            message = content
        else:
            message = Message.create(
                content, role, attachments, is_loading=is_loading, is_error=is_error
            )

        self._messages.append(message)
        self._touch()
        if len(self._messages) == 1 and self._title == DEFAULT_TITLE:
            self._title_from(message)

        self._emit("messageAdded", {"message": message, "total_messages": len(self._messages)})
        return message

    def update_message(self, message_id: str, **changes: Any) -> bool:
        """Replace a message with a copy carrying ``changes``; False if unknown."""
        for index, old in enumerate(self._messages):
            if old.id == message_id:
                new = old.update(**changes)
                self._messages[index] = new
                self._touch()
                self._emit("messageUpdated", {"old_message": old, "new_message": new})
                return True
        return False

    def remove_message(self, message_id: str) -> bool:
        for index, message in enumerate(self._messages):
            if message.id == message_id:
                del self._messages[index]
                self._touch()
                self._emit(
                    "messageRemoved",
                    {"message": message, "total_messages": len(self._messages)},
                )
                return True
        return False

    def retitle(self) -> bool:
        """Re-derive the title from the first message; False when there is none."""
        first = self._messages[0] if self._messages else None
        if first is None:
            return False
        self._title_from(first)
        return True

    def matches(self, query: str) -> bool:
        """Case-insensitive match against the title or any message content."""
        term = query.lower()
        if term in self._title.lower():
            return True
        return any(term in m.content.lower() for m in self._messages)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self._id,
            "title": self._title,
            "messages": [m.to_dict() for m in self._messages],
            "last_activity_at": self._last_activity_at.isoformat(),
            "source_url": self.source_url,
            "last_source_url": self.last_source_url,
        }

    @classmethod
    def from_dict(
        cls, id: int, data: Mapping[str, Any], bus: Optional[EventBus] = None
    ) -> "Conversation":
        messages: List[Message] = []
        for raw in data.get("messages") or []:
            if not isinstance(raw, Mapping):
                logger.warning("stored_message_dropped", conversation_id=id, reason="not_a_mapping")
                continue
            try:
                messages.append(Message.from_dict(raw))
            except InvalidMessage as e:
                logger.warning("stored_message_dropped", conversation_id=id, reason=str(e))

        return cls(
            id=id,
            title=data.get("title", DEFAULT_TITLE),
            messages=messages,
            last_activity_at=parse_timestamp(
                data.get("last_activity_at", data.get("lastActivity"))
            ),
            source_url=data.get("source_url", data.get("sourceUrl")),
            last_source_url=data.get("last_source_url", data.get("lastSourceUrl")),
            bus=bus,
        )

    def _title_from(self, message: Message) -> None:
        if message.content == IMAGE_PLACEHOLDER and message.has_attachments:
            title = IMAGE_TITLE
        else:
            title = derive_title(message.content)
        self._title = sanitize_title(title)
        self._emit("titleGenerated", {"title": self._title})

    def _touch(self) -> None:
        self._last_activity_at = utcnow()

    def _emit(self, change_type: str, data: Dict[str, Any]) -> None:
        if self._bus is not None:
            self._bus.publish(
                EventType.CHAT_UPDATED,
                ConversationChange(conversation_id=self._id, change_type=change_type, data=data),
            )

    def __repr__(self) -> str:
        return f"Conversation(id={self._id}, title={self._title!r}, messages={len(self._messages)})"

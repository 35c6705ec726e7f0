"""Publish/subscribe hub decoupling state mutation from presentation.

Handlers for a topic run in registration order. A handler that raises is
logged and recorded, and the remaining handlers of the same dispatch still
run. No ordering is guaranteed between different topics.
"""

import asyncio
import inspect
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional

import structlog

logger = structlog.get_logger()

Handler = Callable[[Any], Any]
Unsubscribe = Callable[[], None]


class EventType(str, Enum):
    """Topics published by the chat core."""

    CHAT_CREATED = "chat:created"
    CHAT_LOADED = "chat:loaded"
    CHAT_DELETED = "chat:deleted"
    CHAT_RENAMED = "chat:renamed"
    CHAT_SEARCH = "chat:search"
    CHAT_UPDATED = "chat:updated"

    MESSAGE_SENT = "message:sent"
    MESSAGE_RECEIVED = "message:received"
    MESSAGE_ERROR = "message:error"
    MESSAGE_LOADING = "message:loading"

    UI_RENDER = "ui:render"
    UI_HISTORY = "ui:history"
    UI_HEADER = "ui:header"
    UI_PREFILL = "ui:prefill"

    STORAGE_SAVED = "storage:saved"
    STORAGE_ERROR = "storage:error"

    CACHE_CLEAR = "cache:clear"

    APP_READY = "app:ready"
    APP_ERROR = "app:error"


@dataclass(frozen=True)
class ConversationChange:
    """Payload of ``chat:updated``: one mutation of one conversation."""

    conversation_id: int
    change_type: str
    data: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class HandlerFailure:
    topic: str
    handler: str
    error: str


def _topic_name(topic: Any) -> str:
    return topic.value if isinstance(topic, Enum) else str(topic)


def _handler_name(handler: Handler) -> str:
    return getattr(handler, "__qualname__", None) or repr(handler)


class EventBus:
    """Typed publish/subscribe hub with synchronous and awaited dispatch."""

    def __init__(self, max_failures: int = 50) -> None:
        # dict keys double as an insertion-ordered set
        self._handlers: Dict[str, Dict[Handler, None]] = {}
        self._failures: Deque[HandlerFailure] = deque(maxlen=max_failures)

    def subscribe(self, topic: Any, handler: Handler, once: bool = False) -> Unsubscribe:
        """Register ``handler`` for ``topic`` and return a function that removes it."""
        if not callable(handler):
            raise TypeError("EventBus.subscribe requires a callable handler")
        name = _topic_name(topic)

        registered: Handler = handler
        if once:
            def registered(payload: Any) -> Any:
                self.unsubscribe(name, registered)
                return handler(payload)

            registered.__qualname__ = _handler_name(handler)

        self._handlers.setdefault(name, {})[registered] = None
        logger.debug("event_subscribed", topic=name, handlers=len(self._handlers[name]))
        return lambda: self.unsubscribe(name, registered)

    def once(self, topic: Any, handler: Handler) -> Unsubscribe:
        return self.subscribe(topic, handler, once=True)

    def unsubscribe(self, topic: Any, handler: Handler) -> None:
        """Remove ``handler``; unknown topics or handlers are ignored."""
        name = _topic_name(topic)
        handlers = self._handlers.get(name)
        if handlers is None:
            return
        handlers.pop(handler, None)
        if not handlers:
            del self._handlers[name]

    def publish(self, topic: Any, payload: Any = None) -> int:
        """Dispatch synchronously; return how many handlers completed without raising."""
        name = _topic_name(topic)
        handlers = list(self._handlers.get(name, ()))
        if not handlers:
            logger.debug("event_without_handlers", topic=name)
            return 0

        delivered = 0
        for handler in handlers:
            try:
                handler(payload)
                delivered += 1
            except Exception as e:
                self._record_failure(name, handler, e)
        return delivered

    async def publish_async(self, topic: Any, payload: Any = None) -> int:
        """Run every handler (awaiting coroutine results) and report successes."""
        name = _topic_name(topic)
        handlers = list(self._handlers.get(name, ()))
        if not handlers:
            return 0

        async def run(handler: Handler) -> bool:
            try:
                result = handler(payload)
                if inspect.isawaitable(result):
                    await result
                return True
            except Exception as e:
                self._record_failure(name, handler, e)
                return False

        results = await asyncio.gather(*(run(h) for h in handlers), return_exceptions=True)
        return sum(1 for r in results if r is True)

    def clear(self, topic: Optional[Any] = None) -> None:
        """Drop the handlers of one topic, or of every topic when none is given."""
        if topic is None:
            self._handlers.clear()
        else:
            self._handlers.pop(_topic_name(topic), None)

    def handler_count(self, topic: Any) -> int:
        return len(self._handlers.get(_topic_name(topic), ()))

    def topics(self) -> List[str]:
        return list(self._handlers)

    @property
    def failures(self) -> List[HandlerFailure]:
        return list(self._failures)

    def diagnostics(self) -> Dict[str, Any]:
        events = {name: len(handlers) for name, handlers in self._handlers.items()}
        return {
            "total_topics": len(events),
            "total_handlers": sum(events.values()),
            "topics": events,
            "recent_failures": len(self._failures),
        }

    def _record_failure(self, topic: str, handler: Handler, error: Exception) -> None:
        failure = HandlerFailure(topic=topic, handler=_handler_name(handler), error=str(error))
        self._failures.append(failure)
        logger.exception("event_handler_failed", topic=topic, handler=failure.handler)

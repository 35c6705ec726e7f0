"""Routing of external intents (context-menu style actions) onto the directory."""

from enum import Enum
from typing import Any, Optional
from urllib.parse import urlsplit

import structlog
from pydantic import BaseModel

from ..domain.events import EventBus, EventType
from ..domain.models import Conversation
from ..domain.validation import parse_conversation_id
from .directory import ConversationDirectory

logger = structlog.get_logger()

VALID_ACTIONS = ("newChat", "selectChat", "continueChat")
MAX_TEXT_CHARS = 10_000


class RoutingAction(str, Enum):
    CREATE_WITH_TEXT = "createWithText"
    SHOW_SELECTOR = "showSelector"
    CONTINUE_FROM_CONTEXT = "continueFromContext"
    CREATE_INITIAL = "createInitial"
    LOAD_DEFAULT = "loadDefault"


def is_web_url(url: Any) -> bool:
    if not isinstance(url, str):
        return False
    try:
        parts = urlsplit(url)
    except ValueError:
        return False
    return parts.scheme in ("http", "https") and bool(parts.netloc)


class RoutingRequest(BaseModel):
    """Sanitized external intent; invalid parts are already cleared."""

    action: Optional[str] = None
    text: Optional[str] = None
    source: Optional[str] = None
    chat_id: Optional[int] = None

    @classmethod
    def parse(
        cls,
        action: Any = None,
        text: Any = None,
        source: Any = None,
        chat_id: Any = None,
    ) -> "RoutingRequest":
        if action is not None and action not in VALID_ACTIONS:
            logger.warning("routing_action_ignored", action=str(action))
            action = None

        if not isinstance(text, str) or not text:
            text = None
        elif len(text) > MAX_TEXT_CHARS:
            logger.warning("routing_text_truncated", length=len(text))
            text = text[:MAX_TEXT_CHARS]

        if source is not None and not is_web_url(source):
            logger.warning("routing_source_rejected")
            source = None

        parsed_id = parse_conversation_id(chat_id) if chat_id is not None else None
        if chat_id is not None and parsed_id is None:
            logger.warning("routing_chat_id_rejected", chat_id=str(chat_id))

        return cls(action=action, text=text, source=source, chat_id=parsed_id)


class RoutingDecision(BaseModel):
    action: RoutingAction
    text: Optional[str] = None
    source: Optional[str] = None
    chat_id: Optional[int] = None


def decide(request: RoutingRequest, directory: ConversationDirectory) -> RoutingDecision:
    """Pick what to do with an intent given the current directory contents."""
    text, source = request.text, request.source
    if request.action and text:
        if request.action == "selectChat" and len(directory) > 0:
            return RoutingDecision(action=RoutingAction.SHOW_SELECTOR, text=text, source=source)
        if request.action == "continueChat" and request.chat_id in directory:
            return RoutingDecision(
                action=RoutingAction.CONTINUE_FROM_CONTEXT,
                text=text,
                source=source,
                chat_id=request.chat_id,
            )
        return RoutingDecision(action=RoutingAction.CREATE_WITH_TEXT, text=text, source=source)

    if len(directory) == 0:
        return RoutingDecision(action=RoutingAction.CREATE_INITIAL)
    return RoutingDecision(action=RoutingAction.LOAD_DEFAULT)


async def apply_decision(
    decision: RoutingDecision, directory: ConversationDirectory, bus: EventBus
) -> Optional[Conversation]:
    """Execute ``decision``; returns the conversation it activated, if any."""
    logger.info("routing_decision_applied", action=decision.action.value)

    if decision.action is RoutingAction.CREATE_WITH_TEXT:
        return await directory.create_new_with_seed_text(decision.text or "", decision.source)

    if decision.action is RoutingAction.SHOW_SELECTOR:
        bus.publish(
            EventType.UI_HISTORY,
            {
                "conversations": directory.sorted_by_activity(),
                "selector": True,
                "text": decision.text,
                "source": decision.source,
            },
        )
        return None

    if decision.action is RoutingAction.CONTINUE_FROM_CONTEXT:
        return await directory.continue_with_context(
            decision.chat_id, decision.text or "", decision.source
        )

    if decision.action is RoutingAction.CREATE_INITIAL:
        return await directory.create_new()

    target = directory.active_id
    if target is None or target not in directory:
        target = next(iter(directory.all()), None)
    if target is None:
        return await directory.create_new()
    return await directory.activate(target)

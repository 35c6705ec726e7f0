"""Send flow: user turn, loading placeholder, completion, settled reply."""

from typing import Any, Iterable, Optional

import structlog

from ..domain.errors import ChatError, CredentialMissing, DecryptionFailure, InvalidMessage, user_facing_message
from ..domain.events import EventBus, EventType
from ..domain.models import Conversation, Message, MessageRole, filter_attachments
from ..repositories.encrypted import EncryptedStore
from .completion import CompletionClient
from .directory import ConversationDirectory

logger = structlog.get_logger()

LOADING_TEXT = "Assistant is thinking..."


class MessageDispatcher:
    """Drives one completion request at a time.

    A send arriving while another request is in flight is rejected, not
    queued.
    """

    def __init__(
        self,
        directory: ConversationDirectory,
        client: CompletionClient,
        bus: EventBus,
        store: EncryptedStore,
    ) -> None:
        self.directory = directory
        self.client = client
        self.bus = bus
        self.store = store
        self._in_flight = False

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    async def send(
        self,
        conversation_id: int,
        content: Optional[str],
        attachments: Optional[Iterable[Any]] = None,
    ) -> Optional[Message]:
        """Append the user turn and settle the assistant reply.

        Returns the user message, or None when the send was rejected (request
        already in flight, unknown conversation, nothing to send).
        """
        if self._in_flight:
            logger.info("send_rejected_request_in_flight", conversation_id=conversation_id)
            return None

        conversation = self.directory.get(conversation_id)
        if conversation is None:
            logger.warning("send_rejected_unknown_conversation", conversation_id=conversation_id)
            return None

        images = filter_attachments(attachments)
        if not (content or "").strip() and not images:
            logger.warning("send_rejected_empty_message", conversation_id=conversation_id)
            return None

        self._in_flight = True
        try:
            try:
                user_message = conversation.add_message(content or "", MessageRole.USER, images)
            except InvalidMessage as e:
                self.bus.publish(
                    EventType.MESSAGE_ERROR,
                    {"conversation_id": conversation_id, "error": str(e), "user_message": str(e)},
                )
                return None

            self.bus.publish(
                EventType.MESSAGE_SENT,
                {"conversation_id": conversation_id, "message": user_message, "has_images": bool(images)},
            )
            await self._reply(conversation, images)
            return user_message
        finally:
            self._in_flight = False

    async def _reply(self, conversation: Conversation, images: Any) -> None:
        if not await self._has_credential():
            text = user_facing_message(CredentialMissing())
            conversation.add_message(text, MessageRole.ASSISTANT, is_error=True)
            self.bus.publish(
                EventType.MESSAGE_ERROR,
                {"conversation_id": conversation.id, "error": "credential_missing", "user_message": text},
            )
            self.bus.publish(EventType.UI_RENDER, conversation)
            return

        placeholder = conversation.add_message(LOADING_TEXT, MessageRole.ASSISTANT, is_loading=True)
        self.bus.publish(EventType.MESSAGE_LOADING, {"conversation_id": conversation.id, "message": placeholder})
        self.bus.publish(EventType.UI_RENDER, conversation)

        try:
            history = [m for m in conversation.messages if not (m.is_loading or m.is_error)]
            reply = await self.client.complete(history, images, conversation_id=conversation.id)
        except Exception as e:
            text = user_facing_message(e)
            self._settle(conversation, placeholder, text, is_error=True)
            if isinstance(e, ChatError):
                logger.warning(
                    "completion_failed",
                    conversation_id=conversation.id,
                    error_type=type(e).__name__,
                )
            else:
                logger.exception("completion_crashed", conversation_id=conversation.id)
            self.bus.publish(
                EventType.MESSAGE_ERROR,
                {"conversation_id": conversation.id, "error": str(e), "user_message": text},
            )
        else:
            message = self._settle(conversation, placeholder, reply)
            self.bus.publish(
                EventType.MESSAGE_RECEIVED,
                {
                    "conversation_id": conversation.id,
                    "message": message,
                    "loading_message_id": placeholder.id,
                },
            )
        finally:
            self.bus.publish(EventType.UI_RENDER, conversation)

    def _settle(
        self, conversation: Conversation, placeholder: Message, text: str, is_error: bool = False
    ) -> Message:
        """Turn the placeholder into the final message, appending if it vanished."""
        if conversation.update_message(placeholder.id, content=text, is_loading=False, is_error=is_error):
            return conversation.get_message(placeholder.id)
        logger.warning("placeholder_missing_appending", conversation_id=conversation.id)
        conversation.remove_message(placeholder.id)
        return conversation.add_message(text, MessageRole.ASSISTANT, is_error=is_error)

    async def _has_credential(self) -> bool:
        try:
            return bool(await self.store.get_credential())
        except DecryptionFailure:
            return False

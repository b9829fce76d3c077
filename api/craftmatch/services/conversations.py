from __future__ import annotations

import logging
import math
import re
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from opentelemetry import trace

from craftmatch.services.domain import (
    Conversation,
    ConversationSummary,
    Message,
    UnreadCount,
    utcnow,
)
from craftmatch.services.email import EmailNotifier
from craftmatch.services.realtime import EventType, RealtimeEvent, RealtimeHub
from craftmatch.services.repository import (
    RateLimitExceededError,
    RepositoryConflictError,
    RepositoryError,
    RepositoryForbiddenError,
    RepositoryNotFoundError,
    RepositoryValidationError,
)

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

MESSAGE_MAX_LENGTH = 10_000
MESSAGE_PREVIEW_LENGTH = 200
RATE_LIMIT_WINDOW = timedelta(minutes=1)
CONTEXT_TYPES = {"agency_inquiry", "general"}

_SCRIPT_TAG_RE = re.compile(r"<\s*script\b", re.IGNORECASE)
_EVENT_HANDLER_RE = re.compile(r"\bon[a-z]+\s*=", re.IGNORECASE)
_JAVASCRIPT_URL_RE = re.compile(r"javascript\s*:", re.IGNORECASE)


class EditWindowExpiredError(RepositoryValidationError):
    """Raised when a sender edits a message after the edit window closed."""

    code = "edit_window_expired"


class MessageDeletedError(RepositoryValidationError):
    """Raised when a tombstoned message is edited or deleted again."""

    code = "message_deleted"


@dataclass(slots=True)
class ConversationPage:
    conversation: Conversation
    messages: list[Message]
    has_more: bool


def normalize_message_content(content: str) -> str:
    text = content.strip() if isinstance(content, str) else ""
    if not text:
        raise RepositoryValidationError("Message cannot be empty")
    if len(text) > MESSAGE_MAX_LENGTH:
        raise RepositoryValidationError(f"Message cannot exceed {MESSAGE_MAX_LENGTH} characters")
    if _SCRIPT_TAG_RE.search(text) or _EVENT_HANDLER_RE.search(text) or _JAVASCRIPT_URL_RE.search(text):
        raise RepositoryValidationError("Message contains potentially unsafe content")
    return text


def is_within_edit_window(message: Message, *, now: datetime, window: timedelta) -> bool:
    return now - message.created_at <= window


def message_event(message: Message, *, event_type: EventType) -> RealtimeEvent:
    return RealtimeEvent(
        table="messages",
        event_type=event_type,
        record={
            "id": message.id,
            "conversation_id": message.conversation_id,
            "sender_id": message.sender_id,
            "content": message.display_content,
            "created_at": message.created_at,
            "edited_at": message.edited_at,
            "deleted_at": message.deleted_at,
        },
    )


class ConversationService:
    def __init__(
        self,
        *,
        repository: Any,
        hub: RealtimeHub | None,
        email: EmailNotifier | None = None,
        edit_window_seconds: int = 300,
        rate_limit_per_minute: int = 50,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._repository = repository
        self._hub = hub
        self._email = email
        self._edit_window = timedelta(seconds=edit_window_seconds)
        self._rate_limit = rate_limit_per_minute
        self._clock = clock

    async def find_or_create_conversation(
        self,
        *,
        user_id: str,
        other_user_id: str,
        context_type: str = "general",
        context_id: str | None = None,
    ) -> Conversation:
        user_id = user_id.lower()
        other_user_id = other_user_id.lower()
        if user_id == other_user_id:
            raise RepositoryValidationError("cannot start a conversation with yourself")
        if context_type not in CONTEXT_TYPES:
            raise RepositoryValidationError("context_type must be one of: agency_inquiry, general")
        if context_type == "agency_inquiry" and not context_id:
            raise RepositoryValidationError("context_id is required for agency inquiries")

        existing = await self._repository.find_conversation(participant_a=user_id, participant_b=other_user_id)
        if existing is not None:
            return existing

        try:
            return await self._repository.create_conversation(
                participant_a=user_id,
                participant_b=other_user_id,
                context_type=context_type,
                context_id=context_id,
            )
        except RepositoryConflictError:
            # Another request created the pair between our lookup and insert.
            existing = await self._repository.find_conversation(participant_a=user_id, participant_b=other_user_id)
            if existing is None:
                raise RepositoryConflictError("failed to resolve existing conversation after conflict")
            return existing

    async def start_conversation(
        self,
        *,
        user_id: str,
        recipient_id: str,
        context_type: str,
        context_id: str | None,
        initial_message: str,
        sender_name: str | None = None,
    ) -> tuple[Conversation, Message]:
        normalize_message_content(initial_message)
        conversation = await self.find_or_create_conversation(
            user_id=user_id,
            other_user_id=recipient_id,
            context_type=context_type,
            context_id=context_id,
        )
        message = await self.send_message(
            conversation_id=conversation.id,
            sender_id=user_id.lower(),
            content=initial_message,
            sender_name=sender_name,
        )
        return conversation, message

    async def send_message(
        self,
        *,
        conversation_id: str,
        sender_id: str,
        content: str,
        sender_name: str | None = None,
    ) -> Message:
        text = normalize_message_content(content)
        conversation = await self._repository.get_conversation(conversation_id=conversation_id)
        if not conversation.has_participant(sender_id):
            raise RepositoryForbiddenError("not a participant in this conversation")
        await self._enforce_send_rate(sender_id)

        with tracer.start_as_current_span("conversation.send_message") as span:
            span.set_attribute("craftmatch.conversation_id", conversation_id)
            message = await self._repository.insert_message(
                conversation_id=conversation_id,
                sender_id=sender_id,
                content=text,
            )

        await self._broadcast(message_event(message, event_type="INSERT"))
        await self._email_recipient(conversation, message, sender_name=sender_name)
        return message

    async def _enforce_send_rate(self, sender_id: str) -> None:
        if self._rate_limit <= 0:
            return
        now = self._clock()
        sent, oldest_at = await self._repository.recent_message_window(
            sender_id=sender_id,
            since=now - RATE_LIMIT_WINDOW,
        )
        if sent < self._rate_limit:
            return
        reopens_at = (oldest_at or now) + RATE_LIMIT_WINDOW
        retry_after = max(1, math.ceil((reopens_at - now).total_seconds()))
        logger.warning("message rate limit hit sender_id=%s sent=%s limit=%s", sender_id, sent, self._rate_limit)
        raise RateLimitExceededError(
            f"Too many requests. Please wait {retry_after} seconds before sending more messages.",
            retry_after_seconds=retry_after,
        )

    async def edit_message(self, *, message_id: str, actor_id: str, content: str) -> Message:
        text = normalize_message_content(content)
        message = await self._repository.get_message(message_id=message_id)
        if message.sender_id != actor_id:
            raise RepositoryForbiddenError("only the sender can edit this message")
        if message.is_deleted:
            raise MessageDeletedError("deleted messages cannot be edited")
        if not is_within_edit_window(message, now=self._clock(), window=self._edit_window):
            minutes = int(self._edit_window.total_seconds() // 60)
            raise EditWindowExpiredError(
                f"Edit window expired. Messages can only be edited within {minutes} minutes of sending."
            )

        try:
            updated = await self._repository.update_message_content(message_id=message_id, content=text)
        except RepositoryConflictError as exc:
            raise MessageDeletedError("deleted messages cannot be edited") from exc

        await self._broadcast(message_event(updated, event_type="UPDATE"))
        return updated

    async def delete_message(self, *, message_id: str, actor_id: str, is_admin: bool) -> Message:
        message = await self._repository.get_message(message_id=message_id)
        if message.sender_id != actor_id and not is_admin:
            raise RepositoryForbiddenError("only the sender or an administrator can delete this message")
        if message.is_deleted:
            raise MessageDeletedError("message already deleted")

        try:
            tombstoned = await self._repository.tombstone_message(message_id=message_id, deleted_by=actor_id)
        except RepositoryConflictError as exc:
            raise MessageDeletedError("message already deleted") from exc

        logger.info(
            "message tombstoned message_id=%s conversation_id=%s by_admin=%s",
            tombstoned.id,
            tombstoned.conversation_id,
            is_admin and message.sender_id != actor_id,
        )
        await self._broadcast(message_event(tombstoned, event_type="UPDATE"))
        return tombstoned

    async def audit_message(self, *, message_id: str) -> Message:
        """Stored message including tombstoned content; callers must hold moderation rights."""
        return await self._repository.get_message(message_id=message_id)

    async def get_conversation(
        self,
        *,
        conversation_id: str,
        viewer_id: str,
        before: str | None = None,
        limit: int = 50,
    ) -> ConversationPage:
        conversation = await self._repository.get_conversation(conversation_id=conversation_id)
        if not conversation.has_participant(viewer_id):
            raise RepositoryNotFoundError("conversation not found")

        rows = await self._repository.list_messages(
            conversation_id=conversation_id,
            before_message_id=before,
            limit=limit + 1,
        )
        if before is None:
            await self._repository.mark_conversation_read(conversation_id=conversation_id, user_id=viewer_id)
        return ConversationPage(conversation=conversation, messages=rows[:limit], has_more=len(rows) > limit)

    async def mark_read(self, *, conversation_id: str, user_id: str) -> datetime:
        return await self._repository.mark_conversation_read(conversation_id=conversation_id, user_id=user_id)

    async def list_conversations(
        self,
        *,
        user_id: str,
        unread_only: bool,
        limit: int,
        offset: int,
    ) -> list[ConversationSummary]:
        return await self._repository.list_conversations(
            user_id=user_id,
            unread_only=unread_only,
            limit=limit,
            offset=offset,
        )

    async def unread_count(self, *, user_id: str) -> UnreadCount:
        return await self._repository.count_unread(user_id=user_id)

    async def _broadcast(self, event: RealtimeEvent) -> None:
        if self._hub is None:
            return
        if not await self._hub.publish(event):
            logger.warning("message broadcast dropped table=%s type=%s", event.table, event.event_type)

    async def _email_recipient(self, conversation: Conversation, message: Message, *, sender_name: str | None) -> None:
        if self._email is None:
            return
        recipient_id = conversation.other_participant(message.sender_id)
        try:
            recipient = await self._repository.get_profile_contact(user_id=recipient_id)
        except RepositoryError:
            logger.exception("recipient lookup failed conversation_id=%s", conversation.id)
            return
        if recipient is None:
            return
        result = await self._email.send_message_notification(
            recipient=recipient,
            sender_name=sender_name or "A Craftmatch user",
            conversation_id=conversation.id,
            preview=message.content[:MESSAGE_PREVIEW_LENGTH],
        )
        if not result.sent:
            logger.info("message email skipped conversation_id=%s reason=%s", conversation.id, result.reason)

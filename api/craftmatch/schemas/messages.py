from datetime import datetime
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, Field

from craftmatch.services.conversations import ConversationPage
from craftmatch.services.domain import Conversation, ConversationSummary, Message, UnreadCount

ConversationContextType = Literal["agency_inquiry", "general"]
ConversationFilter = Literal["all", "unread"]


class ConversationCreateRequest(BaseModel):
    recipient_id: UUID
    context_type: ConversationContextType = "general"
    context_id: UUID | None = None
    initial_message: str = Field(max_length=10_000)


class MessageCreateRequest(BaseModel):
    content: str = Field(max_length=10_000)


class MessageEditRequest(BaseModel):
    content: str = Field(max_length=10_000)


class MessageOut(BaseModel):
    id: str
    conversation_id: str
    sender_id: str
    content: str
    is_deleted: bool = False
    created_at: datetime
    edited_at: datetime | None = None
    deleted_at: datetime | None = None

    @classmethod
    def from_record(cls, message: Message) -> "MessageOut":
        return cls(
            id=message.id,
            conversation_id=message.conversation_id,
            sender_id=message.sender_id,
            content=message.display_content,
            is_deleted=message.is_deleted,
            created_at=message.created_at,
            edited_at=message.edited_at,
            deleted_at=message.deleted_at,
        )


class MessageAuditOut(BaseModel):
    id: str
    conversation_id: str
    sender_id: str
    original_content: str
    created_at: datetime
    edited_at: datetime | None = None
    deleted_at: datetime | None = None
    deleted_by: str | None = None

    @classmethod
    def from_record(cls, message: Message) -> "MessageAuditOut":
        return cls(
            id=message.id,
            conversation_id=message.conversation_id,
            sender_id=message.sender_id,
            original_content=message.content,
            created_at=message.created_at,
            edited_at=message.edited_at,
            deleted_at=message.deleted_at,
            deleted_by=message.deleted_by,
        )


class ConversationOut(BaseModel):
    id: str
    participant_ids: list[str]
    context_type: str
    context_id: str | None = None
    last_message_at: datetime | None = None
    created_at: datetime

    @classmethod
    def from_record(cls, conversation: Conversation) -> "ConversationOut":
        return cls(
            id=conversation.id,
            participant_ids=list(conversation.participant_ids),
            context_type=conversation.context_type,
            context_id=conversation.context_id,
            last_message_at=conversation.last_message_at,
            created_at=conversation.created_at,
        )


class ConversationSummaryOut(ConversationOut):
    other_participant_id: str
    unread_count: int
    last_message_preview: str | None = None

    @classmethod
    def from_summary(cls, summary: ConversationSummary) -> "ConversationSummaryOut":
        base = ConversationOut.from_record(summary.conversation)
        return cls(
            **base.model_dump(),
            other_participant_id=summary.other_participant_id,
            unread_count=summary.unread_count,
            last_message_preview=summary.last_message_preview,
        )


class ConversationDetailOut(BaseModel):
    conversation: ConversationOut
    messages: list[MessageOut] = Field(default_factory=list)
    has_more: bool = False

    @classmethod
    def from_page(cls, page: ConversationPage) -> "ConversationDetailOut":
        return cls(
            conversation=ConversationOut.from_record(page.conversation),
            messages=[MessageOut.from_record(message) for message in page.messages],
            has_more=page.has_more,
        )


class ConversationStartedOut(BaseModel):
    conversation: ConversationOut
    message: MessageOut


class UnreadCountOut(BaseModel):
    total_unread: int
    conversations_with_unread: int

    @classmethod
    def from_record(cls, record: UnreadCount) -> "UnreadCountOut":
        return cls(total_unread=record.total_unread, conversations_with_unread=record.conversations_with_unread)


class ReadMarkerOut(BaseModel):
    conversation_id: str
    last_read_at: datetime

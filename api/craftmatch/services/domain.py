"""Typed records passed between the repository and the services.

The repository maps every asyncpg row into one of these before it leaves
``repository.py``; services and routes never index raw rows.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Literal

LaborRequestStatus = Literal["pending", "active", "fulfilled", "cancelled"]
NotificationStatus = Literal["pending", "viewed", "responded"]
ConversationContextType = Literal["agency_inquiry", "general"]

MESSAGE_REMOVED_MARKER = "(This message was deleted)"


@dataclass(slots=True)
class AgencyMatch:
    agency_id: str


@dataclass(slots=True)
class NewLaborRequest:
    project_name: str
    company_name: str
    contact_email: str
    contact_phone: str
    additional_details: str | None
    confirmation_token: str
    confirmation_token_expires: datetime


@dataclass(slots=True)
class LaborRequest:
    id: str
    project_name: str
    company_name: str
    contact_email: str
    contact_phone: str
    additional_details: str | None
    status: str
    confirmation_token_expires: datetime
    confirmation_token_used_at: datetime | None
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class NewCraftRequirement:
    trade_id: str
    region_id: str
    experience_level: str
    worker_count: int
    start_date: date
    duration_days: int
    hours_per_week: int
    notes: str | None = None
    pay_rate_min: float | None = None
    pay_rate_max: float | None = None
    per_diem_rate: float | None = None


@dataclass(slots=True)
class CraftRequirement:
    id: str
    labor_request_id: str
    trade_id: str
    region_id: str
    experience_level: str
    worker_count: int
    start_date: date
    duration_days: int
    hours_per_week: int
    notes: str | None
    pay_rate_min: float | None
    pay_rate_max: float | None
    per_diem_rate: float | None
    created_at: datetime


@dataclass(slots=True)
class Notification:
    id: str
    labor_request_id: str
    craft_id: str
    agency_id: str
    status: str
    viewed_at: datetime | None
    responded_at: datetime | None
    response_interested: bool | None
    response_message: str | None
    created_at: datetime


@dataclass(slots=True)
class CraftMatchSummary:
    craft_id: str
    trade_name: str | None
    region_name: str | None
    matches: int


@dataclass(slots=True)
class LaborRequestConfirmation:
    request: LaborRequest
    crafts: list[CraftMatchSummary] = field(default_factory=list)

    @property
    def total_matches(self) -> int:
        return sum(craft.matches for craft in self.crafts)


@dataclass(slots=True)
class AgencyInboxItem:
    notification: Notification
    request: LaborRequest
    craft: CraftRequirement
    trade_name: str | None
    region_name: str | None


@dataclass(slots=True)
class AgencyContact:
    agency_id: str
    name: str
    email: str | None


@dataclass(slots=True)
class ProfileContact:
    user_id: str
    full_name: str | None
    email: str | None


@dataclass(slots=True)
class Conversation:
    id: str
    participant_low_id: str
    participant_high_id: str
    context_type: str
    context_id: str | None
    last_message_at: datetime | None
    created_at: datetime

    @property
    def participant_ids(self) -> tuple[str, str]:
        return (self.participant_low_id, self.participant_high_id)

    def has_participant(self, user_id: str) -> bool:
        return user_id in self.participant_ids

    def other_participant(self, user_id: str) -> str:
        if user_id == self.participant_low_id:
            return self.participant_high_id
        return self.participant_low_id


@dataclass(slots=True)
class Message:
    id: str
    conversation_id: str
    sender_id: str
    content: str
    created_at: datetime
    edited_at: datetime | None = None
    deleted_at: datetime | None = None
    deleted_by: str | None = None

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    @property
    def display_content(self) -> str:
        if self.is_deleted:
            return MESSAGE_REMOVED_MARKER
        return self.content


@dataclass(slots=True)
class ConversationSummary:
    conversation: Conversation
    other_participant_id: str
    unread_count: int
    last_message_preview: str | None


@dataclass(slots=True)
class UnreadCount:
    total_unread: int
    conversations_with_unread: int


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ordered_pair(first: str, second: str) -> tuple[str, str]:
    """Storage key for an unordered participant pair."""
    return (first, second) if first <= second else (second, first)

from __future__ import annotations

import asyncio
import os
from collections.abc import Callable
from dataclasses import replace
from datetime import date, datetime, timedelta
from typing import Any
from uuid import uuid4

import pytest

os.environ.setdefault("CM_OTEL_ENABLED", "false")

from craftmatch.services.domain import (  # noqa: E402
    AgencyContact,
    AgencyInboxItem,
    AgencyMatch,
    Conversation,
    ConversationSummary,
    CraftMatchSummary,
    CraftRequirement,
    LaborRequest,
    LaborRequestConfirmation,
    Message,
    NewCraftRequirement,
    NewLaborRequest,
    Notification,
    ProfileContact,
    UnreadCount,
    ordered_pair,
    utcnow,
)
from craftmatch.services.email import EmailResult  # noqa: E402
from craftmatch.services.realtime import RealtimeHub  # noqa: E402
from craftmatch.services.repository import (  # noqa: E402
    LABOR_REQUEST_TRANSITIONS,
    ConfirmationTokenExpiredError,
    CraftRequirementInsertError,
    LaborRequestInsertError,
    RepositoryConflictError,
    RepositoryNotFoundError,
    RepositoryUnavailableError,
)

TRADE_ELECTRICIAN = "aaaaaaaa-0000-0000-0000-000000000001"
TRADE_PLUMBER = "aaaaaaaa-0000-0000-0000-000000000002"
TRADE_WELDER = "aaaaaaaa-0000-0000-0000-000000000003"
REGION_HOUSTON = "bbbbbbbb-0000-0000-0000-000000000001"
REGION_DALLAS = "bbbbbbbb-0000-0000-0000-000000000002"

AGENCY_ALPHA = "cccccccc-0000-0000-0000-000000000001"
AGENCY_BRAVO = "cccccccc-0000-0000-0000-000000000002"
AGENCY_CHARLIE = "cccccccc-0000-0000-0000-000000000003"

OWNER_ALPHA = "dddddddd-0000-0000-0000-000000000001"
USER_ONE = "eeeeeeee-0000-0000-0000-000000000001"
USER_TWO = "eeeeeeee-0000-0000-0000-000000000002"
USER_THREE = "eeeeeeee-0000-0000-0000-000000000003"
ADMIN_USER = "ffffffff-0000-0000-0000-000000000001"


class FakeStore:
    """In-memory stand-in for ``PostgresRepository`` with the same keyword-only surface."""

    def __init__(self) -> None:
        self.clock: Callable[[], datetime] = utcnow
        self._last_tick: datetime | None = None

        self.trade_names: dict[str, str] = {
            TRADE_ELECTRICIAN: "Electrician",
            TRADE_PLUMBER: "Plumber",
            TRADE_WELDER: "Welder",
        }
        self.region_names: dict[str, str] = {REGION_HOUSTON: "Houston", REGION_DALLAS: "Dallas"}
        self.agencies: dict[str, dict[str, Any]] = {}
        self.profiles: dict[str, ProfileContact] = {}

        self.labor_requests: dict[str, LaborRequest] = {}
        self.tokens: dict[str, str] = {}
        self.crafts: dict[str, CraftRequirement] = {}
        self.notifications: dict[str, Notification] = {}

        self.conversations: dict[str, Conversation] = {}
        self.last_read: dict[tuple[str, str], datetime | None] = {}
        self.messages: dict[str, Message] = {}

        self.published: list[str] = []
        self.match_calls: list[tuple[str, str]] = []
        self.conversation_conflicts = 0

        self.fail_request_insert = False
        self.fail_craft_insert = False
        self.failing_match_trades: set[str] = set()
        self.failing_notification_trades: set[str] = set()
        self.notification_insert_exception: BaseException | None = None
        self.contact_lookup_exception: BaseException | None = None
        self.available = True

    def now(self) -> datetime:
        tick = self.clock()
        if self._last_tick is not None and tick <= self._last_tick:
            tick = self._last_tick + timedelta(microseconds=1)
        self._last_tick = tick
        return tick

    def add_agency(
        self,
        agency_id: str,
        *,
        name: str,
        trades: set[str],
        regions: set[str],
        email: str | None = None,
        owner: str | None = None,
    ) -> None:
        self.agencies[agency_id] = {
            "name": name,
            "email": email,
            "trades": set(trades),
            "regions": set(regions),
            "owner": owner,
        }

    # Labor requests

    async def create_labor_request(
        self,
        *,
        request: NewLaborRequest,
        crafts: list[NewCraftRequirement],
    ) -> tuple[LaborRequest, list[CraftRequirement]]:
        if self.fail_request_insert:
            raise LaborRequestInsertError("labor request insert failed")

        now = self.now()
        labor_request = LaborRequest(
            id=str(uuid4()),
            project_name=request.project_name,
            company_name=request.company_name,
            contact_email=request.contact_email,
            contact_phone=request.contact_phone,
            additional_details=request.additional_details,
            status="pending",
            confirmation_token_expires=request.confirmation_token_expires,
            confirmation_token_used_at=None,
            created_at=now,
            updated_at=now,
        )
        if self.fail_craft_insert:
            # Nothing is kept: the request row is part of the same transaction.
            raise CraftRequirementInsertError("craft requirement insert failed")

        persisted = [
            CraftRequirement(
                id=str(uuid4()),
                labor_request_id=labor_request.id,
                trade_id=craft.trade_id,
                region_id=craft.region_id,
                experience_level=craft.experience_level,
                worker_count=craft.worker_count,
                start_date=craft.start_date,
                duration_days=craft.duration_days,
                hours_per_week=craft.hours_per_week,
                notes=craft.notes,
                pay_rate_min=craft.pay_rate_min,
                pay_rate_max=craft.pay_rate_max,
                per_diem_rate=craft.per_diem_rate,
                created_at=now,
            )
            for craft in crafts
        ]
        self.labor_requests[labor_request.id] = labor_request
        self.tokens[request.confirmation_token] = labor_request.id
        for craft in persisted:
            self.crafts[craft.id] = craft
        return labor_request, persisted

    async def match_agencies(self, *, trade_id: str, region_id: str) -> list[AgencyMatch]:
        self.match_calls.append((trade_id, region_id))
        if trade_id in self.failing_match_trades:
            raise ConnectionResetError("connection reset by peer")
        return [
            AgencyMatch(agency_id=agency_id)
            for agency_id, agency in self.agencies.items()
            if trade_id in agency["trades"] and region_id in agency["regions"]
        ]

    async def insert_notifications(
        self,
        *,
        labor_request_id: str,
        craft_id: str,
        agency_ids: list[str],
    ) -> list[Notification]:
        if self.crafts[craft_id].trade_id in self.failing_notification_trades:
            raise RepositoryConflictError("notification insert rejected")
        if self.notification_insert_exception is not None:
            raise self.notification_insert_exception

        existing = {(item.craft_id, item.agency_id) for item in self.notifications.values()}
        inserted: list[Notification] = []
        for agency_id in agency_ids:
            if (craft_id, agency_id) in existing:
                continue
            notification = Notification(
                id=str(uuid4()),
                labor_request_id=labor_request_id,
                craft_id=craft_id,
                agency_id=agency_id,
                status="pending",
                viewed_at=None,
                responded_at=None,
                response_interested=None,
                response_message=None,
                created_at=self.now(),
            )
            self.notifications[notification.id] = notification
            existing.add((craft_id, agency_id))
            inserted.append(notification)
        return inserted

    async def consume_confirmation_token(self, *, token: str) -> LaborRequestConfirmation:
        request_id = self.tokens.get(token)
        if request_id is None:
            raise RepositoryNotFoundError("Invalid or expired token")
        request = self.labor_requests[request_id]
        if request.confirmation_token_expires <= self.now() or request.confirmation_token_used_at is not None:
            raise ConfirmationTokenExpiredError("Token has expired")

        request = replace(request, confirmation_token_used_at=self.now())
        self.labor_requests[request_id] = request
        crafts = [craft for craft in self.crafts.values() if craft.labor_request_id == request_id]
        return LaborRequestConfirmation(
            request=request,
            crafts=[
                CraftMatchSummary(
                    craft_id=craft.id,
                    trade_name=self.trade_names.get(craft.trade_id),
                    region_name=self.region_names.get(craft.region_id),
                    matches=sum(1 for item in self.notifications.values() if item.craft_id == craft.id),
                )
                for craft in crafts
            ],
        )

    async def list_labor_requests(self, *, status: str | None, limit: int, offset: int) -> list[LaborRequest]:
        rows = sorted(self.labor_requests.values(), key=lambda row: row.created_at, reverse=True)
        if status is not None:
            rows = [row for row in rows if row.status == status]
        return rows[offset : offset + limit]

    async def update_labor_request_status(self, *, labor_request_id: str, status: str) -> LaborRequest:
        request = self.labor_requests.get(labor_request_id)
        if request is None:
            raise RepositoryNotFoundError("labor request not found")
        if status != request.status and status not in LABOR_REQUEST_TRANSITIONS[request.status]:
            raise RepositoryConflictError(f"invalid labor request transition: {request.status} -> {status}")
        request = replace(request, status=status, updated_at=self.now())
        self.labor_requests[labor_request_id] = request
        return request

    # Agency notifications

    async def get_notification(self, *, notification_id: str) -> Notification:
        notification = self.notifications.get(notification_id)
        if notification is None:
            raise RepositoryNotFoundError("notification not found")
        return notification

    async def list_owned_agency_ids(self, *, user_id: str) -> set[str]:
        return {agency_id for agency_id, agency in self.agencies.items() if agency["owner"] == user_id}

    async def mark_notification_viewed(self, *, notification_id: str) -> Notification:
        notification = await self.get_notification(notification_id=notification_id)
        status = "viewed" if notification.status == "pending" else notification.status
        notification = replace(notification, status=status, viewed_at=notification.viewed_at or self.now())
        self.notifications[notification_id] = notification
        return notification

    async def record_notification_response(
        self,
        *,
        notification_id: str,
        interested: bool,
        message: str | None,
    ) -> Notification:
        notification = await self.get_notification(notification_id=notification_id)
        notification = replace(
            notification,
            status="responded",
            responded_at=self.now(),
            response_interested=interested,
            response_message=message,
        )
        self.notifications[notification_id] = notification
        return notification

    async def list_agency_inbox(
        self,
        *,
        agency_id: str,
        status: str | None,
        search: str | None,
        limit: int,
        offset: int,
    ) -> list[AgencyInboxItem]:
        items: list[AgencyInboxItem] = []
        for notification in sorted(self.notifications.values(), key=lambda row: row.created_at, reverse=True):
            if notification.agency_id != agency_id:
                continue
            if status is not None and notification.status != status:
                continue
            request = self.labor_requests[notification.labor_request_id]
            if search:
                needle = search.lower()
                if needle not in request.project_name.lower() and needle not in request.company_name.lower():
                    continue
            craft = self.crafts[notification.craft_id]
            items.append(
                AgencyInboxItem(
                    notification=notification,
                    request=request,
                    craft=craft,
                    trade_name=self.trade_names.get(craft.trade_id),
                    region_name=self.region_names.get(craft.region_id),
                )
            )
        return items[offset : offset + limit]

    async def get_agency_contacts(self, *, agency_ids: list[str]) -> list[AgencyContact]:
        if self.contact_lookup_exception is not None:
            raise self.contact_lookup_exception
        return [
            AgencyContact(agency_id=agency_id, name=self.agencies[agency_id]["name"], email=self.agencies[agency_id]["email"])
            for agency_id in sorted(agency_ids)
            if agency_id in self.agencies
        ]

    # Conversations and messages

    async def find_conversation(self, *, participant_a: str, participant_b: str) -> Conversation | None:
        await asyncio.sleep(0)
        low_id, high_id = ordered_pair(participant_a, participant_b)
        for conversation in self.conversations.values():
            if conversation.participant_ids == (low_id, high_id):
                return conversation
        return None

    async def create_conversation(
        self,
        *,
        participant_a: str,
        participant_b: str,
        context_type: str,
        context_id: str | None,
    ) -> Conversation:
        await asyncio.sleep(0)
        low_id, high_id = ordered_pair(participant_a, participant_b)
        if any(item.participant_ids == (low_id, high_id) for item in self.conversations.values()):
            self.conversation_conflicts += 1
            raise RepositoryConflictError("conversation already exists for participant pair")
        conversation = Conversation(
            id=str(uuid4()),
            participant_low_id=low_id,
            participant_high_id=high_id,
            context_type=context_type,
            context_id=context_id,
            last_message_at=None,
            created_at=self.now(),
        )
        self.conversations[conversation.id] = conversation
        self.last_read[(conversation.id, low_id)] = None
        self.last_read[(conversation.id, high_id)] = None
        return conversation

    async def get_conversation(self, *, conversation_id: str) -> Conversation:
        conversation = self.conversations.get(conversation_id)
        if conversation is None:
            raise RepositoryNotFoundError("conversation not found")
        return conversation

    async def insert_message(self, *, conversation_id: str, sender_id: str, content: str) -> Message:
        message = Message(
            id=str(uuid4()),
            conversation_id=conversation_id,
            sender_id=sender_id,
            content=content,
            created_at=self.now(),
        )
        self.messages[message.id] = message
        conversation = self.conversations[conversation_id]
        self.conversations[conversation_id] = replace(conversation, last_message_at=message.created_at)
        return message

    async def recent_message_window(self, *, sender_id: str, since: datetime) -> tuple[int, datetime | None]:
        sent = [
            message.created_at
            for message in self.messages.values()
            if message.sender_id == sender_id and message.created_at > since
        ]
        return len(sent), min(sent, default=None)

    async def get_message(self, *, message_id: str) -> Message:
        message = self.messages.get(message_id)
        if message is None:
            raise RepositoryNotFoundError("message not found")
        return message

    async def update_message_content(self, *, message_id: str, content: str) -> Message:
        message = await self.get_message(message_id=message_id)
        if message.is_deleted:
            raise RepositoryConflictError("message was deleted")
        message = replace(message, content=content, edited_at=self.now())
        self.messages[message_id] = message
        return message

    async def tombstone_message(self, *, message_id: str, deleted_by: str) -> Message:
        message = await self.get_message(message_id=message_id)
        if message.is_deleted:
            raise RepositoryConflictError("message already deleted")
        message = replace(message, deleted_at=self.now(), deleted_by=deleted_by)
        self.messages[message_id] = message
        return message

    async def list_messages(
        self,
        *,
        conversation_id: str,
        before_message_id: str | None,
        limit: int,
    ) -> list[Message]:
        rows = sorted(
            (message for message in self.messages.values() if message.conversation_id == conversation_id),
            key=lambda message: (message.created_at, message.id),
            reverse=True,
        )
        if before_message_id is not None:
            cursor = self.messages[before_message_id]
            rows = [row for row in rows if (row.created_at, row.id) < (cursor.created_at, cursor.id)]
        return rows[:limit]

    async def mark_conversation_read(self, *, conversation_id: str, user_id: str) -> datetime:
        if (conversation_id, user_id) not in self.last_read:
            raise RepositoryNotFoundError("conversation not found")
        read_at = self.now()
        self.last_read[(conversation_id, user_id)] = read_at
        return read_at

    def _unread_in(self, conversation_id: str, user_id: str) -> int:
        last_read_at = self.last_read[(conversation_id, user_id)]
        return sum(
            1
            for message in self.messages.values()
            if message.conversation_id == conversation_id
            and message.sender_id != user_id
            and not message.is_deleted
            and (last_read_at is None or message.created_at > last_read_at)
        )

    async def list_conversations(
        self,
        *,
        user_id: str,
        unread_only: bool,
        limit: int,
        offset: int,
    ) -> list[ConversationSummary]:
        summaries: list[ConversationSummary] = []
        for conversation in self.conversations.values():
            if not conversation.has_participant(user_id):
                continue
            unread = self._unread_in(conversation.id, user_id)
            if unread_only and unread == 0:
                continue
            visible = await self.list_messages(conversation_id=conversation.id, before_message_id=None, limit=1000)
            preview = next((message.content[:200] for message in visible if not message.is_deleted), None)
            summaries.append(
                ConversationSummary(
                    conversation=conversation,
                    other_participant_id=conversation.other_participant(user_id),
                    unread_count=unread,
                    last_message_preview=preview,
                )
            )
        summaries.sort(key=lambda item: item.conversation.last_message_at or item.conversation.created_at, reverse=True)
        return summaries[offset : offset + limit]

    async def count_unread(self, *, user_id: str) -> UnreadCount:
        counts = [
            self._unread_in(conversation.id, user_id)
            for conversation in self.conversations.values()
            if conversation.has_participant(user_id)
        ]
        return UnreadCount(total_unread=sum(counts), conversations_with_unread=sum(1 for count in counts if count))

    async def get_profile_contact(self, *, user_id: str) -> ProfileContact | None:
        return self.profiles.get(user_id)

    async def notify(self, *, channel: str, payload: str) -> None:
        self.published.append(payload)

    async def ping(self) -> None:
        if not self.available:
            raise RepositoryUnavailableError("database ping failed")

    async def close(self) -> None:
        return None


class FakeListenerConnection:
    def __init__(self) -> None:
        self.listeners: dict[str, list[Any]] = {}
        self.closed = False
        self.termination_listeners: list[Any] = []

    async def add_listener(self, channel: str, callback: Any) -> None:
        self.listeners.setdefault(channel, []).append(callback)

    async def remove_listener(self, channel: str, callback: Any) -> None:
        self.listeners[channel].remove(callback)

    async def close(self) -> None:
        self.closed = True

    def add_termination_listener(self, callback: Any) -> None:
        self.termination_listeners.append(callback)

    def remove_termination_listener(self, callback: Any) -> None:
        self.termination_listeners.remove(callback)

    def is_closed(self) -> bool:
        return self.closed

    def drop(self) -> None:
        """Simulate the server closing the connection underneath the listener."""
        self.closed = True
        for callback in list(self.termination_listeners):
            callback(self)


class FakeEmailNotifier:
    def __init__(self) -> None:
        self.labor_request_emails: list[tuple[str, str, int]] = []
        self.message_emails: list[tuple[str, str]] = []

    async def send_labor_request_notification(self, *, agency, labor_request, craft_count):
        self.labor_request_emails.append((agency.agency_id, labor_request.id, craft_count))
        return EmailResult(sent=True)

    async def send_message_notification(self, *, recipient, sender_name, conversation_id, preview):
        self.message_emails.append((recipient.user_id, conversation_id))
        return EmailResult(sent=True)


def craft_payload(
    *,
    trade_id: str = TRADE_ELECTRICIAN,
    region_id: str = REGION_HOUSTON,
    **overrides: Any,
) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "tradeId": trade_id,
        "regionId": region_id,
        "experienceLevel": "Journeyman",
        "workerCount": 4,
        "startDate": (date.today() + timedelta(days=14)).isoformat(),
        "durationDays": 30,
        "hoursPerWeek": 40,
    }
    payload.update(overrides)
    return payload


def labor_request_payload(*crafts: dict[str, Any], **overrides: Any) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "projectName": "Refinery Turnaround",
        "companyName": "Gulf Industrial",
        "contactEmail": "Pat.Lee@GulfIndustrial.com",
        "contactPhone": "(713) 555-0142",
        "additionalDetails": "Night shift available",
        "crafts": list(crafts) or [craft_payload()],
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def store() -> FakeStore:
    fake = FakeStore()
    fake.add_agency(
        AGENCY_ALPHA,
        name="Alpha Staffing",
        trades={TRADE_ELECTRICIAN, TRADE_PLUMBER},
        regions={REGION_HOUSTON},
        email="jobs@alpha.example",
        owner=OWNER_ALPHA,
    )
    fake.add_agency(
        AGENCY_BRAVO,
        name="Bravo Crews",
        trades={TRADE_ELECTRICIAN},
        regions={REGION_HOUSTON, REGION_DALLAS},
        email="dispatch@bravo.example",
    )
    fake.add_agency(
        AGENCY_CHARLIE,
        name="Charlie Labor",
        trades={TRADE_PLUMBER},
        regions={REGION_DALLAS},
    )
    return fake


@pytest.fixture
def hub(store: FakeStore) -> RealtimeHub:
    return RealtimeHub(channel="craftmatch_test", publisher=store, connect=None)


@pytest.fixture
def email_notifier() -> FakeEmailNotifier:
    return FakeEmailNotifier()

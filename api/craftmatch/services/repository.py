from __future__ import annotations

import asyncio
from datetime import date, datetime
from decimal import Decimal
from functools import lru_cache
from typing import Any

import asyncpg  # type: ignore[import-untyped]
from asyncpg import exceptions as pg_exc

from craftmatch.core.config import get_settings
from craftmatch.services.domain import (
    AgencyContact,
    AgencyInboxItem,
    AgencyMatch,
    CraftMatchSummary,
    CraftRequirement,
    Conversation,
    ConversationSummary,
    LaborRequest,
    LaborRequestConfirmation,
    Message,
    NewCraftRequirement,
    NewLaborRequest,
    Notification,
    ProfileContact,
    UnreadCount,
    ordered_pair,
)


class RepositoryError(Exception):
    """Base repository error."""


class RepositoryUnavailableError(RepositoryError):
    """Raised when the database is unavailable or not configured."""


class RepositoryNotFoundError(RepositoryError):
    """Raised when the requested entity does not exist."""


class RepositoryConflictError(RepositoryError):
    """Raised when an operation violates a uniqueness or state transition rule."""


class RepositoryForbiddenError(RepositoryError):
    """Raised when an operation is not permitted for the actor."""


class RepositoryValidationError(RepositoryError):
    """Raised when payload validation fails before persistence."""


class LaborRequestInsertError(RepositoryError):
    """Raised when the labor request row itself cannot be written."""


class CraftRequirementInsertError(RepositoryError):
    """Raised when the craft requirement batch is rejected; the parent request is rolled back."""


class ConfirmationTokenExpiredError(RepositoryConflictError):
    """Raised when a confirmation token is past its expiry or was already consumed."""


class RateLimitExceededError(RepositoryError):
    """Raised when an actor has used up its write allowance for the current window."""

    code = "rate_limit_exceeded"

    def __init__(self, message: str, *, retry_after_seconds: int) -> None:
        super().__init__(message)
        self.retry_after_seconds = retry_after_seconds


# Driver-level failures: dropped sockets, closed connections and command_timeout expiry.
CONNECTION_ERRORS: tuple[type[BaseException], ...] = (asyncio.TimeoutError, asyncpg.InterfaceError, OSError)


LABOR_REQUEST_STATUSES = {"pending", "active", "fulfilled", "cancelled"}
LABOR_REQUEST_TRANSITIONS: dict[str, set[str]] = {
    "pending": {"active", "cancelled"},
    "active": {"fulfilled", "cancelled"},
    "fulfilled": set(),
    "cancelled": set(),
}
NOTIFICATION_STATUSES = {"pending", "viewed", "responded"}

_LABOR_REQUEST_COLUMNS = """
  id::text as id,
  project_name,
  company_name,
  contact_email,
  contact_phone,
  additional_details,
  status,
  confirmation_token_expires,
  confirmation_token_used_at,
  created_at,
  updated_at
"""

_CRAFT_COLUMNS = """
  id::text as id,
  labor_request_id::text as labor_request_id,
  trade_id::text as trade_id,
  region_id::text as region_id,
  experience_level,
  worker_count,
  start_date,
  duration_days,
  hours_per_week,
  notes,
  pay_rate_min,
  pay_rate_max,
  per_diem_rate,
  created_at
"""

_NOTIFICATION_COLUMNS = """
  id::text as id,
  labor_request_id::text as labor_request_id,
  labor_request_craft_id::text as craft_id,
  agency_id::text as agency_id,
  status,
  viewed_at,
  responded_at,
  response_interested,
  response_message,
  created_at
"""

_CONVERSATION_COLUMNS = """
  id::text as id,
  participant_low_id::text as participant_low_id,
  participant_high_id::text as participant_high_id,
  context_type,
  context_id::text as context_id,
  last_message_at,
  created_at
"""

_MESSAGE_COLUMNS = """
  id::text as id,
  conversation_id::text as conversation_id,
  sender_id::text as sender_id,
  content,
  created_at,
  edited_at,
  deleted_at,
  deleted_by::text as deleted_by
"""


class PostgresRepository:
    def __init__(
        self,
        database_url: str | None,
        min_pool_size: int,
        max_pool_size: int,
    ) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    # Labor requests

    async def create_labor_request(
        self,
        *,
        request: NewLaborRequest,
        crafts: list[NewCraftRequirement],
    ) -> tuple[LaborRequest, list[CraftRequirement]]:
        if not crafts:
            raise RepositoryValidationError("at least one craft requirement is required")

        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    try:
                        request_row = await conn.fetchrow(
                            f"""
                            insert into labor_requests (
                              project_name,
                              company_name,
                              contact_email,
                              contact_phone,
                              additional_details,
                              status,
                              confirmation_token,
                              confirmation_token_expires
                            )
                            values ($1, $2, $3, $4, $5, 'pending', $6, $7)
                            returning {_LABOR_REQUEST_COLUMNS}
                            """,
                            request.project_name,
                            request.company_name,
                            request.contact_email,
                            request.contact_phone,
                            request.additional_details,
                            request.confirmation_token,
                            request.confirmation_token_expires,
                        )
                    except (pg_exc.PostgresError, asyncpg.DataError) as exc:
                        raise LaborRequestInsertError("labor request insert failed") from exc

                    labor_request = self._labor_request_row_to_record(request_row)

                    # Raising inside the transaction block rolls back the request row as well.
                    try:
                        craft_rows = await conn.fetch(
                            f"""
                            insert into labor_request_crafts (
                              labor_request_id,
                              trade_id,
                              region_id,
                              experience_level,
                              worker_count,
                              start_date,
                              duration_days,
                              hours_per_week,
                              notes,
                              pay_rate_min,
                              pay_rate_max,
                              per_diem_rate
                            )
                            select $1::uuid, item.*
                            from unnest(
                              $2::uuid[],
                              $3::uuid[],
                              $4::text[],
                              $5::int[],
                              $6::date[],
                              $7::int[],
                              $8::int[],
                              $9::text[],
                              $10::numeric[],
                              $11::numeric[],
                              $12::numeric[]
                            ) as item
                            returning {_CRAFT_COLUMNS}
                            """,
                            labor_request.id,
                            [craft.trade_id for craft in crafts],
                            [craft.region_id for craft in crafts],
                            [craft.experience_level for craft in crafts],
                            [craft.worker_count for craft in crafts],
                            [craft.start_date for craft in crafts],
                            [craft.duration_days for craft in crafts],
                            [craft.hours_per_week for craft in crafts],
                            [craft.notes for craft in crafts],
                            [self._to_decimal(craft.pay_rate_min) for craft in crafts],
                            [self._to_decimal(craft.pay_rate_max) for craft in crafts],
                            [self._to_decimal(craft.per_diem_rate) for craft in crafts],
                        )
                    except (pg_exc.PostgresError, asyncpg.DataError) as exc:
                        raise CraftRequirementInsertError("craft requirement insert failed") from exc

                    if len(craft_rows) != len(crafts):
                        raise CraftRequirementInsertError(
                            f"craft requirement insert wrote {len(craft_rows)} of {len(crafts)} rows"
                        )

                    return labor_request, [self._craft_row_to_record(row) for row in craft_rows]
        except CONNECTION_ERRORS as exc:
            raise LaborRequestInsertError("database connection lost during labor request insert") from exc

    async def match_agencies(self, *, trade_id: str, region_id: str) -> list[AgencyMatch]:
        pool = await self._get_pool()
        try:
            rows = await pool.fetch(
                """
                select a.id::text as agency_id
                from agencies a
                join agency_trades atr on atr.agency_id = a.id and atr.trade_id = $1::uuid
                join agency_regions arg on arg.agency_id = a.id and arg.region_id = $2::uuid
                order by a.id
                """,
                trade_id,
                region_id,
            )
        except (pg_exc.PostgresError, asyncpg.DataError) as exc:
            raise RepositoryError("agency match query failed") from exc
        except CONNECTION_ERRORS as exc:
            raise RepositoryUnavailableError("database connection lost during agency match") from exc
        return [AgencyMatch(agency_id=row["agency_id"]) for row in rows]

    async def insert_notifications(
        self,
        *,
        labor_request_id: str,
        craft_id: str,
        agency_ids: list[str],
    ) -> list[Notification]:
        if not agency_ids:
            return []

        pool = await self._get_pool()
        try:
            rows = await pool.fetch(
                f"""
                insert into labor_request_notifications (
                  labor_request_id,
                  labor_request_craft_id,
                  agency_id,
                  status
                )
                select $1::uuid, $2::uuid, agency_id, 'pending'
                from unnest($3::uuid[]) as agency_id
                on conflict (labor_request_craft_id, agency_id) do nothing
                returning {_NOTIFICATION_COLUMNS}
                """,
                labor_request_id,
                craft_id,
                agency_ids,
            )
        except (pg_exc.PostgresError, asyncpg.DataError) as exc:
            raise RepositoryError("notification insert failed") from exc
        except CONNECTION_ERRORS as exc:
            raise RepositoryUnavailableError("database connection lost during notification insert") from exc
        return [self._notification_row_to_record(row) for row in rows]

    async def consume_confirmation_token(self, *, token: str) -> LaborRequestConfirmation:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    f"""
                    select
                      {_LABOR_REQUEST_COLUMNS},
                      confirmation_token_expires <= now() as is_expired
                    from labor_requests
                    where confirmation_token = $1
                    for update
                    """,
                    token,
                )
                if not row:
                    raise RepositoryNotFoundError("Invalid or expired token")
                if row["is_expired"] or row["confirmation_token_used_at"] is not None:
                    raise ConfirmationTokenExpiredError("Token has expired")

                used_row = await conn.fetchrow(
                    f"""
                    update labor_requests
                    set confirmation_token_used_at = now(), updated_at = now()
                    where id = $1::uuid
                    returning {_LABOR_REQUEST_COLUMNS}
                    """,
                    row["id"],
                )
                craft_rows = await conn.fetch(
                    """
                    select
                      c.id::text as craft_id,
                      t.name as trade_name,
                      r.name as region_name,
                      count(n.id) as matches
                    from labor_request_crafts c
                    left join trades t on t.id = c.trade_id
                    left join regions r on r.id = c.region_id
                    left join labor_request_notifications n on n.labor_request_craft_id = c.id
                    where c.labor_request_id = $1::uuid
                    group by c.id, t.name, r.name
                    order by c.created_at, c.id
                    """,
                    row["id"],
                )

        return LaborRequestConfirmation(
            request=self._labor_request_row_to_record(used_row),
            crafts=[
                CraftMatchSummary(
                    craft_id=craft_row["craft_id"],
                    trade_name=craft_row["trade_name"],
                    region_name=craft_row["region_name"],
                    matches=int(craft_row["matches"] or 0),
                )
                for craft_row in craft_rows
            ],
        )

    async def list_labor_requests(
        self,
        *,
        status: str | None,
        limit: int,
        offset: int,
    ) -> list[LaborRequest]:
        if status is not None and status not in LABOR_REQUEST_STATUSES:
            raise RepositoryValidationError("status must be one of: pending, active, fulfilled, cancelled")

        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {_LABOR_REQUEST_COLUMNS}
            from labor_requests
            where ($1::text is null or status = $1)
            order by created_at desc, id desc
            limit $2
            offset $3
            """,
            status,
            limit,
            offset,
        )
        return [self._labor_request_row_to_record(row) for row in rows]

    async def update_labor_request_status(self, *, labor_request_id: str, status: str) -> LaborRequest:
        if status not in LABOR_REQUEST_STATUSES:
            raise RepositoryValidationError("status must be one of: pending, active, fulfilled, cancelled")

        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    existing = await conn.fetchrow(
                        """
                        select status
                        from labor_requests
                        where id = $1::uuid
                        for update
                        """,
                        labor_request_id,
                    )
                    if not existing:
                        raise RepositoryNotFoundError("labor request not found")

                    from_status = str(existing["status"])
                    if status != from_status:
                        self._validate_labor_request_transition(from_status=from_status, to_status=status)

                    row = await conn.fetchrow(
                        f"""
                        update labor_requests
                        set status = $2, updated_at = now()
                        where id = $1::uuid
                        returning {_LABOR_REQUEST_COLUMNS}
                        """,
                        labor_request_id,
                        status,
                    )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("labor request not found") from exc
        return self._labor_request_row_to_record(row)

    # Agency notifications

    async def get_notification(self, *, notification_id: str) -> Notification:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                f"""
                select {_NOTIFICATION_COLUMNS}
                from labor_request_notifications
                where id = $1::uuid
                """,
                notification_id,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("notification not found") from exc
        if not row:
            raise RepositoryNotFoundError("notification not found")
        return self._notification_row_to_record(row)

    async def list_owned_agency_ids(self, *, user_id: str) -> set[str]:
        pool = await self._get_pool()
        try:
            rows = await pool.fetch(
                """
                select id::text as id
                from agencies
                where claimed_by = $1::uuid
                """,
                user_id,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError):
            return set()
        return {row["id"] for row in rows}

    async def mark_notification_viewed(self, *, notification_id: str) -> Notification:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                f"""
                update labor_request_notifications
                set
                  status = case when status = 'pending' then 'viewed' else status end,
                  viewed_at = coalesce(viewed_at, now())
                where id = $1::uuid
                returning {_NOTIFICATION_COLUMNS}
                """,
                notification_id,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("notification not found") from exc
        if not row:
            raise RepositoryNotFoundError("notification not found")
        return self._notification_row_to_record(row)

    async def record_notification_response(
        self,
        *,
        notification_id: str,
        interested: bool,
        message: str | None,
    ) -> Notification:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                f"""
                update labor_request_notifications
                set
                  status = 'responded',
                  viewed_at = coalesce(viewed_at, now()),
                  responded_at = now(),
                  response_interested = $2,
                  response_message = $3
                where id = $1::uuid
                returning {_NOTIFICATION_COLUMNS}
                """,
                notification_id,
                interested,
                message,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("notification not found") from exc
        except pg_exc.PostgresError as exc:
            raise RepositoryError("notification response update failed") from exc
        if not row:
            raise RepositoryNotFoundError("notification not found")
        return self._notification_row_to_record(row)

    async def list_agency_inbox(
        self,
        *,
        agency_id: str,
        status: str | None,
        search: str | None,
        limit: int,
        offset: int,
    ) -> list[AgencyInboxItem]:
        if status is not None and status not in NOTIFICATION_STATUSES:
            raise RepositoryValidationError("status must be one of: pending, viewed, responded")

        search_pattern = None
        normalized_search = self._coerce_text(search)
        if normalized_search:
            escaped = normalized_search.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
            search_pattern = f"%{escaped}%"

        pool = await self._get_pool()
        try:
            rows = await pool.fetch(
                """
                select
                  n.id::text as id,
                  n.labor_request_id::text as labor_request_id,
                  n.labor_request_craft_id::text as craft_id,
                  n.agency_id::text as agency_id,
                  n.status,
                  n.viewed_at,
                  n.responded_at,
                  n.response_interested,
                  n.response_message,
                  n.created_at,
                  lr.project_name as lr_project_name,
                  lr.company_name as lr_company_name,
                  lr.contact_email as lr_contact_email,
                  lr.contact_phone as lr_contact_phone,
                  lr.additional_details as lr_additional_details,
                  lr.status as lr_status,
                  lr.confirmation_token_expires as lr_confirmation_token_expires,
                  lr.confirmation_token_used_at as lr_confirmation_token_used_at,
                  lr.created_at as lr_created_at,
                  lr.updated_at as lr_updated_at,
                  c.trade_id::text as c_trade_id,
                  c.region_id::text as c_region_id,
                  c.experience_level as c_experience_level,
                  c.worker_count as c_worker_count,
                  c.start_date as c_start_date,
                  c.duration_days as c_duration_days,
                  c.hours_per_week as c_hours_per_week,
                  c.notes as c_notes,
                  c.pay_rate_min as c_pay_rate_min,
                  c.pay_rate_max as c_pay_rate_max,
                  c.per_diem_rate as c_per_diem_rate,
                  c.created_at as c_created_at,
                  t.name as trade_name,
                  r.name as region_name
                from labor_request_notifications n
                join labor_requests lr on lr.id = n.labor_request_id
                join labor_request_crafts c on c.id = n.labor_request_craft_id
                left join trades t on t.id = c.trade_id
                left join regions r on r.id = c.region_id
                where n.agency_id = $1::uuid
                  and ($2::text is null or n.status = $2)
                  and (
                    $3::text is null
                    or lr.project_name ilike $3
                    or lr.company_name ilike $3
                  )
                order by n.created_at desc, n.id desc
                limit $4
                offset $5
                """,
                agency_id,
                status,
                search_pattern,
                limit,
                offset,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("agency not found") from exc

        return [self._inbox_row_to_record(row) for row in rows]

    async def get_agency_contacts(self, *, agency_ids: list[str]) -> list[AgencyContact]:
        if not agency_ids:
            return []
        pool = await self._get_pool()
        try:
            rows = await pool.fetch(
                """
                select id::text as agency_id, name, email
                from agencies
                where id = any($1::uuid[])
                order by id
                """,
                agency_ids,
            )
        except (pg_exc.PostgresError, asyncpg.DataError) as exc:
            raise RepositoryError("agency contact lookup failed") from exc
        except CONNECTION_ERRORS as exc:
            raise RepositoryUnavailableError("database connection lost during agency contact lookup") from exc
        return [
            AgencyContact(agency_id=row["agency_id"], name=row["name"], email=self._coerce_text(row["email"]))
            for row in rows
        ]

    # Conversations and messages

    async def find_conversation(self, *, participant_a: str, participant_b: str) -> Conversation | None:
        low_id, high_id = ordered_pair(participant_a, participant_b)
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                f"""
                select {_CONVERSATION_COLUMNS}
                from conversations
                where participant_low_id = $1::uuid and participant_high_id = $2::uuid
                """,
                low_id,
                high_id,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryValidationError("participant ids must be UUIDs") from exc
        if not row:
            return None
        return self._conversation_row_to_record(row)

    async def create_conversation(
        self,
        *,
        participant_a: str,
        participant_b: str,
        context_type: str,
        context_id: str | None,
    ) -> Conversation:
        low_id, high_id = ordered_pair(participant_a, participant_b)
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    row = await conn.fetchrow(
                        f"""
                        insert into conversations (
                          participant_low_id,
                          participant_high_id,
                          context_type,
                          context_id
                        )
                        values ($1::uuid, $2::uuid, $3, $4::uuid)
                        returning {_CONVERSATION_COLUMNS}
                        """,
                        low_id,
                        high_id,
                        context_type,
                        context_id,
                    )
                    await conn.execute(
                        """
                        insert into conversation_participants (conversation_id, user_id)
                        values ($1::uuid, $2::uuid), ($1::uuid, $3::uuid)
                        """,
                        row["id"],
                        low_id,
                        high_id,
                    )
        except pg_exc.UniqueViolationError as exc:
            raise RepositoryConflictError("conversation already exists for participant pair") from exc
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryValidationError("participant and context ids must be UUIDs") from exc
        return self._conversation_row_to_record(row)

    async def get_conversation(self, *, conversation_id: str) -> Conversation:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                f"""
                select {_CONVERSATION_COLUMNS}
                from conversations
                where id = $1::uuid
                """,
                conversation_id,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("conversation not found") from exc
        if not row:
            raise RepositoryNotFoundError("conversation not found")
        return self._conversation_row_to_record(row)

    async def insert_message(self, *, conversation_id: str, sender_id: str, content: str) -> Message:
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    row = await conn.fetchrow(
                        f"""
                        insert into messages (conversation_id, sender_id, content)
                        values ($1::uuid, $2::uuid, $3)
                        returning {_MESSAGE_COLUMNS}
                        """,
                        conversation_id,
                        sender_id,
                        content,
                    )
                    await conn.execute(
                        """
                        update conversations
                        set last_message_at = $2, updated_at = now()
                        where id = $1::uuid
                        """,
                        conversation_id,
                        row["created_at"],
                    )
        except pg_exc.ForeignKeyViolationError as exc:
            raise RepositoryNotFoundError("conversation not found") from exc
        except (pg_exc.CheckViolationError, pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryValidationError("message rejected by storage constraints") from exc
        return self._message_row_to_record(row)

    async def recent_message_window(self, *, sender_id: str, since: datetime) -> tuple[int, datetime | None]:
        """Count messages ``sender_id`` wrote after ``since`` and return the oldest of them."""
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                """
                select count(*) as sent, min(created_at) as oldest_at
                from messages
                where sender_id = $1::uuid and created_at > $2
                """,
                sender_id,
                since,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryValidationError("sender id must be a UUID") from exc
        except CONNECTION_ERRORS as exc:
            raise RepositoryUnavailableError("database connection lost during rate limit check") from exc
        return int(row["sent"]), row["oldest_at"]

    async def get_message(self, *, message_id: str) -> Message:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                f"""
                select {_MESSAGE_COLUMNS}
                from messages
                where id = $1::uuid
                """,
                message_id,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("message not found") from exc
        if not row:
            raise RepositoryNotFoundError("message not found")
        return self._message_row_to_record(row)

    async def update_message_content(self, *, message_id: str, content: str) -> Message:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                f"""
                update messages
                set content = $2, edited_at = now()
                where id = $1::uuid and deleted_at is null
                returning {_MESSAGE_COLUMNS}
                """,
                message_id,
                content,
            )
        except pg_exc.CheckViolationError as exc:
            raise RepositoryValidationError("message rejected by storage constraints") from exc
        if not row:
            raise RepositoryConflictError("message was deleted")
        return self._message_row_to_record(row)

    async def tombstone_message(self, *, message_id: str, deleted_by: str) -> Message:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            update messages
            set deleted_at = now(), deleted_by = $2::uuid
            where id = $1::uuid and deleted_at is null
            returning {_MESSAGE_COLUMNS}
            """,
            message_id,
            deleted_by,
        )
        if not row:
            raise RepositoryConflictError("message already deleted")
        return self._message_row_to_record(row)

    async def list_messages(
        self,
        *,
        conversation_id: str,
        before_message_id: str | None,
        limit: int,
    ) -> list[Message]:
        pool = await self._get_pool()
        try:
            rows = await pool.fetch(
                f"""
                select {_MESSAGE_COLUMNS}
                from messages
                where conversation_id = $1::uuid
                  and (
                    $2::uuid is null
                    or (created_at, id) < (
                      select created_at, id
                      from messages
                      where id = $2::uuid
                    )
                  )
                order by created_at desc, id desc
                limit $3
                """,
                conversation_id,
                before_message_id,
                limit,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryValidationError("before must be a message id") from exc
        return [self._message_row_to_record(row) for row in rows]

    async def mark_conversation_read(self, *, conversation_id: str, user_id: str) -> datetime:
        pool = await self._get_pool()
        read_at = await pool.fetchval(
            """
            update conversation_participants
            set last_read_at = now()
            where conversation_id = $1::uuid and user_id = $2::uuid
            returning last_read_at
            """,
            conversation_id,
            user_id,
        )
        if read_at is None:
            raise RepositoryNotFoundError("conversation not found")
        return read_at

    async def list_conversations(
        self,
        *,
        user_id: str,
        unread_only: bool,
        limit: int,
        offset: int,
    ) -> list[ConversationSummary]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select *
            from (
              select
                c.id::text as id,
                c.participant_low_id::text as participant_low_id,
                c.participant_high_id::text as participant_high_id,
                c.context_type,
                c.context_id::text as context_id,
                c.last_message_at,
                c.created_at,
                (
                  select count(*)
                  from messages m
                  where m.conversation_id = c.id
                    and m.sender_id <> $1::uuid
                    and m.deleted_at is null
                    and (cp.last_read_at is null or m.created_at > cp.last_read_at)
                ) as unread_count,
                (
                  select left(m.content, 200)
                  from messages m
                  where m.conversation_id = c.id
                    and m.deleted_at is null
                  order by m.created_at desc, m.id desc
                  limit 1
                ) as last_message_preview
              from conversations c
              join conversation_participants cp on cp.conversation_id = c.id and cp.user_id = $1::uuid
            ) summary
            where (not $2::boolean or summary.unread_count > 0)
            order by summary.last_message_at desc nulls last, summary.created_at desc
            limit $3
            offset $4
            """,
            user_id,
            unread_only,
            limit,
            offset,
        )
        summaries: list[ConversationSummary] = []
        for row in rows:
            conversation = self._conversation_row_to_record(row)
            summaries.append(
                ConversationSummary(
                    conversation=conversation,
                    other_participant_id=conversation.other_participant(user_id),
                    unread_count=int(row["unread_count"] or 0),
                    last_message_preview=row["last_message_preview"],
                )
            )
        return summaries

    async def count_unread(self, *, user_id: str) -> UnreadCount:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            """
            select
              count(m.id) as total_unread,
              count(distinct m.conversation_id) as conversations_with_unread
            from conversation_participants cp
            join messages m on m.conversation_id = cp.conversation_id
            where cp.user_id = $1::uuid
              and m.sender_id <> $1::uuid
              and m.deleted_at is null
              and (cp.last_read_at is null or m.created_at > cp.last_read_at)
            """,
            user_id,
        )
        return UnreadCount(
            total_unread=int(row["total_unread"] or 0),
            conversations_with_unread=int(row["conversations_with_unread"] or 0),
        )

    async def get_profile_contact(self, *, user_id: str) -> ProfileContact | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            """
            select id::text as user_id, full_name, email
            from profiles
            where id = $1::uuid
            """,
            user_id,
        )
        if not row:
            return None
        return ProfileContact(
            user_id=row["user_id"],
            full_name=self._coerce_text(row["full_name"]),
            email=self._coerce_text(row["email"]),
        )

    async def notify(self, *, channel: str, payload: str) -> None:
        pool = await self._get_pool()
        await pool.execute("select pg_notify($1, $2)", channel, payload)

    async def ping(self) -> None:
        pool = await self._get_pool()
        try:
            await pool.fetchval("select 1")
        except (pg_exc.PostgresError, *CONNECTION_ERRORS) as exc:
            raise RepositoryUnavailableError("database ping failed") from exc

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise RepositoryUnavailableError("CM_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        try:
            self._pool = await asyncpg.create_pool(
                dsn=self.database_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=15,
            )
            return self._pool
        except Exception as exc:  # pragma: no cover - depends on environment
            raise RepositoryUnavailableError("database unavailable") from exc

    @staticmethod
    def _labor_request_row_to_record(
        row: asyncpg.Record,
        *,
        prefix: str = "",
        id_key: str = "id",
    ) -> LaborRequest:
        return LaborRequest(
            id=row[id_key],
            project_name=row[f"{prefix}project_name"],
            company_name=row[f"{prefix}company_name"],
            contact_email=row[f"{prefix}contact_email"],
            contact_phone=row[f"{prefix}contact_phone"],
            additional_details=row[f"{prefix}additional_details"],
            status=row[f"{prefix}status"],
            confirmation_token_expires=row[f"{prefix}confirmation_token_expires"],
            confirmation_token_used_at=row[f"{prefix}confirmation_token_used_at"],
            created_at=row[f"{prefix}created_at"],
            updated_at=row[f"{prefix}updated_at"],
        )

    @classmethod
    def _craft_row_to_record(
        cls,
        row: asyncpg.Record,
        *,
        prefix: str = "",
        id_key: str = "id",
    ) -> CraftRequirement:
        return CraftRequirement(
            id=row[id_key],
            labor_request_id=row["labor_request_id"],
            trade_id=row[f"{prefix}trade_id"],
            region_id=row[f"{prefix}region_id"],
            experience_level=row[f"{prefix}experience_level"],
            worker_count=int(row[f"{prefix}worker_count"]),
            start_date=cls._coerce_date(row[f"{prefix}start_date"]),
            duration_days=int(row[f"{prefix}duration_days"]),
            hours_per_week=int(row[f"{prefix}hours_per_week"]),
            notes=row[f"{prefix}notes"],
            pay_rate_min=cls._coerce_float(row[f"{prefix}pay_rate_min"]),
            pay_rate_max=cls._coerce_float(row[f"{prefix}pay_rate_max"]),
            per_diem_rate=cls._coerce_float(row[f"{prefix}per_diem_rate"]),
            created_at=row[f"{prefix}created_at"],
        )

    @staticmethod
    def _notification_row_to_record(row: asyncpg.Record) -> Notification:
        return Notification(
            id=row["id"],
            labor_request_id=row["labor_request_id"],
            craft_id=row["craft_id"],
            agency_id=row["agency_id"],
            status=row["status"],
            viewed_at=row["viewed_at"],
            responded_at=row["responded_at"],
            response_interested=row["response_interested"],
            response_message=row["response_message"],
            created_at=row["created_at"],
        )

    def _inbox_row_to_record(self, row: asyncpg.Record) -> AgencyInboxItem:
        return AgencyInboxItem(
            notification=self._notification_row_to_record(row),
            request=self._labor_request_row_to_record(row, prefix="lr_", id_key="labor_request_id"),
            craft=self._craft_row_to_record(row, prefix="c_", id_key="craft_id"),
            trade_name=row["trade_name"],
            region_name=row["region_name"],
        )

    @staticmethod
    def _conversation_row_to_record(row: asyncpg.Record) -> Conversation:
        return Conversation(
            id=row["id"],
            participant_low_id=row["participant_low_id"],
            participant_high_id=row["participant_high_id"],
            context_type=row["context_type"],
            context_id=row["context_id"],
            last_message_at=row["last_message_at"],
            created_at=row["created_at"],
        )

    @staticmethod
    def _message_row_to_record(row: asyncpg.Record) -> Message:
        return Message(
            id=row["id"],
            conversation_id=row["conversation_id"],
            sender_id=row["sender_id"],
            content=row["content"],
            created_at=row["created_at"],
            edited_at=row["edited_at"],
            deleted_at=row["deleted_at"],
            deleted_by=row["deleted_by"],
        )

    @staticmethod
    def _validate_labor_request_transition(*, from_status: str, to_status: str) -> None:
        allowed = LABOR_REQUEST_TRANSITIONS.get(from_status, set())
        if to_status not in allowed:
            raise RepositoryConflictError(f"invalid labor request transition: {from_status} -> {to_status}")

    @staticmethod
    def _coerce_text(value: Any) -> str | None:
        if value is None:
            return None
        if isinstance(value, str):
            stripped = value.strip()
            return stripped or None
        return str(value)

    @staticmethod
    def _coerce_float(value: Any) -> float | None:
        if value is None:
            return None
        try:
            return float(value)
        except (TypeError, ValueError):
            return None

    @staticmethod
    def _coerce_date(value: Any) -> date:
        if isinstance(value, datetime):
            return value.date()
        if isinstance(value, date):
            return value
        return date.fromisoformat(str(value))

    @staticmethod
    def _to_decimal(value: float | None) -> Decimal | None:
        if value is None:
            return None
        return Decimal(str(value))


@lru_cache
def get_repository() -> PostgresRepository:
    settings = get_settings()
    return PostgresRepository(
        database_url=settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
    )

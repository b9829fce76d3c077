from __future__ import annotations

import asyncio
import logging
import re
import secrets
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from opentelemetry import trace

from craftmatch.services.domain import (
    AgencyInboxItem,
    CraftRequirement,
    LaborRequest,
    LaborRequestConfirmation,
    NewCraftRequirement,
    NewLaborRequest,
    Notification,
    utcnow,
)
from craftmatch.services.email import EmailNotifier
from craftmatch.services.notifications import FanOutSummary, fan_out, notification_event
from craftmatch.services.realtime import RealtimeHub
from craftmatch.services.repository import (
    CraftRequirementInsertError,
    RepositoryError,
    RepositoryForbiddenError,
    RepositoryValidationError,
)

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

CONFIRMATION_TOKEN_BYTES = 32
CONFIRMATION_TOKEN_RE = re.compile(r"^[0-9a-f]{64}$")

REQUEST_INSERT_FAILED = "Failed to create labor request"
CRAFTS_INSERT_FAILED = "Failed to create craft requirements"
NOTIFICATION_WARNING = "Some agencies could not be notified. Please contact support."


class LaborRequestPersistenceError(RepositoryError):
    """Raised when a submission could not be stored; ``public_message`` is safe to return."""

    def __init__(self, public_message: str) -> None:
        super().__init__(public_message)
        self.public_message = public_message


@dataclass(slots=True)
class SubmissionResult:
    labor_request: LaborRequest
    crafts: list[CraftRequirement]
    confirmation_token: str
    fan_out: FanOutSummary

    @property
    def message(self) -> str:
        if self.fan_out.total_matches > 0:
            return (
                f"Successfully matched {self.fan_out.total_matches} agencies "
                f"across {len(self.crafts)} craft requirements"
            )
        return "Labor request created, but no agencies matched the requirements"


def generate_confirmation_token() -> str:
    return secrets.token_hex(CONFIRMATION_TOKEN_BYTES)


def mask_email(email: str) -> str:
    local, separator, domain = email.partition("@")
    if not separator or not local:
        return "***"
    return f"{local[0]}***@{domain}"


def mask_phone(phone: str) -> str:
    digits = re.sub(r"\D", "", phone)
    if len(digits) < 4:
        return "***-***-****"
    return f"***-***-{digits[-4:]}"


def _log_detached_submission(task: asyncio.Future[SubmissionResult]) -> None:
    if task.cancelled():
        logger.warning("labor request submission cancelled after client disconnect")
        return
    exc = task.exception()
    if exc is not None:
        logger.error("labor request submission failed after client disconnect", exc_info=exc)
        return
    logger.info("labor request submission finished after client disconnect id=%s", task.result().labor_request.id)


class LaborRequestService:
    def __init__(
        self,
        *,
        repository: Any,
        hub: RealtimeHub | None,
        email: EmailNotifier | None,
        confirmation_token_ttl_hours: int = 24,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._repository = repository
        self._hub = hub
        self._email = email
        self._token_ttl = timedelta(hours=confirmation_token_ttl_hours)
        self._clock = clock

    async def submit(
        self,
        *,
        project_name: str,
        company_name: str,
        contact_email: str,
        contact_phone: str,
        additional_details: str | None,
        crafts: list[NewCraftRequirement],
    ) -> SubmissionResult:
        token = generate_confirmation_token()
        draft = NewLaborRequest(
            project_name=project_name,
            company_name=company_name,
            contact_email=contact_email,
            contact_phone=contact_phone,
            additional_details=additional_details,
            confirmation_token=token,
            confirmation_token_expires=self._clock() + self._token_ttl,
        )
        task = asyncio.ensure_future(self._persist_and_fan_out(draft, crafts))
        try:
            # A client disconnect cancels the handler; the write and the fan-out still finish.
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            task.add_done_callback(_log_detached_submission)
            raise

    async def _persist_and_fan_out(
        self,
        draft: NewLaborRequest,
        crafts: list[NewCraftRequirement],
    ) -> SubmissionResult:
        with tracer.start_as_current_span("labor_request.submit") as span:
            span.set_attribute("craftmatch.craft_count", len(crafts))
            try:
                labor_request, persisted = await self._repository.create_labor_request(request=draft, crafts=crafts)
            except CraftRequirementInsertError as exc:
                logger.error(
                    "craft requirement insert failed, labor request rolled back crafts=%s",
                    len(crafts),
                    exc_info=True,
                )
                raise LaborRequestPersistenceError(CRAFTS_INSERT_FAILED) from exc
            except RepositoryError as exc:
                logger.error("labor request insert failed", exc_info=True)
                raise LaborRequestPersistenceError(REQUEST_INSERT_FAILED) from exc

            span.set_attribute("craftmatch.labor_request_id", labor_request.id)
            logger.info("labor request stored id=%s crafts=%s", labor_request.id, len(persisted))

            summary = await fan_out(
                self._repository,
                labor_request_id=labor_request.id,
                crafts=persisted,
                hub=self._hub,
            )
            await self._email_notified_agencies(labor_request, summary, craft_count=len(persisted))

        return SubmissionResult(
            labor_request=labor_request,
            crafts=persisted,
            confirmation_token=draft.confirmation_token,
            fan_out=summary,
        )

    async def _email_notified_agencies(
        self,
        labor_request: LaborRequest,
        summary: FanOutSummary,
        *,
        craft_count: int,
    ) -> None:
        agency_ids = summary.notified_agency_ids
        if self._email is None or not agency_ids:
            return
        try:
            contacts = await self._repository.get_agency_contacts(agency_ids=agency_ids)
        except Exception:
            logger.exception("agency contact lookup failed labor_request_id=%s", labor_request.id)
            return
        for contact in contacts:
            result = await self._email.send_labor_request_notification(
                agency=contact,
                labor_request=labor_request,
                craft_count=craft_count,
            )
            if not result.sent:
                logger.info(
                    "labor request email skipped agency_id=%s reason=%s",
                    contact.agency_id,
                    result.reason,
                )

    async def confirm(self, *, token: str) -> LaborRequestConfirmation:
        if not CONFIRMATION_TOKEN_RE.fullmatch(token):
            raise RepositoryValidationError("Invalid token format")
        return await self._repository.consume_confirmation_token(token=token)

    async def view_notification(self, *, notification_id: str, actor_id: str) -> Notification:
        await self._authorize_notification(notification_id=notification_id, actor_id=actor_id)
        notification = await self._repository.mark_notification_viewed(notification_id=notification_id)
        if self._hub is not None:
            await self._hub.publish(notification_event(notification, event_type="UPDATE"))
        return notification

    async def respond_to_notification(
        self,
        *,
        notification_id: str,
        actor_id: str,
        interested: bool,
        message: str | None,
    ) -> Notification:
        await self._authorize_notification(notification_id=notification_id, actor_id=actor_id)
        notification = await self._repository.record_notification_response(
            notification_id=notification_id,
            interested=interested,
            message=message,
        )
        if self._hub is not None:
            await self._hub.publish(notification_event(notification, event_type="UPDATE"))
        return notification

    async def agency_inbox(
        self,
        *,
        agency_id: str,
        actor_id: str,
        status: str | None,
        search: str | None,
        limit: int,
        offset: int,
    ) -> list[AgencyInboxItem]:
        await self.require_agency_owner(agency_id=agency_id, actor_id=actor_id)
        return await self._repository.list_agency_inbox(
            agency_id=agency_id,
            status=status,
            search=search,
            limit=limit,
            offset=offset,
        )

    async def require_agency_owner(self, *, agency_id: str, actor_id: str) -> None:
        owned = await self._repository.list_owned_agency_ids(user_id=actor_id)
        if agency_id not in owned:
            raise RepositoryForbiddenError("not authorized for this agency")

    async def _authorize_notification(self, *, notification_id: str, actor_id: str) -> Notification:
        notification = await self._repository.get_notification(notification_id=notification_id)
        owned = await self._repository.list_owned_agency_ids(user_id=actor_id)
        if notification.agency_id not in owned:
            raise RepositoryForbiddenError("not authorized for this notification")
        return notification

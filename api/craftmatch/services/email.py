from __future__ import annotations

import html
import logging
from dataclasses import dataclass
from functools import lru_cache

import httpx

from craftmatch.core.config import get_settings
from craftmatch.services.domain import AgencyContact, LaborRequest, ProfileContact

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class EmailResult:
    sent: bool
    reason: str | None = None


class EmailNotifier:
    """Sends transactional mail through the Resend HTTP API.

    Every public method is best-effort: configuration gaps and delivery errors
    come back as ``EmailResult(sent=False, reason=...)`` and are never raised.
    """

    def __init__(
        self,
        *,
        api_key: str | None,
        api_url: str,
        sender: str,
        site_url: str | None,
        timeout_seconds: float,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_key = api_key
        self.api_url = api_url.rstrip("/")
        self.sender = sender
        self.site_url = site_url.rstrip("/") if site_url else None
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    async def send_labor_request_notification(
        self,
        *,
        agency: AgencyContact,
        labor_request: LaborRequest,
        craft_count: int,
    ) -> EmailResult:
        if not agency.email:
            return EmailResult(sent=False, reason="agency_email_missing")
        if not self.site_url:
            logger.error("site url not configured; skipping labor request email agency_id=%s", agency.agency_id)
            return EmailResult(sent=False, reason="site_url_missing")

        subject = f"New Labor Request: {labor_request.project_name}"
        if craft_count > 1:
            subject = f"{subject} ({craft_count} crafts)"
        link = f"{self.site_url}/dashboard/agency/{agency.agency_id}/requests"
        text = (
            f"Hi {agency.name},\n\n"
            f"{labor_request.company_name} posted a labor request for {labor_request.project_name} "
            f"with {craft_count} craft requirement{'s' if craft_count != 1 else ''} that match your agency.\n\n"
            f"View the request: {link}\n"
        )
        body = (
            f"<p>Hi {html.escape(agency.name)},</p>"
            f"<p>{html.escape(labor_request.company_name)} posted a labor request for "
            f"<strong>{html.escape(labor_request.project_name)}</strong> that matches your agency.</p>"
            f'<p><a href="{html.escape(link)}">View the request</a></p>'
        )
        return await self._send(to=agency.email, subject=subject, text=text, html_body=body)

    async def send_message_notification(
        self,
        *,
        recipient: ProfileContact,
        sender_name: str,
        conversation_id: str,
        preview: str,
    ) -> EmailResult:
        if not recipient.email:
            return EmailResult(sent=False, reason="recipient_email_missing")
        if not self.site_url:
            return EmailResult(sent=False, reason="site_url_missing")

        link = f"{self.site_url}/messages/{conversation_id}"
        text = f"{sender_name} sent you a message:\n\n{preview}\n\nReply: {link}\n"
        body = (
            f"<p><strong>{html.escape(sender_name)}</strong> sent you a message:</p>"
            f"<blockquote>{html.escape(preview)}</blockquote>"
            f'<p><a href="{html.escape(link)}">Reply</a></p>'
        )
        return await self._send(
            to=recipient.email,
            subject=f"New message from {sender_name}",
            text=text,
            html_body=body,
        )

    async def _send(self, *, to: str, subject: str, text: str, html_body: str) -> EmailResult:
        if not self.api_key:
            logger.warning("resend api key not configured; skipping email subject=%r", subject)
            return EmailResult(sent=False, reason="resend_api_key_missing")

        payload = {
            "from": self.sender,
            "to": [to],
            "subject": subject,
            "text": text,
            "html": html_body,
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self._transport) as client:
                response = await client.post(
                    f"{self.api_url}/emails",
                    json=payload,
                    headers={"Authorization": f"Bearer {self.api_key}"},
                )
                response.raise_for_status()
        except httpx.HTTPError:
            logger.exception("email delivery failed subject=%r", subject)
            return EmailResult(sent=False, reason="delivery_failed")

        logger.info("email sent subject=%r", subject)
        return EmailResult(sent=True)


@lru_cache
def get_email_notifier() -> EmailNotifier:
    settings = get_settings()
    return EmailNotifier(
        api_key=settings.resend_api_key,
        api_url=settings.resend_api_url,
        sender=settings.email_from,
        site_url=settings.site_url,
        timeout_seconds=settings.email_timeout_seconds,
    )

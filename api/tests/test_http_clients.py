from __future__ import annotations

import asyncio
import json
from datetime import datetime, timedelta, timezone

import httpx

from craftmatch.services.domain import AgencyContact, LaborRequest, ProfileContact, UnreadCount
from craftmatch.services.email import EmailNotifier
from craftmatch.services.unread_client import UnreadCountPoller

CREATED_AT = datetime(2026, 3, 2, 15, 0, tzinfo=timezone.utc)


def _labor_request() -> LaborRequest:
    return LaborRequest(
        id="99999999-0000-0000-0000-000000000001",
        project_name="Refinery <Turnaround>",
        company_name="Gulf Industrial",
        contact_email="pat@gulf.example",
        contact_phone="+17135550142",
        additional_details=None,
        status="pending",
        confirmation_token_expires=CREATED_AT + timedelta(hours=24),
        confirmation_token_used_at=None,
        created_at=CREATED_AT,
        updated_at=CREATED_AT,
    )


def _notifier(handler, **overrides) -> EmailNotifier:
    options = {
        "api_key": "re_test",
        "api_url": "https://mail.test",
        "sender": "Craftmatch <noreply@craftmatch.test>",
        "site_url": "https://craftmatch.test/",
        "timeout_seconds": 1.0,
        "transport": httpx.MockTransport(handler),
    }
    options.update(overrides)
    return EmailNotifier(**options)


def test_unread_poller_reads_counts() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"total_unread": 3, "conversations_with_unread": 2})

    poller = UnreadCountPoller(base_url="https://api.test/", access_token="abc", transport=httpx.MockTransport(handler))

    result = asyncio.run(poller.poll_once())

    assert result == UnreadCount(total_unread=3, conversations_with_unread=2)
    assert seen[0].url == "https://api.test/api/messages/unread-count"
    assert seen[0].headers["Authorization"] == "Bearer abc"


def test_unread_poller_keeps_last_value_on_timeout_and_errors() -> None:
    responses = iter(["ok", "timeout", "error", "garbage"])

    def handler(request: httpx.Request) -> httpx.Response:
        outcome = next(responses)
        if outcome == "timeout":
            raise httpx.ReadTimeout("slow", request=request)
        if outcome == "error":
            return httpx.Response(502)
        if outcome == "garbage":
            return httpx.Response(200, json={"unexpected": True})
        return httpx.Response(200, json={"total_unread": 5, "conversations_with_unread": 1})

    poller = UnreadCountPoller(base_url="https://api.test", access_token="abc", transport=httpx.MockTransport(handler))

    async def _scenario() -> list[UnreadCount]:
        return [await poller.poll_once() for _ in range(4)]

    results = asyncio.run(_scenario())

    assert all(result.total_unread == 5 for result in results)
    assert poller.consecutive_failures == 3


def test_unread_poller_run_reports_changes_until_stopped() -> None:
    totals = iter([1, 1, 4])

    def handler(request: httpx.Request) -> httpx.Response:
        total = next(totals, 4)
        return httpx.Response(200, json={"total_unread": total, "conversations_with_unread": 1})

    poller = UnreadCountPoller(base_url="https://api.test", access_token="abc", transport=httpx.MockTransport(handler))
    changes: list[int] = []

    async def _scenario() -> None:
        stop = asyncio.Event()

        async def on_change(count: UnreadCount) -> None:
            changes.append(count.total_unread)
            if count.total_unread == 4:
                stop.set()

        await asyncio.wait_for(poller.run(interval_seconds=0.01, on_change=on_change, stop=stop), timeout=2)

    asyncio.run(_scenario())

    assert changes == [1, 4]


def test_labor_request_email_posts_to_resend() -> None:
    sent: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url == "https://mail.test/emails"
        assert request.headers["Authorization"] == "Bearer re_test"
        sent.append(json.loads(request.content))
        return httpx.Response(200, json={"id": "email-1"})

    notifier = _notifier(handler)
    agency = AgencyContact(agency_id="agency-1", name="Alpha Staffing", email="jobs@alpha.example")

    result = asyncio.run(
        notifier.send_labor_request_notification(agency=agency, labor_request=_labor_request(), craft_count=2)
    )

    assert result.sent is True
    assert sent[0]["to"] == ["jobs@alpha.example"]
    assert sent[0]["subject"] == "New Labor Request: Refinery <Turnaround> (2 crafts)"
    assert "Refinery &lt;Turnaround&gt;" in sent[0]["html"]
    assert "https://craftmatch.test/dashboard/agency/agency-1/requests" in sent[0]["text"]


def test_email_skips_when_not_configured() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no request expected")

    agency = AgencyContact(agency_id="agency-1", name="Alpha Staffing", email="jobs@alpha.example")
    no_key = _notifier(handler, api_key=None)
    no_site = _notifier(handler, site_url=None)
    no_address = _notifier(handler)

    assert asyncio.run(
        no_key.send_labor_request_notification(agency=agency, labor_request=_labor_request(), craft_count=1)
    ).reason == "resend_api_key_missing"
    assert asyncio.run(
        no_site.send_labor_request_notification(agency=agency, labor_request=_labor_request(), craft_count=1)
    ).reason == "site_url_missing"
    assert asyncio.run(
        no_address.send_message_notification(
            recipient=ProfileContact(user_id="u-1", full_name=None, email=None),
            sender_name="Pat",
            conversation_id="c-1",
            preview="hi",
        )
    ).reason == "recipient_email_missing"


def test_email_delivery_failure_is_reported() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, json={"message": "internal"})

    notifier = _notifier(handler)
    recipient = ProfileContact(user_id="u-1", full_name="Sam", email="sam@example.com")

    result = asyncio.run(
        notifier.send_message_notification(recipient=recipient, sender_name="Pat", conversation_id="c-1", preview="hi")
    )

    assert result.sent is False
    assert result.reason == "delivery_failed"

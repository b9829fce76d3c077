from __future__ import annotations

import asyncio
import os
from datetime import date, timedelta
from typing import Any

import pytest
from fastapi.testclient import TestClient

import craftmatch.core.security as security
from conftest import (
    ADMIN_USER,
    AGENCY_ALPHA,
    AGENCY_BRAVO,
    OWNER_ALPHA,
    REGION_HOUSTON,
    TRADE_ELECTRICIAN,
    USER_ONE,
    FakeStore,
)
from craftmatch.core.config import get_settings
from craftmatch.main import app
from craftmatch.services.domain import NewCraftRequirement, NewLaborRequest, utcnow
from craftmatch.services.email import get_email_notifier
from craftmatch.services.notifications import fan_out
from craftmatch.services.realtime import RealtimeEvent, RealtimeHub, get_realtime_hub
from craftmatch.services.repository import get_repository


@pytest.fixture
def authz_client(store: FakeStore, hub: RealtimeHub) -> TestClient:
    os.environ["CM_SUPABASE_URL"] = "https://example.supabase.co"
    os.environ["CM_SUPABASE_ANON_KEY"] = "anon-key"
    get_settings.cache_clear()

    app.dependency_overrides[get_repository] = lambda: store
    app.dependency_overrides[get_realtime_hub] = lambda: hub
    app.dependency_overrides[get_email_notifier] = lambda: None

    with TestClient(app) as client:
        yield client

    app.dependency_overrides.clear()
    os.environ.pop("CM_SUPABASE_URL", None)
    os.environ.pop("CM_SUPABASE_ANON_KEY", None)
    get_settings.cache_clear()


@pytest.fixture
def seeded(store: FakeStore) -> dict[str, str]:
    """Stores one request with a single electrician craft and notifies the matching agencies."""

    async def _seed() -> dict[str, str]:
        labor_request, crafts = await store.create_labor_request(
            request=NewLaborRequest(
                project_name="Hospital Expansion",
                company_name="Bayou Builders",
                contact_email="ops@bayoubuilders.com",
                contact_phone="+17135550199",
                additional_details=None,
                confirmation_token="f" * 64,
                confirmation_token_expires=utcnow() + timedelta(hours=24),
            ),
            crafts=[
                NewCraftRequirement(
                    trade_id=TRADE_ELECTRICIAN,
                    region_id=REGION_HOUSTON,
                    experience_level="Foreman",
                    worker_count=2,
                    start_date=date.today() + timedelta(days=7),
                    duration_days=60,
                    hours_per_week=50,
                )
            ],
        )
        await fan_out(store, labor_request_id=labor_request.id, crafts=crafts)
        by_agency = {item.agency_id: item.id for item in store.notifications.values()}
        return {"request_id": labor_request.id, "alpha": by_agency[AGENCY_ALPHA], "bravo": by_agency[AGENCY_BRAVO]}

    return asyncio.run(_seed())


def _mock_supabase_user(monkeypatch: pytest.MonkeyPatch, user: dict[str, Any]) -> None:
    async def _fake_fetch(**_: Any) -> dict[str, Any]:
        return user

    monkeypatch.setattr(security, "_fetch_supabase_user", _fake_fetch)


def _agency_owner(monkeypatch: pytest.MonkeyPatch, user_id: str = OWNER_ALPHA) -> None:
    _mock_supabase_user(monkeypatch, {"id": user_id, "app_metadata": {"role": "agency_owner"}})


def test_view_requires_bearer_token(authz_client: TestClient, seeded: dict[str, str]) -> None:
    response = authz_client.post(f"/api/labor-requests/notifications/{seeded['alpha']}/view")
    assert response.status_code == 401


def test_view_denies_plain_user_role(
    authz_client: TestClient,
    seeded: dict[str, str],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    _mock_supabase_user(monkeypatch, {"id": USER_ONE, "app_metadata": {"role": "user"}})

    response = authz_client.post(
        f"/api/labor-requests/notifications/{seeded['alpha']}/view",
        headers={"Authorization": "Bearer token"},
    )
    assert response.status_code == 403


def test_role_from_user_metadata_is_ignored(
    authz_client: TestClient,
    seeded: dict[str, str],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    _mock_supabase_user(monkeypatch, {"id": OWNER_ALPHA, "user_metadata": {"role": "admin"}})

    response = authz_client.post(
        f"/api/labor-requests/notifications/{seeded['alpha']}/view",
        headers={"Authorization": "Bearer token"},
    )
    assert response.status_code == 403


def test_view_denies_owner_of_other_agency(
    authz_client: TestClient,
    seeded: dict[str, str],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    _agency_owner(monkeypatch)

    response = authz_client.post(
        f"/api/labor-requests/notifications/{seeded['bravo']}/view",
        headers={"Authorization": "Bearer token"},
    )
    assert response.status_code == 403


def test_view_unknown_notification_is_404(authz_client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    _agency_owner(monkeypatch)

    response = authz_client.post(
        "/api/labor-requests/notifications/00000000-0000-0000-0000-000000000000/view",
        headers={"Authorization": "Bearer token"},
    )
    assert response.status_code == 404


def test_view_marks_notification_viewed_once(
    authz_client: TestClient,
    seeded: dict[str, str],
    store: FakeStore,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    _agency_owner(monkeypatch)
    url = f"/api/labor-requests/notifications/{seeded['alpha']}/view"

    first = authz_client.post(url, headers={"Authorization": "Bearer token"})
    second = authz_client.post(url, headers={"Authorization": "Bearer token"})

    assert first.status_code == 200
    body = first.json()
    assert body["success"] is True
    assert body["notification"]["status"] == "viewed"
    assert second.json()["notification"]["viewed_at"] == body["notification"]["viewed_at"]

    updates = [RealtimeEvent.from_payload(raw) for raw in store.published]
    assert [event.event_type for event in updates] == ["UPDATE", "UPDATE"]


def test_respond_records_interest(
    authz_client: TestClient,
    seeded: dict[str, str],
    store: FakeStore,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    _agency_owner(monkeypatch)

    response = authz_client.post(
        f"/api/labor-requests/notifications/{seeded['alpha']}/respond",
        json={"interested": True, "message": "  We can staff this crew.  "},
        headers={"Authorization": "Bearer token"},
    )

    assert response.status_code == 200
    assert response.json()["notification"]["status"] == "responded"
    stored = store.notifications[seeded["alpha"]]
    assert stored.response_interested is True
    assert stored.response_message == "We can staff this crew."

    viewed = authz_client.post(
        f"/api/labor-requests/notifications/{seeded['alpha']}/view",
        headers={"Authorization": "Bearer token"},
    )
    assert viewed.json()["notification"]["status"] == "responded"


def test_respond_rejects_long_message(
    authz_client: TestClient,
    seeded: dict[str, str],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    _agency_owner(monkeypatch)

    response = authz_client.post(
        f"/api/labor-requests/notifications/{seeded['alpha']}/respond",
        json={"interested": False, "message": "x" * 1001},
        headers={"Authorization": "Bearer token"},
    )
    assert response.status_code == 422


def test_agency_inbox_masks_contact_details(
    authz_client: TestClient,
    seeded: dict[str, str],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    _agency_owner(monkeypatch)

    response = authz_client.get(
        f"/api/agencies/{AGENCY_ALPHA}/labor-requests",
        headers={"Authorization": "Bearer token"},
    )

    assert response.status_code == 200
    body = response.json()
    assert len(body) == 1
    item = body[0]
    assert item["id"] == seeded["alpha"]
    assert item["labor_request"]["contact_email"] == "o***@bayoubuilders.com"
    assert item["labor_request"]["contact_phone"] == "***-***-0199"
    assert item["craft"]["trade_name"] == "Electrician"

    searched = authz_client.get(
        f"/api/agencies/{AGENCY_ALPHA}/labor-requests",
        params={"search": "warehouse"},
        headers={"Authorization": "Bearer token"},
    )
    assert searched.json() == []


def test_agency_inbox_denies_non_owner(
    authz_client: TestClient,
    seeded: dict[str, str],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    _agency_owner(monkeypatch)

    response = authz_client.get(
        f"/api/agencies/{AGENCY_BRAVO}/labor-requests",
        headers={"Authorization": "Bearer token"},
    )
    assert response.status_code == 403


def test_admin_lists_and_advances_labor_requests(
    authz_client: TestClient,
    seeded: dict[str, str],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    _mock_supabase_user(monkeypatch, {"id": ADMIN_USER, "app_metadata": {"role": "admin"}})
    headers = {"Authorization": "Bearer token"}

    listed = authz_client.get("/api/admin/labor-requests", params={"status": "pending"}, headers=headers)
    assert listed.status_code == 200
    assert [row["id"] for row in listed.json()] == [seeded["request_id"]]

    url = f"/api/admin/labor-requests/{seeded['request_id']}"
    assert authz_client.patch(url, json={"status": "fulfilled"}, headers=headers).status_code == 409
    activated = authz_client.patch(url, json={"status": "active"}, headers=headers)
    assert activated.status_code == 200
    assert activated.json()["status"] == "active"


def test_admin_routes_deny_agency_owner(
    authz_client: TestClient,
    seeded: dict[str, str],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    _agency_owner(monkeypatch)

    response = authz_client.get("/api/admin/labor-requests", headers={"Authorization": "Bearer token"})
    assert response.status_code == 403

import logging
from typing import Any

import httpx
from fastapi import Depends, Header, HTTPException, status

from craftmatch.core.auth import ROLE_SCOPES, Principal, Role, parse_bearer_token
from craftmatch.core.config import Settings, get_settings

logger = logging.getLogger(__name__)


async def get_current_principal(
    settings: Settings = Depends(get_settings),
    authorization: str | None = Header(default=None, alias="Authorization"),
) -> Principal:
    token = parse_bearer_token(authorization)
    if token is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
    return await resolve_token_principal(token=token, settings=settings)


async def resolve_token_principal(*, token: str, settings: Settings) -> Principal:
    """Resolve a Supabase access token into a principal.

    Raises 401 for rejected tokens and 503 when Supabase cannot be reached or
    is not configured. The websocket route relies on that split to choose
    between an auth close code and an unavailable close code.
    """
    if not settings.supabase_url or not settings.supabase_anon_key:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="auth is not configured")

    user = await _fetch_supabase_user(
        supabase_url=settings.supabase_url,
        supabase_anon_key=settings.supabase_anon_key,
        token=token,
        timeout_seconds=settings.auth_timeout_seconds,
    )
    user_id = user.get("id")
    if not isinstance(user_id, str) or not user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")

    email = user.get("email")
    return Principal.for_role(
        user_id=user_id,
        role=_role_from_app_metadata(user),
        email=email if isinstance(email, str) else None,
    )


async def _fetch_supabase_user(
    *,
    supabase_url: str,
    supabase_anon_key: str,
    token: str,
    timeout_seconds: float,
) -> dict[str, Any]:
    try:
        async with httpx.AsyncClient(base_url=supabase_url.rstrip("/"), timeout=timeout_seconds) as client:
            response = await client.get(
                "/auth/v1/user",
                headers={"Authorization": f"Bearer {token}", "apikey": supabase_anon_key},
            )
    except httpx.HTTPError as exc:  # pragma: no cover - network dependent
        logger.warning("supabase_user_lookup_failed", extra={"error_type": type(exc).__name__})
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="auth unavailable") from exc

    if response.status_code in {status.HTTP_401_UNAUTHORIZED, status.HTTP_403_FORBIDDEN}:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
    if response.status_code != status.HTTP_200_OK:
        logger.warning("supabase_user_lookup_rejected", extra={"status_code": response.status_code})
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="auth unavailable")

    return response.json()


def _role_from_app_metadata(user: dict[str, Any]) -> Role:
    # user_metadata is writable by the user and never grants a role.
    app_metadata = user.get("app_metadata") or {}
    role = app_metadata.get("role") if isinstance(app_metadata, dict) else None
    if isinstance(role, str) and role in ROLE_SCOPES:
        return role
    return "user"

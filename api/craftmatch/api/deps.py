from fastapi import Depends, HTTPException, status

from craftmatch.core.auth import Principal
from craftmatch.core.config import Settings, get_settings
from craftmatch.services.conversations import ConversationService
from craftmatch.services.email import get_email_notifier
from craftmatch.services.labor_requests import LaborRequestService
from craftmatch.services.realtime import get_realtime_hub
from craftmatch.services.repository import get_repository


def get_labor_request_service(
    settings: Settings = Depends(get_settings),
    repository=Depends(get_repository),
    hub=Depends(get_realtime_hub),
    email=Depends(get_email_notifier),
) -> LaborRequestService:
    return LaborRequestService(
        repository=repository,
        hub=hub,
        email=email,
        confirmation_token_ttl_hours=settings.confirmation_token_ttl_hours,
    )


def get_conversation_service(
    settings: Settings = Depends(get_settings),
    repository=Depends(get_repository),
    hub=Depends(get_realtime_hub),
    email=Depends(get_email_notifier),
) -> ConversationService:
    return ConversationService(
        repository=repository,
        hub=hub,
        email=email,
        edit_window_seconds=settings.message_edit_window_seconds,
        rate_limit_per_minute=settings.message_rate_limit_per_minute,
    )


def require_actor(principal: Principal, scopes: set[str]) -> str:
    missing = principal.missing_scopes(scopes)
    if missing:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"missing required scopes: {missing}")
    return principal.user_id

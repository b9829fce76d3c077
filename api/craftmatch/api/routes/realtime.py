"""
WebSocket bridge from the realtime hub to browser clients.

Clients connect with ``?token=<supabase access token>&table=<table>`` plus the
filter column for that table (``conversation_id`` for messages, ``agency_id``
for labor request notifications). Row events are forwarded as the JSON payload
published by the writer; a text ``ping`` is answered with ``pong``.
"""

import logging
from uuid import uuid4

from fastapi import APIRouter, Depends, HTTPException, Query, WebSocket, WebSocketDisconnect

from craftmatch.core.config import Settings, get_settings
from craftmatch.core.security import resolve_token_principal
from craftmatch.services.realtime import SUBSCRIBABLE_FILTERS, RealtimeEvent, get_realtime_hub
from craftmatch.services.repository import RepositoryError, RepositoryNotFoundError, get_repository

router = APIRouter()
logger = logging.getLogger(__name__)

CLOSE_UNAUTHENTICATED = 4001
CLOSE_INVALID_FILTER = 4002
CLOSE_FORBIDDEN = 4003
CLOSE_UNAVAILABLE = 1011

_TABLE_SCOPES = {
    "messages": "messages:read",
    "labor_request_notifications": "notifications:read",
}


@router.websocket("/realtime")
async def realtime_socket(
    websocket: WebSocket,
    token: str | None = Query(default=None),
    table: str | None = Query(default=None),
    conversation_id: str | None = Query(default=None),
    agency_id: str | None = Query(default=None),
    settings: Settings = Depends(get_settings),
    repository=Depends(get_repository),
    hub=Depends(get_realtime_hub),
):
    if not token:
        await websocket.close(code=CLOSE_UNAUTHENTICATED, reason="Authentication required")
        return

    try:
        principal = await resolve_token_principal(token=token, settings=settings)
    except HTTPException as exc:
        code = CLOSE_UNAVAILABLE if exc.status_code >= 500 else CLOSE_UNAUTHENTICATED
        await websocket.close(code=code, reason=str(exc.detail))
        return

    column = SUBSCRIBABLE_FILTERS.get(table or "")
    value = {"conversation_id": conversation_id, "agency_id": agency_id}.get(column or "")
    if column is None or not value:
        await websocket.close(code=CLOSE_INVALID_FILTER, reason="unsupported realtime filter")
        return
    value = value.lower()

    if _TABLE_SCOPES[table] not in principal.scopes:
        await websocket.close(code=CLOSE_FORBIDDEN, reason="missing scope")
        return

    try:
        allowed = await _can_subscribe(repository, table=table, value=value, actor_id=principal.user_id)
    except RepositoryError:
        logger.exception("realtime authorization failed table=%s", table)
        await websocket.close(code=CLOSE_UNAVAILABLE, reason="authorization unavailable")
        return
    if not allowed:
        await websocket.close(code=CLOSE_FORBIDDEN, reason="not allowed to subscribe")
        return

    await websocket.accept()
    subject = uuid4().hex

    async def forward(event: RealtimeEvent) -> None:
        await websocket.send_text(event.to_payload())

    try:
        try:
            await hub.subscribe(subject=subject, table=table, column=column, value=value, callback=forward)
        except RepositoryError:
            logger.exception("realtime subscribe failed table=%s", table)
            await websocket.close(code=CLOSE_UNAVAILABLE, reason="realtime unavailable")
            return

        logger.info("realtime subscriber connected table=%s %s=%s", table, column, value)
        while True:
            try:
                data = await websocket.receive_text()
            except WebSocketDisconnect:
                break
            if data == "ping":
                await websocket.send_text("pong")
    finally:
        await hub.close_subject(subject)


async def _can_subscribe(repository, *, table: str, value: str, actor_id: str) -> bool:
    if table == "messages":
        try:
            conversation = await repository.get_conversation(conversation_id=value)
        except RepositoryNotFoundError:
            return False
        return conversation.has_participant(actor_id)

    owned = await repository.list_owned_agency_ids(user_id=actor_id)
    return value in {agency_id.lower() for agency_id in owned}

from typing import NoReturn

from fastapi import APIRouter, Depends, HTTPException, Query, status

from craftmatch.api.deps import get_conversation_service, require_actor
from craftmatch.core.security import get_current_principal
from craftmatch.schemas.messages import (
    ConversationCreateRequest,
    ConversationDetailOut,
    ConversationFilter,
    ConversationOut,
    ConversationStartedOut,
    ConversationSummaryOut,
    MessageCreateRequest,
    MessageEditRequest,
    MessageOut,
    ReadMarkerOut,
    UnreadCountOut,
)
from craftmatch.services.conversations import EditWindowExpiredError, MessageDeletedError
from craftmatch.services.repository import (
    RateLimitExceededError,
    RepositoryConflictError,
    RepositoryError,
    RepositoryForbiddenError,
    RepositoryNotFoundError,
    RepositoryUnavailableError,
    RepositoryValidationError,
)

router = APIRouter()


def _raise_http(exc: RepositoryError) -> NoReturn:
    if isinstance(exc, RateLimitExceededError):
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail={"code": exc.code, "message": str(exc), "retry_after": exc.retry_after_seconds},
            headers={"Retry-After": str(exc.retry_after_seconds)},
        ) from exc
    if isinstance(exc, (EditWindowExpiredError, MessageDeletedError)):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": exc.code, "message": str(exc)},
        ) from exc
    if isinstance(exc, RepositoryValidationError):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    if isinstance(exc, RepositoryForbiddenError):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc
    if isinstance(exc, RepositoryNotFoundError):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    if isinstance(exc, RepositoryConflictError):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    if isinstance(exc, RepositoryUnavailableError):
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    raise exc


@router.get("/conversations", response_model=list[ConversationSummaryOut])
async def list_conversations(
    principal=Depends(get_current_principal),
    service=Depends(get_conversation_service),
    filter_: ConversationFilter = Query(default="all", alias="filter"),
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
) -> list[ConversationSummaryOut]:
    actor_id = require_actor(principal, {"messages:read"})

    try:
        summaries = await service.list_conversations(
            user_id=actor_id,
            unread_only=filter_ == "unread",
            limit=limit,
            offset=offset,
        )
    except RepositoryError as exc:
        _raise_http(exc)

    return [ConversationSummaryOut.from_summary(summary) for summary in summaries]


@router.post("/conversations", status_code=status.HTTP_201_CREATED, response_model=ConversationStartedOut)
async def start_conversation(
    payload: ConversationCreateRequest,
    principal=Depends(get_current_principal),
    service=Depends(get_conversation_service),
) -> ConversationStartedOut:
    actor_id = require_actor(principal, {"messages:write"})

    try:
        conversation, message = await service.start_conversation(
            user_id=actor_id,
            recipient_id=str(payload.recipient_id),
            context_type=payload.context_type,
            context_id=str(payload.context_id) if payload.context_id else None,
            initial_message=payload.initial_message,
        )
    except RepositoryError as exc:
        _raise_http(exc)

    return ConversationStartedOut(
        conversation=ConversationOut.from_record(conversation),
        message=MessageOut.from_record(message),
    )


@router.get("/conversations/{conversation_id}", response_model=ConversationDetailOut)
async def get_conversation(
    conversation_id: str,
    principal=Depends(get_current_principal),
    service=Depends(get_conversation_service),
    before: str | None = Query(default=None, min_length=1),
    limit: int = Query(default=50, ge=1, le=100),
) -> ConversationDetailOut:
    actor_id = require_actor(principal, {"messages:read"})

    try:
        page = await service.get_conversation(
            conversation_id=conversation_id,
            viewer_id=actor_id,
            before=before,
            limit=limit,
        )
    except RepositoryError as exc:
        _raise_http(exc)

    return ConversationDetailOut.from_page(page)


@router.post(
    "/conversations/{conversation_id}/messages",
    status_code=status.HTTP_201_CREATED,
    response_model=MessageOut,
)
async def send_message(
    conversation_id: str,
    payload: MessageCreateRequest,
    principal=Depends(get_current_principal),
    service=Depends(get_conversation_service),
) -> MessageOut:
    actor_id = require_actor(principal, {"messages:write"})

    try:
        message = await service.send_message(
            conversation_id=conversation_id,
            sender_id=actor_id,
            content=payload.content,
        )
    except RepositoryError as exc:
        _raise_http(exc)

    return MessageOut.from_record(message)


@router.put("/conversations/{conversation_id}/read", response_model=ReadMarkerOut)
async def mark_conversation_read(
    conversation_id: str,
    principal=Depends(get_current_principal),
    service=Depends(get_conversation_service),
) -> ReadMarkerOut:
    actor_id = require_actor(principal, {"messages:read"})

    try:
        last_read_at = await service.mark_read(conversation_id=conversation_id, user_id=actor_id)
    except RepositoryError as exc:
        _raise_http(exc)

    return ReadMarkerOut(conversation_id=conversation_id, last_read_at=last_read_at)


@router.get("/unread-count", response_model=UnreadCountOut)
async def unread_count(
    principal=Depends(get_current_principal),
    service=Depends(get_conversation_service),
) -> UnreadCountOut:
    actor_id = require_actor(principal, {"messages:read"})

    try:
        counts = await service.unread_count(user_id=actor_id)
    except RepositoryError as exc:
        _raise_http(exc)

    return UnreadCountOut.from_record(counts)


@router.patch("/{message_id}", response_model=MessageOut)
async def edit_message(
    message_id: str,
    payload: MessageEditRequest,
    principal=Depends(get_current_principal),
    service=Depends(get_conversation_service),
) -> MessageOut:
    actor_id = require_actor(principal, {"messages:write"})

    try:
        message = await service.edit_message(message_id=message_id, actor_id=actor_id, content=payload.content)
    except RepositoryError as exc:
        _raise_http(exc)

    return MessageOut.from_record(message)


@router.delete("/{message_id}", response_model=MessageOut)
async def delete_message(
    message_id: str,
    principal=Depends(get_current_principal),
    service=Depends(get_conversation_service),
) -> MessageOut:
    actor_id = require_actor(principal, {"messages:write"})

    try:
        message = await service.delete_message(
            message_id=message_id,
            actor_id=actor_id,
            is_admin="messages:moderate" in principal.scopes,
        )
    except RepositoryError as exc:
        _raise_http(exc)

    return MessageOut.from_record(message)

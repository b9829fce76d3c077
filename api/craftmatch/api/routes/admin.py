from typing import NoReturn

from fastapi import APIRouter, Depends, HTTPException, Query, status

from craftmatch.api.deps import get_conversation_service, require_actor
from craftmatch.core.security import get_current_principal
from craftmatch.schemas.labor_requests import LaborRequestOut, LaborRequestStatus, LaborRequestStatusPatch
from craftmatch.schemas.messages import MessageAuditOut
from craftmatch.services.repository import (
    RepositoryConflictError,
    RepositoryError,
    RepositoryNotFoundError,
    RepositoryUnavailableError,
    RepositoryValidationError,
    get_repository,
)

router = APIRouter()

_ERROR_STATUS: tuple[tuple[type[RepositoryError], int], ...] = (
    (RepositoryValidationError, status.HTTP_422_UNPROCESSABLE_CONTENT),
    (RepositoryNotFoundError, status.HTTP_404_NOT_FOUND),
    (RepositoryConflictError, status.HTTP_409_CONFLICT),
    (RepositoryUnavailableError, status.HTTP_503_SERVICE_UNAVAILABLE),
)


def _raise_http(exc: RepositoryError) -> NoReturn:
    for error_type, status_code in _ERROR_STATUS:
        if isinstance(exc, error_type):
            raise HTTPException(status_code=status_code, detail=str(exc)) from exc
    raise exc


@router.get("/labor-requests", response_model=list[LaborRequestOut])
async def list_labor_requests(
    principal=Depends(get_current_principal),
    repository=Depends(get_repository),
    status_filter: LaborRequestStatus | None = Query(default=None, alias="status"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
) -> list[LaborRequestOut]:
    require_actor(principal, {"admin:read"})
    try:
        rows = await repository.list_labor_requests(status=status_filter, limit=limit, offset=offset)
    except RepositoryError as exc:
        _raise_http(exc)
    return [LaborRequestOut.from_record(row) for row in rows]


@router.patch("/labor-requests/{labor_request_id}", response_model=LaborRequestOut)
async def patch_labor_request_status(
    labor_request_id: str,
    payload: LaborRequestStatusPatch,
    principal=Depends(get_current_principal),
    repository=Depends(get_repository),
) -> LaborRequestOut:
    """Move a request along pending -> active -> fulfilled, or cancel it; other moves are 409."""
    require_actor(principal, {"admin:write"})
    try:
        row = await repository.update_labor_request_status(labor_request_id=labor_request_id, status=payload.status)
    except RepositoryError as exc:
        _raise_http(exc)
    return LaborRequestOut.from_record(row)


@router.get("/messages/{message_id}/audit", response_model=MessageAuditOut)
async def audit_message(
    message_id: str,
    principal=Depends(get_current_principal),
    service=Depends(get_conversation_service),
) -> MessageAuditOut:
    require_actor(principal, {"messages:moderate"})
    try:
        message = await service.audit_message(message_id=message_id)
    except RepositoryError as exc:
        _raise_http(exc)
    return MessageAuditOut.from_record(message)

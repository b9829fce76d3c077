from fastapi import APIRouter, Depends, HTTPException, Query, status

from craftmatch.api.deps import get_labor_request_service, require_actor
from craftmatch.core.security import get_current_principal
from craftmatch.schemas.labor_requests import AgencyInboxItemOut, NotificationStatus
from craftmatch.services.repository import (
    RepositoryForbiddenError,
    RepositoryNotFoundError,
    RepositoryUnavailableError,
    RepositoryValidationError,
)

router = APIRouter()


@router.get("/{agency_id}/labor-requests", response_model=list[AgencyInboxItemOut])
async def list_agency_labor_requests(
    agency_id: str,
    principal=Depends(get_current_principal),
    service=Depends(get_labor_request_service),
    status_filter: NotificationStatus | None = Query(default=None, alias="status"),
    search: str | None = Query(default=None, min_length=1, max_length=100),
    limit: int = Query(default=25, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
) -> list[AgencyInboxItemOut]:
    actor_id = require_actor(principal, {"notifications:read"})

    try:
        items = await service.agency_inbox(
            agency_id=agency_id,
            actor_id=actor_id,
            status=status_filter,
            search=search,
            limit=limit,
            offset=offset,
        )
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryForbiddenError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    return [AgencyInboxItemOut.from_record(item) for item in items]

import logging

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from starlette.requests import Request

from craftmatch.api.deps import get_labor_request_service, require_actor
from craftmatch.core.security import get_current_principal
from craftmatch.schemas.labor_requests import (
    LaborRequestConfirmationOut,
    LaborRequestCreate,
    LaborRequestCreatedOut,
    NotificationRespondRequest,
    NotificationRespondResponse,
    NotificationViewResponse,
    validation_details,
)
from craftmatch.services.labor_requests import NOTIFICATION_WARNING, LaborRequestPersistenceError
from craftmatch.services.repository import (
    ConfirmationTokenExpiredError,
    RepositoryError,
    RepositoryForbiddenError,
    RepositoryNotFoundError,
    RepositoryUnavailableError,
    RepositoryValidationError,
)

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post(
    "",
    status_code=status.HTTP_201_CREATED,
    response_model=LaborRequestCreatedOut,
    response_model_exclude_none=True,
)
async def create_labor_request(
    request: Request,
    service=Depends(get_labor_request_service),
):
    try:
        raw = await request.json()
    except ValueError:
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"error": "Invalid JSON"})

    try:
        payload = LaborRequestCreate.model_validate(raw)
    except ValidationError as exc:
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"error": "Validation failed", "details": validation_details(exc)},
        )

    try:
        result = await service.submit(
            project_name=payload.project_name,
            company_name=payload.company_name,
            contact_email=payload.contact_email,
            contact_phone=payload.contact_phone,
            additional_details=payload.additional_details,
            crafts=payload.craft_requirements(),
        )
    except LaborRequestPersistenceError as exc:
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": exc.public_message},
        )

    return LaborRequestCreatedOut.from_result(result, warning=NOTIFICATION_WARNING)


@router.get("/confirmation", response_model=LaborRequestConfirmationOut)
async def confirm_labor_request(
    token: str | None = Query(default=None),
    service=Depends(get_labor_request_service),
):
    if not token:
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"error": "Token is required"})

    try:
        confirmation = await service.confirm(token=token)
    except RepositoryValidationError as exc:
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"error": str(exc)})
    except RepositoryNotFoundError as exc:
        return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"error": str(exc)})
    except ConfirmationTokenExpiredError as exc:
        return JSONResponse(status_code=status.HTTP_410_GONE, content={"error": str(exc)})
    except RepositoryError:
        logger.exception("confirmation lookup failed")
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": "Internal server error"},
        )

    return LaborRequestConfirmationOut.from_record(confirmation)


@router.post("/notifications/{notification_id}/view", response_model=NotificationViewResponse)
async def view_notification(
    notification_id: str,
    principal=Depends(get_current_principal),
    service=Depends(get_labor_request_service),
) -> NotificationViewResponse:
    actor_id = require_actor(principal, {"notifications:read"})

    try:
        notification = await service.view_notification(notification_id=notification_id, actor_id=actor_id)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryForbiddenError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    return NotificationViewResponse.from_record(notification)


@router.post("/notifications/{notification_id}/respond", response_model=NotificationRespondResponse)
async def respond_to_notification(
    notification_id: str,
    payload: NotificationRespondRequest,
    principal=Depends(get_current_principal),
    service=Depends(get_labor_request_service),
) -> NotificationRespondResponse:
    actor_id = require_actor(principal, {"notifications:write"})

    try:
        notification = await service.respond_to_notification(
            notification_id=notification_id,
            actor_id=actor_id,
            interested=payload.interested,
            message=payload.message.strip() if payload.message else None,
        )
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryForbiddenError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc
    except RepositoryError as exc:
        logger.exception("notification response failed notification_id=%s", notification_id)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to record response",
        ) from exc

    return NotificationRespondResponse.from_record(notification)

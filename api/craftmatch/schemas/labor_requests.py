import re
from datetime import date, datetime, timedelta
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field, ValidationError, ValidationInfo, field_validator
from pydantic.alias_generators import to_camel

from craftmatch.services.domain import (
    AgencyInboxItem,
    LaborRequest,
    LaborRequestConfirmation,
    NewCraftRequirement,
    Notification,
)
from craftmatch.services.labor_requests import SubmissionResult, mask_email, mask_phone

ExperienceLevel = Literal[
    "Helper",
    "Apprentice",
    "Journeyman",
    "Foreman",
    "General Foreman",
    "Superintendent",
    "Project Manager",
]
LaborRequestStatus = Literal["pending", "active", "fulfilled", "cancelled"]
NotificationStatus = Literal["pending", "viewed", "responded"]

_ISO_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_NON_DIGIT_RE = re.compile(r"\D")


def normalize_us_phone(phone: str) -> str:
    """Normalize a US phone number to E.164 (``+15551234567``); raises ``ValueError`` otherwise."""
    cleaned = phone.strip()
    digits = _NON_DIGIT_RE.sub("", cleaned)
    if len(digits) == 11 and digits.startswith("1"):
        digits = digits[1:]
    if len(digits) != 10 or digits[0] in {"0", "1"} or digits[3] in {"0", "1"}:
        raise ValueError("Please enter a valid US phone number")
    return f"+1{digits}"


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, str_strip_whitespace=True)


class CraftRequirementIn(_CamelModel):
    trade_id: UUID
    region_id: UUID
    experience_level: ExperienceLevel
    worker_count: int = Field(ge=1, le=500)
    start_date: date
    duration_days: int = Field(ge=1, le=365)
    hours_per_week: int = Field(ge=1, le=168)
    notes: str | None = Field(default=None, max_length=500)
    pay_rate_min: float | None = Field(default=None, gt=0, le=1000)
    pay_rate_max: float | None = Field(default=None, gt=0, le=1000, validate_default=True)
    per_diem_rate: float | None = Field(default=None, gt=0, le=1000)

    @field_validator("start_date", mode="before")
    @classmethod
    def _require_iso_date(cls, value: Any) -> Any:
        if isinstance(value, str) and not _ISO_DATE_RE.match(value.strip()):
            raise ValueError("Start date must be in YYYY-MM-DD format")
        if not isinstance(value, (str, date)):
            raise ValueError("Start date must be in YYYY-MM-DD format")
        return value

    @field_validator("start_date")
    @classmethod
    def _start_date_window(cls, value: date) -> date:
        today = date.today()
        if value < today:
            raise ValueError("Start date cannot be in the past")
        if value > today + timedelta(days=365):
            raise ValueError("Start date must be within one year")
        return value

    @field_validator("pay_rate_max")
    @classmethod
    def _pay_rate_range(cls, value: float | None, info: ValidationInfo) -> float | None:
        if "pay_rate_min" not in info.data:
            return value
        minimum = info.data["pay_rate_min"]
        if (minimum is None) != (value is None):
            raise ValueError("Both minimum and maximum pay rates must be provided together")
        if minimum is not None and value is not None and value < minimum:
            raise ValueError("Maximum pay rate must be greater than or equal to minimum pay rate")
        return value

    @field_validator("notes")
    @classmethod
    def _blank_notes(cls, value: str | None) -> str | None:
        return value or None

    def to_domain(self) -> NewCraftRequirement:
        return NewCraftRequirement(
            trade_id=str(self.trade_id),
            region_id=str(self.region_id),
            experience_level=self.experience_level,
            worker_count=self.worker_count,
            start_date=self.start_date,
            duration_days=self.duration_days,
            hours_per_week=self.hours_per_week,
            notes=self.notes,
            pay_rate_min=self.pay_rate_min,
            pay_rate_max=self.pay_rate_max,
            per_diem_rate=self.per_diem_rate,
        )


class LaborRequestCreate(_CamelModel):
    project_name: str = Field(min_length=3, max_length=200)
    company_name: str = Field(min_length=2, max_length=200)
    contact_email: EmailStr
    contact_phone: str
    additional_details: str | None = Field(default=None, max_length=2000)
    crafts: list[CraftRequirementIn] = Field(min_length=1, max_length=10)

    @field_validator("contact_email", mode="before")
    @classmethod
    def _normalize_email(cls, value: Any) -> Any:
        if not isinstance(value, str):
            return value
        normalized = value.strip().lower()
        if len(normalized) < 5:
            raise ValueError("Email must be at least 5 characters")
        if len(normalized) > 100:
            raise ValueError("Email must be at most 100 characters")
        return normalized

    @field_validator("contact_phone")
    @classmethod
    def _normalize_phone(cls, value: str) -> str:
        if len(value) < 10 or len(value) > 20:
            raise ValueError("Phone number must be between 10 and 20 characters")
        return normalize_us_phone(value)

    @field_validator("additional_details")
    @classmethod
    def _blank_details(cls, value: str | None) -> str | None:
        return value or None

    @field_validator("crafts")
    @classmethod
    def _unique_trade_region(cls, value: list[CraftRequirementIn]) -> list[CraftRequirementIn]:
        seen: set[tuple[UUID, UUID]] = set()
        for craft in value:
            key = (craft.trade_id, craft.region_id)
            if key in seen:
                raise ValueError("Each trade and region combination can only be requested once")
            seen.add(key)
        return value

    def craft_requirements(self) -> list[NewCraftRequirement]:
        return [craft.to_domain() for craft in self.crafts]


def validation_details(exc: ValidationError) -> dict[str, list[str]]:
    """Flatten pydantic errors into ``{"crafts.0.workerCount": ["..."]}``."""
    details: dict[str, list[str]] = {}
    for error in exc.errors(include_url=False):
        path = ".".join(str(part) for part in error["loc"]) or "body"
        message = error["msg"]
        if error["type"] == "value_error":
            message = str(error.get("ctx", {}).get("error", message))
        details.setdefault(path, []).append(message)
    return details


class CraftMatchOut(_CamelModel):
    craft_id: str
    matches: int


class NotificationErrorOut(_CamelModel):
    craft_id: str
    error: str


class LaborRequestCreatedOut(_CamelModel):
    success: bool = True
    request_id: str
    confirmation_token: str
    total_matches: int
    matches_by_craft: list[CraftMatchOut]
    message: str
    notification_warning: str | None = None
    notification_errors: list[NotificationErrorOut] | None = None

    @classmethod
    def from_result(cls, result: SubmissionResult, *, warning: str) -> "LaborRequestCreatedOut":
        failures = result.fan_out.failures
        return cls(
            request_id=result.labor_request.id,
            confirmation_token=result.confirmation_token,
            total_matches=result.fan_out.total_matches,
            matches_by_craft=[
                CraftMatchOut(craft_id=item.craft_id, matches=item.match_count) for item in result.fan_out.per_craft
            ],
            message=result.message,
            notification_warning=warning if failures else None,
            notification_errors=(
                [NotificationErrorOut(craft_id=failure.craft_id, error=failure.error) for failure in failures]
                if failures
                else None
            ),
        )


class ConfirmedCraftOut(_CamelModel):
    craft_id: str
    trade_name: str | None = None
    region_name: str | None = None
    matches: int


class ConfirmedRequestOut(_CamelModel):
    id: str
    project_name: str
    company_name: str
    contact_email: str
    contact_phone: str
    additional_details: str | None = None
    status: str
    created_at: datetime


class LaborRequestConfirmationOut(_CamelModel):
    request: ConfirmedRequestOut
    craft_count: int
    total_matches: int
    matches_by_craft: list[ConfirmedCraftOut]
    expires_at: datetime

    @classmethod
    def from_record(cls, record: LaborRequestConfirmation) -> "LaborRequestConfirmationOut":
        request = record.request
        return cls(
            request=ConfirmedRequestOut(
                id=request.id,
                project_name=request.project_name,
                company_name=request.company_name,
                contact_email=mask_email(request.contact_email),
                contact_phone=mask_phone(request.contact_phone),
                additional_details=request.additional_details,
                status=request.status,
                created_at=request.created_at,
            ),
            craft_count=len(record.crafts),
            total_matches=record.total_matches,
            matches_by_craft=[
                ConfirmedCraftOut(
                    craft_id=craft.craft_id,
                    trade_name=craft.trade_name,
                    region_name=craft.region_name,
                    matches=craft.matches,
                )
                for craft in record.crafts
            ],
            expires_at=request.confirmation_token_expires,
        )


class NotificationRespondRequest(BaseModel):
    interested: bool
    message: str | None = Field(default=None, max_length=1000)


class NotificationViewedOut(BaseModel):
    id: str
    status: NotificationStatus
    viewed_at: datetime | None = None


class NotificationRespondedOut(BaseModel):
    id: str
    status: NotificationStatus
    responded_at: datetime | None = None


class NotificationViewResponse(BaseModel):
    success: bool = True
    notification: NotificationViewedOut

    @classmethod
    def from_record(cls, record: Notification) -> "NotificationViewResponse":
        return cls(notification=NotificationViewedOut(id=record.id, status=record.status, viewed_at=record.viewed_at))


class NotificationRespondResponse(BaseModel):
    success: bool = True
    notification: NotificationRespondedOut

    @classmethod
    def from_record(cls, record: Notification) -> "NotificationRespondResponse":
        return cls(
            notification=NotificationRespondedOut(
                id=record.id,
                status=record.status,
                responded_at=record.responded_at,
            )
        )


class InboxRequestOut(BaseModel):
    id: str
    project_name: str
    company_name: str
    contact_email: str
    contact_phone: str
    additional_details: str | None = None
    status: str
    created_at: datetime


class InboxCraftOut(BaseModel):
    id: str
    trade_id: str
    trade_name: str | None = None
    region_id: str
    region_name: str | None = None
    experience_level: str
    worker_count: int
    start_date: date
    duration_days: int
    hours_per_week: int
    notes: str | None = None
    pay_rate_min: float | None = None
    pay_rate_max: float | None = None
    per_diem_rate: float | None = None


class AgencyInboxItemOut(BaseModel):
    id: str
    status: NotificationStatus
    created_at: datetime
    viewed_at: datetime | None = None
    responded_at: datetime | None = None
    response_interested: bool | None = None
    labor_request: InboxRequestOut
    craft: InboxCraftOut

    @classmethod
    def from_record(cls, item: AgencyInboxItem) -> "AgencyInboxItemOut":
        notification = item.notification
        request = item.request
        craft = item.craft
        return cls(
            id=notification.id,
            status=notification.status,
            created_at=notification.created_at,
            viewed_at=notification.viewed_at,
            responded_at=notification.responded_at,
            response_interested=notification.response_interested,
            labor_request=InboxRequestOut(
                id=request.id,
                project_name=request.project_name,
                company_name=request.company_name,
                contact_email=mask_email(request.contact_email),
                contact_phone=mask_phone(request.contact_phone),
                additional_details=request.additional_details,
                status=request.status,
                created_at=request.created_at,
            ),
            craft=InboxCraftOut(
                id=craft.id,
                trade_id=craft.trade_id,
                trade_name=item.trade_name,
                region_id=craft.region_id,
                region_name=item.region_name,
                experience_level=craft.experience_level,
                worker_count=craft.worker_count,
                start_date=craft.start_date,
                duration_days=craft.duration_days,
                hours_per_week=craft.hours_per_week,
                notes=craft.notes,
                pay_rate_min=craft.pay_rate_min,
                pay_rate_max=craft.pay_rate_max,
                per_diem_rate=craft.per_diem_rate,
            ),
        )


class LaborRequestOut(BaseModel):
    id: str
    project_name: str
    company_name: str
    contact_email: str
    contact_phone: str
    additional_details: str | None = None
    status: LaborRequestStatus
    confirmation_token_expires: datetime
    confirmation_token_used_at: datetime | None = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_record(cls, record: LaborRequest) -> "LaborRequestOut":
        return cls(
            id=record.id,
            project_name=record.project_name,
            company_name=record.company_name,
            contact_email=record.contact_email,
            contact_phone=record.contact_phone,
            additional_details=record.additional_details,
            status=record.status,
            confirmation_token_expires=record.confirmation_token_expires,
            confirmation_token_used_at=record.confirmation_token_used_at,
            created_at=record.created_at,
            updated_at=record.updated_at,
        )


class LaborRequestStatusPatch(BaseModel):
    status: LaborRequestStatus

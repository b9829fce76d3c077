from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Protocol

from opentelemetry import trace

from craftmatch.services.domain import AgencyMatch, CraftRequirement, Notification
from craftmatch.services.matching import AgencyMatchError, match_agencies
from craftmatch.services.realtime import EventType, RealtimeEvent, RealtimeHub

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

MATCH_FAILED_MESSAGE = "Agency matching failed for this craft requirement"
NOTIFY_FAILED_MESSAGE = "Matched agencies could not be notified for this craft requirement"


class NotificationStore(Protocol):
    async def match_agencies(self, *, trade_id: str, region_id: str) -> list[AgencyMatch]: ...

    async def insert_notifications(
        self,
        *,
        labor_request_id: str,
        craft_id: str,
        agency_ids: list[str],
    ) -> list[Notification]: ...


@dataclass(slots=True)
class CraftFanOutResult:
    craft_id: str
    match_count: int
    notified_agency_ids: list[str] = field(default_factory=list)


@dataclass(slots=True)
class FanOutFailure:
    craft_id: str
    error: str


@dataclass(slots=True)
class FanOutSummary:
    per_craft: list[CraftFanOutResult] = field(default_factory=list)
    failures: list[FanOutFailure] = field(default_factory=list)

    @property
    def total_matches(self) -> int:
        return sum(result.match_count for result in self.per_craft)

    @property
    def notified_agency_ids(self) -> list[str]:
        seen: dict[str, None] = {}
        for result in self.per_craft:
            for agency_id in result.notified_agency_ids:
                seen.setdefault(agency_id, None)
        return list(seen)


def notification_event(notification: Notification, *, event_type: EventType = "INSERT") -> RealtimeEvent:
    return RealtimeEvent(
        table="labor_request_notifications",
        event_type=event_type,
        record={
            "id": notification.id,
            "labor_request_id": notification.labor_request_id,
            "labor_request_craft_id": notification.craft_id,
            "agency_id": notification.agency_id,
            "status": notification.status,
            "created_at": notification.created_at,
        },
    )


async def fan_out(
    store: NotificationStore,
    *,
    labor_request_id: str,
    crafts: list[CraftRequirement],
    hub: RealtimeHub | None = None,
) -> FanOutSummary:
    """Match and notify agencies for each craft; never raises.

    Each craft is independent: a matcher or insert failure is recorded against
    that craft and processing moves on. Re-running for the same craft is safe
    because ``(craft, agency)`` is unique in storage and duplicates are skipped.
    """
    summary = FanOutSummary()
    for craft in crafts:
        with tracer.start_as_current_span("labor_request.fan_out_craft") as span:
            span.set_attribute("craftmatch.craft_id", craft.id)
            try:
                matches = await match_agencies(store, trade_id=craft.trade_id, region_id=craft.region_id)
            except AgencyMatchError as exc:
                logger.error(
                    "agency match failed labor_request_id=%s craft_id=%s cause=%r",
                    labor_request_id,
                    craft.id,
                    exc.cause,
                )
                summary.per_craft.append(CraftFanOutResult(craft_id=craft.id, match_count=0))
                summary.failures.append(FanOutFailure(craft_id=craft.id, error=MATCH_FAILED_MESSAGE))
                continue

            result = CraftFanOutResult(craft_id=craft.id, match_count=len(matches))
            summary.per_craft.append(result)
            span.set_attribute("craftmatch.match_count", len(matches))
            if not matches:
                continue

            try:
                inserted = await store.insert_notifications(
                    labor_request_id=labor_request_id,
                    craft_id=craft.id,
                    agency_ids=[match.agency_id for match in matches],
                )
            except Exception:
                logger.exception(
                    "notification insert failed labor_request_id=%s craft_id=%s agencies=%s",
                    labor_request_id,
                    craft.id,
                    len(matches),
                )
                summary.failures.append(FanOutFailure(craft_id=craft.id, error=NOTIFY_FAILED_MESSAGE))
                continue

            result.notified_agency_ids = [notification.agency_id for notification in inserted]
            if hub is not None:
                for notification in inserted:
                    await hub.publish(notification_event(notification))

    logger.info(
        "fan-out complete labor_request_id=%s crafts=%s total_matches=%s failures=%s",
        labor_request_id,
        len(crafts),
        summary.total_matches,
        len(summary.failures),
    )
    return summary

from __future__ import annotations

import logging
from typing import Protocol

from craftmatch.services.domain import AgencyMatch

logger = logging.getLogger(__name__)


class AgencyMatchSource(Protocol):
    async def match_agencies(self, *, trade_id: str, region_id: str) -> list[AgencyMatch]: ...


class AgencyMatchError(Exception):
    """Raised when eligible agencies could not be resolved for a trade/region pair."""

    def __init__(self, trade_id: str, region_id: str, cause: BaseException | None = None) -> None:
        super().__init__(f"agency match failed for trade={trade_id} region={region_id}")
        self.trade_id = trade_id
        self.region_id = region_id
        self.cause = cause


async def match_agencies(source: AgencyMatchSource, *, trade_id: str, region_id: str) -> list[AgencyMatch]:
    """Return every agency offering ``trade_id`` that also services ``region_id``.

    Always reads current relationship state. Results are ordered by agency id so a
    fixed data snapshot yields a stable order; any storage failure is raised as
    ``AgencyMatchError`` so callers can keep processing sibling crafts.
    """
    try:
        matches = await source.match_agencies(trade_id=trade_id, region_id=region_id)
    except Exception as exc:
        raise AgencyMatchError(trade_id, region_id, exc) from exc

    unique: dict[str, AgencyMatch] = {}
    for match in matches:
        unique.setdefault(match.agency_id, match)
    ordered = [unique[agency_id] for agency_id in sorted(unique)]
    logger.debug("agency match trade=%s region=%s matches=%s", trade_id, region_id, len(ordered))
    return ordered


"""Polling client for the unread-message badge.

Realtime push can miss events, so consumers also poll the unread-count
endpoint on an interval. A slow or failing poll never surfaces as an error:
the poller keeps reporting the last value it saw.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

import httpx

from craftmatch.services.domain import UnreadCount

logger = logging.getLogger(__name__)

UNREAD_COUNT_PATH = "/api/messages/unread-count"


class UnreadCountPoller:
    def __init__(
        self,
        *,
        base_url: str,
        access_token: str,
        timeout_seconds: float = 3.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.headers = {"Authorization": f"Bearer {access_token}"}
        self.timeout_seconds = timeout_seconds
        self.last_known = UnreadCount(total_unread=0, conversations_with_unread=0)
        self.consecutive_failures = 0
        self._transport = transport

    async def poll_once(self) -> UnreadCount:
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self._transport) as client:
                response = await client.get(f"{self.base_url}{UNREAD_COUNT_PATH}", headers=self.headers)
                response.raise_for_status()
                payload = response.json()
            count = UnreadCount(
                total_unread=int(payload["total_unread"]),
                conversations_with_unread=int(payload["conversations_with_unread"]),
            )
        except httpx.TimeoutException:
            self.consecutive_failures += 1
            logger.debug("unread count poll timed out; keeping last known value")
            return self.last_known
        except (httpx.HTTPError, KeyError, TypeError, ValueError) as exc:
            self.consecutive_failures += 1
            logger.warning("unread count poll failed: %s; keeping last known value", exc)
            return self.last_known

        self.consecutive_failures = 0
        self.last_known = count
        return count

    async def run(
        self,
        *,
        interval_seconds: float,
        on_change: Callable[[UnreadCount], Awaitable[None]],
        stop: asyncio.Event,
    ) -> None:
        previous: UnreadCount | None = None
        while not stop.is_set():
            current = await self.poll_once()
            if current != previous:
                await on_change(current)
                previous = current
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval_seconds)
            except asyncio.TimeoutError:
                continue

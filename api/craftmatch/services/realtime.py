"""Row-change push for labor request notifications and conversation messages.

Writers publish events through Postgres ``NOTIFY`` so every API instance sees
them; each instance holds one ``LISTEN`` connection while it has local
subscribers and fans events out to callbacks whose equality filter matches the
row. Delivery is at-most-once: nothing is queued, retried, or replayed, and
clients are expected to re-read state (for example the unread-count poll)
after reconnecting.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import date, datetime
from functools import lru_cache
from typing import Any, Literal, Protocol

import asyncpg  # type: ignore[import-untyped]

from craftmatch.core.config import get_settings
from craftmatch.services.repository import CONNECTION_ERRORS, RepositoryUnavailableError, get_repository

logger = logging.getLogger(__name__)

EventType = Literal["INSERT", "UPDATE"]

# Postgres rejects NOTIFY payloads of 8000 bytes or more.
MAX_NOTIFY_PAYLOAD_BYTES = 7900

SUBSCRIBABLE_FILTERS: dict[str, str] = {
    "labor_request_notifications": "agency_id",
    "messages": "conversation_id",
}


@dataclass(slots=True)
class RealtimeEvent:
    table: str
    event_type: EventType
    record: dict[str, Any] = field(default_factory=dict)

    def to_payload(self) -> str:
        return json.dumps(
            {"table": self.table, "type": self.event_type, "record": self.record},
            default=_json_default,
            separators=(",", ":"),
        )

    @classmethod
    def from_payload(cls, raw: str) -> RealtimeEvent:
        decoded = json.loads(raw)
        if not isinstance(decoded, dict):
            raise ValueError("realtime payload must be a JSON object")
        table = decoded.get("table")
        event_type = decoded.get("type")
        record = decoded.get("record")
        if not isinstance(table, str) or event_type not in {"INSERT", "UPDATE"} or not isinstance(record, dict):
            raise ValueError("realtime payload is missing table, type or record")
        return cls(table=table, event_type=event_type, record=record)


@dataclass(frozen=True, slots=True)
class SubscriptionKey:
    subject: str
    table: str
    column: str
    value: str


EventCallback = Callable[[RealtimeEvent], Awaitable[None]]


class RealtimePublisher(Protocol):
    async def notify(self, *, channel: str, payload: str) -> None: ...


class ListenerConnection(Protocol):
    async def add_listener(self, channel: str, callback: Callable[..., Any]) -> None: ...

    async def remove_listener(self, channel: str, callback: Callable[..., Any]) -> None: ...

    def add_termination_listener(self, callback: Callable[..., Any]) -> None: ...

    def remove_termination_listener(self, callback: Callable[..., Any]) -> None: ...

    def is_closed(self) -> bool: ...

    async def close(self) -> None: ...


class RealtimeHub:
    def __init__(
        self,
        *,
        channel: str,
        publisher: RealtimePublisher | None,
        connect: Callable[[], Awaitable[ListenerConnection]] | None,
        enabled: bool = True,
    ) -> None:
        self.channel = channel
        self.enabled = enabled
        self._publisher = publisher
        self._connect = connect
        self._subscriptions: dict[SubscriptionKey, EventCallback] = {}
        self._connection: ListenerConnection | None = None
        self._lock = asyncio.Lock()
        self._pending: set[asyncio.Task[int]] = set()

    @property
    def is_listening(self) -> bool:
        return self._connection is not None and not self._connection.is_closed()

    @property
    def subscription_count(self) -> int:
        return len(self._subscriptions)

    async def subscribe(
        self,
        *,
        subject: str,
        table: str,
        column: str,
        value: str,
        callback: EventCallback,
    ) -> SubscriptionKey:
        if SUBSCRIBABLE_FILTERS.get(table) != column:
            raise ValueError(f"unsupported realtime filter {table}.{column}")

        key = SubscriptionKey(subject=subject, table=table, column=column, value=value)
        async with self._lock:
            # Re-subscribing the same key replaces the callback instead of doubling delivery.
            self._subscriptions[key] = callback
            try:
                await self._ensure_listening()
            except Exception:
                self._subscriptions.pop(key, None)
                raise
        return key

    async def unsubscribe(self, key: SubscriptionKey) -> None:
        async with self._lock:
            self._subscriptions.pop(key, None)
            await self._release_if_idle()

    async def close_subject(self, subject: str) -> None:
        async with self._lock:
            for key in [key for key in self._subscriptions if key.subject == subject]:
                del self._subscriptions[key]
            await self._release_if_idle()

    async def close(self) -> None:
        async with self._lock:
            self._subscriptions.clear()
            await self._release_if_idle()
        for task in list(self._pending):
            task.cancel()

    async def publish(self, event: RealtimeEvent) -> bool:
        """Best-effort broadcast; failures are logged and reported as ``False``."""
        if not self.enabled or self._publisher is None:
            return False

        payload = event.to_payload()
        if len(payload.encode("utf-8")) > MAX_NOTIFY_PAYLOAD_BYTES:
            trimmed = {key: value for key, value in event.record.items() if key != "content"}
            trimmed["truncated"] = True
            payload = RealtimeEvent(table=event.table, event_type=event.event_type, record=trimmed).to_payload()

        try:
            await self._publisher.notify(channel=self.channel, payload=payload)
        except Exception:
            logger.exception("realtime publish failed table=%s type=%s", event.table, event.event_type)
            return False
        return True

    async def dispatch(self, event: RealtimeEvent) -> int:
        column = SUBSCRIBABLE_FILTERS.get(event.table)
        if column is None:
            return 0
        value = event.record.get(column)
        if value is None:
            return 0

        targets = [
            (key, callback)
            for key, callback in list(self._subscriptions.items())
            if key.table == event.table and key.value == str(value)
        ]
        delivered = 0
        for key, callback in targets:
            try:
                await callback(event)
                delivered += 1
            except Exception:
                logger.warning(
                    "realtime delivery dropped subject=%s table=%s",
                    key.subject,
                    key.table,
                    exc_info=True,
                )
        return delivered

    def _on_notification(self, _connection: Any, _pid: int, _channel: str, payload: str) -> None:
        try:
            event = RealtimeEvent.from_payload(payload)
        except ValueError:
            logger.warning("ignoring malformed realtime payload on channel=%s", self.channel)
            return
        task = asyncio.get_running_loop().create_task(self.dispatch(event))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    def _on_connection_lost(self, connection: Any) -> None:
        if connection is not self._connection:
            return
        self._connection = None
        logger.warning(
            "realtime listener connection lost channel=%s subscriptions=%s",
            self.channel,
            len(self._subscriptions),
        )
        if self._subscriptions:
            task = asyncio.get_running_loop().create_task(self._relisten())
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)

    async def _relisten(self) -> int:
        async with self._lock:
            if not self._subscriptions:
                return 0
            try:
                await self._ensure_listening()
            except RepositoryUnavailableError:
                # The next subscribe retries; existing subscribers stay registered.
                logger.exception("realtime listener reconnect failed channel=%s", self.channel)
                return 0
        return len(self._subscriptions)

    async def _ensure_listening(self) -> None:
        if self._connection is not None:
            if not self._connection.is_closed():
                return
            self._connection = None
            logger.warning("realtime listener connection found closed channel=%s", self.channel)
        if not self.enabled or self._connect is None:
            raise RepositoryUnavailableError("realtime is not configured")
        try:
            connection = await self._connect()
        except (asyncpg.PostgresError, *CONNECTION_ERRORS) as exc:
            raise RepositoryUnavailableError("realtime listener unavailable") from exc
        try:
            await connection.add_listener(self.channel, self._on_notification)
        except Exception:
            await connection.close()
            raise
        connection.add_termination_listener(self._on_connection_lost)
        self._connection = connection
        logger.info("realtime listener started channel=%s", self.channel)

    async def _release_if_idle(self) -> None:
        if self._subscriptions or self._connection is None:
            return
        connection = self._connection
        self._connection = None
        connection.remove_termination_listener(self._on_connection_lost)
        try:
            await connection.remove_listener(self.channel, self._on_notification)
        finally:
            await connection.close()
        logger.info("realtime listener released channel=%s", self.channel)


def _json_default(value: Any) -> str:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    raise TypeError(f"unsupported realtime payload value: {type(value).__name__}")


@lru_cache
def get_realtime_hub() -> RealtimeHub:
    settings = get_settings()
    database_url = settings.database_url

    async def _connect() -> ListenerConnection:
        if not database_url:
            raise RepositoryUnavailableError("CM_DATABASE_URL is required")
        return await asyncpg.connect(dsn=database_url)

    return RealtimeHub(
        channel=settings.realtime_channel,
        publisher=get_repository(),
        connect=_connect,
        enabled=settings.realtime_enabled,
    )

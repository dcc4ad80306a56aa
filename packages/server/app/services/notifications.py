"""
Notification fan-out after committed transitions.

Handles:
- Building notifications from transition outcomes
- HTTP delivery to the email sender with bounded retry
- Realtime publication to Redis for open client portals
- Isolation: a failing sink is logged and never affects the transition
"""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional, Protocol, Sequence

import httpx
import structlog

from app.core.events import publish_event

log = structlog.get_logger()

MAX_RETRIES = 3
RETRY_BASE_SECONDS = 0.5


@dataclass
class Notification:
    kind: str  # stage_delivered | revision_requested | payment_received | ...
    project_id: uuid.UUID
    recipient: str  # freelancer | client
    stage_id: Optional[uuid.UUID] = None
    data: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.kind,
            "project_id": str(self.project_id),
            "stage_id": str(self.stage_id) if self.stage_id else None,
            "recipient": self.recipient,
            "data": self.data,
            "timestamp": self.created_at.isoformat(),
        }


class NotificationSink(Protocol):
    name: str

    async def send(self, notification: Notification) -> None: ...


# ---------------------------------------------------------------------------
# Sinks
# ---------------------------------------------------------------------------


class LoggingNotificationSink:
    """Writes notifications to the structured log."""

    name = "log"

    async def send(self, notification: Notification) -> None:
        log.info(
            "notification.sent",
            kind=notification.kind,
            recipient=notification.recipient,
            project_id=str(notification.project_id),
        )


class HttpNotificationSink:
    """
    Posts {"type", "data"} to the email sender endpoint.

    Connection errors and 5xx responses are retried with exponential
    backoff; 4xx responses are not.
    """

    name = "http"

    def __init__(self, url: str, timeout: int = 10, client: httpx.AsyncClient | None = None):
        self._url = url
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(timeout))

    async def close(self) -> None:
        await self._client.aclose()

    async def send(self, notification: Notification) -> None:
        body = {
            "type": notification.kind,
            "data": {
                **notification.data,
                "recipient": notification.recipient,
                "projectId": str(notification.project_id),
            },
        }

        last_exc: Exception | None = None
        for attempt in range(MAX_RETRIES):
            try:
                resp = await self._client.post(self._url, json=body)
                resp.raise_for_status()
                return
            except httpx.HTTPStatusError as exc:
                if 400 <= exc.response.status_code < 500:
                    raise  # Don't retry 4xx
                last_exc = exc
            except (httpx.ConnectError, httpx.ReadError, httpx.TimeoutException) as exc:
                last_exc = exc

            backoff = RETRY_BASE_SECONDS * (2 ** attempt)
            log.warning(
                "notification.retry",
                kind=notification.kind,
                attempt=attempt + 1,
                backoff=backoff,
                error=str(last_exc),
            )
            await asyncio.sleep(backoff)

        if last_exc:
            raise last_exc


class RedisEventSink:
    """Publishes notifications on the project's realtime channel."""

    name = "redis"

    async def send(self, notification: Notification) -> None:
        await publish_event(notification.project_id, notification.to_dict())


# ---------------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------------


class NotificationDispatcher:
    """Delivers each notification to every sink; failures are logged and swallowed."""

    def __init__(self, sinks: Sequence[NotificationSink]):
        self._sinks = list(sinks)

    async def close(self) -> None:
        for sink in self._sinks:
            if isinstance(sink, HttpNotificationSink):
                await sink.close()

    async def dispatch(self, notifications: Sequence[Notification]) -> None:
        for notification in notifications:
            for sink in self._sinks:
                try:
                    await sink.send(notification)
                except Exception as exc:
                    log.error(
                        "notification.failed",
                        sink=sink.name,
                        kind=notification.kind,
                        project_id=str(notification.project_id),
                        error=str(exc),
                    )


def build_dispatcher(
    notification_url: str = "",
    timeout: int = 10,
) -> NotificationDispatcher:
    """Default sink set: log and realtime always, HTTP when an endpoint is configured."""
    sinks: list[NotificationSink] = [LoggingNotificationSink(), RedisEventSink()]
    if notification_url:
        sinks.append(HttpNotificationSink(notification_url, timeout=timeout))
    return NotificationDispatcher(sinks)

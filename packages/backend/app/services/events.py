"""One-way fan-out of lifecycle events to audit and notification channels.

Emitting never fails the caller: each channel is delivered independently and
a channel error is logged and dropped.
"""

from __future__ import annotations

import asyncio
import datetime
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.models.audit_log import AuditLog


logger = logging.getLogger(__name__)


SECRET_CREATED = "secret.created"
SECRET_UPDATED = "secret.updated"
SECRET_ROTATED = "secret.rotated"
SECRET_DELETED = "secret.deleted"
ROTATION_SUCCESS = "rotation.success"
ROTATION_FAILED = "rotation.failed"


def _utc_now() -> datetime.datetime:
    return datetime.datetime.now(datetime.UTC)


@dataclass(frozen=True)
class LifecycleEvent:
    name: str
    actor: str
    project_id: uuid.UUID | None = None
    target_id: uuid.UUID | None = None
    payload: dict[str, Any] = field(default_factory=dict)
    occurred_at: datetime.datetime = field(default_factory=_utc_now)

    def to_json(self) -> dict[str, Any]:
        return {
            "event": self.name,
            "actor": self.actor,
            "projectId": str(self.project_id) if self.project_id else None,
            "targetId": str(self.target_id) if self.target_id else None,
            "payload": self.payload,
            "occurredAt": self.occurred_at.isoformat(),
        }


class EventSink(Protocol):
    async def emit(self, event: LifecycleEvent) -> None: ...


class EventChannel(Protocol):
    name: str

    async def deliver(self, event: LifecycleEvent) -> None: ...


@dataclass
class NullEventSink:
    async def emit(self, event: LifecycleEvent) -> None:
        _ = event


@dataclass
class RecordingEventSink:
    """Keeps emitted events in memory; used by tests and local tooling."""

    events: list[LifecycleEvent] = field(default_factory=list)

    async def emit(self, event: LifecycleEvent) -> None:
        self.events.append(event)

    def names(self) -> list[str]:
        return [event.name for event in self.events]


class LoggingChannel:
    name = "log"

    async def deliver(self, event: LifecycleEvent) -> None:
        logger.info(
            "lifecycle event %s actor=%s target=%s",
            event.name,
            event.actor,
            event.target_id,
            extra={"event": event.to_json()},
        )


class WebhookChannel:
    name = "webhook"

    def __init__(self, urls: list[str], *, timeout_seconds: float = 5.0, client: httpx.AsyncClient | None = None):
        self._urls = list(urls)
        self._timeout = timeout_seconds
        self._client = client

    async def deliver(self, event: LifecycleEvent) -> None:
        if not self._urls:
            return
        body = event.to_json()
        if self._client is not None:
            await self._post_all(self._client, body)
            return
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            await self._post_all(client, body)

    async def _post_all(self, client: httpx.AsyncClient, body: dict[str, Any]) -> None:
        for url in self._urls:
            try:
                response = await client.post(url, json=body, timeout=self._timeout)
                response.raise_for_status()
            except httpx.HTTPError as exc:
                logger.warning("Notification failed url=%s event=%s error=%s", url, body["event"], exc)


class AuditLogChannel:
    """Persists events as AuditLog rows in a session of its own."""

    name = "audit"

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def deliver(self, event: LifecycleEvent) -> None:
        async with self._session_factory() as session:
            session.add(
                AuditLog(
                    event=event.name,
                    actor=event.actor,
                    project_id=event.project_id,
                    target_id=event.target_id,
                    payload=event.payload,
                    timestamp=event.occurred_at,
                )
            )
            await session.commit()


class FanOutEventSink:
    def __init__(self, channels: list[EventChannel]):
        self._channels = list(channels)

    async def emit(self, event: LifecycleEvent) -> None:
        await asyncio.gather(*(self._deliver(channel, event) for channel in self._channels))

    async def _deliver(self, channel: EventChannel, event: LifecycleEvent) -> None:
        try:
            await channel.deliver(event)
        except Exception:  # noqa: BLE001
            logger.exception("Event channel %s failed for %s", channel.name, event.name)


def build_event_sink(
    *,
    session_factory: async_sessionmaker[AsyncSession] | None,
    webhook_urls: list[str],
    timeout_seconds: float,
) -> FanOutEventSink:
    channels: list[EventChannel] = [LoggingChannel()]
    if session_factory is not None:
        channels.append(AuditLogChannel(session_factory))
    if webhook_urls:
        channels.append(WebhookChannel(webhook_urls, timeout_seconds=timeout_seconds))
    return FanOutEventSink(channels)

"""Periodic rotation dispatcher.

Run with ``python -m app.scheduler``. Each tick rotates every active schedule
whose ``next_rotation`` has passed; overlapping ticks are harmless because a
schedule is claimed before it is rotated.
"""

from __future__ import annotations

import asyncio
import logging

import httpx
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.logging import setup_logging
from app.core.settings import Settings, settings
from app.db.session import SessionLocal
from app.security.crypto import CryptoEnvelope, build_crypto_envelope
from app.services.events import EventSink, build_event_sink
from app.services.rotation import dispatch_due_rotations


logger = logging.getLogger(__name__)


async def run_once(
    session_factory: async_sessionmaker[AsyncSession],
    *,
    envelope: CryptoEnvelope,
    sink: EventSink,
    config: Settings,
    http_client: httpx.AsyncClient | None = None,
) -> int:
    outcomes = await dispatch_due_rotations(
        session_factory,
        envelope=envelope,
        sink=sink,
        concurrency=config.rotation_dispatch_concurrency,
        http_client=http_client,
        webhook_timeout_seconds=config.rotation_webhook_timeout_seconds,
    )
    return len(outcomes)


async def rotation_loop(
    session_factory: async_sessionmaker[AsyncSession],
    *,
    envelope: CryptoEnvelope,
    sink: EventSink,
    config: Settings,
    stop: asyncio.Event | None = None,
) -> None:
    logger.info("Rotation loop started poll=%ss", config.rotation_poll_seconds)
    stop_event = stop or asyncio.Event()
    async with httpx.AsyncClient(timeout=config.rotation_webhook_timeout_seconds) as client:
        while not stop_event.is_set():
            try:
                await run_once(session_factory, envelope=envelope, sink=sink, config=config, http_client=client)
            except Exception:  # noqa: BLE001
                logger.exception("Rotation dispatch tick failed")
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=config.rotation_poll_seconds)
            except TimeoutError:
                pass
    logger.info("Rotation loop stopped")


async def main() -> None:
    setup_logging(level=settings.log_level, json_logs=settings.json_logs)
    envelope = build_crypto_envelope(settings.encryption_key, app_env=settings.app_env)
    sink = build_event_sink(
        session_factory=SessionLocal,
        webhook_urls=settings.notification_webhook_url_list,
        timeout_seconds=settings.notification_timeout_seconds,
    )
    await rotation_loop(SessionLocal, envelope=envelope, sink=sink, config=settings)


if __name__ == "__main__":
    asyncio.run(main())

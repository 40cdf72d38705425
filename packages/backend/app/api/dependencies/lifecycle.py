from __future__ import annotations

import httpx
from fastapi import Request

from app.security.crypto import CryptoEnvelope
from app.services.events import EventSink, NullEventSink


def get_crypto_envelope(request: Request) -> CryptoEnvelope:
    return request.app.state.crypto_envelope


def get_event_sink(request: Request) -> EventSink:
    return getattr(request.app.state, "event_sink", None) or NullEventSink()


def get_webhook_client(request: Request) -> httpx.AsyncClient | None:
    return getattr(request.app.state, "webhook_client", None)

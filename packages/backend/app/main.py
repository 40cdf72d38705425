from contextlib import asynccontextmanager

import httpx
import uvicorn
from fastapi import FastAPI

from app.api.v1.org import router as org_router
from app.api.v1.rotation import router as rotation_router
from app.api.v1.secrets import router as secrets_router
from app.core.logging import setup_logging
from app.core.settings import settings
from app.db import model_registry as _model_registry  # noqa: F401
from app.db.session import SessionLocal
from app.security.crypto import build_crypto_envelope
from app.services.events import build_event_sink


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging(level=settings.log_level, json_logs=settings.json_logs)
    app.state.crypto_envelope = build_crypto_envelope(settings.encryption_key, app_env=settings.app_env)
    app.state.event_sink = build_event_sink(
        session_factory=SessionLocal,
        webhook_urls=settings.notification_webhook_url_list,
        timeout_seconds=settings.notification_timeout_seconds,
    )
    async with httpx.AsyncClient(timeout=settings.rotation_webhook_timeout_seconds) as client:
        app.state.webhook_client = client
        yield


app = FastAPI(title="Keyhaven API", lifespan=lifespan)
app.include_router(secrets_router)
app.include_router(rotation_router)
app.include_router(org_router)


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}


if __name__ == "__main__":
    uvicorn.run("app.main:app", host=settings.app_host, port=settings.app_port, reload=settings.app_env == "development")

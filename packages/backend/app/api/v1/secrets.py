from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, Query, Response
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies.auth import get_current_subject
from app.api.dependencies.lifecycle import get_crypto_envelope, get_event_sink
from app.core.errors import LifecycleError
from app.core.problems import lifecycle_problem
from app.db.session import get_db_session
from app.schemas.secrets import (
    CreateSecretRequest,
    ExpiringSecretResponse,
    RestoreSecretRequest,
    SecretHistoryResponse,
    SecretResponse,
    SecretsListResponse,
    UpdateSecretRequest,
)
from app.security.crypto import CryptoEnvelope
from app.services.events import EventSink
from app.services.secrets import (
    create_secret,
    delete_secret,
    get_secret,
    list_expiring_secrets,
    list_secret_history,
    list_secrets,
    restore_secret_version,
    update_secret,
)


router = APIRouter(prefix="/api/v1/secrets", tags=["secrets"])


@router.post("", response_model=SecretResponse, status_code=201)
async def create_secret_endpoint(
    payload: CreateSecretRequest,
    subject_id: str = Depends(get_current_subject),
    db: AsyncSession = Depends(get_db_session),
    envelope: CryptoEnvelope = Depends(get_crypto_envelope),
    sink: EventSink = Depends(get_event_sink),
) -> SecretResponse:
    try:
        view = await create_secret(db, envelope=envelope, sink=sink, actor=subject_id, payload=payload)
    except LifecycleError as exc:
        return lifecycle_problem(exc)
    return SecretResponse.from_view(view)


@router.get("", response_model=SecretsListResponse)
async def list_secrets_endpoint(
    project_id: uuid.UUID = Query(),
    branch_id: uuid.UUID | None = Query(default=None),
    subject_id: str = Depends(get_current_subject),
    db: AsyncSession = Depends(get_db_session),
    envelope: CryptoEnvelope = Depends(get_crypto_envelope),
) -> SecretsListResponse:
    try:
        views = await list_secrets(
            db,
            envelope=envelope,
            actor=subject_id,
            project_id=project_id,
            branch_id=branch_id,
        )
    except LifecycleError as exc:
        return lifecycle_problem(exc)
    return SecretsListResponse(items=[SecretResponse.from_view(view) for view in views])


@router.get("/expiring", response_model=list[ExpiringSecretResponse])
async def list_expiring_secrets_endpoint(
    project_id: uuid.UUID = Query(),
    days: int = Query(default=30, ge=0, le=3650),
    subject_id: str = Depends(get_current_subject),
    db: AsyncSession = Depends(get_db_session),
) -> list[ExpiringSecretResponse]:
    try:
        views = await list_expiring_secrets(db, actor=subject_id, project_id=project_id, days=days)
    except LifecycleError as exc:
        return lifecycle_problem(exc)
    return [ExpiringSecretResponse.from_view(view) for view in views]


@router.get("/{secret_id}", response_model=SecretResponse)
async def get_secret_endpoint(
    secret_id: uuid.UUID,
    subject_id: str = Depends(get_current_subject),
    db: AsyncSession = Depends(get_db_session),
    envelope: CryptoEnvelope = Depends(get_crypto_envelope),
) -> SecretResponse:
    try:
        view = await get_secret(db, envelope=envelope, actor=subject_id, secret_id=secret_id)
    except LifecycleError as exc:
        return lifecycle_problem(exc)
    return SecretResponse.from_view(view)


@router.patch("/{secret_id}", response_model=SecretResponse)
async def update_secret_endpoint(
    secret_id: uuid.UUID,
    payload: UpdateSecretRequest,
    subject_id: str = Depends(get_current_subject),
    db: AsyncSession = Depends(get_db_session),
    envelope: CryptoEnvelope = Depends(get_crypto_envelope),
    sink: EventSink = Depends(get_event_sink),
) -> SecretResponse:
    try:
        view = await update_secret(
            db,
            envelope=envelope,
            sink=sink,
            actor=subject_id,
            secret_id=secret_id,
            patch=payload,
        )
    except LifecycleError as exc:
        return lifecycle_problem(exc)
    return SecretResponse.from_view(view)


@router.delete("/{secret_id}", status_code=204)
async def delete_secret_endpoint(
    secret_id: uuid.UUID,
    subject_id: str = Depends(get_current_subject),
    db: AsyncSession = Depends(get_db_session),
    sink: EventSink = Depends(get_event_sink),
) -> Response:
    try:
        await delete_secret(db, sink=sink, actor=subject_id, secret_id=secret_id)
    except LifecycleError as exc:
        return lifecycle_problem(exc)
    return Response(status_code=204)


@router.get("/{secret_id}/history", response_model=list[SecretHistoryResponse])
async def list_secret_history_endpoint(
    secret_id: uuid.UUID,
    subject_id: str = Depends(get_current_subject),
    db: AsyncSession = Depends(get_db_session),
    envelope: CryptoEnvelope = Depends(get_crypto_envelope),
) -> list[SecretHistoryResponse]:
    try:
        entries = await list_secret_history(db, envelope=envelope, actor=subject_id, secret_id=secret_id)
    except LifecycleError as exc:
        return lifecycle_problem(exc)
    return [SecretHistoryResponse.from_entry(entry) for entry in entries]


@router.post("/{secret_id}/restore", response_model=SecretResponse)
async def restore_secret_endpoint(
    secret_id: uuid.UUID,
    payload: RestoreSecretRequest,
    subject_id: str = Depends(get_current_subject),
    db: AsyncSession = Depends(get_db_session),
    envelope: CryptoEnvelope = Depends(get_crypto_envelope),
    sink: EventSink = Depends(get_event_sink),
) -> SecretResponse:
    try:
        view = await restore_secret_version(
            db,
            envelope=envelope,
            sink=sink,
            actor=subject_id,
            secret_id=secret_id,
            version=payload.version,
        )
    except LifecycleError as exc:
        return lifecycle_problem(exc)
    return SecretResponse.from_view(view)

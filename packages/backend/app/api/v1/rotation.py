from __future__ import annotations

import uuid

import httpx
from fastapi import APIRouter, Depends, Query, Response
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies.auth import get_current_subject
from app.api.dependencies.lifecycle import get_crypto_envelope, get_event_sink, get_webhook_client
from app.core.errors import LifecycleError
from app.core.problems import lifecycle_problem
from app.core.settings import settings
from app.db.session import get_db_session
from app.schemas.rotation import (
    CreateScheduleRequest,
    RotateSecretRequest,
    RotationLogResponse,
    RotationOutcomeResponse,
    RotationScheduleResponse,
    UpdateScheduleStatusRequest,
)
from app.security.crypto import CryptoEnvelope
from app.services.events import EventSink
from app.services.rotation import (
    create_schedule,
    delete_schedule,
    list_rotation_history,
    list_schedules,
    rotate_secret,
    set_schedule_status,
)


router = APIRouter(prefix="/api/v1/rotation", tags=["rotation"])


@router.post("/schedules", response_model=RotationScheduleResponse, status_code=201)
async def create_schedule_endpoint(
    payload: CreateScheduleRequest,
    subject_id: str = Depends(get_current_subject),
    db: AsyncSession = Depends(get_db_session),
) -> RotationScheduleResponse:
    try:
        schedule = await create_schedule(
            db,
            actor=subject_id,
            payload=payload,
            initial_delay_days=settings.rotation_initial_delay_days,
            first_run_uses_interval=settings.rotation_first_run_uses_interval,
        )
    except LifecycleError as exc:
        return lifecycle_problem(exc)
    return RotationScheduleResponse.from_schedule(schedule)


@router.get("/schedules", response_model=list[RotationScheduleResponse])
async def list_schedules_endpoint(
    project_id: uuid.UUID = Query(),
    subject_id: str = Depends(get_current_subject),
    db: AsyncSession = Depends(get_db_session),
) -> list[RotationScheduleResponse]:
    try:
        schedules = await list_schedules(db, actor=subject_id, project_id=project_id)
    except LifecycleError as exc:
        return lifecycle_problem(exc)
    return [RotationScheduleResponse.from_schedule(schedule) for schedule in schedules]


@router.patch("/schedules/{schedule_id}/status", response_model=RotationScheduleResponse)
async def set_schedule_status_endpoint(
    schedule_id: uuid.UUID,
    payload: UpdateScheduleStatusRequest,
    subject_id: str = Depends(get_current_subject),
    db: AsyncSession = Depends(get_db_session),
) -> RotationScheduleResponse:
    try:
        schedule = await set_schedule_status(db, actor=subject_id, schedule_id=schedule_id, status=payload.status)
    except LifecycleError as exc:
        return lifecycle_problem(exc)
    return RotationScheduleResponse.from_schedule(schedule)


@router.delete("/schedules/{schedule_id}", status_code=204)
async def delete_schedule_endpoint(
    schedule_id: uuid.UUID,
    subject_id: str = Depends(get_current_subject),
    db: AsyncSession = Depends(get_db_session),
) -> Response:
    try:
        await delete_schedule(db, actor=subject_id, schedule_id=schedule_id)
    except LifecycleError as exc:
        return lifecycle_problem(exc)
    return Response(status_code=204)


@router.post("/schedules/{schedule_id}/rotate", response_model=RotationOutcomeResponse)
async def rotate_secret_endpoint(
    schedule_id: uuid.UUID,
    payload: RotateSecretRequest,
    subject_id: str = Depends(get_current_subject),
    db: AsyncSession = Depends(get_db_session),
    envelope: CryptoEnvelope = Depends(get_crypto_envelope),
    sink: EventSink = Depends(get_event_sink),
    webhook_client: httpx.AsyncClient | None = Depends(get_webhook_client),
) -> RotationOutcomeResponse:
    try:
        outcome = await rotate_secret(
            db,
            envelope=envelope,
            sink=sink,
            actor=subject_id,
            schedule_id=schedule_id,
            new_value=payload.new_value,
            http_client=webhook_client,
            webhook_timeout_seconds=settings.rotation_webhook_timeout_seconds,
        )
    except LifecycleError as exc:
        return lifecycle_problem(exc)
    return RotationOutcomeResponse(
        log=RotationLogResponse.from_entry(outcome.log),
        new_version=outcome.new_version,
    )


@router.get("/history", response_model=list[RotationLogResponse])
async def list_rotation_history_endpoint(
    project_id: uuid.UUID = Query(),
    limit: int = Query(default=50, ge=1, le=500),
    subject_id: str = Depends(get_current_subject),
    db: AsyncSession = Depends(get_db_session),
) -> list[RotationLogResponse]:
    try:
        entries = await list_rotation_history(db, actor=subject_id, project_id=project_id, limit=limit)
    except LifecycleError as exc:
        return lifecycle_problem(exc)
    return [RotationLogResponse.from_entry(entry) for entry in entries]

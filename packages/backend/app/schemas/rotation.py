from __future__ import annotations

import datetime
import uuid
from typing import Any

from pydantic import BaseModel, Field

from app.models.rotation import RotationFrequency, RotationMethod, ScheduleStatus


class CreateScheduleRequest(BaseModel):
    secret_id: uuid.UUID
    frequency: RotationFrequency
    custom_days: int | None = None
    method: RotationMethod
    webhook_url: str | None = Field(default=None, max_length=2048)


class UpdateScheduleStatusRequest(BaseModel):
    status: ScheduleStatus


class RotateSecretRequest(BaseModel):
    new_value: str | None = None


class RotationScheduleResponse(BaseModel):
    id: uuid.UUID
    secret_id: uuid.UUID
    project_id: uuid.UUID
    environment: str
    frequency: str
    custom_days: int | None
    method: str
    webhook_url: str | None
    status: str
    next_rotation: datetime.datetime
    last_rotation: datetime.datetime | None
    rotating: bool
    created_at: datetime.datetime

    @classmethod
    def from_schedule(cls, schedule: Any) -> "RotationScheduleResponse":
        return cls(
            id=schedule.id,
            secret_id=schedule.secret_id,
            project_id=schedule.project_id,
            environment=schedule.environment,
            frequency=schedule.frequency.value,
            custom_days=schedule.custom_days,
            method=schedule.method.value,
            webhook_url=schedule.webhook_url,
            status=schedule.status.value,
            next_rotation=schedule.next_rotation,
            last_rotation=schedule.last_rotation,
            rotating=schedule.active_log_id is not None,
            created_at=schedule.created_at,
        )


class RotationLogResponse(BaseModel):
    id: uuid.UUID
    schedule_id: uuid.UUID
    secret_id: uuid.UUID
    secret_key: str
    status: str
    triggered_by: str
    started_at: datetime.datetime
    completed_at: datetime.datetime | None
    duration_ms: int | None
    error: str | None

    @classmethod
    def from_entry(cls, entry: Any) -> "RotationLogResponse":
        return cls(
            id=entry.id,
            schedule_id=entry.schedule_id,
            secret_id=entry.secret_id,
            secret_key=entry.secret_key,
            status=entry.status.value,
            triggered_by=entry.triggered_by,
            started_at=entry.started_at,
            completed_at=entry.completed_at,
            duration_ms=entry.duration_ms,
            error=entry.error,
        )


class RotationOutcomeResponse(BaseModel):
    log: RotationLogResponse
    new_version: str | None

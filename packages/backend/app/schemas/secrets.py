from __future__ import annotations

import datetime
import uuid
from typing import Any

from pydantic import BaseModel, Field

from app.models.secret import EnvironmentType, RotationPolicy


class CreateSecretRequest(BaseModel):
    project_id: uuid.UUID
    branch_id: uuid.UUID | None = None
    key: str = Field(max_length=255)
    value: str
    description: str = ""
    environment_type: EnvironmentType = EnvironmentType.DEVELOPMENT
    type: str = Field(default="API Key", max_length=64)
    permission: list[str] = Field(default_factory=list)
    expiry_date: datetime.datetime | None = None
    rotation_policy: RotationPolicy = RotationPolicy.MANUAL


class UpdateSecretRequest(BaseModel):
    value: str | None = None
    description: str | None = None
    environment_type: EnvironmentType | None = None
    type: str | None = Field(default=None, max_length=64)
    permission: list[str] | None = None
    expiry_date: datetime.datetime | None = None
    clear_expiry: bool = False
    rotation_policy: RotationPolicy | None = None
    change_reason: str | None = Field(default=None, max_length=255)


class RestoreSecretRequest(BaseModel):
    version: str = Field(min_length=1, max_length=32)


class SecretHistoryResponse(BaseModel):
    version: str
    value: str
    description: str
    updated_by: str
    updated_at: datetime.datetime
    change_reason: str | None

    @classmethod
    def from_entry(cls, entry: Any) -> "SecretHistoryResponse":
        return cls(
            version=entry.version,
            value=entry.value,
            description=entry.description,
            updated_by=entry.updated_by,
            updated_at=entry.updated_at,
            change_reason=entry.change_reason,
        )


class SecretResponse(BaseModel):
    id: uuid.UUID
    project_id: uuid.UUID
    branch_id: uuid.UUID | None
    key: str
    value: str
    description: str
    environment_type: str
    type: str
    version: str
    permission: list[str]
    expiry_date: datetime.datetime | None
    rotation_policy: str
    updated_by: str
    last_updated: datetime.datetime
    created_at: datetime.datetime
    history: list[SecretHistoryResponse]

    @classmethod
    def from_view(cls, view: Any) -> "SecretResponse":
        return cls(
            id=view.id,
            project_id=view.project_id,
            branch_id=view.branch_id,
            key=view.key,
            value=view.value,
            description=view.description,
            environment_type=view.environment_type.value,
            type=view.type,
            version=view.version,
            permission=list(view.permission),
            expiry_date=view.expiry_date,
            rotation_policy=view.rotation_policy.value,
            updated_by=view.updated_by,
            last_updated=view.last_updated,
            created_at=view.created_at,
            history=[SecretHistoryResponse.from_entry(entry) for entry in view.history],
        )


class SecretsListResponse(BaseModel):
    items: list[SecretResponse]


class ExpiringSecretResponse(BaseModel):
    id: uuid.UUID
    key: str
    environment_type: str
    expiry_date: datetime.datetime
    days_until_expiry: int
    expired: bool

    @classmethod
    def from_view(cls, view: Any) -> "ExpiringSecretResponse":
        return cls(
            id=view.id,
            key=view.key,
            environment_type=view.environment_type.value,
            expiry_date=view.expiry_date,
            days_until_expiry=view.days_until_expiry,
            expired=view.expired,
        )

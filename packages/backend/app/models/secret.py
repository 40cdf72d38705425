from __future__ import annotations

import datetime
import enum
import uuid

from sqlalchemy import JSON, DateTime, Enum, ForeignKey, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base, enum_values, utc_now


class EnvironmentType(str, enum.Enum):
    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


class RotationPolicy(str, enum.Enum):
    MANUAL = "manual"
    AUTO = "auto"
    INTERVAL = "interval"


class Secret(Base):
    __tablename__ = "secrets"
    __table_args__ = (UniqueConstraint("project_id", "branch_id", "key", name="uq_secrets_project_branch_key"),)

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    project_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    # NULL means the secret is project-global rather than bound to a branch.
    branch_id: Mapped[uuid.UUID | None] = mapped_column(nullable=True, index=True)
    key: Mapped[str] = mapped_column(String(255), nullable=False)
    encrypted_value: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    environment_type: Mapped[EnvironmentType] = mapped_column(
        Enum(EnvironmentType, name="environment_type", values_callable=enum_values),
        nullable=False,
        default=EnvironmentType.DEVELOPMENT,
    )
    type: Mapped[str] = mapped_column(String(64), nullable=False, default="API Key")
    version: Mapped[str] = mapped_column(String(32), nullable=False, default="1")
    permission: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    expiry_date: Mapped[datetime.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    rotation_policy: Mapped[RotationPolicy] = mapped_column(
        Enum(RotationPolicy, name="rotation_policy", values_callable=enum_values),
        nullable=False,
        default=RotationPolicy.MANUAL,
    )
    updated_by: Mapped[str] = mapped_column(String(255), nullable=False)
    last_updated: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utc_now,
    )
    created_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utc_now,
    )


class SecretHistoryEntry(Base):
    __tablename__ = "secret_history"
    __table_args__ = (UniqueConstraint("secret_id", "version", name="uq_secret_history_secret_version"),)

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    secret_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("secrets.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    version: Mapped[str] = mapped_column(String(32), nullable=False)
    # NULL when the write did not change the value.
    encrypted_value: Mapped[str | None] = mapped_column(Text, nullable=True)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    updated_by: Mapped[str] = mapped_column(String(255), nullable=False)
    updated_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utc_now,
    )
    change_reason: Mapped[str | None] = mapped_column(String(255), nullable=True)

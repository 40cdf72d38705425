from __future__ import annotations

import datetime
import enum
import uuid

from sqlalchemy import DateTime, Enum, ForeignKey, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base, enum_values, utc_now


class RotationFrequency(str, enum.Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    CUSTOM = "custom"


class RotationMethod(str, enum.Enum):
    MANUAL = "manual"
    AUTO_GENERATE = "auto-generate"
    WEBHOOK = "webhook"


class ScheduleStatus(str, enum.Enum):
    ACTIVE = "active"
    PAUSED = "paused"


class RotationLogStatus(str, enum.Enum):
    IN_PROGRESS = "in-progress"
    SUCCESS = "success"
    FAILED = "failed"


class RotationSchedule(Base):
    __tablename__ = "rotation_schedules"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    secret_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("secrets.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    project_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    environment: Mapped[str] = mapped_column(String(32), nullable=False)
    frequency: Mapped[RotationFrequency] = mapped_column(
        Enum(RotationFrequency, name="rotation_frequency", values_callable=enum_values),
        nullable=False,
    )
    custom_days: Mapped[int | None] = mapped_column(nullable=True)
    method: Mapped[RotationMethod] = mapped_column(
        Enum(RotationMethod, name="rotation_method", values_callable=enum_values),
        nullable=False,
    )
    webhook_url: Mapped[str | None] = mapped_column(String(2048), nullable=True)
    status: Mapped[ScheduleStatus] = mapped_column(
        Enum(ScheduleStatus, name="schedule_status", values_callable=enum_values),
        nullable=False,
        default=ScheduleStatus.ACTIVE,
    )
    next_rotation: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    last_rotation: Mapped[datetime.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    # Id of the in-progress RotationLog; set and cleared with compare-and-swap updates.
    active_log_id: Mapped[uuid.UUID | None] = mapped_column(nullable=True)
    created_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utc_now,
    )


class RotationLog(Base):
    __tablename__ = "rotation_logs"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    schedule_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("rotation_schedules.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    status: Mapped[RotationLogStatus] = mapped_column(
        Enum(RotationLogStatus, name="rotation_log_status", values_callable=enum_values),
        nullable=False,
        default=RotationLogStatus.IN_PROGRESS,
    )
    triggered_by: Mapped[str] = mapped_column(String(255), nullable=False)
    started_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    completed_at: Mapped[datetime.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)

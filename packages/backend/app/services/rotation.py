"""Rotation schedules, the rotation executor and the due-schedule dispatcher.

A rotation is exclusive per schedule: ``RotationSchedule.active_log_id`` is
claimed with a compare-and-swap update before any work starts and released
when the log row reaches ``success`` or ``failed``. Rotation failures are
recorded in the log and returned, never raised.
"""

from __future__ import annotations

import asyncio
import datetime
import logging
import time
import uuid
from dataclasses import dataclass

import httpx
from dateutil.relativedelta import relativedelta
from sqlalchemy import delete, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.errors import ConflictError, ExternalCallFailure, LifecycleError, NotFoundError, ValidationError
from app.models.rotation import (
    RotationFrequency,
    RotationLog,
    RotationLogStatus,
    RotationMethod,
    RotationSchedule,
    ScheduleStatus,
)
from app.models.secret import Secret
from app.schemas.rotation import CreateScheduleRequest
from app.schemas.secrets import UpdateSecretRequest
from app.security.crypto import CryptoEnvelope
from app.security.generators import generate_secret_value
from app.services import events
from app.services.events import EventSink, LifecycleEvent
from app.services.roles import ProjectScope, ensure_can_write, require_manager, require_member, require_rotator
from app.services.secrets import ROTATION_REASON, get_secret_record, write_secret_version


logger = logging.getLogger(__name__)

DEFAULT_CUSTOM_DAYS = 30
DEFAULT_WEBHOOK_TIMEOUT_SECONDS = 5.0
DEFAULT_HISTORY_LIMIT = 50
STALE_CLAIM_TIMEOUT_FACTOR = 6
MIN_STALE_CLAIM_SECONDS = 60.0
SCHEDULER_ACTOR = "system:scheduler"
WEBHOOK_EVENT = "secret_rotation_requested"
MANUAL_VALUE_REQUIRED = "manual rotation requires operator-provided value"
ABORTED_ERROR = "rotation aborted before completion"
STALE_CLAIM_ERROR = "rotation claim expired without completing"


class ScheduleNotFoundError(NotFoundError):
    pass


class ScheduleValidationError(ValidationError):
    pass


class ScheduleConflictError(ConflictError):
    pass


class RotationConflictError(ConflictError):
    pass


class RotationValueError(ValidationError):
    pass


@dataclass(frozen=True)
class RotationLogView:
    id: uuid.UUID
    schedule_id: uuid.UUID
    secret_id: uuid.UUID
    secret_key: str
    status: RotationLogStatus
    triggered_by: str
    started_at: datetime.datetime
    completed_at: datetime.datetime | None
    duration_ms: int | None
    error: str | None


@dataclass(frozen=True)
class RotationOutcome:
    log: RotationLogView
    new_version: str | None

    @property
    def success(self) -> bool:
        return self.log.status == RotationLogStatus.SUCCESS


def _utc_now() -> datetime.datetime:
    return datetime.datetime.now(datetime.UTC)


def _as_utc(value: datetime.datetime | None) -> datetime.datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=datetime.UTC)
    return value.astimezone(datetime.UTC)


def interval(frequency: RotationFrequency, custom_days: int | None = None) -> relativedelta:
    """Time between rotations. Calendar months clamp to the last day of the month."""
    if frequency == RotationFrequency.DAILY:
        return relativedelta(days=1)
    if frequency == RotationFrequency.WEEKLY:
        return relativedelta(days=7)
    if frequency == RotationFrequency.MONTHLY:
        return relativedelta(months=1)
    if frequency == RotationFrequency.QUARTERLY:
        return relativedelta(months=3)
    return relativedelta(days=custom_days or DEFAULT_CUSTOM_DAYS)


def _duration_ms(started_at: datetime.datetime, completed_at: datetime.datetime | None) -> int | None:
    if completed_at is None:
        return None
    return int((_as_utc(completed_at) - _as_utc(started_at)).total_seconds() * 1000)


def _log_view(log: RotationLog, *, secret_id: uuid.UUID, secret_key: str) -> RotationLogView:
    return RotationLogView(
        id=log.id,
        schedule_id=log.schedule_id,
        secret_id=secret_id,
        secret_key=secret_key,
        status=log.status,
        triggered_by=log.triggered_by,
        started_at=_as_utc(log.started_at),
        completed_at=_as_utc(log.completed_at),
        duration_ms=_duration_ms(log.started_at, log.completed_at),
        error=log.error,
    )


def _validate_schedule(payload: CreateScheduleRequest) -> None:
    if payload.method == RotationMethod.WEBHOOK:
        if not (payload.webhook_url or "").strip():
            raise ScheduleValidationError("webhook_url is required for webhook rotation")
    elif payload.webhook_url:
        raise ScheduleValidationError("webhook_url is only allowed for webhook rotation")
    if payload.frequency == RotationFrequency.CUSTOM:
        if payload.custom_days is None or payload.custom_days <= 0:
            raise ScheduleValidationError("custom frequency requires a positive custom_days")
    elif payload.custom_days is not None:
        raise ScheduleValidationError("custom_days is only allowed for custom frequency")


async def get_schedule(db: AsyncSession, *, schedule_id: uuid.UUID) -> RotationSchedule:
    result = await db.execute(
        select(RotationSchedule)
        .where(RotationSchedule.id == schedule_id)
        .execution_options(populate_existing=True)
    )
    schedule = result.scalar_one_or_none()
    if schedule is None:
        raise ScheduleNotFoundError
    return schedule


async def create_schedule(
    db: AsyncSession,
    *,
    actor: str,
    payload: CreateScheduleRequest,
    initial_delay_days: int = 30,
    first_run_uses_interval: bool = False,
    now: datetime.datetime | None = None,
) -> RotationSchedule:
    secret = await get_secret_record(db, secret_id=payload.secret_id)
    await require_manager(db, subject_id=actor, scope=ProjectScope(secret.project_id))
    _validate_schedule(payload)

    existing = await db.execute(select(RotationSchedule.id).where(RotationSchedule.secret_id == secret.id))
    if existing.scalar_one_or_none() is not None:
        raise ScheduleConflictError("secret already has a rotation schedule")

    created_at = now or _utc_now()
    if first_run_uses_interval:
        next_rotation = created_at + interval(payload.frequency, payload.custom_days)
    else:
        next_rotation = created_at + datetime.timedelta(days=initial_delay_days)

    schedule = RotationSchedule(
        secret_id=secret.id,
        project_id=secret.project_id,
        environment=secret.environment_type.value,
        frequency=payload.frequency,
        custom_days=payload.custom_days,
        method=payload.method,
        webhook_url=(payload.webhook_url or "").strip() or None,
        status=ScheduleStatus.ACTIVE,
        next_rotation=next_rotation,
        created_at=created_at,
    )
    db.add(schedule)
    await db.commit()
    await db.refresh(schedule)
    logger.info("Created rotation schedule id=%s secret=%s", schedule.id, secret.id)
    return schedule


async def set_schedule_status(
    db: AsyncSession,
    *,
    actor: str,
    schedule_id: uuid.UUID,
    status: ScheduleStatus,
    now: datetime.datetime | None = None,
) -> RotationSchedule:
    schedule = await get_schedule(db, schedule_id=schedule_id)
    await require_manager(db, subject_id=actor, scope=ProjectScope(schedule.project_id))

    current = now or _utc_now()
    schedule.status = status
    if status == ScheduleStatus.ACTIVE and _as_utc(schedule.next_rotation) < current:
        schedule.next_rotation = current
    await db.commit()
    await db.refresh(schedule)
    return schedule


async def delete_schedule(db: AsyncSession, *, actor: str, schedule_id: uuid.UUID) -> None:
    schedule = await get_schedule(db, schedule_id=schedule_id)
    await require_manager(db, subject_id=actor, scope=ProjectScope(schedule.project_id))
    await db.execute(delete(RotationLog).where(RotationLog.schedule_id == schedule_id))
    await db.execute(delete(RotationSchedule).where(RotationSchedule.id == schedule_id))
    await db.commit()


async def list_schedules(db: AsyncSession, *, actor: str, project_id: uuid.UUID) -> list[RotationSchedule]:
    await require_member(db, subject_id=actor, scope=ProjectScope(project_id))
    result = await db.execute(
        select(RotationSchedule)
        .where(RotationSchedule.project_id == project_id)
        .order_by(RotationSchedule.next_rotation.asc())
    )
    return list(result.scalars().all())


async def list_rotation_history(
    db: AsyncSession,
    *,
    actor: str,
    project_id: uuid.UUID,
    limit: int = DEFAULT_HISTORY_LIMIT,
) -> list[RotationLogView]:
    await require_member(db, subject_id=actor, scope=ProjectScope(project_id))
    result = await db.execute(
        select(RotationLog, RotationSchedule.secret_id, Secret.key)
        .join(RotationSchedule, RotationSchedule.id == RotationLog.schedule_id)
        .join(Secret, Secret.id == RotationSchedule.secret_id)
        .where(RotationSchedule.project_id == project_id)
        .order_by(RotationLog.started_at.desc())
        .limit(limit)
    )
    return [_log_view(log, secret_id=secret_id, secret_key=key) for log, secret_id, key in result.all()]


async def request_webhook_value(
    client: httpx.AsyncClient,
    *,
    url: str,
    body: dict[str, object],
    timeout_seconds: float,
) -> str:
    try:
        response = await client.post(url, json=body, timeout=timeout_seconds)
    except httpx.TimeoutException as exc:
        raise ExternalCallFailure(f"rotation webhook timed out after {timeout_seconds}s") from exc
    except httpx.HTTPError as exc:
        raise ExternalCallFailure(f"rotation webhook request failed: {exc}") from exc

    if not response.is_success:
        raise ExternalCallFailure(f"rotation webhook returned HTTP {response.status_code}")
    try:
        data = response.json()
    except ValueError as exc:
        raise ExternalCallFailure("rotation webhook response is not JSON") from exc
    value = data.get("value") if isinstance(data, dict) else None
    if not isinstance(value, str) or not value:
        raise ExternalCallFailure("rotation webhook response has no value")
    return value


async def _produce_value(
    *,
    method: RotationMethod,
    secret_type: str,
    new_value: str | None,
    webhook_url: str | None,
    webhook_body: dict[str, object],
    http_client: httpx.AsyncClient | None,
    webhook_timeout_seconds: float,
) -> str:
    if method == RotationMethod.MANUAL:
        if not new_value:
            raise RotationValueError(MANUAL_VALUE_REQUIRED)
        return new_value
    if method == RotationMethod.AUTO_GENERATE:
        return generate_secret_value(secret_type)

    if not webhook_url:
        raise ExternalCallFailure("rotation webhook url is not configured")
    if http_client is not None:
        return await request_webhook_value(
            http_client, url=webhook_url, body=webhook_body, timeout_seconds=webhook_timeout_seconds
        )
    async with httpx.AsyncClient(timeout=webhook_timeout_seconds) as client:
        return await request_webhook_value(
            client, url=webhook_url, body=webhook_body, timeout_seconds=webhook_timeout_seconds
        )


def stale_claim_after(webhook_timeout_seconds: float) -> datetime.timedelta:
    """Age past which an in-progress claim is treated as abandoned by a crashed worker."""
    return datetime.timedelta(seconds=max(MIN_STALE_CLAIM_SECONDS, webhook_timeout_seconds * STALE_CLAIM_TIMEOUT_FACTOR))


async def _claim(
    db: AsyncSession,
    *,
    schedule_id: uuid.UUID,
    actor: str,
    started_at: datetime.datetime,
) -> uuid.UUID:
    log_id = uuid.uuid4()
    log = RotationLog(
        id=log_id,
        schedule_id=schedule_id,
        status=RotationLogStatus.IN_PROGRESS,
        triggered_by=actor,
        started_at=started_at,
    )
    result = await db.execute(
        update(RotationSchedule)
        .where(RotationSchedule.id == schedule_id, RotationSchedule.active_log_id.is_(None))
        .values(active_log_id=log_id)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        await db.rollback()
        raise RotationConflictError("a rotation is already in progress for this schedule")
    db.add(log)
    await db.commit()
    return log_id


async def _finish(
    db: AsyncSession,
    *,
    schedule_id: uuid.UUID,
    log_id: uuid.UUID,
    status: RotationLogStatus,
    completed_at: datetime.datetime,
    error: str | None,
    next_rotation: datetime.datetime | None,
) -> None:
    # A log leaves in-progress exactly once; the claim is released in the same commit.
    await db.execute(
        update(RotationLog)
        .where(RotationLog.id == log_id, RotationLog.status == RotationLogStatus.IN_PROGRESS)
        .values(status=status, completed_at=completed_at, error=error)
        .execution_options(synchronize_session=False)
    )
    values: dict[str, object] = {"active_log_id": None}
    if next_rotation is not None:
        values["last_rotation"] = completed_at
        values["next_rotation"] = next_rotation
    await db.execute(
        update(RotationSchedule)
        .where(RotationSchedule.id == schedule_id, RotationSchedule.active_log_id == log_id)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    await db.commit()


async def _recover_stale_claim(
    db: AsyncSession,
    *,
    schedule_id: uuid.UUID,
    now: datetime.datetime,
    stale_after: datetime.timedelta,
) -> None:
    row = (
        await db.execute(
            select(RotationLog.id, RotationLog.started_at)
            .join(RotationSchedule, RotationSchedule.active_log_id == RotationLog.id)
            .where(RotationSchedule.id == schedule_id)
        )
    ).first()
    if row is None:
        return
    stale_log_id, claimed_at = row
    if _as_utc(claimed_at) > now - stale_after:
        return
    logger.warning("Releasing stale rotation claim schedule=%s log=%s", schedule_id, stale_log_id)
    await _finish(
        db,
        schedule_id=schedule_id,
        log_id=stale_log_id,
        status=RotationLogStatus.FAILED,
        completed_at=now,
        error=STALE_CLAIM_ERROR,
        next_rotation=None,
    )


async def _abandon(
    db: AsyncSession,
    *,
    schedule_id: uuid.UUID,
    log_id: uuid.UUID,
    completed_at: datetime.datetime,
) -> None:
    # The caller's session may be mid-flush or cancelled; release from a fresh one.
    try:
        await db.rollback()
        async with AsyncSession(bind=db.bind, expire_on_commit=False) as session:
            await _finish(
                session,
                schedule_id=schedule_id,
                log_id=log_id,
                status=RotationLogStatus.FAILED,
                completed_at=completed_at,
                error=ABORTED_ERROR,
                next_rotation=None,
            )
    except Exception:
        logger.exception("Could not release rotation claim schedule=%s log=%s", schedule_id, log_id)


async def rotate_secret(
    db: AsyncSession,
    *,
    envelope: CryptoEnvelope,
    sink: EventSink,
    actor: str,
    schedule_id: uuid.UUID,
    new_value: str | None = None,
    authorize: bool = True,
    http_client: httpx.AsyncClient | None = None,
    webhook_timeout_seconds: float = DEFAULT_WEBHOOK_TIMEOUT_SECONDS,
    now: datetime.datetime | None = None,
) -> RotationOutcome:
    """Rotate the secret behind ``schedule_id`` once, whatever the schedule status.

    Raises ScheduleNotFoundError, SecretNotFoundError, AccessForbiddenError
    or RotationConflictError before any work starts. Everything after the
    claim ends up in the returned outcome. A claim older than
    ``stale_claim_after(webhook_timeout_seconds)`` is failed and taken over.
    If the call itself is cancelled or crashes, the claim is released with
    a failed log before the exception propagates.
    """
    schedule = await get_schedule(db, schedule_id=schedule_id)
    secret = await get_secret_record(db, secret_id=schedule.secret_id)
    role = None
    if authorize:
        role = await require_rotator(db, subject_id=actor, project_id=schedule.project_id)
        # A triggered rotation writes a version, so it passes the same gate as an update.
        ensure_can_write(role, secret.environment_type)

    method = schedule.method
    frequency = schedule.frequency
    custom_days = schedule.custom_days
    webhook_url = schedule.webhook_url
    secret_id = secret.id
    secret_key = secret.key
    secret_type = secret.type
    project_id = secret.project_id
    environment = secret.environment_type.value

    started_at = now or _utc_now()
    clock_start = time.monotonic()
    await _recover_stale_claim(
        db,
        schedule_id=schedule_id,
        now=started_at,
        stale_after=stale_claim_after(webhook_timeout_seconds),
    )
    log_id = await _claim(db, schedule_id=schedule_id, actor=actor, started_at=started_at)

    new_version: str | None = None
    error: str | None = None
    try:
        value = await _produce_value(
            method=method,
            secret_type=secret_type,
            new_value=new_value,
            webhook_url=webhook_url,
            webhook_body={
                "event": WEBHOOK_EVENT,
                "secretId": str(secret_id),
                "secretKey": secret_key,
                "environment": environment,
                "projectId": str(project_id),
                "requestedAt": started_at.isoformat(),
            },
            http_client=http_client,
            webhook_timeout_seconds=webhook_timeout_seconds,
        )
        updated = await write_secret_version(
            db,
            envelope=envelope,
            actor=actor,
            secret_id=secret_id,
            patch=UpdateSecretRequest(value=value, change_reason=ROTATION_REASON),
            role=role,
        )
        new_version = updated.version
    except LifecycleError as exc:
        error = str(exc) or type(exc).__name__
    except BaseException:
        # Covers cancellation too; shielded so a second cancel cannot strand the claim.
        await asyncio.shield(
            _abandon(
                db,
                schedule_id=schedule_id,
                log_id=log_id,
                completed_at=started_at + datetime.timedelta(seconds=time.monotonic() - clock_start),
            )
        )
        raise

    completed_at = started_at + datetime.timedelta(seconds=time.monotonic() - clock_start)
    if error is None:
        status = RotationLogStatus.SUCCESS
        await _finish(
            db,
            schedule_id=schedule_id,
            log_id=log_id,
            status=status,
            completed_at=completed_at,
            error=None,
            next_rotation=completed_at + interval(frequency, custom_days),
        )
        logger.info("Rotated secret id=%s schedule=%s version=%s", secret_id, schedule_id, new_version)
    else:
        status = RotationLogStatus.FAILED
        await db.rollback()
        await _finish(
            db,
            schedule_id=schedule_id,
            log_id=log_id,
            status=status,
            completed_at=completed_at,
            error=error,
            next_rotation=None,
        )
        logger.warning("Rotation failed schedule=%s secret=%s error=%s", schedule_id, secret_id, error)

    view = RotationLogView(
        id=log_id,
        schedule_id=schedule_id,
        secret_id=secret_id,
        secret_key=secret_key,
        status=status,
        triggered_by=actor,
        started_at=started_at,
        completed_at=completed_at,
        duration_ms=_duration_ms(started_at, completed_at),
        error=error,
    )
    payload: dict[str, object] = {
        "scheduleId": str(schedule_id),
        "key": secret_key,
        "durationMs": view.duration_ms,
    }
    if new_version is not None:
        payload["version"] = new_version
        await sink.emit(
            LifecycleEvent(
                name=events.SECRET_ROTATED,
                actor=actor,
                project_id=project_id,
                target_id=secret_id,
                payload={"key": secret_key, "version": new_version, "environment": environment},
            )
        )
    else:
        payload["error"] = error
    await sink.emit(
        LifecycleEvent(
            name=events.ROTATION_SUCCESS if new_version is not None else events.ROTATION_FAILED,
            actor=actor,
            project_id=project_id,
            target_id=secret_id,
            payload=payload,
        )
    )
    return RotationOutcome(log=view, new_version=new_version)


async def find_due_schedule_ids(
    db: AsyncSession,
    *,
    now: datetime.datetime,
    stale_after: datetime.timedelta | None = None,
) -> list[uuid.UUID]:
    """Active schedules whose rotation is due and that are unclaimed or hold a stale claim."""
    stale_after = stale_after or stale_claim_after(DEFAULT_WEBHOOK_TIMEOUT_SECONDS)
    result = await db.execute(
        select(RotationSchedule.id)
        .outerjoin(RotationLog, RotationLog.id == RotationSchedule.active_log_id)
        .where(
            RotationSchedule.status == ScheduleStatus.ACTIVE,
            RotationSchedule.next_rotation <= now,
            or_(
                RotationSchedule.active_log_id.is_(None),
                RotationLog.started_at <= now - stale_after,
            ),
        )
    )
    return list(result.scalars().all())


async def dispatch_due_rotations(
    session_factory: async_sessionmaker[AsyncSession],
    *,
    envelope: CryptoEnvelope,
    sink: EventSink,
    now: datetime.datetime | None = None,
    concurrency: int = 8,
    http_client: httpx.AsyncClient | None = None,
    webhook_timeout_seconds: float = DEFAULT_WEBHOOK_TIMEOUT_SECONDS,
) -> list[RotationOutcome]:
    """Rotate every active schedule that is due, ``concurrency`` at a time.

    A schedule that blows up is logged and skipped; the rest of the tick runs.
    """
    current = now or _utc_now()
    async with session_factory() as session:
        due_ids = await find_due_schedule_ids(
            session, now=current, stale_after=stale_claim_after(webhook_timeout_seconds)
        )
    if not due_ids:
        return []

    semaphore = asyncio.Semaphore(max(1, concurrency))

    async def _run(schedule_id: uuid.UUID) -> RotationOutcome | None:
        async with semaphore:
            async with session_factory() as session:
                try:
                    return await rotate_secret(
                        session,
                        envelope=envelope,
                        sink=sink,
                        actor=SCHEDULER_ACTOR,
                        schedule_id=schedule_id,
                        authorize=False,
                        http_client=http_client,
                        webhook_timeout_seconds=webhook_timeout_seconds,
                        now=current,
                    )
                except RotationConflictError:
                    logger.info("Skipping schedule %s: rotation already in progress", schedule_id)
                except NotFoundError:
                    logger.info("Skipping schedule %s: removed before dispatch", schedule_id)
                except Exception:
                    logger.exception("Rotation of schedule %s aborted", schedule_id)
                return None

    results = await asyncio.gather(*(_run(schedule_id) for schedule_id in due_ids))
    outcomes = [outcome for outcome in results if outcome is not None]
    logger.info(
        "Dispatched %s due rotations (%s succeeded, %s skipped)",
        len(outcomes),
        sum(1 for outcome in outcomes if outcome.success),
        len(due_ids) - len(outcomes),
    )
    return outcomes

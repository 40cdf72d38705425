from __future__ import annotations

import asyncio
import datetime
import uuid

import httpx
import pytest
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.errors import AccessForbiddenError
from app.models.rotation import (
    RotationFrequency,
    RotationLog,
    RotationLogStatus,
    RotationMethod,
    RotationSchedule,
    ScheduleStatus,
)
from app.models.secret import EnvironmentType, Secret
from app.models.team import TeamRole
from app.schemas.rotation import CreateScheduleRequest
from app.schemas.secrets import CreateSecretRequest
from app.security.crypto import CryptoEnvelope
from app.services.events import RecordingEventSink
from app.services.rotation import (
    ABORTED_ERROR,
    MANUAL_VALUE_REQUIRED,
    SCHEDULER_ACTOR,
    STALE_CLAIM_ERROR,
    WEBHOOK_EVENT,
    RotationConflictError,
    ScheduleConflictError,
    ScheduleValidationError,
    create_schedule,
    dispatch_due_rotations,
    find_due_schedule_ids,
    interval,
    list_rotation_history,
    rotate_secret,
    set_schedule_status,
)
from app.services.secrets import create_secret, get_secret

from conftest import OWNER_ID, AddMember, OrgGraph


NOW = datetime.datetime(2026, 10, 1, 12, 0, tzinfo=datetime.UTC)


def _utc(value: datetime.datetime) -> datetime.datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=datetime.UTC)
    return value


async def _secret(
    db: AsyncSession,
    org: OrgGraph,
    envelope: CryptoEnvelope,
    sink: RecordingEventSink,
    *,
    key: str = "STRIPE_KEY",
    environment: EnvironmentType = EnvironmentType.DEVELOPMENT,
) -> uuid.UUID:
    view = await create_secret(
        db,
        envelope=envelope,
        sink=sink,
        actor=OWNER_ID,
        payload=CreateSecretRequest(
            project_id=org.project.id,
            key=key,
            value="initial",
            type="API Key",
            environment_type=environment,
        ),
    )
    return view.id


async def _schedule(
    db: AsyncSession,
    secret_id: uuid.UUID,
    *,
    method: RotationMethod = RotationMethod.AUTO_GENERATE,
    frequency: RotationFrequency = RotationFrequency.MONTHLY,
    webhook_url: str | None = None,
    now: datetime.datetime = NOW,
) -> RotationSchedule:
    return await create_schedule(
        db,
        actor=OWNER_ID,
        payload=CreateScheduleRequest(
            secret_id=secret_id,
            frequency=frequency,
            method=method,
            webhook_url=webhook_url,
        ),
        now=now,
    )


def test_interval_clamps_calendar_months() -> None:
    jan_31 = datetime.datetime(2026, 1, 31, tzinfo=datetime.UTC)

    assert jan_31 + interval(RotationFrequency.MONTHLY) == datetime.datetime(2026, 2, 28, tzinfo=datetime.UTC)
    assert datetime.datetime(2028, 1, 31) + interval(RotationFrequency.MONTHLY) == datetime.datetime(2028, 2, 29)
    assert datetime.datetime(2026, 11, 30) + interval(RotationFrequency.QUARTERLY) == datetime.datetime(2027, 2, 28)
    assert jan_31 + interval(RotationFrequency.WEEKLY) == datetime.datetime(2026, 2, 7, tzinfo=datetime.UTC)
    assert jan_31 + interval(RotationFrequency.CUSTOM, 10) == datetime.datetime(2026, 2, 10, tzinfo=datetime.UTC)


@pytest.mark.asyncio
async def test_schedule_validation_and_uniqueness(
    db: AsyncSession,
    org: OrgGraph,
    envelope: CryptoEnvelope,
    sink: RecordingEventSink,
) -> None:
    secret_id = await _secret(db, org, envelope, sink)

    invalid = [
        {"frequency": RotationFrequency.MONTHLY, "method": RotationMethod.WEBHOOK},
        {"frequency": RotationFrequency.MONTHLY, "method": RotationMethod.MANUAL, "webhook_url": "https://x"},
        {"frequency": RotationFrequency.CUSTOM, "method": RotationMethod.MANUAL},
        {"frequency": RotationFrequency.CUSTOM, "method": RotationMethod.MANUAL, "custom_days": 0},
        {"frequency": RotationFrequency.WEEKLY, "method": RotationMethod.MANUAL, "custom_days": 3},
    ]
    for fields in invalid:
        with pytest.raises(ScheduleValidationError):
            await create_schedule(db, actor=OWNER_ID, payload=CreateScheduleRequest(secret_id=secret_id, **fields))

    await _schedule(db, secret_id)
    with pytest.raises(ScheduleConflictError):
        await _schedule(db, secret_id)


@pytest.mark.asyncio
async def test_first_rotation_is_seeded_thirty_days_out(
    db: AsyncSession,
    org: OrgGraph,
    envelope: CryptoEnvelope,
    sink: RecordingEventSink,
) -> None:
    seeded = await _schedule(db, await _secret(db, org, envelope, sink, key="A"), frequency=RotationFrequency.DAILY)
    assert _utc(seeded.next_rotation) == NOW + datetime.timedelta(days=30)

    by_interval = await create_schedule(
        db,
        actor=OWNER_ID,
        payload=CreateScheduleRequest(
            secret_id=await _secret(db, org, envelope, sink, key="B"),
            frequency=RotationFrequency.DAILY,
            method=RotationMethod.AUTO_GENERATE,
        ),
        first_run_uses_interval=True,
        now=NOW,
    )
    assert _utc(by_interval.next_rotation) == NOW + datetime.timedelta(days=1)


@pytest.mark.asyncio
async def test_auto_generate_rotation_writes_new_version(
    db: AsyncSession,
    org: OrgGraph,
    envelope: CryptoEnvelope,
    sink: RecordingEventSink,
) -> None:
    secret_id = await _secret(db, org, envelope, sink)
    schedule = await _schedule(db, secret_id, frequency=RotationFrequency.WEEKLY)

    outcome = await rotate_secret(
        db,
        envelope=envelope,
        sink=sink,
        actor=OWNER_ID,
        schedule_id=schedule.id,
        now=NOW,
    )

    assert outcome.success
    assert outcome.new_version == "2"
    assert outcome.log.error is None
    assert outcome.log.duration_ms is not None and outcome.log.duration_ms >= 0

    view = await get_secret(db, envelope=envelope, actor=OWNER_ID, secret_id=secret_id)
    assert view.version == "2"
    assert view.value != "initial"
    assert view.value.startswith("sk_")
    assert view.history[0].change_reason == "rotation"

    refreshed = (
        await db.execute(
            select(RotationSchedule)
            .where(RotationSchedule.id == schedule.id)
            .execution_options(populate_existing=True)
        )
    ).scalar_one()
    assert refreshed.active_log_id is None
    assert _utc(refreshed.next_rotation) >= NOW + datetime.timedelta(days=7)
    assert refreshed.last_rotation is not None
    assert sink.names()[-2:] == ["secret.rotated", "rotation.success"]


@pytest.mark.asyncio
async def test_webhook_rotation_uses_returned_value(
    db: AsyncSession,
    org: OrgGraph,
    envelope: CryptoEnvelope,
    sink: RecordingEventSink,
) -> None:
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, json={"value": "from-webhook"})

    secret_id = await _secret(db, org, envelope, sink)
    schedule = await _schedule(db, secret_id, method=RotationMethod.WEBHOOK, webhook_url="https://rotator.test/hook")

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        outcome = await rotate_secret(
            db,
            envelope=envelope,
            sink=sink,
            actor=OWNER_ID,
            schedule_id=schedule.id,
            http_client=client,
        )

    assert outcome.success
    assert len(requests) == 1
    body = requests[0].read().decode()
    assert WEBHOOK_EVENT in body
    assert str(secret_id) in body
    view = await get_secret(db, envelope=envelope, actor=OWNER_ID, secret_id=secret_id)
    assert view.value == "from-webhook"


@pytest.mark.asyncio
async def test_failed_webhook_leaves_secret_and_schedule_untouched(
    db: AsyncSession,
    org: OrgGraph,
    envelope: CryptoEnvelope,
    sink: RecordingEventSink,
) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, json={"error": "boom"})

    secret_id = await _secret(db, org, envelope, sink)
    schedule = await _schedule(db, secret_id, method=RotationMethod.WEBHOOK, webhook_url="https://rotator.test/hook")
    original_next = _utc(schedule.next_rotation)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        outcome = await rotate_secret(
            db,
            envelope=envelope,
            sink=sink,
            actor=OWNER_ID,
            schedule_id=schedule.id,
            http_client=client,
        )

    assert not outcome.success
    assert outcome.new_version is None
    assert "HTTP 500" in (outcome.log.error or "")

    version = (await db.execute(select(Secret.version).where(Secret.id == secret_id))).scalar_one()
    assert version == "1"
    refreshed = (
        await db.execute(
            select(RotationSchedule)
            .where(RotationSchedule.id == schedule.id)
            .execution_options(populate_existing=True)
        )
    ).scalar_one()
    assert _utc(refreshed.next_rotation) == original_next
    assert refreshed.active_log_id is None
    log_status = (await db.execute(select(RotationLog.status).where(RotationLog.id == outcome.log.id))).scalar_one()
    assert log_status == RotationLogStatus.FAILED
    assert sink.names()[-1] == "rotation.failed"


@pytest.mark.asyncio
async def test_manual_rotation_requires_a_value(
    db: AsyncSession,
    org: OrgGraph,
    envelope: CryptoEnvelope,
    sink: RecordingEventSink,
) -> None:
    secret_id = await _secret(db, org, envelope, sink)
    schedule = await _schedule(db, secret_id, method=RotationMethod.MANUAL)

    missing = await rotate_secret(db, envelope=envelope, sink=sink, actor=OWNER_ID, schedule_id=schedule.id)
    assert not missing.success
    assert missing.log.error == MANUAL_VALUE_REQUIRED

    provided = await rotate_secret(
        db,
        envelope=envelope,
        sink=sink,
        actor=OWNER_ID,
        schedule_id=schedule.id,
        new_value="operator-chosen",
    )
    assert provided.success
    view = await get_secret(db, envelope=envelope, actor=OWNER_ID, secret_id=secret_id)
    assert view.value == "operator-chosen"

    history = await list_rotation_history(db, actor=OWNER_ID, project_id=org.project.id)
    assert [entry.status for entry in history] == [RotationLogStatus.SUCCESS, RotationLogStatus.FAILED]
    assert history[0].secret_key == "STRIPE_KEY"


@pytest.mark.asyncio
async def test_viewer_cannot_trigger_rotation(
    db: AsyncSession,
    org: OrgGraph,
    envelope: CryptoEnvelope,
    sink: RecordingEventSink,
    add_member: AddMember,
) -> None:
    await add_member(org.team, "viewer-1", TeamRole.VIEWER)
    schedule = await _schedule(db, await _secret(db, org, envelope, sink))

    with pytest.raises(AccessForbiddenError):
        await rotate_secret(db, envelope=envelope, sink=sink, actor="viewer-1", schedule_id=schedule.id)

    logs = (await db.execute(select(func.count(RotationLog.id)))).scalar_one()
    assert logs == 0


@pytest.mark.asyncio
async def test_concurrent_rotation_of_same_schedule_is_rejected(
    session_factory: async_sessionmaker[AsyncSession],
    db: AsyncSession,
    org: OrgGraph,
    envelope: CryptoEnvelope,
    sink: RecordingEventSink,
) -> None:
    entered = asyncio.Event()
    release = asyncio.Event()

    async def handler(request: httpx.Request) -> httpx.Response:
        entered.set()
        await release.wait()
        return httpx.Response(200, json={"value": "slow-value"})

    schedule = await _schedule(
        db,
        await _secret(db, org, envelope, sink),
        method=RotationMethod.WEBHOOK,
        webhook_url="https://rotator.test/hook",
    )

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:

        async def _rotate_in_own_session():
            async with session_factory() as session:
                return await rotate_secret(
                    session,
                    envelope=envelope,
                    sink=sink,
                    actor=OWNER_ID,
                    schedule_id=schedule.id,
                    http_client=client,
                )

        first = asyncio.create_task(_rotate_in_own_session())
        await asyncio.wait_for(entered.wait(), timeout=5)

        with pytest.raises(RotationConflictError):
            await _rotate_in_own_session()

        release.set()
        outcome = await first

    assert outcome.success
    assert outcome.new_version == "2"


@pytest.mark.asyncio
async def test_reactivation_pulls_overdue_rotation_to_now(
    db: AsyncSession,
    org: OrgGraph,
    envelope: CryptoEnvelope,
    sink: RecordingEventSink,
) -> None:
    schedule = await _schedule(db, await _secret(db, org, envelope, sink))
    paused = await set_schedule_status(db, actor=OWNER_ID, schedule_id=schedule.id, status=ScheduleStatus.PAUSED)
    assert paused.status == ScheduleStatus.PAUSED

    later = NOW + datetime.timedelta(days=90)
    resumed = await set_schedule_status(
        db,
        actor=OWNER_ID,
        schedule_id=schedule.id,
        status=ScheduleStatus.ACTIVE,
        now=later,
    )

    assert resumed.status == ScheduleStatus.ACTIVE
    assert _utc(resumed.next_rotation) == later


@pytest.mark.asyncio
async def test_dispatch_rotates_only_due_active_schedules(
    session_factory: async_sessionmaker[AsyncSession],
    db: AsyncSession,
    org: OrgGraph,
    envelope: CryptoEnvelope,
    sink: RecordingEventSink,
) -> None:
    due = await _schedule(db, await _secret(db, org, envelope, sink, key="DUE"), now=NOW - datetime.timedelta(days=40))
    await _schedule(db, await _secret(db, org, envelope, sink, key="LATER"), now=NOW)
    paused = await _schedule(
        db,
        await _secret(db, org, envelope, sink, key="PAUSED"),
        now=NOW - datetime.timedelta(days=40),
    )
    await set_schedule_status(db, actor=OWNER_ID, schedule_id=paused.id, status=ScheduleStatus.PAUSED, now=NOW)

    outcomes = await dispatch_due_rotations(session_factory, envelope=envelope, sink=sink, now=NOW)

    assert [outcome.log.schedule_id for outcome in outcomes] == [due.id]
    assert outcomes[0].success
    assert outcomes[0].log.triggered_by == "system:scheduler"
    assert await dispatch_due_rotations(session_factory, envelope=envelope, sink=sink, now=NOW) == []


async def _reload_schedule(db: AsyncSession, schedule_id: uuid.UUID) -> RotationSchedule:
    return (
        await db.execute(
            select(RotationSchedule)
            .where(RotationSchedule.id == schedule_id)
            .execution_options(populate_existing=True)
        )
    ).scalar_one()


@pytest.mark.asyncio
async def test_developer_cannot_rotate_production_secret(
    db: AsyncSession,
    org: OrgGraph,
    envelope: CryptoEnvelope,
    sink: RecordingEventSink,
    add_member: AddMember,
) -> None:
    await add_member(org.team, "dev-1", TeamRole.DEVELOPER)
    production_id = await _secret(db, org, envelope, sink, key="PROD_KEY", environment=EnvironmentType.PRODUCTION)
    production = await _schedule(db, production_id, method=RotationMethod.MANUAL)

    with pytest.raises(AccessForbiddenError):
        await rotate_secret(
            db,
            envelope=envelope,
            sink=sink,
            actor="dev-1",
            schedule_id=production.id,
            new_value="developer-chosen",
        )

    assert (await db.execute(select(func.count(RotationLog.id)))).scalar_one() == 0
    version = (await db.execute(select(Secret.version).where(Secret.id == production_id))).scalar_one()
    assert version == "1"

    staging = await _schedule(
        db,
        await _secret(db, org, envelope, sink, key="STAGING_KEY", environment=EnvironmentType.STAGING),
        method=RotationMethod.MANUAL,
    )
    outcome = await rotate_secret(
        db,
        envelope=envelope,
        sink=sink,
        actor="dev-1",
        schedule_id=staging.id,
        new_value="developer-chosen",
    )
    assert outcome.success


@pytest.mark.asyncio
async def test_cancelled_rotation_releases_its_claim(
    session_factory: async_sessionmaker[AsyncSession],
    db: AsyncSession,
    org: OrgGraph,
    envelope: CryptoEnvelope,
    sink: RecordingEventSink,
) -> None:
    entered = asyncio.Event()

    async def handler(request: httpx.Request) -> httpx.Response:
        entered.set()
        await asyncio.Event().wait()
        return httpx.Response(200, json={"value": "never"})

    secret_id = await _secret(db, org, envelope, sink)
    schedule = await _schedule(db, secret_id, method=RotationMethod.WEBHOOK, webhook_url="https://rotator.test/hook")

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:

        async def _rotate_in_own_session():
            async with session_factory() as session:
                return await rotate_secret(
                    session,
                    envelope=envelope,
                    sink=sink,
                    actor=OWNER_ID,
                    schedule_id=schedule.id,
                    http_client=client,
                )

        task = asyncio.create_task(_rotate_in_own_session())
        await asyncio.wait_for(entered.wait(), timeout=5)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    refreshed = await _reload_schedule(db, schedule.id)
    assert refreshed.active_log_id is None
    log = (
        await db.execute(
            select(RotationLog)
            .where(RotationLog.schedule_id == schedule.id)
            .execution_options(populate_existing=True)
        )
    ).scalar_one()
    assert log.status == RotationLogStatus.FAILED
    assert log.error == ABORTED_ERROR
    version = (await db.execute(select(Secret.version).where(Secret.id == secret_id))).scalar_one()
    assert version == "1"


@pytest.mark.asyncio
async def test_stale_claim_is_failed_and_taken_over(
    session_factory: async_sessionmaker[AsyncSession],
    db: AsyncSession,
    org: OrgGraph,
    envelope: CryptoEnvelope,
    sink: RecordingEventSink,
) -> None:
    schedule = await _schedule(db, await _secret(db, org, envelope, sink), now=NOW - datetime.timedelta(days=40))
    stale_log_id = uuid.uuid4()
    claimed_at = NOW - datetime.timedelta(hours=1)
    db.add(
        RotationLog(
            id=stale_log_id,
            schedule_id=schedule.id,
            status=RotationLogStatus.IN_PROGRESS,
            triggered_by=SCHEDULER_ACTOR,
            started_at=claimed_at,
        )
    )
    await db.execute(
        update(RotationSchedule).where(RotationSchedule.id == schedule.id).values(active_log_id=stale_log_id)
    )
    await db.commit()

    assert await find_due_schedule_ids(db, now=claimed_at + datetime.timedelta(seconds=30)) == []
    assert await find_due_schedule_ids(db, now=NOW) == [schedule.id]

    outcomes = await dispatch_due_rotations(session_factory, envelope=envelope, sink=sink, now=NOW)

    assert [outcome.log.schedule_id for outcome in outcomes] == [schedule.id]
    assert outcomes[0].success
    stale = (
        await db.execute(
            select(RotationLog).where(RotationLog.id == stale_log_id).execution_options(populate_existing=True)
        )
    ).scalar_one()
    assert stale.status == RotationLogStatus.FAILED
    assert stale.error == STALE_CLAIM_ERROR
    assert (await _reload_schedule(db, schedule.id)).active_log_id is None


@pytest.mark.asyncio
async def test_dispatch_keeps_going_when_one_schedule_raises(
    session_factory: async_sessionmaker[AsyncSession],
    db: AsyncSession,
    org: OrgGraph,
    envelope: CryptoEnvelope,
    sink: RecordingEventSink,
) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/broken":
            raise RuntimeError("rotator crashed")
        return httpx.Response(200, json={"value": "fresh"})

    overdue = NOW - datetime.timedelta(days=40)
    broken = await _schedule(
        db,
        await _secret(db, org, envelope, sink, key="BROKEN"),
        method=RotationMethod.WEBHOOK,
        webhook_url="https://rotator.test/broken",
        now=overdue,
    )
    healthy = await _schedule(
        db,
        await _secret(db, org, envelope, sink, key="HEALTHY"),
        method=RotationMethod.WEBHOOK,
        webhook_url="https://rotator.test/ok",
        now=overdue,
    )

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        outcomes = await dispatch_due_rotations(
            session_factory,
            envelope=envelope,
            sink=sink,
            now=NOW,
            concurrency=1,
            http_client=client,
        )

    assert [outcome.log.schedule_id for outcome in outcomes] == [healthy.id]
    assert outcomes[0].success
    assert (await _reload_schedule(db, broken.id)).active_log_id is None
    broken_log = (
        await db.execute(select(RotationLog.status, RotationLog.error).where(RotationLog.schedule_id == broken.id))
    ).one()
    assert broken_log == (RotationLogStatus.FAILED, ABORTED_ERROR)

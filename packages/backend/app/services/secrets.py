"""Encrypted, versioned secret store.

Every mutating write bumps ``Secret.version`` by exactly one and appends one
``SecretHistoryEntry`` in the same transaction. Writes to one secret are
serialised with a per-id lock inside the process and a compare-and-swap on
the stored version across processes.
"""

from __future__ import annotations

import datetime
import logging
import uuid
from dataclasses import dataclass, field

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import ConflictError, DecryptionError, NotFoundError, ValidationError
from app.core.locks import KeyedLock
from app.models.rotation import RotationLog, RotationSchedule
from app.models.secret import EnvironmentType, RotationPolicy, Secret, SecretHistoryEntry
from app.models.team import TeamRole
from app.schemas.secrets import CreateSecretRequest, UpdateSecretRequest
from app.security.crypto import CryptoEnvelope
from app.services import events
from app.services.events import EventSink, LifecycleEvent
from app.services.roles import MANAGER_ROLES, ensure_can_write, require_project_access, require_writer


logger = logging.getLogger(__name__)

REDACTED = "[REDACTED]"
DECRYPTION_FAILED = "[Decryption failed]"
UNCHANGED = "[unchanged]"
ROTATION_REASON = "rotation"
MAX_WRITE_ATTEMPTS = 3


class SecretNotFoundError(NotFoundError):
    pass


class SecretValidationError(ValidationError):
    pass


class SecretConflictError(ConflictError):
    pass


class SecretVersionNotFoundError(NotFoundError):
    pass


_secret_locks = KeyedLock()


@dataclass(frozen=True)
class SecretHistoryView:
    version: str
    value: str
    description: str
    updated_by: str
    updated_at: datetime.datetime
    change_reason: str | None


@dataclass(frozen=True)
class SecretView:
    id: uuid.UUID
    project_id: uuid.UUID
    branch_id: uuid.UUID | None
    key: str
    value: str
    description: str
    environment_type: EnvironmentType
    type: str
    version: str
    permission: list[str]
    expiry_date: datetime.datetime | None
    rotation_policy: RotationPolicy
    updated_by: str
    last_updated: datetime.datetime
    created_at: datetime.datetime
    history: list[SecretHistoryView] = field(default_factory=list)


@dataclass(frozen=True)
class ExpiringSecretView:
    id: uuid.UUID
    key: str
    environment_type: EnvironmentType
    expiry_date: datetime.datetime
    days_until_expiry: int
    expired: bool


def _utc_now() -> datetime.datetime:
    return datetime.datetime.now(datetime.UTC)


def _as_utc(value: datetime.datetime | None) -> datetime.datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=datetime.UTC)
    return value.astimezone(datetime.UTC)


def next_version(version: str) -> str:
    try:
        return str(int(version) + 1)
    except ValueError as exc:
        raise SecretConflictError(f"stored version {version!r} is not an integer") from exc


def _version_number(entry: SecretHistoryEntry) -> int:
    return int(entry.version)


def can_view_value(role: TeamRole, secret: Secret, *, subject_id: str) -> bool:
    if role in MANAGER_ROLES:
        return True
    if role == TeamRole.VIEWER:
        return False
    if secret.permission and subject_id not in secret.permission:
        return False
    return True


def _open_or_mask(envelope: CryptoEnvelope, stored: str, *, secret_id: uuid.UUID) -> str:
    try:
        return envelope.open(stored)
    except DecryptionError:
        logger.warning("Failed to decrypt secret id=%s", secret_id)
        return DECRYPTION_FAILED


def _history_view(envelope: CryptoEnvelope, entry: SecretHistoryEntry) -> SecretHistoryView:
    if entry.encrypted_value is None:
        value = UNCHANGED
    else:
        value = _open_or_mask(envelope, entry.encrypted_value, secret_id=entry.secret_id)
    return SecretHistoryView(
        version=entry.version,
        value=value,
        description=entry.description,
        updated_by=entry.updated_by,
        updated_at=_as_utc(entry.updated_at),
        change_reason=entry.change_reason,
    )


def _secret_view(secret: Secret, *, value: str, history: list[SecretHistoryView]) -> SecretView:
    return SecretView(
        id=secret.id,
        project_id=secret.project_id,
        branch_id=secret.branch_id,
        key=secret.key,
        value=value,
        description=secret.description,
        environment_type=secret.environment_type,
        type=secret.type,
        version=secret.version,
        permission=list(secret.permission or []),
        expiry_date=_as_utc(secret.expiry_date),
        rotation_policy=secret.rotation_policy,
        updated_by=secret.updated_by,
        last_updated=_as_utc(secret.last_updated),
        created_at=_as_utc(secret.created_at),
        history=history,
    )


async def get_secret_record(db: AsyncSession, *, secret_id: uuid.UUID) -> Secret:
    result = await db.execute(
        select(Secret).where(Secret.id == secret_id).execution_options(populate_existing=True)
    )
    secret = result.scalar_one_or_none()
    if secret is None:
        raise SecretNotFoundError
    return secret


async def _history_for(db: AsyncSession, secret_ids: list[uuid.UUID]) -> dict[uuid.UUID, list[SecretHistoryEntry]]:
    grouped: dict[uuid.UUID, list[SecretHistoryEntry]] = {secret_id: [] for secret_id in secret_ids}
    if not secret_ids:
        return grouped
    result = await db.execute(select(SecretHistoryEntry).where(SecretHistoryEntry.secret_id.in_(secret_ids)))
    for entry in result.scalars().all():
        grouped.setdefault(entry.secret_id, []).append(entry)
    for entries in grouped.values():
        entries.sort(key=_version_number, reverse=True)
    return grouped


def _render(
    envelope: CryptoEnvelope,
    secret: Secret,
    history: list[SecretHistoryEntry],
    *,
    role: TeamRole,
    subject_id: str,
) -> SecretView:
    if not can_view_value(role, secret, subject_id=subject_id):
        return _secret_view(secret, value=REDACTED, history=[])
    return _secret_view(
        secret,
        value=_open_or_mask(envelope, secret.encrypted_value, secret_id=secret.id),
        history=[_history_view(envelope, entry) for entry in history],
    )


def _secret_event(name: str, secret: Secret, *, actor: str, **extra: object) -> LifecycleEvent:
    payload: dict[str, object] = {
        "key": secret.key,
        "version": secret.version,
        "environment": secret.environment_type.value,
    }
    payload.update(extra)
    return LifecycleEvent(
        name=name,
        actor=actor,
        project_id=secret.project_id,
        target_id=secret.id,
        payload=payload,
    )


async def create_secret(
    db: AsyncSession,
    *,
    envelope: CryptoEnvelope,
    sink: EventSink,
    actor: str,
    payload: CreateSecretRequest,
    now: datetime.datetime | None = None,
) -> SecretView:
    key = payload.key.strip()
    if not key:
        raise SecretValidationError("key is required")
    if not payload.value:
        raise SecretValidationError("value is required")
    if payload.project_id is None:
        raise SecretValidationError("project_id is required")

    await require_writer(
        db,
        subject_id=actor,
        project_id=payload.project_id,
        environment=payload.environment_type,
    )

    branch_filter = (
        Secret.branch_id.is_(None) if payload.branch_id is None else Secret.branch_id == payload.branch_id
    )
    existing = await db.execute(
        select(Secret.id).where(Secret.project_id == payload.project_id, branch_filter, Secret.key == key)
    )
    if existing.scalar_one_or_none() is not None:
        raise SecretConflictError(f"secret {key!r} already exists")

    write_time = now or _utc_now()
    sealed = envelope.seal(payload.value)
    secret = Secret(
        project_id=payload.project_id,
        branch_id=payload.branch_id,
        key=key,
        encrypted_value=sealed,
        description=payload.description,
        environment_type=payload.environment_type,
        type=payload.type,
        version="1",
        permission=list(payload.permission),
        expiry_date=payload.expiry_date,
        rotation_policy=payload.rotation_policy,
        updated_by=actor,
        last_updated=write_time,
        created_at=write_time,
    )
    db.add(secret)
    try:
        await db.flush()
        db.add(
            SecretHistoryEntry(
                secret_id=secret.id,
                version="1",
                encrypted_value=sealed,
                description=payload.description,
                updated_by=actor,
                updated_at=write_time,
            )
        )
        await db.commit()
    except IntegrityError as exc:
        await db.rollback()
        raise SecretConflictError(f"secret {key!r} already exists") from exc

    await sink.emit(_secret_event(events.SECRET_CREATED, secret, actor=actor))
    logger.info("Created secret id=%s project=%s", secret.id, secret.project_id)

    history = [
        SecretHistoryView(
            version="1",
            value=payload.value,
            description=payload.description,
            updated_by=actor,
            updated_at=_as_utc(write_time),
            change_reason=None,
        )
    ]
    return _secret_view(secret, value=payload.value, history=history)


async def list_secrets(
    db: AsyncSession,
    *,
    envelope: CryptoEnvelope,
    actor: str,
    project_id: uuid.UUID,
    branch_id: uuid.UUID | None = None,
) -> list[SecretView]:
    role = await require_project_access(db, subject_id=actor, project_id=project_id)

    query = select(Secret).where(Secret.project_id == project_id)
    if branch_id is not None:
        query = query.where(Secret.branch_id == branch_id)
    result = await db.execute(query.order_by(Secret.key.asc()))
    records = list(result.scalars().all())

    history = await _history_for(db, [record.id for record in records])
    return [
        _render(envelope, record, history[record.id], role=role, subject_id=actor)
        for record in records
    ]


async def get_secret(
    db: AsyncSession,
    *,
    envelope: CryptoEnvelope,
    actor: str,
    secret_id: uuid.UUID,
) -> SecretView:
    secret = await get_secret_record(db, secret_id=secret_id)
    role = await require_project_access(db, subject_id=actor, project_id=secret.project_id)
    history = await _history_for(db, [secret.id])
    return _render(envelope, secret, history[secret.id], role=role, subject_id=actor)


async def list_secret_history(
    db: AsyncSession,
    *,
    envelope: CryptoEnvelope,
    actor: str,
    secret_id: uuid.UUID,
) -> list[SecretHistoryView]:
    view = await get_secret(db, envelope=envelope, actor=actor, secret_id=secret_id)
    return view.history


async def write_secret_version(
    db: AsyncSession,
    *,
    envelope: CryptoEnvelope,
    actor: str,
    secret_id: uuid.UUID,
    patch: UpdateSecretRequest,
    role: TeamRole | None = None,
    now: datetime.datetime | None = None,
) -> Secret:
    """Apply ``patch`` as the next version of the secret.

    Callers authorise first; when ``role`` is given it is re-checked against
    the environment the secret ends up in. ``role=None`` is used by the
    rotation engine acting on its own schedule.
    """
    if patch.value is not None and not patch.value:
        raise SecretValidationError("value must not be empty")
    if patch.clear_expiry and patch.expiry_date is not None:
        raise SecretValidationError("expiry_date and clear_expiry are mutually exclusive")

    async with _secret_locks.hold(secret_id):
        for attempt in range(1, MAX_WRITE_ATTEMPTS + 1):
            secret = await get_secret_record(db, secret_id=secret_id)
            if role is not None:
                ensure_can_write(role, secret.environment_type)
                if patch.environment_type is not None:
                    ensure_can_write(role, patch.environment_type)

            old_version = secret.version
            new_version = next_version(old_version)
            write_time = now or _utc_now()
            sealed = envelope.seal(patch.value) if patch.value is not None else None
            description = patch.description if patch.description is not None else secret.description

            values: dict[str, object] = {
                "version": new_version,
                "description": description,
                "updated_by": actor,
                "last_updated": write_time,
            }
            if sealed is not None:
                values["encrypted_value"] = sealed
            if patch.environment_type is not None:
                values["environment_type"] = patch.environment_type
            if patch.type is not None:
                values["type"] = patch.type
            if patch.permission is not None:
                values["permission"] = list(patch.permission)
            if patch.expiry_date is not None:
                values["expiry_date"] = patch.expiry_date
            elif patch.clear_expiry:
                values["expiry_date"] = None
            if patch.rotation_policy is not None:
                values["rotation_policy"] = patch.rotation_policy

            result = await db.execute(
                update(Secret)
                .where(Secret.id == secret_id, Secret.version == old_version)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                await db.rollback()
                logger.info("Version race on secret id=%s attempt=%s", secret_id, attempt)
                continue

            db.add(
                SecretHistoryEntry(
                    secret_id=secret_id,
                    version=new_version,
                    encrypted_value=sealed,
                    description=description,
                    updated_by=actor,
                    updated_at=write_time,
                    change_reason=patch.change_reason,
                )
            )
            try:
                await db.commit()
            except IntegrityError:
                await db.rollback()
                logger.info("History version clash on secret id=%s attempt=%s", secret_id, attempt)
                continue
            return await get_secret_record(db, secret_id=secret_id)

    raise SecretConflictError("secret was modified concurrently; retry the update")


async def update_secret(
    db: AsyncSession,
    *,
    envelope: CryptoEnvelope,
    sink: EventSink,
    actor: str,
    secret_id: uuid.UUID,
    patch: UpdateSecretRequest,
    now: datetime.datetime | None = None,
) -> SecretView:
    secret = await get_secret_record(db, secret_id=secret_id)
    role = await require_writer(
        db,
        subject_id=actor,
        project_id=secret.project_id,
        environment=secret.environment_type,
    )
    updated = await write_secret_version(
        db,
        envelope=envelope,
        actor=actor,
        secret_id=secret_id,
        patch=patch,
        role=role,
        now=now,
    )

    name = events.SECRET_ROTATED if patch.change_reason == ROTATION_REASON else events.SECRET_UPDATED
    await sink.emit(_secret_event(name, updated, actor=actor, valueChanged=patch.value is not None))

    history = await _history_for(db, [updated.id])
    return _render(envelope, updated, history[updated.id], role=role, subject_id=actor)


def _value_at(envelope: CryptoEnvelope, entries: list[SecretHistoryEntry], *, version: str) -> str:
    target = int(version)
    for entry in entries:
        if _version_number(entry) > target:
            continue
        if entry.encrypted_value is not None:
            return envelope.open(entry.encrypted_value)
    raise SecretVersionNotFoundError(f"no stored value for version {version}")


async def restore_secret_version(
    db: AsyncSession,
    *,
    envelope: CryptoEnvelope,
    sink: EventSink,
    actor: str,
    secret_id: uuid.UUID,
    version: str,
    now: datetime.datetime | None = None,
) -> SecretView:
    """Write a new version whose value is the one in effect at ``version``."""
    secret = await get_secret_record(db, secret_id=secret_id)
    await require_writer(
        db,
        subject_id=actor,
        project_id=secret.project_id,
        environment=secret.environment_type,
    )
    history = (await _history_for(db, [secret_id]))[secret_id]
    if not version.isdigit() or all(entry.version != version for entry in history):
        raise SecretVersionNotFoundError(f"version {version} not found")

    restored_value = _value_at(envelope, history, version=version)
    return await update_secret(
        db,
        envelope=envelope,
        sink=sink,
        actor=actor,
        secret_id=secret_id,
        patch=UpdateSecretRequest(value=restored_value, change_reason=f"restore:{version}"),
        now=now,
    )


async def delete_secret(
    db: AsyncSession,
    *,
    sink: EventSink,
    actor: str,
    secret_id: uuid.UUID,
) -> None:
    secret = await get_secret_record(db, secret_id=secret_id)
    await require_writer(
        db,
        subject_id=actor,
        project_id=secret.project_id,
        environment=secret.environment_type,
    )
    event = _secret_event(events.SECRET_DELETED, secret, actor=actor)

    schedule_ids = select(RotationSchedule.id).where(RotationSchedule.secret_id == secret_id)
    await db.execute(delete(RotationLog).where(RotationLog.schedule_id.in_(schedule_ids)))
    await db.execute(delete(RotationSchedule).where(RotationSchedule.secret_id == secret_id))
    await db.execute(delete(SecretHistoryEntry).where(SecretHistoryEntry.secret_id == secret_id))
    await db.execute(delete(Secret).where(Secret.id == secret_id))
    await db.commit()

    await sink.emit(event)
    logger.info("Deleted secret id=%s key=%s", secret_id, event.payload["key"])


async def list_expiring_secrets(
    db: AsyncSession,
    *,
    actor: str,
    project_id: uuid.UUID,
    days: int = 30,
    now: datetime.datetime | None = None,
) -> list[ExpiringSecretView]:
    if days < 0:
        raise SecretValidationError("days must not be negative")
    await require_project_access(db, subject_id=actor, project_id=project_id)

    current = now or _utc_now()
    horizon = current + datetime.timedelta(days=days)
    result = await db.execute(
        select(Secret).where(Secret.project_id == project_id, Secret.expiry_date.is_not(None))
    )

    expiring: list[ExpiringSecretView] = []
    for secret in result.scalars().all():
        expiry = _as_utc(secret.expiry_date)
        if expiry > horizon:
            continue
        expiring.append(
            ExpiringSecretView(
                id=secret.id,
                key=secret.key,
                environment_type=secret.environment_type,
                expiry_date=expiry,
                days_until_expiry=(expiry - current).days,
                expired=expiry <= current,
            )
        )
    expiring.sort(key=lambda item: item.expiry_date)
    return expiring

from __future__ import annotations

import uuid
from unittest.mock import AsyncMock, Mock

import pytest

from app.core.errors import AccessForbiddenError
from app.models.secret import EnvironmentType
from app.models.team import MembershipStatus, TeamRole, TeamUser
from app.services.roles import (
    LastAdminError,
    ensure_can_change_role,
    ensure_can_remove,
    ensure_can_write,
    ensure_not_last_admin,
)


def _member(role: TeamRole, status: MembershipStatus = MembershipStatus.ACTIVE) -> TeamUser:
    return TeamUser(id=uuid.uuid4(), team_id=uuid.uuid4(), user_id="member-1", role=role, status=status)


def _db_with_manager_count(count: int) -> AsyncMock:
    db = AsyncMock()
    result = Mock()
    result.scalars.return_value.all.return_value = [uuid.uuid4() for _ in range(count)]
    db.execute = AsyncMock(return_value=result)
    return db


def test_owner_may_grant_any_role() -> None:
    for current in TeamRole:
        for new in TeamRole:
            ensure_can_change_role(TeamRole.OWNER, current_role=current, new_role=new)


def test_admin_cannot_grant_or_revoke_owner() -> None:
    with pytest.raises(AccessForbiddenError):
        ensure_can_change_role(TeamRole.ADMIN, current_role=TeamRole.DEVELOPER, new_role=TeamRole.OWNER)
    with pytest.raises(AccessForbiddenError):
        ensure_can_change_role(TeamRole.ADMIN, current_role=TeamRole.OWNER, new_role=TeamRole.ADMIN)

    ensure_can_change_role(TeamRole.ADMIN, current_role=TeamRole.VIEWER, new_role=TeamRole.ADMIN)


@pytest.mark.parametrize("actor", [TeamRole.DEVELOPER, TeamRole.VIEWER])
def test_non_managers_cannot_change_roles(actor: TeamRole) -> None:
    with pytest.raises(AccessForbiddenError):
        ensure_can_change_role(actor, current_role=TeamRole.VIEWER, new_role=TeamRole.DEVELOPER)


def test_removal_rules() -> None:
    with pytest.raises(AccessForbiddenError):
        ensure_can_remove(TeamRole.OWNER, target_role=TeamRole.OWNER)
    with pytest.raises(AccessForbiddenError):
        ensure_can_remove(TeamRole.ADMIN, target_role=TeamRole.ADMIN)
    with pytest.raises(AccessForbiddenError):
        ensure_can_remove(TeamRole.DEVELOPER, target_role=TeamRole.VIEWER)

    ensure_can_remove(TeamRole.OWNER, target_role=TeamRole.ADMIN)
    ensure_can_remove(TeamRole.ADMIN, target_role=TeamRole.DEVELOPER)
    ensure_can_remove(TeamRole.ADMIN, target_role=TeamRole.VIEWER)


def test_write_gate_blocks_viewers_and_developer_production_writes() -> None:
    with pytest.raises(AccessForbiddenError):
        ensure_can_write(TeamRole.VIEWER, EnvironmentType.DEVELOPMENT)
    with pytest.raises(AccessForbiddenError):
        ensure_can_write(TeamRole.DEVELOPER, EnvironmentType.PRODUCTION)

    ensure_can_write(TeamRole.DEVELOPER, EnvironmentType.STAGING)
    ensure_can_write(TeamRole.ADMIN, EnvironmentType.PRODUCTION)


@pytest.mark.asyncio
async def test_last_manager_cannot_be_demoted_or_removed() -> None:
    db = _db_with_manager_count(1)
    admin = _member(TeamRole.ADMIN)

    with pytest.raises(LastAdminError):
        await ensure_not_last_admin(db, member=admin, new_role=TeamRole.VIEWER)
    with pytest.raises(LastAdminError):
        await ensure_not_last_admin(db, member=admin, new_role=None)


@pytest.mark.asyncio
async def test_last_admin_check_skips_lookup_when_not_needed() -> None:
    db = _db_with_manager_count(1)

    await ensure_not_last_admin(db, member=_member(TeamRole.ADMIN), new_role=TeamRole.OWNER)
    await ensure_not_last_admin(db, member=_member(TeamRole.DEVELOPER), new_role=None)
    await ensure_not_last_admin(db, member=_member(TeamRole.ADMIN, MembershipStatus.PENDING), new_role=None)

    db.execute.assert_not_awaited()


@pytest.mark.asyncio
async def test_demotion_allowed_with_another_manager() -> None:
    db = _db_with_manager_count(2)

    await ensure_not_last_admin(db, member=_member(TeamRole.ADMIN), new_role=TeamRole.DEVELOPER)

    db.execute.assert_awaited_once()

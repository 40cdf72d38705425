from __future__ import annotations

import uuid

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import AccessForbiddenError
from app.models.secret import EnvironmentType
from app.models.team import MembershipStatus, Team, TeamProject, TeamRole
from app.services.roles import (
    ProjectScope,
    WorkspaceScope,
    highest_role,
    require_manager,
    require_member,
    require_owner,
    require_project_access,
    require_rotator,
    require_writer,
    resolve_project_role,
    resolve_role,
    resolve_workspace_role,
)

from conftest import OWNER_ID, AddMember, OrgGraph


def test_highest_role_follows_owner_admin_developer_viewer_ranking() -> None:
    assert highest_role([TeamRole.VIEWER, TeamRole.ADMIN, TeamRole.DEVELOPER]) == TeamRole.ADMIN
    assert highest_role([TeamRole.VIEWER]) == TeamRole.VIEWER
    assert highest_role([TeamRole.DEVELOPER, TeamRole.OWNER]) == TeamRole.OWNER
    assert highest_role([]) is None


@pytest.mark.asyncio
async def test_creators_resolve_to_owner(db: AsyncSession, org: OrgGraph) -> None:
    assert await resolve_workspace_role(db, subject_id=OWNER_ID, workspace_id=org.workspace.id) == TeamRole.OWNER
    assert await resolve_project_role(db, subject_id=OWNER_ID, project_id=org.project.id) == TeamRole.OWNER


@pytest.mark.asyncio
async def test_highest_active_role_across_teams_wins(db: AsyncSession, org: OrgGraph, add_member: AddMember) -> None:
    second_team = Team(workspace_id=org.workspace.id, name="security", created_by=OWNER_ID)
    db.add(second_team)
    await db.flush()
    db.add(TeamProject(team_id=second_team.id, project_id=org.project.id))
    await db.commit()

    await add_member(org.team, "user-1", TeamRole.VIEWER)
    await add_member(second_team, "user-1", TeamRole.ADMIN)

    assert await resolve_workspace_role(db, subject_id="user-1", workspace_id=org.workspace.id) == TeamRole.ADMIN
    assert await resolve_role(db, subject_id="user-1", scope=ProjectScope(org.project.id)) == TeamRole.ADMIN


@pytest.mark.asyncio
async def test_pending_membership_grants_nothing(db: AsyncSession, org: OrgGraph, add_member: AddMember) -> None:
    await add_member(org.team, "invitee", TeamRole.ADMIN, status=MembershipStatus.PENDING)

    assert await resolve_workspace_role(db, subject_id="invitee", workspace_id=org.workspace.id) is None
    with pytest.raises(AccessForbiddenError):
        await require_member(db, subject_id="invitee", scope=WorkspaceScope(org.workspace.id))


@pytest.mark.asyncio
async def test_unknown_scope_resolves_to_none(db: AsyncSession, org: OrgGraph) -> None:
    assert await resolve_project_role(db, subject_id=OWNER_ID, project_id=uuid.uuid4()) is None
    assert await resolve_workspace_role(db, subject_id=OWNER_ID, workspace_id=uuid.uuid4()) is None


@pytest.mark.asyncio
async def test_owner_gate_rejects_admin(db: AsyncSession, org: OrgGraph, add_member: AddMember) -> None:
    await add_member(org.team, "admin-1", TeamRole.ADMIN)

    assert await require_manager(db, subject_id="admin-1", scope=WorkspaceScope(org.workspace.id)) == TeamRole.ADMIN
    with pytest.raises(AccessForbiddenError):
        await require_owner(db, subject_id="admin-1", scope=WorkspaceScope(org.workspace.id))
    assert await require_owner(db, subject_id=OWNER_ID, scope=WorkspaceScope(org.workspace.id)) == TeamRole.OWNER


@pytest.mark.asyncio
async def test_blocked_project_admits_only_owner_and_admin(
    db: AsyncSession,
    org: OrgGraph,
    add_member: AddMember,
) -> None:
    await add_member(org.team, "admin-1", TeamRole.ADMIN)
    await add_member(org.team, "dev-1", TeamRole.DEVELOPER)
    await add_member(org.team, "viewer-1", TeamRole.VIEWER)
    org.project.is_blocked = True
    await db.commit()

    assert await require_project_access(db, subject_id="admin-1", project_id=org.project.id) == TeamRole.ADMIN
    assert await require_project_access(db, subject_id=OWNER_ID, project_id=org.project.id) == TeamRole.OWNER
    for subject in ("dev-1", "viewer-1"):
        with pytest.raises(AccessForbiddenError):
            await require_project_access(db, subject_id=subject, project_id=org.project.id)


@pytest.mark.asyncio
async def test_writer_and_rotator_gates(db: AsyncSession, org: OrgGraph, add_member: AddMember) -> None:
    await add_member(org.team, "dev-1", TeamRole.DEVELOPER)
    await add_member(org.team, "viewer-1", TeamRole.VIEWER)

    assert (
        await require_writer(
            db,
            subject_id="dev-1",
            project_id=org.project.id,
            environment=EnvironmentType.DEVELOPMENT,
        )
        == TeamRole.DEVELOPER
    )
    with pytest.raises(AccessForbiddenError):
        await require_writer(db, subject_id="dev-1", project_id=org.project.id, environment=EnvironmentType.PRODUCTION)
    with pytest.raises(AccessForbiddenError):
        await require_writer(db, subject_id="viewer-1", project_id=org.project.id, environment=EnvironmentType.STAGING)

    assert await require_rotator(db, subject_id="dev-1", project_id=org.project.id) == TeamRole.DEVELOPER
    with pytest.raises(AccessForbiddenError):
        await require_rotator(db, subject_id="viewer-1", project_id=org.project.id)

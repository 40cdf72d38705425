"""Effective role of a subject in the workspace -> team -> project hierarchy.

Membership rows are re-read on every check so that a revoked or downgraded
member loses access on the very next call.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import AccessForbiddenError, InvariantViolation
from app.models.secret import EnvironmentType
from app.models.team import MembershipStatus, Team, TeamProject, TeamRole, TeamUser
from app.models.workspace import Project, Workspace


ROLE_RANK: dict[TeamRole, int] = {
    TeamRole.OWNER: 4,
    TeamRole.ADMIN: 3,
    TeamRole.DEVELOPER: 2,
    TeamRole.VIEWER: 1,
}

MANAGER_ROLES = frozenset({TeamRole.OWNER, TeamRole.ADMIN})
WRITER_ROLES = frozenset({TeamRole.OWNER, TeamRole.ADMIN, TeamRole.DEVELOPER})


class LastAdminError(InvariantViolation):
    pass


@dataclass(frozen=True)
class WorkspaceScope:
    workspace_id: uuid.UUID


@dataclass(frozen=True)
class ProjectScope:
    project_id: uuid.UUID


Scope = WorkspaceScope | ProjectScope


def highest_role(roles: list[TeamRole]) -> TeamRole | None:
    if not roles:
        return None
    return max(roles, key=lambda role: ROLE_RANK[role])


async def resolve_workspace_role(
    db: AsyncSession,
    *,
    subject_id: str,
    workspace_id: uuid.UUID,
) -> TeamRole | None:
    workspace = await db.get(Workspace, workspace_id, populate_existing=True)
    if workspace is None:
        return None
    if workspace.created_by == subject_id:
        return TeamRole.OWNER

    result = await db.execute(
        select(TeamUser.role)
        .join(Team, Team.id == TeamUser.team_id)
        .where(
            Team.workspace_id == workspace_id,
            TeamUser.user_id == subject_id,
            TeamUser.status == MembershipStatus.ACTIVE,
        )
    )
    return highest_role(list(result.scalars().all()))


async def resolve_project_role(
    db: AsyncSession,
    *,
    subject_id: str,
    project_id: uuid.UUID,
) -> TeamRole | None:
    project = await db.get(Project, project_id, populate_existing=True)
    if project is None:
        return None
    if project.user_id == subject_id:
        return TeamRole.OWNER

    result = await db.execute(
        select(TeamUser.role)
        .join(TeamProject, TeamProject.team_id == TeamUser.team_id)
        .where(
            TeamProject.project_id == project_id,
            TeamUser.user_id == subject_id,
            TeamUser.status == MembershipStatus.ACTIVE,
        )
    )
    return highest_role(list(result.scalars().all()))


async def resolve_team_role(db: AsyncSession, *, subject_id: str, team: Team) -> TeamRole | None:
    """Role held on ``team`` itself. The workspace creator owns every team in the workspace."""
    workspace = await db.get(Workspace, team.workspace_id, populate_existing=True)
    if workspace is not None and workspace.created_by == subject_id:
        return TeamRole.OWNER

    result = await db.execute(
        select(TeamUser.role).where(
            TeamUser.team_id == team.id,
            TeamUser.user_id == subject_id,
            TeamUser.status == MembershipStatus.ACTIVE,
        )
    )
    return result.scalar_one_or_none()


async def resolve_role(db: AsyncSession, *, subject_id: str, scope: Scope) -> TeamRole | None:
    if isinstance(scope, WorkspaceScope):
        return await resolve_workspace_role(db, subject_id=subject_id, workspace_id=scope.workspace_id)
    return await resolve_project_role(db, subject_id=subject_id, project_id=scope.project_id)


async def require_member(db: AsyncSession, *, subject_id: str, scope: Scope) -> TeamRole:
    role = await resolve_role(db, subject_id=subject_id, scope=scope)
    if role is None:
        raise AccessForbiddenError("subject has no role in this scope")
    return role


async def require_manager(db: AsyncSession, *, subject_id: str, scope: Scope) -> TeamRole:
    role = await resolve_role(db, subject_id=subject_id, scope=scope)
    if role not in MANAGER_ROLES:
        raise AccessForbiddenError("owner or admin role required")
    return role


async def require_owner(db: AsyncSession, *, subject_id: str, scope: Scope) -> TeamRole:
    role = await resolve_role(db, subject_id=subject_id, scope=scope)
    if role != TeamRole.OWNER:
        raise AccessForbiddenError("owner role required")
    return role


async def require_project_access(db: AsyncSession, *, subject_id: str, project_id: uuid.UUID) -> TeamRole:
    """Any project role, except that a blocked project admits only owner/admin."""
    project = await db.get(Project, project_id, populate_existing=True)
    if project is None:
        raise AccessForbiddenError("subject has no role in this project")
    role = await resolve_project_role(db, subject_id=subject_id, project_id=project_id)
    if role is None:
        raise AccessForbiddenError("subject has no role in this project")
    if project.is_blocked and role not in MANAGER_ROLES:
        raise AccessForbiddenError("project is blocked")
    return role


def ensure_can_write(role: TeamRole, environment: EnvironmentType) -> None:
    if role not in WRITER_ROLES:
        raise AccessForbiddenError("role cannot modify secrets")
    if role == TeamRole.DEVELOPER and environment == EnvironmentType.PRODUCTION:
        raise AccessForbiddenError("developers cannot modify production secrets")


async def require_writer(
    db: AsyncSession,
    *,
    subject_id: str,
    project_id: uuid.UUID,
    environment: EnvironmentType,
) -> TeamRole:
    role = await require_project_access(db, subject_id=subject_id, project_id=project_id)
    ensure_can_write(role, environment)
    return role


async def require_rotator(db: AsyncSession, *, subject_id: str, project_id: uuid.UUID) -> TeamRole:
    role = await require_project_access(db, subject_id=subject_id, project_id=project_id)
    if role not in WRITER_ROLES:
        raise AccessForbiddenError("role cannot trigger rotations")
    return role


def ensure_can_change_role(actor_role: TeamRole, *, current_role: TeamRole, new_role: TeamRole) -> None:
    if actor_role == TeamRole.OWNER:
        return
    if actor_role == TeamRole.ADMIN:
        if TeamRole.OWNER in (current_role, new_role):
            raise AccessForbiddenError("only an owner can grant or revoke the owner role")
        return
    raise AccessForbiddenError("owner or admin role required")


def ensure_can_remove(actor_role: TeamRole, *, target_role: TeamRole) -> None:
    if target_role == TeamRole.OWNER:
        raise AccessForbiddenError("an owner cannot be removed")
    if actor_role == TeamRole.OWNER:
        return
    if actor_role == TeamRole.ADMIN and target_role in (TeamRole.DEVELOPER, TeamRole.VIEWER):
        return
    raise AccessForbiddenError("insufficient role to remove this member")


async def count_active_managers(db: AsyncSession, *, team_id: uuid.UUID) -> int:
    # Row locks hold the manager set steady until the caller commits.
    result = await db.execute(
        select(TeamUser.id)
        .where(
            TeamUser.team_id == team_id,
            TeamUser.status == MembershipStatus.ACTIVE,
            TeamUser.role.in_(list(MANAGER_ROLES)),
        )
        .with_for_update()
    )
    return len(result.scalars().all())


async def ensure_not_last_admin(db: AsyncSession, *, member: TeamUser, new_role: TeamRole | None) -> None:
    """Raise LastAdminError when demoting/removing ``member`` leaves no active admin or owner.

    ``new_role=None`` means the member is being removed.
    """
    if member.role not in MANAGER_ROLES or member.status != MembershipStatus.ACTIVE:
        return
    if new_role in MANAGER_ROLES:
        return
    remaining = await count_active_managers(db, team_id=member.team_id) - 1
    if remaining <= 0:
        raise LastAdminError("cannot remove the last admin")

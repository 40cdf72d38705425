from __future__ import annotations

import logging
import uuid

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import AccessForbiddenError, ConflictError, NotFoundError
from app.core.locks import KeyedLock
from app.models.team import MembershipStatus, Team, TeamProject, TeamRole, TeamUser
from app.models.workspace import Project, Workspace
from app.schemas.org import (
    AddTeamMemberRequest,
    CreateProjectRequest,
    CreateTeamRequest,
    CreateWorkspaceRequest,
)
from app.services.roles import (
    ProjectScope,
    WorkspaceScope,
    ensure_can_change_role,
    ensure_can_remove,
    ensure_not_last_admin,
    require_manager,
    require_owner,
    resolve_team_role,
)


logger = logging.getLogger(__name__)

# Serializes last-admin checks per team within this process.
_team_locks = KeyedLock()


class WorkspaceNotFoundError(NotFoundError):
    pass


class TeamNotFoundError(NotFoundError):
    pass


class TeamMemberNotFoundError(NotFoundError):
    pass


class ProjectNotFoundError(NotFoundError):
    pass


class TeamMemberConflictError(ConflictError):
    pass


async def _get_workspace_or_raise(db: AsyncSession, *, workspace_id: uuid.UUID) -> Workspace:
    workspace = await db.get(Workspace, workspace_id)
    if workspace is None:
        raise WorkspaceNotFoundError
    return workspace


async def _get_team_or_raise(db: AsyncSession, *, team_id: uuid.UUID) -> Team:
    team = await db.get(Team, team_id)
    if team is None:
        raise TeamNotFoundError
    return team


async def _get_member_or_raise(db: AsyncSession, *, member_id: uuid.UUID) -> TeamUser:
    result = await db.execute(
        select(TeamUser).where(TeamUser.id == member_id).execution_options(populate_existing=True)
    )
    member = result.scalar_one_or_none()
    if member is None:
        raise TeamMemberNotFoundError
    return member


async def _get_project_or_raise(db: AsyncSession, *, project_id: uuid.UUID) -> Project:
    project = await db.get(Project, project_id)
    if project is None:
        raise ProjectNotFoundError
    return project


async def _actor_team_role(db: AsyncSession, *, actor: str, team: Team) -> TeamRole:
    role = await resolve_team_role(db, subject_id=actor, team=team)
    if role is None:
        raise AccessForbiddenError("subject has no role in this team")
    return role


async def create_workspace(db: AsyncSession, *, actor: str, payload: CreateWorkspaceRequest) -> Workspace:
    workspace = Workspace(
        name=payload.name.strip(),
        created_by=actor,
        settings=dict(payload.settings),
    )
    db.add(workspace)
    await db.commit()
    await db.refresh(workspace)
    return workspace


async def update_workspace_settings(
    db: AsyncSession,
    *,
    actor: str,
    workspace_id: uuid.UUID,
    settings: dict[str, object],
) -> Workspace:
    workspace = await _get_workspace_or_raise(db, workspace_id=workspace_id)
    await require_manager(db, subject_id=actor, scope=WorkspaceScope(workspace_id))
    workspace.settings = {**(workspace.settings or {}), **settings}
    await db.commit()
    await db.refresh(workspace)
    return workspace


async def delete_workspace(db: AsyncSession, *, actor: str, workspace_id: uuid.UUID) -> None:
    await _get_workspace_or_raise(db, workspace_id=workspace_id)
    await require_owner(db, subject_id=actor, scope=WorkspaceScope(workspace_id))

    team_ids = select(Team.id).where(Team.workspace_id == workspace_id)
    await db.execute(delete(TeamProject).where(TeamProject.team_id.in_(team_ids)))
    await db.execute(delete(TeamUser).where(TeamUser.team_id.in_(team_ids)))
    await db.execute(delete(Team).where(Team.workspace_id == workspace_id))
    # Projects outlive their workspace and fall back to owner-only access.
    await db.execute(update(Project).where(Project.workspace_id == workspace_id).values(workspace_id=None))
    await db.execute(delete(Workspace).where(Workspace.id == workspace_id))
    await db.commit()
    logger.info("Deleted workspace id=%s by %s", workspace_id, actor)


async def create_team(
    db: AsyncSession,
    *,
    actor: str,
    workspace_id: uuid.UUID,
    payload: CreateTeamRequest,
) -> Team:
    await _get_workspace_or_raise(db, workspace_id=workspace_id)
    await require_manager(db, subject_id=actor, scope=WorkspaceScope(workspace_id))

    team = Team(workspace_id=workspace_id, name=payload.name.strip(), created_by=actor)
    db.add(team)
    await db.flush()
    db.add(TeamUser(team_id=team.id, user_id=actor, role=TeamRole.OWNER, status=MembershipStatus.ACTIVE))
    await db.commit()
    await db.refresh(team)
    return team


async def add_team_member(
    db: AsyncSession,
    *,
    actor: str,
    team_id: uuid.UUID,
    payload: AddTeamMemberRequest,
) -> TeamUser:
    """Invite ``payload.user_id``; the membership stays pending until accepted."""
    team = await _get_team_or_raise(db, team_id=team_id)
    actor_role = await _actor_team_role(db, actor=actor, team=team)
    ensure_can_change_role(actor_role, current_role=payload.role, new_role=payload.role)

    member = TeamUser(
        team_id=team_id,
        user_id=payload.user_id.strip(),
        role=payload.role,
        status=MembershipStatus.PENDING,
    )
    db.add(member)
    try:
        await db.commit()
    except IntegrityError as exc:
        await db.rollback()
        raise TeamMemberConflictError("subject is already a member of this team") from exc
    await db.refresh(member)
    return member


async def accept_team_invitation(db: AsyncSession, *, actor: str, team_id: uuid.UUID) -> TeamUser:
    result = await db.execute(select(TeamUser).where(TeamUser.team_id == team_id, TeamUser.user_id == actor))
    member = result.scalar_one_or_none()
    if member is None:
        raise TeamMemberNotFoundError
    member.status = MembershipStatus.ACTIVE
    await db.commit()
    await db.refresh(member)
    return member


async def change_team_member_role(
    db: AsyncSession,
    *,
    actor: str,
    member_id: uuid.UUID,
    new_role: TeamRole,
) -> TeamUser:
    target = await _get_member_or_raise(db, member_id=member_id)
    async with _team_locks.hold(target.team_id):
        member = await _get_member_or_raise(db, member_id=member_id)
        team = await _get_team_or_raise(db, team_id=member.team_id)
        actor_role = await _actor_team_role(db, actor=actor, team=team)
        ensure_can_change_role(actor_role, current_role=member.role, new_role=new_role)
        await ensure_not_last_admin(db, member=member, new_role=new_role)

        member.role = new_role
        await db.commit()
    await db.refresh(member)
    logger.info("Changed role of member id=%s to %s", member.id, new_role.value)
    return member


async def remove_team_member(db: AsyncSession, *, actor: str, member_id: uuid.UUID) -> None:
    target = await _get_member_or_raise(db, member_id=member_id)
    async with _team_locks.hold(target.team_id):
        member = await _get_member_or_raise(db, member_id=member_id)
        team = await _get_team_or_raise(db, team_id=member.team_id)
        actor_role = await _actor_team_role(db, actor=actor, team=team)
        ensure_can_remove(actor_role, target_role=member.role)
        await ensure_not_last_admin(db, member=member, new_role=None)

        await db.execute(delete(TeamUser).where(TeamUser.id == member.id))
        await db.commit()
    logger.info("Removed member id=%s from team id=%s", member.id, team.id)


async def create_project(db: AsyncSession, *, actor: str, payload: CreateProjectRequest) -> Project:
    if payload.workspace_id is not None:
        await _get_workspace_or_raise(db, workspace_id=payload.workspace_id)
        await require_manager(db, subject_id=actor, scope=WorkspaceScope(payload.workspace_id))

    project = Project(name=payload.name.strip(), user_id=actor, workspace_id=payload.workspace_id)
    db.add(project)
    await db.commit()
    await db.refresh(project)
    return project


async def link_team_project(
    db: AsyncSession,
    *,
    actor: str,
    project_id: uuid.UUID,
    team_id: uuid.UUID,
) -> TeamProject:
    await _get_project_or_raise(db, project_id=project_id)
    team = await _get_team_or_raise(db, team_id=team_id)
    await require_manager(db, subject_id=actor, scope=ProjectScope(project_id))
    await require_manager(db, subject_id=actor, scope=WorkspaceScope(team.workspace_id))

    link = TeamProject(team_id=team_id, project_id=project_id)
    db.add(link)
    try:
        await db.commit()
    except IntegrityError as exc:
        await db.rollback()
        raise TeamMemberConflictError("team already has access to this project") from exc
    await db.refresh(link)
    return link


async def transfer_project_ownership(
    db: AsyncSession,
    *,
    actor: str,
    project_id: uuid.UUID,
    new_owner_id: str,
) -> Project:
    project = await _get_project_or_raise(db, project_id=project_id)
    await require_owner(db, subject_id=actor, scope=ProjectScope(project_id))
    project.user_id = new_owner_id.strip()
    await db.commit()
    await db.refresh(project)
    logger.info("Transferred project id=%s from %s to %s", project_id, actor, project.user_id)
    return project


async def move_project_to_workspace(
    db: AsyncSession,
    *,
    actor: str,
    project_id: uuid.UUID,
    workspace_id: uuid.UUID | None,
) -> Project:
    project = await _get_project_or_raise(db, project_id=project_id)
    await require_owner(db, subject_id=actor, scope=ProjectScope(project_id))
    if workspace_id is not None:
        await _get_workspace_or_raise(db, workspace_id=workspace_id)
        await require_manager(db, subject_id=actor, scope=WorkspaceScope(workspace_id))
    project.workspace_id = workspace_id
    await db.commit()
    await db.refresh(project)
    return project


async def toggle_project_block(db: AsyncSession, *, actor: str, project_id: uuid.UUID) -> Project:
    project = await _get_project_or_raise(db, project_id=project_id)
    await require_owner(db, subject_id=actor, scope=ProjectScope(project_id))
    project.is_blocked = not project.is_blocked
    await db.commit()
    await db.refresh(project)
    return project

from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, Response
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies.auth import get_current_subject
from app.core.errors import LifecycleError
from app.core.problems import lifecycle_problem
from app.db.session import get_db_session
from app.schemas.org import (
    AddTeamMemberRequest,
    CreateProjectRequest,
    CreateTeamRequest,
    CreateWorkspaceRequest,
    LinkTeamProjectRequest,
    MoveProjectRequest,
    ProjectResponse,
    TeamMemberResponse,
    TeamResponse,
    TransferProjectRequest,
    UpdateTeamMemberRoleRequest,
    UpdateWorkspaceSettingsRequest,
    WorkspaceResponse,
)
from app.services.org import (
    accept_team_invitation,
    add_team_member,
    change_team_member_role,
    create_project,
    create_team,
    create_workspace,
    delete_workspace,
    link_team_project,
    move_project_to_workspace,
    remove_team_member,
    toggle_project_block,
    transfer_project_ownership,
    update_workspace_settings,
)


router = APIRouter(prefix="/api/v1/org", tags=["org"])


@router.post("/workspaces", response_model=WorkspaceResponse, status_code=201)
async def create_workspace_endpoint(
    payload: CreateWorkspaceRequest,
    subject_id: str = Depends(get_current_subject),
    db: AsyncSession = Depends(get_db_session),
) -> WorkspaceResponse:
    workspace = await create_workspace(db, actor=subject_id, payload=payload)
    return WorkspaceResponse.from_workspace(workspace)


@router.patch("/workspaces/{workspace_id}/settings", response_model=WorkspaceResponse)
async def update_workspace_settings_endpoint(
    workspace_id: uuid.UUID,
    payload: UpdateWorkspaceSettingsRequest,
    subject_id: str = Depends(get_current_subject),
    db: AsyncSession = Depends(get_db_session),
) -> WorkspaceResponse:
    try:
        workspace = await update_workspace_settings(
            db,
            actor=subject_id,
            workspace_id=workspace_id,
            settings=payload.settings,
        )
    except LifecycleError as exc:
        return lifecycle_problem(exc)
    return WorkspaceResponse.from_workspace(workspace)


@router.delete("/workspaces/{workspace_id}", status_code=204)
async def delete_workspace_endpoint(
    workspace_id: uuid.UUID,
    subject_id: str = Depends(get_current_subject),
    db: AsyncSession = Depends(get_db_session),
) -> Response:
    try:
        await delete_workspace(db, actor=subject_id, workspace_id=workspace_id)
    except LifecycleError as exc:
        return lifecycle_problem(exc)
    return Response(status_code=204)


@router.post("/workspaces/{workspace_id}/teams", response_model=TeamResponse, status_code=201)
async def create_team_endpoint(
    workspace_id: uuid.UUID,
    payload: CreateTeamRequest,
    subject_id: str = Depends(get_current_subject),
    db: AsyncSession = Depends(get_db_session),
) -> TeamResponse:
    try:
        team = await create_team(db, actor=subject_id, workspace_id=workspace_id, payload=payload)
    except LifecycleError as exc:
        return lifecycle_problem(exc)
    return TeamResponse.from_team(team)


@router.post("/teams/{team_id}/members", response_model=TeamMemberResponse, status_code=201)
async def add_team_member_endpoint(
    team_id: uuid.UUID,
    payload: AddTeamMemberRequest,
    subject_id: str = Depends(get_current_subject),
    db: AsyncSession = Depends(get_db_session),
) -> TeamMemberResponse:
    try:
        member = await add_team_member(db, actor=subject_id, team_id=team_id, payload=payload)
    except LifecycleError as exc:
        return lifecycle_problem(exc)
    return TeamMemberResponse.from_member(member)


@router.post("/teams/{team_id}/accept", response_model=TeamMemberResponse)
async def accept_team_invitation_endpoint(
    team_id: uuid.UUID,
    subject_id: str = Depends(get_current_subject),
    db: AsyncSession = Depends(get_db_session),
) -> TeamMemberResponse:
    try:
        member = await accept_team_invitation(db, actor=subject_id, team_id=team_id)
    except LifecycleError as exc:
        return lifecycle_problem(exc)
    return TeamMemberResponse.from_member(member)


@router.patch("/members/{member_id}", response_model=TeamMemberResponse)
async def change_team_member_role_endpoint(
    member_id: uuid.UUID,
    payload: UpdateTeamMemberRoleRequest,
    subject_id: str = Depends(get_current_subject),
    db: AsyncSession = Depends(get_db_session),
) -> TeamMemberResponse:
    try:
        member = await change_team_member_role(db, actor=subject_id, member_id=member_id, new_role=payload.role)
    except LifecycleError as exc:
        return lifecycle_problem(exc)
    return TeamMemberResponse.from_member(member)


@router.delete("/members/{member_id}", status_code=204)
async def remove_team_member_endpoint(
    member_id: uuid.UUID,
    subject_id: str = Depends(get_current_subject),
    db: AsyncSession = Depends(get_db_session),
) -> Response:
    try:
        await remove_team_member(db, actor=subject_id, member_id=member_id)
    except LifecycleError as exc:
        return lifecycle_problem(exc)
    return Response(status_code=204)


@router.post("/projects", response_model=ProjectResponse, status_code=201)
async def create_project_endpoint(
    payload: CreateProjectRequest,
    subject_id: str = Depends(get_current_subject),
    db: AsyncSession = Depends(get_db_session),
) -> ProjectResponse:
    try:
        project = await create_project(db, actor=subject_id, payload=payload)
    except LifecycleError as exc:
        return lifecycle_problem(exc)
    return ProjectResponse.from_project(project)


@router.post("/projects/{project_id}/teams", status_code=204)
async def link_team_project_endpoint(
    project_id: uuid.UUID,
    payload: LinkTeamProjectRequest,
    subject_id: str = Depends(get_current_subject),
    db: AsyncSession = Depends(get_db_session),
) -> Response:
    try:
        await link_team_project(db, actor=subject_id, project_id=project_id, team_id=payload.team_id)
    except LifecycleError as exc:
        return lifecycle_problem(exc)
    return Response(status_code=204)


@router.post("/projects/{project_id}/transfer", response_model=ProjectResponse)
async def transfer_project_endpoint(
    project_id: uuid.UUID,
    payload: TransferProjectRequest,
    subject_id: str = Depends(get_current_subject),
    db: AsyncSession = Depends(get_db_session),
) -> ProjectResponse:
    try:
        project = await transfer_project_ownership(
            db,
            actor=subject_id,
            project_id=project_id,
            new_owner_id=payload.new_owner_id,
        )
    except LifecycleError as exc:
        return lifecycle_problem(exc)
    return ProjectResponse.from_project(project)


@router.post("/projects/{project_id}/move", response_model=ProjectResponse)
async def move_project_endpoint(
    project_id: uuid.UUID,
    payload: MoveProjectRequest,
    subject_id: str = Depends(get_current_subject),
    db: AsyncSession = Depends(get_db_session),
) -> ProjectResponse:
    try:
        project = await move_project_to_workspace(
            db,
            actor=subject_id,
            project_id=project_id,
            workspace_id=payload.workspace_id,
        )
    except LifecycleError as exc:
        return lifecycle_problem(exc)
    return ProjectResponse.from_project(project)


@router.post("/projects/{project_id}/toggle-block", response_model=ProjectResponse)
async def toggle_project_block_endpoint(
    project_id: uuid.UUID,
    subject_id: str = Depends(get_current_subject),
    db: AsyncSession = Depends(get_db_session),
) -> ProjectResponse:
    try:
        project = await toggle_project_block(db, actor=subject_id, project_id=project_id)
    except LifecycleError as exc:
        return lifecycle_problem(exc)
    return ProjectResponse.from_project(project)

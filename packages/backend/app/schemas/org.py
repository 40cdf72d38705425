from __future__ import annotations

import datetime
import uuid
from typing import Any

from pydantic import BaseModel, Field

from app.models.team import TeamRole


class CreateWorkspaceRequest(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    settings: dict[str, Any] = Field(default_factory=dict)


class UpdateWorkspaceSettingsRequest(BaseModel):
    settings: dict[str, Any]


class WorkspaceResponse(BaseModel):
    id: uuid.UUID
    name: str
    created_by: str
    settings: dict[str, Any]
    created_at: datetime.datetime

    @classmethod
    def from_workspace(cls, workspace: Any) -> "WorkspaceResponse":
        return cls(
            id=workspace.id,
            name=workspace.name,
            created_by=workspace.created_by,
            settings=dict(workspace.settings or {}),
            created_at=workspace.created_at,
        )


class CreateTeamRequest(BaseModel):
    name: str = Field(min_length=1, max_length=255)


class TeamResponse(BaseModel):
    id: uuid.UUID
    workspace_id: uuid.UUID
    name: str
    created_by: str
    created_at: datetime.datetime

    @classmethod
    def from_team(cls, team: Any) -> "TeamResponse":
        return cls(
            id=team.id,
            workspace_id=team.workspace_id,
            name=team.name,
            created_by=team.created_by,
            created_at=team.created_at,
        )


class AddTeamMemberRequest(BaseModel):
    user_id: str = Field(min_length=1, max_length=255)
    role: TeamRole = TeamRole.VIEWER


class UpdateTeamMemberRoleRequest(BaseModel):
    role: TeamRole


class TeamMemberResponse(BaseModel):
    id: uuid.UUID
    team_id: uuid.UUID
    user_id: str
    role: str
    status: str

    @classmethod
    def from_member(cls, member: Any) -> "TeamMemberResponse":
        return cls(
            id=member.id,
            team_id=member.team_id,
            user_id=member.user_id,
            role=member.role.value,
            status=member.status.value,
        )


class CreateProjectRequest(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    workspace_id: uuid.UUID | None = None


class TransferProjectRequest(BaseModel):
    new_owner_id: str = Field(min_length=1, max_length=255)


class MoveProjectRequest(BaseModel):
    workspace_id: uuid.UUID | None


class LinkTeamProjectRequest(BaseModel):
    team_id: uuid.UUID


class ProjectResponse(BaseModel):
    id: uuid.UUID
    name: str
    user_id: str
    workspace_id: uuid.UUID | None
    is_blocked: bool
    created_at: datetime.datetime

    @classmethod
    def from_project(cls, project: Any) -> "ProjectResponse":
        return cls(
            id=project.id,
            name=project.name,
            user_id=project.user_id,
            workspace_id=project.workspace_id,
            is_blocked=project.is_blocked,
            created_at=project.created_at,
        )

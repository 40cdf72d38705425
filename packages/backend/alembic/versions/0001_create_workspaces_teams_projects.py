"""Create workspaces, teams, team membership and projects tables.

Revision ID: 0001_create_workspaces_teams_projects
Revises:
Create Date: 2026-10-01 00:00:00
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "0001_create_workspaces_teams_projects"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


team_role_enum = sa.Enum("owner", "admin", "developer", "viewer", name="team_role")
membership_status_enum = sa.Enum("active", "pending", name="membership_status")


def upgrade() -> None:
    op.create_table(
        "workspaces",
        sa.Column("id", sa.Uuid(), primary_key=True, nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("created_by", sa.String(length=255), nullable=False),
        sa.Column("settings", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_workspaces_created_by", "workspaces", ["created_by"], unique=False)

    op.create_table(
        "teams",
        sa.Column("id", sa.Uuid(), primary_key=True, nullable=False),
        sa.Column(
            "workspace_id",
            sa.Uuid(),
            sa.ForeignKey("workspaces.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("created_by", sa.String(length=255), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_teams_workspace_id", "teams", ["workspace_id"], unique=False)

    op.create_table(
        "team_users",
        sa.Column("id", sa.Uuid(), primary_key=True, nullable=False),
        sa.Column("team_id", sa.Uuid(), sa.ForeignKey("teams.id", ondelete="CASCADE"), nullable=False),
        sa.Column("user_id", sa.String(length=255), nullable=False),
        sa.Column("role", team_role_enum, nullable=False),
        sa.Column("status", membership_status_enum, nullable=False, server_default="pending"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("team_id", "user_id", name="uq_team_users_team_user"),
    )
    op.create_index("ix_team_users_team_id", "team_users", ["team_id"], unique=False)
    op.create_index("ix_team_users_user_id", "team_users", ["user_id"], unique=False)

    op.create_table(
        "projects",
        sa.Column("id", sa.Uuid(), primary_key=True, nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("user_id", sa.String(length=255), nullable=False),
        sa.Column(
            "workspace_id",
            sa.Uuid(),
            sa.ForeignKey("workspaces.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("is_blocked", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_projects_user_id", "projects", ["user_id"], unique=False)
    op.create_index("ix_projects_workspace_id", "projects", ["workspace_id"], unique=False)

    op.create_table(
        "team_projects",
        sa.Column("id", sa.Uuid(), primary_key=True, nullable=False),
        sa.Column("team_id", sa.Uuid(), sa.ForeignKey("teams.id", ondelete="CASCADE"), nullable=False),
        sa.Column("project_id", sa.Uuid(), sa.ForeignKey("projects.id", ondelete="CASCADE"), nullable=False),
        sa.UniqueConstraint("team_id", "project_id", name="uq_team_projects_team_project"),
    )
    op.create_index("ix_team_projects_team_id", "team_projects", ["team_id"], unique=False)
    op.create_index("ix_team_projects_project_id", "team_projects", ["project_id"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_team_projects_project_id", table_name="team_projects")
    op.drop_index("ix_team_projects_team_id", table_name="team_projects")
    op.drop_table("team_projects")
    op.drop_index("ix_projects_workspace_id", table_name="projects")
    op.drop_index("ix_projects_user_id", table_name="projects")
    op.drop_table("projects")
    op.drop_index("ix_team_users_user_id", table_name="team_users")
    op.drop_index("ix_team_users_team_id", table_name="team_users")
    op.drop_table("team_users")
    op.drop_index("ix_teams_workspace_id", table_name="teams")
    op.drop_table("teams")
    op.drop_index("ix_workspaces_created_by", table_name="workspaces")
    op.drop_table("workspaces")
    membership_status_enum.drop(op.get_bind(), checkfirst=True)
    team_role_enum.drop(op.get_bind(), checkfirst=True)

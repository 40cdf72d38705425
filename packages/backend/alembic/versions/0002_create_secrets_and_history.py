"""Create secrets and secret_history tables.

Revision ID: 0002_create_secrets_and_history
Revises: 0001_create_workspaces_teams_projects
Create Date: 2026-10-01 00:00:01
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "0002_create_secrets_and_history"
down_revision: Union[str, None] = "0001_create_workspaces_teams_projects"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


environment_type_enum = sa.Enum("development", "staging", "production", name="environment_type")
rotation_policy_enum = sa.Enum("manual", "auto", "interval", name="rotation_policy")


def upgrade() -> None:
    op.create_table(
        "secrets",
        sa.Column("id", sa.Uuid(), primary_key=True, nullable=False),
        sa.Column("project_id", sa.Uuid(), sa.ForeignKey("projects.id", ondelete="CASCADE"), nullable=False),
        sa.Column("branch_id", sa.Uuid(), nullable=True),
        sa.Column("key", sa.String(length=255), nullable=False),
        sa.Column("encrypted_value", sa.Text(), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("environment_type", environment_type_enum, nullable=False, server_default="development"),
        sa.Column("type", sa.String(length=64), nullable=False, server_default="API Key"),
        sa.Column("version", sa.String(length=32), nullable=False, server_default="1"),
        sa.Column("permission", sa.JSON(), nullable=False),
        sa.Column("expiry_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("rotation_policy", rotation_policy_enum, nullable=False, server_default="manual"),
        sa.Column("updated_by", sa.String(length=255), nullable=False),
        sa.Column("last_updated", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("project_id", "branch_id", "key", name="uq_secrets_project_branch_key"),
    )
    op.create_index("ix_secrets_project_id", "secrets", ["project_id"], unique=False)
    op.create_index("ix_secrets_branch_id", "secrets", ["branch_id"], unique=False)

    op.create_table(
        "secret_history",
        sa.Column("id", sa.Uuid(), primary_key=True, nullable=False),
        sa.Column("secret_id", sa.Uuid(), sa.ForeignKey("secrets.id", ondelete="CASCADE"), nullable=False),
        sa.Column("version", sa.String(length=32), nullable=False),
        sa.Column("encrypted_value", sa.Text(), nullable=True),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("updated_by", sa.String(length=255), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("change_reason", sa.String(length=255), nullable=True),
        sa.UniqueConstraint("secret_id", "version", name="uq_secret_history_secret_version"),
    )
    op.create_index("ix_secret_history_secret_id", "secret_history", ["secret_id"], unique=False)
    op.execute(
        """
        CREATE TRIGGER trg_secret_history_prevent_update
        BEFORE UPDATE ON secret_history
        FOR EACH ROW
        SIGNAL SQLSTATE '45000'
        SET MESSAGE_TEXT = 'secret_history is append-only'
        """
    )


def downgrade() -> None:
    op.execute("DROP TRIGGER IF EXISTS trg_secret_history_prevent_update")
    op.drop_index("ix_secret_history_secret_id", table_name="secret_history")
    op.drop_table("secret_history")
    op.drop_index("ix_secrets_branch_id", table_name="secrets")
    op.drop_index("ix_secrets_project_id", table_name="secrets")
    op.drop_table("secrets")
    rotation_policy_enum.drop(op.get_bind(), checkfirst=True)
    environment_type_enum.drop(op.get_bind(), checkfirst=True)

"""Create rotation_schedules and rotation_logs tables.

Revision ID: 0003_create_rotation_schedules_and_logs
Revises: 0002_create_secrets_and_history
Create Date: 2026-10-01 00:00:02
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "0003_create_rotation_schedules_and_logs"
down_revision: Union[str, None] = "0002_create_secrets_and_history"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


rotation_frequency_enum = sa.Enum("daily", "weekly", "monthly", "quarterly", "custom", name="rotation_frequency")
rotation_method_enum = sa.Enum("manual", "auto-generate", "webhook", name="rotation_method")
schedule_status_enum = sa.Enum("active", "paused", name="schedule_status")
rotation_log_status_enum = sa.Enum("in-progress", "success", "failed", name="rotation_log_status")


def upgrade() -> None:
    op.create_table(
        "rotation_schedules",
        sa.Column("id", sa.Uuid(), primary_key=True, nullable=False),
        sa.Column("secret_id", sa.Uuid(), sa.ForeignKey("secrets.id", ondelete="CASCADE"), nullable=False),
        sa.Column("project_id", sa.Uuid(), sa.ForeignKey("projects.id", ondelete="CASCADE"), nullable=False),
        sa.Column("environment", sa.String(length=32), nullable=False),
        sa.Column("frequency", rotation_frequency_enum, nullable=False),
        sa.Column("custom_days", sa.Integer(), nullable=True),
        sa.Column("method", rotation_method_enum, nullable=False),
        sa.Column("webhook_url", sa.String(length=2048), nullable=True),
        sa.Column("status", schedule_status_enum, nullable=False, server_default="active"),
        sa.Column("next_rotation", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_rotation", sa.DateTime(timezone=True), nullable=True),
        sa.Column("active_log_id", sa.Uuid(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("secret_id", name="uq_rotation_schedules_secret_id"),
    )
    op.create_index("ix_rotation_schedules_project_id", "rotation_schedules", ["project_id"], unique=False)
    op.create_index(
        "ix_rotation_schedules_status_next_rotation",
        "rotation_schedules",
        ["status", "next_rotation"],
        unique=False,
    )

    op.create_table(
        "rotation_logs",
        sa.Column("id", sa.Uuid(), primary_key=True, nullable=False),
        sa.Column(
            "schedule_id",
            sa.Uuid(),
            sa.ForeignKey("rotation_schedules.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("status", rotation_log_status_enum, nullable=False, server_default="in-progress"),
        sa.Column("triggered_by", sa.String(length=255), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
    )
    op.create_index("ix_rotation_logs_schedule_id_started_at", "rotation_logs", ["schedule_id", "started_at"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_rotation_logs_schedule_id_started_at", table_name="rotation_logs")
    op.drop_table("rotation_logs")
    op.drop_index("ix_rotation_schedules_status_next_rotation", table_name="rotation_schedules")
    op.drop_index("ix_rotation_schedules_project_id", table_name="rotation_schedules")
    op.drop_table("rotation_schedules")
    rotation_log_status_enum.drop(op.get_bind(), checkfirst=True)
    schedule_status_enum.drop(op.get_bind(), checkfirst=True)
    rotation_method_enum.drop(op.get_bind(), checkfirst=True)
    rotation_frequency_enum.drop(op.get_bind(), checkfirst=True)

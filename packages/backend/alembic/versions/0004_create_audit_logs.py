"""Create the append-only audit_logs table.

Revision ID: 0004_create_audit_logs
Revises: 0003_create_rotation_schedules_and_logs
Create Date: 2026-10-01 00:00:03
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "0004_create_audit_logs"
down_revision: Union[str, None] = "0003_create_rotation_schedules_and_logs"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "audit_logs",
        sa.Column("id", sa.Uuid(), primary_key=True, nullable=False),
        sa.Column("event", sa.String(length=64), nullable=False),
        sa.Column("actor", sa.String(length=255), nullable=False),
        sa.Column("project_id", sa.Uuid(), nullable=True),
        sa.Column("target_id", sa.Uuid(), nullable=True),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_audit_logs_event", "audit_logs", ["event"], unique=False)
    op.create_index("ix_audit_logs_project_id_timestamp", "audit_logs", ["project_id", "timestamp"], unique=False)
    op.execute(
        """
        CREATE TRIGGER trg_audit_logs_prevent_update
        BEFORE UPDATE ON audit_logs
        FOR EACH ROW
        SIGNAL SQLSTATE '45000'
        SET MESSAGE_TEXT = 'audit_logs is append-only'
        """
    )


def downgrade() -> None:
    op.execute("DROP TRIGGER IF EXISTS trg_audit_logs_prevent_update")
    op.drop_index("ix_audit_logs_project_id_timestamp", table_name="audit_logs")
    op.drop_index("ix_audit_logs_event", table_name="audit_logs")
    op.drop_table("audit_logs")

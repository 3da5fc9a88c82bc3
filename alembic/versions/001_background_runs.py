"""Background runs queue.

Revision ID: 001_background_runs
Revises:
Create Date: 2026-10-18

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision: str = "001_background_runs"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "background_runs",
        sa.Column("id", sa.Text, primary_key=True),
        sa.Column("project_id", sa.Text, nullable=False),
        sa.Column("user_id", sa.Text, nullable=False),
        sa.Column("run_type", sa.Text, nullable=False),
        sa.Column("status", sa.Text, nullable=False, server_default="queued"),
        sa.Column("progress", sa.Integer, nullable=False, server_default="0"),
        sa.Column("input", postgresql.JSONB, nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("metadata", postgresql.JSONB, nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("output", postgresql.JSONB, nullable=True),
        sa.Column("idempotency_key", sa.Text, nullable=True),
        sa.Column("attempt_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer, nullable=False, server_default="3"),
        sa.Column("retryable", sa.Boolean, nullable=False, server_default=sa.text("true")),
        sa.Column("cancel_requested", sa.Boolean, nullable=False, server_default=sa.text("false")),
        sa.Column("error_message", sa.Text, nullable=True),
        sa.Column("last_heartbeat_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("next_retry_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint(
            "status IN ('queued', 'running', 'succeeded', 'failed', 'cancelled')",
            name="background_runs_status_check",
        ),
        sa.CheckConstraint("progress BETWEEN 0 AND 100", name="background_runs_progress_check"),
        sa.CheckConstraint("max_attempts BETWEEN 1 AND 10", name="background_runs_max_attempts_check"),
        sa.CheckConstraint("attempt_count >= 0", name="background_runs_attempt_count_check"),
    )

    op.create_index(
        "background_runs_user_created_idx",
        "background_runs",
        ["user_id", sa.text("created_at DESC")],
    )
    op.create_index(
        "background_runs_project_created_idx",
        "background_runs",
        ["project_id", sa.text("created_at DESC")],
    )
    op.create_index(
        "background_runs_status_created_idx",
        "background_runs",
        ["status", "created_at"],
    )
    op.create_index(
        "background_runs_next_retry_idx",
        "background_runs",
        ["next_retry_at"],
    )
    op.create_index(
        "background_runs_idempotency_uq",
        "background_runs",
        ["project_id", "user_id", "run_type", "idempotency_key"],
        unique=True,
        postgresql_where=sa.text("idempotency_key IS NOT NULL"),
    )


def downgrade() -> None:
    op.drop_index("background_runs_idempotency_uq", table_name="background_runs")
    op.drop_index("background_runs_next_retry_idx", table_name="background_runs")
    op.drop_index("background_runs_status_created_idx", table_name="background_runs")
    op.drop_index("background_runs_project_created_idx", table_name="background_runs")
    op.drop_index("background_runs_user_created_idx", table_name="background_runs")
    op.drop_table("background_runs")

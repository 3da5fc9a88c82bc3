"""Background runs table."""

from __future__ import annotations

from uuid import uuid4

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Index,
    Integer,
    Text,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB

from runplane.db.models import Base


class BackgroundRunRecord(Base):
    __tablename__ = "background_runs"

    id = Column(Text, primary_key=True, default=lambda: str(uuid4()))
    project_id = Column(Text, nullable=False)
    user_id = Column(Text, nullable=False)

    run_type = Column(Text, nullable=False)
    status = Column(Text, nullable=False, server_default="queued")  # queued, running, succeeded, failed, cancelled
    progress = Column(Integer, nullable=False, server_default="0")

    input = Column(JSONB, nullable=False, server_default=text("'{}'::jsonb"))
    metadata_ = Column("metadata", JSONB, nullable=False, server_default=text("'{}'::jsonb"))
    output = Column(JSONB, nullable=True)

    idempotency_key = Column(Text, nullable=True)
    attempt_count = Column(Integer, nullable=False, server_default="0")
    max_attempts = Column(Integer, nullable=False, server_default="3")
    retryable = Column(Boolean, nullable=False, server_default=text("true"))
    cancel_requested = Column(Boolean, nullable=False, server_default=text("false"))
    error_message = Column(Text, nullable=True)

    last_heartbeat_at = Column(DateTime(timezone=True), nullable=True)
    next_retry_at = Column(DateTime(timezone=True), nullable=True)
    started_at = Column(DateTime(timezone=True), nullable=True)
    finished_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    __table_args__ = (
        CheckConstraint(
            "status IN ('queued', 'running', 'succeeded', 'failed', 'cancelled')",
            name="background_runs_status_check",
        ),
        CheckConstraint("progress BETWEEN 0 AND 100", name="background_runs_progress_check"),
        CheckConstraint("max_attempts BETWEEN 1 AND 10", name="background_runs_max_attempts_check"),
        CheckConstraint("attempt_count >= 0", name="background_runs_attempt_count_check"),
        Index("background_runs_user_created_idx", "user_id", text("created_at DESC")),
        Index("background_runs_project_created_idx", "project_id", text("created_at DESC")),
        Index("background_runs_status_created_idx", "status", "created_at"),
        Index("background_runs_next_retry_idx", "next_retry_at"),
        Index(
            "background_runs_idempotency_uq",
            "project_id",
            "user_id",
            "run_type",
            "idempotency_key",
            unique=True,
            postgresql_where=text("idempotency_key IS NOT NULL"),
        ),
    )

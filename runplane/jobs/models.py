"""Background run records and the result types exchanged by the job plane."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Mapping

from runplane.kernel.time import coerce_utc, isoformat_z, parse_iso8601


class RunStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({RunStatus.SUCCEEDED, RunStatus.FAILED, RunStatus.CANCELLED})

DEFAULT_MAX_ATTEMPTS = 3

# Columns a transition may write. Anything else on a row is immutable.
MUTABLE_COLUMNS = frozenset(
    {
        "status",
        "progress",
        "output",
        "error_message",
        "started_at",
        "finished_at",
        "next_retry_at",
        "last_heartbeat_at",
        "attempt_count",
        "cancel_requested",
    }
)


def _ts(value: Any) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return coerce_utc(value)
    return parse_iso8601(str(value))


@dataclass(frozen=True)
class BackgroundRun:
    id: str
    project_id: str
    user_id: str
    run_type: str
    status: RunStatus
    created_at: datetime
    updated_at: datetime
    progress: int = 0
    input: dict[str, Any] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)
    output: dict[str, Any] | None = None
    idempotency_key: str | None = None
    attempt_count: int = 0
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    retryable: bool = True
    # Advisory only: executors poll it, nothing force-kills an in-flight call.
    cancel_requested: bool = False
    error_message: str | None = None
    last_heartbeat_at: datetime | None = None
    next_retry_at: datetime | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def attempts_remaining(self) -> bool:
        return self.attempt_count < self.max_attempts

    @property
    def lease_signal_at(self) -> datetime:
        """Most recent sign of life used by the watchdog."""
        return self.last_heartbeat_at or self.started_at or self.created_at

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "BackgroundRun":
        return cls(
            id=str(row["id"]),
            project_id=str(row["project_id"]),
            user_id=str(row["user_id"]),
            run_type=str(row["run_type"]),
            status=RunStatus(str(row["status"])),
            progress=int(row.get("progress") or 0),
            input=dict(row.get("input") or {}),
            metadata=dict(row.get("metadata") or {}),
            output=row.get("output"),
            idempotency_key=row.get("idempotency_key"),
            attempt_count=int(row.get("attempt_count") or 0),
            max_attempts=int(row.get("max_attempts") or DEFAULT_MAX_ATTEMPTS),
            retryable=row.get("retryable") is not False,
            cancel_requested=bool(row.get("cancel_requested")),
            error_message=row.get("error_message"),
            last_heartbeat_at=_ts(row.get("last_heartbeat_at")),
            next_retry_at=_ts(row.get("next_retry_at")),
            started_at=_ts(row.get("started_at")),
            finished_at=_ts(row.get("finished_at")),
            created_at=_ts(row["created_at"]),
            updated_at=_ts(row["updated_at"]),
        )

    def with_mutation(self, mutation: Mapping[str, Any], *, updated_at: datetime) -> "BackgroundRun":
        changes = {key: value for key, value in mutation.items() if key in MUTABLE_COLUMNS}
        if "status" in changes:
            changes["status"] = RunStatus(changes["status"])
        return replace(self, updated_at=updated_at, **changes)

    def to_public_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "projectId": self.project_id,
            "userId": self.user_id,
            "runType": self.run_type,
            "status": self.status.value,
            "progress": self.progress,
            "input": self.input,
            "metadata": self.metadata,
            "output": self.output,
            "idempotencyKey": self.idempotency_key,
            "attemptCount": self.attempt_count,
            "maxAttempts": self.max_attempts,
            "retryable": self.retryable,
            "cancelRequested": self.cancel_requested,
            "errorMessage": self.error_message,
            "lastHeartbeatAt": isoformat_z(self.last_heartbeat_at),
            "nextRetryAt": isoformat_z(self.next_retry_at),
            "startedAt": isoformat_z(self.started_at),
            "finishedAt": isoformat_z(self.finished_at),
            "createdAt": isoformat_z(self.created_at),
            "updatedAt": isoformat_z(self.updated_at),
        }


@dataclass(frozen=True)
class RunScope:
    """Optional filters pinning dispatch/recovery to a run, project or user."""

    run_id: str | None = None
    project_id: str | None = None
    user_id: str | None = None

    def without_run(self) -> "RunScope":
        return replace(self, run_id=None)

    def matches(self, run: BackgroundRun) -> bool:
        if self.run_id and run.id != self.run_id:
            return False
        if self.project_id and run.project_id != self.project_id:
            return False
        if self.user_id and run.user_id != self.user_id:
            return False
        return True


@dataclass(frozen=True)
class CreateRunRequest:
    project_id: str
    run_type: str
    input: dict[str, Any] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)
    idempotency_key: str | None = None
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    retryable: bool = True


@dataclass
class DispatchOutcome:
    run_id: str
    previous_status: RunStatus
    status: RunStatus
    attempt_count: int
    progress: int
    retried: bool = False
    output: dict[str, Any] | None = None
    next_retry_at: datetime | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None
    error: str | None = None
    store_unavailable: bool = False

    @classmethod
    def from_run(
        cls,
        run: BackgroundRun,
        *,
        previous_status: RunStatus,
        retried: bool = False,
        error: str | None = None,
    ) -> "DispatchOutcome":
        return cls(
            run_id=run.id,
            previous_status=previous_status,
            status=run.status,
            attempt_count=run.attempt_count,
            progress=run.progress,
            retried=retried,
            output=run.output,
            next_retry_at=run.next_retry_at,
            started_at=run.started_at,
            finished_at=run.finished_at,
            error=error,
        )

    def to_public_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "runId": self.run_id,
            "previousStatus": self.previous_status.value,
            "status": self.status.value,
            "retried": self.retried,
            "attemptCount": self.attempt_count,
            "progress": self.progress,
            "output": self.output,
            "nextRetryAt": isoformat_z(self.next_retry_at),
            "startedAt": isoformat_z(self.started_at),
            "finishedAt": isoformat_z(self.finished_at),
        }
        if self.error is not None:
            payload["error"] = self.error
        return payload


@dataclass
class DispatchResult:
    processed: int = 0
    outcomes: list[DispatchOutcome] = field(default_factory=list)
    degraded: bool = False
    warning: str | None = None

    @classmethod
    def unavailable(cls, warning: str) -> "DispatchResult":
        return cls(processed=0, outcomes=[], degraded=True, warning=warning)


@dataclass
class WatchdogResult:
    scanned: int = 0
    stale: int = 0
    recovered: int = 0
    retried: int = 0
    failed: int = 0
    outcomes: list[DispatchOutcome] = field(default_factory=list)
    degraded: bool = False
    warning: str | None = None

    @classmethod
    def unavailable(cls, warning: str) -> "WatchdogResult":
        return cls(degraded=True, warning=warning)

    def to_public_dict(self, *, timeout_seconds: int) -> dict[str, Any]:
        return {
            "timeoutSeconds": timeout_seconds,
            "scanned": self.scanned,
            "stale": self.stale,
            "recovered": self.recovered,
            "retried": self.retried,
            "failed": self.failed,
        }

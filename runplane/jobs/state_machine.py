"""
Background run lifecycle rules.

`compute_transition` is pure: given the current run, an update request and
the current time, it either returns the column mutation to persist or a
typed rejection. Stores apply the mutation with a conditional update
guarded on the status the decision was based on.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from runplane.jobs.models import BackgroundRun, RunStatus


class RunOperation(str, Enum):
    START = "start"
    PROGRESS = "progress"
    COMPLETE = "complete"
    FAIL = "fail"
    REQUEST_CANCEL = "request-cancel"
    CANCEL = "cancel"
    RETRY = "retry"
    HEARTBEAT = "heartbeat"


class RejectionCode(str, Enum):
    INVALID_PAYLOAD = "invalid_payload"
    INVALID_TRANSITION = "invalid_transition"
    MAX_ATTEMPTS_REACHED = "max_attempts_reached"
    NOT_RETRYABLE = "not_retryable"

    @property
    def http_status(self) -> int:
        return 400 if self is RejectionCode.INVALID_PAYLOAD else 409


# Legacy clients send a target status instead of an operation.
_STATUS_TO_OPERATION = {
    RunStatus.RUNNING: RunOperation.START,
    RunStatus.SUCCEEDED: RunOperation.COMPLETE,
    RunStatus.FAILED: RunOperation.FAIL,
    RunStatus.CANCELLED: RunOperation.CANCEL,
    RunStatus.QUEUED: RunOperation.RETRY,
}


@dataclass(frozen=True)
class RunPatch:
    operation: RunOperation | None = None
    status: RunStatus | None = None
    progress: int | None = None
    output: dict[str, Any] | None = None
    error_message: str | None = None
    retry_after_seconds: float | None = None

    def derive_operation(self) -> RunOperation | None:
        if self.operation is not None:
            return self.operation
        if self.status is not None:
            return _STATUS_TO_OPERATION[self.status]
        if self.progress is not None:
            return RunOperation.PROGRESS
        return None


@dataclass(frozen=True)
class TransitionOk:
    operation: RunOperation
    mutation: dict[str, Any] = field(default_factory=dict)
    ok: bool = True


@dataclass(frozen=True)
class TransitionRejected:
    code: RejectionCode
    message: str
    ok: bool = False


TransitionResult = TransitionOk | TransitionRejected


def _reject_transition(message: str) -> TransitionRejected:
    return TransitionRejected(code=RejectionCode.INVALID_TRANSITION, message=message)


def _with_output(mutation: dict[str, Any], patch: RunPatch) -> dict[str, Any]:
    if patch.output is not None:
        mutation["output"] = patch.output
    return mutation


def compute_transition(current: BackgroundRun, patch: RunPatch, now: datetime) -> TransitionResult:
    """Decide whether `patch` may be applied to `current` and what it writes."""
    operation = patch.derive_operation()
    if operation is None:
        return TransitionRejected(
            code=RejectionCode.INVALID_PAYLOAD,
            message="No valid operation could be derived from update payload.",
        )

    status = current.status
    if current.is_terminal and operation is not RunOperation.RETRY:
        return _reject_transition(
            f"Run is already {status.value} and cannot transition via {operation.value}."
        )

    if operation is RunOperation.START:
        if status is not RunStatus.QUEUED:
            return _reject_transition(f"start is only allowed from queued. Current status: {status.value}.")
        if current.cancel_requested:
            return _reject_transition("Run has a pending cancel request and cannot be started.")
        if current.attempt_count >= current.max_attempts:
            return TransitionRejected(
                code=RejectionCode.MAX_ATTEMPTS_REACHED,
                message="Run reached max attempts and cannot be started again.",
            )
        progress = patch.progress if patch.progress is not None else max(1, current.progress)
        return TransitionOk(
            operation=operation,
            mutation={
                "status": RunStatus.RUNNING,
                "started_at": now,
                "finished_at": None,
                "next_retry_at": None,
                "attempt_count": current.attempt_count + 1,
                "progress": progress,
            },
        )

    if operation is RunOperation.PROGRESS:
        if status is not RunStatus.RUNNING:
            return _reject_transition(f"progress is only allowed from running. Current status: {status.value}.")
        if patch.progress is None:
            return TransitionRejected(
                code=RejectionCode.INVALID_PAYLOAD,
                message="progress operation requires progress value.",
            )
        return TransitionOk(operation=operation, mutation={"progress": max(current.progress, patch.progress)})

    if operation is RunOperation.COMPLETE:
        if status is not RunStatus.RUNNING:
            return _reject_transition(f"complete is only allowed from running. Current status: {status.value}.")
        return TransitionOk(
            operation=operation,
            mutation=_with_output(
                {
                    "status": RunStatus.SUCCEEDED,
                    "progress": 100,
                    "finished_at": now,
                    "error_message": None,
                    "next_retry_at": None,
                },
                patch,
            ),
        )

    if operation is RunOperation.FAIL:
        if status not in (RunStatus.QUEUED, RunStatus.RUNNING):
            return _reject_transition(
                f"fail is only allowed from queued or running. Current status: {status.value}."
            )
        return TransitionOk(
            operation=operation,
            mutation=_with_output(
                {
                    "status": RunStatus.FAILED,
                    "finished_at": now,
                    "next_retry_at": None,
                    "error_message": patch.error_message or "Run failed",
                },
                patch,
            ),
        )

    if operation is RunOperation.REQUEST_CANCEL:
        if status is RunStatus.QUEUED:
            return TransitionOk(
                operation=operation,
                mutation={
                    "status": RunStatus.CANCELLED,
                    "cancel_requested": True,
                    "finished_at": now,
                    "next_retry_at": None,
                },
            )
        if status is RunStatus.RUNNING:
            # Cooperative: the executor notices on its next poll.
            return TransitionOk(operation=operation, mutation={"cancel_requested": True})
        return _reject_transition(
            f"request-cancel is only allowed from queued or running. Current status: {status.value}."
        )

    if operation is RunOperation.CANCEL:
        if status not in (RunStatus.QUEUED, RunStatus.RUNNING, RunStatus.FAILED):
            return _reject_transition(
                f"cancel is only allowed from queued, running, or failed. Current status: {status.value}."
            )
        return TransitionOk(
            operation=operation,
            mutation={
                "status": RunStatus.CANCELLED,
                "cancel_requested": True,
                "finished_at": now,
                "next_retry_at": None,
            },
        )

    if operation is RunOperation.RETRY:
        if status is not RunStatus.FAILED:
            return _reject_transition(f"retry is only allowed from failed. Current status: {status.value}.")
        # Exhaustion wins over the retryable flag so the answer never depends on it.
        if current.attempt_count >= current.max_attempts:
            return TransitionRejected(
                code=RejectionCode.MAX_ATTEMPTS_REACHED,
                message="Run reached max attempts and cannot be retried.",
            )
        if not current.retryable:
            return TransitionRejected(code=RejectionCode.NOT_RETRYABLE, message="Run is not retryable.")
        retry_after = max(0.0, float(patch.retry_after_seconds or 0))
        return TransitionOk(
            operation=operation,
            mutation={
                "status": RunStatus.QUEUED,
                "progress": 0,
                "started_at": None,
                "finished_at": None,
                "error_message": None,
                "cancel_requested": False,
                "next_retry_at": now + timedelta(seconds=retry_after),
            },
        )

    if status is not RunStatus.RUNNING:
        return _reject_transition(f"heartbeat is only allowed from running. Current status: {status.value}.")
    return TransitionOk(operation=operation, mutation={"last_heartbeat_at": now})

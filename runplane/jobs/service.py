"""User-facing run operations: create, read, list, update, retry.

Every write goes through the state machine and lands as a conditional
update on the status it was computed from.
"""

from __future__ import annotations

from typing import Any

import structlog

from runplane.jobs.models import BackgroundRun, CreateRunRequest, RunStatus
from runplane.jobs.state_machine import (
    RejectionCode,
    RunOperation,
    RunPatch,
    TransitionRejected,
    compute_transition,
)
from runplane.jobs.store import RunStore
from runplane.kernel.errors import (
    ConflictError,
    MaxAttemptsReachedError,
    NotFoundError,
    RunplaneError,
    ValidationError,
)
from runplane.kernel.time import Clock, SystemClock

logger = structlog.get_logger()

DEFAULT_LIST_LIMIT = 50
MAX_LIST_LIMIT = 200


def rejection_to_error(rejection: TransitionRejected) -> RunplaneError:
    if rejection.code is RejectionCode.INVALID_PAYLOAD:
        return ValidationError(message=rejection.message)
    if rejection.code is RejectionCode.MAX_ATTEMPTS_REACHED:
        return MaxAttemptsReachedError(message=rejection.message)
    if rejection.code is RejectionCode.NOT_RETRYABLE:
        return ConflictError(code="NOT_RETRYABLE", message=rejection.message)
    return ConflictError(code="INVALID_TRANSITION", message=rejection.message)


class RunService:
    def __init__(self, store: RunStore, *, clock: Clock | None = None):
        self.store = store
        self.clock = clock or SystemClock()

    async def create_run(self, request: CreateRunRequest, *, user_id: str) -> tuple[BackgroundRun, bool]:
        run, deduplicated = await self.store.create_run(request, user_id=user_id, now=self.clock.now())
        logger.info(
            "Background run created" if not deduplicated else "Background run deduplicated",
            run_id=run.id,
            run_type=run.run_type,
            project_id=run.project_id,
            user_id=user_id,
        )
        return run, deduplicated

    async def get_run(self, run_id: str, *, user_id: str) -> BackgroundRun:
        run = await self.store.get_run(run_id, user_id=user_id)
        if run is None:
            raise NotFoundError(message="Run not found.", code="RUN_NOT_FOUND")
        return run

    async def list_runs(
        self,
        *,
        user_id: str,
        project_id: str | None = None,
        status: RunStatus | None = None,
        limit: Any = DEFAULT_LIST_LIMIT,
    ) -> list[BackgroundRun]:
        try:
            bounded = min(max(int(limit), 1), MAX_LIST_LIMIT)
        except (TypeError, ValueError):
            bounded = DEFAULT_LIST_LIMIT
        return await self.store.list_runs(
            user_id=user_id, project_id=project_id, status=status, limit=bounded
        )

    async def update_run(self, run_id: str, patch: RunPatch, *, user_id: str) -> BackgroundRun:
        current = await self.get_run(run_id, user_id=user_id)
        now = self.clock.now()
        transition = compute_transition(current, patch, now)
        if isinstance(transition, TransitionRejected):
            raise rejection_to_error(transition)

        mutation = dict(transition.mutation)
        # Explicit fields ride along with any operation.
        if patch.output is not None:
            mutation["output"] = patch.output
        if patch.error_message is not None:
            mutation["error_message"] = patch.error_message

        updated = await self.store.apply_mutation(
            run_id, expected_status=current.status, mutation=mutation, now=now
        )
        if updated is None:
            raise ConflictError(
                code="INVALID_TRANSITION",
                message="Run changed state concurrently; reload and try again.",
            )
        logger.info(
            "Background run updated",
            run_id=run_id,
            operation=transition.operation.value,
            status=updated.status.value,
        )
        return updated

    async def retry_run(
        self, run_id: str, *, user_id: str, retry_after_seconds: float | None = None
    ) -> BackgroundRun:
        return await self.update_run(
            run_id,
            RunPatch(operation=RunOperation.RETRY, retry_after_seconds=retry_after_seconds),
            user_id=user_id,
        )

"""In-process RunStore for local development and tests.

Same claim and guard semantics as the Postgres adapter; a single asyncio
lock stands in for row locks.
"""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any, Mapping
from uuid import uuid4

from runplane.jobs.models import (
    MUTABLE_COLUMNS,
    BackgroundRun,
    CreateRunRequest,
    RunScope,
    RunStatus,
)


class InMemoryRunStore:
    def __init__(self) -> None:
        self._runs: dict[str, BackgroundRun] = {}
        self._idempotency: dict[tuple[str, str, str, str], str] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._runs)

    def put(self, run: BackgroundRun) -> None:
        """Seed a run as-is (fixtures)."""
        self._runs[run.id] = run
        if run.idempotency_key:
            self._idempotency[(run.project_id, run.user_id, run.run_type, run.idempotency_key)] = run.id

    async def create_run(
        self, request: CreateRunRequest, *, user_id: str, now: datetime
    ) -> tuple[BackgroundRun, bool]:
        async with self._lock:
            if request.idempotency_key:
                scope = (request.project_id, user_id, request.run_type, request.idempotency_key)
                existing_id = self._idempotency.get(scope)
                if existing_id is not None:
                    return self._runs[existing_id], True

            run = BackgroundRun(
                id=str(uuid4()),
                project_id=request.project_id,
                user_id=user_id,
                run_type=request.run_type,
                status=RunStatus.QUEUED,
                input=dict(request.input),
                metadata=dict(request.metadata),
                idempotency_key=request.idempotency_key,
                max_attempts=request.max_attempts,
                retryable=request.retryable,
                created_at=now,
                updated_at=now,
            )
            self.put(run)
            return run, False

    async def get_run(self, run_id: str, *, user_id: str | None = None) -> BackgroundRun | None:
        run = self._runs.get(run_id)
        if run is None or (user_id is not None and run.user_id != user_id):
            return None
        return run

    async def list_runs(
        self,
        *,
        user_id: str,
        project_id: str | None = None,
        status: RunStatus | None = None,
        limit: int = 50,
    ) -> list[BackgroundRun]:
        runs = [
            run
            for run in self._runs.values()
            if run.user_id == user_id
            and (project_id is None or run.project_id == project_id)
            and (status is None or run.status is status)
        ]
        runs.sort(key=lambda run: run.created_at, reverse=True)
        return runs[:limit]

    async def claim_queued(self, scope: RunScope, *, limit: int, now: datetime) -> list[BackgroundRun]:
        async with self._lock:
            due = [
                run
                for run in self._runs.values()
                if run.status is RunStatus.QUEUED
                and not run.cancel_requested
                and run.attempts_remaining
                and (run.next_retry_at is None or run.next_retry_at <= now)
                and scope.matches(run)
            ]
            due.sort(key=lambda run: run.created_at)

            claimed: list[BackgroundRun] = []
            for run in due[:limit]:
                started = run.with_mutation(
                    {
                        "status": RunStatus.RUNNING,
                        "started_at": now,
                        "finished_at": None,
                        "next_retry_at": None,
                        "attempt_count": run.attempt_count + 1,
                        "progress": max(1, run.progress),
                    },
                    updated_at=now,
                )
                self._runs[run.id] = started
                claimed.append(started)
            return claimed

    async def list_running(self, scope: RunScope, *, limit: int) -> list[BackgroundRun]:
        running = [
            run for run in self._runs.values() if run.status is RunStatus.RUNNING and scope.matches(run)
        ]
        running.sort(key=lambda run: (run.started_at is not None, run.started_at or run.created_at))
        return running[:limit]

    async def apply_mutation(
        self,
        run_id: str,
        *,
        expected_status: RunStatus,
        mutation: Mapping[str, Any],
        now: datetime,
        expected_attempt: int | None = None,
    ) -> BackgroundRun | None:
        unknown = set(mutation) - MUTABLE_COLUMNS
        if unknown:
            raise ValueError(f"Mutation touches immutable columns: {sorted(unknown)}")

        async with self._lock:
            run = self._runs.get(run_id)
            if run is None or run.status is not expected_status:
                return None
            if expected_attempt is not None and run.attempt_count != expected_attempt:
                return None
            updated = run.with_mutation(mutation, updated_at=now)
            self._runs[run_id] = updated
            return updated

    async def is_cancel_requested(self, run_id: str) -> bool:
        run = self._runs.get(run_id)
        return bool(run and run.cancel_requested)

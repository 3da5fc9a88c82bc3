"""
Durable background run store.

`RunStore` is the port the dispatcher, watchdog and HTTP layer depend on.
`PostgresRunStore` implements it with raw SQL over the asyncpg pool:

- Claims are a single `UPDATE ... WHERE id IN (SELECT ... FOR UPDATE SKIP LOCKED)`
  so concurrent dispatchers never receive the same row.
- Every later transition is a conditional update on the status (and, for
  the watchdog, the attempt number) the caller observed. A lost race
  returns None instead of clobbering the winner's write.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Mapping, Protocol
from uuid import uuid4

import structlog

from runplane.db.port import RawQueryPool, get_raw_query_pool
from runplane.jobs.availability import RunStoreUnavailableError, is_store_unavailable_error
from runplane.jobs.models import (
    MUTABLE_COLUMNS,
    BackgroundRun,
    CreateRunRequest,
    RunScope,
    RunStatus,
)

logger = structlog.get_logger()


class RunStore(Protocol):
    async def create_run(
        self, request: CreateRunRequest, *, user_id: str, now: datetime
    ) -> tuple[BackgroundRun, bool]:
        """Insert a queued run; returns (run, deduplicated)."""
        ...

    async def get_run(self, run_id: str, *, user_id: str | None = None) -> BackgroundRun | None:
        ...

    async def list_runs(
        self,
        *,
        user_id: str,
        project_id: str | None = None,
        status: RunStatus | None = None,
        limit: int = 50,
    ) -> list[BackgroundRun]:
        ...

    async def claim_queued(self, scope: RunScope, *, limit: int, now: datetime) -> list[BackgroundRun]:
        """Atomically move up to `limit` due queued runs to running."""
        ...

    async def list_running(self, scope: RunScope, *, limit: int) -> list[BackgroundRun]:
        ...

    async def apply_mutation(
        self,
        run_id: str,
        *,
        expected_status: RunStatus,
        mutation: Mapping[str, Any],
        now: datetime,
        expected_attempt: int | None = None,
    ) -> BackgroundRun | None:
        """Conditionally write `mutation`; None when the guard no longer matches."""
        ...

    async def is_cancel_requested(self, run_id: str) -> bool:
        ...


def _db_value(value: Any) -> Any:
    if isinstance(value, RunStatus):
        return value.value
    return value


class PostgresRunStore:
    """RunStore backed by the `background_runs` table."""

    def __init__(self, pool: RawQueryPool | None = None):
        self._pool = pool

    async def _get_pool(self) -> RawQueryPool:
        if self._pool is None:
            self._pool = await get_raw_query_pool()
        return self._pool

    @asynccontextmanager
    async def _connection(self) -> AsyncIterator[Any]:
        try:
            pool = await self._get_pool()
            async with pool.acquire() as conn:
                yield conn
        except RunStoreUnavailableError:
            raise
        except Exception as exc:
            if is_store_unavailable_error(exc):
                logger.warning("Background runs store unavailable", error=str(exc))
                raise RunStoreUnavailableError(str(exc)) from exc
            raise

    async def create_run(
        self, request: CreateRunRequest, *, user_id: str, now: datetime
    ) -> tuple[BackgroundRun, bool]:
        async with self._connection() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO background_runs (
                    id, project_id, user_id, run_type, status, progress,
                    input, metadata, idempotency_key, attempt_count, max_attempts,
                    retryable, cancel_requested, created_at, updated_at
                )
                VALUES (
                    $1, $2, $3, $4, 'queued', 0,
                    $5, $6, $7, 0, $8,
                    $9, false, $10, $10
                )
                ON CONFLICT (project_id, user_id, run_type, idempotency_key)
                    WHERE idempotency_key IS NOT NULL
                DO NOTHING
                RETURNING *
                """,
                str(uuid4()),
                request.project_id,
                user_id,
                request.run_type,
                request.input,
                request.metadata,
                request.idempotency_key,
                int(request.max_attempts),
                bool(request.retryable),
                now,
            )
            if row:
                return BackgroundRun.from_row(dict(row)), False

            existing = await conn.fetchrow(
                """
                SELECT *
                FROM background_runs
                WHERE project_id = $1
                  AND user_id = $2
                  AND run_type = $3
                  AND idempotency_key = $4
                """,
                request.project_id,
                user_id,
                request.run_type,
                request.idempotency_key,
            )
        if existing is None:
            raise RuntimeError("Idempotent insert conflicted but no existing run was found")
        return BackgroundRun.from_row(dict(existing)), True

    async def get_run(self, run_id: str, *, user_id: str | None = None) -> BackgroundRun | None:
        async with self._connection() as conn:
            row = await conn.fetchrow(
                """
                SELECT *
                FROM background_runs
                WHERE id = $1
                  AND ($2::text IS NULL OR user_id = $2)
                """,
                run_id,
                user_id,
            )
        return BackgroundRun.from_row(dict(row)) if row else None

    async def list_runs(
        self,
        *,
        user_id: str,
        project_id: str | None = None,
        status: RunStatus | None = None,
        limit: int = 50,
    ) -> list[BackgroundRun]:
        async with self._connection() as conn:
            rows = await conn.fetch(
                """
                SELECT *
                FROM background_runs
                WHERE user_id = $1
                  AND ($2::text IS NULL OR project_id = $2)
                  AND ($3::text IS NULL OR status = $3)
                ORDER BY created_at DESC
                LIMIT $4
                """,
                user_id,
                project_id,
                status.value if status else None,
                int(limit),
            )
        return [BackgroundRun.from_row(dict(row)) for row in rows]

    async def claim_queued(self, scope: RunScope, *, limit: int, now: datetime) -> list[BackgroundRun]:
        async with self._connection() as conn:
            rows = await conn.fetch(
                """
                UPDATE background_runs
                SET status = 'running',
                    started_at = $1,
                    finished_at = NULL,
                    next_retry_at = NULL,
                    attempt_count = attempt_count + 1,
                    progress = GREATEST(1, progress),
                    updated_at = $1
                WHERE id IN (
                    SELECT br.id
                    FROM background_runs br
                    WHERE br.status = 'queued'
                      AND br.cancel_requested = false
                      AND br.attempt_count < br.max_attempts
                      AND (br.next_retry_at IS NULL OR br.next_retry_at <= $1)
                      AND ($2::text IS NULL OR br.id = $2)
                      AND ($3::text IS NULL OR br.project_id = $3)
                      AND ($4::text IS NULL OR br.user_id = $4)
                    ORDER BY br.created_at ASC
                    LIMIT $5
                    FOR UPDATE SKIP LOCKED
                )
                RETURNING *
                """,
                now,
                scope.run_id,
                scope.project_id,
                scope.user_id,
                int(limit),
            )
        # RETURNING order is unspecified; keep FIFO for callers.
        claimed = [BackgroundRun.from_row(dict(row)) for row in rows]
        claimed.sort(key=lambda run: run.created_at)
        return claimed

    async def list_running(self, scope: RunScope, *, limit: int) -> list[BackgroundRun]:
        async with self._connection() as conn:
            rows = await conn.fetch(
                """
                SELECT *
                FROM background_runs
                WHERE status = 'running'
                  AND ($1::text IS NULL OR id = $1)
                  AND ($2::text IS NULL OR project_id = $2)
                  AND ($3::text IS NULL OR user_id = $3)
                ORDER BY started_at ASC NULLS FIRST
                LIMIT $4
                """,
                scope.run_id,
                scope.project_id,
                scope.user_id,
                int(limit),
            )
        return [BackgroundRun.from_row(dict(row)) for row in rows]

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

        columns = sorted(mutation)
        assignments = [f"{column} = ${index}" for index, column in enumerate(columns, start=4)]
        assignments.append("updated_at = $1")
        args = [now, run_id, expected_status.value, *(_db_value(mutation[c]) for c in columns)]

        attempt_guard = ""
        if expected_attempt is not None:
            args.append(int(expected_attempt))
            attempt_guard = f"AND attempt_count = ${len(args)}"

        async with self._connection() as conn:
            row = await conn.fetchrow(
                f"""
                UPDATE background_runs
                SET {", ".join(assignments)}
                WHERE id = $2
                  AND status = $3
                  {attempt_guard}
                RETURNING *
                """,
                *args,
            )
        return BackgroundRun.from_row(dict(row)) if row else None

    async def is_cancel_requested(self, run_id: str) -> bool:
        async with self._connection() as conn:
            value = await conn.fetchval(
                "SELECT cancel_requested FROM background_runs WHERE id = $1",
                run_id,
            )
        return bool(value)

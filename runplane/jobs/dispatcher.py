"""
Background run dispatcher.

Claims due queued runs, executes them through the executor registry and
records the outcome:

- success          -> succeeded (progress 100, output stored)
- cancel observed  -> cancelled
- failure          -> queued again with exponential backoff while the run
                      is retryable and has attempts left, otherwise failed

Executor errors never escape `dispatch`; each claimed run yields exactly
one `DispatchOutcome`. If the store drops out mid-batch, outcomes already
recorded are kept, the result is marked degraded and the unfinished runs
stay running for the watchdog.
"""

from __future__ import annotations

import asyncio
import time
from datetime import datetime
from typing import Any

import structlog

from runplane.config import Settings, get_settings
from runplane.jobs import events
from runplane.jobs.availability import STORE_UNAVAILABLE_WARNING, RunStoreUnavailableError
from runplane.jobs.executors import (
    ExecutorRegistry,
    PermanentRunError,
    RunCancelledError,
    RunContext,
)
from runplane.jobs.models import (
    BackgroundRun,
    DispatchOutcome,
    DispatchResult,
    RunScope,
    RunStatus,
)
from runplane.jobs.state_machine import RunOperation, RunPatch, TransitionOk, compute_transition
from runplane.jobs.store import RunStore
from runplane.kernel.time import Clock, SystemClock
from runplane.monitoring.metrics import get_metrics

logger = structlog.get_logger()

MAX_DISPATCH_LIMIT = 20
DEFAULT_DISPATCH_SESSION = "background-runs-dispatch"


def compute_retry_delay_seconds(attempt_count: int, *, base: int = 30, cap: int = 900) -> int:
    """Backoff before the next attempt: base * 2^(attempt-1), capped."""
    exponent = max(0, attempt_count - 1)
    return min(base * (2**exponent), cap)


def normalize_limit(limit: Any, *, default: int = 1, maximum: int = MAX_DISPATCH_LIMIT) -> int:
    if limit is None or isinstance(limit, bool):
        return default
    try:
        value = int(limit)
    except (TypeError, ValueError):
        return default
    return min(max(value, 1), maximum)


def failure_mutation(
    run: BackgroundRun,
    *,
    error_message: str,
    now: datetime,
    retry_after_seconds: int | None,
    output: dict[str, Any] | None = None,
) -> tuple[dict[str, Any], bool]:
    """Mutation that fails a running run and, when allowed, requeues it.

    Returns (mutation, requeued). The fail and retry steps are folded into
    one write so observers never see the intermediate `failed` row.
    """
    fail = compute_transition(
        run,
        RunPatch(
            operation=RunOperation.FAIL,
            error_message=error_message,
            output=output if output is not None else {"error": error_message},
        ),
        now,
    )
    if not isinstance(fail, TransitionOk):
        raise PermanentRunError(f"Transition failed: {fail.message}")

    mutation = dict(fail.mutation)
    if retry_after_seconds is None:
        return mutation, False

    failed_view = run.with_mutation(mutation, updated_at=now)
    retry = compute_transition(
        failed_view,
        RunPatch(operation=RunOperation.RETRY, retry_after_seconds=retry_after_seconds),
        now,
    )
    if not isinstance(retry, TransitionOk):
        return mutation, False

    mutation.update(retry.mutation)
    # Keep the last failure visible on the requeued row.
    mutation["error_message"] = error_message
    return mutation, True


class Dispatcher:
    def __init__(
        self,
        store: RunStore,
        executors: ExecutorRegistry,
        *,
        clock: Clock | None = None,
        execution_timeout_seconds: float = 240.0,
        concurrency: int = 1,
        retry_backoff_base_seconds: int = 30,
        retry_backoff_max_seconds: int = 900,
    ):
        self.store = store
        self.executors = executors
        self.clock = clock or SystemClock()
        self.execution_timeout_seconds = execution_timeout_seconds
        self.concurrency = max(1, int(concurrency))
        self.retry_backoff_base_seconds = retry_backoff_base_seconds
        self.retry_backoff_max_seconds = retry_backoff_max_seconds

    @classmethod
    def from_settings(
        cls,
        store: RunStore,
        executors: ExecutorRegistry,
        *,
        settings: Settings | None = None,
        clock: Clock | None = None,
    ) -> "Dispatcher":
        settings = settings or get_settings()
        return cls(
            store,
            executors,
            clock=clock,
            execution_timeout_seconds=settings.execution_timeout_seconds,
            concurrency=settings.dispatch_concurrency,
            retry_backoff_base_seconds=settings.retry_backoff_base_seconds,
            retry_backoff_max_seconds=settings.retry_backoff_max_seconds,
        )

    def retry_delay(self, attempt_count: int) -> int:
        return compute_retry_delay_seconds(
            attempt_count,
            base=self.retry_backoff_base_seconds,
            cap=self.retry_backoff_max_seconds,
        )

    async def dispatch(
        self,
        scope: RunScope | None = None,
        *,
        limit: Any = 1,
        session_id: str = DEFAULT_DISPATCH_SESSION,
    ) -> DispatchResult:
        """Claim and execute up to `limit` due runs within `scope`."""
        scope = scope or RunScope()
        batch_limit = normalize_limit(limit)

        try:
            claimed = await self.store.claim_queued(scope, limit=batch_limit, now=self.clock.now())
            if not claimed:
                outcomes: list[DispatchOutcome] = []
            elif self.concurrency == 1:
                outcomes = [await self._process(run, session_id) for run in claimed]
            else:
                semaphore = asyncio.Semaphore(self.concurrency)

                async def _bounded(run: BackgroundRun) -> DispatchOutcome:
                    async with semaphore:
                        return await self._process(run, session_id)

                outcomes = list(await asyncio.gather(*(_bounded(run) for run in claimed)))
        except RunStoreUnavailableError as exc:
            logger.warning("Dispatch skipped, store unavailable", error=exc.message)
            self._track_batch(degraded=True)
            return DispatchResult.unavailable(STORE_UNAVAILABLE_WARNING)

        interrupted = any(outcome.store_unavailable for outcome in outcomes)
        self._track_batch(degraded=interrupted)
        return DispatchResult(
            processed=len(claimed),
            outcomes=outcomes,
            degraded=interrupted,
            warning=STORE_UNAVAILABLE_WARNING if interrupted else None,
        )

    async def _process(self, run: BackgroundRun, session_id: str) -> DispatchOutcome:
        try:
            return await self._execute(run, session_id)
        except RunStoreUnavailableError as exc:
            # The run stays running; the watchdog recovers it once the store is back.
            logger.warning("Store became unavailable mid-batch", run_id=run.id, error=exc.message)
            outcome = DispatchOutcome.from_run(run, previous_status=RunStatus.QUEUED, error=exc.message)
            outcome.store_unavailable = True
            return outcome

    async def _execute(self, run: BackgroundRun, session_id: str) -> DispatchOutcome:
        events.record_run_event(events.STARTED, run, session_id=session_id)
        ctx = RunContext(run, self.store, self.clock)
        started = time.perf_counter()

        try:
            executor = self.executors.get(run.run_type)
            output = await asyncio.wait_for(executor(ctx), timeout=self.execution_timeout_seconds)
        except RunCancelledError:
            self._observe(run, "cancelled", started)
            return await self._finish_cancelled(ctx.run, session_id)
        except asyncio.TimeoutError:
            self._observe(run, "timeout", started)
            message = f"Run exceeded execution timeout of {self.execution_timeout_seconds:g}s."
            return await self._finish_failure(ctx.run, message, permanent=False, session_id=session_id)
        except PermanentRunError as exc:
            self._observe(run, "error", started)
            return await self._finish_failure(ctx.run, str(exc), permanent=True, session_id=session_id)
        except RunStoreUnavailableError:
            raise
        except Exception as exc:
            self._observe(run, "error", started)
            message = str(exc) or "Background run execution failed."
            return await self._finish_failure(ctx.run, message, permanent=False, session_id=session_id)

        self._observe(run, "success", started)
        return await self._finish_success(ctx.run, output, session_id)

    async def _refreshed(self, run: BackgroundRun) -> BackgroundRun:
        current = await self.store.get_run(run.id)
        return current or run

    async def _finish_success(self, run: BackgroundRun, output: Any, session_id: str) -> DispatchOutcome:
        now = self.clock.now()
        payload = output if isinstance(output, dict) else {"result": output}
        transition = compute_transition(run, RunPatch(operation=RunOperation.COMPLETE, output=payload), now)
        updated = None
        if isinstance(transition, TransitionOk):
            updated = await self.store.apply_mutation(
                run.id,
                expected_status=RunStatus.RUNNING,
                expected_attempt=run.attempt_count,
                mutation=transition.mutation,
                now=now,
            )
        if updated is None:
            return self._lost_race(await self._refreshed(run))

        events.record_run_event(events.SUCCEEDED, updated, session_id=session_id)
        return DispatchOutcome.from_run(updated, previous_status=RunStatus.QUEUED)

    async def _finish_cancelled(self, run: BackgroundRun, session_id: str) -> DispatchOutcome:
        now = self.clock.now()
        transition = compute_transition(run, RunPatch(operation=RunOperation.CANCEL), now)
        updated = None
        if isinstance(transition, TransitionOk):
            updated = await self.store.apply_mutation(
                run.id,
                expected_status=RunStatus.RUNNING,
                expected_attempt=run.attempt_count,
                mutation=transition.mutation,
                now=now,
            )
        if updated is None:
            return self._lost_race(await self._refreshed(run))

        events.record_run_event(events.CANCELLED, updated, session_id=session_id)
        return DispatchOutcome.from_run(updated, previous_status=RunStatus.QUEUED, error="Run was cancelled.")

    async def _finish_failure(
        self,
        run: BackgroundRun,
        message: str,
        *,
        permanent: bool,
        session_id: str,
    ) -> DispatchOutcome:
        now = self.clock.now()
        can_retry = not permanent and run.retryable and run.attempts_remaining
        mutation, requeued = failure_mutation(
            run,
            error_message=message,
            now=now,
            retry_after_seconds=self.retry_delay(run.attempt_count) if can_retry else None,
        )
        updated = await self.store.apply_mutation(
            run.id,
            expected_status=RunStatus.RUNNING,
            expected_attempt=run.attempt_count,
            mutation=mutation,
            now=now,
        )
        if updated is None:
            return self._lost_race(await self._refreshed(run), error=message)

        events.record_run_event(
            events.FAILED, updated, session_id=session_id, permanent=permanent, error_message=message
        )
        if requeued:
            events.record_run_event(
                events.RETRY_SCHEDULED,
                updated,
                session_id=session_id,
                retry_after_seconds=self.retry_delay(run.attempt_count),
                previous_error=message,
            )
        return DispatchOutcome.from_run(
            updated, previous_status=RunStatus.QUEUED, retried=requeued, error=message
        )

    def _lost_race(self, current: BackgroundRun, *, error: str | None = None) -> DispatchOutcome:
        logger.info(
            "Run changed state during execution",
            run_id=current.id,
            status=current.status.value,
        )
        return DispatchOutcome.from_run(
            current,
            previous_status=RunStatus.QUEUED,
            error=error or "Run changed state concurrently; result discarded.",
        )

    def _observe(self, run: BackgroundRun, result: str, started: float) -> None:
        try:
            get_metrics().observe_run_execution(
                run_type=run.run_type, result=result, seconds=time.perf_counter() - started
            )
        except Exception as exc:
            logger.debug("Execution metric dropped", error=str(exc))

    def _track_batch(self, *, degraded: bool) -> None:
        try:
            get_metrics().track_dispatch_batch(degraded=degraded)
        except Exception as exc:
            logger.debug("Dispatch metric dropped", error=str(exc))

"""
Stale running run recovery.

A run whose last sign of life (heartbeat, else start, else creation) is
older than the stale timeout is presumed abandoned by a crashed worker. The
watchdog fails it and, when attempts remain, requeues it with backoff. The
write is guarded on `status = running` and the observed attempt number, so
a worker that finishes at the same moment wins and the watchdog skips.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any

import structlog

from runplane.config import Settings, get_settings
from runplane.jobs import events
from runplane.jobs.availability import STORE_UNAVAILABLE_WARNING, RunStoreUnavailableError
from runplane.jobs.dispatcher import compute_retry_delay_seconds, failure_mutation, normalize_limit
from runplane.jobs.models import BackgroundRun, DispatchOutcome, RunScope, RunStatus, WatchdogResult
from runplane.jobs.store import RunStore
from runplane.kernel.time import Clock, SystemClock
from runplane.monitoring.metrics import get_metrics

logger = structlog.get_logger()

DEFAULT_STALE_AFTER_SECONDS = 10 * 60
MIN_STALE_AFTER_SECONDS = 60
MAX_STALE_AFTER_SECONDS = 24 * 60 * 60
MAX_SCAN_ROWS = 100
DEFAULT_WATCHDOG_SESSION = "background-runs-watchdog"

WATCHDOG_MESSAGE = "Run heartbeat timed out and was recovered by watchdog."


def normalize_stale_after_seconds(value: Any) -> int:
    if value is None or isinstance(value, bool):
        return DEFAULT_STALE_AFTER_SECONDS
    try:
        seconds = int(value)
    except (TypeError, ValueError):
        return DEFAULT_STALE_AFTER_SECONDS
    return min(max(seconds, MIN_STALE_AFTER_SECONDS), MAX_STALE_AFTER_SECONDS)


def is_heartbeat_stale(run: BackgroundRun, *, now: datetime, stale_after_seconds: int) -> bool:
    return now - run.lease_signal_at >= timedelta(seconds=stale_after_seconds)


class Watchdog:
    def __init__(
        self,
        store: RunStore,
        *,
        clock: Clock | None = None,
        retry_backoff_base_seconds: int = 30,
        retry_backoff_max_seconds: int = 900,
    ):
        self.store = store
        self.clock = clock or SystemClock()
        self.retry_backoff_base_seconds = retry_backoff_base_seconds
        self.retry_backoff_max_seconds = retry_backoff_max_seconds

    @classmethod
    def from_settings(
        cls,
        store: RunStore,
        *,
        settings: Settings | None = None,
        clock: Clock | None = None,
    ) -> "Watchdog":
        settings = settings or get_settings()
        return cls(
            store,
            clock=clock,
            retry_backoff_base_seconds=settings.retry_backoff_base_seconds,
            retry_backoff_max_seconds=settings.retry_backoff_max_seconds,
        )

    async def recover_stale(
        self,
        scope: RunScope | None = None,
        *,
        stale_after_seconds: Any = DEFAULT_STALE_AFTER_SECONDS,
        limit: Any = 1,
        session_id: str = DEFAULT_WATCHDOG_SESSION,
    ) -> WatchdogResult:
        scope = scope or RunScope()
        timeout = normalize_stale_after_seconds(stale_after_seconds)
        batch_limit = normalize_limit(limit)

        try:
            running = await self.store.list_running(scope, limit=min(batch_limit * 5, MAX_SCAN_ROWS))
            now = self.clock.now()
            stale = [run for run in running if is_heartbeat_stale(run, now=now, stale_after_seconds=timeout)]

            result = WatchdogResult(scanned=len(running), stale=len(stale))
            for run in stale[:batch_limit]:
                outcome = await self._recover(run, timeout=timeout, session_id=session_id)
                if outcome is None:
                    continue
                result.outcomes.append(outcome)
                if outcome.retried:
                    result.retried += 1
                else:
                    result.failed += 1
        except RunStoreUnavailableError as exc:
            logger.warning("Watchdog skipped, store unavailable", error=exc.message)
            return WatchdogResult.unavailable(STORE_UNAVAILABLE_WARNING)

        result.recovered = result.retried + result.failed
        if result.stale:
            logger.info(
                "Watchdog pass complete",
                scanned=result.scanned,
                stale=result.stale,
                retried=result.retried,
                failed=result.failed,
            )
        return result

    async def _recover(self, run: BackgroundRun, *, timeout: int, session_id: str) -> DispatchOutcome | None:
        now = self.clock.now()
        can_retry = run.retryable and run.attempts_remaining
        delay = (
            compute_retry_delay_seconds(
                run.attempt_count,
                base=self.retry_backoff_base_seconds,
                cap=self.retry_backoff_max_seconds,
            )
            if can_retry
            else None
        )
        mutation, requeued = failure_mutation(
            run,
            error_message=WATCHDOG_MESSAGE,
            now=now,
            retry_after_seconds=delay,
            output={"error": WATCHDOG_MESSAGE, "watchdog": True},
        )
        updated = await self.store.apply_mutation(
            run.id,
            expected_status=RunStatus.RUNNING,
            expected_attempt=run.attempt_count,
            mutation=mutation,
            now=now,
        )
        if updated is None:
            # Finished or reclaimed concurrently.
            logger.debug("Watchdog lost race", run_id=run.id)
            return None

        events.record_run_event(
            events.WATCHDOG_MARKED_FAILED, updated, session_id=session_id, stale_after_seconds=timeout
        )
        if requeued:
            events.record_run_event(
                events.WATCHDOG_RETRIED,
                updated,
                session_id=session_id,
                stale_after_seconds=timeout,
                retry_after_seconds=delay,
            )
        else:
            events.record_run_event(
                events.WATCHDOG_TERMINAL_FAILURE, updated, session_id=session_id, stale_after_seconds=timeout
            )
        self._track(requeued)
        return DispatchOutcome.from_run(
            updated, previous_status=RunStatus.RUNNING, retried=requeued, error=WATCHDOG_MESSAGE
        )

    def _track(self, requeued: bool) -> None:
        try:
            get_metrics().track_watchdog_recovery(result="retried" if requeued else "failed")
        except Exception as exc:
            logger.debug("Watchdog metric dropped", error=str(exc))

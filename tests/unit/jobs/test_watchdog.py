from __future__ import annotations

from datetime import timedelta

import pytest

from runplane.jobs.availability import RunStoreUnavailableError
from runplane.jobs.memory_store import InMemoryRunStore
from runplane.jobs.models import RunScope, RunStatus
from runplane.jobs.watchdog import (
    DEFAULT_STALE_AFTER_SECONDS,
    WATCHDOG_MESSAGE,
    Watchdog,
    is_heartbeat_stale,
    normalize_stale_after_seconds,
)
from tests.support.runs import make_run

pytestmark = pytest.mark.asyncio


def _running(clock, *, started_seconds_ago: int, **overrides):
    started = clock.now() - timedelta(seconds=started_seconds_ago)
    fields = {
        "status": RunStatus.RUNNING,
        "attempt_count": 1,
        "started_at": started,
        "created_at": started,
        "updated_at": started,
    }
    fields.update(overrides)
    return make_run(**fields)


@pytest.mark.parametrize(
    ("raw", "expected"),
    [(None, DEFAULT_STALE_AFTER_SECONDS), ("x", DEFAULT_STALE_AFTER_SECONDS), (5, 60), (700, 700), (10**7, 86_400)],
)
async def test_normalize_stale_after_seconds(raw, expected):
    assert normalize_stale_after_seconds(raw) == expected


async def test_heartbeat_takes_precedence_over_start(clock):
    run = _running(clock, started_seconds_ago=700, last_heartbeat_at=clock.now() - timedelta(seconds=10))

    assert is_heartbeat_stale(run, now=clock.now(), stale_after_seconds=600) is False


async def test_stale_retryable_run_is_requeued(store, clock):
    run = _running(clock, started_seconds_ago=700)
    store.put(run)

    result = await Watchdog(store, clock=clock).recover_stale(stale_after_seconds=600, limit=5)

    assert result.scanned == 1
    assert result.stale == 1
    assert result.retried == 1
    assert result.failed == 0
    assert result.recovered == 1

    stored = await store.get_run(run.id)
    assert stored.status is RunStatus.QUEUED
    assert stored.attempt_count == 1
    assert stored.error_message == WATCHDOG_MESSAGE
    assert stored.next_retry_at == clock.now() + timedelta(seconds=30)
    assert result.outcomes[0].previous_status is RunStatus.RUNNING


async def test_stale_run_without_attempts_left_fails(store, clock):
    run = _running(clock, started_seconds_ago=700, attempt_count=3, max_attempts=3)
    store.put(run)

    result = await Watchdog(store, clock=clock).recover_stale(stale_after_seconds=600, limit=5)

    assert result.failed == 1
    assert result.retried == 0
    stored = await store.get_run(run.id)
    assert stored.status is RunStatus.FAILED
    assert stored.output == {"error": WATCHDOG_MESSAGE, "watchdog": True}


async def test_fresh_runs_are_left_alone(store, clock):
    store.put(_running(clock, started_seconds_ago=30))

    result = await Watchdog(store, clock=clock).recover_stale(stale_after_seconds=600, limit=5)

    assert result.scanned == 1
    assert result.stale == 0
    assert result.recovered == 0


async def test_one_pass_recovers_every_stale_run_within_limit(store, clock):
    for index in range(4):
        store.put(_running(clock, started_seconds_ago=900, id=f"run-{index}"))

    result = await Watchdog(store, clock=clock).recover_stale(stale_after_seconds=600, limit=4)

    assert result.recovered == 4
    remaining = await store.list_running(RunScope(), limit=100)
    assert remaining == []


async def test_stale_counts_matches_beyond_the_limit(store, clock):
    for index in range(3):
        store.put(_running(clock, started_seconds_ago=900, id=f"run-{index}"))

    result = await Watchdog(store, clock=clock).recover_stale(stale_after_seconds=600, limit=1)

    assert result.stale == 3
    assert result.recovered == 1


async def test_watchdog_skips_run_that_moved_on(clock):
    run = _running(clock, started_seconds_ago=900)

    class RacingStore(InMemoryRunStore):
        async def list_running(self, scope, *, limit):
            snapshot = await super().list_running(scope, limit=limit)
            # A worker finishes between the scan and the guarded write.
            await self.apply_mutation(
                run.id,
                expected_status=RunStatus.RUNNING,
                mutation={"status": RunStatus.SUCCEEDED, "progress": 100},
                now=clock.now(),
            )
            return snapshot

    store = RacingStore()
    store.put(run)

    result = await Watchdog(store, clock=clock).recover_stale(stale_after_seconds=600, limit=5)

    assert result.stale == 1
    assert result.recovered == 0
    assert (await store.get_run(run.id)).status is RunStatus.SUCCEEDED


async def test_watchdog_degrades_when_store_unavailable(clock):
    class BrokenStore(InMemoryRunStore):
        async def list_running(self, scope, *, limit):
            raise RunStoreUnavailableError()

    result = await Watchdog(BrokenStore(), clock=clock).recover_stale()

    assert result.degraded is True
    assert result.recovered == 0

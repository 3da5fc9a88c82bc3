from __future__ import annotations

from datetime import timedelta

import pytest

from runplane.jobs.availability import RunStoreUnavailableError
from runplane.jobs.dispatcher import Dispatcher
from runplane.jobs.memory_store import InMemoryRunStore
from runplane.jobs.models import RunStatus
from runplane.jobs.watchdog import Watchdog
from runplane.jobs.worker import WorkerBatchRequest, _build_parser, run_worker_batch
from tests.support.runs import make_run


def _loop(store, executors, clock):
    return Dispatcher(store, executors, clock=clock), Watchdog(store, clock=clock)


@pytest.mark.asyncio
async def test_worker_drains_queue_in_batches(store, executors, clock):
    for index in range(7):
        store.put(make_run(id=f"run-{index}"))
    dispatcher, watchdog = _loop(store, executors, clock)

    result = await run_worker_batch(
        WorkerBatchRequest(limit=20, batch_size=3, max_batches=6),
        dispatcher=dispatcher,
        watchdog=watchdog,
    )

    # 3 + 3 + 1; the short batch ends the loop.
    assert result.processed == 7
    assert result.batches == 3
    assert all(outcome.status is RunStatus.SUCCEEDED for outcome in result.outcomes)


@pytest.mark.asyncio
async def test_worker_respects_max_batches(store, executors, clock):
    for index in range(10):
        store.put(make_run(id=f"run-{index}"))
    dispatcher, watchdog = _loop(store, executors, clock)

    result = await run_worker_batch(
        WorkerBatchRequest(limit=20, batch_size=2, max_batches=2),
        dispatcher=dispatcher,
        watchdog=watchdog,
    )

    assert result.processed == 4
    assert result.batches == 2


@pytest.mark.asyncio
async def test_worker_runs_watchdog_before_dispatch(store, executors, clock):
    started = clock.now() - timedelta(seconds=700)
    stale = make_run(
        status=RunStatus.RUNNING,
        attempt_count=1,
        started_at=started,
        created_at=started,
        updated_at=started,
    )
    store.put(stale)
    dispatcher, watchdog = _loop(store, executors, clock)

    result = await run_worker_batch(
        WorkerBatchRequest(stale_after_seconds=600),
        dispatcher=dispatcher,
        watchdog=watchdog,
    )

    assert result.watchdog.retried == 1
    # Requeued with backoff, so not dispatched in the same pass.
    assert result.processed == 0
    payload = result.to_public_dict()
    assert payload["watchdog"] == {
        "timeoutSeconds": 600,
        "scanned": 1,
        "stale": 1,
        "recovered": 1,
        "retried": 1,
        "failed": 0,
    }
    assert payload["success"] is True
    assert payload["checkedAt"].endswith("Z")


@pytest.mark.asyncio
async def test_pinned_run_is_processed_once(store, executors, clock):
    store.put(make_run(id="pinned"))
    store.put(make_run(id="other"))
    dispatcher, watchdog = _loop(store, executors, clock)

    result = await run_worker_batch(
        WorkerBatchRequest(run_id="pinned", limit=1, batch_size=1),
        dispatcher=dispatcher,
        watchdog=watchdog,
    )

    assert [outcome.run_id for outcome in result.outcomes] == ["pinned"]


@pytest.mark.asyncio
async def test_worker_reports_degraded_store(executors, clock):
    class BrokenStore(InMemoryRunStore):
        async def list_running(self, scope, *, limit):
            raise RunStoreUnavailableError()

        async def claim_queued(self, scope, *, limit, now):
            raise RunStoreUnavailableError()

    store = BrokenStore()
    dispatcher, watchdog = _loop(store, executors, clock)

    result = await run_worker_batch(WorkerBatchRequest(), dispatcher=dispatcher, watchdog=watchdog)

    payload = result.to_public_dict()
    assert payload["degraded"] is True
    assert payload["processed"] == 0
    assert result.batches == 1


def test_cli_parser_bounds():
    parser = _build_parser()

    args = parser.parse_args(["--limit", "50", "--batch-size", "10"])
    assert args.limit == 50
    assert args.batch_size == 10
    assert args.stale_after_seconds == 600

    with pytest.raises(SystemExit):
        parser.parse_args(["--batch-size", "11"])

from __future__ import annotations

from datetime import timedelta

import pytest

from runplane.jobs.models import CreateRunRequest, RunScope, RunStatus
from tests.support.runs import make_run

pytestmark = pytest.mark.asyncio


async def test_same_idempotency_key_creates_one_row(store, clock):
    request = CreateRunRequest(project_id="p1", run_type="t", idempotency_key="abc12345")

    first, first_dedup = await store.create_run(request, user_id="u1", now=clock.now())
    second, second_dedup = await store.create_run(request, user_id="u1", now=clock.now())

    assert first_dedup is False
    assert second_dedup is True
    assert second.id == first.id
    assert len(store) == 1


async def test_idempotency_key_is_scoped_per_user(store, clock):
    request = CreateRunRequest(project_id="p1", run_type="t", idempotency_key="abc12345")

    a, _ = await store.create_run(request, user_id="u1", now=clock.now())
    b, dedup = await store.create_run(request, user_id="u2", now=clock.now())

    assert dedup is False
    assert a.id != b.id


async def test_claim_skips_cancel_requested_and_future_retries(store, clock):
    store.put(make_run(id="cancelled", cancel_requested=True))
    store.put(make_run(id="later", next_retry_at=clock.now() + timedelta(minutes=1)))
    store.put(make_run(id="due"))

    claimed = await store.claim_queued(RunScope(), limit=10, now=clock.now())

    assert [run.id for run in claimed] == ["due"]
    assert claimed[0].status is RunStatus.RUNNING
    assert claimed[0].attempt_count == 1


async def test_apply_mutation_guards_on_status_and_attempt(store, clock):
    store.put(make_run(id="r", status=RunStatus.RUNNING, attempt_count=2))

    wrong_status = await store.apply_mutation(
        "r", expected_status=RunStatus.QUEUED, mutation={"progress": 5}, now=clock.now()
    )
    wrong_attempt = await store.apply_mutation(
        "r", expected_status=RunStatus.RUNNING, expected_attempt=1, mutation={"progress": 5}, now=clock.now()
    )
    applied = await store.apply_mutation(
        "r", expected_status=RunStatus.RUNNING, expected_attempt=2, mutation={"progress": 5}, now=clock.now()
    )

    assert wrong_status is None
    assert wrong_attempt is None
    assert applied.progress == 5


async def test_apply_mutation_rejects_immutable_columns(store, clock):
    store.put(make_run(id="r"))

    with pytest.raises(ValueError):
        await store.apply_mutation(
            "r", expected_status=RunStatus.QUEUED, mutation={"user_id": "someone-else"}, now=clock.now()
        )


async def test_list_runs_filters_and_orders_newest_first(store, clock):
    base = clock.now()
    store.put(make_run(id="old", created_at=base, updated_at=base))
    store.put(make_run(id="new", created_at=base + timedelta(seconds=5), updated_at=base))
    store.put(make_run(id="theirs", user_id="u2"))
    store.put(make_run(id="done", status=RunStatus.SUCCEEDED, created_at=base - timedelta(seconds=5)))

    runs = await store.list_runs(user_id="user-1")
    queued = await store.list_runs(user_id="user-1", status=RunStatus.QUEUED, limit=1)

    assert [run.id for run in runs] == ["new", "old", "done"]
    assert [run.id for run in queued] == ["new"]

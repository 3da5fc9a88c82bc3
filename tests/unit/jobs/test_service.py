from __future__ import annotations

import pytest

from runplane.jobs.memory_store import InMemoryRunStore
from runplane.jobs.models import CreateRunRequest, RunStatus
from runplane.jobs.service import MAX_LIST_LIMIT, RunService
from runplane.jobs.state_machine import RunOperation, RunPatch
from runplane.kernel.errors import ConflictError, MaxAttemptsReachedError, NotFoundError, ValidationError
from tests.support.runs import make_run

pytestmark = pytest.mark.asyncio


@pytest.fixture
def service(store, clock) -> RunService:
    return RunService(store, clock=clock)


async def test_create_and_deduplicate(service):
    request = CreateRunRequest(project_id="project-1", run_type="test.echo", idempotency_key="abc12345")

    first, first_dedup = await service.create_run(request, user_id="user-1")
    second, second_dedup = await service.create_run(request, user_id="user-1")

    assert first_dedup is False
    assert second_dedup is True
    assert second.id == first.id


async def test_get_run_is_scoped_to_owner(service, store):
    run = make_run(user_id="user-1")
    store.put(run)

    assert (await service.get_run(run.id, user_id="user-1")).id == run.id
    with pytest.raises(NotFoundError) as exc_info:
        await service.get_run(run.id, user_id="user-2")
    assert exc_info.value.code == "RUN_NOT_FOUND"


@pytest.mark.parametrize("limit", [0, -5, "abc", None, 10_000])
async def test_list_limit_is_bounded(service, store, limit):
    for _ in range(3):
        store.put(make_run())

    runs = await service.list_runs(user_id="user-1", limit=limit)

    assert 1 <= len(runs) <= MAX_LIST_LIMIT


async def test_update_complete_with_output(service, store):
    run = make_run(status=RunStatus.RUNNING, attempt_count=1)
    store.put(run)

    updated = await service.update_run(
        run.id,
        RunPatch(operation=RunOperation.COMPLETE, output={"answer": 42}),
        user_id="user-1",
    )

    assert updated.status is RunStatus.SUCCEEDED
    assert updated.progress == 100
    assert updated.output == {"answer": 42}
    assert updated.finished_at is not None


async def test_update_invalid_transition_is_conflict(service, store):
    run = make_run(status=RunStatus.SUCCEEDED)
    store.put(run)

    with pytest.raises(ConflictError) as exc_info:
        await service.update_run(run.id, RunPatch(operation=RunOperation.START), user_id="user-1")
    assert exc_info.value.code == "INVALID_TRANSITION"
    assert exc_info.value.status_code == 409


async def test_update_invalid_payload_is_validation_error(service, store):
    run = make_run(status=RunStatus.RUNNING, attempt_count=1)
    store.put(run)

    with pytest.raises(ValidationError):
        await service.update_run(run.id, RunPatch(operation=RunOperation.PROGRESS), user_id="user-1")


async def test_retry_at_max_attempts(service, store):
    run = make_run(status=RunStatus.FAILED, attempt_count=3, max_attempts=3)
    store.put(run)

    with pytest.raises(MaxAttemptsReachedError) as exc_info:
        await service.retry_run(run.id, user_id="user-1")
    assert exc_info.value.code == "MAX_ATTEMPTS_REACHED"


async def test_retry_requeues_failed_run(service, store, clock):
    run = make_run(status=RunStatus.FAILED, attempt_count=1, error_message="boom")
    store.put(run)

    updated = await service.retry_run(run.id, user_id="user-1", retry_after_seconds=60)

    assert updated.status is RunStatus.QUEUED
    assert updated.next_retry_at is not None
    assert updated.next_retry_at > clock.now()


async def test_lost_race_surfaces_as_conflict(clock):
    run = make_run(status=RunStatus.RUNNING, attempt_count=1)

    class RacingStore(InMemoryRunStore):
        async def apply_mutation(self, *args, **kwargs):
            return None

    racing = RacingStore()
    racing.put(run)

    with pytest.raises(ConflictError):
        await RunService(racing, clock=clock).update_run(
            run.id, RunPatch(operation=RunOperation.CANCEL), user_id="user-1"
        )

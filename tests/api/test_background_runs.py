"""
Background runs API tests.

Run CRUD, lifecycle updates and retries over the HTTP surface.
"""

import pytest

from runplane.jobs.models import RunStatus
from tests.support.runs import make_run

pytestmark = pytest.mark.asyncio

BASE = "/api/v1/background-runs"


def _create_body(**overrides):
    body = {
        "projectId": "project-1",
        "runType": "test.echo",
        "input": {"question": "status?"},
        "idempotencyKey": "abc12345-create",
    }
    body.update(overrides)
    return body


class TestCreateRun:
    async def test_creates_queued_run(self, async_client, user_headers):
        response = await async_client.post(BASE, json=_create_body(), headers=user_headers)

        assert response.status_code == 201
        run = response.json()["run"]
        assert run["status"] == "queued"
        assert run["userId"] == "user-1"
        assert run["attemptCount"] == 0
        assert run["maxAttempts"] == 3
        assert run["retryable"] is True

    async def test_idempotent_create_returns_existing_run(self, async_client, user_headers):
        first = await async_client.post(BASE, json=_create_body(), headers=user_headers)
        second = await async_client.post(BASE, json=_create_body(), headers=user_headers)

        assert second.status_code == 200
        assert second.json()["deduplicated"] is True
        assert second.json()["run"]["id"] == first.json()["run"]["id"]

    async def test_idempotency_is_per_user(self, async_client, user_headers, other_user_headers):
        first = await async_client.post(BASE, json=_create_body(), headers=user_headers)
        second = await async_client.post(BASE, json=_create_body(), headers=other_user_headers)

        assert second.status_code == 201
        assert second.json()["run"]["id"] != first.json()["run"]["id"]

    async def test_requires_session(self, async_client):
        response = await async_client.post(BASE, json=_create_body())

        assert response.status_code == 401
        assert response.json()["code"] == "UNAUTHORIZED"

    @pytest.mark.parametrize(
        "overrides",
        [
            {"projectId": ""},
            {"idempotencyKey": "short"},
            {"maxAttempts": 11},
            {"maxAttempts": 0},
        ],
    )
    async def test_rejects_invalid_body(self, async_client, user_headers, overrides):
        response = await async_client.post(BASE, json=_create_body(**overrides), headers=user_headers)

        assert response.status_code == 400
        assert response.json()["code"] == "INVALID_REQUEST"


class TestReadRuns:
    async def test_get_own_run(self, async_client, user_headers, store):
        run = make_run()
        store.put(run)

        response = await async_client.get(f"{BASE}/{run.id}", headers=user_headers)

        assert response.status_code == 200
        assert response.json()["run"]["id"] == run.id

    async def test_other_users_run_is_not_found(self, async_client, other_user_headers, store):
        run = make_run()
        store.put(run)

        response = await async_client.get(f"{BASE}/{run.id}", headers=other_user_headers)

        assert response.status_code == 404
        assert response.json()["code"] == "RUN_NOT_FOUND"

    async def test_list_filters_and_ignores_unknown_status(self, async_client, user_headers, store):
        store.put(make_run(status=RunStatus.QUEUED))
        store.put(make_run(status=RunStatus.FAILED))
        store.put(make_run(user_id="user-2"))

        filtered = await async_client.get(BASE, params={"status": "failed"}, headers=user_headers)
        unknown = await async_client.get(BASE, params={"status": "exploded"}, headers=user_headers)

        assert [run["status"] for run in filtered.json()["runs"]] == ["failed"]
        assert len(unknown.json()["runs"]) == 2


class TestUpdateRun:
    async def test_request_cancel_on_queued_run_cancels(self, async_client, user_headers, store):
        run = make_run()
        store.put(run)

        response = await async_client.patch(
            f"{BASE}/{run.id}", json={"operation": "request-cancel"}, headers=user_headers
        )

        assert response.status_code == 200
        assert response.json()["run"]["status"] == "cancelled"
        assert response.json()["run"]["cancelRequested"] is True

    async def test_legacy_status_field(self, async_client, user_headers, store):
        run = make_run(status=RunStatus.RUNNING, attempt_count=1)
        store.put(run)

        response = await async_client.patch(
            f"{BASE}/{run.id}", json={"status": "succeeded", "output": {"ok": True}}, headers=user_headers
        )

        assert response.json()["run"]["status"] == "succeeded"
        assert response.json()["run"]["output"] == {"ok": True}

    @pytest.mark.parametrize("body", [{}, {"progress": 101}, {"retryAfterSeconds": 0}])
    async def test_invalid_patch_body(self, async_client, user_headers, store, body):
        run = make_run()
        store.put(run)

        response = await async_client.patch(f"{BASE}/{run.id}", json=body, headers=user_headers)

        assert response.status_code == 400

    async def test_invalid_transition_is_conflict(self, async_client, user_headers, store):
        run = make_run(status=RunStatus.SUCCEEDED)
        store.put(run)

        response = await async_client.patch(
            f"{BASE}/{run.id}", json={"operation": "start"}, headers=user_headers
        )

        assert response.status_code == 409
        assert response.json()["code"] == "INVALID_TRANSITION"


class TestRetryRun:
    async def test_retry_failed_run(self, async_client, user_headers, store):
        run = make_run(status=RunStatus.FAILED, attempt_count=1, error_message="boom")
        store.put(run)

        response = await async_client.post(f"{BASE}/{run.id}/retry", headers=user_headers)

        assert response.status_code == 200
        body = response.json()["run"]
        assert body["status"] == "queued"
        assert body["errorMessage"] is None

    async def test_retry_exhausted_run(self, async_client, user_headers, store):
        run = make_run(status=RunStatus.FAILED, attempt_count=3, max_attempts=3)
        store.put(run)

        response = await async_client.post(f"{BASE}/{run.id}/retry", json={}, headers=user_headers)

        assert response.status_code == 409
        assert response.json()["code"] == "MAX_ATTEMPTS_REACHED"

    async def test_retry_not_retryable(self, async_client, user_headers, store):
        run = make_run(status=RunStatus.FAILED, attempt_count=1, retryable=False)
        store.put(run)

        response = await async_client.post(f"{BASE}/{run.id}/retry", headers=user_headers)

        assert response.status_code == 409
        assert response.json()["code"] == "NOT_RETRYABLE"

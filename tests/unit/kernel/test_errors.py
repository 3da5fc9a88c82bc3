import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from runplane.kernel.errors import MaxAttemptsReachedError, RateLimitedError, RunplaneError
from runplane.kernel.http.errors import register_exception_handlers


def test_error_codes_must_be_upper_snake_case():
    with pytest.raises(ValueError):
        RunplaneError(code="not-valid", message="x")


def test_public_dict_shape():
    payload = MaxAttemptsReachedError().to_public_dict(request_id="req-1")

    assert payload == {
        "success": False,
        "detail": "Run reached max attempts and cannot be retried.",
        "code": "MAX_ATTEMPTS_REACHED",
        "retryable": False,
        "request_id": "req-1",
    }


def test_rate_limited_error_exposes_retry_after():
    payload = RateLimitedError(retry_after_seconds=12).to_public_dict(request_id=None)

    assert payload["retryAfter"] == 12
    assert payload["retryable"] is True
    assert payload["meta"] == {"retryAfter": 12}


def _app() -> FastAPI:
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/limited")
    async def limited():
        raise RateLimitedError(retry_after_seconds=3, headers={"Retry-After": "3"})

    @app.get("/boom")
    async def boom():
        raise RuntimeError("kaput")

    @app.get("/typed")
    async def typed(count: int):
        return {"count": count}

    return app


def test_handler_renders_typed_errors_with_headers():
    response = TestClient(_app()).get("/limited")

    assert response.status_code == 429
    assert response.headers["Retry-After"] == "3"
    assert response.json()["code"] == "RATE_LIMITED"


def test_handler_hides_unexpected_errors():
    response = TestClient(_app(), raise_server_exceptions=False).get("/boom")

    assert response.status_code == 500
    assert response.json()["code"] == "INTERNAL_ERROR"
    assert "kaput" not in response.text


def test_validation_errors_are_400():
    response = TestClient(_app()).get("/typed", params={"count": "many"})

    assert response.status_code == 400
    assert list(response.json()["meta"]["fields"]) == ["count"]

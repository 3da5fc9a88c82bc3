"""
Test Configuration and Fixtures

Every test runs against the in-memory run store with a deterministic clock;
nothing here needs Postgres, Redis or network access.
"""

import os
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

# Set test environment variables before importing the app.
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("RUN_STORE_BACKEND", "memory")
os.environ.setdefault("RUNPLANE_WORKER_TOKEN", "test-worker-token")
os.environ.setdefault("SESSION_JWT_SECRET", "test-session-secret")
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.setdefault("LOG_FORMAT", "text")

from runplane.auth.rate_limit import reset_rate_limiters  # noqa: E402
from runplane.auth.session import create_session_token  # noqa: E402
from runplane.config import get_settings  # noqa: E402
from runplane.jobs.executors import ExecutorRegistry  # noqa: E402
from runplane.jobs.memory_store import InMemoryRunStore  # noqa: E402
from runplane.jobs.runtime import build_job_runtime  # noqa: E402
from runplane.llm.provider_health import ProviderHealthRegistry, reset_provider_health_registry  # noqa: E402
from tests.support.clock import FakeClock  # noqa: E402

WORKER_TOKEN = "test-worker-token"


def pytest_collection_modifyitems(config, items):
    """tests/api/** => api, everything else => unit."""
    for item in items:
        if item.get_closest_marker("api") or item.get_closest_marker("unit"):
            continue
        path = str(getattr(item, "fspath", ""))
        if "/tests/api/" in path:
            item.add_marker(pytest.mark.api)
        else:
            item.add_marker(pytest.mark.unit)


@pytest.fixture(autouse=True)
def _isolate_process_state(monkeypatch):
    # Shared counters must never leak in from the host environment.
    for name in ("UPSTASH_REDIS_REST_URL", "UPSTASH_REDIS_REST_TOKEN", "RATE_LIMIT_REDIS_URL"):
        monkeypatch.delenv(name, raising=False)
    get_settings.cache_clear()
    reset_rate_limiters()
    reset_provider_health_registry()
    yield
    get_settings.cache_clear()
    reset_rate_limiters()
    reset_provider_health_registry()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock.fixed()


@pytest.fixture
def store() -> InMemoryRunStore:
    return InMemoryRunStore()


@pytest.fixture
def executors() -> ExecutorRegistry:
    registry = ExecutorRegistry()

    @registry.register("test.echo")
    async def echo(ctx):
        return {"echo": ctx.input}

    return registry


@pytest.fixture
def runtime(store, executors, clock):
    return build_job_runtime(
        get_settings(),
        store=store,
        executors=executors,
        provider_health=ProviderHealthRegistry(clock=clock.ms),
        clock=clock,
    )


@pytest.fixture
def app(runtime):
    from runplane.api.main import create_app

    return create_app(runtime=runtime)


@pytest_asyncio.fixture
async def async_client(app) -> AsyncGenerator[AsyncClient, None]:
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture
def user_headers() -> dict[str, str]:
    return {"Authorization": f"Bearer {create_session_token('user-1')}"}


@pytest.fixture
def other_user_headers() -> dict[str, str]:
    return {"Authorization": f"Bearer {create_session_token('user-2')}"}


@pytest.fixture
def worker_headers() -> dict[str, str]:
    return {"x-runplane-worker-token": WORKER_TOKEN}

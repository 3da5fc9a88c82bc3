"""
runplane - FastAPI Application

Background run orchestration service. Provides:
- A durable run queue with a guarded state machine
- Dispatch and watchdog endpoints driven by cron or the worker CLI
- Provider health reporting for the LLM executor
- Distributed-first rate limiting
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncGenerator

import structlog
from fastapi import FastAPI
from prometheus_client import make_asgi_app

from runplane import __version__
from runplane.api.middleware import MetricsMiddleware, RequestIDMiddleware
from runplane.api.routes import background_runs, health
from runplane.auth.rate_limit import close_rate_limiters
from runplane.config import get_settings
from runplane.db.client import close_db_pool
from runplane.jobs.runtime import JobRuntime, build_job_runtime
from runplane.kernel.http.errors import register_exception_handlers
from runplane.kernel.logging import configure_logging
from runplane.monitoring.metrics import get_metrics

logger = structlog.get_logger()

API_PREFIX = "/api/v1"


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan - startup and shutdown."""
    settings = get_settings()
    logger.info(
        "Starting runplane",
        version=__version__,
        environment=settings.environment,
        run_store_backend=settings.run_store_backend,
    )

    owns_runtime = getattr(app.state, "runtime", None) is None
    if owns_runtime:
        app.state.runtime = build_job_runtime(settings)

    yield

    logger.info("Shutting down runplane")
    if owns_runtime:
        await app.state.runtime.aclose()
    await close_rate_limiters()
    await close_db_pool()


def create_app(*, runtime: JobRuntime | None = None) -> FastAPI:
    """Build the application. Tests pass a prebuilt runtime."""
    settings = get_settings()
    configure_logging(level=settings.log_level, fmt=settings.log_format)

    app = FastAPI(
        title="runplane API",
        description="Background run orchestration: queue, dispatcher, watchdog and admission control",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )
    app.state.runtime = runtime

    register_exception_handlers(app)

    # First added = last executed; request IDs must be bound before metrics run.
    app.add_middleware(MetricsMiddleware)
    app.add_middleware(RequestIDMiddleware)

    # Prometheus metrics endpoint
    get_metrics().set_build_info(__version__)
    app.mount("/metrics", make_asgi_app())

    app.include_router(health.router)
    app.include_router(background_runs.router, prefix=API_PREFIX)

    @app.get("/")
    async def root():
        """Root endpoint with API info."""
        return {
            "name": "runplane API",
            "version": __version__,
            "docs": "/docs",
            "health": "/health",
            "metrics": "/metrics",
        }

    return app

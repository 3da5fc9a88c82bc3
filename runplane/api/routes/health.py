"""Health check endpoints."""

from datetime import datetime, timezone

import structlog
from fastapi import APIRouter, Depends

from runplane import __version__
from runplane.auth.deps import get_runtime
from runplane.jobs.runtime import JobRuntime
from runplane.kernel.time import isoformat_z, utc_now

router = APIRouter()
logger = structlog.get_logger()

# Track startup time
_startup_time = datetime.now(timezone.utc)


@router.get("/health")
async def health_check():
    """
    Basic health check endpoint.
    Returns 200 if the service is running.
    """
    now = utc_now()
    return {
        "status": "healthy",
        "service": "runplane",
        "version": __version__,
        "timestamp": isoformat_z(now),
        "uptime_seconds": (now - _startup_time).total_seconds(),
    }


@router.get("/health/providers")
async def provider_health(runtime: JobRuntime = Depends(get_runtime)):
    """Circuit breaker state for every provider the router can reach."""
    scores = {score.label: score for score in runtime.provider_health.snapshot()}
    for label in runtime.router.labels:
        if label not in scores:
            scores[label] = runtime.provider_health.score(label)

    return {
        "providers": [score.to_public_dict() for score in scores.values()],
        "configured": runtime.router.labels,
        "timestamp": isoformat_z(utc_now()),
    }

"""
FastAPI dependencies for admission control and authentication.

Routes declare them in request order: rate limit first, then auth. Route
handlers take no typed body parameters and validate the JSON body themselves,
so a throttled or anonymous caller never reaches validation or the run store.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Awaitable, Callable

import structlog
from fastapi import Request

from runplane.auth.rate_limit import (
    CHAT_POLICY,
    STRICT_POLICY,
    RateLimiterConfig,
    RateLimitResult,
    get_client_ip,
    get_rate_limiter,
)
from runplane.auth.session import SessionUser, verify_session_token
from runplane.auth.worker import WorkerAuthorization, authorize_worker_request, parse_bearer_token
from runplane.config import get_settings
from runplane.jobs.runtime import JobRuntime
from runplane.kernel.errors import RateLimitedError, UnauthorizedError

logger = structlog.get_logger()


def rate_limit(policy: RateLimiterConfig) -> Callable[[Request], Awaitable[RateLimitResult]]:
    async def dependency(request: Request) -> RateLimitResult:
        identifier = get_client_ip(request.headers)
        result = await get_rate_limiter(policy).check(identifier)
        if not result.success:
            logger.info(
                "Request rate limited",
                policy=policy.name,
                identifier=identifier,
                path=request.url.path,
                reset_in_ms=result.reset_in_ms,
            )
            raise RateLimitedError(
                retry_after_seconds=result.retry_after_seconds,
                headers=result.headers(),
            )
        return result

    dependency.__name__ = f"rate_limit_{policy.name}"
    return dependency


chat_rate_limit = rate_limit(CHAT_POLICY)
strict_rate_limit = rate_limit(STRICT_POLICY)


async def require_user(request: Request) -> SessionUser:
    token = parse_bearer_token(request.headers.get("authorization"))
    if not token:
        raise UnauthorizedError(message="Unauthorized. Please log in.")
    return verify_session_token(token, get_settings())


async def require_worker(request: Request) -> WorkerAuthorization:
    authorization = authorize_worker_request(request.headers, get_settings())
    if not authorization.ok:
        raise UnauthorizedError(message=authorization.error or "Invalid worker token.")
    return authorization


@dataclass(frozen=True)
class DispatchPrincipal:
    """Either a worker (unscoped) or a signed-in user (scoped to own runs)."""

    worker: WorkerAuthorization | None = None
    user: SessionUser | None = None

    @property
    def user_id(self) -> str | None:
        return self.user.user_id if self.user else None

    @property
    def session_prefix(self) -> str:
        return "worker-dispatch" if self.worker else "user-dispatch"


async def require_worker_or_user(request: Request) -> DispatchPrincipal:
    authorization = authorize_worker_request(request.headers, get_settings())
    if authorization.ok:
        return DispatchPrincipal(worker=authorization)
    return DispatchPrincipal(user=await require_user(request))


def get_runtime(request: Request) -> JobRuntime:
    return request.app.state.runtime

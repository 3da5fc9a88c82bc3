"""Classify job store failures that mean "the queue is not provisioned here".

Deployments without the `background_runs` table (or with a stale PostgREST
schema cache in front of it) degrade to a no-op instead of erroring. Outages
of a provisioned store (refused connections, a database still starting up)
are not classified here and surface as server errors.
"""

from __future__ import annotations

import asyncpg

from runplane.kernel.errors import RunplaneError

_UNAVAILABLE_SQLSTATES = frozenset({"42P01", "42703"})
_UNAVAILABLE_MARKERS = (
    'relation "background_runs" does not exist',
    "schema cache",
    "42p01",
    "pgrst205",
    "pgrst204",
)

STORE_UNAVAILABLE_WARNING = "Background runs queue is unavailable; worker dispatch skipped."


class RunStoreUnavailableError(RunplaneError):
    """The job store backend is missing."""

    def __init__(self, message: str = "Background runs store is unavailable."):
        super().__init__(
            code="BACKGROUND_RUNS_UNAVAILABLE",
            message=message,
            status_code=503,
            retryable=True,
        )


def is_store_unavailable_error(exc: BaseException) -> bool:
    if isinstance(exc, RunStoreUnavailableError):
        return True
    if isinstance(exc, (asyncpg.UndefinedTableError, asyncpg.UndefinedColumnError)):
        return True

    sqlstate = getattr(exc, "sqlstate", None)
    if isinstance(sqlstate, str) and sqlstate.upper() in _UNAVAILABLE_SQLSTATES:
        return True

    message = str(exc).lower()
    return any(marker in message for marker in _UNAVAILABLE_MARKERS)

"""Database port layer for raw query pool access.

Store adapters depend on this protocol rather than on asyncpg directly, so
tests can hand them any object with an async `acquire()` context manager.
"""

from __future__ import annotations

from typing import Any, Protocol


class RawQueryPool(Protocol):
    """Minimal protocol used by raw SQL callers."""

    def acquire(self) -> Any:
        ...


async def get_raw_query_pool() -> RawQueryPool:
    from runplane.db.client import get_db_pool

    return await get_db_pool()

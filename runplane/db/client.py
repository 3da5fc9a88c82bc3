"""
PostgreSQL raw query pool.

The job plane talks to Postgres with hand-written SQL over asyncpg so that
claims and guarded transitions stay single statements.
"""

from __future__ import annotations

import json

import asyncpg
import structlog

from runplane.config import get_settings

logger = structlog.get_logger()

_pool: asyncpg.Pool | None = None


def _asyncpg_dsn(database_url: str) -> str:
    # Settings carry the SQLAlchemy form so Alembic can share it.
    return database_url.replace("postgresql+asyncpg://", "postgresql://")


async def _init_connection(conn: asyncpg.Connection) -> None:
    # asyncpg returns JSON/JSONB as strings by default; register codecs so
    # dict/list values pass through transparently.
    await conn.set_type_codec(
        "json",
        encoder=json.dumps,
        decoder=json.loads,
        schema="pg_catalog",
    )
    await conn.set_type_codec(
        "jsonb",
        encoder=json.dumps,
        decoder=json.loads,
        schema="pg_catalog",
        format="text",
    )


async def get_db_pool() -> asyncpg.Pool:
    """Return the process-wide asyncpg pool, creating it on first use."""
    global _pool
    if _pool is None:
        settings = get_settings()
        min_size = max(1, int(settings.db_raw_pool_min_size))
        _pool = await asyncpg.create_pool(
            _asyncpg_dsn(str(settings.database_url)),
            init=_init_connection,
            min_size=min_size,
            max_size=max(min_size, int(settings.db_raw_pool_max_size)),
        )
        logger.info("Database pool initialized", min_size=min_size)
    return _pool


async def close_db_pool() -> None:
    """Close the asyncpg connection pool."""
    global _pool
    if _pool is not None:
        await _pool.close()
        _pool = None
        logger.info("Database pool closed")

"""
Shared window counters for distributed rate limiting.

Two adapters expose the same `incr_window` primitive: the Upstash REST
pipeline endpoint (httpx) and a plain Redis connection (redis.asyncio).
Both issue INCR, PEXPIRE NX and PTTL as one pipelined round trip so the
first increment of a window also arms its expiry.

Adapters raise `CounterStoreError` on any transport or protocol failure;
the rate limiter decides what to do about it.
"""

from __future__ import annotations

from typing import Any, Protocol

import httpx
import structlog
from redis.asyncio import Redis

from runplane.config import Settings, get_settings

logger = structlog.get_logger()


class CounterStoreError(RuntimeError):
    """The shared counter store could not be reached or answered garbage."""


class CounterStore(Protocol):
    async def incr_window(self, key: str, window_ms: int) -> tuple[int, int]:
        """Increment `key`, arm its expiry once, and return (count, ttl_ms)."""
        ...

    async def aclose(self) -> None:
        ...


def _as_int(value: Any, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


class UpstashRestCounterStore:
    """Counter store backed by the Upstash Redis REST `/pipeline` endpoint."""

    def __init__(
        self,
        rest_url: str,
        rest_token: str,
        *,
        timeout_seconds: float = 2.0,
        client: httpx.AsyncClient | None = None,
    ):
        self._url = rest_url.rstrip("/") + "/pipeline"
        self._token = rest_token
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds)

    async def _pipeline(self, commands: list[list[Any]]) -> list[dict[str, Any]]:
        try:
            response = await self._client.post(
                self._url,
                json=commands,
                headers={"Authorization": f"Bearer {self._token}"},
            )
        except httpx.HTTPError as exc:
            raise CounterStoreError(f"Upstash pipeline request failed: {exc}") from exc

        if response.status_code != 200:
            raise CounterStoreError(f"Upstash pipeline failed ({response.status_code})")

        try:
            payload = response.json()
        except ValueError as exc:
            raise CounterStoreError("Upstash pipeline returned invalid JSON") from exc
        if not isinstance(payload, list):
            raise CounterStoreError("Unexpected Upstash response shape")
        return payload

    async def incr_window(self, key: str, window_ms: int) -> tuple[int, int]:
        payload = await self._pipeline(
            [
                ["INCR", key],
                ["PEXPIRE", key, int(window_ms), "NX"],
                ["PTTL", key],
            ]
        )

        def _result(index: int) -> Any:
            if index >= len(payload) or not isinstance(payload[index], dict):
                return None
            return payload[index].get("result")

        return _as_int(_result(0), 0), _as_int(_result(2), -1)

    async def aclose(self) -> None:
        await self._client.aclose()


class RedisCounterStore:
    """Counter store backed by a direct Redis connection."""

    def __init__(self, client: Redis):
        self._redis = client

    @classmethod
    def from_url(cls, url: str) -> "RedisCounterStore":
        return cls(Redis.from_url(url, decode_responses=True))

    async def incr_window(self, key: str, window_ms: int) -> tuple[int, int]:
        try:
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.incr(key)
                pipe.pexpire(key, int(window_ms), nx=True)
                pipe.pttl(key)
                results = await pipe.execute()
        except Exception as exc:
            raise CounterStoreError(f"Redis counter update failed: {exc}") from exc
        return _as_int(results[0], 0), _as_int(results[2], -1)

    async def aclose(self) -> None:
        await self._redis.aclose()


def build_counter_store(settings: Settings | None = None) -> CounterStore | None:
    """Pick the shared counter store from configuration, or None for local-only limiting."""
    settings = settings or get_settings()
    if settings.upstash_redis_rest_url and settings.upstash_redis_rest_token:
        logger.info("Rate limiting uses Upstash REST counters")
        return UpstashRestCounterStore(
            settings.upstash_redis_rest_url,
            settings.upstash_redis_rest_token,
            timeout_seconds=settings.rate_limit_http_timeout_seconds,
        )
    if settings.rate_limit_redis_url:
        logger.info("Rate limiting uses Redis counters")
        return RedisCounterStore.from_url(settings.rate_limit_redis_url)
    return None

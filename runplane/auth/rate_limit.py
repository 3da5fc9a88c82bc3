"""
Rate Limiting for runplane endpoints.

Distributed-first admission control:

- When a shared counter store is configured (Upstash REST or Redis), every
  replica counts against the same fixed window.
- Otherwise, or whenever the shared store errors, a per-process token
  bucket decides. The fallback warns once per limiter and never raises, so
  a counter outage degrades to per-instance limits instead of an outage.
"""

from __future__ import annotations

import ipaddress
import math
import re
import threading
from dataclasses import dataclass
from typing import Callable, Mapping, NamedTuple

import structlog

from runplane.db.counters import CounterStore, build_counter_store
from runplane.kernel.time import epoch_ms
from runplane.monitoring.metrics import get_metrics

logger = structlog.get_logger()

STALE_BUCKET_MS = 10 * 60 * 1000
CLEANUP_EVERY_MS = 5 * 60 * 1000
KEY_PREFIX = "runplane:ratelimit"


@dataclass(frozen=True)
class RateLimiterConfig:
    name: str
    max_tokens: int
    refill_rate: int
    refill_interval_ms: int


class RateLimitResult(NamedTuple):
    """Result of a rate limit check."""

    success: bool
    remaining: int
    reset_in_ms: int
    limit: int

    @property
    def retry_after_seconds(self) -> int:
        return math.ceil(self.reset_in_ms / 1000)

    def headers(self) -> dict[str, str]:
        seconds = str(self.retry_after_seconds)
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": seconds,
            "Retry-After": seconds,
        }


CHAT_POLICY = RateLimiterConfig(name="chat", max_tokens=30, refill_rate=2, refill_interval_ms=3000)
STRICT_POLICY = RateLimiterConfig(name="strict", max_tokens=5, refill_rate=1, refill_interval_ms=12_000)


@dataclass
class _Bucket:
    tokens: int
    last_refill: float


class InMemoryTokenBucket:
    """Per-identifier token bucket held in process memory."""

    def __init__(self, config: RateLimiterConfig, *, clock: Callable[[], float] = epoch_ms):
        self.config = config
        self._clock = clock
        self._buckets: dict[str, _Bucket] = {}
        self._lock = threading.Lock()
        self._last_cleanup = clock()

    def _reset_in(self, bucket: _Bucket, now: float) -> int:
        return max(0, int(self.config.refill_interval_ms - (now - bucket.last_refill)))

    def check(self, identifier: str) -> RateLimitResult:
        now = self._clock()
        config = self.config
        with self._lock:
            if now - self._last_cleanup >= CLEANUP_EVERY_MS:
                self._cleanup_locked(now)

            bucket = self._buckets.get(identifier)
            if bucket is None:
                bucket = _Bucket(tokens=config.max_tokens - 1, last_refill=now)
                self._buckets[identifier] = bucket
                return RateLimitResult(
                    success=True,
                    remaining=bucket.tokens,
                    reset_in_ms=config.refill_interval_ms,
                    limit=config.max_tokens,
                )

            # Only whole intervals refill; last_refill moves only when tokens are added.
            intervals = int((now - bucket.last_refill) // config.refill_interval_ms)
            tokens_to_add = intervals * config.refill_rate
            if tokens_to_add > 0:
                bucket.tokens = min(config.max_tokens, bucket.tokens + tokens_to_add)
                bucket.last_refill = now

            if bucket.tokens > 0:
                bucket.tokens -= 1
                return RateLimitResult(
                    success=True,
                    remaining=bucket.tokens,
                    reset_in_ms=self._reset_in(bucket, now),
                    limit=config.max_tokens,
                )

            return RateLimitResult(
                success=False,
                remaining=0,
                reset_in_ms=self._reset_in(bucket, now),
                limit=config.max_tokens,
            )

    def _cleanup_locked(self, now: float) -> None:
        stale = [key for key, bucket in self._buckets.items() if now - bucket.last_refill > STALE_BUCKET_MS]
        for key in stale:
            del self._buckets[key]
        self._last_cleanup = now

    def cleanup(self) -> None:
        """Drop buckets idle for more than ten minutes."""
        with self._lock:
            self._cleanup_locked(self._clock())

    def reset(self) -> None:
        with self._lock:
            self._buckets.clear()

    def __len__(self) -> int:
        return len(self._buckets)


class DistributedWindowRateLimiter:
    """Fixed-window counter shared by all replicas through a CounterStore."""

    def __init__(
        self,
        config: RateLimiterConfig,
        counter_store: CounterStore,
        *,
        clock: Callable[[], float] = epoch_ms,
    ):
        self.config = config
        self._store = counter_store
        self._clock = clock
        # Long enough for a full bucket to drain at the refill rate.
        self.window_ms = max(
            config.refill_interval_ms,
            math.ceil(config.max_tokens / max(1, config.refill_rate) * config.refill_interval_ms),
        )

    def key_for(self, identifier: str, now: float) -> str:
        slot = int(now // self.window_ms)
        return f"{KEY_PREFIX}:{self.config.name or 'default'}:{identifier}:{slot}"

    async def check(self, identifier: str) -> RateLimitResult:
        now = self._clock()
        count, ttl = await self._store.incr_window(self.key_for(identifier, now), self.window_ms)
        reset_in = ttl if ttl > 0 else max(0, int(self.window_ms - (now % self.window_ms)))
        return RateLimitResult(
            success=count <= self.config.max_tokens,
            remaining=max(0, self.config.max_tokens - count),
            reset_in_ms=int(reset_in),
            limit=self.config.max_tokens,
        )


class RateLimiter:
    """Distributed limiter with local token bucket fallback."""

    def __init__(
        self,
        config: RateLimiterConfig,
        *,
        counter_store: CounterStore | None = None,
        clock: Callable[[], float] = epoch_ms,
    ):
        self.config = config
        self.local = InMemoryTokenBucket(config, clock=clock)
        self.distributed = (
            DistributedWindowRateLimiter(config, counter_store, clock=clock) if counter_store else None
        )
        self._warned_on_distributed_failure = False

    async def check(self, identifier: str) -> RateLimitResult:
        if self.distributed is not None:
            try:
                result = await self.distributed.check(identifier)
            except Exception as exc:
                if not self._warned_on_distributed_failure:
                    self._warned_on_distributed_failure = True
                    logger.warning(
                        "Falling back to in-memory rate limiter",
                        limiter=self.config.name,
                        error=str(exc),
                    )
                self._track_fallback()
            else:
                self._track(result, backend="distributed")
                return result

        result = self.local.check(identifier)
        self._track(result, backend="local")
        return result

    def _track(self, result: RateLimitResult, *, backend: str) -> None:
        try:
            get_metrics().track_rate_limit(policy=self.config.name, backend=backend, allowed=result.success)
        except Exception as exc:
            logger.debug("Rate limit metric dropped", error=str(exc))

    def _track_fallback(self) -> None:
        try:
            get_metrics().track_rate_limit_fallback(policy=self.config.name)
        except Exception as exc:
            logger.debug("Rate limit metric dropped", error=str(exc))


_IPV4_WITH_PORT = re.compile(r"^(\d{1,3}(?:\.\d{1,3}){3}):\d+$")


def _is_ip(value: str) -> bool:
    try:
        ipaddress.ip_address(value)
    except ValueError:
        return False
    return True


def normalize_client_ip(value: str) -> str | None:
    trimmed = value.strip()
    if not trimmed:
        return None

    # IPv6 may carry brackets and a zone id.
    if trimmed.startswith("[") and trimmed.endswith("]"):
        trimmed = trimmed[1:-1]
    candidate = trimmed.split("%", 1)[0]
    if _is_ip(candidate):
        return candidate

    match = _IPV4_WITH_PORT.match(candidate)
    if match and _is_ip(match.group(1)):
        return match.group(1)
    return None


def _ip_from_header(value: str | None, *, use_last_hop: bool = False) -> str | None:
    if not value:
        return None
    parts = [part.strip() for part in value.split(",") if part.strip()]
    if use_last_hop:
        parts.reverse()
    for part in parts:
        normalized = normalize_client_ip(part)
        if normalized:
            return normalized
    return None


def get_client_ip(headers: Mapping[str, str]) -> str:
    """Best-effort client address used as the rate limit identifier."""
    for name in ("x-vercel-forwarded-for", "cf-connecting-ip", "x-real-ip"):
        ip = _ip_from_header(headers.get(name))
        if ip:
            return ip

    # X-Forwarded-For is client-appendable; the last hop is the one our proxy added.
    forwarded = _ip_from_header(headers.get("x-forwarded-for"), use_last_hop=True)
    return forwarded or "unknown"


_limiters: dict[str, RateLimiter] = {}
_counter_store: CounterStore | None = None
_counter_store_resolved = False


def get_rate_limiter(config: RateLimiterConfig) -> RateLimiter:
    """Process-wide limiter per policy, sharing one counter store."""
    global _counter_store, _counter_store_resolved
    limiter = _limiters.get(config.name)
    if limiter is None:
        if not _counter_store_resolved:
            _counter_store = build_counter_store()
            _counter_store_resolved = True
        limiter = RateLimiter(config, counter_store=_counter_store)
        _limiters[config.name] = limiter
    return limiter


async def close_rate_limiters() -> None:
    global _counter_store, _counter_store_resolved
    store = _counter_store
    _limiters.clear()
    _counter_store = None
    _counter_store_resolved = False
    if store is not None:
        await store.aclose()


def reset_rate_limiters() -> None:
    """Forget every limiter so the next lookup re-reads configuration."""
    global _counter_store, _counter_store_resolved
    _limiters.clear()
    _counter_store = None
    _counter_store_resolved = False

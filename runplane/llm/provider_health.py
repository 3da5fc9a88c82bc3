"""
Provider health registry (circuit breaker + ranking).

Tracks per-provider outcomes in process memory and ranks candidate
providers for the next call. A provider whose consecutive failures reach
the threshold enters an exponentially growing cooldown ("circuit open")
and is skipped until the cooldown expires; the first success afterwards
closes it again. State is never persisted and resets on restart.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Callable, Iterable

import structlog

from runplane.config import get_settings
from runplane.monitoring.metrics import get_metrics

logger = structlog.get_logger()

OPEN_CIRCUIT_SCORE = -1000.0


def _monotonic_ms() -> float:
    return time.monotonic() * 1000


@dataclass
class ProviderHealthState:
    attempts: int = 0
    successes: int = 0
    failures: int = 0
    consecutive_failures: int = 0
    last_failure_at: float | None = None
    last_success_at: float | None = None
    cooldown_until: float | None = None
    average_latency_ms: int | None = None
    last_error: str | None = None

    @property
    def success_rate(self) -> float:
        if self.attempts == 0:
            return 1.0
        return self.successes / self.attempts

    def cooldown_ms_remaining(self, now_ms: float) -> int:
        if self.cooldown_until is None:
            return 0
        return max(0, int(self.cooldown_until - now_ms))


@dataclass(frozen=True)
class ProviderScore:
    label: str
    score: float
    circuit_open: bool
    cooldown_ms_remaining: int
    success_rate: float
    consecutive_failures: int
    average_latency_ms: int | None
    last_error: str | None

    def to_public_dict(self) -> dict:
        return {
            "label": self.label,
            "score": self.score,
            "circuitOpen": self.circuit_open,
            "cooldownMsRemaining": self.cooldown_ms_remaining,
            "successRate": self.success_rate,
            "consecutiveFailures": self.consecutive_failures,
            "averageLatencyMs": self.average_latency_ms,
            "lastError": self.last_error,
        }


@dataclass(frozen=True)
class ProviderRanking:
    active: list[ProviderScore]
    skipped: list[ProviderScore]


class ProviderHealthRegistry:
    """Thread-safe per-label health tracker."""

    def __init__(
        self,
        *,
        failure_threshold: int = 2,
        base_cooldown_ms: int = 30_000,
        max_cooldown_ms: int = 5 * 60_000,
        clock: Callable[[], float] = _monotonic_ms,
    ):
        self.failure_threshold = max(1, int(failure_threshold))
        self.base_cooldown_ms = max(0, int(base_cooldown_ms))
        self.max_cooldown_ms = max(0, int(max_cooldown_ms))
        self._clock = clock
        self._states: dict[str, ProviderHealthState] = {}
        self._lock = threading.Lock()

    def _state(self, label: str) -> ProviderHealthState:
        state = self._states.get(label)
        if state is None:
            state = ProviderHealthState()
            self._states[label] = state
        return state

    def record_success(self, label: str, latency_ms: float) -> None:
        now = self._clock()
        sample = max(0, int(round(latency_ms)))
        with self._lock:
            state = self._state(label)
            state.attempts += 1
            state.successes += 1
            state.consecutive_failures = 0
            state.last_success_at = now
            state.cooldown_until = None
            state.last_error = None
            if state.average_latency_ms is None:
                state.average_latency_ms = sample
            else:
                # Exponential smoothing weights recent calls.
                state.average_latency_ms = round(state.average_latency_ms * 0.7 + sample * 0.3)

    def record_failure(self, label: str, error_message: str) -> None:
        now = self._clock()
        opened_ms: int | None = None
        with self._lock:
            state = self._state(label)
            state.attempts += 1
            state.failures += 1
            state.consecutive_failures += 1
            state.last_failure_at = now
            state.last_error = error_message

            if state.consecutive_failures >= self.failure_threshold:
                exponent = state.consecutive_failures - self.failure_threshold
                opened_ms = min(self.base_cooldown_ms * (2**exponent), self.max_cooldown_ms)
                state.cooldown_until = now + opened_ms
            consecutive = state.consecutive_failures

        if opened_ms is not None:
            logger.warning(
                "Provider circuit opened",
                provider=label,
                consecutive_failures=consecutive,
                cooldown_ms=opened_ms,
                error=error_message,
            )
            try:
                get_metrics().track_circuit_opened(provider=label)
            except Exception as exc:
                logger.debug("Circuit metric update failed", error=str(exc))

    def _score(self, label: str, now: float) -> ProviderScore:
        state = self._state(label)
        cooldown_remaining = state.cooldown_ms_remaining(now)
        circuit_open = cooldown_remaining > 0
        latency_penalty = min(35.0, state.average_latency_ms / 250) if state.average_latency_ms else 0.0
        failure_penalty = min(60, state.consecutive_failures * 12)

        score = (
            OPEN_CIRCUIT_SCORE
            if circuit_open
            else state.success_rate * 100 - latency_penalty - failure_penalty
        )
        return ProviderScore(
            label=label,
            score=score,
            circuit_open=circuit_open,
            cooldown_ms_remaining=cooldown_remaining,
            success_rate=state.success_rate,
            consecutive_failures=state.consecutive_failures,
            average_latency_ms=state.average_latency_ms,
            last_error=state.last_error,
        )

    def score(self, label: str) -> ProviderScore:
        now = self._clock()
        with self._lock:
            return self._score(label, now)

    def rank(self, labels: Iterable[str]) -> ProviderRanking:
        """Order candidates best-first and split out the ones in cooldown."""
        now = self._clock()
        unique = list(dict.fromkeys(labels))
        with self._lock:
            scored = [self._score(label, now) for label in unique]
        scored.sort(key=lambda candidate: candidate.score, reverse=True)
        return ProviderRanking(
            active=[candidate for candidate in scored if not candidate.circuit_open],
            skipped=[candidate for candidate in scored if candidate.circuit_open],
        )

    def snapshot(self) -> list[ProviderScore]:
        now = self._clock()
        with self._lock:
            scored = [self._score(label, now) for label in list(self._states)]
        scored.sort(key=lambda candidate: candidate.score, reverse=True)
        return scored

    def state(self, label: str) -> ProviderHealthState:
        """Copy of the raw counters for one label."""
        with self._lock:
            current = self._state(label)
            return ProviderHealthState(**vars(current))

    def reset(self) -> None:
        with self._lock:
            self._states.clear()


_registry: ProviderHealthRegistry | None = None


def get_provider_health_registry() -> ProviderHealthRegistry:
    """Process-wide registry configured from settings."""
    global _registry
    if _registry is None:
        settings = get_settings()
        _registry = ProviderHealthRegistry(
            failure_threshold=settings.provider_cb_failure_threshold,
            base_cooldown_ms=settings.provider_cb_cooldown_ms,
            max_cooldown_ms=settings.provider_cb_max_cooldown_ms,
        )
    return _registry


def reset_provider_health_registry() -> None:
    global _registry
    _registry = None

"""
Prometheus Metrics

Counters and histograms for dispatch, watchdog recovery, admission control
and provider routing. Exposed by the API at `/metrics`.
"""

from __future__ import annotations

import structlog
from prometheus_client import Counter, Gauge, Histogram, Info

logger = structlog.get_logger()

_metrics: "Metrics | None" = None


class Metrics:
    """
    Prometheus metrics for runplane.

    Tracks:
    - HTTP request latency and counts
    - Background run transitions and execution time
    - Watchdog recoveries
    - Rate limit decisions
    - Provider calls and circuit openings
    """

    def __init__(self):
        self.http_requests_total = Counter(
            "runplane_http_requests_total",
            "Total HTTP requests",
            ["method", "endpoint", "status_code"],
        )
        self.http_request_duration_seconds = Histogram(
            "runplane_http_request_duration_seconds",
            "HTTP request duration in seconds",
            ["method", "endpoint"],
            buckets=[0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
        )

        self.background_run_transitions_total = Counter(
            "runplane_background_run_transitions_total",
            "Background run lifecycle events",
            ["run_type", "event"],
        )
        self.background_run_execution_seconds = Histogram(
            "runplane_background_run_execution_seconds",
            "Executor wall time per attempt",
            ["run_type", "result"],
            buckets=[0.1, 0.5, 1.0, 5.0, 15.0, 30.0, 60.0, 120.0, 300.0],
        )
        self.dispatch_batches_total = Counter(
            "runplane_dispatch_batches_total",
            "Dispatch invocations",
            ["degraded"],
        )
        self.watchdog_recoveries_total = Counter(
            "runplane_watchdog_recoveries_total",
            "Stale running runs recovered by the watchdog",
            ["result"],  # retried | failed
        )

        self.rate_limit_decisions_total = Counter(
            "runplane_rate_limit_decisions_total",
            "Admission decisions",
            ["policy", "backend", "allowed"],
        )
        self.rate_limit_fallbacks_total = Counter(
            "runplane_rate_limit_fallbacks_total",
            "Distributed limiter failures that fell back to the local bucket",
            ["policy"],
        )

        self.provider_requests_total = Counter(
            "runplane_provider_requests_total",
            "LLM provider calls",
            ["provider", "status"],
        )
        self.provider_request_duration_seconds = Histogram(
            "runplane_provider_request_duration_seconds",
            "LLM provider call latency",
            ["provider"],
            buckets=[0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0],
        )
        self.provider_circuit_opened_total = Counter(
            "runplane_provider_circuit_opened_total",
            "Times a provider circuit entered cooldown",
            ["provider"],
        )
        self.provider_health_score = Gauge(
            "runplane_provider_health_score",
            "Latest computed provider health score",
            ["provider"],
        )

        self.build_info = Info("runplane_build", "Build information")
        logger.info("Prometheus metrics initialized")

    def set_build_info(self, version: str, commit: str | None = None) -> None:
        self.build_info.info({"version": version, "commit": commit or "unknown"})

    def track_http_request(self, method: str, endpoint: str, status_code: int, duration: float) -> None:
        self.http_requests_total.labels(
            method=method,
            endpoint=endpoint,
            status_code=str(status_code),
        ).inc()
        self.http_request_duration_seconds.labels(method=method, endpoint=endpoint).observe(duration)

    def track_run_event(self, *, run_type: str, event: str) -> None:
        self.background_run_transitions_total.labels(run_type=run_type, event=event).inc()

    def observe_run_execution(self, *, run_type: str, result: str, seconds: float) -> None:
        self.background_run_execution_seconds.labels(run_type=run_type, result=result).observe(
            max(0.0, seconds)
        )

    def track_dispatch_batch(self, *, degraded: bool) -> None:
        self.dispatch_batches_total.labels(degraded=str(degraded).lower()).inc()

    def track_watchdog_recovery(self, *, result: str) -> None:
        self.watchdog_recoveries_total.labels(result=result).inc()

    def track_rate_limit(self, *, policy: str, backend: str, allowed: bool) -> None:
        self.rate_limit_decisions_total.labels(
            policy=policy,
            backend=backend,
            allowed=str(allowed).lower(),
        ).inc()

    def track_rate_limit_fallback(self, *, policy: str) -> None:
        self.rate_limit_fallbacks_total.labels(policy=policy).inc()

    def track_provider_request(self, *, provider: str, status: str, duration: float) -> None:
        self.provider_requests_total.labels(provider=provider, status=status).inc()
        self.provider_request_duration_seconds.labels(provider=provider).observe(max(0.0, duration))

    def track_circuit_opened(self, *, provider: str) -> None:
        self.provider_circuit_opened_total.labels(provider=provider).inc()

    def set_provider_score(self, *, provider: str, score: float) -> None:
        self.provider_health_score.labels(provider=provider).set(score)


def get_metrics() -> Metrics:
    """Get or create the singleton metrics instance."""
    global _metrics
    if _metrics is None:
        _metrics = Metrics()
    return _metrics

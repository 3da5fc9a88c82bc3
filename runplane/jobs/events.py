"""Structured lifecycle events for background runs.

Every transition the dispatcher or watchdog makes is logged as a
`background_run.*` event and counted in Prometheus. Neither sink may block
or fail a transition.
"""

from __future__ import annotations

from typing import Any

import structlog

from runplane.jobs.models import BackgroundRun
from runplane.monitoring.metrics import get_metrics

logger = structlog.get_logger()

STARTED = "background_run.started"
SUCCEEDED = "background_run.succeeded"
FAILED = "background_run.failed"
RETRY_SCHEDULED = "background_run.retry_scheduled"
CANCELLED = "background_run.cancelled"
WATCHDOG_MARKED_FAILED = "background_run.watchdog_marked_failed"
WATCHDOG_RETRIED = "background_run.watchdog_retried"
WATCHDOG_TERMINAL_FAILURE = "background_run.watchdog_terminal_failure"


def record_run_event(event: str, run: BackgroundRun, *, session_id: str, **fields: Any) -> None:
    try:
        logger.info(
            event,
            session_id=session_id,
            run_id=run.id,
            project_id=run.project_id,
            user_id=run.user_id,
            run_type=run.run_type,
            status=run.status.value,
            attempt_count=run.attempt_count,
            max_attempts=run.max_attempts,
            retryable=run.retryable,
            progress=run.progress,
            **fields,
        )
        get_metrics().track_run_event(run_type=run.run_type, event=event.rsplit(".", 1)[-1])
    except Exception as exc:
        logger.debug("Run telemetry dropped", event=event, error=str(exc))

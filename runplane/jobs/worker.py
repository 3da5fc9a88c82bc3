"""
Background runs worker batch.

One invocation = one watchdog pass followed by bounded dispatch batches.
Triggered by the `/background-runs/worker` endpoint (cron) or from the
command line:

    runplane-worker --limit 20 --batch-size 5 --max-batches 6
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import structlog

from runplane.config import get_settings
from runplane.db.client import close_db_pool
from runplane.jobs.dispatcher import Dispatcher
from runplane.jobs.models import DispatchOutcome, RunScope, WatchdogResult
from runplane.jobs.runtime import build_job_runtime
from runplane.jobs.watchdog import DEFAULT_STALE_AFTER_SECONDS, Watchdog
from runplane.kernel.logging import configure_logging
from runplane.kernel.time import isoformat_z, utc_now

logger = structlog.get_logger()

WATCHDOG_MAX_LIMIT = 20


@dataclass(frozen=True)
class WorkerBatchRequest:
    run_id: str | None = None
    project_id: str | None = None
    limit: int = 20
    batch_size: int = 5
    max_batches: int = 6
    stale_after_seconds: int = DEFAULT_STALE_AFTER_SECONDS


@dataclass
class WorkerBatchResult:
    processed: int = 0
    batches: int = 0
    watchdog: WatchdogResult = field(default_factory=WatchdogResult)
    stale_after_seconds: int = DEFAULT_STALE_AFTER_SECONDS
    outcomes: list[DispatchOutcome] = field(default_factory=list)
    checked_at: datetime = field(default_factory=utc_now)
    degraded: bool = False
    warning: str | None = None

    def to_public_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "success": True,
            "processed": self.processed,
            "batches": self.batches,
            "watchdog": self.watchdog.to_public_dict(timeout_seconds=self.stale_after_seconds),
            "outcomes": [outcome.to_public_dict() for outcome in self.outcomes],
            "checkedAt": isoformat_z(self.checked_at),
        }
        if self.degraded:
            payload["degraded"] = True
            payload["warning"] = self.warning
        return payload


async def run_worker_batch(
    request: WorkerBatchRequest,
    *,
    dispatcher: Dispatcher,
    watchdog: Watchdog,
    session_id: str | None = None,
) -> WorkerBatchResult:
    """Recover stale runs once, then dispatch in batches until drained or capped."""
    session_id = session_id or f"worker:{int(utc_now().timestamp() * 1000)}"
    scope = RunScope(run_id=request.run_id, project_id=request.project_id)

    result = WorkerBatchResult(stale_after_seconds=request.stale_after_seconds)
    result.watchdog = await watchdog.recover_stale(
        scope,
        stale_after_seconds=request.stale_after_seconds,
        limit=min(request.limit, WATCHDOG_MAX_LIMIT),
        session_id=session_id,
    )
    if result.watchdog.degraded:
        result.degraded = True
        result.warning = result.watchdog.warning

    while result.processed < request.limit and result.batches < request.max_batches:
        current_limit = min(request.batch_size, request.limit - result.processed)
        batch = await dispatcher.dispatch(scope, limit=current_limit, session_id=session_id)

        result.batches += 1
        result.processed += batch.processed
        result.outcomes.extend(batch.outcomes)

        if batch.degraded:
            result.degraded = True
            result.warning = result.warning or batch.warning
            break

        # A pinned run is processed at most once.
        scope = scope.without_run()

        if batch.processed < current_limit:
            break

    result.checked_at = utc_now()
    logger.info(
        "Worker batch complete",
        processed=result.processed,
        batches=result.batches,
        recovered=result.watchdog.recovered,
        degraded=result.degraded,
    )
    return result


def _bounded_int(low: int, high: int):
    def parse(value: str) -> int:
        number = int(value)
        if not low <= number <= high:
            raise argparse.ArgumentTypeError(f"must be between {low} and {high}")
        return number

    return parse


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="runplane-worker",
        description="Run one watchdog pass and dispatch queued background runs.",
    )
    parser.add_argument("--run-id", default=None, help="Process only this run")
    parser.add_argument("--project-id", default=None, help="Restrict to one project")
    parser.add_argument("--limit", type=_bounded_int(1, 100), default=20)
    parser.add_argument("--batch-size", type=_bounded_int(1, 10), default=5)
    parser.add_argument("--max-batches", type=_bounded_int(1, 20), default=6)
    parser.add_argument(
        "--stale-after-seconds",
        type=_bounded_int(60, 86_400),
        default=DEFAULT_STALE_AFTER_SECONDS,
    )
    return parser


async def _run(args: argparse.Namespace) -> dict[str, Any]:
    runtime = build_job_runtime(get_settings())
    try:
        result = await run_worker_batch(
            WorkerBatchRequest(
                run_id=args.run_id,
                project_id=args.project_id,
                limit=args.limit,
                batch_size=args.batch_size,
                max_batches=args.max_batches,
                stale_after_seconds=args.stale_after_seconds,
            ),
            dispatcher=runtime.dispatcher,
            watchdog=runtime.watchdog,
            session_id=f"worker-cli:{int(utc_now().timestamp() * 1000)}",
        )
    finally:
        await runtime.aclose()
        await close_db_pool()
    return result.to_public_dict()


def main(argv: list[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)
    settings = get_settings()
    configure_logging(level=settings.log_level, fmt=settings.log_format)

    try:
        payload = asyncio.run(_run(args))
    except Exception as exc:
        logger.exception("Worker batch failed", error=str(exc))
        return 1

    sys.stdout.write(json.dumps(payload, indent=2) + "\n")
    return 0


if __name__ == "__main__":
    sys.exit(main())

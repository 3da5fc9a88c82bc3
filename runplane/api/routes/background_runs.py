"""
Background Runs API Routes

User endpoints create, inspect and steer runs. The dispatch and worker
endpoints drive execution:

- `POST /background-runs/dispatch`: one bounded dispatch batch, worker token
  or user session (users only dispatch their own runs).
- `GET|POST /background-runs/worker`: cron entry point; one watchdog pass
  followed by bounded dispatch batches.

Every handler rate limits first, then authenticates, then validates. Bodies
are read and validated inside the handlers, after the dependencies have run.
"""

from __future__ import annotations

from typing import Annotated, Any

import structlog
from fastapi import APIRouter, Depends, Query, Request, Response
from pydantic import BaseModel, ConfigDict, Field, StringConstraints, model_validator
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from runplane.auth.deps import (
    DispatchPrincipal,
    chat_rate_limit,
    get_runtime,
    require_user,
    require_worker,
    require_worker_or_user,
    strict_rate_limit,
)
from runplane.auth.rate_limit import RateLimitResult
from runplane.auth.session import SessionUser
from runplane.auth.worker import WorkerAuthorization
from runplane.jobs.availability import RunStoreUnavailableError
from runplane.jobs.models import DEFAULT_MAX_ATTEMPTS, CreateRunRequest, RunScope, RunStatus
from runplane.jobs.runtime import JobRuntime
from runplane.jobs.state_machine import RunOperation, RunPatch
from runplane.jobs.watchdog import DEFAULT_STALE_AFTER_SECONDS
from runplane.jobs.worker import WorkerBatchRequest, run_worker_batch
from runplane.kernel.errors import RunplaneError, ValidationError
from runplane.kernel.time import epoch_ms

logger = structlog.get_logger()

router = APIRouter(prefix="/background-runs", tags=["Background Runs"])

CREATE_UNAVAILABLE_ERROR = "Background runs queue is unavailable; fallback pipeline should continue."
LIST_UNAVAILABLE_WARNING = "Background runs table is unavailable. Returning empty run list."

_STATUS_VALUES = frozenset(status.value for status in RunStatus)


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class CreateRunBody(_CamelModel):
    project_id: str = Field(..., min_length=1)
    run_type: str = Field(..., min_length=1)
    input: dict[str, Any] | None = None
    metadata: dict[str, Any] | None = None
    idempotency_key: Annotated[
        str, StringConstraints(strip_whitespace=True, min_length=8, max_length=128)
    ] | None = None
    max_attempts: int | None = Field(None, ge=1, le=10)
    retryable: bool | None = None

    def to_request(self) -> CreateRunRequest:
        return CreateRunRequest(
            project_id=self.project_id,
            run_type=self.run_type,
            input=self.input or {},
            metadata=self.metadata or {},
            idempotency_key=self.idempotency_key,
            max_attempts=self.max_attempts or DEFAULT_MAX_ATTEMPTS,
            retryable=self.retryable is not False,
        )


class UpdateRunBody(_CamelModel):
    operation: RunOperation | None = None
    status: RunStatus | None = None
    progress: int | None = Field(None, ge=0, le=100)
    output: dict[str, Any] | None = None
    error_message: str | None = None
    retry_after_seconds: int | None = Field(None, ge=1, le=3600)

    @model_validator(mode="after")
    def _require_a_field(self) -> "UpdateRunBody":
        if not self.model_fields_set:
            raise ValueError("At least one update field is required.")
        return self

    def to_patch(self) -> RunPatch:
        return RunPatch(
            operation=self.operation,
            status=self.status,
            progress=self.progress,
            output=self.output,
            error_message=self.error_message,
            retry_after_seconds=self.retry_after_seconds,
        )


class RetryRunBody(_CamelModel):
    retry_after_seconds: int | None = Field(None, ge=1, le=3600)


class DispatchBody(_CamelModel):
    run_id: str | None = None
    project_id: str | None = None
    limit: int = Field(1, ge=1, le=10)


class WorkerBody(_CamelModel):
    run_id: str | None = None
    project_id: str | None = None
    limit: int = Field(20, ge=1, le=100)
    batch_size: int = Field(5, ge=1, le=10)
    max_batches: int = Field(6, ge=1, le=20)
    stale_after_seconds: int = Field(DEFAULT_STALE_AFTER_SECONDS, ge=60, le=86_400)


def _fields_from(exc: PydanticValidationError) -> dict[str, list[str]]:
    fields: dict[str, list[str]] = {}
    for error in exc.errors():
        key = ".".join(str(part) for part in error.get("loc", ())) or "_"
        fields.setdefault(key, []).append(str(error.get("msg", "invalid")))
    return fields


async def _read_json_object(request: Request) -> dict[str, Any]:
    """Request body as a dict; an empty or unparsable body reads as `{}`."""
    try:
        body = await request.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


def _validate(model: type[_CamelModel], data: dict[str, Any]) -> Any:
    try:
        return model.model_validate(data)
    except PydanticValidationError as exc:
        raise ValidationError(message="Invalid request", meta={"fields": _fields_from(exc)}) from exc


@router.post("", status_code=201)
async def create_background_run(
    request: Request,
    response: Response,
    _: RateLimitResult = Depends(chat_rate_limit),
    user: SessionUser = Depends(require_user),
    runtime: JobRuntime = Depends(get_runtime),
) -> dict[str, Any]:
    """
    Enqueue a background run.

    Returns 201 for a new run and 200 with `deduplicated: true` when the
    idempotency key already names a run. When the queue is not provisioned
    the response is a 200 degraded envelope so callers continue their
    synchronous path.
    """
    body: CreateRunBody = _validate(CreateRunBody, await _read_json_object(request))
    try:
        run, deduplicated = await runtime.service.create_run(body.to_request(), user_id=user.user_id)
    except RunStoreUnavailableError as exc:
        logger.warning("Background run create degraded", error=exc.message)
        response.status_code = 200
        return {"success": False, "degraded": True, "error": CREATE_UNAVAILABLE_ERROR}

    if deduplicated:
        response.status_code = 200
        return {"success": True, "deduplicated": True, "run": run.to_public_dict()}
    return {"success": True, "run": run.to_public_dict()}


@router.get("")
async def list_background_runs(
    _: RateLimitResult = Depends(chat_rate_limit),
    user: SessionUser = Depends(require_user),
    runtime: JobRuntime = Depends(get_runtime),
    project_id: str | None = Query(None, alias="projectId"),
    status: str | None = Query(None),
    limit: str | None = Query(None),
) -> dict[str, Any]:
    """List the caller's runs, newest first. Unknown status filters are ignored."""
    status_filter = RunStatus(status) if status in _STATUS_VALUES else None
    try:
        runs = await runtime.service.list_runs(
            user_id=user.user_id,
            project_id=project_id or None,
            status=status_filter,
            limit=limit if limit is not None else 50,
        )
    except RunStoreUnavailableError as exc:
        logger.warning("Background run list degraded", error=exc.message)
        return {"success": True, "runs": [], "degraded": True, "warning": LIST_UNAVAILABLE_WARNING}
    return {"success": True, "runs": [run.to_public_dict() for run in runs]}


@router.post("/dispatch")
async def dispatch_background_runs(
    request: Request,
    _: RateLimitResult = Depends(chat_rate_limit),
    principal: DispatchPrincipal = Depends(require_worker_or_user),
    runtime: JobRuntime = Depends(get_runtime),
) -> dict[str, Any]:
    body: DispatchBody = _validate(DispatchBody, await _read_json_object(request))
    scope = RunScope(run_id=body.run_id, project_id=body.project_id, user_id=principal.user_id)

    try:
        result = await runtime.dispatcher.dispatch(
            scope,
            limit=body.limit,
            session_id=f"{principal.session_prefix}:{int(epoch_ms())}",
        )
    except RunplaneError:
        raise
    except Exception as exc:
        logger.exception("Dispatch failed", error=str(exc))
        raise RunplaneError(
            code="BACKGROUND_RUNS_DISPATCH_FAILED",
            message=str(exc) or "Failed to dispatch background runs.",
            status_code=500,
            retryable=True,
        ) from exc

    if result.degraded:
        return {
            "success": True,
            "degraded": True,
            "processed": result.processed,
            "outcomes": [outcome.to_public_dict() for outcome in result.outcomes],
            "warning": result.warning,
        }
    return {
        "success": True,
        "processed": result.processed,
        "outcomes": [outcome.to_public_dict() for outcome in result.outcomes],
    }


@router.api_route("/worker", methods=["GET", "POST"])
async def run_background_worker(
    request: Request,
    _: RateLimitResult = Depends(strict_rate_limit),
    authorization: WorkerAuthorization = Depends(require_worker),
    runtime: JobRuntime = Depends(get_runtime),
) -> dict[str, Any]:
    """
    Cron entry point: recover stale runs, then drain the queue in batches.

    Parameters come from the query string on GET and the JSON body on POST.
    """
    if request.method == "GET":
        data: dict[str, Any] = {key: value for key, value in request.query_params.items() if value}
    else:
        data = await _read_json_object(request)
    body: WorkerBody = _validate(WorkerBody, data)

    try:
        result = await run_worker_batch(
            WorkerBatchRequest(
                run_id=body.run_id,
                project_id=body.project_id,
                limit=body.limit,
                batch_size=body.batch_size,
                max_batches=body.max_batches,
                stale_after_seconds=body.stale_after_seconds,
            ),
            dispatcher=runtime.dispatcher,
            watchdog=runtime.watchdog,
        )
    except RunplaneError:
        raise
    except Exception as exc:
        logger.exception("Worker batch failed", error=str(exc))
        raise RunplaneError(
            code="WORKER_DISPATCH_FAILED",
            message=str(exc) or "Failed to dispatch worker runs.",
            status_code=500,
            retryable=True,
        ) from exc

    payload = result.to_public_dict()
    payload["auth"] = authorization.method
    return payload


@router.get("/{run_id}")
async def get_background_run(
    run_id: str,
    _: RateLimitResult = Depends(chat_rate_limit),
    user: SessionUser = Depends(require_user),
    runtime: JobRuntime = Depends(get_runtime),
) -> dict[str, Any]:
    run = await runtime.service.get_run(run_id, user_id=user.user_id)
    return {"success": True, "run": run.to_public_dict()}


@router.patch("/{run_id}")
async def update_background_run(
    run_id: str,
    request: Request,
    _: RateLimitResult = Depends(chat_rate_limit),
    user: SessionUser = Depends(require_user),
    runtime: JobRuntime = Depends(get_runtime),
) -> dict[str, Any]:
    """Apply a lifecycle operation (or legacy target status) to a run."""
    body: UpdateRunBody = _validate(UpdateRunBody, await _read_json_object(request))
    run = await runtime.service.update_run(run_id, body.to_patch(), user_id=user.user_id)
    return {"success": True, "run": run.to_public_dict()}


@router.post("/{run_id}/retry")
async def retry_background_run(
    run_id: str,
    request: Request,
    _: RateLimitResult = Depends(chat_rate_limit),
    user: SessionUser = Depends(require_user),
    runtime: JobRuntime = Depends(get_runtime),
) -> dict[str, Any]:
    body: RetryRunBody = _validate(RetryRunBody, await _read_json_object(request))
    run = await runtime.service.retry_run(
        run_id,
        user_id=user.user_id,
        retry_after_seconds=body.retry_after_seconds,
    )
    return {"success": True, "run": run.to_public_dict()}

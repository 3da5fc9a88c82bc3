"""
Run executors.

An executor is an async callable taking a `RunContext` and returning the
run's output dict. Raising `PermanentRunError` marks the failure as
terminal; any other exception is retried while attempts remain. Executors
that run for a while should call `ctx.heartbeat()` and check
`ctx.cancel_requested()` between steps.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Awaitable, Callable

from runplane.jobs.models import BackgroundRun, RunStatus
from runplane.jobs.state_machine import RunPatch, RunOperation, TransitionOk, compute_transition
from runplane.jobs.store import RunStore
from runplane.kernel.time import Clock
from runplane.llm.router import ProviderRouter

LLM_COMPLETION_RUN_TYPE = "llm.completion"


class PermanentRunError(Exception):
    """Failure that retrying cannot fix (bad input, unsupported run type)."""


class UnknownRunTypeError(PermanentRunError):
    def __init__(self, run_type: str):
        super().__init__(f"Unsupported run_type: {run_type}")
        self.run_type = run_type


class RunCancelledError(Exception):
    """Raised by an executor after it observed a cancel request."""


class RunContext:
    """What an executor sees of its run while it executes."""

    def __init__(self, run: BackgroundRun, store: RunStore, clock: Clock):
        self._run = run
        self._store = store
        self._clock = clock

    @property
    def run(self) -> BackgroundRun:
        return self._run

    @property
    def run_id(self) -> str:
        return self._run.id

    @property
    def input(self) -> dict[str, Any]:
        return self._run.input

    @property
    def metadata(self) -> dict[str, Any]:
        return self._run.metadata

    async def _apply(self, patch: RunPatch) -> bool:
        now: datetime = self._clock.now()
        transition = compute_transition(self._run, patch, now)
        if not isinstance(transition, TransitionOk):
            return False
        updated = await self._store.apply_mutation(
            self._run.id,
            expected_status=RunStatus.RUNNING,
            expected_attempt=self._run.attempt_count,
            mutation=transition.mutation,
            now=now,
        )
        if updated is not None:
            self._run = updated
        return updated is not None

    async def report_progress(self, progress: int) -> bool:
        """Advisory progress (0..100). Never moves backwards."""
        clamped = max(0, min(100, int(progress)))
        return await self._apply(RunPatch(operation=RunOperation.PROGRESS, progress=clamped))

    async def heartbeat(self) -> bool:
        """Extend the lease so the watchdog leaves this run alone."""
        return await self._apply(RunPatch(operation=RunOperation.HEARTBEAT))

    async def cancel_requested(self) -> bool:
        return await self._store.is_cancel_requested(self._run.id)

    async def raise_if_cancelled(self) -> None:
        if await self.cancel_requested():
            raise RunCancelledError(f"Run {self._run.id} was cancelled")


Executor = Callable[[RunContext], Awaitable[dict[str, Any]]]


class ExecutorRegistry:
    def __init__(self) -> None:
        self._executors: dict[str, Executor] = {}

    def register(self, run_type: str, executor: Executor | None = None):
        """Register an executor; usable directly or as a decorator."""
        if executor is not None:
            self._executors[run_type] = executor
            return executor

        def decorator(func: Executor) -> Executor:
            self._executors[run_type] = func
            return func

        return decorator

    def get(self, run_type: str) -> Executor:
        executor = self._executors.get(run_type)
        if executor is None:
            raise UnknownRunTypeError(run_type)
        return executor

    def __contains__(self, run_type: object) -> bool:
        return run_type in self._executors

    @property
    def run_types(self) -> list[str]:
        return sorted(self._executors)


def _validate_messages(raw: Any) -> list[dict[str, str]]:
    if not isinstance(raw, list) or not raw:
        raise PermanentRunError("llm.completion input requires a non-empty messages list.")
    messages: list[dict[str, str]] = []
    for item in raw:
        if not isinstance(item, dict) or not isinstance(item.get("content"), str):
            raise PermanentRunError("Each message needs a role and string content.")
        messages.append({"role": str(item.get("role") or "user"), "content": item["content"]})
    return messages


def make_llm_completion_executor(router: ProviderRouter) -> Executor:
    async def llm_completion(ctx: RunContext) -> dict[str, Any]:
        messages = _validate_messages(ctx.input.get("messages"))
        labels = ctx.input.get("providers")
        await ctx.raise_if_cancelled()
        # AllProvidersFailedError propagates as a retryable failure; cooldowns expire.
        text, call = await router.complete(
            messages,
            labels=labels if isinstance(labels, list) else None,
            temperature=float(ctx.input.get("temperature", 0.0)),
            max_tokens=int(ctx.input.get("maxTokens", 1024)),
        )
        await ctx.heartbeat()
        return {"text": text, **call.to_public_dict()}

    return llm_completion


def build_executor_registry(router: ProviderRouter | None = None) -> ExecutorRegistry:
    registry = ExecutorRegistry()
    if router is not None:
        registry.register(LLM_COMPLETION_RUN_TYPE, make_llm_completion_executor(router))
    return registry

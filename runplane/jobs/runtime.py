"""Wiring for the job plane shared by the API process and the worker CLI."""

from __future__ import annotations

from dataclasses import dataclass

import structlog

from runplane.config import Settings, get_settings
from runplane.jobs.dispatcher import Dispatcher
from runplane.jobs.executors import ExecutorRegistry, build_executor_registry
from runplane.jobs.memory_store import InMemoryRunStore
from runplane.jobs.service import RunService
from runplane.jobs.store import PostgresRunStore, RunStore
from runplane.jobs.watchdog import Watchdog
from runplane.kernel.time import Clock
from runplane.llm.provider_health import ProviderHealthRegistry, get_provider_health_registry
from runplane.llm.router import ProviderRouter, build_provider_router

logger = structlog.get_logger()


@dataclass
class JobRuntime:
    store: RunStore
    executors: ExecutorRegistry
    provider_health: ProviderHealthRegistry
    router: ProviderRouter
    dispatcher: Dispatcher
    watchdog: Watchdog
    service: RunService

    async def aclose(self) -> None:
        await self.router.aclose()


def build_run_store(settings: Settings | None = None) -> RunStore:
    settings = settings or get_settings()
    if settings.run_store_backend == "memory":
        logger.info("Using in-memory background run store")
        return InMemoryRunStore()
    return PostgresRunStore()


def build_job_runtime(
    settings: Settings | None = None,
    *,
    store: RunStore | None = None,
    executors: ExecutorRegistry | None = None,
    provider_health: ProviderHealthRegistry | None = None,
    clock: Clock | None = None,
) -> JobRuntime:
    settings = settings or get_settings()
    store = store or build_run_store(settings)
    provider_health = provider_health or get_provider_health_registry()
    router = build_provider_router(settings, provider_health)
    executors = executors or build_executor_registry(router)

    return JobRuntime(
        store=store,
        executors=executors,
        provider_health=provider_health,
        router=router,
        dispatcher=Dispatcher.from_settings(store, executors, settings=settings, clock=clock),
        watchdog=Watchdog.from_settings(store, settings=settings, clock=clock),
        service=RunService(store, clock=clock),
    )

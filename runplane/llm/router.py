"""
Provider router with health-ranked fallback.

Each call asks the health registry for a ranking, tries the providers whose
circuit is closed in score order, and reports every outcome back so the
next ranking reflects it.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Mapping, Protocol, Sequence

import httpx
import structlog

from runplane.config import Settings, get_settings
from runplane.llm.provider_health import (
    ProviderHealthRegistry,
    ProviderScore,
    get_provider_health_registry,
)
from runplane.llm.providers import ProviderConfig, get_available_providers
from runplane.monitoring.metrics import get_metrics

logger = structlog.get_logger()


class ProviderRequestError(Exception):
    """A provider answered with an error status or an unusable body."""

    def __init__(self, message: str, *, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class AllProvidersFailedError(Exception):
    """Raised when no provider could complete a request."""

    def __init__(self, errors: list[str], skipped: list[ProviderScore]):
        self.errors = errors
        self.skipped = skipped
        parts = list(errors)
        parts.extend(
            f"{candidate.label}: circuit open ({candidate.cooldown_ms_remaining}ms remaining)"
            for candidate in skipped
        )
        super().__init__(f"All providers failed: {'; '.join(parts) or 'no providers configured'}")


class CompletionProvider(Protocol):
    label: str

    async def complete(
        self,
        messages: Sequence[Mapping[str, Any]],
        *,
        temperature: float,
        max_tokens: int,
    ) -> str:
        ...


class OpenAICompatibleProvider:
    """Chat completions over httpx for any OpenAI-compatible endpoint."""

    def __init__(
        self,
        config: ProviderConfig,
        api_key: str,
        *,
        model: str | None = None,
        timeout_seconds: float | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self.label = config.name.value
        self.model = model or config.default_model
        self._url = config.base_url.rstrip("/") + "/chat/completions"
        self._api_key = api_key
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds or config.default_timeout)

    async def complete(
        self,
        messages: Sequence[Mapping[str, Any]],
        *,
        temperature: float,
        max_tokens: int,
    ) -> str:
        response = await self._client.post(
            self._url,
            json={
                "model": self.model,
                "messages": list(messages),
                "temperature": temperature,
                "max_tokens": max_tokens,
            },
            headers={"Authorization": f"Bearer {self._api_key}"},
        )
        if response.status_code >= 400:
            raise ProviderRequestError(
                f"{self.label} returned HTTP {response.status_code}",
                status_code=response.status_code,
            )
        try:
            payload = response.json()
            content = payload["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as exc:
            raise ProviderRequestError(f"{self.label} returned an unexpected response shape") from exc
        return content or ""

    async def aclose(self) -> None:
        await self._client.aclose()


@dataclass(frozen=True)
class ProviderCall:
    """Trace of the call that produced a completion."""

    provider: str
    latency_ms: int
    attempts: int
    skipped: tuple[str, ...] = ()

    def to_public_dict(self) -> dict[str, Any]:
        return {
            "provider": self.provider,
            "latencyMs": self.latency_ms,
            "attempts": self.attempts,
            "skipped": list(self.skipped),
        }


class ProviderRouter:
    """Routes completions across providers by health score."""

    def __init__(
        self,
        providers: Mapping[str, CompletionProvider],
        registry: ProviderHealthRegistry,
    ):
        self._providers = dict(providers)
        self.registry = registry

    @property
    def labels(self) -> list[str]:
        return list(self._providers)

    async def complete(
        self,
        messages: Sequence[Mapping[str, Any]],
        *,
        labels: Sequence[str] | None = None,
        temperature: float = 0.0,
        max_tokens: int = 1024,
    ) -> tuple[str, ProviderCall]:
        candidates = [label for label in (labels or self.labels) if label in self._providers]
        ranking = self.registry.rank(candidates)
        errors: list[str] = []
        attempts = 0

        for candidate in ranking.active:
            provider = self._providers[candidate.label]
            attempts += 1
            started = time.perf_counter()
            try:
                text = await provider.complete(messages, temperature=temperature, max_tokens=max_tokens)
            except Exception as exc:
                elapsed = time.perf_counter() - started
                self.registry.record_failure(candidate.label, str(exc))
                self._track(candidate.label, "error", elapsed)
                errors.append(f"{candidate.label}: {exc}")
                logger.warning("Provider failed, trying next", provider=candidate.label, error=str(exc))
                continue

            elapsed = time.perf_counter() - started
            latency_ms = int(elapsed * 1000)
            self.registry.record_success(candidate.label, latency_ms)
            self._track(candidate.label, "success", elapsed)
            logger.debug("Provider call completed", provider=candidate.label, latency_ms=latency_ms)
            return text, ProviderCall(
                provider=candidate.label,
                latency_ms=latency_ms,
                attempts=attempts,
                skipped=tuple(skipped.label for skipped in ranking.skipped),
            )

        logger.error(
            "All providers failed",
            errors=errors,
            skipped=[candidate.label for candidate in ranking.skipped],
        )
        raise AllProvidersFailedError(errors, ranking.skipped)

    async def aclose(self) -> None:
        for provider in self._providers.values():
            close = getattr(provider, "aclose", None)
            if close is not None:
                await close()

    def _track(self, label: str, status: str, elapsed: float) -> None:
        try:
            get_metrics().track_provider_request(provider=label, status=status, duration=elapsed)
            get_metrics().set_provider_score(provider=label, score=self.registry.score(label).score)
        except Exception as exc:
            logger.debug("Provider metric update failed", error=str(exc))


def build_provider_router(
    settings: Settings | None = None,
    registry: ProviderHealthRegistry | None = None,
) -> ProviderRouter:
    """Router over every provider with an API key configured."""
    settings = settings or get_settings()
    providers: dict[str, CompletionProvider] = {}
    for config in get_available_providers(settings):
        providers[config.name.value] = OpenAICompatibleProvider(
            config,
            getattr(settings, config.api_key_setting),
            timeout_seconds=settings.llm_request_timeout_seconds,
        )
        logger.info("Provider initialized", provider=config.name.value)
    return ProviderRouter(providers, registry or get_provider_health_registry())

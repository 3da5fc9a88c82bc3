from __future__ import annotations

import httpx
import pytest

from runplane.llm.provider_health import ProviderHealthRegistry
from runplane.llm.providers import Provider, ProviderConfig
from runplane.llm.router import (
    AllProvidersFailedError,
    OpenAICompatibleProvider,
    ProviderRequestError,
    ProviderRouter,
)

pytestmark = pytest.mark.asyncio

MESSAGES = [{"role": "user", "content": "hi"}]


class ScriptedProvider:
    def __init__(self, label: str, *, fail: bool = False, reply: str = "ok"):
        self.label = label
        self.fail = fail
        self.reply = reply
        self.calls = 0

    async def complete(self, messages, *, temperature, max_tokens):
        self.calls += 1
        if self.fail:
            raise ProviderRequestError(f"{self.label} returned HTTP 503", status_code=503)
        return self.reply


@pytest.fixture
def registry(clock) -> ProviderHealthRegistry:
    return ProviderHealthRegistry(failure_threshold=2, clock=clock.ms)


async def test_falls_back_to_next_provider(registry):
    broken = ScriptedProvider("together", fail=True)
    healthy = ScriptedProvider("openai", reply="hello")
    router = ProviderRouter({"together": broken, "openai": healthy}, registry)

    text, call = await router.complete(MESSAGES)

    assert text == "hello"
    assert call.provider == "openai"
    assert call.attempts == 2
    assert registry.state("together").consecutive_failures == 1
    assert registry.state("openai").successes == 1


async def test_open_circuit_is_skipped(registry):
    broken = ScriptedProvider("together", fail=True)
    healthy = ScriptedProvider("openai")
    registry.record_failure("together", "boom")
    registry.record_failure("together", "boom")
    router = ProviderRouter({"together": broken, "openai": healthy}, registry)

    _, call = await router.complete(MESSAGES)

    assert broken.calls == 0
    assert call.skipped == ("together",)


async def test_all_providers_failed(registry):
    router = ProviderRouter(
        {"together": ScriptedProvider("together", fail=True), "openai": ScriptedProvider("openai", fail=True)},
        registry,
    )

    with pytest.raises(AllProvidersFailedError) as exc_info:
        await router.complete(MESSAGES)

    assert len(exc_info.value.errors) == 2
    assert "All providers failed" in str(exc_info.value)


async def test_no_providers_configured(registry):
    with pytest.raises(AllProvidersFailedError) as exc_info:
        await ProviderRouter({}, registry).complete(MESSAGES)

    assert "no providers configured" in str(exc_info.value)


async def test_labels_restrict_candidates(registry):
    first = ScriptedProvider("together")
    second = ScriptedProvider("openai")
    router = ProviderRouter({"together": first, "openai": second}, registry)

    _, call = await router.complete(MESSAGES, labels=["openai", "unknown"])

    assert call.provider == "openai"
    assert first.calls == 0


def _openai_config() -> ProviderConfig:
    return ProviderConfig(
        name=Provider.OPENAI,
        base_url="https://llm.test/v1",
        default_model="test-model",
        api_key_setting="openai_api_key",
    )


async def test_openai_compatible_provider_parses_choices():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/v1/chat/completions"
        assert request.headers["Authorization"] == "Bearer sk-test"
        return httpx.Response(200, json={"choices": [{"message": {"content": "pong"}}]})

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    provider = OpenAICompatibleProvider(_openai_config(), "sk-test", client=client)

    assert await provider.complete(MESSAGES, temperature=0.0, max_tokens=16) == "pong"
    await provider.aclose()


@pytest.mark.parametrize(
    "response",
    [httpx.Response(500, json={"error": "down"}), httpx.Response(200, json={"unexpected": True})],
)
async def test_openai_compatible_provider_errors(response):
    client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: response))
    provider = OpenAICompatibleProvider(_openai_config(), "sk-test", client=client)

    with pytest.raises(ProviderRequestError):
        await provider.complete(MESSAGES, temperature=0.0, max_tokens=16)
    await provider.aclose()

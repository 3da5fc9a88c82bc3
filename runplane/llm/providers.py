"""
LLM Provider Configuration

Every supported provider speaks the OpenAI chat completions dialect, so a
single httpx adapter covers them; only the base URL, key and default model
differ.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from runplane.config import Settings, get_settings


class Provider(str, Enum):
    """Supported LLM providers."""

    TOGETHER = "together"
    FIREWORKS = "fireworks"
    MOONSHOT = "moonshot"
    OPENAI = "openai"


@dataclass(frozen=True)
class ProviderConfig:
    """Configuration for an LLM provider."""

    name: Provider
    api_key_setting: str
    base_url: str
    default_model: str
    default_timeout: float = 60.0


PROVIDER_CONFIGS: dict[Provider, ProviderConfig] = {
    Provider.TOGETHER: ProviderConfig(
        name=Provider.TOGETHER,
        api_key_setting="together_api_key",
        base_url="https://api.together.xyz/v1",
        default_model="meta-llama/Llama-4-Maverick-17B-128E-Instruct-FP8",
    ),
    Provider.FIREWORKS: ProviderConfig(
        name=Provider.FIREWORKS,
        api_key_setting="fireworks_api_key",
        base_url="https://api.fireworks.ai/inference/v1",
        default_model="accounts/fireworks/models/llama-v4-maverick-instruct",
    ),
    Provider.MOONSHOT: ProviderConfig(
        name=Provider.MOONSHOT,
        api_key_setting="moonshot_api_key",
        base_url="https://api.moonshot.ai/v1",
        default_model="kimi-k2-0905-preview",
    ),
    Provider.OPENAI: ProviderConfig(
        name=Provider.OPENAI,
        api_key_setting="openai_api_key",
        base_url="https://api.openai.com/v1",
        default_model="gpt-4o-mini",
    ),
}


def preferred_provider_order(settings: Settings | None = None) -> list[Provider]:
    """Providers named in LLM_PROVIDERS, in order, ignoring unknown names."""
    settings = settings or get_settings()
    order: list[Provider] = []
    for raw in settings.llm_providers.split(","):
        name = raw.strip().lower()
        if not name:
            continue
        try:
            provider = Provider(name)
        except ValueError:
            continue
        if provider not in order:
            order.append(provider)
    return order


def get_available_providers(settings: Settings | None = None) -> list[ProviderConfig]:
    """Configured providers (API key present) in preference order."""
    settings = settings or get_settings()
    return [
        PROVIDER_CONFIGS[provider]
        for provider in preferred_provider_order(settings)
        if getattr(settings, PROVIDER_CONFIGS[provider].api_key_setting, None)
    ]

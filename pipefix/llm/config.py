from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum
from typing import Optional


class ReasoningProvider(str, Enum):
    openai = "openai"
    anthropic = "anthropic"
    gemini = "gemini"
    deepseek = "deepseek"
    openrouter = "openrouter"
    groq = "groq"
    # Local OpenAI-compatible proxy (LiteLLM); the key is optional.
    litellm = "litellm"

    @property
    def requires_api_key(self) -> bool:
        return self is not ReasoningProvider.litellm


@dataclass(frozen=True)
class ProviderConfig:
    model: str
    base_url: str
    max_tokens: int = 4000
    temperature: float = 0.1
    timeout_s: float = 60.0
    retry_count: int = 3

    def with_overrides(self, *, model: Optional[str] = None, base_url: Optional[str] = None) -> "ProviderConfig":
        return replace(self, model=model or self.model, base_url=base_url or self.base_url)


_DEFAULTS = {
    ReasoningProvider.openai: ProviderConfig(model="gpt-4o", base_url="https://api.openai.com/v1"),
    ReasoningProvider.anthropic: ProviderConfig(model="claude-3-5-sonnet-20241022", base_url="https://api.anthropic.com"),
    ReasoningProvider.gemini: ProviderConfig(model="gemini-2.0-flash-exp", base_url="https://generativelanguage.googleapis.com"),
    ReasoningProvider.deepseek: ProviderConfig(model="deepseek-chat", base_url="https://api.deepseek.com/v1"),
    ReasoningProvider.openrouter: ProviderConfig(model="openai/gpt-4o", base_url="https://openrouter.ai/api/v1"),
    ReasoningProvider.groq: ProviderConfig(model="openai/gpt-oss-120b", base_url="https://api.groq.com/openai/v1"),
    ReasoningProvider.litellm: ProviderConfig(model="gpt-4o", base_url="http://localhost:4000"),
}


def default_provider_config(provider: ReasoningProvider) -> ProviderConfig:
    """Defaults applied when a request leaves model/limits/timeouts unset."""
    return _DEFAULTS[ReasoningProvider(provider)]

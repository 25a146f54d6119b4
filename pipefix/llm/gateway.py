from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Optional, Protocol, Tuple

import httpx
from pydantic import SecretStr

from pipefix.errors import AnalysisError, ConfigurationError, error_for_status
from pipefix.llm.anthropic import AnthropicAdapter
from pipefix.llm.config import ProviderConfig, ReasoningProvider, default_provider_config
from pipefix.llm.gemini import GeminiAdapter
from pipefix.llm.openai_compat import OpenAICompatAdapter
from pipefix.llm.types import ReasoningRequest, ReasoningResponse
from pipefix.resilience.breaker import CircuitBreaker
from pipefix.resilience.policy import ResiliencePolicy
from pipefix.resilience.retry import RetryPolicy

logger = logging.getLogger(__name__)


class ProviderAdapter(Protocol):
    provider: ReasoningProvider

    def build(self, request: ReasoningRequest, cfg: ProviderConfig, api_key: str | None) -> Tuple[str, Dict[str, str], Dict[str, Any]]:
        ...

    def parse(self, data: Any, cfg: ProviderConfig) -> ReasoningResponse:
        ...


class Gateway(Protocol):
    async def send(self, request: ReasoningRequest) -> ReasoningResponse:
        ...


def adapter_for(provider: ReasoningProvider, *, site_url: str | None = None, site_name: str | None = None) -> ProviderAdapter:
    provider = ReasoningProvider(provider)
    if provider is ReasoningProvider.anthropic:
        return AnthropicAdapter()
    if provider is ReasoningProvider.gemini:
        return GeminiAdapter()
    if provider is ReasoningProvider.openrouter:
        return OpenAICompatAdapter(provider=provider, site_url=site_url, site_name=site_name)
    return OpenAICompatAdapter(provider=provider)


@dataclass(frozen=True)
class ReasoningGateway:
    """
    One reasoning provider behind a normalized request/response.

    Provider defaults fill whatever the request leaves unset. Every call goes through
    this provider's own resilience policy (its own breaker), so one failing provider
    never trips another.
    """

    provider: ReasoningProvider
    api_key: Optional[SecretStr] = None
    config: Optional[ProviderConfig] = None
    adapter: Optional[ProviderAdapter] = None
    resilience: Optional[ResiliencePolicy] = None
    transport: Optional[httpx.AsyncBaseTransport] = field(default=None, repr=False)

    def __post_init__(self) -> None:
        provider = ReasoningProvider(self.provider)
        object.__setattr__(self, "provider", provider)
        if provider.requires_api_key and (self.api_key is None or not self.api_key.get_secret_value()):
            raise ConfigurationError(f"missing api key for reasoning provider {provider.value}")
        cfg = self.config or default_provider_config(provider)
        object.__setattr__(self, "config", cfg)
        if self.adapter is None:
            object.__setattr__(self, "adapter", adapter_for(provider))
        if self.resilience is None:
            name = f"reasoning:{provider.value}"
            object.__setattr__(
                self,
                "resilience",
                ResiliencePolicy(
                    name=name,
                    retry=RetryPolicy(max_attempts=cfg.retry_count),
                    breaker=CircuitBreaker(name),
                ),
            )

    def effective_config(self, request: ReasoningRequest) -> ProviderConfig:
        cfg = self.config
        assert cfg is not None
        return replace(
            cfg,
            model=request.model or cfg.model,
            max_tokens=request.max_tokens or cfg.max_tokens,
            temperature=cfg.temperature if request.temperature is None else request.temperature,
        )

    async def send(self, request: ReasoningRequest) -> ReasoningResponse:
        cfg = self.effective_config(request)
        assert self.resilience is not None
        return await self.resilience.call(lambda: self._send_once(request, cfg))

    async def _send_once(self, request: ReasoningRequest, cfg: ProviderConfig) -> ReasoningResponse:
        assert self.adapter is not None
        source = self.provider.value
        key = self.api_key.get_secret_value() if self.api_key is not None else None
        url, headers, payload = self.adapter.build(request, cfg, key)

        t0 = time.monotonic()
        try:
            async with httpx.AsyncClient(timeout=cfg.timeout_s, transport=self.transport) as client:
                r = await client.post(url, headers=headers, json=payload)
        except httpx.TransportError as e:
            raise AnalysisError(f"{source}_transport_error: {type(e).__name__}", retryable=True) from e

        if r.status_code != 200:
            raise error_for_status(r.status_code, r.text, source=source, error_cls=AnalysisError)
        try:
            data = r.json()
        except ValueError as e:
            raise AnalysisError(f"{source}_invalid_json: {r.text[:500]}", retryable=True) from e

        try:
            resp = self.adapter.parse(data, cfg)
        except AnalysisError as e:
            # Malformed model output is usually transient; let the retry budget absorb it.
            raise AnalysisError(str(e), retryable=True) from e
        except (AttributeError, TypeError, ValueError, KeyError) as e:
            raise AnalysisError(f"{source}_response_parse_error: {type(e).__name__}", retryable=True) from e

        logger.info(
            "reasoning call ok provider=%s model=%s tools=%d elapsed=%.2fs",
            source,
            resp.model,
            len(resp.tool_invocations),
            time.monotonic() - t0,
        )
        return resp

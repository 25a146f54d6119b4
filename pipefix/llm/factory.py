from __future__ import annotations

from typing import List, Optional, Union

import httpx

from pipefix.errors import ConfigurationError
from pipefix.llm.config import ReasoningProvider, default_provider_config
from pipefix.llm.failover import FailoverGateway
from pipefix.llm.gateway import ReasoningGateway, adapter_for
from pipefix.resilience.policy import ResiliencePolicy
from pipefix.settings import Settings


def _providers(settings: Settings) -> List[ReasoningProvider]:
    out: List[ReasoningProvider] = []
    for p in [settings.reasoning_provider, *settings.reasoning_fallback_providers]:
        if p not in out:
            out.append(p)
    return out


def build_provider_gateway(
    provider: ReasoningProvider,
    settings: Settings,
    *,
    primary: bool = False,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> ReasoningGateway:
    cfg = default_provider_config(provider)
    if provider is ReasoningProvider.litellm:
        cfg = cfg.with_overrides(base_url=settings.litellm_base_url)
    if primary:
        cfg = cfg.with_overrides(model=settings.reasoning_model, base_url=settings.reasoning_base_url)
    return ReasoningGateway(
        provider=provider,
        api_key=settings.api_key_for(provider),
        config=cfg,
        adapter=adapter_for(provider, site_url=settings.openrouter_site_url, site_name=settings.openrouter_site_name),
        resilience=ResiliencePolicy.from_settings(f"reasoning:{provider.value}", settings),
        transport=transport,
    )


def build_gateway(
    settings: Settings,
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Union[ReasoningGateway, FailoverGateway]:
    """
    Build the configured reasoning gateway. A single provider yields a plain gateway;
    fallback providers yield a FailoverGateway in configured order.
    """
    providers = _providers(settings)
    if not providers:
        raise ConfigurationError("no reasoning provider configured")
    gateways = [
        build_provider_gateway(p, settings, primary=(i == 0), transport=transport) for i, p in enumerate(providers)
    ]
    if len(gateways) == 1:
        return gateways[0]
    return FailoverGateway(gateways=gateways)

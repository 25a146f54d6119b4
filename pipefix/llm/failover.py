from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional

from pipefix.errors import AnalysisError, AuthenticationError, CircuitOpenError, RateLimitExceededError
from pipefix.llm.gateway import ReasoningGateway
from pipefix.llm.types import ReasoningRequest, ReasoningResponse

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FailoverGateway:
    """
    Ordered list of provider gateways. The request's provider hint is tried first,
    then the configured order. Rejected credentials are never failed over.
    """

    gateways: List[ReasoningGateway]

    def __post_init__(self) -> None:
        if not self.gateways:
            raise ValueError("FailoverGateway requires at least one gateway")

    def ordered(self, request: ReasoningRequest) -> List[ReasoningGateway]:
        if request.provider_hint is None:
            return list(self.gateways)
        preferred = [g for g in self.gateways if g.provider == request.provider_hint]
        rest = [g for g in self.gateways if g.provider != request.provider_hint]
        return preferred + rest

    async def send(self, request: ReasoningRequest) -> ReasoningResponse:
        order = self.ordered(request)
        last_err: Optional[Exception] = None
        for gw in order:
            try:
                return await gw.send(request)
            except AuthenticationError:
                raise
            except (AnalysisError, CircuitOpenError, RateLimitExceededError) as e:
                last_err = e
                logger.warning("reasoning provider %s unavailable, failing over: %s", gw.provider.value, e)
        if len(order) == 1 and last_err is not None:
            raise last_err
        raise AnalysisError(f"all_reasoning_providers_failed: {last_err}") from last_err

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Awaitable, Callable, Optional, TypeVar

from pipefix.errors import is_retryable
from pipefix.resilience.breaker import CircuitBreaker
from pipefix.resilience.ratelimit import TokenBucket
from pipefix.resilience.retry import RetryPolicy, retry_async

if TYPE_CHECKING:
    from pipefix.settings import Settings

T = TypeVar("T")


@dataclass
class ResiliencePolicy:
    """
    The wrappers guarding one downstream dependency.

    Order per logical call: rate limiter (once) -> retry loop -> circuit breaker (per attempt).
    An open circuit is not retryable, so a tripped breaker fails the call fast.
    """

    name: str
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    breaker: Optional[CircuitBreaker] = None
    limiter: Optional[TokenBucket] = None
    retryable: Callable[[BaseException], bool] = is_retryable
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep

    async def call(self, operation: Callable[[], Awaitable[T]]) -> T:
        if self.limiter is not None:
            self.limiter.acquire()

        async def _attempt() -> T:
            if self.breaker is None:
                return await operation()
            return await self.breaker.call(operation)

        return await retry_async(_attempt, policy=self.retry, retryable=self.retryable, sleep=self.sleep, name=self.name)

    @classmethod
    def from_settings(cls, name: str, settings: "Settings", *, max_attempts: int | None = None) -> "ResiliencePolicy":
        limiter = None
        if settings.rate_limit_capacity > 0:
            limiter = TokenBucket(
                name,
                capacity=settings.rate_limit_capacity,
                refill_interval_s=settings.rate_limit_refill_s,
            )
        return cls(
            name=name,
            retry=RetryPolicy(
                max_attempts=max_attempts if max_attempts is not None else settings.retry_max_attempts,
                base_delay_s=settings.retry_base_delay_s,
                max_delay_s=settings.retry_max_delay_s,
            ),
            breaker=CircuitBreaker(
                name,
                failure_threshold=settings.breaker_failure_threshold,
                cooldown_s=settings.breaker_cooldown_s,
            ),
            limiter=limiter,
        )

    @classmethod
    def passthrough(cls, name: str) -> "ResiliencePolicy":
        return cls(name=name, retry=RetryPolicy(max_attempts=1))

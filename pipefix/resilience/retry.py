from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from pipefix.errors import is_retryable

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay_s: float = 0.8
    max_delay_s: float = 30.0

    def delay_for(self, attempt: int) -> float:
        """Delay before attempt `attempt + 1` (attempt is 1-based)."""
        delay = float(self.base_delay_s) * (2 ** (attempt - 1))
        return min(delay, float(self.max_delay_s))


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    *,
    policy: RetryPolicy,
    retryable: Callable[[BaseException], bool] = is_retryable,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    name: str = "call",
) -> T:
    """
    Run `operation` until it succeeds, raises a non-retryable error, or the attempt budget is spent.
    Cancellation is never retried and interrupts the backoff wait immediately.
    """
    attempts = max(1, int(policy.max_attempts))
    last_err: Optional[BaseException] = None
    for attempt in range(1, attempts + 1):
        try:
            return await operation()
        except Exception as e:
            last_err = e
            if not retryable(e) or attempt >= attempts:
                raise
            delay = policy.delay_for(attempt)
            logger.warning("%s failed (attempt %d/%d), retrying in %.2fs: %s", name, attempt, attempts, delay, e)
            await sleep(delay)
    # Unreachable: the loop either returns or raises.
    raise RuntimeError(f"{name}_retry_exhausted: {last_err}")

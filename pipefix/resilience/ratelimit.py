from __future__ import annotations

import threading
import time
from typing import Callable

from pipefix.errors import RateLimitExceededError


class TokenBucket:
    """
    Fixed-capacity token bucket refilled by one token every `refill_interval_s`.
    Calls over budget are rejected immediately; the caller decides whether to queue or fail.
    """

    def __init__(
        self,
        name: str,
        *,
        capacity: int = 10,
        refill_interval_s: float = 6.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.capacity = max(1, int(capacity))
        self.refill_interval_s = float(refill_interval_s)
        self._clock = clock
        self._lock = threading.Lock()
        self._tokens = self.capacity
        self._last_refill = clock()

    def _refill(self) -> None:
        if self.refill_interval_s <= 0:
            self._tokens = self.capacity
            return
        now = self._clock()
        elapsed = now - self._last_refill
        if elapsed < self.refill_interval_s:
            return
        earned = int(elapsed // self.refill_interval_s)
        self._tokens = min(self.capacity, self._tokens + earned)
        self._last_refill += earned * self.refill_interval_s

    @property
    def available(self) -> int:
        with self._lock:
            self._refill()
            return self._tokens

    def try_acquire(self) -> bool:
        with self._lock:
            self._refill()
            if self._tokens > 0:
                self._tokens -= 1
                return True
            return False

    def acquire(self) -> None:
        if not self.try_acquire():
            raise RateLimitExceededError(self.name)

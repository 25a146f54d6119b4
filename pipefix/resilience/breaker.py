from __future__ import annotations

import threading
import time
from enum import Enum
from typing import Awaitable, Callable, TypeVar

from pipefix.errors import CircuitOpenError

T = TypeVar("T")


class CircuitState(str, Enum):
    closed = "closed"
    open = "open"
    half_open = "half_open"


class CircuitBreaker:
    """
    Closed -> Open after `failure_threshold` consecutive failures.
    Open -> HalfOpen once `cooldown_s` has elapsed; exactly one trial call is let through.
    A failing trial re-opens the circuit, a successful one closes it and resets the counter.
    """

    def __init__(
        self,
        name: str,
        *,
        failure_threshold: int = 5,
        cooldown_s: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.failure_threshold = max(1, int(failure_threshold))
        self.cooldown_s = float(cooldown_s)
        self._clock = clock
        self._lock = threading.Lock()
        self._state = CircuitState.closed
        self._failures = 0
        self._opened_at = 0.0
        self._trial_in_flight = False

    @property
    def state(self) -> CircuitState:
        with self._lock:
            if self._state is CircuitState.open and self._cooldown_elapsed():
                return CircuitState.half_open
            return self._state

    @property
    def failures(self) -> int:
        with self._lock:
            return self._failures

    def _cooldown_elapsed(self) -> bool:
        return (self._clock() - self._opened_at) >= self.cooldown_s

    def _before_call(self) -> None:
        with self._lock:
            if self._state is CircuitState.open:
                if not self._cooldown_elapsed():
                    raise CircuitOpenError(self.name)
                self._state = CircuitState.half_open
                self._trial_in_flight = False
            if self._state is CircuitState.half_open:
                if self._trial_in_flight:
                    raise CircuitOpenError(self.name)
                self._trial_in_flight = True

    def _on_success(self) -> None:
        with self._lock:
            self._state = CircuitState.closed
            self._failures = 0
            self._trial_in_flight = False

    def _on_failure(self) -> None:
        with self._lock:
            self._failures += 1
            if self._state is CircuitState.half_open or self._failures >= self.failure_threshold:
                self._state = CircuitState.open
                self._opened_at = self._clock()
            self._trial_in_flight = False

    def _on_cancel(self) -> None:
        with self._lock:
            # A cancelled trial says nothing about the dependency; allow another one.
            self._trial_in_flight = False

    async def call(self, operation: Callable[[], Awaitable[T]]) -> T:
        self._before_call()
        try:
            result = await operation()
        except Exception:
            self._on_failure()
            raise
        except BaseException:
            self._on_cancel()
            raise
        self._on_success()
        return result

"""
Circuit breaker guarding calls to flaky remote services (the MAC vendor API).
"""
import asyncio
import time
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any

import structlog

logger = structlog.get_logger(__name__)

class CircuitBreakerState(Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"

class CircuitBreakerOpenError(Exception):
    """Raised when a call is rejected because the breaker is OPEN."""
    def __init__(self, message: str = "Circuit breaker is OPEN. Call rejected.", remaining_time: float = 0):
        super().__init__(message)
        self.remaining_time = remaining_time

class CircuitBreaker:
    """
    Opens after `failure_threshold` consecutive failures, rejects calls for
    `recovery_timeout_seconds`, then lets a single trial call through.
    """
    def __init__(
        self,
        failure_threshold: int = 5,
        recovery_timeout_seconds: float = 30.0,
        name: str | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        if failure_threshold < 1:
            raise ValueError("Failure threshold must be at least 1.")
        if recovery_timeout_seconds <= 0:
            raise ValueError("Recovery timeout must be positive.")

        self.failure_threshold = failure_threshold
        self.recovery_timeout_seconds = recovery_timeout_seconds
        self.name = name or f"cb-{id(self)}"
        self._clock = clock

        self._state = CircuitBreakerState.CLOSED
        self._failure_count = 0
        self._opened_at: float | None = None

        self._lock = asyncio.Lock()
        self.logger = logger.bind(circuit_breaker_name=self.name)

    @property
    def state(self) -> CircuitBreakerState:
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    def _remaining_open_time(self) -> float:
        if self._opened_at is None:
            return 0.0
        return max(0.0, self.recovery_timeout_seconds - (self._clock() - self._opened_at))

    async def _before_call(self) -> None:
        async with self._lock:
            if self._state != CircuitBreakerState.OPEN:
                return
            remaining = self._remaining_open_time()
            if remaining > 0:
                raise CircuitBreakerOpenError(remaining_time=remaining)
            self._state = CircuitBreakerState.HALF_OPEN
            self.logger.info("Circuit breaker recovery timeout expired, moving to HALF_OPEN.")

    async def _record_success(self) -> None:
        async with self._lock:
            if self._state != CircuitBreakerState.CLOSED:
                self.logger.info("Circuit breaker CLOSED.")
            self._state = CircuitBreakerState.CLOSED
            self._failure_count = 0
            self._opened_at = None

    async def _record_failure(self) -> None:
        async with self._lock:
            self._failure_count += 1
            if self._state == CircuitBreakerState.HALF_OPEN or self._failure_count >= self.failure_threshold:
                self._state = CircuitBreakerState.OPEN
                self._opened_at = self._clock()
                self.logger.warning("Circuit breaker OPENED.", failure_count=self._failure_count)

    async def call(self, func: Callable[..., Awaitable[Any]], *args: Any, **kwargs: Any) -> Any:
        """Runs `func` under the breaker; any exception counts as a failure and is re-raised."""
        await self._before_call()
        try:
            result = await func(*args, **kwargs)
        except Exception:
            await self._record_failure()
            raise
        await self._record_success()
        return result

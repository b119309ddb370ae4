from __future__ import annotations

import logging
import threading
import time
from enum import Enum
from typing import Any, Callable, Dict, Optional, TypeVar

from .config import BreakerConfig, RetryPolicy
from .errors import ErrorCode, ScrapeError
from .retry import RetryExecutor, RetryResult

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(str, Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


class CircuitBreaker:
    """Per-key failure guard.

    CLOSED -> OPEN after `failure_threshold` consecutive failures.
    OPEN -> HALF_OPEN lazily, on the first allow_request() once
    `reset_timeout` has elapsed since the last failure. HALF_OPEN admits
    up to `half_open_max_calls` trial calls; a failure reopens, a success
    closes. All transitions happen under one lock."""

    def __init__(
        self,
        key: str,
        failure_threshold: int = 5,
        reset_timeout: float = 60.0,
        half_open_max_calls: int = 3,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.key = key
        self._failure_threshold = failure_threshold
        self._reset_timeout = reset_timeout
        self._half_open_max_calls = half_open_max_calls
        self._clock = clock

        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._last_failure_time = 0.0
        self._half_open_calls = 0

    @property
    def state(self) -> CircuitState:
        with self._lock:
            self._maybe_half_open()
            return self._state

    def _maybe_half_open(self) -> None:
        if self._state is CircuitState.OPEN and self._clock() - self._last_failure_time >= self._reset_timeout:
            self._state = CircuitState.HALF_OPEN
            self._half_open_calls = 0
            logger.info("Circuit %s is half-open", self.key)

    def allow_request(self) -> bool:
        """Return True if a call may proceed; consumes a trial slot in HALF_OPEN."""
        with self._lock:
            self._maybe_half_open()
            if self._state is CircuitState.OPEN:
                return False
            if self._state is CircuitState.HALF_OPEN:
                if self._half_open_calls >= self._half_open_max_calls:
                    return False
                self._half_open_calls += 1
            return True

    def record_success(self) -> None:
        with self._lock:
            self._failures = 0
            self._last_failure_time = 0.0
            if self._state is CircuitState.HALF_OPEN:
                self._state = CircuitState.CLOSED
                self._half_open_calls = 0
                logger.info("Circuit %s closed", self.key)

    def record_failure(self) -> None:
        with self._lock:
            self._failures += 1
            self._last_failure_time = self._clock()
            if self._state is CircuitState.HALF_OPEN:
                self._state = CircuitState.OPEN
                self._half_open_calls = 0
                logger.warning("Circuit %s reopened after a failed trial call", self.key)
            elif self._state is CircuitState.CLOSED and self._failures >= self._failure_threshold:
                self._state = CircuitState.OPEN
                logger.warning("Circuit %s opened after %d consecutive failures", self.key, self._failures)

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            self._maybe_half_open()
            return {
                "state": self._state.value,
                "failures": self._failures,
                "last_failure_time": self._last_failure_time,
                "half_open_calls": self._half_open_calls,
            }


class CircuitBreakerRegistry:
    """Process-scoped map of operation key -> CircuitBreaker.

    Owned by the composition root and passed to whoever needs it; breakers
    are created lazily on first use and never persisted."""

    def __init__(self, config: Optional[BreakerConfig] = None, clock: Callable[[], float] = time.monotonic) -> None:
        self._config = config or BreakerConfig()
        self._clock = clock
        self._lock = threading.Lock()
        self._breakers: Dict[str, CircuitBreaker] = {}

    def get(self, key: str) -> CircuitBreaker:
        with self._lock:
            breaker = self._breakers.get(key)
            if breaker is None:
                breaker = CircuitBreaker(
                    key,
                    failure_threshold=self._config.failure_threshold,
                    reset_timeout=self._config.reset_timeout,
                    half_open_max_calls=self._config.half_open_max_calls,
                    clock=self._clock,
                )
                self._breakers[key] = breaker
            return breaker

    def reset(self, key: str) -> None:
        with self._lock:
            self._breakers.pop(key, None)

    def stats(self) -> Dict[str, Dict[str, Any]]:
        with self._lock:
            breakers = list(self._breakers.items())
        return {key: breaker.stats() for key, breaker in breakers}


class ResilientExecutor:
    """Composes a circuit breaker (outside) with retry (inside)."""

    def __init__(self, registry: CircuitBreakerRegistry, retry: Optional[RetryExecutor] = None) -> None:
        self._registry = registry
        self._retry = retry or RetryExecutor()

    @property
    def registry(self) -> CircuitBreakerRegistry:
        return self._registry

    def retry(
        self,
        operation: Callable[[], T],
        policy: Optional[RetryPolicy] = None,
        context: Optional[Dict[str, Any]] = None,
        deadline: Optional[float] = None,
    ) -> RetryResult[T]:
        return self._retry.execute(operation, policy=policy, context=context, deadline=deadline)

    def call(
        self,
        key: str,
        operation: Callable[[], T],
        policy: Optional[RetryPolicy] = None,
        context: Optional[Dict[str, Any]] = None,
        deadline: Optional[float] = None,
    ) -> RetryResult[T]:
        """Run the operation under the breaker for `key`.

        A rejected call returns a non-retryable CIRCUIT_OPEN failure
        without invoking the operation."""
        breaker = self._registry.get(key)
        if not breaker.allow_request():
            error = ScrapeError(
                ErrorCode.CIRCUIT_OPEN,
                f"Circuit breaker {key} is open - operation blocked",
                context={"circuit_key": key, **(context or {})},
                recoverable=False,
            )
            return RetryResult(False, error=error, attempts=0, elapsed=0.0)

        result = self.retry(operation, policy=policy, context={"circuit_key": key, **(context or {})}, deadline=deadline)
        if result.success:
            breaker.record_success()
        else:
            breaker.record_failure()
        return result

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Generic, List, Optional, TypeVar

from .backoff import BackoffStrategy
from .config import RetryPolicy
from .errors import ScrapeError, classify

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryResult(Generic[T]):
    success: bool
    value: Optional[T] = None
    error: Optional[ScrapeError] = None
    attempts: int = 0
    elapsed: float = 0.0
    delays: List[float] = field(default_factory=list)


def should_retry(error: ScrapeError, policy: RetryPolicy) -> bool:
    if not error.recoverable:
        return False
    if policy.retryable:
        return error.code in policy.retryable
    return True


class RetryExecutor:
    """Runs a fallible operation with exponential backoff.

    Failures are classified into ScrapeErrors; only recoverable errors
    whose code is in the policy's allow-list are retried. The result
    always carries the attempt count and elapsed time, and execute()
    never raises."""

    def __init__(
        self,
        policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._policy = policy or RetryPolicy()
        self._sleep = sleep
        self._clock = clock

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    def execute(
        self,
        operation: Callable[[], T],
        policy: Optional[RetryPolicy] = None,
        context: Optional[Dict[str, Any]] = None,
        deadline: Optional[float] = None,
    ) -> RetryResult[T]:
        """Attempt the operation up to max_retries + 1 times.

        `deadline` is an absolute value of the injected clock; no backoff
        sleep is started that would end past it."""
        policy = policy or self._policy
        backoff = BackoffStrategy(policy.base_delay, policy.max_delay, policy.backoff_factor)
        start = self._clock()
        delays: List[float] = []
        last_error: Optional[ScrapeError] = None
        attempts = 0

        for attempt in range(policy.max_retries + 1):
            attempts = attempt + 1
            try:
                value = operation()
                return RetryResult(True, value=value, attempts=attempts, elapsed=self._clock() - start, delays=delays)
            except Exception as exc:  # noqa: BLE001
                last_error = classify(exc, context)

            if attempt >= policy.max_retries or not should_retry(last_error, policy):
                break
            delay = backoff.get_sleep(attempt)
            if deadline is not None and self._clock() + delay >= deadline:
                logger.info("Not retrying %s: backoff of %.2fs would pass the deadline", last_error.code.value, delay)
                break
            logger.warning("Attempt %d failed (%s), retrying in %.2fs: %s", attempts, last_error.code.value, delay, last_error.message)
            self._sleep(delay)
            delays.append(delay)

        return RetryResult(False, error=last_error, attempts=attempts, elapsed=self._clock() - start, delays=delays)

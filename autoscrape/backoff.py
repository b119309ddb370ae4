from __future__ import annotations


class BackoffStrategy:
    """Exponential backoff for retry delays.

    Computes sleep duration as base * multiplier^attempt for zero-based
    attempt indices, capped at a configurable maximum. Deterministic, so
    a delay sequence can be asserted exactly."""

    def __init__(self, base_seconds: float = 1.0, max_seconds: float = 30.0, multiplier: float = 2.0) -> None:
        if base_seconds < 0 or max_seconds < 0:
            raise ValueError("backoff durations must be non-negative")
        if multiplier < 1:
            raise ValueError("multiplier must be >= 1")
        self._base = base_seconds
        self._max = max_seconds
        self._multiplier = multiplier

    def get_sleep(self, attempt: int) -> float:
        """Calculate the backoff sleep duration in seconds after the given (zero-based) attempt."""
        return min(self._base * (self._multiplier ** max(attempt, 0)), self._max)

    def delays(self, count: int) -> list[float]:
        return [self.get_sleep(i) for i in range(count)]

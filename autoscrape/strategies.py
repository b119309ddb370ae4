from __future__ import annotations

from abc import ABC, abstractmethod

from .controller import ThreadPoolController
from .models import MetricsSnapshot


def _rate(count: int, snapshot: MetricsSnapshot) -> float:
    return count / snapshot.total_goals if snapshot.total_goals else 0.0


class ControlStrategy(ABC):
    """Adjusts the goal pool from a window of goal-run metrics."""

    @abstractmethod
    def should_apply(self, snapshot: MetricsSnapshot) -> bool:
        raise NotImplementedError

    @abstractmethod
    def apply(self, controller: ThreadPoolController, snapshot: MetricsSnapshot) -> None:
        raise NotImplementedError


class ReduceConcurrencyStrategy(ControlStrategy):
    """Fewer parallel browsers when goals time out or sites trip their breakers.

    Goals share the step budget with page loads, so a saturated machine
    shows up as timeouts first; open circuits mean sites are already
    pushing back."""

    def __init__(self, threshold_timeout: float = 0.2, threshold_circuit: float = 0.1, min_limit: int = 1) -> None:
        self._threshold_timeout = threshold_timeout
        self._threshold_circuit = threshold_circuit
        self._min_limit = min_limit

    def should_apply(self, snapshot: MetricsSnapshot) -> bool:
        if snapshot.total_goals == 0:
            return False
        return (
            _rate(snapshot.timeout_count, snapshot) >= self._threshold_timeout
            or _rate(snapshot.circuit_open_count, snapshot) >= self._threshold_circuit
        )

    def apply(self, controller: ThreadPoolController, snapshot: MetricsSnapshot) -> None:
        controller.set_concurrency_limit(max(self._min_limit, controller.limit - 1))


class IncreaseConcurrencyStrategy(ControlStrategy):
    """One more parallel run while goals complete without timeouts."""

    def __init__(self, min_success_rate: float = 0.8, max_limit: int = 8) -> None:
        self._min_success_rate = min_success_rate
        self._max_limit = max_limit

    def should_apply(self, snapshot: MetricsSnapshot) -> bool:
        if snapshot.total_goals == 0 or snapshot.timeout_count or snapshot.circuit_open_count:
            return False
        return _rate(snapshot.success_count, snapshot) >= self._min_success_rate

    def apply(self, controller: ThreadPoolController, snapshot: MetricsSnapshot) -> None:
        controller.set_concurrency_limit(min(self._max_limit, controller.limit + 1))

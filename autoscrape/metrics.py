from __future__ import annotations

import time
from collections import deque
from threading import Lock
from typing import Deque, Dict, List, Tuple

from .errors import ErrorCode
from .models import GoalResult, MetricsSnapshot


def _has_error(result: GoalResult, code: ErrorCode) -> bool:
    return any(e.get("code") == code.value for e in result.errors)


class MetricsCollector:
    """Thread-safe collector for goal-run metrics.

    Records GoalResult events and produces aggregated MetricsSnapshot
    objects over configurable sliding time windows."""

    def __init__(self, maxlen: int = 10000) -> None:
        self._lock = Lock()
        self._events: Deque[Tuple[float, GoalResult]] = deque(maxlen=maxlen)

    def record_goal(self, result: GoalResult) -> None:
        """Record a finished goal run with the current timestamp."""
        with self._lock:
            self._events.append((time.time(), result))

    def snapshot(self, window_secs: int) -> MetricsSnapshot:
        """Return aggregated metrics for goal runs within the last window_secs seconds."""
        now = time.time()
        cutoff = now - window_secs
        with self._lock:
            events: List[GoalResult] = [e for ts, e in self._events if ts >= cutoff]
        total = len(events)
        steps = [entry for e in events for entry in e.decision_trace]

        return MetricsSnapshot(
            window_secs=window_secs,
            total_goals=total,
            success_count=sum(1 for e in events if e.success),
            timeout_count=sum(1 for e in events if _has_error(e, ErrorCode.TIMEOUT)),
            circuit_open_count=sum(1 for e in events if _has_error(e, ErrorCode.CIRCUIT_OPEN)),
            total_steps=len(steps),
            failed_steps=sum(1 for s in steps if not s.success),
            avg_confidence=(sum(e.aggregate_confidence for e in events) / total) if total else 0.0,
            avg_latency_ms=(sum(e.execution_time_ms for e in events) / total) if total else 0.0,
            timestamp=now,
        )

    def export_json(self) -> List[Dict]:
        """Export all recorded goal runs as a list of dictionaries."""
        with self._lock:
            return [{"timestamp": ts, **e.to_dict()} for ts, e in self._events]

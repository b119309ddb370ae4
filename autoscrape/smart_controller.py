from __future__ import annotations

import logging
import threading
from typing import Iterable, Optional

from .controller import ThreadPoolController
from .metrics import MetricsCollector
from .models import MetricsSnapshot
from .strategies import ControlStrategy

logger = logging.getLogger(__name__)


class SmartController:
    """Periodically re-tunes the goal pool's concurrency from recent goal metrics.

    Strategies are evaluated in priority order and only the first one
    that applies is used per cycle."""

    def __init__(
        self,
        metrics: MetricsCollector,
        controller: ThreadPoolController,
        strategies: Iterable[ControlStrategy],
        eval_interval_secs: float = 10.0,
        window_secs: int = 60,
    ) -> None:
        self._metrics = metrics
        self._controller = controller
        self._strategies = list(strategies)
        self._eval_interval = eval_interval_secs
        self._window_secs = window_secs
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        """Run the evaluation loop on a daemon thread."""
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="smart-controller", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=self._eval_interval + 1)

    def _loop(self) -> None:
        while not self._stop.wait(self._eval_interval):
            self.evaluate()

    def evaluate(self) -> Optional[str]:
        """Apply the first matching strategy; return its name."""
        snapshot = self._metrics.snapshot(self._window_secs)
        return self._apply_strategies(snapshot)

    def _apply_strategies(self, snapshot: MetricsSnapshot) -> Optional[str]:
        for strat in self._strategies:
            if not strat.should_apply(snapshot):
                continue
            old_limit = self._controller.limit
            strat.apply(self._controller, snapshot)
            new_limit = self._controller.limit
            if new_limit != old_limit:
                logger.info(
                    "%s: concurrency %d -> %d (goals=%d success=%d timeouts=%d circuit_open=%d window=%ds)",
                    strat.__class__.__name__, old_limit, new_limit, snapshot.total_goals, snapshot.success_count,
                    snapshot.timeout_count, snapshot.circuit_open_count, snapshot.window_secs,
                )
            return strat.__class__.__name__
        return None

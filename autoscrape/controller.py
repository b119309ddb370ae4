from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, Iterable, List, Optional, Tuple

from .errors import ErrorCode, create_error
from .models import GoalJob, GoalResult

logger = logging.getLogger(__name__)

GoalFn = Callable[[GoalJob], GoalResult]


class ThreadPoolController:
    """Runs goal jobs on a bounded pool, each job owning one worker (and browser).

    The pool size caps threads; the concurrency limit caps how many goal
    runs are in flight and can be lowered or raised while jobs run.
    Lowering it never interrupts running jobs, it only delays new ones."""

    def __init__(self, max_workers: int, initial_limit: int) -> None:
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="goal")
        self._cv = threading.Condition(threading.Lock())
        self._limit = max(1, initial_limit)
        self._active = 0
        self._running = False

    def __enter__(self) -> "ThreadPoolController":
        self.start()
        return self

    def __exit__(self, *exc) -> None:
        self.stop(wait=True)

    def start(self) -> None:
        with self._cv:
            self._running = True

    def stop(self, wait: bool = True) -> None:
        with self._cv:
            self._running = False
            self._cv.notify_all()
        self._executor.shutdown(wait=wait)

    def submit(self, fn: GoalFn, job: GoalJob) -> Future:
        """Queue a job once a slot is free; after stop() the job is cancelled."""
        with self._cv:
            self._cv.wait_for(lambda: not self._running or self._active < self._limit)
            if not self._running:
                logger.info("Controller stopped, cancelling job %s", job.job_id)
                return self._executor.submit(self._cancelled, job)
            self._active += 1
        return self._executor.submit(self._run, fn, job)

    def run_all(self, fn: GoalFn, jobs: Iterable[GoalJob], on_result: Optional[Callable[[GoalResult], None]] = None) -> List[GoalResult]:
        """Submit every job and return their results in submission order."""
        futures = [self.submit(fn, job) for job in jobs]
        results: List[GoalResult] = []
        for fut in futures:
            result = fut.result()
            if on_result is not None:
                on_result(result)
            results.append(result)
        return results

    def _run(self, fn: GoalFn, job: GoalJob) -> GoalResult:
        try:
            return fn(job)
        finally:
            with self._cv:
                self._active -= 1
                self._cv.notify_all()

    @staticmethod
    def _cancelled(job: GoalJob) -> GoalResult:
        error = create_error(ErrorCode.OPERATION_CANCELLED, "Controller stopped before the job started", context={"job_id": job.job_id})
        return GoalResult(goal=job.goal, url=job.url, success=False, status="FAILED", errors=[error.to_dict()])

    def set_concurrency_limit(self, new_limit: int) -> Tuple[int, int]:
        """Change the in-flight cap; returns (old, new). Never below 1."""
        with self._cv:
            old_limit, self._limit = self._limit, max(1, int(new_limit))
            self._cv.notify_all()
        return old_limit, self._limit

    @property
    def limit(self) -> int:
        return self._limit

    @property
    def active(self) -> int:
        with self._cv:
            return self._active

"""Tests for the ThreadPoolController."""

import threading
import time
import unittest

from autoscrape.controller import ThreadPoolController
from autoscrape.models import GoalJob, GoalResult


def _job(i):
    return GoalJob(job_id=f"j{i}", goal="extract the title", url=f"https://example.com/{i}")


class TestThreadPoolController(unittest.TestCase):
    """Verify bounded concurrent goal execution."""

    def test_runs_jobs_and_returns_results(self):
        """Each submitted job yields its GoalResult."""
        controller = ThreadPoolController(max_workers=2, initial_limit=2)
        controller.start()
        futures = [controller.submit(lambda job: GoalResult(job.goal, job.url, True, "COMPLETED"), _job(i)) for i in range(4)]
        urls = [f.result(timeout=5).url for f in futures]
        controller.stop()
        self.assertEqual(urls, [f"https://example.com/{i}" for i in range(4)])
        self.assertEqual(controller.active, 0)

    def test_limit_bounds_active_jobs(self):
        """No more than `limit` jobs run at once."""
        controller = ThreadPoolController(max_workers=4, initial_limit=2)
        controller.start()
        lock = threading.Lock()
        running = [0]
        peak = [0]

        def slow(job):
            with lock:
                running[0] += 1
                peak[0] = max(peak[0], running[0])
            time.sleep(0.05)
            with lock:
                running[0] -= 1
            return GoalResult(job.goal, job.url, True, "COMPLETED")

        futures = [controller.submit(slow, _job(i)) for i in range(6)]
        for f in futures:
            f.result(timeout=5)
        controller.stop()
        self.assertLessEqual(peak[0], 2)

    def test_stopped_controller_cancels_jobs(self):
        """Jobs submitted after stop() fail with OPERATION_CANCELLED."""
        controller = ThreadPoolController(max_workers=1, initial_limit=1)
        calls = []
        future = controller.submit(lambda job: calls.append(job), _job(0))
        result = future.result(timeout=5)
        controller.stop()
        self.assertEqual(calls, [])
        self.assertFalse(result.success)
        self.assertEqual(result.errors[0]["code"], "OPERATION_CANCELLED")

    def test_set_concurrency_limit(self):
        """The limit can be changed at runtime and never drops below 1."""
        controller = ThreadPoolController(max_workers=2, initial_limit=2)
        self.assertEqual(controller.set_concurrency_limit(0), (2, 1))
        self.assertEqual(controller.limit, 1)
        controller.stop()


if __name__ == "__main__":
    unittest.main()

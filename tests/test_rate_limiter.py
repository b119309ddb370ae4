"""Tests for the RateLimiter class."""

import time
import unittest

from autoscrape.rate_limiter import RateLimiter


class FakeClock:
    def __init__(self):
        self.now = 50.0
        self.sleeps = []

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


class TestRateLimiter(unittest.TestCase):
    """Verify that the rate limiter spaces oracle requests correctly."""

    def test_acquire_does_not_block_first_call(self):
        """The first acquire() call should return almost immediately."""
        limiter = RateLimiter(qps=10.0)
        start = time.time()
        self.assertTrue(limiter.acquire())
        self.assertLess(time.time() - start, 0.05)

    def test_acquire_spaces_rapid_calls(self):
        """Rapid calls at 2 QPS are half a second apart."""
        clock = FakeClock()
        limiter = RateLimiter(qps=2.0, clock=clock, sleep=clock.sleep)
        for _ in range(3):
            limiter.acquire()
        self.assertEqual(clock.sleeps, [0.5, 0.5])

    def test_max_wait_refuses_distant_slot(self):
        """A slot further away than max_wait is refused without sleeping."""
        clock = FakeClock()
        limiter = RateLimiter(qps=1.0, clock=clock, sleep=clock.sleep)
        self.assertTrue(limiter.acquire(max_wait=0.1))
        self.assertFalse(limiter.acquire(max_wait=0.1))
        self.assertEqual(clock.sleeps, [])
        # the refused call did not reserve a slot
        self.assertTrue(limiter.acquire(max_wait=1.0))
        self.assertEqual(clock.sleeps, [1.0])

    def test_zero_qps_does_not_block(self):
        """QPS of 0 should disable rate limiting entirely."""
        limiter = RateLimiter(qps=0.0)
        start = time.time()
        for _ in range(10):
            limiter.acquire(max_wait=0)
        self.assertLess(time.time() - start, 0.1)


if __name__ == "__main__":
    unittest.main()

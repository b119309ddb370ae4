"""Tests for CircuitBreaker, its registry and ResilientExecutor."""

import threading
import unittest

from autoscrape.circuit_breaker import CircuitBreaker, CircuitBreakerRegistry, CircuitState, ResilientExecutor
from autoscrape.config import BreakerConfig, RetryPolicy
from autoscrape.errors import ErrorCode, ScrapeError
from autoscrape.retry import RetryExecutor


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def _network_down():
    raise ScrapeError(ErrorCode.NETWORK_ERROR, "down")


def _make_breaker(clock, **overrides):
    settings = {"failure_threshold": 3, "reset_timeout": 60.0, "half_open_max_calls": 2, **overrides}
    return CircuitBreaker("scrape_example.com", clock=clock, **settings)


class TestCircuitBreaker(unittest.TestCase):
    """Verify state transitions."""

    def setUp(self):
        """Fresh clock and breaker per test."""
        self.clock = FakeClock()
        self.breaker = _make_breaker(self.clock)

    def _trip(self):
        for _ in range(3):
            self.breaker.record_failure()

    def test_starts_closed(self):
        """A new breaker admits calls."""
        self.assertEqual(self.breaker.state, CircuitState.CLOSED)
        self.assertTrue(self.breaker.allow_request())

    def test_opens_at_threshold(self):
        """Consecutive failures reaching the threshold open the circuit."""
        self.breaker.record_failure()
        self.breaker.record_failure()
        self.assertEqual(self.breaker.state, CircuitState.CLOSED)
        self.breaker.record_failure()
        self.assertEqual(self.breaker.state, CircuitState.OPEN)
        self.assertFalse(self.breaker.allow_request())

    def test_success_resets_failure_count(self):
        """Failures must be consecutive to open the circuit."""
        self.breaker.record_failure()
        self.breaker.record_failure()
        self.breaker.record_success()
        self.breaker.record_failure()
        self.breaker.record_failure()
        self.assertEqual(self.breaker.state, CircuitState.CLOSED)

    def test_half_open_after_reset_timeout(self):
        """OPEN becomes HALF_OPEN lazily once reset_timeout has elapsed."""
        self._trip()
        self.clock.now += 59.0
        self.assertFalse(self.breaker.allow_request())
        self.clock.now += 1.0
        self.assertEqual(self.breaker.state, CircuitState.HALF_OPEN)

    def test_half_open_admits_limited_trials(self):
        """HALF_OPEN admits at most half_open_max_calls trial calls."""
        self._trip()
        self.clock.now += 60.0
        self.assertTrue(self.breaker.allow_request())
        self.assertTrue(self.breaker.allow_request())
        self.assertFalse(self.breaker.allow_request())

    def test_failure_in_half_open_reopens(self):
        """A single trial failure reopens the circuit."""
        self._trip()
        self.clock.now += 60.0
        self.assertTrue(self.breaker.allow_request())
        self.breaker.record_failure()
        self.assertEqual(self.breaker.state, CircuitState.OPEN)
        self.assertFalse(self.breaker.allow_request())

    def test_success_in_half_open_closes(self):
        """A trial success closes the circuit and clears failures."""
        self._trip()
        self.clock.now += 60.0
        self.assertTrue(self.breaker.allow_request())
        self.breaker.record_success()
        self.assertEqual(self.breaker.state, CircuitState.CLOSED)
        self.assertEqual(self.breaker.stats()["failures"], 0)

    def test_concurrent_failures_counted_once_each(self):
        """Failures from many threads are all counted."""
        breaker = _make_breaker(self.clock, failure_threshold=1000)
        threads = [threading.Thread(target=lambda: [breaker.record_failure() for _ in range(50)]) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        self.assertEqual(breaker.stats()["failures"], 400)


class TestCircuitBreakerRegistry(unittest.TestCase):
    """Verify the registry shares breakers per key."""

    def test_same_key_same_breaker(self):
        """get() is idempotent per key."""
        registry = CircuitBreakerRegistry(BreakerConfig(failure_threshold=2))
        self.assertIs(registry.get("a"), registry.get("a"))
        self.assertIsNot(registry.get("a"), registry.get("b"))

    def test_config_applied_and_reset(self):
        """Breakers use the registry config; reset() drops state."""
        registry = CircuitBreakerRegistry(BreakerConfig(failure_threshold=2))
        registry.get("a").record_failure()
        registry.get("a").record_failure()
        self.assertEqual(registry.stats()["a"]["state"], "OPEN")
        registry.reset("a")
        self.assertEqual(registry.get("a").state, CircuitState.CLOSED)


class TestResilientExecutor(unittest.TestCase):
    """Verify breaker and retry composition."""

    def _make_executor(self, threshold=2):
        self.clock = FakeClock()
        registry = CircuitBreakerRegistry(BreakerConfig(failure_threshold=threshold, reset_timeout=30.0), clock=self.clock)
        retry = RetryExecutor(RetryPolicy(max_retries=1, base_delay=0.0), sleep=lambda s: None, clock=self.clock)
        return ResilientExecutor(registry, retry)

    def test_success_passes_value_through(self):
        """A successful call returns the operation's value."""
        executor = self._make_executor()
        result = executor.call("k", lambda: "value")
        self.assertTrue(result.success)
        self.assertEqual(result.value, "value")

    def test_open_circuit_blocks_without_invoking(self):
        """Once open, calls are rejected with CIRCUIT_OPEN and zero attempts."""
        executor = self._make_executor(threshold=2)
        calls = []

        def failing():
            calls.append(1)
            raise ScrapeError(ErrorCode.NETWORK_ERROR, "down")

        executor.call("k", failing)
        executor.call("k", failing)
        self.assertEqual(len(calls), 4)

        blocked = executor.call("k", failing)
        self.assertEqual(len(calls), 4)
        self.assertFalse(blocked.success)
        self.assertEqual(blocked.attempts, 0)
        self.assertEqual(blocked.error.code, ErrorCode.CIRCUIT_OPEN)
        self.assertFalse(blocked.error.recoverable)

    def test_other_keys_unaffected(self):
        """Breakers are independent per key."""
        executor = self._make_executor(threshold=1)
        executor.call("bad", _network_down)
        self.assertTrue(executor.call("good", lambda: 1).success)
        self.assertFalse(executor.call("bad", lambda: 1).success)

    def test_recovers_after_reset_timeout(self):
        """A trial call after the reset timeout closes the circuit again."""
        executor = self._make_executor(threshold=1)
        executor.call("k", _network_down)
        self.assertFalse(executor.call("k", lambda: 1).success)
        self.clock.now += 30.0
        self.assertTrue(executor.call("k", lambda: 1).success)
        self.assertEqual(executor.registry.get("k").state, CircuitState.CLOSED)


if __name__ == "__main__":
    unittest.main()

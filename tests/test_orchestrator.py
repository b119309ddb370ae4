"""End-to-end tests for AutonomousOrchestrator over a fake page and oracle."""

import os
import tempfile
import unittest

from fakes import ARTICLE_HTML, FakeOracle, FakePage
from playwright.sync_api import Error as PlaywrightError

from autoscrape.circuit_breaker import CircuitBreakerRegistry, ResilientExecutor
from autoscrape.config import PAGE_LOAD_CODES, BreakerConfig, RetryPolicy
from autoscrape.decision_engine import DecisionEngine
from autoscrape.errors import ErrorStats
from autoscrape.metrics import MetricsCollector
from autoscrape.models import OutcomeRecord
from autoscrape.orchestrator import AutonomousOrchestrator, Deadline
from autoscrape.pattern_store import PatternStore
from autoscrape.retry import RetryExecutor

URL = "https://example.com/article"
GOAL = "extract the title"
TITLE = "Researchers Map Deep Ocean Currents"


class OrchestratorTestCase(unittest.TestCase):
    def setUp(self):
        """Fresh store, breakers and metrics per test."""
        self._tmp = tempfile.TemporaryDirectory()
        self.store = PatternStore(os.path.join(self._tmp.name, "learning.db"))
        self.metrics = MetricsCollector()
        self.error_stats = ErrorStats()

    def tearDown(self):
        self.store.close()
        self._tmp.cleanup()

    def learn(self, target, strategy, successes, failures):
        for i, ok in enumerate([True] * successes + [False] * failures):
            self.store.record_outcome(OutcomeRecord("example.com", target, strategy, "extract", ok, 1700000000.0 + i))

    def make_orchestrator(self, *responses, goal_policy=None):
        self.oracle = FakeOracle(*responses)
        no_retry = RetryPolicy(max_retries=0)
        registry = CircuitBreakerRegistry(BreakerConfig(failure_threshold=2, reset_timeout=60.0))
        resilience = ResilientExecutor(registry, RetryExecutor(no_retry, sleep=lambda s: None))
        engine = DecisionEngine(self.store, self.oracle, resilience=resilience, oracle_policy=no_retry)
        return AutonomousOrchestrator(
            engine,
            self.store,
            resilience,
            metrics=self.metrics,
            step_policy=no_retry,
            goal_policy=goal_policy or no_retry,
            step_timeout=5.0,
            error_stats=self.error_stats,
        )


class TestLearnedRuns(OrchestratorTestCase):
    """Runs served from memory."""

    def test_cached_pattern_completes_without_oracle(self):
        """A 0.9 learned title selector finishes the goal in one step."""
        self.learn("title", "h1.headline", 9, 1)
        orchestrator = self.make_orchestrator()
        result = orchestrator.execute_goal(FakePage(ARTICLE_HTML, url=URL), GOAL, max_steps=5, timeout=10.0)

        self.assertTrue(result.success)
        self.assertEqual(result.status, "COMPLETED")
        self.assertEqual(self.oracle.calls, 0)
        self.assertEqual(result.data, {"title": TITLE})
        self.assertEqual(result.steps, 1)
        self.assertAlmostEqual(result.aggregate_confidence, 0.9)
        self.assertEqual(result.decision_trace[0].source, "memory")
        self.assertEqual(result.errors, [])

    def test_success_is_learned(self):
        """The strategy count grows and the step sequence is stored."""
        self.learn("title", "h1.headline", 9, 1)
        self.make_orchestrator().execute_goal(FakePage(ARTICLE_HTML, url=URL), GOAL, timeout=10.0)

        pattern = self.store.get_strategy("example.com", "title", "h1.headline")
        self.assertEqual((pattern.success_count, pattern.failure_count), (10, 1))
        [sequence] = self.store.best_sequences("example.com", GOAL)
        self.assertEqual(sequence.steps, [{"action": "extract", "target": "title", "selector": "h1.headline"}])

    def test_stored_sequence_is_replayed(self):
        """A second run replays the stored sequence without the oracle."""
        self.store.record_sequence("example.com", GOAL, [{"action": "extract", "target": "title", "selector": ".headline"}], True)
        orchestrator = self.make_orchestrator()
        result = orchestrator.execute_goal(FakePage(ARTICLE_HTML, url=URL), GOAL, timeout=10.0)
        self.assertTrue(result.success)
        self.assertEqual(self.oracle.calls, 0)
        self.assertIn("Replaying", result.decision_trace[0].reasoning)

    def test_failed_replay_lowers_sequence_confidence(self):
        """A replayed sequence that does not reach the goal is recorded as a failure."""
        self.store.record_sequence("example.com", GOAL, [{"action": "extract", "target": "title", "selector": "h1.gone"}], True)
        result = self.make_orchestrator().execute_goal(FakePage(ARTICLE_HTML, url=URL), GOAL, max_steps=2, timeout=10.0)
        self.assertFalse(result.success)
        self.assertEqual(self.store.best_sequences("example.com", GOAL), [])

    def test_lower_ranked_strategy_is_tried_after_a_miss(self):
        """When the best learned selector misses, the next learned one runs without the oracle."""
        self.learn("title", "h1.missing", 9, 1)
        self.learn("title", "h1.headline", 8, 2)
        orchestrator = self.make_orchestrator()
        result = orchestrator.execute_goal(FakePage(ARTICLE_HTML, url=URL), GOAL, max_steps=3, timeout=10.0)

        self.assertTrue(result.success)
        self.assertEqual(self.oracle.calls, 0)
        self.assertEqual([(t.success, t.source) for t in result.decision_trace], [(False, "memory"), (True, "memory")])
        self.assertEqual(self.store.get_strategy("example.com", "title", "h1.missing").failure_count, 2)


class TestOracleRuns(OrchestratorTestCase):
    """Runs that consult the oracle."""

    def test_soft_failure_continues(self):
        """A malformed click does not end the run."""
        orchestrator = self.make_orchestrator(
            {"action": "click", "confidence": 0.4, "parameters": {}},
            {"action": "extract", "confidence": 0.6, "parameters": {"target": "title", "selector": "h1"}},
        )
        result = orchestrator.execute_goal(FakePage(ARTICLE_HTML, url=URL), GOAL, timeout=10.0)
        self.assertTrue(result.success)
        self.assertEqual(result.steps, 2)
        self.assertEqual([t.success for t in result.decision_trace], [False, True])
        self.assertAlmostEqual(result.aggregate_confidence, 0.5)

    def test_failed_extract_triggers_selector_repair(self):
        """After a failed extraction the next oracle choice is repaired."""
        orchestrator = self.make_orchestrator(
            {"action": "extract", "parameters": {"target": "title", "selector": ".nope"}},
            {"action": "extract", "parameters": {"target": "title", "selector": ".nope-again"}},
            {"selectors": {"title": "h1.headline"}, "alternatives": {"title": [".nope"]}, "confidence": 0.7},
        )
        result = orchestrator.execute_goal(FakePage(ARTICLE_HTML, url=URL), GOAL, timeout=10.0)
        self.assertTrue(result.success)
        self.assertEqual([r.kind for r in self.oracle.requests], ["decision", "decision", "selectors"])
        self.assertEqual(self.store.get_strategy("example.com", "title", ".nope").confidence, 0.0)
        self.assertEqual(self.store.get_strategy("example.com", "title", "h1.headline").confidence, 1.0)

    def test_implausible_value_is_not_kept(self):
        """An extracted value that fails validation is dropped and learned as a failure."""
        orchestrator = self.make_orchestrator({"action": "extract", "parameters": {"target": "price", "selector": "h1"}})
        result = orchestrator.execute_goal(FakePage(ARTICLE_HTML, url=URL), "find the price", max_steps=1, timeout=10.0)
        self.assertFalse(result.success)
        self.assertEqual(result.data, {})
        self.assertEqual(self.store.get_strategy("example.com", "price", "h1").failure_count, 1)
        self.assertEqual(result.errors[-1]["code"], "STEP_BUDGET_EXHAUSTED")

    def test_step_budget_exhausted(self):
        """Without useful answers the run stops at max_steps."""
        orchestrator = self.make_orchestrator()
        result = orchestrator.execute_goal(FakePage(ARTICLE_HTML, url=URL), "find the price", max_steps=3, timeout=10.0)
        self.assertFalse(result.success)
        self.assertEqual(result.steps, 3)
        self.assertEqual(self.oracle.calls, 3)
        self.assertTrue(all(t.source == "fallback" for t in result.decision_trace))
        self.assertEqual(result.errors[-1]["code"], "STEP_BUDGET_EXHAUSTED")
        self.assertEqual(result.errors[-1]["context"]["missing"], ["price"])
        self.assertEqual(self.metrics.snapshot(60).total_goals, 1)

    def test_non_recoverable_error_aborts(self):
        """A fatal step error ends the run immediately."""
        orchestrator = self.make_orchestrator({"action": "navigate", "parameters": {"url": "ftp://example.com/file"}})
        result = orchestrator.execute_goal(FakePage(ARTICLE_HTML, url=URL), GOAL, max_steps=5, timeout=10.0)
        self.assertFalse(result.success)
        self.assertEqual(result.status, "FAILED")
        self.assertEqual(result.steps, 1)
        self.assertEqual(result.errors[-1]["code"], "INVALID_URL")
        self.assertEqual(self.error_stats.snapshot()["errors_by_code"], {"INVALID_URL": 1})

    def test_low_confidence_choice_is_not_learned_as_success(self):
        """A plausible value from a weak decision is dropped and counted as a failure."""
        orchestrator = self.make_orchestrator({"action": "extract", "confidence": 0.1, "parameters": {"target": "title", "selector": "nav a"}})
        result = orchestrator.execute_goal(FakePage(ARTICLE_HTML, url=URL), GOAL, max_steps=1, timeout=10.0)
        self.assertFalse(result.success)
        self.assertEqual(result.data, {})
        self.assertEqual(self.store.get_strategy("example.com", "title", "nav a").failure_count, 1)
        [outcome] = self.store.outcomes("example.com", "title", "nav a")
        self.assertEqual(outcome.error, "low confidence")
        self.assertAlmostEqual(outcome.context["confidence"], 0.45)

    def test_analysis_suggestions_are_followed(self):
        """Without oracle answers, selectors found by page analysis are extracted next."""
        orchestrator = self.make_orchestrator()
        result = orchestrator.execute_goal(FakePage(ARTICLE_HTML, url=URL), GOAL, max_steps=4, timeout=10.0)
        self.assertTrue(result.success)
        self.assertEqual(result.data, {"title": TITLE})
        self.assertEqual([(t.action, t.source) for t in result.decision_trace], [("analyze", "fallback"), ("extract", "analysis")])
        self.assertEqual(self.oracle.calls, 1)

    def test_interactive_goal_runs_planned_sequence(self):
        """A goal that needs interaction is planned once and the plan is executed in order."""
        goal = "search for ocean and extract the title"
        orchestrator = self.make_orchestrator({"sequence": [
            {"action": "fill", "parameters": {"selector": "input[name=q]", "value": "ocean"}},
            {"action": "click", "parameters": {"selector": "button"}},
            {"action": "extract", "parameters": {"target": "title", "selector": "h1"}},
        ]})
        page = FakePage(ARTICLE_HTML, url=URL)
        result = orchestrator.execute_goal(page, goal, timeout=10.0)

        self.assertTrue(result.success)
        self.assertEqual([r.kind for r in self.oracle.requests], ["sequence"])
        self.assertEqual([t.action for t in result.decision_trace], ["fill", "click", "extract"])
        self.assertIn(("fill", "input[name=q]", "ocean"), page.calls)
        [sequence] = self.store.best_sequences("example.com", goal)
        self.assertEqual([s["action"] for s in sequence.steps], ["fill", "click", "extract"])


class TestDeadlinesAndBreakers(OrchestratorTestCase):
    """Timeouts and per-site circuit breaking."""

    def test_timeout_mid_step_keeps_partial_data(self):
        """A deadline hit during a slow step fails the goal but keeps earlier data."""
        self.learn("title", "h1.headline", 9, 1)
        self.learn("date", "time.missing", 9, 1)
        self.learn("date", "time", 8, 2)
        page = FakePage(ARTICLE_HTML, url=URL, slow={"time.missing": 0.6})
        result = self.make_orchestrator().execute_goal(page, "extract title and date", max_steps=5, timeout=0.5)

        self.assertFalse(result.success)
        self.assertEqual(result.data, {"title": TITLE})
        self.assertEqual(result.errors[-1]["code"], "TIMEOUT")
        self.assertNotIn(("locate", "time"), page.calls)
        self.assertEqual(self.metrics.snapshot(60).timeout_count, 1)

    def test_step_finishing_after_deadline_is_a_timeout(self):
        """A slow step that completes the goal past the deadline still fails with TIMEOUT."""
        self.learn("title", "h1.headline", 9, 1)
        page = FakePage(ARTICLE_HTML, url=URL, slow={"h1.headline": 0.6})
        result = self.make_orchestrator().execute_goal(page, GOAL, max_steps=5, timeout=0.5)

        self.assertFalse(result.success)
        self.assertEqual(result.status, "FAILED")
        self.assertEqual(result.data, {"title": TITLE})
        self.assertEqual(result.errors[-1]["code"], "TIMEOUT")
        self.assertEqual(self.store.best_sequences("example.com", GOAL), [])

    def test_dns_failure_is_retried_at_goal_level(self):
        """DNS errors are recoverable, so the goal policy opens the page again."""
        policy = RetryPolicy(max_retries=1, base_delay=0.0, retryable=PAGE_LOAD_CODES)
        orchestrator = self.make_orchestrator(goal_policy=policy)
        page = FakePage(ARTICLE_HTML, navigate_error=PlaywrightError("net::ERR_NAME_NOT_RESOLVED"))
        result = orchestrator.execute_goal(page, GOAL, url=URL, timeout=10.0)

        self.assertFalse(result.success)
        self.assertEqual(result.errors[-1]["code"], "DNS_ERROR")
        self.assertTrue(result.errors[-1]["recoverable"])
        self.assertEqual([c for c in page.calls if c[0] == "navigate"], [("navigate", URL), ("navigate", URL)])

    def test_navigation_failures_open_the_circuit(self):
        """Repeated failures for one host block further runs without touching the page."""
        orchestrator = self.make_orchestrator()
        for _ in range(2):
            page = FakePage(ARTICLE_HTML, navigate_error=PlaywrightError("net::ERR_NAME_NOT_RESOLVED"))
            result = orchestrator.execute_goal(page, GOAL, url=URL, timeout=10.0)
            self.assertEqual(result.errors[-1]["code"], "DNS_ERROR")

        blocked_page = FakePage(ARTICLE_HTML)
        result = orchestrator.execute_goal(blocked_page, GOAL, url=URL, timeout=10.0)
        self.assertFalse(result.success)
        self.assertEqual(result.errors[0]["code"], "CIRCUIT_OPEN")
        self.assertEqual(blocked_page.calls, [])
        self.assertEqual(self.metrics.snapshot(60).circuit_open_count, 1)

        other = orchestrator.execute_goal(FakePage(ARTICLE_HTML), GOAL, url="https://other.example.org/a", max_steps=1, timeout=10.0)
        self.assertNotEqual(other.errors[0]["code"], "CIRCUIT_OPEN")


class TestDeadline(unittest.TestCase):
    """Verify the deadline helper."""

    def test_remaining_and_expiry(self):
        """Remaining time never goes negative."""
        now = [100.0]
        deadline = Deadline(5.0, clock=lambda: now[0])
        self.assertEqual(deadline.remaining(), 5.0)
        now[0] = 106.0
        self.assertEqual(deadline.remaining(), 0.0)
        self.assertTrue(deadline.expired())


if __name__ == "__main__":
    unittest.main()

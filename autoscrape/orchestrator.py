from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from .circuit_breaker import ResilientExecutor
from .config import RetryPolicy
from .decision_engine import DecisionEngine
from .errors import ErrorCode, ErrorStats, ScrapeError, classify, create_error
from .executor import InteractionExecutor
from .metrics import MetricsCollector
from .models import (
    INTERACTION_KINDS,
    Attempt,
    Decision,
    GoalResult,
    OutcomeRecord,
    StepOutcome,
    TraceEntry,
    normalize_site,
    sequence_signature,
)
from .page import PageDriver
from .pattern_store import PatternStore
from .validation import infer_targets, validate_extraction

logger = logging.getLogger(__name__)

# Decision-quality failures; the next decision sees them, so the run continues.
_SOFT_FAILURES = frozenset({ErrorCode.INVALID_DECISION, ErrorCode.INVALID_SELECTOR})


class GoalStatus(str, Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class Deadline:
    def __init__(self, seconds: float, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self.at = clock() + seconds

    def remaining(self) -> float:
        return max(0.0, self.at - self._clock())

    def expired(self) -> bool:
        return self._clock() >= self.at


class GoalRunError(ScrapeError):
    """A finished but unsuccessful run, raised so the breaker counts it."""

    def __init__(self, result: GoalResult, error: ScrapeError) -> None:
        super().__init__(error.code, error.message, cause=error.cause, context=error.context, recoverable=error.recoverable)
        self.result = result


@dataclass
class _GoalRun:
    goal: str
    url: str
    site: str
    started: float
    status: GoalStatus = GoalStatus.PENDING
    data: Dict[str, Any] = field(default_factory=dict)
    attempts: List[Attempt] = field(default_factory=list)
    trace: List[TraceEntry] = field(default_factory=list)
    errors: List[ScrapeError] = field(default_factory=list)
    confidences: List[float] = field(default_factory=list)
    executed: List[Dict[str, Any]] = field(default_factory=list)
    replayed: Optional[List[Dict[str, Any]]] = None
    steps: int = 0

    def goal_met(self) -> bool:
        return all(self.data.get(t.name) for t in infer_targets(self.goal, self.data))

    def to_result(self) -> GoalResult:
        success = self.status is GoalStatus.COMPLETED
        return GoalResult(
            goal=self.goal,
            url=self.url,
            success=success,
            status=self.status.value,
            data=dict(self.data),
            decision_trace=list(self.trace),
            aggregate_confidence=sum(self.confidences) / len(self.confidences) if self.confidences else 0.0,
            errors=[e.to_dict() for e in self.errors],
            steps=self.steps,
            execution_time_ms=int((time.monotonic() - self.started) * 1000),
        )


class AutonomousOrchestrator:
    """Runs one goal against one page: decide, execute, learn, repeat.

    The whole run sits behind the circuit breaker for `scrape_<host>` and
    the goal retry policy; single steps are retried with the step policy.
    Every run ends in a GoalResult, partial data included."""

    def __init__(
        self,
        engine: DecisionEngine,
        store: PatternStore,
        resilience: ResilientExecutor,
        metrics: Optional[MetricsCollector] = None,
        step_policy: Optional[RetryPolicy] = None,
        goal_policy: Optional[RetryPolicy] = None,
        step_timeout: float = 10.0,
        error_stats: Optional[ErrorStats] = None,
    ) -> None:
        self._engine = engine
        self._store = store
        self._resilience = resilience
        self._metrics = metrics
        self._step_policy = step_policy
        self._goal_policy = goal_policy
        self._step_timeout = step_timeout
        self._error_stats = error_stats

    def execute_goal(
        self,
        page: PageDriver,
        goal: str,
        url: Optional[str] = None,
        max_steps: int = 10,
        timeout: float = 60.0,
    ) -> GoalResult:
        started = time.monotonic()
        deadline = Deadline(timeout)
        target_url = url or page.url
        key = f"scrape_{normalize_site(target_url) or 'unknown'}"
        logger.info("Starting goal %r on %s (max_steps=%d, timeout=%.1fs)", goal, target_url, max_steps, timeout)

        outcome = self._resilience.call(
            key,
            lambda: self._run_once(page, goal, url, target_url, max_steps, deadline),
            policy=self._goal_policy,
            context={"goal": goal, "url": target_url},
            deadline=deadline.at,
        )
        if outcome.success:
            result = outcome.value
        elif isinstance(outcome.error, GoalRunError):
            result = outcome.error.result
        else:
            error = outcome.error or create_error(ErrorCode.UNKNOWN_ERROR, "Goal run failed without an error")
            self._count_error(error)
            result = GoalResult(goal, target_url, False, GoalStatus.FAILED.value, errors=[error.to_dict()],
                                execution_time_ms=int((time.monotonic() - started) * 1000))

        logger.info("Goal %r %s in %d step(s), confidence %.2f", goal, result.status, result.steps, result.aggregate_confidence)
        if self._metrics:
            self._metrics.record_goal(result)
        return result

    def _run_once(
        self,
        page: PageDriver,
        goal: str,
        url: Optional[str],
        target_url: str,
        max_steps: int,
        deadline: Deadline,
    ) -> GoalResult:
        run = _GoalRun(goal, target_url, normalize_site(target_url), time.monotonic())
        run.status = GoalStatus.RUNNING
        executor = InteractionExecutor(page, default_timeout=self._step_timeout)

        if url:
            opened = executor.execute(Decision("navigate", "Open the goal URL", 1.0, {"url": url}), timeout=self._step_budget(deadline))
            if not opened.success:
                self._fail(run, opened.error or create_error(ErrorCode.PAGE_LOAD_FAILED, f"Could not open {url}"))
                return self._finish(run)

        queued: List[Decision] = []
        repair_pending = False
        timed_out = False
        aborted = False

        for index in range(max_steps):
            if deadline.expired():
                timed_out = True
                break
            try:
                context = self._engine.build_context(page.url or target_url, goal, page.content(), data=run.data, attempts=run.attempts)
            except Exception as exc:  # noqa: BLE001
                self._fail(run, classify(exc, {"goal": goal, "step": index + 1}))
                aborted = True
                break

            if index == 0:
                if self._engine.needs_plan(goal):
                    queued = self._engine.plan_sequence(context, timeout=deadline.remaining())
                else:
                    queued = self._engine.replay_sequence(context)
                if queued and queued[0].source == "memory":
                    run.replayed = [d.to_step() for d in queued]
            decision = queued.pop(0) if queued else self._engine.decide(context, timeout=deadline.remaining())
            if repair_pending and decision.action == "extract" and decision.source != "memory":
                repair = self._engine.improve_selectors(context, context.failed_strategies(), timeout=deadline.remaining())
                decision = self._engine.apply_repair(decision, repair)
            repair_pending = False
            if deadline.expired():
                timed_out = True
                break

            step = self._run_step(executor, decision, deadline)
            learned = self._learn(run, decision, step)
            run.steps += 1
            run.confidences.append(decision.confidence)
            run.trace.append(TraceEntry(index + 1, decision.action, decision.reasoning, decision.confidence, learned, decision.source))
            logger.info("Step %d: %s (%s, %.2f) -> %s", index + 1, decision.action, decision.source, decision.confidence, learned)

            if learned and decision.action == "analyze":
                found = self._engine.decisions_from_analysis(context, step.details.get("suggested_selectors") or {})
                queued = found + queued
            elif learned:
                run.executed.append(decision.to_step())
            else:
                failed = {a.strategy for a in run.attempts if not a.success}
                queued = [d for d in decision.fallbacks if d.parameters.get("selector") not in failed]
                repair_pending = decision.action == "extract" and not queued
                if step.error is not None:
                    run.errors.append(step.error)
                    self._count_error(step.error)
                    if not step.error.recoverable and step.error.code not in _SOFT_FAILURES:
                        aborted = True
                        break

            # A step that ran past the deadline fails the goal even if it completed it.
            if deadline.expired():
                timed_out = True
                break
            if run.goal_met():
                run.status = GoalStatus.COMPLETED
                break

        if run.status is not GoalStatus.COMPLETED:
            missing = validate_extraction(goal, run.data).missing
            error_context = {"goal": goal, "missing": missing}
            if timed_out:
                self._fail(run, create_error(ErrorCode.TIMEOUT, f"Goal timed out after {run.steps} step(s)", context=error_context))
            elif not aborted:
                self._fail(run, create_error(ErrorCode.STEP_BUDGET_EXHAUSTED, f"Goal not met within {max_steps} steps", context=error_context))
            else:
                run.status = GoalStatus.FAILED
        return self._finish(run)

    def _step_budget(self, deadline: Deadline) -> float:
        return min(self._step_timeout, deadline.remaining())

    def _run_step(self, executor: InteractionExecutor, decision: Decision, deadline: Deadline) -> StepOutcome:
        outcomes: List[StepOutcome] = []

        def attempt() -> StepOutcome:
            outcome = executor.execute(decision, timeout=self._step_budget(deadline))
            outcomes.append(outcome)
            if not outcome.success and outcome.error is not None:
                raise outcome.error
            return outcome

        result = self._resilience.retry(attempt, policy=self._step_policy, context={"action": decision.action}, deadline=deadline.at)
        final = outcomes[-1] if outcomes else StepOutcome(decision.action, False, error=result.error)
        final.attempts = result.attempts
        return final

    def _learn(self, run: _GoalRun, decision: Decision, step: StepOutcome) -> bool:
        """Write outcomes for every tried strategy; return the step's learning success."""
        now = time.time()
        if decision.action == "analyze":
            return step.success
        if decision.action not in INTERACTION_KINDS:
            return False

        succeeded = False
        tried = step.tried
        if not tried:
            strategy = decision.parameters.get("selector") or decision.parameters.get("url") or sequence_signature([decision.to_step()])
            record = OutcomeRecord(run.site, decision.parameters.get("target") or decision.action, strategy, decision.action,
                                   step.success, now, step.error.code.value if step.error else None, {"source": decision.source})
            self._store.record_outcome(record)
            run.attempts.append(Attempt(decision.action, step.success, strategy, record.target, record.error))
            return step.success

        for item in tried:
            success = item.success
            error = item.error
            details: Dict[str, Any] = {"element_text": item.element_text, "source": decision.source}
            if success and decision.action == "extract":
                checked = self._engine.validate(item.target, step.data.get(item.target), decision.confidence)
                details["confidence"] = round(checked.combined_confidence, 3)
                success = checked.accepted
                if success:
                    run.data[item.target] = checked.cleaned
                else:
                    error = checked.reason
                    logger.info("Discarding %s from %s: %s (%.2f)", item.target, item.strategy, checked.reason, checked.combined_confidence)
            self._store.record_outcome(
                OutcomeRecord(run.site, item.target, item.strategy, decision.action, success, now, error, details)
            )
            run.attempts.append(Attempt(decision.action, success, item.strategy, item.target, error))
            succeeded = succeeded or success
        return succeeded

    def _fail(self, run: _GoalRun, error: ScrapeError) -> None:
        run.status = GoalStatus.FAILED
        run.errors.append(error)
        self._count_error(error)

    def _count_error(self, error: ScrapeError) -> None:
        if self._error_stats is not None:
            self._error_stats.record(error)

    def _finish(self, run: _GoalRun) -> GoalResult:
        if run.status is GoalStatus.COMPLETED and run.executed:
            self._store.record_sequence(run.site, run.goal, run.executed, True)
        elif run.status is GoalStatus.FAILED and run.replayed:
            self._store.record_sequence(run.site, run.goal, run.replayed, False)
        result = run.to_result()
        if run.status is GoalStatus.FAILED:
            terminal = run.errors[-1] if run.errors else create_error(ErrorCode.UNKNOWN_ERROR, "Goal failed")
            raise GoalRunError(result, terminal)
        return result

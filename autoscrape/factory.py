from __future__ import annotations

import logging
import threading
from typing import Optional

from .circuit_breaker import CircuitBreakerRegistry, ResilientExecutor
from .config import AgentConfig, OracleConfig
from .decision_engine import DecisionEngine
from .errors import ErrorStats
from .metrics import MetricsCollector
from .oracle import HttpOracle, OpenAIOracle, ReasoningOracle, RuleBasedOracle
from .orchestrator import AutonomousOrchestrator
from .pattern_store import PatternStore
from .rate_limiter import RateLimiter
from .retry import RetryExecutor

logger = logging.getLogger(__name__)


def build_oracle(config: OracleConfig) -> ReasoningOracle:
    """Pick the oracle implementation for a config.

    `auto` prefers OpenAI when an API key is set, then an HTTP endpoint,
    then the offline rule-based oracle."""
    provider = config.provider.lower()
    if provider == "auto":
        provider = "openai" if config.api_key else "http" if config.endpoint else "rules"

    if provider == "openai":
        return OpenAIOracle(
            api_key=config.api_key,
            model=config.model,
            temperature=config.temperature,
            max_tokens=config.max_tokens,
            rate_limiter=RateLimiter(qps=config.qps),
        )
    if provider == "http":
        if not config.endpoint:
            raise ValueError("HTTP oracle requires AUTOSCRAPE_ORACLE_URL")
        return HttpOracle(config.endpoint, timeout=config.timeout)
    if provider == "rules":
        return RuleBasedOracle()
    raise ValueError(f"Unknown oracle provider: {config.provider}")


class AgentFactory:
    """Composition root: owns the process-wide shared pieces.

    The pattern store, breaker registry and oracle are created once and
    shared by every orchestrator this factory hands out, so concurrent
    goal runs learn from and trip breakers for each other.
    """

    def __init__(
        self,
        config: AgentConfig,
        metrics: Optional[MetricsCollector] = None,
        oracle: Optional[ReasoningOracle] = None,
        store: Optional[PatternStore] = None,
    ) -> None:
        self._config = config
        self.metrics = metrics or MetricsCollector()
        self.error_stats = ErrorStats()
        self.store = store or PatternStore(config.db_path)
        self.registry = CircuitBreakerRegistry(config.breaker)
        self.resilience = ResilientExecutor(self.registry, RetryExecutor(config.step_retry))
        self.oracle = oracle or build_oracle(config.oracle)
        self._lock = threading.Lock()
        self._orchestrator: Optional[AutonomousOrchestrator] = None
        logger.info("Agent using %s with store %s", type(self.oracle).__name__, config.db_path)

    def create_engine(self) -> DecisionEngine:
        return DecisionEngine(
            self.store,
            self.oracle,
            resilience=self.resilience,
            high_confidence=self._config.high_confidence,
            oracle_policy=self._config.oracle_retry,
            oracle_timeout=self._config.oracle.timeout,
        )

    def create_orchestrator(self) -> AutonomousOrchestrator:
        """Return the shared orchestrator; it holds no per-run state."""
        with self._lock:
            if self._orchestrator is None:
                self._orchestrator = AutonomousOrchestrator(
                    self.create_engine(),
                    self.store,
                    self.resilience,
                    metrics=self.metrics,
                    step_policy=self._config.step_retry,
                    goal_policy=self._config.goal_retry,
                    step_timeout=self._config.step_timeout,
                    error_stats=self.error_stats,
                )
            return self._orchestrator

    def close(self) -> None:
        self.store.close()

"""Adaptive browser extraction agent.

Runs natural-language extraction goals against live pages, learning which
selectors and interaction sequences work per site and consulting a
reasoning oracle only when that memory is not confident enough.

Key modules:
    orchestrator    -- AutonomousOrchestrator, the per-goal decide/execute/learn loop
    decision_engine -- DecisionEngine: memory fast path, oracle prompts, selector repair
    executor        -- InteractionExecutor performing one Decision on a page
    page            -- PageDriver interface and the Playwright adapter
    pattern_store   -- PatternStore, SQLite outcome log and confidence aggregates
    oracle          -- ReasoningOracle interface with OpenAI, HTTP and rule-based backends
    retry           -- RetryExecutor with exponential backoff
    circuit_breaker -- CircuitBreaker, registry and ResilientExecutor
    backoff         -- BackoffStrategy for exponential retry delays
    rate_limiter    -- RateLimiter for oracle QPS throttling
    errors          -- ErrorCode taxonomy, ScrapeError and classification helpers
    validation      -- extraction targets and value plausibility scoring
    knowledge       -- static selector knowledge base
    page_analysis   -- BeautifulSoup page signals
    config          -- AgentConfig loaded from the environment
    factory         -- AgentFactory composition root
    controller      -- ThreadPoolController for concurrent goal runs
    smart_controller -- SmartController re-tuning concurrency from goal metrics
    strategies      -- ControlStrategy rules used by the SmartController
    metrics         -- MetricsCollector for goal-run statistics
    storage         -- StorageBase and JsonlStorage for results
    models          -- dataclasses shared across modules
"""

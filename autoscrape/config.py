from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import FrozenSet, Mapping, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import RECOVERABLE_CODES, ErrorCode


DEFAULT_RETRYABLE: FrozenSet[ErrorCode] = RECOVERABLE_CODES

# Failures that happen while reaching or loading the page; only these re-run a whole goal.
PAGE_LOAD_CODES: FrozenSet[ErrorCode] = frozenset(
    {
        ErrorCode.NAVIGATION_TIMEOUT,
        ErrorCode.PAGE_LOAD_FAILED,
        ErrorCode.NETWORK_ERROR,
        ErrorCode.DNS_ERROR,
        ErrorCode.CONNECTION_REFUSED,
    }
)


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    backoff_factor: float = 2.0
    retryable: FrozenSet[ErrorCode] = DEFAULT_RETRYABLE


@dataclass(frozen=True)
class BreakerConfig:
    failure_threshold: int = 5
    reset_timeout: float = 60.0
    half_open_max_calls: int = 3


@dataclass(frozen=True)
class OracleConfig:
    provider: str = "auto"  # auto | openai | http | rules
    model: str = "gpt-4o"
    api_key: Optional[str] = None
    endpoint: Optional[str] = None
    temperature: float = 0.1
    max_tokens: int = 2000
    timeout: float = 30.0
    qps: float = 2.0


@dataclass(frozen=True)
class AgentConfig:
    db_path: str = "data/learning.db"
    max_steps: int = 10
    goal_timeout: float = 60.0
    step_timeout: float = 10.0
    high_confidence: float = 0.7
    step_retry: RetryPolicy = field(default_factory=lambda: RetryPolicy(max_retries=2, base_delay=0.5, max_delay=5.0))
    goal_retry: RetryPolicy = field(default_factory=lambda: RetryPolicy(max_retries=1, retryable=PAGE_LOAD_CODES))
    oracle_retry: RetryPolicy = field(
        default_factory=lambda: RetryPolicy(max_retries=3, retryable=frozenset({ErrorCode.LLM_RATE_LIMIT, ErrorCode.NETWORK_ERROR, ErrorCode.TIMEOUT}))
    )
    breaker: BreakerConfig = field(default_factory=BreakerConfig)
    oracle: OracleConfig = field(default_factory=OracleConfig)

    def with_overrides(self, **changes) -> "AgentConfig":
        return replace(self, **{k: v for k, v in changes.items() if v is not None})


class AgentSettings(BaseSettings):
    """Environment view of AgentConfig.

    Reads AUTOSCRAPE_* variables (plus OPENAI_API_KEY) from the process
    environment and a .env file. Blank variables fall back to defaults."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_ignore_empty=True,
        extra="ignore",
    )

    db_path: str = Field(default="data/learning.db", alias="AUTOSCRAPE_DB")
    max_steps: int = Field(default=10, ge=1, alias="AUTOSCRAPE_MAX_STEPS")
    goal_timeout: float = Field(default=60.0, gt=0, alias="AUTOSCRAPE_TIMEOUT")
    step_timeout: float = Field(default=10.0, gt=0, alias="AUTOSCRAPE_STEP_TIMEOUT")

    # Reasoning oracle
    oracle_provider: str = Field(default="auto", alias="AUTOSCRAPE_ORACLE")
    oracle_model: str = Field(default="gpt-4o", alias="AUTOSCRAPE_MODEL")
    openai_api_key: Optional[str] = Field(default=None, alias="OPENAI_API_KEY")
    oracle_url: Optional[str] = Field(default=None, alias="AUTOSCRAPE_ORACLE_URL")
    temperature: float = Field(default=0.1, ge=0, alias="AUTOSCRAPE_TEMPERATURE")
    max_tokens: int = Field(default=2000, ge=1, alias="AUTOSCRAPE_MAX_TOKENS")
    oracle_timeout: float = Field(default=30.0, gt=0, alias="AUTOSCRAPE_ORACLE_TIMEOUT")
    oracle_qps: float = Field(default=2.0, gt=0, alias="AUTOSCRAPE_ORACLE_QPS")

    # Per-site circuit breaker
    breaker_threshold: int = Field(default=5, ge=1, alias="AUTOSCRAPE_BREAKER_THRESHOLD")
    breaker_reset: float = Field(default=60.0, gt=0, alias="AUTOSCRAPE_BREAKER_RESET")
    breaker_half_open_calls: int = Field(default=3, ge=1, alias="AUTOSCRAPE_BREAKER_HALF_OPEN_CALLS")

    def to_config(self) -> AgentConfig:
        return AgentConfig(
            db_path=self.db_path,
            max_steps=self.max_steps,
            goal_timeout=self.goal_timeout,
            step_timeout=self.step_timeout,
            breaker=BreakerConfig(
                failure_threshold=self.breaker_threshold,
                reset_timeout=self.breaker_reset,
                half_open_max_calls=self.breaker_half_open_calls,
            ),
            oracle=OracleConfig(
                provider=self.oracle_provider,
                model=self.oracle_model,
                api_key=self.openai_api_key,
                endpoint=self.oracle_url,
                temperature=self.temperature,
                max_tokens=self.max_tokens,
                timeout=self.oracle_timeout,
                qps=self.oracle_qps,
            ),
        )


def load_config(env: Optional[Mapping[str, str]] = None, dotenv_path: Optional[str] = None) -> AgentConfig:
    """Build an AgentConfig from the environment.

    With an explicit mapping only that mapping is read; otherwise the
    process environment and the .env file (or dotenv_path) are used.
    Invalid values raise pydantic.ValidationError naming the variable."""
    if env is not None:
        settings = AgentSettings.model_validate({k: v for k, v in env.items() if v not in (None, "")})
    elif dotenv_path is not None:
        settings = AgentSettings(_env_file=dotenv_path)
    else:
        settings = AgentSettings()
    return settings.to_config()

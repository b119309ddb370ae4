from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlsplit


INTERACTION_KINDS = ("extract", "click", "fill", "select", "navigate", "wait")
DECISION_ACTIONS = INTERACTION_KINDS + ("analyze",)
CONTENT_TYPES = ("news", "ecommerce", "social", "search", "reference", "generic")


def normalize_site(url: str) -> str:
    """Reduce a URL (or bare host) to the lowercase host used as the site key."""
    if not url:
        return ""
    parts = urlsplit(url if "://" in url else f"//{url}")
    return (parts.hostname or "").lower()


def sequence_signature(steps: List[Dict[str, Any]]) -> str:
    """Stable serialization of an ordered step list."""
    return json.dumps(list(steps), sort_keys=True, separators=(",", ":"), default=str)


@dataclass(frozen=True)
class GoalJob:
    job_id: str
    goal: str
    url: str
    max_steps: int = 10
    timeout: float = 60.0


@dataclass(frozen=True)
class OutcomeRecord:
    site: str
    target: str
    strategy: str
    kind: str
    success: bool
    timestamp: float
    error: Optional[str] = None
    context: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Pattern:
    """Aggregate of outcomes for one learned key.

    Only the two subclasses below are stored; confidence is always
    success_count / (success_count + failure_count)."""

    site: str
    success_count: int
    failure_count: int
    last_used: float
    confidence: float

    @property
    def total(self) -> int:
        return self.success_count + self.failure_count


@dataclass(frozen=True)
class StrategyPattern(Pattern):
    target: str = ""
    strategy: str = ""
    kind: str = "extract"


@dataclass(frozen=True)
class SequencePattern(Pattern):
    goal: str = ""
    signature: str = "[]"

    @property
    def steps(self) -> List[Dict[str, Any]]:
        return json.loads(self.signature)


@dataclass
class Decision:
    action: str
    reasoning: str
    confidence: float
    parameters: Dict[str, Any] = field(default_factory=dict)
    fallbacks: List["Decision"] = field(default_factory=list)
    source: str = "oracle"

    def to_step(self) -> Dict[str, Any]:
        """Step description used for sequence signatures."""
        keep = ("target", "selector", "value", "url")
        return {"action": self.action, **{k: self.parameters[k] for k in keep if k in self.parameters}}


@dataclass(frozen=True)
class PageStructure:
    title: str = ""
    headings: Tuple[str, ...] = ()
    links: int = 0
    forms: int = 0
    images: int = 0
    content_type: str = "generic"


@dataclass(frozen=True)
class PageElement:
    tag: str
    text: str
    selector: str
    attributes: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class ExtractionTarget:
    name: str
    expected: str
    current_value: Optional[Any] = None
    confidence: float = 0.0


@dataclass(frozen=True)
class Attempt:
    action: str
    success: bool
    strategy: Optional[str] = None
    target: Optional[str] = None
    error_code: Optional[str] = None

    def tag(self) -> str:
        return f"{self.action}:{str(self.success).lower()}"


@dataclass(frozen=True)
class FailureAnalysis:
    failed_strategies: Tuple[str, ...] = ()
    reasons: Tuple[str, ...] = ()
    suggestions: Tuple[str, ...] = ()


@dataclass
class AutonomousContext:
    url: str
    goal: str
    current_html: str
    previous_attempts: List[Attempt] = field(default_factory=list)
    available_elements: List[PageElement] = field(default_factory=list)
    current_data: Dict[str, Any] = field(default_factory=dict)
    page_structure: PageStructure = field(default_factory=PageStructure)
    extraction_targets: List[ExtractionTarget] = field(default_factory=list)
    failure_analysis: FailureAnalysis = field(default_factory=FailureAnalysis)

    @property
    def site(self) -> str:
        return normalize_site(self.url)

    def failed_strategies(self) -> List[str]:
        return [a.strategy for a in self.previous_attempts if not a.success and a.strategy]

    def missing_targets(self) -> List[ExtractionTarget]:
        return [t for t in self.extraction_targets if not self.current_data.get(t.name)]


@dataclass(frozen=True)
class TriedStrategy:
    target: str
    strategy: str
    success: bool
    error: Optional[str] = None
    element_text: Optional[str] = None


@dataclass
class StepOutcome:
    action: str
    success: bool
    data: Dict[str, Any] = field(default_factory=dict)
    tried: List[TriedStrategy] = field(default_factory=list)
    error: Optional[Any] = None  # ScrapeError
    attempts: int = 1
    elapsed: float = 0.0
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class TraceEntry:
    step: int
    action: str
    reasoning: str
    confidence: float
    success: bool
    source: str


@dataclass
class GoalResult:
    goal: str
    url: str
    success: bool
    status: str
    data: Dict[str, Any] = field(default_factory=dict)
    decision_trace: List[TraceEntry] = field(default_factory=list)
    aggregate_confidence: float = 0.0
    errors: List[Dict[str, Any]] = field(default_factory=list)
    steps: int = 0
    execution_time_ms: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class LearningMetrics:
    total_interactions: int
    success_rate: float
    total_patterns: int
    average_confidence: float
    top_patterns: List[StrategyPattern]
    recent_activity: List[OutcomeRecord]


@dataclass(frozen=True)
class MetricsSnapshot:
    window_secs: int
    total_goals: int
    success_count: int
    timeout_count: int
    circuit_open_count: int
    total_steps: int
    failed_steps: int
    avg_confidence: float
    avg_latency_ms: float
    timestamp: float

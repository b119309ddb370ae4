"""Chooses the next action for a goal run.

Memory first: a learned extraction strategy above the high-confidence
threshold is used directly and the oracle is not consulted. Otherwise the
page signals, targets and failure history are rendered into a prompt for
the reasoning oracle. Whatever goes wrong on the way, the engine answers
with a Decision; the worst case is a low-confidence `analyze` fallback.
"""

from __future__ import annotations

import json
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from .circuit_breaker import ResilientExecutor
from .config import RetryPolicy
from .errors import classify
from .knowledge import few_shot_examples, proven_selectors
from .models import (
    DECISION_ACTIONS,
    Attempt,
    AutonomousContext,
    Decision,
    FailureAnalysis,
    PageElement,
)
from .oracle import OracleRequest, ReasoningOracle
from .page_analysis import html_hints, infer_page_structure, interactive_elements, semantic_structure
from .pattern_store import HIGH_CONFIDENCE, PatternStore
from .validation import StepValidation, infer_targets, validate_step_value

logger = logging.getLogger(__name__)

ORACLE_KEY = "oracle"
FALLBACK_CONFIDENCE = 0.3
ANALYSIS_CONFIDENCE = 0.5

# Goals that need page interaction before anything can be extracted.
_INTERACTIVE_GOAL = re.compile(
    r"\b(click|search|fill|enter|type|select|choose|submit|log ?in|sign in|add to cart|navigate|go to)\b",
    re.IGNORECASE,
)

# Oracle vocabulary that differs from ours.
_ACTION_ALIASES = {"scrape": "extract", "type": "fill", "goto": "navigate"}

DECISION_SYSTEM_PROMPT = """You are an autonomous web extraction agent. Decide the single next action
that moves the goal forward on the current page.

Actions:
- extract: read a target value with a CSS selector
- click: click a button, link or other interactive element
- fill: type a value into a form field
- select: choose an option in a <select>
- navigate: load another URL
- wait: wait for dynamic content (a selector, or duration_ms)
- analyze: inspect page structure when nothing better is known

Respond with one JSON object:
{
  "action": "extract|click|fill|select|navigate|wait|analyze",
  "reasoning": "why this action, grounded in the page analysis",
  "confidence": 0.0-1.0,
  "parameters": {
    "target": "name of the extraction target",
    "selector": "primary CSS selector",
    "alternatives": ["ranked fallback selector", "..."],
    "value": "value for fill/select",
    "url": "URL for navigate",
    "duration_ms": 1000
  }
}

Prefer semantic elements over styling classes, adapt to the content type,
never repeat a selector listed as failed, and make sure the selector points
at the intended content rather than similar-looking page chrome."""

SEQUENCE_SYSTEM_PROMPT = """You are planning a short sequence of web interactions (2-5 steps) that
accomplishes a goal on the current page. Each step must be specific, based on
the actual page content, and in a sensible order.

Respond with one JSON object:
{
  "sequence": [
    {"action": "...", "reasoning": "...", "confidence": 0.0-1.0, "parameters": {"selector": "...", "target": "...", "value": "..."}}
  ]
}"""

SELECTOR_SYSTEM_PROMPT = """You repair CSS selectors for web extraction. Given a page analysis and the
selectors that already failed, propose better ones for each target: semantic
elements and meaningful attributes first, structure second, generic classes
last. Every selector must match elements with real content for the target.

Respond with one JSON object:
{
  "selectors": {"target_name": "primary_css_selector"},
  "alternatives": {"target_name": ["alternative_1", "alternative_2", "alternative_3"]},
  "reasoning": "why these selectors should match",
  "confidence": 0.0-1.0
}"""


@dataclass
class SelectorRepair:
    selectors: Dict[str, List[str]] = field(default_factory=dict)
    reasoning: str = ""
    confidence: float = 0.0

    def __bool__(self) -> bool:
        return bool(self.selectors)


def analyze_failures(attempts: Iterable[Attempt]) -> FailureAnalysis:
    failed: List[str] = []
    reasons: List[str] = []
    suggestions: List[str] = []
    for attempt in attempts:
        if attempt.success:
            continue
        if attempt.strategy and attempt.strategy not in failed:
            failed.append(attempt.strategy)
        if attempt.action == "extract":
            reasons.append("Element not found or no content")
            suggestions.append("Try more specific selectors or check for dynamic content")
        elif attempt.action in ("click", "fill", "select"):
            reasons.append(f"{attempt.action.capitalize()} target not found or not actionable")
            suggestions.append("Look for alternative interactive elements or wait for page load")
        elif attempt.action == "navigate":
            reasons.append("Navigation failed")
            suggestions.append("Check the URL or stay on the current page")
    return FailureAnalysis(tuple(failed), tuple(dict.fromkeys(reasons)), tuple(dict.fromkeys(suggestions)))


def element_relevance(element: PageElement, goal: str, content_type: str) -> float:
    relevance = 0.5
    goal_lower = goal.lower()
    text = element.text.lower()
    tag = element.tag.lower()

    if "title" in goal_lower and tag in ("h1", "h2", "title"):
        relevance += 0.3
    if "link" in goal_lower and tag == "a":
        relevance += 0.3
    if "button" in goal_lower and tag in ("button", "input"):
        relevance += 0.3
    if goal_lower and goal_lower in text:
        relevance += 0.2
    if content_type == "news" and tag in ("article", "header", "time"):
        relevance += 0.2
    if content_type == "ecommerce" and "price" in text:
        relevance += 0.2
    return min(relevance, 1.0)


def _clamp(value: Any, default: float = 0.5) -> float:
    try:
        return min(max(float(value), 0.0), 1.0)
    except (TypeError, ValueError):
        return default


class DecisionEngine:
    def __init__(
        self,
        store: PatternStore,
        oracle: ReasoningOracle,
        resilience: Optional[ResilientExecutor] = None,
        high_confidence: float = HIGH_CONFIDENCE,
        oracle_policy: Optional[RetryPolicy] = None,
        oracle_timeout: float = 30.0,
    ) -> None:
        self._store = store
        self._oracle = oracle
        self._resilience = resilience
        self._high_confidence = high_confidence
        self._oracle_policy = oracle_policy
        self._oracle_timeout = oracle_timeout

    def build_context(
        self,
        url: str,
        goal: str,
        html: str,
        elements: Optional[List[PageElement]] = None,
        data: Optional[Dict[str, Any]] = None,
        attempts: Optional[List[Attempt]] = None,
    ) -> AutonomousContext:
        data = dict(data or {})
        attempts = list(attempts or [])
        return AutonomousContext(
            url=url,
            goal=goal,
            current_html=html,
            previous_attempts=attempts,
            available_elements=elements if elements is not None else interactive_elements(html),
            current_data=data,
            page_structure=infer_page_structure(html, url),
            extraction_targets=infer_targets(goal, data),
            failure_analysis=analyze_failures(attempts),
        )

    # -- decisions -------------------------------------------------------

    def decide(self, context: AutonomousContext, timeout: Optional[float] = None) -> Decision:
        """Next action for the context. Never raises."""
        try:
            remembered = self._from_memory(context)
            if remembered is not None:
                logger.info("Using learned strategy %s for %s (%.2f)", remembered.parameters["selector"], context.site, remembered.confidence)
                return remembered

            raw = self._ask("decision", DECISION_SYSTEM_PROMPT, self.decision_prompt(context), context, timeout)
            decision = self._parse_decision(raw, context) if raw is not None else None
        except Exception as exc:  # noqa: BLE001
            logger.warning("Decision failed for %s: %s", context.url, classify(exc).message, exc_info=True)
            decision = None

        if decision is None:
            return self._fallback(context, "Failed to make a decision, falling back to analysis")
        logger.info("Oracle chose %s (%.2f) for %s", decision.action, decision.confidence, context.goal)
        return decision

    def _from_memory(self, context: AutonomousContext) -> Optional[Decision]:
        failed = set(context.failed_strategies())
        for target in context.missing_targets():
            patterns = [
                p for p in self._store.best_strategies(context.site, target.name, "extract")
                if p.strategy not in failed
            ]
            if not patterns or patterns[0].confidence <= self._high_confidence:
                continue
            best, rest = patterns[0], patterns[1:]
            fallbacks = [
                Decision("extract", f"Lower-ranked learned strategy for {target.name}", p.confidence,
                         {"target": target.name, "selector": p.strategy}, source="memory")
                for p in rest
            ]
            return Decision(
                action="extract",
                reasoning=f"Learned strategy for {target.name} succeeded {best.success_count}/{best.total} times on {context.site}",
                confidence=best.confidence,
                parameters={"target": target.name, "selector": best.strategy},
                fallbacks=fallbacks,
                source="memory",
            )
        return None

    def replay_sequence(self, context: AutonomousContext) -> List[Decision]:
        """Steps of the best stored sequence for (site, goal), or []."""
        sequences = self._store.best_sequences(context.site, context.goal)
        if not sequences:
            return []
        best = sequences[0]
        return [
            Decision(
                action=step.get("action", "analyze"),
                reasoning=f"Replaying sequence that succeeded {best.success_count}/{best.total} times",
                confidence=best.confidence,
                parameters={k: v for k, v in step.items() if k != "action"},
                source="memory",
            )
            for step in best.steps
        ]

    def plan_sequence(self, context: AutonomousContext, timeout: Optional[float] = None) -> List[Decision]:
        replay = self.replay_sequence(context)
        if replay:
            return replay
        try:
            raw = self._ask("sequence", SEQUENCE_SYSTEM_PROMPT, self.sequence_prompt(context), context, timeout)
            steps = raw.get("sequence") if isinstance(raw, dict) else None
            plan = [d for d in (self._parse_decision(s, context) for s in steps or []) if d is not None]
        except Exception as exc:  # noqa: BLE001
            logger.warning("Sequence planning failed for %s: %s", context.url, exc)
            plan = []
        if not plan:
            return [self._fallback(context, "Failed to plan a sequence, falling back to analysis")]
        logger.info("Planned %d steps for %s", len(plan), context.goal)
        return plan

    def improve_selectors(self, context: AutonomousContext, failed: List[str], timeout: Optional[float] = None) -> SelectorRepair:
        try:
            raw = self._ask("selectors", SELECTOR_SYSTEM_PROMPT, self.selector_prompt(context, failed), context, timeout)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Selector repair failed for %s: %s", context.url, exc)
            raw = None
        if not isinstance(raw, dict):
            return SelectorRepair(reasoning="Failed to generate improved selectors", confidence=0.2)

        primary = raw.get("selectors") if isinstance(raw.get("selectors"), dict) else {}
        alternatives = raw.get("alternatives") if isinstance(raw.get("alternatives"), dict) else {}
        blocked = set(failed)
        selectors: Dict[str, List[str]] = {}
        for target in list(primary) + [t for t in alternatives if t not in primary]:
            first = primary.get(target)
            ranked = ([first] if isinstance(first, str) else list(first or [])) + list(alternatives.get(target) or [])
            ranked = [s for s in dict.fromkeys(ranked) if isinstance(s, str) and s.strip() and s not in blocked]
            if ranked:
                selectors[str(target)] = ranked
        return SelectorRepair(selectors, str(raw.get("reasoning") or ""), _clamp(raw.get("confidence")))

    @staticmethod
    def apply_repair(decision: Decision, repair: SelectorRepair) -> Decision:
        """Put repaired selectors ahead of an extract decision's own choices."""
        target = decision.parameters.get("target")
        if decision.action != "extract" or target not in repair.selectors:
            return decision
        ranked = repair.selectors[target] + [decision.parameters.get("selector")] + list(decision.parameters.get("alternatives") or [])
        ranked = [s for s in dict.fromkeys(ranked) if s]
        parameters = dict(decision.parameters, selector=ranked[0], alternatives=ranked[1:])
        reasoning = f"{decision.reasoning} (selectors repaired: {repair.reasoning})" if repair.reasoning else decision.reasoning
        return Decision(decision.action, reasoning, decision.confidence, parameters, decision.fallbacks, decision.source)

    @staticmethod
    def needs_plan(goal: str) -> bool:
        return bool(_INTERACTIVE_GOAL.search(goal))

    def decisions_from_analysis(self, context: AutonomousContext, suggestions: Dict[str, List[str]]) -> List[Decision]:
        """Extract decisions for missing targets the page analysis found selectors for."""
        failed = set(context.failed_strategies())
        decisions = []
        for target in context.missing_targets():
            ranked = [s for s in suggestions.get(target.name) or [] if s not in failed]
            if not ranked:
                continue
            decisions.append(Decision(
                action="extract",
                reasoning=f"Page analysis found {len(ranked)} matching selector(s) for {target.name}",
                confidence=ANALYSIS_CONFIDENCE,
                parameters={"target": target.name, "selector": ranked[0], "alternatives": ranked[1:]},
                source="analysis",
            ))
        return decisions

    @staticmethod
    def validate(target: str, value: Any, strategy_confidence: float) -> StepValidation:
        return validate_step_value(value, target, strategy_confidence)

    # -- oracle plumbing -------------------------------------------------

    def _payload(self, context: AutonomousContext) -> Dict[str, Any]:
        return {
            "url": context.url,
            "goal": context.goal,
            "html": context.current_html,
            "content_type": context.page_structure.content_type,
            "targets": [t.name for t in context.extraction_targets],
            "missing_targets": [t.name for t in context.missing_targets()],
            "failed_strategies": list(context.failure_analysis.failed_strategies),
            "current_data": context.current_data,
        }

    def _ask(
        self,
        kind: str,
        system: str,
        prompt: str,
        context: AutonomousContext,
        timeout: Optional[float],
    ) -> Optional[Dict[str, Any]]:
        budget = self._oracle_timeout if timeout is None else min(timeout, self._oracle_timeout)
        request = OracleRequest(kind, system, prompt, timeout=budget, payload=self._payload(context))
        if self._resilience is None:
            try:
                return self._oracle.ask(request)
            except Exception as exc:  # noqa: BLE001
                error = classify(exc, {"kind": kind})
                logger.warning("Oracle %s request failed: %s %s", kind, error.code.value, error.message)
                return None

        deadline = time.monotonic() + timeout if timeout is not None else None
        result = self._resilience.call(ORACLE_KEY, lambda: self._oracle.ask(request), policy=self._oracle_policy,
                                       context={"kind": kind}, deadline=deadline)
        if not result.success:
            logger.warning("Oracle %s request failed after %d attempt(s): %s", kind, result.attempts,
                           result.error.code.value if result.error else "unknown")
            return None
        return result.value

    def _parse_decision(self, raw: Any, context: AutonomousContext) -> Optional[Decision]:
        if not isinstance(raw, dict):
            return None
        action = str(raw.get("action") or "").lower()
        action = _ACTION_ALIASES.get(action, action)
        if action not in DECISION_ACTIONS:
            logger.warning("Oracle proposed unknown action %r", raw.get("action"))
            return None
        parameters = raw.get("parameters") if isinstance(raw.get("parameters"), dict) else {}
        parameters = dict(parameters)
        if isinstance(parameters.get("alternatives"), str):
            parameters["alternatives"] = [parameters["alternatives"]]

        if action == "extract":
            if not parameters.get("selector"):
                return None
            if not parameters.get("target"):
                missing = context.missing_targets()
                parameters["target"] = missing[0].name if missing else "content"
        if action == "analyze":
            parameters.setdefault("targets", [t.name for t in context.missing_targets()])

        return Decision(
            action=action,
            reasoning=str(raw.get("reasoning") or "No reasoning provided"),
            confidence=_clamp(raw.get("confidence")),
            parameters=parameters,
            source="oracle",
        )

    @staticmethod
    def _fallback(context: AutonomousContext, reasoning: str) -> Decision:
        return Decision(
            action="analyze",
            reasoning=reasoning,
            confidence=FALLBACK_CONFIDENCE,
            parameters={"fallback": True, "targets": [t.name for t in context.missing_targets()]},
            source="fallback",
        )

    # -- prompts ---------------------------------------------------------

    def decision_prompt(self, context: AutonomousContext) -> str:
        structure = context.page_structure
        failures = context.failure_analysis
        semantic, areas = semantic_structure(context.current_html)
        ranked = sorted(
            context.available_elements,
            key=lambda el: element_relevance(el, context.goal, structure.content_type),
            reverse=True,
        )[:15]
        elements = "\n".join(
            f'{el.tag}: "{el.text[:80]}" ({el.selector}) [relevance: {element_relevance(el, context.goal, structure.content_type):.2f}]'
            for el in ranked
        )
        targets = "\n".join(
            f"- {t.name}: {t.expected} {'(FOUND)' if context.current_data.get(t.name) else '(MISSING)'} confidence: {t.confidence:.2f}"
            for t in context.extraction_targets
        )
        if failures.failed_strategies or failures.reasons:
            failure_text = (
                f"Failed selectors: {', '.join(failures.failed_strategies) or 'none'}\n"
                f"Reasons: {', '.join(failures.reasons)}\n"
                f"Suggestions: {', '.join(failures.suggestions)}"
            )
        else:
            failure_text = "No previous failures"

        return f"""
GOAL: {context.goal}
CURRENT URL: {context.url}
PREVIOUS ATTEMPTS: {', '.join(a.tag() for a in context.previous_attempts) or 'None'}

PAGE ANALYSIS:
- Content Type: {structure.content_type}
- Title: {structure.title}
- Structure: {len(structure.headings)} headings, {structure.links} links, {structure.forms} forms
- Main Content Areas: {', '.join(areas) or 'none'}

EXTRACTION TARGETS:
{targets}

FAILURE ANALYSIS:
{failure_text}

CURRENT DATA EXTRACTED:
{json.dumps(context.current_data, indent=2, default=str)}

RELEVANT INTERACTIVE ELEMENTS:
{elements or 'none'}

SEMANTIC HTML STRUCTURE:
{semantic}

Which target is still missing, which element most likely holds it, and which
strategy has not been tried yet? Choose the action most likely to extract it."""

    def sequence_prompt(self, context: AutonomousContext) -> str:
        elements = "\n".join(f'{el.tag}: "{el.text}" ({el.selector})' for el in context.available_elements)
        return f"""
GOAL: {context.goal}
CURRENT URL: {context.url}
CURRENT DATA: {json.dumps(context.current_data, indent=2, default=str)}

AVAILABLE ELEMENTS:
{elements or 'none'}

HTML CONTEXT:
{context.current_html[:3000]}

Plan the interactions needed, in order, including the extraction steps."""

    def selector_prompt(self, context: AutonomousContext, failed: List[str]) -> str:
        structure = context.page_structure
        semantic, areas = semantic_structure(context.current_html)
        proven: List[str] = []
        for target in context.extraction_targets:
            proven.extend(proven_selectors(target.name, context.site, structure.content_type))
        proven = list(dict.fromkeys(proven))[:8]
        targets = "\n".join(f"- {t.name}: Looking for {t.expected}" for t in context.extraction_targets)
        return f"""
GOAL: Extract data for: {context.goal}
PAGE TYPE: {structure.content_type}
DOMAIN: {context.site}
FAILED SELECTORS: {', '.join(failed) or 'none'}

EXTRACTION TARGETS:
{targets}

PROVEN SELECTOR PATTERNS (from working scrapers):
{chr(10).join(f'- {s}' for s in proven) or 'none'}

SEMANTIC STRUCTURE:
{semantic}

CONTENT AREAS:
{chr(10).join(f'- {a}' for a in areas) or 'none'}

HTML ANALYSIS:
{html_hints(context.current_html) or 'no notable attributes'}

SUCCESSFUL EXTRACTION EXAMPLES:
{few_shot_examples(structure.content_type)}

The failed selectors did not find the targets. For each target give the best
selector plus 2-3 alternatives in order of confidence, starting from the
proven patterns, semantically meaningful for {structure.content_type} content."""

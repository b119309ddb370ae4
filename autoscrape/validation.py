from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from .knowledge import pattern_for_target
from .models import ExtractionTarget

# goal keyword(s) -> (target name, expected description)
_GOAL_TARGETS = (
    (("title",), "title", "Main page or article title"),
    (("headline", "heading"), "headline", "News article headline or main heading"),
    (("price", "cost"), "price", "Product price or cost information"),
    (("summary", "description"), "summary", "Article summary or product description"),
    (("date", "published"), "date", "Publication or event date"),
    (("author", "byline"), "author", "Author name"),
    (("product name", "product"), "name", "Product name"),
)

_ONLY_SYMBOLS = re.compile(r"^[0-9\s\-_]+$")

# Floor for the mean of field and strategy confidence before a value counts.
MIN_STEP_CONFIDENCE = 0.5


@dataclass(frozen=True)
class FieldValidation:
    is_valid: bool
    cleaned: str
    confidence: float


@dataclass(frozen=True)
class StepValidation:
    accepted: bool
    cleaned: str
    field_confidence: float
    combined_confidence: float
    reason: Optional[str] = None


@dataclass
class ValidationReport:
    is_valid: bool
    confidence: float
    missing: List[str] = field(default_factory=list)
    suggestions: List[str] = field(default_factory=list)
    fields: Dict[str, FieldValidation] = field(default_factory=dict)


def infer_targets(goal: str, data: Optional[Mapping[str, Any]] = None) -> List[ExtractionTarget]:
    """Derive the fields a goal asks for; falls back to a generic `content` target."""
    data = data or {}
    goal_lower = goal.lower()
    targets: List[ExtractionTarget] = []
    for keywords, name, expected in _GOAL_TARGETS:
        if any(k in goal_lower for k in keywords) and name not in {t.name for t in targets}:
            value = data.get(name)
            targets.append(ExtractionTarget(name, expected, value, 0.9 if value else 0.0))
    if not targets:
        value = data.get("content")
        targets.append(ExtractionTarget("content", f"Main content related to: {goal}", value, 0.7 if value else 0.0))
    return targets


def score_value(value: Any, target: str) -> FieldValidation:
    """Plausibility of an extracted value for a target, independent of strategy history."""
    text = "" if value is None else str(value).strip()
    if not text:
        return FieldValidation(False, "", 0.0)

    pattern = pattern_for_target(target)
    if pattern is None:
        if len(text) > 5000:
            return FieldValidation(False, text, 0.1)
        return FieldValidation(True, text, 0.5)

    if not pattern.validator(text):
        return FieldValidation(False, text, 0.1)

    cleaned = pattern.cleaner(text) if pattern.cleaner else text
    confidence = 0.7
    if 10 < len(cleaned) < 100:
        confidence += 0.2
    if not _ONLY_SYMBOLS.match(cleaned):
        confidence += 0.1
    return FieldValidation(True, cleaned, min(confidence, 1.0))


def validate_extraction(goal: str, data: Mapping[str, Any]) -> ValidationReport:
    targets = infer_targets(goal)
    report = ValidationReport(is_valid=False, confidence=0.0)
    total = 0.0
    for target in targets:
        value = data.get(target.name)
        if value is None or not str(value).strip():
            report.missing.append(target.name)
            report.suggestions.append(f"Missing {target.name}: {target.expected}")
            continue
        result = score_value(value, target.name)
        report.fields[target.name] = result
        if not result.is_valid:
            report.suggestions.append(f'{target.name} content failed validation: "{str(value)[:50]}..."')
            continue
        total += result.confidence
        if result.confidence < 0.5:
            report.suggestions.append(f"{target.name} has low confidence ({result.confidence:.0%})")

    report.confidence = total / len(targets) if targets else 0.0
    report.is_valid = report.confidence > 0.5 and not report.missing
    return report


def validate_step_value(value: Any, target: str, strategy_confidence: float) -> StepValidation:
    """Decide whether one extracted value counts as a successful step.

    The value must be plausible for its target, and the mean of its field
    confidence and the confidence of the strategy that produced it must
    reach MIN_STEP_CONFIDENCE."""
    checked = score_value(value, target)
    combined = (checked.confidence + strategy_confidence) / 2
    if not checked.is_valid:
        return StepValidation(False, checked.cleaned, checked.confidence, combined, "implausible value")
    if combined < MIN_STEP_CONFIDENCE:
        return StepValidation(False, checked.cleaned, checked.confidence, combined, "low confidence")
    return StepValidation(True, checked.cleaned, checked.confidence, combined)

from __future__ import annotations

import logging
import time
from typing import Any, Dict, List, Optional, Tuple

from .errors import ErrorCode, ScrapeError, classify, create_error
from .models import Decision, StepOutcome, TriedStrategy
from .page import PageDriver
from .page_analysis import infer_page_structure, suggest_selectors

logger = logging.getLogger(__name__)

_FALLBACK_ATTRIBUTES = ("value", "content", "href", "src")


def _selectors(parameters: Dict[str, Any]) -> List[str]:
    ranked = [parameters.get("selector")] + list(parameters.get("alternatives") or [])
    return list(dict.fromkeys(s for s in ranked if isinstance(s, str) and s.strip()))


class InteractionExecutor:
    """Performs one Decision against the page and reports what happened.

    execute() never raises; every failure is classified into the
    outcome's ScrapeError. The executor has no memory of its own: callers
    decide what to learn from `StepOutcome.tried`."""

    def __init__(self, page: PageDriver, default_timeout: float = 10.0) -> None:
        self._page = page
        self._default_timeout = default_timeout

    @property
    def page(self) -> PageDriver:
        return self._page

    def execute(self, decision: Decision, timeout: Optional[float] = None) -> StepOutcome:
        timeout = self._default_timeout if timeout is None else timeout
        start = time.monotonic()
        handler = getattr(self, f"_do_{decision.action}", None)
        if handler is None:
            error = create_error(ErrorCode.INVALID_DECISION, f"Unsupported action: {decision.action}")
            return StepOutcome(decision.action, False, error=error)

        try:
            outcome = handler(decision.parameters, timeout, start)
        except ScrapeError as exc:
            outcome = StepOutcome(decision.action, False, error=exc)
        except Exception as exc:  # noqa: BLE001
            outcome = StepOutcome(decision.action, False, error=classify(exc, {"action": decision.action}))
        outcome.elapsed = time.monotonic() - start
        if not outcome.success and outcome.error is not None:
            logger.info("%s failed: %s %s", decision.action, outcome.error.code.value, outcome.error.message)
        return outcome

    def _require_selector(self, parameters: Dict[str, Any], action: str) -> str:
        selector = parameters.get("selector")
        if not isinstance(selector, str) or not selector.strip():
            raise ScrapeError(ErrorCode.INVALID_DECISION, f"{action} requires a selector", recoverable=False)
        return selector

    def _read(self, selector: str, attribute: Optional[str]) -> Tuple[Optional[str], Optional[str]]:
        """Return (value, element_text) for the first element matching selector."""
        element = self._page.locate(selector)
        if element is None:
            return None, None
        text = element.text()
        if attribute:
            return element.get_attribute(attribute), text
        if text:
            return text, text
        for name in _FALLBACK_ATTRIBUTES:
            value = element.get_attribute(name)
            if value:
                return value.strip(), text
        return None, text

    def _do_extract(self, parameters: Dict[str, Any], timeout: float, start: float) -> StepOutcome:
        target = parameters.get("target") or "content"
        selectors = _selectors(parameters)
        if not selectors:
            raise ScrapeError(ErrorCode.INVALID_DECISION, "extract requires a selector", recoverable=False)

        tried: List[TriedStrategy] = []
        last_error: Optional[ScrapeError] = None
        for selector in selectors:
            if time.monotonic() - start >= timeout:
                last_error = create_error(ErrorCode.TIMEOUT, f"Extraction of {target} ran out of time", context={"target": target})
                break
            try:
                value, text = self._read(selector, parameters.get("attribute"))
            except Exception as exc:  # noqa: BLE001
                last_error = classify(exc, {"selector": selector, "target": target})
                tried.append(TriedStrategy(target, selector, False, last_error.code.value))
                continue
            if value:
                tried.append(TriedStrategy(target, selector, True, element_text=(text or "")[:200]))
                return StepOutcome("extract", True, data={target: value}, tried=tried)
            code = ErrorCode.ELEMENT_NOT_FOUND
            last_error = create_error(code, f"No content for {target} at {selector}", context={"selector": selector, "target": target})
            tried.append(TriedStrategy(target, selector, False, code.value, element_text=text))

        return StepOutcome("extract", False, tried=tried, error=last_error)

    def _do_click(self, parameters: Dict[str, Any], timeout: float, start: float) -> StepOutcome:
        selector = self._require_selector(parameters, "click")
        self._page.click(selector, timeout)
        return StepOutcome("click", True, tried=[TriedStrategy(parameters.get("target") or selector, selector, True)])

    def _do_fill(self, parameters: Dict[str, Any], timeout: float, start: float) -> StepOutcome:
        selector = self._require_selector(parameters, "fill")
        self._page.fill(selector, str(parameters.get("value", "")), timeout)
        return StepOutcome("fill", True, tried=[TriedStrategy(parameters.get("target") or selector, selector, True)])

    def _do_select(self, parameters: Dict[str, Any], timeout: float, start: float) -> StepOutcome:
        selector = self._require_selector(parameters, "select")
        self._page.select_option(selector, str(parameters.get("value", "")), timeout)
        return StepOutcome("select", True, tried=[TriedStrategy(parameters.get("target") or selector, selector, True)])

    def _do_navigate(self, parameters: Dict[str, Any], timeout: float, start: float) -> StepOutcome:
        url = parameters.get("url") or ""
        if not url.startswith(("http://", "https://")):
            raise ScrapeError(ErrorCode.INVALID_URL, f"Refusing to navigate to {url!r}", context={"url": url})
        self._page.navigate(url, timeout)
        return StepOutcome("navigate", True, data={})

    def _do_wait(self, parameters: Dict[str, Any], timeout: float, start: float) -> StepOutcome:
        selector = parameters.get("selector")
        if selector:
            self._page.wait_for_selector(selector, timeout)
        else:
            duration_ms = float(parameters.get("duration_ms", 1000))
            self._page.wait_for_timeout(min(duration_ms, timeout * 1000))
        return StepOutcome("wait", True)

    def _do_analyze(self, parameters: Dict[str, Any], timeout: float, start: float) -> StepOutcome:
        html = self._page.content()
        url = self._page.url
        structure = infer_page_structure(html, url)
        suggestions = suggest_selectors(html, parameters.get("targets") or [], url, structure.content_type)
        logger.debug("Analyzed %s: %d bytes, suggestions=%s", url, len(html), suggestions)
        return StepOutcome(
            "analyze",
            True,
            details={"html_length": len(html), "content_type": structure.content_type, "suggested_selectors": suggestions},
        )

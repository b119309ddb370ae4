from __future__ import annotations

import threading
import time
from enum import Enum
from typing import Any, Dict, Optional

import openai
import requests
from playwright.sync_api import Error as PlaywrightError
from playwright.sync_api import TimeoutError as PlaywrightTimeoutError


class ErrorCode(str, Enum):
    # validation
    INVALID_URL = "INVALID_URL"
    INVALID_TARGETS = "INVALID_TARGETS"
    INVALID_SELECTOR = "INVALID_SELECTOR"
    INVALID_HTML = "INVALID_HTML"
    INVALID_DECISION = "INVALID_DECISION"

    # browser / page
    BROWSER_LAUNCH_FAILED = "BROWSER_LAUNCH_FAILED"
    PAGE_LOAD_FAILED = "PAGE_LOAD_FAILED"
    NAVIGATION_TIMEOUT = "NAVIGATION_TIMEOUT"
    ELEMENT_NOT_FOUND = "ELEMENT_NOT_FOUND"
    INTERACTION_FAILED = "INTERACTION_FAILED"

    # network
    NETWORK_ERROR = "NETWORK_ERROR"
    DNS_ERROR = "DNS_ERROR"
    CONNECTION_REFUSED = "CONNECTION_REFUSED"
    TIMEOUT = "TIMEOUT"

    # resources
    MEMORY_ERROR = "MEMORY_ERROR"
    DISK_ERROR = "DISK_ERROR"
    PERMISSION_ERROR = "PERMISSION_ERROR"

    # learning store
    DATABASE_ERROR = "DATABASE_ERROR"

    # oracle
    LLM_API_ERROR = "LLM_API_ERROR"
    LLM_RATE_LIMIT = "LLM_RATE_LIMIT"
    LLM_QUOTA_EXCEEDED = "LLM_QUOTA_EXCEEDED"
    LLM_MALFORMED_RESPONSE = "LLM_MALFORMED_RESPONSE"

    # control flow
    CIRCUIT_OPEN = "CIRCUIT_OPEN"
    STEP_BUDGET_EXHAUSTED = "STEP_BUDGET_EXHAUSTED"
    OPERATION_CANCELLED = "OPERATION_CANCELLED"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


RECOVERABLE_CODES = frozenset(
    {
        ErrorCode.NAVIGATION_TIMEOUT,
        ErrorCode.ELEMENT_NOT_FOUND,
        ErrorCode.INTERACTION_FAILED,
        ErrorCode.NETWORK_ERROR,
        ErrorCode.DNS_ERROR,
        ErrorCode.CONNECTION_REFUSED,
        ErrorCode.TIMEOUT,
        ErrorCode.LLM_RATE_LIMIT,
        ErrorCode.PAGE_LOAD_FAILED,
    }
)

SUGGESTIONS: Dict[ErrorCode, str] = {
    ErrorCode.INVALID_URL: "Ensure the URL is properly formatted with http:// or https://",
    ErrorCode.INVALID_TARGETS: 'Provide valid target descriptions (e.g. "title", "price")',
    ErrorCode.INVALID_SELECTOR: "Use valid CSS selector syntax",
    ErrorCode.INVALID_HTML: "Ensure HTML content is not empty and properly formatted",
    ErrorCode.INVALID_DECISION: "Check the action name and its required parameters",
    ErrorCode.BROWSER_LAUNCH_FAILED: "Try restarting the application or check system resources",
    ErrorCode.PAGE_LOAD_FAILED: "Check if the URL is accessible and try again",
    ErrorCode.NAVIGATION_TIMEOUT: "Increase timeout or check network connectivity",
    ErrorCode.ELEMENT_NOT_FOUND: "Verify the selector matches elements on the page",
    ErrorCode.INTERACTION_FAILED: "Check if the element is visible and clickable",
    ErrorCode.NETWORK_ERROR: "Check your internet connection and try again",
    ErrorCode.DNS_ERROR: "Check if the domain name is correct and accessible",
    ErrorCode.CONNECTION_REFUSED: "The server may be down or blocking requests",
    ErrorCode.TIMEOUT: "Increase timeout or try again later",
    ErrorCode.MEMORY_ERROR: "Close other applications or restart the system",
    ErrorCode.DISK_ERROR: "Check available disk space and permissions",
    ErrorCode.PERMISSION_ERROR: "Check file/directory permissions",
    ErrorCode.DATABASE_ERROR: "Check database file permissions and disk space",
    ErrorCode.LLM_API_ERROR: "Check API key and service availability",
    ErrorCode.LLM_RATE_LIMIT: "Wait before making more requests",
    ErrorCode.LLM_QUOTA_EXCEEDED: "Check your API billing and quota",
    ErrorCode.LLM_MALFORMED_RESPONSE: "The reasoning service returned an unusable answer; retry or lower temperature",
    ErrorCode.CIRCUIT_OPEN: "The site has failed repeatedly; wait for the circuit to reset",
    ErrorCode.STEP_BUDGET_EXHAUSTED: "Raise max_steps or narrow the goal",
    ErrorCode.OPERATION_CANCELLED: "The operation was cancelled",
    ErrorCode.UNKNOWN_ERROR: "Try again or check system logs for more details",
}


class ScrapeError(Exception):
    """Classified failure carried through the retry and orchestration layers."""

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        cause: Optional[BaseException] = None,
        context: Optional[Dict[str, Any]] = None,
        recoverable: Optional[bool] = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.context = dict(context or {})
        self.timestamp = time.time()
        self.recoverable = code in RECOVERABLE_CODES if recoverable is None else recoverable
        self.suggestion = SUGGESTIONS.get(code, "No specific suggestion available")
        if cause is not None:
            self.__cause__ = cause

    @property
    def cause(self) -> Optional[BaseException]:
        return self.__cause__

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code.value,
            "message": self.message,
            "recoverable": self.recoverable,
            "suggestion": self.suggestion,
            "context": self.context,
            "timestamp": self.timestamp,
            "cause": f"{type(self.cause).__name__}: {self.cause}" if self.cause else None,
        }

    def __repr__(self) -> str:
        return f"ScrapeError({self.code.value}, {self.message!r})"


class ErrorStats:
    """Thread-safe per-code error counter."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counts: Dict[ErrorCode, int] = {}
        self._last_seen: Dict[ErrorCode, float] = {}

    def record(self, error: ScrapeError) -> None:
        with self._lock:
            self._counts[error.code] = self._counts.get(error.code, 0) + 1
            self._last_seen[error.code] = error.timestamp

    def snapshot(self, window_secs: float = 3600.0) -> Dict[str, Any]:
        cutoff = time.time() - window_secs
        with self._lock:
            counts = dict(self._counts)
            recent = [
                {"code": code.value, "timestamp": ts, "count": counts[code]}
                for code, ts in self._last_seen.items()
                if ts >= cutoff
            ]
        recent.sort(key=lambda r: r["timestamp"], reverse=True)
        return {
            "total_errors": sum(counts.values()),
            "errors_by_code": {code.value: n for code, n in counts.items()},
            "recent_errors": recent,
        }

    def clear(self) -> None:
        with self._lock:
            self._counts.clear()
            self._last_seen.clear()


def create_error(
    code: ErrorCode,
    message: str,
    cause: Optional[BaseException] = None,
    context: Optional[Dict[str, Any]] = None,
) -> ScrapeError:
    return ScrapeError(code, message, cause=cause, context=context)


def handle_browser_error(error: BaseException, context: Optional[Dict[str, Any]] = None) -> ScrapeError:
    msg = str(error)
    if isinstance(error, PlaywrightTimeoutError) or "Timeout" in msg:
        if "waiting for locator" in msg or "waiting for selector" in msg:
            return create_error(ErrorCode.ELEMENT_NOT_FOUND, "Timed out waiting for element", error, context)
        return create_error(ErrorCode.NAVIGATION_TIMEOUT, "Page operation timed out", error, context)
    if "net::ERR_NAME_NOT_RESOLVED" in msg:
        return create_error(ErrorCode.DNS_ERROR, "Domain name could not be resolved", error, context)
    if "net::ERR_CONNECTION_REFUSED" in msg:
        return create_error(ErrorCode.CONNECTION_REFUSED, "Connection to server was refused", error, context)
    if "Cannot navigate to invalid URL" in msg or "invalid URL" in msg:
        return create_error(ErrorCode.INVALID_URL, "Navigation target is not a valid URL", error, context)
    if "net::ERR_" in msg:
        return create_error(ErrorCode.PAGE_LOAD_FAILED, f"Page failed to load: {msg}", error, context)
    if "Target closed" in msg or "has been closed" in msg:
        return create_error(ErrorCode.BROWSER_LAUNCH_FAILED, "Browser instance was closed unexpectedly", error, context)
    if "not visible" in msg or "not enabled" in msg or "intercepts pointer events" in msg:
        return create_error(ErrorCode.INTERACTION_FAILED, f"Element not actionable: {msg}", error, context)
    return create_error(ErrorCode.INTERACTION_FAILED, f"Browser error: {msg}", error, context)


def handle_network_error(error: BaseException, context: Optional[Dict[str, Any]] = None) -> ScrapeError:
    msg = str(error)
    if "ENOTFOUND" in msg or "Name or service not known" in msg:
        return create_error(ErrorCode.DNS_ERROR, "DNS lookup failed", error, context)
    if "ECONNREFUSED" in msg or "Connection refused" in msg:
        return create_error(ErrorCode.CONNECTION_REFUSED, "Connection refused by server", error, context)
    if isinstance(error, (requests.exceptions.Timeout, TimeoutError)) or "timeout" in msg.lower():
        return create_error(ErrorCode.TIMEOUT, "Network request timed out", error, context)
    return create_error(ErrorCode.NETWORK_ERROR, f"Network error: {msg}", error, context)


def handle_llm_error(error: BaseException, context: Optional[Dict[str, Any]] = None) -> ScrapeError:
    msg = str(error)
    lowered = msg.lower()
    if "quota" in lowered or "billing" in lowered:
        return create_error(ErrorCode.LLM_QUOTA_EXCEEDED, "LLM API quota exceeded", error, context)
    if isinstance(error, openai.RateLimitError) or "rate limit" in lowered:
        return create_error(ErrorCode.LLM_RATE_LIMIT, "LLM API rate limit exceeded", error, context)
    if isinstance(error, openai.APITimeoutError):
        return create_error(ErrorCode.TIMEOUT, "LLM request timed out", error, context)
    if isinstance(error, openai.APIConnectionError):
        return create_error(ErrorCode.NETWORK_ERROR, "Could not reach the LLM API", error, context)
    return create_error(ErrorCode.LLM_API_ERROR, f"LLM API error: {msg}", error, context)


def handle_database_error(error: BaseException, context: Optional[Dict[str, Any]] = None) -> ScrapeError:
    return create_error(ErrorCode.DATABASE_ERROR, f"Database error: {error}", error, context)


def handle_generic_error(error: BaseException, context: Optional[Dict[str, Any]] = None) -> ScrapeError:
    msg = str(error)
    if isinstance(error, PermissionError) or "EACCES" in msg or "permission" in msg.lower():
        return create_error(ErrorCode.PERMISSION_ERROR, "Permission denied", error, context)
    if isinstance(error, MemoryError) or "out of memory" in msg:
        return create_error(ErrorCode.MEMORY_ERROR, "Out of memory", error, context)
    if "ENOSPC" in msg or "No space left" in msg or "disk" in msg.lower():
        return create_error(ErrorCode.DISK_ERROR, "Disk space or I/O error", error, context)
    if isinstance(error, TimeoutError):
        return create_error(ErrorCode.TIMEOUT, "Operation timed out", error, context)
    return create_error(ErrorCode.UNKNOWN_ERROR, f"Unknown error: {msg}", error, context)


def classify(error: BaseException, context: Optional[Dict[str, Any]] = None) -> ScrapeError:
    """Map any exception onto a ScrapeError, passing ScrapeErrors through."""
    if isinstance(error, ScrapeError):
        return error
    if isinstance(error, (PlaywrightTimeoutError, PlaywrightError)):
        return handle_browser_error(error, context)
    if isinstance(error, openai.OpenAIError):
        return handle_llm_error(error, context)
    if isinstance(error, (requests.exceptions.RequestException, ConnectionError)):
        return handle_network_error(error, context)
    return handle_generic_error(error, context)

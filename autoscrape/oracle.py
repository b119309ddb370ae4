from __future__ import annotations

import json
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import openai
import requests

from .errors import ErrorCode, ScrapeError, handle_llm_error, handle_network_error
from .page_analysis import suggest_selectors
from .rate_limiter import RateLimiter

logger = logging.getLogger(__name__)

REQUEST_KINDS = ("decision", "sequence", "selectors")


@dataclass(frozen=True)
class OracleRequest:
    kind: str
    system: str
    prompt: str
    timeout: Optional[float] = None
    # Structured view of the same context, for oracles that do not read prose.
    payload: Dict[str, Any] = field(default_factory=dict)


class ReasoningOracle(ABC):
    """External reasoning capability consulted when memory is insufficient.

    ask() returns the parsed JSON object, or None when the answer is
    missing or unparseable. Transport failures are raised as ScrapeError
    so the resilience layer can decide whether to retry."""

    @abstractmethod
    def ask(self, request: OracleRequest) -> Optional[Dict[str, Any]]:
        ...


def parse_json_response(content: Optional[str]) -> Optional[Dict[str, Any]]:
    """Parse a JSON object from model output, tolerating ```json fences and chatter."""
    if not content:
        return None
    cleaned = re.sub(r"```(?:json)?|```", "", content, flags=re.IGNORECASE).strip()
    match = re.search(r"\{[\s\S]*\}", cleaned)
    try:
        parsed = json.loads(match.group(0) if match else cleaned)
    except json.JSONDecodeError:
        logger.warning("Oracle returned unparseable content: %.120s", content)
        return None
    return parsed if isinstance(parsed, dict) else None


class OpenAIOracle(ReasoningOracle):
    """Chat-completions backed oracle using JSON response format."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: str = "gpt-4o",
        temperature: float = 0.1,
        max_tokens: int = 2000,
        rate_limiter: Optional[RateLimiter] = None,
        client: Optional[openai.OpenAI] = None,
    ) -> None:
        self._client = client or openai.OpenAI(api_key=api_key)
        self._model = model
        self._temperature = temperature
        self._max_tokens = max_tokens
        self._rate_limiter = rate_limiter or RateLimiter(qps=0)

    def ask(self, request: OracleRequest) -> Optional[Dict[str, Any]]:
        if not self._rate_limiter.acquire(max_wait=request.timeout):
            raise ScrapeError(ErrorCode.LLM_RATE_LIMIT, "Local oracle rate limit would exceed the request budget")
        try:
            response = self._client.chat.completions.create(
                model=self._model,
                messages=[
                    {"role": "system", "content": request.system},
                    {"role": "user", "content": request.prompt},
                ],
                temperature=self._temperature,
                max_tokens=self._max_tokens,
                response_format={"type": "json_object"},
                timeout=request.timeout,
            )
        except openai.OpenAIError as exc:
            raise handle_llm_error(exc, {"kind": request.kind, "model": self._model}) from exc

        content = response.choices[0].message.content if response.choices else None
        return parse_json_response(content)


class HttpOracle(ReasoningOracle):
    """Oracle behind a plain JSON-over-HTTP endpoint (self-hosted gateways).

    POSTs {kind, system, prompt, payload}; the endpoint answers either with
    the decision object itself or with {"content": "<model text>"}."""

    def __init__(
        self,
        endpoint: str,
        timeout: float = 30.0,
        session: Optional[requests.Session] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> None:
        self._endpoint = endpoint
        self._timeout = timeout
        self._session = session or requests.Session()
        self._headers = headers or {}

    def ask(self, request: OracleRequest) -> Optional[Dict[str, Any]]:
        body = {"kind": request.kind, "system": request.system, "prompt": request.prompt, "payload": request.payload}
        try:
            resp = self._session.post(self._endpoint, json=body, headers=self._headers, timeout=request.timeout or self._timeout)
        except requests.RequestException as exc:
            raise handle_network_error(exc, {"endpoint": self._endpoint}) from exc

        if resp.status_code == 429:
            raise ScrapeError(ErrorCode.LLM_RATE_LIMIT, "Oracle endpoint rate limit exceeded", context={"endpoint": self._endpoint})
        if resp.status_code == 402:
            raise ScrapeError(ErrorCode.LLM_QUOTA_EXCEEDED, "Oracle endpoint quota exceeded", context={"endpoint": self._endpoint})
        if resp.status_code >= 500:
            raise ScrapeError(ErrorCode.NETWORK_ERROR, f"Oracle endpoint returned HTTP {resp.status_code}", context={"endpoint": self._endpoint})
        if not 200 <= resp.status_code < 300:
            raise handle_llm_error(RuntimeError(f"HTTP {resp.status_code}: {resp.text[:200]}"), {"endpoint": self._endpoint})

        try:
            data = resp.json()
        except ValueError:
            return parse_json_response(resp.text)
        if isinstance(data, dict) and isinstance(data.get("content"), str):
            return parse_json_response(data["content"])
        return data if isinstance(data, dict) else None


class RuleBasedOracle(ReasoningOracle):
    """Deterministic offline oracle.

    Proposes extracting the first missing target with knowledge-base
    selectors that match the current markup, skipping strategies that
    already failed in this run."""

    def ask(self, request: OracleRequest) -> Optional[Dict[str, Any]]:
        payload = request.payload
        candidates = self._candidates(payload)
        if request.kind == "selectors":
            return {
                "selectors": {t: sels[0] for t, sels in candidates.items()},
                "alternatives": {t: sels[1:] for t, sels in candidates.items()},
                "reasoning": "Knowledge-base selectors matching the current markup",
                "confidence": 0.5 if candidates else 0.2,
            }

        decision = self._decision(candidates)
        if request.kind == "sequence":
            return {"sequence": [decision]}
        return decision

    @staticmethod
    def _candidates(payload: Dict[str, Any]) -> Dict[str, List[str]]:
        targets = payload.get("missing_targets") or payload.get("targets") or []
        failed = set(payload.get("failed_strategies") or [])
        suggested = suggest_selectors(
            payload.get("html", ""),
            targets,
            url=payload.get("url", ""),
            content_type=payload.get("content_type", "generic"),
        )
        return {t: [s for s in sels if s not in failed] for t, sels in suggested.items() if any(s not in failed for s in sels)}

    @staticmethod
    def _decision(candidates: Dict[str, List[str]]) -> Dict[str, Any]:
        if not candidates:
            return {
                "action": "analyze",
                "reasoning": "No known selector matches the remaining targets",
                "confidence": 0.2,
                "parameters": {},
            }
        target, selectors = next(iter(candidates.items()))
        return {
            "action": "extract",
            "reasoning": f"Known pattern {selectors[0]!r} matches content for {target}",
            "confidence": 0.6,
            "parameters": {"target": target, "selector": selectors[0], "alternatives": selectors[1:4]},
        }

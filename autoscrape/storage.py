from __future__ import annotations

import json
import logging
import queue
import threading
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, Optional

from .models import GoalResult, normalize_site

logger = logging.getLogger(__name__)


def result_record(result: GoalResult, include_trace: bool = True) -> Dict[str, Any]:
    """Flat JSON-ready view of a goal result, one per output line."""
    record: Dict[str, Any] = {
        "timestamp": time.time(),
        "goal": result.goal,
        "url": result.url,
        "site": normalize_site(result.url),
        "success": result.success,
        "status": result.status,
        "confidence": round(result.aggregate_confidence, 4),
        "steps": result.steps,
        "execution_time_ms": result.execution_time_ms,
        "data": result.data,
        "error_codes": [e.get("code") for e in result.errors],
        "last_error": result.errors[-1].get("message") if result.errors else None,
    }
    if include_trace:
        record["trace"] = [
            {"step": t.step, "action": t.action, "source": t.source, "confidence": t.confidence, "success": t.success}
            for t in result.decision_trace
        ]
    return record


class StorageBase(ABC):
    """Sink for finished goal results."""

    @abstractmethod
    def write(self, result: GoalResult) -> None:
        ...

    @abstractmethod
    def close(self) -> None:
        ...

    def __enter__(self) -> "StorageBase":
        return self

    def __exit__(self, *exc) -> None:
        self.close()


class JsonlStorage(StorageBase):
    """Appends goal results to a .jsonl file from a background writer thread.

    write() only enqueues, so worker threads never block on disk. close()
    drains the queue; writing after close() is an error."""

    def __init__(self, path: str, include_trace: bool = True) -> None:
        self._path = Path(path)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._include_trace = include_trace
        self._queue: "queue.Queue[Optional[GoalResult]]" = queue.Queue()
        self._closed = False
        self._written = 0
        self._thread = threading.Thread(target=self._writer, name="jsonl-writer", daemon=True)
        self._thread.start()

    @property
    def written(self) -> int:
        return self._written

    def write(self, result: GoalResult) -> None:
        if self._closed:
            raise RuntimeError(f"{self._path} is closed")
        self._queue.put(result)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put(None)
        self._thread.join(timeout=5)

    def _writer(self) -> None:
        with self._path.open("a", encoding="utf-8") as f:
            while True:
                item = self._queue.get()
                if item is None:
                    break
                try:
                    line = json.dumps(result_record(item, self._include_trace), ensure_ascii=False, default=str)
                except (TypeError, ValueError) as exc:
                    logger.error("Dropping unserializable result for %s: %s", item.url, exc)
                    continue
                f.write(line + "\n")
                f.flush()
                self._written += 1

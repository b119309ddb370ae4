"""
Pattern Store: SQLite-backed memory of which strategies worked where.

Holds an append-only log of OutcomeRecords plus two derived aggregates:
- strategy_patterns: (site, target, strategy, kind) -> counts, confidence
- sequence_patterns: (site, goal, step signature) -> counts, confidence

Confidence is the plain ratio success / (success + failure). The store
is the single writer of both aggregates; every write is one upsert inside
an immediate transaction so concurrent goal runs never lose an update.
Learning must never block extraction: write failures are logged and
swallowed, read failures return "no opinion".
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
import time
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence
from contextlib import contextmanager

from .errors import handle_database_error
from .models import (
    LearningMetrics,
    OutcomeRecord,
    SequencePattern,
    StrategyPattern,
    normalize_site,
    sequence_signature,
)

logger = logging.getLogger(__name__)

STRATEGY_THRESHOLD = 0.5
SEQUENCE_THRESHOLD = 0.6
HIGH_CONFIDENCE = 0.7

_SCHEMA = """
CREATE TABLE IF NOT EXISTS outcomes (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp REAL NOT NULL,
    site TEXT NOT NULL,
    target TEXT NOT NULL,
    strategy TEXT NOT NULL,
    kind TEXT NOT NULL,
    success INTEGER NOT NULL,
    error TEXT,
    context TEXT
);

CREATE TABLE IF NOT EXISTS strategy_patterns (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    site TEXT NOT NULL,
    target TEXT NOT NULL,
    strategy TEXT NOT NULL,
    kind TEXT NOT NULL,
    success_count INTEGER NOT NULL DEFAULT 0,
    failure_count INTEGER NOT NULL DEFAULT 0,
    last_used REAL NOT NULL,
    confidence REAL NOT NULL DEFAULT 0.0,
    UNIQUE(site, target, strategy, kind)
);

CREATE TABLE IF NOT EXISTS sequence_patterns (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    site TEXT NOT NULL,
    goal TEXT NOT NULL,
    signature TEXT NOT NULL,
    success_count INTEGER NOT NULL DEFAULT 0,
    failure_count INTEGER NOT NULL DEFAULT 0,
    last_used REAL NOT NULL,
    confidence REAL NOT NULL DEFAULT 0.0,
    UNIQUE(site, goal, signature)
);

CREATE INDEX IF NOT EXISTS idx_outcomes_key ON outcomes(site, target, strategy, kind);
CREATE INDEX IF NOT EXISTS idx_outcomes_timestamp ON outcomes(timestamp);
CREATE INDEX IF NOT EXISTS idx_strategy_site_target ON strategy_patterns(site, target);
CREATE INDEX IF NOT EXISTS idx_strategy_confidence ON strategy_patterns(confidence DESC);
CREATE INDEX IF NOT EXISTS idx_sequence_site_goal ON sequence_patterns(site, goal);
"""

_UPSERT_STRATEGY = """
INSERT INTO strategy_patterns
    (site, target, strategy, kind, success_count, failure_count, last_used, confidence)
VALUES (?, ?, ?, ?, ?, ?, ?, ?)
ON CONFLICT(site, target, strategy, kind) DO UPDATE SET
    success_count = success_count + excluded.success_count,
    failure_count = failure_count + excluded.failure_count,
    last_used = MAX(last_used, excluded.last_used),
    confidence = CAST(success_count + excluded.success_count AS REAL)
        / (success_count + excluded.success_count + failure_count + excluded.failure_count)
"""

_UPSERT_SEQUENCE = """
INSERT INTO sequence_patterns
    (site, goal, signature, success_count, failure_count, last_used, confidence)
VALUES (?, ?, ?, ?, ?, ?, ?)
ON CONFLICT(site, goal, signature) DO UPDATE SET
    success_count = success_count + excluded.success_count,
    failure_count = failure_count + excluded.failure_count,
    last_used = MAX(last_used, excluded.last_used),
    confidence = CAST(success_count + excluded.success_count AS REAL)
        / (success_count + excluded.success_count + failure_count + excluded.failure_count)
"""


def _strategy_from_row(row: sqlite3.Row) -> StrategyPattern:
    return StrategyPattern(
        site=row["site"],
        success_count=row["success_count"],
        failure_count=row["failure_count"],
        last_used=row["last_used"],
        confidence=row["confidence"],
        target=row["target"],
        strategy=row["strategy"],
        kind=row["kind"],
    )


def _sequence_from_row(row: sqlite3.Row) -> SequencePattern:
    return SequencePattern(
        site=row["site"],
        success_count=row["success_count"],
        failure_count=row["failure_count"],
        last_used=row["last_used"],
        confidence=row["confidence"],
        goal=row["goal"],
        signature=row["signature"],
    )


def _outcome_from_row(row: sqlite3.Row) -> OutcomeRecord:
    return OutcomeRecord(
        site=row["site"],
        target=row["target"],
        strategy=row["strategy"],
        kind=row["kind"],
        success=bool(row["success"]),
        timestamp=row["timestamp"],
        error=row["error"],
        context=json.loads(row["context"]) if row["context"] else {},
    )


class PatternStore:
    """Persistent strategy memory shared by every goal run in the process."""

    def __init__(self, db_path: str | Path = "data/learning.db", busy_timeout: float = 30.0) -> None:
        self.db_path = Path(db_path)
        self._busy_timeout = busy_timeout
        self._local = threading.local()
        self._connections: List[sqlite3.Connection] = []
        self._connections_lock = threading.Lock()
        self._init_db()

    def _get_connection(self) -> sqlite3.Connection:
        """Get this thread's connection, opening it on first use."""
        conn = getattr(self._local, "conn", None)
        if conn is None:
            conn = sqlite3.connect(
                str(self.db_path), timeout=self._busy_timeout, isolation_level=None, check_same_thread=False
            )
            conn.row_factory = sqlite3.Row
            self._local.conn = conn
            with self._connections_lock:
                self._connections.append(conn)
        return conn

    def _init_db(self) -> None:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = self._get_connection()
        conn.execute("PRAGMA journal_mode=WAL")
        conn.executescript(_SCHEMA)

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        conn = self._get_connection()
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        conn.execute("COMMIT")

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def record_outcome(self, record: OutcomeRecord) -> bool:
        """Append the record and fold it into its StrategyPattern.

        Returns False (after logging) when persistence failed."""
        site = normalize_site(record.site)
        key = (site, record.target, record.strategy, record.kind)
        ok = 1 if record.success else 0
        try:
            with self._transaction() as conn:
                conn.execute(
                    "INSERT INTO outcomes (timestamp, site, target, strategy, kind, success, error, context) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        record.timestamp,
                        *key,
                        ok,
                        record.error,
                        json.dumps(record.context, ensure_ascii=False, default=str) if record.context else None,
                    ),
                )
                conn.execute(_UPSERT_STRATEGY, (*key, ok, 1 - ok, record.timestamp, float(ok)))
            return True
        except sqlite3.Error as exc:
            error = handle_database_error(exc, {"site": site, "target": record.target, "strategy": record.strategy})
            logger.warning("Failed to record outcome: %s", error.message, exc_info=True)
            return False

    def record_sequence(
        self,
        site: str,
        goal: str,
        steps: Sequence[Dict[str, Any]],
        success: bool,
        timestamp: Optional[float] = None,
    ) -> bool:
        site = normalize_site(site)
        signature = sequence_signature(list(steps))
        ok = 1 if success else 0
        try:
            with self._transaction() as conn:
                conn.execute(_UPSERT_SEQUENCE, (site, goal, signature, ok, 1 - ok, timestamp or time.time(), float(ok)))
            return True
        except sqlite3.Error as exc:
            error = handle_database_error(exc, {"site": site, "goal": goal})
            logger.warning("Failed to record sequence: %s", error.message, exc_info=True)
            return False

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def best_strategies(self, site: str, target: str, kind: str = "extract", limit: int = 5) -> List[StrategyPattern]:
        """Patterns above the selector threshold, best first. Empty means no opinion."""
        try:
            rows = self._get_connection().execute(
                "SELECT * FROM strategy_patterns WHERE site = ? AND target = ? AND kind = ? AND confidence > ? "
                "ORDER BY confidence DESC, success_count DESC, last_used DESC LIMIT ?",
                (normalize_site(site), target, kind, STRATEGY_THRESHOLD, limit),
            ).fetchall()
        except sqlite3.Error:
            logger.warning("Failed to read strategies for %s/%s", site, target, exc_info=True)
            return []
        return [_strategy_from_row(r) for r in rows]

    def best_sequences(self, site: str, goal: str, limit: int = 3) -> List[SequencePattern]:
        try:
            rows = self._get_connection().execute(
                "SELECT * FROM sequence_patterns WHERE site = ? AND goal = ? AND confidence > ? "
                "ORDER BY confidence DESC, success_count DESC, last_used DESC LIMIT ?",
                (normalize_site(site), goal, SEQUENCE_THRESHOLD, limit),
            ).fetchall()
        except sqlite3.Error:
            logger.warning("Failed to read sequences for %s (%s)", site, goal, exc_info=True)
            return []
        return [_sequence_from_row(r) for r in rows]

    def get_strategy(self, site: str, target: str, strategy: str, kind: str = "extract") -> Optional[StrategyPattern]:
        row = self._get_connection().execute(
            "SELECT * FROM strategy_patterns WHERE site = ? AND target = ? AND strategy = ? AND kind = ?",
            (normalize_site(site), target, strategy, kind),
        ).fetchone()
        return _strategy_from_row(row) if row else None

    def outcomes(self, site: str, target: str, strategy: str, kind: str = "extract") -> List[OutcomeRecord]:
        rows = self._get_connection().execute(
            "SELECT * FROM outcomes WHERE site = ? AND target = ? AND strategy = ? AND kind = ? ORDER BY id",
            (normalize_site(site), target, strategy, kind),
        ).fetchall()
        return [_outcome_from_row(r) for r in rows]

    def replay_confidence(self, site: str, target: str, strategy: str, kind: str = "extract") -> Optional[float]:
        """Confidence recomputed from the outcome log alone (None when there is no log)."""
        row = self._get_connection().execute(
            "SELECT COUNT(*) AS total, COALESCE(SUM(success), 0) AS successes FROM outcomes "
            "WHERE site = ? AND target = ? AND strategy = ? AND kind = ?",
            (normalize_site(site), target, strategy, kind),
        ).fetchone()
        if not row["total"]:
            return None
        return row["successes"] / row["total"]

    def metrics(self, top: int = 10, recent: int = 20) -> LearningMetrics:
        """Aggregate view for observability; not used for decisions."""
        conn = self._get_connection()
        totals = conn.execute("SELECT COUNT(*) AS n, COALESCE(SUM(success), 0) AS ok FROM outcomes").fetchone()
        patterns = conn.execute("SELECT COUNT(*) AS n, AVG(confidence) AS avg FROM strategy_patterns").fetchone()
        top_rows = conn.execute(
            "SELECT * FROM strategy_patterns WHERE confidence > ? ORDER BY confidence DESC, success_count DESC LIMIT ?",
            (HIGH_CONFIDENCE, top),
        ).fetchall()
        recent_rows = conn.execute("SELECT * FROM outcomes ORDER BY timestamp DESC, id DESC LIMIT ?", (recent,)).fetchall()
        return LearningMetrics(
            total_interactions=totals["n"],
            success_rate=(totals["ok"] / totals["n"]) if totals["n"] else 0.0,
            total_patterns=patterns["n"],
            average_confidence=patterns["avg"] or 0.0,
            top_patterns=[_strategy_from_row(r) for r in top_rows],
            recent_activity=[_outcome_from_row(r) for r in recent_rows],
        )

    def training_data(self, limit: int = 1000) -> Dict[str, List[OutcomeRecord]]:
        conn = self._get_connection()
        positive = conn.execute("SELECT * FROM outcomes WHERE success = 1 ORDER BY timestamp DESC LIMIT ?", (limit,)).fetchall()
        negative = conn.execute("SELECT * FROM outcomes WHERE success = 0 ORDER BY timestamp DESC LIMIT ?", (limit,)).fetchall()
        return {
            "positive": [_outcome_from_row(r) for r in positive],
            "negative": [_outcome_from_row(r) for r in negative],
        }

    def close(self) -> None:
        with self._connections_lock:
            connections, self._connections = self._connections, []
        for conn in connections:
            conn.close()
        self._local = threading.local()

# src/perfaudit/history.py
"""History store abstraction with in-memory and local SQLite backends.

The store keeps, per normalized URL, the most recent completed analyses
(newest first). The comparison engine reads the latest one before the
orchestrator writes the new result.
"""

import json
import sqlite3
import threading
from abc import ABC, abstractmethod
from collections import deque
from datetime import datetime
from typing import Deque, Dict, List, Optional
import logging

from perfaudit.config import settings
from perfaudit.constants import MAX_HISTORY_PER_URL
from perfaudit.models import AnalysisRecord, ScoreSnapshot

logger = logging.getLogger(__name__)

CREATE_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS analysis_history (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    url TEXT NOT NULL,
    job_id TEXT,
    analyzed_at TIMESTAMP NOT NULL,
    scores TEXT NOT NULL
);
"""

CREATE_INDEX_SQL = """
CREATE INDEX IF NOT EXISTS idx_analysis_history_url
ON analysis_history (url, analyzed_at);
"""


class AbstractHistoryStore(ABC):
    """Keyed read/write interface for past analyses."""

    @abstractmethod
    def get(self, url: str) -> Optional[AnalysisRecord]:
        """Return the latest stored analysis for ``url``, or None."""
        pass

    @abstractmethod
    def put(self, url: str, record: AnalysisRecord) -> None:
        """Store ``record`` as the latest analysis for ``url``."""
        pass

    @abstractmethod
    def history(self, url: str) -> List[AnalysisRecord]:
        """All retained analyses for ``url``, newest first."""
        pass

    @abstractmethod
    def clear_history(self, url: str) -> None:
        pass

    @abstractmethod
    def stored_urls(self) -> List[str]:
        pass

    def close(self) -> None:
        """Release backend resources."""


class InMemoryHistoryStore(AbstractHistoryStore):
    """Process-local store keeping the last ``max_per_url`` analyses per URL."""

    def __init__(self, max_per_url: int = MAX_HISTORY_PER_URL):
        self.max_per_url = max_per_url
        self._history: Dict[str, Deque[AnalysisRecord]] = {}
        self._lock = threading.Lock()

    def get(self, url: str) -> Optional[AnalysisRecord]:
        with self._lock:
            records = self._history.get(url)
            return records[0] if records else None

    def put(self, url: str, record: AnalysisRecord) -> None:
        with self._lock:
            records = self._history.setdefault(url, deque(maxlen=self.max_per_url))
            records.appendleft(record)

    def history(self, url: str) -> List[AnalysisRecord]:
        with self._lock:
            return list(self._history.get(url, ()))

    def clear_history(self, url: str) -> None:
        with self._lock:
            self._history.pop(url, None)

    def stored_urls(self) -> List[str]:
        with self._lock:
            return list(self._history)


class SqliteHistoryStore(AbstractHistoryStore):
    """SQLite-backed store for analysis history."""

    def __init__(self, db_url: Optional[str] = None, max_per_url: int = MAX_HISTORY_PER_URL):
        """Initialize local SQLite store.

        Args:
            db_url: Database URL (sqlite:///path/to/db.db). Defaults to settings.HISTORY_DB.
            max_per_url: Analyses retained per URL
        """
        self.db_url = db_url or settings.HISTORY_DB
        self.db_path = self.db_url.replace("sqlite:///", "")
        self.max_per_url = max_per_url
        self.conn: Optional[sqlite3.Connection] = None
        self._lock = threading.Lock()
        self.connect()
        self.create_schema()

    def connect(self) -> None:
        """Establish SQLite connection."""
        self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        logger.debug(f"Connected to history database: {self.db_path}")

    def close(self) -> None:
        """Close SQLite connection."""
        if self.conn:
            self.conn.close()
            self.conn = None
            logger.debug("Closed history database connection")

    def create_schema(self) -> None:
        with self.conn:
            self.conn.execute(CREATE_TABLE_SQL)
            self.conn.execute(CREATE_INDEX_SQL)

    def get(self, url: str) -> Optional[AnalysisRecord]:
        records = self._select(url, limit=1)
        return records[0] if records else None

    def put(self, url: str, record: AnalysisRecord) -> None:
        with self._lock, self.conn:
            self.conn.execute(
                "INSERT INTO analysis_history (url, job_id, analyzed_at, scores) "
                "VALUES (?, ?, ?, ?)",
                (
                    url,
                    record.job_id,
                    record.analyzed_at.isoformat(),
                    json.dumps(record.scores.to_dict()),
                ),
            )
            # Trim to the newest max_per_url rows
            self.conn.execute(
                "DELETE FROM analysis_history WHERE url = ? AND id NOT IN ("
                "SELECT id FROM analysis_history WHERE url = ? "
                "ORDER BY analyzed_at DESC, id DESC LIMIT ?)",
                (url, url, self.max_per_url),
            )
        logger.debug(f"Saved analysis for {url}")

    def history(self, url: str) -> List[AnalysisRecord]:
        return self._select(url, limit=self.max_per_url)

    def clear_history(self, url: str) -> None:
        with self._lock, self.conn:
            self.conn.execute("DELETE FROM analysis_history WHERE url = ?", (url,))

    def stored_urls(self) -> List[str]:
        with self._lock:
            cursor = self.conn.execute(
                "SELECT DISTINCT url FROM analysis_history ORDER BY url"
            )
            return [row["url"] for row in cursor.fetchall()]

    def _select(self, url: str, limit: int) -> List[AnalysisRecord]:
        with self._lock:
            cursor = self.conn.execute(
                "SELECT * FROM analysis_history WHERE url = ? "
                "ORDER BY analyzed_at DESC, id DESC LIMIT ?",
                (url, limit),
            )
            rows = cursor.fetchall()
        return [
            AnalysisRecord(
                url=row["url"],
                scores=ScoreSnapshot.from_dict(json.loads(row["scores"])),
                analyzed_at=datetime.fromisoformat(row["analyzed_at"]),
                job_id=row["job_id"],
            )
            for row in rows
        ]


def get_history_store(max_per_url: int = MAX_HISTORY_PER_URL) -> AbstractHistoryStore:
    """Factory function returning the store selected by PERFAUDIT_HISTORY_BACKEND.

    Returns:
        AbstractHistoryStore implementation
    """
    backend = settings.HISTORY_BACKEND.lower()

    if backend == "sqlite":
        logger.info("Using SQLite history store")
        return SqliteHistoryStore(max_per_url=max_per_url)
    elif backend == "memory":
        logger.info("Using in-memory history store")
        return InMemoryHistoryStore(max_per_url=max_per_url)
    else:
        raise ValueError(
            f"Unknown PERFAUDIT_HISTORY_BACKEND: {backend}. Must be 'memory' or 'sqlite'."
        )

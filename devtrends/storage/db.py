"""
Database connection management.

Provides the SQLite store shared by every worker process: rate-limit
windows, telemetry, prompt versions, feedback, configuration, chat
history, digests and anomaly rows.
Connections are opened per operation so calls can run on worker threads.
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from devtrends.common.exceptions import StorageError

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS rate_limit_windows (
    endpoint TEXT NOT NULL,
    identifier TEXT NOT NULL,
    window_start TEXT NOT NULL,
    request_count INTEGER NOT NULL DEFAULT 0,
    PRIMARY KEY (endpoint, identifier, window_start)
);

CREATE TABLE IF NOT EXISTS ai_telemetry (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    event TEXT NOT NULL,
    provider TEXT NOT NULL,
    model TEXT NOT NULL,
    use_case TEXT NOT NULL,
    latency_ms INTEGER,
    token_input INTEGER,
    token_output INTEGER,
    quality_score REAL,
    error TEXT,
    metadata TEXT NOT NULL DEFAULT '{}',
    estimated_cost REAL NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_ai_telemetry_created_at ON ai_telemetry (created_at);

CREATE TABLE IF NOT EXISTS prompt_versions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    prompt_key TEXT NOT NULL,
    version INTEGER NOT NULL,
    content TEXT NOT NULL,
    is_active INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    UNIQUE (prompt_key, version)
);
CREATE UNIQUE INDEX IF NOT EXISTS idx_prompt_versions_single_active
    ON prompt_versions (prompt_key) WHERE is_active = 1;

CREATE TABLE IF NOT EXISTS system_config (
    config_key TEXT PRIMARY KEY,
    config_value TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS insight_feedback (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    insight_id TEXT NOT NULL,
    helpful INTEGER NOT NULL,
    reason TEXT,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_insight_feedback_created_at ON insight_feedback (created_at);

CREATE TABLE IF NOT EXISTS ai_insights (
    insight_id TEXT PRIMARY KEY,
    subject TEXT NOT NULL,
    use_case TEXT NOT NULL,
    insight_data TEXT NOT NULL,
    provider TEXT NOT NULL,
    model TEXT NOT NULL,
    prompt_key TEXT,
    prompt_version INTEGER,
    ab_test TEXT,
    ab_variant TEXT,
    quality_score REAL,
    generated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS technologies (
    slug TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    category TEXT NOT NULL DEFAULT '',
    description TEXT NOT NULL DEFAULT '',
    metrics TEXT NOT NULL DEFAULT '{}',
    confidence_grade TEXT NOT NULL DEFAULT 'C'
);

CREATE TABLE IF NOT EXISTS conversations (
    session_id TEXT PRIMARY KEY,
    messages TEXT NOT NULL DEFAULT '[]',
    technologies_discussed TEXT NOT NULL DEFAULT '[]',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS weekly_digests (
    week_start TEXT PRIMARY KEY,
    insight_id TEXT NOT NULL,
    digest_data TEXT NOT NULL,
    provider TEXT NOT NULL,
    model TEXT NOT NULL,
    generated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS anomaly_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    technology_slug TEXT NOT NULL,
    anomaly_type TEXT NOT NULL,
    severity TEXT NOT NULL,
    metric TEXT NOT NULL,
    expected_value REAL NOT NULL,
    actual_value REAL NOT NULL,
    deviation_sigma REAL NOT NULL,
    context TEXT NOT NULL DEFAULT '{}',
    ai_explanation TEXT,
    resolved INTEGER NOT NULL DEFAULT 0,
    detected_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_anomaly_events_open ON anomaly_events (resolved, detected_at);
"""


class Database:
    """
    Handle on the shared SQLite file.

    Connections run in autocommit mode; multi-statement changes go through
    ``transaction()`` which takes the write lock up front (BEGIN IMMEDIATE).

    Example:
        db = Database("workspace/devtrends.db")
        db.initialize()
        with db.transaction() as conn:
            conn.execute("UPDATE ...")
    """

    def __init__(self, path: str | Path, timeout: float = 30.0):
        self.path = Path(path)
        self.timeout = timeout

    def connect(self) -> sqlite3.Connection:
        """Open a new connection with WAL journaling and Row results."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(
            str(self.path),
            timeout=self.timeout,
            isolation_level=None,
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode = WAL")
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        """
        Yield a connection and close it afterwards.

        Raises:
            StorageError: If SQLite reports an error
        """
        try:
            conn = self.connect()
        except sqlite3.Error as e:
            raise StorageError(f"Cannot open database: {e}", context={"path": str(self.path)}) from e
        try:
            yield conn
        except sqlite3.Error as e:
            raise StorageError(f"Database operation failed: {e}") from e
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run the enclosed statements atomically; roll back on any exception."""
        with self.connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")

    def initialize(self) -> None:
        """Create tables and indexes if they do not exist."""
        with self.connection() as conn:
            conn.executescript(SCHEMA)
        logger.info("Database schema ready at %s", self.path)


__all__ = ["Database", "SCHEMA"]

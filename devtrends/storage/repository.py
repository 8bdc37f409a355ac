"""
Repository pattern for data access.

One repository per table; each opens a connection per call through the
shared ``Database`` so it can be used from worker threads. Multi-step
changes (version allocation, activation, read-modify-write of config
documents) run inside ``Database.transaction()``.
"""

from __future__ import annotations

import json
from collections.abc import Callable, Iterable
from dataclasses import asdict
from typing import Any

from devtrends.common.exceptions import NotFoundError
from devtrends.common.time_utils import current_timestamp

from .db import Database
from .models import (
    AnomalyEvent,
    ChatMessage,
    Conversation,
    DigestRecord,
    FeedbackRecord,
    InsightRecord,
    PromptVersion,
    TelemetryEvent,
    Technology,
)

# =============================================================================
# Rate limit windows
# =============================================================================


class RateLimitRepository:
    """Shared fixed-window counters for the rate limiter."""

    def __init__(self, db: Database):
        self.db = db

    def increment(self, endpoint: str, identifier: str, window_start: str) -> int:
        """
        Atomically count one request in a window and return the new count.

        A single upsert statement does the check-and-increment inside SQLite,
        so concurrent workers never read-then-write the counter.
        """
        with self.db.connection() as conn:
            # RETURNING rows must be fully consumed before the autocommit completes
            rows = conn.execute(
                """
                INSERT INTO rate_limit_windows (endpoint, identifier, window_start, request_count)
                VALUES (?, ?, ?, 1)
                ON CONFLICT (endpoint, identifier, window_start)
                DO UPDATE SET request_count = request_count + 1
                RETURNING request_count
                """,
                (endpoint, identifier, window_start),
            ).fetchall()
        return int(rows[0]["request_count"])

    def purge_expired(self, before: str) -> int:
        """Delete windows that started before ``before``; returns rows removed."""
        with self.db.connection() as conn:
            cursor = conn.execute(
                "DELETE FROM rate_limit_windows WHERE window_start < ?", (before,)
            )
            return cursor.rowcount


# =============================================================================
# Telemetry
# =============================================================================


def _row_to_event(row: Any) -> TelemetryEvent:
    return TelemetryEvent(
        event=row["event"],
        provider=row["provider"],
        model=row["model"],
        use_case=row["use_case"],
        latency_ms=row["latency_ms"],
        token_input=row["token_input"],
        token_output=row["token_output"],
        quality_score=row["quality_score"],
        error=row["error"],
        metadata=json.loads(row["metadata"] or "{}"),
        estimated_cost=row["estimated_cost"] or 0.0,
        created_at=row["created_at"],
    )


class TelemetryRepository:
    """Append-only log of AI call outcomes (``ai_telemetry``)."""

    def __init__(self, db: Database):
        self.db = db

    def insert(self, event: TelemetryEvent) -> None:
        with self.db.connection() as conn:
            conn.execute(
                """
                INSERT INTO ai_telemetry (
                    event, provider, model, use_case, latency_ms, token_input,
                    token_output, quality_score, error, metadata, estimated_cost, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    event.event,
                    event.provider,
                    event.model,
                    event.use_case,
                    event.latency_ms,
                    event.token_input,
                    event.token_output,
                    event.quality_score,
                    event.error,
                    json.dumps(event.metadata, default=str),
                    event.estimated_cost,
                    event.created_at,
                ),
            )

    def list_since(
        self, since: str, events: Iterable[str] | None = None
    ) -> list[TelemetryEvent]:
        """
        Events created at or after ``since`` (ISO date or timestamp), oldest first.

        Args:
            since: Lower bound compared against ``created_at``
            events: Optional event kinds to keep
        """
        query = "SELECT * FROM ai_telemetry WHERE created_at >= ?"
        params: list[Any] = [since]
        kinds = list(events or [])
        if kinds:
            query += f" AND event IN ({', '.join('?' for _ in kinds)})"
            params.extend(kinds)
        query += " ORDER BY created_at ASC, id ASC"

        with self.db.connection() as conn:
            return [_row_to_event(row) for row in conn.execute(query, params)]

    def metadata_by_insight(self, insight_ids: Iterable[str]) -> dict[str, dict[str, Any]]:
        """
        Latest generation metadata for each insight id found in event metadata.

        Feedback is tied to telemetry only through the ``insight_id`` key the
        generation path stores in ``metadata``.
        """
        ids = list(dict.fromkeys(insight_ids))
        if not ids:
            return {}

        placeholders = ", ".join("?" for _ in ids)
        query = f"""
            SELECT json_extract(metadata, '$.insight_id') AS insight_id, metadata
            FROM ai_telemetry
            WHERE event IN ('generation', 'quality_fail')
              AND json_extract(metadata, '$.insight_id') IN ({placeholders})
            ORDER BY created_at ASC, id ASC
        """
        found: dict[str, dict[str, Any]] = {}
        with self.db.connection() as conn:
            for row in conn.execute(query, ids):
                found[row["insight_id"]] = json.loads(row["metadata"])
        return found


# =============================================================================
# Prompt versions
# =============================================================================


def _row_to_prompt(row: Any) -> PromptVersion:
    return PromptVersion(
        prompt_key=row["prompt_key"],
        version=row["version"],
        content=row["content"],
        is_active=bool(row["is_active"]),
        created_at=row["created_at"],
    )


class PromptRepository:
    """Versioned prompt text; at most one active version per key."""

    def __init__(self, db: Database):
        self.db = db

    def get_active(self, prompt_key: str) -> PromptVersion | None:
        with self.db.connection() as conn:
            row = conn.execute(
                "SELECT * FROM prompt_versions WHERE prompt_key = ? AND is_active = 1",
                (prompt_key,),
            ).fetchone()
        return _row_to_prompt(row) if row else None

    def get_version(self, prompt_key: str, version: int) -> PromptVersion | None:
        with self.db.connection() as conn:
            row = conn.execute(
                "SELECT * FROM prompt_versions WHERE prompt_key = ? AND version = ?",
                (prompt_key, version),
            ).fetchone()
        return _row_to_prompt(row) if row else None

    def list_versions(self, prompt_key: str) -> list[PromptVersion]:
        """All versions of a key, newest first."""
        with self.db.connection() as conn:
            rows = conn.execute(
                "SELECT * FROM prompt_versions WHERE prompt_key = ? ORDER BY version DESC",
                (prompt_key,),
            ).fetchall()
        return [_row_to_prompt(row) for row in rows]

    def list_keys(self) -> list[str]:
        with self.db.connection() as conn:
            rows = conn.execute(
                "SELECT DISTINCT prompt_key FROM prompt_versions ORDER BY prompt_key"
            ).fetchall()
        return [row["prompt_key"] for row in rows]

    def has_key(self, prompt_key: str) -> bool:
        with self.db.connection() as conn:
            row = conn.execute(
                "SELECT 1 FROM prompt_versions WHERE prompt_key = ? LIMIT 1", (prompt_key,)
            ).fetchone()
        return row is not None

    def create(self, prompt_key: str, content: str, activate: bool = False) -> int:
        """
        Insert the next version of ``prompt_key`` and return its number.

        The version number is allocated under the write lock, so two
        concurrent creations never collide.
        """
        with self.db.transaction() as conn:
            row = conn.execute(
                "SELECT COALESCE(MAX(version), 0) + 1 AS next_version "
                "FROM prompt_versions WHERE prompt_key = ?",
                (prompt_key,),
            ).fetchone()
            version = int(row["next_version"])
            if activate:
                conn.execute(
                    "UPDATE prompt_versions SET is_active = 0 "
                    "WHERE prompt_key = ? AND is_active = 1",
                    (prompt_key,),
                )
            conn.execute(
                "INSERT INTO prompt_versions (prompt_key, version, content, is_active, created_at) "
                "VALUES (?, ?, ?, ?, ?)",
                (prompt_key, version, content, int(activate), current_timestamp()),
            )
        return version

    def activate(self, prompt_key: str, version: int) -> None:
        """
        Make ``version`` the only active version of ``prompt_key``.

        Raises:
            NotFoundError: If the version does not exist (nothing is changed)
        """
        with self.db.transaction() as conn:
            conn.execute(
                "UPDATE prompt_versions SET is_active = 0 WHERE prompt_key = ? AND is_active = 1",
                (prompt_key,),
            )
            cursor = conn.execute(
                "UPDATE prompt_versions SET is_active = 1 WHERE prompt_key = ? AND version = ?",
                (prompt_key, version),
            )
            if cursor.rowcount != 1:
                raise NotFoundError(
                    "Prompt version not found",
                    context={"prompt_key": prompt_key, "version": version},
                )

    def deactivate(self, prompt_key: str, version: int) -> None:
        """Clear the active flag on one version (the key then serves no prompt)."""
        with self.db.connection() as conn:
            updated = conn.execute(
                "UPDATE prompt_versions SET is_active = 0 WHERE prompt_key = ? AND version = ?",
                (prompt_key, version),
            ).rowcount
        if updated != 1:
            raise NotFoundError(
                "Prompt version not found",
                context={"prompt_key": prompt_key, "version": version},
            )


# =============================================================================
# System config (JSON documents)
# =============================================================================


class ConfigRepository:
    """Key/value JSON documents in ``system_config`` (budgets, experiments)."""

    def __init__(self, db: Database):
        self.db = db

    def get(self, key: str) -> Any | None:
        with self.db.connection() as conn:
            row = conn.execute(
                "SELECT config_value FROM system_config WHERE config_key = ?", (key,)
            ).fetchone()
        return json.loads(row["config_value"]) if row else None

    def set(self, key: str, value: Any) -> None:
        with self.db.connection() as conn:
            conn.execute(
                """
                INSERT INTO system_config (config_key, config_value, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT (config_key)
                DO UPDATE SET config_value = excluded.config_value, updated_at = excluded.updated_at
                """,
                (key, json.dumps(value, default=str), current_timestamp()),
            )

    def update(self, key: str, mutate: Callable[[Any], Any]) -> Any:
        """
        Read-modify-write one document under the write lock.

        Args:
            key: Config key
            mutate: Receives the current value and returns the new one

        Returns:
            The stored value

        Raises:
            NotFoundError: If the key does not exist
        """
        with self.db.transaction() as conn:
            row = conn.execute(
                "SELECT config_value FROM system_config WHERE config_key = ?", (key,)
            ).fetchone()
            if row is None:
                raise NotFoundError("Config entry not found", context={"key": key})
            value = mutate(json.loads(row["config_value"]))
            conn.execute(
                "UPDATE system_config SET config_value = ?, updated_at = ? WHERE config_key = ?",
                (json.dumps(value, default=str), current_timestamp(), key),
            )
        return value

    def list_prefix(self, prefix: str) -> dict[str, Any]:
        """All documents whose key starts with ``prefix`` (literal match, not LIKE)."""
        with self.db.connection() as conn:
            rows = conn.execute(
                "SELECT config_key, config_value FROM system_config "
                "WHERE substr(config_key, 1, ?) = ? ORDER BY config_key",
                (len(prefix), prefix),
            ).fetchall()
        return {row["config_key"]: json.loads(row["config_value"]) for row in rows}


# =============================================================================
# Feedback
# =============================================================================


class FeedbackRepository:
    """Anonymous feedback rows (``insight_feedback``)."""

    def __init__(self, db: Database):
        self.db = db

    def insert(self, record: FeedbackRecord) -> None:
        with self.db.connection() as conn:
            conn.execute(
                "INSERT INTO insight_feedback (insight_id, helpful, reason, created_at) "
                "VALUES (?, ?, ?, ?)",
                (record.insight_id, int(record.helpful), record.reason, record.created_at),
            )

    def list_since(self, since: str) -> list[FeedbackRecord]:
        """Feedback created at or after ``since``, newest first."""
        with self.db.connection() as conn:
            rows = conn.execute(
                "SELECT * FROM insight_feedback WHERE created_at >= ? "
                "ORDER BY created_at DESC, id DESC",
                (since,),
            ).fetchall()
        return [
            FeedbackRecord(
                insight_id=row["insight_id"],
                helpful=bool(row["helpful"]),
                reason=row["reason"],
                created_at=row["created_at"],
            )
            for row in rows
        ]


# =============================================================================
# Insights and technologies
# =============================================================================


def _row_to_insight(row: Any) -> InsightRecord:
    return InsightRecord(
        insight_id=row["insight_id"],
        subject=row["subject"],
        use_case=row["use_case"],
        insight_data=json.loads(row["insight_data"]),
        provider=row["provider"],
        model=row["model"],
        prompt_key=row["prompt_key"],
        prompt_version=row["prompt_version"],
        ab_test=row["ab_test"],
        ab_variant=row["ab_variant"],
        quality_score=row["quality_score"],
        generated_at=row["generated_at"],
    )


class InsightRepository:
    """Generated insights served to callers (``ai_insights``)."""

    def __init__(self, db: Database):
        self.db = db

    def insert(self, record: InsightRecord) -> None:
        with self.db.connection() as conn:
            conn.execute(
                """
                INSERT INTO ai_insights (
                    insight_id, subject, use_case, insight_data, provider, model,
                    prompt_key, prompt_version, ab_test, ab_variant, quality_score, generated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.insight_id,
                    record.subject,
                    record.use_case,
                    json.dumps(record.insight_data, default=str),
                    record.provider,
                    record.model,
                    record.prompt_key,
                    record.prompt_version,
                    record.ab_test,
                    record.ab_variant,
                    record.quality_score,
                    record.generated_at,
                ),
            )

    def get(self, insight_id: str) -> InsightRecord | None:
        with self.db.connection() as conn:
            row = conn.execute(
                "SELECT * FROM ai_insights WHERE insight_id = ?", (insight_id,)
            ).fetchone()
        return _row_to_insight(row) if row else None

    def get_many(self, insight_ids: Iterable[str]) -> dict[str, InsightRecord]:
        ids = list(dict.fromkeys(insight_ids))
        if not ids:
            return {}
        placeholders = ", ".join("?" for _ in ids)
        with self.db.connection() as conn:
            rows = conn.execute(
                f"SELECT * FROM ai_insights WHERE insight_id IN ({placeholders})", ids
            ).fetchall()
        return {row["insight_id"]: _row_to_insight(row) for row in rows}

    def latest_for(self, subject: str, use_case: str) -> InsightRecord | None:
        """Most recently generated insight for a subject and use case."""
        with self.db.connection() as conn:
            row = conn.execute(
                "SELECT * FROM ai_insights WHERE subject = ? AND use_case = ? "
                "ORDER BY generated_at DESC LIMIT 1",
                (subject, use_case),
            ).fetchone()
        return _row_to_insight(row) if row else None


def _row_to_technology(row: Any) -> Technology:
    return Technology(
        slug=row["slug"],
        name=row["name"],
        category=row["category"],
        description=row["description"],
        metrics=json.loads(row["metrics"] or "{}"),
        confidence_grade=row["confidence_grade"],
    )


class TechnologyRepository:
    """Read-only view of technology data produced by the scoring pipeline."""

    def __init__(self, db: Database):
        self.db = db

    def get(self, slug: str) -> Technology | None:
        with self.db.connection() as conn:
            row = conn.execute("SELECT * FROM technologies WHERE slug = ?", (slug,)).fetchone()
        return _row_to_technology(row) if row else None

    def list_all(self, limit: int | None = None) -> list[Technology]:
        """Technologies ordered by slug; ``limit`` caps the count."""
        query = "SELECT * FROM technologies ORDER BY slug"
        params: tuple[Any, ...] = ()
        if limit is not None:
            query += " LIMIT ?"
            params = (limit,)
        with self.db.connection() as conn:
            return [_row_to_technology(row) for row in conn.execute(query, params)]

    def get_many(self, slugs: Iterable[str]) -> list[Technology]:
        wanted = list(dict.fromkeys(slugs))
        if not wanted:
            return []
        placeholders = ", ".join("?" for _ in wanted)
        with self.db.connection() as conn:
            rows = conn.execute(
                f"SELECT * FROM technologies WHERE slug IN ({placeholders}) ORDER BY slug", wanted
            ).fetchall()
        return [_row_to_technology(row) for row in rows]

    def upsert(self, technology: Technology) -> None:
        with self.db.connection() as conn:
            conn.execute(
                """
                INSERT INTO technologies (slug, name, category, description, metrics, confidence_grade)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT (slug) DO UPDATE SET
                    name = excluded.name,
                    category = excluded.category,
                    description = excluded.description,
                    metrics = excluded.metrics,
                    confidence_grade = excluded.confidence_grade
                """,
                (
                    technology.slug,
                    technology.name,
                    technology.category,
                    technology.description,
                    json.dumps(technology.metrics),
                    technology.confidence_grade,
                ),
            )


# =============================================================================
# Conversations
# =============================================================================


class ConversationRepository:
    """Chat history per session (``conversations``)."""

    def __init__(self, db: Database):
        self.db = db

    def get(self, session_id: str) -> Conversation | None:
        with self.db.connection() as conn:
            row = conn.execute(
                "SELECT * FROM conversations WHERE session_id = ?", (session_id,)
            ).fetchone()
        return _row_to_conversation(row) if row else None

    def append(
        self,
        session_id: str,
        messages: Iterable[ChatMessage],
        technologies: Iterable[str] = (),
    ) -> Conversation:
        """
        Add messages (and newly mentioned technologies) to a session.

        The session row is created on first use. Runs under the write lock so
        concurrent turns of one session never drop each other's messages.
        """
        now = current_timestamp()
        with self.db.transaction() as conn:
            row = conn.execute(
                "SELECT * FROM conversations WHERE session_id = ?", (session_id,)
            ).fetchone()
            current = _row_to_conversation(row) if row else Conversation(session_id=session_id)
            updated = Conversation(
                session_id=session_id,
                messages=(*current.messages, *messages),
                technologies_discussed=tuple(
                    dict.fromkeys((*current.technologies_discussed, *technologies))
                ),
            )
            conn.execute(
                """
                INSERT INTO conversations
                    (session_id, messages, technologies_discussed, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT (session_id) DO UPDATE SET
                    messages = excluded.messages,
                    technologies_discussed = excluded.technologies_discussed,
                    updated_at = excluded.updated_at
                """,
                (
                    session_id,
                    json.dumps([asdict(m) for m in updated.messages]),
                    json.dumps(list(updated.technologies_discussed)),
                    now,
                    now,
                ),
            )
        return updated


def _row_to_conversation(row: Any) -> Conversation:
    return Conversation(
        session_id=row["session_id"],
        messages=tuple(ChatMessage(**m) for m in json.loads(row["messages"] or "[]")),
        technologies_discussed=tuple(json.loads(row["technologies_discussed"] or "[]")),
    )


# =============================================================================
# Digests and anomalies
# =============================================================================


class DigestRepository:
    """One generated digest per week (``weekly_digests``)."""

    def __init__(self, db: Database):
        self.db = db

    def get(self, week_start: str) -> DigestRecord | None:
        with self.db.connection() as conn:
            row = conn.execute(
                "SELECT * FROM weekly_digests WHERE week_start = ?", (week_start,)
            ).fetchone()
        if row is None:
            return None
        return DigestRecord(
            week_start=row["week_start"],
            insight_id=row["insight_id"],
            digest_data=json.loads(row["digest_data"]),
            provider=row["provider"],
            model=row["model"],
            generated_at=row["generated_at"],
        )

    def save(self, record: DigestRecord) -> None:
        """Insert or replace the digest for ``record.week_start``."""
        with self.db.connection() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO weekly_digests
                    (week_start, insight_id, digest_data, provider, model, generated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    record.week_start,
                    record.insight_id,
                    json.dumps(record.digest_data, default=str),
                    record.provider,
                    record.model,
                    record.generated_at,
                ),
            )


# Highest severity first when listing open anomalies
_SEVERITY_RANK = (
    "CASE severity WHEN 'critical' THEN 3 WHEN 'significant' THEN 2 "
    "WHEN 'notable' THEN 1 ELSE 0 END"
)


def _row_to_anomaly(row: Any) -> AnomalyEvent:
    return AnomalyEvent(
        id=row["id"],
        technology_slug=row["technology_slug"],
        anomaly_type=row["anomaly_type"],
        severity=row["severity"],
        metric=row["metric"],
        expected_value=row["expected_value"],
        actual_value=row["actual_value"],
        deviation_sigma=row["deviation_sigma"],
        context=json.loads(row["context"] or "{}"),
        ai_explanation=json.loads(row["ai_explanation"]) if row["ai_explanation"] else None,
        resolved=bool(row["resolved"]),
        detected_at=row["detected_at"],
    )


class AnomalyRepository:
    """Anomalies written by the scoring pipeline (``anomaly_events``)."""

    def __init__(self, db: Database):
        self.db = db

    def insert(self, event: AnomalyEvent) -> int:
        with self.db.connection() as conn:
            cursor = conn.execute(
                """
                INSERT INTO anomaly_events (
                    technology_slug, anomaly_type, severity, metric, expected_value,
                    actual_value, deviation_sigma, context, resolved, detected_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    event.technology_slug,
                    event.anomaly_type,
                    event.severity,
                    event.metric,
                    event.expected_value,
                    event.actual_value,
                    event.deviation_sigma,
                    json.dumps(event.context, default=str),
                    int(event.resolved),
                    event.detected_at,
                ),
            )
            return cursor.lastrowid

    def get(self, anomaly_id: int) -> AnomalyEvent | None:
        with self.db.connection() as conn:
            row = conn.execute(
                "SELECT * FROM anomaly_events WHERE id = ?", (anomaly_id,)
            ).fetchone()
        return _row_to_anomaly(row) if row else None

    def list_unresolved(self, limit: int = 10) -> list[AnomalyEvent]:
        """Open anomalies, most severe then most recent first."""
        with self.db.connection() as conn:
            rows = conn.execute(
                f"SELECT * FROM anomaly_events WHERE resolved = 0 "
                f"ORDER BY {_SEVERITY_RANK} DESC, detected_at DESC, id DESC LIMIT ?",
                (limit,),
            ).fetchall()
        return [_row_to_anomaly(row) for row in rows]

    def set_explanation(self, anomaly_id: int, explanation: dict[str, Any]) -> None:
        """
        Raises:
            NotFoundError: If the anomaly does not exist
        """
        with self.db.connection() as conn:
            updated = conn.execute(
                "UPDATE anomaly_events SET ai_explanation = ? WHERE id = ?",
                (json.dumps(explanation, default=str), anomaly_id),
            ).rowcount
        if updated != 1:
            raise NotFoundError("Anomaly not found", context={"anomaly_id": anomaly_id})


__all__ = [
    "RateLimitRepository",
    "TelemetryRepository",
    "PromptRepository",
    "ConfigRepository",
    "FeedbackRepository",
    "InsightRepository",
    "TechnologyRepository",
    "ConversationRepository",
    "DigestRepository",
    "AnomalyRepository",
]

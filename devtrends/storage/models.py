"""
Data models for persisted rows.

Rows are append-only or versioned; the dataclasses are frozen so a value
read from storage cannot be mutated in place by accident.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from devtrends.common.time_utils import current_timestamp


class TelemetryEventKind(str, Enum):
    """Kinds of telemetry event recorded for AI calls."""

    GENERATION = "generation"
    CACHE_HIT = "cache_hit"
    CACHE_MISS = "cache_miss"
    QUALITY_FAIL = "quality_fail"
    RETRY = "retry"
    FALLBACK = "fallback"
    CIRCUIT_OPEN = "circuit_open"
    RATE_LIMITED = "rate_limited"
    FEEDBACK_RECEIVED = "feedback_received"
    ERROR = "error"


@dataclass(frozen=True)
class TelemetryEvent:
    """One AI call outcome.

    Attributes:
        event: Event kind (a ``TelemetryEventKind`` value)
        provider: Provider tag, or a placeholder such as "cache"/"none"
        model: Model identifier used for the call
        use_case: Calling feature, carried for cost and latency breakdowns
        latency_ms: Wall time of the call, when measured
        token_input: Prompt tokens reported by the provider
        token_output: Completion tokens reported by the provider
        quality_score: 0-100 score from the quality monitor
        error: Error message for failed calls
        metadata: Free-form details (prompt version, experiment arm, insight id)
        estimated_cost: USD estimate derived from the token counts
        created_at: ISO timestamp
    """

    event: str
    provider: str
    model: str
    use_case: str
    latency_ms: int | None = None
    token_input: int | None = None
    token_output: int | None = None
    quality_score: float | None = None
    error: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    estimated_cost: float = 0.0
    created_at: str = field(default_factory=current_timestamp)

    @property
    def total_tokens(self) -> int:
        return (self.token_input or 0) + (self.token_output or 0)


@dataclass(frozen=True)
class PromptVersion:
    """A stored version of a prompt."""

    prompt_key: str
    version: int
    content: str
    is_active: bool
    created_at: str


@dataclass(frozen=True)
class FeedbackRecord:
    """Anonymous thumbs-up/down on a generated insight."""

    insight_id: str
    helpful: bool
    reason: str | None = None
    created_at: str = field(default_factory=current_timestamp)


@dataclass(frozen=True)
class InsightRecord:
    """A generated insight served to a caller, with the prompt that produced it."""

    insight_id: str
    subject: str
    use_case: str
    insight_data: Any
    provider: str
    model: str
    prompt_key: str | None = None
    prompt_version: int | None = None
    ab_test: str | None = None
    ab_variant: str | None = None
    quality_score: float | None = None
    generated_at: str = field(default_factory=current_timestamp)


@dataclass(frozen=True)
class Technology:
    """Technology data supplied by the scoring pipeline."""

    slug: str
    name: str
    category: str = ""
    description: str = ""
    metrics: dict[str, Any] = field(default_factory=dict)
    confidence_grade: str = "C"


@dataclass(frozen=True)
class ChatMessage:
    role: str
    content: str
    timestamp: str = field(default_factory=current_timestamp)


@dataclass(frozen=True)
class Conversation:
    """Chat history of one session, oldest message first."""

    session_id: str
    messages: tuple[ChatMessage, ...] = ()
    technologies_discussed: tuple[str, ...] = ()


@dataclass(frozen=True)
class DigestRecord:
    """A generated weekly digest; ``insight_id`` links it to feedback."""

    week_start: str
    insight_id: str
    digest_data: dict[str, Any]
    provider: str
    model: str
    generated_at: str = field(default_factory=current_timestamp)


@dataclass(frozen=True)
class AnomalyEvent:
    """A statistical anomaly flagged by the scoring pipeline.

    Attributes:
        technology_slug: Technology the metric belongs to
        anomaly_type: spike, drop, divergence, trend_break or correlation_break
        severity: info, notable, significant or critical
        metric: Metric name (e.g. "github_stars")
        expected_value: Baseline the detector predicted
        actual_value: Observed value
        deviation_sigma: Distance from the baseline in standard deviations
        context: Recent news headlines, releases and commit counts
        ai_explanation: Stored explanation once one was generated
        id: Row id (None before insert)
    """

    technology_slug: str
    anomaly_type: str
    severity: str
    metric: str
    expected_value: float
    actual_value: float
    deviation_sigma: float
    context: dict[str, Any] = field(default_factory=dict)
    ai_explanation: dict[str, Any] | None = None
    resolved: bool = False
    detected_at: str = field(default_factory=current_timestamp)
    id: int | None = None


__all__ = [
    "TelemetryEventKind",
    "TelemetryEvent",
    "PromptVersion",
    "FeedbackRecord",
    "InsightRecord",
    "Technology",
    "ChatMessage",
    "Conversation",
    "DigestRecord",
    "AnomalyEvent",
]

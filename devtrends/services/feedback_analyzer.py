"""
Feedback collection and analysis.

Feedback is anonymous thumbs-up/down on a served insight. Analysis runs on
demand over the stored rows: overall stats and trend, per-day trend, best
and worst insights, per prompt-version stats (joined through the insight
metadata) and common complaint keywords.
"""

from __future__ import annotations

import logging
import re
from collections import Counter
from datetime import UTC, datetime
from typing import Any, Literal

from pydantic import Field

from devtrends.common.exceptions import ValidationError
from devtrends.common.time_utils import days_ago
from devtrends.common.types import CamelModel
from devtrends.storage import (
    FeedbackRecord,
    FeedbackRepository,
    InsightRecord,
    InsightRepository,
    TelemetryEventKind,
    TelemetryRepository,
)

from .ab_testing import ABTestManager
from .telemetry import TelemetryTracker

logger = logging.getLogger(__name__)

# Insights need this much feedback before they are ranked
MIN_FEEDBACK_PER_INSIGHT = 3
MAX_PERFORMERS = 10
# Prompt versions below this positive rate (with enough feedback) get a suggestion
LOW_POSITIVE_RATE = 0.5
MIN_FEEDBACK_FOR_SUGGESTION = 10
TREND_DELTA = 0.1
MAX_COMPLAINTS = 5
MAX_REASON_LENGTH = 1000

STOP_WORDS = frozenset(
    """
    the a an and or but is was are were been be have has had do does did will
    would should could may might must can this that these those i you he she it
    we they what which who when where why how not too very so just more also
    than about
    """.split()
)

TrendDirection = Literal["improving", "declining", "stable"]


# =============================================================================
# Models
# =============================================================================


class FeedbackStats(CamelModel):
    total_feedback: int = 0
    positive_count: int = 0
    negative_count: int = 0
    positive_rate: float = 0.0
    trend_direction: TrendDirection = "stable"


class InsightPerformance(CamelModel):
    insight_id: str
    subject: str
    use_case: str
    feedback_count: int
    positive_rate: float
    last_generated: str | None = None


class FeedbackTrend(CamelModel):
    date: str
    positive_rate: float
    feedback_count: int


class PromptVersionStats(CamelModel):
    prompt_key: str
    prompt_version: int | None = None
    ab_test: str | None = None
    ab_variant: str | None = None
    feedback_count: int = 0
    positive_count: int = 0
    positive_rate: float = 0.0


class IssuePatterns(CamelModel):
    common_complaints: list[str] = []
    improvement_suggestions: list[str] = []


class FeedbackAnalysis(CamelModel):
    overall: FeedbackStats = Field(default_factory=FeedbackStats)
    low_performers: list[InsightPerformance] = []
    top_performers: list[InsightPerformance] = []
    trends: list[FeedbackTrend] = []
    prompt_versions: list[PromptVersionStats] = []
    issue_patterns: IssuePatterns = Field(default_factory=IssuePatterns)


# =============================================================================
# Analyzer
# =============================================================================


class FeedbackAnalyzer:
    """
    Records feedback and analyses accumulated feedback.

    Example:
        analyzer = FeedbackAnalyzer(feedback_repo, insight_repo, telemetry_repo,
                                    tracker=tracker, experiments=experiments)
        analyzer.record_feedback("ins_123", helpful=False, reason="too vague")
        report = analyzer.analyze_feedback(days=7)
    """

    def __init__(
        self,
        feedback: FeedbackRepository,
        insights: InsightRepository,
        telemetry: TelemetryRepository,
        *,
        tracker: TelemetryTracker | None = None,
        experiments: ABTestManager | None = None,
    ):
        self.feedback = feedback
        self.insights = insights
        self.telemetry = telemetry
        self.tracker = tracker
        self.experiments = experiments

    def record_feedback(self, insight_id: Any, helpful: Any, reason: Any = None) -> FeedbackRecord:
        """
        Store feedback on an insight.

        The row is the only required write. The ``feedback_received`` event and
        the experiment arm update are side-writes whose failures are logged.

        Raises:
            ValidationError: If insight_id is missing or helpful is not a boolean
            StorageError: If the feedback row cannot be written
        """
        if not isinstance(insight_id, str) or not insight_id.strip():
            raise ValidationError("Missing insightId or helpful field")
        if not isinstance(helpful, bool):
            raise ValidationError("Missing insightId or helpful field")
        if reason is not None and not isinstance(reason, str):
            raise ValidationError("reason must be a string")

        record = FeedbackRecord(
            insight_id=insight_id,
            helpful=helpful,
            reason=reason[:MAX_REASON_LENGTH] if reason else None,
        )
        self.feedback.insert(record)

        if self.tracker is not None:
            self.tracker.emit(
                TelemetryEventKind.FEEDBACK_RECEIVED,
                provider="none",
                model="none",
                use_case="feedback",
                metadata={"insight_id": insight_id, "helpful": helpful, "reason": record.reason},
            )

        self._update_experiment(insight_id, helpful)
        return record

    def _update_experiment(self, insight_id: str, helpful: bool) -> None:
        if self.experiments is None:
            return
        try:
            insight = self.insights.get(insight_id)
            if insight is None or not insight.ab_test or insight.ab_variant not in ("A", "B"):
                return
            self.experiments.record_feedback(insight.ab_test, insight.ab_variant, helpful)
        except Exception as e:
            logger.warning("Failed to record A/B feedback for %s: %s", insight_id, e)

    # =========================================================================
    # Analysis
    # =========================================================================

    def analyze_feedback(self, days: int = 30, now: datetime | None = None) -> FeedbackAnalysis:
        """
        Analyse feedback from the last ``days`` days.

        Returns:
            FeedbackAnalysis; a zeroed analysis when there is no feedback
        """
        records = self.feedback.list_since(days_ago(days, now or datetime.now(UTC)))
        if not records:
            return FeedbackAnalysis()

        insight_ids = [r.insight_id for r in records]
        insights = self.insights.get_many(insight_ids)
        metadata = self.telemetry.metadata_by_insight(
            i for i in insight_ids if i not in insights
        )

        performers = _performances(records, insights, metadata)
        ranked = sorted(performers, key=lambda p: p.positive_rate, reverse=True)
        # An insight appears in at most one of the two lists
        split = min(MAX_PERFORMERS, (len(ranked) + 1) // 2)
        version_stats = _prompt_version_stats(records, insights, metadata)
        complaints = extract_keywords(
            r.reason for r in records if not r.helpful and r.reason
        )[:MAX_COMPLAINTS]

        return FeedbackAnalysis(
            overall=_overall(records),
            top_performers=ranked[:split],
            low_performers=list(reversed(ranked[split:]))[:MAX_PERFORMERS],
            trends=_daily_trends(records),
            prompt_versions=version_stats,
            issue_patterns=IssuePatterns(
                common_complaints=complaints,
                improvement_suggestions=_suggestions(version_stats),
            ),
        )


# =============================================================================
# Helpers
# =============================================================================


def _positive_rate(records: list[FeedbackRecord]) -> float:
    return sum(1 for r in records if r.helpful) / len(records) if records else 0.0


def _overall(records: list[FeedbackRecord]) -> FeedbackStats:
    """Records arrive newest first; the trend compares the newer half to the older."""
    positive = sum(1 for r in records if r.helpful)

    direction: TrendDirection = "stable"
    midpoint = len(records) // 2
    if midpoint:
        recent_rate = _positive_rate(records[:midpoint])
        older_rate = _positive_rate(records[midpoint:])
        if recent_rate > older_rate + TREND_DELTA:
            direction = "improving"
        elif recent_rate < older_rate - TREND_DELTA:
            direction = "declining"

    return FeedbackStats(
        total_feedback=len(records),
        positive_count=positive,
        negative_count=len(records) - positive,
        positive_rate=positive / len(records),
        trend_direction=direction,
    )


def _performances(
    records: list[FeedbackRecord],
    insights: dict[str, InsightRecord],
    metadata: dict[str, dict[str, Any]],
) -> list[InsightPerformance]:
    grouped: dict[str, list[FeedbackRecord]] = {}
    for record in records:
        grouped.setdefault(record.insight_id, []).append(record)

    performances = []
    for insight_id, group in grouped.items():
        if len(group) < MIN_FEEDBACK_PER_INSIGHT:
            continue
        insight = insights.get(insight_id)
        meta = metadata.get(insight_id, {})
        performances.append(
            InsightPerformance(
                insight_id=insight_id,
                subject=insight.subject if insight else str(meta.get("subject", "unknown")),
                use_case=insight.use_case if insight else str(meta.get("use_case", "unknown")),
                feedback_count=len(group),
                positive_rate=_positive_rate(group),
                last_generated=insight.generated_at if insight else None,
            )
        )
    return performances


def _daily_trends(records: list[FeedbackRecord]) -> list[FeedbackTrend]:
    by_day: dict[str, list[FeedbackRecord]] = {}
    for record in records:
        by_day.setdefault(record.created_at[:10], []).append(record)
    return [
        FeedbackTrend(date=date, positive_rate=_positive_rate(group), feedback_count=len(group))
        for date, group in sorted(by_day.items())
    ]


def _prompt_version_stats(
    records: list[FeedbackRecord],
    insights: dict[str, InsightRecord],
    metadata: dict[str, dict[str, Any]],
) -> list[PromptVersionStats]:
    """Feedback grouped by the prompt version (and experiment arm) that produced each insight."""
    stats: dict[tuple[Any, ...], PromptVersionStats] = {}
    for record in records:
        insight = insights.get(record.insight_id)
        if insight is not None:
            prompt_key, version = insight.prompt_key, insight.prompt_version
            ab_test, ab_variant = insight.ab_test, insight.ab_variant
        else:
            meta = metadata.get(record.insight_id, {})
            prompt_key, version = meta.get("prompt_key"), meta.get("prompt_version")
            ab_test, ab_variant = meta.get("ab_test"), meta.get("ab_variant")
        if not prompt_key:
            continue

        key = (prompt_key, version, ab_test, ab_variant)
        entry = stats.setdefault(
            key,
            PromptVersionStats(
                prompt_key=prompt_key,
                prompt_version=version,
                ab_test=ab_test,
                ab_variant=ab_variant,
            ),
        )
        entry.feedback_count += 1
        if record.helpful:
            entry.positive_count += 1
        entry.positive_rate = entry.positive_count / entry.feedback_count

    return sorted(
        stats.values(), key=lambda s: (s.prompt_key, s.prompt_version or 0, s.ab_variant or "")
    )


def _suggestions(version_stats: list[PromptVersionStats]) -> list[str]:
    suggestions = []
    for stats in version_stats:
        if (
            stats.feedback_count >= MIN_FEEDBACK_FOR_SUGGESTION
            and stats.positive_rate < LOW_POSITIVE_RATE
        ):
            label = f"{stats.prompt_key} v{stats.prompt_version}"
            if stats.ab_variant:
                label += f" (variant {stats.ab_variant})"
            suggestions.append(
                f"{label} has a {stats.positive_rate * 100:.0f}% positive rate over "
                f"{stats.feedback_count} ratings; revise it or test an alternative version"
            )
    return suggestions


def extract_keywords(comments: Any) -> list[str]:
    """
    Most frequent words across comments, most frequent first.

    Words of three letters or fewer and stop words are ignored.

    Example:
        >>> extract_keywords(["Too vague, vague advice", "advice was vague"])
        ['vague', 'advice']
    """
    counts: Counter[str] = Counter()
    for comment in comments:
        words = re.sub(r"[^\w\s]", "", comment.lower()).split()
        counts.update(w for w in words if len(w) > 3 and w not in STOP_WORDS)
    return [word for word, _ in counts.most_common()]


__all__ = [
    "FeedbackStats",
    "InsightPerformance",
    "FeedbackTrend",
    "PromptVersionStats",
    "IssuePatterns",
    "FeedbackAnalysis",
    "FeedbackAnalyzer",
    "extract_keywords",
]

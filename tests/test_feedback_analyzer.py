"""Tests for feedback recording and analysis."""

from __future__ import annotations

from datetime import UTC, datetime

import pytest

from devtrends.common.exceptions import ValidationError
from devtrends.services import FeedbackAnalysis, extract_keywords
from devtrends.storage import FeedbackRecord, InsightRecord, TelemetryEventKind

pytestmark = pytest.mark.unit

NOW = datetime(2024, 6, 15, 12, 0, tzinfo=UTC)


def _insight(insight_id: str, **fields) -> InsightRecord:
    defaults = {
        "subject": "rust",
        "use_case": "batch_insight",
        "insight_data": {"headline": "Rust keeps climbing"},
        "provider": "gemini",
        "model": "gemini-2.0-flash",
        "prompt_key": "analyst-system",
        "prompt_version": 1,
        "generated_at": "2024-06-14T09:00:00.000Z",
    }
    return InsightRecord(insight_id=insight_id, **{**defaults, **fields})


def _rate(feedback_repo, insight_id: str, helpful: bool, day: str = "2024-06-14", reason=None):
    feedback_repo.insert(
        FeedbackRecord(
            insight_id=insight_id,
            helpful=helpful,
            reason=reason,
            created_at=f"{day}T10:00:00.000Z",
        )
    )


class TestRecordFeedback:
    """Test cases for FeedbackAnalyzer.record_feedback."""

    @pytest.mark.parametrize(
        "insight_id, helpful",
        [(None, True), ("", True), ("ins_1", None), ("ins_1", "true"), ("ins_1", 1)],
    )
    def test_invalid_input_rejected(self, feedback, insight_id, helpful):
        with pytest.raises(ValidationError) as exc_info:
            feedback.record_feedback(insight_id, helpful)
        assert exc_info.value.message == "Missing insightId or helpful field"

    def test_stores_row_and_emits_event(self, feedback, feedback_repo, telemetry_repo):
        """Test that feedback is stored and a feedback_received event is logged."""
        feedback.record_feedback("ins_1", False, "too vague")

        (row,) = feedback_repo.list_since("2000-01-01")
        assert row.insight_id == "ins_1"
        assert row.helpful is False
        assert row.reason == "too vague"
        (event,) = telemetry_repo.list_since("2000-01-01", [TelemetryEventKind.FEEDBACK_RECEIVED.value])
        assert event.metadata["insight_id"] == "ins_1"

    def test_long_reason_truncated(self, feedback, feedback_repo):
        feedback.record_feedback("ins_1", True, "x" * 5000)
        (row,) = feedback_repo.list_since("2000-01-01")
        assert len(row.reason) == 1000

    def test_feedback_updates_experiment_arm(
        self, feedback, prompts, experiments, insight_repo
    ):
        """Test that feedback on an insight served by an arm counts against that arm."""
        prompts.create_prompt_version("analyst-system", "one", activate=True)
        prompts.create_prompt_version("analyst-system", "two")
        test = experiments.create_ab_test("analyst-system", 1, 2)
        insight_repo.insert(_insight("ins_ab", ab_test=test.test_key, ab_variant="B"))

        feedback.record_feedback("ins_ab", True)

        arm = experiments.get_test(test.test_key).metrics.variant_b
        assert arm.feedback_count == 1
        assert arm.positive_feedback == 1

    def test_feedback_on_unknown_insight_is_still_stored(self, feedback, feedback_repo):
        feedback.record_feedback("ins_unknown", True)
        assert len(feedback_repo.list_since("2000-01-01")) == 1


class TestAnalyzeFeedback:
    """Test cases for FeedbackAnalyzer.analyze_feedback."""

    def test_no_feedback_gives_zeroed_summary(self, feedback):
        analysis = feedback.analyze_feedback(days=30, now=NOW)

        assert analysis == FeedbackAnalysis()
        assert analysis.overall.total_feedback == 0
        assert analysis.overall.positive_rate == 0.0
        assert analysis.overall.trend_direction == "stable"

    def test_overall_and_daily_trends(self, feedback, feedback_repo):
        _rate(feedback_repo, "ins_1", True, "2024-06-13")
        _rate(feedback_repo, "ins_1", False, "2024-06-13")
        _rate(feedback_repo, "ins_2", True, "2024-06-14")

        analysis = feedback.analyze_feedback(days=30, now=NOW)

        assert analysis.overall.total_feedback == 3
        assert analysis.overall.positive_count == 2
        assert analysis.overall.positive_rate == pytest.approx(2 / 3)
        assert [(t.date, t.feedback_count) for t in analysis.trends] == [
            ("2024-06-13", 2),
            ("2024-06-14", 1),
        ]

    def test_old_feedback_is_excluded(self, feedback, feedback_repo):
        _rate(feedback_repo, "ins_1", True, "2024-01-01")
        assert feedback.analyze_feedback(days=7, now=NOW).overall.total_feedback == 0

    def test_trend_direction_declining(self, feedback, feedback_repo):
        for day in ("2024-06-10", "2024-06-11"):
            _rate(feedback_repo, "ins_1", True, day)
        for day in ("2024-06-13", "2024-06-14"):
            _rate(feedback_repo, "ins_1", False, day)

        assert feedback.analyze_feedback(now=NOW).overall.trend_direction == "declining"

    def test_performers_need_minimum_feedback(self, feedback, feedback_repo, insight_repo):
        insight_repo.insert(_insight("ins_good", subject="rust"))
        insight_repo.insert(_insight("ins_bad", subject="cobol"))
        for _ in range(3):
            _rate(feedback_repo, "ins_good", True)
            _rate(feedback_repo, "ins_bad", False)
        _rate(feedback_repo, "ins_rare", True)

        analysis = feedback.analyze_feedback(now=NOW)

        assert [p.insight_id for p in analysis.top_performers] == ["ins_good"]
        assert analysis.low_performers[0].insight_id == "ins_bad"
        assert analysis.low_performers[0].subject == "cobol"
        assert "ins_rare" not in {p.insight_id for p in analysis.top_performers}

    def test_top_and_low_performers_do_not_overlap(self, feedback, feedback_repo, insight_repo):
        for index, positives in enumerate([3, 2, 1, 0, 3]):
            insight_id = f"ins_{index}"
            insight_repo.insert(_insight(insight_id))
            for n in range(3):
                _rate(feedback_repo, insight_id, n < positives)

        analysis = feedback.analyze_feedback(now=NOW)

        top = [p.insight_id for p in analysis.top_performers]
        low = [p.insight_id for p in analysis.low_performers]
        assert len(top) == 3
        assert low == ["ins_3", "ins_2"]
        assert not set(top) & set(low)

    def test_many_performers_fill_both_lists(self, feedback, feedback_repo, insight_repo):
        for index in range(25):
            insight_id = f"ins_{index:02d}"
            insight_repo.insert(_insight(insight_id))
            for n in range(4):
                _rate(feedback_repo, insight_id, n < index % 5)

        analysis = feedback.analyze_feedback(now=NOW)

        assert len(analysis.top_performers) == 10
        assert len(analysis.low_performers) == 10
        top_ids = {p.insight_id for p in analysis.top_performers}
        assert not top_ids & {p.insight_id for p in analysis.low_performers}
        assert analysis.low_performers[0].positive_rate == 0.0

    def test_prompt_version_stats_and_suggestions(self, feedback, feedback_repo, insight_repo):
        """Test that low-rated prompt versions get an improvement suggestion."""
        insight_repo.insert(_insight("ins_v1", prompt_version=1))
        insight_repo.insert(_insight("ins_v2", prompt_version=2))
        for i in range(10):
            _rate(feedback_repo, "ins_v1", i < 2)
        _rate(feedback_repo, "ins_v2", True)

        analysis = feedback.analyze_feedback(now=NOW)

        stats = {s.prompt_version: s for s in analysis.prompt_versions}
        assert stats[1].feedback_count == 10
        assert stats[1].positive_rate == pytest.approx(0.2)
        assert stats[2].positive_rate == 1.0
        (suggestion,) = analysis.issue_patterns.improvement_suggestions
        assert suggestion.startswith("analyst-system v1")

    def test_prompt_version_joined_through_telemetry(self, feedback, feedback_repo, telemetry_repo):
        from devtrends.storage import TelemetryEvent

        telemetry_repo.insert(
            TelemetryEvent(
                event="generation",
                provider="groq",
                model="llama",
                use_case="chat",
                metadata={"insight_id": "ins_chat", "prompt_key": "chat-system", "prompt_version": 3},
            )
        )
        _rate(feedback_repo, "ins_chat", True)

        (stats,) = feedback.analyze_feedback(now=NOW).prompt_versions

        assert (stats.prompt_key, stats.prompt_version) == ("chat-system", 3)

    def test_common_complaints(self, feedback, feedback_repo):
        _rate(feedback_repo, "ins_1", False, reason="Too vague, generic advice")
        _rate(feedback_repo, "ins_2", False, reason="vague and outdated")
        _rate(feedback_repo, "ins_3", True, reason="vague but fine")

        complaints = feedback.analyze_feedback(now=NOW).issue_patterns.common_complaints

        assert complaints[0] == "vague"
        assert "fine" not in complaints


class TestExtractKeywords:
    def test_orders_by_frequency_and_skips_stop_words(self):
        assert extract_keywords(["Too vague, vague advice", "advice was vague"]) == [
            "vague",
            "advice",
        ]

    def test_empty(self):
        assert extract_keywords([]) == []

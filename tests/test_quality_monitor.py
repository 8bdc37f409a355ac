"""Tests for heuristic insight quality checks."""

from __future__ import annotations

import pytest

from devtrends.adapters.llm import TechInsight
from devtrends.services import check_insight_quality, insight_scorer

pytestmark = pytest.mark.unit

CONTEXT = "Technology: Rust (rust)\nMetrics:\n- github_stars: 95000\n- job_postings: 1200"

GOOD_INSIGHT = {
    "headline": "Rust gains 12 points and ranks #3 in systems languages",
    "scoreExplanation": "A composite score of 78 reflects 95000 GitHub stars and 1200 job postings.",
    "trendNarrative": "Growth of 12% compared to last quarter, steady across sources.",
    "momentumContext": "Momentum is higher than Go and ahead of C++ in its category.",
    "careerAdvice": "We recommend experienced backend developers should learn Rust this year.",
    "learningPriority": "high",
    "riskFactors": "Hiring demand may plateau if adoption in embedded work slows.",
}


class TestCheckInsightQuality:
    """Test cases for check_insight_quality."""

    def test_good_insight_passes_every_check(self):
        result = check_insight_quality(GOOD_INSIGHT, CONTEXT)

        assert result.score == 100
        assert result.passed
        assert all(result.checks.model_dump().values())

    def test_accepts_models_and_text(self):
        model = TechInsight.model_validate(GOOD_INSIGHT)
        assert check_insight_quality(model, CONTEXT).score == 100

    def test_invented_large_numbers_fail_hallucination_check(self):
        insight = {**GOOD_INSIGHT, "riskFactors": "Forecast 4500 jobs, 7800 stars, 9100 forks."}

        result = check_insight_quality(insight, CONTEXT)

        assert not result.checks.no_hallucination
        assert result.score == 80

    def test_low_confidence_requires_uncertainty(self):
        """Test that D/F grade data must be caveated."""
        assert not check_insight_quality(GOOD_INSIGHT, CONTEXT, "D").checks.matches_confidence

        caveated = {**GOOD_INSIGHT, "confidenceNote": "Limited data: only a few sources so far."}
        assert check_insight_quality(caveated, CONTEXT, "F").checks.matches_confidence

    def test_short_vague_text_fails(self):
        result = check_insight_quality("Rust is nice.", CONTEXT)

        assert result.score < 60
        assert not result.passed
        assert not result.checks.appropriate_length

    def test_scorer_binds_context(self):
        score = insight_scorer(CONTEXT, "B")
        assert score(GOOD_INSIGHT) == 100

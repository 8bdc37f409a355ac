"""
Pydantic schemas for LLM structured output.

The analyst prompts ask for camelCase JSON; the models accept either
spelling and dump camelCase for the API.
"""

from __future__ import annotations

from typing import Literal

from pydantic import Field

from devtrends.common.types import CamelModel

# =============================================================================
# Single Technology
# =============================================================================


class TechInsight(CamelModel):
    """Analyst insight for one technology."""

    headline: str = Field(description="One-line verdict citing the key number")
    score_explanation: str = Field(description="Why the composite score is what it is")
    trend_narrative: str = Field(description="Direction and speed of change")
    momentum_context: str = Field(description="Momentum compared against category peers")
    career_advice: str = Field(description="Learn it, watch it, skip it or pivot away, and why")
    learning_priority: Literal["critical", "high", "medium", "low", "skip"] = Field(
        default="medium", description="How urgently a developer should learn it"
    )
    risk_factors: str = Field(description="What could make this assessment wrong")
    confidence_note: str | None = Field(
        default=None, description="Caveat when the underlying data is sparse"
    )


# =============================================================================
# Comparison
# =============================================================================


class DimensionAnalysis(CamelModel):
    github: str
    community: str
    jobs: str
    ecosystem: str


class ComparisonCareerAdvice(CamelModel):
    for_beginners: str
    for_experienced: str
    for_job_seekers: str


class TimeHorizon(CamelModel):
    short_term: str
    long_term: str


class UseCaseRecommendation(CamelModel):
    use_case: str
    recommendation: str


class ComparisonWinner(CamelModel):
    overall: str | None = None
    by_use_case: list[UseCaseRecommendation] = Field(default_factory=list)


class ComparisonInsight(CamelModel):
    """Analyst comparison of two to four technologies."""

    headline: str
    verdict: str
    dimension_analysis: DimensionAnalysis
    surprising_finding: str | None = None
    career_advice: ComparisonCareerAdvice
    time_horizon: TimeHorizon
    winner: ComparisonWinner


# =============================================================================
# Weekly digest
# =============================================================================


class DigestTechnology(CamelModel):
    slug: str
    name: str
    change: float = Field(description="Momentum change over the week")


class DigestSection(CamelModel):
    title: str
    narrative: str = Field(description="Three or four sentences citing the data")
    technologies: list[DigestTechnology] = Field(default_factory=list)


class WeeklyDigest(CamelModel):
    """Weekly trends report: movers, category spotlight, emerging tech, job market."""

    sections: list[DigestSection] = Field(min_length=1)
    key_takeaways: list[str] = Field(default_factory=list)


# =============================================================================
# Anomaly explanation and recommendation
# =============================================================================


class AnomalyExplanation(CamelModel):
    explanation: str = Field(description="Two or three sentences connecting the anomaly to events")
    confidence: Literal["high", "medium", "low"] = "medium"
    related_events: list[str] = Field(default_factory=list)


class Recommendation(CamelModel):
    """Two technologies worth comparing for a caller's goal, focus and level."""

    slugs: list[str] = Field(min_length=2, max_length=2)
    name: str = Field(description='Readable comparison name, e.g. "Go vs Rust"')
    explanation: str
    trend_reason: str


__all__ = [
    "TechInsight",
    "ComparisonInsight",
    "DimensionAnalysis",
    "ComparisonCareerAdvice",
    "TimeHorizon",
    "UseCaseRecommendation",
    "ComparisonWinner",
    "WeeklyDigest",
    "DigestSection",
    "DigestTechnology",
    "AnomalyExplanation",
    "Recommendation",
]

"""Tests for the digest, anomaly and technology repositories."""

from __future__ import annotations

import pytest

from devtrends.common.exceptions import NotFoundError
from devtrends.storage import (
    AnomalyEvent,
    DigestRecord,
    DigestRepository,
    InsightRecord,
    Technology,
)

pytestmark = pytest.mark.unit


def _anomaly(slug: str, severity: str, detected_at: str) -> AnomalyEvent:
    return AnomalyEvent(
        technology_slug=slug,
        anomaly_type="spike",
        severity=severity,
        metric="github_stars",
        expected_value=10.0,
        actual_value=30.0,
        deviation_sigma=4.0,
        detected_at=detected_at,
    )


class TestAnomalyRepository:
    """Test cases for AnomalyRepository."""

    def test_unresolved_most_severe_first(self, anomaly_repo):
        notable = anomaly_repo.insert(_anomaly("vue", "notable", "2024-06-15T00:00:00.000Z"))
        critical = anomaly_repo.insert(_anomaly("rust", "critical", "2024-06-01T00:00:00.000Z"))
        newer = anomaly_repo.insert(_anomaly("go", "notable", "2024-06-16T00:00:00.000Z"))

        listed = anomaly_repo.list_unresolved()

        assert [a.id for a in listed] == [critical, newer, notable]
        assert [a.id for a in anomaly_repo.list_unresolved(limit=1)] == [critical]

    def test_explanation_round_trip(self, anomaly_repo):
        anomaly_id = anomaly_repo.insert(_anomaly("rust", "significant", "2024-06-01T00:00:00.000Z"))

        anomaly_repo.set_explanation(anomaly_id, {"explanation": "Release week", "confidence": "low"})

        assert anomaly_repo.get(anomaly_id).ai_explanation["explanation"] == "Release week"

    def test_explaining_unknown_anomaly(self, anomaly_repo):
        with pytest.raises(NotFoundError):
            anomaly_repo.set_explanation(404, {"explanation": "?"})


class TestDigestRepository:
    """Test cases for DigestRepository."""

    def test_save_replaces_the_week(self, db):
        digests = DigestRepository(db)
        for insight_id in ("ins_1", "ins_2"):
            digests.save(
                DigestRecord(
                    week_start="2024-06-10",
                    insight_id=insight_id,
                    digest_data={"sections": []},
                    provider="groq",
                    model="llama",
                )
            )

        assert digests.get("2024-06-10").insight_id == "ins_2"
        assert digests.get("2024-06-17") is None


class TestTechnologyAndInsightLookups:
    """Test cases for list/get_many and latest_for."""

    def test_list_and_get_many(self, technology_repo):
        for slug in ("vue", "go", "rust"):
            technology_repo.upsert(Technology(slug=slug, name=slug.title()))

        assert [t.slug for t in technology_repo.list_all()] == ["go", "rust", "vue"]
        assert [t.slug for t in technology_repo.list_all(limit=2)] == ["go", "rust"]
        assert [t.slug for t in technology_repo.get_many(["vue", "zig", "go"])] == ["go", "vue"]
        assert technology_repo.get_many([]) == []

    def test_latest_for(self, insight_repo):
        for insight_id, generated_at in (("ins_old", "2024-06-01"), ("ins_new", "2024-06-02")):
            insight_repo.insert(
                InsightRecord(
                    insight_id=insight_id,
                    subject="learning|frontend|beginner",
                    use_case="recommendation",
                    insight_data={},
                    provider="groq",
                    model="llama",
                    generated_at=f"{generated_at}T00:00:00.000Z",
                )
            )

        assert insight_repo.latest_for("learning|frontend|beginner", "recommendation").insight_id == (
            "ins_new"
        )
        assert insight_repo.latest_for("learning|frontend|beginner", "chat") is None

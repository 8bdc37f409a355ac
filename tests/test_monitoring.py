"""Tests for the 24h monitoring report."""

from __future__ import annotations

from types import SimpleNamespace

import pytest

from devtrends.common.time_utils import to_iso
from devtrends.services import SystemMonitor
from devtrends.storage import FeedbackRecord, TelemetryEvent, TelemetryEventKind

pytestmark = pytest.mark.unit

NOW = 1_718_450_000.0
HOUR_AGO = to_iso(NOW - 3600)

UP = {"name": "groq", "enabled": True, "configured": True, "circuitState": "closed"}
DOWN = {"name": "groq", "enabled": True, "configured": True, "circuitState": "open"}


def _generation(providers):
    return SimpleNamespace(provider_status=lambda: providers)


def _event(kind: TelemetryEventKind, created_at: str = HOUR_AGO, **fields) -> TelemetryEvent:
    return TelemetryEvent(
        event=kind.value,
        provider="groq",
        model="llama",
        use_case="batch_insight",
        created_at=created_at,
        **fields,
    )


@pytest.fixture
def make_monitor(telemetry_repo, feedback_repo):
    def _make(providers=(UP,)) -> SystemMonitor:
        return SystemMonitor(telemetry_repo, feedback_repo, _generation(list(providers)))

    return _make


class TestSystemMonitor:
    """Test cases for SystemMonitor.report."""

    def test_healthy(self, make_monitor, telemetry_repo):
        for _ in range(3):
            telemetry_repo.insert(
                _event(TelemetryEventKind.GENERATION, quality_score=90.0, latency_ms=200)
            )

        report = make_monitor().report(now=NOW)

        assert report.status == "healthy"
        assert report.alerts == []
        assert report.last24h.total_generations == 3
        assert report.last24h.avg_quality_score == 90
        assert report.last24h.avg_latency_ms == 200

    def test_low_quality_raises_alert(self, make_monitor, telemetry_repo):
        for score in (50.0, 55.0):
            telemetry_repo.insert(_event(TelemetryEventKind.GENERATION, quality_score=score))

        report = make_monitor().report(now=NOW)

        assert report.status == "warning"
        assert "Quality score below 60 - review recent insights" in report.alerts

    def test_rates(self, make_monitor, telemetry_repo, feedback_repo):
        for _ in range(4):
            telemetry_repo.insert(_event(TelemetryEventKind.GENERATION, estimated_cost=0.5))
        telemetry_repo.insert(_event(TelemetryEventKind.FALLBACK))
        telemetry_repo.insert(_event(TelemetryEventKind.CACHE_HIT))
        telemetry_repo.insert(_event(TelemetryEventKind.ERROR))
        feedback_repo.insert(FeedbackRecord(insight_id="ins_1", helpful=True, created_at=HOUR_AGO))
        feedback_repo.insert(FeedbackRecord(insight_id="ins_2", helpful=False, created_at=HOUR_AGO))

        metrics = make_monitor().report(now=NOW).last24h

        assert metrics.error_rate == 20.0
        assert metrics.fallback_rate == 25.0
        assert metrics.cache_hit_rate == 20.0
        assert metrics.positive_feedback_rate == 50.0
        assert metrics.estimated_cost == 2.0

    def test_high_error_rate_degrades(self, make_monitor, telemetry_repo):
        telemetry_repo.insert(_event(TelemetryEventKind.GENERATION, quality_score=90.0))
        telemetry_repo.insert(_event(TelemetryEventKind.ERROR))

        report = make_monitor().report(now=NOW)

        assert report.status == "degraded"
        assert any(alert.startswith("Error rate 50.0%") for alert in report.alerts)

    def test_no_provider_up_degrades(self, make_monitor):
        report = make_monitor(providers=(DOWN,)).report(now=NOW)

        assert report.status == "degraded"
        assert "All providers unavailable - system degraded" in report.alerts

    def test_older_events_are_ignored(self, make_monitor, telemetry_repo):
        telemetry_repo.insert(
            _event(TelemetryEventKind.ERROR, created_at=to_iso(NOW - 2 * 24 * 3600))
        )

        report = make_monitor().report(now=NOW)

        assert report.last24h.total_errors == 0

    def test_serialized_keys(self, make_monitor):
        body = make_monitor().report(now=NOW).to_json_dict()

        assert set(body) == {"status", "timestamp", "last24h", "providers", "alerts"}
        assert "positiveFeedbackRate" in body["last24h"]

"""
System health report for operators.

``SystemMonitor.report`` rolls the last 24 hours of telemetry and feedback
into rates (errors, fallbacks, cache hits, positive feedback), averages
(quality, latency) and estimated spend, joins the provider status and
raises alerts when a figure crosses its threshold.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Literal

from pydantic import Field

from devtrends.adapters.llm import GenerationService
from devtrends.common.time_utils import to_iso
from devtrends.common.types import CamelModel
from devtrends.storage import FeedbackRepository, TelemetryEventKind, TelemetryRepository

logger = logging.getLogger(__name__)

WINDOW_SECONDS = 24 * 60 * 60

LOW_QUALITY_SCORE = 60
HIGH_ERROR_RATE = 10
HIGH_FALLBACK_RATE = 20
HIGH_DAILY_COST = 5.0


class WindowMetrics(CamelModel):
    """Rates are percentages; ``estimated_cost`` is USD."""

    total_generations: int = 0
    total_errors: int = 0
    error_rate: float = 0.0
    fallback_rate: float = 0.0
    cache_hit_rate: float = 0.0
    avg_quality_score: float = 0.0
    avg_latency_ms: float = 0.0
    positive_feedback_rate: float = 0.0
    estimated_cost: float = 0.0


class MonitoringReport(CamelModel):
    status: Literal["healthy", "warning", "degraded"]
    timestamp: str
    # to_camel would give "last24H"
    last24h: WindowMetrics = Field(alias="last24h")
    providers: list[dict[str, Any]]
    alerts: list[str]


def _percent(part: int, whole: int) -> float:
    return round(part / whole * 100, 1) if whole else 0.0


def _mean(values: list[float]) -> float:
    return round(sum(values) / len(values), 1) if values else 0.0


def window_metrics(
    telemetry_repo: TelemetryRepository, feedback_repo: FeedbackRepository, since: str
) -> WindowMetrics:
    """Telemetry and feedback figures for events created at or after ``since``."""
    events = telemetry_repo.list_since(since)
    by_kind: dict[str, list[Any]] = {}
    for event in events:
        by_kind.setdefault(event.event, []).append(event)

    generations = by_kind.get(TelemetryEventKind.GENERATION.value, [])
    errors = by_kind.get(TelemetryEventKind.ERROR.value, [])
    fallbacks = by_kind.get(TelemetryEventKind.FALLBACK.value, [])
    cache_hits = by_kind.get(TelemetryEventKind.CACHE_HIT.value, [])
    feedback = feedback_repo.list_since(since)

    return WindowMetrics(
        total_generations=len(generations),
        total_errors=len(errors),
        error_rate=_percent(len(errors), len(generations) + len(errors)),
        fallback_rate=_percent(len(fallbacks), len(generations)),
        cache_hit_rate=_percent(len(cache_hits), len(generations) + len(cache_hits)),
        avg_quality_score=_mean(
            [e.quality_score for e in generations if e.quality_score is not None]
        ),
        avg_latency_ms=_mean([e.latency_ms for e in generations if e.latency_ms is not None]),
        positive_feedback_rate=_percent(sum(1 for f in feedback if f.helpful), len(feedback)),
        estimated_cost=round(sum(e.estimated_cost for e in events), 4),
    )


def health_alerts(metrics: WindowMetrics, providers_up: int) -> list[str]:
    alerts = []
    if 0 < metrics.avg_quality_score < LOW_QUALITY_SCORE:
        alerts.append(f"Quality score below {LOW_QUALITY_SCORE} - review recent insights")
    if metrics.error_rate > HIGH_ERROR_RATE:
        alerts.append(f"Error rate {metrics.error_rate}% exceeds {HIGH_ERROR_RATE}%")
    if metrics.fallback_rate > HIGH_FALLBACK_RATE:
        alerts.append(
            f"Fallback rate {metrics.fallback_rate}% - preferred providers are struggling"
        )
    if metrics.estimated_cost > HIGH_DAILY_COST:
        alerts.append(f"Estimated cost ${metrics.estimated_cost:.2f} in the last 24h")
    if providers_up == 0:
        alerts.append("All providers unavailable - system degraded")
    return alerts


def overall_status(metrics: WindowMetrics, providers_up: int) -> str:
    if metrics.error_rate > 20 or providers_up == 0:
        return "degraded"
    if metrics.error_rate < 5 and metrics.avg_quality_score > 70:
        return "healthy"
    return "warning"


class SystemMonitor:
    """
    Builds the monitoring report.

    Example:
        monitor = SystemMonitor(telemetry_repo, feedback_repo, generation)
        report = monitor.report()
        print(report.status, report.alerts)
    """

    def __init__(
        self,
        telemetry_repo: TelemetryRepository,
        feedback_repo: FeedbackRepository,
        generation: GenerationService,
    ):
        self.telemetry_repo = telemetry_repo
        self.feedback_repo = feedback_repo
        self.generation = generation

    def report(self, now: float | None = None) -> MonitoringReport:
        """
        Args:
            now: POSIX time the 24h window ends at (defaults to the current time)
        """
        now = time.time() if now is None else now
        metrics = window_metrics(
            self.telemetry_repo, self.feedback_repo, to_iso(now - WINDOW_SECONDS)
        )
        providers = self.generation.provider_status()
        providers_up = sum(
            1
            for p in providers
            if p["enabled"] and p["configured"] and p["circuitState"] != "open"
        )

        status = overall_status(metrics, providers_up)
        alerts = health_alerts(metrics, providers_up)
        if alerts:
            logger.warning("Monitoring status %s: %s", status, "; ".join(alerts))
        return MonitoringReport(
            status=status,
            timestamp=to_iso(now),
            last24h=metrics,
            providers=providers,
            alerts=alerts,
        )


__all__ = [
    "MonitoringReport",
    "SystemMonitor",
    "WindowMetrics",
    "health_alerts",
    "overall_status",
    "window_metrics",
]

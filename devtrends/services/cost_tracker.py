"""
Cost tracking and budget alerting.

Aggregates the ``estimated_cost`` recorded on telemetry events into totals,
per-provider / per-use-case breakdowns and a daily trend, and compares
today's and this month's spend against budgets stored in ``system_config``.
Budgets are advisory: nothing here blocks generation.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Iterable
from datetime import UTC, datetime

from devtrends.common.exceptions import ValidationError
from devtrends.common.time_utils import days_ago
from devtrends.common.types import CamelModel
from devtrends.storage import ConfigRepository, TelemetryEvent, TelemetryRepository

from .telemetry import DAILY_COST_ALERT_THRESHOLD_USD

logger = logging.getLogger(__name__)

BUDGET_CONFIG_KEY = "cost_budgets"
DEFAULT_DAILY_BUDGET_USD = 0.10
DEFAULT_MONTHLY_BUDGET_USD = 3.00

# Utilization above which a "budget nearly used" alert is raised
UTILIZATION_ALERT_RATIO = 0.8
# Today's spend above this multiple of the recent daily average is a spike
SPIKE_MULTIPLIER = 2.0
SPIKE_LOOKBACK_DAYS = 3


# =============================================================================
# Models
# =============================================================================


class ProviderCost(CamelModel):
    provider: str
    total_cost: float
    total_tokens: int
    request_count: int
    avg_cost_per_request: float


class UseCaseCost(CamelModel):
    use_case: str
    total_cost: float
    request_count: int
    avg_cost_per_request: float


class DailyCost(CamelModel):
    date: str
    cost: float
    requests: int


class BudgetStatus(CamelModel):
    """Spend against the configured budgets."""

    daily_budget: float
    monthly_budget: float
    daily_spend: float
    monthly_spend: float
    daily_remaining: float
    monthly_remaining: float
    is_over_daily_budget: bool
    is_over_monthly_budget: bool
    daily_utilization: float
    monthly_utilization: float


class CostSummary(CamelModel):
    total_cost: float = 0.0
    total_requests: int = 0
    by_provider: list[ProviderCost] = []
    by_use_case: list[UseCaseCost] = []
    daily_trend: list[DailyCost] = []
    budget_status: BudgetStatus
    alerts: list[str] = []


# =============================================================================
# Tracker
# =============================================================================


class CostTracker:
    """
    Cost summaries over the telemetry log.

    Example:
        tracker = CostTracker(TelemetryRepository(db), ConfigRepository(db))
        summary = tracker.calculate_cost_summary(days=7)
        for alert in summary.alerts:
            logger.warning(alert)
    """

    def __init__(self, telemetry: TelemetryRepository, config: ConfigRepository):
        self.telemetry = telemetry
        self.config = config

    def get_budgets(self) -> tuple[float, float]:
        """Configured (daily, monthly) budgets in USD, falling back to the defaults."""
        stored = self.config.get(BUDGET_CONFIG_KEY) or {}
        daily = stored.get("daily")
        monthly = stored.get("monthly")
        return (
            float(daily) if daily is not None else DEFAULT_DAILY_BUDGET_USD,
            float(monthly) if monthly is not None else DEFAULT_MONTHLY_BUDGET_USD,
        )

    def update_budgets(self, daily_budget: float, monthly_budget: float) -> None:
        """
        Store new budgets.

        Raises:
            ValidationError: If either budget is negative or not a finite number
        """
        for name, value in (("dailyBudget", daily_budget), ("monthlyBudget", monthly_budget)):
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ValidationError(f"{name} must be a number", context={name: value})
            if not math.isfinite(value) or value < 0:
                raise ValidationError(
                    f"{name} must be a non-negative number", context={name: value}
                )

        self.config.set(BUDGET_CONFIG_KEY, {"daily": daily_budget, "monthly": monthly_budget})
        logger.info("Updated cost budgets: daily=%s monthly=%s", daily_budget, monthly_budget)

    def calculate_cost_summary(self, days: int = 30, now: datetime | None = None) -> CostSummary:
        """
        Summarise spend over the last ``days`` days.

        Args:
            days: Lookback in days (the cutoff is a date, so the oldest day is whole)
            now: Reference time (defaults to the current UTC time)

        Returns:
            CostSummary with breakdowns sorted by cost (highest first) and the
            daily trend sorted by date
        """
        now = now or datetime.now(UTC)
        cutoff = days_ago(days, now)
        today = now.date().isoformat()
        month_start = f"{today[:7]}-01"

        # Budget status is month-to-date whatever the lookback
        budget_events = self.telemetry.list_since(min(cutoff, month_start))
        events = [e for e in budget_events if e.created_at >= cutoff]
        daily_spend = _spend(e for e in budget_events if e.created_at.startswith(today))
        monthly_spend = _spend(e for e in budget_events if e.created_at >= month_start)

        budget_status = self._budget_status(daily_spend, monthly_spend)
        if not events:
            return CostSummary(
                budget_status=budget_status, alerts=_alerts(budget_status, [], daily_spend)
            )

        daily_trend = _daily_trend(events)
        return CostSummary(
            total_cost=_spend(events),
            total_requests=len(events),
            by_provider=_by_provider(events),
            by_use_case=_by_use_case(events),
            daily_trend=daily_trend,
            budget_status=budget_status,
            alerts=_alerts(budget_status, daily_trend, daily_spend),
        )

    def _budget_status(self, daily_spend: float, monthly_spend: float) -> BudgetStatus:
        daily_budget, monthly_budget = self.get_budgets()
        return BudgetStatus(
            daily_budget=daily_budget,
            monthly_budget=monthly_budget,
            daily_spend=daily_spend,
            monthly_spend=monthly_spend,
            daily_remaining=max(0.0, daily_budget - daily_spend),
            monthly_remaining=max(0.0, monthly_budget - monthly_spend),
            is_over_daily_budget=daily_spend > daily_budget,
            is_over_monthly_budget=monthly_spend > monthly_budget,
            daily_utilization=daily_spend / daily_budget if daily_budget > 0 else 0.0,
            monthly_utilization=monthly_spend / monthly_budget if monthly_budget > 0 else 0.0,
        )


# =============================================================================
# Aggregation helpers
# =============================================================================


def _spend(events: Iterable[TelemetryEvent]) -> float:
    return sum(e.estimated_cost or 0.0 for e in events)


def _by_provider(events: list[TelemetryEvent]) -> list[ProviderCost]:
    groups: dict[str, list[TelemetryEvent]] = {}
    for event in events:
        groups.setdefault(event.provider or "unknown", []).append(event)

    breakdown = [
        ProviderCost(
            provider=provider,
            total_cost=_spend(group),
            total_tokens=sum(e.total_tokens for e in group),
            request_count=len(group),
            avg_cost_per_request=_spend(group) / len(group),
        )
        for provider, group in groups.items()
    ]
    return sorted(breakdown, key=lambda b: b.total_cost, reverse=True)


def _by_use_case(events: list[TelemetryEvent]) -> list[UseCaseCost]:
    groups: dict[str, list[TelemetryEvent]] = {}
    for event in events:
        groups.setdefault(event.use_case or "unknown", []).append(event)

    breakdown = [
        UseCaseCost(
            use_case=use_case,
            total_cost=_spend(group),
            request_count=len(group),
            avg_cost_per_request=_spend(group) / len(group),
        )
        for use_case, group in groups.items()
    ]
    return sorted(breakdown, key=lambda b: b.total_cost, reverse=True)


def _daily_trend(events: list[TelemetryEvent]) -> list[DailyCost]:
    days: dict[str, DailyCost] = {}
    for event in events:
        date = event.created_at[:10]
        day = days.setdefault(date, DailyCost(date=date, cost=0.0, requests=0))
        day.cost += event.estimated_cost or 0.0
        day.requests += 1
    return sorted(days.values(), key=lambda d: d.date)


def _alerts(status: BudgetStatus, trend: list[DailyCost], daily_spend: float) -> list[str]:
    alerts: list[str] = []

    if status.is_over_daily_budget:
        alerts.append(
            f"Daily budget exceeded: ${daily_spend:.4f} / ${status.daily_budget}"
        )
    elif status.daily_utilization > UTILIZATION_ALERT_RATIO:
        alerts.append(f"Daily budget {status.daily_utilization * 100:.0f}% utilized")

    if status.is_over_monthly_budget:
        alerts.append(
            f"Monthly budget exceeded: ${status.monthly_spend:.4f} / ${status.monthly_budget}"
        )
    elif status.monthly_utilization > UTILIZATION_ALERT_RATIO:
        alerts.append(f"Monthly budget {status.monthly_utilization * 100:.0f}% utilized")

    if len(trend) >= 2:
        recent = trend[-SPIKE_LOOKBACK_DAYS:]
        avg_recent = sum(d.cost for d in recent) / len(recent)
        if avg_recent > 0 and daily_spend > avg_recent * SPIKE_MULTIPLIER:
            alerts.append(
                f"Unusual spending spike detected: "
                f"{daily_spend / avg_recent * 100:.0f}% above recent average"
            )

    if daily_spend > DAILY_COST_ALERT_THRESHOLD_USD:
        alerts.append(
            f"Daily spend ${daily_spend:.2f} is above the "
            f"${DAILY_COST_ALERT_THRESHOLD_USD:.2f} alert threshold"
        )

    return alerts


__all__ = [
    "BUDGET_CONFIG_KEY",
    "DEFAULT_DAILY_BUDGET_USD",
    "DEFAULT_MONTHLY_BUDGET_USD",
    "ProviderCost",
    "UseCaseCost",
    "DailyCost",
    "BudgetStatus",
    "CostSummary",
    "CostTracker",
]

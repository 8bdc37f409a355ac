"""
AI telemetry: fire-and-forget logging of every AI call.

Events are written to ``ai_telemetry`` on a worker thread from a detached
task; the request path never awaits the write and a failed write is only
logged. Readers must tolerate events arriving slightly out of order.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from datetime import UTC, datetime, timedelta
from typing import Any

from devtrends.common.time_utils import to_iso
from devtrends.storage import TelemetryEvent, TelemetryEventKind, TelemetryRepository

logger = logging.getLogger(__name__)

# =============================================================================
# Cost estimation
# =============================================================================

# USD per 1K tokens; every default model currently runs on a free tier
COST_PER_1K_TOKENS: dict[str, dict[str, float]] = {
    "gemini-2.0-flash": {"input": 0.0, "output": 0.0},
    "llama-3.3-70b-versatile": {"input": 0.0, "output": 0.0},
    "llama-3.3-70b": {"input": 0.0, "output": 0.0},
    "grok-2": {"input": 0.0, "output": 0.0},
    "mistral-small-latest": {"input": 0.0, "output": 0.0},
    "meta-llama/llama-3.3-70b-instruct:free": {"input": 0.0, "output": 0.0},
    "meta-llama/Llama-3.3-70B-Instruct": {"input": 0.0, "output": 0.0},
}

# Conservative rate for models missing from the table
DEFAULT_COST_PER_1K_TOKENS: dict[str, float] = {"input": 0.001, "output": 0.002}

DAILY_COST_ALERT_THRESHOLD_USD = 5.0


def estimate_cost(model: str, input_tokens: int | None, output_tokens: int | None) -> float:
    """
    Estimate the USD cost of a call.

    Example:
        >>> estimate_cost("gemini-2.0-flash", 5000, 5000)
        0.0
        >>> estimate_cost("unknown-model", 1000, 1000)
        0.003
    """
    rates = COST_PER_1K_TOKENS.get(model, DEFAULT_COST_PER_1K_TOKENS)
    return (input_tokens or 0) / 1000 * rates["input"] + (output_tokens or 0) / 1000 * rates[
        "output"
    ]


# =============================================================================
# Tracker
# =============================================================================


class TelemetryTracker:
    """
    Non-blocking writer for telemetry events.

    Example:
        tracker = TelemetryTracker(TelemetryRepository(db))
        tracker.emit(TelemetryEventKind.GENERATION, provider="groq",
                     model="llama-3.3-70b-versatile", use_case="chat")
        await tracker.flush()  # only at shutdown or in tests
    """

    def __init__(self, repository: TelemetryRepository):
        self.repository = repository
        self._pending: set[asyncio.Task[None]] = set()

    def log(self, event: TelemetryEvent) -> None:
        """
        Schedule an event write and return immediately.

        With no running event loop (CLI, sync tests) the write happens inline;
        failures are swallowed either way.
        """
        if not event.estimated_cost and event.total_tokens:
            event = replace(
                event,
                estimated_cost=estimate_cost(event.model, event.token_input, event.token_output),
            )

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._write(event)
            return

        task = loop.create_task(asyncio.to_thread(self._write, event))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    def emit(
        self,
        event: TelemetryEventKind | str,
        *,
        provider: str,
        model: str,
        use_case: str,
        **fields: Any,
    ) -> None:
        """Build and log an event from keyword fields."""
        kind = event.value if isinstance(event, TelemetryEventKind) else event
        self.log(
            TelemetryEvent(event=kind, provider=provider, model=model, use_case=use_case, **fields)
        )

    async def flush(self) -> None:
        """Wait for every scheduled write to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    @property
    def pending(self) -> int:
        return len(self._pending)

    def _write(self, event: TelemetryEvent) -> None:
        try:
            self.repository.insert(event)
        except Exception as e:
            logger.error("Failed to log telemetry event %s: %s", event.event, e)

    # =========================================================================
    # Health metrics
    # =========================================================================

    def recent_metrics(self, hours: int = 24, now: datetime | None = None) -> dict[str, Any]:
        """
        Summary of the last ``hours`` of events for the health view.

        Rates are whole percentages; averages are over generation events.
        """
        since = (now or datetime.now(UTC)) - timedelta(hours=hours)
        events = self.repository.list_since(to_iso(since.timestamp()))

        generations = [e for e in events if e.event == TelemetryEventKind.GENERATION.value]
        cache_hits = sum(1 for e in events if e.event == TelemetryEventKind.CACHE_HIT.value)
        quality_fails = sum(1 for e in events if e.event == TelemetryEventKind.QUALITY_FAIL.value)
        errors = sum(1 for e in events if e.event == TelemetryEventKind.ERROR.value)
        retries = sum(1 for e in events if e.event == TelemetryEventKind.RETRY.value)

        total_requests = len(generations) + cache_hits

        def _pct(part: int, whole: int) -> int:
            return round(part / whole * 100) if whole else 0

        def _avg(values: list[float]) -> int:
            return round(sum(values) / len(values)) if values else 0

        return {
            "totalGenerations": len(generations),
            "cacheHitRate": _pct(cache_hits, total_requests),
            "avgQualityScore": _avg([e.quality_score or 0 for e in generations]),
            "avgLatencyMs": _avg([e.latency_ms or 0 for e in generations]),
            "qualityFailRate": _pct(quality_fails, len(generations)),
            "errorRate": _pct(errors, total_requests),
            "retries": retries,
        }


__all__ = [
    "COST_PER_1K_TOKENS",
    "DEFAULT_COST_PER_1K_TOKENS",
    "DAILY_COST_ALERT_THRESHOLD_USD",
    "estimate_cost",
    "TelemetryTracker",
]

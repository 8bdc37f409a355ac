"""Time utilities for DevTrends.

Provides consistent timestamp formatting and clock-aligned windows.
"""

from __future__ import annotations

import math
import time
from datetime import UTC, datetime, timedelta

__all__ = [
    "current_timestamp",
    "calculate_duration_ms",
    "to_iso",
    "window_bounds",
    "days_ago",
]


def current_timestamp() -> str:
    """Get current UTC timestamp in ISO format.

    Returns:
        ISO 8601 formatted timestamp with 'Z' suffix (e.g., '2024-01-15T10:30:00.123Z')
    """
    return datetime.now(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def calculate_duration_ms(start: float) -> int:
    """Milliseconds elapsed since a ``time.perf_counter()`` reading."""
    return int((time.perf_counter() - start) * 1000)


def to_iso(epoch_seconds: float) -> str:
    """Format a POSIX timestamp the way ``current_timestamp`` does."""
    moment = datetime.fromtimestamp(epoch_seconds, UTC)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def window_bounds(now: float, window_seconds: int) -> tuple[float, float]:
    """Return the (start, end) of the fixed window containing ``now``.

    The start is ``now`` truncated to a multiple of the window length, so
    every process computes the same boundaries without coordinating.
    """
    start = math.floor(now / window_seconds) * window_seconds
    return float(start), float(start + window_seconds)


def days_ago(days: int, now: datetime | None = None) -> str:
    """ISO date (YYYY-MM-DD) ``days`` before ``now``, used as a lookback cutoff."""
    reference = now or datetime.now(UTC)
    return (reference - timedelta(days=days)).date().isoformat()

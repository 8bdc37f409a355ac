"""
Rate limiting for public-facing AI endpoints.

Fixed, clock-aligned windows counted in the shared SQLite store, so every
worker process agrees on quota state without coordinating. The counter is
bumped by a single atomic upsert; a failing store admits the request
(fail open) and logs the failure.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from collections.abc import Mapping
from dataclasses import dataclass

from devtrends.common.time_utils import to_iso, window_bounds
from devtrends.storage import RateLimitRepository

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitPolicy:
    """Maximum requests per caller in each window of ``window_seconds``."""

    max_requests: int
    window_seconds: int = 60


RATE_LIMIT_MESSAGE = "Rate limit exceeded. Please wait before making more requests."

ENDPOINT_LIMITS: dict[str, RateLimitPolicy] = {
    "/api/ai/ask": RateLimitPolicy(max_requests=5),
    "/api/ai/compare": RateLimitPolicy(max_requests=10),
    "/api/ai/insights": RateLimitPolicy(max_requests=30),
    "/api/ai/feedback": RateLimitPolicy(max_requests=20),
    "/api/ai/recommend": RateLimitPolicy(max_requests=10),
    "/api/ai/anomalies": RateLimitPolicy(max_requests=10),
}


@dataclass(frozen=True)
class RateLimitResult:
    """
    Admission decision for one request.

    Attributes:
        allowed: Whether the request may proceed
        remaining: Requests left in the current window (``math.inf`` when
            the endpoint has no policy)
        reset_at: ISO timestamp of the window end ("" when unlimited)
    """

    allowed: bool
    remaining: float
    reset_at: str


def check_rate_limit(
    endpoint: str,
    identifier: str,
    store: RateLimitRepository,
    *,
    limits: Mapping[str, RateLimitPolicy] | None = None,
    now: float | None = None,
) -> RateLimitResult:
    """
    Count a request against its endpoint's window and decide admission.

    Args:
        endpoint: Endpoint path the policy is keyed by
        identifier: Caller identifier (see ``client_identifier``)
        store: Shared window counters
        limits: Policy table (defaults to ``ENDPOINT_LIMITS``)
        now: POSIX time to evaluate at (defaults to the current time)

    Returns:
        RateLimitResult; never raises for storage failures
    """
    policy = (ENDPOINT_LIMITS if limits is None else limits).get(endpoint)
    if policy is None:
        return RateLimitResult(allowed=True, remaining=math.inf, reset_at="")

    start, end = window_bounds(time.time() if now is None else now, policy.window_seconds)
    reset_at = to_iso(end)

    try:
        count = store.increment(endpoint, identifier, to_iso(start))
    except Exception as e:
        logger.error("Rate limit check failed for %s, failing open: %s", endpoint, e)
        return RateLimitResult(allowed=True, remaining=policy.max_requests, reset_at=reset_at)

    allowed = count <= policy.max_requests
    if not allowed:
        logger.info("Rate limit exceeded for %s by %s (%d requests)", endpoint, identifier, count)
    return RateLimitResult(
        allowed=allowed,
        remaining=max(0, policy.max_requests - count),
        reset_at=reset_at,
    )


async def check_rate_limit_async(
    endpoint: str,
    identifier: str,
    store: RateLimitRepository,
    *,
    limits: Mapping[str, RateLimitPolicy] | None = None,
) -> RateLimitResult:
    """``check_rate_limit`` on a worker thread, for async request handlers."""
    return await asyncio.to_thread(
        check_rate_limit, endpoint, identifier, store, limits=limits
    )


def client_identifier(headers: Mapping[str, str]) -> str:
    """
    Caller identifier from proxy headers.

    Prefers the first ``X-Forwarded-For`` entry, then ``X-Real-IP``.
    """
    forwarded = headers.get("x-forwarded-for") or headers.get("X-Forwarded-For")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first

    real_ip = headers.get("x-real-ip") or headers.get("X-Real-IP")
    if real_ip and real_ip.strip():
        return real_ip.strip()
    return "unknown"


def rate_limit_headers(result: RateLimitResult) -> dict[str, str]:
    """``X-RateLimit-*`` response headers (none for unlimited endpoints)."""
    if math.isinf(result.remaining):
        return {}
    return {
        "X-RateLimit-Remaining": str(int(result.remaining)),
        "X-RateLimit-Reset": result.reset_at,
    }


def purge_expired_windows(
    store: RateLimitRepository,
    *,
    limits: Mapping[str, RateLimitPolicy] | None = None,
    now: float | None = None,
) -> int:
    """
    Delete windows that closed before the longest configured window began.

    Returns:
        Number of rows removed
    """
    policies = ENDPOINT_LIMITS if limits is None else limits
    longest = max((p.window_seconds for p in policies.values()), default=60)
    start, _ = window_bounds(time.time() if now is None else now, longest)
    removed = store.purge_expired(to_iso(start))
    if removed:
        logger.info("Purged %d expired rate limit windows", removed)
    return removed


__all__ = [
    "RateLimitPolicy",
    "RateLimitResult",
    "ENDPOINT_LIMITS",
    "RATE_LIMIT_MESSAGE",
    "check_rate_limit",
    "check_rate_limit_async",
    "client_identifier",
    "rate_limit_headers",
    "purge_expired_windows",
]

"""Tests for the shared-store rate limiter."""

from __future__ import annotations

import math

import pytest

from devtrends.common.exceptions import StorageError
from devtrends.services import (
    ENDPOINT_LIMITS,
    RateLimitPolicy,
    check_rate_limit,
    check_rate_limit_async,
    client_identifier,
    purge_expired_windows,
    rate_limit_headers,
)
from devtrends.services.rate_limiter import RateLimitResult

pytestmark = pytest.mark.unit

ASK = "/api/ai/ask"
# Start of a 60s window
T0 = 1_700_000_040.0


class BrokenStore:
    def increment(self, endpoint, identifier, window_start):
        raise StorageError("database is locked")


class TestCheckRateLimit:
    """Test cases for fixed-window admission."""

    def test_five_admitted_sixth_denied(self, rate_limit_repo):
        """Test that the ask endpoint admits five requests per minute."""
        results = [
            check_rate_limit(ASK, "1.2.3.4", rate_limit_repo, now=T0 + i) for i in range(6)
        ]

        assert [r.allowed for r in results] == [True] * 5 + [False]
        assert [r.remaining for r in results] == [4, 3, 2, 1, 0, 0]

    def test_readmitted_after_window_rollover(self, rate_limit_repo):
        for i in range(6):
            check_rate_limit(ASK, "1.2.3.4", rate_limit_repo, now=T0 + i)

        result = check_rate_limit(ASK, "1.2.3.4", rate_limit_repo, now=T0 + 60)

        assert result.allowed
        assert result.remaining == 4

    def test_identifiers_are_counted_separately(self, rate_limit_repo):
        for i in range(5):
            check_rate_limit(ASK, "1.2.3.4", rate_limit_repo, now=T0 + i)

        assert check_rate_limit(ASK, "5.6.7.8", rate_limit_repo, now=T0 + 6).allowed

    def test_endpoints_are_counted_separately(self, rate_limit_repo):
        for i in range(5):
            check_rate_limit(ASK, "1.2.3.4", rate_limit_repo, now=T0 + i)

        result = check_rate_limit("/api/ai/compare", "1.2.3.4", rate_limit_repo, now=T0 + 6)

        assert result.allowed
        assert result.remaining == ENDPOINT_LIMITS["/api/ai/compare"].max_requests - 1

    def test_reset_at_is_window_end(self, rate_limit_repo):
        result = check_rate_limit(ASK, "1.2.3.4", rate_limit_repo, now=T0 + 30)
        assert result.reset_at == "2023-11-14T22:15:00.000Z"

    def test_unknown_endpoint_is_unlimited(self, rate_limit_repo):
        result = check_rate_limit("/api/ai/health", "1.2.3.4", rate_limit_repo, now=T0)

        assert result.allowed
        assert math.isinf(result.remaining)
        assert rate_limit_headers(result) == {}

    def test_store_failure_fails_open(self):
        """Test that a broken store admits the request."""
        result = check_rate_limit(ASK, "1.2.3.4", BrokenStore(), now=T0)

        assert result.allowed
        assert result.remaining == ENDPOINT_LIMITS[ASK].max_requests

    def test_custom_policy_table(self, rate_limit_repo):
        limits = {"/x": RateLimitPolicy(max_requests=1, window_seconds=10)}

        first = check_rate_limit("/x", "id", rate_limit_repo, limits=limits, now=T0)
        second = check_rate_limit("/x", "id", rate_limit_repo, limits=limits, now=T0 + 1)
        third = check_rate_limit("/x", "id", rate_limit_repo, limits=limits, now=T0 + 10)

        assert (first.allowed, second.allowed, third.allowed) == (True, False, True)

    @pytest.mark.asyncio
    async def test_async_variant(self, rate_limit_repo):
        result = await check_rate_limit_async(ASK, "1.2.3.4", rate_limit_repo)
        assert result.allowed
        assert result.remaining == 4


class TestHelpers:
    """Test cases for identifiers, headers and purging."""

    def test_forwarded_for_first_entry_wins(self):
        headers = {"x-forwarded-for": "9.9.9.9, 10.0.0.1", "x-real-ip": "8.8.8.8"}
        assert client_identifier(headers) == "9.9.9.9"

    def test_real_ip_fallback(self):
        assert client_identifier({"x-real-ip": " 8.8.8.8 "}) == "8.8.8.8"

    def test_unknown_without_proxy_headers(self):
        assert client_identifier({}) == "unknown"

    def test_headers_for_limited_endpoint(self):
        result = RateLimitResult(allowed=False, remaining=0, reset_at="2024-01-01T00:01:00.000Z")
        assert rate_limit_headers(result) == {
            "X-RateLimit-Remaining": "0",
            "X-RateLimit-Reset": "2024-01-01T00:01:00.000Z",
        }

    def test_purge_removes_closed_windows(self, rate_limit_repo):
        check_rate_limit(ASK, "old", rate_limit_repo, now=T0)
        check_rate_limit(ASK, "new", rate_limit_repo, now=T0 + 120)

        removed = purge_expired_windows(rate_limit_repo, now=T0 + 125)

        assert removed == 1
        assert check_rate_limit(ASK, "new", rate_limit_repo, now=T0 + 121).remaining == 3

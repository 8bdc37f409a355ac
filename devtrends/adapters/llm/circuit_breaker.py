"""
Per-provider circuit breaker.

Stops calling a provider after a run of consecutive failures, so a dead
backend is skipped instead of burning the retry budget of every request.

CLOSED -> OPEN after ``failure_threshold`` consecutive failures
OPEN -> HALF_OPEN once ``recovery_time`` seconds have passed
HALF_OPEN -> CLOSED after ``half_open_successes`` consecutive successes
HALF_OPEN -> OPEN on any failure

State is per process; each instance learns provider health on its own.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

from devtrends.common.exceptions import CircuitOpenError

logger = logging.getLogger(__name__)


class CircuitState(Enum):
    """Circuit breaker states."""

    CLOSED = "closed"  # Normal operation, requests allowed
    OPEN = "open"  # Circuit tripped, requests rejected
    HALF_OPEN = "half_open"  # Testing if service recovered


@dataclass(frozen=True)
class CircuitBreakerConfig:
    failure_threshold: int = 5  # Consecutive failures to open circuit
    recovery_time: float = 60.0  # Seconds before half-open test
    half_open_successes: int = 2  # Successes in half-open needed to close
    enabled: bool = True


class CircuitBreaker:
    """
    Thread-safe circuit breaker for one provider.

    Example:
        breaker = CircuitBreaker("groq")
        breaker.before_call()  # raises CircuitOpenError while open
        try:
            result = await call()
        except ProviderError:
            breaker.record_failure()
            raise
        breaker.record_success()
    """

    def __init__(
        self,
        provider: str,
        config: CircuitBreakerConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.provider = provider
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._consecutive_failures = 0
        self._half_open_successes = 0
        self._opened_at = 0.0
        self._total_failures = 0
        self._total_successes = 0

    @property
    def state(self) -> CircuitState:
        with self._lock:
            self._maybe_half_open()
            return self._state

    def before_call(self) -> None:
        """
        Check the circuit before calling the provider.

        Raises:
            CircuitOpenError: If circuit is open and not ready for testing
        """
        if not self.config.enabled:
            return

        with self._lock:
            self._maybe_half_open()
            if self._state != CircuitState.OPEN:
                return

            remaining = self.config.recovery_time - (self._clock() - self._opened_at)
            raise CircuitOpenError(
                f"Circuit breaker is open. Retry in {remaining:.1f}s",
                provider=self.provider,
                retry_after=remaining,
                context={"provider": self.provider},
            )

    def record_success(self) -> None:
        """Record a successful call."""
        with self._lock:
            self._total_successes += 1
            self._consecutive_failures = 0

            if self._state == CircuitState.HALF_OPEN:
                self._half_open_successes += 1
                if self._half_open_successes >= self.config.half_open_successes:
                    self._state = CircuitState.CLOSED
                    self._half_open_successes = 0
                    logger.info("Circuit breaker for %s closed", self.provider)

    def record_failure(self) -> None:
        """Record a failed call (after its retries were exhausted)."""
        if not self.config.enabled:
            return

        with self._lock:
            self._total_failures += 1
            self._consecutive_failures += 1

            if self._state == CircuitState.HALF_OPEN:
                self._open()
                logger.warning(
                    "Circuit breaker for %s reopened after failure in half-open state",
                    self.provider,
                )
            elif (
                self._state == CircuitState.CLOSED
                and self._consecutive_failures >= self.config.failure_threshold
            ):
                self._open()
                logger.warning(
                    "Circuit breaker for %s opened after %d consecutive failures",
                    self.provider,
                    self._consecutive_failures,
                )

    def reset(self) -> None:
        """Reset all state (useful for testing or manual recovery)."""
        with self._lock:
            self._state = CircuitState.CLOSED
            self._consecutive_failures = 0
            self._half_open_successes = 0
            self._opened_at = 0.0
            logger.info("Circuit breaker for %s reset", self.provider)

    def get_stats(self) -> dict[str, float | int | str]:
        with self._lock:
            self._maybe_half_open()
            return {
                "provider": self.provider,
                "state": self._state.value,
                "consecutive_failures": self._consecutive_failures,
                "total_failures": self._total_failures,
                "total_successes": self._total_successes,
            }

    def _open(self) -> None:
        self._state = CircuitState.OPEN
        self._opened_at = self._clock()
        self._half_open_successes = 0

    def _maybe_half_open(self) -> None:
        # Caller holds the lock
        if self._state != CircuitState.OPEN:
            return
        elapsed = self._clock() - self._opened_at
        if elapsed >= self.config.recovery_time:
            self._state = CircuitState.HALF_OPEN
            self._half_open_successes = 0
            logger.info(
                "Circuit breaker for %s entering half-open state after %.1fs",
                self.provider,
                elapsed,
            )


class CircuitBreakerRegistry:
    """Lazily created breakers, one per provider tag."""

    def __init__(
        self,
        config: CircuitBreakerConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self._breakers: dict[str, CircuitBreaker] = {}
        self._lock = threading.Lock()

    def get(self, provider: str) -> CircuitBreaker:
        with self._lock:
            breaker = self._breakers.get(provider)
            if breaker is None:
                breaker = CircuitBreaker(provider, self.config, self._clock)
                self._breakers[provider] = breaker
            return breaker

    def get_stats(self) -> dict[str, dict[str, float | int | str]]:
        with self._lock:
            breakers = list(self._breakers.values())
        return {breaker.provider: breaker.get_stats() for breaker in breakers}

    def reset(self) -> None:
        with self._lock:
            breakers = list(self._breakers.values())
        for breaker in breakers:
            breaker.reset()


__all__ = [
    "CircuitState",
    "CircuitBreakerConfig",
    "CircuitBreaker",
    "CircuitBreakerRegistry",
]

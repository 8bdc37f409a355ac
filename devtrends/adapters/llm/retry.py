"""
Retry executor with exponential backoff.

Uses the backoff library for the retry loop, with a custom wait generator
so that server supplied Retry-After hints stretch the computed delay.
Errors are classified by the HTTP-like status code they carry:

- status present and outside the retryable set: permanent, raised at once
- status 429: rate limited, retried honouring any Retry-After hint
- anything else (including no status at all): transient, retried
"""

from __future__ import annotations

import logging
import random
from collections.abc import Awaitable, Callable, Generator
from dataclasses import dataclass
from typing import Any, TypeVar

import backoff
from backoff._typing import Details

from devtrends.common.exceptions import (
    DEFAULT_RETRYABLE_STATUS_CODES,
    CircuitOpenError,
    ConfigurationError,
    ValidationError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

RetryObserver = Callable[[int, Exception, float], Any]

# Errors that no amount of waiting will fix
NEVER_RETRY = (ConfigurationError, ValidationError, CircuitOpenError)


@dataclass(frozen=True)
class RetryConfig:
    """
    Retry policy for a single provider call.

    Attributes:
        max_retries: Retries after the first attempt (total attempts = max_retries + 1)
        base_delay: Base delay in seconds, doubled per attempt
        max_delay: Cap on the computed delay in seconds
        retryable_status_codes: Statuses that are worth another attempt
    """

    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    retryable_status_codes: frozenset[int] = DEFAULT_RETRYABLE_STATUS_CODES


# =============================================================================
# Error Classification
# =============================================================================


def get_status_code(exception: BaseException) -> int | None:
    """HTTP-like status attached to an exception, if any."""
    status = getattr(exception, "status_code", None)
    if isinstance(status, int):
        return status

    response = getattr(exception, "response", None)
    status = getattr(response, "status_code", None)
    return status if isinstance(status, int) else None


def extract_retry_after(body: Any) -> float | None:
    """
    Extract a retry-after value (seconds) from a provider error body.

    Some providers put it at the top level, others under ``error``.
    """
    if not isinstance(body, dict):
        return None

    for container in (body, body.get("error")):
        if not isinstance(container, dict):
            continue
        for key in ("retry_after", "retry-after", "retryAfter"):
            if key in container:
                try:
                    return float(container[key])
                except (ValueError, TypeError):
                    pass
    return None


def get_retry_after(exception: BaseException) -> float | None:
    """Retry-After hint in seconds carried by an exception, if any."""
    retry_after = getattr(exception, "retry_after", None)
    if isinstance(retry_after, (int, float)):
        return float(retry_after)

    response = getattr(exception, "response", None)
    headers = getattr(response, "headers", None)
    if headers is not None:
        header = headers.get("retry-after")
        if header:
            try:
                return float(header)
            except ValueError:
                pass

    return extract_retry_after(getattr(exception, "body", None))


def classify_exception(
    exception: BaseException,
    retryable_status_codes: frozenset[int] = DEFAULT_RETRYABLE_STATUS_CODES,
) -> tuple[str, float | None]:
    """
    Classify an exception for retry handling.

    Returns:
        Tuple of (category, retry_after_seconds or None) where category is
        "permanent", "rate_limited" or "transient"
    """
    if isinstance(exception, NEVER_RETRY):
        return ("permanent", None)

    status_code = get_status_code(exception)
    if status_code is not None and status_code not in retryable_status_codes:
        return ("permanent", None)

    retry_after = get_retry_after(exception)
    if status_code == 429:
        return ("rate_limited", retry_after)
    return ("transient", retry_after)


def is_transient(exception: BaseException) -> bool:
    """Check if an exception is transient and should be retried."""
    category, _ = classify_exception(exception)
    return category in ("transient", "rate_limited")


# =============================================================================
# Delay Computation
# =============================================================================


def compute_delay(
    attempt: int,
    config: RetryConfig,
    retry_after: float | None = None,
    jitter: float | None = None,
) -> float:
    """
    Delay in seconds before retrying after the given zero-based attempt.

    ``min(base * 2**attempt + uniform(0, base), max_delay)``, stretched to
    ``retry_after`` when the server asked for a longer wait.

    Args:
        attempt: Zero-based index of the attempt that just failed
        config: Retry policy
        retry_after: Server supplied Retry-After hint in seconds
        jitter: Fixed jitter value (drawn uniformly from [0, base) when None)
    """
    if jitter is None:
        jitter = random.uniform(0, config.base_delay)

    delay = min(config.base_delay * (2**attempt) + jitter, config.max_delay)
    if retry_after is not None and retry_after > 0:
        delay = max(delay, retry_after)
    return delay


def wait_with_retry_after(
    config: RetryConfig,
) -> Generator[float | None, BaseException | None, None]:
    """
    Wait generator for ``backoff.on_exception``.

    backoff primes the generator once, then sends the exception of every
    failed attempt and sleeps for the yielded number of seconds.
    """
    attempt = 0
    exception = yield None
    while True:
        retry_after = get_retry_after(exception) if exception is not None else None
        delay = compute_delay(attempt, config, retry_after)
        if retry_after:
            logger.debug("Using retry-after value: %.2fs (delay %.2fs)", retry_after, delay)
        attempt += 1
        exception = yield delay


# =============================================================================
# Executor
# =============================================================================


async def execute_with_retry(
    operation: Callable[[], Awaitable[T]],
    config: RetryConfig | None = None,
    on_retry: RetryObserver | None = None,
) -> T:
    """
    Run an async operation, retrying transient failures with backoff.

    Args:
        operation: Zero-argument callable returning an awaitable
        config: Retry policy (defaults to ``RetryConfig()``)
        on_retry: Observer called as ``on_retry(attempt, error, delay)`` before
            each wait; it cannot influence the retry loop

    Returns:
        The operation's result

    Raises:
        The last error raised by the operation when it is permanent or the
        attempts are exhausted.

    Example:
        result = await execute_with_retry(
            lambda: provider.generate_text("hello"),
            RetryConfig(max_retries=2),
        )
    """
    config = config or RetryConfig()

    def _wait_gen() -> Generator[float | None, BaseException | None, None]:
        return wait_with_retry_after(config)

    def _giveup(exception: Exception) -> bool:
        category, _ = classify_exception(exception, config.retryable_status_codes)
        return category == "permanent"

    def _on_backoff(details: Details) -> None:
        tries = details.get("tries", 0)
        wait = details.get("wait", 0.0)
        exception = details.get("exception")

        logger.warning(
            "Retry %d/%d, backing off %.2fs. Error: %s",
            tries,
            config.max_retries,
            wait,
            exception,
        )
        if on_retry is None:
            return
        try:
            on_retry(tries, exception, wait)
        except Exception as e:
            logger.warning("Retry observer failed: %s", e)

    def _on_giveup(details: Details) -> None:
        exception = details.get("exception")
        if _giveup(exception):
            logger.debug("Not retrying permanent error: %s", exception)
            return
        logger.error(
            "Giving up after %d attempts. Final error: %s",
            details.get("tries", 0),
            exception,
        )

    # backoff picks its async loop only for coroutine functions
    async def _attempt() -> T:
        return await operation()

    retrying = backoff.on_exception(
        _wait_gen,
        Exception,
        max_tries=config.max_retries + 1,  # backoff counts total tries, not retries
        giveup=_giveup,
        on_backoff=_on_backoff,
        on_giveup=_on_giveup,
        jitter=None,
        logger=None,
    )(_attempt)
    return await retrying()


__all__ = [
    "RetryConfig",
    "RetryObserver",
    "execute_with_retry",
    "compute_delay",
    "wait_with_retry_after",
    "classify_exception",
    "is_transient",
    "get_status_code",
    "get_retry_after",
    "extract_retry_after",
]

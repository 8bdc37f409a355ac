"""
Unified exception hierarchy for DevTrends.

This module provides a consistent exception structure across all layers:
- Base exceptions for common error categories
- Provider exceptions that carry an HTTP-like status code so the retry
  executor can tell transient failures from terminal ones

Usage:
    from devtrends.common.exceptions import ProviderError, ConfigurationError

    # Raise with context
    raise ConfigurationError("Missing API key", context={"provider": "groq"})

    # Chain from original exception
    raise ProviderError("Request failed", status_code=503, provider="groq") from e
"""

from __future__ import annotations

from typing import Any

# HTTP-like statuses that indicate a transient provider failure
DEFAULT_RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})


class BaseError(Exception):
    """
    Base exception for all application errors.

    Provides consistent error handling with optional context for debugging.

    Attributes:
        message: Human-readable error description
        context: Optional dictionary with additional error context
    """

    def __init__(self, message: str, context: dict[str, Any] | None = None):
        self.message = message
        self.context = context or {}
        super().__init__(message)

    def __str__(self) -> str:
        if self.context:
            context_str = ", ".join(f"{k}={v!r}" for k, v in self.context.items())
            return f"{self.message} ({context_str})"
        return self.message


# =============================================================================
# Configuration and Validation Errors
# =============================================================================


class ConfigurationError(BaseError):
    """Raised when configuration is invalid or missing (never retried)."""


class ValidationError(BaseError):
    """Raised when caller input fails validation."""


class NotFoundError(BaseError):
    """Raised when a requested record (prompt version, experiment) does not exist."""


# =============================================================================
# Storage and Cache Errors
# =============================================================================


class StorageError(BaseError):
    """Raised when the shared SQLite store cannot complete an operation."""


class CacheError(BaseError):
    """Raised when cache operations fail."""


# =============================================================================
# LLM Errors
# =============================================================================


class LLMError(BaseError):
    """Base exception for LLM operations."""


class ProviderError(LLMError):
    """
    Raised when an LLM provider call fails.

    Attributes:
        status_code: HTTP-like status (None when the failure had no status,
            e.g. a dropped connection that the SDK did not classify)
        provider: Provider tag that produced the failure
        retry_after: Server supplied Retry-After hint in seconds, if any
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        provider: str | None = None,
        retry_after: float | None = None,
        context: dict[str, Any] | None = None,
    ):
        super().__init__(message, context)
        self.status_code = status_code
        self.provider = provider
        self.retry_after = retry_after

    @property
    def retryable(self) -> bool:
        """True when the default policy would retry this failure."""
        return self.status_code is None or self.status_code in DEFAULT_RETRYABLE_STATUS_CODES

    def __str__(self) -> str:
        prefix = f"[{self.provider}] " if self.provider else ""
        status = f" (status {self.status_code})" if self.status_code else ""
        return f"{prefix}{super().__str__()}{status}"


class AllProvidersExhaustedError(ProviderError):
    """Raised when every provider in a use-case chain has failed."""

    def __init__(self, use_case: str, context: dict[str, Any] | None = None):
        super().__init__(
            f"All AI providers exhausted for use case: {use_case}",
            status_code=503,
            context=context,
        )
        self.use_case = use_case


class CircuitOpenError(LLMError):
    """Raised when circuit breaker is open and requests are being rejected."""

    def __init__(
        self,
        message: str,
        provider: str | None = None,
        retry_after: float | None = None,
        context: dict[str, Any] | None = None,
    ):
        super().__init__(message, context)
        self.provider = provider
        self.retry_after = retry_after


class QualityCheckError(LLMError):
    """Raised when a generated output scores below the quality threshold."""

    def __init__(
        self, message: str, score: float, context: dict[str, Any] | None = None
    ):
        super().__init__(message, context)
        self.score = score


__all__ = [
    "DEFAULT_RETRYABLE_STATUS_CODES",
    # Base
    "BaseError",
    # Configuration / validation
    "ConfigurationError",
    "ValidationError",
    "NotFoundError",
    # Storage / cache
    "StorageError",
    "CacheError",
    # LLM
    "LLMError",
    "ProviderError",
    "AllProvidersExhaustedError",
    "CircuitOpenError",
    "QualityCheckError",
]

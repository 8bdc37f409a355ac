"""
Common utilities shared across DevTrends layers.

Exports:
    Exceptions: BaseError, ConfigurationError, ValidationError, NotFoundError,
        StorageError, CacheError, LLMError, ProviderError,
        AllProvidersExhaustedError, CircuitOpenError, QualityCheckError
    Logging: configure_logging, get_logger, bind_request_context
    Time: current_timestamp, calculate_duration_ms, to_iso, window_bounds
"""

from __future__ import annotations

from devtrends.common.exceptions import (
    AllProvidersExhaustedError,
    BaseError,
    CacheError,
    CircuitOpenError,
    ConfigurationError,
    LLMError,
    NotFoundError,
    ProviderError,
    QualityCheckError,
    StorageError,
    ValidationError,
)
from devtrends.common.logging import (
    bind_request_context,
    clear_request_context,
    configure_logging,
    get_logger,
)
from devtrends.common.time_utils import (
    calculate_duration_ms,
    current_timestamp,
    days_ago,
    to_iso,
    window_bounds,
)

__all__ = [
    # Exceptions
    "BaseError",
    "ConfigurationError",
    "ValidationError",
    "NotFoundError",
    "StorageError",
    "CacheError",
    "LLMError",
    "ProviderError",
    "AllProvidersExhaustedError",
    "CircuitOpenError",
    "QualityCheckError",
    # Logging
    "configure_logging",
    "get_logger",
    "bind_request_context",
    "clear_request_context",
    # Time
    "current_timestamp",
    "calculate_duration_ms",
    "days_ago",
    "to_iso",
    "window_bounds",
]

"""
Configuration and result models for LLM providers.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict

from devtrends.common.exceptions import ConfigurationError

from .model_registry import DEFAULT_MODELS, VALID_PROVIDERS

__all__ = [
    "ProviderConfig",
    "GenerateOptions",
    "TokenUsage",
    "ResponseType",
    "GenerationResult",
]


# =============================================================================
# Provider Configuration
# =============================================================================


@dataclass(frozen=True)
class ProviderConfig:
    """
    Credential and model selection for one provider.

    Attributes:
        provider: Provider tag (one of VALID_PROVIDERS)
        model: Model identifier (empty means the provider default)
        api_key: API key (optional, read from ``<TAG>_API_KEY`` if not set)
        priority: Fallback rank; lower values are tried earlier among a
            route's fallbacks (the preferred provider always goes first)
        base_url: Override for the provider endpoint
        timeout: Per-call timeout in seconds
    """

    provider: str
    model: str = ""
    api_key: str | None = None
    priority: int = 0
    base_url: str | None = None
    timeout: float = 30.0

    def __post_init__(self):
        """Validate provider and fill in the default model."""
        if self.provider not in VALID_PROVIDERS:
            raise ConfigurationError(
                f"Invalid provider: {self.provider}. Must be one of {sorted(VALID_PROVIDERS)}"
            )
        if not self.model:
            object.__setattr__(self, "model", DEFAULT_MODELS[self.provider])

    @property
    def api_key_env(self) -> str:
        return f"{self.provider.upper()}_API_KEY"

    def get_api_key(self) -> str | None:
        """Get API key from direct value or environment variable."""
        return self.api_key or os.getenv(self.api_key_env)


class GenerateOptions(BaseModel):
    """Per-call overrides; anything left as None uses the provider default."""

    model_config = ConfigDict(frozen=True)

    model: str | None = None
    temperature: float | None = None
    max_tokens: int | None = None
    system_prompt: str | None = None


# =============================================================================
# Results
# =============================================================================


class TokenUsage(BaseModel):
    """Token counts reported by the provider (None when unreported)."""

    input_tokens: int | None = None
    output_tokens: int | None = None


class ResponseType(str, Enum):
    """Where a generation result came from."""

    LIVE = "live"
    CACHED = "cached"


class GenerationResult(BaseModel):
    """
    Outcome of a successful generation.

    ``output`` is a validated Pydantic instance, a parsed JSON dict, or text,
    depending on the operation that produced it.
    """

    model_config = ConfigDict(extra="ignore")

    response_type: ResponseType = ResponseType.LIVE
    provider: str
    model: str
    output: Any
    usage: TokenUsage = TokenUsage()
    latency_ms: int | None = None
    quality_score: float | None = None

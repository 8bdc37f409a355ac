"""
Resilient multi-provider LLM access.

Uses PydanticAI for model-agnostic LLM interactions.

Supports:
- Gemini
- Groq
- xAI
- Mistral
- Cerebras
- OpenRouter
- HuggingFace

Example:
    from devtrends.adapters.llm import GenerationService, TechInsight

    service = GenerationService(settings, telemetry)
    result = await service.generate_json(
        prompt, use_case="batch_insight", response_model=TechInsight
    )
    print(result.output.headline)  # Type-safe!
"""

from __future__ import annotations

from .cache import ResponseCache
from .circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerRegistry,
    CircuitState,
)
from .manager import GenerationService, QualityScorer
from .model_registry import (
    DEFAULT_MODELS,
    VALID_PROVIDERS,
    aclose_http_clients,
    get_pydantic_ai_model,
    register_provider,
)
from .models import (
    GenerateOptions,
    GenerationResult,
    ProviderConfig,
    ResponseType,
    TokenUsage,
)
from .providers import LLMProvider, ProviderFactory, PydanticAIProvider, create_provider
from .retry import RetryConfig, compute_delay, execute_with_retry
from .routing import ROUTING_TABLE, RouteConfig, UseCase, provider_chain
from .schemas import (
    AnomalyExplanation,
    ComparisonInsight,
    Recommendation,
    TechInsight,
    WeeklyDigest,
)

__all__ = [
    # Orchestration
    "GenerationService",
    "QualityScorer",
    # Providers
    "LLMProvider",
    "ProviderFactory",
    "PydanticAIProvider",
    "create_provider",
    "register_provider",
    "get_pydantic_ai_model",
    "aclose_http_clients",
    "VALID_PROVIDERS",
    "DEFAULT_MODELS",
    # Models
    "ProviderConfig",
    "GenerateOptions",
    "GenerationResult",
    "ResponseType",
    "TokenUsage",
    # Resilience
    "RetryConfig",
    "execute_with_retry",
    "compute_delay",
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitBreakerRegistry",
    "CircuitState",
    # Routing
    "UseCase",
    "RouteConfig",
    "ROUTING_TABLE",
    "provider_chain",
    # Cache and schemas
    "ResponseCache",
    "TechInsight",
    "ComparisonInsight",
    "WeeklyDigest",
    "AnomalyExplanation",
    "Recommendation",
]

"""
Provider routing per use case.

Gemini: best JSON schema enforcement, cheapest batch work
Groq/Cerebras: fastest inference, used for real-time chat
xAI Grok: strong reasoning, smart fallback
Mistral: reliable quality, batch fallback
OpenRouter: routes to a free model, late fallback
HuggingFace: slowest, emergency only
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

__all__ = ["UseCase", "RouteConfig", "ROUTING_TABLE", "provider_chain"]


class UseCase(str, Enum):
    """Calling features, carried through telemetry for breakdowns."""

    BATCH_INSIGHT = "batch_insight"
    COMPARISON = "comparison"
    CHAT = "chat"
    DIGEST = "digest"
    ANOMALY_EXPLAIN = "anomaly_explain"
    RECOMMENDATION = "recommendation"


@dataclass(frozen=True)
class RouteConfig:
    preferred_provider: str
    fallback_order: tuple[str, ...]
    max_latency_ms: int
    temperature: float


ROUTING_TABLE: dict[UseCase, RouteConfig] = {
    UseCase.BATCH_INSIGHT: RouteConfig(
        preferred_provider="gemini",
        fallback_order=("mistral", "xai", "openrouter", "groq", "huggingface"),
        max_latency_ms=5000,
        temperature=0.3,
    ),
    UseCase.COMPARISON: RouteConfig(
        preferred_provider="gemini",
        fallback_order=("xai", "mistral", "openrouter", "groq", "huggingface"),
        max_latency_ms=5000,
        temperature=0.3,
    ),
    UseCase.CHAT: RouteConfig(
        preferred_provider="groq",
        fallback_order=("cerebras", "xai", "gemini", "openrouter", "mistral", "huggingface"),
        max_latency_ms=2000,
        temperature=0.5,
    ),
    UseCase.DIGEST: RouteConfig(
        preferred_provider="gemini",
        fallback_order=("xai", "mistral", "openrouter"),
        max_latency_ms=15000,
        temperature=0.4,
    ),
    UseCase.ANOMALY_EXPLAIN: RouteConfig(
        preferred_provider="gemini",
        fallback_order=("xai", "groq", "cerebras", "mistral", "openrouter"),
        max_latency_ms=3000,
        temperature=0.3,
    ),
    UseCase.RECOMMENDATION: RouteConfig(
        preferred_provider="gemini",
        fallback_order=("groq", "xai", "mistral", "openrouter"),
        max_latency_ms=5000,
        temperature=0.7,
    ),
}


def provider_chain(
    use_case: UseCase | str, priority: Callable[[str], int] | None = None
) -> tuple[str, ...]:
    """
    Preferred provider followed by the fallbacks.

    Args:
        use_case: Calling feature
        priority: Rank per provider tag; fallbacks are stably sorted by it
            (lower first), so equal ranks keep the table order
    """
    route = ROUTING_TABLE[UseCase(use_case)]
    fallbacks = route.fallback_order
    if priority is not None:
        fallbacks = tuple(sorted(fallbacks, key=priority))
    return (route.preferred_provider, *fallbacks)

"""
Provider registry for PydanticAI models.

Maps each DevTrends provider tag to a factory that builds the PydanticAI
model serving it. Adding a backend means registering one more factory with
``@register_provider``; nothing else dispatches on the tag.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import TYPE_CHECKING

import httpx

from devtrends.common.exceptions import ConfigurationError

if TYPE_CHECKING:
    from pydantic_ai.models import Model

    from .models import ProviderConfig

# Closed set of provider tags accepted in configuration
VALID_PROVIDERS = frozenset(
    {"gemini", "groq", "xai", "mistral", "cerebras", "openrouter", "huggingface"}
)

DEFAULT_MODELS: dict[str, str] = {
    "gemini": "gemini-2.0-flash",
    "groq": "llama-3.3-70b-versatile",
    "xai": "grok-2",
    "mistral": "mistral-small-latest",
    "cerebras": "llama-3.3-70b",
    "openrouter": "meta-llama/llama-3.3-70b-instruct:free",
    "huggingface": "meta-llama/Llama-3.3-70B-Instruct",
}

OPENAI_COMPATIBLE_BASE_URLS: dict[str, str] = {
    "groq": "https://api.groq.com/openai/v1",
    "xai": "https://api.x.ai/v1",
    "mistral": "https://api.mistral.ai/v1",
    "cerebras": "https://api.cerebras.ai/v1",
    "openrouter": "https://openrouter.ai/api/v1",
    "huggingface": "https://api-inference.huggingface.co/models/{model}/v1",
}

# OpenRouter attributes traffic to the calling application through these
OPENROUTER_HEADERS: dict[str, str] = {
    "HTTP-Referer": "https://devtrends.dev",
    "X-Title": "DevTrends Intelligence Engine",
}

ModelFactory = Callable[["ProviderConfig", str], "Model"]

_MODEL_FACTORIES: dict[str, ModelFactory] = {}

# HTTP clients built by the factories, closed by aclose_http_clients()
_HTTP_CLIENTS: list[httpx.AsyncClient] = []


def register_provider(*tags: str) -> Callable[[ModelFactory], ModelFactory]:
    """
    Register a model factory for one or more provider tags.

    The factory receives the ``ProviderConfig`` and the resolved API key.

    Example:
        @register_provider("groq")
        def _groq_model(config, api_key):
            ...
    """

    def decorator(factory: ModelFactory) -> ModelFactory:
        for tag in tags:
            _MODEL_FACTORIES[tag] = factory
        return factory

    return decorator


def registered_providers() -> frozenset[str]:
    """Tags that currently have a factory."""
    return frozenset(_MODEL_FACTORIES)


def get_pydantic_ai_model(config: ProviderConfig) -> Model:
    """
    Build the PydanticAI model for a provider config.

    Args:
        config: Provider tag, model and optional credential

    Returns:
        PydanticAI Model instance

    Raises:
        ConfigurationError: If the tag has no factory or no API key is available
    """
    factory = _MODEL_FACTORIES.get(config.provider)
    if factory is None:
        raise ConfigurationError(
            f"Unknown provider: {config.provider}. "
            f"Registered providers: {', '.join(sorted(_MODEL_FACTORIES))}"
        )

    api_key = config.get_api_key()
    if not api_key:
        raise ConfigurationError(
            f"Missing API key for provider '{config.provider}'",
            context={"env_var": config.api_key_env},
        )

    return factory(config, api_key)


async def aclose_http_clients() -> int:
    """
    Close the HTTP clients opened for provider models.

    Returns:
        Number of clients closed
    """
    closed = 0
    while _HTTP_CLIENTS:
        client = _HTTP_CLIENTS.pop()
        if not client.is_closed:
            await client.aclose()
            closed += 1
    return closed


@register_provider("gemini")
def _gemini_model(config: ProviderConfig, api_key: str) -> Model:
    from pydantic_ai.models.google import GoogleModel
    from pydantic_ai.providers.google import GoogleProvider

    return GoogleModel(config.model, provider=GoogleProvider(api_key=api_key))


@register_provider("groq", "xai", "mistral", "cerebras", "huggingface")
def _openai_compatible_model(config: ProviderConfig, api_key: str) -> Model:
    from pydantic_ai.models.openai import OpenAIChatModel
    from pydantic_ai.providers.openai import OpenAIProvider

    openai_provider = OpenAIProvider(base_url=_base_url(config), api_key=api_key)
    return OpenAIChatModel(config.model, provider=openai_provider)


@register_provider("openrouter")
def _openrouter_model(config: ProviderConfig, api_key: str) -> Model:
    from pydantic_ai.models.openai import OpenAIChatModel
    from pydantic_ai.providers.openai import OpenAIProvider

    http_client = httpx.AsyncClient(headers=OPENROUTER_HEADERS, timeout=config.timeout)
    _HTTP_CLIENTS.append(http_client)
    openai_provider = OpenAIProvider(
        base_url=_base_url(config), api_key=api_key, http_client=http_client
    )
    return OpenAIChatModel(config.model, provider=openai_provider)


def _base_url(config: ProviderConfig) -> str:
    url = config.base_url or OPENAI_COMPATIBLE_BASE_URLS[config.provider]
    return _normalize_openai_url(url.format(model=config.model))


def _normalize_openai_url(url: str) -> str:
    """Normalize OpenAI-compatible URL to base URL format."""
    url = url.rstrip("/")
    if url.endswith("/chat/completions"):
        url = url[: -len("/chat/completions")]
    if not url.endswith("/v1"):
        url = url + "/v1"
    return url


__all__ = [
    "VALID_PROVIDERS",
    "DEFAULT_MODELS",
    "OPENAI_COMPATIBLE_BASE_URLS",
    "OPENROUTER_HEADERS",
    "register_provider",
    "registered_providers",
    "get_pydantic_ai_model",
    "aclose_http_clients",
]

"""
Provider abstraction over PydanticAI.

Every backend exposes the same three operations (structured JSON, free text,
streamed text). A single ``PydanticAIProvider`` serves every tag; the
per-tag differences live in the model registry.

Failures are normalised to ``ProviderError`` with an HTTP-like status so the
retry executor never needs to know backend specific error shapes:

    HTTP error from the backend   -> its status code
    timeout                       -> 504
    malformed / unexpected output -> 502
    connection failure            -> 503
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator, Callable
from contextlib import AsyncExitStack
from dataclasses import replace
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

import httpx
from pydantic import BaseModel
from pydantic_ai import Agent, StructuredDict
from pydantic_ai.exceptions import ModelHTTPError, UnexpectedModelBehavior
from pydantic_ai.settings import ModelSettings

from devtrends.common.exceptions import BaseError, ProviderError
from devtrends.common.time_utils import calculate_duration_ms

from .model_registry import get_pydantic_ai_model
from .models import GenerateOptions, GenerationResult, ProviderConfig, TokenUsage
from .retry import extract_retry_after

if TYPE_CHECKING:
    from pydantic_ai.models import Model

logger = logging.getLogger(__name__)

# (temperature, max_tokens) used when the caller does not override them
JSON_DEFAULTS = (0.3, 2048)
TEXT_DEFAULTS = (0.4, 1024)
STREAM_DEFAULTS = (0.4, 2048)


@runtime_checkable
class LLMProvider(Protocol):
    """Uniform interface over LLM backends."""

    name: str

    @property
    def model(self) -> str: ...

    async def generate_json(
        self,
        prompt: str,
        schema: dict[str, Any] | None = None,
        options: GenerateOptions | None = None,
        response_model: type[BaseModel] | None = None,
    ) -> GenerationResult: ...

    async def generate_text(
        self, prompt: str, options: GenerateOptions | None = None
    ) -> GenerationResult: ...

    def generate_stream(
        self, prompt: str, options: GenerateOptions | None = None
    ) -> AsyncIterator[str]: ...


ProviderFactory = Callable[[ProviderConfig], LLMProvider]


class PydanticAIProvider:
    """
    LLM provider backed by a PydanticAI model.

    Example:
        provider = PydanticAIProvider(ProviderConfig(provider="groq"))
        result = await provider.generate_text("Summarise Rust in one line")
        print(result.output)

        # Tests inject a model instead of resolving credentials
        provider = PydanticAIProvider(config, model=TestModel())
    """

    def __init__(self, config: ProviderConfig, model: Model | None = None):
        """
        Args:
            config: Provider tag, model and credential
            model: Pre-built PydanticAI model (skips the registry and the
                credential lookup)

        Raises:
            ConfigurationError: If the tag is unknown or no API key is set
        """
        self.config = config
        self.name = config.provider
        self._injected = model is not None
        self._model = model if model is not None else get_pydantic_ai_model(config)
        self._override_models: dict[str, Model] = {}

    @property
    def model(self) -> str:
        return self.config.model

    def __repr__(self) -> str:
        return f"PydanticAIProvider(provider={self.name}, model={self.model})"

    # =========================================================================
    # Operations
    # =========================================================================

    async def generate_json(
        self,
        prompt: str,
        schema: dict[str, Any] | None = None,
        options: GenerateOptions | None = None,
        response_model: type[BaseModel] | None = None,
    ) -> GenerationResult:
        """
        Generate schema-validated structured output.

        Args:
            prompt: The prompt text
            schema: JSON schema the output must satisfy (ignored when
                ``response_model`` is given)
            options: Per-call overrides
            response_model: Pydantic model to validate the output into

        Returns:
            GenerationResult whose output is a ``response_model`` instance or a dict

        Raises:
            ProviderError: If the backend call fails
        """
        output_type: Any
        if response_model is not None:
            output_type = response_model
        elif schema:
            output_type = StructuredDict(schema)
        else:
            output_type = dict[str, Any]

        return await self._run(prompt, output_type, options, JSON_DEFAULTS)

    async def generate_text(
        self, prompt: str, options: GenerateOptions | None = None
    ) -> GenerationResult:
        """Generate free-form text."""
        return await self._run(prompt, str, options, TEXT_DEFAULTS)

    async def generate_stream(
        self, prompt: str, options: GenerateOptions | None = None
    ) -> AsyncIterator[str]:
        """
        Stream text chunks as the backend produces them.

        Single pass: the iterator cannot be restarted. Opening the stream and
        waiting for each chunk are both bounded by the provider timeout.

        Raises:
            ProviderError: If the backend fails before or during the stream
        """
        agent, settings, _ = self._agent(str, options, STREAM_DEFAULTS)
        timeout = self.config.timeout

        async with AsyncExitStack() as stack:
            try:
                async with asyncio.timeout(timeout):
                    stream = await stack.enter_async_context(
                        agent.run_stream(prompt, model_settings=settings)
                    )
            except BaseError:
                raise
            except Exception as e:
                raise self._to_provider_error(e) from e

            chunks = stream.stream_text(delta=True).__aiter__()
            while True:
                try:
                    async with asyncio.timeout(timeout):
                        chunk = await chunks.__anext__()
                except StopAsyncIteration:
                    break
                except BaseError:
                    raise
                except Exception as e:
                    raise self._to_provider_error(e) from e
                if chunk:
                    yield chunk

    # =========================================================================
    # Helpers
    # =========================================================================

    def _resolve_model(self, options: GenerateOptions | None) -> tuple[Model, str]:
        if options and options.model and options.model != self.config.model:
            if self._injected:
                return self._model, options.model
            override = self._override_models.get(options.model)
            if override is None:
                override = get_pydantic_ai_model(replace(self.config, model=options.model))
                self._override_models[options.model] = override
            return override, options.model
        return self._model, self.config.model

    def _agent(
        self,
        output_type: Any,
        options: GenerateOptions | None,
        defaults: tuple[float, int],
    ) -> tuple[Agent[None, Any], ModelSettings, str]:
        options = options or GenerateOptions()
        model, model_name = self._resolve_model(options)

        agent: Agent[None, Any] = Agent(
            model=model,
            output_type=output_type,
            system_prompt=options.system_prompt or (),
        )

        default_temperature, default_max_tokens = defaults
        settings: ModelSettings = {
            "temperature": (
                options.temperature if options.temperature is not None else default_temperature
            ),
            "max_tokens": (
                options.max_tokens if options.max_tokens is not None else default_max_tokens
            ),
        }
        return agent, settings, model_name

    async def _run(
        self,
        prompt: str,
        output_type: Any,
        options: GenerateOptions | None,
        defaults: tuple[float, int],
    ) -> GenerationResult:
        agent, settings, model_name = self._agent(output_type, options, defaults)

        start = time.perf_counter()
        try:
            async with asyncio.timeout(self.config.timeout):
                result = await agent.run(prompt, model_settings=settings)
        except BaseError:
            raise
        except Exception as e:
            raise self._to_provider_error(e) from e

        return GenerationResult(
            provider=self.name,
            model=model_name,
            output=result.output,
            usage=_token_usage(result.usage),
            latency_ms=calculate_duration_ms(start),
        )

    def _to_provider_error(self, error: Exception) -> ProviderError:
        """Map a PydanticAI / transport exception onto ProviderError."""
        if isinstance(error, ModelHTTPError):
            return ProviderError(
                f"Provider returned HTTP {error.status_code}",
                status_code=error.status_code,
                provider=self.name,
                retry_after=extract_retry_after(error.body),
                context={"model": error.model_name},
            )
        if isinstance(error, TimeoutError):
            return ProviderError(
                f"Request timed out after {self.config.timeout}s",
                status_code=504,
                provider=self.name,
            )
        if isinstance(error, UnexpectedModelBehavior):
            return ProviderError(
                f"Unexpected model output: {error.message}",
                status_code=502,
                provider=self.name,
            )
        if isinstance(error, (httpx.TransportError, ConnectionError, OSError)):
            return ProviderError(
                f"Connection failed: {error}",
                status_code=503,
                provider=self.name,
            )

        logger.debug("Unclassified error from %s: %r", self.name, error)
        return ProviderError(str(error) or type(error).__name__, provider=self.name)


def _token_usage(run_usage: Any) -> TokenUsage:
    # A method on older pydantic-ai releases, a property on newer ones
    if callable(run_usage):
        run_usage = run_usage()
    return TokenUsage(
        input_tokens=getattr(run_usage, "input_tokens", None),
        output_tokens=getattr(run_usage, "output_tokens", None),
    )


def create_provider(config: ProviderConfig) -> LLMProvider:
    """
    Resolve a ProviderConfig into a ready provider.

    Raises:
        ConfigurationError: If the tag is unknown or no API key is set
    """
    return PydanticAIProvider(config)


__all__ = [
    "LLMProvider",
    "ProviderFactory",
    "PydanticAIProvider",
    "create_provider",
    "JSON_DEFAULTS",
    "TEXT_DEFAULTS",
    "STREAM_DEFAULTS",
]

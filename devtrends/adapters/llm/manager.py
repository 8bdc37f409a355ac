"""
Generation Service - resilient LLM calls routed per use case.

Every call walks the use case's provider chain:

    circuit breaker -> retry executor -> next provider on failure

and logs one telemetry event per executor call (``generation``,
``quality_fail`` or ``error``), plus ``retry``, ``fallback``,
``circuit_open`` and ``cache_hit``/``cache_miss`` events along the way.
Only when every provider in the chain has failed does the caller see an
error (``AllProvidersExhaustedError``).

Usage:
    from devtrends.adapters.llm import GenerationService
    from devtrends.config import load_settings

    service = GenerationService(load_settings(), telemetry)
    result = await service.generate_json(
        prompt, use_case="batch_insight", response_model=TechInsight
    )
    print(result.output.headline)

    async for chunk in service.generate_stream(question, use_case="chat"):
        print(chunk, end="")
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import TYPE_CHECKING, Any, TypeVar

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from devtrends.common.exceptions import (
    AllProvidersExhaustedError,
    CacheError,
    CircuitOpenError,
    ConfigurationError,
    QualityCheckError,
)
from devtrends.common.time_utils import calculate_duration_ms
from devtrends.storage import TelemetryEventKind

from .cache import ResponseCache
from .circuit_breaker import CircuitBreakerConfig, CircuitBreakerRegistry
from .model_registry import VALID_PROVIDERS
from .models import GenerateOptions, GenerationResult, ProviderConfig
from .providers import LLMProvider, ProviderFactory, create_provider
from .retry import RetryConfig, execute_with_retry
from .routing import ROUTING_TABLE, UseCase, provider_chain

if TYPE_CHECKING:
    from devtrends.config import Settings
    from devtrends.services.telemetry import TelemetryTracker

logger = logging.getLogger(__name__)

T = TypeVar("T")

QualityScorer = Callable[[Any], float]


class GenerationService:
    """
    Routes generation requests across providers with retry and fallback.

    Features:
    - Use-case routing with ordered fallbacks
    - Bounded exponential-backoff retries per provider
    - Per-provider circuit breakers
    - Optional response caching and quality gate
    - Telemetry for every attempt
    """

    def __init__(
        self,
        settings: Settings,
        telemetry: TelemetryTracker | None = None,
        *,
        provider_factory: ProviderFactory = create_provider,
        cache: ResponseCache | None = None,
        breakers: CircuitBreakerRegistry | None = None,
    ):
        """
        Args:
            settings: Runtime settings (retry policy, breaker thresholds, cache)
            telemetry: Event sink (events are dropped when None)
            provider_factory: Builds a provider from a ProviderConfig
            cache: Response cache (built from settings when None and caching is on)
            breakers: Circuit breakers shared between service instances

        Raises:
            ConfigurationError: If LLM_PROVIDERS names an unknown provider
        """
        self.settings = settings
        self.telemetry = telemetry
        self._provider_factory = provider_factory
        self._providers: dict[str, LLMProvider] = {}

        if settings.enabled_providers is not None:
            unknown = settings.enabled_providers - VALID_PROVIDERS
            if unknown:
                raise ConfigurationError(
                    f"Unknown providers in LLM_PROVIDERS: {', '.join(sorted(unknown))}. "
                    f"Valid providers: {', '.join(sorted(VALID_PROVIDERS))}"
                )

        self.primary_retry = RetryConfig(
            max_retries=settings.max_retries,
            base_delay=settings.retry_base_delay,
            max_delay=settings.retry_max_delay,
        )
        self.fallback_retry = RetryConfig(
            max_retries=settings.fallback_max_retries,
            base_delay=settings.retry_base_delay,
            max_delay=settings.retry_max_delay,
        )

        self.breakers = breakers or CircuitBreakerRegistry(
            CircuitBreakerConfig(
                failure_threshold=settings.circuit_failure_threshold,
                recovery_time=settings.circuit_recovery_time,
                half_open_successes=settings.circuit_half_open_successes,
                enabled=settings.circuit_breaker_enabled,
            )
        )

        if cache is None and settings.cache_enabled:
            cache = ResponseCache(settings.cache_dir, ttl=settings.cache_ttl)
        self.cache = cache

    # =========================================================================
    # Public operations
    # =========================================================================

    async def generate_json(
        self,
        prompt: str,
        *,
        use_case: UseCase | str,
        schema: dict[str, Any] | None = None,
        response_model: type[BaseModel] | None = None,
        system_prompt: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        metadata: dict[str, Any] | None = None,
        use_cache: bool = True,
        quality_check: QualityScorer | None = None,
    ) -> GenerationResult:
        """
        Generate structured output for a use case.

        Args:
            prompt: The prompt text
            use_case: Routing use case
            schema: JSON schema for the output (when no response_model)
            response_model: Pydantic model to validate the output into
            system_prompt: System prompt (usually the active prompt version)
            temperature: Override for the route's temperature
            max_tokens: Override for the provider default
            metadata: Extra telemetry metadata (prompt version, experiment arm)
            use_cache: Whether to read and write the response cache
            quality_check: Scores the output 0-100; below the threshold the
                result is rejected

        Returns:
            GenerationResult (``response_type`` is CACHED for cache hits)

        Raises:
            AllProvidersExhaustedError: If every provider failed
            ConfigurationError: If no provider in the chain is configured
            QualityCheckError: If the output scored below the threshold
        """
        use_case = UseCase(use_case)
        metadata = dict(metadata or {})
        options = self._options(use_case, system_prompt, temperature, max_tokens)

        cache_key = None
        if self.cache is not None and use_cache:
            cache_schema = response_model.model_json_schema() if response_model else schema
            cache_key = ResponseCache.generate_cache_key(
                prompt, use_case.value, cache_schema, system_prompt
            )
            if not self.settings.nocache:
                cached = self._read_cache(cache_key, use_case, response_model, metadata)
                if cached is not None:
                    return cached

        start = time.perf_counter()
        provider, result = await self._call_chain(
            use_case,
            lambda p: p.generate_json(prompt, schema, options, response_model),
            metadata,
        )
        result = self._finish(provider, result, use_case, start, metadata, quality_check)

        if cache_key is not None:
            self._write_cache(cache_key, result)
        return result

    async def generate_text(
        self,
        prompt: str,
        *,
        use_case: UseCase | str,
        system_prompt: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        metadata: dict[str, Any] | None = None,
        use_cache: bool = True,
        quality_check: QualityScorer | None = None,
    ) -> GenerationResult:
        """Generate free-form text for a use case (see ``generate_json``)."""
        use_case = UseCase(use_case)
        metadata = dict(metadata or {})
        options = self._options(use_case, system_prompt, temperature, max_tokens)

        cache_key = None
        if self.cache is not None and use_cache:
            cache_key = ResponseCache.generate_cache_key(
                prompt, use_case.value, None, system_prompt, kind="text"
            )
            if not self.settings.nocache:
                cached = self._read_cache(cache_key, use_case, None, metadata)
                if cached is not None:
                    return cached

        start = time.perf_counter()
        provider, result = await self._call_chain(
            use_case, lambda p: p.generate_text(prompt, options), metadata
        )
        result = self._finish(provider, result, use_case, start, metadata, quality_check)

        if cache_key is not None:
            self._write_cache(cache_key, result)
        return result

    async def generate_stream(
        self,
        prompt: str,
        *,
        use_case: UseCase | str = UseCase.CHAT,
        system_prompt: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> AsyncIterator[str]:
        """
        Stream text for a use case.

        Opening the stream (up to the first chunk) goes through the retry
        executor and the fallback chain. Once chunks flow the provider is
        committed: a failure mid-stream is logged and raised, never retried.
        """
        use_case = UseCase(use_case)
        metadata = dict(metadata or {})
        options = self._options(use_case, system_prompt, temperature, max_tokens)

        async def _open(provider: LLMProvider) -> tuple[AsyncIterator[str], str | None]:
            stream = provider.generate_stream(prompt, options)
            try:
                first = await anext(stream)
            except StopAsyncIteration:
                return stream, None
            except BaseException:
                await stream.aclose()
                raise
            return stream, first

        start = time.perf_counter()
        provider, (stream, first) = await self._call_chain(use_case, _open, metadata)

        chunks = 0
        failure: Exception | None = None
        try:
            if first:
                chunks += 1
                yield first
            async for chunk in stream:
                chunks += 1
                yield chunk
        except Exception as e:
            failure = e
            raise
        finally:
            await stream.aclose()
            latency_ms = calculate_duration_ms(start)
            if failure is None:
                self._emit(
                    TelemetryEventKind.GENERATION,
                    provider=provider.name,
                    model=provider.model,
                    use_case=use_case.value,
                    latency_ms=latency_ms,
                    metadata={**metadata, "stream": True, "chunks": chunks},
                )
            else:
                self.breakers.get(provider.name).record_failure()
                self._emit(
                    TelemetryEventKind.ERROR,
                    provider=provider.name,
                    model=provider.model,
                    use_case=use_case.value,
                    latency_ms=latency_ms,
                    error=str(failure),
                    metadata={**metadata, "stream": True, "chunks": chunks},
                )

    # =========================================================================
    # Status
    # =========================================================================

    def provider_status(self) -> list[dict[str, Any]]:
        """Configured/enabled flags and breaker state for every provider tag."""
        breaker_stats = self.breakers.get_stats()
        status = []
        for tag in sorted(VALID_PROVIDERS):
            stats = breaker_stats.get(tag, {})
            config = self._provider_config(tag)
            status.append(
                {
                    "name": tag,
                    "enabled": self.settings.is_enabled(tag),
                    "configured": bool(config.get_api_key()),
                    "model": config.model,
                    "priority": config.priority,
                    "circuitState": stats.get("state", "closed"),
                    "consecutiveFailures": stats.get("consecutive_failures", 0),
                }
            )
        return status

    def __repr__(self) -> str:
        return f"GenerationService(providers={sorted(self._providers)})"

    # =========================================================================
    # Fallback chain
    # =========================================================================

    def _get_provider(self, tag: str) -> LLMProvider:
        """Build (once) the provider for a tag; ConfigurationError is not cached."""
        provider = self._providers.get(tag)
        if provider is None:
            provider = self._provider_factory(self._provider_config(tag))
            self._providers[tag] = provider
        return provider

    def _provider_config(self, tag: str) -> ProviderConfig:
        return ProviderConfig(
            provider=tag,
            model=self.settings.model_for(tag) or "",
            priority=self.settings.priority_for(tag),
            timeout=self.settings.timeout,
        )

    async def _call_chain(
        self,
        use_case: UseCase,
        operation: Callable[[LLMProvider], Awaitable[T]],
        metadata: dict[str, Any],
    ) -> tuple[LLMProvider, T]:
        route = ROUTING_TABLE[use_case]
        chain = [
            tag
            for tag in provider_chain(use_case, self.settings.priority_for)
            if self.settings.is_enabled(tag)
        ]
        if not chain:
            raise ConfigurationError(
                f"No providers enabled for use case: {use_case.value}",
                context={"enabled": sorted(self.settings.enabled_providers or ())},
            )

        last_error: Exception | None = None
        configuration_errors: list[ConfigurationError] = []
        previous: str | None = None

        for tag in chain:
            try:
                provider = self._get_provider(tag)
            except ConfigurationError as e:
                logger.debug("Skipping provider %s: %s", tag, e)
                configuration_errors.append(e)
                last_error = e
                continue

            breaker = self.breakers.get(tag)
            try:
                breaker.before_call()
            except CircuitOpenError as e:
                logger.warning("Skipping provider %s for %s: %s", tag, use_case.value, e)
                self._emit(
                    TelemetryEventKind.CIRCUIT_OPEN,
                    provider=tag,
                    model=provider.model,
                    use_case=use_case.value,
                    error=str(e),
                    metadata=metadata,
                )
                last_error = e
                continue

            if previous is not None:
                self._emit(
                    TelemetryEventKind.FALLBACK,
                    provider=tag,
                    model=provider.model,
                    use_case=use_case.value,
                    metadata={**metadata, "from_provider": previous},
                )

            retry_config = (
                self.primary_retry if tag == route.preferred_provider else self.fallback_retry
            )

            def _on_retry(attempt: int, error: Exception, delay: float, _p=provider) -> None:
                self._emit(
                    TelemetryEventKind.RETRY,
                    provider=_p.name,
                    model=_p.model,
                    use_case=use_case.value,
                    error=str(error),
                    metadata={**metadata, "attempt": attempt, "delay_s": round(delay, 3)},
                )

            start = time.perf_counter()
            try:
                value = await execute_with_retry(
                    lambda _p=provider: operation(_p), retry_config, _on_retry
                )
            except ConfigurationError as e:
                configuration_errors.append(e)
                last_error = e
                previous = tag
                continue
            except Exception as e:
                breaker.record_failure()
                logger.error("Provider %s failed for %s: %s", tag, use_case.value, e)
                self._emit(
                    TelemetryEventKind.ERROR,
                    provider=tag,
                    model=provider.model,
                    use_case=use_case.value,
                    latency_ms=calculate_duration_ms(start),
                    error=str(e),
                    metadata=metadata,
                )
                last_error = e
                previous = tag
                continue

            breaker.record_success()
            return provider, value

        if last_error is not None and len(configuration_errors) == len(chain):
            raise ConfigurationError(
                f"No provider configured for use case: {use_case.value}",
                context={"providers": chain},
            ) from last_error

        raise AllProvidersExhaustedError(
            use_case.value, context={"providers": chain}
        ) from last_error

    # =========================================================================
    # Helpers
    # =========================================================================

    def _options(
        self,
        use_case: UseCase,
        system_prompt: str | None,
        temperature: float | None,
        max_tokens: int | None,
    ) -> GenerateOptions:
        return GenerateOptions(
            temperature=(
                temperature if temperature is not None else ROUTING_TABLE[use_case].temperature
            ),
            max_tokens=max_tokens,
            system_prompt=system_prompt,
        )

    def _finish(
        self,
        provider: LLMProvider,
        result: GenerationResult,
        use_case: UseCase,
        start: float,
        metadata: dict[str, Any],
        quality_check: QualityScorer | None,
    ) -> GenerationResult:
        """Score the output and log the outcome event."""
        latency_ms = calculate_duration_ms(start)
        score = quality_check(result.output) if quality_check is not None else None
        result = result.model_copy(update={"latency_ms": latency_ms, "quality_score": score})

        passed = score is None or score >= self.settings.quality_threshold
        self._emit(
            TelemetryEventKind.GENERATION if passed else TelemetryEventKind.QUALITY_FAIL,
            provider=provider.name,
            model=result.model,
            use_case=use_case.value,
            latency_ms=latency_ms,
            token_input=result.usage.input_tokens,
            token_output=result.usage.output_tokens,
            quality_score=score,
            metadata=metadata,
        )
        if not passed:
            raise QualityCheckError(
                f"Output scored {score:.0f}, below threshold {self.settings.quality_threshold:.0f}",
                score=score,
                context={"provider": provider.name, "use_case": use_case.value},
            )
        return result

    def _read_cache(
        self,
        cache_key: str,
        use_case: UseCase,
        response_model: type[BaseModel] | None,
        metadata: dict[str, Any],
    ) -> GenerationResult | None:
        start = time.perf_counter()
        try:
            cached = self.cache.get_response(cache_key) if self.cache else None
            if cached is not None and response_model is not None:
                cached = cached.model_copy(
                    update={"output": response_model.model_validate(cached.output)}
                )
        except (CacheError, PydanticValidationError) as e:
            logger.warning("Ignoring unreadable cache entry %s: %s", cache_key[:12], e)
            cached = None

        if cached is None:
            self._emit(
                TelemetryEventKind.CACHE_MISS,
                provider="cache",
                model="none",
                use_case=use_case.value,
                metadata=metadata,
            )
            return None

        self._emit(
            TelemetryEventKind.CACHE_HIT,
            provider=cached.provider,
            model=cached.model,
            use_case=use_case.value,
            latency_ms=calculate_duration_ms(start),
            metadata=metadata,
        )
        return cached

    def _write_cache(self, cache_key: str, result: GenerationResult) -> None:
        try:
            if self.cache is not None:
                self.cache.set_response(cache_key, result)
        except CacheError as e:
            logger.warning("Failed to cache response: %s", e)

    def _emit(self, event: TelemetryEventKind, **fields: Any) -> None:
        if self.telemetry is not None:
            self.telemetry.emit(event, **fields)


__all__ = ["GenerationService", "QualityScorer"]

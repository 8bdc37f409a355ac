"""Tests for GenerationService: retries, fallback, circuit breaking, caching and quality gate."""

from __future__ import annotations

from dataclasses import replace

import pytest
from pydantic_ai.exceptions import ModelHTTPError
from pydantic_ai.messages import ModelResponse, TextPart
from pydantic_ai.models.function import FunctionModel
from pydantic_ai.models.test import TestModel as StubModel

from devtrends.adapters.llm import (
    GenerationService,
    ResponseCache,
    ResponseType,
    TechInsight,
    UseCase,
    provider_chain,
)
from devtrends.common.exceptions import (
    AllProvidersExhaustedError,
    ConfigurationError,
    QualityCheckError,
)
from devtrends.storage import TelemetryEventKind

from .conftest import model_factory

pytestmark = pytest.mark.unit


class ScriptedModel:
    """FunctionModel wrapper failing with the queued statuses before answering."""

    def __init__(self, statuses: list[int], text: str = "answer"):
        self.statuses = list(statuses)
        self.text = text
        self.calls = 0
        self.model = FunctionModel(self._respond)

    def _respond(self, messages, info):
        self.calls += 1
        if self.statuses:
            raise ModelHTTPError(self.statuses.pop(0), "scripted")
        return ModelResponse(parts=[TextPart(self.text)])


def _events(telemetry_repo, kind: TelemetryEventKind):
    return [e for e in telemetry_repo.list_since("2000-01-01") if e.event == kind.value]


class TestRetryTelemetry:
    """Test cases for the retry path through the service."""

    @pytest.mark.asyncio
    async def test_two_503_then_success_logs_retries_and_generation(
        self, settings, tracker, telemetry_repo
    ):
        """Test one retry event per failed attempt plus one generation event."""
        scripted = ScriptedModel([503, 503], text="fine now")
        service = GenerationService(
            settings, tracker, provider_factory=model_factory(scripted.model)
        )

        result = await service.generate_text("Hello", use_case=UseCase.CHAT)
        await tracker.flush()

        assert result.output == "fine now"
        assert result.provider == "groq"
        assert scripted.calls == 3
        retries = _events(telemetry_repo, TelemetryEventKind.RETRY)
        assert len(retries) == 2
        assert [r.metadata["attempt"] for r in retries] == [1, 2]
        assert len(_events(telemetry_repo, TelemetryEventKind.GENERATION)) == 1
        assert _events(telemetry_repo, TelemetryEventKind.ERROR) == []

    @pytest.mark.asyncio
    async def test_metadata_travels_with_events(self, settings, tracker, telemetry_repo):
        service = GenerationService(
            settings, tracker, provider_factory=model_factory(StubModel(custom_output_text="x"))
        )

        await service.generate_text(
            "Hello", use_case="chat", metadata={"insight_id": "ins_1", "prompt_version": 2}
        )
        await tracker.flush()

        (event,) = _events(telemetry_repo, TelemetryEventKind.GENERATION)
        assert event.metadata == {"insight_id": "ins_1", "prompt_version": 2}
        assert event.use_case == "chat"


class TestFallback:
    """Test cases for walking the provider chain."""

    @pytest.mark.asyncio
    async def test_falls_back_after_preferred_provider_fails(
        self, settings, tracker, telemetry_repo
    ):
        """Test that exhausting the preferred provider moves to the next one."""
        failing = ScriptedModel([503] * 10)
        healthy = ScriptedModel([], text="from cerebras")
        service = GenerationService(
            settings,
            tracker,
            provider_factory=model_factory({"groq": failing.model, "cerebras": healthy.model}),
        )

        result = await service.generate_text("Hello", use_case=UseCase.CHAT)
        await tracker.flush()

        assert result.provider == "cerebras"
        assert result.output == "from cerebras"
        assert failing.calls == settings.max_retries + 1
        (fallback,) = _events(telemetry_repo, TelemetryEventKind.FALLBACK)
        assert fallback.provider == "cerebras"
        assert fallback.metadata["from_provider"] == "groq"
        (error,) = _events(telemetry_repo, TelemetryEventKind.ERROR)
        assert error.provider == "groq"

    @pytest.mark.asyncio
    async def test_fallback_providers_use_their_own_retry_budget(self, settings, tracker):
        failing = ScriptedModel([503] * 10)
        fallback = ScriptedModel([503] * 10)
        service = GenerationService(
            settings,
            tracker,
            provider_factory=model_factory({"groq": failing.model, "cerebras": fallback.model}),
        )

        with pytest.raises(AllProvidersExhaustedError):
            await service.generate_text("Hello", use_case=UseCase.CHAT)

        assert fallback.calls == settings.fallback_max_retries + 1

    @pytest.mark.asyncio
    async def test_all_providers_failing_raises_exhausted(self, settings, tracker):
        failing = ScriptedModel([500] * 100)
        service = GenerationService(
            settings, tracker, provider_factory=model_factory(failing.model)
        )

        with pytest.raises(AllProvidersExhaustedError) as exc_info:
            await service.generate_text("Hello", use_case=UseCase.DIGEST)

        assert exc_info.value.status_code == 503
        assert exc_info.value.use_case == "digest"

    @pytest.mark.asyncio
    async def test_permanent_error_moves_on_without_retrying(self, settings, tracker):
        rejecting = ScriptedModel([400] * 10)
        healthy = ScriptedModel([], text="ok")
        service = GenerationService(
            settings,
            tracker,
            provider_factory=model_factory({"gemini": rejecting.model, "xai": healthy.model}),
        )

        result = await service.generate_text("Hello", use_case=UseCase.COMPARISON)

        assert rejecting.calls == 1
        assert result.provider == "xai"

    @pytest.mark.asyncio
    async def test_no_configured_provider_raises_configuration_error(self, settings, tracker):
        service = GenerationService(settings, tracker, provider_factory=model_factory({}))

        with pytest.raises(ConfigurationError):
            await service.generate_text("Hello", use_case=UseCase.CHAT)

    @pytest.mark.asyncio
    async def test_enabled_providers_filter_the_chain(self, settings, tracker):
        only_mistral = replace(settings, enabled_providers=frozenset({"mistral"}))
        service = GenerationService(
            only_mistral,
            tracker,
            provider_factory=model_factory(StubModel(custom_output_text="mistral says hi")),
        )

        result = await service.generate_text("Hello", use_case=UseCase.BATCH_INSIGHT)

        assert result.provider == "mistral"

    def test_unknown_enabled_provider_is_rejected(self, settings):
        with pytest.raises(ConfigurationError):
            GenerationService(replace(settings, enabled_providers=frozenset({"openai"})))

    def test_provider_chain_starts_with_preferred(self):
        assert provider_chain("chat")[:2] == ("groq", "cerebras")

    def test_priority_reorders_fallbacks_only(self):
        ranks = {"mistral": -1, "cerebras": 5}

        chain = provider_chain("chat", lambda tag: ranks.get(tag, 0))

        assert chain[0] == "groq"
        assert chain[1] == "mistral"
        assert chain[-1] == "cerebras"
        assert chain[2:-1] == ("xai", "gemini", "openrouter", "huggingface")

    @pytest.mark.asyncio
    async def test_configured_priority_picks_the_first_fallback(self, settings, tracker):
        """Test that a ranked fallback is tried before the table order."""
        service = GenerationService(
            replace(settings, provider_priorities={"openrouter": -1}),
            tracker,
            provider_factory=model_factory(
                {
                    "groq": ScriptedModel([503] * 100).model,
                    "cerebras": ScriptedModel([], text="from cerebras").model,
                    "openrouter": ScriptedModel([], text="from openrouter").model,
                }
            ),
        )

        result = await service.generate_text("Hello", use_case=UseCase.CHAT)

        assert result.provider == "openrouter"
        status = {p["name"]: p for p in service.provider_status()}
        assert status["openrouter"]["priority"] == -1
        assert status["groq"]["priority"] == 0


class TestCircuitBreaking:
    """Test cases for skipping providers whose circuit is open."""

    @pytest.mark.asyncio
    async def test_open_circuit_skips_provider(self, settings, tracker, telemetry_repo):
        healthy = ScriptedModel([], text="from cerebras")
        groq = ScriptedModel([])
        service = GenerationService(
            settings,
            tracker,
            provider_factory=model_factory({"groq": groq.model, "cerebras": healthy.model}),
        )
        for _ in range(settings.circuit_failure_threshold):
            service.breakers.get("groq").record_failure()

        result = await service.generate_text("Hello", use_case=UseCase.CHAT)
        await tracker.flush()

        assert result.provider == "cerebras"
        assert groq.calls == 0
        (skipped,) = _events(telemetry_repo, TelemetryEventKind.CIRCUIT_OPEN)
        assert skipped.provider == "groq"

    @pytest.mark.asyncio
    async def test_exhausted_provider_counts_against_its_breaker(self, settings, tracker):
        failing = ScriptedModel([503] * 100)
        service = GenerationService(
            replace(settings, circuit_failure_threshold=1),
            tracker,
            provider_factory=model_factory({"groq": failing.model}),
        )

        with pytest.raises(AllProvidersExhaustedError):
            await service.generate_text("Hello", use_case=UseCase.CHAT)

        status = {p["name"]: p for p in service.provider_status()}
        assert status["groq"]["circuitState"] == "open"


class TestQualityGate:
    """Test cases for the quality check hook."""

    @pytest.mark.asyncio
    async def test_low_score_raises_and_logs_quality_fail(
        self, settings, tracker, telemetry_repo
    ):
        service = GenerationService(
            settings, tracker, provider_factory=model_factory(StubModel())
        )

        with pytest.raises(QualityCheckError) as exc_info:
            await service.generate_json(
                "Analyze",
                use_case=UseCase.BATCH_INSIGHT,
                response_model=TechInsight,
                quality_check=lambda output: 20,
            )
        await tracker.flush()

        assert exc_info.value.score == 20
        (event,) = _events(telemetry_repo, TelemetryEventKind.QUALITY_FAIL)
        assert event.quality_score == 20
        assert _events(telemetry_repo, TelemetryEventKind.GENERATION) == []

    @pytest.mark.asyncio
    async def test_passing_score_is_recorded(self, settings, tracker, telemetry_repo):
        service = GenerationService(
            settings, tracker, provider_factory=model_factory(StubModel())
        )

        result = await service.generate_json(
            "Analyze",
            use_case=UseCase.BATCH_INSIGHT,
            response_model=TechInsight,
            quality_check=lambda output: 85,
        )
        await tracker.flush()

        assert result.quality_score == 85
        (event,) = _events(telemetry_repo, TelemetryEventKind.GENERATION)
        assert event.quality_score == 85


class TestResponseCache:
    """Test cases for cached generations."""

    @pytest.mark.asyncio
    async def test_second_call_is_served_from_cache(self, settings, tracker, telemetry_repo, tmp_path):
        cache = ResponseCache(str(tmp_path / "llm-cache"))
        scripted = ScriptedModel([], text="cached text")
        service = GenerationService(
            settings,
            tracker,
            provider_factory=model_factory(scripted.model),
            cache=cache,
        )

        first = await service.generate_text("Hello", use_case=UseCase.DIGEST)
        second = await service.generate_text("Hello", use_case=UseCase.DIGEST)
        await tracker.flush()

        assert first.response_type == ResponseType.LIVE
        assert second.response_type == ResponseType.CACHED
        assert second.output == "cached text"
        assert scripted.calls == 1
        assert len(cache) == 1
        assert len(_events(telemetry_repo, TelemetryEventKind.CACHE_MISS)) == 1
        assert len(_events(telemetry_repo, TelemetryEventKind.CACHE_HIT)) == 1

    @pytest.mark.asyncio
    async def test_cached_json_is_revalidated(self, settings, tracker, tmp_path):
        service = GenerationService(
            settings,
            tracker,
            provider_factory=model_factory(StubModel()),
            cache=ResponseCache(str(tmp_path / "llm-cache")),
        )

        await service.generate_json("Rust", use_case="batch_insight", response_model=TechInsight)
        cached = await service.generate_json(
            "Rust", use_case="batch_insight", response_model=TechInsight
        )

        assert cached.response_type == ResponseType.CACHED
        assert isinstance(cached.output, TechInsight)

    @pytest.mark.asyncio
    async def test_use_cache_false_bypasses_cache(self, settings, tracker, tmp_path):
        scripted = ScriptedModel([], text="fresh")
        service = GenerationService(
            settings,
            tracker,
            provider_factory=model_factory(scripted.model),
            cache=ResponseCache(str(tmp_path / "llm-cache")),
        )

        await service.generate_text("Hello", use_case="digest", use_cache=False)
        await service.generate_text("Hello", use_case="digest", use_cache=False)

        assert scripted.calls == 2


class TestStreaming:
    """Test cases for streamed generation."""

    @pytest.mark.asyncio
    async def test_stream_logs_one_generation_event(self, settings, tracker, telemetry_repo):
        service = GenerationService(
            settings,
            tracker,
            provider_factory=model_factory(StubModel(custom_output_text="one two three")),
        )

        chunks = [c async for c in service.generate_stream("Question", metadata={"insight_id": "i"})]
        await tracker.flush()

        assert "".join(chunks) == "one two three"
        (event,) = _events(telemetry_repo, TelemetryEventKind.GENERATION)
        assert event.metadata["stream"] is True
        assert event.metadata["insight_id"] == "i"
        assert event.provider == "groq"

"""Tests for provider configuration, the PydanticAI provider and error mapping."""

from __future__ import annotations

import asyncio

import pytest
from pydantic_ai.exceptions import ModelHTTPError, UnexpectedModelBehavior
from pydantic_ai.messages import ModelResponse, TextPart
from pydantic_ai.models.function import FunctionModel
from pydantic_ai.models.test import TestModel as StubModel

from devtrends.adapters.llm import (
    DEFAULT_MODELS,
    GenerateOptions,
    LLMProvider,
    ProviderConfig,
    PydanticAIProvider,
    TechInsight,
    create_provider,
)
from devtrends.adapters.llm.model_registry import (
    _HTTP_CLIENTS,
    _normalize_openai_url,
    aclose_http_clients,
    registered_providers,
)
from devtrends.common.exceptions import ConfigurationError, ProviderError

pytestmark = pytest.mark.unit


def _raising(error: Exception) -> FunctionModel:
    def _respond(messages, info):
        raise error

    return FunctionModel(_respond)


class TestProviderConfig:
    """Test cases for ProviderConfig."""

    def test_default_model_filled_in(self):
        config = ProviderConfig(provider="groq")
        assert config.model == DEFAULT_MODELS["groq"]
        assert config.api_key_env == "GROQ_API_KEY"

    def test_unknown_provider_rejected(self):
        with pytest.raises(ConfigurationError):
            ProviderConfig(provider="openai-direct")

    def test_api_key_from_environment(self, monkeypatch):
        monkeypatch.setenv("MISTRAL_API_KEY", "mk-test")
        assert ProviderConfig(provider="mistral").get_api_key() == "mk-test"

    def test_every_tag_has_a_model_factory(self):
        assert registered_providers() == frozenset(DEFAULT_MODELS)


class TestProviderFactory:
    """Test cases for create_provider."""

    def test_missing_key_is_a_configuration_error(self, monkeypatch):
        """Test that credentials are checked when the provider is built."""
        monkeypatch.delenv("GROQ_API_KEY", raising=False)

        with pytest.raises(ConfigurationError) as exc_info:
            create_provider(ProviderConfig(provider="groq"))

        assert exc_info.value.context["env_var"] == "GROQ_API_KEY"

    def test_builds_openai_compatible_provider(self, monkeypatch):
        monkeypatch.setenv("GROQ_API_KEY", "gsk-test")

        provider = create_provider(ProviderConfig(provider="groq"))

        assert isinstance(provider, LLMProvider)
        assert provider.name == "groq"
        assert provider.model == DEFAULT_MODELS["groq"]

    @pytest.mark.parametrize(
        "url, expected",
        [
            ("https://api.groq.com/openai/v1", "https://api.groq.com/openai/v1"),
            ("https://api.x.ai/v1/chat/completions", "https://api.x.ai/v1"),
            ("https://example.com/", "https://example.com/v1"),
        ],
    )
    def test_normalize_openai_url(self, url, expected):
        assert _normalize_openai_url(url) == expected

    @pytest.mark.asyncio
    async def test_openrouter_http_client_is_closed_on_shutdown(self, monkeypatch):
        monkeypatch.setenv("OPENROUTER_API_KEY", "or-test")
        create_provider(ProviderConfig(provider="openrouter"))
        client = _HTTP_CLIENTS[-1]

        closed = await aclose_http_clients()

        assert closed >= 1
        assert client.is_closed
        assert _HTTP_CLIENTS == []

    def test_model_override_is_built_once(self, monkeypatch):
        monkeypatch.setenv("GROQ_API_KEY", "gsk-test")
        provider = PydanticAIProvider(ProviderConfig(provider="groq"))
        options = GenerateOptions(model="llama-3.1-8b-instant")

        first, name = provider._resolve_model(options)
        second, _ = provider._resolve_model(options)

        assert name == "llama-3.1-8b-instant"
        assert first is second
        assert first is not provider._model


class TestPydanticAIProvider:
    """Test cases for PydanticAIProvider operations."""

    @pytest.mark.asyncio
    async def test_generate_text(self):
        provider = PydanticAIProvider(
            ProviderConfig(provider="groq"), model=StubModel(custom_output_text="hello there")
        )

        result = await provider.generate_text("Say hello")

        assert result.output == "hello there"
        assert result.provider == "groq"
        assert result.model == DEFAULT_MODELS["groq"]
        assert result.latency_ms is not None

    @pytest.mark.asyncio
    async def test_token_usage_is_reported(self):
        provider = PydanticAIProvider(
            ProviderConfig(provider="groq"), model=StubModel(custom_output_text="counted")
        )

        result = await provider.generate_text("Count my tokens")

        assert result.usage.input_tokens is not None
        assert result.usage.output_tokens is not None
        assert result.usage.output_tokens > 0

    @pytest.mark.asyncio
    async def test_generate_json_validates_into_response_model(self):
        provider = PydanticAIProvider(ProviderConfig(provider="gemini"), model=StubModel())

        result = await provider.generate_json("Analyze Rust", response_model=TechInsight)

        assert isinstance(result.output, TechInsight)

    @pytest.mark.asyncio
    async def test_generate_json_with_schema_returns_dict(self):
        schema = {
            "type": "object",
            "properties": {"summary": {"type": "string"}},
            "required": ["summary"],
        }
        provider = PydanticAIProvider(ProviderConfig(provider="gemini"), model=StubModel())

        result = await provider.generate_json("Summarise", schema=schema)

        assert isinstance(result.output, dict)
        assert "summary" in result.output

    @pytest.mark.asyncio
    async def test_generate_stream_yields_the_text(self):
        provider = PydanticAIProvider(
            ProviderConfig(provider="groq"),
            model=StubModel(custom_output_text="streamed answer in pieces"),
        )

        chunks = [chunk async for chunk in provider.generate_stream("Question?")]

        assert "".join(chunks) == "streamed answer in pieces"

    @pytest.mark.asyncio
    async def test_options_override_model_name(self):
        provider = PydanticAIProvider(
            ProviderConfig(provider="groq"), model=StubModel(custom_output_text="ok")
        )

        result = await provider.generate_text("hi", GenerateOptions(model="llama-3.1-8b-instant"))

        assert result.model == "llama-3.1-8b-instant"


class TestErrorMapping:
    """Test cases for normalising backend failures onto ProviderError."""

    @pytest.mark.asyncio
    async def test_http_error_keeps_status_and_retry_after(self):
        error = ModelHTTPError(429, "llama", body={"error": {"retry_after": 4}})
        provider = PydanticAIProvider(ProviderConfig(provider="groq"), model=_raising(error))

        with pytest.raises(ProviderError) as exc_info:
            await provider.generate_text("hi")

        assert exc_info.value.status_code == 429
        assert exc_info.value.retry_after == 4.0
        assert exc_info.value.provider == "groq"

    @pytest.mark.asyncio
    async def test_unexpected_output_is_502(self):
        provider = PydanticAIProvider(
            ProviderConfig(provider="groq"), model=_raising(UnexpectedModelBehavior("garbled"))
        )

        with pytest.raises(ProviderError) as exc_info:
            await provider.generate_text("hi")

        assert exc_info.value.status_code == 502

    @pytest.mark.asyncio
    async def test_connection_failure_is_503(self):
        provider = PydanticAIProvider(
            ProviderConfig(provider="groq"), model=_raising(ConnectionError("refused"))
        )

        with pytest.raises(ProviderError) as exc_info:
            await provider.generate_text("hi")

        assert exc_info.value.status_code == 503

    @pytest.mark.asyncio
    async def test_timeout_is_504(self):
        """Test that a call exceeding the provider timeout maps to 504."""

        async def _slow(messages, info):
            await asyncio.sleep(5)
            return ModelResponse(parts=[TextPart("too late")])

        provider = PydanticAIProvider(
            ProviderConfig(provider="groq", timeout=0.05), model=FunctionModel(_slow)
        )

        with pytest.raises(ProviderError) as exc_info:
            await provider.generate_text("hi")

        assert exc_info.value.status_code == 504

"""Shared fixtures: a temporary SQLite store and providers backed by PydanticAI test models."""

from __future__ import annotations

from collections.abc import Callable

import pytest
from pydantic_ai.models import Model
from pydantic_ai.models.test import TestModel

from devtrends.adapters.llm import ProviderConfig, PydanticAIProvider
from devtrends.api import build_container, create_app
from devtrends.common.exceptions import ConfigurationError
from devtrends.config import Settings
from devtrends.services import (
    ABTestManager,
    CostTracker,
    FeedbackAnalyzer,
    PromptManager,
    TelemetryTracker,
)
from devtrends.storage import (
    AnomalyRepository,
    ConfigRepository,
    ConversationRepository,
    Database,
    FeedbackRepository,
    InsightRepository,
    PromptRepository,
    RateLimitRepository,
    TechnologyRepository,
    TelemetryRepository,
)


def model_factory(models: dict[str, Model] | Model) -> Callable[[ProviderConfig], PydanticAIProvider]:
    """
    Provider factory serving injected models.

    A single model serves every tag; with a dict, tags missing from it fail
    the way an unconfigured provider does.
    """

    def _factory(config: ProviderConfig) -> PydanticAIProvider:
        if isinstance(models, dict):
            if config.provider not in models:
                raise ConfigurationError(
                    f"Missing API key for provider '{config.provider}'",
                    context={"env_var": config.api_key_env},
                )
            return PydanticAIProvider(config, model=models[config.provider])
        return PydanticAIProvider(config, model=models)

    return _factory


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings with a throwaway database and no backoff waits."""
    return Settings(
        database_path=str(tmp_path / "devtrends.db"),
        retry_base_delay=0.0,
        retry_max_delay=0.0,
        cache_enabled=False,
        cache_dir=str(tmp_path / "cache"),
    )


@pytest.fixture
def db(settings) -> Database:
    database = Database(settings.database_path)
    database.initialize()
    return database


@pytest.fixture
def telemetry_repo(db) -> TelemetryRepository:
    return TelemetryRepository(db)


@pytest.fixture
def config_repo(db) -> ConfigRepository:
    return ConfigRepository(db)


@pytest.fixture
def insight_repo(db) -> InsightRepository:
    return InsightRepository(db)


@pytest.fixture
def feedback_repo(db) -> FeedbackRepository:
    return FeedbackRepository(db)


@pytest.fixture
def rate_limit_repo(db) -> RateLimitRepository:
    return RateLimitRepository(db)


@pytest.fixture
def technology_repo(db) -> TechnologyRepository:
    return TechnologyRepository(db)


@pytest.fixture
def conversation_repo(db) -> ConversationRepository:
    return ConversationRepository(db)


@pytest.fixture
def anomaly_repo(db) -> AnomalyRepository:
    return AnomalyRepository(db)


@pytest.fixture
def tracker(telemetry_repo) -> TelemetryTracker:
    return TelemetryTracker(telemetry_repo)


@pytest.fixture
def prompts(db) -> PromptManager:
    return PromptManager(PromptRepository(db))


@pytest.fixture
def experiments(config_repo, prompts) -> ABTestManager:
    return ABTestManager(config_repo, prompts)


@pytest.fixture
def feedback(feedback_repo, insight_repo, telemetry_repo, tracker, experiments) -> FeedbackAnalyzer:
    return FeedbackAnalyzer(
        feedback_repo, insight_repo, telemetry_repo, tracker=tracker, experiments=experiments
    )


@pytest.fixture
def costs(telemetry_repo, config_repo) -> CostTracker:
    return CostTracker(telemetry_repo, config_repo)


@pytest.fixture
def test_model() -> TestModel:
    return TestModel(custom_output_text="Rust is worth learning for systems work.")


@pytest.fixture
def container(settings, test_model):
    return build_container(settings, provider_factory=model_factory(test_model))


@pytest.fixture
def client(container):
    from fastapi.testclient import TestClient

    with TestClient(create_app(container)) as test_client:
        yield test_client

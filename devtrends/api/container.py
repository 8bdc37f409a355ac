"""
Dependency container for the API and the CLI.

``build_container`` assembles the storage, services and generation layer
from ``Settings`` once per process. Tests build a container around a
temporary database and stub providers.
"""

from __future__ import annotations

from dataclasses import dataclass

from fastapi import Request

from devtrends.adapters.llm import GenerationService, ProviderFactory, create_provider
from devtrends.config import Settings, load_settings
from devtrends.services import (
    ABTestManager,
    ConversationManager,
    CostTracker,
    FeedbackAnalyzer,
    InsightService,
    PromptManager,
    SystemMonitor,
    TelemetryTracker,
)
from devtrends.storage import (
    AnomalyRepository,
    ConfigRepository,
    ConversationRepository,
    Database,
    DigestRepository,
    FeedbackRepository,
    InsightRepository,
    PromptRepository,
    RateLimitRepository,
    TechnologyRepository,
    TelemetryRepository,
)


@dataclass
class Container:
    """Everything a request handler needs, built once per process."""

    settings: Settings
    db: Database
    telemetry: TelemetryTracker
    generation: GenerationService
    prompts: PromptManager
    experiments: ABTestManager
    feedback: FeedbackAnalyzer
    costs: CostTracker
    insights: InsightService
    monitor: SystemMonitor
    rate_limits: RateLimitRepository
    anomalies: AnomalyRepository


def build_container(
    settings: Settings | None = None,
    *,
    provider_factory: ProviderFactory = create_provider,
) -> Container:
    """
    Wire storage, services and the generation layer.

    Args:
        settings: Runtime settings (loaded from the environment when None)
        provider_factory: Builds providers (tests inject stub models here)

    Raises:
        ConfigurationError: If the settings are invalid
        StorageError: If the database cannot be initialised
    """
    settings = settings or load_settings()
    db = Database(settings.database_path)
    db.initialize()

    telemetry_repo = TelemetryRepository(db)
    config_repo = ConfigRepository(db)
    insight_repo = InsightRepository(db)
    feedback_repo = FeedbackRepository(db)
    anomaly_repo = AnomalyRepository(db)

    telemetry = TelemetryTracker(telemetry_repo)
    generation = GenerationService(settings, telemetry, provider_factory=provider_factory)
    prompts = PromptManager(PromptRepository(db))
    experiments = ABTestManager(config_repo, prompts)

    return Container(
        settings=settings,
        db=db,
        telemetry=telemetry,
        generation=generation,
        prompts=prompts,
        experiments=experiments,
        feedback=FeedbackAnalyzer(
            feedback_repo,
            insight_repo,
            telemetry_repo,
            tracker=telemetry,
            experiments=experiments,
        ),
        costs=CostTracker(telemetry_repo, config_repo),
        insights=InsightService(
            generation,
            experiments,
            insight_repo,
            TechnologyRepository(db),
            conversations=ConversationManager(ConversationRepository(db)),
            digests=DigestRepository(db),
            anomalies=anomaly_repo,
        ),
        monitor=SystemMonitor(telemetry_repo, feedback_repo, generation),
        rate_limits=RateLimitRepository(db),
        anomalies=anomaly_repo,
    )


def get_container(request: Request) -> Container:
    """FastAPI dependency returning the application's container."""
    return request.app.state.container


__all__ = ["Container", "build_container", "get_container"]

"""
Insight generation: the request path from prompt selection to a stored insight.

Each operation resolves the system prompt (experiment arm or active
version), generates through ``GenerationService`` and stores what was served
in ``ai_insights`` under a fresh insight id. The id, prompt version and
experiment arm also travel in telemetry metadata so feedback can be traced
back to the prompt that produced the insight.

Besides per-technology insights and comparisons the service writes the
weekly digest, explains detected anomalies, recommends comparisons and
answers chat questions with the session's earlier turns as context.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
import uuid
from collections.abc import AsyncIterator
from dataclasses import dataclass
from datetime import UTC, date, datetime, timedelta
from typing import Any

from pydantic import BaseModel

from devtrends.adapters.llm import (
    AnomalyExplanation,
    ComparisonInsight,
    GenerationResult,
    GenerationService,
    Recommendation,
    ResponseType,
    TechInsight,
    UseCase,
    WeeklyDigest,
)
from devtrends.common.exceptions import NotFoundError, ValidationError
from devtrends.common.time_utils import calculate_duration_ms, current_timestamp, to_iso
from devtrends.common.types import CamelModel
from devtrends.storage import (
    AnomalyEvent,
    AnomalyRepository,
    DigestRecord,
    DigestRepository,
    InsightRecord,
    InsightRepository,
    Technology,
    TechnologyRepository,
)

from .ab_testing import ABTestManager, PromptSelection
from .conversation import ConversationManager, extract_technologies, format_history
from .prompt_manager import (
    ANALYST_SYSTEM_KEY,
    ANOMALY_SYSTEM_KEY,
    CHAT_SYSTEM_KEY,
    COMPARISON_SYSTEM_KEY,
    DIGEST_SYSTEM_KEY,
    RECOMMENDATION_SYSTEM_KEY,
)
from .quality_monitor import insight_scorer
from .safety import FLAGGED_MESSAGE, build_safe_user_prompt, sanitize_user_input

logger = logging.getLogger(__name__)

MAX_QUESTION_LENGTH = 1000
MIN_COMPARE = 2
MAX_COMPARE = 4

# Technologies pulled into a chat prompt when the question names them
MAX_CHAT_TECHNOLOGIES = 5
RECOMMENDATION_TTL_SECONDS = 24 * 60 * 60
RECOMMENDATION_CONTEXT_SIZE = 20
_RECOMMEND_PARAM = re.compile(r"^[a-z0-9 _-]{1,40}$")


class ServedInsight(CamelModel):
    """An insight as returned to API callers."""

    insight_id: str
    subject: str
    use_case: str
    insight: Any
    provider: str
    model: str
    cached: bool = False
    quality_score: float | None = None
    prompt_version: int | None = None
    ab_variant: str | None = None
    generated_at: str


class ServedDigest(CamelModel):
    """The weekly digest for ``week_start``; ``created`` is False when it was already stored."""

    week_start: str
    insight_id: str
    digest: dict[str, Any]
    provider: str
    model: str
    generated_at: str
    created: bool


@dataclass
class StreamingAnswer:
    """A chat answer whose chunks are produced lazily; ``chunks`` is single-pass."""

    insight_id: str
    chunks: AsyncIterator[str]


def new_insight_id() -> str:
    return f"ins_{uuid.uuid4().hex}"


def technology_context(technology: Technology) -> str:
    """Plain-text data block handed to the model (and to the hallucination check)."""
    lines = [f"Technology: {technology.name} ({technology.slug})"]
    if technology.category:
        lines.append(f"Category: {technology.category}")
    if technology.description:
        lines.append(f"Description: {technology.description}")
    lines.append(f"Data confidence grade: {technology.confidence_grade}")
    if technology.metrics:
        lines.append("Metrics:")
        lines.extend(f"- {name}: {value}" for name, value in technology.metrics.items())
    else:
        lines.append("Metrics: no data available")
    return "\n".join(lines)


def chat_context(technologies: list[Technology], history: str) -> str:
    """Data and earlier turns placed ahead of a chat question."""
    blocks = []
    if technologies:
        blocks.append(
            "Current technology data:\n\n"
            + "\n\n".join(technology_context(t) for t in technologies)
        )
    if history:
        blocks.append(history)
    if not blocks:
        return "No specific technology data matched this question."
    return "\n\n".join(blocks)


def week_start_for(day: date) -> str:
    """ISO date of the Monday starting ``day``'s week."""
    return (day - timedelta(days=day.weekday())).isoformat()


# =============================================================================
# Digest and anomaly prompts
# =============================================================================


def _metric(technology: Technology, name: str) -> float:
    value = technology.metrics.get(name)
    try:
        return float(value) if value is not None else 0.0
    except (TypeError, ValueError):
        return 0.0


@dataclass(frozen=True)
class WeeklyAnalysis:
    """Headline numbers a digest is written around."""

    biggest_mover: Technology
    biggest_drop: Technology
    top_category: str
    emerging: list[Technology]
    avg_jobs_score: float
    total_technologies: int


def analyze_weekly_data(technologies: list[Technology], current_year: int) -> WeeklyAnalysis:
    """
    Pick the mover, the drop, the hottest category and the emerging technologies.

    Momentum, job score and first-appearance year come from each
    technology's metrics (missing values count as 0). Emerging means at most
    three years old with momentum above 5.
    """
    by_momentum = sorted(technologies, key=lambda t: _metric(t, "momentum"), reverse=True)

    categories: dict[str, list[float]] = {}
    for technology in technologies:
        categories.setdefault(technology.category or "other", []).append(
            _metric(technology, "momentum")
        )
    top_category = max(categories, key=lambda c: sum(categories[c]) / len(categories[c]))

    def is_emerging(technology: Technology) -> bool:
        first_appeared = _metric(technology, "first_appeared")
        age = current_year - first_appeared if first_appeared else 999
        return age <= 3 and _metric(technology, "momentum") > 5

    emerging = [t for t in by_momentum if is_emerging(t)][:3]
    avg_jobs = sum(_metric(t, "jobs_score") for t in technologies) / len(technologies)

    return WeeklyAnalysis(
        biggest_mover=by_momentum[0],
        biggest_drop=by_momentum[-1],
        top_category=top_category,
        emerging=emerging,
        avg_jobs_score=avg_jobs,
        total_technologies=len(technologies),
    )


def build_digest_prompt(week_start: date, analysis: WeeklyAnalysis) -> str:
    week_end = week_start + timedelta(days=6)
    mover, drop = analysis.biggest_mover, analysis.biggest_drop
    lines = [
        f"Generate a weekly technology trends digest for "
        f"{week_start:%b} {week_start.day} - {week_end:%b} {week_end.day}, {week_end.year}.",
        "",
        "Data Summary:",
        f"- Total technologies tracked: {analysis.total_technologies}",
        f"- Biggest mover: {mover.name} (+{_metric(mover, 'momentum')} momentum)",
        f"- Biggest drop: {drop.name} ({_metric(drop, 'momentum')} momentum)",
        f"- Most active category: {analysis.top_category}",
        f"- Average job market score: {analysis.avg_jobs_score:.1f}/100",
        "",
    ]
    if analysis.emerging:
        lines.append("Emerging technologies:")
        lines.extend(f"- {t.name}: {_metric(t, 'momentum')} momentum" for t in analysis.emerging)
        lines.append("")

    lines += [
        "Create a digest with these sections:",
        f'1. "Biggest Mover" - highlight {mover.name}',
        f"2. \"Biggest Drop\" - explain {drop.name}'s decline",
        f'3. "Category Spotlight: {analysis.top_category}" - trends in this category',
    ]
    if analysis.emerging:
        lines.append(f'4. "Emerging Tech" - highlight {analysis.emerging[0].name}')
    lines += [
        '5. "Job Market Signal" - overall hiring trends',
        "",
        "Also provide 3 key takeaways. Cite the numbers above in every narrative.",
    ]
    return "\n".join(lines)


def build_anomaly_prompt(anomaly: AnomalyEvent, technology_name: str) -> str:
    if anomaly.expected_value > 0:
        change = (
            f"{(anomaly.actual_value - anomaly.expected_value) / anomaly.expected_value * 100:.1f}"
        )
    else:
        change = "N/A"

    lines = [
        f"Analyze this anomaly for {technology_name}:",
        "",
        f"Anomaly Type: {anomaly.anomaly_type}",
        f"Severity: {anomaly.severity}",
        f"Metric: {anomaly.metric}",
        f"Expected Value: {anomaly.expected_value:.2f}",
        f"Actual Value: {anomaly.actual_value:.2f}",
        f"Change: {change}%",
        f"Statistical Deviation: {anomaly.deviation_sigma:.2f} sigma",
        "",
    ]

    news = anomaly.context.get("recent_news") or []
    if news:
        lines.append("Recent News:")
        lines.extend(f"{i}. {headline}" for i, headline in enumerate(news[:5], start=1))
        lines.append("")
    releases = anomaly.context.get("recent_releases") or []
    if releases:
        lines.append("Recent Releases:")
        lines.extend(f"- {release}" for release in releases)
        lines.append("")
    commits = anomaly.context.get("recent_commits")
    if commits is not None:
        lines += [f"Recent Commits (last 7 days): {commits}", ""]

    lines.append(
        "Provide a concise 2-3 sentence explanation of this anomaly. "
        "If possible, connect it to recent events (releases, news, conferences)."
    )
    return "\n".join(lines)


class InsightService:
    """
    Generates tech insights, comparisons, digests, anomaly explanations,
    recommendations and chat answers.

    Example:
        service = InsightService(
            generation, experiments, insights, technologies,
            conversations=conversations, digests=digests, anomalies=anomalies,
        )
        served = await service.generate_tech_insight("rust", session_id="abc")
        print(served.insight["headline"])
    """

    def __init__(
        self,
        generation: GenerationService,
        experiments: ABTestManager,
        insights: InsightRepository,
        technologies: TechnologyRepository,
        *,
        conversations: ConversationManager,
        digests: DigestRepository,
        anomalies: AnomalyRepository,
    ):
        self.generation = generation
        self.experiments = experiments
        self.insights = insights
        self.technologies = technologies
        self.conversations = conversations
        self.digests = digests
        self.anomalies = anomalies

    # =========================================================================
    # Operations
    # =========================================================================

    async def generate_tech_insight(
        self, slug: str, session_id: str | None = None
    ) -> ServedInsight:
        """
        Analyst insight for one technology, quality-gated.

        Raises:
            NotFoundError: If the technology is unknown
            QualityCheckError: If the output failed the quality checks
            AllProvidersExhaustedError: If every provider failed
        """
        technology = await self._technology(slug)
        context = technology_context(technology)
        prompt = (
            f"Analyze the following technology for developers deciding what to learn.\n\n"
            f"{context}\n\n"
            f"Return a JSON insight. Use only the numbers above."
        )

        return await self._generate(
            subject=slug,
            use_case=UseCase.BATCH_INSIGHT,
            prompt_key=ANALYST_SYSTEM_KEY,
            session_id=session_id,
            prompt=prompt,
            response_model=TechInsight,
            quality_check=insight_scorer(context, technology.confidence_grade),
        )

    async def compare_technologies(
        self, slugs: list[str], session_id: str | None = None
    ) -> ServedInsight:
        """
        Comparison of two to four technologies.

        Raises:
            ValidationError: If fewer than two or more than four distinct slugs are given
            NotFoundError: If any technology is unknown
        """
        unique = list(dict.fromkeys(s.strip() for s in slugs if s and s.strip()))
        if not MIN_COMPARE <= len(unique) <= MAX_COMPARE:
            raise ValidationError(
                f"Provide {MIN_COMPARE} to {MAX_COMPARE} distinct technologies to compare",
                context={"slugs": slugs},
            )

        technologies = [await self._technology(slug) for slug in unique]
        names = " vs ".join(t.name for t in technologies)
        contexts = "\n\n".join(technology_context(t) for t in technologies)
        prompt = (
            f"Compare {names} for developers choosing between them.\n\n"
            f"{contexts}\n\n"
            f"Return a JSON comparison. Use only the numbers above."
        )

        return await self._generate(
            subject=",".join(unique),
            use_case=UseCase.COMPARISON,
            prompt_key=COMPARISON_SYSTEM_KEY,
            session_id=session_id,
            prompt=prompt,
            response_model=ComparisonInsight,
        )

    async def stream_answer(self, question: str, session_id: str) -> StreamingAnswer:
        """
        Stream an answer to a free-form question.

        The question is screened first; flagged questions never reach a
        provider. The prompt carries data for the technologies the question
        names and the session's recent turns, with the question itself fenced
        off as data. The provider call starts when the caller begins
        iterating ``chunks``; the answer and the exchange are stored once the
        stream completes.

        Raises:
            ValidationError: If the question is empty, too long or flagged, or no session id is given
        """
        question = (question or "").strip()
        if not question:
            raise ValidationError("question is required")
        if len(question) > MAX_QUESTION_LENGTH:
            raise ValidationError(
                f"question must be at most {MAX_QUESTION_LENGTH} characters",
                context={"length": len(question)},
            )
        if not session_id:
            raise ValidationError("sessionId is required")

        screened = sanitize_user_input(question)
        if screened.flagged:
            logger.warning("Flagged chat input for session %s: %s", session_id, screened.reason)
            raise ValidationError(FLAGGED_MESSAGE, context={"reason": screened.reason})
        question = screened.sanitized
        if not question:
            raise ValidationError("question is required")

        selection = await self._select_prompt(CHAT_SYSTEM_KEY, session_id)
        conversation = await asyncio.to_thread(self.conversations.get_or_create, session_id)
        mentioned = extract_technologies(question)[:MAX_CHAT_TECHNOLOGIES]
        technologies = await asyncio.to_thread(self.technologies.get_many, mentioned)
        prompt = build_safe_user_prompt(
            question, chat_context(technologies, format_history(conversation))
        )

        insight_id = new_insight_id()
        metadata = _metadata(selection, insight_id, session_id)

        async def _chunks() -> AsyncIterator[str]:
            start = time.perf_counter()
            parts: list[str] = []
            stream = self.generation.generate_stream(
                prompt,
                use_case=UseCase.CHAT,
                system_prompt=selection.content if selection else None,
                metadata=metadata,
            )
            try:
                async for chunk in stream:
                    parts.append(chunk)
                    yield chunk
            except Exception:
                await self._record_arm(selection, None, calculate_duration_ms(start), error=True)
                raise
            finally:
                await stream.aclose()

            answer = "".join(parts)
            await self._record_arm(selection, None, calculate_duration_ms(start), error=False)
            await self._store(
                InsightRecord(
                    insight_id=insight_id,
                    subject=question[:200],
                    use_case=UseCase.CHAT.value,
                    insight_data={"answer": answer},
                    provider="stream",
                    model="stream",
                    prompt_key=selection.prompt_key if selection else None,
                    prompt_version=selection.version if selection else None,
                    ab_test=selection.test_key if selection else None,
                    ab_variant=selection.variant if selection else None,
                )
            )
            try:
                await asyncio.to_thread(
                    self.conversations.record_exchange, session_id, question, answer
                )
            except Exception as e:
                logger.error("Failed to record conversation %s: %s", session_id, e)

        return StreamingAnswer(insight_id=insight_id, chunks=_chunks())

    async def generate_weekly_digest(
        self, week_start: str | None = None, force: bool = False
    ) -> ServedDigest:
        """
        Digest for the week starting ``week_start`` (the current week's Monday by default).

        An existing digest is returned as-is unless ``force`` is set.

        Raises:
            ValidationError: If ``week_start`` is not an ISO date or there is no technology data
        """
        if week_start is None:
            week = date.fromisoformat(week_start_for(datetime.now(UTC).date()))
        else:
            try:
                week = date.fromisoformat(week_start)
            except ValueError as e:
                raise ValidationError(
                    "weekStart must be an ISO date (YYYY-MM-DD)", context={"week_start": week_start}
                ) from e
        key = week.isoformat()

        if not force:
            existing = await asyncio.to_thread(self.digests.get, key)
            if existing is not None:
                return _served_digest(existing, created=False)

        technologies = await asyncio.to_thread(self.technologies.list_all)
        if not technologies:
            raise ValidationError("No technology data available", context={"week_start": key})

        analysis = analyze_weekly_data(technologies, datetime.now(UTC).year)
        served = await self._generate(
            subject=f"digest:{key}",
            use_case=UseCase.DIGEST,
            prompt_key=DIGEST_SYSTEM_KEY,
            session_id=None,
            prompt=build_digest_prompt(week, analysis),
            response_model=WeeklyDigest,
        )

        record = DigestRecord(
            week_start=key,
            insight_id=served.insight_id,
            digest_data=served.insight,
            provider=served.provider,
            model=served.model,
            generated_at=served.generated_at,
        )
        await asyncio.to_thread(self.digests.save, record)
        logger.info("Weekly digest for %s generated by %s", key, served.provider)
        return _served_digest(record, created=True)

    async def explain_anomaly(
        self, anomaly_id: int, session_id: str | None = None
    ) -> ServedInsight:
        """
        Explain a detected anomaly and store the explanation on it.

        Raises:
            NotFoundError: If the anomaly does not exist
        """
        anomaly = await asyncio.to_thread(self.anomalies.get, anomaly_id)
        if anomaly is None:
            raise NotFoundError("Anomaly not found", context={"anomaly_id": anomaly_id})

        technology = await asyncio.to_thread(self.technologies.get, anomaly.technology_slug)
        name = technology.name if technology else anomaly.technology_slug

        served = await self._generate(
            subject=f"anomaly:{anomaly_id}",
            use_case=UseCase.ANOMALY_EXPLAIN,
            prompt_key=ANOMALY_SYSTEM_KEY,
            session_id=session_id,
            prompt=build_anomaly_prompt(anomaly, name),
            response_model=AnomalyExplanation,
        )
        await asyncio.to_thread(self.anomalies.set_explanation, anomaly_id, served.insight)
        return served

    async def recommend(
        self,
        goal: str = "learning",
        focus: str = "frontend",
        level: str = "beginner",
        session_id: str | None = None,
    ) -> ServedInsight:
        """
        Two technologies worth comparing for a goal, focus area and experience level.

        A recommendation for the same inputs is reused for a day.

        Raises:
            ValidationError: If a parameter is not a short lowercase word or phrase
        """
        params = {"goal": goal, "focus": focus, "level": level}
        for name, value in params.items():
            if not _RECOMMEND_PARAM.match(value or ""):
                raise ValidationError(f"Invalid {name}", context={name: value})
        subject = f"{goal}|{focus}|{level}"

        cached = await asyncio.to_thread(
            self.insights.latest_for, subject, UseCase.RECOMMENDATION.value
        )
        if cached is not None and cached.generated_at >= to_iso(
            time.time() - RECOMMENDATION_TTL_SECONDS
        ):
            return _served_record(cached)

        technologies = await asyncio.to_thread(
            self.technologies.list_all, RECOMMENDATION_CONTEXT_SIZE
        )
        trending = "\n".join(
            f"- {t.name} ({t.slug}): {t.description or 'No description'}" for t in technologies
        )
        prompt = (
            f"USER CONTEXT:\n- Goal: {goal}\n- Focus/Domain: {focus}\n- Experience Level: {level}\n\n"
            f"TRENDING TECHNOLOGIES IN OUR DATABASE:\n{trending or 'No recent tech data.'}\n\n"
            f"Recommend exactly 2 technologies for this developer to compare right now. "
            f"Prefer slugs from the list above."
        )

        return await self._generate(
            subject=subject,
            use_case=UseCase.RECOMMENDATION,
            prompt_key=RECOMMENDATION_SYSTEM_KEY,
            session_id=session_id,
            prompt=prompt,
            response_model=Recommendation,
        )

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _technology(self, slug: str) -> Technology:
        technology = await asyncio.to_thread(self.technologies.get, slug)
        if technology is None:
            raise NotFoundError("Technology not found", context={"slug": slug})
        return technology

    async def _select_prompt(
        self, prompt_key: str, session_id: str | None
    ) -> PromptSelection | None:
        """Resolve the system prompt, seeding the built-in prompts on first use."""
        selection = await asyncio.to_thread(
            self.experiments.resolve_prompt, prompt_key, session_id
        )
        if selection is None:
            seeded = await asyncio.to_thread(self.experiments.prompts.initialize_default_prompts)
            if seeded:
                selection = await asyncio.to_thread(
                    self.experiments.resolve_prompt, prompt_key, session_id
                )
        if selection is None:
            logger.warning("No active prompt for %s, generating without a system prompt", prompt_key)
        return selection

    async def _generate(
        self,
        *,
        subject: str,
        use_case: UseCase,
        prompt_key: str,
        session_id: str | None,
        prompt: str,
        response_model: type[BaseModel],
        quality_check: Any = None,
    ) -> ServedInsight:
        selection = await self._select_prompt(prompt_key, session_id)
        insight_id = new_insight_id()
        metadata = {**_metadata(selection, insight_id, session_id), "subject": subject}

        start = time.perf_counter()
        try:
            result = await self.generation.generate_json(
                prompt,
                use_case=use_case,
                response_model=response_model,
                system_prompt=selection.content if selection else None,
                metadata=metadata,
                quality_check=quality_check,
            )
        except Exception:
            await self._record_arm(selection, None, calculate_duration_ms(start), error=True)
            raise

        await self._record_arm(
            selection, result.quality_score, calculate_duration_ms(start), error=False
        )
        served = _served(insight_id, subject, use_case, result, selection)
        await self._store(
            InsightRecord(
                insight_id=insight_id,
                subject=subject,
                use_case=use_case.value,
                insight_data=served.insight,
                provider=result.provider,
                model=result.model,
                prompt_key=selection.prompt_key if selection else None,
                prompt_version=selection.version if selection else None,
                ab_test=selection.test_key if selection else None,
                ab_variant=selection.variant if selection else None,
                quality_score=result.quality_score,
                generated_at=served.generated_at,
            )
        )
        return served

    async def _record_arm(
        self,
        selection: PromptSelection | None,
        quality_score: float | None,
        latency_ms: int,
        error: bool,
    ) -> None:
        if selection is None or selection.test_key is None or selection.variant is None:
            return
        try:
            await asyncio.to_thread(
                self.experiments.record_result,
                selection.test_key,
                selection.variant,
                quality_score,
                latency_ms,
                error,
            )
        except Exception as e:
            logger.warning("Failed to record A/B result for %s: %s", selection.test_key, e)

    async def _store(self, record: InsightRecord) -> None:
        try:
            await asyncio.to_thread(self.insights.insert, record)
        except Exception as e:
            logger.error("Failed to store insight %s: %s", record.insight_id, e)


def _metadata(
    selection: PromptSelection | None, insight_id: str, session_id: str | None
) -> dict[str, Any]:
    metadata: dict[str, Any] = {"insight_id": insight_id}
    if session_id:
        metadata["session_id"] = session_id
    if selection is not None:
        metadata["prompt_key"] = selection.prompt_key
        metadata["prompt_version"] = selection.version
        if selection.test_key:
            metadata["ab_test"] = selection.test_key
            metadata["ab_variant"] = selection.variant
    return metadata


def _served(
    insight_id: str,
    subject: str,
    use_case: UseCase,
    result: GenerationResult,
    selection: PromptSelection | None,
) -> ServedInsight:
    output = result.output
    if isinstance(output, BaseModel):
        output = output.model_dump(mode="json", by_alias=True)
    return ServedInsight(
        insight_id=insight_id,
        subject=subject,
        use_case=use_case.value,
        insight=output,
        provider=result.provider,
        model=result.model,
        cached=result.response_type == ResponseType.CACHED,
        quality_score=result.quality_score,
        prompt_version=selection.version if selection else None,
        ab_variant=selection.variant if selection else None,
        generated_at=current_timestamp(),
    )


def _served_record(record: InsightRecord) -> ServedInsight:
    return ServedInsight(
        insight_id=record.insight_id,
        subject=record.subject,
        use_case=record.use_case,
        insight=record.insight_data,
        provider=record.provider,
        model=record.model,
        cached=True,
        quality_score=record.quality_score,
        prompt_version=record.prompt_version,
        ab_variant=record.ab_variant,
        generated_at=record.generated_at,
    )


def _served_digest(record: DigestRecord, created: bool) -> ServedDigest:
    return ServedDigest(
        week_start=record.week_start,
        insight_id=record.insight_id,
        digest=record.digest_data,
        provider=record.provider,
        model=record.model,
        generated_at=record.generated_at,
        created=created,
    )


__all__ = [
    "ServedInsight",
    "ServedDigest",
    "StreamingAnswer",
    "WeeklyAnalysis",
    "InsightService",
    "analyze_weekly_data",
    "build_anomaly_prompt",
    "build_digest_prompt",
    "chat_context",
    "new_insight_id",
    "technology_context",
    "week_start_for",
]

"""
AI API endpoints.

Generation endpoints are rate limited per client and report quota in
``X-RateLimit-*`` headers; operator endpoints (prompts, experiments, costs,
digest generation, monitoring) are not. Blocking store calls run in FastAPI's
threadpool (plain ``def`` handlers) or through ``asyncio.to_thread``.
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from typing import Any

from fastapi import APIRouter, Body, Depends, Query, Request, Response, status
from fastapi.responses import JSONResponse, StreamingResponse

from devtrends.common.exceptions import NotFoundError, ValidationError
from devtrends.services import (
    RateLimitResult,
    check_rate_limit,
    check_rate_limit_async,
    client_identifier,
    rate_limit_headers,
)
from devtrends.services.rate_limiter import RATE_LIMIT_MESSAGE
from devtrends.storage import AnomalyEvent, PromptVersion, TelemetryEventKind

from .container import Container, get_container
from .exception_handlers import UNAVAILABLE_MESSAGE, ErrorResponse
from .schemas import (
    ActivatePromptRequest,
    AskRequest,
    CreateExperimentRequest,
    CreatePromptRequest,
    ExperimentActionRequest,
    UpdatePromptRequest,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/ai", tags=["AI"])

ASK_ENDPOINT = "/api/ai/ask"
COMPARE_ENDPOINT = "/api/ai/compare"
INSIGHTS_ENDPOINT = "/api/ai/insights"
FEEDBACK_ENDPOINT = "/api/ai/feedback"
RECOMMEND_ENDPOINT = "/api/ai/recommend"
ANOMALIES_ENDPOINT = "/api/ai/anomalies"


# =============================================================================
# Rate limiting
# =============================================================================


def _rate_limited_response(result: RateLimitResult) -> JSONResponse:
    return ErrorResponse(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        error_type="RateLimitExceeded",
        message=RATE_LIMIT_MESSAGE,
        retryable=True,
        headers=rate_limit_headers(result),
    ).to_response()


def _log_denial(container: Container, endpoint: str, identifier: str) -> None:
    container.telemetry.emit(
        TelemetryEventKind.RATE_LIMITED,
        provider="none",
        model="none",
        use_case=endpoint,
        metadata={"identifier": identifier},
    )


async def _rate_limit(endpoint: str, request: Request, container: Container) -> RateLimitResult:
    identifier = client_identifier(request.headers)
    result = await check_rate_limit_async(endpoint, identifier, container.rate_limits)
    if not result.allowed:
        _log_denial(container, endpoint, identifier)
    return result


# =============================================================================
# Generation
# =============================================================================


def _sse(payload: dict[str, Any]) -> str:
    return f"data: {json.dumps(payload)}\n\n"


@router.post("/ask")
async def ask(
    body: AskRequest,
    request: Request,
    container: Container = Depends(get_container),
):
    """Stream an answer as Server-Sent Events: ``{chunk}``... then ``{done}`` or ``{error}``."""
    limit = await _rate_limit(ASK_ENDPOINT, request, container)
    if not limit.allowed:
        return _rate_limited_response(limit)

    answer = await container.insights.stream_answer(body.question, body.session_id)

    async def _events() -> AsyncIterator[str]:
        try:
            async for chunk in answer.chunks:
                yield _sse({"chunk": chunk})
        except Exception as e:
            logger.error("Streaming answer %s failed: %s", answer.insight_id, e)
            yield _sse({"error": UNAVAILABLE_MESSAGE})
            return
        yield _sse({"done": True, "insightId": answer.insight_id})

    headers = {
        **rate_limit_headers(limit),
        "Cache-Control": "no-cache",
        "X-Insight-Id": answer.insight_id,
    }
    return StreamingResponse(_events(), media_type="text/event-stream", headers=headers)


@router.get("/compare")
async def compare(
    request: Request,
    response: Response,
    slugs: str = Query(..., description="Comma separated technology slugs"),
    session_id: str | None = Query(None, alias="sessionId"),
    container: Container = Depends(get_container),
):
    limit = await _rate_limit(COMPARE_ENDPOINT, request, container)
    if not limit.allowed:
        return _rate_limited_response(limit)

    served = await container.insights.compare_technologies(slugs.split(","), session_id)
    response.headers.update(rate_limit_headers(limit))
    return served.to_json_dict()


@router.get("/insights/{slug}")
async def tech_insight(
    slug: str,
    request: Request,
    response: Response,
    session_id: str | None = Query(None, alias="sessionId"),
    container: Container = Depends(get_container),
):
    limit = await _rate_limit(INSIGHTS_ENDPOINT, request, container)
    if not limit.allowed:
        return _rate_limited_response(limit)

    served = await container.insights.generate_tech_insight(slug, session_id)
    response.headers.update(rate_limit_headers(limit))
    return served.to_json_dict()


@router.get("/recommend")
async def recommend(
    request: Request,
    response: Response,
    goal: str = Query("learning"),
    focus: str = Query("frontend"),
    level: str = Query("beginner"),
    session_id: str | None = Query(None, alias="sessionId"),
    container: Container = Depends(get_container),
):
    """Two technologies worth comparing for ``goal``/``focus``/``level``; reused for a day."""
    limit = await _rate_limit(RECOMMEND_ENDPOINT, request, container)
    if not limit.allowed:
        return _rate_limited_response(limit)

    served = await container.insights.recommend(goal, focus, level, session_id)
    response.headers.update(rate_limit_headers(limit))
    return served.to_json_dict()


# =============================================================================
# Digest and anomalies
# =============================================================================


@router.post("/digest/generate")
async def generate_digest(
    force: bool = Query(False),
    week_start: str | None = Query(None, alias="weekStart"),
    container: Container = Depends(get_container),
):
    """Operator/cron endpoint: write the weekly digest (``force`` regenerates it)."""
    served = await container.insights.generate_weekly_digest(week_start, force=force)
    return {
        "message": (
            "Weekly digest generated successfully"
            if served.created
            else "Digest already exists for this period"
        ),
        "weekStart": served.week_start,
        "sectionCount": len(served.digest.get("sections", [])),
        "created": served.created,
        "digest": served.to_json_dict(),
    }


def _anomaly_dict(anomaly: AnomalyEvent) -> dict[str, Any]:
    return {
        "id": anomaly.id,
        "technologySlug": anomaly.technology_slug,
        "anomalyType": anomaly.anomaly_type,
        "severity": anomaly.severity,
        "metric": anomaly.metric,
        "expectedValue": anomaly.expected_value,
        "actualValue": anomaly.actual_value,
        "deviationSigma": anomaly.deviation_sigma,
        "explanation": anomaly.ai_explanation,
        "detectedAt": anomaly.detected_at,
    }


@router.get("/anomalies")
def list_anomalies(
    limit: int = Query(10, ge=1, le=50),
    container: Container = Depends(get_container),
):
    """Unresolved anomalies, most severe first."""
    return {"anomalies": [_anomaly_dict(a) for a in container.anomalies.list_unresolved(limit)]}


@router.post("/anomalies/{anomaly_id}/explain")
async def explain_anomaly(
    anomaly_id: int,
    request: Request,
    response: Response,
    session_id: str | None = Query(None, alias="sessionId"),
    container: Container = Depends(get_container),
):
    limit = await _rate_limit(ANOMALIES_ENDPOINT, request, container)
    if not limit.allowed:
        return _rate_limited_response(limit)

    served = await container.insights.explain_anomaly(anomaly_id, session_id)
    response.headers.update(rate_limit_headers(limit))
    return served.to_json_dict()


# =============================================================================
# Health
# =============================================================================


@router.get("/health")
def health(container: Container = Depends(get_container)):
    """Provider availability, circuit state and the last 24h of call metrics."""
    providers = container.generation.provider_status()
    usable = [
        p
        for p in providers
        if p["enabled"] and p["configured"] and p["circuitState"] != "open"
    ]
    return {
        "status": "healthy" if usable else "degraded",
        "providers": providers,
        "metrics": container.telemetry.recent_metrics(),
    }


@router.get("/monitoring")
def monitoring(container: Container = Depends(get_container)):
    """24h error, fallback, cache, quality, latency, feedback and cost figures with alerts."""
    return container.monitor.report().to_json_dict()


# =============================================================================
# Feedback
# =============================================================================


@router.post("/feedback")
def submit_feedback(
    request: Request,
    response: Response,
    body: dict[str, Any] = Body(...),
    container: Container = Depends(get_container),
):
    """Record ``{insightId, helpful, reason?}``; helpful must be a JSON boolean."""
    identifier = client_identifier(request.headers)
    limit = check_rate_limit(FEEDBACK_ENDPOINT, identifier, container.rate_limits)
    if not limit.allowed:
        _log_denial(container, FEEDBACK_ENDPOINT, identifier)
        return _rate_limited_response(limit)

    container.feedback.record_feedback(
        body.get("insightId"), body.get("helpful"), body.get("reason")
    )
    response.headers.update(rate_limit_headers(limit))
    return {"success": True}


@router.get("/feedback/summary")
def feedback_summary(
    days: int = Query(30, ge=1, le=365),
    container: Container = Depends(get_container),
):
    return container.feedback.analyze_feedback(days).to_json_dict()


# =============================================================================
# Prompts
# =============================================================================


def _version_dict(version: PromptVersion) -> dict[str, Any]:
    return {
        "promptKey": version.prompt_key,
        "version": version.version,
        "content": version.content,
        "isActive": version.is_active,
        "createdAt": version.created_at,
    }


@router.get("/prompts")
def list_prompts(
    key: str | None = Query(None),
    initialize: bool = Query(False),
    container: Container = Depends(get_container),
):
    """Prompt keys; ``?key=`` lists one key's versions; ``?initialize=true`` seeds defaults."""
    if initialize:
        created = container.prompts.initialize_default_prompts()
        return {"initialized": created, "keys": container.prompts.get_all_prompt_keys()}
    if key:
        versions = container.prompts.get_prompt_versions(key)
        return {"promptKey": key, "versions": [_version_dict(v) for v in versions]}
    return {"keys": container.prompts.get_all_prompt_keys()}


@router.post("/prompts", status_code=status.HTTP_201_CREATED)
def create_prompt(body: CreatePromptRequest, container: Container = Depends(get_container)):
    version = container.prompts.create_prompt_version(
        body.prompt_key, body.content, activate=body.activate
    )
    return {"promptKey": body.prompt_key, "version": version, "isActive": body.activate}


@router.get("/prompts/{key}")
def get_prompt(key: str, container: Container = Depends(get_container)):
    versions = container.prompts.get_prompt_versions(key)
    if not versions:
        raise NotFoundError("Prompt not found", context={"prompt_key": key})
    active = next((v for v in versions if v.is_active), None)
    return {
        "promptKey": key,
        "active": _version_dict(active) if active else None,
        "versions": [_version_dict(v) for v in versions],
    }


@router.put("/prompts/{key}")
def update_prompt(
    key: str, body: UpdatePromptRequest, container: Container = Depends(get_container)
):
    """Store edited text as a new (inactive) version."""
    version = container.prompts.update_prompt(key, body.content)
    return {"promptKey": key, "version": version, "isActive": False}


@router.patch("/prompts/{key}")
def activate_prompt(
    key: str, body: ActivatePromptRequest, container: Container = Depends(get_container)
):
    container.prompts.activate_version(key, body.version)
    return {"promptKey": key, "version": body.version, "isActive": True}


@router.delete("/prompts/{key}/versions/{version}")
def deactivate_prompt(key: str, version: int, container: Container = Depends(get_container)):
    """Clear a version's active flag; the key is left with no active version."""
    container.prompts.deactivate_version(key, version)
    return {"promptKey": key, "version": version, "isActive": False}


# =============================================================================
# Experiments
# =============================================================================


@router.get("/experiments")
def list_experiments(container: Container = Depends(get_container)):
    return {"tests": [t.to_json_dict() for t in container.experiments.list_tests()]}


@router.post("/experiments", status_code=status.HTTP_201_CREATED)
def create_experiment(
    body: CreateExperimentRequest, container: Container = Depends(get_container)
):
    test = container.experiments.create_ab_test(
        body.prompt_key, body.version_a, body.version_b, body.target_sample_size
    )
    return test.to_json_dict()


@router.get("/experiments/{test_key}")
def get_experiment(test_key: str, container: Container = Depends(get_container)):
    test = container.experiments.get_test(test_key)
    if test is None:
        raise NotFoundError("A/B test not found", context={"test_key": test_key})
    return {
        "test": test.to_json_dict(),
        "analysis": container.experiments.analyze(test).to_json_dict(),
    }


@router.patch("/experiments/{test_key}")
def update_experiment(
    test_key: str, body: ExperimentActionRequest, container: Container = Depends(get_container)
):
    if body.action == "cancel":
        test = container.experiments.cancel_test(test_key)
    else:
        test = container.experiments.apply_winner(test_key)
    return test.to_json_dict()


# =============================================================================
# Costs
# =============================================================================


@router.get("/costs")
def cost_summary(
    days: int = Query(30, ge=1, le=365),
    container: Container = Depends(get_container),
):
    return container.costs.calculate_cost_summary(days).to_json_dict()


@router.put("/costs")
def update_budgets(
    body: dict[str, Any] = Body(...),
    container: Container = Depends(get_container),
):
    """Set ``{dailyBudget, monthlyBudget}`` in USD; negative values are rejected."""
    daily, monthly = body.get("dailyBudget"), body.get("monthlyBudget")
    if daily is None or monthly is None:
        raise ValidationError("dailyBudget and monthlyBudget are required")
    container.costs.update_budgets(daily, monthly)
    return {"dailyBudget": daily, "monthlyBudget": monthly}


__all__ = ["router"]

"""
Domain services around the generation layer.

Rate limiting, telemetry and cost tracking, prompt versions and A/B tests,
feedback analysis, quality checks, chat safety and history, monitoring and
the insight request path.
"""

from __future__ import annotations

from .ab_testing import (
    ABTest,
    ABTestAnalysis,
    ABTestManager,
    ABTestMetrics,
    PromptSelection,
    analyze_ab_test,
    assign_variant,
    chi_square_test,
)
from .conversation import ConversationManager, extract_technologies, format_history
from .cost_tracker import BudgetStatus, CostSummary, CostTracker
from .feedback_analyzer import FeedbackAnalysis, FeedbackAnalyzer, extract_keywords
from .insight_service import InsightService, ServedDigest, ServedInsight, StreamingAnswer
from .monitoring import MonitoringReport, SystemMonitor
from .prompt_manager import DEFAULT_PROMPTS, PromptManager
from .quality_monitor import QualityResult, check_insight_quality, insight_scorer
from .rate_limiter import (
    ENDPOINT_LIMITS,
    RateLimitPolicy,
    RateLimitResult,
    check_rate_limit,
    check_rate_limit_async,
    client_identifier,
    purge_expired_windows,
    rate_limit_headers,
)
from .safety import FLAGGED_MESSAGE, SanitizeResult, build_safe_user_prompt, sanitize_user_input
from .telemetry import TelemetryTracker, estimate_cost

__all__ = [
    # Rate limiting
    "ENDPOINT_LIMITS",
    "RateLimitPolicy",
    "RateLimitResult",
    "check_rate_limit",
    "check_rate_limit_async",
    "client_identifier",
    "rate_limit_headers",
    "purge_expired_windows",
    # Telemetry and costs
    "TelemetryTracker",
    "estimate_cost",
    "CostTracker",
    "CostSummary",
    "BudgetStatus",
    # Prompts and experiments
    "PromptManager",
    "DEFAULT_PROMPTS",
    "ABTestManager",
    "ABTest",
    "ABTestMetrics",
    "ABTestAnalysis",
    "PromptSelection",
    "analyze_ab_test",
    "assign_variant",
    "chi_square_test",
    # Feedback and quality
    "FeedbackAnalyzer",
    "FeedbackAnalysis",
    "extract_keywords",
    "QualityResult",
    "check_insight_quality",
    "insight_scorer",
    # Insights and chat
    "InsightService",
    "ServedInsight",
    "ServedDigest",
    "StreamingAnswer",
    "ConversationManager",
    "extract_technologies",
    "format_history",
    "FLAGGED_MESSAGE",
    "SanitizeResult",
    "build_safe_user_prompt",
    "sanitize_user_input",
    # Monitoring
    "SystemMonitor",
    "MonitoringReport",
]

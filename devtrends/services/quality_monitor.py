"""
Heuristic quality checks for generated insights.

Scores an insight 0-100 from six weighted checks run on its JSON text. The
generation path uses the score as its quality gate (see
``GenerationService.generate_json(quality_check=...)``).
"""

from __future__ import annotations

import json
import re
from typing import Any

from pydantic import BaseModel

from devtrends.common.types import CamelModel

PASS_THRESHOLD = 60

WEIGHTS: dict[str, int] = {
    "cites_data": 25,
    "mentions_peers": 15,
    "matches_confidence": 15,
    "no_hallucination": 20,
    "has_actionable_advice": 15,
    "appropriate_length": 10,
}

_NUMBER = re.compile(r"\d+[,.]?\d*")
_MULTI_DIGIT = re.compile(r"\b\d{2,}\b")
_INTEGER = re.compile(r"\b\d+\b")

_PEER_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"compared to",
        r"vs\.?\s",
        r"more than",
        r"less than",
        r"higher than",
        r"lower than",
        r"#\d+\s+(in|of)",
        r"rank",
        r"ahead of",
        r"behind",
    )
]

_UNCERTAINTY_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"limited data",
        r"sparse",
        r"preliminary",
        r"uncertain",
        r"may change",
        r"few sources",
        r"short history",
    )
]

_ADVICE_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"recommend",
        r"should\s+(learn|consider|watch|skip|avoid|invest|wait)",
        r"worth\s+(learning|considering|watching)",
        r"priority",
        r"action",
        r"suggest",
    )
]

LOW_CONFIDENCE_GRADES = frozenset({"D", "F"})


class QualityChecks(CamelModel):
    cites_data: bool
    mentions_peers: bool
    matches_confidence: bool
    no_hallucination: bool
    has_actionable_advice: bool
    appropriate_length: bool


class QualityResult(CamelModel):
    checks: QualityChecks
    score: int
    passed: bool


def _insight_text(insight: Any) -> str:
    if isinstance(insight, BaseModel):
        insight = insight.model_dump(mode="json", by_alias=True)
    if isinstance(insight, str):
        return insight
    return json.dumps(insight, separators=(",", ":"), ensure_ascii=False, default=str)


def check_insight_quality(
    insight: Any, input_context: str, confidence_grade: str = "C"
) -> QualityResult:
    """
    Run the quality checks on a generated insight.

    Args:
        insight: Generated insight (model, dict or JSON text)
        input_context: Prompt context the insight was generated from; numbers
            of 100 or more in the output must appear here
        confidence_grade: Data confidence grade (A-F); D and F insights must
            acknowledge uncertainty

    Returns:
        QualityResult; ``passed`` when the score is at least 60
    """
    text = _insight_text(insight)

    cites_data = len(_NUMBER.findall(text)) >= 4
    mentions_peers = any(p.search(text) for p in _PEER_PATTERNS)

    matches_confidence = True
    if confidence_grade.upper() in LOW_CONFIDENCE_GRADES:
        matches_confidence = any(p.search(text) for p in _UNCERTAINTY_PATTERNS)

    # Small numbers can be legitimate derivations (percentages, ranks)
    input_numbers = set(_INTEGER.findall(input_context))
    suspect = [n for n in _MULTI_DIGIT.findall(text) if int(n) >= 100 and n not in input_numbers]
    no_hallucination = len(suspect) <= 2

    has_actionable_advice = any(p.search(text) for p in _ADVICE_PATTERNS)
    appropriate_length = 200 <= len(text) <= 5000

    checks = QualityChecks(
        cites_data=cites_data,
        mentions_peers=mentions_peers,
        matches_confidence=matches_confidence,
        no_hallucination=no_hallucination,
        has_actionable_advice=has_actionable_advice,
        appropriate_length=appropriate_length,
    )
    score = sum(weight for name, weight in WEIGHTS.items() if getattr(checks, name))
    return QualityResult(checks=checks, score=score, passed=score >= PASS_THRESHOLD)


def insight_scorer(input_context: str, confidence_grade: str = "C"):
    """Bind the context of one request into a ``quality_check`` callable."""

    def _score(output: Any) -> float:
        return check_insight_quality(output, input_context, confidence_grade).score

    return _score


__all__ = [
    "PASS_THRESHOLD",
    "WEIGHTS",
    "QualityChecks",
    "QualityResult",
    "check_insight_quality",
    "insight_scorer",
]

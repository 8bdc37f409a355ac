"""
A/B testing for prompt versions.

An experiment pits two versions of one prompt key against each other. Each
session is deterministically assigned an arm, every served generation is
recorded against that arm, and user feedback updates the arm's feedback
counts. Experiments are JSON documents in ``system_config`` under the
``ab_test_`` prefix.

Reaching the target sample size only flags the experiment
``ready_for_decision`` with a suggested winner; activating the winner is an
explicit operator action (``apply_winner``).
"""

from __future__ import annotations

import hashlib
import logging
import math
import time
from collections.abc import Callable
from typing import Literal

from pydantic import Field

from devtrends.common.exceptions import NotFoundError, ValidationError
from devtrends.common.time_utils import current_timestamp
from devtrends.common.types import CamelModel
from devtrends.storage import ConfigRepository

from .prompt_manager import PromptManager

logger = logging.getLogger(__name__)

AB_TEST_PREFIX = "ab_test_"

# Minimum samples per arm before a winner is suggested
MIN_SAMPLES_PER_VARIANT = 30
SIGNIFICANCE_LEVEL = 0.05
# Average quality difference (0-100 scale) treated as meaningful
QUALITY_DIFF_THRESHOLD = 5.0

Variant = Literal["A", "B"]
TestStatus = Literal["running", "completed", "cancelled"]


# =============================================================================
# Models
# =============================================================================


class ABTestMetrics(CamelModel):
    """Running metrics for one arm."""

    samples: int = 0
    scored_samples: int = 0
    avg_quality_score: float = 0.0
    positive_rate: float = 0.0
    avg_latency_ms: float = 0.0
    error_rate: float = 0.0
    feedback_count: int = 0
    positive_feedback: int = 0


class ABVariant(CamelModel):
    version: int


class ABTestArms(CamelModel):
    variant_a: ABTestMetrics = Field(default_factory=ABTestMetrics)
    variant_b: ABTestMetrics = Field(default_factory=ABTestMetrics)

    def for_variant(self, variant: Variant) -> ABTestMetrics:
        return self.variant_a if variant == "A" else self.variant_b


class ABTest(CamelModel):
    """An experiment document as stored in ``system_config``."""

    test_key: str
    prompt_key: str
    variant_a: ABVariant
    variant_b: ABVariant
    metrics: ABTestArms = Field(default_factory=ABTestArms)
    status: TestStatus = "running"
    winner: Variant | None = None
    confidence: float = 0.0
    p_value: float | None = None
    reason: str = ""
    ready_for_decision: bool = False
    target_sample_size: int = 100
    started_at: str = Field(default_factory=current_timestamp)
    completed_at: str | None = None

    def version_for(self, variant: Variant) -> int:
        return self.variant_a.version if variant == "A" else self.variant_b.version


class ABTestAnalysis(CamelModel):
    winner: Variant | None = None
    confidence: float = 0.0
    p_value: float = 1.0
    reason: str = ""


class PromptSelection(CamelModel):
    """The prompt served to one request and the experiment arm it came from."""

    prompt_key: str
    content: str
    version: int
    test_key: str | None = None
    variant: Variant | None = None


# =============================================================================
# Statistics
# =============================================================================


def chi_square_test(
    a_positive: int, a_negative: int, b_positive: int, b_negative: int
) -> tuple[float, bool]:
    """
    Chi-square test of independence on a 2x2 feedback table.

    Returns:
        (p_value, significant) with one degree of freedom; a table with an
        empty row or column has no evidence and returns p = 1
    """
    n = a_positive + a_negative + b_positive + b_negative
    row_a = a_positive + a_negative
    row_b = b_positive + b_negative
    col_pos = a_positive + b_positive
    col_neg = a_negative + b_negative
    if n == 0 or 0 in (row_a, row_b, col_pos, col_neg):
        return 1.0, False

    chi_square = 0.0
    for observed, row, col in (
        (a_positive, row_a, col_pos),
        (a_negative, row_a, col_neg),
        (b_positive, row_b, col_pos),
        (b_negative, row_b, col_neg),
    ):
        expected = row * col / n
        chi_square += (observed - expected) ** 2 / expected

    # Survival function of chi-square with df=1
    p_value = math.erfc(math.sqrt(chi_square / 2))
    return p_value, p_value < SIGNIFICANCE_LEVEL


def analyze_ab_test(metrics_a: ABTestMetrics, metrics_b: ABTestMetrics) -> ABTestAnalysis:
    """
    Suggest a winner from feedback significance and quality difference.

    When either signal is significant the arms are scored on positive rate
    (40), average quality (40) and error rate (20, lower wins); ties go to B.
    """
    if metrics_a.samples < MIN_SAMPLES_PER_VARIANT or metrics_b.samples < MIN_SAMPLES_PER_VARIANT:
        return ABTestAnalysis(
            reason=f"Insufficient samples (need {MIN_SAMPLES_PER_VARIANT} per variant)"
        )

    p_value, feedback_significant = chi_square_test(
        metrics_a.positive_feedback,
        metrics_a.feedback_count - metrics_a.positive_feedback,
        metrics_b.positive_feedback,
        metrics_b.feedback_count - metrics_b.positive_feedback,
    )
    quality_significant = (
        abs(metrics_a.avg_quality_score - metrics_b.avg_quality_score) > QUALITY_DIFF_THRESHOLD
    )

    if not (feedback_significant or quality_significant):
        return ABTestAnalysis(
            p_value=p_value, reason="No statistically significant difference detected"
        )

    score_a = score_b = 0
    if metrics_a.positive_rate > metrics_b.positive_rate:
        score_a += 40
    else:
        score_b += 40
    if metrics_a.avg_quality_score > metrics_b.avg_quality_score:
        score_a += 40
    else:
        score_b += 40
    if metrics_a.error_rate < metrics_b.error_rate:
        score_a += 20
    else:
        score_b += 20

    winner: Variant = "A" if score_a > score_b else "B"
    best = metrics_a if winner == "A" else metrics_b
    return ABTestAnalysis(
        winner=winner,
        confidence=max(score_a, score_b) / 100,
        p_value=p_value,
        reason=(
            f"Winner has {best.positive_rate * 100:.1f}% positive rate, "
            f"{best.avg_quality_score:.1f} quality score, "
            f"{best.error_rate * 100:.1f}% error rate"
        ),
    )


def assign_variant(test: ABTest, session_id: str) -> Variant:
    """Deterministic arm for a session: the same session always gets the same prompt."""
    digest = hashlib.sha256(f"{test.test_key}:{session_id}".encode()).digest()
    return "A" if digest[0] % 2 == 0 else "B"


# =============================================================================
# Manager
# =============================================================================


class ABTestManager:
    """
    Experiment lifecycle over ``system_config``.

    Example:
        experiments = ABTestManager(ConfigRepository(db), PromptManager(prompts))
        test = experiments.create_ab_test("analyst-system", 1, 2, target_sample_size=200)
        selection = experiments.resolve_prompt("analyst-system", session_id)
    """

    def __init__(self, config: ConfigRepository, prompts: PromptManager):
        self.config = config
        self.prompts = prompts

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def create_ab_test(
        self,
        prompt_key: str,
        version_a: int,
        version_b: int,
        target_sample_size: int = 100,
    ) -> ABTest:
        """
        Start an experiment between two versions of a prompt.

        Raises:
            ValidationError: If the versions are equal, the target is not
                positive, or the key already has a running experiment
            NotFoundError: If either version does not exist
        """
        if version_a == version_b:
            raise ValidationError(
                "Variant versions must differ",
                context={"prompt_key": prompt_key, "version": version_a},
            )
        if target_sample_size < 1:
            raise ValidationError(
                "targetSampleSize must be positive",
                context={"target_sample_size": target_sample_size},
            )
        for version in (version_a, version_b):
            if self.prompts.get_version(prompt_key, version) is None:
                raise NotFoundError(
                    "Prompt version not found",
                    context={"prompt_key": prompt_key, "version": version},
                )
        if (running := self.get_active_test(prompt_key)) is not None:
            raise ValidationError(
                "Prompt already has a running experiment",
                context={"prompt_key": prompt_key, "test_key": running.test_key},
            )

        test_key = f"{AB_TEST_PREFIX}{prompt_key}_v{version_a}_v{version_b}_{int(time.time() * 1000)}"
        test = ABTest(
            test_key=test_key,
            prompt_key=prompt_key,
            variant_a=ABVariant(version=version_a),
            variant_b=ABVariant(version=version_b),
            target_sample_size=target_sample_size,
        )
        self.config.set(test_key, test.to_json_dict())
        logger.info("Started A/B test %s (v%d vs v%d)", test_key, version_a, version_b)
        return test

    def cancel_test(self, test_key: str) -> ABTest:
        """
        Stop a running experiment without changing the active prompt.

        Raises:
            NotFoundError: If the test does not exist
            ValidationError: If the test is not running
        """

        def _cancel(test: ABTest) -> None:
            _require_running(test)
            test.status = "cancelled"
            test.completed_at = current_timestamp()

        test = self._update(test_key, _cancel)
        logger.info("Cancelled A/B test %s", test_key)
        return test

    def apply_winner(self, test_key: str) -> ABTest:
        """
        Activate the suggested winner's prompt version and complete the test.

        Raises:
            NotFoundError: If the test does not exist
            ValidationError: If the test is not running or has no winner yet
        """
        test = self._require_test(test_key)
        _require_running(test)
        analysis = self.analyze(test)
        if analysis.winner is None:
            raise ValidationError(
                f"No winner to apply: {analysis.reason}", context={"test_key": test_key}
            )

        self.prompts.activate_version(test.prompt_key, test.version_for(analysis.winner))

        def _complete(current: ABTest) -> None:
            current.status = "completed"
            current.winner = analysis.winner
            current.confidence = analysis.confidence
            current.p_value = analysis.p_value
            current.reason = analysis.reason
            current.completed_at = current_timestamp()

        completed = self._update(test_key, _complete)
        logger.info(
            "Applied A/B winner %s for %s (v%d)",
            analysis.winner,
            test.prompt_key,
            test.version_for(analysis.winner),
        )
        return completed

    # =========================================================================
    # Reads
    # =========================================================================

    def list_tests(self) -> list[ABTest]:
        """Every experiment, newest first."""
        tests = [ABTest.model_validate(doc) for doc in self.config.list_prefix(AB_TEST_PREFIX).values()]
        return sorted(tests, key=lambda t: t.started_at, reverse=True)

    def get_test(self, test_key: str) -> ABTest | None:
        if not test_key.startswith(AB_TEST_PREFIX):
            return None
        doc = self.config.get(test_key)
        return ABTest.model_validate(doc) if doc else None

    def get_active_test(self, prompt_key: str) -> ABTest | None:
        """The running experiment for a prompt key, if any."""
        for doc in self.config.list_prefix(f"{AB_TEST_PREFIX}{prompt_key}_v").values():
            test = ABTest.model_validate(doc)
            if test.prompt_key == prompt_key and test.status == "running":
                return test
        return None

    def analyze(self, test: ABTest) -> ABTestAnalysis:
        return analyze_ab_test(test.metrics.variant_a, test.metrics.variant_b)

    def resolve_prompt(self, prompt_key: str, session_id: str | None) -> PromptSelection | None:
        """
        Prompt to serve for a request.

        Sessions inside a running experiment get their assigned arm; everyone
        else gets the active version. Returns None when the key has neither.
        """
        test = self.get_active_test(prompt_key) if session_id else None
        if test is not None and session_id:
            variant = assign_variant(test, session_id)
            version = self.prompts.get_version(prompt_key, test.version_for(variant))
            if version is not None:
                return PromptSelection(
                    prompt_key=prompt_key,
                    content=version.content,
                    version=version.version,
                    test_key=test.test_key,
                    variant=variant,
                )
            logger.warning("A/B test %s references a missing version", test.test_key)

        active = self.prompts.get_active_version(prompt_key)
        if active is None:
            return None
        return PromptSelection(prompt_key=prompt_key, content=active.content, version=active.version)

    # =========================================================================
    # Recording
    # =========================================================================

    def record_result(
        self,
        test_key: str,
        variant: Variant,
        quality_score: float | None,
        latency_ms: float,
        error: bool,
        positive_feedback: bool | None = None,
    ) -> ABTest:
        """
        Add one served generation to an arm's running averages.

        Results for a test that is no longer running are ignored. The quality
        average only covers results that were scored. When both arms reach
        the target sample size the test is flagged ``ready_for_decision``
        with the current analysis.

        Raises:
            NotFoundError: If the test does not exist
        """

        def _record(test: ABTest) -> None:
            if test.status != "running":
                return
            arm = test.metrics.for_variant(variant)
            n = arm.samples
            arm.samples += 1
            if quality_score is not None:
                scored = arm.scored_samples
                arm.scored_samples += 1
                arm.avg_quality_score = (
                    arm.avg_quality_score * scored + quality_score
                ) / arm.scored_samples
            arm.avg_latency_ms = (arm.avg_latency_ms * n + latency_ms) / arm.samples
            arm.error_rate = (arm.error_rate * n + (1 if error else 0)) / arm.samples
            if positive_feedback is not None:
                _add_feedback(arm, positive_feedback)
            _refresh_decision(test)

        return self._update(test_key, _record)

    def record_feedback(self, test_key: str, variant: Variant, helpful: bool) -> ABTest:
        """
        Count user feedback against an arm (samples are unchanged).

        Raises:
            NotFoundError: If the test does not exist
        """

        def _feedback(test: ABTest) -> None:
            if test.status != "running":
                return
            _add_feedback(test.metrics.for_variant(variant), helpful)
            _refresh_decision(test)

        return self._update(test_key, _feedback)

    # =========================================================================
    # Helpers
    # =========================================================================

    def _require_test(self, test_key: str) -> ABTest:
        test = self.get_test(test_key)
        if test is None:
            raise NotFoundError("A/B test not found", context={"test_key": test_key})
        return test

    def _update(self, test_key: str, mutate: Callable[[ABTest], None]) -> ABTest:
        """Read-modify-write one experiment under the store's write lock."""
        if not test_key.startswith(AB_TEST_PREFIX):
            raise NotFoundError("A/B test not found", context={"test_key": test_key})

        result: list[ABTest] = []

        def _apply(doc: dict) -> dict:
            test = ABTest.model_validate(doc)
            mutate(test)
            result.append(test)
            return test.to_json_dict()

        try:
            self.config.update(test_key, _apply)
        except NotFoundError:
            raise NotFoundError("A/B test not found", context={"test_key": test_key}) from None
        return result[0]


def _require_running(test: ABTest) -> None:
    if test.status != "running":
        raise ValidationError(
            f"A/B test is {test.status}", context={"test_key": test.test_key}
        )


def _add_feedback(arm: ABTestMetrics, positive: bool) -> None:
    arm.feedback_count += 1
    if positive:
        arm.positive_feedback += 1
    arm.positive_rate = arm.positive_feedback / arm.feedback_count


def _refresh_decision(test: ABTest) -> None:
    arms = test.metrics
    if (
        arms.variant_a.samples >= test.target_sample_size
        and arms.variant_b.samples >= test.target_sample_size
    ):
        analysis = analyze_ab_test(arms.variant_a, arms.variant_b)
        test.ready_for_decision = True
        test.winner = analysis.winner
        test.confidence = analysis.confidence
        test.p_value = analysis.p_value
        test.reason = analysis.reason


__all__ = [
    "AB_TEST_PREFIX",
    "MIN_SAMPLES_PER_VARIANT",
    "ABTestMetrics",
    "ABVariant",
    "ABTestArms",
    "ABTest",
    "ABTestAnalysis",
    "PromptSelection",
    "chi_square_test",
    "analyze_ab_test",
    "assign_variant",
    "ABTestManager",
]

"""Tests for prompt A/B experiments."""

from __future__ import annotations

import pytest

from devtrends.common.exceptions import NotFoundError, ValidationError
from devtrends.services import (
    ABTestMetrics,
    analyze_ab_test,
    assign_variant,
    chi_square_test,
)

pytestmark = pytest.mark.unit

KEY = "analyst-system"


@pytest.fixture
def two_versions(prompts):
    prompts.create_prompt_version(KEY, "Version one", activate=True)
    prompts.create_prompt_version(KEY, "Version two")
    return prompts


def _metrics(samples=40, quality=70.0, feedback=20, positive=10, error_rate=0.0):
    return ABTestMetrics(
        samples=samples,
        scored_samples=samples,
        avg_quality_score=quality,
        positive_rate=positive / feedback if feedback else 0.0,
        error_rate=error_rate,
        feedback_count=feedback,
        positive_feedback=positive,
    )


class TestStatistics:
    """Test cases for the significance test and winner selection."""

    def test_identical_tables_are_not_significant(self):
        p_value, significant = chi_square_test(10, 10, 10, 10)
        assert p_value == pytest.approx(1.0)
        assert not significant

    def test_lopsided_tables_are_significant(self):
        p_value, significant = chi_square_test(45, 5, 20, 30)
        assert p_value < 0.05
        assert significant

    def test_empty_table_has_no_evidence(self):
        assert chi_square_test(0, 0, 0, 0) == (1.0, False)
        assert chi_square_test(5, 0, 7, 0) == (1.0, False)

    def test_insufficient_samples(self):
        analysis = analyze_ab_test(_metrics(samples=10), _metrics())
        assert analysis.winner is None
        assert "Insufficient samples" in analysis.reason

    def test_no_difference(self):
        analysis = analyze_ab_test(_metrics(), _metrics(quality=72.0))
        assert analysis.winner is None
        assert analysis.confidence == 0.0

    def test_quality_difference_picks_winner(self):
        """Test that a large quality gap selects the better arm."""
        analysis = analyze_ab_test(
            _metrics(quality=85.0, positive=15), _metrics(quality=60.0, positive=10)
        )
        assert analysis.winner == "A"
        assert analysis.confidence == pytest.approx(0.8)

    def test_feedback_significance_picks_winner(self):
        analysis = analyze_ab_test(
            _metrics(feedback=50, positive=10), _metrics(feedback=50, positive=40)
        )
        assert analysis.winner == "B"
        assert analysis.p_value < 0.05

    def test_assignment_is_deterministic(self, experiments, two_versions):
        test = experiments.create_ab_test(KEY, 1, 2)
        assignments = {assign_variant(test, f"session-{i}") for i in range(50)}

        assert assignments == {"A", "B"}
        assert assign_variant(test, "session-7") == assign_variant(test, "session-7")


class TestABTestManager:
    """Test cases for the experiment lifecycle."""

    def test_create_and_get(self, experiments, two_versions):
        test = experiments.create_ab_test(KEY, 1, 2, target_sample_size=50)

        assert test.test_key.startswith(f"ab_test_{KEY}_v1_v2_")
        stored = experiments.get_test(test.test_key)
        assert stored.status == "running"
        assert stored.target_sample_size == 50
        assert experiments.get_active_test(KEY).test_key == test.test_key

    def test_equal_versions_rejected(self, experiments, two_versions):
        with pytest.raises(ValidationError):
            experiments.create_ab_test(KEY, 1, 1)

    def test_missing_version_rejected(self, experiments, two_versions):
        with pytest.raises(NotFoundError):
            experiments.create_ab_test(KEY, 1, 5)

    def test_one_running_test_per_prompt(self, experiments, two_versions):
        experiments.create_ab_test(KEY, 1, 2)
        with pytest.raises(ValidationError):
            experiments.create_ab_test(KEY, 2, 1)

    def test_get_test_ignores_foreign_keys(self, experiments, config_repo):
        config_repo.set("cost_budgets", {"daily": 1})
        assert experiments.get_test("cost_budgets") is None
        assert experiments.get_test("ab_test_missing") is None

    def test_resolve_prompt_serves_assigned_arm(self, experiments, two_versions):
        """Test that sessions in an experiment get their arm's version."""
        test = experiments.create_ab_test(KEY, 1, 2)

        for session in ("alpha", "beta", "gamma", "delta"):
            selection = experiments.resolve_prompt(KEY, session)
            variant = assign_variant(test, session)
            assert selection.variant == variant
            assert selection.version == test.version_for(variant)
            assert selection.test_key == test.test_key

    def test_resolve_prompt_without_experiment(self, experiments, two_versions):
        selection = experiments.resolve_prompt(KEY, "alpha")
        assert selection.version == 1
        assert selection.variant is None
        assert experiments.resolve_prompt("missing", "alpha") is None

    def test_record_result_updates_running_averages(self, experiments, two_versions):
        test = experiments.create_ab_test(KEY, 1, 2)

        experiments.record_result(test.test_key, "A", 80.0, 100, error=False)
        experiments.record_result(test.test_key, "A", None, 300, error=True)
        updated = experiments.record_result(test.test_key, "A", 60.0, 200, error=False)

        arm = updated.metrics.variant_a
        assert arm.samples == 3
        assert arm.scored_samples == 2
        assert arm.avg_quality_score == pytest.approx(70.0)
        assert arm.avg_latency_ms == pytest.approx(200.0)
        assert arm.error_rate == pytest.approx(1 / 3)
        assert updated.metrics.variant_b.samples == 0

    def test_record_feedback_does_not_add_samples(self, experiments, two_versions):
        test = experiments.create_ab_test(KEY, 1, 2)

        experiments.record_feedback(test.test_key, "B", True)
        updated = experiments.record_feedback(test.test_key, "B", False)

        arm = updated.metrics.variant_b
        assert arm.samples == 0
        assert arm.feedback_count == 2
        assert arm.positive_rate == pytest.approx(0.5)

    def test_reaching_target_flags_ready_for_decision(self, experiments, two_versions):
        """Test that the target only flags the test; the active prompt is unchanged."""
        test = experiments.create_ab_test(KEY, 1, 2, target_sample_size=30)
        for _ in range(30):
            experiments.record_result(test.test_key, "A", 50.0, 100, error=False)
            updated = experiments.record_result(test.test_key, "B", 90.0, 100, error=False)

        assert updated.ready_for_decision
        assert updated.winner == "B"
        assert updated.status == "running"
        assert two_versions.get_active_version(KEY).version == 1

    def test_apply_winner_activates_version(self, experiments, two_versions):
        test = experiments.create_ab_test(KEY, 1, 2, target_sample_size=30)
        for _ in range(30):
            experiments.record_result(test.test_key, "A", 50.0, 100, error=False)
            experiments.record_result(test.test_key, "B", 90.0, 100, error=False)

        completed = experiments.apply_winner(test.test_key)

        assert completed.status == "completed"
        assert completed.winner == "B"
        assert completed.completed_at is not None
        assert two_versions.get_active_version(KEY).version == 2
        assert experiments.get_active_test(KEY) is None

    def test_apply_winner_without_winner_rejected(self, experiments, two_versions):
        test = experiments.create_ab_test(KEY, 1, 2)
        with pytest.raises(ValidationError):
            experiments.apply_winner(test.test_key)

    def test_cancel_stops_recording(self, experiments, two_versions):
        test = experiments.create_ab_test(KEY, 1, 2)

        cancelled = experiments.cancel_test(test.test_key)
        after = experiments.record_result(test.test_key, "A", 80.0, 100, error=False)

        assert cancelled.status == "cancelled"
        assert after.metrics.variant_a.samples == 0
        with pytest.raises(ValidationError):
            experiments.cancel_test(test.test_key)

    def test_unknown_test_not_found(self, experiments):
        with pytest.raises(NotFoundError):
            experiments.cancel_test("ab_test_nothing")
        with pytest.raises(NotFoundError):
            experiments.record_result("ab_test_nothing", "A", 1.0, 1, error=False)

    def test_list_tests(self, experiments, two_versions):
        test = experiments.create_ab_test(KEY, 1, 2)
        experiments.cancel_test(test.test_key)
        experiments.create_ab_test(KEY, 2, 1)

        tests = experiments.list_tests()

        assert len(tests) == 2
        assert {t.status for t in tests} == {"running", "cancelled"}

"""Tests for reviewer reliability - metrics normalization, formulas, classification."""

import logging

import pytest
from datetime import datetime, timezone
from pathlib import Path

from scholarxp.errors import StorageError
from scholarxp.models.reliability import (
    MetricName,
    ReliabilityEvaluation,
    ReliabilityFormula,
    ReviewerClass,
    ReviewerMetricsSnapshot,
)
from scholarxp.models.submission import PeerReview, Submission, SubmissionStatus
from scholarxp.persistence.event_log import EventKind, EventRecord
from scholarxp.persistence.retry import RetryConfig
from scholarxp.persistence.store import ReviewStore
from scholarxp.policy.resolver import PolicyResolver
from scholarxp.reliability.classifier import ReviewerClassifier
from scholarxp.reliability.formulas import FormulaEvaluator
from scholarxp.reliability.metrics import MetricsAggregator, normalize_metrics


CONFIG_DIR = Path(__file__).resolve().parents[1] / "config"
T0 = datetime(2026, 10, 14, 12, 0, tzinfo=timezone.utc)

EMPTY_REVIEW = {
    "total": 0, "late": 0, "avg_quality": None, "rated": 0, "validated": 0,
    "invalidated": 0, "mean_score": None, "mean_square": None,
}
EMPTY_DEVIATION = {"compared": 0, "avg_deviation": None, "extreme": 0}
EMPTY_PENALTY = {"penalty_total": 0, "missed": 0}


@pytest.fixture
def resolver() -> PolicyResolver:
    return PolicyResolver.from_config_dir(CONFIG_DIR)


def _normalize(resolver: PolicyResolver, review=None, deviation=None, penalty=None) -> ReviewerMetricsSnapshot:
    return normalize_metrics(
        reviewer_id="rev-1",
        as_of=T0,
        review=review or EMPTY_REVIEW,
        deviation=deviation or EMPTY_DEVIATION,
        penalty=penalty or EMPTY_PENALTY,
        norm=resolver.normalization(),
        vote_params=resolver.vote_validation_params(),
        new_reviewer_defaults=resolver.new_reviewer_defaults(),
    )


def _snapshot(
    metrics: dict[MetricName, float],
    missing: frozenset = frozenset(),
    reviewer_id: str = "rev-1",
    **kwargs,
) -> ReviewerMetricsSnapshot:
    return ReviewerMetricsSnapshot(
        reviewer_id=reviewer_id, as_of=T0, metrics=metrics, missing=missing, **kwargs,
    )


# =====================================================================
# Metric normalization
# =====================================================================


class TestNormalizeMetrics:
    def test_new_reviewer_gets_defaults(self, resolver: PolicyResolver) -> None:
        snapshot = _normalize(resolver)
        assert snapshot.total_reviews == 0
        assert snapshot.value(MetricName.TIMELINESS) == 0.5
        assert snapshot.value(MetricName.EXPERIENCE) == 0.0
        assert snapshot.value(MetricName.REVIEW_VARIANCE) == 0.75
        assert snapshot.value(MetricName.MISSED_PENALTY) == 1.0
        assert snapshot.value(MetricName.PENALTY_SCORE) == 1.0
        assert snapshot.missing == frozenset({
            MetricName.QUALITY, MetricName.ACCURACY, MetricName.VOTE_VALIDATION,
        })

    def test_new_reviewer_penalties_still_count(self, resolver: PolicyResolver) -> None:
        snapshot = _normalize(resolver, penalty={"penalty_total": 30, "missed": 2})
        assert snapshot.value(MetricName.MISSED_PENALTY) == pytest.approx(0.5)
        assert snapshot.value(MetricName.PENALTY_SCORE) == pytest.approx(0.7)
        assert snapshot.missed_ratio == 1.0

    def test_full_history(self, resolver: PolicyResolver) -> None:
        snapshot = _normalize(
            resolver,
            review={
                "total": 10, "late": 2, "avg_quality": 4.0, "rated": 5, "validated": 3,
                "invalidated": 1, "mean_score": 100.0, "mean_square": 10400.0,
            },
            deviation={"compared": 4, "avg_deviation": 30.0, "extreme": 1},
            penalty={"penalty_total": 10.0, "missed": 2},
        )
        assert snapshot.value(MetricName.TIMELINESS) == pytest.approx(0.8)
        assert snapshot.value(MetricName.LATE_PERCENTAGE) == pytest.approx(0.8)
        assert snapshot.value(MetricName.QUALITY) == pytest.approx(0.75)
        assert snapshot.value(MetricName.ACCURACY) == pytest.approx(0.7)
        assert snapshot.value(MetricName.VOTE_VALIDATION) == pytest.approx(0.66)
        assert snapshot.value(MetricName.EXPERIENCE) == pytest.approx(0.2)
        assert snapshot.value(MetricName.MISSED_PENALTY) == pytest.approx(0.5)
        assert snapshot.value(MetricName.PENALTY_SCORE) == pytest.approx(0.9)
        assert snapshot.value(MetricName.REVIEW_VARIANCE) == pytest.approx(0.8)
        assert snapshot.missing == frozenset()
        assert snapshot.missed_ratio == pytest.approx(2 / 12)
        assert snapshot.extreme_miss_rate == pytest.approx(0.1)

    def test_unrated_and_unscored_marked_missing(self, resolver: PolicyResolver) -> None:
        snapshot = _normalize(
            resolver,
            review={**EMPTY_REVIEW, "total": 3, "mean_score": 50.0, "mean_square": 2500.0},
        )
        assert snapshot.value(MetricName.QUALITY) == pytest.approx(0.4)
        assert snapshot.value(MetricName.ACCURACY) == pytest.approx(0.5)
        assert snapshot.value(MetricName.VOTE_VALIDATION) == pytest.approx(0.65)
        assert snapshot.missing == frozenset({
            MetricName.QUALITY, MetricName.ACCURACY, MetricName.VOTE_VALIDATION,
        })

    def test_values_clamped(self, resolver: PolicyResolver) -> None:
        snapshot = _normalize(
            resolver,
            review={
                **EMPTY_REVIEW, "total": 80, "validated": 0, "invalidated": 20,
                "mean_score": 0.0, "mean_square": 40000.0,
            },
            deviation={"compared": 5, "avg_deviation": 250.0, "extreme": 5},
            penalty={"penalty_total": 500, "missed": 9},
        )
        for metric, value in snapshot.metrics.items():
            assert 0.0 <= value <= 1.0, metric
        assert snapshot.value(MetricName.EXPERIENCE) == 1.0
        assert snapshot.value(MetricName.VOTE_VALIDATION) == 0.0


# =====================================================================
# Formula evaluation
# =====================================================================


class TestFormulaEvaluator:
    def test_legacy_on_new_reviewer(self, resolver: PolicyResolver) -> None:
        snapshot = _normalize(resolver)
        score = FormulaEvaluator().evaluate(snapshot, resolver.formula("LEGACY"))
        # 0.3 * 0.5 timeliness + 0.7 * 0.625 default quality
        assert score == pytest.approx(0.5875)

    def test_missing_without_default_drops_out(self) -> None:
        formula = ReliabilityFormula.create("F", {"timeliness": 0.5, "accuracy": 0.5})
        snapshot = _snapshot(
            {MetricName.TIMELINESS: 0.8, MetricName.ACCURACY: 0.5},
            missing=frozenset({MetricName.ACCURACY}),
        )
        assert FormulaEvaluator().evaluate(snapshot, formula) == pytest.approx(0.8)

    def test_missing_with_default_uses_default(self) -> None:
        formula = ReliabilityFormula.create(
            "F", {"timeliness": 0.5, "accuracy": 0.5}, default_values={"accuracy": 0.9},
        )
        snapshot = _snapshot(
            {MetricName.TIMELINESS: 0.8, MetricName.ACCURACY: 0.5},
            missing=frozenset({MetricName.ACCURACY}),
        )
        assert FormulaEvaluator().evaluate(snapshot, formula) == pytest.approx(0.85)

    def test_vote_validation_toggle(self) -> None:
        formula = ReliabilityFormula.create("F", {"timeliness": 0.5, "vote_validation": 0.5})
        snapshot = _snapshot({MetricName.TIMELINESS: 1.0, MetricName.VOTE_VALIDATION: 0.2})
        assert FormulaEvaluator(use_vote_validation=True).evaluate(snapshot, formula) == pytest.approx(0.6)
        assert FormulaEvaluator(use_vote_validation=False).evaluate(snapshot, formula) == pytest.approx(1.0)

    def test_absent_metric_contributes_zero_and_warns(self, caplog: pytest.LogCaptureFixture) -> None:
        formula = ReliabilityFormula.create("F", {"timeliness": 0.5, "quality": 0.5})
        snapshot = _snapshot({MetricName.TIMELINESS: 1.0})
        with caplog.at_level(logging.WARNING, logger="scholarxp.reliability.formulas"):
            score = FormulaEvaluator().evaluate(snapshot, formula)
        assert score == pytest.approx(0.5)
        assert "has no value" in caplog.text

    def test_no_usable_weight_scores_zero(self) -> None:
        formula = ReliabilityFormula.create("F", {"accuracy": 1.0})
        snapshot = _snapshot({MetricName.ACCURACY: 0.9}, missing=frozenset({MetricName.ACCURACY}))
        assert FormulaEvaluator().evaluate(snapshot, formula) == 0.0

    def test_scores_bounded(self, resolver: PolicyResolver) -> None:
        snapshot = _snapshot({m: 1.0 for m in MetricName})
        evaluator = FormulaEvaluator()
        for formula in resolver.formulas().values():
            assert evaluator.evaluate(snapshot, formula) == pytest.approx(1.0)

    def test_evaluate_all_includes_shadows(self, resolver: PolicyResolver) -> None:
        snapshot = _normalize(resolver)
        evaluation = FormulaEvaluator().evaluate_all(
            snapshot, resolver.formula("LEGACY"),
            [resolver.formula("CUSTOM_V1"), resolver.formula("CUSTOM_V2")],
        )
        assert evaluation.active_formula_id == "LEGACY"
        assert set(evaluation.shadow) == {"CUSTOM_V1", "CUSTOM_V2"}
        assert evaluation.snapshot is snapshot


# =====================================================================
# Classification
# =====================================================================


class TestClassifier:
    def test_missed_ratio_is_hard_failure(self, resolver: PolicyResolver) -> None:
        snapshot = _snapshot(
            {MetricName.TIMELINESS: 1.0, MetricName.ACCURACY: 1.0},
            total_reviews=60, missed_ratio=0.3,
        )
        result = ReviewerClassifier(resolver).classify(snapshot)
        assert result.reviewer_class == ReviewerClass.BAD
        assert len(result.reasons) == 1

    def test_penalties_are_hard_failure(self, resolver: PolicyResolver) -> None:
        snapshot = _snapshot(
            {MetricName.TIMELINESS: 1.0, MetricName.ACCURACY: 1.0},
            total_reviews=60, penalty_total=20,
        )
        assert ReviewerClassifier(resolver).classify(snapshot).reviewer_class == ReviewerClass.BAD

    def test_two_soft_failures_bad(self, resolver: PolicyResolver) -> None:
        snapshot = _snapshot(
            {MetricName.TIMELINESS: 0.6, MetricName.ACCURACY: 0.4}, total_reviews=10,
        )
        result = ReviewerClassifier(resolver).classify(snapshot)
        assert result.reviewer_class == ReviewerClass.BAD
        assert len(result.reasons) == 2

    def test_one_soft_failure_middle(self, resolver: PolicyResolver) -> None:
        snapshot = _snapshot(
            {MetricName.TIMELINESS: 0.6, MetricName.ACCURACY: 0.8}, total_reviews=10,
        )
        result = ReviewerClassifier(resolver).classify(snapshot)
        assert result.reviewer_class == ReviewerClass.MIDDLE
        assert len(result.reasons) == 1

    def test_low_accuracy_ignored_on_short_history(self, resolver: PolicyResolver) -> None:
        snapshot = _snapshot(
            {MetricName.TIMELINESS: 0.6, MetricName.ACCURACY: 0.1}, total_reviews=4,
        )
        assert ReviewerClassifier(resolver).classify(snapshot).reviewer_class == ReviewerClass.MIDDLE

    def test_good_with_strengths(self, resolver: PolicyResolver) -> None:
        snapshot = _snapshot(
            {MetricName.TIMELINESS: 0.96, MetricName.ACCURACY: 0.75},
            total_reviews=55, missed_ratio=0.05,
        )
        result = ReviewerClassifier(resolver).classify(snapshot)
        assert result.reviewer_class == ReviewerClass.GOOD
        assert result.strengths == [
            "Veteran (50+ reviews)", "Very punctual (95%+)", "Accurate (70%+)",
        ]

    def test_good_without_strengths(self, resolver: PolicyResolver) -> None:
        snapshot = _snapshot(
            {MetricName.TIMELINESS: 0.9, MetricName.ACCURACY: 0.6}, total_reviews=30,
        )
        result = ReviewerClassifier(resolver).classify(snapshot)
        assert result.reviewer_class == ReviewerClass.GOOD
        assert result.strengths == []

    def test_new_reviewer_is_middle(self, resolver: PolicyResolver) -> None:
        snapshot = _normalize(resolver)
        assert ReviewerClassifier(resolver).classify(snapshot).reviewer_class == ReviewerClass.MIDDLE

    def test_rank_drops_bad_and_orders(self, resolver: PolicyResolver) -> None:
        good = _snapshot({MetricName.TIMELINESS: 0.9, MetricName.ACCURACY: 0.8},
                         reviewer_id="b", total_reviews=30)
        middle = _snapshot({MetricName.TIMELINESS: 0.9, MetricName.ACCURACY: 0.8},
                           reviewer_id="a", total_reviews=3)
        bad = _snapshot({MetricName.TIMELINESS: 0.9}, reviewer_id="c", missed_ratio=0.5)
        evaluations = [
            ReliabilityEvaluation("b", "LEGACY", 0.7, snapshot=good),
            ReliabilityEvaluation("a", "LEGACY", 0.7, snapshot=middle),
            ReliabilityEvaluation("c", "LEGACY", 0.99, snapshot=bad),
        ]
        ranked = ReviewerClassifier(resolver).rank(evaluations)
        assert [ev.reviewer_id for ev, _ in ranked] == ["a", "b"]

    def test_rank_requires_snapshot(self, resolver: PolicyResolver) -> None:
        with pytest.raises(ValueError, match="no snapshot"):
            ReviewerClassifier(resolver).rank([ReliabilityEvaluation("a", "LEGACY", 0.5)])


# =====================================================================
# Aggregator over a store
# =====================================================================


class FlakyStore(ReviewStore):
    """Fails the first review_stats call with a transient error."""

    def __init__(self) -> None:
        super().__init__()
        self.failures = 1

    def review_stats(self, reviewer_id, as_of):
        if self.failures:
            self.failures -= 1
            raise StorageError("database is locked", transient=True)
        return super().review_stats(reviewer_id, as_of)


class TestMetricsAggregator:
    def _seed(self, store: ReviewStore) -> None:
        store.add_submission(Submission(
            "s1", "author-1", status=SubmissionStatus.UNDER_PEER_REVIEW, created_utc=T0,
        ))
        store.add_review(PeerReview("r1", "s1", "rev-1", 100, quality_rating=5, created_utc=T0))

    def test_compute_from_store(self, resolver: PolicyResolver) -> None:
        store = ReviewStore()
        self._seed(store)
        aggregator = MetricsAggregator(store, resolver, clock=lambda: T0)
        try:
            snapshot = aggregator.compute_metrics("rev-1")
        finally:
            aggregator.shutdown()
        assert snapshot.total_reviews == 1
        assert snapshot.value(MetricName.QUALITY) == pytest.approx(1.0)
        assert snapshot.value(MetricName.TIMELINESS) == pytest.approx(1.0)

    def test_cached_until_invalidated(self, resolver: PolicyResolver) -> None:
        store = ReviewStore()
        self._seed(store)
        aggregator = MetricsAggregator(store, resolver, clock=lambda: T0)
        try:
            first = aggregator.compute_metrics("rev-1")
            store.add_review(PeerReview("r2", "s1", "rev-1", 90, created_utc=T0))
            assert aggregator.compute_metrics("rev-1") is first
            aggregator.on_review_judged(EventRecord.create(
                "E-1", EventKind.REVIEW_INVALIDATED, "system", {"reviewer_id": "rev-1"},
            ))
            assert aggregator.compute_metrics("rev-1").total_reviews == 2
        finally:
            aggregator.shutdown()

    def test_explicit_as_of_bypasses_cache(self, resolver: PolicyResolver) -> None:
        store = ReviewStore()
        self._seed(store)
        aggregator = MetricsAggregator(store, resolver, clock=lambda: T0)
        try:
            aggregator.compute_metrics("rev-1")
            earlier = datetime(2026, 1, 1, tzinfo=timezone.utc)
            assert aggregator.compute_metrics("rev-1", as_of=earlier).total_reviews == 0
        finally:
            aggregator.shutdown()

    def test_transient_failure_retried(self, resolver: PolicyResolver) -> None:
        store = FlakyStore()
        self._seed(store)
        aggregator = MetricsAggregator(
            store, resolver, retry=RetryConfig(max_attempts=3, base_delay=0.0), clock=lambda: T0,
        )
        try:
            assert aggregator.compute_metrics("rev-1").total_reviews == 1
        finally:
            aggregator.shutdown()
        assert store.failures == 0

    def test_exhausted_retries_raise(self, resolver: PolicyResolver) -> None:
        store = FlakyStore()
        store.failures = 10
        aggregator = MetricsAggregator(
            store, resolver, retry=RetryConfig(max_attempts=2, base_delay=0.0), clock=lambda: T0,
        )
        try:
            with pytest.raises(StorageError):
                aggregator.compute_metrics("rev-1")
        finally:
            aggregator.shutdown()

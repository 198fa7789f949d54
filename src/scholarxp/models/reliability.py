"""Reliability models - reviewer metrics snapshots and weighted formulas.

A reliability score is a [0, 1] trust weight for a reviewer, produced by
evaluating a named, versioned formula over a snapshot of the reviewer's
normalized historical metrics. Formulas are immutable: changing weights
means registering a new formula id.
"""

from __future__ import annotations

import enum
import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Mapping

from scholarxp.errors import FormulaError


class MetricName(str, enum.Enum):
    """Closed set of normalized metrics a formula may weight.

    Every metric is oriented so that higher is better.
    """
    TIMELINESS = "timeliness"
    QUALITY = "quality"
    ACCURACY = "accuracy"
    VOTE_VALIDATION = "vote_validation"
    EXPERIENCE = "experience"
    MISSED_PENALTY = "missed_penalty"
    PENALTY_SCORE = "penalty_score"
    REVIEW_VARIANCE = "review_variance"
    LATE_PERCENTAGE = "late_percentage"


class ReviewerClass(str, enum.Enum):
    """Rule-based reviewer-pool eligibility class."""
    GOOD = "Good"
    MIDDLE = "Middle"
    BAD = "Bad"


@dataclass(frozen=True)
class ReviewerMetricsSnapshot:
    """Normalized behavioral statistics for one reviewer at one instant.

    `metrics` holds the [0, 1] values keyed by MetricName. `missing`
    lists metrics the reviewer has no underlying data for; their value
    is a neutral default and formulas may substitute their own.
    The remaining fields are raw (non-weighted) figures used by the
    reviewer classifier and for display.
    """
    reviewer_id: str
    as_of: datetime
    metrics: dict[MetricName, float]
    missing: frozenset[MetricName] = frozenset()

    total_reviews: int = 0
    late_reviews: int = 0
    missed_assignments: int = 0
    missed_ratio: float = 0.0
    penalty_total: float = 0.0
    votes_validated: int = 0
    votes_invalidated: int = 0
    avg_quality_rating: float = 0.0
    avg_deviation: float = 0.0
    score_stddev: float = 0.0
    extreme_miss_count: int = 0
    extreme_miss_rate: float = 0.0

    def value(self, metric: MetricName) -> float:
        return self.metrics.get(metric, 0.0)

    @property
    def timeliness(self) -> float:
        return self.value(MetricName.TIMELINESS)

    @property
    def accuracy(self) -> float:
        return self.value(MetricName.ACCURACY)

    def to_dict(self) -> dict[str, Any]:
        return {
            "reviewer_id": self.reviewer_id,
            "as_of": self.as_of.isoformat(),
            "metrics": {m.value: v for m, v in self.metrics.items()},
            "missing": sorted(m.value for m in self.missing),
            "total_reviews": self.total_reviews,
            "late_reviews": self.late_reviews,
            "missed_assignments": self.missed_assignments,
            "missed_ratio": self.missed_ratio,
            "penalty_total": self.penalty_total,
            "votes_validated": self.votes_validated,
            "votes_invalidated": self.votes_invalidated,
            "avg_quality_rating": self.avg_quality_rating,
            "avg_deviation": self.avg_deviation,
            "score_stddev": self.score_stddev,
            "extreme_miss_count": self.extreme_miss_count,
            "extreme_miss_rate": self.extreme_miss_rate,
        }


@dataclass(frozen=True)
class ReliabilityFormula:
    """A named, versioned weighting over MetricName.

    Weights are non-negative relative weights; they are normalized by
    their total at evaluation time. default_values replace a metric's
    value when the reviewer has no data for it.
    """
    formula_id: str
    version: int
    weights: Mapping[MetricName, float]
    default_values: Mapping[MetricName, float] = field(default_factory=dict)
    name: str = ""
    description: str = ""

    @staticmethod
    def create(
        formula_id: str,
        weights: Mapping[str, float],
        version: int = 1,
        default_values: Mapping[str, float] | None = None,
        name: str = "",
        description: str = "",
    ) -> ReliabilityFormula:
        """Build a formula from string-keyed maps, rejecting typos.

        Raises FormulaError on an unknown metric key, a negative or
        non-finite weight, a default outside [0, 1] or an all-zero
        weight set.
        """
        if not formula_id or not formula_id.strip():
            raise FormulaError("Formula id must not be blank")

        typed_weights = _typed_metric_map(formula_id, "weight", weights)
        for metric, weight in typed_weights.items():
            if weight < 0.0:
                raise FormulaError(
                    f"Formula {formula_id}: weight for {metric.value} is negative ({weight})"
                )
        if sum(typed_weights.values()) <= 0.0:
            raise FormulaError(f"Formula {formula_id}: weights sum to zero")

        typed_defaults = _typed_metric_map(
            formula_id, "default", default_values or {},
        )
        for metric, value in typed_defaults.items():
            if not (0.0 <= value <= 1.0):
                raise FormulaError(
                    f"Formula {formula_id}: default for {metric.value} must be in [0, 1], got {value}"
                )

        return ReliabilityFormula(
            formula_id=formula_id.strip(),
            version=version,
            weights=typed_weights,
            default_values=typed_defaults,
            name=name,
            description=description,
        )

    @property
    def total_weight(self) -> float:
        return sum(self.weights.values())

    def declares(self, metric: MetricName) -> bool:
        return self.weights.get(metric, 0.0) > 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.formula_id,
            "version": self.version,
            "name": self.name,
            "description": self.description,
            "weights": {m.value: w for m, w in self.weights.items()},
            "default_values": {m.value: v for m, v in self.default_values.items()},
        }


@dataclass(frozen=True)
class ReliabilityEvaluation:
    """Active and shadow reliability scores for one reviewer."""
    reviewer_id: str
    active_formula_id: str
    active: float
    shadow: dict[str, float] = field(default_factory=dict)
    snapshot: ReviewerMetricsSnapshot | None = None


@dataclass(frozen=True)
class ReviewerClassification:
    """Classifier output: class plus the rule hits that produced it."""
    reviewer_id: str
    reviewer_class: ReviewerClass
    reasons: list[str] = field(default_factory=list)
    strengths: list[str] = field(default_factory=list)


def _typed_metric_map(
    formula_id: str, label: str, raw: Mapping[str, float],
) -> dict[MetricName, float]:
    typed: dict[MetricName, float] = {}
    for key, value in raw.items():
        try:
            metric = MetricName(key)
        except ValueError:
            valid = ", ".join(m.value for m in MetricName)
            raise FormulaError(
                f"Formula {formula_id}: unknown metric {key!r} in {label}s (valid: {valid})"
            ) from None
        number = float(value)
        if not math.isfinite(number):
            raise FormulaError(
                f"Formula {formula_id}: {label} for {key} is not finite"
            )
        typed[metric] = number
    return typed

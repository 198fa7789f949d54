"""Reliability formula evaluator - weighted linear model over reviewer metrics.

Pure computation. A formula's weights are relative; the score is the
weighted mean of the metric values over the weights that remain in
effect, clamped to [0, 1]:

    score = Σ w_m · v_m / Σ w_m

For a metric the reviewer has no data for, the formula's default value
is used when it declares one; otherwise the metric drops out and the
remaining weights are renormalized. A declared metric absent from the
snapshot contributes nothing and is logged as misconfiguration.
"""

from __future__ import annotations

import logging
from typing import Iterable

from scholarxp.models.reliability import (
    MetricName,
    ReliabilityEvaluation,
    ReliabilityFormula,
    ReviewerMetricsSnapshot,
)

logger = logging.getLogger(__name__)


class FormulaEvaluator:
    """Evaluates reliability formulas against metric snapshots.

    Usage:
        evaluator = FormulaEvaluator(use_vote_validation=True)
        score = evaluator.evaluate(snapshot, formula)
        both = evaluator.evaluate_all(snapshot, active, [shadow_a, shadow_b])
    """

    def __init__(self, use_vote_validation: bool = True) -> None:
        self._use_vote_validation = use_vote_validation

    def effective_weights(
        self,
        snapshot: ReviewerMetricsSnapshot,
        formula: ReliabilityFormula,
    ) -> dict[MetricName, tuple[float, float]]:
        """Map metric → (weight, value) actually used for this snapshot."""
        used: dict[MetricName, tuple[float, float]] = {}
        for metric, weight in formula.weights.items():
            if weight <= 0.0:
                continue
            if metric == MetricName.VOTE_VALIDATION and not self._use_vote_validation:
                continue
            if metric in snapshot.missing:
                default = formula.default_values.get(metric)
                if default is None:
                    continue
                used[metric] = (weight, default)
                continue
            value = snapshot.metrics.get(metric)
            if value is None:
                logger.warning(
                    "Formula %s weights %s but snapshot for %s has no value; contributing 0",
                    formula.formula_id, metric.value, snapshot.reviewer_id,
                )
                used[metric] = (weight, 0.0)
                continue
            used[metric] = (weight, value)
        return used

    def evaluate(
        self,
        snapshot: ReviewerMetricsSnapshot,
        formula: ReliabilityFormula,
    ) -> float:
        """Reliability score in [0, 1] for one snapshot under one formula."""
        used = self.effective_weights(snapshot, formula)
        total = sum(w for w, _ in used.values())
        if total <= 0.0:
            logger.warning(
                "Formula %s has no usable weight for %s; score is 0",
                formula.formula_id, snapshot.reviewer_id,
            )
            return 0.0
        score = sum(w * v for w, v in used.values()) / total
        return max(0.0, min(1.0, score))

    def evaluate_all(
        self,
        snapshot: ReviewerMetricsSnapshot,
        active: ReliabilityFormula,
        shadows: Iterable[ReliabilityFormula] = (),
    ) -> ReliabilityEvaluation:
        """Active score plus one score per shadow formula."""
        return ReliabilityEvaluation(
            reviewer_id=snapshot.reviewer_id,
            active_formula_id=active.formula_id,
            active=self.evaluate(snapshot, active),
            shadow={f.formula_id: self.evaluate(snapshot, f) for f in shadows},
            snapshot=snapshot,
        )

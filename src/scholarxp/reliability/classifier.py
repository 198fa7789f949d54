"""Rule-based reviewer classification for review-pool eligibility.

Works on the raw snapshot, not on any formula score:

  Bad    - any hard failure (missed ratio, admin penalties) or enough
           soft failures (lateness, low accuracy on a real history)
  Good   - experienced, reliable, unpenalized and punctual
  Middle - everyone else

Classification never affects XP weighting.
"""

from __future__ import annotations

from typing import Iterable

from scholarxp.models.reliability import (
    ReliabilityEvaluation,
    ReviewerClass,
    ReviewerClassification,
    ReviewerMetricsSnapshot,
)
from scholarxp.policy.resolver import PolicyResolver


class ReviewerClassifier:
    """Classifies reviewers as Good / Middle / Bad."""

    def __init__(self, resolver: PolicyResolver) -> None:
        self._bad = resolver.bad_reviewer_thresholds()
        self._good = resolver.good_reviewer_thresholds()

    def classify(self, snapshot: ReviewerMetricsSnapshot) -> ReviewerClassification:
        bad = self._bad
        hard: list[str] = []
        if snapshot.missed_ratio >= bad["missed_ratio"]:
            hard.append(f"Misses {bad['missed_ratio']:.0%}+ of assignments")
        if snapshot.penalty_total >= bad["penalty_total"]:
            hard.append(f"Admin penalties ({bad['penalty_total']:g}+ points)")
        if hard:
            return ReviewerClassification(
                reviewer_id=snapshot.reviewer_id,
                reviewer_class=ReviewerClass.BAD,
                reasons=hard,
            )

        soft: list[str] = []
        if snapshot.total_reviews > 0 and snapshot.timeliness < bad["soft_timeliness"]:
            soft.append(f"Very late (<{bad['soft_timeliness']:.0%} on time)")
        if (
            snapshot.total_reviews > bad["soft_accuracy_min_reviews"]
            and snapshot.accuracy < bad["soft_accuracy"]
        ):
            soft.append(f"Very low accuracy (<{bad['soft_accuracy']:.0%})")
        if len(soft) >= bad["soft_failures_required"]:
            return ReviewerClassification(
                reviewer_id=snapshot.reviewer_id,
                reviewer_class=ReviewerClass.BAD,
                reasons=soft,
            )

        good = self._good
        if (
            snapshot.total_reviews >= good["min_reviews"]
            and snapshot.missed_ratio < good["max_missed_ratio"]
            and snapshot.penalty_total <= good["max_penalty_total"]
            and snapshot.timeliness >= good["min_timeliness"]
        ):
            return ReviewerClassification(
                reviewer_id=snapshot.reviewer_id,
                reviewer_class=ReviewerClass.GOOD,
                strengths=_strengths(snapshot),
            )

        return ReviewerClassification(
            reviewer_id=snapshot.reviewer_id,
            reviewer_class=ReviewerClass.MIDDLE,
            reasons=soft,
        )

    def rank(
        self,
        evaluations: Iterable[ReliabilityEvaluation],
    ) -> list[tuple[ReliabilityEvaluation, ReviewerClassification]]:
        """Order eligible reviewers by active reliability, best first.

        Bad reviewers are dropped. Ties break on reviewer id so the
        order is deterministic.
        """
        ranked: list[tuple[ReliabilityEvaluation, ReviewerClassification]] = []
        for evaluation in evaluations:
            if evaluation.snapshot is None:
                raise ValueError(
                    f"Evaluation for {evaluation.reviewer_id} carries no snapshot"
                )
            classification = self.classify(evaluation.snapshot)
            if classification.reviewer_class == ReviewerClass.BAD:
                continue
            ranked.append((evaluation, classification))
        ranked.sort(key=lambda pair: (-pair[0].active, pair[0].reviewer_id))
        return ranked


def _strengths(snapshot: ReviewerMetricsSnapshot) -> list[str]:
    strengths: list[str] = []
    if snapshot.total_reviews >= 50:
        strengths.append("Veteran (50+ reviews)")
    if snapshot.timeliness >= 0.95:
        strengths.append("Very punctual (95%+)")
    if snapshot.accuracy >= 0.70:
        strengths.append("Accurate (70%+)")
    return strengths

"""Consensus calculator - reliability-weighted aggregation of peer scores.

Pure computation. No side effects, no persistence, no audit events.
The service layer decides what to do with the result.

Algorithm:
  1. mean and population stddev of all scores
  2. flag scores with |z| > outlier_z_threshold; exclude them unless
     that would leave fewer than min_reviews scores
  3. weight_i = max(weight_floor, reliability_i)
     final = Σ score_i·weight_i / Σ weight_i over the remaining scores
  4. normalized spread = stddev / max_expected_stddev (all scores)
     high ≤ high_max_spread < medium ≤ medium_max_spread < low
  5. escalate when confidence is low or stddev > escalation_max_stddev
"""

from __future__ import annotations

import math
from typing import Mapping, Sequence

from scholarxp.models.consensus import (
    Confidence,
    ConsensusComputation,
    OutlierFlag,
    ScoredReview,
)
from scholarxp.models.submission import PeerReview
from scholarxp.policy.resolver import ConsensusPolicy


def round_half_up(value: float) -> int:
    """Round to the nearest integer, .5 away from zero."""
    if value >= 0:
        return int(math.floor(value + 0.5))
    return -int(math.floor(-value + 0.5))


def population_stats(scores: Sequence[float]) -> tuple[float, float]:
    """Return (mean, population stddev)."""
    n = len(scores)
    mean = sum(scores) / n
    variance = sum((s - mean) ** 2 for s in scores) / n
    return mean, math.sqrt(variance)


class ConsensusCalculator:
    """Computes a single XP value from a submission's peer reviews.

    Usage:
        calc = ConsensusCalculator(resolver.consensus_policy())
        result = calc.compute(reviews, {"reviewer-1": 0.82, ...})
        if result.should_escalate: ...
    """

    def __init__(self, policy: ConsensusPolicy) -> None:
        self._policy = policy

    @property
    def policy(self) -> ConsensusPolicy:
        return self._policy

    def classify_confidence(self, normalized_spread: float) -> Confidence:
        if normalized_spread <= self._policy.high_max_spread:
            return Confidence.HIGH
        if normalized_spread <= self._policy.medium_max_spread:
            return Confidence.MEDIUM
        return Confidence.LOW

    def weight_for(self, reliability: float) -> float:
        return max(self._policy.weight_floor, reliability)

    def compute(
        self,
        reviews: Sequence[PeerReview],
        reliability: Mapping[str, float],
    ) -> ConsensusComputation:
        """Aggregate reviews weighted by reviewer reliability.

        Reviewers missing from `reliability` are weighted at the floor.

        Raises:
            ValueError: If reviews is empty.
        """
        if not reviews:
            raise ValueError("Cannot compute consensus without reviews")

        policy = self._policy
        scored = [
            ScoredReview(
                review_id=r.review_id,
                reviewer_id=r.reviewer_id,
                score=float(r.score),
                reliability=reliability.get(r.reviewer_id, 0.0),
                weight=self.weight_for(reliability.get(r.reviewer_id, 0.0)),
            )
            for r in reviews
        ]
        scores = [s.score for s in scored]
        mean, stddev = population_stats(scores)

        flagged: list[tuple[ScoredReview, float]] = []
        if stddev > 0.0:
            for s in scored:
                z = (s.score - mean) / stddev
                if abs(z) > policy.outlier_z_threshold:
                    flagged.append((s, z))

        exclude = bool(flagged) and len(scored) - len(flagged) >= policy.min_reviews
        outliers = [
            OutlierFlag(review_id=s.review_id, score=s.score, z_score=z, excluded=exclude)
            for s, z in flagged
        ]
        excluded_ids = {o.review_id for o in outliers if o.excluded}
        included = [s for s in scored if s.review_id not in excluded_ids]

        total_weight = sum(s.weight for s in included)
        weighted_average = sum(s.score * s.weight for s in included) / total_weight

        normalized_spread = stddev / policy.max_expected_stddev
        confidence = self.classify_confidence(normalized_spread)

        reason = None
        if stddev > policy.escalation_max_stddev:
            reason = (
                f"Score stddev {stddev:.1f} exceeds hard limit "
                f"{policy.escalation_max_stddev:g}"
            )
        elif confidence == Confidence.LOW:
            reason = (
                f"Low confidence: normalized spread {normalized_spread:.2f} "
                f"> {policy.medium_max_spread:g}"
            )

        return ConsensusComputation(
            scores=scores,
            mean=mean,
            stddev=stddev,
            weighted_average=weighted_average,
            final_xp=round_half_up(weighted_average),
            normalized_spread=normalized_spread,
            agreement=max(0.0, 1.0 - normalized_spread),
            confidence=confidence,
            outliers=outliers,
            included_review_ids=[s.review_id for s in included],
            should_escalate=reason is not None,
            escalation_reason=reason,
            scored_reviews=scored,
        )

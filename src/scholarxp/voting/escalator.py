"""Divergence-to-vote escalator - packages a disputed submission for voters.

Escalation is one-way: the submission moves UNDER_PEER_REVIEW →
ESCALATED_TO_VOTE and a VoteCase opens over [min score, max score].
A submission has at most one open case; escalating again returns it.

Case analysis is rule-based:
  zero_vs_high      - someone gave 0 while the top score is high
  category_mismatch - reviewers picked different content categories
  tier_mismatch     - reviewers picked different quality tiers
  large_gap         - max - min exceeds the configured gap
  score_variance    - none of the above
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Optional, Sequence

from scholarxp.models.submission import PeerReview, Submission
from scholarxp.models.vote import (
    CONFLICT_DESCRIPTIONS,
    ConflictType,
    ReviewerFeedback,
    VoteCase,
)
from scholarxp.persistence.store import ReviewStore
from scholarxp.policy.resolver import VotingPolicy

logger = logging.getLogger(__name__)

_UNAVAILABLE_MARKERS = ("not available", "unavailable", "deleted")


@dataclass(frozen=True)
class CaseAnalysis:
    """Human-readable description of why reviewers disagree."""
    min_score: int
    max_score: int
    conflict_types: list[ConflictType]
    summary: str
    insights: list[str] = field(default_factory=list)
    feedback: list[ReviewerFeedback] = field(default_factory=list)

    @property
    def spread(self) -> int:
        return self.max_score - self.min_score


def _label(index: int) -> str:
    return chr(ord("A") + index) if index < 26 else f"R{index + 1}"


def analyze_case(
    platform: Optional[str],
    reviews: Sequence[PeerReview],
    policy: VotingPolicy,
) -> CaseAnalysis:
    """Classify the conflict and build the voter-facing summary. Pure."""
    if not reviews:
        raise ValueError("Cannot analyze a case without reviews")

    scores = [r.score for r in reviews]
    low, high = min(scores), max(scores)
    spread = high - low
    feedback = [
        ReviewerFeedback(
            label=_label(i),
            score=r.score,
            comment=r.comment,
            content_category=r.content_category,
            quality_tier=r.quality_tier,
        )
        for i, r in enumerate(reviews)
    ]

    categories = list(dict.fromkeys(f.content_category for f in feedback if f.content_category))
    tiers = list(dict.fromkeys(f.quality_tier for f in feedback if f.quality_tier))

    conflicts: list[ConflictType] = []
    if low == 0 and high >= policy.zero_vs_high_min_score:
        conflicts.append(ConflictType.ZERO_VS_HIGH)
    if len(categories) > 1:
        conflicts.append(ConflictType.CATEGORY_MISMATCH)
    if len(tiers) > 1:
        conflicts.append(ConflictType.TIER_MISMATCH)
    if spread > policy.large_gap_points:
        conflicts.append(ConflictType.LARGE_GAP)
    if not conflicts:
        conflicts.append(ConflictType.SCORE_VARIANCE)

    insights: list[str] = []
    zero = next((f for f in feedback if f.score == 0), None)
    top = next((f for f in feedback if f.score >= high * 0.8 and f.score > 0), None)
    if zero is not None and top is not None:
        insights.append(
            f"{zero.label} rejected (0 XP) while {top.label} rated highly ({top.score} XP)"
        )
        comment = (zero.comment or "").lower()
        if any(marker in comment for marker in _UNAVAILABLE_MARKERS):
            insights.append(f"Reviewer {zero.label} indicates content may be unavailable")
    if len(categories) > 1:
        insights.append(f"Reviewers classified content differently: {' vs '.join(categories)}")
    if len(tiers) > 1:
        insights.append(
            f"Quality tier disagreement: {' vs '.join(f'Tier {t}' for t in tiers)}"
        )

    avg = sum(scores) / len(scores)
    far = [f for f in feedback if abs(f.score - avg) > avg * 0.5]
    if len(far) == 1:
        insights.append(
            f"Reviewer {far[0].label} ({far[0].score} XP) scored significantly "
            f"different from others (avg: {round(avg)} XP)"
        )

    summary = (
        f"This {platform or 'unknown platform'} submission received scores ranging "
        f"from {low} to {high} XP ({spread} XP spread). "
        f"{CONFLICT_DESCRIPTIONS[conflicts[0]]}."
    )

    return CaseAnalysis(
        min_score=low,
        max_score=high,
        conflict_types=conflicts,
        summary=summary,
        insights=insights,
        feedback=feedback,
    )


class DivergenceEscalator:
    """Opens vote cases for submissions whose reviews diverge too far."""

    def __init__(
        self,
        store: ReviewStore,
        policy: VotingPolicy,
        case_id_factory: Optional[Callable[[], str]] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._store = store
        self._policy = policy
        self._new_case_id = case_id_factory or (lambda: f"case-{uuid.uuid4().hex[:12]}")
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def escalate(
        self,
        submission: Submission,
        reviews: Sequence[PeerReview],
    ) -> tuple[Optional[VoteCase], bool]:
        """Open a case for submission, or return the one already open.

        Returns (case, created). (None, False) means the submission was
        no longer under peer review, e.g. a concurrent run finalized it.
        """
        existing = self._store.open_case_for(submission.submission_id)
        if existing is not None:
            return existing, False

        analysis = analyze_case(submission.platform, reviews, self._policy)
        case = VoteCase(
            case_id=self._new_case_id(),
            submission_id=submission.submission_id,
            min_score=analysis.min_score,
            max_score=analysis.max_score,
            review_ids=[r.review_id for r in reviews],
            conflict_types=analysis.conflict_types,
            summary=analysis.summary,
            insights=analysis.insights,
            platform=submission.platform,
            opened_utc=self._clock(),
        )
        opened, created = self._store.open_case(case)
        if created:
            logger.info(
                "Vote case %s opened for %s: %d-%d XP (%s)",
                case.case_id, submission.submission_id, case.min_score,
                case.max_score, ", ".join(c.value for c in case.conflict_types),
            )
        return opened, created

    def case_payload(self, case: VoteCase) -> dict[str, Any]:
        """Voter-facing view of a case, with platform benchmark context."""
        reviews = [self._store.get_review(rid) for rid in case.review_ids]
        analysis = analyze_case(case.platform, reviews, self._policy)
        benchmark = self._store.platform_average_xp(case.platform)
        return {
            "caseId": case.case_id,
            "submissionId": case.submission_id,
            "state": case.state.value,
            "scores": [case.min_score, case.max_score],
            "conflictTypes": [c.value for c in case.conflict_types],
            "summary": case.summary,
            "insights": list(case.insights),
            "reviews": [
                {
                    "label": f.label,
                    "xpScore": f.score,
                    "comments": f.comment,
                    "category": f.content_category,
                    "tier": f.quality_tier,
                }
                for f in analysis.feedback
            ],
            "platform": case.platform,
            "platformAvgXp": None if benchmark is None else round(benchmark, 1),
        }

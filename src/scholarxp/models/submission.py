"""Submission and peer-review data models.

A submission accrues peer reviews until the minimum review count is
reached, then either finalizes through consensus or escalates to a
community vote. Peer reviews are never deleted; their validation status
is only changed by the vote resolver.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------

class SubmissionStatus(str, enum.Enum):
    """Submission lifecycle.

    PENDING → AI_REVIEWED → UNDER_PEER_REVIEW → FINALIZED
                                              → ESCALATED_TO_VOTE → FINALIZED

    FINALIZED is terminal. Admin overrides recompute the peer average
    but never reopen the state machine.
    """
    PENDING = "PENDING"
    AI_REVIEWED = "AI_REVIEWED"
    UNDER_PEER_REVIEW = "UNDER_PEER_REVIEW"
    ESCALATED_TO_VOTE = "ESCALATED_TO_VOTE"
    FINALIZED = "FINALIZED"


class JudgmentStatus(str, enum.Enum):
    """Vote-derived validity of a single peer review."""
    PENDING = "PENDING"
    VALIDATED = "VALIDATED"
    INVALIDATED = "INVALIDATED"


class TransactionType(str, enum.Enum):
    """XP ledger entry kinds read and written by the consensus core."""
    SUBMISSION_REWARD = "SUBMISSION_REWARD"
    REVIEW_REWARD = "REVIEW_REWARD"
    PENALTY = "PENALTY"


# Legal forward transitions. FINALIZED has no successors.
SUBMISSION_TRANSITIONS: dict[SubmissionStatus, frozenset[SubmissionStatus]] = {
    SubmissionStatus.PENDING: frozenset({SubmissionStatus.AI_REVIEWED}),
    SubmissionStatus.AI_REVIEWED: frozenset({SubmissionStatus.UNDER_PEER_REVIEW}),
    SubmissionStatus.UNDER_PEER_REVIEW: frozenset({
        SubmissionStatus.FINALIZED,
        SubmissionStatus.ESCALATED_TO_VOTE,
    }),
    SubmissionStatus.ESCALATED_TO_VOTE: frozenset({SubmissionStatus.FINALIZED}),
    SubmissionStatus.FINALIZED: frozenset(),
}


def can_transition(current: SubmissionStatus, target: SubmissionStatus) -> bool:
    """Return True if the state machine allows current → target."""
    return target in SUBMISSION_TRANSITIONS[current]


def week_key(moment: datetime) -> int:
    """ISO week of a timestamp as a sortable integer (e.g. 202642).

    Year is included so week 1 of a new year sorts after week 52.
    """
    iso = moment.isocalendar()
    return iso[0] * 100 + iso[1]


def next_week_key(key: int) -> int:
    """Week key immediately following key."""
    year, week = divmod(key, 100)
    # ISO years have 52 or 53 weeks; Dec 28 is always in the last one.
    last_week = datetime(year, 12, 28).isocalendar()[1]
    if week >= last_week:
        return (year + 1) * 100 + 1
    return year * 100 + week + 1


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PeerReview:
    """One reviewer's judgment of one submission.

    score is bounded by the task/category/tier rules of the intake
    collaborator (typically 0-250); it is not re-validated here.
    content_category and quality_tier are optional reviewer
    classifications used to describe conflicts on escalation.
    """
    review_id: str
    submission_id: str
    reviewer_id: str
    score: int
    comment: str = ""
    quality_rating: Optional[int] = None  # 1-5 self-rating
    is_late: bool = False
    judgment_status: JudgmentStatus = JudgmentStatus.PENDING
    content_category: Optional[str] = None
    quality_tier: Optional[str] = None
    created_utc: Optional[datetime] = None


@dataclass
class Submission:
    """One piece of evaluated content.

    final_xp stays None until consensus or a vote completes.
    held_until_week is set when the author's weekly finalize cap is
    reached; the submission keeps its status and is retried later.
    """
    submission_id: str
    author_id: str
    ai_score: Optional[float] = None
    platform: Optional[str] = None
    status: SubmissionStatus = SubmissionStatus.PENDING
    week_number: Optional[int] = None
    final_xp: Optional[int] = None
    consensus_score: Optional[float] = None
    confidence: Optional[str] = None
    finalized_week: Optional[int] = None
    held_until_week: Optional[int] = None
    ai_summary: Optional[str] = None
    created_utc: Optional[datetime] = None
    finalized_utc: Optional[datetime] = None
    review_ids: list[str] = field(default_factory=list)

    @property
    def is_final(self) -> bool:
        return self.status == SubmissionStatus.FINALIZED

    @property
    def is_held(self) -> bool:
        return self.held_until_week is not None

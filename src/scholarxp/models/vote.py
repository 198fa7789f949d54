"""Vote models - community resolution of divergent peer reviews.

A VoteCase opens when a submission's peer scores disagree too much to
finalize automatically. Voters pick one of the two disputed values;
once quorum is reached and one side holds a strict majority the case
closes permanently.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional


class VoteCaseState(str, enum.Enum):
    OPEN = "open"
    CLOSED = "closed"


class ConflictType(str, enum.Enum):
    """Human-readable classification of why reviewers disagree."""
    ZERO_VS_HIGH = "zero_vs_high"
    CATEGORY_MISMATCH = "category_mismatch"
    TIER_MISMATCH = "tier_mismatch"
    LARGE_GAP = "large_gap"
    SCORE_VARIANCE = "score_variance"


CONFLICT_DESCRIPTIONS: dict[ConflictType, str] = {
    ConflictType.ZERO_VS_HIGH: (
        "Possible spam/quality dispute - one reviewer gave 0 XP while others rated highly"
    ),
    ConflictType.CATEGORY_MISMATCH: "Reviewers classified the content differently",
    ConflictType.TIER_MISMATCH: "Reviewers disagree on the quality tier",
    ConflictType.LARGE_GAP: "Large score gap between reviewers",
    ConflictType.SCORE_VARIANCE: "Significant score variance between reviewers",
}


@dataclass(frozen=True)
class ReviewerFeedback:
    """Anonymised reviewer input shown to voters."""
    label: str
    score: int
    comment: str
    content_category: Optional[str] = None
    quality_tier: Optional[str] = None


@dataclass
class VoteCase:
    """An escalated submission awaiting community judgment.

    min_score and max_score are the two values voters choose between.
    """
    case_id: str
    submission_id: str
    min_score: int
    max_score: int
    review_ids: list[str]
    conflict_types: list[ConflictType] = field(default_factory=list)
    summary: str = ""
    insights: list[str] = field(default_factory=list)
    platform: Optional[str] = None
    state: VoteCaseState = VoteCaseState.OPEN
    winning_xp: Optional[int] = None
    opened_utc: Optional[datetime] = None
    closed_utc: Optional[datetime] = None

    @property
    def is_open(self) -> bool:
        return self.state == VoteCaseState.OPEN

    @property
    def disputed_values(self) -> tuple[int, int]:
        return self.min_score, self.max_score


@dataclass(frozen=True)
class JudgmentVote:
    """One wallet's vote on a case.

    Signature validity is checked by the blockchain collaborator before
    the vote reaches the core.
    """
    case_id: str
    wallet_address: str
    vote_xp: int
    signature: str
    cast_utc: Optional[datetime] = None


@dataclass(frozen=True)
class VoteTally:
    """Consistent count of all votes for a case at one read."""
    case_id: str
    total_votes: int
    distribution: dict[int, int]
    quorum: int

    def share(self, value: int) -> float:
        if self.total_votes == 0:
            return 0.0
        return self.distribution.get(value, 0) / self.total_votes


@dataclass(frozen=True)
class VotePending:
    """Tally outcome while no decision can be taken yet."""
    case_id: str
    tally: VoteTally
    reason: str


@dataclass(frozen=True)
class VoteResolution:
    """Decisive tally outcome: the winning value and affected reviews."""
    case_id: str
    submission_id: str
    winning_xp: int
    losing_xp: int
    winning_share: float
    tally: VoteTally
    validated_review_ids: list[str]
    invalidated_review_ids: list[str]
    decided_now: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "caseId": self.case_id,
            "submissionId": self.submission_id,
            "winningXp": self.winning_xp,
            "losingXp": self.losing_xp,
            "winningShare": round(self.winning_share, 4),
            "totalVotes": self.tally.total_votes,
            "validated": list(self.validated_review_ids),
            "invalidated": list(self.invalidated_review_ids),
        }

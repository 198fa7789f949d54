"""Consensus result models - what a consensus run computed and decided.

ConsensusComputation is the pure arithmetic result (weights, outliers,
spread, confidence). ConsensusOutcome is what the service decided to do
with it: finalize, escalate, hold, defer or step aside for a concurrent
winner.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional


class Confidence(str, enum.Enum):
    """Agreement tier derived from normalized score spread."""
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


_CONFIDENCE_RANK = {Confidence.LOW: 0, Confidence.MEDIUM: 1, Confidence.HIGH: 2}


def confidence_rank(confidence: Confidence) -> int:
    """Ordinal rank so tiers can be compared (LOW < MEDIUM < HIGH)."""
    return _CONFIDENCE_RANK[confidence]


class OutcomeKind(str, enum.Enum):
    """Decision taken by a consensus run."""
    FINALIZED = "finalized"
    ESCALATED = "escalated"
    HELD = "held"
    DEFERRED = "deferred"
    ALREADY_DECIDED = "already_decided"


@dataclass(frozen=True)
class ScoredReview:
    """A peer score paired with the reliability weight applied to it."""
    review_id: str
    reviewer_id: str
    score: float
    reliability: float
    weight: float


@dataclass(frozen=True)
class OutlierFlag:
    """A score whose |z| exceeded the outlier threshold."""
    review_id: str
    score: float
    z_score: float
    excluded: bool


@dataclass(frozen=True)
class ConsensusComputation:
    """Pure result of aggregating one submission's peer scores."""
    scores: list[float]
    mean: float
    stddev: float
    weighted_average: float
    final_xp: int
    normalized_spread: float
    agreement: float
    confidence: Confidence
    outliers: list[OutlierFlag]
    included_review_ids: list[str]
    should_escalate: bool
    escalation_reason: Optional[str] = None
    scored_reviews: list[ScoredReview] = field(default_factory=list)

    @property
    def excluded_review_ids(self) -> list[str]:
        return [o.review_id for o in self.outliers if o.excluded]


@dataclass(frozen=True)
class ConsensusOutcome:
    """What the service did for one consensus request.

    final_xp and confidence carry the stored decision when no
    computation ran in this request (already decided submissions).
    """
    submission_id: str
    kind: OutcomeKind
    computation: Optional[ConsensusComputation] = None
    case_id: Optional[str] = None
    held_until_week: Optional[int] = None
    message: str = ""
    final_xp: Optional[int] = None
    confidence: Optional[str] = None
    warning: Optional[str] = None

    def to_response(self) -> dict[str, Any]:
        """JSON shape returned to request/response callers."""
        if self.kind == OutcomeKind.ESCALATED:
            return {"escalated": True, "caseId": self.case_id}
        data: dict[str, Any] = {"status": self.kind.value}
        if self.computation is not None:
            data["finalXp"] = self.computation.final_xp
            data["confidence"] = self.computation.confidence.value
        elif self.final_xp is not None:
            data["finalXp"] = self.final_xp
            data["confidence"] = self.confidence
        if self.held_until_week is not None:
            data["heldUntilWeek"] = self.held_until_week
        if self.message:
            data["message"] = self.message
        if self.warning:
            data["warning"] = self.warning
        return data


@dataclass(frozen=True)
class ShadowConsensusRecord:
    """One write-once row comparing the active and a shadow formula."""
    submission_id: str
    active_formula_id: str
    active_score: float
    shadow_formula_id: str
    shadow_score: float
    delta: float
    logged_utc: Optional[datetime] = None
    details: dict[str, Any] = field(default_factory=dict)

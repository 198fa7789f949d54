"""Vote consensus resolver - quorum and strict-majority rule for vote cases.

Tallying is read-then-decide. Below quorum, or without a side holding
strictly more than the majority threshold, tally returns VotePending and
writes nothing, so repeated tallies are no-ops. A decisive tally closes
the case, marks each disputed review VALIDATED or INVALIDATED and
finalizes the submission in one transaction.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, Optional, Union

from scholarxp.errors import VoteRejected
from scholarxp.models.submission import JudgmentStatus, PeerReview
from scholarxp.models.vote import (
    JudgmentVote,
    VoteCase,
    VotePending,
    VoteResolution,
    VoteTally,
)
from scholarxp.persistence.store import ReviewStore
from scholarxp.policy.resolver import VotingPolicy

logger = logging.getLogger(__name__)

TallyResult = Union[VoteResolution, VotePending]


def split_reviews(
    reviews: list[PeerReview], winning_xp: int, losing_xp: int,
) -> tuple[list[str], list[str]]:
    """Partition review ids into (aligned with winner, aligned with loser).

    A review is aligned with the winner when its score is at least as
    close to the winning value as to the losing one.
    """
    validated: list[str] = []
    invalidated: list[str] = []
    for review in reviews:
        if abs(review.score - winning_xp) <= abs(review.score - losing_xp):
            validated.append(review.review_id)
        else:
            invalidated.append(review.review_id)
    return validated, invalidated


class VoteResolver:
    """Accepts votes and decides vote cases."""

    def __init__(
        self,
        store: ReviewStore,
        policy: VotingPolicy,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._store = store
        self._policy = policy
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def cast_vote(
        self,
        case_id: str,
        wallet_address: str,
        vote_xp: int,
        signature: str,
    ) -> JudgmentVote:
        """Record one wallet's vote for one of the case's disputed values.

        The signature has already been verified upstream; it is stored
        as a reference only.

        Raises:
            NotFoundError: Unknown case.
            VoteRejected: Closed case, blank wallet, repeat wallet or a
                value outside the disputed pair.
        """
        if not wallet_address or not wallet_address.strip():
            raise VoteRejected("Wallet address is required")
        case = self._store.get_case(case_id)
        if not case.is_open:
            raise VoteRejected(f"Vote case {case_id} is closed")
        if vote_xp not in case.disputed_values:
            raise VoteRejected(
                f"Vote {vote_xp} XP is not one of the disputed values "
                f"{case.min_score} / {case.max_score}"
            )
        vote = JudgmentVote(
            case_id=case_id,
            wallet_address=wallet_address.strip(),
            vote_xp=vote_xp,
            signature=signature,
            cast_utc=self._clock(),
        )
        self._store.add_vote(vote)
        return vote

    def current_tally(self, case_id: str) -> VoteTally:
        distribution = self._store.vote_distribution(case_id)
        return VoteTally(
            case_id=case_id,
            total_votes=sum(distribution.values()),
            distribution=distribution,
            quorum=self._policy.min_votes,
        )

    def tally(self, case_id: str) -> TallyResult:
        """Decide the case if quorum and a strict majority are present."""
        case = self._store.get_case(case_id)
        tally = self.current_tally(case_id)
        if not case.is_open:
            return self._closed_resolution(case, tally)

        if tally.total_votes < self._policy.min_votes:
            return VotePending(
                case_id=case_id,
                tally=tally,
                reason=f"Quorum not reached ({tally.total_votes}/{self._policy.min_votes} votes)",
            )

        winner = None
        for value in case.disputed_values:
            if tally.share(value) > self._policy.majority_threshold:
                winner = value
                break
        if winner is None:
            return VotePending(
                case_id=case_id,
                tally=tally,
                reason=(
                    f"No value holds more than {self._policy.majority_threshold:.0%} "
                    f"of {tally.total_votes} votes"
                ),
            )

        loser = case.max_score if winner == case.min_score else case.min_score
        reviews = [self._store.get_review(rid) for rid in case.review_ids]
        validated, invalidated = split_reviews(reviews, winner, loser)

        closed = self._store.close_case(
            case_id, winner, validated, invalidated, self._clock(),
        )
        if not closed:
            # A concurrent tally closed it first; report what it decided.
            return self._closed_resolution(self._store.get_case(case_id), tally)

        logger.info(
            "Vote case %s resolved: %d XP with %.1f%% of %d votes",
            case_id, winner, tally.share(winner) * 100, tally.total_votes,
        )
        return VoteResolution(
            case_id=case_id,
            submission_id=case.submission_id,
            winning_xp=winner,
            losing_xp=loser,
            winning_share=tally.share(winner),
            tally=tally,
            validated_review_ids=validated,
            invalidated_review_ids=invalidated,
        )

    def _closed_resolution(self, case: VoteCase, tally: VoteTally) -> VoteResolution:
        winner = case.winning_xp if case.winning_xp is not None else case.max_score
        loser = case.max_score if winner == case.min_score else case.min_score
        reviews = [self._store.get_review(rid) for rid in case.review_ids]
        return VoteResolution(
            case_id=case.case_id,
            submission_id=case.submission_id,
            winning_xp=winner,
            losing_xp=loser,
            winning_share=tally.share(winner),
            tally=tally,
            validated_review_ids=[
                r.review_id for r in reviews if r.judgment_status == JudgmentStatus.VALIDATED
            ],
            invalidated_review_ids=[
                r.review_id for r in reviews if r.judgment_status == JudgmentStatus.INVALIDATED
            ],
            decided_now=False,
        )

"""Consensus service - unified facade for the peer-review consensus pipeline.

This is the primary interface for programmatic access to the core.
It orchestrates all subsystems:
- Review intake hook (each new review re-checks consensus readiness)
- Reliability (metrics aggregation, active + shadow formula evaluation)
- Consensus (weighted aggregation, confidence, weekly cap, finalize)
- Escalation and community voting (vote cases, tallies, feedback loop)
- Shadow analytics and administrative overrides

All operations return ServiceResult. Storage failures are logged in
full and surfaced as a generic retryable message; insufficient reviews,
lost finalize races and pending votes are ordinary results, not errors.

Side effects that must not hold up or undo a finalize (XP transactions,
accuracy bonuses, AI summaries, notifications, shadow logging, metrics
cache invalidation) run on a background executor after the decision.
"""

from __future__ import annotations

import itertools
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Callable, Optional, Sequence

from scholarxp.consensus.calculator import ConsensusCalculator
from scholarxp.consensus.shadow import ShadowLogger, build_shadow_records
from scholarxp.errors import ConflictError, NotFoundError, StorageError, VoteRejected
from scholarxp.models.consensus import (
    ConsensusComputation,
    ConsensusOutcome,
    OutcomeKind,
)
from scholarxp.models.reliability import ReliabilityEvaluation
from scholarxp.models.submission import (
    PeerReview,
    Submission,
    SubmissionStatus,
    TransactionType,
    can_transition,
    week_key,
)
from scholarxp.models.vote import VotePending, VoteResolution
from scholarxp.persistence.event_log import EventKind, EventLog, EventRecord
from scholarxp.persistence.store import FinalizeResult, ReviewStore
from scholarxp.policy.resolver import PolicyResolver
from scholarxp.reliability.classifier import ReviewerClassifier
from scholarxp.reliability.formulas import FormulaEvaluator
from scholarxp.reliability.metrics import MetricsAggregator
from scholarxp.voting.escalator import DivergenceEscalator
from scholarxp.voting.resolver import VoteResolver

logger = logging.getLogger(__name__)

RETRY_MESSAGE = "Temporarily unavailable, try again"

# (submission, reviews, final_xp) -> summary text
SummaryGenerator = Callable[[Submission, Sequence[PeerReview], int], Optional[str]]
# (submission_id, author_id, final_xp) -> None, fire-and-forget
Notifier = Callable[[str, str, int], None]


@dataclass(frozen=True)
class ServiceResult:
    """Result of a service operation."""
    success: bool
    errors: list[str] = field(default_factory=list)
    data: dict[str, Any] = field(default_factory=dict)


def _already_decided(submission: Submission, message: str) -> ConsensusOutcome:
    """Report the stored decision of a submission that left peer review."""
    return ConsensusOutcome(
        submission.submission_id,
        OutcomeKind.ALREADY_DECIDED,
        message=message,
        final_xp=submission.final_xp,
        confidence=submission.confidence,
    )


class ConsensusService:
    """Unified consensus pipeline facade.

    Usage:
        resolver = PolicyResolver.from_config_dir(config_dir)
        service = ConsensusService(resolver, store=ReviewStore("xp.db"))

        service.register_submission(Submission("sub-1", "author-1", platform="Twitter"))
        service.advance_submission("sub-1", SubmissionStatus.AI_REVIEWED)
        service.advance_submission("sub-1", SubmissionStatus.UNDER_PEER_REVIEW)

        # The third review triggers consensus automatically
        result = service.submit_review(PeerReview("r-1", "sub-1", "rev-1", 120))

        # Escalated submissions are decided by votes
        service.cast_vote(case_id, "0xabc...", 120, signature)
        result = service.tally_votes(case_id)

    The active and shadow formula ids default to the configured ones
    and may be injected to run several formulas side by side.
    """

    def __init__(
        self,
        resolver: PolicyResolver,
        store: Optional[ReviewStore] = None,
        event_log: Optional[EventLog] = None,
        active_formula_id: Optional[str] = None,
        shadow_formula_ids: Optional[Sequence[str]] = None,
        summary_generator: Optional[SummaryGenerator] = None,
        notifier: Optional[Notifier] = None,
        clock: Optional[Callable[[], datetime]] = None,
        case_id_factory: Optional[Callable[[], str]] = None,
        background_workers: int = 4,
    ) -> None:
        self._resolver = resolver
        self._store = store or ReviewStore()
        self._event_log = event_log or EventLog()
        self._clock = clock or (lambda: datetime.now(timezone.utc))

        self._active_formula = resolver.formula(active_formula_id or resolver.active_formula_id())
        shadow_ids = (
            list(shadow_formula_ids) if shadow_formula_ids is not None
            else resolver.shadow_formula_ids()
        )
        self._shadow_formulas = [
            resolver.formula(fid) for fid in shadow_ids
            if fid != self._active_formula.formula_id
        ]

        self._metrics = MetricsAggregator(self._store, resolver, clock=self._clock)
        self._evaluator = FormulaEvaluator(resolver.use_vote_validation())
        self._classifier = ReviewerClassifier(resolver)
        self._calculator = ConsensusCalculator(resolver.consensus_policy())
        self._shadow_logger = ShadowLogger(self._store)
        self._escalator = DivergenceEscalator(
            self._store, resolver.voting_policy(),
            case_id_factory=case_id_factory, clock=self._clock,
        )
        self._vote_resolver = VoteResolver(self._store, resolver.voting_policy(), clock=self._clock)
        self._summary_generator = summary_generator
        self._notifier = notifier

        self._background = ThreadPoolExecutor(
            max_workers=background_workers, thread_name_prefix="consensus-bg",
        )
        self._pending: list[Future] = []
        self._pending_lock = threading.Lock()
        self._event_counter = itertools.count(self._event_log.count + 1)
        self._event_counter_lock = threading.Lock()

        # Vote outcomes feed back into reviewer metrics asynchronously.
        self._event_log.subscribe(EventKind.REVIEW_VALIDATED, self._on_review_judged)
        self._event_log.subscribe(EventKind.REVIEW_INVALIDATED, self._on_review_judged)

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def store(self) -> ReviewStore:
        return self._store

    @property
    def event_log(self) -> EventLog:
        return self._event_log

    @property
    def active_formula_id(self) -> str:
        return self._active_formula.formula_id

    @property
    def shadow_formula_ids(self) -> list[str]:
        return [f.formula_id for f in self._shadow_formulas]

    # ------------------------------------------------------------------
    # Intake hooks
    # ------------------------------------------------------------------

    def register_submission(self, submission: Submission) -> ServiceResult:
        if submission.created_utc is None:
            submission = replace(submission, created_utc=self._clock())

        def _do() -> ServiceResult:
            self._store.add_submission(submission)
            return ServiceResult(
                success=True,
                data={"submission_id": submission.submission_id, "status": submission.status.value},
            )
        return self._guarded("register_submission", _do)

    def advance_submission(
        self, submission_id: str, target: SubmissionStatus,
    ) -> ServiceResult:
        """Move a submission one legal step along its lifecycle.

        Only intake transitions are allowed here; FINALIZED and
        ESCALATED_TO_VOTE are reached through consensus and voting.
        """
        def _do() -> ServiceResult:
            if target in (SubmissionStatus.FINALIZED, SubmissionStatus.ESCALATED_TO_VOTE):
                return ServiceResult(
                    success=False,
                    errors=[f"{target.value} is only reachable through consensus or voting"],
                )
            current = self._store.get_submission(submission_id).status
            if not can_transition(current, target):
                return ServiceResult(
                    success=False,
                    errors=[f"Illegal transition {current.value} -> {target.value}"],
                )
            if not self._store.transition(submission_id, current, target):
                return ServiceResult(
                    success=False,
                    errors=[f"Submission {submission_id} changed state concurrently"],
                )
            return ServiceResult(success=True, data={"status": target.value})
        return self._guarded("advance_submission", _do)

    def submit_review(self, review: PeerReview) -> ServiceResult:
        """Store a peer review and check whether consensus is now due."""
        if review.created_utc is None:
            review = replace(review, created_utc=self._clock())

        def _do() -> ServiceResult:
            submission = self._store.get_submission(review.submission_id)
            if submission.status != SubmissionStatus.UNDER_PEER_REVIEW:
                return ServiceResult(
                    success=False,
                    errors=[
                        f"Submission {review.submission_id} is not accepting reviews "
                        f"(status {submission.status.value})"
                    ],
                )
            self._store.add_review(review)
            warning = self._record_event(
                EventKind.REVIEW_SUBMITTED,
                review.reviewer_id,
                {
                    "submission_id": review.submission_id,
                    "review_id": review.review_id,
                    "score": review.score,
                },
            )
            outcome = self._run_consensus(review.submission_id)
            data: dict[str, Any] = {
                "review_id": review.review_id,
                "consensus": outcome.to_response(),
            }
            if warning:
                data["warning"] = warning
            return ServiceResult(success=True, data=data)
        return self._guarded("submit_review", _do)

    def record_missed_assignment(self, reviewer_id: str, submission_id: str) -> ServiceResult:
        def _do() -> ServiceResult:
            self._store.record_missed_assignment(reviewer_id, submission_id, self._clock())
            self._metrics.invalidate(reviewer_id)
            return ServiceResult(success=True)
        return self._guarded("record_missed_assignment", _do)

    def record_penalty(self, reviewer_id: str, amount: int, reference: str) -> ServiceResult:
        """Apply an administrative XP penalty (counted by penalty_score)."""
        def _do() -> ServiceResult:
            created = self._store.insert_transaction(
                reference=f"PENALTY:{reference}",
                user_id=reviewer_id,
                tx_type=TransactionType.PENALTY,
                amount=-abs(amount),
                created=self._clock(),
            )
            self._metrics.invalidate(reviewer_id)
            return ServiceResult(success=True, data={"created": created})
        return self._guarded("record_penalty", _do)

    # ------------------------------------------------------------------
    # Consensus
    # ------------------------------------------------------------------

    def calculate_consensus(self, submission_id: str) -> ServiceResult:
        """Finalize, escalate, hold or defer a submission.

        Response data is {finalXp, confidence, status} or
        {escalated: True, caseId}.
        """
        def _do() -> ServiceResult:
            outcome = self._run_consensus(submission_id)
            return ServiceResult(success=True, data=outcome.to_response())
        return self._guarded("calculate_consensus", _do)

    def release_held(self, now: Optional[datetime] = None) -> ServiceResult:
        """Re-run consensus for submissions whose weekly-cap hold has ended."""
        def _do() -> ServiceResult:
            moment = now or self._clock()
            ids = self._store.held_submissions(week_key(moment))
            outcomes = {sid: self._run_consensus(sid, moment).to_response() for sid in ids}
            return ServiceResult(success=True, data={"released": ids, "outcomes": outcomes})
        return self._guarded("release_held", _do)

    def _run_consensus(
        self, submission_id: str, now: Optional[datetime] = None,
    ) -> ConsensusOutcome:
        now = now or self._clock()
        submission = self._store.get_submission(submission_id)

        if submission.status == SubmissionStatus.FINALIZED:
            return _already_decided(submission, "Submission already finalized")
        if submission.status == SubmissionStatus.ESCALATED_TO_VOTE:
            case = self._store.open_case_for(submission_id)
            return ConsensusOutcome(
                submission_id, OutcomeKind.ESCALATED,
                case_id=case.case_id if case else None,
            )
        if submission.status != SubmissionStatus.UNDER_PEER_REVIEW:
            return ConsensusOutcome(
                submission_id, OutcomeKind.DEFERRED,
                message=f"Submission is {submission.status.value}",
            )
        if submission.is_held and submission.held_until_week > week_key(now):
            return ConsensusOutcome(
                submission_id, OutcomeKind.HELD,
                held_until_week=submission.held_until_week,
                message="Weekly finalize cap reached",
            )

        reviews = self._store.reviews_for(submission_id)
        min_reviews = self._resolver.min_reviews()
        if len(reviews) < min_reviews:
            return ConsensusOutcome(
                submission_id, OutcomeKind.DEFERRED,
                message=f"{len(reviews)} of {min_reviews} reviews",
            )

        evaluations = self._evaluate_reviewers({r.reviewer_id for r in reviews})
        active = {rid: ev.active for rid, ev in evaluations.items()}
        computation = self._calculator.compute(reviews, active)

        if computation.should_escalate:
            outcome = self._escalate(submission, reviews, computation)
        else:
            outcome = self._finalize(submission, reviews, computation, now)

        if outcome.kind != OutcomeKind.ALREADY_DECIDED:
            self._submit_background(
                self._log_shadow, submission_id, reviews, computation, evaluations, now,
            )
        return outcome

    def _evaluate_reviewers(self, reviewer_ids: set[str]) -> dict[str, ReliabilityEvaluation]:
        return {
            rid: self._evaluator.evaluate_all(
                self._metrics.compute_metrics(rid),
                self._active_formula,
                self._shadow_formulas,
            )
            for rid in sorted(reviewer_ids)
        }

    def _finalize(
        self,
        submission: Submission,
        reviews: list[PeerReview],
        computation: ConsensusComputation,
        now: datetime,
    ) -> ConsensusOutcome:
        sid = submission.submission_id
        result, held_until = self._store.finalize_if(
            sid,
            SubmissionStatus.UNDER_PEER_REVIEW,
            final_xp=computation.final_xp,
            consensus_score=computation.weighted_average,
            confidence=computation.confidence.value,
            now=now,
            weekly_cap=self._resolver.weekly_finalize_cap(),
        )

        if result == FinalizeResult.LOST_RACE:
            logger.warning("Finalize of %s lost a concurrent race; no side effects", sid)
            return _already_decided(
                self._store.get_submission(sid), "Decided by a concurrent run",
            )

        if result == FinalizeResult.HELD:
            logger.info(
                "Submission %s held until week %s: author %s at weekly cap",
                sid, held_until, submission.author_id,
            )
            warning = self._record_event(
                EventKind.SUBMISSION_HELD,
                submission.author_id,
                {"submission_id": sid, "held_until_week": held_until},
            )
            return ConsensusOutcome(
                sid, OutcomeKind.HELD, computation=computation,
                held_until_week=held_until, message="Weekly finalize cap reached",
                warning=warning,
            )

        logger.info(
            "Submission %s finalized at %d XP (%s confidence, %d outliers excluded)",
            sid, computation.final_xp, computation.confidence.value,
            len(computation.excluded_review_ids),
        )
        warning = self._record_event(
            EventKind.SUBMISSION_FINALIZED,
            submission.author_id,
            {
                "submission_id": sid,
                "final_xp": computation.final_xp,
                "confidence": computation.confidence.value,
                "formula_id": self._active_formula.formula_id,
                "excluded_review_ids": computation.excluded_review_ids,
            },
        )
        self._submit_background(
            self._after_finalize, submission, reviews, computation.final_xp,
        )
        return ConsensusOutcome(
            sid, OutcomeKind.FINALIZED, computation=computation, warning=warning,
        )

    def _escalate(
        self,
        submission: Submission,
        reviews: list[PeerReview],
        computation: ConsensusComputation,
    ) -> ConsensusOutcome:
        sid = submission.submission_id
        case, created = self._escalator.escalate(submission, reviews)
        if case is None:
            logger.warning("Escalation of %s lost a concurrent race", sid)
            return _already_decided(
                self._store.get_submission(sid), "Decided by a concurrent run",
            )
        if created:
            logger.info("Submission %s escalated to vote: %s", sid, computation.escalation_reason)
            self._record_event(
                EventKind.SUBMISSION_ESCALATED,
                submission.author_id,
                {"submission_id": sid, "case_id": case.case_id,
                 "reason": computation.escalation_reason},
            )
            self._record_event(
                EventKind.VOTE_CASE_OPENED,
                "system",
                {"submission_id": sid, "case_id": case.case_id,
                 "min_score": case.min_score, "max_score": case.max_score},
            )
        return ConsensusOutcome(
            sid, OutcomeKind.ESCALATED, computation=computation, case_id=case.case_id,
        )

    # ------------------------------------------------------------------
    # Voting
    # ------------------------------------------------------------------

    def case_details(self, case_id: str) -> ServiceResult:
        def _do() -> ServiceResult:
            case = self._store.get_case(case_id)
            data = self._escalator.case_payload(case)
            tally = self._vote_resolver.current_tally(case_id)
            data["totalVotes"] = tally.total_votes
            data["distribution"] = {str(k): v for k, v in sorted(tally.distribution.items())}
            return ServiceResult(success=True, data=data)
        return self._guarded("case_details", _do)

    def cast_vote(
        self,
        case_id: str,
        wallet_address: str,
        vote_xp: int,
        signature: str,
    ) -> ServiceResult:
        def _do() -> ServiceResult:
            try:
                vote = self._vote_resolver.cast_vote(case_id, wallet_address, vote_xp, signature)
            except VoteRejected as e:
                return ServiceResult(success=False, errors=[str(e)], data={"rejected": True})
            self._record_event(
                EventKind.VOTE_CAST,
                vote.wallet_address,
                {"case_id": case_id, "vote_xp": vote.vote_xp},
            )
            return ServiceResult(
                success=True,
                data={"caseId": case_id, "wallet": vote.wallet_address, "voteXp": vote.vote_xp},
            )
        return self._guarded("cast_vote", _do)

    def tally_votes(self, case_id: str) -> ServiceResult:
        """Tally a case; decisive tallies finalize the submission."""
        def _do() -> ServiceResult:
            outcome = self._vote_resolver.tally(case_id)
            if isinstance(outcome, VotePending):
                return ServiceResult(
                    success=True,
                    data={
                        "status": "pending",
                        "caseId": case_id,
                        "reason": outcome.reason,
                        "totalVotes": outcome.tally.total_votes,
                        "quorum": outcome.tally.quorum,
                    },
                )
            if outcome.decided_now:
                self._after_resolution(outcome)
            return ServiceResult(success=True, data={"status": "resolved", **outcome.to_dict()})
        return self._guarded("tally_votes", _do)

    def _after_resolution(self, resolution: VoteResolution) -> None:
        submission = self._store.get_submission(resolution.submission_id)
        self._record_event(
            EventKind.VOTE_CASE_RESOLVED,
            "system",
            resolution.to_dict(),
        )
        self._record_event(
            EventKind.SUBMISSION_FINALIZED,
            submission.author_id,
            {
                "submission_id": submission.submission_id,
                "final_xp": resolution.winning_xp,
                "confidence": "vote",
                "case_id": resolution.case_id,
            },
        )
        reviews = self._store.reviews_for(resolution.submission_id)
        self._submit_background(self._emit_judgments, resolution, reviews)
        self._submit_background(
            self._after_finalize, submission, reviews, resolution.winning_xp,
        )

    def _emit_judgments(self, resolution: VoteResolution, reviews: list[PeerReview]) -> None:
        by_id = {r.review_id: r for r in reviews}
        for kind, review_ids in (
            (EventKind.REVIEW_VALIDATED, resolution.validated_review_ids),
            (EventKind.REVIEW_INVALIDATED, resolution.invalidated_review_ids),
        ):
            for review_id in review_ids:
                review = by_id.get(review_id)
                if review is None:
                    continue
                self._record_event(
                    kind,
                    "system",
                    {
                        "case_id": resolution.case_id,
                        "review_id": review_id,
                        "reviewer_id": review.reviewer_id,
                    },
                )

    def _on_review_judged(self, event: EventRecord) -> None:
        self._submit_background(self._metrics.on_review_judged, event)

    # ------------------------------------------------------------------
    # Reliability
    # ------------------------------------------------------------------

    def reliability_score(self, reviewer_id: str) -> ServiceResult:
        """Active and shadow reliability plus pool classification."""
        def _do() -> ServiceResult:
            snapshot = self._metrics.compute_metrics(reviewer_id)
            evaluation = self._evaluator.evaluate_all(
                snapshot, self._active_formula, self._shadow_formulas,
            )
            classification = self._classifier.classify(snapshot)
            return ServiceResult(
                success=True,
                data={
                    "reviewer_id": reviewer_id,
                    "formula_id": evaluation.active_formula_id,
                    "reliability_score": round(evaluation.active, 4),
                    "shadow": {k: round(v, 4) for k, v in evaluation.shadow.items()},
                    "class": classification.reviewer_class.value,
                    "reasons": classification.reasons,
                    "strengths": classification.strengths,
                    "metrics": snapshot.to_dict(),
                },
            )
        return self._guarded("reliability_score", _do)

    def rank_reviewers(self, reviewer_ids: Sequence[str]) -> ServiceResult:
        """Eligible reviewers ordered by active reliability (Bad excluded)."""
        def _do() -> ServiceResult:
            evaluations = self._evaluate_reviewers(set(reviewer_ids))
            ranked = self._classifier.rank(evaluations.values())
            return ServiceResult(
                success=True,
                data={
                    "ranking": [
                        {
                            "reviewer_id": ev.reviewer_id,
                            "reliability_score": round(ev.active, 4),
                            "class": cls.reviewer_class.value,
                        }
                        for ev, cls in ranked
                    ],
                    "excluded": sorted(set(reviewer_ids) - {ev.reviewer_id for ev, _ in ranked}),
                },
            )
        return self._guarded("rank_reviewers", _do)

    # ------------------------------------------------------------------
    # Administration and analytics
    # ------------------------------------------------------------------

    def override_review_score(self, review_id: str, new_score: int) -> ServiceResult:
        """Correct a review's score.

        On a finalized submission the peer average is recomputed and
        stored; final XP and status stay as they are.
        """
        def _do() -> ServiceResult:
            if new_score < 0:
                return ServiceResult(success=False, errors=["Score must be non-negative"])
            review = self._store.get_review(review_id)
            self._store.update_review_score(review_id, new_score)
            submission = self._store.get_submission(review.submission_id)
            data: dict[str, Any] = {
                "review_id": review_id,
                "old_score": review.score,
                "new_score": new_score,
                "status": submission.status.value,
            }
            if submission.is_final:
                scores = [r.score for r in self._store.reviews_for(review.submission_id)]
                peer_average = sum(scores) / len(scores)
                self._store.set_consensus_score(review.submission_id, peer_average)
                data["consensus_score"] = peer_average
            warning = self._record_event(
                EventKind.REVIEW_OVERRIDDEN,
                "admin",
                {"review_id": review_id, "old_score": review.score, "new_score": new_score},
            )
            self._metrics.invalidate(review.reviewer_id)
            if warning:
                data["warning"] = warning
            return ServiceResult(success=True, data=data)
        return self._guarded("override_review_score", _do)

    def shadow_summary(self) -> ServiceResult:
        def _do() -> ServiceResult:
            return ServiceResult(
                success=True,
                data={
                    "active_formula_id": self._active_formula.formula_id,
                    "formulas": self._shadow_logger.summary(),
                },
            )
        return self._guarded("shadow_summary", _do)

    def shadow_logs(self, limit: int = 50, offset: int = 0) -> ServiceResult:
        def _do() -> ServiceResult:
            try:
                records = self._shadow_logger.logs(limit=limit, offset=offset)
            except ValueError as e:
                return ServiceResult(success=False, errors=[str(e)])
            return ServiceResult(
                success=True,
                data={
                    "total": self._store.shadow_log_count(),
                    "limit": limit,
                    "offset": offset,
                    "logs": [
                        {
                            "submissionId": r.submission_id,
                            "activeFormulaId": r.active_formula_id,
                            "activeScore": r.active_score,
                            "shadowFormulaId": r.shadow_formula_id,
                            "shadowScore": r.shadow_score,
                            "delta": r.delta,
                            "loggedAt": r.logged_utc.isoformat() if r.logged_utc else None,
                        }
                        for r in records
                    ],
                },
            )
        return self._guarded("shadow_logs", _do)

    def consensus_summary(self) -> ServiceResult:
        """Finalized submissions per confidence tier and mean review count."""
        def _do() -> ServiceResult:
            rows = self._store.consensus_summary()
            by_confidence = {
                row["confidence"]: {
                    "submissions": row["submissions"],
                    "avg_reviews": round(row["avg_reviews"] or 0.0, 2),
                }
                for row in rows
            }
            return ServiceResult(
                success=True,
                data={
                    "total_finalized": sum(v["submissions"] for v in by_confidence.values()),
                    "by_confidence": by_confidence,
                },
            )
        return self._guarded("consensus_summary", _do)

    # ------------------------------------------------------------------
    # Background side effects
    # ------------------------------------------------------------------

    def wait_for_background(self, timeout: Optional[float] = None) -> None:
        """Block until every scheduled side effect has run."""
        while True:
            with self._pending_lock:
                pending = [f for f in self._pending if not f.done()]
                self._pending = pending
            if not pending:
                return
            wait(pending, timeout=timeout)
            if timeout is not None:
                return

    def shutdown(self) -> None:
        self.wait_for_background()
        self._background.shutdown(wait=True)
        self._metrics.shutdown()

    def _submit_background(self, fn: Callable[..., Any], *args: Any) -> None:
        future = self._background.submit(fn, *args)
        with self._pending_lock:
            self._pending.append(future)

    def _after_finalize(
        self,
        submission: Submission,
        reviews: Sequence[PeerReview],
        final_xp: int,
    ) -> None:
        """XP, reviewer accuracy bonus, AI summary, notification.

        Each step is best-effort: a failure is logged and the remaining
        steps still run. The finalize itself is already committed.
        """
        sid = submission.submission_id
        try:
            created = self._store.insert_transaction(
                reference=f"{TransactionType.SUBMISSION_REWARD.value}:{sid}",
                user_id=submission.author_id,
                tx_type=TransactionType.SUBMISSION_REWARD,
                amount=final_xp,
                submission_id=sid,
                created=self._clock(),
            )
            if created:
                self._record_event(
                    EventKind.XP_AWARDED,
                    submission.author_id,
                    {"submission_id": sid, "amount": final_xp,
                     "type": TransactionType.SUBMISSION_REWARD.value},
                )
        except StorageError:
            logger.warning("XP transaction for %s failed", sid, exc_info=True)

        max_deviation, bonus = self._resolver.accuracy_bonus()
        for review in reviews:
            if abs(review.score - final_xp) > max_deviation:
                continue
            try:
                self._store.insert_transaction(
                    reference=f"{TransactionType.REVIEW_REWARD.value}:{review.review_id}",
                    user_id=review.reviewer_id,
                    tx_type=TransactionType.REVIEW_REWARD,
                    amount=bonus,
                    submission_id=sid,
                    review_id=review.review_id,
                    created=self._clock(),
                )
            except StorageError:
                logger.warning("Accuracy bonus for review %s failed", review.review_id, exc_info=True)

        if self._summary_generator is not None:
            try:
                summary = self._summary_generator(submission, reviews, final_xp)
                if summary:
                    self._store.set_ai_summary(sid, summary)
            except Exception:
                logger.warning("AI summary generation for %s failed", sid, exc_info=True)

        if self._notifier is not None:
            try:
                self._notifier(sid, submission.author_id, final_xp)
            except Exception:
                logger.warning("Consensus notification for %s failed", sid, exc_info=True)

    def _log_shadow(
        self,
        submission_id: str,
        reviews: list[PeerReview],
        active: ConsensusComputation,
        evaluations: dict[str, ReliabilityEvaluation],
        now: datetime,
    ) -> None:
        if not self._shadow_formulas:
            return
        try:
            shadow_reliability = {
                f.formula_id: {rid: ev.shadow[f.formula_id] for rid, ev in evaluations.items()}
                for f in self._shadow_formulas
            }
            records = build_shadow_records(
                self._calculator,
                submission_id,
                reviews,
                self._active_formula.formula_id,
                active,
                shadow_reliability,
                logged_utc=now,
            )
        except Exception:
            logger.warning("Shadow evaluation for %s failed", submission_id, exc_info=True)
            return
        self._shadow_logger.log_all(records)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _guarded(self, operation: str, func: Callable[[], ServiceResult]) -> ServiceResult:
        """Map not-found and storage failures to ServiceResult."""
        try:
            return func()
        except NotFoundError as e:
            return ServiceResult(success=False, errors=[str(e)], data={"not_found": True})
        except ConflictError as e:
            logger.warning("Conflict during %s: %s", operation, e)
            return ServiceResult(success=False, errors=[str(e)], data={"rejected": True})
        except StorageError:
            logger.exception("Storage failure during %s", operation)
            return ServiceResult(success=False, errors=[RETRY_MESSAGE], data={"retryable": True})

    def _next_event_id(self) -> str:
        """Generate a monotonically increasing unique event ID."""
        with self._event_counter_lock:
            return f"EVT-{next(self._event_counter):08d}"

    def _record_event(
        self, kind: EventKind, actor_id: str, payload: dict[str, Any],
    ) -> Optional[str]:
        """Append an audit event. Returns a warning string on failure.

        Called after the state change is committed, so a failed append
        is reported rather than rolled back.
        """
        try:
            self._event_log.append(EventRecord.create(
                event_id=self._next_event_id(),
                event_kind=kind,
                actor_id=actor_id,
                payload=payload,
                timestamp_utc=self._clock(),
            ))
        except (ValueError, OSError) as e:
            logger.error("Event log failure for %s: %s", kind.value, e)
            return f"Audit trail degraded: {e}"
        return None

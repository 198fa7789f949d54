"""Tests for ConsensusService - proves the facade orchestrates correctly."""

import itertools
import threading

import pytest
from datetime import datetime, timedelta, timezone
from pathlib import Path

from scholarxp.errors import StorageError
from scholarxp.models.submission import (
    PeerReview,
    Submission,
    SubmissionStatus,
    TransactionType,
    next_week_key,
    week_key,
)
from scholarxp.persistence.event_log import EventKind, EventLog
from scholarxp.persistence.store import ReviewStore
from scholarxp.policy.resolver import PolicyResolver
from scholarxp.service import RETRY_MESSAGE, ConsensusService


CONFIG_DIR = Path(__file__).resolve().parents[1] / "config"
NOW = datetime(2026, 10, 14, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def resolver() -> PolicyResolver:
    return PolicyResolver.from_config_dir(CONFIG_DIR)


def _make_service(resolver: PolicyResolver, **kwargs) -> ConsensusService:
    counter = itertools.count(1)
    kwargs.setdefault("clock", lambda: NOW)
    kwargs.setdefault("case_id_factory", lambda: f"case-{next(counter)}")
    return ConsensusService(resolver, **kwargs)


@pytest.fixture
def service(resolver: PolicyResolver) -> ConsensusService:
    svc = _make_service(resolver)
    yield svc
    svc.shutdown()


def _open(service: ConsensusService, sid: str, author: str = "author-1", platform: str = "Twitter") -> None:
    assert service.register_submission(Submission(sid, author, platform=platform)).success
    assert service.advance_submission(sid, SubmissionStatus.AI_REVIEWED).success
    assert service.advance_submission(sid, SubmissionStatus.UNDER_PEER_REVIEW).success


def _review_all(service: ConsensusService, sid: str, scores: list[int], comments: list[str] = ()):
    result = None
    for i, score in enumerate(scores):
        comment = comments[i] if i < len(comments) else ""
        result = service.submit_review(PeerReview(f"{sid}-r{i}", sid, f"rev-{i}", score, comment=comment))
        assert result.success, result.errors
    return result


def _rewards(service: ConsensusService, sid: str, tx_type: TransactionType) -> list[dict]:
    return [t for t in service.store.transactions(submission_id=sid) if t["tx_type"] == tx_type.value]


class TestIntake:
    def test_register_and_advance(self, service: ConsensusService) -> None:
        _open(service, "s1")
        assert service.store.get_submission("s1").status == SubmissionStatus.UNDER_PEER_REVIEW

    def test_illegal_transition_refused(self, service: ConsensusService) -> None:
        service.register_submission(Submission("s1", "author-1"))
        result = service.advance_submission("s1", SubmissionStatus.UNDER_PEER_REVIEW)
        assert not result.success
        assert "Illegal transition" in result.errors[0]

    def test_finalize_not_reachable_by_hand(self, service: ConsensusService) -> None:
        _open(service, "s1")
        result = service.advance_submission("s1", SubmissionStatus.FINALIZED)
        assert not result.success

    def test_review_requires_peer_review_status(self, service: ConsensusService) -> None:
        service.register_submission(Submission("s1", "author-1"))
        result = service.submit_review(PeerReview("r1", "s1", "rev-1", 100))
        assert not result.success
        assert "not accepting reviews" in result.errors[0]

    def test_unknown_submission(self, service: ConsensusService) -> None:
        result = service.calculate_consensus("nope")
        assert not result.success
        assert result.data["not_found"]


class TestConsensusFlow:
    def test_deferred_until_minimum_reviews(self, service: ConsensusService) -> None:
        _open(service, "s1")
        result = _review_all(service, "s1", [100, 105])
        assert result.data["consensus"] == {"status": "deferred", "message": "2 of 3 reviews"}
        assert service.store.get_submission("s1").status == SubmissionStatus.UNDER_PEER_REVIEW

    def test_third_review_finalizes(self, service: ConsensusService) -> None:
        _open(service, "s1")
        result = _review_all(service, "s1", [100, 105, 110])
        assert result.data["consensus"] == {"status": "finalized", "finalXp": 105, "confidence": "high"}
        service.wait_for_background()

        submission = service.store.get_submission("s1")
        assert submission.status == SubmissionStatus.FINALIZED
        assert submission.final_xp == 105
        (reward,) = _rewards(service, "s1", TransactionType.SUBMISSION_REWARD)
        assert reward["amount"] == 105
        assert reward["user_id"] == "author-1"
        assert len(_rewards(service, "s1", TransactionType.REVIEW_REWARD)) == 3
        assert len(service.event_log.events(EventKind.SUBMISSION_FINALIZED)) == 1
        assert len(service.event_log.events(EventKind.XP_AWARDED)) == 1

    def test_accuracy_bonus_only_near_final(self, service: ConsensusService) -> None:
        _open(service, "s1")
        for i, score in enumerate([100] * 8 + [130]):
            service.store.add_review(PeerReview(f"s1-r{i}", "s1", f"rev-{i}", score, created_utc=NOW))
        result = service.calculate_consensus("s1")
        # the 130 is an outlier at |z| > 2 and is left out of the average
        assert result.data == {"status": "finalized", "finalXp": 100, "confidence": "medium"}
        service.wait_for_background()
        bonuses = _rewards(service, "s1", TransactionType.REVIEW_REWARD)
        assert len(bonuses) == 8
        assert "s1-r8" not in {b["review_id"] for b in bonuses}
        assert all(b["amount"] == 2 for b in bonuses)

    def test_repeat_request_is_noop(self, service: ConsensusService) -> None:
        _open(service, "s1")
        _review_all(service, "s1", [100, 105, 110])
        result = service.calculate_consensus("s1")
        assert result.data == {
            "status": "already_decided",
            "finalXp": 105,
            "confidence": "high",
            "message": "Submission already finalized",
        }
        service.wait_for_background()
        assert len(_rewards(service, "s1", TransactionType.SUBMISSION_REWARD)) == 1

    def test_summary_and_notification_hooks(self, resolver: PolicyResolver) -> None:
        notified: list[tuple] = []
        svc = _make_service(
            resolver,
            summary_generator=lambda sub, reviews, xp: f"{len(reviews)} reviewers agreed on {xp} XP",
            notifier=lambda sid, author, xp: notified.append((sid, author, xp)),
        )
        try:
            _open(svc, "s1")
            _review_all(svc, "s1", [100, 105, 110])
            svc.wait_for_background()
            assert svc.store.get_submission("s1").ai_summary == "3 reviewers agreed on 105 XP"
            assert notified == [("s1", "author-1", 105)]
        finally:
            svc.shutdown()

    def test_failing_hooks_do_not_undo_finalize(self, resolver: PolicyResolver) -> None:
        def broken(*args):
            raise RuntimeError("downstream unavailable")

        svc = _make_service(resolver, summary_generator=broken, notifier=broken)
        try:
            _open(svc, "s1")
            result = _review_all(svc, "s1", [100, 105, 110])
            svc.wait_for_background()
            assert result.data["consensus"]["status"] == "finalized"
            assert len(_rewards(svc, "s1", TransactionType.SUBMISSION_REWARD)) == 1
        finally:
            svc.shutdown()

    def test_consensus_summary(self, service: ConsensusService) -> None:
        for sid in ("s1", "s2"):
            _open(service, sid)
            _review_all(service, sid, [100, 105, 110])
        data = service.consensus_summary().data
        assert data["total_finalized"] == 2
        assert data["by_confidence"]["high"] == {"submissions": 2, "avg_reviews": 3.0}


class TestConcurrentFinalize:
    def test_single_reward_under_race(self, service: ConsensusService) -> None:
        _open(service, "s1")
        for i, score in enumerate((100, 105, 110)):
            service.store.add_review(PeerReview(f"r{i}", "s1", f"rev-{i}", score, created_utc=NOW))

        barrier = threading.Barrier(2)
        statuses: list[str] = []
        results: list[dict] = []

        def run() -> None:
            barrier.wait()
            data = service.calculate_consensus("s1").data
            statuses.append(data["status"])
            results.append(data)

        threads = [threading.Thread(target=run) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        service.wait_for_background()

        assert sorted(statuses) == ["already_decided", "finalized"]
        # the losing run reports the winner's stored decision
        assert all(r["finalXp"] == 105 and r["confidence"] == "high" for r in results)
        assert len(_rewards(service, "s1", TransactionType.SUBMISSION_REWARD)) == 1
        assert len(service.event_log.events(EventKind.SUBMISSION_FINALIZED)) == 1


class TestWeeklyCap:
    def test_sixth_submission_held_then_released(self, service: ConsensusService) -> None:
        for n in range(1, 7):
            _open(service, f"s{n}")
            result = _review_all(service, f"s{n}", [100, 100, 100])

        next_week = next_week_key(week_key(NOW))
        held = result.data["consensus"]
        assert held["status"] == "held"
        assert held["heldUntilWeek"] == next_week
        assert held["finalXp"] == 100
        assert service.store.get_submission("s6").status == SubmissionStatus.UNDER_PEER_REVIEW
        assert len(service.event_log.events(EventKind.SUBMISSION_HELD)) == 1

        # still held for the rest of the week
        again = service.calculate_consensus("s6").data
        assert again["status"] == "held"
        assert service.release_held().data["released"] == []

        released = service.release_held(now=NOW + timedelta(days=7))
        assert released.data["released"] == ["s6"]
        assert released.data["outcomes"]["s6"]["status"] == "finalized"
        submission = service.store.get_submission("s6")
        assert submission.status == SubmissionStatus.FINALIZED
        assert submission.finalized_week == next_week
        assert submission.held_until_week is None

    def test_hold_reason_kept_when_audit_fails(self, resolver: PolicyResolver) -> None:
        class HeldEventsFail(EventLog):
            def append(self, event):
                if event.event_kind == EventKind.SUBMISSION_HELD:
                    raise OSError("disk full")
                return super().append(event)

        svc = _make_service(resolver, event_log=HeldEventsFail())
        try:
            for n in range(1, 7):
                _open(svc, f"s{n}")
                result = _review_all(svc, f"s{n}", [100, 100, 100])
            held = result.data["consensus"]
            assert held["status"] == "held"
            assert held["message"] == "Weekly finalize cap reached"
            assert held["warning"] == "Audit trail degraded: disk full"
        finally:
            svc.shutdown()

    def test_other_authors_unaffected(self, service: ConsensusService) -> None:
        for n in range(1, 6):
            _open(service, f"s{n}")
            _review_all(service, f"s{n}", [100, 100, 100])
        _open(service, "other", author="author-2")
        result = _review_all(service, "other", [100, 100, 100])
        assert result.data["consensus"]["status"] == "finalized"


class TestEscalationAndVoting:
    def _escalate(self, service: ConsensusService) -> str:
        _open(service, "s1")
        result = _review_all(
            service, "s1", [0, 150, 160],
            comments=["Link not available", "Solid thread", "Great explainer"],
        )
        assert result.data["consensus"] == {"escalated": True, "caseId": "case-1"}
        return "case-1"

    def _votes(self, service: ConsensusService, case_id: str, high: int, zero: int) -> None:
        for i in range(high):
            assert service.cast_vote(case_id, f"0xh{i}", 160, "sig").success
        for i in range(zero):
            assert service.cast_vote(case_id, f"0xz{i}", 0, "sig").success

    def test_wide_scores_without_outliers_escalate(self, service: ConsensusService) -> None:
        _open(service, "s1")
        result = _review_all(service, "s1", [20, 25, 90])
        assert result.data["consensus"] == {"escalated": True, "caseId": "case-1"}
        assert service.case_details("case-1").data["scores"] == [20, 90]
        assert service.store.get_submission("s1").final_xp is None

    def test_divergent_reviews_escalate(self, service: ConsensusService) -> None:
        case_id = self._escalate(service)
        assert service.store.get_submission("s1").status == SubmissionStatus.ESCALATED_TO_VOTE
        assert service.calculate_consensus("s1").data == {"escalated": True, "caseId": case_id}
        assert len(service.event_log.events(EventKind.VOTE_CASE_OPENED)) == 1

        details = service.case_details(case_id).data
        assert details["scores"] == [0, 160]
        assert details["totalVotes"] == 0
        assert "Reviewer A indicates content may be unavailable" in details["insights"]

    def test_pending_below_quorum(self, service: ConsensusService) -> None:
        case_id = self._escalate(service)
        self._votes(service, case_id, 30, 19)
        data = service.tally_votes(case_id).data
        assert data["status"] == "pending"
        assert data["totalVotes"] == 49
        assert data["quorum"] == 50

    def test_resolution_finalizes_and_feeds_back(self, service: ConsensusService) -> None:
        case_id = self._escalate(service)
        self._votes(service, case_id, 26, 24)
        data = service.tally_votes(case_id).data
        assert data["status"] == "resolved"
        assert data["winningXp"] == 160
        assert data["invalidated"] == ["s1-r0"]
        service.wait_for_background()

        submission = service.store.get_submission("s1")
        assert submission.status == SubmissionStatus.FINALIZED
        assert submission.final_xp == 160
        (reward,) = _rewards(service, "s1", TransactionType.SUBMISSION_REWARD)
        assert reward["amount"] == 160
        assert len(service.event_log.events(EventKind.REVIEW_VALIDATED)) == 2
        assert len(service.event_log.events(EventKind.REVIEW_INVALIDATED)) == 1

        metrics = service.reliability_score("rev-0").data["metrics"]
        assert metrics["votes_invalidated"] == 1
        assert metrics["metrics"]["vote_validation"] == pytest.approx(0.6)

    def test_closed_case(self, service: ConsensusService) -> None:
        case_id = self._escalate(service)
        self._votes(service, case_id, 50, 0)
        service.tally_votes(case_id)
        late = service.cast_vote(case_id, "0xlate", 160, "sig")
        assert not late.success
        assert late.data["rejected"]

        again = service.tally_votes(case_id).data
        assert again["status"] == "resolved"
        service.wait_for_background()
        assert len(service.event_log.events(EventKind.VOTE_CASE_RESOLVED)) == 1

    def test_vote_outside_pair_rejected(self, service: ConsensusService) -> None:
        case_id = self._escalate(service)
        result = service.cast_vote(case_id, "0xabc", 80, "sig")
        assert not result.success
        assert result.data["rejected"]

    def test_unknown_case(self, service: ConsensusService) -> None:
        assert service.tally_votes("nope").data["not_found"]


class TestShadowEvaluation:
    def test_shadow_logged_without_touching_result(self, resolver: PolicyResolver) -> None:
        with_shadow = _make_service(resolver, shadow_formula_ids=["CUSTOM_V1", "CUSTOM_V2"])
        without = _make_service(resolver, shadow_formula_ids=[])
        try:
            for svc in (with_shadow, without):
                _open(svc, "s1")
                _review_all(svc, "s1", [100, 105, 110])
                svc.wait_for_background()

            a = with_shadow.store.get_submission("s1")
            b = without.store.get_submission("s1")
            assert (a.final_xp, a.consensus_score, a.confidence) == (b.final_xp, b.consensus_score, b.confidence)

            logs = with_shadow.shadow_logs().data
            assert logs["total"] == 2
            assert {r["shadowFormulaId"] for r in logs["logs"]} == {"CUSTOM_V1", "CUSTOM_V2"}
            assert all(r["activeFormulaId"] == "LEGACY" for r in logs["logs"])
            assert without.shadow_logs().data["total"] == 0

            summary = with_shadow.shadow_summary().data
            assert summary["active_formula_id"] == "LEGACY"
            assert summary["formulas"]["CUSTOM_V1"]["runs"] == 1
        finally:
            with_shadow.shutdown()
            without.shutdown()

    def test_shadow_write_failure_invisible(self, resolver: PolicyResolver) -> None:
        class NoShadowStore(ReviewStore):
            def insert_shadow_log(self, record):
                raise StorageError("database is locked", transient=True)

        svc = _make_service(resolver, store=NoShadowStore())
        try:
            _open(svc, "s1")
            result = _review_all(svc, "s1", [100, 105, 110])
            svc.wait_for_background()
            assert result.data["consensus"]["status"] == "finalized"
            assert svc.shadow_logs().data["total"] == 0
        finally:
            svc.shutdown()

    def test_bad_paging(self, service: ConsensusService) -> None:
        assert not service.shadow_logs(limit=0).success


class TestReliability:
    def test_new_reviewer(self, service: ConsensusService) -> None:
        data = service.reliability_score("rev-new").data
        assert data["formula_id"] == "LEGACY"
        assert data["reliability_score"] == pytest.approx(0.5875)
        assert data["class"] == "Middle"
        assert set(data["shadow"]) == {"CUSTOM_V1"}

    def test_reviewer_with_history(self, service: ConsensusService) -> None:
        _open(service, "s1")
        _review_all(service, "s1", [100, 105, 110])
        data = service.reliability_score("rev-0").data
        # on time, unrated: 0.3 * 1.0 + 0.7 * 0.625
        assert data["reliability_score"] == pytest.approx(0.7375)
        assert data["metrics"]["total_reviews"] == 1

    def test_missed_assignment_counted(self, service: ConsensusService) -> None:
        assert service.record_missed_assignment("rev-9", "s1").success
        data = service.reliability_score("rev-9").data
        assert data["metrics"]["missed_assignments"] == 1
        assert data["class"] == "Bad"

    def test_rank_excludes_penalized(self, service: ConsensusService) -> None:
        _open(service, "s1")
        _review_all(service, "s1", [100, 105, 110])
        assert service.record_penalty("rev-bad", 25, "spam-1").data["created"]
        data = service.rank_reviewers(["rev-1", "rev-0", "rev-bad"]).data
        assert [r["reviewer_id"] for r in data["ranking"]] == ["rev-0", "rev-1"]
        assert data["excluded"] == ["rev-bad"]


class TestOverride:
    def test_override_recomputes_peer_average(self, service: ConsensusService) -> None:
        _open(service, "s1")
        _review_all(service, "s1", [100, 105, 110])
        result = service.override_review_score("s1-r0", 40)
        assert result.success
        assert result.data["old_score"] == 100
        assert result.data["consensus_score"] == pytest.approx(85.0)

        submission = service.store.get_submission("s1")
        assert submission.status == SubmissionStatus.FINALIZED
        assert submission.final_xp == 105
        assert submission.consensus_score == pytest.approx(85.0)
        assert len(service.event_log.events(EventKind.REVIEW_OVERRIDDEN)) == 1

    def test_negative_score_rejected(self, service: ConsensusService) -> None:
        _open(service, "s1")
        _review_all(service, "s1", [100])
        assert not service.override_review_score("s1-r0", -5).success

    def test_unknown_review(self, service: ConsensusService) -> None:
        assert service.override_review_score("nope", 10).data["not_found"]


class TestStorageFailures:
    def test_storage_error_is_retryable(self, resolver: PolicyResolver) -> None:
        class LockedStore(ReviewStore):
            def get_submission(self, submission_id):
                raise StorageError("database is locked", transient=True)

        svc = _make_service(resolver, store=LockedStore())
        try:
            result = svc.calculate_consensus("s1")
            assert not result.success
            assert result.errors == [RETRY_MESSAGE]
            assert result.data["retryable"]
        finally:
            svc.shutdown()

    def test_duplicate_review_id_is_not_retryable(self, service: ConsensusService) -> None:
        _open(service, "s1")
        assert service.submit_review(PeerReview("dup", "s1", "rev-1", 100)).success
        result = service.submit_review(PeerReview("dup", "s1", "rev-2", 110))
        assert not result.success
        assert result.data == {"rejected": True}
        assert result.errors != [RETRY_MESSAGE]
        assert "add_review failed" in result.errors[0]

    def test_duplicate_submission_id_is_not_retryable(self, service: ConsensusService) -> None:
        assert service.register_submission(Submission("s1", "author-1")).success
        result = service.register_submission(Submission("s1", "author-2"))
        assert not result.success
        assert result.data == {"rejected": True}


class TestPersistenceWiring:
    def test_event_ids_continue_after_restart(self, resolver: PolicyResolver, tmp_path: Path) -> None:
        path = tmp_path / "events.jsonl"
        store = ReviewStore(str(tmp_path / "xp.db"))

        first = _make_service(resolver, store=store, event_log=EventLog(storage_path=path))
        _open(first, "s1")
        _review_all(first, "s1", [100, 105, 110])
        first.shutdown()
        recorded = EventLog(storage_path=path).count
        assert recorded > 0

        second = _make_service(resolver, store=store, event_log=EventLog(storage_path=path))
        try:
            _open(second, "s2")
            result = _review_all(second, "s2", [100, 105, 110])
            assert "warning" not in result.data
            second.wait_for_background()
            assert second.event_log.count > recorded
        finally:
            second.shutdown()
            store.close()

"""
Review Store - SQLite-backed persistence for the consensus pipeline.

Tables:
    submissions           - Evaluated content and its lifecycle status
    peer_reviews          - One row per reviewer judgment (never deleted)
    missed_assignments    - Review assignments a reviewer let lapse
    xp_transactions       - XP ledger, one row per idempotency reference
    vote_cases            - Escalated submissions awaiting a community vote
    judgment_votes        - One vote per wallet per case
    shadow_consensus_log  - Write-once active/shadow formula comparisons

Aggregate reads used by the metrics aggregator are single set-based
statements so their cost does not grow with round trips. State changes
that must happen at most once (finalize, case close) run inside one
IMMEDIATE transaction and use compare-and-set updates.
"""

from __future__ import annotations

import enum
import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Iterator, Optional

from scholarxp.errors import ConflictError, NotFoundError, StorageError, VoteRejected
from scholarxp.models.consensus import ShadowConsensusRecord
from scholarxp.models.submission import (
    JudgmentStatus,
    PeerReview,
    Submission,
    SubmissionStatus,
    TransactionType,
    next_week_key,
    week_key,
)
from scholarxp.models.vote import ConflictType, JudgmentVote, VoteCase, VoteCaseState

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Schema DDL
# ---------------------------------------------------------------------------

_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS submissions (
    submission_id   TEXT PRIMARY KEY,
    author_id       TEXT NOT NULL,
    ai_score        REAL,
    platform        TEXT,
    status          TEXT NOT NULL,
    week_number     INTEGER,
    final_xp        INTEGER,
    consensus_score REAL,
    confidence      TEXT,
    finalized_week  INTEGER,
    held_until_week INTEGER,
    ai_summary      TEXT,
    created_at      TEXT NOT NULL,
    finalized_at    TEXT
);

CREATE TABLE IF NOT EXISTS peer_reviews (
    review_id        TEXT PRIMARY KEY,
    submission_id    TEXT NOT NULL REFERENCES submissions(submission_id),
    reviewer_id      TEXT NOT NULL,
    score            INTEGER NOT NULL,
    comment          TEXT NOT NULL DEFAULT '',
    quality_rating   INTEGER,
    is_late          INTEGER NOT NULL DEFAULT 0,
    judgment_status  TEXT NOT NULL DEFAULT 'PENDING',
    content_category TEXT,
    quality_tier     TEXT,
    created_at       TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS missed_assignments (
    reviewer_id   TEXT NOT NULL,
    submission_id TEXT NOT NULL,
    missed_at     TEXT NOT NULL,
    PRIMARY KEY (reviewer_id, submission_id)
);

CREATE TABLE IF NOT EXISTS xp_transactions (
    tx_id         INTEGER PRIMARY KEY AUTOINCREMENT,
    reference     TEXT NOT NULL UNIQUE,
    user_id       TEXT NOT NULL,
    tx_type       TEXT NOT NULL,
    amount        INTEGER NOT NULL,
    submission_id TEXT,
    review_id     TEXT,
    created_at    TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS vote_cases (
    case_id       TEXT PRIMARY KEY,
    submission_id TEXT NOT NULL REFERENCES submissions(submission_id),
    min_score     INTEGER NOT NULL,
    max_score     INTEGER NOT NULL,
    review_ids    TEXT NOT NULL DEFAULT '[]',
    conflicts     TEXT NOT NULL DEFAULT '[]',
    summary       TEXT NOT NULL DEFAULT '',
    insights      TEXT NOT NULL DEFAULT '[]',
    platform      TEXT,
    state         TEXT NOT NULL,
    winning_xp    INTEGER,
    opened_at     TEXT NOT NULL,
    closed_at     TEXT
);

CREATE TABLE IF NOT EXISTS judgment_votes (
    case_id        TEXT NOT NULL REFERENCES vote_cases(case_id),
    wallet_address TEXT NOT NULL,
    vote_xp        INTEGER NOT NULL,
    signature      TEXT NOT NULL,
    cast_at        TEXT NOT NULL,
    PRIMARY KEY (case_id, wallet_address)
);

CREATE TABLE IF NOT EXISTS shadow_consensus_log (
    log_id            INTEGER PRIMARY KEY AUTOINCREMENT,
    submission_id     TEXT NOT NULL,
    active_formula_id TEXT NOT NULL,
    active_score      REAL NOT NULL,
    shadow_formula_id TEXT NOT NULL,
    shadow_score      REAL NOT NULL,
    delta             REAL NOT NULL,
    details           TEXT NOT NULL DEFAULT '{}',
    logged_at         TEXT NOT NULL
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_cases_one_open
    ON vote_cases(submission_id) WHERE state = 'open';
CREATE INDEX IF NOT EXISTS idx_reviews_submission ON peer_reviews(submission_id);
CREATE INDEX IF NOT EXISTS idx_reviews_reviewer ON peer_reviews(reviewer_id, created_at);
CREATE INDEX IF NOT EXISTS idx_submissions_author ON submissions(author_id, finalized_week);
CREATE INDEX IF NOT EXISTS idx_tx_user ON xp_transactions(user_id, tx_type);
CREATE INDEX IF NOT EXISTS idx_shadow_submission ON shadow_consensus_log(submission_id);
"""

_TRANSIENT_MARKERS = ("locked", "busy", "disk i/o")


def _ts(moment: Optional[datetime] = None) -> str:
    """Fixed-width UTC timestamp so string comparison orders by time."""
    moment = moment or datetime.now(timezone.utc)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.strptime(value, "%Y-%m-%dT%H:%M:%S.%fZ").replace(tzinfo=timezone.utc)


class FinalizeResult(str, enum.Enum):
    """Outcome of a compare-and-set finalize attempt."""
    FINALIZED = "finalized"
    LOST_RACE = "lost_race"
    HELD = "held"


# ---------------------------------------------------------------------------
# ReviewStore
# ---------------------------------------------------------------------------

class ReviewStore:
    """
    SQLite-backed store for submissions, reviews, XP and votes.

    A single connection is shared across threads behind a lock; every
    public method is one short critical section. sqlite3 errors never
    escape: they are re-raised as StorageError, transient when the
    database reported a lock or busy condition.
    """

    def __init__(self, db_path: str = ":memory:"):
        self._db_path = db_path
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(
            db_path, check_same_thread=False, isolation_level=None, timeout=5.0,
        )
        self._conn.row_factory = sqlite3.Row
        with self._guard("schema"):
            self._conn.executescript(_SCHEMA_SQL)
        logger.debug("ReviewStore initialized: %s", db_path)

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    # -- Plumbing ----------------------------------------------------------

    @contextmanager
    def _guard(self, operation: str) -> Iterator[None]:
        """Map sqlite3 failures to StorageError, constraint violations to ConflictError."""
        try:
            yield
        except sqlite3.OperationalError as e:
            transient = any(m in str(e).lower() for m in _TRANSIENT_MARKERS)
            raise StorageError(f"{operation} failed: {e}", transient=transient) from e
        except sqlite3.IntegrityError as e:
            raise ConflictError(f"{operation} failed: {e}") from e
        except sqlite3.DatabaseError as e:
            raise StorageError(f"{operation} failed: {e}") from e

    @contextmanager
    def _transaction(self, operation: str) -> Iterator[sqlite3.Connection]:
        """Run a block inside BEGIN IMMEDIATE ... COMMIT under the lock."""
        with self._lock, self._guard(operation):
            self._conn.execute("BEGIN IMMEDIATE")
            try:
                yield self._conn
            except BaseException:
                self._conn.execute("ROLLBACK")
                raise
            self._conn.execute("COMMIT")

    def _fetchone(self, operation: str, sql: str, params: tuple = ()) -> Optional[sqlite3.Row]:
        with self._lock, self._guard(operation):
            return self._conn.execute(sql, params).fetchone()

    def _fetchall(self, operation: str, sql: str, params: tuple = ()) -> list[sqlite3.Row]:
        with self._lock, self._guard(operation):
            return self._conn.execute(sql, params).fetchall()

    def _execute(self, operation: str, sql: str, params: tuple = ()) -> int:
        with self._lock, self._guard(operation):
            return self._conn.execute(sql, params).rowcount

    # -- Submissions -------------------------------------------------------

    def add_submission(self, submission: Submission) -> None:
        created = submission.created_utc or datetime.now(timezone.utc)
        self._execute(
            "add_submission",
            """INSERT INTO submissions
               (submission_id, author_id, ai_score, platform, status, week_number,
                final_xp, consensus_score, confidence, finalized_week,
                held_until_week, ai_summary, created_at, finalized_at)
               VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?,?)""",
            (
                submission.submission_id,
                submission.author_id,
                submission.ai_score,
                submission.platform,
                submission.status.value,
                submission.week_number if submission.week_number is not None else week_key(created),
                submission.final_xp,
                submission.consensus_score,
                submission.confidence,
                submission.finalized_week,
                submission.held_until_week,
                submission.ai_summary,
                _ts(created),
                _ts(submission.finalized_utc) if submission.finalized_utc else None,
            ),
        )

    def get_submission(self, submission_id: str) -> Submission:
        row = self._fetchone(
            "get_submission",
            "SELECT * FROM submissions WHERE submission_id=?",
            (submission_id,),
        )
        if row is None:
            raise NotFoundError(f"Submission not found: {submission_id}")
        review_rows = self._fetchall(
            "get_submission",
            "SELECT review_id FROM peer_reviews WHERE submission_id=? ORDER BY created_at, review_id",
            (submission_id,),
        )
        return _row_to_submission(row, [r["review_id"] for r in review_rows])

    def transition(
        self,
        submission_id: str,
        expected: SubmissionStatus,
        target: SubmissionStatus,
    ) -> bool:
        """Compare-and-set status change. Returns False if the status moved."""
        changed = self._execute(
            "transition",
            "UPDATE submissions SET status=? WHERE submission_id=? AND status=?",
            (target.value, submission_id, expected.value),
        )
        return changed == 1

    def set_ai_summary(self, submission_id: str, summary: str) -> None:
        self._execute(
            "set_ai_summary",
            "UPDATE submissions SET ai_summary=? WHERE submission_id=?",
            (summary, submission_id),
        )

    def set_consensus_score(self, submission_id: str, score: float) -> None:
        """Store a recomputed peer average; status and final_xp are untouched."""
        self._execute(
            "set_consensus_score",
            "UPDATE submissions SET consensus_score=? WHERE submission_id=?",
            (score, submission_id),
        )

    def finalize_if(
        self,
        submission_id: str,
        expected: SubmissionStatus,
        final_xp: int,
        consensus_score: float,
        confidence: str,
        now: datetime,
        weekly_cap: Optional[int] = None,
    ) -> tuple[FinalizeResult, Optional[int]]:
        """Finalize a submission at most once.

        Within one transaction: verify the status is still `expected`,
        apply the author's weekly cap, then compare-and-set to
        FINALIZED. Returns (result, held_until_week).
        """
        week = week_key(now)
        with self._transaction("finalize_if") as conn:
            row = conn.execute(
                "SELECT author_id, status FROM submissions WHERE submission_id=?",
                (submission_id,),
            ).fetchone()
            if row is None:
                raise NotFoundError(f"Submission not found: {submission_id}")
            if row["status"] != expected.value:
                return FinalizeResult.LOST_RACE, None

            if weekly_cap is not None:
                finalized_this_week = conn.execute(
                    """SELECT COUNT(*) FROM submissions
                       WHERE author_id=? AND status='FINALIZED' AND finalized_week=?""",
                    (row["author_id"], week),
                ).fetchone()[0]
                if finalized_this_week >= weekly_cap:
                    held_until = next_week_key(week)
                    conn.execute(
                        "UPDATE submissions SET held_until_week=?, consensus_score=? WHERE submission_id=?",
                        (held_until, consensus_score, submission_id),
                    )
                    return FinalizeResult.HELD, held_until

            changed = conn.execute(
                """UPDATE submissions
                   SET status='FINALIZED', final_xp=?, consensus_score=?, confidence=?,
                       finalized_week=?, finalized_at=?, held_until_week=NULL
                   WHERE submission_id=? AND status=?""",
                (final_xp, consensus_score, confidence, week, _ts(now),
                 submission_id, expected.value),
            ).rowcount
        if changed != 1:
            return FinalizeResult.LOST_RACE, None
        return FinalizeResult.FINALIZED, None

    def held_submissions(self, current_week: int) -> list[str]:
        """Submissions held by the weekly cap whose hold week has arrived."""
        rows = self._fetchall(
            "held_submissions",
            """SELECT submission_id FROM submissions
               WHERE status='UNDER_PEER_REVIEW' AND held_until_week IS NOT NULL
                 AND held_until_week <= ?
               ORDER BY held_until_week, created_at""",
            (current_week,),
        )
        return [r["submission_id"] for r in rows]

    def platform_average_xp(self, platform: Optional[str]) -> Optional[float]:
        """Average final XP of finalized submissions on a platform."""
        if not platform:
            return None
        row = self._fetchone(
            "platform_average_xp",
            """SELECT AVG(final_xp) AS avg_xp, COUNT(*) AS n FROM submissions
               WHERE platform=? AND status='FINALIZED' AND final_xp IS NOT NULL""",
            (platform,),
        )
        return None if row["n"] == 0 else float(row["avg_xp"])

    def consensus_summary(self) -> list[sqlite3.Row]:
        return self._fetchall(
            "consensus_summary",
            """SELECT s.confidence AS confidence, COUNT(*) AS submissions,
                      AVG((SELECT COUNT(*) FROM peer_reviews r
                           WHERE r.submission_id = s.submission_id)) AS avg_reviews
               FROM submissions s
               WHERE s.status='FINALIZED'
               GROUP BY s.confidence
               ORDER BY s.confidence""",
        )

    # -- Peer reviews ------------------------------------------------------

    def add_review(self, review: PeerReview) -> None:
        self._execute(
            "add_review",
            """INSERT INTO peer_reviews
               (review_id, submission_id, reviewer_id, score, comment, quality_rating,
                is_late, judgment_status, content_category, quality_tier, created_at)
               VALUES (?,?,?,?,?,?,?,?,?,?,?)""",
            (
                review.review_id,
                review.submission_id,
                review.reviewer_id,
                review.score,
                review.comment,
                review.quality_rating,
                1 if review.is_late else 0,
                review.judgment_status.value,
                review.content_category,
                review.quality_tier,
                _ts(review.created_utc),
            ),
        )

    def get_review(self, review_id: str) -> PeerReview:
        row = self._fetchone(
            "get_review", "SELECT * FROM peer_reviews WHERE review_id=?", (review_id,),
        )
        if row is None:
            raise NotFoundError(f"Review not found: {review_id}")
        return _row_to_review(row)

    def reviews_for(self, submission_id: str) -> list[PeerReview]:
        rows = self._fetchall(
            "reviews_for",
            "SELECT * FROM peer_reviews WHERE submission_id=? ORDER BY created_at, review_id",
            (submission_id,),
        )
        return [_row_to_review(r) for r in rows]

    def update_review_score(self, review_id: str, score: int) -> None:
        changed = self._execute(
            "update_review_score",
            "UPDATE peer_reviews SET score=? WHERE review_id=?",
            (score, review_id),
        )
        if changed != 1:
            raise NotFoundError(f"Review not found: {review_id}")

    def record_missed_assignment(
        self, reviewer_id: str, submission_id: str, missed_at: Optional[datetime] = None,
    ) -> None:
        self._execute(
            "record_missed_assignment",
            """INSERT OR IGNORE INTO missed_assignments (reviewer_id, submission_id, missed_at)
               VALUES (?,?,?)""",
            (reviewer_id, submission_id, _ts(missed_at)),
        )

    # -- Reviewer aggregates ----------------------------------------------

    def review_stats(self, reviewer_id: str, as_of: datetime) -> dict[str, Any]:
        """Counts, lateness, quality ratings, vote outcomes, score moments."""
        row = self._fetchone(
            "review_stats",
            """SELECT COUNT(*)                    AS total,
                      COALESCE(SUM(is_late), 0)   AS late,
                      AVG(quality_rating)         AS avg_quality,
                      COUNT(quality_rating)       AS rated,
                      COALESCE(SUM(CASE WHEN judgment_status='VALIDATED' THEN 1 ELSE 0 END), 0)
                                                  AS validated,
                      COALESCE(SUM(CASE WHEN judgment_status='INVALIDATED' THEN 1 ELSE 0 END), 0)
                                                  AS invalidated,
                      AVG(score)                  AS mean_score,
                      AVG(score * score)          AS mean_square
               FROM peer_reviews
               WHERE reviewer_id=? AND created_at<=?""",
            (reviewer_id, _ts(as_of)),
        )
        return dict(row)

    def deviation_stats(
        self, reviewer_id: str, as_of: datetime, extreme_points: float,
    ) -> dict[str, Any]:
        """Deviation of a reviewer's scores from finalized XP."""
        row = self._fetchone(
            "deviation_stats",
            """SELECT COUNT(*)                          AS compared,
                      AVG(ABS(r.score - s.final_xp))    AS avg_deviation,
                      COALESCE(SUM(CASE WHEN ABS(r.score - s.final_xp) > ? THEN 1 ELSE 0 END), 0)
                                                        AS extreme
               FROM peer_reviews r
               JOIN submissions s ON s.submission_id = r.submission_id
               WHERE r.reviewer_id=? AND r.created_at<=?
                 AND s.status='FINALIZED' AND s.final_xp IS NOT NULL
                 AND s.finalized_at<=?""",
            (extreme_points, reviewer_id, _ts(as_of), _ts(as_of)),
        )
        return dict(row)

    def penalty_stats(self, reviewer_id: str, as_of: datetime) -> dict[str, Any]:
        """Administrative penalty total and missed assignment count."""
        stamp = _ts(as_of)
        row = self._fetchone(
            "penalty_stats",
            """SELECT (SELECT COALESCE(SUM(ABS(amount)), 0) FROM xp_transactions
                       WHERE user_id=? AND tx_type='PENALTY' AND created_at<=?) AS penalty_total,
                      (SELECT COUNT(*) FROM missed_assignments
                       WHERE reviewer_id=? AND missed_at<=?)                   AS missed""",
            (reviewer_id, stamp, reviewer_id, stamp),
        )
        return dict(row)

    # -- XP ledger ---------------------------------------------------------

    def insert_transaction(
        self,
        reference: str,
        user_id: str,
        tx_type: TransactionType,
        amount: int,
        submission_id: Optional[str] = None,
        review_id: Optional[str] = None,
        created: Optional[datetime] = None,
    ) -> bool:
        """Insert an XP transaction once per reference. Returns True if new."""
        changed = self._execute(
            "insert_transaction",
            """INSERT OR IGNORE INTO xp_transactions
               (reference, user_id, tx_type, amount, submission_id, review_id, created_at)
               VALUES (?,?,?,?,?,?,?)""",
            (reference, user_id, tx_type.value, amount, submission_id, review_id, _ts(created)),
        )
        return changed == 1

    def transactions(
        self,
        submission_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> list[dict[str, Any]]:
        clauses: list[str] = []
        params: list[Any] = []
        if submission_id is not None:
            clauses.append("submission_id=?")
            params.append(submission_id)
        if user_id is not None:
            clauses.append("user_id=?")
            params.append(user_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self._fetchall(
            "transactions",
            f"SELECT * FROM xp_transactions {where} ORDER BY tx_id",
            tuple(params),
        )
        return [dict(r) for r in rows]

    # -- Vote cases --------------------------------------------------------

    def open_case(self, case: VoteCase) -> tuple[Optional[VoteCase], bool]:
        """Open a case and move its submission to ESCALATED_TO_VOTE.

        Returns (case, created). An already open case for the submission
        is returned with created=False. (None, False) means the
        submission left UNDER_PEER_REVIEW before the case could open.
        """
        with self._transaction("open_case") as conn:
            existing = conn.execute(
                "SELECT * FROM vote_cases WHERE submission_id=? AND state='open'",
                (case.submission_id,),
            ).fetchone()
            if existing is not None:
                return _row_to_case(existing), False

            changed = conn.execute(
                """UPDATE submissions SET status='ESCALATED_TO_VOTE'
                   WHERE submission_id=? AND status='UNDER_PEER_REVIEW'""",
                (case.submission_id,),
            ).rowcount
            if changed != 1:
                return None, False

            conn.execute(
                """INSERT INTO vote_cases
                   (case_id, submission_id, min_score, max_score, review_ids, conflicts,
                    summary, insights, platform, state, opened_at)
                   VALUES (?,?,?,?,?,?,?,?,?,?,?)""",
                (
                    case.case_id,
                    case.submission_id,
                    case.min_score,
                    case.max_score,
                    json.dumps(case.review_ids),
                    json.dumps([c.value for c in case.conflict_types]),
                    case.summary,
                    json.dumps(case.insights),
                    case.platform,
                    VoteCaseState.OPEN.value,
                    _ts(case.opened_utc),
                ),
            )
        return case, True

    def get_case(self, case_id: str) -> VoteCase:
        row = self._fetchone(
            "get_case", "SELECT * FROM vote_cases WHERE case_id=?", (case_id,),
        )
        if row is None:
            raise NotFoundError(f"Vote case not found: {case_id}")
        return _row_to_case(row)

    def open_case_for(self, submission_id: str) -> Optional[VoteCase]:
        row = self._fetchone(
            "open_case_for",
            "SELECT * FROM vote_cases WHERE submission_id=? AND state='open'",
            (submission_id,),
        )
        return None if row is None else _row_to_case(row)

    def add_vote(self, vote: JudgmentVote) -> None:
        """Record a vote on an open case.

        Raises NotFoundError for an unknown case and VoteRejected for a
        closed case or a wallet that already voted.
        """
        with self._transaction("add_vote") as conn:
            row = conn.execute(
                "SELECT state FROM vote_cases WHERE case_id=?", (vote.case_id,),
            ).fetchone()
            if row is None:
                raise NotFoundError(f"Vote case not found: {vote.case_id}")
            if row["state"] != VoteCaseState.OPEN.value:
                raise VoteRejected(f"Vote case {vote.case_id} is closed")
            try:
                conn.execute(
                    """INSERT INTO judgment_votes
                       (case_id, wallet_address, vote_xp, signature, cast_at)
                       VALUES (?,?,?,?,?)""",
                    (vote.case_id, vote.wallet_address, vote.vote_xp,
                     vote.signature, _ts(vote.cast_utc)),
                )
            except sqlite3.IntegrityError:
                raise VoteRejected(
                    f"Wallet {vote.wallet_address} already voted on case {vote.case_id}"
                ) from None

    def vote_distribution(self, case_id: str) -> dict[int, int]:
        """Vote counts per XP value, from one consistent read."""
        rows = self._fetchall(
            "vote_distribution",
            """SELECT vote_xp, COUNT(*) AS n FROM judgment_votes
               WHERE case_id=? GROUP BY vote_xp""",
            (case_id,),
        )
        return {int(r["vote_xp"]): int(r["n"]) for r in rows}

    def close_case(
        self,
        case_id: str,
        winning_xp: int,
        validated_review_ids: list[str],
        invalidated_review_ids: list[str],
        now: datetime,
    ) -> bool:
        """Close a case, mark its reviews and finalize its submission.

        All in one transaction. Returns False if the case was already
        closed by a concurrent tally.
        """
        with self._transaction("close_case") as conn:
            row = conn.execute(
                "SELECT submission_id, state FROM vote_cases WHERE case_id=?", (case_id,),
            ).fetchone()
            if row is None:
                raise NotFoundError(f"Vote case not found: {case_id}")
            if row["state"] != VoteCaseState.OPEN.value:
                return False

            conn.execute(
                "UPDATE vote_cases SET state='closed', winning_xp=?, closed_at=? WHERE case_id=?",
                (winning_xp, _ts(now), case_id),
            )
            conn.executemany(
                "UPDATE peer_reviews SET judgment_status=? WHERE review_id=?",
                [(JudgmentStatus.VALIDATED.value, rid) for rid in validated_review_ids]
                + [(JudgmentStatus.INVALIDATED.value, rid) for rid in invalidated_review_ids],
            )
            conn.execute(
                """UPDATE submissions
                   SET status='FINALIZED', final_xp=?, consensus_score=?, confidence='vote',
                       finalized_week=?, finalized_at=?, held_until_week=NULL
                   WHERE submission_id=? AND status='ESCALATED_TO_VOTE'""",
                (winning_xp, float(winning_xp), week_key(now), _ts(now), row["submission_id"]),
            )
        return True

    # -- Shadow log --------------------------------------------------------

    def insert_shadow_log(self, record: ShadowConsensusRecord) -> None:
        self._execute(
            "insert_shadow_log",
            """INSERT INTO shadow_consensus_log
               (submission_id, active_formula_id, active_score, shadow_formula_id,
                shadow_score, delta, details, logged_at)
               VALUES (?,?,?,?,?,?,?,?)""",
            (
                record.submission_id,
                record.active_formula_id,
                record.active_score,
                record.shadow_formula_id,
                record.shadow_score,
                record.delta,
                json.dumps(record.details, sort_keys=True),
                _ts(record.logged_utc),
            ),
        )

    def shadow_logs(
        self,
        limit: int = 50,
        offset: int = 0,
        submission_id: Optional[str] = None,
    ) -> list[ShadowConsensusRecord]:
        if submission_id is None:
            rows = self._fetchall(
                "shadow_logs",
                "SELECT * FROM shadow_consensus_log ORDER BY log_id DESC LIMIT ? OFFSET ?",
                (limit, offset),
            )
        else:
            rows = self._fetchall(
                "shadow_logs",
                """SELECT * FROM shadow_consensus_log WHERE submission_id=?
                   ORDER BY log_id DESC LIMIT ? OFFSET ?""",
                (submission_id, limit, offset),
            )
        return [_row_to_shadow(r) for r in rows]

    def shadow_log_count(self) -> int:
        row = self._fetchone("shadow_log_count", "SELECT COUNT(*) FROM shadow_consensus_log")
        return int(row[0])

    def shadow_summary(self) -> list[dict[str, Any]]:
        rows = self._fetchall(
            "shadow_summary",
            """SELECT shadow_formula_id,
                      COUNT(*)        AS runs,
                      AVG(delta)      AS mean_delta,
                      AVG(ABS(delta)) AS mean_abs_delta,
                      MAX(ABS(delta)) AS max_abs_delta
               FROM shadow_consensus_log
               GROUP BY shadow_formula_id
               ORDER BY shadow_formula_id""",
        )
        return [dict(r) for r in rows]


# ---------------------------------------------------------------------------
# Row mappers
# ---------------------------------------------------------------------------

def _row_to_submission(row: sqlite3.Row, review_ids: list[str]) -> Submission:
    return Submission(
        submission_id=row["submission_id"],
        author_id=row["author_id"],
        ai_score=row["ai_score"],
        platform=row["platform"],
        status=SubmissionStatus(row["status"]),
        week_number=row["week_number"],
        final_xp=row["final_xp"],
        consensus_score=row["consensus_score"],
        confidence=row["confidence"],
        finalized_week=row["finalized_week"],
        held_until_week=row["held_until_week"],
        ai_summary=row["ai_summary"],
        created_utc=_parse_ts(row["created_at"]),
        finalized_utc=_parse_ts(row["finalized_at"]),
        review_ids=review_ids,
    )


def _row_to_review(row: sqlite3.Row) -> PeerReview:
    return PeerReview(
        review_id=row["review_id"],
        submission_id=row["submission_id"],
        reviewer_id=row["reviewer_id"],
        score=int(row["score"]),
        comment=row["comment"],
        quality_rating=row["quality_rating"],
        is_late=bool(row["is_late"]),
        judgment_status=JudgmentStatus(row["judgment_status"]),
        content_category=row["content_category"],
        quality_tier=row["quality_tier"],
        created_utc=_parse_ts(row["created_at"]),
    )


def _row_to_case(row: sqlite3.Row) -> VoteCase:
    return VoteCase(
        case_id=row["case_id"],
        submission_id=row["submission_id"],
        min_score=int(row["min_score"]),
        max_score=int(row["max_score"]),
        review_ids=json.loads(row["review_ids"]),
        conflict_types=[ConflictType(c) for c in json.loads(row["conflicts"])],
        summary=row["summary"],
        insights=json.loads(row["insights"]),
        platform=row["platform"],
        state=VoteCaseState(row["state"]),
        winning_xp=row["winning_xp"],
        opened_utc=_parse_ts(row["opened_at"]),
        closed_utc=_parse_ts(row["closed_at"]),
    )


def _row_to_shadow(row: sqlite3.Row) -> ShadowConsensusRecord:
    return ShadowConsensusRecord(
        submission_id=row["submission_id"],
        active_formula_id=row["active_formula_id"],
        active_score=row["active_score"],
        shadow_formula_id=row["shadow_formula_id"],
        shadow_score=row["shadow_score"],
        delta=row["delta"],
        logged_utc=_parse_ts(row["logged_at"]),
        details=json.loads(row["details"]),
    )

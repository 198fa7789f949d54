"""Shadow evaluation logger - what each shadow formula would have produced.

For every consensus run the service recomputes the weighted average
with each shadow formula's reliability weights and writes one
write-once row per shadow formula. Nothing here can change the
production result: records are built from the finished active
computation, and write failures are logged and swallowed.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Mapping, Optional, Sequence

from scholarxp.consensus.calculator import ConsensusCalculator
from scholarxp.models.consensus import ConsensusComputation, ShadowConsensusRecord
from scholarxp.models.submission import PeerReview
from scholarxp.persistence.store import ReviewStore

logger = logging.getLogger(__name__)


def build_shadow_records(
    calculator: ConsensusCalculator,
    submission_id: str,
    reviews: Sequence[PeerReview],
    active_formula_id: str,
    active: ConsensusComputation,
    shadow_reliability: Mapping[str, Mapping[str, float]],
    logged_utc: Optional[datetime] = None,
) -> list[ShadowConsensusRecord]:
    """One record per shadow formula, recomputed over the same reviews.

    shadow_reliability maps formula id → reviewer id → reliability.
    """
    logged_utc = logged_utc or datetime.now(timezone.utc)
    records: list[ShadowConsensusRecord] = []
    for formula_id, weights in shadow_reliability.items():
        shadow = calculator.compute(reviews, weights)
        records.append(ShadowConsensusRecord(
            submission_id=submission_id,
            active_formula_id=active_formula_id,
            active_score=active.weighted_average,
            shadow_formula_id=formula_id,
            shadow_score=shadow.weighted_average,
            delta=shadow.weighted_average - active.weighted_average,
            logged_utc=logged_utc,
            details={
                "active_final_xp": active.final_xp,
                "shadow_final_xp": shadow.final_xp,
                "active_confidence": active.confidence.value,
                "shadow_confidence": shadow.confidence.value,
                "excluded": shadow.excluded_review_ids,
            },
        ))
    return records


class ShadowLogger:
    """Append-only writer and reader for shadow consensus rows."""

    def __init__(self, store: ReviewStore) -> None:
        self._store = store

    def log(self, record: ShadowConsensusRecord) -> bool:
        """Write one row. Never raises; returns False if the write failed."""
        try:
            self._store.insert_shadow_log(record)
        except Exception:
            logger.warning(
                "Shadow log write failed for submission %s formula %s",
                record.submission_id, record.shadow_formula_id, exc_info=True,
            )
            return False
        return True

    def log_all(self, records: Sequence[ShadowConsensusRecord]) -> int:
        """Write every record independently; returns how many succeeded."""
        return sum(1 for record in records if self.log(record))

    def logs(
        self,
        limit: int = 50,
        offset: int = 0,
        submission_id: Optional[str] = None,
    ) -> list[ShadowConsensusRecord]:
        if limit < 1 or offset < 0:
            raise ValueError("limit must be >= 1 and offset >= 0")
        return self._store.shadow_logs(limit=limit, offset=offset, submission_id=submission_id)

    def summary(self) -> dict[str, dict[str, Any]]:
        """Per shadow formula: runs, mean delta, mean |delta|, max |delta|."""
        return {
            row["shadow_formula_id"]: {
                "runs": row["runs"],
                "mean_delta": row["mean_delta"],
                "mean_abs_delta": row["mean_abs_delta"],
                "max_abs_delta": row["max_abs_delta"],
            }
            for row in self._store.shadow_summary()
        }

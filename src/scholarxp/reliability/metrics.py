"""Reviewer metrics aggregator - raw history to normalized [0, 1] metrics.

Three set-based reads feed one snapshot:
  - review stats: count, lateness, quality ratings, vote outcomes, score moments
  - deviation stats: distance of the reviewer's scores from finalized XP
  - penalty stats: administrative penalty total, missed assignments

The reads are independent and run concurrently; each is wrapped in the
bounded storage retry. Normalization is a pure function of the three
results so it can be tested without a store.

Metric normalization:
  timeliness       = 1 - late / total
  late_percentage  = 1 - late / total
  quality          = (avg_rating - 1) / 4            (unrated → unrated_quality)
  accuracy         = 1 - avg_deviation / max_dev     (nothing finalized → unscored_accuracy)
  vote_validation  = baseline + bonus*validated - penalty*invalidated
  experience       = min(1, total / max_reviews)
  missed_penalty   = 1 - missed * per_assignment
  penalty_score    = 1 - penalty_total / max_penalty
  review_variance  = 1 - stddev(scores) / max_stddev

A reviewer with no reviews gets the configured neutral defaults; the
penalty-derived metrics still reflect any recorded penalties.
"""

from __future__ import annotations

import logging
import math
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from scholarxp.models.reliability import MetricName, ReviewerMetricsSnapshot
from scholarxp.persistence.event_log import EventRecord
from scholarxp.persistence.retry import RetryConfig, call_with_retry
from scholarxp.persistence.store import ReviewStore
from scholarxp.policy.resolver import NormalizationPolicy, PolicyResolver

logger = logging.getLogger(__name__)


def _clamp(value: float, lo: float = 0.0, hi: float = 1.0) -> float:
    return max(lo, min(hi, value))


def normalize_metrics(
    reviewer_id: str,
    as_of: datetime,
    review: dict[str, Any],
    deviation: dict[str, Any],
    penalty: dict[str, Any],
    norm: NormalizationPolicy,
    vote_params: tuple[float, float, float],
    new_reviewer_defaults: dict[MetricName, float],
) -> ReviewerMetricsSnapshot:
    """Build a snapshot from the three aggregate reads. Pure."""
    total = int(review["total"] or 0)
    late = int(review["late"] or 0)
    rated = int(review["rated"] or 0)
    validated = int(review["validated"] or 0)
    invalidated = int(review["invalidated"] or 0)
    compared = int(deviation["compared"] or 0)
    extreme = int(deviation["extreme"] or 0)
    missed = int(penalty["missed"] or 0)
    penalty_total = float(penalty["penalty_total"] or 0.0)

    missed_penalty = _clamp(1.0 - missed * norm.missed_penalty_per_assignment)
    penalty_score = _clamp(1.0 - penalty_total / norm.max_penalty_total)
    assignments = total + missed
    missed_ratio = missed / assignments if assignments > 0 else 0.0

    if total == 0:
        metrics = dict(new_reviewer_defaults)
        metrics[MetricName.MISSED_PENALTY] = missed_penalty
        metrics[MetricName.PENALTY_SCORE] = penalty_score
        return ReviewerMetricsSnapshot(
            reviewer_id=reviewer_id,
            as_of=as_of,
            metrics=metrics,
            missing=frozenset({
                MetricName.QUALITY, MetricName.ACCURACY, MetricName.VOTE_VALIDATION,
            }),
            missed_assignments=missed,
            missed_ratio=missed_ratio,
            penalty_total=penalty_total,
        )

    missing: set[MetricName] = set()
    on_time = 1.0 - late / total

    avg_quality = float(review["avg_quality"] or 0.0)
    if rated > 0:
        quality = _clamp((avg_quality - 1.0) / 4.0)
    else:
        quality = norm.unrated_quality
        missing.add(MetricName.QUALITY)

    avg_deviation = float(deviation["avg_deviation"] or 0.0)
    if compared > 0:
        accuracy = _clamp(1.0 - avg_deviation / norm.max_deviation_for_accuracy)
    else:
        accuracy = norm.unscored_accuracy
        missing.add(MetricName.ACCURACY)

    baseline, bonus, vote_penalty = vote_params
    vote_validation = _clamp(baseline + validated * bonus - invalidated * vote_penalty)
    if validated + invalidated == 0:
        missing.add(MetricName.VOTE_VALIDATION)

    mean = float(review["mean_score"] or 0.0)
    mean_square = float(review["mean_square"] or 0.0)
    # Rounding can push E[x^2] - E[x]^2 a hair below zero
    stddev = math.sqrt(max(0.0, mean_square - mean * mean))

    metrics = {
        MetricName.TIMELINESS: on_time,
        MetricName.LATE_PERCENTAGE: on_time,
        MetricName.QUALITY: quality,
        MetricName.ACCURACY: accuracy,
        MetricName.VOTE_VALIDATION: vote_validation,
        MetricName.EXPERIENCE: min(1.0, total / norm.max_reviews_for_experience),
        MetricName.MISSED_PENALTY: missed_penalty,
        MetricName.PENALTY_SCORE: penalty_score,
        MetricName.REVIEW_VARIANCE: _clamp(1.0 - stddev / norm.max_stddev_for_variance),
    }

    return ReviewerMetricsSnapshot(
        reviewer_id=reviewer_id,
        as_of=as_of,
        metrics=metrics,
        missing=frozenset(missing),
        total_reviews=total,
        late_reviews=late,
        missed_assignments=missed,
        missed_ratio=missed_ratio,
        penalty_total=penalty_total,
        votes_validated=validated,
        votes_invalidated=invalidated,
        avg_quality_rating=avg_quality,
        avg_deviation=avg_deviation,
        score_stddev=stddev,
        extreme_miss_count=extreme,
        extreme_miss_rate=extreme / total,
    )


class MetricsAggregator:
    """Computes ReviewerMetricsSnapshot from stored history.

    Usage:
        aggregator = MetricsAggregator(store, resolver)
        snapshot = aggregator.compute_metrics("reviewer-1")

    Snapshots computed for "now" are cached for metrics_cache_ttl
    seconds. Review judgment events invalidate the reviewer's entry.
    """

    def __init__(
        self,
        store: ReviewStore,
        resolver: PolicyResolver,
        retry: Optional[RetryConfig] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._store = store
        self._resolver = resolver
        self._retry = retry or resolver.storage_retry()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._ttl = resolver.metrics_cache_ttl()
        self._cache: dict[str, tuple[float, ReviewerMetricsSnapshot]] = {}
        self._cache_lock = threading.Lock()
        self._pool = ThreadPoolExecutor(max_workers=3, thread_name_prefix="metrics")

    def compute_metrics(
        self,
        reviewer_id: str,
        as_of: Optional[datetime] = None,
    ) -> ReviewerMetricsSnapshot:
        """Snapshot of reviewer_id's history up to as_of (default: now).

        Raises StorageError once retries are exhausted.
        """
        if as_of is None:
            cached = self._cached(reviewer_id)
            if cached is not None:
                return cached
            snapshot = self._compute(reviewer_id, self._clock())
            with self._cache_lock:
                self._cache[reviewer_id] = (time.monotonic(), snapshot)
            return snapshot
        return self._compute(reviewer_id, as_of)

    def invalidate(self, reviewer_id: Optional[str] = None) -> None:
        """Drop one reviewer's cached snapshot, or all of them."""
        with self._cache_lock:
            if reviewer_id is None:
                self._cache.clear()
            else:
                self._cache.pop(reviewer_id, None)

    def on_review_judged(self, event: EventRecord) -> None:
        """Event-log subscriber for REVIEW_VALIDATED / REVIEW_INVALIDATED."""
        reviewer_id = event.payload.get("reviewer_id")
        if reviewer_id:
            self.invalidate(reviewer_id)
            logger.debug(
                "Metrics cache invalidated for %s after %s",
                reviewer_id, event.event_kind.value,
            )

    def shutdown(self) -> None:
        self._pool.shutdown(wait=True)

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _cached(self, reviewer_id: str) -> Optional[ReviewerMetricsSnapshot]:
        with self._cache_lock:
            entry = self._cache.get(reviewer_id)
        if entry is None:
            return None
        stored_at, snapshot = entry
        if time.monotonic() - stored_at > self._ttl:
            return None
        return snapshot

    def _compute(self, reviewer_id: str, as_of: datetime) -> ReviewerMetricsSnapshot:
        norm = self._resolver.normalization()
        store = self._store

        review_f = self._pool.submit(
            call_with_retry,
            lambda: store.review_stats(reviewer_id, as_of),
            self._retry,
            "review_stats",
        )
        deviation_f = self._pool.submit(
            call_with_retry,
            lambda: store.deviation_stats(reviewer_id, as_of, norm.extreme_miss_points),
            self._retry,
            "deviation_stats",
        )
        penalty_f = self._pool.submit(
            call_with_retry,
            lambda: store.penalty_stats(reviewer_id, as_of),
            self._retry,
            "penalty_stats",
        )

        return normalize_metrics(
            reviewer_id=reviewer_id,
            as_of=as_of,
            review=review_f.result(),
            deviation=deviation_f.result(),
            penalty=penalty_f.result(),
            norm=norm,
            vote_params=self._resolver.vote_validation_params(),
            new_reviewer_defaults=self._resolver.new_reviewer_defaults(),
        )

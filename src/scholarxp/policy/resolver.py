"""Policy resolver - loads consensus_params.json and reliability_formulas.json
and exposes every runtime decision as a typed method call.

No magic. No defaults. If a value is missing from the config, it fails loud.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from scholarxp.models.reliability import MetricName, ReliabilityFormula
from scholarxp.persistence.retry import RetryConfig


@dataclass(frozen=True)
class ConsensusPolicy:
    """Resolved thresholds for one consensus run."""
    min_reviews: int
    outlier_z_threshold: float
    weight_floor: float
    max_expected_stddev: float
    high_max_spread: float
    medium_max_spread: float
    escalation_max_stddev: float


@dataclass(frozen=True)
class NormalizationPolicy:
    """Caps used to squash raw reviewer statistics into [0, 1]."""
    max_reviews_for_experience: int
    max_deviation_for_accuracy: float
    max_stddev_for_variance: float
    max_penalty_total: float
    extreme_miss_points: float
    missed_penalty_per_assignment: float
    unrated_quality: float
    unscored_accuracy: float


@dataclass(frozen=True)
class VotingPolicy:
    min_votes: int
    majority_threshold: float
    zero_vs_high_min_score: int
    large_gap_points: int


class PolicyResolver:
    """Loads and resolves all consensus and reliability policy.

    Usage:
        resolver = PolicyResolver.from_config_dir(Path("config"))
        policy = resolver.consensus_policy()
        active = resolver.formula(resolver.active_formula_id())
    """

    def __init__(
        self,
        params: dict[str, Any],
        formulas: dict[str, Any],
    ) -> None:
        self._params = params
        self._formulas_doc = formulas
        self._validate_versions()
        self._formulas = self._build_formulas()

    @classmethod
    def from_config_dir(cls, config_dir: Path) -> PolicyResolver:
        """Load from the canonical config directory."""
        params = _load_json(config_dir / "consensus_params.json")
        formulas = _load_json(config_dir / "reliability_formulas.json")
        return cls(params, formulas)

    def _validate_versions(self) -> None:
        if "version" not in self._params:
            raise ValueError("consensus_params.json missing version")
        if "version" not in self._formulas_doc:
            raise ValueError("reliability_formulas.json missing version")

    def _build_formulas(self) -> dict[str, ReliabilityFormula]:
        built: dict[str, ReliabilityFormula] = {}
        for raw in self._formulas_doc["formulas"]:
            formula = ReliabilityFormula.create(
                formula_id=raw["id"],
                weights=raw["weights"],
                version=raw["version"],
                default_values=raw.get("default_values", {}),
                name=raw.get("name", ""),
                description=raw.get("description", ""),
            )
            if formula.formula_id in built:
                raise ValueError(f"Duplicate formula id in config: {formula.formula_id}")
            built[formula.formula_id] = formula
        return built

    # ------------------------------------------------------------------
    # Consensus
    # ------------------------------------------------------------------

    def consensus_policy(self) -> ConsensusPolicy:
        c = self._params["consensus"]
        return ConsensusPolicy(
            min_reviews=c["min_reviews"],
            outlier_z_threshold=c["outlier_z_threshold"],
            weight_floor=c["weight_floor"],
            max_expected_stddev=c["max_expected_stddev"],
            high_max_spread=c["confidence"]["high_max_spread"],
            medium_max_spread=c["confidence"]["medium_max_spread"],
            escalation_max_stddev=c["escalation_max_stddev"],
        )

    def min_reviews(self) -> int:
        return self._params["consensus"]["min_reviews"]

    def weekly_finalize_cap(self) -> int:
        """Maximum submissions finalized per author per ISO week."""
        return self._params["consensus"]["weekly_finalize_cap"]

    def accuracy_bonus(self) -> tuple[int, int]:
        """Return (max_deviation, amount) for the reviewer accuracy bonus."""
        ab = self._params["consensus"]["accuracy_bonus"]
        return ab["max_deviation"], ab["amount"]

    # ------------------------------------------------------------------
    # Reliability formulas
    # ------------------------------------------------------------------

    def active_formula_id(self) -> str:
        formula_id = self._params["reliability"]["active_formula"]
        if formula_id not in self._formulas:
            raise ValueError(f"Active formula not defined: {formula_id}")
        return formula_id

    def shadow_formula_ids(self) -> list[str]:
        ids = list(self._params["reliability"]["shadow_formulas"])
        for formula_id in ids:
            if formula_id not in self._formulas:
                raise ValueError(f"Shadow formula not defined: {formula_id}")
        return ids

    def formula(self, formula_id: str) -> ReliabilityFormula:
        formula = self._formulas.get(formula_id)
        if formula is None:
            raise ValueError(f"Unknown reliability formula: {formula_id}")
        return formula

    def formulas(self) -> dict[str, ReliabilityFormula]:
        return dict(self._formulas)

    def use_vote_validation(self) -> bool:
        return self._params["reliability"]["use_vote_validation"]

    def metrics_cache_ttl(self) -> float:
        """Seconds a computed metrics snapshot may be reused."""
        return float(self._params["reliability"]["metrics_cache_ttl_seconds"])

    def normalization(self) -> NormalizationPolicy:
        n = self._params["reliability"]["normalization"]
        return NormalizationPolicy(
            max_reviews_for_experience=n["max_reviews_for_experience"],
            max_deviation_for_accuracy=n["max_deviation_for_accuracy"],
            max_stddev_for_variance=n["max_stddev_for_variance"],
            max_penalty_total=n["max_penalty_total"],
            extreme_miss_points=n["extreme_miss_points"],
            missed_penalty_per_assignment=n["missed_penalty_per_assignment"],
            unrated_quality=n["unrated_quality"],
            unscored_accuracy=n["unscored_accuracy"],
        )

    def vote_validation_params(self) -> tuple[float, float, float]:
        """Return (baseline, bonus, penalty) for the vote-validation metric."""
        vv = self._params["reliability"]["vote_validation"]
        return vv["baseline"], vv["bonus"], vv["penalty"]

    def new_reviewer_defaults(self) -> dict[MetricName, float]:
        """Neutral metric values for a reviewer with no reviews."""
        raw = self._params["reliability"]["new_reviewer_defaults"]
        return {MetricName(k): float(v) for k, v in raw.items()}

    # ------------------------------------------------------------------
    # Reviewer classification
    # ------------------------------------------------------------------

    def bad_reviewer_thresholds(self) -> dict[str, float]:
        return dict(self._params["classification"]["bad"])

    def good_reviewer_thresholds(self) -> dict[str, float]:
        return dict(self._params["classification"]["good"])

    # ------------------------------------------------------------------
    # Voting
    # ------------------------------------------------------------------

    def voting_policy(self) -> VotingPolicy:
        v = self._params["voting"]
        return VotingPolicy(
            min_votes=v["min_votes"],
            majority_threshold=v["majority_threshold"],
            zero_vs_high_min_score=v["zero_vs_high_min_score"],
            large_gap_points=v["large_gap_points"],
        )

    # ------------------------------------------------------------------
    # Storage
    # ------------------------------------------------------------------

    def storage_retry(self) -> RetryConfig:
        r = self._params["storage_retry"]
        return RetryConfig(
            max_attempts=r["max_attempts"],
            base_delay=r["base_delay_seconds"],
            max_delay=r["max_delay_seconds"],
        )


def _load_json(path: Path) -> dict[str, Any]:
    """Load a JSON file or raise with clear path."""
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")
    with path.open("r", encoding="utf-8") as f:
        return json.load(f)

"""Tests for PolicyResolver - proves config loads and fails loud."""

import copy
import json

import pytest
from pathlib import Path

from scholarxp.errors import FormulaError
from scholarxp.models.reliability import MetricName
from scholarxp.persistence.retry import RetryConfig
from scholarxp.policy.resolver import PolicyResolver


CONFIG_DIR = Path(__file__).resolve().parents[1] / "config"


def _load(name: str) -> dict:
    with (CONFIG_DIR / name).open("r", encoding="utf-8") as f:
        return json.load(f)


@pytest.fixture
def resolver() -> PolicyResolver:
    return PolicyResolver.from_config_dir(CONFIG_DIR)


class TestConsensusPolicy:
    def test_defaults(self, resolver: PolicyResolver) -> None:
        policy = resolver.consensus_policy()
        assert policy.min_reviews == 3
        assert policy.outlier_z_threshold == 2.0
        assert policy.weight_floor == 0.1
        assert policy.high_max_spread == 0.2
        assert policy.medium_max_spread == 0.4

    def test_weekly_cap_and_bonus(self, resolver: PolicyResolver) -> None:
        assert resolver.weekly_finalize_cap() == 5
        assert resolver.accuracy_bonus() == (15, 2)


class TestFormulas:
    def test_active_and_shadow(self, resolver: PolicyResolver) -> None:
        assert resolver.active_formula_id() == "LEGACY"
        assert resolver.shadow_formula_ids() == ["CUSTOM_V1"]

    def test_legacy_weights(self, resolver: PolicyResolver) -> None:
        legacy = resolver.formula("LEGACY")
        assert legacy.weights == {MetricName.TIMELINESS: 0.30, MetricName.QUALITY: 0.70}
        assert legacy.default_values == {MetricName.QUALITY: 0.625}

    def test_all_formulas_registered(self, resolver: PolicyResolver) -> None:
        assert set(resolver.formulas()) == {"LEGACY", "CUSTOM_V1", "CUSTOM_V2"}

    def test_unknown_formula(self, resolver: PolicyResolver) -> None:
        with pytest.raises(ValueError, match="Unknown reliability formula"):
            resolver.formula("NOPE")

    def test_active_must_exist(self) -> None:
        params = _load("consensus_params.json")
        params["reliability"]["active_formula"] = "MISSING"
        resolver = PolicyResolver(params, _load("reliability_formulas.json"))
        with pytest.raises(ValueError, match="Active formula not defined"):
            resolver.active_formula_id()

    def test_duplicate_formula_id_rejected(self) -> None:
        formulas = _load("reliability_formulas.json")
        formulas["formulas"].append(copy.deepcopy(formulas["formulas"][0]))
        with pytest.raises(ValueError, match="Duplicate formula id"):
            PolicyResolver(_load("consensus_params.json"), formulas)

    def test_typo_in_formula_rejected_at_load(self) -> None:
        formulas = _load("reliability_formulas.json")
        formulas["formulas"][0]["weights"]["timelyness"] = 0.1
        with pytest.raises(FormulaError, match="unknown metric"):
            PolicyResolver(_load("consensus_params.json"), formulas)


class TestReliabilitySettings:
    def test_normalization(self, resolver: PolicyResolver) -> None:
        norm = resolver.normalization()
        assert norm.max_reviews_for_experience == 50
        assert norm.extreme_miss_points == 50
        assert norm.missed_penalty_per_assignment == 0.25

    def test_vote_validation_params(self, resolver: PolicyResolver) -> None:
        assert resolver.vote_validation_params() == (0.65, 0.02, 0.05)

    def test_new_reviewer_defaults_typed(self, resolver: PolicyResolver) -> None:
        defaults = resolver.new_reviewer_defaults()
        assert defaults[MetricName.EXPERIENCE] == 0.0
        assert defaults[MetricName.REVIEW_VARIANCE] == 0.75


class TestVotingAndStorage:
    def test_voting_policy(self, resolver: PolicyResolver) -> None:
        voting = resolver.voting_policy()
        assert voting.min_votes == 50
        assert voting.majority_threshold == 0.5

    def test_storage_retry(self, resolver: PolicyResolver) -> None:
        retry = resolver.storage_retry()
        assert isinstance(retry, RetryConfig)
        assert retry.max_attempts == 3


class TestLoading:
    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(FileNotFoundError, match="Config file not found"):
            PolicyResolver.from_config_dir(tmp_path)

    def test_missing_version(self) -> None:
        params = _load("consensus_params.json")
        del params["version"]
        with pytest.raises(ValueError, match="missing version"):
            PolicyResolver(params, _load("reliability_formulas.json"))

    def test_missing_key_fails_loud(self) -> None:
        params = _load("consensus_params.json")
        del params["voting"]["min_votes"]
        resolver = PolicyResolver(params, _load("reliability_formulas.json"))
        with pytest.raises(KeyError):
            resolver.voting_policy()

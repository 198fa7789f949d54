"""Consensus module - weighted aggregation and shadow formula logging."""

from scholarxp.consensus.calculator import ConsensusCalculator, round_half_up
from scholarxp.consensus.shadow import ShadowLogger, build_shadow_records

__all__ = [
    "ConsensusCalculator",
    "round_half_up",
    "ShadowLogger",
    "build_shadow_records",
]

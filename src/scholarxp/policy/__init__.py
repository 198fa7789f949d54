"""Policy layer - typed access to consensus and reliability configuration."""

from scholarxp.policy.resolver import (
    ConsensusPolicy,
    NormalizationPolicy,
    PolicyResolver,
    VotingPolicy,
)

__all__ = ["ConsensusPolicy", "NormalizationPolicy", "PolicyResolver", "VotingPolicy"]

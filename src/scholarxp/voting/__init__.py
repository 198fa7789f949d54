"""Voting module - divergence escalation and community vote resolution."""

from scholarxp.voting.escalator import CaseAnalysis, DivergenceEscalator, analyze_case
from scholarxp.voting.resolver import VoteResolver, split_reviews

__all__ = [
    "CaseAnalysis",
    "DivergenceEscalator",
    "analyze_case",
    "VoteResolver",
    "split_reviews",
]

"""Reliability module - reviewer metrics, formula evaluation and classification."""

from scholarxp.reliability.classifier import ReviewerClassifier
from scholarxp.reliability.formulas import FormulaEvaluator
from scholarxp.reliability.metrics import MetricsAggregator, normalize_metrics

__all__ = [
    "ReviewerClassifier",
    "FormulaEvaluator",
    "MetricsAggregator",
    "normalize_metrics",
]

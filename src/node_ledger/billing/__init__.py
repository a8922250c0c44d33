"""
NODE LEDGER - Billing Module

Rate catalog, payout calculator and request classification.
"""

from .rates import Rate, RateCatalog, DEFAULT_RATE
from .calculator import EarningsCalculator, EarningsResult, EarningsBreakdown
from .classifier import RequestClassifier, Classification

__all__ = [
    "Rate",
    "RateCatalog",
    "DEFAULT_RATE",
    "EarningsCalculator",
    "EarningsResult",
    "EarningsBreakdown",
    "RequestClassifier",
    "Classification",
]

"""Solvency evaluation, price sources and the reference rate self-healer."""

from .prices import ReferenceRateSource, SpotPriceSource
from .rate_cache import PriceSyncResult, RateCache, RateReport, RateSelfHealer
from .solvency import (
    Solvency,
    SolvencyEvaluator,
    SolvencyReport,
    compute_solvency,
    drift_percent,
    suggest_price,
    within_price_bound,
)

__all__ = [
    "PriceSyncResult",
    "RateCache",
    "RateReport",
    "RateSelfHealer",
    "ReferenceRateSource",
    "Solvency",
    "SolvencyEvaluator",
    "SolvencyReport",
    "SpotPriceSource",
    "compute_solvency",
    "drift_percent",
    "suggest_price",
    "within_price_bound",
]

# File: parkflow/domain/__init__.py
"""Domain layer: session aggregate, rate selection, fee and discount computation"""

from .models import FeeBreakdown, RatePlan, RateRules, TariffTier, DiscountRule
from .services import FeeComputationService, DiscountRequest, compute_fee

__all__ = [
    "FeeBreakdown", "RatePlan", "RateRules", "TariffTier", "DiscountRule",
    "FeeComputationService", "DiscountRequest", "compute_fee",
]

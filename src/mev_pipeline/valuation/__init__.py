"""
Valuation Module.

Monte Carlo valuation of candidate opportunities, the competition arrival
model it samples from, and the pluggable per-type pricing functions.
"""
from .pricing import (
    PricingEstimate,
    PricingError,
    PricingFunction,
    DEFAULT_PRICING,
    price_arbitrage,
    price_liquidation,
    price_sandwich
)
from .competition_model import CompetitionModel, CompetitionConfig
from .valuation_engine import (
    Valuation,
    ValuationConfig,
    ValuationEngine,
    ValuationError,
    InsufficientData
)

__all__ = [
    # Pricing
    "PricingEstimate",
    "PricingError",
    "PricingFunction",
    "DEFAULT_PRICING",
    "price_arbitrage",
    "price_liquidation",
    "price_sandwich",

    # Competition
    "CompetitionModel",
    "CompetitionConfig",

    # Engine
    "Valuation",
    "ValuationConfig",
    "ValuationEngine",
    "ValuationError",
    "InsufficientData"
]

"""
MEV Opportunity Detection Module.

This module provides the opportunity models, the per-type detectors
(arbitrage, liquidation, sandwich), their static registry and the fan-out
detector used by the pipeline.
"""
from .opportunity_models import (
    Opportunity,
    OpportunityType,
    OpportunityStatus,
    RejectionReason,
    ArbitrageDetails,
    LiquidationDetails,
    SandwichDetails,
    TERMINAL_STATUSES,
    make_opportunity_key
)
from .base_detector import Detector, DetectorConfig
from .arbitrage_detector import ArbitrageDetector
from .liquidation_detector import LiquidationDetector
from .sandwich_detector import SandwichDetector
from .detector_registry import DETECTOR_REGISTRY, create_detectors
from .opportunity_detector import MEVOpportunityDetector

__all__ = [
    # Opportunity Models
    "Opportunity",
    "OpportunityType",
    "OpportunityStatus",
    "RejectionReason",
    "ArbitrageDetails",
    "LiquidationDetails",
    "SandwichDetails",
    "TERMINAL_STATUSES",
    "make_opportunity_key",

    # Detectors
    "Detector",
    "DetectorConfig",
    "ArbitrageDetector",
    "LiquidationDetector",
    "SandwichDetector",
    "DETECTOR_REGISTRY",
    "create_detectors",

    # Opportunity Detection
    "MEVOpportunityDetector"
]

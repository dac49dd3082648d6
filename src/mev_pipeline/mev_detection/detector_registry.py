"""Static detector registry keyed by opportunity type."""
from typing import Dict, Iterable, List, Optional, Type

from .arbitrage_detector import ArbitrageDetector
from .base_detector import Detector, DetectorConfig
from .liquidation_detector import LiquidationDetector
from .opportunity_models import OpportunityType
from .sandwich_detector import SandwichDetector

DETECTOR_REGISTRY: Dict[OpportunityType, Type[Detector]] = {
    OpportunityType.ARBITRAGE: ArbitrageDetector,
    OpportunityType.LIQUIDATION: LiquidationDetector,
    OpportunityType.SANDWICH: SandwichDetector
}


def create_detectors(
    config: DetectorConfig = None,
    enabled: Optional[Iterable[OpportunityType]] = None
) -> List[Detector]:
    """Instantiate detectors for the enabled opportunity types (all by default)."""
    config = config or DetectorConfig()
    types = list(enabled) if enabled is not None else list(DETECTOR_REGISTRY)
    return [DETECTOR_REGISTRY[opportunity_type](config) for opportunity_type in types]

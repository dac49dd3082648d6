"""
MEV Opportunity Detector.

Fans a batch of changed market snapshots out to every registered detector and
collects the candidate opportunities they emit.
"""
import logging
import time
from typing import Any, Dict, Iterable, List, Optional, Sequence

from mev_pipeline.market_state import MarketSnapshot, MarketStateCache

from .base_detector import Detector, DetectorConfig
from .detector_registry import create_detectors
from .opportunity_models import Opportunity, OpportunityType

logger = logging.getLogger(__name__)


class MEVOpportunityDetector:
    """
    Runs all detectors over state changes.

    A failing detector is logged and skipped; the remaining detectors still run
    and the pipeline keeps going.
    """

    def __init__(
        self,
        cache: MarketStateCache,
        config: DetectorConfig = None,
        detectors: Optional[List[Detector]] = None,
        enabled: Optional[Iterable[OpportunityType]] = None
    ):
        self.cache = cache
        self.config = config or DetectorConfig()
        self.detectors = detectors if detectors is not None else create_detectors(self.config, enabled)

        self.stats = {
            "evaluations": 0,
            "candidates_detected": 0,
            "detector_errors": 0,
            "total_profit_detected": 0.0
        }
        self.stats_by_type: Dict[OpportunityType, int] = {t: 0 for t in OpportunityType}

    def detect(
        self,
        changed: Sequence[MarketSnapshot],
        now: Optional[float] = None
    ) -> List[Opportunity]:
        """Evaluate changed snapshots with every interested detector."""
        if now is None:
            now = time.time()
        self.stats["evaluations"] += 1

        candidates = []
        for detector in self.detectors:
            if not any(detector.interested_in(snapshot) for snapshot in changed):
                continue
            try:
                found = detector.evaluate(changed, self.cache, now)
            except Exception as e:
                self.stats["detector_errors"] += 1
                logger.error(f"Error in {detector.opportunity_type.value} detector: {e}")
                continue

            for opportunity in found:
                self.stats["candidates_detected"] += 1
                self.stats["total_profit_detected"] += opportunity.estimated_profit
                self.stats_by_type[opportunity.opportunity_type] += 1
            candidates.extend(found)

        return candidates

    def get_stats(self) -> Dict[str, Any]:
        """Get detection statistics."""
        return {
            **self.stats,
            "by_type": {t.value: count for t, count in self.stats_by_type.items()},
            "detectors": [d.opportunity_type.value for d in self.detectors]
        }

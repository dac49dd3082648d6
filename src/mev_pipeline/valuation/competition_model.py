"""
Competition arrival model.

Estimates the probability that another searcher captures an opportunity before
our bundle lands. The probability grows with the opportunity's age and shrinks
as our observed relative speed improves:

    p = max_probability * (1 - exp(-arrival_rate * type_multiplier * age / speed))

Relative speed is calibrated from bundle outcomes reported by the outcome feed.
"""
import logging
import math
import threading
from dataclasses import dataclass, field
from typing import Any, Dict

from mev_pipeline.config.settings import Settings
from mev_pipeline.mev_detection.opportunity_models import OpportunityType

logger = logging.getLogger(__name__)


@dataclass
class CompetitionConfig:
    """Configuration for the competition arrival model."""

    arrival_rate: float = 0.5           # Competitor arrivals per second at speed 1.0
    max_probability: float = 0.95

    # Liquidations attract fewer, slower searchers; sandwiches are contested hardest
    type_multipliers: Dict[OpportunityType, float] = field(default_factory=lambda: {
        OpportunityType.ARBITRAGE: 1.0,
        OpportunityType.LIQUIDATION: 0.6,
        OpportunityType.SANDWICH: 1.5
    })

    initial_speed: float = 1.0
    min_speed: float = 0.1
    max_speed: float = 10.0
    learning_rate: float = 0.05

    @classmethod
    def from_settings(cls, settings: Settings) -> "CompetitionConfig":
        return cls(
            arrival_rate=settings.competition_arrival_rate,
            max_probability=settings.max_competition_probability
        )


class CompetitionModel:
    """Competition probability per opportunity type with outcome calibration."""

    def __init__(self, config: CompetitionConfig = None):
        self.config = config or CompetitionConfig()
        self._speeds: Dict[OpportunityType, float] = {
            opportunity_type: self.config.initial_speed for opportunity_type in OpportunityType
        }
        self._lock = threading.Lock()

        self.stats = {
            "outcomes_recorded": 0,
            "landed": 0,
            "lost": 0
        }

    def probability(self, opportunity_type: OpportunityType, age_seconds: float) -> float:
        """Probability a competitor lands first, monotonically increasing in age."""
        if age_seconds <= 0 or self.config.arrival_rate <= 0:
            return 0.0

        multiplier = self.config.type_multipliers.get(opportunity_type, 1.0)
        rate = self.config.arrival_rate * multiplier / self.speed(opportunity_type)
        return self.config.max_probability * (1.0 - math.exp(-rate * age_seconds))

    def speed(self, opportunity_type: OpportunityType) -> float:
        return self._speeds[opportunity_type]

    def record_outcome(self, opportunity_type: OpportunityType, landed: bool) -> float:
        """
        Calibrate relative speed from a bundle outcome.

        Returns:
            Updated relative speed for the opportunity type
        """
        with self._lock:
            current = self._speeds[opportunity_type]
            factor = 1 + self.config.learning_rate if landed else 1 - self.config.learning_rate
            updated = min(self.config.max_speed, max(self.config.min_speed, current * factor))
            self._speeds[opportunity_type] = updated

            self.stats["outcomes_recorded"] += 1
            self.stats["landed" if landed else "lost"] += 1

        logger.debug(
            f"Competition speed for {opportunity_type.value}: {current:.3f} -> {updated:.3f} "
            f"({'landed' if landed else 'lost'})"
        )
        return updated

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self.stats,
            "speeds": {t.value: s for t, s in self._speeds.items()}
        }

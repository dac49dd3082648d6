"""Common detector capability and configuration."""
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import ClassVar, Dict, List, Optional, Sequence, Tuple

from mev_pipeline.config.settings import Settings
from mev_pipeline.market_state import MarketSnapshot, MarketStateCache

from .opportunity_models import Opportunity, OpportunityType

logger = logging.getLogger(__name__)


@dataclass
class DetectorConfig:
    """Configuration shared by all detectors."""

    # Timing
    block_time_seconds: float = 0.4
    expiry_blocks: Dict[OpportunityType, int] = field(default_factory=lambda: {
        OpportunityType.ARBITRAGE: 4,
        OpportunityType.LIQUIDATION: 10,
        OpportunityType.SANDWICH: 1
    })
    staleness_window_seconds: float = 5.0

    # Thresholds
    min_profit: float = 0.01
    arbitrage_trade_size: float = 1.0
    arbitrage_depth_fractions: Tuple[float, ...] = (0.0001, 0.0005, 0.001, 0.005, 0.01, 0.05, 0.1)
    default_liquidation_threshold: float = 1.10
    min_victim_trade_size: float = 1000.0

    # Sandwich sizing
    max_front_run_fraction: float = 0.5
    sandwich_uncertainty: float = 3.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "DetectorConfig":
        return cls(
            block_time_seconds=settings.block_time_seconds,
            expiry_blocks={
                OpportunityType.ARBITRAGE: settings.arbitrage_expiry_blocks,
                OpportunityType.LIQUIDATION: settings.liquidation_expiry_blocks,
                OpportunityType.SANDWICH: settings.sandwich_expiry_blocks
            },
            staleness_window_seconds=settings.staleness_window_seconds,
            min_profit=settings.min_profit_threshold,
            arbitrage_trade_size=settings.arbitrage_trade_size,
            arbitrage_depth_fractions=tuple(settings.arbitrage_depth_fractions),
            default_liquidation_threshold=settings.default_liquidation_threshold,
            min_victim_trade_size=settings.min_victim_trade_size
        )

    def deadline(self, opportunity_type: OpportunityType, now: float) -> float:
        """Expiry deadline from the per-type block budget."""
        return now + self.expiry_blocks[opportunity_type] * self.block_time_seconds


class Detector(ABC):
    """
    A detector for one opportunity type.

    Detectors are pure with respect to the pipeline: they read the cache and
    return candidates, never touching the registry. A detector that lacks the
    snapshots it needs returns nothing and tries again on the next update.
    """

    opportunity_type: ClassVar[OpportunityType]

    def __init__(self, config: DetectorConfig = None):
        self.config = config or DetectorConfig()

    @abstractmethod
    def interested_in(self, snapshot: MarketSnapshot) -> bool:
        """Whether a changed snapshot can produce candidates for this detector."""

    @abstractmethod
    def evaluate(
        self,
        changed: Sequence[MarketSnapshot],
        cache: MarketStateCache,
        now: Optional[float] = None
    ) -> List[Opportunity]:
        """Evaluate changed snapshots and return candidate opportunities."""

    def is_fresh(self, snapshot: MarketSnapshot, now: float) -> bool:
        return snapshot.age(now) <= self.config.staleness_window_seconds

    def _relevant(self, changed: Sequence[MarketSnapshot]) -> List[MarketSnapshot]:
        return [snapshot for snapshot in changed if self.interested_in(snapshot)]

    @staticmethod
    def _now(now: Optional[float]) -> float:
        return time.time() if now is None else now

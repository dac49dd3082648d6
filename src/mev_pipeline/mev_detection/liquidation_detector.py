"""Under-collateralized lending position detection."""
import logging
from typing import List, Optional, Sequence

from mev_pipeline.market_state import MarketSnapshot, MarketStateCache, SnapshotKind

from .base_detector import Detector
from .opportunity_models import (
    LiquidationDetails,
    Opportunity,
    OpportunityType,
    make_opportunity_key
)

logger = logging.getLogger(__name__)


class LiquidationDetector(Detector):
    """Emits one candidate per position whose collateral ratio is below threshold."""

    opportunity_type = OpportunityType.LIQUIDATION

    def interested_in(self, snapshot: MarketSnapshot) -> bool:
        return snapshot.kind == SnapshotKind.LENDING_POSITION

    def evaluate(
        self,
        changed: Sequence[MarketSnapshot],
        cache: MarketStateCache,
        now: Optional[float] = None
    ) -> List[Opportunity]:
        now = self._now(now)
        opportunities = []

        for snapshot in self._relevant(changed):
            if not self.is_fresh(snapshot, now):
                logger.debug(f"Skipping stale position {snapshot.venue_id}/{snapshot.instrument_id}")
                continue

            position = snapshot.position
            threshold = position.liquidation_threshold or self.config.default_liquidation_threshold
            ratio = position.collateral_ratio
            if ratio >= threshold:
                continue

            repay_amount = position.debt_value * position.close_factor
            details = LiquidationDetails(
                venue_id=snapshot.venue_id,
                position_id=snapshot.instrument_id,
                protocol=position.protocol,
                borrower=position.borrower,
                collateral_token=position.collateral_token,
                debt_token=position.debt_token,
                collateral_ratio=ratio,
                liquidation_threshold=threshold,
                repay_amount=repay_amount,
                liquidation_bonus=position.liquidation_bonus,
                requires_flash_loan=position.requires_flash_loan
            )

            logger.info(
                f"Liquidatable position {snapshot.instrument_id} on {snapshot.venue_id}: "
                f"ratio {ratio:.4f} < {threshold:.4f}"
            )

            opportunities.append(Opportunity(
                key=make_opportunity_key(
                    self.opportunity_type, [snapshot.venue_id], [snapshot.instrument_id]
                ),
                opportunity_type=self.opportunity_type,
                details=details,
                inputs=(snapshot.ref(),),
                estimated_profit=repay_amount * position.liquidation_bonus,
                created_at=now,
                updated_at=now,
                expires_at=self.config.deadline(self.opportunity_type, now)
            ))

        return opportunities

"""Front-run / back-run detection around large pending trades."""
import logging
from typing import List, Optional, Sequence

from mev_pipeline.market_state import (
    MarketSnapshot,
    MarketStateCache,
    PendingTrade,
    SnapshotKind,
    sandwich_capture
)

from .base_detector import Detector
from .opportunity_models import (
    Opportunity,
    OpportunityType,
    SandwichDetails,
    make_opportunity_key
)

logger = logging.getLogger(__name__)


class SandwichDetector(Detector):
    """
    Emits a sandwich candidate for each large pending trade in a pool snapshot.

    Candidates carry an uncertainty multiplier above 1.0 so the valuation engine
    samples wider slippage for them.
    """

    opportunity_type = OpportunityType.SANDWICH

    def interested_in(self, snapshot: MarketSnapshot) -> bool:
        return snapshot.kind == SnapshotKind.POOL and bool(snapshot.pool.pending_trades)

    def front_run_fraction(self, trade: PendingTrade) -> float:
        """Front-run size as a share of the victim trade."""
        # Larger victims and looser tolerances leave more room
        size_factor = min(trade.amount / 10000, 2.0)
        tolerance_factor = min(trade.slippage_tolerance / 0.03, 1.5)
        return min(0.2 * size_factor * tolerance_factor, self.config.max_front_run_fraction)

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
                logger.debug(f"Skipping stale pool {snapshot.venue_id}/{snapshot.instrument_id}")
                continue

            pool = snapshot.pool
            liquidity = pool.liquidity()
            if liquidity is None:
                logger.debug(f"Skipping {snapshot.venue_id}/{snapshot.instrument_id}: no reserve data")
                continue

            for trade in pool.pending_trades:
                if trade.amount < self.config.min_victim_trade_size:
                    continue

                front_run_size = trade.amount * self.front_run_fraction(trade)
                profit = sandwich_capture(
                    front_run_size, trade.amount, trade.slippage_tolerance, liquidity, pool.fee_rate
                )
                if profit < self.config.min_profit:
                    logger.debug(f"Sandwich on {trade.tx_hash} below threshold: {profit:.6f}")
                    continue

                details = SandwichDetails(
                    venue_id=snapshot.venue_id,
                    pool_id=snapshot.instrument_id,
                    target_tx_hash=trade.tx_hash,
                    victim_side=trade.side,
                    victim_amount=trade.amount,
                    victim_slippage_tolerance=trade.slippage_tolerance,
                    front_run_size=front_run_size,
                    pool_liquidity=liquidity,
                    fee_rate=pool.fee_rate
                )

                logger.info(
                    f"Sandwich candidate around {trade.tx_hash} on {snapshot.venue_id}: "
                    f"front-run {front_run_size:.2f}, profit {profit:.6f}"
                )

                opportunities.append(Opportunity(
                    key=make_opportunity_key(
                        self.opportunity_type,
                        [snapshot.venue_id],
                        [snapshot.instrument_id, trade.tx_hash]
                    ),
                    opportunity_type=self.opportunity_type,
                    details=details,
                    inputs=(snapshot.ref(),),
                    estimated_profit=profit,
                    uncertainty_multiplier=self.config.sandwich_uncertainty,
                    created_at=now,
                    updated_at=now,
                    expires_at=self.config.deadline(self.opportunity_type, now)
                ))

        return opportunities

"""Cross-venue arbitrage detection."""
import logging
import math
from typing import List, Optional, Sequence

from mev_pipeline.market_state import (
    MarketSnapshot,
    MarketStateCache,
    SnapshotKind,
    effective_buy_price,
    effective_sell_price
)

from .base_detector import Detector
from .opportunity_models import (
    ArbitrageDetails,
    Opportunity,
    OpportunityType,
    make_opportunity_key
)

logger = logging.getLogger(__name__)


class ArbitrageDetector(Detector):
    """
    Compares effective rates for one instrument across every venue quoting it.

    Each ordered (buy venue, sell venue) pair is priced at a ladder of trade
    sizes scaled to the shallower pool's base reserves, with the venue fee and
    pool slippage applied. The (pair, size) with the largest profit wins;
    venues are scanned in id order and only a strictly larger profit displaces
    the current best, so ties resolve the same way on every run.
    """

    opportunity_type = OpportunityType.ARBITRAGE

    def interested_in(self, snapshot: MarketSnapshot) -> bool:
        return snapshot.kind == SnapshotKind.POOL

    def evaluate(
        self,
        changed: Sequence[MarketSnapshot],
        cache: MarketStateCache,
        now: Optional[float] = None
    ) -> List[Opportunity]:
        now = self._now(now)
        instruments = sorted({snapshot.instrument_id for snapshot in self._relevant(changed)})

        opportunities = []
        for instrument_id in instruments:
            opportunity = self._evaluate_instrument(instrument_id, cache, now)
            if opportunity is not None:
                opportunities.append(opportunity)
        return opportunities

    def trade_sizes(self, buy: MarketSnapshot, sell: MarketSnapshot) -> List[float]:
        """
        Candidate sizes for a venue pair, smallest first.

        Fractions of the shallower pool's base reserves, never below the
        configured minimum size. Pools without reserve data add no depth
        information, so a pair with none falls back to the minimum size alone.
        """
        minimum = self.config.arbitrage_trade_size
        depths = [
            snapshot.pool.reserve_base for snapshot in (buy, sell)
            if snapshot.pool.reserve_base is not None
        ]
        if not depths:
            return [minimum]

        depth = min(depths)
        sizes = {minimum}
        sizes.update(
            depth * fraction for fraction in self.config.arbitrage_depth_fractions
            if depth * fraction >= minimum
        )
        return sorted(sizes)

    def _evaluate_instrument(
        self,
        instrument_id: str,
        cache: MarketStateCache,
        now: float
    ) -> Optional[Opportunity]:
        quotes = [
            snapshot for snapshot in cache.snapshots_for_instrument(instrument_id, SnapshotKind.POOL)
            if self.is_fresh(snapshot, now)
        ]
        if len(quotes) < 2:
            logger.debug(f"Skipping {instrument_id}: {len(quotes)} fresh venue(s) quoting")
            return None

        best = None
        best_profit = -math.inf

        for buy in quotes:
            for sell in quotes:
                if sell.venue_id == buy.venue_id:
                    continue
                for size in self.trade_sizes(buy, sell):
                    buy_price = effective_buy_price(buy.pool, size)
                    if math.isinf(buy_price):
                        continue
                    sell_price = effective_sell_price(sell.pool, size)
                    profit = size * (sell_price - buy_price)
                    if profit > best_profit:
                        best_profit = profit
                        best = (buy, sell, size, buy_price, sell_price)

        if best is None:
            return None

        buy, sell, size, buy_price, sell_price = best
        profit = best_profit
        if profit < self.config.min_profit:
            return None

        details = ArbitrageDetails(
            instrument_id=instrument_id,
            buy_venue=buy.venue_id,
            sell_venue=sell.venue_id,
            trade_size=size,
            buy_price=buy.pool.price,
            sell_price=sell.pool.price,
            effective_buy_price=buy_price,
            effective_sell_price=sell_price
        )

        logger.info(
            f"Arbitrage on {instrument_id}: buy {buy.venue_id} @ {buy_price:.6f}, "
            f"sell {sell.venue_id} @ {sell_price:.6f}, size {size:.4f}, profit {profit:.6f}"
        )

        return Opportunity(
            key=make_opportunity_key(
                self.opportunity_type, [buy.venue_id, sell.venue_id], [instrument_id]
            ),
            opportunity_type=self.opportunity_type,
            details=details,
            inputs=(buy.ref(), sell.ref()),
            estimated_profit=profit,
            created_at=now,
            updated_at=now,
            expires_at=self.config.deadline(self.opportunity_type, now)
        )

"""
Default pricing functions for each opportunity type.

A pricing function re-reads the opportunity's venues from the market state
cache and returns the gross profit and the notional exposed to execution
slippage. The valuation engine layers simulated slippage and competition on
top of this deterministic estimate.
"""
import logging
import math
from dataclasses import dataclass
from typing import Callable, Dict

from mev_pipeline.market_state import MarketStateCache, PoolState, amm_math
from mev_pipeline.mev_detection.opportunity_models import (
    ArbitrageDetails,
    LiquidationDetails,
    Opportunity,
    OpportunityType,
    SandwichDetails
)

logger = logging.getLogger(__name__)


class PricingError(Exception):
    """The opportunity cannot be priced from current market state."""
    pass


@dataclass(frozen=True)
class PricingEstimate:
    """Deterministic profit estimate for one execution."""
    gross_profit: float
    notional: float


PricingFunction = Callable[[Opportunity, MarketStateCache], PricingEstimate]


def _pool(cache: MarketStateCache, venue_id: str, instrument_id: str) -> PoolState:
    snapshot = cache.get(venue_id, instrument_id)
    if snapshot.pool is None:
        raise PricingError(f"{venue_id}/{instrument_id} does not carry pool state")
    return snapshot.pool


def price_arbitrage(opportunity: Opportunity, cache: MarketStateCache) -> PricingEstimate:
    """Buy on the cheaper venue and sell on the richer one at current quotes."""
    details: ArbitrageDetails = opportunity.details
    buy_pool = _pool(cache, details.buy_venue, details.instrument_id)
    sell_pool = _pool(cache, details.sell_venue, details.instrument_id)

    buy_price = amm_math.effective_buy_price(buy_pool, details.trade_size)
    sell_price = amm_math.effective_sell_price(sell_pool, details.trade_size)
    if math.isinf(buy_price):
        raise PricingError(
            f"Trade size {details.trade_size} exceeds reserves on {details.buy_venue}"
        )

    return PricingEstimate(
        gross_profit=details.trade_size * (sell_price - buy_price),
        notional=details.trade_size * buy_price
    )


def price_liquidation(opportunity: Opportunity, cache: MarketStateCache) -> PricingEstimate:
    """Liquidation bonus earned on the repayable share of the debt."""
    details: LiquidationDetails = opportunity.details
    snapshot = cache.get(details.venue_id, details.position_id)
    position = snapshot.position
    if position is None:
        raise PricingError(f"{details.venue_id}/{details.position_id} is not a lending position")

    repay_amount = position.debt_value * position.close_factor
    notional = repay_amount * (1 + position.liquidation_bonus)

    if position.collateral_ratio >= details.liquidation_threshold:
        # Position recovered since detection
        logger.debug(
            f"Position {details.position_id} no longer liquidatable "
            f"(ratio {position.collateral_ratio:.4f})"
        )
        return PricingEstimate(gross_profit=0.0, notional=notional)

    return PricingEstimate(
        gross_profit=repay_amount * position.liquidation_bonus,
        notional=notional
    )


def price_sandwich(opportunity: Opportunity, cache: MarketStateCache) -> PricingEstimate:
    """
    Price movement captured between the front-run and the back-run.

    The target transaction must still be pending in the latest pool snapshot.
    """
    details: SandwichDetails = opportunity.details
    pool = _pool(cache, details.venue_id, details.pool_id)

    pending = {trade.tx_hash for trade in pool.pending_trades}
    if details.target_tx_hash not in pending:
        raise PricingError(f"Target transaction {details.target_tx_hash} is no longer pending")

    liquidity = pool.liquidity() or details.pool_liquidity
    return PricingEstimate(
        gross_profit=amm_math.sandwich_capture(
            details.front_run_size,
            details.victim_amount,
            details.victim_slippage_tolerance,
            liquidity,
            pool.fee_rate
        ),
        notional=details.front_run_size
    )


DEFAULT_PRICING: Dict[OpportunityType, PricingFunction] = {
    OpportunityType.ARBITRAGE: price_arbitrage,
    OpportunityType.LIQUIDATION: price_liquidation,
    OpportunityType.SANDWICH: price_sandwich
}

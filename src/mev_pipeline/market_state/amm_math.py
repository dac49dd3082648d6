"""
Constant Product Pricing Helpers.

Effective execution prices for a pool snapshot after the venue fee and the
size-dependent slippage of the constant product curve (x * y = k). Pools
without reserve data are treated as infinitely deep.
"""
import logging
import math

from .snapshots import PoolState

logger = logging.getLogger(__name__)


def buy_slippage(pool: PoolState, size: float) -> float:
    """
    Relative price increase when buying `size` base units out of the pool.

    Taking dx out of reserve x costs y * dx / (x - dx), so the average price is
    p * x / (x - dx) and the slippage is dx / (x - dx).
    """
    if size <= 0 or pool.reserve_base is None:
        return 0.0
    if size >= pool.reserve_base:
        return math.inf
    return size / (pool.reserve_base - size)


def sell_slippage(pool: PoolState, size: float) -> float:
    """Relative price decrease when selling `size` base units into the pool."""
    if size <= 0 or pool.reserve_base is None:
        return 0.0
    return size / (pool.reserve_base + size)


def effective_buy_price(pool: PoolState, size: float) -> float:
    """Quote paid per base unit, fee and slippage included."""
    slippage = buy_slippage(pool, size)
    if math.isinf(slippage):
        logger.debug(f"Buy of {size} would drain pool with reserve {pool.reserve_base}")
        return math.inf
    return pool.price * (1 + pool.fee_rate) * (1 + slippage)


def effective_sell_price(pool: PoolState, size: float) -> float:
    """Quote received per base unit, fee and slippage included."""
    return pool.price * (1 - pool.fee_rate) * (1 - sell_slippage(pool, size))


def price_impact(amount: float, liquidity: float) -> float:
    """Fractional price move caused by trading `amount` quote against `liquidity`."""
    if amount <= 0 or liquidity <= 0:
        return 0.0
    return amount / (liquidity + amount)


def sandwich_capture(
    front_run_size: float,
    victim_amount: float,
    slippage_tolerance: float,
    liquidity: float,
    fee_rate: float
) -> float:
    """
    Net capture of a front-run/back-run pair around a victim trade.

    The victim moves the price by its impact on pool liquidity, but never past
    its own slippage tolerance, otherwise its transaction reverts. Both legs pay
    the pool fee.
    """
    price_move = min(price_impact(victim_amount, liquidity), slippage_tolerance)
    return front_run_size * price_move - 2 * fee_rate * front_run_size

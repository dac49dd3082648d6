"""
Market State Module.

Immutable market snapshots, the cache that holds the latest snapshot per
(venue, instrument) pair, and constant product pricing helpers.
"""
from .snapshots import (
    MarketSnapshot,
    SnapshotKind,
    SnapshotRef,
    PoolState,
    LendingPositionState,
    PendingTrade,
    TradeSide
)
from .state_cache import (
    MarketStateCache,
    CachedSnapshot,
    MarketStateError,
    StaleUpdate,
    NotFound,
    CacheConsistencyError
)
from .amm_math import (
    buy_slippage,
    sell_slippage,
    effective_buy_price,
    effective_sell_price,
    price_impact,
    sandwich_capture
)

__all__ = [
    # Snapshot models
    "MarketSnapshot",
    "SnapshotKind",
    "SnapshotRef",
    "PoolState",
    "LendingPositionState",
    "PendingTrade",
    "TradeSide",

    # Cache
    "MarketStateCache",
    "CachedSnapshot",
    "MarketStateError",
    "StaleUpdate",
    "NotFound",
    "CacheConsistencyError",

    # Pricing helpers
    "buy_slippage",
    "sell_slippage",
    "effective_buy_price",
    "effective_sell_price",
    "price_impact",
    "sandwich_capture"
]

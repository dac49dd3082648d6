"""Shared fixtures for pipeline tests."""
import pytest

from mev_pipeline.market_state import (
    LendingPositionState,
    MarketSnapshot,
    MarketStateCache,
    PendingTrade,
    PoolState
)

NOW = 1_700_000_000.0


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, start: float = NOW):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(clock):
    return MarketStateCache(staleness_window_seconds=5.0, clock=clock)


@pytest.fixture
def pool_snapshot(clock):
    """Factory for pool snapshots observed at the fake clock's time."""
    def _make(
        venue_id="venue-a",
        instrument_id="ETH-USDC",
        sequence=1,
        price=100.0,
        fee_rate=0.001,
        reserve_base=None,
        reserve_quote=None,
        pending_trades=(),
        timestamp=None
    ):
        return MarketSnapshot(
            venue_id=venue_id,
            instrument_id=instrument_id,
            sequence=sequence,
            timestamp=clock.now if timestamp is None else timestamp,
            pool=PoolState(
                price=price,
                fee_rate=fee_rate,
                reserve_base=reserve_base,
                reserve_quote=reserve_quote,
                pending_trades=tuple(pending_trades)
            )
        )
    return _make


@pytest.fixture
def position_snapshot(clock):
    """Factory for lending position snapshots."""
    def _make(
        venue_id="lender",
        instrument_id="position-1",
        sequence=1,
        collateral_value=1040.0,
        debt_value=1000.0,
        liquidation_threshold=1.10,
        liquidation_bonus=0.05,
        close_factor=0.5,
        requires_flash_loan=True,
        timestamp=None
    ):
        return MarketSnapshot(
            venue_id=venue_id,
            instrument_id=instrument_id,
            sequence=sequence,
            timestamp=clock.now if timestamp is None else timestamp,
            position=LendingPositionState(
                protocol="aave",
                borrower="0xborrower",
                collateral_token="WETH",
                debt_token="USDC",
                collateral_value=collateral_value,
                debt_value=debt_value,
                liquidation_threshold=liquidation_threshold,
                liquidation_bonus=liquidation_bonus,
                close_factor=close_factor,
                requires_flash_loan=requires_flash_loan
            )
        )
    return _make


@pytest.fixture
def pending_trade():
    def _make(tx_hash="0xvictim", amount=20000.0, slippage_tolerance=0.03, side="buy"):
        return PendingTrade(
            tx_hash=tx_hash,
            amount=amount,
            slippage_tolerance=slippage_tolerance,
            side=side
        )
    return _make

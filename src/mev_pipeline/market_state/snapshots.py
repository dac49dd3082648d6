"""
Market Snapshot Data Models.

Immutable records of venue state delivered by the ingestion feeds. A snapshot
is never mutated; a newer snapshot with a higher sequence number supersedes it.
"""
import time
from enum import Enum
from typing import Optional, Tuple

from pydantic import BaseModel, Field, model_validator


class SnapshotKind(str, Enum):
    """Kinds of market state a snapshot can carry."""
    POOL = "pool"                           # AMM pool reserves / quoted price
    LENDING_POSITION = "lending_position"   # Single borrower position


class TradeSide(str, Enum):
    """Direction of a pending trade relative to the pool's base asset."""
    BUY = "buy"
    SELL = "sell"


class PendingTrade(BaseModel):
    """A pending trade visible in the mempool for a pool."""

    model_config = {"frozen": True}

    tx_hash: str = Field(..., description="Hash of the pending transaction")
    trader: str = Field(default="", description="Sender of the pending transaction")
    side: TradeSide = Field(default=TradeSide.BUY, description="Buy or sell of the base asset")
    amount: float = Field(..., description="Trade notional in quote units", ge=0)
    slippage_tolerance: float = Field(default=0.005, description="Victim slippage tolerance", ge=0, lt=1)
    priority_fee: float = Field(default=0.0, description="Priority fee attached by the sender", ge=0)


class PoolState(BaseModel):
    """Reserve / order-book state of a trading pool on one venue."""

    model_config = {"frozen": True}

    price: float = Field(..., description="Quoted price, quote units per base unit", gt=0)
    fee_rate: float = Field(default=0.003, description="Swap fee rate", ge=0, lt=1)
    reserve_base: Optional[float] = Field(None, description="Base-asset reserves", gt=0)
    reserve_quote: Optional[float] = Field(None, description="Quote-asset reserves", gt=0)
    pending_trades: Tuple[PendingTrade, ...] = Field(
        default=(), description="Pending trades against this pool"
    )

    def liquidity(self) -> Optional[float]:
        """Pool depth in quote units, None when reserves are unknown."""
        if self.reserve_quote is not None:
            return self.reserve_quote
        if self.reserve_base is not None:
            return self.reserve_base * self.price
        return None


class LendingPositionState(BaseModel):
    """State of a single borrower position on a lending venue."""

    model_config = {"frozen": True}

    protocol: str = Field(..., description="Lending protocol name")
    borrower: str = Field(..., description="Borrower account")
    collateral_token: str = Field(..., description="Collateral asset")
    debt_token: str = Field(..., description="Debt asset")
    collateral_value: float = Field(..., description="Collateral value in quote units", ge=0)
    debt_value: float = Field(..., description="Debt value in quote units", ge=0)
    liquidation_threshold: Optional[float] = Field(
        None, description="Collateral ratio below which the position is liquidatable", gt=0
    )
    liquidation_bonus: float = Field(default=0.05, description="Bonus paid on repaid debt", ge=0)
    close_factor: float = Field(default=0.5, description="Share of debt repayable per liquidation", gt=0, le=1)
    requires_flash_loan: bool = Field(default=True, description="Repayment funded by a flash loan")

    @property
    def collateral_ratio(self) -> float:
        if self.debt_value == 0:
            return float("inf")
        return self.collateral_value / self.debt_value


class SnapshotRef(BaseModel):
    """Reference to the exact snapshot an opportunity was derived from."""

    model_config = {"frozen": True}

    venue_id: str
    instrument_id: str
    sequence: int

    @property
    def key(self) -> Tuple[str, str]:
        return (self.venue_id, self.instrument_id)


class MarketSnapshot(BaseModel):
    """Latest known state of one instrument on one venue."""

    model_config = {"frozen": True}

    venue_id: str = Field(..., description="Venue identifier")
    instrument_id: str = Field(..., description="Instrument, pool or position identifier")
    sequence: int = Field(..., description="Feed sequence number", ge=0)
    timestamp: float = Field(default_factory=time.time, description="When the state was observed")

    pool: Optional[PoolState] = Field(None, description="Pool state payload")
    position: Optional[LendingPositionState] = Field(None, description="Lending position payload")

    @model_validator(mode="after")
    def check_payload(self) -> "MarketSnapshot":
        if (self.pool is None) == (self.position is None):
            raise ValueError("snapshot must carry exactly one of pool or position state")
        return self

    @property
    def kind(self) -> SnapshotKind:
        return SnapshotKind.POOL if self.pool is not None else SnapshotKind.LENDING_POSITION

    @property
    def key(self) -> Tuple[str, str]:
        return (self.venue_id, self.instrument_id)

    def ref(self) -> SnapshotRef:
        return SnapshotRef(
            venue_id=self.venue_id,
            instrument_id=self.instrument_id,
            sequence=self.sequence
        )

    def age(self, now: Optional[float] = None) -> float:
        """Seconds since the snapshot was observed."""
        if now is None:
            now = time.time()
        return max(0.0, now - self.timestamp)

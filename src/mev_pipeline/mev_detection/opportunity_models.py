"""
MEV Opportunity Data Models.

Defines the immutable opportunity record that flows through detection,
valuation, acceptance and bundling. Status changes never mutate a record;
the registry replaces it with a new version.
"""
import time
import uuid
from enum import Enum
from typing import Annotated, Any, Dict, Iterable, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, Field

from mev_pipeline.market_state.snapshots import SnapshotRef, TradeSide


class OpportunityType(str, Enum):
    """Types of MEV opportunities."""
    ARBITRAGE = "arbitrage"         # Cross-venue price discrepancy
    LIQUIDATION = "liquidation"     # Under-collateralized lending position
    SANDWICH = "sandwich"           # Front-run / back-run around a pending trade


class OpportunityStatus(str, Enum):
    """Status of the opportunity lifecycle."""
    CANDIDATE = "candidate"         # Emitted by a detector
    VALUED = "valued"               # Priced by the valuation engine
    ACCEPTED = "accepted"           # Passed the acceptance policy
    BUNDLED = "bundled"             # Bundle constructed
    SUBMITTED = "submitted"         # Handed to the block engine
    LANDED = "landed"               # Bundle landed on chain
    REJECTED = "rejected"           # Dropped with a reason
    EXPIRED = "expired"             # Deadline passed

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({
    OpportunityStatus.LANDED,
    OpportunityStatus.REJECTED,
    OpportunityStatus.EXPIRED
})


class RejectionReason(str, Enum):
    """Why an opportunity ended without landing."""
    BELOW_THRESHOLD = "below_threshold"
    EXPIRED = "expired"
    INVALIDATED_BY_NEW_SNAPSHOT = "invalidated_by_new_snapshot"
    INSUFFICIENT_DATA = "insufficient_data"
    CONSTRUCTION_FAILED = "construction_failed"
    SUBMISSION_REJECTED = "submission_rejected"
    SUBMISSION_TIMEOUT = "submission_timeout"
    HIGH_RISK = "high_risk"
    PIPELINE_ERROR = "pipeline_error"


class ArbitrageDetails(BaseModel):
    """Buy on one venue, sell on another."""

    model_config = {"frozen": True}

    kind: Literal["arbitrage"] = "arbitrage"
    instrument_id: str
    buy_venue: str
    sell_venue: str
    trade_size: float = Field(..., description="Base-asset units traded", gt=0)
    buy_price: float = Field(..., gt=0)
    sell_price: float = Field(..., gt=0)
    effective_buy_price: float = Field(..., description="Buy price after fee and slippage", gt=0)
    effective_sell_price: float = Field(..., description="Sell price after fee and slippage", gt=0)

    @property
    def spread(self) -> float:
        return self.effective_sell_price - self.effective_buy_price


class LiquidationDetails(BaseModel):
    """Repay part of an under-collateralized position for the liquidation bonus."""

    model_config = {"frozen": True}

    kind: Literal["liquidation"] = "liquidation"
    venue_id: str
    position_id: str
    protocol: str
    borrower: str
    collateral_token: str
    debt_token: str
    collateral_ratio: float = Field(..., ge=0)
    liquidation_threshold: float = Field(..., gt=0)
    repay_amount: float = Field(..., description="Debt repaid, in quote units", ge=0)
    liquidation_bonus: float = Field(..., ge=0)
    requires_flash_loan: bool = True


class SandwichDetails(BaseModel):
    """Front-run and back-run around a known pending trade."""

    model_config = {"frozen": True}

    kind: Literal["sandwich"] = "sandwich"
    venue_id: str
    pool_id: str
    target_tx_hash: str
    victim_side: TradeSide
    victim_amount: float = Field(..., ge=0)
    victim_slippage_tolerance: float = Field(..., ge=0)
    front_run_size: float = Field(..., description="Front-run notional in quote units", ge=0)
    pool_liquidity: float = Field(..., gt=0)
    fee_rate: float = Field(..., ge=0)


OpportunityDetails = Annotated[
    Union[ArbitrageDetails, LiquidationDetails, SandwichDetails],
    Field(discriminator="kind")
]


def make_opportunity_key(
    opportunity_type: OpportunityType,
    venues: Iterable[str],
    instruments: Iterable[str]
) -> str:
    """Derive the dedup key: identical type, venue set and instrument set collide."""
    return "|".join([
        opportunity_type.value,
        ",".join(sorted(set(venues))),
        ",".join(sorted(set(instruments)))
    ])


class Opportunity(BaseModel):
    """A candidate MEV opportunity and its lifecycle state."""

    model_config = {"frozen": True}

    opportunity_id: str = Field(default_factory=lambda: uuid.uuid4().hex, description="Unique instance id")
    key: str = Field(..., description="Dedup key derived from type, venues and instruments")
    opportunity_type: OpportunityType = Field(..., description="Type of MEV opportunity")
    status: OpportunityStatus = Field(default=OpportunityStatus.CANDIDATE, description="Current status")
    version: int = Field(default=0, description="Incremented on every status transition", ge=0)

    details: OpportunityDetails
    inputs: Tuple[SnapshotRef, ...] = Field(..., description="Snapshots the opportunity was derived from")

    estimated_profit: float = Field(..., description="Detector's deterministic profit estimate")
    uncertainty_multiplier: float = Field(
        default=1.0, description="Scales sampled slippage in valuation", ge=1.0
    )

    created_at: float = Field(default_factory=time.time, description="When the opportunity was detected")
    expires_at: float = Field(..., description="Hard deadline for landing")
    updated_at: float = Field(default_factory=time.time)

    rejection_reason: Optional[RejectionReason] = None
    rejection_detail: Optional[str] = None
    attempt: int = Field(default=0, description="Re-bundling attempt number", ge=0)
    bundle_id: Optional[str] = None

    metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def high_uncertainty(self) -> bool:
        return self.uncertainty_multiplier > 1.0

    @property
    def venues(self) -> List[str]:
        return sorted({ref.venue_id for ref in self.inputs})

    @property
    def input_keys(self) -> List[Tuple[str, str]]:
        return [ref.key for ref in self.inputs]

    def is_expired(self, now: Optional[float] = None) -> bool:
        if now is None:
            now = time.time()
        return now >= self.expires_at

    def time_to_expiry(self, now: Optional[float] = None) -> float:
        if now is None:
            now = time.time()
        return max(0.0, self.expires_at - now)

    def age(self, now: Optional[float] = None) -> float:
        if now is None:
            now = time.time()
        return max(0.0, now - self.created_at)

    def advance(self, status: OpportunityStatus, now: Optional[float] = None, **changes: Any) -> "Opportunity":
        """Return the next version with a new status. Only the registry calls this."""
        update = dict(changes)
        update.update(
            status=status,
            version=self.version + 1,
            updated_at=now if now is not None else time.time()
        )
        return self.model_copy(update=update)

    def fresh_attempt(
        self,
        inputs: Tuple[SnapshotRef, ...],
        now: Optional[float] = None
    ) -> "Opportunity":
        """New candidate instance for the same key, used by the retry policy."""
        if now is None:
            now = time.time()
        return Opportunity(
            key=self.key,
            opportunity_type=self.opportunity_type,
            details=self.details,
            inputs=inputs,
            estimated_profit=self.estimated_profit,
            uncertainty_multiplier=self.uncertainty_multiplier,
            created_at=self.created_at,
            expires_at=self.expires_at,
            updated_at=now,
            attempt=self.attempt + 1,
            metadata=dict(self.metadata)
        )

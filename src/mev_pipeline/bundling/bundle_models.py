"""
Bundle Data Models.

A bundle is an ordered, atomically-landed set of transaction descriptors. The
order is fixed when the bundle is built; submission progress produces new
copies through `with_status`, never in-place edits.
"""
import time
from enum import Enum
from typing import Any, Dict, Optional, Sequence, Tuple

from pydantic import BaseModel, Field, model_validator
from web3 import Web3

from mev_pipeline.market_state import SnapshotRef
from mev_pipeline.mev_detection.opportunity_models import OpportunityType


class TransactionRole(str, Enum):
    """Role of a transaction inside a bundle."""
    FLASH_BORROW = "flash_borrow"
    BUY = "buy"
    SELL = "sell"
    LIQUIDATE = "liquidate"
    REPAY = "repay"
    FRONT_RUN = "front_run"
    TARGET = "target"           # Third-party transaction, referenced for ordering only
    BACK_RUN = "back_run"
    TIP = "tip"


class BundleStatus(str, Enum):
    """Submission status of a bundle."""
    CONSTRUCTED = "constructed"
    SUBMITTED = "submitted"
    LANDED = "landed"
    REJECTED = "rejected"
    TIMEOUT = "timeout"


class TransactionDescriptor(BaseModel):
    """One step of a bundle."""

    model_config = {"frozen": True}

    tx_id: str = Field(..., description="Identifier unique within the bundle")
    role: TransactionRole
    venue_id: Optional[str] = None
    instrument_id: Optional[str] = None
    amount: float = Field(default=0.0, ge=0)
    authored: bool = Field(default=True, description="False for referenced third-party transactions")
    depends_on: Tuple[str, ...] = Field(default=(), description="Transactions that must precede this one")
    params: Dict[str, Any] = Field(default_factory=dict)


class Bundle(BaseModel):
    """Ordered transactions realizing one accepted opportunity."""

    model_config = {"frozen": True}

    bundle_id: str
    opportunity_id: str
    opportunity_key: str
    opportunity_type: OpportunityType
    attempt: int = 0

    transactions: Tuple[TransactionDescriptor, ...] = Field(..., min_length=1)
    tip: float = Field(..., ge=0)
    network_fee: float = Field(..., ge=0)
    expected_profit: float
    competition_probability: float = Field(default=0.0, ge=0, le=1)
    input_sequences: Tuple[SnapshotRef, ...] = ()

    status: BundleStatus = BundleStatus.CONSTRUCTED
    created_at: float = Field(default_factory=time.time)

    @model_validator(mode="after")
    def check_dependency_order(self) -> "Bundle":
        validate_dependency_order(self.transactions)
        return self

    @property
    def authored_transactions(self) -> Tuple[TransactionDescriptor, ...]:
        return tuple(tx for tx in self.transactions if tx.authored)

    @property
    def roles(self) -> Tuple[TransactionRole, ...]:
        return tuple(tx.role for tx in self.transactions)

    def with_status(self, status: BundleStatus) -> "Bundle":
        return self.model_copy(update={"status": status})


def validate_dependency_order(transactions: Sequence[TransactionDescriptor]) -> None:
    """
    Check every dependency points at an earlier transaction.

    Raises:
        ValueError: duplicate ids, unknown dependencies or a consumer placed
            before its producer
    """
    seen = set()
    for tx in transactions:
        if tx.tx_id in seen:
            raise ValueError(f"Duplicate transaction id {tx.tx_id}")
        for dependency in tx.depends_on:
            if dependency not in seen:
                raise ValueError(f"Transaction {tx.tx_id} depends on {dependency}, which does not precede it")
        seen.add(tx.tx_id)


def compute_bundle_id(opportunity_id: str, attempt: int, transactions: Sequence[TransactionDescriptor]) -> str:
    """Content hash of the bundle's identity and ordered steps."""
    body = "|".join(
        [opportunity_id, str(attempt)] + [f"{tx.tx_id}:{tx.role.value}:{tx.amount!r}" for tx in transactions]
    )
    return Web3.to_hex(Web3.keccak(text=body))

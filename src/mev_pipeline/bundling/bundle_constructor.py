"""
Bundle Constructor.

Turns an accepted opportunity and its valuation into an ordered bundle:

    arbitrage:    buy -> sell -> tip
    liquidation:  [flash borrow] -> liquidate -> [repay] -> tip
    sandwich:     front-run -> target (referenced) -> back-run -> tip

The tip grows with the competition probability and always leaves the safety
margin of expected profit on the table.
"""
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from pydantic import ValidationError

from mev_pipeline.config.settings import Settings
from mev_pipeline.market_state import MarketStateCache, SnapshotRef, TradeSide
from mev_pipeline.mev_detection.opportunity_models import (
    ArbitrageDetails,
    LiquidationDetails,
    Opportunity,
    OpportunityStatus,
    OpportunityType,
    RejectionReason,
    SandwichDetails
)
from mev_pipeline.valuation.valuation_engine import Valuation

from .bundle_models import Bundle, TransactionDescriptor, TransactionRole, compute_bundle_id

logger = logging.getLogger(__name__)


class BundleConstructionError(Exception):
    """Base exception for bundle construction errors."""
    pass


class ConstructionFailed(BundleConstructionError):
    """The opportunity cannot be realized as a bundle."""

    def __init__(self, reason: RejectionReason, detail: str):
        self.reason = reason
        self.detail = detail
        super().__init__(f"{reason.value}: {detail}")


@dataclass
class BundleConfig:
    """Tip sizing and cost parameters."""
    base_tip_fraction: float = 0.1
    max_tip_fraction: float = 0.5
    min_tip: float = 0.001
    safety_margin: float = 0.01
    network_fee: float = 0.005
    staleness_window_seconds: float = 5.0

    def __post_init__(self):
        if not 0 <= self.base_tip_fraction <= self.max_tip_fraction < 1:
            raise ValueError("tip fractions must satisfy 0 <= base <= max < 1")

    @classmethod
    def from_settings(cls, settings: Settings) -> "BundleConfig":
        return cls(
            base_tip_fraction=settings.base_tip_fraction,
            max_tip_fraction=settings.max_tip_fraction,
            min_tip=settings.min_tip,
            safety_margin=settings.tip_safety_margin,
            network_fee=settings.network_fee,
            staleness_window_seconds=settings.staleness_window_seconds
        )


class BundleConstructor:
    """Builds dependency-ordered bundles from current market state."""

    def __init__(
        self,
        cache: MarketStateCache,
        config: BundleConfig = None,
        clock=time.time
    ):
        self.cache = cache
        self.config = config or BundleConfig()
        self.clock = clock

        self.stats = {
            "bundles_constructed": 0,
            "construction_failures": 0,
            "total_tips": 0.0
        }

    def construct(
        self,
        opportunity: Opportunity,
        valuation: Valuation,
        now: Optional[float] = None
    ) -> Bundle:
        """
        Build the bundle for an accepted opportunity.

        Raises:
            ConstructionFailed: inputs went stale or were superseded, the tip
                leaves no room under the profit margin, or the legs cannot be
                ordered
        """
        if now is None:
            now = self.clock()

        try:
            bundle = self._construct(opportunity, valuation, now)
        except ConstructionFailed as e:
            self.stats["construction_failures"] += 1
            logger.warning(f"Bundle construction failed for {opportunity.key}: {e}")
            raise

        self.stats["bundles_constructed"] += 1
        self.stats["total_tips"] += bundle.tip
        logger.info(
            f"Constructed bundle {bundle.bundle_id[:18]} for {opportunity.key}: "
            f"{len(bundle.transactions)} txs, tip {bundle.tip:.6f}, "
            f"expected profit {bundle.expected_profit:.6f}"
        )
        return bundle

    def compute_tip(self, expected_profit: float, competition_probability: float) -> float:
        """
        Tip between the minimum tip and the profit ceiling.

        The share of the available room that is tipped is interpolated between
        the base and max fractions by competition probability. The ceiling is
        expected profit minus the safety margin and is never reached.
        """
        ceiling = expected_profit - self.config.safety_margin
        if ceiling <= self.config.min_tip:
            raise ConstructionFailed(
                RejectionReason.BELOW_THRESHOLD,
                f"no room for a tip: expected profit {expected_profit:.6f}, "
                f"margin {self.config.safety_margin:.6f}, min tip {self.config.min_tip:.6f}"
            )

        probability = min(max(competition_probability, 0.0), 1.0)
        fraction = self.config.base_tip_fraction + (
            self.config.max_tip_fraction - self.config.base_tip_fraction
        ) * probability
        return self.config.min_tip + fraction * (ceiling - self.config.min_tip)

    def _construct(self, opportunity: Opportunity, valuation: Valuation, now: float) -> Bundle:
        if opportunity.status != OpportunityStatus.ACCEPTED:
            raise ConstructionFailed(
                RejectionReason.CONSTRUCTION_FAILED,
                f"opportunity is {opportunity.status.value}, not accepted"
            )
        if valuation.opportunity_id != opportunity.opportunity_id:
            raise ConstructionFailed(
                RejectionReason.CONSTRUCTION_FAILED,
                "valuation belongs to a different opportunity instance"
            )

        self._check_inputs(valuation.input_sequences, now)

        legs = self._legs(opportunity)
        tip = self.compute_tip(valuation.expected_profit, valuation.competition_probability)
        legs.append(TransactionDescriptor(
            tx_id=f"t{len(legs)}",
            role=TransactionRole.TIP,
            amount=tip,
            depends_on=(legs[-1].tx_id,)
        ))

        try:
            return Bundle(
                bundle_id=compute_bundle_id(opportunity.opportunity_id, opportunity.attempt, legs),
                opportunity_id=opportunity.opportunity_id,
                opportunity_key=opportunity.key,
                opportunity_type=opportunity.opportunity_type,
                attempt=opportunity.attempt,
                transactions=tuple(legs),
                tip=tip,
                network_fee=self.config.network_fee,
                expected_profit=valuation.expected_profit,
                competition_probability=valuation.competition_probability,
                input_sequences=valuation.input_sequences,
                created_at=now
            )
        except ValidationError as e:
            raise ConstructionFailed(RejectionReason.CONSTRUCTION_FAILED, str(e)) from e

    def _check_inputs(self, refs: Tuple[SnapshotRef, ...], now: float) -> None:
        for ref in refs:
            snapshot = self.cache.find(ref.venue_id, ref.instrument_id)
            if snapshot is None:
                raise ConstructionFailed(
                    RejectionReason.INVALIDATED_BY_NEW_SNAPSHOT,
                    f"{ref.venue_id}/{ref.instrument_id} no longer cached"
                )
            if snapshot.sequence != ref.sequence:
                raise ConstructionFailed(
                    RejectionReason.INVALIDATED_BY_NEW_SNAPSHOT,
                    f"{ref.venue_id}/{ref.instrument_id} moved from sequence "
                    f"{ref.sequence} to {snapshot.sequence}"
                )
            if snapshot.age(now) > self.config.staleness_window_seconds:
                raise ConstructionFailed(
                    RejectionReason.INVALIDATED_BY_NEW_SNAPSHOT,
                    f"{ref.venue_id}/{ref.instrument_id} is stale ({snapshot.age(now):.2f}s old)"
                )

    def _legs(self, opportunity: Opportunity) -> List[TransactionDescriptor]:
        if opportunity.opportunity_type == OpportunityType.ARBITRAGE:
            return self._arbitrage_legs(opportunity.details)
        if opportunity.opportunity_type == OpportunityType.LIQUIDATION:
            return self._liquidation_legs(opportunity.details)
        if opportunity.opportunity_type == OpportunityType.SANDWICH:
            return self._sandwich_legs(opportunity.details)
        raise ConstructionFailed(
            RejectionReason.CONSTRUCTION_FAILED,
            f"no bundle layout for {opportunity.opportunity_type.value}"
        )

    def _arbitrage_legs(self, details: ArbitrageDetails) -> List[TransactionDescriptor]:
        buy = TransactionDescriptor(
            tx_id="t0",
            role=TransactionRole.BUY,
            venue_id=details.buy_venue,
            instrument_id=details.instrument_id,
            amount=details.trade_size,
            params={"max_price": details.effective_buy_price}
        )
        sell = TransactionDescriptor(
            tx_id="t1",
            role=TransactionRole.SELL,
            venue_id=details.sell_venue,
            instrument_id=details.instrument_id,
            amount=details.trade_size,
            depends_on=(buy.tx_id,),
            params={"min_price": details.effective_sell_price}
        )
        return [buy, sell]

    def _liquidation_legs(self, details: LiquidationDetails) -> List[TransactionDescriptor]:
        common: Dict[str, Any] = {
            "venue_id": details.venue_id,
            "instrument_id": details.position_id
        }
        legs = []

        if details.requires_flash_loan:
            legs.append(TransactionDescriptor(
                tx_id="t0",
                role=TransactionRole.FLASH_BORROW,
                amount=details.repay_amount,
                params={"token": details.debt_token},
                **common
            ))

        liquidate = TransactionDescriptor(
            tx_id=f"t{len(legs)}",
            role=TransactionRole.LIQUIDATE,
            amount=details.repay_amount,
            depends_on=tuple(tx.tx_id for tx in legs),
            params={
                "protocol": details.protocol,
                "borrower": details.borrower,
                "collateral_token": details.collateral_token,
                "debt_token": details.debt_token
            },
            **common
        )
        legs.append(liquidate)

        if details.requires_flash_loan:
            legs.append(TransactionDescriptor(
                tx_id=f"t{len(legs)}",
                role=TransactionRole.REPAY,
                amount=details.repay_amount,
                depends_on=(legs[0].tx_id, liquidate.tx_id),
                params={"token": details.debt_token},
                **common
            ))
        return legs

    def _sandwich_legs(self, details: SandwichDetails) -> List[TransactionDescriptor]:
        exit_side = TradeSide.SELL if details.victim_side == TradeSide.BUY else TradeSide.BUY
        common: Dict[str, Any] = {
            "venue_id": details.venue_id,
            "instrument_id": details.pool_id
        }
        front_run = TransactionDescriptor(
            tx_id="t0",
            role=TransactionRole.FRONT_RUN,
            amount=details.front_run_size,
            params={"side": details.victim_side.value},
            **common
        )
        target = TransactionDescriptor(
            tx_id="t1",
            role=TransactionRole.TARGET,
            amount=details.victim_amount,
            authored=False,
            depends_on=(front_run.tx_id,),
            params={"tx_hash": details.target_tx_hash},
            **common
        )
        back_run = TransactionDescriptor(
            tx_id="t2",
            role=TransactionRole.BACK_RUN,
            amount=details.front_run_size,
            depends_on=(front_run.tx_id, target.tx_id),
            params={"side": exit_side.value},
            **common
        )
        return [front_run, target, back_run]

    def get_stats(self) -> Dict[str, Any]:
        stats = self.stats.copy()
        if stats["bundles_constructed"] > 0:
            stats["average_tip"] = stats["total_tips"] / stats["bundles_constructed"]
        else:
            stats["average_tip"] = 0.0
        return stats

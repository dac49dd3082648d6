"""
Unit tests for bundle construction and tip sizing.
"""
import pytest

from mev_pipeline.bundling import (
    BundleConfig,
    BundleConstructor,
    ConstructionFailed,
    TransactionDescriptor,
    TransactionRole,
    validate_dependency_order
)
from mev_pipeline.mev_detection import (
    ArbitrageDetector,
    LiquidationDetector,
    OpportunityStatus,
    RejectionReason,
    SandwichDetector
)
from mev_pipeline.valuation import CompetitionConfig, CompetitionModel, ValuationConfig, ValuationEngine


@pytest.fixture
def constructor(cache, clock):
    return BundleConstructor(cache, BundleConfig(), clock=clock)


@pytest.fixture
def engine(cache, clock):
    return ValuationEngine(
        cache,
        ValuationConfig(sample_count=200, seed=5, slippage_volatility=0.00001),
        competition_model=CompetitionModel(CompetitionConfig(arrival_rate=0.0)),
        clock=clock
    )


def accepted(opportunity, clock):
    return opportunity.advance(OpportunityStatus.ACCEPTED, clock.now)


class TestTipSizing:
    """Test the competition-driven tip."""

    def test_tip_without_competition_uses_base_fraction(self, constructor):
        assert constructor.compute_tip(0.25, 0.0) == pytest.approx(0.001 + 0.1 * 0.239)

    def test_tip_under_certain_competition_uses_max_fraction(self, constructor):
        assert constructor.compute_tip(0.25, 1.0) == pytest.approx(0.001 + 0.5 * 0.239)

    def test_tip_increases_with_competition(self, constructor):
        tips = [constructor.compute_tip(1.0, p) for p in (0.0, 0.3, 0.6, 0.9)]
        assert tips == sorted(tips)

    def test_tip_stays_below_margin(self, constructor):
        for expected in (0.02, 0.1, 5.0):
            tip = constructor.compute_tip(expected, 1.0)
            assert 0.001 <= tip < expected - 0.01

    def test_no_room_for_tip(self, constructor):
        with pytest.raises(ConstructionFailed) as exc_info:
            constructor.compute_tip(0.011, 0.5)
        assert exc_info.value.reason == RejectionReason.BELOW_THRESHOLD

    def test_invalid_fractions(self):
        with pytest.raises(ValueError):
            BundleConfig(base_tip_fraction=0.6, max_tip_fraction=0.5)


class TestBundleLayouts:
    """Test per-type transaction ordering."""

    def test_arbitrage_bundle(self, cache, clock, pool_snapshot, constructor, engine):
        cache.update(pool_snapshot(venue_id="venue-a", price=100.0))
        changed = pool_snapshot(venue_id="venue-b", price=100.5)
        cache.update(changed)
        opportunity = ArbitrageDetector().evaluate([changed], cache, clock.now)[0]
        valuation = engine.value(opportunity, now=clock.now)

        bundle = constructor.construct(accepted(opportunity, clock), valuation)

        assert bundle.roles == (TransactionRole.BUY, TransactionRole.SELL, TransactionRole.TIP)
        assert bundle.transactions[0].venue_id == "venue-a"
        assert bundle.transactions[1].venue_id == "venue-b"
        assert bundle.transactions[-1].amount == bundle.tip
        assert bundle.tip < valuation.expected_profit - 0.01
        assert bundle.bundle_id.startswith("0x") and len(bundle.bundle_id) == 66
        assert bundle.input_sequences == valuation.input_sequences

    def test_bundle_id_is_deterministic(self, cache, clock, pool_snapshot, constructor, engine):
        cache.update(pool_snapshot(venue_id="venue-a", price=100.0))
        changed = pool_snapshot(venue_id="venue-b", price=100.5)
        cache.update(changed)
        opportunity = accepted(ArbitrageDetector().evaluate([changed], cache, clock.now)[0], clock)
        valuation = engine.value(opportunity, now=clock.now)

        first = constructor.construct(opportunity, valuation)
        second = constructor.construct(opportunity, valuation)
        assert first.bundle_id == second.bundle_id

    def test_liquidation_with_flash_loan(self, cache, clock, position_snapshot, constructor, engine):
        changed = position_snapshot()
        cache.update(changed)
        opportunity = LiquidationDetector().evaluate([changed], cache, clock.now)[0]
        valuation = engine.value(opportunity, now=clock.now)

        bundle = constructor.construct(accepted(opportunity, clock), valuation)

        assert bundle.roles == (
            TransactionRole.FLASH_BORROW,
            TransactionRole.LIQUIDATE,
            TransactionRole.REPAY,
            TransactionRole.TIP
        )
        assert bundle.transactions[2].depends_on == ("t0", "t1")

    def test_liquidation_without_flash_loan(self, cache, clock, position_snapshot, constructor, engine):
        changed = position_snapshot(requires_flash_loan=False)
        cache.update(changed)
        opportunity = LiquidationDetector().evaluate([changed], cache, clock.now)[0]
        valuation = engine.value(opportunity, now=clock.now)

        bundle = constructor.construct(accepted(opportunity, clock), valuation)

        assert bundle.roles == (TransactionRole.LIQUIDATE, TransactionRole.TIP)

    def test_sandwich_references_target(self, cache, clock, pool_snapshot, pending_trade, constructor, engine):
        changed = pool_snapshot(fee_rate=0.003, reserve_quote=1_000_000.0, pending_trades=[pending_trade()])
        cache.update(changed)
        opportunity = SandwichDetector().evaluate([changed], cache, clock.now)[0]
        valuation = engine.value(opportunity, now=clock.now)

        bundle = constructor.construct(accepted(opportunity, clock), valuation)

        assert bundle.roles == (
            TransactionRole.FRONT_RUN,
            TransactionRole.TARGET,
            TransactionRole.BACK_RUN,
            TransactionRole.TIP
        )
        target = bundle.transactions[1]
        assert not target.authored
        assert target.params["tx_hash"] == "0xvictim"
        assert TransactionRole.TARGET not in [tx.role for tx in bundle.authored_transactions]
        assert bundle.transactions[2].params["side"] == "sell"


class TestConstructionFailures:
    """Test rejected constructions."""

    @pytest.fixture
    def valued(self, cache, clock, pool_snapshot, engine):
        cache.update(pool_snapshot(venue_id="venue-a", price=100.0))
        changed = pool_snapshot(venue_id="venue-b", price=100.5)
        cache.update(changed)
        opportunity = ArbitrageDetector().evaluate([changed], cache, clock.now)[0]
        return opportunity, engine.value(opportunity, now=clock.now)

    def test_superseded_input(self, valued, cache, clock, pool_snapshot, constructor):
        opportunity, valuation = valued
        cache.update(pool_snapshot(venue_id="venue-a", sequence=2, price=100.1))

        with pytest.raises(ConstructionFailed) as exc_info:
            constructor.construct(accepted(opportunity, clock), valuation)
        assert exc_info.value.reason == RejectionReason.INVALIDATED_BY_NEW_SNAPSHOT

    def test_stale_input(self, valued, clock, constructor):
        opportunity, valuation = valued
        clock.advance(6.0)

        with pytest.raises(ConstructionFailed) as exc_info:
            constructor.construct(accepted(opportunity, clock), valuation)
        assert exc_info.value.reason == RejectionReason.INVALIDATED_BY_NEW_SNAPSHOT

    def test_requires_accepted_status(self, valued, constructor):
        opportunity, valuation = valued
        with pytest.raises(ConstructionFailed) as exc_info:
            constructor.construct(opportunity, valuation)
        assert exc_info.value.reason == RejectionReason.CONSTRUCTION_FAILED

    def test_valuation_must_match_instance(self, valued, clock, constructor):
        opportunity, valuation = valued
        other = valuation.model_copy(update={"opportunity_id": "other"})
        with pytest.raises(ConstructionFailed):
            constructor.construct(accepted(opportunity, clock), other)
        assert constructor.get_stats()["construction_failures"] == 1


class TestDependencyOrder:
    """Test dependency validation."""

    def test_dependency_must_precede(self):
        transactions = [
            TransactionDescriptor(tx_id="t0", role=TransactionRole.SELL, depends_on=("t1",)),
            TransactionDescriptor(tx_id="t1", role=TransactionRole.BUY)
        ]
        with pytest.raises(ValueError):
            validate_dependency_order(transactions)

    def test_duplicate_ids(self):
        transactions = [
            TransactionDescriptor(tx_id="t0", role=TransactionRole.BUY),
            TransactionDescriptor(tx_id="t0", role=TransactionRole.SELL)
        ]
        with pytest.raises(ValueError):
            validate_dependency_order(transactions)

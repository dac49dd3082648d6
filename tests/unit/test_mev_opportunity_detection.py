"""
Unit tests for MEV Opportunity Detection.

Tests the opportunity models, the arbitrage, liquidation and sandwich
detectors, the static detector registry and the fan-out detector.
"""
from unittest.mock import Mock

import pytest

from mev_pipeline.market_state import SnapshotRef
from mev_pipeline.mev_detection import (
    DETECTOR_REGISTRY,
    ArbitrageDetails,
    ArbitrageDetector,
    DetectorConfig,
    LiquidationDetector,
    MEVOpportunityDetector,
    Opportunity,
    OpportunityStatus,
    OpportunityType,
    SandwichDetector,
    create_detectors,
    make_opportunity_key
)

NOW = 1_700_000_000.0


def _arbitrage_opportunity(**overrides):
    fields = dict(
        key=make_opportunity_key(OpportunityType.ARBITRAGE, ["a", "b"], ["ETH-USDC"]),
        opportunity_type=OpportunityType.ARBITRAGE,
        details=ArbitrageDetails(
            instrument_id="ETH-USDC",
            buy_venue="a",
            sell_venue="b",
            trade_size=1.0,
            buy_price=100.0,
            sell_price=100.5,
            effective_buy_price=100.1,
            effective_sell_price=100.3995
        ),
        inputs=(
            SnapshotRef(venue_id="a", instrument_id="ETH-USDC", sequence=1),
            SnapshotRef(venue_id="b", instrument_id="ETH-USDC", sequence=1)
        ),
        estimated_profit=0.2995,
        created_at=NOW,
        updated_at=NOW,
        expires_at=NOW + 1.6
    )
    fields.update(overrides)
    return Opportunity(**fields)


class TestOpportunityModels:
    """Test MEV opportunity data models."""

    def test_key_ignores_venue_and_instrument_order(self):
        first = make_opportunity_key(OpportunityType.ARBITRAGE, ["b", "a"], ["ETH-USDC"])
        second = make_opportunity_key(OpportunityType.ARBITRAGE, ["a", "b", "a"], ["ETH-USDC"])
        assert first == second == "arbitrage|a,b|ETH-USDC"

    def test_opportunity_expiration(self):
        opportunity = _arbitrage_opportunity()
        assert not opportunity.is_expired(NOW + 1.0)
        assert opportunity.is_expired(NOW + 1.6)
        assert opportunity.time_to_expiry(NOW + 2.0) == 0.0
        assert opportunity.time_to_expiry(NOW + 0.6) == pytest.approx(1.0)

    def test_advance_returns_new_version(self):
        opportunity = _arbitrage_opportunity()
        valued = opportunity.advance(OpportunityStatus.VALUED, NOW + 0.1)
        assert valued.status == OpportunityStatus.VALUED
        assert valued.version == opportunity.version + 1
        assert opportunity.status == OpportunityStatus.CANDIDATE

    def test_opportunity_is_immutable(self):
        opportunity = _arbitrage_opportunity()
        with pytest.raises(Exception):
            opportunity.status = OpportunityStatus.ACCEPTED

    def test_fresh_attempt_keeps_key_and_deadline(self):
        opportunity = _arbitrage_opportunity()
        refs = (
            SnapshotRef(venue_id="a", instrument_id="ETH-USDC", sequence=2),
            SnapshotRef(venue_id="b", instrument_id="ETH-USDC", sequence=3)
        )
        fresh = opportunity.fresh_attempt(refs, NOW + 0.5)
        assert fresh.key == opportunity.key
        assert fresh.opportunity_id != opportunity.opportunity_id
        assert fresh.attempt == 1
        assert fresh.status == OpportunityStatus.CANDIDATE
        assert fresh.expires_at == opportunity.expires_at
        assert fresh.inputs == refs

    def test_terminal_statuses(self):
        assert OpportunityStatus.LANDED.is_terminal
        assert OpportunityStatus.EXPIRED.is_terminal
        assert not OpportunityStatus.SUBMITTED.is_terminal


class TestArbitrageDetector:
    """Test cross-venue arbitrage detection."""

    def test_single_candidate_for_price_gap(self, cache, clock, pool_snapshot):
        cache.update(pool_snapshot(venue_id="venue-a", price=100.0))
        changed = pool_snapshot(venue_id="venue-b", price=100.5)
        cache.update(changed)

        opportunities = ArbitrageDetector().evaluate([changed], cache, clock.now)

        assert len(opportunities) == 1
        opportunity = opportunities[0]
        assert opportunity.details.buy_venue == "venue-a"
        assert opportunity.details.sell_venue == "venue-b"
        assert opportunity.estimated_profit == pytest.approx(0.2995)
        assert opportunity.expires_at == pytest.approx(clock.now + 4 * 0.4)
        assert [ref.venue_id for ref in opportunity.inputs] == ["venue-a", "venue-b"]

    def test_no_candidate_when_fees_eat_the_spread(self, cache, clock, pool_snapshot):
        cache.update(pool_snapshot(venue_id="venue-a", price=100.0, fee_rate=0.003))
        changed = pool_snapshot(venue_id="venue-b", price=100.5, fee_rate=0.003)
        cache.update(changed)

        assert ArbitrageDetector().evaluate([changed], cache, clock.now) == []

    def test_single_venue_yields_nothing(self, cache, clock, pool_snapshot):
        changed = pool_snapshot(venue_id="venue-a")
        cache.update(changed)
        assert ArbitrageDetector().evaluate([changed], cache, clock.now) == []

    def test_stale_quotes_are_ignored(self, cache, clock, pool_snapshot):
        cache.update(pool_snapshot(venue_id="venue-a", price=100.0, timestamp=clock.now - 30))
        changed = pool_snapshot(venue_id="venue-b", price=100.5)
        cache.update(changed)
        assert ArbitrageDetector().evaluate([changed], cache, clock.now) == []

    def test_largest_spread_wins(self, cache, clock, pool_snapshot):
        cache.update(pool_snapshot(venue_id="venue-a", price=100.0))
        cache.update(pool_snapshot(venue_id="venue-b", price=100.5))
        changed = pool_snapshot(venue_id="venue-c", price=101.0)
        cache.update(changed)

        opportunities = ArbitrageDetector().evaluate([changed], cache, clock.now)

        assert len(opportunities) == 1
        assert opportunities[0].details.buy_venue == "venue-a"
        assert opportunities[0].details.sell_venue == "venue-c"

    def test_slippage_can_close_the_gap(self, cache, clock, pool_snapshot):
        cache.update(pool_snapshot(venue_id="venue-a", price=100.0, reserve_base=100.0))
        changed = pool_snapshot(venue_id="venue-b", price=100.5, reserve_base=100.0)
        cache.update(changed)

        opportunities = ArbitrageDetector().evaluate([changed], cache, clock.now)

        assert opportunities == []

    def test_deeper_pools_trade_larger_size(self, cache, clock, pool_snapshot):
        cache.update(pool_snapshot(venue_id="venue-a", instrument_id="ETH-USDC", price=100.0,
                                   reserve_base=10_000.0))
        cache.update(pool_snapshot(venue_id="venue-b", instrument_id="ETH-USDC", price=100.5,
                                   reserve_base=10_000.0))
        cache.update(pool_snapshot(venue_id="venue-a", instrument_id="BTC-USDC", price=100.0,
                                   reserve_base=100_000.0))
        cache.update(pool_snapshot(venue_id="venue-b", instrument_id="BTC-USDC", price=100.5,
                                   reserve_base=100_000.0))

        opportunities = ArbitrageDetector().evaluate(
            [cache.get("venue-b", "ETH-USDC"), cache.get("venue-b", "BTC-USDC")], cache, clock.now
        )

        by_instrument = {o.details.instrument_id: o for o in opportunities}
        shallow = by_instrument["ETH-USDC"]
        deep = by_instrument["BTC-USDC"]
        assert shallow.details.trade_size == pytest.approx(5.0)
        assert deep.details.trade_size == pytest.approx(50.0)
        assert deep.estimated_profit > shallow.estimated_profit

    def test_trade_sizes_scale_with_shallower_pool(self, pool_snapshot):
        detector = ArbitrageDetector()
        deep = pool_snapshot(venue_id="venue-a", reserve_base=100_000.0)
        shallow = pool_snapshot(venue_id="venue-b", reserve_base=1_000.0)
        unknown = pool_snapshot(venue_id="venue-c")

        sizes = detector.trade_sizes(deep, shallow)

        assert sizes == sorted(sizes)
        assert sizes[0] == 1.0
        assert sizes[-1] == pytest.approx(100.0)
        assert detector.trade_sizes(deep, unknown)[-1] == pytest.approx(10_000.0)
        assert detector.trade_sizes(unknown, unknown) == [1.0]


class TestLiquidationDetector:
    """Test under-collateralized position detection."""

    def test_position_below_threshold(self, cache, clock, position_snapshot):
        changed = position_snapshot(collateral_value=1040.0, debt_value=1000.0)
        cache.update(changed)

        opportunities = LiquidationDetector().evaluate([changed], cache, clock.now)

        assert len(opportunities) == 1
        details = opportunities[0].details
        assert details.collateral_ratio == pytest.approx(1.04)
        assert details.repay_amount == pytest.approx(500.0)
        assert opportunities[0].estimated_profit == pytest.approx(25.0)
        assert opportunities[0].expires_at == pytest.approx(clock.now + 10 * 0.4)

    def test_healthy_position_ignored(self, cache, clock, position_snapshot):
        changed = position_snapshot(collateral_value=1500.0, debt_value=1000.0)
        cache.update(changed)
        assert LiquidationDetector().evaluate([changed], cache, clock.now) == []

    def test_default_threshold_applies(self, cache, clock, position_snapshot):
        changed = position_snapshot(collateral_value=1080.0, liquidation_threshold=None)
        cache.update(changed)
        opportunities = LiquidationDetector().evaluate([changed], cache, clock.now)
        assert len(opportunities) == 1
        assert opportunities[0].details.liquidation_threshold == pytest.approx(1.10)

    def test_ignores_pool_snapshots(self, pool_snapshot):
        assert not LiquidationDetector().interested_in(pool_snapshot())


class TestSandwichDetector:
    """Test front-run / back-run detection."""

    def test_large_pending_trade(self, cache, clock, pool_snapshot, pending_trade):
        changed = pool_snapshot(
            fee_rate=0.003, reserve_quote=1_000_000.0, pending_trades=[pending_trade()]
        )
        cache.update(changed)

        opportunities = SandwichDetector().evaluate([changed], cache, clock.now)

        assert len(opportunities) == 1
        opportunity = opportunities[0]
        assert opportunity.details.front_run_size == pytest.approx(8000.0)
        assert opportunity.estimated_profit == pytest.approx(8000.0 * 20000.0 / 1_020_000.0 - 48.0)
        assert opportunity.uncertainty_multiplier == 3.0
        assert opportunity.high_uncertainty
        assert opportunity.expires_at == pytest.approx(clock.now + 0.4)

    def test_front_run_capped_at_half_victim(self, pending_trade):
        detector = SandwichDetector()
        trade = pending_trade(amount=1_000_000.0, slippage_tolerance=0.2)
        assert detector.front_run_fraction(trade) == 0.5

    def test_small_trades_ignored(self, cache, clock, pool_snapshot, pending_trade):
        changed = pool_snapshot(reserve_quote=1_000_000.0, pending_trades=[pending_trade(amount=500.0)])
        cache.update(changed)
        assert SandwichDetector().evaluate([changed], cache, clock.now) == []

    def test_pool_without_reserves_ignored(self, cache, clock, pool_snapshot, pending_trade):
        changed = pool_snapshot(pending_trades=[pending_trade()])
        cache.update(changed)
        assert SandwichDetector().evaluate([changed], cache, clock.now) == []

    def test_each_victim_gets_its_own_key(self, cache, clock, pool_snapshot, pending_trade):
        changed = pool_snapshot(
            reserve_quote=1_000_000.0,
            pending_trades=[pending_trade(tx_hash="0x1"), pending_trade(tx_hash="0x2")]
        )
        cache.update(changed)
        opportunities = SandwichDetector().evaluate([changed], cache, clock.now)
        assert len({o.key for o in opportunities}) == 2


class TestDetectorRegistry:
    """Test the static detector registry."""

    def test_registry_covers_all_types(self):
        assert set(DETECTOR_REGISTRY) == set(OpportunityType)

    def test_create_enabled_subset(self):
        detectors = create_detectors(DetectorConfig(), [OpportunityType.LIQUIDATION])
        assert [d.opportunity_type for d in detectors] == [OpportunityType.LIQUIDATION]


class TestMEVOpportunityDetector:
    """Test the fan-out detector."""

    def test_detect_collects_from_all_detectors(self, cache, clock, pool_snapshot, position_snapshot):
        cache.update(pool_snapshot(venue_id="venue-a", price=100.0))
        pool = pool_snapshot(venue_id="venue-b", price=100.5)
        position = position_snapshot()
        cache.update(pool)
        cache.update(position)

        detector = MEVOpportunityDetector(cache)
        opportunities = detector.detect([pool, position], clock.now)

        assert {o.opportunity_type for o in opportunities} == {
            OpportunityType.ARBITRAGE, OpportunityType.LIQUIDATION
        }
        stats = detector.get_stats()
        assert stats["candidates_detected"] == 2
        assert stats["by_type"]["arbitrage"] == 1

    def test_failing_detector_is_isolated(self, cache, clock, position_snapshot):
        broken = Mock()
        broken.opportunity_type = OpportunityType.ARBITRAGE
        broken.interested_in.return_value = True
        broken.evaluate.side_effect = RuntimeError("boom")

        position = position_snapshot()
        cache.update(position)
        detector = MEVOpportunityDetector(
            cache, detectors=[broken, LiquidationDetector()]
        )

        opportunities = detector.detect([position], clock.now)

        assert len(opportunities) == 1
        assert detector.get_stats()["detector_errors"] == 1

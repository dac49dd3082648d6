"""
Unit tests for the opportunity registry state machine.
"""
import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from mev_pipeline.events import EventBus
from mev_pipeline.mev_detection import (
    ArbitrageDetector,
    LiquidationDetector,
    OpportunityStatus,
    RejectionReason
)
from mev_pipeline.registry import (
    Duplicate,
    InvalidTransition,
    OpportunityExpired,
    OpportunityRegistry,
    RegistryConfig,
    TransitionConflict
)
from mev_pipeline.valuation import Valuation


def make_valuation(opportunity, expected_profit=0.25, inputs=None, high_risk=False, computed_at=None):
    return Valuation(
        opportunity_id=opportunity.opportunity_id,
        opportunity_key=opportunity.key,
        expected_profit=expected_profit,
        variance=0.0001,
        std_dev=0.01,
        ci_low=expected_profit - 0.001,
        ci_high=expected_profit + 0.001,
        percentile_5=-0.01 if high_risk else expected_profit - 0.02,
        confidence_score=0.95,
        competition_probability=0.1,
        risk_adjusted_score=expected_profit - 0.005,
        high_risk=high_risk,
        gross_profit=expected_profit + 0.006,
        notional=100.0,
        seed=7,
        sample_count=500,
        input_sequences=inputs if inputs is not None else opportunity.inputs,
        computed_at=computed_at if computed_at is not None else opportunity.created_at
    )


@pytest.fixture
def event_bus():
    return EventBus()


@pytest.fixture
def registry(cache, clock, event_bus):
    return OpportunityRegistry(cache, RegistryConfig(), event_bus=event_bus, clock=clock)


@pytest.fixture
def arbitrage(cache, clock, pool_snapshot):
    cache.update(pool_snapshot(venue_id="venue-a", price=100.0))
    changed = pool_snapshot(venue_id="venue-b", price=100.5)
    cache.update(changed)
    return ArbitrageDetector().evaluate([changed], cache, clock.now)[0]


def accept(registry, opportunity, valuation=None):
    valuation = valuation or make_valuation(opportunity)
    valued = registry.record_valuation(opportunity.key, valuation, expected_version=opportunity.version)
    return registry.accept(opportunity.key, valuation, expected_version=valued.version)


class TestCandidateSubmission:
    """Test candidate insertion and deduplication."""

    def test_submit_candidate(self, registry, arbitrage):
        registry.submit_candidate(arbitrage)
        assert registry.get(arbitrage.key) == arbitrage
        assert registry.get_stats()["active"] == 1

    def test_duplicate_key_rejected_existing_wins(self, registry, arbitrage, cache, clock, pool_snapshot):
        registry.submit_candidate(arbitrage)
        changed = pool_snapshot(venue_id="venue-b", sequence=2, price=100.6)
        cache.update(changed)
        redetected = ArbitrageDetector().evaluate([changed], cache, clock.now)[0]

        with pytest.raises(Duplicate) as exc_info:
            registry.submit_candidate(redetected)

        assert exc_info.value.existing.opportunity_id == arbitrage.opportunity_id
        assert registry.get(arbitrage.key).opportunity_id == arbitrage.opportunity_id

    def test_liquidation_redetection_is_duplicate(self, registry, cache, clock, position_snapshot):
        first = position_snapshot(sequence=1, collateral_value=1040.0)
        cache.update(first)
        detector = LiquidationDetector()
        registry.submit_candidate(detector.evaluate([first], cache, clock.now)[0])

        second = position_snapshot(sequence=2, collateral_value=1030.0)
        cache.update(second)
        with pytest.raises(Duplicate):
            registry.submit_candidate(detector.evaluate([second], cache, clock.now)[0])
        assert registry.get_stats()["duplicates"] == 1

    def test_key_reusable_after_terminal(self, registry, arbitrage):
        registry.submit_candidate(arbitrage)
        registry.reject(arbitrage.key, RejectionReason.INSUFFICIENT_DATA)

        fresh = arbitrage.fresh_attempt(arbitrage.inputs, arbitrage.created_at)
        registry.submit_candidate(fresh)
        assert registry.get(arbitrage.key).attempt == 1

    def test_expired_candidate_is_recorded_as_expired(self, registry, arbitrage, clock):
        clock.advance(2.0)
        with pytest.raises(OpportunityExpired):
            registry.submit_candidate(arbitrage)

        assert registry.get(arbitrage.key) is None
        assert registry.history()[-1].status == OpportunityStatus.EXPIRED

    def test_concurrent_submission_single_winner(self, registry, arbitrage):
        copies = [arbitrage.model_copy(update={"opportunity_id": f"copy-{i}"}) for i in range(16)]
        barrier = threading.Barrier(len(copies))

        def submit(opportunity):
            barrier.wait()
            try:
                registry.submit_candidate(opportunity)
                return True
            except Duplicate:
                return False

        with ThreadPoolExecutor(max_workers=len(copies)) as pool:
            results = list(pool.map(submit, copies))

        assert results.count(True) == 1
        assert registry.get_stats()["duplicates"] == 15


class TestAcceptance:
    """Test valuation recording and the acceptance policy."""

    def test_record_valuation_and_accept(self, registry, arbitrage):
        registry.submit_candidate(arbitrage)
        accepted = accept(registry, arbitrage)

        assert accepted.status == OpportunityStatus.ACCEPTED
        assert accepted.version == 2
        assert registry.valuation_for(arbitrage.key) is not None

    def test_below_execution_cost_rejected(self, registry, arbitrage):
        registry.submit_candidate(arbitrage)
        rejected = accept(registry, arbitrage, make_valuation(arbitrage, expected_profit=0.006))

        assert rejected.status == OpportunityStatus.REJECTED
        assert rejected.rejection_reason == RejectionReason.BELOW_THRESHOLD
        assert registry.get(arbitrage.key) is None

    def test_superseded_inputs_rejected(self, registry, arbitrage, cache, pool_snapshot):
        registry.submit_candidate(arbitrage)
        valuation = make_valuation(arbitrage)
        cache.update(pool_snapshot(venue_id="venue-a", sequence=2, price=100.2))

        rejected = accept(registry, arbitrage, valuation)

        assert rejected.status == OpportunityStatus.REJECTED
        assert rejected.rejection_reason == RejectionReason.INVALIDATED_BY_NEW_SNAPSHOT

    def test_high_risk_policy(self, cache, clock, arbitrage):
        registry = OpportunityRegistry(cache, RegistryConfig(reject_high_risk=True), clock=clock)
        registry.submit_candidate(arbitrage)

        rejected = accept(registry, arbitrage, make_valuation(arbitrage, high_risk=True))

        assert rejected.rejection_reason == RejectionReason.HIGH_RISK

    def test_high_risk_accepted_by_default(self, registry, arbitrage):
        registry.submit_candidate(arbitrage)
        accepted = accept(registry, arbitrage, make_valuation(arbitrage, high_risk=True))
        assert accepted.status == OpportunityStatus.ACCEPTED

    def test_valuation_of_other_instance_refused(self, registry, arbitrage):
        registry.submit_candidate(arbitrage)
        other = arbitrage.model_copy(update={"opportunity_id": "other"})
        with pytest.raises(TransitionConflict):
            registry.record_valuation(arbitrage.key, make_valuation(other))

    def test_concurrent_accepts_single_winner(self, registry, arbitrage):
        registry.submit_candidate(arbitrage)
        valuation = make_valuation(arbitrage)
        valued = registry.record_valuation(arbitrage.key, valuation, expected_version=0)
        barrier = threading.Barrier(8)

        def try_accept(_):
            barrier.wait()
            try:
                registry.accept(arbitrage.key, valuation, expected_version=valued.version)
                return True
            except (TransitionConflict, InvalidTransition):
                return False

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(try_accept, range(8)))

        assert results.count(True) == 1
        assert registry.get_stats()["accepted"] == 1


class TestTransitions:
    """Test forward-only, versioned and deadline-bound transitions."""

    def test_full_lifecycle_to_landed(self, registry, arbitrage, event_bus):
        seen = []
        event_bus.subscribe(seen.append)
        registry.submit_candidate(arbitrage)
        accepted = accept(registry, arbitrage)
        bundled = registry.mark_bundled(arbitrage.key, "0xbundle", expected_version=accepted.version)
        submitted = registry.mark_submitted(arbitrage.key, expected_version=bundled.version)
        landed = registry.resolve_submission(
            arbitrage.key, OpportunityStatus.LANDED, expected_version=submitted.version
        )

        assert landed.status == OpportunityStatus.LANDED
        assert landed.bundle_id == "0xbundle"
        assert [e.to_status for e in seen] == [
            OpportunityStatus.CANDIDATE,
            OpportunityStatus.VALUED,
            OpportunityStatus.ACCEPTED,
            OpportunityStatus.BUNDLED,
            OpportunityStatus.SUBMITTED,
            OpportunityStatus.LANDED
        ]
        assert [e.version for e in seen] == [0, 1, 2, 3, 4, 5]
        assert registry.get_stats()["landed"] == 1

    def test_stale_version_conflicts(self, registry, arbitrage):
        registry.submit_candidate(arbitrage)
        registry.record_valuation(arbitrage.key, make_valuation(arbitrage), expected_version=0)
        with pytest.raises(TransitionConflict):
            registry.reject(arbitrage.key, RejectionReason.PIPELINE_ERROR, expected_version=0)

    def test_skipping_states_is_invalid(self, registry, arbitrage):
        registry.submit_candidate(arbitrage)
        with pytest.raises(InvalidTransition):
            registry.mark_submitted(arbitrage.key)

    def test_resolution_must_be_an_outcome(self, registry, arbitrage):
        registry.submit_candidate(arbitrage)
        with pytest.raises(InvalidTransition):
            registry.resolve_submission(arbitrage.key, OpportunityStatus.ACCEPTED)

    def test_expiry_wins_over_acceptance(self, registry, arbitrage, clock):
        registry.submit_candidate(arbitrage)
        valuation = make_valuation(arbitrage)
        valued = registry.record_valuation(arbitrage.key, valuation)
        clock.advance(2.0)

        with pytest.raises(OpportunityExpired) as exc_info:
            registry.accept(arbitrage.key, valuation, expected_version=valued.version)

        assert exc_info.value.opportunity.status == OpportunityStatus.EXPIRED
        assert registry.get(arbitrage.key) is None

    def test_expired_never_reaches_submitted(self, registry, arbitrage, clock):
        registry.submit_candidate(arbitrage)
        accepted = accept(registry, arbitrage)
        bundled = registry.mark_bundled(arbitrage.key, "0xbundle", expected_version=accepted.version)
        clock.advance(2.0)

        with pytest.raises(OpportunityExpired):
            registry.mark_submitted(arbitrage.key, expected_version=bundled.version)
        assert registry.history()[-1].status == OpportunityStatus.EXPIRED

    def test_landing_after_deadline_is_recorded(self, registry, arbitrage, clock):
        registry.submit_candidate(arbitrage)
        accepted = accept(registry, arbitrage)
        bundled = registry.mark_bundled(arbitrage.key, "0xbundle", expected_version=accepted.version)
        submitted = registry.mark_submitted(arbitrage.key, expected_version=bundled.version)
        clock.advance(2.0)

        landed = registry.resolve_submission(
            arbitrage.key, OpportunityStatus.LANDED, expected_version=submitted.version
        )
        assert landed.status == OpportunityStatus.LANDED

    def test_expire_overdue(self, registry, arbitrage, clock, cache, position_snapshot):
        position = position_snapshot()
        cache.update(position)
        liquidation = LiquidationDetector().evaluate([position], cache, clock.now)[0]
        registry.submit_candidate(arbitrage)
        registry.submit_candidate(liquidation)

        expired = registry.expire_overdue(clock.now + 2.0)

        assert [o.key for o in expired] == [arbitrage.key]
        assert registry.get(liquidation.key) is not None
        assert registry.get_stats()["rejections_by_reason"] == {"expired": 1}

    def test_active_input_keys(self, registry, arbitrage):
        registry.submit_candidate(arbitrage)
        assert registry.active_input_keys() == {("venue-a", "ETH-USDC"), ("venue-b", "ETH-USDC")}

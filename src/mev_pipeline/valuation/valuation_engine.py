"""
Monte Carlo Valuation Engine.

Prices a candidate opportunity by simulating independent executions over
sampled slippage and competitor arrival. Randomness comes from an explicitly
seeded numpy generator, so a valuation is reproducible from its seed, sample
count, input snapshots and evaluation time.
"""
import hashlib
import logging
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple

import numpy as np
from pydantic import BaseModel, Field

from mev_pipeline.config.settings import Settings
from mev_pipeline.market_state import MarketStateCache, NotFound, SnapshotRef
from mev_pipeline.mev_detection.opportunity_models import Opportunity, OpportunityType

from .competition_model import CompetitionModel
from .pricing import DEFAULT_PRICING, PricingError, PricingFunction

logger = logging.getLogger(__name__)

Z_95 = 1.96


class ValuationError(Exception):
    """Base exception for valuation errors."""
    pass


class InsufficientData(ValuationError):
    """Inputs are missing, stale or cannot be priced."""
    pass


class Valuation(BaseModel):
    """Simulated profit distribution for one opportunity instance."""

    model_config = {"frozen": True}

    valuation_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    opportunity_id: str = Field(..., description="Opportunity instance this valuation belongs to")
    opportunity_key: str

    expected_profit: float = Field(..., description="Mean simulated net profit")
    variance: float = Field(..., ge=0)
    std_dev: float = Field(..., ge=0)
    ci_low: float = Field(..., description="Lower bound of the 95% confidence interval of the mean")
    ci_high: float = Field(..., description="Upper bound of the 95% confidence interval of the mean")
    percentile_5: float = Field(..., description="5th percentile of simulated net profit")
    confidence_score: float = Field(..., description="Fraction of samples with positive net profit", ge=0, le=1)

    competition_probability: float = Field(..., ge=0, le=1)
    risk_adjusted_score: float
    high_risk: bool = Field(default=False, description="5th percentile outcome is a loss")

    gross_profit: float
    notional: float

    seed: int
    sample_count: int
    input_sequences: Tuple[SnapshotRef, ...] = Field(..., description="Snapshots priced against")
    computed_at: float = Field(default_factory=time.time)

    def age(self, now: Optional[float] = None) -> float:
        if now is None:
            now = time.time()
        return max(0.0, now - self.computed_at)


@dataclass
class ValuationConfig:
    """Configuration for Monte Carlo valuation."""

    sample_count: int = 500
    seed: Optional[int] = None                  # Base seed; None means 0
    slippage_volatility: float = 0.0005         # Std dev of sampled slippage at multiplier 1.0
    network_fee: float = 0.005
    expected_tip: float = 0.001
    failed_execution_cost: Optional[float] = None   # Defaults to the network fee
    risk_aversion: float = 0.5
    revaluation_window_fraction: float = 0.5
    staleness_window_seconds: float = 5.0

    def __post_init__(self):
        if self.sample_count < 2:
            raise ValueError("sample_count must be at least 2")
        if self.failed_execution_cost is None:
            self.failed_execution_cost = self.network_fee

    @classmethod
    def from_settings(cls, settings: Settings) -> "ValuationConfig":
        return cls(
            sample_count=settings.valuation_samples,
            seed=settings.valuation_seed,
            slippage_volatility=settings.slippage_volatility,
            network_fee=settings.network_fee,
            expected_tip=settings.min_tip,
            risk_aversion=settings.risk_aversion,
            revaluation_window_fraction=settings.revaluation_window_fraction,
            staleness_window_seconds=settings.staleness_window_seconds
        )


class ValuationEngine:
    """
    Values opportunities against the current market state.

    The engine reads the latest cached snapshot for every input of the
    opportunity, prices it with the pluggable pricing function for its type and
    simulates `sample_count` executions:

        slippage  ~ |Normal(0, volatility * uncertainty_multiplier)|
        captured  ~ Bernoulli(competition probability)
        net       = gross - slippage * notional - network_fee - expected_tip
                    (or -failed_execution_cost when a competitor captured it)
    """

    def __init__(
        self,
        cache: MarketStateCache,
        config: ValuationConfig = None,
        competition_model: CompetitionModel = None,
        pricing: Optional[Dict[OpportunityType, PricingFunction]] = None,
        clock: Callable[[], float] = time.time
    ):
        self.cache = cache
        self.config = config or ValuationConfig()
        self.competition_model = competition_model or CompetitionModel()
        self.pricing = dict(DEFAULT_PRICING)
        if pricing:
            self.pricing.update(pricing)
        self.clock = clock

        self.stats = {
            "valuations": 0,
            "insufficient_data": 0,
            "high_risk": 0,
            "revaluations_triggered": 0
        }

    def value(
        self,
        opportunity: Opportunity,
        now: Optional[float] = None,
        seed: Optional[int] = None,
        sample_count: Optional[int] = None
    ) -> Valuation:
        """
        Run the simulation for an opportunity.

        Raises:
            InsufficientData: an input snapshot is missing or stale, or the
                pricing function cannot price the opportunity
        """
        if now is None:
            now = self.clock()
        if seed is None:
            seed = self.seed_for(opportunity)
        if sample_count is None:
            sample_count = self.config.sample_count

        try:
            inputs = self._current_inputs(opportunity, now)
            estimate = self._price(opportunity)
        except InsufficientData:
            self.stats["insufficient_data"] += 1
            raise

        competition_probability = self.competition_model.probability(
            opportunity.opportunity_type, opportunity.age(now)
        )

        rng = np.random.default_rng(seed)
        sigma = self.config.slippage_volatility * opportunity.uncertainty_multiplier
        slippage = np.abs(rng.normal(0.0, sigma, sample_count))
        captured = rng.random(sample_count) < competition_probability

        net = (
            estimate.gross_profit
            - slippage * estimate.notional
            - self.config.network_fee
            - self.config.expected_tip
        )
        net = np.where(captured, -self.config.failed_execution_cost, net)

        expected = float(np.mean(net))
        variance = float(np.var(net, ddof=1))
        std_dev = float(np.sqrt(variance))
        half_width = Z_95 * std_dev / np.sqrt(sample_count)
        percentile_5 = float(np.percentile(net, 5))

        valuation = Valuation(
            opportunity_id=opportunity.opportunity_id,
            opportunity_key=opportunity.key,
            expected_profit=expected,
            variance=variance,
            std_dev=std_dev,
            ci_low=float(expected - half_width),
            ci_high=float(expected + half_width),
            percentile_5=percentile_5,
            confidence_score=float(np.mean(net > 0)),
            competition_probability=competition_probability,
            risk_adjusted_score=expected - self.config.risk_aversion * std_dev,
            high_risk=percentile_5 < 0,
            gross_profit=estimate.gross_profit,
            notional=estimate.notional,
            seed=seed,
            sample_count=sample_count,
            input_sequences=inputs,
            computed_at=now
        )

        self.stats["valuations"] += 1
        if valuation.high_risk:
            self.stats["high_risk"] += 1

        logger.debug(
            f"Valued {opportunity.key}: expected {expected:.6f}, "
            f"confidence {valuation.confidence_score:.2f}, p5 {percentile_5:.6f}, "
            f"competition {competition_probability:.3f}"
        )
        return valuation

    def seed_for(self, opportunity: Opportunity) -> int:
        """Stable per-key seed derived from the configured base seed."""
        digest = hashlib.sha256(opportunity.key.encode("utf-8")).digest()
        key_hash = int.from_bytes(digest[:8], "big")
        return (key_hash + (self.config.seed or 0)) % (2 ** 63)

    def needs_revaluation(
        self,
        valuation: Valuation,
        opportunity: Opportunity,
        now: Optional[float] = None
    ) -> bool:
        """
        Whether a valuation must be recomputed before it is acted on.

        True when it is older than the re-valuation window (a fraction of the
        remaining time-to-expiry) or when any snapshot it was priced on has been
        superseded in the cache.
        """
        if now is None:
            now = self.clock()

        window = self.config.revaluation_window_fraction * opportunity.time_to_expiry(now)
        if valuation.age(now) > window:
            return True

        return any(not self.cache.is_current(ref) for ref in valuation.input_sequences)

    def ensure_fresh(
        self,
        valuation: Valuation,
        opportunity: Opportunity,
        now: Optional[float] = None
    ) -> Valuation:
        """Return the valuation, recomputed when it has gone out of date."""
        if not self.needs_revaluation(valuation, opportunity, now):
            return valuation

        self.stats["revaluations_triggered"] += 1
        logger.debug(f"Re-valuing {opportunity.key}")
        return self.value(opportunity, now=now, seed=valuation.seed, sample_count=valuation.sample_count)

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self.stats,
            "competition": self.competition_model.get_stats()
        }

    def _current_inputs(self, opportunity: Opportunity, now: float) -> Tuple[SnapshotRef, ...]:
        refs = []
        for ref in opportunity.inputs:
            snapshot = self.cache.find(ref.venue_id, ref.instrument_id)
            if snapshot is None:
                raise InsufficientData(f"No snapshot for {ref.venue_id}/{ref.instrument_id}")
            if snapshot.age(now) > self.config.staleness_window_seconds:
                raise InsufficientData(
                    f"Snapshot {ref.venue_id}/{ref.instrument_id} is stale "
                    f"({snapshot.age(now):.2f}s old)"
                )
            refs.append(snapshot.ref())
        return tuple(refs)

    def _price(self, opportunity: Opportunity):
        pricing = self.pricing.get(opportunity.opportunity_type)
        if pricing is None:
            raise InsufficientData(f"No pricing function for {opportunity.opportunity_type.value}")
        try:
            return pricing(opportunity, self.cache)
        except (PricingError, NotFound) as e:
            raise InsufficientData(str(e)) from e

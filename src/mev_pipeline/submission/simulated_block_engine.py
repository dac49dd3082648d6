"""
Simulated block engine for dry runs.

Lands bundles with a probability driven by the tip share of expected profit
and the competition probability recorded at valuation time. Outcomes are drawn
from a seeded generator so dry runs are reproducible.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import numpy as np

from mev_pipeline.bundling.bundle_models import Bundle

from .gateway import SubmissionGateway, SubmissionResult, SubmissionStatus

logger = logging.getLogger(__name__)


@dataclass
class SimulatedEngineConfig:
    """Landing model for the simulated engine."""
    seed: Optional[int] = None
    min_accepted_tip: float = 0.0
    reference_tip_share: float = 0.3    # Tip share of profit that maximizes landing odds
    base_landing_probability: float = 0.5
    latency_seconds: float = 0.0
    timeout_probability: float = 0.0
    validators: List[str] = field(default_factory=lambda: [f"validator-{i}" for i in range(8)])
    start_slot: int = 0


class SimulatedBlockEngine(SubmissionGateway):
    """In-process gateway with a stochastic landing model."""

    def __init__(self, config: SimulatedEngineConfig = None):
        self.config = config or SimulatedEngineConfig()
        self._rng = np.random.default_rng(self.config.seed)
        self._slot = self.config.start_slot

        self.stats = {
            "bundles_submitted": 0,
            "bundles_landed": 0,
            "bundles_rejected": 0,
            "timeouts": 0
        }

    def landing_probability(self, bundle: Bundle) -> float:
        """Probability the bundle wins its slot."""
        if bundle.expected_profit <= 0:
            tip_share = 1.0
        else:
            tip_share = min(bundle.tip / bundle.expected_profit / self.config.reference_tip_share, 1.0)
        base = self.config.base_landing_probability
        return (1.0 - bundle.competition_probability) * (base + (1.0 - base) * tip_share)

    async def submit(self, bundle: Bundle) -> SubmissionResult:
        self.stats["bundles_submitted"] += 1
        if self.config.latency_seconds > 0:
            await asyncio.sleep(self.config.latency_seconds)

        self._slot += 1

        if bundle.tip < self.config.min_accepted_tip:
            self.stats["bundles_rejected"] += 1
            return SubmissionResult.rejected(bundle.bundle_id, "tip-too-low")

        if self._rng.random() < self.config.timeout_probability:
            self.stats["timeouts"] += 1
            return SubmissionResult.timeout(bundle.bundle_id)

        if self._rng.random() >= self.landing_probability(bundle):
            self.stats["bundles_rejected"] += 1
            return SubmissionResult.rejected(bundle.bundle_id, "outbid")

        validator = self.config.validators[self._slot % len(self.config.validators)]
        self.stats["bundles_landed"] += 1
        logger.debug(f"Simulated landing of {bundle.bundle_id} in slot {self._slot} by {validator}")
        return SubmissionResult(
            status=SubmissionStatus.LANDED,
            bundle_id=bundle.bundle_id,
            validator_id=validator,
            slot=self._slot,
            realized_profit=bundle.expected_profit
        )

    def get_stats(self) -> Dict[str, Any]:
        return {**self.stats, "slot": self._slot}

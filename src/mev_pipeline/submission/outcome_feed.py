"""
Bundle outcome feed.

Closes the calibration loop: every landed or failed bundle adjusts the
competition model, is published as a `BundleOutcomeEvent`, and landed bundles
are forwarded as `LandedBundleFact` records to attribution subscribers keyed by
validator.
"""
import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from mev_pipeline.bundling.bundle_models import Bundle
from mev_pipeline.events.event_bus import BundleOutcomeEvent, EventBus
from mev_pipeline.valuation.competition_model import CompetitionModel

from .gateway import SubmissionResult, SubmissionStatus

logger = logging.getLogger(__name__)


@dataclass
class BundleOutcome:
    """A submission result paired with the bundle it belongs to."""
    bundle: Bundle
    result: SubmissionResult
    received_at: float = field(default_factory=time.time)


@dataclass(frozen=True)
class LandedBundleFact:
    """What the attribution collaborator learns about a landed bundle."""
    bundle_id: str
    opportunity_key: str
    opportunity_type: str
    validator_id: Optional[str]
    slot: Optional[int]
    tip: float
    realized_profit: Optional[float]
    landed_at: float


class OutcomeFeed:
    """Consumes bundle outcomes asynchronously or inline."""

    def __init__(
        self,
        competition_model: CompetitionModel,
        event_bus: Optional[EventBus] = None,
        queue_size: int = 1000
    ):
        self.competition_model = competition_model
        self.event_bus = event_bus or EventBus()
        self.queue_size = queue_size

        self.attribution_handlers: List[Callable[[LandedBundleFact], None]] = []
        self._queue: Optional[asyncio.Queue] = None
        self._task: Optional[asyncio.Task] = None

        self.stats = {
            "outcomes": 0,
            "landed": 0,
            "rejected": 0,
            "timeouts": 0,
            "total_tips_paid": 0.0,
            "total_realized_profit": 0.0
        }
        self.landed_by_validator: Dict[str, int] = {}

    def add_attribution_handler(self, handler: Callable[[LandedBundleFact], None]) -> None:
        self.attribution_handlers.append(handler)

    async def start(self) -> None:
        if self._task is not None:
            return
        self._queue = asyncio.Queue(maxsize=self.queue_size)
        self._task = asyncio.create_task(self._consume())

    async def stop(self) -> None:
        if self._task is None:
            return
        await self._queue.join()
        self._task.cancel()
        await asyncio.gather(self._task, return_exceptions=True)
        self._task = None
        self._queue = None

    async def notify(self, outcome: BundleOutcome) -> None:
        """Queue an outcome, or process it inline when the feed is not running."""
        if self._queue is None:
            self.process(outcome)
            return
        await self._queue.put(outcome)

    def process(self, outcome: BundleOutcome) -> Optional[LandedBundleFact]:
        """Calibrate, publish and attribute a single outcome."""
        bundle, result = outcome.bundle, outcome.result
        landed = result.status == SubmissionStatus.LANDED

        self.stats["outcomes"] += 1
        self.competition_model.record_outcome(bundle.opportunity_type, landed)

        self.event_bus.publish(BundleOutcomeEvent(
            bundle_id=bundle.bundle_id,
            opportunity_id=bundle.opportunity_id,
            opportunity_key=bundle.opportunity_key,
            outcome=result.status.value,
            reason=result.reason,
            validator_id=result.validator_id,
            slot=result.slot,
            tip=bundle.tip,
            realized_profit=result.realized_profit,
            timestamp=outcome.received_at
        ))

        if not landed:
            self.stats["timeouts" if result.status == SubmissionStatus.TIMEOUT else "rejected"] += 1
            return None

        self.stats["landed"] += 1
        self.stats["total_tips_paid"] += bundle.tip
        if result.realized_profit is not None:
            self.stats["total_realized_profit"] += result.realized_profit
        if result.validator_id:
            self.landed_by_validator[result.validator_id] = (
                self.landed_by_validator.get(result.validator_id, 0) + 1
            )

        fact = LandedBundleFact(
            bundle_id=bundle.bundle_id,
            opportunity_key=bundle.opportunity_key,
            opportunity_type=bundle.opportunity_type.value,
            validator_id=result.validator_id,
            slot=result.slot,
            tip=bundle.tip,
            realized_profit=result.realized_profit,
            landed_at=outcome.received_at
        )
        for handler in self.attribution_handlers:
            try:
                handler(fact)
            except Exception as e:
                logger.error(f"Error in attribution handler for bundle {bundle.bundle_id}: {e}")
        return fact

    async def _consume(self) -> None:
        while True:
            outcome = await self._queue.get()
            try:
                self.process(outcome)
            except Exception as e:
                logger.error(f"Error processing outcome for bundle {outcome.bundle.bundle_id}: {e}")
            finally:
                self._queue.task_done()

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self.stats,
            "landed_by_validator": dict(self.landed_by_validator),
            "pending": self._queue.qsize() if self._queue is not None else 0
        }

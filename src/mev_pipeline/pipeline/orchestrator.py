"""
MEV Pipeline Orchestrator.

Wires the stages together with bounded asyncio queues:

    venue feeds -> market state cache -> detection -> valuation workers
        -> registry acceptance -> bundling/submission -> outcome feed

Every stage checks the opportunity deadline before acting, and a sweeper
expires whatever is overdue. Work on one opportunity key is serialized by the
registry's versioned transitions and by the in-flight key set of the bundling
stage.
"""
import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from mev_pipeline.bundling.bundle_constructor import (
    BundleConfig,
    BundleConstructor,
    ConstructionFailed
)
from mev_pipeline.bundling.bundle_models import Bundle, BundleStatus
from mev_pipeline.config.settings import Settings
from mev_pipeline.events.event_bus import EventBus
from mev_pipeline.events.redis_sink import RedisEventSink
from mev_pipeline.market_state import MarketSnapshot, MarketStateCache, SnapshotRef
from mev_pipeline.mev_detection.base_detector import DetectorConfig
from mev_pipeline.mev_detection.opportunity_detector import MEVOpportunityDetector
from mev_pipeline.mev_detection.opportunity_models import (
    Opportunity,
    OpportunityStatus,
    RejectionReason
)
from mev_pipeline.monitoring.alerts import Alert, AlertCategory, AlertManager, AlertSeverity
from mev_pipeline.registry.opportunity_registry import (
    Duplicate,
    OpportunityExpired,
    OpportunityRegistry,
    RegistryConfig,
    RegistryError,
    TransitionConflict
)
from mev_pipeline.submission.block_engine_client import BlockEngineClient
from mev_pipeline.submission.gateway import SubmissionGateway, SubmissionResult, SubmissionStatus
from mev_pipeline.submission.outcome_feed import BundleOutcome, OutcomeFeed
from mev_pipeline.submission.simulated_block_engine import SimulatedBlockEngine, SimulatedEngineConfig
from mev_pipeline.valuation.competition_model import CompetitionConfig, CompetitionModel
from mev_pipeline.valuation.valuation_engine import (
    InsufficientData,
    Valuation,
    ValuationConfig,
    ValuationEngine
)

from .ingestion import VenueFeed

logger = logging.getLogger(__name__)


@dataclass
class PipelineConfig:
    """Queue sizes, concurrency and retry policy."""
    ingestion_queue_size: int = 10000
    stage_queue_size: int = 1000
    valuation_workers: int = 4
    detection_batch_size: int = 100
    max_submission_retries: int = 0
    sweep_interval_seconds: float = 0.1

    @classmethod
    def from_settings(cls, settings: Settings) -> "PipelineConfig":
        return cls(
            ingestion_queue_size=settings.ingestion_queue_size,
            stage_queue_size=settings.stage_queue_size,
            valuation_workers=settings.valuation_workers,
            max_submission_retries=settings.max_submission_retries,
            sweep_interval_seconds=min(settings.block_time_seconds / 4, 1.0)
        )


class MEVPipeline:
    """Detection -> valuation -> bundling pipeline over a shared market state cache."""

    def __init__(
        self,
        cache: MarketStateCache,
        detector: MEVOpportunityDetector,
        valuation_engine: ValuationEngine,
        registry: OpportunityRegistry,
        constructor: BundleConstructor,
        gateway: SubmissionGateway,
        outcome_feed: OutcomeFeed,
        event_bus: EventBus,
        alert_manager: Optional[AlertManager] = None,
        config: PipelineConfig = None,
        clock: Callable[[], float] = time.time
    ):
        self.cache = cache
        self.detector = detector
        self.valuation_engine = valuation_engine
        self.registry = registry
        self.constructor = constructor
        self.gateway = gateway
        self.outcome_feed = outcome_feed
        self.event_bus = event_bus
        self.alert_manager = alert_manager or AlertManager()
        self.config = config or PipelineConfig()
        self.clock = clock

        self.feeds: Dict[str, VenueFeed] = {}
        self.detection_queue: asyncio.Queue = asyncio.Queue(maxsize=self.config.stage_queue_size)
        self.valuation_queue: asyncio.Queue = asyncio.Queue(maxsize=self.config.stage_queue_size)
        self.bundling_queue: asyncio.Queue = asyncio.Queue(maxsize=self.config.stage_queue_size)

        self.halted_stages: Dict[str, str] = {}
        self.in_flight_keys: Set[str] = set()
        self._in_flight_tasks: Set[asyncio.Task] = set()
        self._background: Set[asyncio.Task] = set()
        self._tasks: List[asyncio.Task] = []
        self.is_running = False

        self.stats = {
            "snapshots_ingested": 0,
            "notifications_dropped": 0,
            "candidates_submitted": 0,
            "duplicates": 0,
            "valuations": 0,
            "accepted": 0,
            "bundles_submitted": 0,
            "retries": 0,
            "stage_errors": 0
        }

        self.cache.subscribe(self._on_snapshot_applied)

    # Lifecycle

    async def start(self) -> None:
        """Start all pipeline stages."""
        if self.is_running:
            logger.warning("MEV pipeline already running")
            return

        logger.info("Starting MEV pipeline")
        self.is_running = True

        await self.gateway.initialize()
        await self.event_bus.start()
        await self.outcome_feed.start()

        self._tasks = [
            asyncio.create_task(self._detection_loop()),
            asyncio.create_task(self._bundling_loop()),
            asyncio.create_task(self._expiry_sweeper())
        ]
        self._tasks.extend(
            asyncio.create_task(self._valuation_loop(i))
            for i in range(self.config.valuation_workers)
        )
        for feed in self.feeds.values():
            self._start_feed(feed)

        logger.info(f"MEV pipeline started with {self.config.valuation_workers} valuation workers")

    async def stop(self) -> None:
        """Stop all stages and release connections."""
        if not self.is_running:
            return
        logger.info("Stopping MEV pipeline")
        self.is_running = False

        for task in self._tasks:
            task.cancel()
        for task in list(self._in_flight_tasks):
            task.cancel()
        await asyncio.gather(*self._tasks, *self._in_flight_tasks, return_exceptions=True)
        self._tasks.clear()
        self._in_flight_tasks.clear()

        await self.outcome_feed.stop()
        await self.event_bus.stop()
        await self.gateway.close()
        logger.info("MEV pipeline stopped")

    async def drain(self) -> None:
        """Wait until every queued snapshot and opportunity has been processed."""
        while True:
            for feed in list(self.feeds.values()):
                await feed.queue.join()
            await self.detection_queue.join()
            await self.valuation_queue.join()
            await self.bundling_queue.join()
            if self._in_flight_tasks:
                await asyncio.gather(*list(self._in_flight_tasks), return_exceptions=True)
                continue
            if self._all_idle():
                return

    # Ingestion

    def ingest(self, snapshot: MarketSnapshot) -> None:
        """
        Push a snapshot onto its venue's feed.

        Raises:
            IngestionOverflow: the venue queue is full; the feed is halted
            FeedHalted: the venue feed was halted earlier
        """
        feed = self.feeds.get(snapshot.venue_id)
        if feed is None:
            feed = VenueFeed(
                snapshot.venue_id,
                self.cache,
                queue_size=self.config.ingestion_queue_size,
                on_fatal=self._on_fatal
            )
            self.feeds[snapshot.venue_id] = feed
            if self.is_running:
                self._start_feed(feed)

        feed.push(snapshot)
        self.stats["snapshots_ingested"] += 1

    def _start_feed(self, feed: VenueFeed) -> None:
        self._tasks.append(asyncio.create_task(feed.run()))

    def _on_snapshot_applied(self, snapshot: MarketSnapshot) -> None:
        try:
            self.detection_queue.put_nowait(snapshot)
        except asyncio.QueueFull:
            # The next update for the instrument triggers detection again
            self.stats["notifications_dropped"] += 1
            logger.warning(
                f"Detection queue full, dropped change for {snapshot.venue_id}/{snapshot.instrument_id}"
            )

    # Detection

    async def _detection_loop(self) -> None:
        while True:
            first = await self.detection_queue.get()
            batch = [first]
            while len(batch) < self.config.detection_batch_size and not self.detection_queue.empty():
                batch.append(self.detection_queue.get_nowait())
            try:
                await self._detect(batch)
            except Exception as e:
                self.stats["stage_errors"] += 1
                logger.error(f"Error in detection stage: {e}")
            finally:
                for _ in batch:
                    self.detection_queue.task_done()

    async def _detect(self, changed: List[MarketSnapshot]) -> None:
        now = self.clock()
        for candidate in self.detector.detect(changed, now):
            try:
                self.registry.submit_candidate(candidate, now)
            except Duplicate:
                self.stats["duplicates"] += 1
                continue
            except OpportunityExpired:
                continue
            self.stats["candidates_submitted"] += 1
            await self.valuation_queue.put(candidate)

    # Valuation and acceptance

    async def _valuation_loop(self, worker_id: int) -> None:
        while True:
            opportunity = await self.valuation_queue.get()
            try:
                self._value_and_accept(opportunity)
            except Exception as e:
                self.stats["stage_errors"] += 1
                logger.error(f"Valuation worker {worker_id} failed on {opportunity.key}: {e}")
                self._reject_current(opportunity, RejectionReason.PIPELINE_ERROR, str(e))
            finally:
                self.valuation_queue.task_done()

    def _value_and_accept(self, opportunity: Opportunity) -> None:
        current = self._current(opportunity)
        if current is None:
            return

        now = self.clock()
        try:
            if current.is_expired(now):
                self.registry.expire(current.key, now)
                return

            try:
                valuation = self.valuation_engine.value(current, now=now)
            except InsufficientData as e:
                self.registry.reject(
                    current.key, RejectionReason.INSUFFICIENT_DATA, str(e),
                    expected_version=current.version, now=now
                )
                return
            self.stats["valuations"] += 1

            valued = self.registry.record_valuation(
                current.key, valuation, expected_version=current.version, now=now
            )
            decided = self.registry.accept(
                current.key, valuation, expected_version=valued.version, now=now
            )
        except OpportunityExpired:
            logger.debug(f"{current.key} expired during valuation")
            return
        except TransitionConflict as e:
            logger.debug(f"Skipping {current.key}: {e}")
            return

        if decided.status == OpportunityStatus.ACCEPTED:
            self.stats["accepted"] += 1
            try:
                self.bundling_queue.put_nowait(decided)
            except asyncio.QueueFull:
                self.registry.reject(
                    decided.key, RejectionReason.PIPELINE_ERROR, "bundling queue full",
                    expected_version=decided.version
                )

    # Bundling and submission

    async def _bundling_loop(self) -> None:
        while True:
            opportunity = await self.bundling_queue.get()
            try:
                if opportunity.key in self.in_flight_keys:
                    logger.debug(f"{opportunity.key} already in flight")
                    continue
                self.in_flight_keys.add(opportunity.key)
                task = asyncio.create_task(self._bundle_and_submit(opportunity))
                self._in_flight_tasks.add(task)
                task.add_done_callback(self._in_flight_tasks.discard)
            finally:
                self.bundling_queue.task_done()

    async def _bundle_and_submit(self, opportunity: Opportunity) -> None:
        try:
            await self._run_bundle(opportunity)
        except OpportunityExpired:
            logger.debug(f"{opportunity.key} expired before submission completed")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.stats["stage_errors"] += 1
            logger.error(f"Bundling stage failed on {opportunity.key}: {e}")
            self._reject_current(opportunity, RejectionReason.PIPELINE_ERROR, str(e))
        finally:
            self.in_flight_keys.discard(opportunity.key)

    async def _run_bundle(self, opportunity: Opportunity) -> None:
        current = self._current(opportunity)
        if current is None or current.status != OpportunityStatus.ACCEPTED:
            return

        now = self.clock()
        if current.is_expired(now):
            self.registry.expire(current.key, now)
            return

        valuation = self._fresh_valuation(current, now)
        if valuation is None:
            return

        try:
            bundle = self.constructor.construct(current, valuation, now)
        except ConstructionFailed as e:
            rejected = self.registry.reject(
                current.key, e.reason, e.detail, expected_version=current.version, now=now
            )
            self._maybe_retry(rejected, now)
            return

        bundled = self.registry.mark_bundled(
            current.key, bundle.bundle_id, expected_version=current.version, now=self.clock()
        )
        submitted = self.registry.mark_submitted(
            current.key, expected_version=bundled.version, now=self.clock()
        )

        self.stats["bundles_submitted"] += 1
        try:
            result = await self.gateway.submit(bundle.with_status(BundleStatus.SUBMITTED))
        except Exception as e:
            logger.error(f"Gateway error for bundle {bundle.bundle_id}: {e}")
            result = SubmissionResult.rejected(bundle.bundle_id, f"gateway error: {e}")

        await self.outcome_feed.notify(BundleOutcome(
            bundle=bundle.with_status(_BUNDLE_STATUS[result.status]),
            result=result
        ))
        self._resolve(submitted, result)

    def _fresh_valuation(self, current: Opportunity, now: float) -> Optional[Valuation]:
        """
        The accepted valuation, re-run when it aged past the re-valuation window.

        Returns None after rejecting the opportunity when the re-run shows the
        inputs moved or the profit no longer covers execution cost.
        """
        valuation = self.registry.valuation_for(current.key)
        if valuation is None:
            self.registry.reject(
                current.key, RejectionReason.INSUFFICIENT_DATA, "no valuation on record",
                expected_version=current.version, now=now
            )
            return None

        if not self.valuation_engine.needs_revaluation(valuation, current, now):
            return valuation

        try:
            refreshed = self.valuation_engine.ensure_fresh(valuation, current, now)
        except InsufficientData as e:
            self.registry.reject(
                current.key, RejectionReason.INSUFFICIENT_DATA, str(e),
                expected_version=current.version, now=now
            )
            return None

        if refreshed.input_sequences != valuation.input_sequences:
            rejected = self.registry.reject(
                current.key, RejectionReason.INVALIDATED_BY_NEW_SNAPSHOT,
                "inputs moved after acceptance", expected_version=current.version, now=now
            )
            self._maybe_retry(rejected, now)
            return None

        if refreshed.expected_profit <= self.registry.config.execution_cost:
            self.registry.reject(
                current.key, RejectionReason.BELOW_THRESHOLD,
                f"re-valued profit {refreshed.expected_profit:.6f}",
                expected_version=current.version, now=now
            )
            return None

        return refreshed

    def _resolve(self, submitted: Opportunity, result: SubmissionResult) -> None:
        now = self.clock()
        if result.status == SubmissionStatus.LANDED:
            self.registry.resolve_submission(
                submitted.key, OpportunityStatus.LANDED,
                expected_version=submitted.version, now=now
            )
            return

        if result.status == SubmissionStatus.REJECTED:
            resolved = self.registry.resolve_submission(
                submitted.key, OpportunityStatus.REJECTED,
                reason=RejectionReason.SUBMISSION_REJECTED, detail=result.reason,
                expected_version=submitted.version, now=now
            )
        else:
            resolved = self.registry.resolve_submission(
                submitted.key, OpportunityStatus.EXPIRED,
                reason=RejectionReason.SUBMISSION_TIMEOUT, detail=result.reason,
                expected_version=submitted.version, now=now
            )
        self._maybe_retry(resolved, now)

    def _maybe_retry(self, finished: Opportunity, now: float) -> bool:
        """Re-enter a fresh candidate for the same key while budget and deadline allow."""
        if finished.attempt >= self.config.max_submission_retries:
            return False
        if finished.is_expired(now):
            return False
        if finished.rejection_reason not in _RETRYABLE:
            return False
        if self._is_final_rejection(finished):
            logger.info(f"Not retrying {finished.key}: {finished.rejection_detail}")
            return False

        inputs = self._refreshed_inputs(finished.inputs)
        if inputs is None:
            logger.debug(f"Not retrying {finished.key}: inputs no longer cached")
            return False

        fresh = finished.fresh_attempt(inputs, now)
        try:
            self.registry.submit_candidate(fresh, now)
        except (Duplicate, OpportunityExpired) as e:
            logger.debug(f"Not retrying {finished.key}: {e}")
            return False

        try:
            self.valuation_queue.put_nowait(fresh)
        except asyncio.QueueFull:
            self.registry.reject(
                fresh.key, RejectionReason.PIPELINE_ERROR, "valuation queue full",
                expected_version=fresh.version
            )
            return False

        self.stats["retries"] += 1
        logger.info(f"Retrying {finished.key} (attempt {fresh.attempt})")
        return True

    @staticmethod
    def _is_final_rejection(finished: Opportunity) -> bool:
        """Engine rejections a resubmission of the same opportunity would hit again."""
        if finished.rejection_reason != RejectionReason.SUBMISSION_REJECTED:
            return False
        detail = (finished.rejection_detail or "").lower()
        return any(marker in detail for marker in _FINAL_REJECTION_MARKERS)

    def _refreshed_inputs(self, refs: Tuple[SnapshotRef, ...]) -> Optional[Tuple[SnapshotRef, ...]]:
        fresh = []
        for ref in refs:
            snapshot = self.cache.find(ref.venue_id, ref.instrument_id)
            if snapshot is None:
                return None
            fresh.append(snapshot.ref())
        return tuple(fresh)

    # Expiry and eviction

    async def _expiry_sweeper(self) -> None:
        while True:
            try:
                now = self.clock()
                self.registry.expire_overdue(now)
                self.cache.evict_stale(now, self.registry.active_input_keys())
            except Exception as e:
                self.stats["stage_errors"] += 1
                logger.error(f"Error in expiry sweeper: {e}")
            await asyncio.sleep(self.config.sweep_interval_seconds)

    # Helpers

    def _current(self, opportunity: Opportunity) -> Optional[Opportunity]:
        """The registry's instance, or None when this one is no longer active."""
        current = self.registry.get(opportunity.key)
        if current is None or current.opportunity_id != opportunity.opportunity_id:
            return None
        return current

    def _reject_current(self, opportunity: Opportunity, reason: RejectionReason, detail: str) -> None:
        current = self._current(opportunity)
        if current is None:
            return
        try:
            self.registry.reject(current.key, reason, detail)
        except RegistryError as e:
            logger.debug(f"Could not reject {current.key}: {e}")

    def _on_fatal(self, stage: str, error: Exception) -> None:
        self.halted_stages[stage] = str(error)
        alert = Alert(
            alert_id=f"fatal:{stage}",
            category=AlertCategory.INGESTION if stage.startswith("ingestion") else AlertCategory.MARKET_STATE,
            severity=AlertSeverity.CRITICAL,
            title=f"Stage {stage} halted",
            description=str(error),
            source_component=stage
        )
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self.alert_manager.raise_alert(alert)
            return
        task = loop.create_task(self.alert_manager.notify(alert))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    def _all_idle(self) -> bool:
        return (
            all(feed.queue.empty() for feed in self.feeds.values())
            and self.detection_queue.empty()
            and self.valuation_queue.empty()
            and self.bundling_queue.empty()
            and not self._in_flight_tasks
        )

    def get_stats(self) -> Dict[str, Any]:
        """Get pipeline statistics across all components."""
        return {
            **self.stats,
            "is_running": self.is_running,
            "halted_stages": dict(self.halted_stages),
            "queues": {
                "detection": self.detection_queue.qsize(),
                "valuation": self.valuation_queue.qsize(),
                "bundling": self.bundling_queue.qsize(),
                "in_flight": len(self.in_flight_keys)
            },
            "feeds": {venue: feed.get_stats() for venue, feed in self.feeds.items()},
            "cache": self.cache.get_stats(),
            "detection": self.detector.get_stats(),
            "valuation": self.valuation_engine.get_stats(),
            "registry": self.registry.get_stats(),
            "bundling": self.constructor.get_stats(),
            "submission": self.gateway.get_stats(),
            "outcomes": self.outcome_feed.get_stats(),
            "events": self.event_bus.get_stats(),
            "alerts": self.alert_manager.get_stats()
        }


_BUNDLE_STATUS = {
    SubmissionStatus.LANDED: BundleStatus.LANDED,
    SubmissionStatus.REJECTED: BundleStatus.REJECTED,
    SubmissionStatus.TIMEOUT: BundleStatus.TIMEOUT
}

_RETRYABLE = {
    RejectionReason.SUBMISSION_REJECTED,
    RejectionReason.SUBMISSION_TIMEOUT,
    RejectionReason.INVALIDATED_BY_NEW_SNAPSHOT
}

_FINAL_REJECTION_MARKERS = ("tip-too-low", "tip too low")


def create_pipeline_from_settings(
    settings: Settings,
    gateway: Optional[SubmissionGateway] = None,
    clock: Callable[[], float] = time.time
) -> MEVPipeline:
    """Build a fully wired pipeline from application settings."""
    cache = MarketStateCache(settings.staleness_window_seconds, clock=clock)
    event_bus = EventBus()
    if settings.publish_events_to_redis:
        event_bus.subscribe(RedisEventSink(settings.event_channel))

    competition_model = CompetitionModel(CompetitionConfig.from_settings(settings))

    if gateway is None:
        if settings.block_engine_url:
            gateway = BlockEngineClient(
                settings.block_engine_url,
                private_key=settings.bundle_signing_key,
                timeout_seconds=settings.submission_timeout_seconds,
                poll_interval_seconds=settings.bundle_status_poll_seconds
            )
        else:
            gateway = SimulatedBlockEngine(SimulatedEngineConfig(seed=settings.valuation_seed))

    return MEVPipeline(
        cache=cache,
        detector=MEVOpportunityDetector(cache, DetectorConfig.from_settings(settings)),
        valuation_engine=ValuationEngine(
            cache,
            ValuationConfig.from_settings(settings),
            competition_model=competition_model,
            clock=clock
        ),
        registry=OpportunityRegistry(
            cache, RegistryConfig.from_settings(settings), event_bus=event_bus, clock=clock
        ),
        constructor=BundleConstructor(cache, BundleConfig.from_settings(settings), clock=clock),
        gateway=gateway,
        outcome_feed=OutcomeFeed(competition_model, event_bus),
        event_bus=event_bus,
        alert_manager=AlertManager(webhook_url=settings.alert_webhook_url),
        config=PipelineConfig.from_settings(settings),
        clock=clock
    )

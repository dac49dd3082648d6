"""
Per-venue ingestion feeds.

Each venue pushes snapshots into its own bounded queue; a consumer task
applies them to the market state cache in arrival order. Duplicate and
out-of-order snapshots are dropped by the cache and counted here.
"""
import asyncio
import logging
from typing import Any, Callable, Dict, Optional

from mev_pipeline.market_state import (
    CacheConsistencyError,
    MarketSnapshot,
    MarketStateCache,
    StaleUpdate
)

logger = logging.getLogger(__name__)


class IngestionError(Exception):
    """Base exception for ingestion errors."""
    pass


class IngestionOverflow(IngestionError):
    """A venue queue is full; the feed is halted."""

    def __init__(self, venue_id: str, queue_size: int):
        self.venue_id = venue_id
        self.queue_size = queue_size
        super().__init__(f"Ingestion queue for {venue_id} overflowed ({queue_size} pending)")


class FeedHalted(IngestionError):
    """The feed was halted by an earlier fatal error."""
    pass


FatalHandler = Callable[[str, Exception], None]


class VenueFeed:
    """Bounded snapshot stream for one venue."""

    def __init__(
        self,
        venue_id: str,
        cache: MarketStateCache,
        queue_size: int = 10000,
        on_fatal: Optional[FatalHandler] = None
    ):
        self.venue_id = venue_id
        self.cache = cache
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self.on_fatal = on_fatal

        self.halted = False
        self.halt_reason: Optional[str] = None

        self.stats = {
            "received": 0,
            "applied": 0,
            "stale": 0,
            "dropped": 0
        }

    @property
    def stage_name(self) -> str:
        return f"ingestion:{self.venue_id}"

    def push(self, snapshot: MarketSnapshot) -> None:
        """
        Enqueue a snapshot without waiting.

        Raises:
            IngestionOverflow: the queue is full (the feed halts)
            FeedHalted: the feed stopped after an earlier fatal error
        """
        if self.halted:
            raise FeedHalted(f"{self.stage_name} halted: {self.halt_reason}")

        try:
            self.queue.put_nowait(snapshot)
        except asyncio.QueueFull:
            error = IngestionOverflow(self.venue_id, self.queue.qsize())
            self.halt(error)
            raise error
        self.stats["received"] += 1

    async def run(self) -> None:
        """Apply queued snapshots to the cache until cancelled or halted."""
        while not self.halted:
            snapshot = await self.queue.get()
            try:
                self.apply(snapshot)
            finally:
                self.queue.task_done()

    def apply(self, snapshot: MarketSnapshot) -> bool:
        """Apply one snapshot; returns False for stale or duplicate ones."""
        try:
            self.cache.update(snapshot)
        except StaleUpdate as e:
            self.stats["stale"] += 1
            logger.debug(str(e))
            return False
        except CacheConsistencyError as e:
            self.halt(e)
            return False

        self.stats["applied"] += 1
        return True

    def halt(self, error: Exception) -> None:
        """Stop the feed, discard what is queued and report the fatal error."""
        if self.halted:
            return
        self.halted = True
        self.halt_reason = str(error)

        while not self.queue.empty():
            self.queue.get_nowait()
            self.queue.task_done()
            self.stats["dropped"] += 1

        logger.critical(f"Halting {self.stage_name}: {error}")
        if self.on_fatal is not None:
            self.on_fatal(self.stage_name, error)

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self.stats,
            "pending": self.queue.qsize(),
            "halted": self.halted,
            "halt_reason": self.halt_reason
        }

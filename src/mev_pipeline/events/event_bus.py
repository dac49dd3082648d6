"""
Pipeline event publication.

Every opportunity status transition and every bundle submission outcome is
published as an immutable event record. Subscribers receive the record only;
they have no handle on the registry or the cache.
"""
import asyncio
import inspect
import logging
import time
import uuid
from collections import deque
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Union

from pydantic import BaseModel, Field

from mev_pipeline.mev_detection.opportunity_models import (
    OpportunityStatus,
    OpportunityType,
    RejectionReason
)

logger = logging.getLogger(__name__)


class OpportunityEvent(BaseModel):
    """An opportunity moved to a new status."""

    model_config = {"frozen": True}

    event_type: str = "opportunity"
    event_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    opportunity_id: str
    opportunity_key: str
    opportunity_type: OpportunityType
    from_status: Optional[OpportunityStatus] = Field(None, description="None for a new candidate")
    to_status: OpportunityStatus
    version: int
    attempt: int = 0
    reason: Optional[RejectionReason] = None
    detail: Optional[str] = None
    timestamp: float = Field(default_factory=time.time)


class BundleOutcomeEvent(BaseModel):
    """A bundle submission finished."""

    model_config = {"frozen": True}

    event_type: str = "bundle_outcome"
    event_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    bundle_id: str
    opportunity_id: str
    opportunity_key: str
    outcome: str = Field(..., description="landed, rejected or timeout")
    reason: Optional[str] = None
    validator_id: Optional[str] = None
    slot: Optional[int] = None
    tip: float = 0.0
    realized_profit: Optional[float] = None
    timestamp: float = Field(default_factory=time.time)


PipelineEvent = Union[OpportunityEvent, BundleOutcomeEvent]
EventHandler = Callable[[PipelineEvent], Any]
AsyncEventHandler = Callable[[PipelineEvent], Awaitable[Any]]


def _is_async(handler) -> bool:
    return inspect.iscoroutinefunction(handler) or inspect.iscoroutinefunction(
        getattr(handler, "__call__", None)
    )


class EventBus:
    """
    Fan-out of pipeline events to subscribers.

    Synchronous handlers run inline in `publish`. Coroutine handlers are fed
    from a bounded queue by a dispatcher task started with `start()`; events
    arriving while the queue is full are dropped and counted.
    """

    def __init__(self, history_size: int = 1000, queue_size: int = 10000):
        self._handlers: List[EventHandler] = []
        self._async_handlers: List[AsyncEventHandler] = []
        self._history: Deque[PipelineEvent] = deque(maxlen=history_size)
        self._queue_size = queue_size
        self._queue: Optional[asyncio.Queue] = None
        self._dispatcher: Optional[asyncio.Task] = None

        self.stats = {
            "published": 0,
            "handler_errors": 0,
            "dropped": 0
        }

    def subscribe(self, handler: Union[EventHandler, AsyncEventHandler]) -> None:
        if _is_async(handler):
            self._async_handlers.append(handler)
        else:
            self._handlers.append(handler)

    def unsubscribe(self, handler: Union[EventHandler, AsyncEventHandler]) -> None:
        for handlers in (self._handlers, self._async_handlers):
            if handler in handlers:
                handlers.remove(handler)

    def publish(self, event: PipelineEvent) -> None:
        """Deliver an event. Never raises on subscriber failure."""
        self.stats["published"] += 1
        self._history.append(event)

        for handler in list(self._handlers):
            try:
                handler(event)
            except Exception as e:
                self.stats["handler_errors"] += 1
                logger.error(f"Error in event handler for {event.event_type} event: {e}")

        if self._async_handlers and self._queue is not None:
            try:
                self._queue.put_nowait(event)
            except asyncio.QueueFull:
                self.stats["dropped"] += 1
                logger.warning(f"Event queue full, dropped {event.event_type} event {event.event_id}")

    async def start(self) -> None:
        """Start delivering events to coroutine handlers."""
        if self._dispatcher is not None:
            return
        self._queue = asyncio.Queue(maxsize=self._queue_size)
        self._dispatcher = asyncio.create_task(self._dispatch())

    async def stop(self) -> None:
        if self._dispatcher is None:
            return
        self._dispatcher.cancel()
        await asyncio.gather(self._dispatcher, return_exceptions=True)
        self._dispatcher = None
        self._queue = None

    async def _dispatch(self) -> None:
        while True:
            event = await self._queue.get()
            for handler in list(self._async_handlers):
                try:
                    await handler(event)
                except Exception as e:
                    self.stats["handler_errors"] += 1
                    logger.error(f"Error in async event handler for {event.event_type} event: {e}")
            self._queue.task_done()

    def recent(self, limit: int = 50) -> List[PipelineEvent]:
        """Most recent events, newest last."""
        return list(self._history)[-limit:]

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self.stats,
            "subscribers": len(self._handlers) + len(self._async_handlers),
            "pending": self._queue.qsize() if self._queue is not None else 0
        }

"""Publishes pipeline events to a Redis pub/sub channel for live dashboards."""
import logging
from typing import Optional

import redis.asyncio as redis

from mev_pipeline.cache.redis_client import get_redis

from .event_bus import PipelineEvent

logger = logging.getLogger(__name__)


class RedisEventSink:
    """Async event handler that forwards events as JSON on a Redis channel."""

    def __init__(self, channel: str = "mev:events", client: Optional[redis.Redis] = None):
        self.channel = channel
        self.client = client
        self.stats = {"published": 0, "errors": 0}

    async def __call__(self, event: PipelineEvent) -> None:
        try:
            client = self.client or await get_redis()
            await client.publish(self.channel, event.model_dump_json())
            self.stats["published"] += 1
        except Exception as e:
            # Dashboards are best effort; the pipeline never waits on them
            self.stats["errors"] += 1
            logger.warning(f"Failed to publish {event.event_type} event to {self.channel}: {e}")

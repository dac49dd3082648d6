"""Event publication for presentation-layer collaborators."""
from .event_bus import (
    EventBus,
    OpportunityEvent,
    BundleOutcomeEvent,
    PipelineEvent
)
from .redis_sink import RedisEventSink

__all__ = [
    "EventBus",
    "OpportunityEvent",
    "BundleOutcomeEvent",
    "PipelineEvent",
    "RedisEventSink"
]

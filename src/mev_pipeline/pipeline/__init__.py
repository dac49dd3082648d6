"""
Pipeline Module.

Per-venue ingestion feeds and the orchestrator that connects detection,
valuation, acceptance, bundling and submission with bounded queues.
"""
from .ingestion import VenueFeed, IngestionError, IngestionOverflow, FeedHalted
from .orchestrator import MEVPipeline, PipelineConfig, create_pipeline_from_settings

__all__ = [
    "VenueFeed",
    "IngestionError",
    "IngestionOverflow",
    "FeedHalted",
    "MEVPipeline",
    "PipelineConfig",
    "create_pipeline_from_settings"
]

"""
Submission Module.

The gateway boundary to the block engine, its JSON-RPC and simulated
implementations, and the outcome feed that closes the calibration loop.
"""
from .gateway import (
    SubmissionGateway,
    SubmissionResult,
    SubmissionStatus,
    SubmissionError
)
from .block_engine_client import BlockEngineClient
from .simulated_block_engine import SimulatedBlockEngine, SimulatedEngineConfig
from .outcome_feed import OutcomeFeed, BundleOutcome, LandedBundleFact

__all__ = [
    "SubmissionGateway",
    "SubmissionResult",
    "SubmissionStatus",
    "SubmissionError",
    "BlockEngineClient",
    "SimulatedBlockEngine",
    "SimulatedEngineConfig",
    "OutcomeFeed",
    "BundleOutcome",
    "LandedBundleFact"
]

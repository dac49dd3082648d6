"""Submission gateway interface to the block-production auction."""
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from mev_pipeline.bundling.bundle_models import Bundle


class SubmissionError(Exception):
    """Base exception for submission errors."""
    pass


class SubmissionStatus(str, Enum):
    """Outcome of a single bundle submission."""
    LANDED = "landed"
    REJECTED = "rejected"
    TIMEOUT = "timeout"


@dataclass
class SubmissionResult:
    """Result returned by a gateway for one submission attempt."""
    status: SubmissionStatus
    bundle_id: str
    reason: Optional[str] = None

    # Inclusion data, set when landed
    validator_id: Optional[str] = None
    slot: Optional[int] = None
    realized_profit: Optional[float] = None

    submitted_at: float = field(default_factory=time.time)
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def landed(self) -> bool:
        return self.status == SubmissionStatus.LANDED

    @classmethod
    def rejected(cls, bundle_id: str, reason: str) -> "SubmissionResult":
        return cls(status=SubmissionStatus.REJECTED, bundle_id=bundle_id, reason=reason)

    @classmethod
    def timeout(cls, bundle_id: str, reason: str = "timeout") -> "SubmissionResult":
        return cls(status=SubmissionStatus.TIMEOUT, bundle_id=bundle_id, reason=reason)


class SubmissionGateway(ABC):
    """Accepts a bundle and reports whether it landed."""

    async def initialize(self) -> None:
        """Open any connections the gateway needs."""

    async def close(self) -> None:
        """Release connections."""

    @abstractmethod
    async def submit(self, bundle: Bundle) -> SubmissionResult:
        """Submit a bundle. Implementations report failures as results, not exceptions."""

    def get_stats(self) -> Dict[str, Any]:
        return {}

"""
Opportunity Registry.

The single owner of opportunity status. Detectors, valuation workers and the
bundling stage request transitions; the registry applies them atomically with
a versioned compare-and-set and publishes an event for each one.
"""
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Deque, Dict, FrozenSet, List, Optional, Set, Tuple

from mev_pipeline.config.settings import Settings
from mev_pipeline.events.event_bus import EventBus, OpportunityEvent
from mev_pipeline.market_state import MarketStateCache
from mev_pipeline.mev_detection.opportunity_models import (
    Opportunity,
    OpportunityStatus,
    RejectionReason
)
from mev_pipeline.valuation.valuation_engine import Valuation

logger = logging.getLogger(__name__)


class RegistryError(Exception):
    """Base exception for registry errors."""
    pass


class Duplicate(RegistryError):
    """A non-terminal opportunity with the same key already exists."""

    def __init__(self, existing: Opportunity):
        self.existing = existing
        super().__init__(f"Opportunity {existing.key} already active as {existing.status.value}")


class UnknownOpportunity(RegistryError):
    """No active opportunity for the key."""
    pass


class InvalidTransition(RegistryError):
    """The requested status change does not move forward from the current status."""
    pass


class TransitionConflict(RegistryError):
    """The caller acted on an out-of-date version of the opportunity."""

    def __init__(self, key: str, expected_version: int, actual_version: int):
        self.key = key
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"Version conflict on {key}: expected {expected_version}, found {actual_version}"
        )


class OpportunityExpired(RegistryError):
    """The deadline passed; the opportunity has been resolved to Expired."""

    def __init__(self, opportunity: Opportunity):
        self.opportunity = opportunity
        super().__init__(f"Opportunity {opportunity.key} expired at {opportunity.expires_at:.3f}")


ALLOWED_TRANSITIONS: Dict[OpportunityStatus, FrozenSet[OpportunityStatus]] = {
    OpportunityStatus.CANDIDATE: frozenset({
        OpportunityStatus.VALUED,
        OpportunityStatus.ACCEPTED,
        OpportunityStatus.REJECTED,
        OpportunityStatus.EXPIRED
    }),
    # Valued -> Valued replaces the valuation
    OpportunityStatus.VALUED: frozenset({
        OpportunityStatus.VALUED,
        OpportunityStatus.ACCEPTED,
        OpportunityStatus.REJECTED,
        OpportunityStatus.EXPIRED
    }),
    OpportunityStatus.ACCEPTED: frozenset({
        OpportunityStatus.BUNDLED,
        OpportunityStatus.REJECTED,
        OpportunityStatus.EXPIRED
    }),
    OpportunityStatus.BUNDLED: frozenset({
        OpportunityStatus.SUBMITTED,
        OpportunityStatus.REJECTED,
        OpportunityStatus.EXPIRED
    }),
    OpportunityStatus.SUBMITTED: frozenset({
        OpportunityStatus.LANDED,
        OpportunityStatus.REJECTED,
        OpportunityStatus.EXPIRED
    }),
    OpportunityStatus.LANDED: frozenset(),
    OpportunityStatus.REJECTED: frozenset(),
    OpportunityStatus.EXPIRED: frozenset()
}


@dataclass
class RegistryConfig:
    """Acceptance policy."""
    network_fee: float = 0.005
    min_tip: float = 0.001
    reject_high_risk: bool = False
    history_size: int = 1000

    @property
    def execution_cost(self) -> float:
        return self.network_fee + self.min_tip

    @classmethod
    def from_settings(cls, settings: Settings) -> "RegistryConfig":
        return cls(
            network_fee=settings.network_fee,
            min_tip=settings.min_tip,
            reject_high_risk=settings.reject_high_risk
        )


class OpportunityRegistry:
    """
    Lifecycle state machine with at-most-one non-terminal opportunity per key.

    All state changes happen under one lock and never wait on I/O. Events are
    published after the lock is released, in the order the transitions were
    applied by the calling thread.
    """

    def __init__(
        self,
        cache: MarketStateCache,
        config: RegistryConfig = None,
        event_bus: Optional[EventBus] = None,
        clock=time.time
    ):
        self.cache = cache
        self.config = config or RegistryConfig()
        self.event_bus = event_bus or EventBus()
        self.clock = clock

        self._lock = threading.Lock()
        self._active: Dict[str, Opportunity] = {}
        self._valuations: Dict[str, Valuation] = {}
        self._history: Deque[Opportunity] = deque(maxlen=self.config.history_size)

        self.stats = {
            "candidates": 0,
            "duplicates": 0,
            "accepted": 0,
            "rejected": 0,
            "expired": 0,
            "landed": 0,
            "conflicts": 0
        }
        self.rejections_by_reason: Dict[RejectionReason, int] = {r: 0 for r in RejectionReason}

    # Transitions

    def submit_candidate(self, opportunity: Opportunity, now: Optional[float] = None) -> Opportunity:
        """
        Insert a new candidate.

        Raises:
            Duplicate: a non-terminal opportunity with the same key exists
            OpportunityExpired: the candidate arrived after its own deadline
        """
        now = self._now(now)
        events = []
        expired = None

        with self._lock:
            existing = self._active.get(opportunity.key)
            if existing is not None:
                self.stats["duplicates"] += 1
                logger.debug(f"Duplicate candidate for {opportunity.key}, existing {existing.status.value} wins")
                raise Duplicate(existing)

            if opportunity.status != OpportunityStatus.CANDIDATE:
                raise InvalidTransition(
                    f"New opportunities must be candidates, got {opportunity.status.value}"
                )

            self._active[opportunity.key] = opportunity
            self.stats["candidates"] += 1
            events.append(self._event(opportunity, None))

            if opportunity.is_expired(now):
                expired = self._apply(
                    opportunity, OpportunityStatus.EXPIRED, now, events,
                    rejection_reason=RejectionReason.EXPIRED
                )

        self._publish(events)
        if expired is not None:
            raise OpportunityExpired(expired)
        return opportunity

    def record_valuation(
        self,
        key: str,
        valuation: Valuation,
        expected_version: Optional[int] = None,
        now: Optional[float] = None
    ) -> Opportunity:
        """Candidate/Valued -> Valued, replacing any earlier valuation."""
        now = self._now(now)
        events = []
        try:
            with self._lock:
                current = self._checked(key, expected_version, now, events, OpportunityStatus.VALUED)
                if valuation.opportunity_id != current.opportunity_id:
                    raise TransitionConflict(key, current.version, current.version)
                updated = self._apply(current, OpportunityStatus.VALUED, now, events)
                self._valuations[key] = valuation
        finally:
            self._publish(events)
        return updated

    def accept(
        self,
        key: str,
        valuation: Optional[Valuation] = None,
        expected_version: Optional[int] = None,
        now: Optional[float] = None
    ) -> Opportunity:
        """
        Candidate/Valued -> Accepted, or -> Rejected when the policy says no.

        The valuation must beat the execution cost (network fee plus minimum
        tip) and must have been priced on snapshots that are still current.

        Returns:
            The opportunity in its new status (Accepted or Rejected)

        Raises:
            OpportunityExpired: the deadline passed before acceptance
        """
        now = self._now(now)
        events = []
        try:
            with self._lock:
                current = self._checked(key, expected_version, now, events, OpportunityStatus.ACCEPTED)
                valuation = valuation or self._valuations.get(key)
                if valuation is None or valuation.opportunity_id != current.opportunity_id:
                    raise InvalidTransition(f"Cannot accept {key} without a valuation of this instance")

                reason, detail = self._acceptance_check(valuation)
                if reason is not None:
                    updated = self._apply(
                        current, OpportunityStatus.REJECTED, now, events,
                        rejection_reason=reason, rejection_detail=detail
                    )
                else:
                    self._valuations[key] = valuation
                    updated = self._apply(current, OpportunityStatus.ACCEPTED, now, events)
        finally:
            self._publish(events)
        return updated

    def mark_bundled(
        self,
        key: str,
        bundle_id: str,
        expected_version: Optional[int] = None,
        now: Optional[float] = None
    ) -> Opportunity:
        """Accepted -> Bundled."""
        return self._transition(
            key, OpportunityStatus.BUNDLED, expected_version, now, bundle_id=bundle_id
        )

    def mark_submitted(
        self,
        key: str,
        expected_version: Optional[int] = None,
        now: Optional[float] = None
    ) -> Opportunity:
        """Bundled -> Submitted. An expired opportunity never gets here."""
        return self._transition(key, OpportunityStatus.SUBMITTED, expected_version, now)

    def resolve_submission(
        self,
        key: str,
        status: OpportunityStatus,
        reason: Optional[RejectionReason] = None,
        detail: Optional[str] = None,
        expected_version: Optional[int] = None,
        now: Optional[float] = None
    ) -> Opportunity:
        """Submitted -> Landed, Rejected or Expired."""
        if status not in (OpportunityStatus.LANDED, OpportunityStatus.REJECTED, OpportunityStatus.EXPIRED):
            raise InvalidTransition(f"{status.value} is not a submission outcome")
        changes: Dict[str, Any] = {}
        if status != OpportunityStatus.LANDED:
            changes["rejection_reason"] = reason
            changes["rejection_detail"] = detail
        return self._transition(key, status, expected_version, now, **changes)

    def reject(
        self,
        key: str,
        reason: RejectionReason,
        detail: Optional[str] = None,
        expected_version: Optional[int] = None,
        now: Optional[float] = None
    ) -> Opportunity:
        """Any non-terminal status -> Rejected."""
        return self._transition(
            key, OpportunityStatus.REJECTED, expected_version, now,
            rejection_reason=reason, rejection_detail=detail
        )

    def expire(self, key: str, now: Optional[float] = None) -> Opportunity:
        """Any non-terminal status -> Expired."""
        now = self._now(now)
        events = []
        with self._lock:
            current = self._active.get(key)
            if current is None:
                raise UnknownOpportunity(f"No active opportunity for {key}")
            updated = self._apply(
                current, OpportunityStatus.EXPIRED, now, events,
                rejection_reason=RejectionReason.EXPIRED
            )
        self._publish(events)
        return updated

    def expire_overdue(self, now: Optional[float] = None) -> List[Opportunity]:
        """Expire every active opportunity whose deadline has passed."""
        now = self._now(now)
        events = []
        expired = []
        with self._lock:
            for current in list(self._active.values()):
                if current.is_expired(now):
                    expired.append(self._apply(
                        current, OpportunityStatus.EXPIRED, now, events,
                        rejection_reason=RejectionReason.EXPIRED
                    ))
        self._publish(events)
        if expired:
            logger.info(f"Expired {len(expired)} overdue opportunities")
        return expired

    # Queries

    def get(self, key: str) -> Optional[Opportunity]:
        """Current non-terminal instance for a key, if any."""
        return self._active.get(key)

    def valuation_for(self, key: str) -> Optional[Valuation]:
        return self._valuations.get(key)

    def active(self) -> List[Opportunity]:
        return list(self._active.values())

    def active_input_keys(self) -> Set[Tuple[str, str]]:
        """Snapshot keys still referenced by a non-terminal opportunity."""
        keys = set()
        for opportunity in list(self._active.values()):
            keys.update(opportunity.input_keys)
        return keys

    def history(self, limit: int = 50) -> List[Opportunity]:
        """Recently finished opportunities, newest last."""
        return list(self._history)[-limit:]

    def get_stats(self) -> Dict[str, Any]:
        by_status: Dict[str, int] = {}
        for opportunity in list(self._active.values()):
            by_status[opportunity.status.value] = by_status.get(opportunity.status.value, 0) + 1
        return {
            **self.stats,
            "active": len(self._active),
            "active_by_status": by_status,
            "rejections_by_reason": {
                r.value: count for r, count in self.rejections_by_reason.items() if count
            }
        }

    # Internals

    def _transition(
        self,
        key: str,
        status: OpportunityStatus,
        expected_version: Optional[int],
        now: Optional[float],
        **changes: Any
    ) -> Opportunity:
        now = self._now(now)
        events = []
        try:
            with self._lock:
                current = self._checked(key, expected_version, now, events, status)
                updated = self._apply(current, status, now, events, **changes)
        finally:
            self._publish(events)
        return updated

    def _checked(
        self,
        key: str,
        expected_version: Optional[int],
        now: float,
        events: List[OpportunityEvent],
        status: OpportunityStatus
    ) -> Opportunity:
        """Validate a requested transition. Caller holds the lock."""
        current = self._active.get(key)
        if current is None:
            raise UnknownOpportunity(f"No active opportunity for {key}")

        if expected_version is not None and current.version != expected_version:
            self.stats["conflicts"] += 1
            raise TransitionConflict(key, expected_version, current.version)

        if status not in ALLOWED_TRANSITIONS[current.status]:
            raise InvalidTransition(
                f"{key}: {current.status.value} -> {status.value} is not allowed"
            )

        # A landing that already happened is a fact; everything else yields to the deadline
        if current.is_expired(now) and status != OpportunityStatus.LANDED:
            expired = self._apply(
                current, OpportunityStatus.EXPIRED, now, events,
                rejection_reason=RejectionReason.EXPIRED
            )
            raise OpportunityExpired(expired)

        return current

    def _apply(
        self,
        current: Opportunity,
        status: OpportunityStatus,
        now: float,
        events: List[OpportunityEvent],
        **changes: Any
    ) -> Opportunity:
        """Replace the active instance with its next version. Caller holds the lock."""
        updated = current.advance(status, now, **changes)

        if updated.is_terminal:
            del self._active[current.key]
            self._valuations.pop(current.key, None)
            self._history.append(updated)
            self._count_terminal(updated)
        else:
            self._active[current.key] = updated
            if status == OpportunityStatus.ACCEPTED:
                self.stats["accepted"] += 1

        events.append(self._event(updated, current.status))
        return updated

    def _acceptance_check(self, valuation: Valuation) -> Tuple[Optional[RejectionReason], Optional[str]]:
        superseded = [ref for ref in valuation.input_sequences if not self.cache.is_current(ref)]
        if superseded:
            ref = superseded[0]
            return (
                RejectionReason.INVALIDATED_BY_NEW_SNAPSHOT,
                f"{ref.venue_id}/{ref.instrument_id} moved past sequence {ref.sequence}"
            )

        cost = self.config.execution_cost
        if valuation.expected_profit <= cost:
            return (
                RejectionReason.BELOW_THRESHOLD,
                f"expected profit {valuation.expected_profit:.6f} <= execution cost {cost:.6f}"
            )

        if self.config.reject_high_risk and valuation.high_risk:
            return (
                RejectionReason.HIGH_RISK,
                f"5th percentile outcome {valuation.percentile_5:.6f}"
            )

        return None, None

    def _count_terminal(self, opportunity: Opportunity) -> None:
        if opportunity.status == OpportunityStatus.LANDED:
            self.stats["landed"] += 1
            logger.info(f"Opportunity {opportunity.key} landed")
            return

        if opportunity.status == OpportunityStatus.EXPIRED:
            self.stats["expired"] += 1
        else:
            self.stats["rejected"] += 1
        if opportunity.rejection_reason is not None:
            self.rejections_by_reason[opportunity.rejection_reason] += 1

        logger.debug(
            f"Opportunity {opportunity.key} {opportunity.status.value}: "
            f"{opportunity.rejection_reason.value if opportunity.rejection_reason else 'no reason'}"
            f"{' (' + opportunity.rejection_detail + ')' if opportunity.rejection_detail else ''}"
        )

    @staticmethod
    def _event(opportunity: Opportunity, from_status: Optional[OpportunityStatus]) -> OpportunityEvent:
        return OpportunityEvent(
            opportunity_id=opportunity.opportunity_id,
            opportunity_key=opportunity.key,
            opportunity_type=opportunity.opportunity_type,
            from_status=from_status,
            to_status=opportunity.status,
            version=opportunity.version,
            attempt=opportunity.attempt,
            reason=opportunity.rejection_reason,
            detail=opportunity.rejection_detail,
            timestamp=opportunity.updated_at
        )

    def _publish(self, events: List[OpportunityEvent]) -> None:
        for event in events:
            self.event_bus.publish(event)

    def _now(self, now: Optional[float]) -> float:
        return self.clock() if now is None else now

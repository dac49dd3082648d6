"""Market state cache with per-key serialization and staleness tracking."""
import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple

from .snapshots import MarketSnapshot, SnapshotKind, SnapshotRef

logger = logging.getLogger(__name__)

CacheKey = Tuple[str, str]


class MarketStateError(Exception):
    """Base exception for market state errors."""
    pass


class StaleUpdate(MarketStateError):
    """Snapshot sequence is not newer than the cached one."""

    def __init__(self, key: CacheKey, incoming_sequence: int, current_sequence: int):
        self.key = key
        self.incoming_sequence = incoming_sequence
        self.current_sequence = current_sequence
        super().__init__(
            f"Stale update for {key[0]}/{key[1]}: "
            f"sequence {incoming_sequence} <= accepted {current_sequence}"
        )


class NotFound(MarketStateError):
    """No snapshot cached for the requested key."""
    pass


class CacheConsistencyError(MarketStateError):
    """The cache detected a violation of its own invariants."""
    pass


@dataclass
class CachedSnapshot:
    """Cached snapshot with per-key version metadata."""
    snapshot: MarketSnapshot
    version: int
    stored_at: float
    access_count: int = 0
    last_access: float = None

    def __post_init__(self):
        if self.last_access is None:
            self.last_access = self.stored_at


class MarketStateCache:
    """
    Holds the latest snapshot per (venue, instrument).

    Updates to one key are serialized through a dedicated lock while updates to
    disjoint keys proceed independently. Subscribers are notified after each
    accepted update, outside the key lock.
    """

    def __init__(
        self,
        staleness_window_seconds: float = 5.0,
        clock: Callable[[], float] = time.time
    ):
        self.staleness_window_seconds = staleness_window_seconds
        self.clock = clock

        self._entries: Dict[CacheKey, CachedSnapshot] = {}
        # Highest accepted sequence per key, kept across evictions
        self._high_water: Dict[CacheKey, int] = {}
        self._key_locks: Dict[CacheKey, threading.Lock] = {}
        self._guard = threading.Lock()
        self._instrument_index: Dict[str, Set[str]] = {}

        self._subscribers: List[Callable[[MarketSnapshot], None]] = []

        self._metrics = {
            "updates_applied": 0,
            "stale_updates": 0,
            "hits": 0,
            "misses": 0,
            "evictions": 0,
            "notification_errors": 0
        }

    def subscribe(self, handler: Callable[[MarketSnapshot], None]) -> None:
        """Register a change-notification handler."""
        self._subscribers.append(handler)

    def unsubscribe(self, handler: Callable[[MarketSnapshot], None]) -> None:
        if handler in self._subscribers:
            self._subscribers.remove(handler)

    def update(self, snapshot: MarketSnapshot) -> CachedSnapshot:
        """
        Apply a snapshot.

        Raises:
            StaleUpdate: sequence is not greater than the highest one accepted for
                the key, even if that snapshot has since been evicted
            CacheConsistencyError: the cached entry does not match its key
        """
        key = snapshot.key
        with self._locked(key):
            current = self._entries.get(key)
            if current is not None and current.snapshot.key != key:
                raise CacheConsistencyError(
                    f"Entry for {key} holds snapshot for {current.snapshot.key}"
                )

            high_water = self._high_water.get(key)
            if high_water is not None and snapshot.sequence <= high_water:
                self._metrics["stale_updates"] += 1
                raise StaleUpdate(key, snapshot.sequence, high_water)

            entry = CachedSnapshot(
                snapshot=snapshot,
                version=current.version + 1 if current else 1,
                stored_at=self.clock()
            )
            self._entries[key] = entry
            self._high_water[key] = snapshot.sequence

            if current is None:
                with self._guard:
                    self._instrument_index.setdefault(snapshot.instrument_id, set()).add(
                        snapshot.venue_id
                    )

            self._metrics["updates_applied"] += 1

        self._notify(snapshot)
        return entry

    def get(self, venue_id: str, instrument_id: str) -> MarketSnapshot:
        """Return the latest snapshot or raise NotFound."""
        entry = self._entries.get((venue_id, instrument_id))
        if entry is None:
            self._metrics["misses"] += 1
            raise NotFound(f"No snapshot for {venue_id}/{instrument_id}")

        entry.access_count += 1
        entry.last_access = self.clock()
        self._metrics["hits"] += 1
        return entry.snapshot

    def find(self, venue_id: str, instrument_id: str) -> Optional[MarketSnapshot]:
        """Return the latest snapshot or None."""
        entry = self._entries.get((venue_id, instrument_id))
        return entry.snapshot if entry else None

    def current_sequence(self, venue_id: str, instrument_id: str) -> Optional[int]:
        entry = self._entries.get((venue_id, instrument_id))
        return entry.snapshot.sequence if entry else None

    def is_current(self, ref: SnapshotRef) -> bool:
        """Whether the referenced snapshot is still the cached one."""
        return self.current_sequence(ref.venue_id, ref.instrument_id) == ref.sequence

    def snapshots_for_instrument(
        self,
        instrument_id: str,
        kind: Optional[SnapshotKind] = None
    ) -> List[MarketSnapshot]:
        """All venues' latest snapshots for an instrument, ordered by venue id."""
        with self._guard:
            venues = sorted(self._instrument_index.get(instrument_id, ()))

        snapshots = []
        for venue_id in venues:
            snapshot = self.find(venue_id, instrument_id)
            if snapshot is None:
                continue
            if kind is not None and snapshot.kind != kind:
                continue
            snapshots.append(snapshot)
        return snapshots

    def is_stale(self, snapshot: MarketSnapshot, now: Optional[float] = None) -> bool:
        if now is None:
            now = self.clock()
        return snapshot.age(now) > self.staleness_window_seconds

    def evict_stale(
        self,
        now: Optional[float] = None,
        retained_keys: Iterable[CacheKey] = ()
    ) -> int:
        """Drop snapshots older than the staleness window unless still referenced."""
        if now is None:
            now = self.clock()
        retained = set(retained_keys)

        evicted = 0
        for key in list(self._entries.keys()):
            if key in retained:
                continue
            with self._locked(key):
                entry = self._entries.get(key)
                if entry is None or not self.is_stale(entry.snapshot, now):
                    continue
                del self._entries[key]
                with self._guard:
                    self._key_locks.pop(key, None)
                    venues = self._instrument_index.get(key[1])
                    if venues is not None:
                        venues.discard(key[0])
                        if not venues:
                            del self._instrument_index[key[1]]
                evicted += 1

        if evicted:
            self._metrics["evictions"] += evicted
            logger.debug(f"Evicted {evicted} stale snapshots")
        return evicted

    def keys(self) -> List[CacheKey]:
        return list(self._entries.keys())

    def get_stats(self) -> Dict[str, int]:
        return {
            **self._metrics,
            "cached_snapshots": len(self._entries),
            "instruments": len(self._instrument_index)
        }

    def __len__(self) -> int:
        return len(self._entries)

    def _lock_for(self, key: CacheKey) -> threading.Lock:
        with self._guard:
            lock = self._key_locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._key_locks[key] = lock
            return lock

    @contextmanager
    def _locked(self, key: CacheKey):
        """Hold the key lock, retrying if eviction retired the lock while we waited."""
        while True:
            lock = self._lock_for(key)
            lock.acquire()
            with self._guard:
                if self._key_locks.get(key) is lock:
                    break
            lock.release()
        try:
            yield
        finally:
            lock.release()

    def _notify(self, snapshot: MarketSnapshot) -> None:
        for handler in list(self._subscribers):
            try:
                handler(snapshot)
            except Exception as e:
                self._metrics["notification_errors"] += 1
                logger.error(
                    f"Error in change handler for {snapshot.venue_id}/{snapshot.instrument_id}: {e}"
                )

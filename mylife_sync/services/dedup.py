"""Event dedup cache.

Remembers which device events already produced treatments so overlapping
archive windows do not resend them. A miss after eviction is harmless:
treatment ids are derived from the event identity, so the downstream store
upserts the same record again.
"""

import threading
import time
from collections import OrderedDict
from collections.abc import Callable, Iterable

from mylife_sync.logging_config import get_logger

logger = get_logger(__name__)


class EventDedupCache:
    """Bounded, time-windowed set of processed event identities.

    Usage::

        cache = EventDedupCache(ttl_seconds=48 * 3600)
        if not cache.seen(identity):
            records = handle(event)
            cache.mark_seen(identity)
    """

    def __init__(
        self,
        ttl_seconds: float,
        max_entries: int = 20_000,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the cache.

        Args:
            ttl_seconds: Entries older than this are evicted; should exceed
                the archive overlap window.
            max_entries: Upper bound; the oldest entries are evicted first.
            clock: Wall-clock source in seconds (injectable for tests).
        """
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self._ttl = ttl_seconds
        self._max_entries = max_entries
        self._clock = clock
        # identity -> marked_at, insertion ordered (oldest first)
        self._entries: OrderedDict[str, float] = OrderedDict()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    def seen(self, identity: str) -> bool:
        """Return True if the identity was marked and has not expired."""
        with self._lock:
            marked_at = self._entries.get(identity)
            if marked_at is None:
                return False
            if self._clock() - marked_at > self._ttl:
                del self._entries[identity]
                return False
            return True

    def mark_seen(self, identity: str) -> None:
        """Record an identity as processed now."""
        with self._lock:
            self._entries[identity] = self._clock()
            self._entries.move_to_end(identity)
            self._evict_locked()

    def evict_expired(self) -> int:
        """Drop expired entries and return how many were removed."""
        with self._lock:
            return self._evict_locked()

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def export_entries(self) -> list[tuple[str, float]]:
        """Return (identity, marked_at) pairs, oldest first."""
        with self._lock:
            return list(self._entries.items())

    def import_entries(self, entries: Iterable[tuple[str, float]]) -> None:
        """Load pairs produced by export_entries(), keeping chronological order."""
        with self._lock:
            for identity, marked_at in sorted(entries, key=lambda item: item[1]):
                self._entries[identity] = float(marked_at)
                self._entries.move_to_end(identity)
            self._evict_locked()

    def _evict_locked(self) -> int:
        removed = 0
        cutoff = self._clock() - self._ttl
        while self._entries:
            identity, marked_at = next(iter(self._entries.items()))
            if marked_at >= cutoff and len(self._entries) <= self._max_entries:
                break
            del self._entries[identity]
            removed += 1
        if removed:
            logger.debug(
                "Evicted dedup cache entries",
                removed=removed,
                remaining=len(self._entries),
            )
        return removed

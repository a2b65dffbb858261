"""
Keyed, append-only event buffer with capacity and TTL eviction.

Keeps previously observed events for replay and inspection without
re-querying the source. The cache is an explicit object handed to whoever
needs it; there is no process-wide instance.

append() extends the stored sequence for a key and never replaces it. The
cache does not deduplicate: callers that may replay a range should run
core.ledger.dedupe_events over what they read back.

Usage:
    from core.event_cache import EventCache

    cache = EventCache(max_events_per_key=10_000, ttl_seconds=3600)
    cache.append("payments", events)
    recent = cache.get("payments")
"""

from __future__ import annotations

import time
from collections import deque
from typing import Callable, Hashable, Iterable

from config.loader import get_config
from ledger_logging.logger_manager import setup_module_logger
from shared.constants import DEFAULT_MAX_EVENTS_PER_KEY
from shared.types import DomainEvent

_UNSET = object()


class EventCache:
    """
    In-memory event store keyed by caller-chosen keys.

    Eviction:
        - Per-key capacity: oldest entries dropped first once a key holds
          max_events_per_key events (None = unbounded).
        - TTL: entries older than ttl_seconds are invisible and pruned on
          the next access to their key (None = never expire).
    """

    def __init__(
        self,
        max_events_per_key: int | None | object = _UNSET,
        ttl_seconds: float | None | object = _UNSET,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        settings = get_config().get_cache_config().get("event_cache", {})
        if max_events_per_key is _UNSET:
            max_events_per_key = settings.get("max_events_per_key", DEFAULT_MAX_EVENTS_PER_KEY)
        if ttl_seconds is _UNSET:
            ttl_seconds = settings.get("ttl_seconds")
        if max_events_per_key is not None and max_events_per_key <= 0:
            raise ValueError("max_events_per_key must be positive or None")

        self._max_events: int | None = max_events_per_key  # type: ignore[assignment]
        self._ttl: float | None = ttl_seconds  # type: ignore[assignment]
        self._clock = clock
        self._store: dict[Hashable, deque[tuple[float, DomainEvent]]] = {}
        self.evicted = 0

        self._logger = setup_module_logger(
            "event_cache", "event_cache.log", module_folder="Cache_Logs"
        )

    def append(self, key: Hashable, events: Iterable[DomainEvent]) -> int:
        """Extend the sequence stored under key. Returns its new length."""
        bucket = self._store.get(key)
        if bucket is None:
            bucket = deque()
            self._store[key] = bucket
        self._prune(key, bucket)

        now = self._clock()
        for event in events:
            bucket.append((now, event))
        if self._max_events is not None:
            overflow = len(bucket) - self._max_events
            for _ in range(max(overflow, 0)):
                bucket.popleft()
            if overflow > 0:
                self.evicted += overflow
                self._logger.debug("Cache key %r over capacity, dropped %d oldest", key, overflow)
        return len(bucket)

    def get(self, key: Hashable) -> list[DomainEvent]:
        """Events stored under key in insertion order; empty list if absent."""
        bucket = self._store.get(key)
        if bucket is None:
            return []
        self._prune(key, bucket)
        return [event for _, event in bucket]

    def clear(self, key: Hashable | None = None) -> None:
        """Drop one key, or everything when key is None."""
        if key is None:
            self._store.clear()
        else:
            self._store.pop(key, None)

    def keys(self) -> list[Hashable]:
        return list(self._store)

    def __contains__(self, key: Hashable) -> bool:
        return bool(self.get(key))

    def __len__(self) -> int:
        return sum(len(self.get(key)) for key in list(self._store))

    def _prune(self, key: Hashable, bucket: deque[tuple[float, DomainEvent]]) -> None:
        if self._ttl is None:
            return
        cutoff = self._clock() - self._ttl
        expired = 0
        while bucket and bucket[0][0] <= cutoff:
            bucket.popleft()
            expired += 1
        if expired:
            self.evicted += expired
            self._logger.debug("Cache key %r expired %d event(s)", key, expired)

"""
In-memory TTL cache for query results and aggregate metrics.

Entries are memory-resident and lost on restart. Expired entries are evicted
lazily when they are looked up; ``purge_expired`` offers an explicit sweep.
All methods are synchronous so no two writers can interleave on one key.
"""

import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

from crm_core.utils.logging import get_logger

logger = get_logger(__name__)

Clock = Callable[[], float]


@dataclass(frozen=True)
class CacheEntry:
    """A stored payload. Replacing a payload means storing a new entry."""
    key: str
    payload: Any
    stored_at: float
    ttl_seconds: float

    def age(self, now: float) -> float:
        return now - self.stored_at

    def is_expired(self, now: float) -> bool:
        """Absent once ``now - stored_at >= ttl``."""
        return self.age(now) >= self.ttl_seconds


class CacheStore:
    """Keyed TTL store of opaque payloads.

    Never initiates a fetch; callers decide what to do on a miss.
    """

    def __init__(self, default_ttl_seconds: float = 300.0, clock: Clock = time.monotonic):
        if default_ttl_seconds <= 0:
            raise ValueError("default_ttl_seconds must be > 0")
        self._entries: dict[str, CacheEntry] = {}
        self._default_ttl = default_ttl_seconds
        self._clock = clock
        self._hits = 0
        self._misses = 0
        self._expirations = 0
        # Bumped on every invalidation; a fetch started under an older epoch
        # must not write its result back
        self._epochs: dict[str, int] = {}
        self._clear_epoch = 0

    @property
    def default_ttl_seconds(self) -> float:
        return self._default_ttl

    def get(self, key: str) -> Optional[Any]:
        """Return the payload for ``key``, or None if missing or expired."""
        entry = self.get_entry(key)
        return entry.payload if entry is not None else None

    def get_entry(self, key: str) -> Optional[CacheEntry]:
        entry = self._entries.get(key)
        if entry is None:
            self._misses += 1
            return None

        if entry.is_expired(self._clock()):
            del self._entries[key]
            self._misses += 1
            self._expirations += 1
            logger.debug("Cache entry expired", key=key, ttl=entry.ttl_seconds)
            return None

        self._hits += 1
        return entry

    def set(self, key: str, payload: Any, ttl_seconds: Optional[float] = None) -> CacheEntry:
        """Store ``payload`` under ``key``, replacing any existing entry."""
        ttl = self._default_ttl if ttl_seconds is None else ttl_seconds
        if ttl <= 0:
            raise ValueError("ttl_seconds must be > 0")
        entry = CacheEntry(key=key, payload=payload, stored_at=self._clock(), ttl_seconds=ttl)
        self._entries[key] = entry
        return entry

    def epoch(self, prefix: str) -> tuple[int, int]:
        """Invalidation epoch for keys under ``prefix``.

        Read it before starting a fetch and hand it to ``set_if_current``.
        """
        return self._clear_epoch, self._epochs.get(prefix, 0)

    def set_if_current(
        self,
        key: str,
        payload: Any,
        prefix: str,
        epoch: tuple[int, int],
        ttl_seconds: Optional[float] = None,
    ) -> Optional[CacheEntry]:
        """Store ``payload`` unless ``prefix`` was invalidated since ``epoch`` was read."""
        if self.epoch(prefix) != epoch:
            logger.debug("Discarding result fetched before invalidation", key=key, prefix=prefix)
            return None
        return self.set(key, payload, ttl_seconds)

    def invalidate(self, key: Optional[str] = None) -> int:
        """Drop one entry, or everything when no key is given.

        Returns:
            Number of entries removed
        """
        if key is None:
            count = len(self._entries)
            self._entries.clear()
            self._clear_epoch += 1
            if count:
                logger.info("Cache cleared", entries=count)
            return count

        if self._entries.pop(key, None) is not None:
            logger.debug("Cache entry invalidated", key=key)
            return 1
        return 0

    def invalidate_prefix(self, prefix: str) -> int:
        """Drop every entry whose key starts with ``prefix``."""
        doomed = [k for k in self._entries if k.startswith(prefix)]
        for key in doomed:
            del self._entries[key]
        self._epochs[prefix] = self._epochs.get(prefix, 0) + 1
        if doomed:
            logger.info("Cache entries invalidated", prefix=prefix, entries=len(doomed))
        return len(doomed)

    def purge_expired(self) -> int:
        """Sweep expired entries without waiting for a lookup."""
        now = self._clock()
        doomed = [k for k, e in self._entries.items() if e.is_expired(now)]
        for key in doomed:
            del self._entries[key]
        self._expirations += len(doomed)
        return len(doomed)

    def keys(self) -> list[str]:
        return list(self._entries)

    def stats(self) -> dict:
        """Return hit/miss statistics."""
        total = self._hits + self._misses
        return {
            "entries": len(self._entries),
            "hits": self._hits,
            "misses": self._misses,
            "expirations": self._expirations,
            "hit_rate": round(self._hits / total * 100, 1) if total > 0 else 0.0,
        }

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        entry = self._entries.get(key)
        return entry is not None and not entry.is_expired(self._clock())

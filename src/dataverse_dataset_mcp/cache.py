# Dataverse Dataset MCP Server
# File: cache.py
# Version: v1

"""In-process TTL cache for discovery results.

Used for relationship and form discovery only. Views and record pages are
never cached here since they can change outside this process.

- Keys are composite tuples (see ``make_key``).
- Entries expire ``ttl_seconds`` after they were written.
- Expired entries are dropped lazily, on the next access to that key.
- The clock is injectable so tests can control expiry.
"""

from __future__ import annotations

import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Dict, Hashable, Optional, Tuple

DEFAULT_TTL_SECONDS = 300.0


@dataclass
class CacheEntry:
    value: Any
    created_at: float
    key: Hashable


@dataclass
class CacheStats:
    hits: int = 0
    misses: int = 0
    sets: int = 0
    evictions: int = 0
    expirations: int = 0


def make_key(*parts: Any) -> Tuple[str, ...]:
    """Build a composite cache key, mapping missing parts to a placeholder."""
    return tuple("-" if p is None else str(p) for p in parts)


class DiscoveryCache:
    """A small TTL cache that knows nothing about what it stores.

    ``max_entries`` of 0 means unbounded. When bounded, the oldest entries
    are evicted first.
    """

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        max_entries: int = 0,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self.ttl_seconds = float(ttl_seconds)
        self.max_entries = int(max_entries)
        self._clock = clock or time.monotonic
        self._store: "OrderedDict[Hashable, CacheEntry]" = OrderedDict()
        self._stats = CacheStats()

    def __len__(self) -> int:
        return len(self._store)

    def __contains__(self, key: Hashable) -> bool:
        return key in self._store

    def get(self, key: Hashable) -> Optional[Any]:
        """Return the cached value if present and fresh, else None."""
        entry = self._store.get(key)
        if entry is None:
            self._stats.misses += 1
            return None

        if self._clock() - entry.created_at >= self.ttl_seconds:
            self._store.pop(key, None)
            self._stats.misses += 1
            self._stats.expirations += 1
            return None

        self._stats.hits += 1
        return entry.value

    def set(self, key: Hashable, value: Any) -> None:
        """Insert or replace a value. The last write for a key wins."""
        if key in self._store:
            self._store.move_to_end(key)

        self._store[key] = CacheEntry(value=value, created_at=self._clock(), key=key)
        self._stats.sets += 1

        if self.max_entries > 0:
            while len(self._store) > self.max_entries:
                self._store.popitem(last=False)
                self._stats.evictions += 1

    def clear(self) -> int:
        """Drop every entry and return how many were removed."""
        size = len(self._store)
        self._store.clear()
        return size

    def stats(self) -> Dict[str, Any]:
        return {
            "ttl_seconds": self.ttl_seconds,
            "max_entries": self.max_entries,
            "size": len(self._store),
            "hits": self._stats.hits,
            "misses": self._stats.misses,
            "sets": self._stats.sets,
            "evictions": self._stats.evictions,
            "expirations": self._stats.expirations,
        }

import time
from typing import Callable, Dict, Hashable, Optional, Tuple


class BoundedCache:
    """Small TTL cache with oldest-first eviction.

    Each owner (pipeline, formatter, API) holds its own instance; nothing is
    shared at module level.
    """

    def __init__(
        self,
        max_entries: int = 512,
        ttl: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
        on_evict: Optional[Callable[[object], None]] = None,
        sliding: bool = False,
    ):
        self.max_entries = max(int(max_entries), 1)
        self.ttl = ttl
        # Sliding entries are re-stamped on every hit.
        self.sliding = sliding
        self._clock = clock
        self._on_evict = on_evict
        self._entries: Dict[Hashable, Tuple[float, object]] = {}
        self._stats = {"hits": 0, "misses": 0, "evictions": 0}

    def __len__(self):
        return len(self._entries)

    def get(self, key):
        entry = self._entries.get(key)
        if entry is None:
            self._stats["misses"] += 1
            return None
        stored_at, value = entry
        if self.ttl is not None and stored_at + self.ttl < self._clock():
            self._drop(key)
            self._stats["misses"] += 1
            return None
        self._stats["hits"] += 1
        if self.sliding:
            self._entries[key] = (self._clock(), value)
        return value

    def set(self, key, value):
        if key not in self._entries and len(self._entries) >= self.max_entries:
            oldest_key = min(self._entries.items(), key=lambda item: item[1][0])[0]
            self._drop(oldest_key)
            self._stats["evictions"] += 1
        self._entries[key] = (self._clock(), value)

    def get_or_create(self, key, factory):
        value = self.get(key)
        if value is None:
            value = factory()
            self.set(key, value)
        return value

    def purge_expired(self) -> int:
        """Drop every expired entry; returns how many were dropped."""

        if self.ttl is None:
            return 0
        cutoff = self._clock() - self.ttl
        expired = [k for k, (stored_at, _) in self._entries.items() if stored_at < cutoff]
        for key in expired:
            self._drop(key)
        return len(expired)

    def _drop(self, key):
        entry = self._entries.pop(key, None)
        if entry is not None and self._on_evict is not None:
            self._on_evict(entry[1])

    def values(self):
        return [entry[1] for entry in self._entries.values()]

    def clear(self):
        for key in list(self._entries):
            self._drop(key)
        self._stats = {"hits": 0, "misses": 0, "evictions": 0}

    def stats(self):
        return dict(self._stats, size=len(self._entries))

"""
cache/store.py -- In-process TTL cache for opportunistic lookups.

Used for Steam profile summaries. Entries may disappear at any time without
affecting correctness; a miss just means one more upstream call.

The clock is injectable so expiry can be tested deterministically.

Usage:
    cache = TTLCache(ttl=300)
    profile = cache.get("76561197960287930")   # value or None
    cache.set("76561197960287930", profile)
    cache.purge_expired()                      # optional housekeeping

The cache holds at most max_entries keys. A set() that would exceed the
bound first drops expired entries, then the oldest write.
"""

import time
from typing import Callable, Generic, Optional, TypeVar

_DEFAULT_TTL = 5 * 60  # seconds
_DEFAULT_MAX_ENTRIES = 1024

V = TypeVar("V")


class TTLCache(Generic[V]):
    def __init__(
        self,
        ttl: float = _DEFAULT_TTL,
        clock: Callable[[], float] = time.time,
        max_entries: int = _DEFAULT_MAX_ENTRIES,
    ) -> None:
        self.ttl = ttl
        self.max_entries = max(1, max_entries)
        self._clock = clock
        self._entries: dict[str, tuple[V, float]] = {}

    def get(self, key: str) -> Optional[V]:
        """Return the cached value for key if it exists and hasn't expired."""
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if self._clock() >= expires_at:
            self._entries.pop(key, None)
            return None
        return value

    def set(self, key: str, value: V) -> None:
        """Store value for key, replacing any existing entry."""
        # Re-insert so dict order stays oldest-write first.
        self._entries.pop(key, None)
        if len(self._entries) >= self.max_entries:
            self.purge_expired()
        while len(self._entries) >= self.max_entries:
            del self._entries[next(iter(self._entries))]
        self._entries[key] = (value, self._clock() + self.ttl)

    def purge_expired(self) -> int:
        """Drop every expired entry. Returns the number removed."""
        now = self._clock()
        expired = [key for key, (_, expires_at) in self._entries.items() if now >= expires_at]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

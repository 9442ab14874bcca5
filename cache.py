import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CacheEntry:
    """Cached payload plus the wall-clock time it was stored"""
    data: Any
    last_updated: float


class CacheManager:
    """In-memory TTL cache for materialized collections, folder listings and short-lived state.

    Entries are replaced whole on every write. An entry whose age reaches the TTL
    is never handed out: ``get`` checks expiry itself, ``cleanup`` only frees memory.
    """

    def __init__(self, ttl_minutes: float = 15, clock: Callable[[], float] = time.time):
        self.ttl = ttl_minutes * 60
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}

    def _is_expired(self, entry: CacheEntry) -> bool:
        return self._clock() - entry.last_updated >= self.ttl

    def get_entry(self, key: str) -> Optional[CacheEntry]:
        """Get the live entry for a key, evicting it if it has expired"""
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._is_expired(entry):
            del self._entries[key]
            return None
        return entry

    def get(self, key: str) -> Optional[Any]:
        """Get the cached payload, or None when absent or expired"""
        entry = self.get_entry(key)
        return entry.data if entry is not None else None

    def set(self, key: str, data: Any) -> CacheEntry:
        """Store a payload stamped with the current time, overwriting any previous entry"""
        entry = CacheEntry(data=data, last_updated=self._clock())
        self._entries[key] = entry
        return entry

    def has(self, key: str) -> bool:
        return self.get_entry(key) is not None

    def delete(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    def clear(self):
        self._entries.clear()

    def cleanup(self) -> List[str]:
        """Evict every expired entry and return the evicted keys"""
        expired = [key for key, entry in self._entries.items() if self._is_expired(entry)]
        for key in expired:
            del self._entries[key]
        if expired:
            logger.debug("Evicted %d expired cache entries", len(expired))
        return expired

    def keys(self) -> List[str]:
        return list(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

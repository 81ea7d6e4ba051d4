"""
Memory Cache Module (L1)

Process-local cache of recently served series with:
- TTL expiry taken from each entry
- LRU eviction at a fixed capacity
- Namespace (account) invalidation
"""

from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

import structlog

from adsync.config import get_settings
from adsync.core.models import CacheEntry, CacheLayer, TimelinePoint, utc_now

logger = structlog.get_logger(__name__)


def series_size(points: List[TimelinePoint]) -> int:
    """Serialized size of a series in bytes"""
    return sum(len(p.model_dump_json()) for p in points)


@dataclass
class CachedSeries:
    entry: CacheEntry
    points: List[TimelinePoint] = field(default_factory=list)


class MemoryCache:
    """
    LRU memory cache keyed by cache key.

    Example:
        cache = MemoryCache(max_entries=256)
        cache.set(entry, points)
        hit = cache.get(entry.cache_key)
    """

    def __init__(self, max_entries: Optional[int] = None):
        self.max_entries = max_entries or get_settings().cache.memory_max_entries
        self._items: "OrderedDict[str, CachedSeries]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._items)

    def __contains__(self, key: str) -> bool:
        return key in self._items

    def get(self, key: str, now: Optional[datetime] = None) -> Optional[CachedSeries]:
        """Non-expired value for ``key``; expired values are evicted"""
        cached = self._items.get(key)
        if cached is None:
            return None
        if cached.entry.is_expired(now or utc_now()):
            del self._items[key]
            logger.debug("Memory cache entry expired", cache_key=key)
            return None
        self._items.move_to_end(key)
        return cached

    def peek(self, key: str) -> Optional[CachedSeries]:
        """Value for ``key`` regardless of expiry, without touching LRU order"""
        return self._items.get(key)

    def set(self, entry: CacheEntry, points: List[TimelinePoint]) -> CachedSeries:
        stored = entry.model_copy(update={"layer": CacheLayer.MEMORY})
        cached = CachedSeries(entry=stored, points=list(points))
        self._items[entry.cache_key] = cached
        self._items.move_to_end(entry.cache_key)

        while len(self._items) > self.max_entries:
            evicted, _ = self._items.popitem(last=False)
            logger.debug("Memory cache eviction", cache_key=evicted)
        return cached

    def delete(self, key: str) -> bool:
        return self._items.pop(key, None) is not None

    def invalidate_account(self, account_id: str) -> int:
        """Drop every entry of an account"""
        prefix = f"{account_id}:"
        keys = [k for k in self._items if k.startswith(prefix)]
        for key in keys:
            del self._items[key]
        return len(keys)

    def purge_expired(self, now: Optional[datetime] = None) -> int:
        now = now or utc_now()
        expired = [k for k, v in self._items.items() if v.entry.is_expired(now)]
        for key in expired:
            del self._items[key]
        return len(expired)

    def size_bytes(self, account_id: Optional[str] = None) -> int:
        return sum(
            v.entry.size_bytes for v in self._items.values()
            if account_id is None or v.entry.account_id == account_id
        )

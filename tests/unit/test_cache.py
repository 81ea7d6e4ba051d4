"""
Unit Tests - Memory Cache
"""
from datetime import date, datetime, timedelta, timezone

from adsync.core.models import CacheEntry, CacheLayer, DateRange, Finality
from adsync.serving.cache import MemoryCache, series_size

NOW = datetime(2024, 6, 15, 12, 0, tzinfo=timezone.utc)


def entry(day: int, account_id="act_1001", ttl_seconds=3600, size_bytes=100) -> CacheEntry:
    rng = DateRange.single(date(2024, 5, day))
    return CacheEntry(
        cache_key=CacheEntry.build_key(account_id, rng),
        account_id=account_id,
        date_range=rng,
        layer=CacheLayer.PERSISTENT,
        ttl_seconds=ttl_seconds,
        data_freshness=Finality.FINALIZED,
        size_bytes=size_bytes,
        written_at=NOW,
    )


class TestMemoryCache:
    """Tests for MemoryCache"""

    def test_set_and_get(self, make_point):
        """Test stored series come back tagged as memory"""
        cache = MemoryCache(max_entries=4)
        points = [make_point("ad_1", date(2024, 5, 1))]

        cache.set(entry(1), points)
        hit = cache.get(entry(1).cache_key, NOW)

        assert hit.points == points
        assert hit.entry.layer == CacheLayer.MEMORY

    def test_miss(self):
        cache = MemoryCache(max_entries=4)

        assert cache.get("act_1001:insights:missing", NOW) is None

    def test_lru_eviction(self):
        """Test the least recently used entry is evicted at capacity"""
        cache = MemoryCache(max_entries=2)
        cache.set(entry(1), [])
        cache.set(entry(2), [])

        cache.get(entry(1).cache_key, NOW)
        cache.set(entry(3), [])

        assert entry(1).cache_key in cache
        assert entry(2).cache_key not in cache
        assert len(cache) == 2

    def test_expired_entry_evicted_on_get(self):
        cache = MemoryCache(max_entries=4)
        cache.set(entry(1, ttl_seconds=60), [])

        assert cache.get(entry(1).cache_key, NOW + timedelta(minutes=2)) is None
        assert entry(1).cache_key not in cache

    def test_peek_ignores_expiry(self):
        """Test peek returns expired values without evicting them"""
        cache = MemoryCache(max_entries=4)
        cache.set(entry(1, ttl_seconds=60), [])

        assert cache.peek(entry(1).cache_key) is not None
        assert entry(1).cache_key in cache

    def test_invalidate_account(self):
        cache = MemoryCache(max_entries=8)
        cache.set(entry(1), [])
        cache.set(entry(2), [])
        cache.set(entry(1, account_id="act_2002"), [])

        dropped = cache.invalidate_account("act_1001")

        assert dropped == 2
        assert len(cache) == 1

    def test_purge_expired(self):
        cache = MemoryCache(max_entries=8)
        cache.set(entry(1, ttl_seconds=60), [])
        cache.set(entry(2, ttl_seconds=3600), [])

        assert cache.purge_expired(NOW + timedelta(minutes=5)) == 1
        assert len(cache) == 1

    def test_size_bytes(self):
        cache = MemoryCache(max_entries=8)
        cache.set(entry(1, size_bytes=100), [])
        cache.set(entry(2, size_bytes=250), [])
        cache.set(entry(1, account_id="act_2002", size_bytes=40), [])

        assert cache.size_bytes() == 390
        assert cache.size_bytes("act_1001") == 350

    def test_series_size(self, make_point):
        points = [make_point("ad_1", date(2024, 5, d)) for d in (1, 2)]

        assert series_size(points) == sum(len(p.model_dump_json()) for p in points)
        assert series_size([]) == 0

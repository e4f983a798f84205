from datetime import datetime, timedelta

from trust_monitor.services.cache import TTLCache
from trust_monitor.services.cadence import Cadence


class FakeClock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now


def test_ttl_cache_expiry_and_eviction():
    clock = FakeClock(datetime(2025, 1, 1))
    cache = TTLCache(ttl_seconds=60, clock=clock)
    cache.put("a", 1)
    cache.put("b", 2, ttl=600)

    assert cache.get("a") == 1
    assert "a" in cache

    clock.now += timedelta(seconds=61)
    assert cache.get("a") is None
    assert "a" not in cache
    assert cache.get("b") == 2
    assert len(cache) == 2

    assert cache.evict_expired() == 1
    assert len(cache) == 1


def test_cached_none_is_distinguishable_from_missing():
    cache = TTLCache(ttl_seconds=60)
    cache.put("k", None)
    assert "k" in cache
    assert cache.get("missing", "default") == "default"


def test_cadence_due_and_mark():
    c = Cadence("reconcile", timedelta(minutes=5))
    t0 = datetime(2025, 1, 1, 0, 0)
    assert c.due(t0)

    c.mark(t0)
    assert not c.due(t0 + timedelta(minutes=4, seconds=59))
    assert c.due(t0 + timedelta(minutes=5))

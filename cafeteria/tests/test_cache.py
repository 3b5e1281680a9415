"""
TTL 缓存测试
"""

from ..core.cache import TTLCache


class _Ticker:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


class TestTTLCache:

    def test_value_expires(self):
        ticker = _Ticker()
        cache = TTLCache(default_ttl=10, clock=ticker)
        cache.set("k", "v")
        assert cache.get("k") == "v"

        ticker.now = 10
        assert cache.get("k") is None
        assert len(cache) == 0

    def test_get_or_set_calls_factory_once(self):
        cache = TTLCache(default_ttl=10, clock=_Ticker())
        calls = []

        def factory():
            calls.append(1)
            return [1, 2]

        assert cache.get_or_set("k", factory) == [1, 2]
        assert cache.get_or_set("k", factory) == [1, 2]
        assert len(calls) == 1

    def test_invalidate_and_clear(self):
        cache = TTLCache(default_ttl=10, clock=_Ticker())
        cache.set("a", 1)
        cache.set("b", 2)
        cache.invalidate("a")
        assert cache.get("a") is None
        cache.clear()
        assert len(cache) == 0

    def test_set_drops_expired_entries(self):
        """不同的查询键过期后不会一直留在缓存里"""
        ticker = _Ticker()
        cache = TTLCache(default_ttl=10, clock=ticker)
        for day in range(5):
            cache.set(("range", day), [day])
        assert len(cache) == 5

        ticker.now = 10
        cache.set(("range", 99), [])

        assert len(cache) == 1
        assert cache.get(("range", 99)) == []

"""
Tests for the shared result cache.
"""

import threading
import time

import pytest


class TestFingerprint:
    """Tests for deterministic cache keys."""

    def test_key_order_does_not_matter(self):
        from portfolio_engine.cache import fingerprint

        assert fingerprint({"a": 1, "b": 2}) == fingerprint({"b": 2, "a": 1})

    def test_different_inputs_differ(self):
        from portfolio_engine.cache import fingerprint

        assert fingerprint("x", [1, 2]) != fingerprint("x", [2, 1])

    def test_enums_and_dataclasses(self):
        from portfolio_engine.cache import fingerprint
        from portfolio_engine.config import OptimizationObjective, EngineConfig

        a = fingerprint(OptimizationObjective.MINIMIZE_RISK, EngineConfig().snapshot())
        b = fingerprint(OptimizationObjective.MINIMIZE_RISK, EngineConfig().snapshot())
        assert a == b


class TestResultCache:
    """Tests for TTL expiry, eviction and single-flight computation."""

    def test_get_set(self, clock):
        from portfolio_engine.cache import ResultCache

        cache = ResultCache(ttl_seconds=60, clock=clock)
        cache.set("k", {"v": 1})
        assert cache.get("k") == {"v": 1}
        assert cache.get("missing") is None

    def test_expiry(self, clock):
        from portfolio_engine.cache import ResultCache

        cache = ResultCache(ttl_seconds=60, clock=clock)
        cache.set("k", 1)
        clock.advance(59)
        assert cache.get("k") == 1
        clock.advance(1)
        assert cache.get("k") is None
        assert cache.stats()["evictions"] == 1

    def test_per_call_ttl(self, clock):
        from portfolio_engine.cache import ResultCache

        cache = ResultCache(ttl_seconds=60, clock=clock)
        cache.set("k", 1, ttl=600)
        clock.advance(300)
        assert cache.get("k") == 1

    def test_lru_eviction(self, clock):
        from portfolio_engine.cache import ResultCache

        cache = ResultCache(ttl_seconds=60, max_entries=2, clock=clock)
        cache.set("a", 1)
        cache.set("b", 2)
        cache.get("a")
        cache.set("c", 3)

        assert cache.get("b") is None
        assert cache.get("a") == 1
        assert cache.get("c") == 3

    def test_get_or_compute_reports_cache_use(self, clock):
        from portfolio_engine.cache import ResultCache

        cache = ResultCache(clock=clock)
        calls = []

        def compute():
            calls.append(1)
            return "value"

        assert cache.get_or_compute("k", compute) == ("value", False)
        assert cache.get_or_compute("k", compute) == ("value", True)
        assert cache.get_or_compute("k", compute, force_refresh=True) == ("value", False)
        assert len(calls) == 2

    def test_compute_error_is_not_cached(self, clock):
        from portfolio_engine.cache import ResultCache

        cache = ResultCache(clock=clock)

        def boom():
            raise RuntimeError("provider down")

        with pytest.raises(RuntimeError):
            cache.get_or_compute("k", boom)
        assert cache.get("k") is None
        assert cache._key_locks == {}

    def test_single_flight(self):
        from portfolio_engine.cache import ResultCache

        cache = ResultCache()
        calls = []
        lock = threading.Lock()

        def slow():
            with lock:
                calls.append(1)
            time.sleep(0.05)
            return 42

        results = []
        threads = [
            threading.Thread(target=lambda: results.append(cache.get_or_compute("k", slow)[0]))
            for _ in range(5)
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results == [42] * 5
        assert len(calls) == 1

    def test_invalidate_and_clear(self, clock):
        from portfolio_engine.cache import ResultCache

        cache = ResultCache(clock=clock)
        cache.set("a", 1)
        cache.set("b", 2)
        assert cache.invalidate("a") is True
        assert cache.invalidate("a") is False
        cache.get("b")
        cache.clear()

        stats = cache.stats()
        assert stats["entries"] == 0
        assert stats["hits"] == 0

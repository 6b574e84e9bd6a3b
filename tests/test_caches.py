"""Tests for caches.py."""

import pytest

from caches import KeyedCache, ZonalCaches


class TestKeyedCache:
    def test_get_set_and_counters(self):
        cache = KeyedCache("t")
        assert cache.get("a") is None
        cache.set("a", 1)
        assert cache.get("a") == 1
        assert "a" in cache
        assert len(cache) == 1
        assert cache.stats() == {"name": "t", "size": 1, "hits": 1, "misses": 1}

    def test_get_or_compute_computes_once(self):
        cache = KeyedCache("t")
        calls = []

        def compute():
            calls.append(1)
            return "value"

        assert cache.get_or_compute("k", compute) == "value"
        assert cache.get_or_compute("k", compute) == "value"
        assert calls == [1]

    def test_exceptions_are_not_cached(self):
        cache = KeyedCache("t")

        def fail():
            raise RuntimeError("upstream down")

        with pytest.raises(RuntimeError):
            cache.get_or_compute("k", fail)
        assert "k" not in cache

    def test_clear(self):
        cache = KeyedCache("t")
        cache.set("a", 1)
        cache.clear()
        assert len(cache) == 0
        assert cache.hits == 0


class TestZonalCaches:
    def test_instances_are_isolated(self):
        a, b = ZonalCaches(), ZonalCaches()
        a.reports.set("k", 1)
        assert b.reports.get("k") is None

    def test_stats_names(self):
        assert set(ZonalCaches().stats()) == {
            "datasets", "reports", "anchors", "record_points", "road_geometries",
        }

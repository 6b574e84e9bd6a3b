"""Tests for facilities.py: concurrent facility counts and caching."""

import threading
from unittest.mock import MagicMock

import pytest

from caches import KeyedCache
from cancellation import CancelledError, CancelToken
from facilities import (
    FacilityAggregator,
    FacilityReport,
    amenity_query,
    build_report,
    report_cache_key,
    transport_query,
)
from http_fallback import RateLimitedError
from overpass_client import OverpassClient

AMENITIES = [
    {"type": "node", "id": 1, "tags": {"amenity": "hospital"}},
    {"type": "way", "id": 2, "tags": {"amenity": "school"}},
    {"type": "node", "id": 3, "tags": {"amenity": "school"}},
    {"type": "node", "id": 4, "tags": {"amenity": "fire_station"}},
    {"type": "node", "id": 5, "tags": {"amenity": "marketplace"}},
    {"type": "node", "id": 6, "tags": {"amenity": "cafe"}},
]
MALLS = [{"type": "way", "id": 20, "tags": {"shop": "mall"}}]
TRANSPORT = [
    {"type": "node", "id": 30, "tags": {"amenity": "bus_station", "public_transport": "station"}},
    {"type": "node", "id": 30, "tags": {"amenity": "bus_station", "public_transport": "station"}},
    {"type": "node", "id": 31, "tags": {"railway": "station"}},
]


def _overpass(by_caller=None):
    """Mock OverpassClient answering by caller name."""
    data = by_caller or {
        "facilities.amenity": AMENITIES,
        "facilities.mall": MALLS,
        "facilities.transport": TRANSPORT,
    }
    overpass = MagicMock(spec=OverpassClient)

    def query(ql, cancel=None, caller="unknown"):
        value = data[caller]
        if callable(value):
            return value(cancel)
        if isinstance(value, Exception):
            raise value
        return value

    overpass.query.side_effect = query
    return overpass


# =========================================================================
# Report building
# =========================================================================

class TestBuildReport:
    def test_buckets_and_dedupe(self):
        report = build_report(AMENITIES, MALLS, TRANSPORT)
        assert report == FacilityReport(
            hospitals=1, schools=2, fire=1, market=1, mall=1, transport=2,
        )

    def test_empty(self):
        assert build_report([], [], []) == FacilityReport()

    def test_cache_key_rounds_to_five_places(self):
        assert report_cache_key(16.4119001, 120.5960004, 1500) == "16.41190:120.59600:1500"

    def test_queries(self):
        assert '"amenity"~"^(hospital|school|police|fire_station|pharmacy|bank|marketplace)$"' in amenity_query(1, 2, 500)
        ql = transport_query(1, 2, 500)
        assert '["railway"="station"]' in ql and '["public_transport"="station"]' in ql


# =========================================================================
# Aggregation
# =========================================================================

class TestAggregate:
    def test_three_queries_one_report(self):
        overpass = _overpass()
        report = FacilityAggregator(overpass, KeyedCache("reports")).aggregate(16.4119, 120.596, 1500)
        assert report.schools == 2
        assert report.transport == 2
        callers = sorted(c.kwargs["caller"] for c in overpass.query.call_args_list)
        assert callers == ["facilities.amenity", "facilities.mall", "facilities.transport"]

    def test_cache_hit_issues_no_queries(self):
        overpass = _overpass()
        aggregator = FacilityAggregator(overpass, KeyedCache("reports"))
        first = aggregator.aggregate(16.411900, 120.596000, 1500)
        second = aggregator.aggregate(16.411901, 120.596002, 1500)
        assert first == second
        assert overpass.query.call_count == 3

    def test_radius_is_part_of_key(self):
        overpass = _overpass()
        aggregator = FacilityAggregator(overpass, KeyedCache("reports"))
        aggregator.aggregate(16.4119, 120.596, 1500)
        aggregator.aggregate(16.4119, 120.596, 500)
        assert overpass.query.call_count == 6

    def test_failure_cancels_siblings_and_is_not_cached(self):
        sibling_tokens = []
        released = threading.Event()

        def slow_transport(cancel):
            sibling_tokens.append(cancel)
            cancel.on_cancel(released.set)
            released.wait(5)
            cancel.raise_if_cancelled()
            return TRANSPORT

        overpass = _overpass({
            "facilities.amenity": AMENITIES,
            "facilities.mall": RateLimitedError("429"),
            "facilities.transport": slow_transport,
        })
        cache = KeyedCache("reports")
        with pytest.raises(RateLimitedError):
            FacilityAggregator(overpass, cache).aggregate(16.4119, 120.596, 1500)

        assert sibling_tokens[0].cancelled
        assert len(cache) == 0

    def test_failure_leaves_caller_token_alive(self):
        overpass = _overpass({
            "facilities.amenity": AMENITIES,
            "facilities.mall": RateLimitedError("429"),
            "facilities.transport": TRANSPORT,
        })
        token = CancelToken()
        with pytest.raises(RateLimitedError):
            FacilityAggregator(overpass, KeyedCache("reports")).aggregate(16.4, 120.5, 1500, cancel=token)
        assert not token.cancelled

    def test_cancelled_before_start(self):
        overpass = _overpass()
        token = CancelToken()
        token.cancel()
        with pytest.raises(CancelledError):
            FacilityAggregator(overpass, KeyedCache("reports")).aggregate(16.4, 120.5, 1500, cancel=token)
        overpass.query.assert_not_called()

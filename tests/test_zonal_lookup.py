"""Tests for zonal_lookup.py: pipeline stages and per-client sessions.

Uses the on-disk manifest from conftest with mocked geocoder / Overpass
clients.  Facility queries return no elements unless a test says otherwise.
"""

import threading

import pytest

from cancellation import CancelledError
from datasets import NoDatasetMappingError
from facilities import FacilityReport
from geocoder import GeoPoint, Suggestion
from http_fallback import HTTPStatusError, RateLimitedError
from record_matcher import MatchConfidence
from road_geometry import BUSY_WARNING
from zonal_lookup import (
    PINNED_LABEL,
    InvalidRadiusError,
    LookupSession,
    hints_from_address,
)


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


@pytest.fixture()
def session(lookup_service):
    s = LookupSession(lookup_service)
    yield s
    s.close()


# =========================================================================
# Search pipeline
# =========================================================================

class TestSearch:
    def test_session_road_end_to_end(self, session, mock_geocoder, baguio_geo):
        mock_geocoder.geocode_top.return_value = baguio_geo

        result = session.search("session road baguio")

        assert result.dataset_key == "BAGUIOCITY"
        assert result.best.vicinity == "Session Rd"
        assert result.confidence is MatchConfidence.HIGH
        assert result.report == FacilityReport()
        assert result.warnings == []
        assert result.radius == 1500

    def test_unmapped_area(self, session, mock_geocoder):
        mock_geocoder.geocode_top.return_value = GeoPoint("Cebu City", 10.3, 123.9, {"state": "Cebu"})
        with pytest.raises(NoDatasetMappingError) as exc_info:
            session.search("cebu")
        assert exc_info.value.key == "CEBU"
        assert exc_info.value.province == "Cebu"

    def test_province_dataset(self, session, mock_geocoder):
        mock_geocoder.geocode_top.return_value = GeoPoint(
            "La Trinidad", 16.46, 120.59, {"town": "La Trinidad", "province": "Benguet"},
        )
        result = session.search("halsema highway")
        assert result.dataset_key == "BENGUET"
        assert result.best.vicinity == "Halsema Highway"

    def test_transient_facility_failure_is_a_warning(self, session, mock_geocoder, mock_overpass, baguio_geo):
        mock_geocoder.geocode_top.return_value = baguio_geo
        mock_overpass.query.side_effect = RateLimitedError("overpass HTTP 429", status_code=429)

        result = session.search("session road baguio")

        assert result.report is None
        assert result.warnings == [BUSY_WARNING]
        assert result.best.vicinity == "Session Rd"

    def test_other_facility_failure_is_a_warning(self, session, mock_geocoder, mock_overpass, baguio_geo):
        mock_geocoder.geocode_top.return_value = baguio_geo
        mock_overpass.query.side_effect = HTTPStatusError("overpass error (400): bad query")

        result = session.search("session road baguio")

        assert result.warnings == ["Reports temporarily unavailable: overpass error (400): bad query"]

    def test_new_search_cancels_previous(self, session, mock_geocoder, baguio_geo):
        mock_geocoder.geocode_top.return_value = baguio_geo
        session.search("session road")
        first_token = mock_geocoder.geocode_top.call_args.kwargs["cancel"]
        assert not first_token.cancelled

        session.search("harrison road")
        assert first_token.cancelled
        assert not mock_geocoder.geocode_top.call_args.kwargs["cancel"].cancelled

    def test_cancelled_mid_pipeline_raises(self, session, mock_geocoder, baguio_geo):
        def geocode_then_supersede(text, cancel=None):
            cancel.cancel("superseded")
            return baguio_geo

        mock_geocoder.geocode_top.side_effect = geocode_then_supersede
        with pytest.raises(CancelledError):
            session.search("session road")

    def test_pick_suggestion_skips_geocoding(self, session, mock_geocoder, baguio_geo):
        hit = Suggestion(baguio_geo.display_name, baguio_geo.lat, baguio_geo.lng, dict(baguio_geo.address))
        result = session.pick_suggestion(hit)
        mock_geocoder.geocode_top.assert_not_called()
        assert result.best.vicinity == "Session Rd"


# =========================================================================
# Map picks
# =========================================================================

class TestPick:
    def test_click_reverse_geocodes(self, session, mock_geocoder, baguio_geo):
        mock_geocoder.reverse_geocode.return_value = baguio_geo
        result = session.pick(16.4119, 120.5960, "click")
        assert mock_geocoder.reverse_geocode.call_args.args == (16.4119, 120.5960)
        assert result.dataset_key == "BAGUIOCITY"
        assert result.best.vicinity == "Session Rd"

    def test_drag_refreshes_report_only(self, lookup_service, mock_geocoder):
        clock = FakeClock()
        session = LookupSession(lookup_service, clock=clock)

        result = session.pick(16.41, 120.59, "drag")

        assert result.geo.display_name == PINNED_LABEL
        assert result.report == FacilityReport()
        assert result.matches == []
        mock_geocoder.reverse_geocode.assert_not_called()

    def test_drag_throttled(self, lookup_service, mock_overpass):
        clock = FakeClock()
        session = LookupSession(lookup_service, clock=clock)

        assert session.pick(16.41, 120.59, "drag") is not None
        clock.now += 0.5
        assert session.pick(16.4101, 120.59, "drag") is None
        clock.now += 0.7
        assert session.pick(16.4102, 120.59, "drag") is not None

    def test_dragend_always_resolves(self, lookup_service, mock_geocoder, baguio_geo):
        clock = FakeClock()
        session = LookupSession(lookup_service, clock=clock)
        mock_geocoder.reverse_geocode.return_value = baguio_geo

        session.pick(16.41, 120.59, "drag")
        clock.now += 0.1
        result = session.pick(16.41, 120.59, "dragend")

        assert result is not None
        assert result.dataset_key == "BAGUIOCITY"
        mock_geocoder.reverse_geocode.assert_called_once()


# =========================================================================
# Facilities and radius
# =========================================================================

class TestFacilities:
    def test_invalid_radius(self, session):
        with pytest.raises(InvalidRadiusError):
            session.set_radius(750)
        assert session.radius == 1500

    def test_radius_change_sticks(self, session, mock_overpass):
        report = session.facilities(16.41, 120.59, 1000)
        assert report == FacilityReport()
        assert session.radius == 1000
        assert mock_overpass.query.call_count == 3

    def test_errors_raise_instead_of_warning(self, session, mock_overpass):
        mock_overpass.query.side_effect = RateLimitedError("overpass HTTP 429", status_code=429)
        with pytest.raises(RateLimitedError):
            session.facilities(16.41, 120.59)

    def test_reports_cached_across_sessions(self, lookup_service, mock_overpass):
        LookupSession(lookup_service).facilities(16.41, 120.59, 500)
        LookupSession(lookup_service).facilities(16.41, 120.59, 500)
        assert mock_overpass.query.call_count == 3


# =========================================================================
# Report superseded while a lookup is in flight
# =========================================================================

def _interrupt_first_report(mock_overpass, interrupt):
    """Run *interrupt* from inside the first facility query, then honour the token."""
    lock = threading.Lock()
    fired = []

    def query(ql, cancel=None, caller=""):
        with lock:
            first = not fired
            fired.append(caller)
        if first:
            interrupt()
        cancel.raise_if_cancelled()
        return []

    mock_overpass.query.side_effect = query


class TestReportSuperseded:
    def test_radius_change_keeps_search_matches(self, session, mock_geocoder, mock_overpass, baguio_geo):
        mock_geocoder.geocode_top.return_value = baguio_geo
        _interrupt_first_report(mock_overpass, lambda: session.facilities(16.41, 120.59, 500))

        result = session.search("session road baguio")

        assert result.best.vicinity == "Session Rd"
        assert result.confidence is MatchConfidence.HIGH
        assert result.report is None
        assert result.report_superseded is True
        assert result.warnings == []
        assert result.to_dict()["reports_superseded"] is True
        assert session.radius == 500

    def test_drag_keeps_click_matches(self, lookup_service, mock_geocoder, mock_overpass, baguio_geo):
        session = LookupSession(lookup_service, clock=FakeClock())
        mock_geocoder.reverse_geocode.return_value = baguio_geo
        _interrupt_first_report(mock_overpass, lambda: session.pick(16.42, 120.60, "drag"))

        result = session.pick(16.4119, 120.5960, "click")

        assert result.dataset_key == "BAGUIOCITY"
        assert result.best.vicinity == "Session Rd"
        assert result.report_superseded is True

    def test_radius_change_keeps_focused_point(
        self, session, mock_geocoder, mock_overpass, session_road_record, baguio_geo,
    ):
        mock_geocoder.geocode_top.return_value = baguio_geo
        mock_overpass.road_center.return_value = (16.4125, 120.5975)
        _interrupt_first_report(mock_overpass, lambda: session.facilities(16.41, 120.59, 1000))

        result = session.focus_record(session_road_record)

        assert (result.point.lat, result.point.lng) == (16.4125, 120.5975)
        assert result.report is None
        assert result.to_dict()["reports_superseded"] is True

    def test_new_search_during_report_still_cancels(self, session, mock_geocoder, mock_overpass, baguio_geo):
        mock_geocoder.geocode_top.return_value = baguio_geo
        _interrupt_first_report(mock_overpass, lambda: session.slots.begin("geocode"))

        with pytest.raises(CancelledError):
            session.search("session road baguio")

    def test_uninterrupted_report_not_marked(self, session, mock_geocoder, baguio_geo):
        mock_geocoder.geocode_top.return_value = baguio_geo
        result = session.search("session road baguio")
        assert result.report_superseded is False
        assert result.to_dict()["reports_superseded"] is False


# =========================================================================
# Records
# =========================================================================

class TestRecordActions:
    def test_focus_record(self, session, mock_geocoder, mock_overpass, session_road_record, baguio_geo):
        mock_geocoder.geocode_top.return_value = baguio_geo
        mock_overpass.road_center.return_value = (16.4125, 120.5975)

        result = session.focus_record(session_road_record)

        assert (result.point.lat, result.point.lng) == (16.4125, 120.5975)
        assert result.geo.display_name == "Session Rd, Baguio City"
        assert result.geo.address == {"city": "Baguio City", "province": "Benguet"}
        assert result.report == FacilityReport()

    def test_highlight_warning(self, session, mock_geocoder, mock_overpass, session_road_record, baguio_geo):
        mock_geocoder.geocode_top.return_value = baguio_geo
        mock_geocoder.search_suggestions.return_value = []
        mock_overpass.road_center.return_value = None
        mock_overpass.road_ways.return_value = []

        result = session.highlight(session_road_record)

        assert result.highlight is None
        assert "Session Rd" in result.warning


# =========================================================================
# Serialization and helpers
# =========================================================================

class TestSerialization:
    def test_lookup_result_to_dict(self, session, mock_geocoder, baguio_geo):
        mock_geocoder.geocode_top.return_value = baguio_geo
        d = session.search("session road baguio").to_dict()

        assert d["dataset_key"] == "BAGUIOCITY"
        assert d["confidence"] == "High"
        assert d["best"]["vicinity"] == "Session Rd"
        assert d["matches"][0]["tier"] == "Premium"
        assert d["matches"][0]["record"]["zonal_value"] == 25000.0
        assert d["reports"]["hospitals"] == 0
        assert d["geo"]["lat"] == baguio_geo.lat

    def test_blank_value_reads_as_zero(self, session, mock_geocoder):
        mock_geocoder.geocode_top.return_value = GeoPoint(
            "Betag", 16.45, 120.59, {"town": "La Trinidad", "province": "Benguet"},
        )
        d = session.search("km 5 betag").to_dict()
        assert d["best"]["vicinity"] == "Km 5"
        assert d["matches"][0]["record"]["zonal_value"] == 0.0


def test_hints_from_address():
    hints = hints_from_address({"city": "Baguio", "state": "Benguet"})
    assert hints.municipality == "Baguio"
    assert hints.province == "Benguet"
    assert hints_from_address(None).municipality is None


def test_close_cancels_in_flight(lookup_service):
    session = LookupSession(lookup_service)
    token = session.slots.begin("overpass")
    session.close()
    assert token.cancelled

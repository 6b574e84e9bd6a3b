"""
Lookup pipeline: place -> dataset -> ranked records -> facility report.

Stages are separate methods on ZonalLookupService so each one can be
called, timed and tested on its own; run_pipeline() composes them for a
located place.  Every stage takes the CancelToken of the user action it
belongs to.

LookupSession holds the per-client interaction state (one live token per
action class, the pin-drag throttle, the typeahead stream and the selected
radius).  Caches live on the service and are shared by all sessions.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from caches import ZonalCaches
from cancellation import ActionSlots, CancelledError, CancelToken, DragThrottle, check_cancelled
from datasets import DatasetSelection, DatasetStore, detect_city_name, detect_province_name
from facilities import FacilityAggregator, FacilityReport
from geocoder import Geocoder, GeoPoint, Suggestion, SuggestionStream
from http_fallback import ExternalFetcher, UpstreamError, is_transient
from overpass_client import OverpassClient
from record_matcher import MatchConfidence, MatchHints, ScoredRecord, confidence_for, rank_records
from records import Record, value_tier
from road_geometry import (
    BUSY_WARNING,
    AnchorResolver,
    GeometryResolver,
    HighlightResult,
    RecordLocator,
    RecordPoint,
)
from zonal_config import ZONAL_MODEL, ZonalModel, load_endpoint_config
from zv_trace import get_trace

logger = logging.getLogger(__name__)

PINNED_LABEL = "Pinned location"


class InvalidRadiusError(ValueError):
    """Requested facility radius is not one of the configured options."""

    pass


# =============================================================================
# RESULTS
# =============================================================================

@dataclass
class LookupResult:
    """Everything one place lookup produces."""
    geo: GeoPoint
    radius: int
    dataset_key: str = ""
    matches: List[ScoredRecord] = field(default_factory=list)
    confidence: MatchConfidence = MatchConfidence.UNKNOWN
    report: Optional[FacilityReport] = None
    warnings: List[str] = field(default_factory=list)
    report_superseded: bool = False

    @property
    def best(self) -> Optional[Record]:
        return self.matches[0].record if self.matches else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "geo": self.geo.to_dict(),
            "radius": self.radius,
            "dataset_key": self.dataset_key,
            "matches": [
                dict(m.to_dict(), tier=value_tier(m.record.zonal_value))
                for m in self.matches
            ],
            "best": self.best.to_dict() if self.best else None,
            "confidence": self.confidence.value,
            "reports": self.report.to_dict() if self.report else None,
            "reports_superseded": self.report_superseded,
            "warnings": list(self.warnings),
        }


@dataclass
class FocusResult:
    """A record placed on the map, with the report around it."""
    point: RecordPoint
    geo: GeoPoint
    radius: int
    report: Optional[FacilityReport] = None
    warnings: List[str] = field(default_factory=list)
    report_superseded: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "point": self.point.to_dict(),
            "geo": self.geo.to_dict(),
            "radius": self.radius,
            "reports": self.report.to_dict() if self.report else None,
            "reports_superseded": self.report_superseded,
            "warnings": list(self.warnings),
        }


def _timed_stage(stage_name, fn, *args, **kwargs):
    """Run *fn* with timing.  Logs duration and re-raises on failure."""
    trace = get_trace()
    if trace:
        trace.start_stage(stage_name)
    t0 = time.time()
    try:
        result = fn(*args, **kwargs)
        t1 = time.time()
        if trace:
            trace.record_stage(stage_name, t0, t1)
        else:
            logger.info("  [stage] %s OK (%.1fs)", stage_name, t1 - t0)
        return result
    except Exception as exc:
        t1 = time.time()
        if trace:
            trace.record_stage(
                stage_name, t0, t1,
                error_class=type(exc).__name__,
                error_message=str(exc)[:200],
            )
        else:
            logger.warning("  [stage] %s FAILED (%.1fs): %s", stage_name, t1 - t0, exc)
        raise
    finally:
        if trace:
            trace.end_stage()


def hints_from_address(address: Optional[Dict[str, Any]]) -> MatchHints:
    return MatchHints(
        municipality=detect_city_name(address) or None,
        province=detect_province_name(address) or None,
    )


# =============================================================================
# SERVICE
# =============================================================================

class ZonalLookupService:
    """Stateless-per-request composition of the lookup components."""

    def __init__(
        self,
        geocoder: Geocoder,
        overpass: OverpassClient,
        datasets: DatasetStore,
        caches: ZonalCaches,
        model: ZonalModel = ZONAL_MODEL,
    ):
        self.geocoder = geocoder
        self.overpass = overpass
        self.datasets = datasets
        self.caches = caches
        self.model = model
        self.facilities = FacilityAggregator(overpass, caches.reports)
        self.anchors = AnchorResolver(geocoder, caches.anchors)
        self.locator = RecordLocator(overpass, geocoder, self.anchors, caches.record_points, model.geometry)
        self.geometry = GeometryResolver(
            overpass, self.anchors, self.locator, caches.road_geometries, model.geometry,
        )

    @classmethod
    def build_default(cls, caches: Optional[ZonalCaches] = None) -> "ZonalLookupService":
        """Service wired to the endpoints configured in the environment."""
        endpoints = load_endpoint_config()
        caches = caches or ZonalCaches()
        geocoder = Geocoder(
            endpoints.nominatim,
            ExternalFetcher("nominatim", endpoints.user_agent, endpoints.timeout_s),
        )
        overpass = OverpassClient(
            endpoints.overpass,
            ExternalFetcher("overpass", endpoints.user_agent, endpoints.timeout_s),
        )
        datasets = DatasetStore(endpoints.manifest, caches.datasets, endpoints.timeout_s)
        logger.info(
            "Lookup service: %d overpass endpoint(s), %d geocoder endpoint(s), manifest=%s",
            len(endpoints.overpass), len(endpoints.nominatim), endpoints.manifest,
        )
        return cls(geocoder, overpass, datasets, caches)

    def validate_radius(self, radius: Optional[int]) -> int:
        if radius is None:
            return self.model.facilities.default_radius
        if radius not in self.model.facilities.radius_options:
            raise InvalidRadiusError(
                f"radius must be one of {list(self.model.facilities.radius_options)}, got {radius}"
            )
        return radius

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def locate_query(self, text: str, cancel: Optional[CancelToken] = None) -> GeoPoint:
        return _timed_stage("locate_query", self.geocoder.geocode_top, text, cancel=cancel)

    def locate_click(self, lat: float, lng: float, cancel: Optional[CancelToken] = None) -> GeoPoint:
        return _timed_stage("locate_click", self.geocoder.reverse_geocode, lat, lng, cancel=cancel)

    def ensure_dataset(self, geo: GeoPoint, cancel: Optional[CancelToken] = None) -> DatasetSelection:
        return _timed_stage("ensure_dataset", self.datasets.ensure_for, geo, cancel)

    def match(self, records, query_text: str, geo: GeoPoint) -> Tuple[List[ScoredRecord], MatchConfidence]:
        ranked = _timed_stage(
            "match", rank_records, records, query_text,
            hints_from_address(geo.address), config=self.model.match,
        )
        return ranked, confidence_for(ranked)

    def facility_report(
        self, lat: float, lng: float, radius: int, cancel: Optional[CancelToken] = None,
    ) -> Tuple[Optional[FacilityReport], Optional[str]]:
        """Report plus an optional warning; upstream failure is never fatal here."""
        try:
            report = _timed_stage("facility_report", self.facilities.aggregate, lat, lng, radius, cancel)
        except UpstreamError as e:
            if is_transient(e):
                return None, BUSY_WARNING
            return None, f"Reports temporarily unavailable: {e}"
        return report, None

    def _attach_report(
        self,
        result,
        lat: float,
        lng: float,
        cancel: Optional[CancelToken],
        report_cancel: Optional[CancelToken],
    ) -> None:
        """Fill result.report and its warning.

        A report superseded on its own (radius change, pin drag) leaves the
        rest of the result intact and sets report_superseded; only *cancel*
        firing abandons the whole lookup.
        """
        try:
            result.report, warning = self.facility_report(
                lat, lng, result.radius, report_cancel or cancel,
            )
        except CancelledError:
            if report_cancel is None or (cancel is not None and cancel.cancelled):
                raise
            logger.info("Facility report superseded; keeping the rest of the lookup")
            result.report, result.report_superseded = None, True
            return
        if warning:
            result.warnings.append(warning)

    def run_pipeline(
        self,
        geo: GeoPoint,
        query_text: str,
        radius: int,
        cancel: Optional[CancelToken] = None,
        report_cancel: Optional[CancelToken] = None,
    ) -> LookupResult:
        """dataset -> match -> facility report for an already located place.

        Raises:
            NoDatasetMappingError / DatasetLoadError: from ensure_dataset.
            CancelledError: *cancel* fired.  A fired *report_cancel* alone
                only drops the report (report_superseded).
        """
        selection = self.ensure_dataset(geo, cancel)
        check_cancelled(cancel)
        ranked, confidence = self.match(selection.records, query_text, geo)
        result = LookupResult(
            geo=geo, radius=radius, dataset_key=selection.key,
            matches=ranked, confidence=confidence,
        )
        self._attach_report(result, geo.lat, geo.lng, cancel, report_cancel)
        check_cancelled(cancel)
        return result

    def focus_record(
        self,
        record: Record,
        radius: int,
        cancel: Optional[CancelToken] = None,
        report_cancel: Optional[CancelToken] = None,
    ) -> FocusResult:
        """Place *record* on the map and report on its surroundings."""
        point = _timed_stage("record_point", self.locator.record_to_point, record, cancel)
        geo = GeoPoint(
            display_name=point.label,
            lat=point.lat,
            lng=point.lng,
            address={"city": record.municipality, "province": record.province},
        )
        result = FocusResult(point=point, geo=geo, radius=radius)
        self._attach_report(result, point.lat, point.lng, cancel, report_cancel)
        return result

    def load_highlight(self, record: Record, cancel: Optional[CancelToken] = None) -> HighlightResult:
        return _timed_stage("highlight", self.geometry.resolve, record, cancel)


# =============================================================================
# SESSION
# =============================================================================

class LookupSession:
    """Interaction state for one client.

    Action classes: "geocode" (search, pick, focus), "overpass" (facility
    reports) and "highlight".  Starting an action cancels the in-flight
    one of the same class; a superseded action raises CancelledError.
    A lookup whose report alone is superseded still returns its matches.
    """

    def __init__(self, service: ZonalLookupService, clock=time.monotonic):
        interaction = service.model.interaction
        self.service = service
        self.slots = ActionSlots()
        self.drag = DragThrottle(interaction.drag_min_interval_s, clock=clock)
        self.suggestions = SuggestionStream(
            service.geocoder, interaction.suggest_limit, interaction.suggest_min_chars,
        )
        self.radius = service.model.facilities.default_radius

    def set_radius(self, radius: Optional[int]) -> int:
        self.radius = self.service.validate_radius(radius)
        return self.radius

    def suggest(self, text: str) -> Optional[List[Suggestion]]:
        return self.suggestions.request(text)

    def search(self, text: str) -> LookupResult:
        token = self.slots.begin("geocode")
        reports = self.slots.begin("overpass", parent=token)
        geo = self.service.locate_query(text, token)
        return self.service.run_pipeline(geo, text, self.radius, token, reports)

    def pick_suggestion(self, suggestion: Suggestion) -> LookupResult:
        """Run the pipeline on a typeahead hit without geocoding again."""
        self.suggestions.request("")
        token = self.slots.begin("geocode")
        reports = self.slots.begin("overpass", parent=token)
        geo = suggestion.to_geo()
        return self.service.run_pipeline(geo, geo.display_name, self.radius, token, reports)

    def pick(self, lat: float, lng: float, source: str = "click") -> Optional[LookupResult]:
        """Map click or pin move.

        "drag" events only refresh the facility report and are throttled
        (None when dropped).  "click" and "dragend" reverse geocode and run
        the full pipeline.
        """
        if not self.drag.allow(source):
            logger.debug("Dropped drag event at (%.5f, %.5f)", lat, lng)
            return None

        if source == "drag":
            token = self.slots.begin("overpass")
            result = LookupResult(geo=GeoPoint(PINNED_LABEL, lat, lng), radius=self.radius)
            result.report, warning = self.service.facility_report(lat, lng, self.radius, token)
            check_cancelled(token)
            if warning:
                result.warnings.append(warning)
            return result

        token = self.slots.begin("geocode")
        reports = self.slots.begin("overpass", parent=token)
        geo = self.service.locate_click(lat, lng, token)
        return self.service.run_pipeline(geo, geo.display_name, self.radius, token, reports)

    def facilities(self, lat: float, lng: float, radius: Optional[int] = None) -> FacilityReport:
        """Fresh report; a radius change supersedes the in-flight one.

        Raises upstream errors instead of turning them into warnings.
        """
        radius = self.set_radius(radius if radius is not None else self.radius)
        token = self.slots.begin("overpass")
        report = _timed_stage("facility_report", self.service.facilities.aggregate, lat, lng, radius, token)
        check_cancelled(token)
        return report

    def focus_record(self, record: Record) -> FocusResult:
        token = self.slots.begin("geocode")
        reports = self.slots.begin("overpass", parent=token)
        result = self.service.focus_record(record, self.radius, token, reports)
        check_cancelled(token)
        return result

    def highlight(self, record: Record) -> HighlightResult:
        token = self.slots.begin("highlight")
        result = self.service.load_highlight(record, token)
        check_cancelled(token)
        return result

    def close(self):
        self.slots.cancel_all()
        self.suggestions.request("")

"""
Record -> map geometry.

Three pieces, all anchored on the record's municipality:

  AnchorResolver     municipality/province -> coordinate (forward geocode)
  RecordLocator      record -> reference point (road midpoint, text geocode,
                     or the anchor itself)
  GeometryResolver   record -> HighlightLine, trying in order
                       1. the main road clipped between two junctions
                       2. full geometry of up to 2 named roads
                       3. nothing, with a warning

Geometry is best effort.  Only anchor failure and cancellation propagate;
everything else becomes a warning on the HighlightResult so record
selection and facility reports are never blocked by it.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

from caches import KeyedCache
from cancellation import CancelToken, check_cancelled
from geocoder import Geocoder
from http_fallback import UpstreamError, is_transient
from overpass_client import OverpassClient, OverpassNode
from polyline import LatLng, closest_index_on_line, simplify_polyline
from records import Record
from road_candidates import JunctionClip, extract_road_candidates, parse_junction_clip
from text_normalize import format_money, normalize
from zonal_config import ZONAL_MODEL, GeometryConfig

logger = logging.getLogger(__name__)

BUSY_WARNING = "Overpass is busy (timeout/rate-limit). Try again later."
NO_ROADS_WARNING = "No road names detected from this vicinity text."
NO_GEOMETRY_WARNING = "No highlight geometry found."


# =============================================================================
# DATA CLASSES
# =============================================================================

@dataclass(frozen=True)
class Anchor:
    """Geocoded center of a municipality."""
    lat: float
    lng: float
    label: str

    @property
    def point(self) -> LatLng:
        return (self.lat, self.lng)


@dataclass(frozen=True)
class RecordPoint:
    """Best-known coordinate for a record."""
    lat: float
    lng: float
    label: str

    @property
    def point(self) -> LatLng:
        return (self.lat, self.lng)

    def to_dict(self) -> Dict[str, Any]:
        return {"lat": self.lat, "lng": self.lng, "label": self.label}


@dataclass
class HighlightLine:
    paths: List[List[LatLng]]
    label: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "paths": [[list(p) for p in path] for path in self.paths],
            "label": self.label,
        }


@dataclass
class HighlightResult:
    highlight: Optional[HighlightLine] = None
    warning: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "highlight": self.highlight.to_dict() if self.highlight else None,
            "warning": self.warning,
        }


def highlight_label(record: Record) -> str:
    return f"{record.vicinity} • ₱ {format_money(record.zonal_value)}"


def clip_cache_key(record: Record, clip: JunctionClip) -> str:
    return "|".join([
        normalize(record.municipality), normalize(record.province), "clip",
        normalize(clip.main), normalize(clip.a), normalize(clip.b),
    ])


def full_cache_key(record: Record, road: str) -> str:
    return "|".join([normalize(record.municipality), normalize(record.province), "full", normalize(road)])


# =============================================================================
# LINE SELECTION
# =============================================================================

def best_junction_slice(
    lines: Sequence[Sequence[LatLng]],
    nodes: Sequence[LatLng],
    ref_point: LatLng,
    config: GeometryConfig = ZONAL_MODEL.geometry,
) -> Optional[List[LatLng]]:
    """Stretch of the best main-road line between two junction nodes.

    The query output does not say which cross road a node belongs to, so
    every pair of returned nodes is a candidate.  A pair is usable on a
    line when both nodes lie within junction_max_dist_m of a vertex and
    their vertex indices are at least min_index_gap apart.  Score is
    d1 + d2 + ref_weight * (distance from the line to *ref_point*); the
    lowest score over all lines and pairs wins.  Returns the inclusive
    slice, or None when no line has a usable pair.
    """
    if len(nodes) < 2:
        return None

    best: Optional[Tuple[float, Sequence[LatLng], int, int]] = None
    for line in lines:
        if len(line) < 2:
            continue
        ref_dist = closest_index_on_line(line, ref_point)[1]
        snapped = [closest_index_on_line(line, n) for n in nodes]
        for i in range(len(snapped)):
            i1, d1 = snapped[i]
            if d1 > config.junction_max_dist_m:
                continue
            for j in range(i + 1, len(snapped)):
                i2, d2 = snapped[j]
                if d2 > config.junction_max_dist_m:
                    continue
                if abs(i1 - i2) < config.min_index_gap:
                    continue
                score = d1 + d2 + config.ref_weight * ref_dist
                if best is None or score < best[0]:
                    best = (score, line, i1, i2)

    if best is None:
        return None
    _, line, i1, i2 = best
    segment = list(line[min(i1, i2):max(i1, i2) + 1])
    return segment if len(segment) >= 2 else None


def nearest_line(lines: Sequence[Sequence[LatLng]], ref_point: LatLng) -> Optional[List[LatLng]]:
    """The line with a vertex closest to *ref_point*."""
    best: Optional[Tuple[float, Sequence[LatLng]]] = None
    for line in lines:
        if len(line) < 2:
            continue
        dist = closest_index_on_line(line, ref_point)[1]
        if best is None or dist < best[0]:
            best = (dist, line)
    return list(best[1]) if best else None


def _node_points(nodes: Sequence[OverpassNode]) -> List[LatLng]:
    return [(n.lat, n.lon) for n in nodes]


# =============================================================================
# ANCHORS AND REFERENCE POINTS
# =============================================================================

class AnchorResolver:
    """Municipality anchors, geocoded once per municipality/province."""

    def __init__(self, geocoder: Geocoder, cache: KeyedCache):
        self.geocoder = geocoder
        self.cache = cache

    def get_anchor(
        self, municipality: str, province: str, cancel: Optional[CancelToken] = None,
    ) -> Anchor:
        """Raises the geocoder's errors (NotFoundError, UpstreamError)."""
        key = f"{normalize(municipality)}|{normalize(province)}"
        query = ", ".join(part for part in (municipality, province, "Philippines") if part)

        def _geocode() -> Anchor:
            geo = self.geocoder.geocode_top(query, cancel=cancel)
            return Anchor(lat=geo.lat, lng=geo.lng, label=geo.display_name)

        return self.cache.get_or_compute(key, _geocode)


class RecordLocator:
    """Resolves a record to a single coordinate."""

    def __init__(
        self,
        overpass: OverpassClient,
        geocoder: Geocoder,
        anchors: AnchorResolver,
        cache: KeyedCache,
        config: GeometryConfig = ZONAL_MODEL.geometry,
    ):
        self.overpass = overpass
        self.geocoder = geocoder
        self.anchors = anchors
        self.cache = cache
        self.config = config

    def record_to_point(self, record: Record, cancel: Optional[CancelToken] = None) -> RecordPoint:
        """Midpoint of the first named road, else a text geocode, else the anchor."""
        key = record.key()
        cached = self.cache.get(key)
        if cached is not None:
            return cached

        roads = extract_road_candidates(record.vicinity)
        anchor = self.anchors.get_anchor(record.municipality, record.province, cancel)

        if roads:
            try:
                center = self.overpass.road_center(
                    anchor.lat, anchor.lng, self.config.anchor_radius_m, roads[0], cancel,
                )
            except UpstreamError as e:
                logger.info("Road midpoint lookup failed for %r: %s", roads[0], e)
                center = None
            if center is not None:
                point = RecordPoint(center[0], center[1], f"{roads[0]}, {record.municipality}")
                self.cache.set(key, point)
                return point

        check_cancelled(cancel)
        query = ", ".join(
            part for part in
            (record.vicinity, record.barangay, record.municipality, record.province, "Philippines")
            if part
        )
        hits = self.geocoder.search_suggestions(query, limit=1, cancel=cancel)
        if hits:
            point = RecordPoint(hits[0].lat, hits[0].lng, hits[0].display_name)
        else:
            point = RecordPoint(anchor.lat, anchor.lng, anchor.label)
        self.cache.set(key, point)
        return point


# =============================================================================
# GEOMETRY
# =============================================================================

class GeometryResolver:
    """Record -> highlight polyline(s)."""

    def __init__(
        self,
        overpass: OverpassClient,
        anchors: AnchorResolver,
        locator: RecordLocator,
        cache: KeyedCache,
        config: GeometryConfig = ZONAL_MODEL.geometry,
    ):
        self.overpass = overpass
        self.anchors = anchors
        self.locator = locator
        self.cache = cache
        self.config = config

    def resolve(self, record: Record, cancel: Optional[CancelToken] = None) -> HighlightResult:
        """Best available highlight for *record*.

        Raises:
            CancelledError: *cancel* fired.
            NotFoundError / UpstreamError: The municipality anchor failed.
        """
        anchor = self.anchors.get_anchor(record.municipality, record.province, cancel)
        try:
            ref_point = self.locator.record_to_point(record, cancel).point
        except UpstreamError as e:
            logger.info("Reference point failed for %r, using anchor: %s", record.vicinity, e)
            ref_point = anchor.point
        label = highlight_label(record)

        clip = parse_junction_clip(record.vicinity)
        if clip is not None:
            key = clip_cache_key(record, clip)
            cached = self.cache.get(key)
            if cached is not None:
                return HighlightResult(HighlightLine([cached], label))
            try:
                segment = self._clip(anchor, clip, ref_point, cancel)
            except UpstreamError as e:
                if is_transient(e):
                    return HighlightResult(None, BUSY_WARNING)
                logger.info("Junction clip failed for %r: %s", record.vicinity, e)
                segment = None
            if segment is not None:
                self.cache.set(key, segment)
                return HighlightResult(HighlightLine([segment], label))

        roads = extract_road_candidates(record.vicinity)
        if not roads:
            return HighlightResult(None, NO_ROADS_WARNING)

        paths: List[List[LatLng]] = []
        warning: Optional[str] = None
        for road in roads[:self.config.max_full_candidates]:
            key = full_cache_key(record, road)
            cached = self.cache.get(key)
            if cached is not None:
                paths.append(cached)
                continue
            try:
                line = self._full_road(anchor, road, ref_point, cancel)
            except UpstreamError as e:
                warning = BUSY_WARNING if is_transient(e) else (str(e) or "Failed to load road geometry.")
                logger.info("Full road lookup failed for %r: %s", road, e)
                continue
            if line is None:
                warning = f'Could not find geometry for "{road}" in OSM (or server returned empty).'
                continue
            self.cache.set(key, line)
            paths.append(line)

        if not paths:
            return HighlightResult(None, warning or NO_GEOMETRY_WARNING)
        return HighlightResult(HighlightLine(paths, label), warning)

    def _clip(
        self, anchor: Anchor, clip: JunctionClip, ref_point: LatLng, cancel: Optional[CancelToken],
    ) -> Optional[List[LatLng]]:
        ways, nodes = self.overpass.junction_elements(
            anchor.lat, anchor.lng, self.config.anchor_radius_m,
            clip.main, clip.a, clip.b, cancel,
        )
        if not ways:
            return None
        segment = best_junction_slice(
            [w.geometry for w in ways], _node_points(nodes), ref_point, self.config,
        )
        if segment is None:
            return None
        return simplify_polyline(segment, self.config.clip_epsilon_m, self.config.max_points)

    def _full_road(
        self, anchor: Anchor, road: str, ref_point: LatLng, cancel: Optional[CancelToken],
    ) -> Optional[List[LatLng]]:
        ways = self.overpass.road_ways(
            anchor.lat, anchor.lng, self.config.anchor_radius_m, road, cancel,
        )
        line = nearest_line([w.geometry for w in ways], ref_point)
        if line is None:
            return None
        return simplify_polyline(line, self.config.full_epsilon_m, self.config.max_points)

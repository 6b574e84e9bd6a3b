"""
Overpass API client for facility counts and road geometry.

Every query is POSTed as form data (``data=<ql>``) through ExternalFetcher
over an ordered endpoint list.  Besides HTTP status errors, Overpass can
answer 200 with an error remark; those remarks are classified here so a
busy mirror triggers the next endpoint instead of returning empty data.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from cancellation import CancelToken
from http_fallback import (
    ExternalFetcher,
    RateLimitedError,
    UpstreamError,
    UpstreamRequest,
    UpstreamTimeoutError,
)
from text_normalize import escape_overpass_regex

logger = logging.getLogger(__name__)

LatLng = Tuple[float, float]

_FORM_HEADERS = {"Content-Type": "application/x-www-form-urlencoded;charset=UTF-8"}


# =============================================================================
# DATA CLASSES
# =============================================================================

@dataclass
class OverpassWay:
    """A way element from ``out geom`` / ``out center``."""
    id: int
    tags: Dict[str, str] = field(default_factory=dict)
    geometry: List[LatLng] = field(default_factory=list)
    center: Optional[LatLng] = None

    @property
    def name(self) -> str:
        return self.tags.get("name", "")


@dataclass
class OverpassNode:
    """A node element."""
    id: int
    lat: float
    lon: float
    tags: Dict[str, str] = field(default_factory=dict)


# =============================================================================
# RESPONSE HANDLING
# =============================================================================

def check_overpass_payload(data: Any) -> None:
    """Reject Overpass bodies that are errors in disguise.

    Overpass may put errors in osm3s.remark or top-level remark.
    """
    if not isinstance(data, dict):
        raise UpstreamError(f"Overpass returned {type(data).__name__}, expected an object")
    osm3s = data.get("osm3s", {}) or {}
    remark = str(osm3s.get("remark") or data.get("remark") or "")
    remark_lower = remark.lower()
    if "too many requests" in remark_lower or "rate_limited" in remark_lower:
        raise RateLimitedError(f"Overpass rate limit in response body: {remark[:100]}")
    if any(
        indicator in remark_lower
        for indicator in ("runtime error", "timed out", "out of memory")
    ):
        raise UpstreamTimeoutError(f"Overpass server error in response body: {remark[:100]}")


def parse_ways(elements: Iterable[Dict[str, Any]]) -> List[OverpassWay]:
    """Way elements, with geometry and/or center when present."""
    ways: List[OverpassWay] = []
    for el in elements:
        if el.get("type") != "way":
            continue
        geometry = [
            (pt["lat"], pt["lon"])
            for pt in (el.get("geometry") or [])
            if isinstance(pt, dict) and pt.get("lat") is not None and pt.get("lon") is not None
        ]
        center = None
        c = el.get("center")
        if isinstance(c, dict) and c.get("lat") is not None and c.get("lon") is not None:
            center = (c["lat"], c["lon"])
        ways.append(OverpassWay(
            id=el.get("id"),
            tags=el.get("tags") or {},
            geometry=geometry,
            center=center,
        ))
    return ways


def parse_nodes(elements: Iterable[Dict[str, Any]]) -> List[OverpassNode]:
    """Node elements that carry numeric coordinates."""
    nodes: List[OverpassNode] = []
    for el in elements:
        if el.get("type") != "node":
            continue
        lat, lon = el.get("lat"), el.get("lon")
        if not isinstance(lat, (int, float)) or not isinstance(lon, (int, float)):
            continue
        nodes.append(OverpassNode(id=el.get("id"), lat=lat, lon=lon, tags=el.get("tags") or {}))
    return nodes


def dedupe_elements(elements: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Drop repeated (type, id) elements, keeping first-seen order.

    Union queries return a feature once per matching branch.
    """
    seen: set = set()
    unique: List[Dict[str, Any]] = []
    for el in elements:
        key = (el.get("type"), el.get("id"))
        if key in seen:
            continue
        seen.add(key)
        unique.append(el)
    return unique


# =============================================================================
# QUERY BUILDERS
# =============================================================================

def around(radius_m: int, lat: float, lng: float) -> str:
    return f"(around:{radius_m},{lat},{lng})"


def named_highway_filter(name: str) -> str:
    """Case-insensitive name regex filter on highway ways."""
    return f'["highway"]["name"~"{escape_overpass_regex(name)}",i]'


def road_center_query(lat: float, lng: float, radius_m: int, road: str) -> str:
    return f"""
[out:json][timeout:20];
way{around(radius_m, lat, lng)}{named_highway_filter(road)};
out center 1;
"""


def road_geometry_query(lat: float, lng: float, radius_m: int, road: str) -> str:
    return f"""
[out:json][timeout:25];
way{around(radius_m, lat, lng)}{named_highway_filter(road)};
out geom;
"""


def junction_clip_query(lat: float, lng: float, radius_m: int, main: str, a: str, b: str) -> str:
    """Main-road ways plus the nodes it shares with each cross road."""
    area = around(radius_m, lat, lng)
    return f"""
[out:json][timeout:25];
way{area}{named_highway_filter(main)}->.m;
way{area}{named_highway_filter(a)}->.a;
way{area}{named_highway_filter(b)}->.b;
node(w.m)(w.a)->.na;
node(w.m)(w.b)->.nb;
(.m; .na; .nb;);
out geom;
"""


# =============================================================================
# CLIENT
# =============================================================================

class OverpassClient:
    """Client for OpenStreetMap Overpass API with mirror fallback."""

    def __init__(self, endpoints: Sequence[str], fetcher: ExternalFetcher):
        self.endpoints = list(endpoints)
        self.fetcher = fetcher

    def query(
        self,
        overpass_ql: str,
        cancel: Optional[CancelToken] = None,
        caller: str = "unknown",
    ) -> List[Dict[str, Any]]:
        """Run *overpass_ql* and return its ``elements`` list.

        Raises:
            CancelledError: *cancel* fired.
            UpstreamError: Every endpoint failed (last endpoint's error).
        """
        def build(endpoint: str) -> UpstreamRequest:
            return UpstreamRequest(
                method="POST",
                url=endpoint,
                data={"data": overpass_ql},
                headers=_FORM_HEADERS,
            )

        data = self.fetcher.fetch_json(
            self.endpoints, build, cancel=cancel, caller=caller,
            check_payload=check_overpass_payload,
        )
        elements = data.get("elements") or []
        logger.debug("Overpass %s returned %d elements", caller, len(elements))
        return elements

    def road_center(
        self, lat: float, lng: float, radius_m: int, road: str,
        cancel: Optional[CancelToken] = None,
    ) -> Optional[LatLng]:
        """Center of the first named way matching *road*, or None."""
        elements = self.query(road_center_query(lat, lng, radius_m, road), cancel, caller="road_center")
        for way in parse_ways(elements):
            if way.center is not None:
                return way.center
        return None

    def road_ways(
        self, lat: float, lng: float, radius_m: int, road: str,
        cancel: Optional[CancelToken] = None,
    ) -> List[OverpassWay]:
        """Ways named like *road* with full geometry."""
        elements = self.query(road_geometry_query(lat, lng, radius_m, road), cancel, caller="road_full")
        return [w for w in parse_ways(elements) if w.geometry]

    def junction_elements(
        self, lat: float, lng: float, radius_m: int, main: str, a: str, b: str,
        cancel: Optional[CancelToken] = None,
    ) -> Tuple[List[OverpassWay], List[OverpassNode]]:
        """Main-road ways (with geometry) and junction nodes with *a* / *b*."""
        elements = self.query(
            junction_clip_query(lat, lng, radius_m, main, a, b), cancel, caller="junction_clip",
        )
        ways = [w for w in parse_ways(elements) if w.geometry]
        return ways, parse_nodes(elements)

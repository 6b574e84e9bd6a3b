"""
Facility counts around a point, from three concurrent Overpass queries.

  - amenity classes (hospital, school, police, fire_station, pharmacy,
    bank, marketplace), counted into fixed buckets
  - shop=mall, counted directly
  - transport stations (bus, rail, public_transport), deduplicated by
    (type, id) before counting because one station often matches several
    branches of the union

Reports are cached by (lat, lng rounded to 5 decimals, radius); a cache
hit issues no network calls.

Limitations:
  - Counts depend on OSM completeness; absence of a feature in OSM does
    not mean absence on the ground.
  - nwr matching counts a facility mapped both as a node and as a
    building outline twice (amenity/mall queries are not deduplicated).
"""

import logging
from concurrent.futures import FIRST_EXCEPTION, ThreadPoolExecutor, wait
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional

from caches import KeyedCache
from cancellation import CancelToken, CancelledError, check_cancelled
from overpass_client import OverpassClient, around, dedupe_elements
from zv_trace import get_trace, set_trace

logger = logging.getLogger(__name__)


# =============================================================================
# CONSTANTS
# =============================================================================

# OSM amenity value -> FacilityReport field
AMENITY_BUCKETS = {
    "hospital": "hospitals",
    "school": "schools",
    "police": "police",
    "fire_station": "fire",
    "pharmacy": "pharmacy",
    "bank": "bank",
    "marketplace": "market",
}


# =============================================================================
# DATA CLASSES
# =============================================================================

@dataclass(frozen=True)
class FacilityReport:
    """Facility counts within a radius.  All counts are >= 0."""
    hospitals: int = 0
    schools: int = 0
    police: int = 0
    fire: int = 0
    pharmacy: int = 0
    bank: int = 0
    market: int = 0
    mall: int = 0
    transport: int = 0

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


def report_cache_key(lat: float, lng: float, radius: int) -> str:
    return f"{lat:.5f}:{lng:.5f}:{radius}"


# =============================================================================
# QUERIES
# =============================================================================

def amenity_query(lat: float, lng: float, radius: int) -> str:
    pattern = "|".join(AMENITY_BUCKETS)
    return f"""
[out:json][timeout:25];
nwr["amenity"~"^({pattern})$"]{around(radius, lat, lng)};
out tags;
"""


def mall_query(lat: float, lng: float, radius: int) -> str:
    return f"""
[out:json][timeout:25];
nwr["shop"="mall"]{around(radius, lat, lng)};
out tags;
"""


def transport_query(lat: float, lng: float, radius: int) -> str:
    area = around(radius, lat, lng)
    return f"""
[out:json][timeout:25];
(
  nwr["amenity"="bus_station"]{area};
  nwr["railway"="station"]{area};
  nwr["public_transport"="station"]{area};
);
out tags;
"""


def build_report(
    amenity_elements: List[Dict[str, Any]],
    mall_elements: List[Dict[str, Any]],
    transport_elements: List[Dict[str, Any]],
) -> FacilityReport:
    """Reduce the three element lists to fixed-category counts."""
    counts = {bucket: 0 for bucket in AMENITY_BUCKETS.values()}
    for el in amenity_elements:
        amenity = (el.get("tags") or {}).get("amenity")
        bucket = AMENITY_BUCKETS.get(amenity)
        if bucket is not None:
            counts[bucket] += 1
    return FacilityReport(
        mall=len(mall_elements),
        transport=len(dedupe_elements(transport_elements)),
        **counts,
    )


# =============================================================================
# AGGREGATOR
# =============================================================================

class FacilityAggregator:
    """Runs the three facility queries in parallel and caches reports."""

    def __init__(self, overpass: OverpassClient, cache: KeyedCache):
        self.overpass = overpass
        self.cache = cache

    def aggregate(
        self,
        lat: float,
        lng: float,
        radius: int,
        cancel: Optional[CancelToken] = None,
    ) -> FacilityReport:
        """Facility counts within *radius* meters of (lat, lng).

        Waits for all three queries; if any of them fails after exhausting
        endpoint fallback, the siblings are cancelled and that failure is
        raised.

        Raises:
            CancelledError: *cancel* fired.
            UpstreamError: A query failed on every endpoint.
        """
        key = report_cache_key(lat, lng, radius)
        cached = self.cache.get(key)
        if cached is not None:
            return cached

        check_cancelled(cancel)
        # Child token: a failing query cancels its siblings without
        # cancelling the caller's token.
        fan_out = CancelToken(parent=cancel)
        parent_trace = get_trace()

        def _run(ql: str, caller: str) -> List[Dict[str, Any]]:
            set_trace(parent_trace)
            return self.overpass.query(ql, cancel=fan_out, caller=caller)

        with ThreadPoolExecutor(max_workers=3) as pool:
            futures = {
                "amenity": pool.submit(_run, amenity_query(lat, lng, radius), "facilities.amenity"),
                "mall": pool.submit(_run, mall_query(lat, lng, radius), "facilities.mall"),
                "transport": pool.submit(_run, transport_query(lat, lng, radius), "facilities.transport"),
            }
            wait(futures.values(), return_when=FIRST_EXCEPTION)
            failure = _first_failure(futures.values())
            if failure is not None:
                fan_out.cancel("sibling facility query failed")

        failure = _first_failure(futures.values())
        if failure is not None:
            check_cancelled(cancel)
            logger.warning(
                "Facility report failed at (%.5f, %.5f) r=%dm: %s", lat, lng, radius, failure,
            )
            raise failure

        report = build_report(
            futures["amenity"].result(),
            futures["mall"].result(),
            futures["transport"].result(),
        )
        self.cache.set(key, report)
        logger.info("Facility report %s: %s", key, report.to_dict())
        return report


def _first_failure(futures) -> Optional[BaseException]:
    """First non-cancellation exception among finished futures.

    Sibling CancelledErrors are a consequence of the real failure, so
    they are only returned when nothing else failed.
    """
    cancelled: Optional[BaseException] = None
    for f in futures:
        if not f.done():
            continue
        exc = f.exception()
        if exc is None:
            continue
        if isinstance(exc, CancelledError):
            cancelled = cancelled or exc
            continue
        return exc
    return cancelled

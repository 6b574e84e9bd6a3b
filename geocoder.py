"""
Nominatim-style forward and reverse geocoding.

All requests go through ExternalFetcher, so every call gets ordered
endpoint fallback and cooperative cancellation.  Endpoints are base URLs;
"/search" and "/reverse" are appended per call.
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from cancellation import CancelToken, CancelledError
from http_fallback import ExternalFetcher, UpstreamError, UpstreamRequest

logger = logging.getLogger(__name__)


class NotFoundError(Exception):
    """Forward geocoding returned zero results.  The user must refine the query."""

    pass


class ReverseGeocodeError(UpstreamError):
    """Reverse geocoding failed on every endpoint."""

    pass


# =============================================================================
# Data classes
# =============================================================================

@dataclass
class GeoPoint:
    """A geocoded place."""
    display_name: str
    lat: float
    lng: float
    address: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "display_name": self.display_name,
            "lat": self.lat,
            "lng": self.lng,
            "address": dict(self.address),
        }


@dataclass
class Suggestion:
    """One forward-search hit, as offered to autocomplete."""
    display_name: str
    lat: float
    lng: float
    address: Dict[str, Any] = field(default_factory=dict)

    def to_geo(self) -> GeoPoint:
        return GeoPoint(self.display_name, self.lat, self.lng, dict(self.address))

    def to_dict(self) -> Dict[str, Any]:
        return self.to_geo().to_dict()

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Suggestion":
        """Inverse of to_dict().  Raises ValueError on missing coordinates."""
        try:
            lat = float(d["lat"])
            lng = float(d["lng"] if "lng" in d else d["lon"])
        except (KeyError, TypeError, ValueError) as e:
            raise ValueError(f"suggestion needs numeric lat/lng: {e}") from e
        return cls(
            display_name=str(d.get("display_name") or ""),
            lat=lat,
            lng=lng,
            address=dict(d.get("address") or {}),
        )


def _parse_suggestion(raw: Dict[str, Any]) -> Optional[Suggestion]:
    try:
        lat = float(raw["lat"])
        lng = float(raw["lon"])
    except (KeyError, TypeError, ValueError):
        logger.debug("Skipping geocode hit without usable coordinates: %r", raw)
        return None
    return Suggestion(
        display_name=raw.get("display_name") or "",
        lat=lat,
        lng=lng,
        address=raw.get("address") or {},
    )


# =============================================================================
# Geocoder
# =============================================================================

class Geocoder:
    """Forward search, top-result geocode and reverse geocode."""

    def __init__(self, endpoints: Sequence[str], fetcher: ExternalFetcher):
        self.endpoints = list(endpoints)
        self.fetcher = fetcher

    def search_suggestions(
        self, text: str, limit: int = 5, cancel: Optional[CancelToken] = None,
    ) -> List[Suggestion]:
        """Forward geocode *text*; at most *limit* hits, provider order."""
        def build(endpoint: str) -> UpstreamRequest:
            return UpstreamRequest(
                method="GET",
                url=f"{endpoint.rstrip('/')}/search",
                params={
                    "format": "jsonv2",
                    "addressdetails": 1,
                    "limit": limit,
                    "q": text,
                },
            )

        data = self.fetcher.fetch_json(
            self.endpoints, build, cancel=cancel, caller="search",
            check_payload=_expect_list,
        )
        hits = [_parse_suggestion(raw) for raw in data if isinstance(raw, dict)]
        return [h for h in hits if h is not None][:limit]

    def geocode_top(self, text: str, cancel: Optional[CancelToken] = None) -> GeoPoint:
        """Return the best hit for *text*.

        Raises:
            NotFoundError: The provider returned no results.
        """
        results = self.search_suggestions(text, limit=1, cancel=cancel)
        if not results:
            raise NotFoundError(f"No location found for {text!r}")
        return results[0].to_geo()

    def reverse_geocode(
        self, lat: float, lng: float, cancel: Optional[CancelToken] = None,
    ) -> GeoPoint:
        """Resolve a coordinate to a place.

        A missing display name is replaced by "lat, lng" at 6 decimals.

        Raises:
            ReverseGeocodeError: Every endpoint failed.
        """
        def build(endpoint: str) -> UpstreamRequest:
            return UpstreamRequest(
                method="GET",
                url=f"{endpoint.rstrip('/')}/reverse",
                params={
                    "format": "jsonv2",
                    "addressdetails": 1,
                    "zoom": 18,
                    "lat": lat,
                    "lon": lng,
                },
            )

        try:
            data = self.fetcher.fetch_json(
                self.endpoints, build, cancel=cancel, caller="reverse",
                check_payload=_expect_object,
            )
        except UpstreamError as e:
            raise ReverseGeocodeError(
                f"Reverse geocoding failed: {e}", status_code=e.status_code, endpoint=e.endpoint,
            ) from e

        return GeoPoint(
            display_name=data.get("display_name") or f"{lat:.6f}, {lng:.6f}",
            lat=_float_or(data.get("lat"), lat),
            lng=_float_or(data.get("lon"), lng),
            address=data.get("address") or {},
        )


def _float_or(value: Any, default: float) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _expect_list(data: Any) -> None:
    if not isinstance(data, list):
        raise UpstreamError(f"Geocoder search returned {type(data).__name__}, expected a list")


def _expect_object(data: Any) -> None:
    if not isinstance(data, dict):
        raise UpstreamError(f"Geocoder reverse returned {type(data).__name__}, expected an object")
    if data.get("error"):
        # Nominatim answers 200 {"error": "Unable to geocode"} for open sea etc.
        raise UpstreamError(f"Geocoder reverse error: {data['error']}")


# =============================================================================
# Typeahead stream
# =============================================================================

class SuggestionStream:
    """Autocomplete for one input box.

    Each request cancels the previous in-flight one.  Responses that were
    superseded while in flight come back as None so they can never replace
    newer suggestions.  Debouncing keystrokes (>= 300 ms) is up to the caller.
    """

    def __init__(self, geocoder: Geocoder, limit: int = 5, min_chars: int = 3):
        self.geocoder = geocoder
        self.limit = limit
        self.min_chars = min_chars
        self._lock = threading.Lock()
        self._current: Optional[CancelToken] = None

    def request(self, text: str) -> Optional[List[Suggestion]]:
        text = (text or "").strip()
        token = CancelToken()
        with self._lock:
            previous, self._current = self._current, token
        if previous is not None:
            previous.cancel("newer keystroke")

        if len(text) < self.min_chars:
            return []

        try:
            results = self.geocoder.search_suggestions(text, self.limit, cancel=token)
        except CancelledError:
            return None
        with self._lock:
            if self._current is not token:
                return None
        return results

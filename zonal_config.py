"""
Matching, geometry and endpoint configuration for the zonal value locator.

Owns every numeric constant that affects record ranking, confidence
labels, facility counting and road highlighting.  The weights and
thresholds are product-tuned; keep them stable unless the ranking
contract is deliberately changed.

Frozen dataclasses provide type checking and IDE support without
the indirection of YAML/JSON config files.  Endpoint lists come from
the environment (a .env file is honoured via python-dotenv).
"""

import os
from dataclasses import dataclass
from typing import List, Tuple

from dotenv import load_dotenv

load_dotenv()


# =============================================================================
# Dataclasses
# =============================================================================

@dataclass(frozen=True)
class FieldWeight:
    """Weight of one record field in the match score."""
    name: str      # Record attribute name
    weight: int


@dataclass(frozen=True)
class MatchConfig:
    """Weighted field scoring for RecordMatcher.

    Fields are listed in priority order.  Per field the score is
    exact * w + contains * w + token * w * |shared tokens|.
    """
    fields: Tuple[FieldWeight, ...]
    exact_points: int = 120
    contains_points: int = 55
    token_points: int = 6
    min_token_len: int = 3
    hint_points: int = 80
    nan_penalty: int = 250
    top_n: int = 6


@dataclass(frozen=True)
class ConfidenceThresholds:
    """Top-score cut-offs for the consumer-facing confidence label."""
    high: int = 700    # score > high   -> High
    medium: int = 350  # score > medium -> Medium, > 0 -> Low


@dataclass(frozen=True)
class GeometryConfig:
    """Road highlight resolution parameters (meters unless noted)."""
    anchor_radius_m: int = 25000
    junction_max_dist_m: float = 60.0
    min_index_gap: int = 5          # vertex indices, guards near-duplicate junctions
    ref_weight: float = 0.5         # weight of way-to-reference distance in pair score
    clip_epsilon_m: float = 12.0
    full_epsilon_m: float = 15.0
    max_points: int = 500
    max_full_candidates: int = 2


@dataclass(frozen=True)
class FacilityConfig:
    """Facility report radius options (meters)."""
    radius_options: Tuple[int, ...] = (500, 1000, 1500, 2000, 5000)
    default_radius: int = 1500


@dataclass(frozen=True)
class InteractionConfig:
    """Caller-side pacing for typeahead and pin drags (seconds)."""
    suggest_min_chars: int = 3
    suggest_limit: int = 5
    drag_min_interval_s: float = 1.1


@dataclass(frozen=True)
class ZonalModel:
    """Top-level container for all tunable parameters.

    A single module-level instance (ZONAL_MODEL) is the source of truth.
    Bump `version` on every change that alters ranking outputs.
    """
    version: str
    match: MatchConfig
    confidence: ConfidenceThresholds
    geometry: GeometryConfig
    facilities: FacilityConfig
    interaction: InteractionConfig


@dataclass(frozen=True)
class EndpointConfig:
    """Ordered upstream endpoints and HTTP client settings."""
    overpass: Tuple[str, ...]
    nominatim: Tuple[str, ...]
    manifest: str
    user_agent: str
    timeout_s: float = 25.0


# =============================================================================
# ZONAL_MODEL: current production values
# =============================================================================

ZONAL_MODEL = ZonalModel(
    version="1.0.0",
    match=MatchConfig(
        fields=(
            FieldWeight("vicinity", 6),
            FieldWeight("street", 4),
            FieldWeight("barangay", 3),
            FieldWeight("municipality", 2),
            FieldWeight("province", 2),
            FieldWeight("classification", 1),
        ),
    ),
    confidence=ConfidenceThresholds(),
    geometry=GeometryConfig(),
    facilities=FacilityConfig(),
    interaction=InteractionConfig(),
)


# =============================================================================
# Endpoints
# =============================================================================

DEFAULT_OVERPASS_ENDPOINTS = (
    "https://overpass.kumi.systems/api/interpreter",
    "https://overpass-api.de/api/interpreter",
    "https://overpass.private.coffee/api/interpreter",
    "https://overpass.openstreetmap.ru/api/interpreter",
    "https://overpass.nchc.org.tw/api/interpreter",
)

DEFAULT_NOMINATIM_ENDPOINTS = (
    "https://nominatim.openstreetmap.org",
)


def _split_endpoints(raw: str) -> List[str]:
    """Split a comma separated env value, dropping blanks and duplicates."""
    out: List[str] = []
    for part in (raw or "").split(","):
        url = part.strip().rstrip("/")
        if url and url not in out:
            out.append(url)
    return out


def load_endpoint_config() -> EndpointConfig:
    """Build the endpoint config from the environment.

    Env overrides replace the default lists entirely; order is the
    fallback order.
    """
    overpass = _split_endpoints(os.environ.get("OVERPASS_ENDPOINTS", ""))
    nominatim = _split_endpoints(os.environ.get("NOMINATIM_ENDPOINTS", ""))
    try:
        timeout_s = float(os.environ.get("ZONAL_HTTP_TIMEOUT", "25"))
    except ValueError:
        timeout_s = 25.0
    return EndpointConfig(
        overpass=tuple(overpass) or DEFAULT_OVERPASS_ENDPOINTS,
        nominatim=tuple(nominatim) or DEFAULT_NOMINATIM_ENDPOINTS,
        manifest=os.environ.get("ZONAL_MANIFEST", "zonal/manifest.json"),
        user_agent=os.environ.get(
            "ZONAL_USER_AGENT", "zonal-locator/1.0 (+https://example.invalid/zonal)"
        ),
        timeout_s=timeout_s,
    )

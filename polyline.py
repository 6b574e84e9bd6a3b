"""
Polyline helpers for road highlights.

Distances to vertices use the haversine formula.  Simplification runs
Ramer-Douglas-Peucker in a local equirectangular projection (meters per
degree of latitude, longitude scaled by the cosine of the mean latitude),
which is accurate enough at street scale and much cheaper.  The two
approximations are intentionally not unified.

Points are (lat, lng) tuples throughout.
"""

import math
from typing import List, Sequence, Tuple

LatLng = Tuple[float, float]

EARTH_RADIUS_M = 6371000.0
METERS_PER_DEGREE = 111320.0
DEFAULT_MAX_POINTS = 500


def haversine_m(a: LatLng, b: LatLng) -> float:
    """Great-circle distance between two points, in meters."""
    lat1, lon1 = math.radians(a[0]), math.radians(a[1])
    lat2, lon2 = math.radians(b[0]), math.radians(b[1])

    dlat = lat2 - lat1
    dlon = lon2 - lon1

    h = (math.sin(dlat / 2) ** 2
         + math.cos(lat1) * math.cos(lat2) * math.sin(dlon / 2) ** 2)
    return 2 * EARTH_RADIUS_M * math.asin(math.sqrt(min(1.0, h)))


def closest_index_on_line(line: Sequence[LatLng], pt: LatLng) -> Tuple[int, float]:
    """Index of the vertex of *line* nearest to *pt*, and its distance.

    Vertices only, not segments.  An empty line gives (-1, inf).
    """
    best_idx, best_dist = -1, math.inf
    for i, vertex in enumerate(line):
        d = haversine_m(vertex, pt)
        if d < best_dist:
            best_idx, best_dist = i, d
    return best_idx, best_dist


def _project(points: Sequence[LatLng]) -> List[Tuple[float, float]]:
    mean_lat = sum(p[0] for p in points) / len(points)
    kx = METERS_PER_DEGREE * math.cos(math.radians(mean_lat))
    return [(p[1] * kx, p[0] * METERS_PER_DEGREE) for p in points]


def _segment_distance(p, a, b) -> float:
    """Distance from p to segment ab (clamped to the segment)."""
    dx, dy = b[0] - a[0], b[1] - a[1]
    seg_len_sq = dx * dx + dy * dy
    if seg_len_sq == 0:
        return math.hypot(p[0] - a[0], p[1] - a[1])
    t = ((p[0] - a[0]) * dx + (p[1] - a[1]) * dy) / seg_len_sq
    t = max(0.0, min(1.0, t))
    return math.hypot(p[0] - (a[0] + t * dx), p[1] - (a[1] + t * dy))


def simplify_rdp(points: Sequence[LatLng], epsilon_m: float) -> List[LatLng]:
    """Ramer-Douglas-Peucker with tolerance *epsilon_m* meters.

    Returns an order-preserving subsequence that always keeps the first
    and last points.  Iterative, so long ways cannot hit the recursion
    limit.
    """
    n = len(points)
    if n < 3:
        return list(points)

    xy = _project(points)
    keep = [False] * n
    keep[0] = keep[n - 1] = True
    stack = [(0, n - 1)]
    while stack:
        first, last = stack.pop()
        max_dist, index = 0.0, -1
        for i in range(first + 1, last):
            d = _segment_distance(xy[i], xy[first], xy[last])
            if d > max_dist:
                max_dist, index = d, i
        if index != -1 and max_dist > epsilon_m:
            keep[index] = True
            stack.append((first, index))
            stack.append((index, last))

    return [p for p, k in zip(points, keep) if k]


def cap_points(points: Sequence[LatLng], max_points: int = DEFAULT_MAX_POINTS) -> List[LatLng]:
    """Take every ceil(n / max_points)-th point, always ending on the last.

    Never returns more than *max_points* points.
    """
    n = len(points)
    if n <= max_points:
        return list(points)
    step = math.ceil(n / max_points)
    out = [points[i] for i in range(0, n, step)]
    if (n - 1) % step:
        if len(out) < max_points:
            out.append(points[-1])
        else:
            out[-1] = points[-1]
    return out


def simplify_polyline(
    points: Sequence[LatLng],
    epsilon_m: float,
    max_points: int = DEFAULT_MAX_POINTS,
) -> List[LatLng]:
    return cap_points(simplify_rdp(points, epsilon_m), max_points)

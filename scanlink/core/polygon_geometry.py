# scanlink/core/polygon_geometry.py

import math
from dataclasses import dataclass, replace
from typing import Optional, Sequence

CLOSURE_TOLERANCE_DEG = 1e-7
METERS_PER_DEGREE_LAT = 111320.0


@dataclass(frozen=True)
class PolygonVertex:
    """User-placed vertex. The id survives reordering and is the undo/drag handle."""
    id: str
    latitude: float
    longitude: float


@dataclass(frozen=True)
class PolygonBounds:
    min_latitude: float
    max_latitude: float
    min_longitude: float
    max_longitude: float


def _coincide(a, b):
    return (abs(a.latitude - b.latitude) < CLOSURE_TOLERANCE_DEG and
            abs(a.longitude - b.longitude) < CLOSURE_TOLERANCE_DEG)


def is_closed(vertices: Sequence) -> bool:
    """True when the last vertex repeats the first."""
    return len(vertices) >= 2 and _coincide(vertices[0], vertices[-1])


def strip_closure(vertices: Sequence) -> list:
    """Drop a trailing duplicate of the first vertex, if any."""
    points = list(vertices)
    if len(points) > 3 and is_closed(points):
        points = points[:-1]
    return points


def same_order(a: Sequence, b: Sequence) -> bool:
    """Compare two vertex lists by id sequence."""
    if len(a) != len(b):
        return False
    return all(x.id == y.id for x, y in zip(a, b))


def order_simple(vertices: Sequence) -> list:
    """Sort vertices by angle around their centroid.

    Approximates a simple polygon. Only guaranteed non-crossing for vertex
    sets that are star-shaped from the centroid; concave input can still
    self-intersect. Equal angles keep their input order.
    """
    if len(vertices) < 3:
        return list(vertices)

    points = strip_closure(vertices)

    cx = sum(p.longitude for p in points) / len(points)
    cy = sum(p.latitude for p in points) / len(points)

    return sorted(points, key=lambda p: math.atan2(p.latitude - cy, p.longitude - cx))


def ensure_closed(vertices: Sequence) -> list:
    """Append a copy of the first vertex unless the polygon is already closed."""
    closed = list(vertices)
    if len(closed) < 3:
        return closed

    if not _coincide(closed[0], closed[-1]):
        closed.append(replace(closed[0]))
    return closed


def _signed_area(points):
    area = 0.0
    n = len(points)
    for i in range(n):
        p1 = points[i]
        p2 = points[(i + 1) % n]
        area += p1.longitude * p2.latitude - p2.longitude * p1.latitude
    return area / 2.0


def _edge_normal(p1, p2, outward_sign):
    """Unit normal of edge p1->p2 in a local metric frame; zero for degenerate edges."""
    mid_lat = math.radians((p1.latitude + p2.latitude) / 2.0)
    dx = (p2.longitude - p1.longitude) * METERS_PER_DEGREE_LAT * math.cos(mid_lat)
    dy = (p2.latitude - p1.latitude) * METERS_PER_DEGREE_LAT
    length = math.hypot(dx, dy)
    if length == 0.0:
        return 0.0, 0.0
    # (dy, -dx) points right of the travel direction, which is outside for CCW rings
    return outward_sign * dy / length, -outward_sign * dx / length


def buffer_outward(vertices: Sequence, distance_m: float) -> list:
    """Offset every vertex outward along the bisector of its two edge normals."""
    points = strip_closure(vertices)
    if len(points) < 3:
        return list(vertices)

    outward_sign = 1.0 if _signed_area(points) > 0 else -1.0
    n = len(points)
    buffered = []

    for i, p in enumerate(points):
        prev_p = points[i - 1]
        next_p = points[(i + 1) % n]

        n1x, n1y = _edge_normal(prev_p, p, outward_sign)
        n2x, n2y = _edge_normal(p, next_p, outward_sign)
        bx, by = n1x + n2x, n1y + n2y
        norm = math.hypot(bx, by)
        if norm > 0.0:
            bx, by = bx / norm, by / norm

        meters_per_deg_lon = METERS_PER_DEGREE_LAT * math.cos(math.radians(p.latitude))
        dlat = distance_m * by / METERS_PER_DEGREE_LAT
        dlon = distance_m * bx / meters_per_deg_lon if meters_per_deg_lon > 0 else 0.0

        buffered.append(replace(p, latitude=p.latitude + dlat, longitude=p.longitude + dlon))

    return ensure_closed(buffered)


def polygon_bounds(vertices: Sequence) -> Optional[PolygonBounds]:
    """Lat/lon bounding box, ignoring a closing duplicate."""
    if not vertices or len(vertices) < 3:
        return None
    points = strip_closure(vertices)
    lats = [p.latitude for p in points]
    lons = [p.longitude for p in points]
    return PolygonBounds(min(lats), max(lats), min(lons), max(lons))


def polygon_center(vertices: Sequence):
    """Vertex centroid as (latitude, longitude), ignoring a closing duplicate."""
    if not vertices or len(vertices) < 3:
        return None
    points = strip_closure(vertices)
    lat = sum(p.latitude for p in points) / len(points)
    lon = sum(p.longitude for p in points) / len(points)
    return lat, lon

# scanlink/core/geo_projection.py

import math
from dataclasses import dataclass

EARTH_RADIUS_M = 6378137.0          # Spherical Web-Mercator radius
MEAN_EARTH_RADIUS_M = 6371000.0     # Used for haversine distances


@dataclass(frozen=True)
class GeoPoint:
    """WGS84 position in degrees."""
    latitude: float
    longitude: float


@dataclass(frozen=True)
class PlanarPoint:
    """Metres in a local frame centred on an arbitrary origin."""
    x: float
    y: float


def latlon_to_mercator(lat, lon):
    """Project lat/lon onto spherical Web-Mercator metres."""
    x = math.radians(lon) * EARTH_RADIUS_M
    y = math.log(math.tan(math.pi / 4.0 + math.radians(lat) / 2.0)) * EARTH_RADIUS_M
    return x, y


def mercator_to_latlon(x, y):
    """Inverse of latlon_to_mercator."""
    lon = math.degrees(x / EARTH_RADIUS_M)
    lat = math.degrees(2.0 * math.atan(math.exp(y / EARTH_RADIUS_M)) - math.pi / 2.0)
    return lat, lon


def to_planar(origin: GeoPoint, p: GeoPoint) -> PlanarPoint:
    """Project p and translate so that origin maps to (0, 0)."""
    ox, oy = latlon_to_mercator(origin.latitude, origin.longitude)
    px, py = latlon_to_mercator(p.latitude, p.longitude)
    return PlanarPoint(px - ox, py - oy)


def to_geo(origin: GeoPoint, p: PlanarPoint) -> GeoPoint:
    """Inverse of to_planar."""
    ox, oy = latlon_to_mercator(origin.latitude, origin.longitude)
    lat, lon = mercator_to_latlon(p.x + ox, p.y + oy)
    return GeoPoint(lat, lon)


def haversine_m(lat1, lon1, lat2, lon2):
    """Great-circle distance between two GPS coordinates in meters."""
    lat1_rad = math.radians(lat1)
    lat2_rad = math.radians(lat2)
    delta_lat = math.radians(lat2 - lat1)
    delta_lon = math.radians(lon2 - lon1)

    a = (math.sin(delta_lat / 2) ** 2 +
         math.cos(lat1_rad) * math.cos(lat2_rad) *
         math.sin(delta_lon / 2) ** 2)
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

    return MEAN_EARTH_RADIUS_M * c

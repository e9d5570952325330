"""
Great-circle geometry helpers.

Distances use the Haversine formula on a spherical Earth.
"""

import math
from typing import Tuple

EARTH_RADIUS_KM = 6371.0
METERS_PER_DEGREE_LAT = 111320.0


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """
    Great-circle distance between two points in kilometers.

    Args:
        lat1, lon1: First point in decimal degrees
        lat2, lon2: Second point in decimal degrees

    Returns:
        Distance in kilometers (R = 6371 km)
    """
    d_lat = math.radians(lat2 - lat1)
    d_lon = math.radians(lon2 - lon1)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lon / 2) ** 2
    )
    # Rounding can push a past 1 for antipodal points
    a = min(1.0, max(0.0, a))
    return 2 * EARTH_RADIUS_KM * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance in meters."""
    return haversine_km(lat1, lon1, lat2, lon2) * 1000.0


def bounding_box(latitude: float, longitude: float, radius_m: float) -> Tuple[float, float, float, float]:
    """
    Conservative lat/lon box enclosing a circle.

    Returns (min_lat, max_lat, min_lon, max_lon). Longitude spans the whole
    range when the circle reaches a pole or crosses the antimeridian.
    """
    d_lat = radius_m / METERS_PER_DEGREE_LAT
    min_lat = max(-90.0, latitude - d_lat)
    max_lat = min(90.0, latitude + d_lat)

    cos_lat = math.cos(math.radians(max(abs(min_lat), abs(max_lat))))
    if cos_lat <= 1e-9:
        return min_lat, max_lat, -180.0, 180.0

    d_lon = radius_m / (METERS_PER_DEGREE_LAT * cos_lat)
    min_lon = longitude - d_lon
    max_lon = longitude + d_lon
    if min_lon < -180.0 or max_lon > 180.0:
        return min_lat, max_lat, -180.0, 180.0
    return min_lat, max_lat, min_lon, max_lon

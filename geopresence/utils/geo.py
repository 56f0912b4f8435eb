"""Coordinate validation and great-circle distance helpers."""

import math
from typing import Any, Optional, Tuple

# Mean earth radius used by Leaflet's L.CRS.Earth (metres)
EARTH_RADIUS_M = 6371000.0


def validate_coordinates(lat: Any, lon: Any) -> Optional[Tuple[float, float]]:
    """Validate and normalize a latitude/longitude pair.

    Rejects None, non-numeric values, booleans, NaN, Infinity and
    out-of-range values. Returns (lat, lon) as floats or None if invalid.
    """
    if lat is None or lon is None:
        return None
    if isinstance(lat, bool) or isinstance(lon, bool):
        return None

    try:
        lat = float(lat)
        lon = float(lon)
    except (ValueError, TypeError):
        return None

    if math.isnan(lat) or math.isnan(lon):
        return None
    if math.isinf(lat) or math.isinf(lon):
        return None

    if not (-90 <= lat <= 90 and -180 <= lon <= 180):
        return None

    return (lat, lon)


def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance between two points in metres."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlambda = math.radians(lon2 - lon1)
    a = (math.sin(dphi / 2) ** 2
         + math.cos(phi1) * math.cos(phi2) * math.sin(dlambda / 2) ** 2)
    return 2 * EARTH_RADIUS_M * math.asin(min(1.0, math.sqrt(a)))


def format_distance_km(meters: float) -> str:
    """Format a distance in kilometres with two decimals, e.g. ``"1.23"``."""
    return f"{meters / 1000:.2f}"

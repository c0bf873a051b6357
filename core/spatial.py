"""
Coordinate validation and great-circle distance helpers.

Every position that enters the engine passes through
:func:`validate_coordinate_pair`; out-of-range values are rejected, never
clamped.
"""

from __future__ import annotations

import logging
import math
from typing import Any

from core.constants import EARTH_RADIUS_M
from core.exceptions import ValidationError

logger = logging.getLogger(__name__)


def validate_coordinate_pair(lon: Any, lat: Any) -> tuple[float, float]:
    """Return ``(lon, lat)`` as floats or raise :class:`ValidationError`."""
    try:
        lon_f = float(lon)
        lat_f = float(lat)
    except (TypeError, ValueError) as exc:
        msg = "Coordinates must be numeric"
        raise ValidationError(msg, {"longitude": lon, "latitude": lat}) from exc
    if not (math.isfinite(lon_f) and math.isfinite(lat_f)):
        msg = "Coordinates must be finite"
        raise ValidationError(msg, {"longitude": lon, "latitude": lat})
    if not -180.0 <= lon_f <= 180.0:
        msg = f"Longitude {lon_f} out of range [-180, 180]"
        raise ValidationError(msg, {"longitude": lon_f})
    if not -90.0 <= lat_f <= 90.0:
        msg = f"Latitude {lat_f} out of range [-90, 90]"
        raise ValidationError(msg, {"latitude": lat_f})
    return lon_f, lat_f


def haversine_distance(lon1: float, lat1: float, lon2: float, lat2: float) -> float:
    """Great-circle distance in meters on a sphere of radius 6,371 km."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlmb = math.radians(lon2 - lon1)
    a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlmb / 2) ** 2
    return 2 * EARTH_RADIUS_M * math.asin(min(1.0, math.sqrt(a)))


def longitude_delta(lon1: float, lon2: float) -> float:
    """Smallest absolute longitude difference in degrees, across the antimeridian."""
    delta = abs(lon1 - lon2) % 360.0
    return 360.0 - delta if delta > 180.0 else delta


def min_distance_to_meridian_segment(
    lon: float,
    lat: float,
    meridian_lon: float,
    lat_min: float,
    lat_max: float,
) -> float:
    """
    Exact distance in meters from a point to a segment of a meridian.

    The distance from a fixed point to points along a great circle has a
    single minimum, so the closest point of the segment is either the
    unconstrained foot of the perpendicular or one of the segment ends.
    """
    phi = math.radians(lat)
    dlmb = math.radians(longitude_delta(lon, meridian_lon))
    foot = math.degrees(math.atan2(math.sin(phi), math.cos(phi) * math.cos(dlmb)))
    candidates = [min(max(foot, lat_min), lat_max), lat_min, lat_max]
    return min(haversine_distance(lon, lat, meridian_lon, c) for c in candidates)


def min_distance_to_box(
    lon: float,
    lat: float,
    lon_min: float,
    lat_min: float,
    lon_max: float,
    lat_max: float,
) -> float:
    """Lower bound (exact on a sphere) of the distance from a point to a lon/lat box."""
    if lon_min <= lon <= lon_max:
        if lat_min <= lat <= lat_max:
            return 0.0
        nearest_lat = lat_min if lat < lat_min else lat_max
        return EARTH_RADIUS_M * math.radians(abs(lat - nearest_lat))
    # Outside the longitude span the closest box point lies on one of the
    # two meridian edges.
    return min(
        min_distance_to_meridian_segment(lon, lat, lon_min, lat_min, lat_max),
        min_distance_to_meridian_segment(lon, lat, lon_max, lat_min, lat_max),
    )


def point_geojson(lon: float, lat: float) -> dict[str, Any]:
    return {"type": "Point", "coordinates": [lon, lat]}


def parse_point_geojson(value: Any) -> tuple[float, float]:
    """Extract ``(lon, lat)`` from a GeoJSON Point or raise :class:`ValidationError`."""
    if not isinstance(value, dict) or value.get("type") != "Point":
        msg = "Expected a GeoJSON Point"
        raise ValidationError(msg, {"value": value})
    coords = value.get("coordinates")
    if not isinstance(coords, (list, tuple)) or len(coords) < 2:
        msg = "GeoJSON Point must have [lon, lat] coordinates"
        raise ValidationError(msg, {"value": value})
    return validate_coordinate_pair(coords[0], coords[1])

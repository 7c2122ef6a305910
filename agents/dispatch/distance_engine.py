"""
distance_engine.py
──────────────────
Haversine (great-circle) distance calculations.

Points are dicts with 'latitude' and 'longitude' keys. These are straight-line
estimates, not road distances.
"""

import logging
import math

from agents.dispatch.errors import InvalidCoordinate

logger = logging.getLogger(__name__)

EARTH_RADIUS_M = 6371000.0


def validate_point(point: dict) -> tuple:
    """
    Return (lat, lng) as floats or raise InvalidCoordinate.
    Rejects missing, non-numeric, NaN/inf and out-of-range values.
    """
    if not isinstance(point, dict):
        raise InvalidCoordinate(f"Point must be a mapping, got {type(point).__name__}")

    try:
        lat = float(point["latitude"])
        lng = float(point["longitude"])
    except (KeyError, TypeError, ValueError):
        raise InvalidCoordinate(
            f"Point has missing or non-numeric coordinates: "
            f"latitude={point.get('latitude')!r}, longitude={point.get('longitude')!r}"
        )

    if not (math.isfinite(lat) and math.isfinite(lng)):
        raise InvalidCoordinate(f"Coordinates must be finite: ({lat}, {lng})")
    if not -90.0 <= lat <= 90.0:
        raise InvalidCoordinate(f"Latitude out of range: {lat}")
    if not -180.0 <= lng <= 180.0:
        raise InvalidCoordinate(f"Longitude out of range: {lng}")
    return lat, lng


def calculate_distance(p1: dict, p2: dict) -> float:
    """
    Haversine distance between two points in meters.
    """
    lat1, lng1 = validate_point(p1)
    lat2, lng2 = validate_point(p2)
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlambda = math.radians(lng2 - lng1)
    a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlambda / 2) ** 2
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_M * c


def distance_km(p1: dict, p2: dict) -> float:
    return calculate_distance(p1, p2) / 1000.0


def path_distance_m(points: list) -> float:
    """
    Sum of hops across an ordered point sequence, in meters.
    No return leg is added.
    """
    total = 0.0
    for i in range(len(points) - 1):
        seg = calculate_distance(points[i], points[i + 1])
        total += seg
        logger.debug(
            f"[DistanceEngine] {points[i].get('name', '?')} → "
            f"{points[i + 1].get('name', '?')} = {round(seg)} m"
        )
    return total

"""Geospatial helpers for favorite matching and bounding-box queries."""

from __future__ import annotations

import math

EARTH_RADIUS_M = 6_371_000.0
METERS_PER_DEGREE_LAT = 111_320.0


def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Compute Haversine distance in meters between two lat/lon points.

    Args:
        lat1: Latitude 1 in degrees.
        lon1: Longitude 1 in degrees.
        lat2: Latitude 2 in degrees.
        lon2: Longitude 2 in degrees.

    Returns:
        Distance in meters.
    """
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)

    a = math.sin(d_phi / 2.0) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2.0) ** 2
    c = 2.0 * math.atan2(math.sqrt(a), math.sqrt(1.0 - a))
    return EARTH_RADIUS_M * c


def is_inside_circle(
    lat: float,
    lon: float,
    center_lat: float,
    center_lon: float,
    radius_m: float,
) -> bool:
    """Check whether a point is inside or on the boundary of a circle geofence."""
    return haversine_m(lat, lon, center_lat, center_lon) <= radius_m


def meters_to_degrees(lat: float, meters: float) -> tuple[float, float]:
    """Approximate a distance in meters as (lat_degrees, lon_degrees) at a latitude."""
    lat_deg = meters / METERS_PER_DEGREE_LAT
    cos_lat = max(math.cos(math.radians(lat)), 1e-6)
    lon_deg = meters / (METERS_PER_DEGREE_LAT * cos_lat)
    return lat_deg, lon_deg


def bounding_box(lat: float, lon: float, radius_m: float) -> tuple[float, float, float, float]:
    """Square box around a point, as (min_lat, min_lon, max_lat, max_lon).

    Used to narrow storage queries before an exact haversine check.
    """
    lat_deg, lon_deg = meters_to_degrees(lat, radius_m)
    return lat - lat_deg, lon - lon_deg, lat + lat_deg, lon + lon_deg

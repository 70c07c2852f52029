"""
GPS checkpoint validation.
Uses the Haversine formula to calculate distance between points.
"""
import math
from dataclasses import dataclass
from typing import Optional
from ..config import settings


@dataclass(frozen=True)
class GpsPoint:
    lat: float
    lng: float
    accuracy_m: Optional[float] = None


@dataclass(frozen=True)
class GeoCheck:
    accepted: bool
    distance_m: float
    allowed_m: float
    is_risk: bool


def haversine_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """
    Calculate the great circle distance between two points on Earth.

    Args:
        lat1: Latitude of first point
        lon1: Longitude of first point
        lat2: Latitude of second point
        lon2: Longitude of second point

    Returns:
        Distance in meters
    """
    # Earth radius in meters
    R = 6371000

    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    delta_phi = math.radians(lat2 - lat1)
    delta_lambda = math.radians(lon2 - lon1)

    a = (
        math.sin(delta_phi / 2) ** 2 +
        math.cos(phi1) * math.cos(phi2) * math.sin(delta_lambda / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

    return R * c


def validate_checkpoint(
    reported: GpsPoint,
    site_lat: float,
    site_lng: float,
    max_radius_m: Optional[float] = None,
) -> GeoCheck:
    """
    Check a reported device position against a site's registered location.

    The device's accuracy is an error margin and widens the allowed radius
    rather than counting against the agent.

    Args:
        reported: Position reported by the device
        site_lat: Registered site latitude
        site_lng: Registered site longitude
        max_radius_m: Acceptable radius (default from settings)

    Returns:
        GeoCheck with the verdict, measured distance and allowed distance.
        is_risk is True when the device reports poor accuracy
        (accuracy > GPS_ACCURACY_RISK_M).
    """
    if max_radius_m is None:
        max_radius_m = settings.geo_radius_m_default
    accuracy_m = max(float(reported.accuracy_m or 0), 0.0)

    distance = haversine_distance(reported.lat, reported.lng, float(site_lat), float(site_lng))
    allowed = float(max_radius_m) + accuracy_m

    return GeoCheck(
        accepted=distance <= allowed,
        distance_m=distance,
        allowed_m=allowed,
        is_risk=accuracy_m > settings.gps_accuracy_risk_m,
    )

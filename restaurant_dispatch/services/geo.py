"""
Geospatial Utilities

Great-circle distance and a linear ETA model used by the dispatch engine
and the customer tracking view.
"""

import math
from dataclasses import dataclass

EARTH_RADIUS_KM = 6371.0
DEFAULT_SPEED_KMH = 30.0


@dataclass(frozen=True)
class Coordinates:
    lat: float
    lng: float


@dataclass
class DistanceResult:
    """
    Distance between two points.

    Attributes:
        distance_km: Great-circle distance in kilometers
        duration_minutes: Estimated travel time at the assumed average speed
    """
    distance_km: float
    duration_minutes: int

    def to_dict(self) -> dict:
        return {
            "distance_km": round(self.distance_km, 3),
            "duration_minutes": self.duration_minutes,
        }


def haversine_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """
    Great-circle distance between two (lat, lng) pairs in kilometers.

    Example:
        >>> round(haversine_km(25.2048, 55.2708, 25.2048, 55.2708), 3)
        0.0
    """
    d_lat = math.radians(lat2 - lat1)
    d_lng = math.radians(lng2 - lng1)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lng / 2) ** 2
    )
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def distance_between(origin: Coordinates, destination: Coordinates) -> float:
    return haversine_km(origin.lat, origin.lng, destination.lat, destination.lng)


def eta_minutes_for_distance(distance_km: float, speed_kmh: float = DEFAULT_SPEED_KMH) -> int:
    """Minutes to cover ``distance_km`` at a constant speed, rounded up."""
    return math.ceil(distance_km * 60 / speed_kmh)


def estimate_eta_minutes(
    origin: Coordinates,
    destination: Coordinates,
    speed_kmh: float = DEFAULT_SPEED_KMH,
) -> int:
    """Straight-line ETA, not a routed one."""
    return eta_minutes_for_distance(distance_between(origin, destination), speed_kmh)


def calculate_distance(
    origin: Coordinates,
    destination: Coordinates,
    speed_kmh: float = DEFAULT_SPEED_KMH,
) -> DistanceResult:
    distance_km = distance_between(origin, destination)
    return DistanceResult(
        distance_km=distance_km,
        duration_minutes=eta_minutes_for_distance(distance_km, speed_kmh),
    )

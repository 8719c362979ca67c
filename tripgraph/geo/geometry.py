"""Great-circle distance and travel-time estimation for synthesized routes."""

import math

EARTH_RADIUS_KM = 6371.0


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance between two WGS84 points in kilometres."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)

    a = (
        math.sin(d_phi / 2) ** 2
        + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_KM * c


def stop_distance_km(stop_a, stop_b) -> float:
    """Distance between two objects exposing latitude/longitude; 0 if either is unplaced."""
    if None in (stop_a.latitude, stop_a.longitude, stop_b.latitude, stop_b.longitude):
        return 0.0
    return haversine_km(stop_a.latitude, stop_a.longitude, stop_b.latitude, stop_b.longitude)


def estimate_duration_minutes(distance_km: float, average_speed_kmh: float = 60.0,
                              min_minutes: int = 60) -> int:
    """Travel time at a constant average speed, floored at ``min_minutes``."""
    duration = distance_km / average_speed_kmh * 60
    return max(min_minutes, int(round(duration)))

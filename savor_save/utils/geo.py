"""Distance and delivery-time estimates."""

import math

from savor_save.models.order import Location

EARTH_RADIUS_KM = 6371


def haversine_km(loc1: Location, loc2: Location) -> float:
    """Great-circle distance between two locations in km, rounded to 2 places."""
    lat1, lng1 = math.radians(loc1.lat), math.radians(loc1.lng)
    lat2, lng2 = math.radians(loc2.lat), math.radians(loc2.lng)

    dlat = lat2 - lat1
    dlng = lng2 - lng1

    a = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlng / 2) ** 2
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

    return round(EARTH_RADIUS_KM * c, 2)


def estimate_delivery_minutes(
    distance_km: float,
    preparation_minutes: int,
    speed_kmh: float,
    buffer_minutes: int,
) -> int:
    """Preparation plus travel plus a fixed buffer, in whole minutes."""
    travel_minutes = math.ceil(distance_km / speed_kmh * 60)
    return preparation_minutes + travel_minutes + buffer_minutes

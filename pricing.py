"""Fare estimation: straight-line distance and a flat per-class rate table."""

from math import atan2, cos, radians, sin, sqrt
from typing import Dict, Optional

from schemas import Location

RATE_TABLE: Dict[str, Dict[str, float]] = {
    "standard": {"base": 2.5, "per_km": 1.2},
    "premium": {"base": 4.0, "per_km": 1.9},
    "xl": {"base": 3.5, "per_km": 1.6},
}

DEFAULT_VEHICLE_CLASS = "standard"


class UnknownVehicleClass(ValueError):
    pass


def haversine_km(a: Location, b: Location) -> float:
    R = 6371.0
    lat1 = radians(a.lat)
    lon1 = radians(a.lng)
    lat2 = radians(b.lat)
    lon2 = radians(b.lng)
    dlon = lon2 - lon1
    dlat = lat2 - lat1

    h = sin(dlat / 2)**2 + cos(lat1) * cos(lat2) * sin(dlon / 2)**2
    c = 2 * atan2(sqrt(h), sqrt(1 - h))
    return R * c


def estimate_fare(distance_km: float, vehicle_class: str = DEFAULT_VEHICLE_CLASS) -> float:
    """fare = base + distance * per_km, rounded to cents. Negative distance counts as zero."""
    rates = RATE_TABLE.get(vehicle_class)
    if rates is None:
        raise UnknownVehicleClass(vehicle_class)
    return round(rates["base"] + rates["per_km"] * max(distance_km, 0.0), 2)


def trip_distance_km(pickup: Optional[Location], dropoff: Optional[Location], distance_km: Optional[float] = None) -> Optional[float]:
    """An explicit distance wins; otherwise use the great-circle distance when both points are known."""
    if distance_km is not None:
        return distance_km
    if pickup is not None and dropoff is not None:
        return round(haversine_km(pickup, dropoff), 3)
    return None

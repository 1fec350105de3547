from __future__ import annotations

from dataclasses import dataclass
from math import asin, cos, radians, sin, sqrt

from timeclock.models import Location

EARTH_RADIUS_M = 6371000.0


@dataclass(frozen=True)
class GeofenceResult:
    inside: bool | None
    distance_m: float | None = None
    radius_m: float | None = None

    def to_flags(self) -> dict[str, float | bool | None]:
        flags: dict[str, float | bool | None] = {"inside": self.inside}
        if self.distance_m is not None:
            flags["distance_m"] = round(self.distance_m, 2)
        if self.radius_m is not None:
            flags["radius_m"] = self.radius_m
        return flags


UNKNOWN = GeofenceResult(inside=None)


def distance_m(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    lat1_rad = radians(lat1)
    lng1_rad = radians(lng1)
    lat2_rad = radians(lat2)
    lng2_rad = radians(lng2)

    delta_lat = lat2_rad - lat1_rad
    delta_lng = lng2_rad - lng1_rad

    a = sin(delta_lat / 2) ** 2 + cos(lat1_rad) * cos(lat2_rad) * sin(delta_lng / 2) ** 2
    c = 2 * asin(sqrt(a))
    return EARTH_RADIUS_M * c


def check_radius(
    *,
    lat: float,
    lng: float,
    center_lat: float,
    center_lng: float,
    radius_m: float,
) -> GeofenceResult:
    distance_value = distance_m(lat, lng, center_lat, center_lng)
    return GeofenceResult(
        inside=distance_value <= radius_m,
        distance_m=distance_value,
        radius_m=radius_m,
    )


def fence_is_enforceable(location: Location | None) -> bool:
    if location is None or not location.geofence_enabled:
        return False
    return (
        location.latitude is not None
        and location.longitude is not None
        and location.radius_meters is not None
    )


def evaluate_geofence(
    location: Location | None,
    lat: float | None,
    lng: float | None,
) -> GeofenceResult:
    """Tri-state fence check: unknown unless both the fence and the point are known."""
    if not fence_is_enforceable(location) or lat is None or lng is None:
        return UNKNOWN

    return check_radius(
        lat=lat,
        lng=lng,
        center_lat=float(location.latitude),  # type: ignore[union-attr,arg-type]
        center_lng=float(location.longitude),  # type: ignore[union-attr,arg-type]
        radius_m=float(location.radius_meters),  # type: ignore[union-attr,arg-type]
    )

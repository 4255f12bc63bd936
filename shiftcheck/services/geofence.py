from __future__ import annotations

import re
from dataclasses import dataclass
from math import asin, cos, radians, sin, sqrt
from typing import Union

from shiftcheck.errors import MalformedCoordinate
from shiftcheck.models import Location, Shift

EARTH_RADIUS_M = 6371000.0

_DMS_PART = re.compile(
    r"""^\s*(?P<deg>\d{1,3})°\s*(?P<min>\d{1,2})['′]\s*(?P<sec>\d{1,2}(?:\.\d+)?)["″]\s*(?P<hem>[NSEW])\s*$"""
)


@dataclass(frozen=True, slots=True)
class Coordinate:
    latitude: float
    longitude: float

    def as_lon_lat(self) -> list[float]:
        return [self.longitude, self.latitude]


@dataclass(frozen=True, slots=True)
class Geofence:
    center: Coordinate
    radius_m: float
    name: str


@dataclass(frozen=True, slots=True)
class InlineGeofence:
    latitude: float
    longitude: float
    radius_m: float
    name: str | None = None


@dataclass(frozen=True, slots=True)
class LocationReference:
    location: Location


ShiftGeofence = Union[InlineGeofence, LocationReference]


def distance_m(a: Coordinate, b: Coordinate) -> float:
    lat1_rad = radians(a.latitude)
    lon1_rad = radians(a.longitude)
    lat2_rad = radians(b.latitude)
    lon2_rad = radians(b.longitude)

    delta_lat = lat2_rad - lat1_rad
    delta_lon = lon2_rad - lon1_rad

    h = sin(delta_lat / 2) ** 2 + cos(lat1_rad) * cos(lat2_rad) * sin(delta_lon / 2) ** 2
    # Rounding can push h a hair past 1.0 for antipodal points.
    c = 2 * asin(sqrt(min(1.0, h)))
    return EARTH_RADIUS_M * c


def within_radius(observed: Coordinate, center: Coordinate, radius_m: float) -> bool:
    return distance_m(observed, center) <= radius_m


def _parse_dms_part(raw: str) -> tuple[float, str]:
    match = _DMS_PART.match(raw)
    if match is None:
        raise MalformedCoordinate(f"Invalid DMS component: {raw!r}")

    degrees = float(match.group("deg"))
    minutes = float(match.group("min"))
    seconds = float(match.group("sec"))
    if minutes >= 60 or seconds >= 60:
        raise MalformedCoordinate(f"Invalid DMS component: {raw!r}")

    value = degrees + minutes / 60 + seconds / 3600
    hemisphere = match.group("hem")
    if hemisphere in {"S", "W"}:
        value = -value
    return value, hemisphere


def parse_dms(raw: str) -> Coordinate:
    """Convert a ``4°08'49.9"N 9°17'08.8"E`` style pair to decimal degrees.

    The latitude component must carry N/S and the longitude E/W.
    """
    if not isinstance(raw, str):
        raise MalformedCoordinate("DMS coordinate must be a string.")
    parts = raw.split()
    if len(parts) != 2:
        raise MalformedCoordinate("DMS coordinate must contain a latitude and a longitude part.")

    latitude, lat_hemisphere = _parse_dms_part(parts[0])
    longitude, lon_hemisphere = _parse_dms_part(parts[1])
    if lat_hemisphere not in {"N", "S"} or lon_hemisphere not in {"E", "W"}:
        raise MalformedCoordinate("DMS coordinate hemispheres must be N/S then E/W.")
    if abs(latitude) > 90 or abs(longitude) > 180:
        raise MalformedCoordinate("DMS coordinate is out of range.")

    return Coordinate(latitude=latitude, longitude=longitude)


def format_distance(value_m: float) -> str:
    if value_m < 1:
        return f"{round(value_m * 100)} cm"
    if value_m < 1000:
        return f"{round(value_m)} m"
    return f"{value_m / 1000:.2f} km"


def shift_geofence_source(shift: Shift) -> ShiftGeofence | None:
    if (
        shift.geofence_lat is not None
        and shift.geofence_lon is not None
        and shift.geofence_radius_m is not None
    ):
        return InlineGeofence(
            latitude=shift.geofence_lat,
            longitude=shift.geofence_lon,
            radius_m=shift.geofence_radius_m,
            name=shift.geofence_name,
        )
    if shift.location is not None and shift.location.is_active:
        return LocationReference(location=shift.location)
    return None


def resolve_geofence(source: ShiftGeofence | None, *, fallback: Geofence) -> Geofence:
    if isinstance(source, InlineGeofence):
        return Geofence(
            center=Coordinate(latitude=source.latitude, longitude=source.longitude),
            radius_m=float(source.radius_m),
            name=source.name or fallback.name,
        )
    if isinstance(source, LocationReference):
        location = source.location
        return Geofence(
            center=Coordinate(latitude=location.lat, longitude=location.lon),
            radius_m=float(location.radius_m),
            name=location.name,
        )
    return fallback

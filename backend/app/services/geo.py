from __future__ import annotations

import math
from dataclasses import dataclass

from ..errors import ValidationError

EARTH_RADIUS_M = 6_371_000.0
METERS_PER_DEGREE = 111_320.0


@dataclass(frozen=True)
class Point:
    lat: float
    lng: float


@dataclass(frozen=True)
class Bounds:
    sw: Point
    ne: Point

    @classmethod
    def from_corners(cls, sw_lat: float, sw_lng: float, ne_lat: float, ne_lng: float) -> Bounds:
        bounds = cls(sw=Point(sw_lat, sw_lng), ne=Point(ne_lat, ne_lng))
        bounds.validate()
        return bounds

    def validate(self) -> None:
        for point in (self.sw, self.ne):
            if not (math.isfinite(point.lat) and math.isfinite(point.lng)):
                raise ValidationError("Bounds coordinates must be finite numbers")
            if not -90.0 <= point.lat <= 90.0:
                raise ValidationError("Latitude must be between -90 and 90")
            if not -180.0 <= point.lng <= 180.0:
                raise ValidationError("Longitude must be between -180 and 180")
        if self.sw.lat > self.ne.lat or self.sw.lng > self.ne.lng:
            raise ValidationError("Southwest corner must not exceed northeast corner")

    @property
    def center(self) -> Point:
        return Point((self.sw.lat + self.ne.lat) / 2, (self.sw.lng + self.ne.lng) / 2)

    @property
    def diagonal_meters(self) -> float:
        return haversine_meters(self.sw.lat, self.sw.lng, self.ne.lat, self.ne.lng)

    def contains(self, lat: float, lng: float) -> bool:
        return self.sw.lat <= lat <= self.ne.lat and self.sw.lng <= lng <= self.ne.lng


def haversine_meters(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    lat1_rad = math.radians(lat1)
    lat2_rad = math.radians(lat2)
    d_lat = math.radians(lat2 - lat1)
    d_lon = math.radians(lon2 - lon1)

    a = math.sin(d_lat / 2) ** 2 + math.cos(lat1_rad) * math.cos(lat2_rad) * math.sin(d_lon / 2) ** 2
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_M * c


def bounds_from_radius(lat: float, lng: float, radius_meters: float) -> Bounds:
    lat_delta = radius_meters / METERS_PER_DEGREE
    cos_lat = max(math.cos(math.radians(lat)), 0.01)
    lng_delta = radius_meters / (METERS_PER_DEGREE * cos_lat)
    return Bounds(
        sw=Point(max(-90.0, lat - lat_delta), max(-180.0, lng - lng_delta)),
        ne=Point(min(90.0, lat + lat_delta), min(180.0, lng + lng_delta)),
    )


def clamp_radius(radius_meters: float | None, *, minimum: float, maximum: float, default: float) -> float:
    if radius_meters is None or not math.isfinite(radius_meters):
        return default
    return min(maximum, max(minimum, radius_meters))


def clamp_limit(limit: int | None, *, maximum: int, default: int) -> int:
    if limit is None or limit <= 0:
        return default
    return min(maximum, limit)


def parse_lat_lng(value: str, *, label: str = "coordinate") -> Point:
    try:
        lat_raw, lng_raw = value.split(",", maxsplit=1)
        point = Point(float(lat_raw.strip()), float(lng_raw.strip()))
    except (AttributeError, TypeError, ValueError):
        raise ValidationError(f"{label} must be formatted as 'lat,lng'") from None
    if not (math.isfinite(point.lat) and math.isfinite(point.lng)):
        raise ValidationError(f"{label} must be formatted as 'lat,lng'")
    return point

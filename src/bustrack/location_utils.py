"""Geographic helpers: distances, bearings and bounding boxes."""

import math
from dataclasses import dataclass
from typing import Iterable, Optional, Tuple

from .models import Coordinate

EARTH_RADIUS_M = 6_371_000.0
METERS_PER_DEGREE_LAT = 111_000.0


@dataclass(frozen=True)
class BoundingBox:
    min_latitude: float
    max_latitude: float
    min_longitude: float
    max_longitude: float

    def contains(self, coordinate: Coordinate) -> bool:
        return (
            self.min_latitude <= coordinate.latitude <= self.max_latitude
            and self.min_longitude <= coordinate.longitude <= self.max_longitude
        )


def distance(start: Coordinate, end: Coordinate) -> float:
    """Haversine distance in meters."""
    return start.distance_to(end)


def bearing(start: Coordinate, end: Coordinate) -> float:
    """Initial bearing from start to end in degrees, 0 = north, clockwise."""
    lat1 = math.radians(start.latitude)
    lat2 = math.radians(end.latitude)
    d_lon = math.radians(end.longitude - start.longitude)

    y = math.sin(d_lon) * math.cos(lat2)
    x = math.cos(lat1) * math.sin(lat2) - math.sin(lat1) * math.cos(lat2) * math.cos(d_lon)
    return (math.degrees(math.atan2(y, x)) + 360) % 360


def bounding_box(center: Coordinate, radius_meters: float) -> BoundingBox:
    """Approximate box enclosing a circle, good enough to pre-filter candidates."""
    lat_delta = radius_meters / METERS_PER_DEGREE_LAT
    lon_delta = radius_meters / (METERS_PER_DEGREE_LAT * math.cos(math.radians(center.latitude)))
    return BoundingBox(
        min_latitude=center.latitude - lat_delta,
        max_latitude=center.latitude + lat_delta,
        min_longitude=center.longitude - lon_delta,
        max_longitude=center.longitude + lon_delta,
    )


def is_within_bounds(coordinate: Coordinate, box: BoundingBox) -> bool:
    return box.contains(coordinate)


def nearest(target: Coordinate, coordinates: Iterable[Coordinate]) -> Optional[Tuple[Coordinate, float]]:
    """Closest coordinate to target and its distance, or None for an empty input."""
    best: Optional[Tuple[Coordinate, float]] = None
    for coordinate in coordinates:
        dist = distance(target, coordinate)
        if best is None or dist < best[1]:
            best = (coordinate, dist)
    return best


def are_approximately_equal(first: Coordinate, second: Coordinate, tolerance_meters: float = 10) -> bool:
    return distance(first, second) <= tolerance_meters


def interpolate(start: Coordinate, end: Coordinate, fraction: float) -> Coordinate:
    """Linear interpolation between two coordinates; fraction is clamped to [0, 1]."""
    fraction = max(0.0, min(1.0, fraction))
    return Coordinate(
        latitude=start.latitude + (end.latitude - start.latitude) * fraction,
        longitude=start.longitude + (end.longitude - start.longitude) * fraction,
    )


def format_distance(meters: float) -> str:
    if meters < 1000:
        return f"{meters:.0f} m"
    return f"{meters / 1000:.1f} km"

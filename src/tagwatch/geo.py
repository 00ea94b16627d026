"""Great-circle distance helpers."""

import math
from collections.abc import Sequence

from tagwatch.registry.models import Location

EARTH_RADIUS_METERS = 6_371_000.0


def haversine(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Distance in meters between two WGS84 points."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)

    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    return EARTH_RADIUS_METERS * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def location_distance(a: Location, b: Location) -> float:
    return haversine(a.latitude, a.longitude, b.latitude, b.longitude)


def pairwise_distances(locations: Sequence[Location]) -> list[float]:
    """All N*(N-1)/2 distances between the given locations."""
    distances: list[float] = []
    for i, first in enumerate(locations):
        for second in locations[i + 1 :]:
            distances.append(location_distance(first, second))
    return distances

"""Threat scoring.

A weighted sum of five sub-scores, each clamped to [0, 1]:

- location: number of distinct locations, saturating
- distance: largest pairwise distance between those locations, saturating
  on the scale of the minimum detection distance
- time: elapsed span between first and last sighting, banded
- consistency: low RSSI spread (the device stays at a steady distance)
- device type: known tracker types score highest; a Find My device
  separated from its owner gets a bonus
"""

import math
import statistics
from collections.abc import Collection, Sequence
from dataclasses import dataclass, replace
from datetime import timedelta
from typing import TYPE_CHECKING

from tagwatch.geo import pairwise_distances
from tagwatch.registry.models import Device, Location, Sighting
from tagwatch.registry.store import as_utc

if TYPE_CHECKING:
    from tagwatch.config import Settings

DEVICE_TYPE_SCORES = {
    "TRACKER": 1.0,
    "PHONE": 0.8,
    "TABLET": 0.8,
    "WATCH": 0.6,
    "FITNESS_BAND": 0.4,
}
OTHER_DEVICE_TYPE_SCORE = 0.3
DEVICE_TYPE_BASE_SHARE = 0.7
SEPARATED_TRACKER_BONUS = 0.3
SEPARATED_OTHER_BONUS = 0.15

# (upper bound of span, score); spans past the last bound score 1.0
TIME_BANDS = (
    (timedelta(hours=1), 0.25),
    (timedelta(days=1), 0.75),
)


def clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


@dataclass(frozen=True)
class ScoreWeights:
    location: float = 0.30
    distance: float = 0.20
    time: float = 0.15
    consistency: float = 0.20
    device_type: float = 0.15

    def __post_init__(self) -> None:
        total = self.location + self.distance + self.time + self.consistency + self.device_type
        if abs(total - 1.0) > 1e-6:
            raise ValueError(f"Scoring weights must sum to 1.0 (got {total:.3f})")

    @classmethod
    def from_settings(cls, settings: "Settings") -> "ScoreWeights":
        return cls(
            location=settings.weight_location,
            distance=settings.weight_distance,
            time=settings.weight_time,
            consistency=settings.weight_consistency,
            device_type=settings.weight_device_type,
        )


@dataclass(frozen=True)
class ScoreBounds:
    """Normalization constants for the raw inputs."""

    location_scale: float = 2.0  # distinct locations; 3 -> 0.78, 5 -> 0.92
    distance_scale_meters: float = 100.0  # engine uses the minimum detection distance
    rssi_stddev_bound: float = 10.0  # dB; spread at or above this scores 0


@dataclass(frozen=True)
class ThreatScore:
    """A threat score and the parts it was built from.

    ``weighted_sum`` is the weighted sum of the sub-scores. ``total`` is the
    reported score: the weighted sum reduced by ``weak_link_discount`` and,
    for shadow detections, averaged with ``shadow_score``.
    """

    total: float
    location_score: float = 0.0
    distance_score: float = 0.0
    time_score: float = 0.0
    consistency_score: float = 0.0
    device_type_score: float = 0.0
    weighted_sum: float = 0.0
    weak_link_discount: float = 0.0
    shadow_score: float | None = None

    def with_discount(self, discount: float) -> "ThreatScore":
        """Remove ``discount`` (a fraction) of the score."""
        discount = clamp(discount)
        return replace(
            self, total=clamp(self.total * (1.0 - discount)), weak_link_discount=discount
        )

    def blended_with_shadow(self, shadow_score: float) -> "ThreatScore":
        """Average the score with a shadow-profile score."""
        shadow_score = clamp(shadow_score)
        return replace(
            self, total=clamp((self.total + shadow_score) / 2.0), shadow_score=shadow_score
        )

    def as_dict(self) -> dict[str, float | None]:
        return {
            "total": self.total,
            "location": self.location_score,
            "distance": self.distance_score,
            "time": self.time_score,
            "consistency": self.consistency_score,
            "device_type": self.device_type_score,
            "weighted_sum": self.weighted_sum,
            "weak_link_discount": self.weak_link_discount,
            "shadow": self.shadow_score,
        }


ZERO_SCORE = ThreatScore(total=0.0)


def _distinct_locations(locations: Sequence[Location]) -> list[Location]:
    seen: set[object] = set()
    distinct = []
    for loc in locations:
        key = loc.id if loc.id is not None else (loc.latitude, loc.longitude)
        if key not in seen:
            seen.add(key)
            distinct.append(loc)
    return distinct


def location_score(count: int, bounds: ScoreBounds = ScoreBounds()) -> float:
    if count <= 0:
        return 0.0
    return clamp(1.0 - math.exp(-count / bounds.location_scale))


def distance_score(max_distance: float, bounds: ScoreBounds = ScoreBounds()) -> float:
    if max_distance <= 0:
        return 0.0
    return clamp(1.0 - math.exp(-max_distance / bounds.distance_scale_meters))


def time_score(span: timedelta) -> float:
    if span <= timedelta(0):
        return 0.0
    for bound, band_score in TIME_BANDS:
        if span < bound:
            return band_score
    return 1.0


def consistency_score(rssi_values: Sequence[int], bounds: ScoreBounds = ScoreBounds()) -> float:
    if len(rssi_values) < 2:
        return 0.0
    return clamp(1.0 - statistics.pstdev(rssi_values) / bounds.rssi_stddev_bound)


def device_type_score(
    device: Device | None, tracker_device_types: Collection[str] = ("TRACKER",)
) -> float:
    if device is None:
        return clamp(OTHER_DEVICE_TYPE_SCORE * DEVICE_TYPE_BASE_SHARE)

    device_type = (device.device_type or "").upper()
    if device.is_tracker or device_type in tracker_device_types:
        base = 1.0
    else:
        base = DEVICE_TYPE_SCORES.get(device_type, OTHER_DEVICE_TYPE_SCORE)

    result = base * DEVICE_TYPE_BASE_SHARE
    if device.find_my_separated:
        result += SEPARATED_TRACKER_BONUS if base == 1.0 else SEPARATED_OTHER_BONUS
    return clamp(result)


def score(
    sightings: Sequence[Sighting],
    locations: Sequence[Location],
    device: Device | None = None,
    weights: ScoreWeights = ScoreWeights(),
    bounds: ScoreBounds = ScoreBounds(),
    tracker_device_types: Collection[str] = ("TRACKER",),
) -> ThreatScore:
    """Score a device's sighting history. Pure; never raises on empty input.

    Fewer than two sightings carry no signal and score 0 across the board.
    """
    if len(sightings) < 2:
        return ZERO_SCORE

    distinct = _distinct_locations(locations)
    distances = pairwise_distances(distinct)
    timestamps = [as_utc(s.timestamp) for s in sightings]

    loc = location_score(len(distinct), bounds)
    dist = distance_score(max(distances, default=0.0), bounds)
    span = time_score(max(timestamps) - min(timestamps))
    consistency = consistency_score([s.rssi for s in sightings], bounds)
    dtype = device_type_score(device, tracker_device_types)

    total = (
        weights.location * loc
        + weights.distance * dist
        + weights.time * span
        + weights.consistency * consistency
        + weights.device_type * dtype
    )
    return ThreatScore(
        total=clamp(total),
        weighted_sum=clamp(total),
        location_score=loc,
        distance_score=dist,
        time_score=span,
        consistency_score=consistency,
        device_type_score=dtype,
    )

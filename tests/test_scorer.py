"""Tests for threat scoring."""

from datetime import timedelta

import pytest

from tagwatch.detection.scorer import (
    ZERO_SCORE,
    ScoreBounds,
    ScoreWeights,
    ThreatScore,
    consistency_score,
    device_type_score,
    distance_score,
    location_score,
    score,
    time_score,
)
from tagwatch.registry.models import Device, Location, Sighting

from .conftest import ROUTE, T0


def _history(points, rssi, step=timedelta(hours=1)):
    locations = [
        Location(latitude=lat, longitude=lon, accuracy=5.0, timestamp=T0 + step * i)
        for i, (lat, lon) in enumerate(points)
    ]
    sightings = [
        Sighting(device_id=1, location_id=i + 1, rssi=rssi[i], timestamp=T0 + step * i)
        for i in range(len(points))
    ]
    return sightings, locations


class TestSubScores:
    def test_location_score_saturates(self):
        values = [location_score(n) for n in range(0, 20)]
        assert values[0] == 0.0
        assert values == sorted(values)
        assert all(0.0 <= v <= 1.0 for v in values)
        assert location_score(3) == pytest.approx(0.777, abs=0.001)

    def test_distance_score(self):
        assert distance_score(0) == 0.0
        assert distance_score(50) < distance_score(150) < distance_score(400) <= 1.0

    def test_distance_scale(self):
        # At the scale distance the score is 1 - 1/e
        assert distance_score(100) == pytest.approx(0.632, abs=0.001)
        wide = ScoreBounds(distance_scale_meters=500.0)
        assert distance_score(500, wide) == pytest.approx(0.632, abs=0.001)
        assert distance_score(100, wide) < distance_score(100)

    @pytest.mark.parametrize(
        ("span", "expected"),
        [
            (timedelta(0), 0.0),
            (timedelta(minutes=30), 0.25),
            (timedelta(hours=2), 0.75),
            (timedelta(days=2), 1.0),
        ],
    )
    def test_time_bands(self, span, expected):
        assert time_score(span) == expected

    def test_consistency(self):
        assert consistency_score([-70, -70, -70]) == 1.0
        assert consistency_score([-40, -90, -40, -90]) == 0.0
        assert consistency_score([-70]) == 0.0

    def test_device_type(self):
        tracker = Device(mac_address="AA:00:00:00:00:01", device_type="TRACKER")
        phone = Device(mac_address="AA:00:00:00:00:02", device_type="PHONE")
        separated = Device(
            mac_address="AA:00:00:00:00:03", is_tracker=True, find_my_separated=True
        )

        assert device_type_score(tracker) == pytest.approx(0.7)
        assert device_type_score(phone) == pytest.approx(0.56)
        assert device_type_score(separated) == pytest.approx(1.0)
        assert device_type_score(None) == pytest.approx(0.21)

    def test_configurable_tracker_types(self):
        earbuds = Device(mac_address="AA:00:00:00:00:01", device_type="EARBUDS")
        assert device_type_score(earbuds) == pytest.approx(0.21)
        assert device_type_score(earbuds, ("TRACKER", "EARBUDS")) == pytest.approx(0.7)


class TestScore:
    def test_fewer_than_two_sightings(self):
        sightings, locations = _history(ROUTE[:1], [-70])
        assert score(sightings, locations) == ZERO_SCORE
        assert score([], []) == ZERO_SCORE

    def test_total_is_weighted_sum(self):
        sightings, locations = _history(ROUTE[:3], [-70, -72, -75])
        weights = ScoreWeights()
        result = score(sightings, locations, weights=weights)

        expected = (
            weights.location * result.location_score
            + weights.distance * result.distance_score
            + weights.time * result.time_score
            + weights.consistency * result.consistency_score
            + weights.device_type * result.device_type_score
        )
        assert result.total == pytest.approx(expected)
        assert result.weighted_sum == result.total
        assert result.total == pytest.approx(0.736, abs=0.005)

    def test_bounded(self):
        sightings, locations = _history(ROUTE, [-30, -100, -30, -100], step=timedelta(days=3))
        result = score(sightings, locations)
        for value in result.as_dict().values():
            assert 0.0 <= value <= 1.0

    def test_more_locations_score_higher(self):
        few = score(*_history(ROUTE[:2], [-70, -70]))
        many = score(*_history(ROUTE, [-70, -70, -70, -70]))
        assert many.location_score > few.location_score
        assert many.total > few.total

    def test_steadier_signal_scores_higher(self):
        steady = score(*_history(ROUTE[:3], [-70, -70, -71]))
        noisy = score(*_history(ROUTE[:3], [-50, -80, -65]))
        assert steady.consistency_score > noisy.consistency_score
        assert steady.total > noisy.total

    def test_duplicate_locations_counted_once(self):
        sightings, locations = _history([ROUTE[0], ROUTE[0], ROUTE[1]], [-70, -70, -70])
        result = score(sightings, locations)
        assert result.location_score == pytest.approx(location_score(2))


class TestWeights:
    def test_defaults_sum_to_one(self):
        ScoreWeights()

    def test_rejects_bad_sum(self):
        with pytest.raises(ValueError):
            ScoreWeights(location=0.5)

    def test_custom_weights(self):
        weights = ScoreWeights(
            location=1.0, distance=0.0, time=0.0, consistency=0.0, device_type=0.0
        )
        sightings, locations = _history(ROUTE[:3], [-70, -72, -75])
        result = score(sightings, locations, weights=weights)
        assert result.total == pytest.approx(result.location_score)


class TestAdjustments:
    def test_discount_lowers_total(self):
        base = score(*_history(ROUTE[:3], [-70, -72, -75]))
        discounted = base.with_discount(0.15)

        assert discounted.total == pytest.approx(base.weighted_sum * 0.85)
        assert discounted.weighted_sum == base.weighted_sum
        assert discounted.weak_link_discount == 0.15
        assert discounted.location_score == base.location_score

    def test_shadow_blend(self):
        base = ThreatScore(total=0.6, weighted_sum=0.6)
        blended = base.blended_with_shadow(0.8)
        assert blended.total == pytest.approx(0.7)
        assert blended.shadow_score == 0.8

    def test_as_dict_reports_adjustments(self):
        breakdown = ThreatScore(total=0.8, weighted_sum=0.8).with_discount(0.3)
        data = breakdown.as_dict()
        assert data["total"] == pytest.approx(0.56)
        assert data["weighted_sum"] == 0.8
        assert data["weak_link_discount"] == 0.3
        assert data["shadow"] is None

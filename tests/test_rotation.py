"""Tests for MAC rotation rhythm detection."""

from datetime import timedelta

import pytest

from tagwatch.detection.rotation import NO_ROTATION, MacRotationDetector
from tagwatch.registry.models import Device

from .conftest import T0


def _chain(starts_minutes: list[int], lifetime_minutes: int = 14) -> list[Device]:
    return [
        Device(
            id=i + 1,
            mac_address=f"F1:00:00:00:00:{i:02X}",
            first_seen=T0 + timedelta(minutes=start),
            last_seen=T0 + timedelta(minutes=start + lifetime_minutes),
        )
        for i, start in enumerate(starts_minutes)
    ]


class TestMacRotationDetector:
    def test_regular_rotation(self):
        result = MacRotationDetector().detect(_chain([0, 15, 30, 45]))
        assert result.handoff_count == 3
        assert result.score == pytest.approx(1.0)
        assert result.average_interval == timedelta(minutes=15)
        assert result.is_regular is True

    def test_order_does_not_matter(self):
        devices = _chain([0, 15, 30])
        assert MacRotationDetector().detect(devices[::-1]) == MacRotationDetector().detect(devices)

    def test_single_device(self):
        assert MacRotationDetector().detect(_chain([0])) is NO_ROTATION

    def test_one_handoff_is_not_enough(self):
        result = MacRotationDetector().detect(_chain([0, 15]))
        assert result.handoff_count == 1
        assert result.score == 0.0

    def test_gaps_break_the_chain(self):
        # The third MAC shows up an hour after the second went quiet
        result = MacRotationDetector().detect(_chain([0, 15, 90, 105]))
        assert result.handoff_count == 2
        assert result.score == pytest.approx(2 / 3)

    def test_irregular_intervals(self):
        devices = _chain([0, 15, 30])
        devices[2].first_seen = devices[1].last_seen
        devices[2].last_seen = devices[2].first_seen + timedelta(minutes=60)
        devices.append(
            Device(
                id=9,
                mac_address="F1:00:00:00:00:09",
                first_seen=devices[2].last_seen,
                last_seen=devices[2].last_seen + timedelta(minutes=5),
            )
        )

        result = MacRotationDetector().detect(devices)
        assert result.handoff_count == 3
        assert 0.0 < result.score < 1.0
        assert result.is_regular is False

    def test_custom_gap(self):
        detector = MacRotationDetector(max_handoff_gap=timedelta(seconds=30))
        assert detector.detect(_chain([0, 15, 30])).score == 0.0

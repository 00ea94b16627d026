"""MAC rotation rhythm.

A device that rotates its address leaves a chain of rows: each MAC goes
silent shortly before the next one appears. Regular hand-offs between
devices that share a shadow key suggest one physical unit behind them.
"""

import statistics
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import timedelta

from tagwatch.registry.models import Device
from tagwatch.registry.store import as_utc

MIN_HANDOFFS = 2
REGULAR_CV = 0.5


@dataclass(frozen=True)
class RotationResult:
    score: float  # hand-off coverage x interval regularity, 0..1
    handoff_count: int
    average_interval: timedelta
    is_regular: bool


NO_ROTATION = RotationResult(
    score=0.0, handoff_count=0, average_interval=timedelta(0), is_regular=False
)


class MacRotationDetector:
    def __init__(self, max_handoff_gap: timedelta = timedelta(minutes=5)) -> None:
        self.max_handoff_gap = max_handoff_gap

    def detect(self, devices: Sequence[Device]) -> RotationResult:
        """Score the hand-off pattern of ``devices`` (any order).

        A hand-off is a device first appearing within ``max_handoff_gap`` of
        its predecessor's last sighting, in either direction. Fewer than two
        hand-offs score 0.
        """
        if len(devices) < 2:
            return NO_ROTATION

        ordered = sorted(devices, key=lambda d: (as_utc(d.first_seen), d.id or 0))
        handoffs = [
            i
            for i in range(len(ordered) - 1)
            if abs(as_utc(ordered[i + 1].first_seen) - as_utc(ordered[i].last_seen))
            <= self.max_handoff_gap
        ]
        if len(handoffs) < MIN_HANDOFFS:
            return RotationResult(
                score=0.0,
                handoff_count=len(handoffs),
                average_interval=timedelta(0),
                is_regular=False,
            )

        intervals = [
            (as_utc(ordered[i + 1].first_seen) - as_utc(ordered[i].first_seen)).total_seconds()
            for i in handoffs
        ]
        mean = statistics.fmean(intervals)
        cv = statistics.pstdev(intervals) / mean if mean > 0 else 1.0
        regularity = max(0.0, 1.0 - min(cv, 1.0))
        coverage = len(handoffs) / (len(ordered) - 1)

        return RotationResult(
            score=max(0.0, min(1.0, coverage * regularity)),
            handoff_count=len(handoffs),
            average_interval=timedelta(seconds=mean),
            is_regular=cv < REGULAR_CV,
        )

"""Shadow analysis: detection without MAC-to-MAC links.

When the linker cannot tie rotated MACs together, every rotation produces
a new canonical device. Those devices still share a shadow key. A key that
turns up at many of the user's locations, with about one matching device
at each, points at a single device following the user.

    persistence = 1 / (1 + variance of per-location device counts)
                  * key specificity * location coverage
    combined    = 0.7 * persistence + 0.3 * rotation score
"""

import logging
import statistics
from collections.abc import Collection
from dataclasses import dataclass
from typing import TYPE_CHECKING

from tagwatch.detection.rotation import MacRotationDetector, RotationResult
from tagwatch.fingerprint.profile import specificity
from tagwatch.registry.models import Device
from tagwatch.registry.store import as_utc

if TYPE_CHECKING:
    from tagwatch.correlation import CorrelationStore

logger = logging.getLogger(__name__)

PERSISTENCE_WEIGHT = 0.7
ROTATION_WEIGHT = 0.3
MIN_COMBINED_SCORE = 0.3
_NO_RSSI = -100


@dataclass
class ShadowResult:
    shadow_key: str
    representative: Device  # most recently seen device of the group
    devices: list[Device]
    persistence_score: float
    rotation: RotationResult
    location_count: int
    combined_score: float


class ShadowAnalyzer:
    def __init__(
        self,
        store: "CorrelationStore",
        rotation_detector: MacRotationDetector | None = None,
        min_combined_score: float = MIN_COMBINED_SCORE,
    ) -> None:
        self.store = store
        self.rotation_detector = rotation_detector or MacRotationDetector()
        self.min_combined_score = min_combined_score

    def find_suspicious_shadows(
        self, min_location_count: int, whitelisted_ids: Collection[int] = ()
    ) -> list[ShadowResult]:
        """Shadow groups seen at ``min_location_count`` or more locations, best first.

        Raises:
            StoreUnavailable: If a shadow query fails.
        """
        keys = self.store.get_suspicious_shadow_keys(min_location_count)
        if not keys:
            logger.debug("No shadow keys at %d+ locations", min_location_count)
            return []

        total_locations = self.store.count_locations()
        if total_locations == 0:
            return []
        logger.debug("Analyzing %d shadow keys over %d locations", len(keys), total_locations)

        results = []
        for key in keys:
            result = self.analyze(key, total_locations, whitelisted_ids)
            if result is not None and result.combined_score >= self.min_combined_score:
                results.append(result)
        results.sort(key=lambda r: (-r.combined_score, r.shadow_key))
        return results

    def analyze(
        self, shadow_key: str, total_locations: int, whitelisted_ids: Collection[int] = ()
    ) -> ShadowResult | None:
        counts = self.store.get_shadow_location_device_counts(shadow_key)
        if not counts or total_locations <= 0:
            return None

        variance = statistics.pvariance([c.device_count for c in counts])
        coverage = min(1.0, len(counts) / total_locations)
        persistence = 1.0 / (1.0 + variance) * specificity(shadow_key) * coverage

        devices = [
            d
            for d in self.store.get_devices_by_shadow_key(shadow_key)
            if d.id not in whitelisted_ids
        ]
        if not devices:
            return None

        rotation = self.rotation_detector.detect(devices)
        combined = persistence * PERSISTENCE_WEIGHT + rotation.score * ROTATION_WEIGHT
        representative = max(
            devices,
            key=lambda d: (as_utc(d.last_seen), d.highest_rssi or _NO_RSSI, d.id or 0),
        )
        logger.debug(
            "Shadow %s: persistence=%.2f rotation=%.2f combined=%.2f locations=%d devices=%d",
            shadow_key,
            persistence,
            rotation.score,
            combined,
            len(counts),
            len(devices),
        )
        return ShadowResult(
            shadow_key=shadow_key,
            representative=representative,
            devices=devices,
            persistence_score=persistence,
            rotation=rotation,
            location_count=len(counts),
            combined_score=combined,
        )

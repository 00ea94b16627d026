"""Detection engine -- finds devices that keep turning up wherever the user goes."""

import logging
import statistics
import threading
import uuid
from collections.abc import Collection, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

from tagwatch.alerts.models import AlertLevel
from tagwatch.detection.scorer import ScoreBounds, ScoreWeights, ThreatScore, score
from tagwatch.detection.rotation import MacRotationDetector
from tagwatch.detection.shadow import ShadowAnalyzer, ShadowResult
from tagwatch.errors import DetectionCancelled, StoreUnavailable
from tagwatch.geo import pairwise_distances
from tagwatch.registry.models import Device, DeviceLink, LinkStrength, Location, Sighting
from tagwatch.registry.store import as_utc

if TYPE_CHECKING:
    from tagwatch.config import Settings
    from tagwatch.correlation import CorrelationStore

logger = logging.getLogger(__name__)

WEAK_LINK_DISCOUNT_FACTOR = 0.3


@dataclass
class DetectionResult:
    device: Device  # canonical device
    locations: list[Location]
    threat_score: float
    breakdown: ThreatScore
    max_distance: float  # meters
    avg_distance: float  # meters
    reason: str
    first_seen: datetime
    last_seen: datetime  # most recent sighting
    shadow_key: str | None = None  # set for shadow-profile detections
    detection_id: str = field(default_factory=lambda: uuid.uuid4().hex, compare=False)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC), compare=False)

    @property
    def threat_level(self) -> AlertLevel:
        return AlertLevel.from_score(self.threat_score)

    def time_span(self) -> timedelta:
        return self.last_seen - self.first_seen


@dataclass
class _Candidate:
    device: Device
    sightings: list[Sighting]
    locations: list[Location]
    links: list[DeviceLink]


def weak_link_discount(links: Collection[DeviceLink]) -> float:
    """Fraction of the score to remove for identity resting on weak links."""
    if not links:
        return 0.0
    weak = sum(1 for link in links if link.strength == LinkStrength.WEAK)
    return weak / len(links) * WEAK_LINK_DISCOUNT_FACTOR


def _format_span(span: timedelta) -> str:
    hours = int(span.total_seconds() // 3600)
    if hours < 1:
        return "the last hour"
    if hours < 24:
        return f"the last {hours} hour{'s' if hours != 1 else ''}"
    days = hours // 24
    return f"the last {days} day{'s' if days != 1 else ''}"


def build_detection_reason(
    device: Device, locations: Collection[Location], span: timedelta, threat_score: float
) -> str:
    count = len(locations)
    parts = [
        f"Device {device.name or device.mac_address} detected at {count} different "
        f"location{'s' if count != 1 else ''} over {_format_span(span)}."
    ]
    if device.find_my_separated and device.is_tracker:
        parts.append("WARNING: This tracker is SEPARATED from its owner!")
    elif device.find_my_separated:
        parts.append("Note: Device separated from owner.")
    parts.append(f"Threat level: {AlertLevel.from_score(threat_score)}.")
    return " ".join(parts)


class DetectionEngine:
    """Runs detection passes over the correlation store.

    Scoring works on data loaded up front, so it can fan out over a thread
    pool (``workers`` > 1). Results are sorted at the end, which makes the
    output order independent of evaluation order.
    """

    def __init__(
        self,
        store: "CorrelationStore",
        *,
        min_detection_distance_meters: float = 100.0,
        weights: ScoreWeights = ScoreWeights(),
        bounds: ScoreBounds | None = None,
        tracker_device_types: Collection[str] = ("TRACKER",),
        workers: int = 1,
        shadow_analyzer: ShadowAnalyzer | None = None,
    ) -> None:
        self.store = store
        self.min_detection_distance_meters = min_detection_distance_meters
        self.weights = weights
        self.bounds = bounds or ScoreBounds(distance_scale_meters=min_detection_distance_meters)
        self.tracker_device_types = tuple(tracker_device_types)
        self.workers = max(1, workers)
        self.shadow_analyzer = shadow_analyzer

    @classmethod
    def from_settings(cls, store: "CorrelationStore", settings: "Settings") -> "DetectionEngine":
        shadow_analyzer = None
        if settings.shadow_detection_enabled:
            shadow_analyzer = ShadowAnalyzer(
                store,
                MacRotationDetector(timedelta(seconds=settings.rotation_max_handoff_gap_seconds)),
                min_combined_score=settings.shadow_min_combined_score,
            )
        return cls(
            store,
            min_detection_distance_meters=settings.min_detection_distance_meters,
            weights=ScoreWeights.from_settings(settings),
            tracker_device_types=settings.tracker_device_types,
            workers=settings.detection_workers,
            shadow_analyzer=shadow_analyzer,
        )

    def run_detection(
        self,
        min_location_count: int,
        min_threat_score: float,
        *,
        cancel_event: threading.Event | None = None,
    ) -> list[DetectionResult]:
        """Score every non-whitelisted device seen at enough locations.

        With a shadow analyzer, shadow groups not already covered by a
        linked-device result are scored as well.

        Raises:
            StoreUnavailable: If the candidate or whitelist query fails.
            DetectionCancelled: If ``cancel_event`` is set during the pass.
        """
        candidates = self.store.get_devices_with_location_count_at_least(min_location_count)
        whitelisted = self.store.get_whitelisted_device_ids()
        logger.info(
            "Detection pass: %d candidates, %d whitelisted devices",
            len(candidates),
            len(whitelisted),
        )

        loaded: list[_Candidate] = []
        for device in candidates:
            _check_cancelled(cancel_event)
            if device.id in whitelisted:
                logger.debug("Skipping whitelisted device %s", device.mac_address)
                continue
            candidate = self._safe_load(device)
            if candidate is not None:
                loaded.append(candidate)

        results = self._evaluate_all(loaded, min_location_count, cancel_event)
        _check_cancelled(cancel_event)

        results = [r for r in results if r is not None and r.threat_score >= min_threat_score]
        if self.shadow_analyzer is not None:
            shadow_results = self._shadow_results(
                results, whitelisted, min_location_count, cancel_event
            )
            results.extend(r for r in shadow_results if r.threat_score >= min_threat_score)
        results.sort(key=_result_order)
        logger.info("Detection pass complete: %d results", len(results))
        return results

    def run_detection_for_device(
        self, device_id: int, min_location_count: int = 2
    ) -> DetectionResult | None:
        """Score a single device, ignoring the threat-score threshold.

        Returns None for unknown, whitelisted or insufficiently observed devices.
        """
        device = self.store.get_device(device_id)
        if device is None:
            return None
        if device.linked_device_id is not None:
            canonical = self.store.get_device(device.linked_device_id)
            if canonical is None:
                return None
            device = canonical
        if device.id in self.store.get_whitelisted_device_ids():
            return None

        candidate = self._safe_load(device)
        if candidate is None:
            return None
        return self._evaluate(candidate, min_location_count)

    def _evaluate_all(
        self,
        loaded: list[_Candidate],
        min_location_count: int,
        cancel_event: threading.Event | None,
    ) -> list[DetectionResult | None]:
        if self.workers == 1 or len(loaded) < 2:
            results = []
            for candidate in loaded:
                _check_cancelled(cancel_event)
                results.append(self._evaluate(candidate, min_location_count))
            return results

        with ThreadPoolExecutor(max_workers=self.workers) as pool:
            return list(pool.map(lambda c: self._evaluate(c, min_location_count), loaded))

    def _safe_load(self, device: Device, group: Sequence[Device] = ()) -> _Candidate | None:
        """Load a candidate's history; failures skip only this candidate.

        With ``group``, the histories of all its devices are merged under
        ``device``.
        """
        member_ids = [d.id for d in (group or [device]) if d.id is not None]
        if not member_ids:
            logger.warning("Skipping unsaved device %s", device.mac_address)
            return None

        sightings: list[Sighting] = []
        locations: dict[int | None, Location] = {}
        links: list[DeviceLink] = []
        try:
            for member_id in member_ids:
                sightings.extend(self.store.get_sightings_for_device(member_id))
                for location in self.store.get_locations_for_device(member_id):
                    locations.setdefault(location.id, location)
                links.extend(self.store.get_device_links(member_id))
        except Exception as exc:
            logger.exception("Failed to load history for device %s: %s", device.mac_address, exc)
            return None

        if len(member_ids) > 1:
            sightings.sort(key=lambda s: (as_utc(s.timestamp), s.id or 0))
        ordered = sorted(locations.values(), key=lambda loc: (as_utc(loc.timestamp), loc.id or 0))
        return _Candidate(
            device=device,
            sightings=sightings,
            locations=ordered,
            links=links,
        )

    def _shadow_results(
        self,
        detected: list[DetectionResult],
        whitelisted: set[int],
        min_location_count: int,
        cancel_event: threading.Event | None,
    ) -> list[DetectionResult]:
        """Score shadow groups whose devices have no linked-device result yet.

        Shadow queries failing only drops this path.
        """
        if self.shadow_analyzer is None:
            return []
        try:
            shadows = self.shadow_analyzer.find_suspicious_shadows(min_location_count, whitelisted)
        except StoreUnavailable as e:
            logger.warning("Shadow detection failed, keeping linked results only: %s", e)
            return []

        seen = {r.device.id for r in detected}
        results = []
        for shadow in shadows:
            _check_cancelled(cancel_event)
            if any(d.id in seen for d in shadow.devices):
                logger.debug("Shadow %s already covered by a linked result", shadow.shadow_key)
                continue
            candidate = self._safe_load(shadow.representative, shadow.devices)
            if candidate is None:
                continue
            result = self._evaluate(candidate, min_location_count, shadow)
            if result is not None:
                seen.update(d.id for d in shadow.devices)
                results.append(result)
        return results

    def _evaluate(
        self, candidate: _Candidate, min_location_count: int, shadow: ShadowResult | None = None
    ) -> DetectionResult | None:
        device = candidate.device
        locations = candidate.locations
        if len(locations) < min_location_count or not candidate.sightings:
            return None

        distances = pairwise_distances(locations)
        if not any(d >= self.min_detection_distance_meters for d in distances):
            logger.debug(
                "Device %s never moved %.0f m; skipping",
                device.mac_address,
                self.min_detection_distance_meters,
            )
            return None

        breakdown = score(
            candidate.sightings,
            locations,
            device,
            weights=self.weights,
            bounds=self.bounds,
            tracker_device_types=self.tracker_device_types,
        )
        discount = weak_link_discount(candidate.links)
        if discount > 0:
            breakdown = breakdown.with_discount(discount)
            logger.debug(
                "Weak link discount for %s: %d links, %.0f%%",
                device.mac_address,
                len(candidate.links),
                discount * 100,
            )
        if shadow is not None:
            breakdown = breakdown.blended_with_shadow(shadow.combined_score)

        threat_score = breakdown.total
        timestamps = [as_utc(s.timestamp) for s in candidate.sightings]
        first_seen, last_seen = min(timestamps), max(timestamps)
        reason = build_detection_reason(device, locations, last_seen - first_seen, threat_score)
        if shadow is not None:
            reason += (
                f" (Shadow detection: persistence={shadow.persistence_score:.2f}, "
                f"rotation={shadow.rotation.score:.2f})"
            )
            logger.info("Shadow detection for %s: %s", shadow.shadow_key, reason)
        return DetectionResult(
            device=device,
            locations=locations,
            threat_score=threat_score,
            breakdown=breakdown,
            max_distance=max(distances),
            avg_distance=statistics.fmean(distances),
            reason=reason,
            first_seen=first_seen,
            last_seen=last_seen,
            shadow_key=shadow.shadow_key if shadow is not None else None,
        )


def _check_cancelled(cancel_event: threading.Event | None) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise DetectionCancelled("Detection pass cancelled")


def _result_order(result: DetectionResult) -> tuple[float, float, int]:
    return (-result.threat_score, -result.last_seen.timestamp(), result.device.id or 0)

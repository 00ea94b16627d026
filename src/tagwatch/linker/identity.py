"""MAC-rotation linking.

Decides whether a newly observed MAC belongs to a device that is already
known under another address. Evidence, strongest first:

1. The MAC itself is already registered.
2. A recent device carries a matching payload fingerprint (STRONG).
3. Without a fingerprint, a device of the same maker and type disappeared
   shortly before, within travel reach, at a similar signal level (WEAK, or
   STRONG on a name match).
4. A recently vanished device shares the composite fingerprint, and no
   other device does (WEAK).

Anything else becomes a new canonical device.
"""

import logging
import threading
from collections.abc import Generator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from tagwatch.errors import AmbiguousLinkError, StoreUnavailable
from tagwatch.fingerprint.extractor import fingerprint_kind, fingerprints_match
from tagwatch.fingerprint.models import Fingerprint
from tagwatch.geo import location_distance
from tagwatch.registry.models import Device, DeviceLink, LinkStrength, Location
from tagwatch.registry.store import as_utc, is_locally_administered, normalize_mac

if TYPE_CHECKING:
    from tagwatch.config import Settings
    from tagwatch.correlation import CorrelationStore

logger = logging.getLogger(__name__)

# Temporal candidate scoring
_RSSI_POINTS_PER_DB = 1.5
_RECENCY_POINTS = 25.0
_NAME_MATCH_POINTS = 30.0
_MIN_TEMPORAL_SCORE = 20.0
_DEFAULT_CANDIDATE_RSSI = -70


@dataclass
class LinkDecision:
    """How a MAC was resolved.

    ``strength`` is None when no link was made: the MAC was already known
    (``created`` False) or a new canonical device was registered
    (``created`` True).
    """

    strength: LinkStrength | None = None
    reason: str | None = None
    created: bool = False
    linked_to: int | None = None

    @property
    def linked(self) -> bool:
        return self.strength is not None


@dataclass
class _Match:
    canonical: Device
    strength: LinkStrength
    reason: str


def normalize_device_name(name: str) -> str:
    return " ".join(name.casefold().split())


def _canonical_id(device: Device) -> int:
    canonical_id = device.canonical_id
    if canonical_id is None:
        raise StoreUnavailable(f"Device {device.mac_address} has no id")
    return canonical_id


class _MacLock:
    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.users = 0


class MacLocks:
    """One lock per MAC address, shareable between linker instances.

    A MAC's lock exists only while some caller holds or waits on it.
    """

    def __init__(self) -> None:
        self._locks: dict[str, _MacLock] = {}
        self._guard = threading.Lock()

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    @contextmanager
    def hold(self, mac: str) -> Generator[None, None, None]:
        with self._guard:
            entry = self._locks.get(mac)
            if entry is None:
                entry = self._locks[mac] = _MacLock()
            entry.users += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._guard:
                entry.users -= 1
                if entry.users == 0:
                    del self._locks[mac]


class IdentityLinker:
    def __init__(
        self,
        store: "CorrelationStore",
        *,
        rotation_window: timedelta = timedelta(minutes=30),
        find_my_stale: timedelta = timedelta(minutes=20),
        temporal_window: timedelta = timedelta(minutes=5),
        rssi_tolerance: int = 20,
        max_speed_mps: float = 42.0,
        locks: MacLocks | None = None,
    ) -> None:
        self.store = store
        self.rotation_window = rotation_window
        self.find_my_stale = find_my_stale
        self.temporal_window = temporal_window
        self.rssi_tolerance = rssi_tolerance
        self.max_speed_mps = max_speed_mps
        self._locks = locks or MacLocks()

    @classmethod
    def from_settings(
        cls, store: "CorrelationStore", settings: "Settings", locks: MacLocks | None = None
    ) -> "IdentityLinker":
        return cls(
            store,
            rotation_window=timedelta(seconds=settings.rotation_window_seconds),
            find_my_stale=timedelta(seconds=settings.find_my_stale_seconds),
            temporal_window=timedelta(seconds=settings.temporal_window_seconds),
            rssi_tolerance=settings.temporal_rssi_tolerance,
            max_speed_mps=settings.temporal_max_speed_mps,
            locks=locks,
        )

    def resolve(
        self,
        mac: str,
        fingerprint: Fingerprint | None,
        observed_at: datetime,
        last_known_device_by_mac: Mapping[str, Device] | None = None,
        *,
        rssi: int | None = None,
        manufacturer_id: int | None = None,
        device_type: str | None = None,
        name: str | None = None,
        location: Location | None = None,
        composite: Fingerprint | None = None,
    ) -> tuple[int, LinkDecision]:
        """Return ``(canonical_device_id, decision)`` for an observed MAC.

        Calls for the same MAC are serialized. Failed candidate searches
        fall back to registering a new device. ``location`` is the GPS fix
        of the observation; without it the travel-reach check is skipped.

        Raises:
            StoreUnavailable: If the device row itself cannot be read or written.
        """
        mac = normalize_mac(mac)
        observed_at = as_utc(observed_at)
        with self._locks.hold(mac):
            known = (last_known_device_by_mac or {}).get(mac)
            if known is None:
                known = self.store.get_device_by_mac(mac)
            if known is not None:
                return _canonical_id(known), LinkDecision()

            match = None
            try:
                if fingerprint is not None:
                    match = self._match_fingerprint(mac, fingerprint, observed_at)
                else:
                    if manufacturer_id is not None:
                        match = self._match_temporal(
                            mac, observed_at, manufacturer_id, device_type, rssi, name, location
                        )
                    if match is None and composite is not None:
                        match = self._match_composite(mac, composite, observed_at, location)
            except StoreUnavailable as e:
                logger.warning(
                    "Candidate search failed for %s, registering new device: %s", mac, e
                )
                match = None

            device = Device(
                mac_address=mac,
                first_seen=observed_at,
                last_seen=observed_at,
                manufacturer_id=manufacturer_id,
                device_type=device_type,
                advertised_name=name,
                payload_fingerprint=fingerprint.value if fingerprint else None,
                composite_fingerprint=composite.value if composite else None,
                is_randomized_mac=is_locally_administered(mac),
            )

            if match is None:
                saved = self.store.insert_or_update_device(device)
                if saved is not device:
                    logger.debug("Device %s was registered by another writer", mac)
                    return _canonical_id(saved), LinkDecision()
                logger.debug("Registered new device %s (id=%s)", mac, saved.id)
                return _canonical_id(saved), LinkDecision(created=True)

            link = DeviceLink(
                mac_address=mac,
                device_id=match.canonical.id,
                strength=match.strength,
                reason=match.reason,
                rotated_at=observed_at,
            )
            saved = self.store.insert_device_link(device, match.canonical, link)
            canonical_id = _canonical_id(saved)
            if saved is not device:
                logger.debug("Device %s was registered by another writer", mac)
                return canonical_id, LinkDecision()
            logger.info(
                "Linked %s to device %s (%s, %s)",
                mac,
                canonical_id,
                match.strength,
                match.reason,
            )
            return canonical_id, LinkDecision(
                strength=match.strength, reason=match.reason, linked_to=canonical_id
            )

    def _canonical(self, device: Device) -> Device:
        if device.linked_device_id is None:
            return device
        canonical = self.store.get_device(device.linked_device_id)
        return canonical if canonical is not None else device

    def _within_reach(self, candidate: Device, location: Location | None) -> bool:
        """Whether ``candidate`` could have travelled from its last sighting to ``location``."""
        if location is None or candidate.canonical_id is None:
            return True
        last = self.store.get_last_sighting_location(candidate.canonical_id)
        if last is None:
            return True
        elapsed = abs(as_utc(location.timestamp) - as_utc(last.timestamp)).total_seconds()
        reach = self.max_speed_mps * elapsed + last.accuracy + location.accuracy
        distance = location_distance(last, location)
        if distance > reach:
            logger.debug(
                "Candidate %s out of reach: %.0f m in %.0f s",
                candidate.mac_address,
                distance,
                elapsed,
            )
            return False
        return True

    def _match_fingerprint(
        self, mac: str, fingerprint: Fingerprint, observed_at: datetime
    ) -> _Match | None:
        candidates = [
            d
            for d in self.store.find_fingerprint_candidates(observed_at - self.rotation_window)
            if d.mac_address != mac
            and d.canonical_id is not None
            and fingerprints_match(fingerprint.value, d.payload_fingerprint)
        ]
        if not candidates:
            return None

        # Most recent sighting per canonical device
        latest: dict[int, datetime] = {}
        for candidate in candidates:
            canonical_id = _canonical_id(candidate)
            seen = as_utc(candidate.last_seen)
            if canonical_id not in latest or seen > latest[canonical_id]:
                latest[canonical_id] = seen

        winner_id = min(latest, key=lambda cid: (-latest[cid].timestamp(), cid))
        if len(latest) > 1:
            logger.warning(
                "%s; linking %s to most recent device %s",
                AmbiguousLinkError(fingerprint.value, sorted(latest)),
                mac,
                winner_id,
            )

        winner = next(d for d in candidates if d.canonical_id == winner_id)
        canonical = self._canonical(winner)

        age = observed_at - latest[winner_id]
        if fingerprint_kind(fingerprint.value) == "FM" and age > self.find_my_stale:
            return _Match(
                canonical, LinkStrength.WEAK, f"fingerprint_match:{fingerprint.value}:stale"
            )
        return _Match(canonical, LinkStrength.STRONG, f"fingerprint_match:{fingerprint.value}")

    def _match_temporal(
        self,
        mac: str,
        observed_at: datetime,
        manufacturer_id: int,
        device_type: str | None,
        rssi: int | None,
        name: str | None,
        location: Location | None = None,
    ) -> _Match | None:
        if rssi is None:
            return None
        candidates = self.store.find_disappeared_devices(
            observed_at, self.temporal_window, manufacturer_id, mac, device_type
        )

        window = self.temporal_window.total_seconds()
        wanted_name = normalize_device_name(name) if name and name.strip() else None
        scored: list[tuple[float, bool, Device]] = []
        for candidate in candidates:
            rssi_diff = abs((candidate.highest_rssi or _DEFAULT_CANDIDATE_RSSI) - rssi)
            if rssi_diff > self.rssi_tolerance:
                continue
            if not self._within_reach(candidate, location):
                continue
            score = (self.rssi_tolerance - rssi_diff) * _RSSI_POINTS_PER_DB

            gone_for = (observed_at - as_utc(candidate.last_seen)).total_seconds()
            score += max(0.0, (window - gone_for) / window * _RECENCY_POINTS)

            candidate_name = candidate.name or candidate.advertised_name
            name_match = bool(
                wanted_name
                and candidate_name
                and normalize_device_name(candidate_name) == wanted_name
            )
            if name_match:
                score += _NAME_MATCH_POINTS
            scored.append((score, name_match, candidate))

        if not scored:
            return None

        scored.sort(key=lambda item: item[0], reverse=True)
        best_score, name_match, best = scored[0]
        if best_score < _MIN_TEMPORAL_SCORE:
            return None
        if len(scored) > 1 and (not name_match or scored[1][0] == best_score):
            logger.debug("Temporal link for %s skipped: %d competing candidates", mac, len(scored))
            return None

        canonical = self._canonical(best)
        if name_match:
            best_name = best.name or best.advertised_name
            return _Match(canonical, LinkStrength.STRONG, f"name_match:{best_name}")
        return _Match(canonical, LinkStrength.WEAK, "temporal_proximity")

    def _match_composite(
        self,
        mac: str,
        composite: Fingerprint,
        observed_at: datetime,
        location: Location | None = None,
    ) -> _Match | None:
        candidates = [
            d
            for d in self.store.find_composite_candidates(
                composite.value, observed_at - self.rotation_window, mac
            )
            if as_utc(d.last_seen) < observed_at and self._within_reach(d, location)
        ]
        canonical_ids = {d.canonical_id for d in candidates}
        if len(canonical_ids) != 1:
            if canonical_ids:
                logger.debug(
                    "Composite link for %s skipped: %d candidate devices", mac, len(canonical_ids)
                )
            return None
        return _Match(
            self._canonical(candidates[0]),
            LinkStrength.WEAK,
            f"composite_match:{composite.value}",
        )

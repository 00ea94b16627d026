"""Advertisement ingestion pipeline."""

import logging
from dataclasses import dataclass

from tagwatch.correlation import CorrelationStore
from tagwatch.errors import StoreUnavailable
from tagwatch.fingerprint.extractor import fingerprint, manufacturer_name
from tagwatch.fingerprint.models import Fingerprint, RawAdvertisement
from tagwatch.fingerprint.profile import Profile, composite_fingerprint, shadow_key
from tagwatch.linker.identity import IdentityLinker, LinkDecision
from tagwatch.registry.models import Device, Location, ScanTrigger, Sighting, SignalStrength
from tagwatch.registry.store import as_utc, check_sighting_time, lookup_vendor, set_shadow_key

logger = logging.getLogger(__name__)


@dataclass
class IngestResult:
    device_id: int  # canonical device
    decision: LinkDecision
    sighting: Sighting
    fingerprint: Fingerprint | None = None
    composite: Fingerprint | None = None
    shadow_key: str | None = None


def apply_observation(
    device: Device,
    advertisement: RawAdvertisement,
    fp: Fingerprint | None,
    composite: Fingerprint | None = None,
    profile: Profile | None = None,
) -> None:
    """Fold one advertisement into a device row's attributes."""
    if as_utc(advertisement.timestamp) > as_utc(device.last_seen):
        device.last_seen = as_utc(advertisement.timestamp)
    device.detection_count += 1

    if device.highest_rssi is None or advertisement.rssi > device.highest_rssi:
        device.highest_rssi = advertisement.rssi
    device.signal_strength = SignalStrength.from_rssi(device.highest_rssi)

    if advertisement.name:
        device.advertised_name = advertisement.name
    if advertisement.manufacturer_id is not None:
        device.manufacturer_id = advertisement.manufacturer_id
        device.manufacturer_name = (
            manufacturer_name(advertisement.manufacturer_id) or device.manufacturer_name
        )

    if fp is not None:
        device.payload_fingerprint = fp.value
        device.find_my_separated = device.find_my_separated or fp.separated
        device.is_tracker = device.is_tracker or fp.is_tracker
        if fp.device_type:
            device.device_type = fp.device_type
        if fp.tracker_type:
            device.beacon_type = fp.tracker_type
    if composite is not None and device.payload_fingerprint is None:
        device.composite_fingerprint = composite.value
    if profile is not None:
        set_shadow_key(device, profile.value, profile.signals)


def ingest_advertisement(
    store: CorrelationStore,
    linker: IdentityLinker,
    advertisement: RawAdvertisement,
    location: Location,
    scan_trigger: ScanTrigger = ScanTrigger.PERIODIC,
) -> IngestResult:
    """Fingerprint, resolve and record one advertisement seen at ``location``.

    The sighting is recorded against the canonical device, so detection
    sees one history per physical unit regardless of MAC rotation.

    Raises:
        StoreUnavailable: If the store fails.
        ValueError: If the advertisement and GPS fix are too far apart in
            time. Nothing is written in that case.
    """
    check_sighting_time(advertisement.timestamp, location, store.correlation_window)

    fp = fingerprint(advertisement)
    device_type = fp.device_type if fp else None
    composite = composite_fingerprint(advertisement, device_type) if fp is None else None
    profile = shadow_key(advertisement, fp, device_type)
    canonical_id, decision = linker.resolve(
        advertisement.mac_address,
        fp,
        advertisement.timestamp,
        rssi=advertisement.rssi,
        manufacturer_id=advertisement.manufacturer_id,
        device_type=device_type,
        name=advertisement.name,
        location=location,
        composite=composite,
    )

    row = store.get_device_by_mac(advertisement.mac_address)
    canonical = store.get_device(canonical_id)
    if row is None or canonical is None:
        raise StoreUnavailable(f"Device {advertisement.mac_address} vanished during ingest")

    for device in {id(row): row, id(canonical): canonical}.values():
        apply_observation(device, advertisement, fp, composite, profile)
        if device.manufacturer_name is None and not device.is_randomized_mac:
            device.manufacturer_name = lookup_vendor(device.mac_address)
    canonical.current_mac = row.mac_address
    store.insert_or_update_device(row)
    if canonical is not row:
        store.insert_or_update_device(canonical)

    if location.id is None:
        location = store.add_location(location)
    sighting = store.record_sighting(
        canonical_id, location, advertisement.rssi, advertisement.timestamp, scan_trigger
    )
    logger.debug(
        "Ingested %s -> device %s at location %s (rssi=%d)",
        advertisement.mac_address,
        canonical_id,
        location.id,
        advertisement.rssi,
    )
    return IngestResult(
        device_id=canonical_id,
        decision=decision,
        sighting=sighting,
        fingerprint=fp,
        composite=composite,
        shadow_key=row.shadow_key,
    )

"""Device registry and sighting ledger queries."""

import logging
from collections.abc import Mapping
from datetime import UTC, datetime, timedelta
from typing import NamedTuple

from mac_vendor_lookup import MacLookup, VendorNotFoundError
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, func, select

from tagwatch.geo import location_distance
from tagwatch.registry.models import Device, DeviceLink, Location, ScanTrigger, Sighting

logger = logging.getLogger(__name__)

_mac_lookup = MacLookup()

# A sighting counts as a location change when it is this far from the
# previous sighting of the same device.
_LOCATION_CHANGE_METERS = 50.0


def normalize_mac(mac: str) -> str:
    """Normalize a MAC address to uppercase colon-separated format."""
    cleaned = mac.strip().upper().replace("-", ":").replace(".", "")
    # Handle bare hex (e.g. "AABBCCDDEEFF")
    if ":" not in cleaned and len(cleaned) == 12:
        cleaned = ":".join(cleaned[i : i + 2] for i in range(0, 12, 2))
    return cleaned


def is_locally_administered(mac: str) -> bool:
    """Check if a MAC is locally administered (randomized).

    Bit 1 of the first octet is the U/L bit. If set, the address
    is locally administered, which BLE uses for random addresses.
    """
    first_octet = int(normalize_mac(mac).split(":")[0], 16)
    return bool(first_octet & 0x02)


def lookup_vendor(mac: str) -> str | None:
    """Look up the device manufacturer from OUI database."""
    try:
        return _mac_lookup.lookup(normalize_mac(mac))
    except VendorNotFoundError:
        return None
    except Exception:
        logger.debug("Vendor lookup failed for %s", mac, exc_info=True)
        return None


def as_utc(value: datetime) -> datetime:
    """Aware UTC datetime. SQLite hands back naive values, which are UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def get_device(session: Session, device_id: int) -> Device | None:
    return session.get(Device, device_id)


def get_device_by_mac(session: Session, mac: str) -> Device | None:
    stmt = select(Device).where(Device.mac_address == normalize_mac(mac))
    return session.exec(stmt).first()


def save_device(session: Session, device: Device) -> Device:
    """Persist changes to an existing (or new) device row."""
    session.add(device)
    session.commit()
    session.refresh(device)
    return device


def insert_device(session: Session, device: Device) -> Device:
    """Insert a new device, or return the row that won a concurrent insert.

    The unique constraint on ``mac_address`` acts as the compare-and-swap:
    two writers racing on the same MAC end up with one row.
    """
    try:
        session.add(device)
        session.commit()
    except IntegrityError:
        session.rollback()
        existing = get_device_by_mac(session, device.mac_address)
        if existing is None:
            raise
        logger.debug("Device %s already inserted by another writer", device.mac_address)
        return existing
    session.refresh(device)
    return device


def link_device(
    session: Session,
    device: Device,
    canonical: Device,
    link: DeviceLink,
) -> Device:
    """Insert a rotated-MAC row and its link record in one transaction.

    Either both rows land or neither does.
    """
    device.linked_device_id = canonical.id
    canonical.current_mac = device.mac_address
    try:
        session.add(device)
        session.add(link)
        session.add(canonical)
        session.commit()
    except IntegrityError:
        session.rollback()
        existing = get_device_by_mac(session, device.mac_address)
        if existing is None:
            raise
        logger.debug("Device %s already linked by another writer", device.mac_address)
        return existing
    session.refresh(device)
    return device


def find_fingerprint_candidates(session: Session, since: datetime) -> list[Device]:
    """Devices with a fingerprint seen at or after ``since``, most recent first."""
    stmt = (
        select(Device)
        .where(col(Device.payload_fingerprint).is_not(None))
        .where(Device.last_seen >= as_utc(since))  # type: ignore[arg-type]
        .order_by(col(Device.last_seen).desc(), col(Device.id))
    )
    return list(session.exec(stmt).all())


def find_disappeared_devices(
    session: Session,
    observed_at: datetime,
    window: timedelta,
    manufacturer_id: int,
    exclude_mac: str,
    device_type: str | None = None,
    limit: int = 5,
) -> list[Device]:
    """Unfingerprinted devices of the same maker that went silent within ``window``."""
    stmt = (
        select(Device)
        .where(Device.manufacturer_id == manufacturer_id)
        .where(col(Device.payload_fingerprint).is_(None))
        .where(Device.mac_address != normalize_mac(exclude_mac))
        .where(Device.last_seen >= as_utc(observed_at - window))  # type: ignore[arg-type]
        .where(Device.last_seen < as_utc(observed_at))  # type: ignore[arg-type]
    )
    if device_type is not None:
        stmt = stmt.where(Device.device_type == device_type)
    stmt = stmt.order_by(col(Device.last_seen).desc(), col(Device.id)).limit(limit)
    return list(session.exec(stmt).all())


def find_composite_candidates(
    session: Session, composite: str, since: datetime, exclude_mac: str
) -> list[Device]:
    """Devices without a payload fingerprint that share ``composite``, most recent first."""
    stmt = (
        select(Device)
        .where(Device.composite_fingerprint == composite)
        .where(col(Device.payload_fingerprint).is_(None))
        .where(Device.mac_address != normalize_mac(exclude_mac))
        .where(Device.last_seen >= as_utc(since))  # type: ignore[arg-type]
        .order_by(col(Device.last_seen).desc(), col(Device.id))
    )
    return list(session.exec(stmt).all())


def get_linked_devices(session: Session, canonical_id: int) -> list[Device]:
    """Rotated-MAC rows that resolve to ``canonical_id`` (excluding the canonical row)."""
    stmt = (
        select(Device)
        .where(Device.linked_device_id == canonical_id)
        .order_by(col(Device.first_seen), col(Device.id))
    )
    return list(session.exec(stmt).all())


def get_device_links(session: Session, canonical_id: int) -> list[DeviceLink]:
    stmt = (
        select(DeviceLink)
        .where(DeviceLink.device_id == canonical_id)
        .order_by(col(DeviceLink.rotated_at), col(DeviceLink.id))
    )
    return list(session.exec(stmt).all())


def get_all_devices(session: Session, canonical_only: bool = True) -> list[Device]:
    """Get all devices, most recently seen first."""
    stmt = select(Device)
    if canonical_only:
        stmt = stmt.where(col(Device.linked_device_id).is_(None))
    stmt = stmt.order_by(col(Device.last_seen).desc())
    return list(session.exec(stmt).all())


def _device_ids(session: Session, canonical_id: int) -> list[int]:
    linked = session.exec(select(Device.id).where(Device.linked_device_id == canonical_id)).all()
    return [canonical_id, *(i for i in linked if i is not None)]


def add_location(session: Session, location: Location) -> Location:
    location.timestamp = as_utc(location.timestamp)
    session.add(location)
    session.commit()
    session.refresh(location)
    return location


def get_last_sighting(session: Session, device_id: int) -> Sighting | None:
    stmt = (
        select(Sighting)
        .where(Sighting.device_id == device_id)
        .order_by(col(Sighting.timestamp).desc(), col(Sighting.id).desc())
    )
    return session.exec(stmt).first()


def check_sighting_time(
    timestamp: datetime, location: Location, correlation_window: timedelta
) -> None:
    """Raise ValueError if ``timestamp`` is more than ``correlation_window`` from the fix."""
    skew = abs(as_utc(timestamp) - as_utc(location.timestamp))
    if skew > correlation_window:
        raise ValueError(
            f"Sighting at {timestamp.isoformat()} is {skew.total_seconds():.0f}s away "
            f"from the GPS fix at {location.timestamp.isoformat()}"
        )


def get_last_sighting_location(session: Session, device_id: int) -> Location | None:
    """Location of the most recent sighting of ``device_id``."""
    sighting = get_last_sighting(session, device_id)
    if sighting is None:
        return None
    return session.get(Location, sighting.location_id)


def record_sighting(
    session: Session,
    device_id: int,
    location: Location,
    rssi: int,
    timestamp: datetime,
    scan_trigger: ScanTrigger = ScanTrigger.PERIODIC,
    correlation_window: timedelta = timedelta(seconds=30),
) -> Sighting:
    """Append a sighting of ``device_id`` at ``location``.

    Raises:
        ValueError: If the sighting and the GPS fix are further apart in
            time than ``correlation_window``, or the location is unsaved.
    """
    if location.id is None:
        raise ValueError("Location must be saved before recording a sighting")
    check_sighting_time(timestamp, location, correlation_window)

    distance: float | None = None
    is_change = False
    previous = get_last_sighting(session, device_id)
    if previous is not None:
        previous_location = session.get(Location, previous.location_id)
        if previous_location is not None:
            distance = location_distance(previous_location, location)
            is_change = (
                previous.location_id != location.id and distance >= _LOCATION_CHANGE_METERS
            )

    sighting = Sighting(
        device_id=device_id,
        location_id=location.id,
        rssi=rssi,
        timestamp=as_utc(timestamp),
        is_location_change=is_change,
        distance_from_previous=distance,
        scan_trigger=scan_trigger,
    )
    session.add(sighting)
    session.commit()
    session.refresh(sighting)
    return sighting


def get_devices_with_location_count_at_least(session: Session, n: int) -> list[Device]:
    """Canonical devices seen at ``n`` or more distinct locations.

    Sightings of rotated MACs count toward their canonical device.
    """
    canonical = func.coalesce(Device.linked_device_id, Device.id)
    stmt = (
        select(canonical)
        .select_from(Sighting)
        .join(Device, Device.id == Sighting.device_id)  # type: ignore[arg-type]
        .group_by(canonical)
        .having(func.count(func.distinct(Sighting.location_id)) >= n)
    )
    ids = list(session.exec(stmt).all())
    if not ids:
        return []
    devices = select(Device).where(col(Device.id).in_(ids)).order_by(col(Device.id))
    return list(session.exec(devices).all())


def get_sightings_for_device(session: Session, canonical_id: int) -> list[Sighting]:
    """All sightings of a canonical device and its linked MACs, oldest first."""
    stmt = (
        select(Sighting)
        .where(col(Sighting.device_id).in_(_device_ids(session, canonical_id)))
        .order_by(col(Sighting.timestamp), col(Sighting.id))
    )
    return list(session.exec(stmt).all())


def get_locations_for_device(session: Session, canonical_id: int) -> list[Location]:
    """Distinct locations where a canonical device (or a linked MAC) was seen."""
    stmt = (
        select(Location)
        .join(Sighting, Sighting.location_id == Location.id)  # type: ignore[arg-type]
        .where(col(Sighting.device_id).in_(_device_ids(session, canonical_id)))
        .distinct()
        .order_by(col(Location.timestamp), col(Location.id))
    )
    return list(session.exec(stmt).all())



def record_threat_levels(session: Session, levels: Mapping[int, str]) -> None:
    """Store the outcome of a full detection pass on the device rows.

    Devices in ``levels`` get their level; devices flagged by an earlier
    pass but absent now are cleared.
    """
    flagged = session.exec(select(Device).where(col(Device.threat_level).is_not(None))).all()
    for device in flagged:
        if device.id not in levels:
            device.threat_level = None
            session.add(device)
    for device_id, level in levels.items():
        device = session.get(Device, device_id)
        if device is not None and device.threat_level != level:
            device.threat_level = level
            session.add(device)
    session.commit()


# Shadow profiles: coarse, MAC-agnostic device signatures. Groups are counted
# by canonical device.


class ShadowLocationCount(NamedTuple):
    location_id: int
    device_count: int  # distinct canonical devices with the shadow key
    max_rssi: int


def set_shadow_key(device: Device, key: str, signals: int) -> bool:
    """Adopt ``key`` unless the device already carries a more specific one."""
    if device.shadow_key is not None and signals <= device.shadow_signals:
        return False
    device.shadow_key = key
    device.shadow_signals = signals
    return True


def get_suspicious_shadow_keys(session: Session, min_location_count: int) -> list[str]:
    """Shadow keys shared by two or more canonical devices and seen at enough locations."""
    canonical = func.coalesce(Device.linked_device_id, Device.id)
    stmt = (
        select(Device.shadow_key)
        .select_from(Sighting)
        .join(Device, Device.id == Sighting.device_id)  # type: ignore[arg-type]
        .where(col(Device.shadow_key).is_not(None))
        .group_by(Device.shadow_key)
        .having(func.count(func.distinct(Sighting.location_id)) >= min_location_count)
        .having(func.count(func.distinct(canonical)) >= 2)
        .order_by(Device.shadow_key)
    )
    return [key for key in session.exec(stmt).all() if key is not None]


def get_devices_by_shadow_key(session: Session, shadow_key: str) -> list[Device]:
    """Canonical devices whose own row or a linked row carries ``shadow_key``, oldest first."""
    canonical = func.coalesce(Device.linked_device_id, Device.id)
    ids = list(
        session.exec(select(canonical).where(Device.shadow_key == shadow_key).distinct()).all()
    )
    if not ids:
        return []
    stmt = (
        select(Device)
        .where(col(Device.id).in_(ids))
        .order_by(col(Device.first_seen), col(Device.id))
    )
    return list(session.exec(stmt).all())


def get_shadow_location_device_counts(
    session: Session, shadow_key: str
) -> list[ShadowLocationCount]:
    canonical = func.coalesce(Device.linked_device_id, Device.id)
    stmt = (
        select(
            Sighting.location_id,
            func.count(func.distinct(canonical)),
            func.max(Sighting.rssi),
        )
        .join(Device, Device.id == Sighting.device_id)  # type: ignore[arg-type]
        .where(Device.shadow_key == shadow_key)
        .group_by(Sighting.location_id)
        .order_by(Sighting.location_id)
    )
    return [ShadowLocationCount(*row) for row in session.exec(stmt).all()]


def count_locations(session: Session) -> int:
    return session.exec(select(func.count()).select_from(Location)).one()

"""Whitelist CRUD.

Entries are keyed by canonical device id, so whitelisting any MAC of a
device also covers every MAC it rotates to later.
"""

import logging

from sqlmodel import Session, col, select

from tagwatch.registry.models import Device
from tagwatch.registry.store import get_device_by_mac, normalize_mac
from tagwatch.whitelist.models import WhitelistCategory, WhitelistEntry

logger = logging.getLogger(__name__)


def _canonical(session: Session, device: Device) -> Device:
    if device.linked_device_id is None:
        return device
    canonical = session.get(Device, device.linked_device_id)
    return canonical if canonical is not None else device


def add_entry(
    session: Session,
    mac_address: str,
    label: str,
    category: str = "OWN",
    notes: str | None = None,
    added_via_learn_mode: bool = False,
) -> WhitelistEntry:
    """Whitelist the device currently or previously known by ``mac_address``.

    Raises:
        ValueError: If no device has that MAC, or it is already whitelisted.
    """
    mac_address = normalize_mac(mac_address)
    device = get_device_by_mac(session, mac_address)
    if device is None:
        raise ValueError(f"Unknown device {mac_address}")

    canonical = _canonical(session, device)
    if canonical.id is None:
        raise ValueError(f"Device {mac_address} is not saved")
    existing = session.exec(
        select(WhitelistEntry).where(WhitelistEntry.device_id == canonical.id)
    ).first()
    if existing is not None:
        raise ValueError(f"Device {canonical.mac_address} is already whitelisted")

    entry = WhitelistEntry(
        device_id=canonical.id,
        mac_address=mac_address,
        label=label,
        category=WhitelistCategory(category),
        notes=notes,
        added_via_learn_mode=added_via_learn_mode,
    )
    session.add(entry)
    session.commit()
    session.refresh(entry)
    logger.info("Whitelisted %s as %r (%s)", mac_address, label, entry.category)
    return entry


def get_entry(session: Session, entry_id: int) -> WhitelistEntry | None:
    return session.get(WhitelistEntry, entry_id)


def list_entries(session: Session) -> list[WhitelistEntry]:
    stmt = select(WhitelistEntry).order_by(col(WhitelistEntry.created_at))
    return list(session.exec(stmt).all())


def remove_entry(session: Session, entry_id: int) -> bool:
    """Delete an entry. Return True if deleted, False if not found."""
    entry = session.get(WhitelistEntry, entry_id)
    if entry is None:
        return False

    session.delete(entry)
    session.commit()
    return True


def get_whitelisted_device_ids(session: Session) -> set[int]:
    """Canonical ids of every whitelisted device."""
    return set(session.exec(select(WhitelistEntry.device_id)).all())


def is_whitelisted(session: Session, device: Device) -> bool:
    canonical_id = device.canonical_id
    return canonical_id is not None and canonical_id in get_whitelisted_device_ids(session)

"""Payload fingerprint extraction.

Derives an identity signal from advertisement bytes that survives MAC
rotation. Only payloads with non-randomized content are fingerprinted:
Apple Find My and Proximity Pairing messages, and advertisements carrying a
known tracker service UUID. Everything else (iPhones broadcasting Nearby
Info, Handoff, AirDrop, generic beacons) yields ``None`` because its bytes
rotate together with the address.
"""

import logging

from tagwatch.errors import ParseError
from tagwatch.fingerprint.models import Fingerprint, RawAdvertisement

logger = logging.getLogger(__name__)

APPLE_COMPANY_ID = 0x004C
SAMSUNG_COMPANY_ID = 0x0075
TILE_COMPANY_ID = 0x0099
CHIPOLO_COMPANY_ID = 0x02E5
PEBBLEBEE_COMPANY_ID = 0x0636
CUBE_COMPANY_ID = 0x05B8

MANUFACTURER_NAMES: dict[int, str] = {
    APPLE_COMPANY_ID: "Apple",
    SAMSUNG_COMPANY_ID: "Samsung",
    0x00E0: "Google",
    0x0006: "Microsoft",
    0x012D: "Sony",
    TILE_COMPANY_ID: "Tile",
    CHIPOLO_COMPANY_ID: "Chipolo",
    PEBBLEBEE_COMPANY_ID: "Pebblebee",
    CUBE_COMPANY_ID: "Cube",
    0x0224: "Fitbit",
    0x0087: "Garmin",
    0x009E: "Bose",
}

# Apple Continuity message types (first payload byte)
CONTINUITY_AIRDROP = 0x05
CONTINUITY_PROXIMITY_PAIRING = 0x07
CONTINUITY_MAGIC_SWITCH = 0x0B
CONTINUITY_HANDOFF = 0x0C
CONTINUITY_NEARBY_INFO = 0x10
CONTINUITY_FIND_MY = 0x12

# Find My payload: type(1) + length(1) + status(1) + public key(22+)
FIND_MY_MIN_LENGTH = 3
FIND_MY_FINGERPRINT_START = 2
FIND_MY_FINGERPRINT_LENGTH = 6
FIND_MY_SEPARATED_MASK = 0x04

# Service-UUID fingerprints carry up to this many payload bytes
SERVICE_PAYLOAD_BYTES = 4

# Hex characters of the payload part compared when only the header bytes
# are stable (partial randomization).
STABLE_PREFIX_HEX = 4

# Short UUID -> (kind code, tracker type)
TRACKER_SERVICE_UUIDS: dict[str, tuple[str, str]] = {
    "FD5A": ("ST", "samsung_smarttag"),
    "FEED": ("TL", "tile"),
    "FE8C": ("CH", "chipolo"),
    "FE2C": ("GF", "google_find_my"),
    "FE8D": ("PB", "pebblebee"),
    "FE8E": ("CB", "cube"),
    "FE9F": ("EF", "eufy"),
    "FEA0": ("JT", "jiotag"),
    "FD6F": ("AF", "findmy_accessory"),
}

TRACKER_MANUFACTURERS: dict[int, tuple[str, str]] = {
    TILE_COMPANY_ID: ("TL", "tile"),
    CHIPOLO_COMPANY_ID: ("CH", "chipolo"),
    PEBBLEBEE_COMPANY_ID: ("PB", "pebblebee"),
    CUBE_COMPANY_ID: ("CB", "cube"),
}

# Kinds whose trailing payload bytes may be partially randomized
PARTIAL_KINDS = frozenset(code for code, _ in TRACKER_SERVICE_UUIDS.values())

_BLUETOOTH_BASE_SUFFIX = "-0000-1000-8000-00805F9B34FB"


def short_uuid(uuid: str) -> str:
    """Reduce a 128-bit Bluetooth base UUID to its 16-bit form (upper-case)."""
    normalized = uuid.strip().upper()
    if normalized.startswith("0000") and normalized.endswith(_BLUETOOTH_BASE_SUFFIX):
        return normalized[4:8]
    return normalized


def parse_find_my(payload: bytes) -> tuple[str, bool]:
    """Parse a Find My (0x12) continuity payload.

    Returns ``(fingerprint_hex, separated_from_owner)``.

    Raises:
        ParseError: If the payload is not a complete Find My header.
    """
    if not payload or payload[0] != CONTINUITY_FIND_MY:
        raise ParseError("not a Find My payload")
    if len(payload) < FIND_MY_MIN_LENGTH:
        raise ParseError(f"Find My payload too short: {len(payload)} bytes")

    status = payload[2]
    separated = bool(status & FIND_MY_SEPARATED_MASK)
    end = min(FIND_MY_FINGERPRINT_START + FIND_MY_FINGERPRINT_LENGTH, len(payload))
    return payload[FIND_MY_FINGERPRINT_START:end].hex().upper(), separated


def _apple_fingerprint(payload: bytes) -> Fingerprint | None:
    message_type = payload[0]

    if message_type == CONTINUITY_FIND_MY:
        fp_hex, separated = parse_find_my(payload)
        return Fingerprint(
            value=f"FM:{fp_hex}",
            kind="FM",
            device_type="TRACKER",
            tracker_type="airtag",
            is_tracker=True,
            separated=separated,
        )

    if message_type == CONTINUITY_PROXIMITY_PAIRING:
        if len(payload) < 4:
            raise ParseError(f"Proximity Pairing payload too short: {len(payload)} bytes")
        model_id = (payload[2] << 8) | payload[1]
        status = payload[4] if len(payload) >= 5 else 0
        color = payload[6] if len(payload) >= 7 else 0
        return Fingerprint(
            value=f"PP:{model_id:04X}{status & 0xF0:02X}{color:02X}",
            kind="PP",
            device_type="EARBUDS",
        )

    # Nearby Info, Magic Switch, Handoff, AirDrop and the rest carry an auth
    # tag that rotates together with the MAC.
    logger.debug("Apple continuity type 0x%02X is not fingerprintable", message_type)
    return None


def _service_fingerprint(advertisement: RawAdvertisement) -> Fingerprint | None:
    payload = advertisement.payload or b""
    payload_hex = payload[:SERVICE_PAYLOAD_BYTES].hex().upper()

    for uuid in advertisement.service_uuids:
        match = TRACKER_SERVICE_UUIDS.get(short_uuid(uuid))
        if match is None:
            continue
        code, tracker_type = match
        return Fingerprint(
            value=f"{code}:{short_uuid(uuid)}:{payload_hex}",
            kind=code,
            device_type="TRACKER",
            tracker_type=tracker_type,
            is_tracker=True,
        )

    manufacturer_id = advertisement.manufacturer_id
    if manufacturer_id in TRACKER_MANUFACTURERS:
        code, tracker_type = TRACKER_MANUFACTURERS[manufacturer_id]
        return Fingerprint(
            value=f"{code}:MFR:{payload_hex}",
            kind=code,
            device_type="TRACKER",
            tracker_type=tracker_type,
            is_tracker=True,
        )
    return None


def fingerprint(advertisement: RawAdvertisement) -> Fingerprint | None:
    """Extract the best available fingerprint, or None if nothing is stable.

    Pure function: byte-identical input always produces the same result.
    Malformed payloads never raise.
    """
    try:
        payload = advertisement.payload
        if advertisement.manufacturer_id == APPLE_COMPANY_ID and payload:
            apple = _apple_fingerprint(payload)
            if apple is not None:
                return apple
        return _service_fingerprint(advertisement)
    except ParseError as e:
        logger.debug("Unparseable payload from %s: %s", advertisement.mac_address, e)
        return None


def fingerprint_kind(value: str) -> str:
    """Return the ``KIND`` prefix of a stored fingerprint value."""
    return value.split(":", 1)[0]


def stable_prefix(value: str) -> str | None:
    """Header portion of a fingerprint that survives partial randomization.

    Only service-UUID fingerprints have one: ``KIND:UUID:`` plus the first
    ``STABLE_PREFIX_HEX`` payload hex characters. Returns None when the
    payload part is shorter than that.
    """
    parts = value.split(":")
    if len(parts) != 3 or parts[0] not in PARTIAL_KINDS:
        return None
    kind, uuid, payload_hex = parts
    if len(payload_hex) < STABLE_PREFIX_HEX:
        return None
    return f"{kind}:{uuid}:{payload_hex[:STABLE_PREFIX_HEX]}"


def fingerprints_match(a: str | None, b: str | None) -> bool:
    """Compare two fingerprint values with the partial-randomization tolerance.

    Exact equality always matches. Otherwise two service-UUID fingerprints
    of the same kind match when their stable prefixes agree.
    """
    if not a or not b:
        return False
    if a == b:
        return True
    prefix_a = stable_prefix(a)
    return prefix_a is not None and prefix_a == stable_prefix(b)


def manufacturer_name(manufacturer_id: int | None) -> str | None:
    if manufacturer_id is None:
        return None
    return MANUFACTURER_NAMES.get(manufacturer_id)

"""Coarse device profiles that do not depend on payload bytes.

Two derived values:

- composite fingerprints (``COMP:...``): a hash of semi-stable advertisement
  properties, used by the linker as a last resort when no payload
  fingerprint exists
- shadow keys: a readable profile such as ``M:004C|P:-7|T:PHONE`` shared by
  every device of the same make and kind, used by the shadow analyzer
"""

import hashlib
import logging
import re
from dataclasses import dataclass

from tagwatch.fingerprint.extractor import APPLE_COMPANY_ID, short_uuid
from tagwatch.fingerprint.models import Fingerprint, RawAdvertisement

logger = logging.getLogger(__name__)

COMPOSITE_KIND = "COMP"
COMPOSITE_MIN_SIGNALS = 3
COMPOSITE_MAX_CONFIDENCE = 0.75
COMPOSITE_HASH_LENGTH = 12

# Per-signal share of the composite confidence
COMPOSITE_WEIGHTS = {
    "M": 0.25,  # manufacturer id
    "T": 0.20,  # device type
    "A": 0.15,  # appearance
    "P": 0.15,  # tx power
    "U": 0.15,  # service UUIDs
    "N": 0.10,  # name pattern
}

SHADOW_MIN_COMPONENTS = 2
SHADOW_MAX_COMPONENTS = 8

_UNKNOWN_TYPES = frozenset({"", "UNKNOWN"})

_PARENTHETICAL = re.compile(r"\([^)]*\)")
_POSSESSIVE = re.compile(r"'S\b")
_SERIAL_NUMBER = re.compile(r"\b[0-9]{2,}\b")
_MAC_FRAGMENT = re.compile(r"\b[0-9A-F]{2}([:-][0-9A-F]{2})+\b")


def _short_hash(text: str, length: int = 8) -> str:
    return hashlib.sha256(text.encode()).hexdigest()[:length].upper()


def name_pattern(name: str) -> str:
    """Stable part of an advertised name.

    Owner names, serial numbers and MAC fragments are dropped, so
    "AirPods Pro (Anna's)" and "AirPods Pro" share a pattern.
    """
    pattern = name.upper()
    pattern = _PARENTHETICAL.sub("", pattern)
    pattern = _POSSESSIVE.sub("", pattern)
    pattern = _SERIAL_NUMBER.sub("", pattern)
    pattern = _MAC_FRAGMENT.sub("", pattern)
    return " ".join(pattern.split())[:20]


@dataclass(frozen=True)
class Profile:
    value: str
    signals: int


def composite_fingerprint(
    advertisement: RawAdvertisement, device_type: str | None = None
) -> Fingerprint | None:
    """Combine coarse advertisement properties into a ``COMP:`` fingerprint.

    Returns None with fewer than three usable signals. Confidence is the sum
    of the signal weights, capped at 0.75.
    """
    components: dict[str, str] = {}

    manufacturer_id = advertisement.manufacturer_id
    if manufacturer_id:
        components["M"] = f"M{manufacturer_id:04X}"
    if device_type and device_type.upper() not in _UNKNOWN_TYPES:
        components["T"] = f"T{device_type.upper()[:3]}"
    if advertisement.appearance:
        components["A"] = f"A{advertisement.appearance:04X}"
    if advertisement.tx_power is not None:
        components["P"] = f"P{max(0, min(100, advertisement.tx_power + 100)):02X}"
    if advertisement.service_uuids:
        uuids = "".join(sorted(uuid.strip().upper()[:8] for uuid in advertisement.service_uuids))
        components["U"] = f"U{_short_hash(uuids)}"
    if advertisement.name and advertisement.name.strip():
        pattern = name_pattern(advertisement.name)
        if pattern:
            components["N"] = f"N{_short_hash(pattern)}"

    if len(components) < COMPOSITE_MIN_SIGNALS:
        return None

    joined = ":".join(sorted(components.values()))
    value = f"{COMPOSITE_KIND}:{_short_hash(joined, COMPOSITE_HASH_LENGTH)}"
    confidence = min(COMPOSITE_MAX_CONFIDENCE, sum(COMPOSITE_WEIGHTS[k] for k in components))
    logger.debug(
        "Composite fingerprint %s from %d signals for %s",
        value,
        len(components),
        advertisement.mac_address,
    )
    return Fingerprint(
        value=value,
        kind=COMPOSITE_KIND,
        device_type=device_type,
        confidence=confidence,
    )


def shadow_key(
    advertisement: RawAdvertisement, fp: Fingerprint | None = None, device_type: str | None = None
) -> Profile | None:
    """Readable profile of the device kind behind an advertisement.

    Components are sorted, so the key does not depend on the order in which
    properties were observed. Fewer than two components give None.
    """
    if fp is not None and fp.kind != COMPOSITE_KIND:
        device_type = fp.device_type or device_type

    components = []
    manufacturer_id = advertisement.manufacturer_id
    if manufacturer_id:
        components.append(f"M:{manufacturer_id:04X}")
    if device_type and device_type.upper() not in _UNKNOWN_TYPES:
        components.append(f"T:{device_type.upper()}")
    payload = advertisement.payload
    if manufacturer_id == APPLE_COMPANY_ID and payload:
        components.append(f"C:{payload[0]:02X}")
    if fp is not None and fp.is_tracker:
        components.append("TR:1")
    if fp is not None and fp.separated:
        components.append("SEP:1")
    if fp is not None and fp.tracker_type:
        components.append(f"B:{fp.tracker_type.upper()}")
    if advertisement.tx_power is not None:
        components.append(f"P:{advertisement.tx_power}")
    if advertisement.service_uuids:
        components.append(f"U:{min(short_uuid(u) for u in advertisement.service_uuids)}")

    if len(components) < SHADOW_MIN_COMPONENTS:
        return None
    return Profile(value="|".join(sorted(components)), signals=len(components))


def specificity(key: str) -> float:
    """Share of the possible shadow components present in ``key``."""
    if not key:
        return 0.0
    return min(1.0, len(key.split("|")) / SHADOW_MAX_COMPONENTS)

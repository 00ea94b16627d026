"""Advertisement and fingerprint value types."""

from dataclasses import dataclass, field
from datetime import datetime


@dataclass
class RawAdvertisement:
    """A single parsed BLE advertisement handed over by the platform scanner."""

    mac_address: str
    rssi: int  # dBm (negative, e.g. -65)
    timestamp: datetime
    # Company id -> payload bytes following the 2-byte company id
    manufacturer_data: dict[int, bytes] = field(default_factory=dict)
    service_uuids: list[str] = field(default_factory=list)
    name: str | None = None
    tx_power: int | None = None  # dBm
    appearance: int | None = None  # GAP appearance value

    @property
    def manufacturer_id(self) -> int | None:
        """First advertised company id, if any."""
        return next(iter(self.manufacturer_data), None)

    @property
    def payload(self) -> bytes | None:
        manufacturer_id = self.manufacturer_id
        if manufacturer_id is None:
            return None
        return self.manufacturer_data[manufacturer_id]


@dataclass(frozen=True)
class Fingerprint:
    """Stable identity signal extracted from advertisement bytes.

    ``value`` has the form ``KIND:...`` (e.g. ``FM:1A2B3C4D5E6F`` for an Apple
    Find My payload, ``TL:FEED:0A1B2C3D`` for a Tile service advertisement),
    or ``COMP:...`` for a composite of coarse advertisement properties.
    """

    value: str
    kind: str
    device_type: str | None = None
    tracker_type: str | None = None
    is_tracker: bool = False
    separated: bool = False
    confidence: float = 1.0

    def __str__(self) -> str:
        return self.value

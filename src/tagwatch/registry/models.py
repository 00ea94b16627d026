"""Device, link, location and sighting models."""

import enum
from datetime import UTC, datetime

from sqlmodel import Field, SQLModel


class LinkStrength(enum.StrEnum):
    STRONG = "STRONG"  # fingerprint or name match
    WEAK = "WEAK"  # temporal/RSSI heuristic only


class ScanTrigger(enum.StrEnum):
    MANUAL = "MANUAL"
    PERIODIC = "PERIODIC"
    CONTINUOUS = "CONTINUOUS"


class SignalStrength(enum.StrEnum):
    """Five-level proximity class derived from RSSI."""

    VERY_WEAK = "VERY_WEAK"  # < -80 dBm, 10 m+
    WEAK = "WEAK"  # -80..-65 dBm, 5-10 m
    MEDIUM = "MEDIUM"  # -65..-50 dBm, 2-5 m
    STRONG = "STRONG"  # -50..-35 dBm, 1-2 m
    VERY_STRONG = "VERY_STRONG"  # >= -35 dBm, < 1 m

    @classmethod
    def from_rssi(cls, rssi: int) -> "SignalStrength":
        if rssi >= -35:
            return cls.VERY_STRONG
        if rssi >= -50:
            return cls.STRONG
        if rssi >= -65:
            return cls.MEDIUM
        if rssi >= -80:
            return cls.WEAK
        return cls.VERY_WEAK


class Device(SQLModel, table=True):
    """One observed MAC address.

    A row with ``linked_device_id`` unset is a canonical device; rows for
    rotated MACs point at their canonical device.
    """

    id: int | None = Field(default=None, primary_key=True)
    mac_address: str = Field(unique=True, index=True)
    current_mac: str | None = None  # latest MAC seen for a canonical device
    name: str | None = None
    advertised_name: str | None = None
    first_seen: datetime = Field(default_factory=lambda: datetime.now(UTC))
    last_seen: datetime = Field(default_factory=lambda: datetime.now(UTC))
    detection_count: int = 0
    manufacturer_id: int | None = None
    manufacturer_name: str | None = None
    device_type: str | None = None
    device_model: str | None = None
    is_tracker: bool = False
    payload_fingerprint: str | None = Field(default=None, index=True)
    composite_fingerprint: str | None = Field(default=None, index=True)
    # Composite profile shared by look-alike devices; see detection.shadow
    shadow_key: str | None = Field(default=None, index=True)
    shadow_signals: int = 0
    find_my_separated: bool = False
    highest_rssi: int | None = None
    signal_strength: SignalStrength | None = None
    beacon_type: str | None = None
    threat_level: str | None = None
    is_randomized_mac: bool = False
    linked_device_id: int | None = Field(default=None, foreign_key="device.id", index=True)

    @property
    def canonical_id(self) -> int | None:
        return self.linked_device_id if self.linked_device_id is not None else self.id

    @property
    def display_name(self) -> str:
        return self.name or self.advertised_name or self.mac_address


class DeviceLink(SQLModel, table=True):
    """Append-only record of a MAC address being linked to a canonical device."""

    id: int | None = Field(default=None, primary_key=True)
    mac_address: str = Field(index=True)
    device_id: int = Field(foreign_key="device.id", index=True)
    strength: LinkStrength
    reason: str
    rotated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class Location(SQLModel, table=True):
    """A GPS fix. Never updated after insert."""

    id: int | None = Field(default=None, primary_key=True)
    latitude: float
    longitude: float
    accuracy: float  # meters
    altitude: float | None = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    provider: str = "gps"


class Sighting(SQLModel, table=True):
    """One device observed at one location during a scan cycle."""

    id: int | None = Field(default=None, primary_key=True)
    device_id: int = Field(foreign_key="device.id", index=True)
    location_id: int = Field(foreign_key="location.id", index=True)
    rssi: int
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    is_location_change: bool = False
    distance_from_previous: float | None = None  # meters; None for the first sighting
    scan_trigger: ScanTrigger = ScanTrigger.PERIODIC

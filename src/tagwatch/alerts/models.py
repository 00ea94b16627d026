"""Alert models."""

import enum
import json
import logging
from datetime import UTC, datetime

from sqlmodel import Field, SQLModel

logger = logging.getLogger(__name__)


class AlertLevel(enum.StrEnum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"

    @classmethod
    def from_score(cls, threat_score: float) -> "AlertLevel":
        if threat_score >= 0.9:
            return cls.CRITICAL
        if threat_score >= 0.7:
            return cls.HIGH
        if threat_score >= 0.6:
            return cls.MEDIUM
        return cls.LOW


def _decode_list(raw: str | None, column: str) -> list:
    """Decode a JSON list column. Malformed or non-list content yields []."""
    if not raw:
        return []
    try:
        value = json.loads(raw)
    except ValueError:
        logger.warning("Malformed %s column: %r", column, raw)
        return []
    if not isinstance(value, list):
        logger.warning("Expected a JSON list in %s, got %s", column, type(value).__name__)
        return []
    return value


class Alert(SQLModel, table=True):
    """A persisted tracking alert. Only dismissal mutates a row."""

    id: int | None = Field(default=None, primary_key=True)
    level: AlertLevel
    title: str
    message: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    device_addresses: str = "[]"  # JSON list of MAC addresses
    location_ids: str = "[]"  # JSON list of location ids
    threat_score: float
    detection_details: str | None = None  # JSON score breakdown
    is_dismissed: bool = False
    dismissed_at: datetime | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC), index=True)

    def get_device_addresses(self) -> list[str]:
        return [str(a) for a in _decode_list(self.device_addresses, "device_addresses")]

    def get_location_ids(self) -> list[int]:
        ids = []
        for value in _decode_list(self.location_ids, "location_ids"):
            if isinstance(value, int) and not isinstance(value, bool):
                ids.append(value)
            else:
                logger.warning("Ignoring non-integer location id %r", value)
                return []
        return ids

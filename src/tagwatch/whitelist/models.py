"""Whitelist models."""

import enum
from datetime import UTC, datetime

from sqlmodel import Field, SQLModel


class WhitelistCategory(enum.StrEnum):
    OWN = "OWN"
    PARTNER = "PARTNER"
    TRUSTED = "TRUSTED"


class WhitelistEntry(SQLModel, table=True):
    """A known device that detection must never flag."""

    id: int | None = Field(default=None, primary_key=True)
    device_id: int = Field(foreign_key="device.id", unique=True, index=True)  # canonical device
    mac_address: str  # MAC as entered by the user
    label: str
    category: WhitelistCategory = WhitelistCategory.OWN
    added_via_learn_mode: bool = False
    notes: str | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

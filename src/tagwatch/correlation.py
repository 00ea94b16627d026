"""Store boundary used by the linker, detection engine and alert generator.

Wraps the registry, whitelist and alert queries behind one object bound to
a session, and turns database failures into ``StoreUnavailable``.
"""

import logging
from collections.abc import Generator, Iterable, Mapping
from contextlib import contextmanager
from datetime import datetime, timedelta

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session

from tagwatch.alerts import manager as alerts
from tagwatch.alerts.models import Alert
from tagwatch.errors import StoreUnavailable
from tagwatch.registry import store as registry
from tagwatch.registry.models import Device, DeviceLink, Location, ScanTrigger, Sighting
from tagwatch.whitelist import manager as whitelist

logger = logging.getLogger(__name__)


class CorrelationStore:
    def __init__(self, session: Session, correlation_window: timedelta = timedelta(seconds=30)):
        self.session = session
        self.correlation_window = correlation_window

    @contextmanager
    def _guard(self, operation: str) -> Generator[None, None, None]:
        try:
            yield
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error("Store operation %s failed: %s", operation, e)
            raise StoreUnavailable(f"{operation} failed: {e}") from e

    # Devices

    def get_device(self, device_id: int) -> Device | None:
        with self._guard("get_device"):
            return registry.get_device(self.session, device_id)

    def get_device_by_mac(self, mac: str) -> Device | None:
        with self._guard("get_device_by_mac"):
            return registry.get_device_by_mac(self.session, mac)

    def insert_or_update_device(self, device: Device) -> Device:
        """Insert a new device row (losing a MAC race returns the winner) or save changes."""
        with self._guard("insert_or_update_device"):
            if device.id is None:
                return registry.insert_device(self.session, device)
            return registry.save_device(self.session, device)

    def insert_device_link(self, device: Device, canonical: Device, link: DeviceLink) -> Device:
        """Atomically insert a rotated-MAC row with its link record."""
        with self._guard("insert_device_link"):
            return registry.link_device(self.session, device, canonical, link)

    def find_fingerprint_candidates(self, since: datetime) -> list[Device]:
        with self._guard("find_fingerprint_candidates"):
            return registry.find_fingerprint_candidates(self.session, since)

    def find_disappeared_devices(
        self,
        observed_at: datetime,
        window: timedelta,
        manufacturer_id: int,
        exclude_mac: str,
        device_type: str | None = None,
    ) -> list[Device]:
        with self._guard("find_disappeared_devices"):
            return registry.find_disappeared_devices(
                self.session, observed_at, window, manufacturer_id, exclude_mac, device_type
            )

    def find_composite_candidates(
        self, composite: str, since: datetime, exclude_mac: str
    ) -> list[Device]:
        with self._guard("find_composite_candidates"):
            return registry.find_composite_candidates(self.session, composite, since, exclude_mac)

    def get_linked_devices(self, canonical_id: int) -> list[Device]:
        with self._guard("get_linked_devices"):
            return registry.get_linked_devices(self.session, canonical_id)

    def get_device_links(self, canonical_id: int) -> list[DeviceLink]:
        with self._guard("get_device_links"):
            return registry.get_device_links(self.session, canonical_id)

    # Sightings

    def add_location(self, location: Location) -> Location:
        with self._guard("add_location"):
            return registry.add_location(self.session, location)

    def record_sighting(
        self,
        device_id: int,
        location: Location,
        rssi: int,
        timestamp: datetime,
        scan_trigger: ScanTrigger = ScanTrigger.PERIODIC,
    ) -> Sighting:
        with self._guard("record_sighting"):
            return registry.record_sighting(
                self.session,
                device_id,
                location,
                rssi,
                timestamp,
                scan_trigger,
                self.correlation_window,
            )

    def get_last_sighting_location(self, device_id: int) -> Location | None:
        with self._guard("get_last_sighting_location"):
            return registry.get_last_sighting_location(self.session, device_id)

    def get_devices_with_location_count_at_least(self, n: int) -> list[Device]:
        with self._guard("get_devices_with_location_count_at_least"):
            return registry.get_devices_with_location_count_at_least(self.session, n)

    def get_sightings_for_device(self, device_id: int) -> list[Sighting]:
        with self._guard("get_sightings_for_device"):
            return registry.get_sightings_for_device(self.session, device_id)

    def get_locations_for_device(self, device_id: int) -> list[Location]:
        with self._guard("get_locations_for_device"):
            return registry.get_locations_for_device(self.session, device_id)

    def record_threat_levels(self, levels: Mapping[int, str]) -> None:
        with self._guard("record_threat_levels"):
            registry.record_threat_levels(self.session, levels)

    # Shadow profiles

    def get_suspicious_shadow_keys(self, min_location_count: int) -> list[str]:
        with self._guard("get_suspicious_shadow_keys"):
            return registry.get_suspicious_shadow_keys(self.session, min_location_count)

    def get_devices_by_shadow_key(self, shadow_key: str) -> list[Device]:
        with self._guard("get_devices_by_shadow_key"):
            return registry.get_devices_by_shadow_key(self.session, shadow_key)

    def get_shadow_location_device_counts(
        self, shadow_key: str
    ) -> list[registry.ShadowLocationCount]:
        with self._guard("get_shadow_location_device_counts"):
            return registry.get_shadow_location_device_counts(self.session, shadow_key)

    def count_locations(self) -> int:
        with self._guard("count_locations"):
            return registry.count_locations(self.session)

    # Whitelist

    def get_whitelisted_device_ids(self) -> set[int]:
        with self._guard("get_whitelisted_device_ids"):
            return whitelist.get_whitelisted_device_ids(self.session)

    # Alerts

    def has_similar_recent_alert(self, addresses: Iterable[str], window: timedelta) -> bool:
        with self._guard("has_similar_recent_alert"):
            return alerts.has_similar_recent_alert(self.session, addresses, window)

    def insert_alert(self, alert: Alert) -> Alert:
        with self._guard("insert_alert"):
            return alerts.insert_alert(self.session, alert)

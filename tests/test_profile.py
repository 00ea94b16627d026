"""Tests for composite fingerprints and shadow keys."""

from datetime import UTC, datetime

from tagwatch.fingerprint.extractor import APPLE_COMPANY_ID, fingerprint
from tagwatch.fingerprint.models import RawAdvertisement
from tagwatch.fingerprint.profile import (
    COMPOSITE_MAX_CONFIDENCE,
    SHADOW_MAX_COMPONENTS,
    composite_fingerprint,
    name_pattern,
    shadow_key,
    specificity,
)

NOW = datetime(2026, 3, 1, 8, 0, tzinfo=UTC)

FIND_MY = bytes.fromhex("1219" "04" "A1B2C3D4E5" "F60718293A4B5C")
NEARBY_INFO = bytes.fromhex("1005" "0B1C" "A1B2C3")


def _adv(mac="F1:22:33:44:55:66", **kwargs) -> RawAdvertisement:
    return RawAdvertisement(mac_address=mac, rssi=-60, timestamp=NOW, **kwargs)


class TestNamePattern:
    def test_drops_owner_and_serials(self):
        assert name_pattern("AirPods Pro (Anna's)") == "AIRPODS PRO"
        assert name_pattern("Anna's AirPods") == "ANNA AIRPODS"
        assert name_pattern("Tracker 1234") == "TRACKER"

    def test_drops_mac_fragments(self):
        assert name_pattern("Beacon AA:BB:CC") == "BEACON"

    def test_truncates(self):
        assert len(name_pattern("A very long device name indeed")) == 20


class TestCompositeFingerprint:
    def test_needs_three_signals(self):
        assert composite_fingerprint(_adv(tx_power=-8, name="Keyfinder")) is None

        fp = composite_fingerprint(_adv(tx_power=-8, name="Keyfinder", appearance=0x0200))
        assert fp is not None
        assert fp.kind == "COMP"
        assert fp.value.startswith("COMP:")
        assert len(fp.value) == len("COMP:") + 12

    def test_ignores_mac_and_rssi(self):
        a = composite_fingerprint(
            _adv("C4:00:00:00:00:01", tx_power=-8, appearance=0x0200, name="Tag")
        )
        b = composite_fingerprint(
            RawAdvertisement(
                mac_address="C4:00:00:00:00:02",
                rssi=-85,
                timestamp=NOW,
                tx_power=-8,
                appearance=0x0200,
                name="Tag",
            )
        )
        assert a is not None and b is not None
        assert a.value == b.value

    def test_owner_name_does_not_change_value(self):
        base = {"tx_power": -8, "appearance": 0x0200, "manufacturer_data": {0x0006: b"\x01"}}
        a = composite_fingerprint(_adv(name="Surface Pen", **base))
        b = composite_fingerprint(_adv(name="Surface Pen (Work)", **base))
        assert a is not None and b is not None
        assert a.value == b.value

    def test_uuid_order_does_not_matter(self):
        uuids = ["0000180F-0000-1000-8000-00805F9B34FB", "0000180A-0000-1000-8000-00805F9B34FB"]
        a = composite_fingerprint(_adv(service_uuids=uuids, tx_power=-4, appearance=0x00C0))
        b = composite_fingerprint(_adv(service_uuids=uuids[::-1], tx_power=-4, appearance=0x00C0))
        assert a is not None and b is not None
        assert a.value == b.value

    def test_zero_values_are_not_signals(self):
        fp = composite_fingerprint(
            _adv(manufacturer_data={0: b"\x01"}, appearance=0, tx_power=-8, name="Tag")
        )
        assert fp is None

    def test_confidence_capped(self):
        fp = composite_fingerprint(
            _adv(
                manufacturer_data={0x0006: b"\x01"},
                service_uuids=["0000180F-0000-1000-8000-00805F9B34FB"],
                tx_power=-8,
                appearance=0x0200,
                name="Tag",
            ),
            device_type="PHONE",
        )
        assert fp is not None
        assert fp.confidence == COMPOSITE_MAX_CONFIDENCE

    def test_confidence_sums_weights(self):
        fp = composite_fingerprint(_adv(tx_power=-8, appearance=0x0200, name="Tag"))
        assert fp is not None
        assert abs(fp.confidence - 0.40) < 1e-9


class TestShadowKey:
    def test_airtag(self):
        adv = _adv(manufacturer_data={APPLE_COMPANY_ID: FIND_MY}, tx_power=-7)
        profile = shadow_key(adv, fingerprint(adv))
        assert profile is not None
        assert profile.value == "B:AIRTAG|C:12|M:004C|P:-7|SEP:1|T:TRACKER|TR:1"
        assert profile.signals == 7

    def test_same_kind_shares_key_across_macs(self):
        a = _adv("F1:00:00:00:00:01", manufacturer_data={APPLE_COMPANY_ID: NEARBY_INFO})
        b = _adv("F1:00:00:00:00:02", manufacturer_data={APPLE_COMPANY_ID: NEARBY_INFO[:3]})
        assert shadow_key(a) == shadow_key(b)
        assert shadow_key(a).value == "C:10|M:004C"

    def test_needs_two_components(self):
        assert shadow_key(_adv(manufacturer_data={0x0006: b"\x01"})) is None

    def test_unknown_type_excluded(self):
        profile = shadow_key(_adv(manufacturer_data={0x0006: b"\x01"}), device_type="UNKNOWN")
        assert profile is None

    def test_device_type_argument(self):
        profile = shadow_key(_adv(manufacturer_data={0x0006: b"\x01"}), device_type="phone")
        assert profile is not None
        assert profile.value == "M:0006|T:PHONE"

    def test_service_uuid_component(self):
        profile = shadow_key(
            _adv(service_uuids=["0000FD5A-0000-1000-8000-00805F9B34FB"], tx_power=-4)
        )
        assert profile is not None
        assert profile.value == "P:-4|U:FD5A"

    def test_specificity(self):
        assert specificity("M:004C|T:PHONE") == 2 / SHADOW_MAX_COMPONENTS
        assert specificity("B:FIND_MY|C:12|M:004C|T:TRACKER|TR:1") == 5 / SHADOW_MAX_COMPONENTS
        assert specificity("") == 0.0

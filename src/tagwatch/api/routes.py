"""REST API endpoints."""

from datetime import UTC, datetime, timedelta
from typing import Any

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field, field_validator
from sqlmodel import Session

from tagwatch.alerts.manager import (
    AlertGenerator,
    dismiss_alert,
    get_active_alert_count,
    list_alerts,
)
from tagwatch.alerts.models import Alert, AlertLevel
from tagwatch.config import settings
from tagwatch.correlation import CorrelationStore
from tagwatch.database import get_session
from tagwatch.detection.engine import DetectionEngine, DetectionResult
from tagwatch.errors import StoreUnavailable
from tagwatch.fingerprint.models import RawAdvertisement
from tagwatch.linker.identity import IdentityLinker, MacLocks
from tagwatch.linker.ingest import ingest_advertisement
from tagwatch.registry.models import Device, Location, ScanTrigger
from tagwatch.registry.store import (
    get_all_devices,
    get_device,
    get_device_links,
    get_linked_devices,
    get_locations_for_device,
    get_sightings_for_device,
)
from tagwatch.whitelist.manager import add_entry, list_entries, remove_entry
from tagwatch.whitelist.models import WhitelistCategory, WhitelistEntry

router = APIRouter(prefix="/api")

# Shared across requests so concurrent scans of one MAC are serialized
_mac_locks = MacLocks()


def get_store(session: Session = Depends(get_session)) -> CorrelationStore:
    return CorrelationStore(
        session, correlation_window=timedelta(seconds=settings.correlation_window_seconds)
    )


# Request models
class AdvertisementIn(BaseModel):
    mac_address: str
    rssi: int = Field(le=0)
    timestamp: datetime | None = None
    # Company id -> payload hex
    manufacturer_data: dict[int, str] = {}
    service_uuids: list[str] = []
    name: str | None = None
    tx_power: int | None = Field(default=None, ge=-127, le=126)
    appearance: int | None = Field(default=None, ge=0, le=0xFFFF)

    @field_validator("manufacturer_data")
    @classmethod
    def check_hex(cls, v: dict[int, str]) -> dict[int, str]:
        for company_id, payload in v.items():
            try:
                bytes.fromhex(payload)
            except ValueError:
                raise ValueError(f"Payload for company 0x{company_id:04X} is not hex")
        return v


class LocationIn(BaseModel):
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)
    accuracy: float = Field(ge=0)
    altitude: float | None = None
    timestamp: datetime | None = None
    provider: str = "gps"


class ScanRequest(BaseModel):
    advertisement: AdvertisementIn
    location: LocationIn
    scan_trigger: ScanTrigger = ScanTrigger.PERIODIC


class DetectionRunRequest(BaseModel):
    min_location_count: int | None = Field(default=None, ge=2, le=10)
    min_threat_score: float | None = Field(default=None, ge=0.0, le=1.0)
    generate_alerts: bool = True


class CreateWhitelistEntryRequest(BaseModel):
    mac_address: str
    label: str
    category: WhitelistCategory = WhitelistCategory.OWN
    notes: str | None = None
    added_via_learn_mode: bool = False


def _detection_summary(result: DetectionResult) -> dict[str, Any]:
    return {
        "detection_id": result.detection_id,
        "device_id": result.device.id,
        "mac_address": result.device.mac_address,
        "name": result.device.display_name,
        "threat_score": result.threat_score,
        "threat_level": result.threat_level.value,
        "breakdown": result.breakdown.as_dict(),
        "location_count": len(result.locations),
        "max_distance": result.max_distance,
        "avg_distance": result.avg_distance,
        "last_seen": result.last_seen.isoformat(),
        "reason": result.reason,
        "shadow_key": result.shadow_key,
    }


# --- Ingestion ---


@router.post("/scans", status_code=201)
def ingest_scan(
    request: ScanRequest,
    store: CorrelationStore = Depends(get_store),
) -> dict[str, int | str | bool | None]:
    now = datetime.now(UTC)
    adv = request.advertisement
    advertisement = RawAdvertisement(
        mac_address=adv.mac_address,
        rssi=adv.rssi,
        timestamp=adv.timestamp or now,
        manufacturer_data={k: bytes.fromhex(v) for k, v in adv.manufacturer_data.items()},
        service_uuids=adv.service_uuids,
        name=adv.name,
        tx_power=adv.tx_power,
        appearance=adv.appearance,
    )
    loc = request.location
    location = Location(
        latitude=loc.latitude,
        longitude=loc.longitude,
        accuracy=loc.accuracy,
        altitude=loc.altitude,
        timestamp=loc.timestamp or advertisement.timestamp,
        provider=loc.provider,
    )
    linker = IdentityLinker.from_settings(store, settings, locks=_mac_locks)
    try:
        result = ingest_advertisement(store, linker, advertisement, location, request.scan_trigger)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except StoreUnavailable as e:
        raise HTTPException(status_code=503, detail=str(e))

    return {
        "device_id": result.device_id,
        "sighting_id": result.sighting.id,
        "fingerprint": str(result.fingerprint) if result.fingerprint else None,
        "composite_fingerprint": str(result.composite) if result.composite else None,
        "shadow_key": result.shadow_key,
        "link_strength": result.decision.strength.value if result.decision.strength else None,
        "link_reason": result.decision.reason,
        "created": result.decision.created,
    }


# --- Devices ---


@router.get("/devices")
def list_devices(
    include_linked: bool = False,
    session: Session = Depends(get_session),
) -> list[Device]:
    return get_all_devices(session, canonical_only=not include_linked)


@router.get("/devices/{device_id}")
def device_detail(
    device_id: int,
    session: Session = Depends(get_session),
) -> dict[str, Any]:
    device = get_device(session, device_id)
    if device is None:
        raise HTTPException(status_code=404, detail="Device not found")
    canonical_id = device.canonical_id if device.canonical_id is not None else device_id
    return {
        "device": device,
        "linked_devices": get_linked_devices(session, canonical_id),
        "links": get_device_links(session, canonical_id),
        "location_count": len(get_locations_for_device(session, canonical_id)),
        "sighting_count": len(get_sightings_for_device(session, canonical_id)),
    }


@router.get("/devices/{device_id}/detection")
def device_detection(
    device_id: int,
    store: CorrelationStore = Depends(get_store),
) -> dict[str, Any]:
    detector = DetectionEngine.from_settings(store, settings)
    result = detector.run_detection_for_device(device_id)
    if result is None:
        raise HTTPException(status_code=404, detail="No detection data for device")
    return _detection_summary(result)


# --- Detection ---


@router.post("/detection/run")
def run_detection(
    request: DetectionRunRequest,
    store: CorrelationStore = Depends(get_store),
) -> dict[str, list]:
    min_locations = request.min_location_count or settings.min_location_count
    min_score = (
        request.min_threat_score
        if request.min_threat_score is not None
        else settings.min_threat_score
    )
    try:
        results = DetectionEngine.from_settings(store, settings).run_detection(
            min_locations, min_score
        )
        store.record_threat_levels(
            {r.device.id: r.threat_level.value for r in results if r.device.id is not None}
        )
        alert_ids: list[int] = []
        if request.generate_alerts:
            alert_ids = AlertGenerator(store).generate_alerts(
                results, timedelta(seconds=settings.alert_throttle_seconds)
            )
    except StoreUnavailable as e:
        raise HTTPException(status_code=503, detail=str(e))
    return {
        "results": [_detection_summary(r) for r in results],
        "alert_ids": alert_ids,
    }


# --- Alerts ---


@router.get("/alerts")
def list_all_alerts(
    include_dismissed: bool = False,
    limit: int = 100,
    session: Session = Depends(get_session),
) -> list[Alert]:
    return list_alerts(session, include_dismissed=include_dismissed, limit=limit)


# Literal path must come before {alert_id} parametric paths
@router.get("/alerts/count")
def count_active_alerts(
    level: AlertLevel | None = None,
    session: Session = Depends(get_session),
) -> dict[str, int]:
    return {"active": get_active_alert_count(session, level=level)}


@router.post("/alerts/{alert_id}/dismiss")
def dismiss_existing_alert(
    alert_id: int,
    session: Session = Depends(get_session),
) -> Alert:
    alert = dismiss_alert(session, alert_id)
    if alert is None:
        raise HTTPException(status_code=404, detail="Alert not found")
    return alert


# --- Whitelist ---


@router.get("/whitelist")
def list_whitelist(
    session: Session = Depends(get_session),
) -> list[WhitelistEntry]:
    return list_entries(session)


@router.post("/whitelist", status_code=201)
def create_whitelist_entry(
    request: CreateWhitelistEntryRequest,
    session: Session = Depends(get_session),
) -> WhitelistEntry:
    try:
        return add_entry(
            session,
            mac_address=request.mac_address,
            label=request.label,
            category=request.category,
            notes=request.notes,
            added_via_learn_mode=request.added_via_learn_mode,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.delete("/whitelist/{entry_id}")
def delete_whitelist_entry(
    entry_id: int,
    session: Session = Depends(get_session),
) -> dict[str, str]:
    if not remove_entry(session, entry_id):
        raise HTTPException(status_code=404, detail="Whitelist entry not found")
    return {"status": "deleted"}

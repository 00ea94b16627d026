"""Alert generation, throttling and webhook dispatch."""

import json
import logging
from collections.abc import Iterable
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

import httpx
from sqlmodel import Session, col, func, select

from tagwatch.alerts.models import Alert, AlertLevel
from tagwatch.registry.store import as_utc, normalize_mac

if TYPE_CHECKING:
    from tagwatch.correlation import CorrelationStore
    from tagwatch.detection.engine import DetectionResult

logger = logging.getLogger(__name__)

DEFAULT_THROTTLE_WINDOW = timedelta(hours=1)

ALERT_TITLES = {
    AlertLevel.CRITICAL: "Critical Tracking Alert",
    AlertLevel.HIGH: "High Priority Alert",
    AlertLevel.MEDIUM: "Medium Priority Alert",
    AlertLevel.LOW: "Low Priority Alert",
}

_ADVICE = {
    AlertLevel.CRITICAL: (
        "CRITICAL: This device shows a very strong pattern of tracking behavior. "
        "Please review the details immediately and consider contacting "
        "authorities if you feel unsafe."
    ),
    AlertLevel.HIGH: (
        "HIGH: This device shows a strong pattern of following behavior. "
        "Please review the detection details and take appropriate action."
    ),
    AlertLevel.MEDIUM: (
        "MEDIUM: This device may be following you. "
        "Review the details to determine if this is a known device or requires action."
    ),
    AlertLevel.LOW: (
        "LOW: This device has appeared at multiple locations. "
        "It may be a coincidence, but worth monitoring."
    ),
}


def determine_alert_level(threat_score: float) -> AlertLevel:
    return AlertLevel.from_score(threat_score)


def format_time_span(span: timedelta) -> str:
    """Largest whole unit of ``span``, e.g. ``"3 hours"``."""
    seconds = int(span.total_seconds())
    for unit, size in (("day", 86400), ("hour", 3600), ("minute", 60)):
        count = seconds // size
        if count > 0:
            return f"{count} {unit}{'s' if count != 1 else ''}"
    return f"{seconds} second{'s' if seconds != 1 else ''}"


def build_alert_message(result: "DetectionResult", level: AlertLevel) -> str:
    device = result.device
    lines = [
        "A suspicious device has been detected following your movements.",
        "",
        f"Device: {device.name or device.advertised_name or 'Unknown Device'}",
        f"MAC Address: {device.mac_address}",
        f"Threat Level: {level.value.title()}",
        f"Locations: {len(result.locations)} different places",
        f"Max Distance: {result.max_distance / 1000.0:.1f} km",
        f"Time Period: {format_time_span(result.time_span())}",
        "",
        _ADVICE[level],
    ]
    return "\n".join(lines)


def build_detection_details(result: "DetectionResult") -> str:
    return json.dumps(
        {
            "device_id": result.device.id,
            "device_name": result.device.display_name,
            "device_address": result.device.mac_address,
            "location_count": len(result.locations),
            "max_distance": result.max_distance,
            "avg_distance": result.avg_distance,
            "threat_score": result.threat_score,
            "breakdown": result.breakdown.as_dict(),
            "shadow_key": result.shadow_key,
            "time_span": result.time_span().total_seconds(),
            "detection_reason": result.reason,
            "detection_id": result.detection_id,
        }
    )


def build_alert(result: "DetectionResult") -> Alert:
    """Build an unsaved Alert row for a detection result."""
    level = determine_alert_level(result.threat_score)
    return Alert(
        level=level,
        title=ALERT_TITLES[level],
        message=build_alert_message(result, level),
        timestamp=result.timestamp,
        device_addresses=json.dumps([result.device.mac_address]),
        location_ids=json.dumps([loc.id for loc in result.locations]),
        threat_score=result.threat_score,
        detection_details=build_detection_details(result),
    )


def insert_alert(session: Session, alert: Alert) -> Alert:
    session.add(alert)
    session.commit()
    session.refresh(alert)
    return alert


def get_alert(session: Session, alert_id: int) -> Alert | None:
    return session.get(Alert, alert_id)


def has_similar_recent_alert(
    session: Session,
    addresses: Iterable[str],
    window: timedelta,
    now: datetime | None = None,
) -> bool:
    """True if an alert for the same address set was created within ``window``.

    Dismissed alerts count: dismissing does not re-arm the throttle.
    """
    wanted = {normalize_mac(a) for a in addresses}
    cutoff = as_utc(now or datetime.now(UTC)) - window
    stmt = select(Alert).where(Alert.created_at >= cutoff)  # type: ignore[operator]
    for alert in session.exec(stmt).all():
        if {normalize_mac(a) for a in alert.get_device_addresses()} == wanted:
            return True
    return False


def list_alerts(
    session: Session, include_dismissed: bool = False, limit: int = 100
) -> list[Alert]:
    """List alerts, newest first."""
    stmt = select(Alert)
    if not include_dismissed:
        stmt = stmt.where(Alert.is_dismissed == False)  # noqa: E712
    stmt = stmt.order_by(col(Alert.created_at).desc(), col(Alert.id).desc()).limit(limit)
    return list(session.exec(stmt).all())


def dismiss_alert(session: Session, alert_id: int) -> Alert | None:
    """Dismiss an alert. Return None if not found."""
    alert = session.get(Alert, alert_id)
    if alert is None:
        return None
    if not alert.is_dismissed:
        alert.is_dismissed = True
        alert.dismissed_at = datetime.now(UTC)
        session.add(alert)
        session.commit()
        session.refresh(alert)
    return alert


def get_active_alert_count(session: Session, level: AlertLevel | None = None) -> int:
    stmt = select(func.count()).select_from(Alert).where(Alert.is_dismissed == False)  # noqa: E712
    if level is not None:
        stmt = stmt.where(Alert.level == level)
    return session.exec(stmt).one()


class AlertGenerator:
    """Turns detection results into persisted, throttled alerts."""

    def __init__(self, store: "CorrelationStore") -> None:
        self._store = store

    def generate_alert(
        self,
        result: "DetectionResult",
        throttle_window: timedelta = DEFAULT_THROTTLE_WINDOW,
    ) -> int | None:
        """Persist an alert for ``result``; None if throttled.

        Raises:
            StoreUnavailable: If the store fails.
        """
        addresses = [result.device.mac_address]
        if self._store.has_similar_recent_alert(addresses, throttle_window):
            logger.debug(
                "Alert throttled for %s: similar alert within %s",
                result.device.mac_address,
                throttle_window,
            )
            return None

        alert = self._store.insert_alert(build_alert(result))
        logger.info(
            "Alert %s created for %s (level=%s, score=%.2f)",
            alert.id,
            result.device.mac_address,
            alert.level,
            alert.threat_score,
        )
        return alert.id

    def generate_alerts(
        self,
        results: Iterable["DetectionResult"],
        throttle_window: timedelta = DEFAULT_THROTTLE_WINDOW,
    ) -> list[int]:
        results = list(results)
        alert_ids = []
        for result in results:
            alert_id = self.generate_alert(result, throttle_window)
            if alert_id is not None:
                alert_ids.append(alert_id)
        logger.info(
            "Generated %d alerts (%d throttled)", len(alert_ids), len(results) - len(alert_ids)
        )
        return alert_ids


def build_alert_payload(alert: Alert, webhook_url: str) -> dict[str, Any]:
    """Webhook body for a newly created alert."""
    return {
        "event": "tracking_alert",
        "timestamp": as_utc(alert.created_at).isoformat(),
        "alert": {
            "id": alert.id,
            "level": alert.level.value,
            "title": alert.title,
            "message": alert.message,
            "threat_score": alert.threat_score,
            "device_addresses": alert.get_device_addresses(),
            "location_ids": alert.get_location_ids(),
        },
        "_webhook_url": webhook_url,  # Internal field for dispatch
    }


def dispatch_webhooks(payloads: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Fire HTTP POSTs for each payload. Return results with status codes.

    Returns:
        List of dicts with keys: payload, url, status_code, success, error (if failed)
    """
    results = []

    for payload in payloads:
        url = payload.pop("_webhook_url", None)
        if not url or not isinstance(url, str):
            logger.warning("No webhook URL found in payload: %s", payload)
            continue

        alert_id = payload.get("alert", {}).get("id")
        try:
            with httpx.Client(timeout=10.0) as client:
                response = client.post(url, json=payload)
        except httpx.HTTPError as e:
            logger.error("Webhook dispatch error: alert %s -> %s: %s", alert_id, url, e)
            results.append(
                {
                    "payload": payload,
                    "url": url,
                    "status_code": None,
                    "success": False,
                    "error": str(e),
                }
            )
            continue

        results.append(
            {
                "payload": payload,
                "url": url,
                "status_code": response.status_code,
                "success": response.is_success,
            }
        )
        if response.is_success:
            logger.info(
                "Webhook delivered: alert %s -> %s (HTTP %d)", alert_id, url, response.status_code
            )
        else:
            logger.warning(
                "Webhook failed: alert %s -> %s (HTTP %d)", alert_id, url, response.status_code
            )

    return results

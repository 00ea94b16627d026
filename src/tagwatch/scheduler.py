"""Periodic detection passes."""

import asyncio
import logging
import threading
from datetime import timedelta

from sqlmodel import Session

from tagwatch import database
from tagwatch.alerts.manager import (
    AlertGenerator,
    build_alert_payload,
    dispatch_webhooks,
    get_alert,
)
from tagwatch.config import Settings, load_config
from tagwatch.correlation import CorrelationStore
from tagwatch.detection.engine import DetectionEngine
from tagwatch.errors import DetectionCancelled

logger = logging.getLogger(__name__)


def run_detection_pass(
    cfg: Settings | None = None, cancel_event: threading.Event | None = None
) -> list[int]:
    """Run one detection pass, persist threat levels and alerts, and notify the webhook.

    Alerts are generated only after the pass completes, so a cancelled pass
    leaves nothing behind. Returns the ids of newly created alerts.
    """
    cfg = cfg or load_config()
    with Session(database.engine) as session:
        store = CorrelationStore(
            session, correlation_window=timedelta(seconds=cfg.correlation_window_seconds)
        )
        detector = DetectionEngine.from_settings(store, cfg)
        results = detector.run_detection(
            cfg.min_location_count, cfg.min_threat_score, cancel_event=cancel_event
        )
        store.record_threat_levels(
            {r.device.id: r.threat_level.value for r in results if r.device.id is not None}
        )
        alert_ids = AlertGenerator(store).generate_alerts(
            results, timedelta(seconds=cfg.alert_throttle_seconds)
        )

        if cfg.webhook_url and alert_ids:
            payloads = []
            for alert_id in alert_ids:
                alert = get_alert(session, alert_id)
                if alert is not None:
                    payloads.append(build_alert_payload(alert, cfg.webhook_url))
            dispatch_webhooks(payloads)

    return alert_ids


class DetectionScheduler:
    """Runs a detection pass every ``interval`` seconds in a worker thread."""

    def __init__(self, interval: int, cfg: Settings | None = None) -> None:
        self.interval = interval
        self.cfg = cfg
        self._running = False
        self._task: asyncio.Task[None] | None = None
        self._cancel = threading.Event()

    async def start(self) -> None:
        logger.info("Starting detection scheduler (interval=%ds)", self.interval)
        self._running = True
        self._cancel.clear()
        self._task = asyncio.create_task(self._run_loop())

    async def stop(self) -> None:
        logger.info("Stopping detection scheduler")
        self._running = False
        self._cancel.set()
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass

    async def _run_loop(self) -> None:
        while self._running:
            try:
                alert_ids = await asyncio.to_thread(run_detection_pass, self.cfg, self._cancel)
                if alert_ids:
                    logger.info("Detection pass raised %d alert(s)", len(alert_ids))
            except asyncio.CancelledError:
                raise
            except DetectionCancelled:
                logger.info("Detection pass cancelled")
                break
            except Exception:
                logger.exception("Detection pass failed")

            await asyncio.sleep(self.interval)

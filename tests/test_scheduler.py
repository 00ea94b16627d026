"""Tests for periodic detection passes."""

import asyncio
import threading
from unittest.mock import patch

import pytest

from tagwatch.alerts.manager import list_alerts
from tagwatch.config import Settings
from tagwatch.errors import DetectionCancelled
from tagwatch.scheduler import DetectionScheduler, run_detection_pass

from .conftest import ROUTE


@pytest.fixture
def patched_engine(engine, monkeypatch):
    monkeypatch.setattr("tagwatch.database.engine", engine)
    return engine


class TestRunDetectionPass:
    def test_creates_alerts(self, patched_engine, session, make_history):
        make_history("AA:00:00:00:00:01")
        make_history("AA:00:00:00:00:02")

        alert_ids = run_detection_pass(Settings())

        assert len(alert_ids) == 2
        assert {a.id for a in list_alerts(session)} == set(alert_ids)

    def test_second_pass_throttled(self, patched_engine, make_history):
        make_history("AA:00:00:00:00:01")

        assert len(run_detection_pass(Settings())) == 1
        assert run_detection_pass(Settings()) == []

    def test_records_threat_levels(self, patched_engine, session, make_history):
        device = make_history("AA:00:00:00:00:01")
        quiet = make_history("AA:00:00:00:00:02", points=ROUTE[:1])

        run_detection_pass(Settings())

        session.refresh(device)
        session.refresh(quiet)
        assert device.threat_level in {"MEDIUM", "HIGH", "CRITICAL"}
        assert quiet.threat_level is None

    @patch("tagwatch.scheduler.dispatch_webhooks")
    def test_webhook_dispatched(self, mock_dispatch, patched_engine, make_history):
        make_history("AA:00:00:00:00:01")

        alert_ids = run_detection_pass(Settings(webhook_url="https://example.com/hook"))

        mock_dispatch.assert_called_once()
        payloads = mock_dispatch.call_args[0][0]
        assert [p["alert"]["id"] for p in payloads] == alert_ids
        assert payloads[0]["_webhook_url"] == "https://example.com/hook"

    @patch("tagwatch.scheduler.dispatch_webhooks")
    def test_no_webhook_without_alerts(self, mock_dispatch, patched_engine):
        assert run_detection_pass(Settings(webhook_url="https://example.com/hook")) == []
        mock_dispatch.assert_not_called()

    def test_cancelled_pass_leaves_no_alerts(self, patched_engine, session, make_history):
        make_history("AA:00:00:00:00:01")
        cancel = threading.Event()
        cancel.set()

        with pytest.raises(DetectionCancelled):
            run_detection_pass(Settings(), cancel_event=cancel)
        assert list_alerts(session, include_dismissed=True) == []


class TestDetectionScheduler:
    @pytest.mark.asyncio
    async def test_runs_pass_and_stops(self):
        calls = []

        def _fake_pass(cfg, cancel_event):
            calls.append(cancel_event)
            return [1]

        with patch("tagwatch.scheduler.run_detection_pass", _fake_pass):
            scheduler = DetectionScheduler(interval=3600)
            await scheduler.start()
            await asyncio.sleep(0.1)
            await scheduler.stop()

        assert len(calls) == 1
        assert calls[0].is_set()

    @pytest.mark.asyncio
    async def test_failed_pass_keeps_loop_alive(self):
        calls = []

        def _failing_pass(cfg, cancel_event):
            calls.append(1)
            raise RuntimeError("boom")

        with patch("tagwatch.scheduler.run_detection_pass", _failing_pass):
            scheduler = DetectionScheduler(interval=0)
            await scheduler.start()
            await asyncio.sleep(0.1)
            await scheduler.stop()

        assert len(calls) > 1

    @pytest.mark.asyncio
    async def test_cancelled_pass_ends_loop(self):
        def _cancelled_pass(cfg, cancel_event):
            raise DetectionCancelled("Detection pass cancelled")

        with patch("tagwatch.scheduler.run_detection_pass", _cancelled_pass):
            scheduler = DetectionScheduler(interval=0)
            await scheduler.start()
            await asyncio.sleep(0.1)
            assert scheduler._task is not None
            assert scheduler._task.done()
            await scheduler.stop()

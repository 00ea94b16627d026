"""Shared test fixtures."""

from collections.abc import Callable, Generator
from datetime import UTC, datetime, timedelta

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

import tagwatch.alerts.models  # noqa: F401
import tagwatch.database as db_module
import tagwatch.whitelist.models  # noqa: F401
from tagwatch.correlation import CorrelationStore
from tagwatch.database import get_session
from tagwatch.main import app
from tagwatch.registry import store as registry
from tagwatch.registry.models import Device, Location

# Base time for deterministic histories
T0 = datetime(2026, 3, 1, 8, 0, tzinfo=UTC)

# Points roughly 1 km apart along a meridian
ROUTE = [(52.5200, 13.4050), (52.5290, 13.4050), (52.5380, 13.4050), (52.5470, 13.4050)]


@pytest.fixture(autouse=True)
def no_vendor_lookup(monkeypatch):
    """Keep OUI lookups offline."""
    monkeypatch.setattr("tagwatch.linker.ingest.lookup_vendor", lambda mac: None)


@pytest.fixture
def engine():
    """In-memory SQLite engine with all tables created.

    StaticPool ensures every session uses the same connection,
    so the in-memory database is shared across the test.
    """
    eng = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(eng)
    return eng


@pytest.fixture
def session(engine) -> Generator[Session, None, None]:
    with Session(engine) as s:
        yield s


@pytest.fixture
def store(session) -> CorrelationStore:
    return CorrelationStore(session)


@pytest.fixture
def client(engine, monkeypatch) -> Generator[TestClient, None, None]:
    """FastAPI TestClient with overridden DB engine and session."""
    # No background detection during API tests
    monkeypatch.setenv("TAGWATCH_DETECTION_INTERVAL", "0")
    original_engine = db_module.engine
    db_module.engine = engine

    def _override_session() -> Generator[Session, None, None]:
        with Session(engine) as s:
            yield s

    app.dependency_overrides[get_session] = _override_session
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()
    db_module.engine = original_engine


@pytest.fixture
def make_history(session) -> Callable[..., Device]:
    """Create a device with one sighting per point, ``step`` apart.

    Extra keyword arguments become Device attributes.
    """

    def _make(
        mac: str,
        points: list[tuple[float, float]] = ROUTE[:3],
        rssi: list[int] | None = None,
        start: datetime = T0,
        step: timedelta = timedelta(hours=1),
        **attrs: object,
    ) -> Device:
        rssi = rssi or [-70, -72, -75, -71][: len(points)]
        device = registry.insert_device(
            session,
            Device(mac_address=mac, first_seen=start, last_seen=start, **attrs),
        )
        assert device.id is not None
        for i, (lat, lon) in enumerate(points):
            ts = start + step * i
            location = registry.add_location(
                session, Location(latitude=lat, longitude=lon, accuracy=10.0, timestamp=ts)
            )
            registry.record_sighting(session, device.id, location, rssi[i % len(rssi)], ts)
        device.last_seen = start + step * (len(points) - 1)
        return registry.save_device(session, device)

    return _make

"""Tests for the database engine setup."""

from sqlalchemy import text
from sqlmodel import Session, SQLModel

from tagwatch.database import BUSY_TIMEOUT_MS, make_engine
from tagwatch.registry.models import Device


class TestMakeEngine:
    def test_file_database_uses_wal(self, tmp_path):
        eng = make_engine(tmp_path / "tagwatch.db")
        with eng.connect() as conn:
            assert conn.execute(text("PRAGMA journal_mode")).scalar() == "wal"
            assert conn.execute(text("PRAGMA busy_timeout")).scalar() == BUSY_TIMEOUT_MS
        eng.dispose()

    def test_tables_usable(self, tmp_path):
        eng = make_engine(tmp_path / "tagwatch.db")
        SQLModel.metadata.create_all(eng)
        with Session(eng) as s:
            s.add(Device(mac_address="AA:00:00:00:00:01"))
            s.commit()
            assert s.get(Device, 1).mac_address == "AA:00:00:00:00:01"
        eng.dispose()

"""Fixtures for the tracker tests."""

from __future__ import annotations

import pytest

from exchange.models import TrackedEntry, TrackingStatus
from storage.database import Database
from tests.helpers import D, SleepRecorder, T0


@pytest.fixture
def db(tmp_path):
    database = Database(str(tmp_path / "tracker.db"))
    database.connect()
    yield database
    database.close()


@pytest.fixture
def sleep_recorder():
    return SleepRecorder()


@pytest.fixture
def add_entry(db):
    def _add(token_id: str, price="1.0", entry_time: int = T0,
             status: TrackingStatus = TrackingStatus.ACTIVE, supply=None) -> TrackedEntry:
        entry = TrackedEntry(
            token_id=token_id,
            entry_price=D(price) if price is not None else None,
            entry_supply=D(supply) if supply is not None else None,
            entry_time=entry_time,
            status=status,
        )
        db.add_entry(entry)
        return entry
    return _add

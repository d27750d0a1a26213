from datetime import datetime, timedelta, timezone

import mongomock
import pytest
from fastapi.testclient import TestClient

import database
import main
import notifications


@pytest.fixture
def db(monkeypatch):
    mock_db = mongomock.MongoClient()["booking_test"]
    monkeypatch.setattr(database, "db", mock_db)
    monkeypatch.setattr(notifications, "NOTIFY_WEBHOOK_URL", None)
    database.ensure_indexes()
    return mock_db


@pytest.fixture
def client(db):
    return TestClient(main.app)


def in_hours(hours: float) -> datetime:
    return datetime.now(timezone.utc).replace(microsecond=0) + timedelta(hours=hours)


def parse_dt(value: str) -> datetime:
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


@pytest.fixture
def make_booking(client):
    def _make(**overrides):
        body = {
            "user_id": "user-1",
            "resource_id": "standard",
            "start_time": in_hours(24).isoformat(),
            "pickup_address": "1 Main St",
            "dropoff_address": "99 Harbour Rd",
        }
        body.update(overrides)
        res = client.post("/bookings", json=body)
        assert res.status_code == 201, res.text
        return res.json()
    return _make


@pytest.fixture
def make_driver(client):
    def _make(name="Ana", license_number="LIC-1", **extra):
        res = client.post("/drivers", json={"name": name, "license_number": license_number, **extra})
        assert res.status_code == 201, res.text
        return res.json()["id"]
    return _make

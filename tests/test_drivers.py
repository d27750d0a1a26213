import threading
from datetime import datetime, timezone

from bson import ObjectId

import dispatch
import main
from schemas import as_utc


def test_register_and_list_drivers(client, make_driver):
    driver_id = make_driver(name="Ana", license_number="L-1", phone="555-0100")
    drivers = client.get("/drivers").json()
    assert [d["id"] for d in drivers] == [driver_id]
    assert drivers[0]["is_available"] is True
    assert client.get(f"/drivers/{driver_id}").json()["license_number"] == "L-1"


def test_unknown_driver(client):
    assert client.get(f"/drivers/{ObjectId()}").status_code == 404


def test_update_location(client, make_driver):
    driver_id = make_driver()
    res = client.patch(f"/drivers/{driver_id}/location", json={"lat": 40.4, "lng": -3.7})
    assert res.json() == {"updated": True}
    assert client.get(f"/drivers/{driver_id}").json()["location"] == {"lat": 40.4, "lng": -3.7}


def test_assign_specific_driver(client, make_booking, make_driver):
    driver_id = make_driver()
    booking = make_booking()

    res = client.post(f"/drivers/{driver_id}/assign", json={"booking_id": booking["id"]})
    assert res.status_code == 200, res.text
    assert res.json()["status"] == "assigned"
    assert res.json()["driver_id"] == driver_id

    driver = client.get(f"/drivers/{driver_id}").json()
    assert driver["is_available"] is False
    assert driver["current_booking_id"] == booking["id"]
    assert client.get("/drivers/available").json() == []


def test_busy_driver_cannot_be_claimed_twice(client, make_booking, make_driver):
    driver_id = make_driver()
    first = make_booking()
    second = make_booking()

    assert client.post(f"/drivers/{driver_id}/assign", json={"booking_id": first["id"]}).status_code == 200
    res = client.post(f"/drivers/{driver_id}/assign", json={"booking_id": second["id"]})
    assert res.status_code == 409
    assert client.get(f"/bookings/{second['id']}").json()["status"] == "pending"


def test_claim_is_exclusive(db, make_driver):
    driver_id = make_driver()
    assert dispatch.claim_driver(driver_id, "booking-a") is not None
    assert dispatch.claim_driver(driver_id, "booking-b") is None
    assert db["driver"].find_one({"_id": ObjectId(driver_id)})["current_booking_id"] == "booking-a"


def test_release_only_for_holding_booking(db, make_driver):
    driver_id = make_driver()
    dispatch.claim_driver(driver_id, "booking-a")
    assert dispatch.release_driver(driver_id, "booking-b") is False
    assert dispatch.release_driver(driver_id, "booking-a") is True
    assert [str(d["_id"]) for d in dispatch.list_available_drivers()] == [driver_id]


def test_booking_cannot_take_two_drivers(client, make_booking, make_driver):
    first = make_driver(name="Ana")
    second = make_driver(name="Ben", license_number="LIC-2")
    booking = make_booking()

    assert client.post(f"/drivers/{first}/assign", json={"booking_id": booking["id"]}).status_code == 200
    assert client.post(f"/drivers/{second}/assign", json={"bookingId": booking["id"]}).status_code == 409
    assert client.get(f"/drivers/{second}").json()["is_available"] is True


def test_assign_to_missing_booking(client, make_driver):
    driver_id = make_driver()
    res = client.post(f"/drivers/{driver_id}/assign", json={"booking_id": str(ObjectId())})
    assert res.status_code == 404
    assert client.get(f"/drivers/{driver_id}").json()["is_available"] is True


def test_dispatch_round_robin(client, make_booking, make_driver):
    first = make_driver(name="Ana")
    second = make_driver(name="Ben", license_number="LIC-2")

    b1 = make_booking()
    assert client.post(f"/bookings/{b1['id']}/dispatch").json()["driver_id"] == first
    assert client.put(f"/bookings/{b1['id']}/complete").json()["status"] == "completed"

    # Ana is free again but was used last, so Ben goes next
    b2 = make_booking()
    assert client.post(f"/bookings/{b2['id']}/dispatch").json()["driver_id"] == second

    b3 = make_booking()
    assert client.post(f"/bookings/{b3['id']}/dispatch").json()["driver_id"] == first


def test_dispatch_without_drivers(client, make_booking):
    booking = make_booking()
    res = client.post(f"/bookings/{booking['id']}/dispatch")
    assert res.status_code == 409
    assert res.json()["detail"] == "Driver not available"


def test_cancel_releases_driver(client, make_booking, make_driver):
    driver_id = make_driver()
    booking = make_booking()
    client.post(f"/bookings/{booking['id']}/dispatch")

    assert client.put(f"/bookings/{booking['id']}/cancel").json()["status"] == "cancelled"
    driver = client.get(f"/drivers/{driver_id}").json()
    assert driver["is_available"] is True
    assert driver["current_booking_id"] is None


def test_concurrent_claims_pick_one_winner(db, make_driver):
    # exclusivity rests on the single find_one_and_update filtered on is_available
    driver_id = make_driver()
    start = threading.Barrier(2)
    results = {}

    def claim(booking_id):
        start.wait()
        results[booking_id] = dispatch.claim_driver(driver_id, booking_id)

    threads = [threading.Thread(target=claim, args=(f"booking-{n}",)) for n in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    winners = [bid for bid, driver in results.items() if driver is not None]
    assert len(winners) == 1
    assert db["driver"].find_one({"_id": ObjectId(driver_id)})["current_booking_id"] == winners[0]


def test_rolled_back_claim_keeps_round_robin_position(client, db, make_booking, make_driver, monkeypatch):
    first = make_driver(name="Ana")
    second = make_driver(name="Ben", license_number="LIC-2")
    booking = make_booking()

    with monkeypatch.context() as m:
        m.setattr(main, "_conditional_update", lambda *args, **kwargs: None)
        res = client.post(f"/bookings/{booking['id']}/dispatch")
    assert res.status_code == 409

    ana = db["driver"].find_one({"_id": ObjectId(first)})
    assert ana["is_available"] is True
    assert ana["current_booking_id"] is None
    assert as_utc(ana["last_assigned_at"]) == datetime(1970, 1, 1, tzinfo=timezone.utc)

    assert client.post(f"/bookings/{booking['id']}/dispatch").json()["driver_id"] == first
    assert client.get(f"/drivers/{second}").json()["is_available"] is True

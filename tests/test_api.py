import asyncio
import logging
from datetime import timedelta

import pytest

from parking_reservations import main
from parking_reservations.models import utcnow

from .conftest import auth_headers, make_spot


def window(start_hours, end_hours):
    # whole hours in the near future so the booking is never in the past
    base = utcnow().replace(minute=0, second=0, microsecond=0) + timedelta(days=1)
    return ((base + timedelta(hours=start_hours)).isoformat(),
            (base + timedelta(hours=end_hours)).isoformat())


def booking_payload(spot_id, start_hours=0, end_hours=2, plate="ba 2 kha 1234"):
    start, end = window(start_hours, end_hours)
    return {"spotId": spot_id, "startTime": start, "endTime": end,
            "vehicleInfo": {"licensePlate": plate, "make": "Honda", "color": "red"}}


@pytest.fixture
def headers(user):
    return auth_headers(user)


@pytest.fixture
def admin_headers(admin):
    return auth_headers(admin)


def test_register_login_and_me(client):
    response = client.post("/auth/register", json={
        "name": "Sita", "email": "Sita@Example.com", "password": "hunter22", "phone": "9800000000",
    })
    assert response.status_code == 201
    assert response.json()["email"] == "sita@example.com"
    assert response.json()["role"] == "user"
    assert "hashedPassword" not in response.json()

    duplicate = client.post("/auth/register", json={
        "name": "Sita", "email": "sita@example.com", "password": "hunter22",
    })
    assert duplicate.status_code == 409

    bad = client.post("/auth/login", json={"email": "sita@example.com", "password": "nope"})
    assert bad.status_code == 401
    assert bad.json()["code"] == "InvalidCredentials"

    login = client.post("/auth/login", json={"email": "sita@example.com", "password": "hunter22"})
    assert login.status_code == 200
    token = login.json()["accessToken"]

    me = client.get("/auth/me", headers={"Authorization": f"Bearer {token}"})
    assert me.status_code == 200
    assert me.json()["name"] == "Sita"


def test_requests_without_token_are_rejected(client):
    response = client.get("/bookings")
    assert response.status_code == 401
    assert response.json()["error"] == "AuthenticationError"

    garbage = client.get("/bookings", headers={"Authorization": "Bearer not-a-token"})
    assert garbage.status_code == 401
    assert garbage.json()["code"] == "InvalidToken"


def test_booking_lifecycle_over_http(client, spot, headers):
    created = client.post("/bookings", json=booking_payload(spot.id), headers=headers)
    assert created.status_code == 201
    body = created.json()
    assert body["status"] == "active"
    assert body["paymentStatus"] == "pending"
    assert body["totalCost"] == 15.0
    assert body["duration"] == 2.0
    assert body["vehicleInfo"]["licensePlate"] == "BA 2 KHA 1234"

    fetched = client.get(f"/bookings/{body['id']}", headers=headers)
    assert fetched.status_code == 200
    for field in ("startTime", "endTime", "duration", "totalCost", "vehicleInfo"):
        assert fetched.json()[field] == body[field]

    overlap = client.post("/bookings", json=booking_payload(spot.id, 1, 3), headers=headers)
    assert overlap.status_code == 409
    assert overlap.json()["code"] == "SpotUnavailable"

    adjacent = client.post("/bookings", json=booking_payload(spot.id, 2, 4), headers=headers)
    assert adjacent.status_code == 201

    cancelled = client.post(f"/bookings/{body['id']}/cancel", headers=headers)
    assert cancelled.status_code == 200
    assert cancelled.json()["status"] == "cancelled"

    again = client.post(f"/bookings/{body['id']}/complete", headers=headers)
    assert again.status_code == 409
    assert again.json()["code"] == "InvalidTransition"


def test_invalid_window_is_a_validation_error(client, spot, headers):
    response = client.post("/bookings", json=booking_payload(spot.id, 3, 1), headers=headers)
    assert response.status_code == 400
    assert response.json()["code"] == "InvalidWindow"

    missing_plate = booking_payload(spot.id)
    missing_plate["vehicleInfo"] = {"make": "Honda"}
    response = client.post("/bookings", json=missing_plate, headers=headers)
    assert response.status_code == 400
    assert response.json()["error"] == "ValidationError"


def test_unknown_spot_is_not_found(client, headers):
    response = client.post("/bookings", json=booking_payload(999), headers=headers)
    assert response.status_code == 404
    assert response.json()["code"] == "SpotNotFound"


def test_other_users_booking_is_forbidden(client, spot, user, other_user, headers):
    created = client.post("/bookings", json=booking_payload(spot.id), headers=headers).json()

    response = client.post(f"/bookings/{created['id']}/cancel", headers=auth_headers(other_user))
    assert response.status_code == 403
    assert response.json()["error"] == "AuthzError"


def test_payment_flow_over_http(client, spot, headers, admin_headers):
    booking = client.post("/bookings", json=booking_payload(spot.id), headers=headers).json()

    short = client.post("/payments", json={"bookingId": booking["id"], "amount": 14.99,
                                           "method": "khalti"}, headers=headers)
    assert short.status_code == 400
    assert short.json()["code"] == "AmountMismatch"

    created = client.post("/payments", json={"bookingId": booking["id"], "amount": 15.0,
                                             "method": "khalti"}, headers=headers)
    assert created.status_code == 201
    payment = created.json()
    assert payment["status"] == "pending"

    completed = client.post(f"/payments/{payment['id']}/complete",
                            json={"transactionId": "khalti-idx-1"}, headers=headers)
    assert completed.status_code == 200
    assert completed.json()["transactionId"] == "khalti-idx-1"

    twice = client.post(f"/payments/{payment['id']}/complete",
                        json={"transactionId": "khalti-idx-2"}, headers=headers)
    assert twice.status_code == 409
    assert twice.json()["code"] == "AlreadyFinalized"

    refreshed = client.get(f"/bookings/{booking['id']}", headers=headers).json()
    assert refreshed["paymentStatus"] == "paid"

    early_refund = client.post(f"/payments/{payment['id']}/refund", headers=admin_headers)
    assert early_refund.status_code == 409
    assert early_refund.json()["code"] == "InvalidRefundState"

    client.post(f"/bookings/{booking['id']}/cancel", headers=headers)
    user_refund = client.post(f"/payments/{payment['id']}/refund", headers=headers)
    assert user_refund.status_code == 403

    refund = client.post(f"/payments/{payment['id']}/refund", headers=admin_headers)
    assert refund.status_code == 200
    assert refund.json()["status"] == "refunded"

    receipt = client.get(f"/payments/{payment['id']}/receipt", headers=headers)
    assert receipt.status_code == 200
    assert receipt.json()["spotNumber"] == "A1"
    assert receipt.json()["qrCode"].startswith("data:image/png;base64,")

    history = client.get("/payments", headers=headers).json()
    assert history["pagination"]["total"] == 1


def test_failed_payment_over_http(client, spot, headers):
    booking = client.post("/bookings", json=booking_payload(spot.id), headers=headers).json()
    payment = client.post("/payments", json={"bookingId": booking["id"], "amount": 15.0,
                                             "method": "credit_card"}, headers=headers).json()

    failed = client.post(f"/payments/{payment['id']}/fail", json={"reason": "declined"},
                         headers=headers)
    assert failed.status_code == 200
    assert failed.json()["status"] == "failed"
    booking_now = client.get(f"/bookings/{booking['id']}", headers=headers).json()
    assert booking_now["paymentStatus"] == "failed"


def test_list_bookings_validates_query(client, spot, headers):
    client.post("/bookings", json=booking_payload(spot.id), headers=headers)

    listed = client.get("/bookings", params={"status": "active", "page": 1, "limit": 5},
                        headers=headers)
    assert listed.status_code == 200
    assert listed.json()["pagination"]["total"] == 1
    assert listed.json()["items"][0]["status"] == "active"

    bad_status = client.get("/bookings", params={"status": "archived"}, headers=headers)
    assert bad_status.status_code == 400
    assert bad_status.json()["code"] == "InvalidFilter"

    bad_page = client.get("/bookings", params={"page": 0}, headers=headers)
    assert bad_page.status_code == 400
    assert bad_page.json()["code"] == "InvalidPagination"

    bad_sort = client.get("/bookings", params={"sortBy": "userId"}, headers=headers)
    assert bad_sort.status_code == 400


def test_list_spots_is_public_and_filtered(client, db):
    make_spot(db, spot_number="a1", hourly_rate=7.5)
    make_spot(db, spot_number="B2", hourly_rate=3.0)

    response = client.get("/spots", params={"maxRate": 5})
    assert response.status_code == 200
    items = response.json()["items"]
    assert [s["spotNumber"] for s in items] == ["B2"]
    assert items[0]["status"] == "available"
    assert items[0]["coordinates"] == {"lat": 27.7, "lon": 85.3}

    assert client.get("/spots", params={"type": "bus"}).status_code == 400
    assert client.get("/spots", params={"limit": 1000}).status_code == 400


def test_spot_availability_endpoint(client, spot, headers):
    client.post("/bookings", json=booking_payload(spot.id), headers=headers)
    start, end = window(1, 3)

    taken = client.get(f"/spots/{spot.id}/availability", params={"startTime": start, "endTime": end})
    assert taken.status_code == 200
    assert taken.json()["available"] is False

    start, end = window(2, 3)
    free = client.get(f"/spots/{spot.id}/availability", params={"startTime": start, "endTime": end})
    assert free.json()["available"] is True


def test_spot_administration(client, db, headers, admin_headers):
    payload = {"spotNumber": "c3", "location": "Riverside", "address": "5 River Rd",
               "coordinates": {"lat": 27.1, "lon": 85.0}, "type": "electric",
               "hourlyRate": 9.0, "features": ["charger"]}

    assert client.post("/spots", json=payload, headers=headers).status_code == 403

    created = client.post("/spots", json=payload, headers=admin_headers)
    assert created.status_code == 201
    spot = created.json()
    assert spot["spotNumber"] == "C3"
    assert spot["status"] == "available"

    assert client.post("/spots", json=payload, headers=admin_headers).status_code == 409

    zero_rate = dict(payload, spotNumber="C4", hourlyRate=0)
    assert client.post("/spots", json=zero_rate, headers=admin_headers).status_code == 400

    forced = client.patch(f"/spots/{spot['id']}/status", json={"status": "maintenance"},
                          headers=admin_headers)
    assert forced.json()["status"] == "maintenance"
    rejected = client.post("/bookings", json=booking_payload(spot["id"]), headers=headers)
    assert rejected.status_code == 409

    cleared = client.patch(f"/spots/{spot['id']}/status", json={"status": "auto"},
                           headers=admin_headers)
    assert cleared.json()["status"] == "available"

    booked = client.post("/bookings", json=booking_payload(spot["id"]), headers=headers)
    assert booked.status_code == 201
    in_use = client.delete(f"/spots/{spot['id']}", headers=admin_headers)
    assert in_use.status_code == 409
    assert in_use.json()["code"] == "SpotInUse"


def test_rate_change_keeps_booked_cost(client, spot, headers, admin_headers):
    booking = client.post("/bookings", json=booking_payload(spot.id), headers=headers).json()

    updated = client.put(f"/spots/{spot.id}", json={"hourlyRate": 50.0}, headers=admin_headers)
    assert updated.status_code == 200
    assert updated.json()["hourlyRate"] == 50.0

    fetched = client.get(f"/bookings/{booking['id']}", headers=headers).json()
    assert fetched["totalCost"] == 15.0


def test_manual_expiry_and_role_change(client, user, headers, admin_headers):
    assert client.post("/bookings/expire", headers=headers).status_code == 403
    assert client.post("/bookings/expire", headers=admin_headers).json() == {"expired": 0}

    promoted = client.patch(f"/users/{user.id}/role", json={"role": "admin"},
                            headers=admin_headers)
    assert promoted.status_code == 200
    assert promoted.json()["role"] == "admin"
    assert client.patch("/users/999/role", json={"role": "admin"},
                        headers=admin_headers).status_code == 404


def test_dashboard_stats_endpoint(client, spot, headers):
    client.post("/bookings", json=booking_payload(spot.id), headers=headers)

    stats = client.get("/dashboard/stats", headers=headers)
    assert stats.status_code == 200
    assert stats.json()["bookingsByStatus"]["active"] == 1
    assert stats.json()["totalUsers"] is None


@pytest.mark.parametrize("field", ["spotNumber", "location", "address", "type", "hourlyRate",
                                   "coordinates"])
def test_spot_update_rejects_null_for_required_fields(client, spot, admin_headers, field):
    response = client.put(f"/spots/{spot.id}", json={field: None}, headers=admin_headers)
    assert response.status_code == 400
    assert response.json()["error"] == "ValidationError"

    unchanged = client.get(f"/spots/{spot.id}").json()
    assert unchanged["hourlyRate"] == 7.5
    assert unchanged["spotNumber"] == "A1"


def test_spot_update_may_clear_description(client, spot, admin_headers):
    response = client.put(f"/spots/{spot.id}", json={"description": None}, headers=admin_headers)
    assert response.status_code == 200
    assert response.json()["description"] is None


def test_reschedule_over_http(client, spot, headers, admin_headers):
    booking = client.post("/bookings", json=booking_payload(spot.id), headers=headers).json()
    later = client.post("/bookings", json=booking_payload(spot.id, 3, 5), headers=headers).json()

    start, end = window(1, 3)
    moved = client.put(f"/bookings/{booking['id']}",
                       json={"startTime": start, "endTime": end, "notes": "gate B"},
                       headers=headers)
    assert moved.status_code == 200
    assert moved.json()["totalCost"] == 15.0
    assert moved.json()["notes"] == "gate B"

    start, end = window(2, 4)
    clash = client.put(f"/bookings/{booking['id']}", json={"startTime": start, "endTime": end},
                       headers=headers)
    assert clash.status_code == 409
    assert clash.json()["code"] == "SpotUnavailable"

    plate = client.put(f"/bookings/{booking['id']}",
                       json={"vehicleInfo": {"licensePlate": "ba 3 cha 42"}}, headers=headers)
    assert plate.json()["vehicleInfo"]["licensePlate"] == "BA 3 CHA 42"
    assert plate.json()["vehicleInfo"]["make"] == "Honda"

    no_plate = client.put(f"/bookings/{booking['id']}",
                          json={"vehicleInfo": {"licensePlate": None}}, headers=headers)
    assert no_plate.status_code == 400

    assert client.get(f"/bookings/spot/{spot.id}", headers=headers).status_code == 403
    listed = client.get(f"/bookings/spot/{spot.id}", headers=admin_headers)
    assert listed.status_code == 200
    assert [b["id"] for b in listed.json()["items"]] == [later["id"], booking["id"]]
    assert client.get("/bookings/spot/999", headers=admin_headers).status_code == 404


def test_nearby_spots_endpoint(client, db):
    make_spot(db, spot_number="N1", coordinates=(27.7010, 85.3000))
    make_spot(db, spot_number="F1", coordinates=(27.7500, 85.3000))

    response = client.get("/spots/nearby", params={"lat": 27.7, "lon": 85.3})
    assert response.status_code == 200
    body = response.json()
    assert body["count"] == 1
    assert body["items"][0]["spot"]["spotNumber"] == "N1"
    assert body["center"] == {"lat": 27.7, "lon": 85.3}

    assert client.get("/spots/nearby", params={"lat": 27.7, "lon": 85.3,
                                               "radius": 10000}).json()["count"] == 2
    bad = client.get("/spots/nearby", params={"lat": 100, "lon": 85.3})
    assert bad.status_code == 400
    assert bad.json()["code"] == "InvalidFilter"


def test_expiry_sweep_survives_unexpected_errors(monkeypatch, caplog):
    def broken_sweep():
        raise RuntimeError("disk on fire")

    monkeypatch.setattr(main, "sweep_expired_bookings", broken_sweep)
    with caplog.at_level(logging.ERROR, logger="parking_reservations.main"):
        assert asyncio.run(main.run_expiry_sweep()) is None
    assert "Expiry sweep failed" in caplog.text

    monkeypatch.setattr(main, "sweep_expired_bookings", lambda: 3)
    assert asyncio.run(main.run_expiry_sweep()) == 3

# HTTP API test suite: auth, vehicle onboarding, booking lifecycle over REST, payment intake,
# error mapping and the notification inbox.
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple

from fastapi.testclient import TestClient

from driveshare import payments
from driveshare.db import SessionLocal
from driveshare import models


# Helper: create a user and return (access_token, user JSON)
def signup(client: TestClient, email: str, password: str, role: Optional[str] = None) -> Tuple[str, dict]:
    payload = {"email": email, "password": password}
    if role:
        payload["role"] = role
    r = client.post("/auth/signup", json=payload)
    assert r.status_code == 201, r.text
    data = r.json()
    return data["access_token"], data["user"]


# Convenience header for authenticated requests
def auth_headers(token: str, **extra: str) -> dict:
    headers = {"Authorization": f"Bearer {token}"}
    headers.update(extra)
    return headers


# Helper: host lists a vehicle and an admin approves it
def create_vehicle(client: TestClient, host_token: str, admin_token: str, daily_rate_cents: int = 10000) -> dict:
    r = client.post(
        "/api/v1/vehicles",
        headers=auth_headers(host_token),
        json={"title": "  Blue hatchback ", "daily_rate_cents": daily_rate_cents},
    )
    assert r.status_code == 201, r.text
    vehicle = r.json()
    assert vehicle["title"] == "Blue hatchback"
    assert vehicle["approval_status"] == "pending"

    r = client.post(f"/api/v1/vehicles/{vehicle['id']}/approve", headers=auth_headers(admin_token))
    assert r.status_code == 200, r.text
    return r.json()


def future(days: int) -> str:
    return (datetime.now(timezone.utc).date() + timedelta(days=days)).isoformat()


def setup_parties(client: TestClient):
    host_token, host = signup(client, "host@example.com", "changeme123", "host")
    renter_token, renter = signup(client, "renter@example.com", "changeme123", "renter")
    admin_token, _ = signup(client, "admin@example.com", "changeme123", "admin")
    vehicle = create_vehicle(client, host_token, admin_token)
    return host_token, renter_token, admin_token, vehicle


def book(client: TestClient, token: str, vehicle_id: int, start: str, end: str, key: Optional[str] = None):
    headers = auth_headers(token, **({"Idempotency-Key": key} if key else {}))
    return client.post(
        "/api/v1/bookings",
        headers=headers,
        json={"vehicle_id": vehicle_id, "start_date": start, "end_date": end},
    )


def test_healthz(client: TestClient):
    assert client.get("/healthz").json() == {"status": "ok"}


def test_signup_login_and_me(client: TestClient):
    token, user = signup(client, "Renter@Example.com ", "changeme123")
    assert user["role"] == "renter"
    assert user["email"] == "renter@example.com"

    r = client.post("/auth/login", json={"email": "renter@example.com", "password": "changeme123"})
    assert r.status_code == 200
    assert client.get("/auth/me", headers=auth_headers(r.json()["access_token"])).json()["id"] == user["id"]

    assert client.post("/auth/login", json={"email": "renter@example.com", "password": "wrongpass1"}).status_code == 401
    assert client.post("/auth/signup", json={"email": "renter@example.com", "password": "changeme123"}).status_code == 409


# Admin accounts cannot be self-registered unless explicitly enabled
def test_admin_signup_gate(client: TestClient, monkeypatch):
    monkeypatch.setenv("ADMIN_SIGNUP_ENABLED", "false")
    r = client.post("/auth/signup", json={"email": "ops@example.com", "password": "changeme123", "role": "admin"})
    assert r.status_code == 403


# Only approved vehicles are visible to the public and bookable
def test_vehicle_listing_visibility(client: TestClient):
    host_token, _ = signup(client, "host@example.com", "changeme123", "host")
    renter_token, _ = signup(client, "renter@example.com", "changeme123", "renter")
    r = client.post("/api/v1/vehicles", headers=auth_headers(host_token), json={"title": "Van", "daily_rate_cents": 5000})
    vehicle_id = r.json()["id"]

    assert client.get("/api/v1/vehicles").json() == []
    assert [v["id"] for v in client.get("/api/v1/vehicles", headers=auth_headers(host_token)).json()] == [vehicle_id]

    r = book(client, renter_token, vehicle_id, future(3), future(5))
    assert r.status_code == 409
    assert r.json()["detail"]["error"] == "vehicle_not_approved"

    # Renters cannot add vehicles
    r = client.post("/api/v1/vehicles", headers=auth_headers(renter_token), json={"title": "X", "daily_rate_cents": 1})
    assert r.status_code == 403


# Create returns 201; a retried request with the same Idempotency-Key returns 200 and the same booking
def test_create_booking_idempotent(client: TestClient):
    host_token, renter_token, admin_token, vehicle = setup_parties(client)

    r1 = book(client, renter_token, vehicle["id"], future(10), future(13), key="checkout-1")
    assert r1.status_code == 201, r1.text
    body = r1.json()
    assert body["status"] == "pending"
    assert body["payment_status"] == "pending"
    assert body["total_price_cents"] == 34500

    r2 = book(client, renter_token, vehicle["id"], future(10), future(13), key="checkout-1")
    assert r2.status_code == 200
    assert r2.json()["booking_ref"] == body["booking_ref"]

    intervals = client.get(f"/api/v1/vehicles/{vehicle['id']}/intervals").json()
    assert len(intervals) == 1


# Domain errors come back as {"detail": {"error": code, "message": ...}} with the mapped status
def test_error_mapping(client: TestClient):
    host_token, renter_token, admin_token, vehicle = setup_parties(client)

    r = book(client, renter_token, vehicle["id"], future(5), future(5))
    assert r.status_code == 400
    assert r.json()["detail"]["error"] == "invalid_date_range"

    r = book(client, renter_token, vehicle["id"], future(-2), future(2))
    assert r.status_code == 400
    assert r.json()["detail"]["error"] == "past_start_date"

    r = book(client, renter_token, 999, future(2), future(4))
    assert r.status_code == 404
    assert r.json()["detail"]["error"] == "vehicle_not_found"

    assert book(client, renter_token, vehicle["id"], future(2), future(6)).status_code == 201
    r = book(client, renter_token, vehicle["id"], future(3), future(4))
    assert r.status_code == 409
    assert r.json()["detail"]["error"] == "date_range_unavailable"

    # Touching boundary is accepted
    assert book(client, renter_token, vehicle["id"], future(6), future(8)).status_code == 201

    # Hosts cannot create bookings
    assert book(client, host_token, vehicle["id"], future(20), future(22)).status_code == 403

    r = client.get("/api/v1/bookings/unknown", headers=auth_headers(renter_token))
    assert r.status_code == 404
    assert r.json()["detail"]["error"] == "booking_not_found"


def test_availability_endpoint(client: TestClient):
    host_token, renter_token, admin_token, vehicle = setup_parties(client)
    book(client, renter_token, vehicle["id"], future(2), future(4))

    url = f"/api/v1/vehicles/{vehicle['id']}/availability"
    assert client.get(url, params={"start_date": future(3), "end_date": future(5)}).json()["available"] is False
    assert client.get(url, params={"start_date": future(4), "end_date": future(5)}).json()["available"] is True
    assert client.get(url, params={"start_date": future(5), "end_date": future(5)}).status_code == 400


# Full lifecycle over HTTP: pay via normalized event, approve, activate, complete
def test_lifecycle_over_http(client: TestClient):
    host_token, renter_token, admin_token, vehicle = setup_parties(client)
    booking = book(client, renter_token, vehicle["id"], future(0), future(2)).json()
    ref = booking["booking_ref"]

    # Approval before payment is rejected
    r = client.post(f"/api/v1/bookings/{ref}/transition", headers=auth_headers(host_token), json={"status": "approved"})
    assert r.status_code == 409
    detail = r.json()["detail"]
    assert detail["error"] == "transition_rejected"
    assert detail["current_status"] == "pending"
    assert detail["requested"] == "approved"

    event = {"provider_event_id": "evt_1", "booking_ref": ref, "kind": "COMPLETE", "amount_cents": booking["total_price_cents"]}
    assert client.post("/api/v1/payments/events", headers=auth_headers(renter_token), json=event).status_code == 403
    r = client.post("/api/v1/payments/events", headers=auth_headers(admin_token), json=event)
    assert r.status_code == 200
    assert r.json()["outcome"] == "applied"
    assert r.json()["booking"]["payment_status"] == "paid"

    r = client.post("/api/v1/payments/events", headers=auth_headers(admin_token), json=event)
    assert r.json()["outcome"] == "duplicate"

    for target in ("approved", "active", "completed"):
        r = client.post(f"/api/v1/bookings/{ref}/transition", headers=auth_headers(host_token), json={"status": target})
        assert r.status_code == 200, r.text
        assert r.json()["status"] == target

    # Renter cannot move a terminal booking
    r = client.post(f"/api/v1/bookings/{ref}/transition", headers=auth_headers(renter_token), json={"status": "cancelled"})
    assert r.status_code == 409


def test_cancel_via_delete(client: TestClient):
    host_token, renter_token, admin_token, vehicle = setup_parties(client)
    ref = book(client, renter_token, vehicle["id"], future(3), future(5)).json()["booking_ref"]

    other_token, _ = signup(client, "other@example.com", "changeme123", "renter")
    r = client.delete(f"/api/v1/bookings/{ref}", headers=auth_headers(other_token))
    assert r.status_code == 403
    assert r.json()["detail"]["error"] == "not_allowed"

    r = client.delete(f"/api/v1/bookings/{ref}", headers=auth_headers(renter_token))
    assert r.status_code == 200
    assert r.json()["status"] == "cancelled"
    assert r.json()["cancelled_by"] == "renter"

    # Idempotent
    assert client.delete(f"/api/v1/bookings/{ref}", headers=auth_headers(renter_token)).status_code == 200

    # Dates are free again
    assert book(client, renter_token, vehicle["id"], future(3), future(5)).status_code == 201


def test_my_bookings(client: TestClient):
    host_token, renter_token, admin_token, vehicle = setup_parties(client)
    ref = book(client, renter_token, vehicle["id"], future(3), future(5)).json()["booking_ref"]

    assert [b["booking_ref"] for b in client.get("/api/v1/bookings/me", headers=auth_headers(renter_token)).json()] == [ref]
    assert [b["booking_ref"] for b in client.get("/api/v1/bookings/me", headers=auth_headers(host_token)).json()] == [ref]
    r = client.get("/api/v1/bookings/me", headers=auth_headers(renter_token), params={"status": "cancelled"})
    assert r.json() == []

    other_token, _ = signup(client, "other@example.com", "changeme123", "renter")
    assert client.get("/api/v1/bookings/me", headers=auth_headers(other_token)).json() == []
    assert client.get(f"/api/v1/bookings/{ref}", headers=auth_headers(other_token)).status_code == 403
    assert client.get(f"/api/v1/bookings/{ref}", headers=auth_headers(admin_token)).status_code == 200


# Offline payment hand-off: deterministic client secret; polling reports the intent as still processing
def test_payment_info_and_finalize_offline(client: TestClient):
    host_token, renter_token, admin_token, vehicle = setup_parties(client)
    ref = book(client, renter_token, vehicle["id"], future(3), future(5)).json()["booking_ref"]

    r = client.post(f"/api/v1/bookings/{ref}/finalize_payment", headers=auth_headers(renter_token))
    assert r.status_code == 400

    r = client.get(f"/api/v1/bookings/{ref}/payment_info", headers=auth_headers(renter_token))
    assert r.status_code == 200, r.text
    info = r.json()
    assert info["client_secret"] == f"test_client_secret_{ref}"
    assert info["amount_cents"] == 23000

    r = client.post(f"/api/v1/bookings/{ref}/finalize_payment", headers=auth_headers(renter_token))
    assert r.status_code == 200
    assert r.json()["status"] == "processing"
    assert r.json()["booking"]["payment_status"] == "pending"


# Polling path: a succeeded intent goes through the reconciler under a synthesized event id
def test_finalize_payment_succeeded(client: TestClient, monkeypatch):
    host_token, renter_token, admin_token, vehicle = setup_parties(client)
    booking = book(client, renter_token, vehicle["id"], future(3), future(5)).json()
    ref = booking["booking_ref"]
    client.get(f"/api/v1/bookings/{ref}/payment_info", headers=auth_headers(renter_token))

    monkeypatch.setattr(payments, "retrieve_intent_status", lambda pi: ("succeeded", booking["total_price_cents"]))
    r = client.post(f"/api/v1/bookings/{ref}/finalize_payment", headers=auth_headers(renter_token))
    assert r.status_code == 200
    assert r.json()["status"] == "applied"
    assert r.json()["booking"]["payment_status"] == "paid"

    r = client.post(f"/api/v1/bookings/{ref}/finalize_payment", headers=auth_headers(renter_token))
    assert r.json()["status"] == "duplicate"

    events = client.get("/api/v1/payments/events", headers=auth_headers(admin_token)).json()
    assert [e["provider_event_id"] for e in events] == [f"poll:pi_test_{ref}:succeeded"]


def test_payment_event_review(client: TestClient):
    host_token, renter_token, admin_token, vehicle = setup_parties(client)
    client.post(
        "/api/v1/payments/events",
        headers=auth_headers(admin_token),
        json={"provider_event_id": "evt_orphan", "booking_ref": "missing", "kind": "COMPLETE", "amount_cents": 100},
    )

    r = client.get("/api/v1/payments/events", headers=auth_headers(admin_token), params={"outcome": "unmatched"})
    assert r.status_code == 200
    assert [(e["provider_event_id"], e["outcome"]) for e in r.json()] == [("evt_orphan", "unmatched")]
    assert client.get("/api/v1/payments/events", headers=auth_headers(host_token)).status_code == 403


def test_webhook_disabled_without_secret(client: TestClient):
    r = client.post("/payments/webhook", content=b"{}")
    assert r.status_code == 200
    assert r.json() == {"status": "stripe_disabled"}


# Verified Stripe events are normalized and reconciled; bad signatures get 400
def test_webhook_reconciles(client: TestClient, monkeypatch):
    host_token, renter_token, admin_token, vehicle = setup_parties(client)
    booking = book(client, renter_token, vehicle["id"], future(3), future(5)).json()
    event = {
        "id": "evt_wh_1",
        "type": "payment_intent.succeeded",
        "data": {"object": {"amount_received": booking["total_price_cents"], "metadata": {"booking_ref": booking["booking_ref"]}}},
    }

    def construct(payload: bytes, sig: Optional[str]):
        if sig != "good":
            raise ValueError("bad signature")
        return event

    monkeypatch.setattr(payments, "STRIPE_WEBHOOK_SECRET", "whsec_test")
    monkeypatch.setattr(payments, "construct_webhook_event", construct)

    assert client.post("/payments/webhook", content=b"{}", headers={"Stripe-Signature": "bad"}).status_code == 400
    r = client.post("/payments/webhook", content=b"{}", headers={"Stripe-Signature": "good"})
    assert r.json() == {"status": "applied"}
    r = client.post("/payments/webhook", content=b"{}", headers={"Stripe-Signature": "good"})
    assert r.json() == {"status": "duplicate"}

    r = client.get(f"/api/v1/bookings/{booking['booking_ref']}", headers=auth_headers(renter_token))
    assert r.json()["payment_status"] == "paid"


def test_notification_inbox(client: TestClient):
    host_token, renter_token, admin_token, vehicle = setup_parties(client)
    ref = book(client, renter_token, vehicle["id"], future(3), future(5)).json()["booking_ref"]
    client.delete(f"/api/v1/bookings/{ref}", headers=auth_headers(host_token))

    host_inbox = client.get("/api/v1/notifications", headers=auth_headers(host_token)).json()
    assert [n["type"] for n in host_inbox] == ["booking_cancelled", "booking_created"]
    renter_inbox = client.get("/api/v1/notifications", headers=auth_headers(renter_token)).json()
    assert [n["type"] for n in renter_inbox] == ["booking_cancelled"]

    first = host_inbox[0]["id"]
    r = client.post(f"/api/v1/notifications/{first}/read", headers=auth_headers(host_token))
    assert r.status_code == 200
    assert r.json()["is_read"] is True
    unread = client.get("/api/v1/notifications", headers=auth_headers(host_token), params={"unread_only": True}).json()
    assert [n["type"] for n in unread] == ["booking_created"]

    # Someone else's notification looks missing
    assert client.post(f"/api/v1/notifications/{first}/read", headers=auth_headers(renter_token)).status_code == 404

    with SessionLocal() as db:
        assert db.query(models.Notification).count() == 3

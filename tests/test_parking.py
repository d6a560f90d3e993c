import json
import re
from urllib.parse import parse_qs

import httpx
import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from venueos.api_parking import public_router as parking_public_router
from venueos.api_parking import router as parking_router
from venueos.config import settings
from venueos.core.http import set_transport
from venueos.db import Base, get_db
from venueos.models import Customer, ParkingBookingPayment

OWNER = {"X-Tenant-Slug": "anchor", "X-Actor-Email": "owner@anchor.test", "X-Actor-Role": "owner"}
RECEPTION = {"X-Tenant-Slug": "anchor", "X-Actor-Email": "front@anchor.test", "X-Actor-Role": "reception"}

RATES = {"hourly_rate": 5, "daily_rate": 20, "weekly_rate": 100, "monthly_rate": 300}
BOOKING = {
    "customer_first_name": "Sam",
    "customer_last_name": "Driver",
    "customer_mobile": "07700 900777",
    "vehicle_registration": "ab12 cde",
    "start_at": "2030-05-01T09:00:00",
    "end_at": "2030-05-01T12:00:00",
}


def make_client(tmp_path):
    db_path = tmp_path / "test_venueos.db"
    engine = create_engine(f"sqlite:///{db_path}", connect_args={"check_same_thread": False})
    TestingSessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    Base.metadata.create_all(bind=engine)

    app = FastAPI()
    app.include_router(parking_router)
    app.include_router(parking_public_router)

    def override_get_db():
        db = TestingSessionLocal()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    client = TestClient(app)
    client.testing_session_local = TestingSessionLocal
    return client


class FakeProviders:
    """PayPal and Twilio behind one httpx.MockTransport."""

    def __init__(self, capture_status="COMPLETED"):
        self.capture_status = capture_status
        self.calls = []
        self.sms = []
        self.refunds = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        self.calls.append((request.url.host, path))
        if request.url.host == "twilio.test":
            self.sms.append(parse_qs(request.content.decode()))
            return httpx.Response(201, json={"sid": f"SM{len(self.sms)}", "status": "queued"})
        if path == "/v1/oauth2/token":
            return httpx.Response(200, json={"access_token": "paypal-token"})
        if path == "/v2/checkout/orders":
            return httpx.Response(
                201,
                json={
                    "id": "ORDER1",
                    "status": "CREATED",
                    "links": [
                        {"rel": "self", "href": "https://paypal.test/v2/checkout/orders/ORDER1"},
                        {"rel": "approve", "href": "https://paypal.test/checkoutnow?token=ORDER1"},
                    ],
                },
            )
        if path == "/v2/checkout/orders/ORDER1/capture":
            return httpx.Response(
                201,
                json={
                    "id": "ORDER1",
                    "status": self.capture_status,
                    "purchase_units": [
                        {"payments": {"captures": [{"id": "CAPTURE1", "amount": {"value": "15.00"}}]}}
                    ],
                },
            )
        if path == "/v2/payments/captures/CAPTURE1/refund":
            self.refunds.append(json.loads(request.content))
            return httpx.Response(201, json={"id": "REFUND1", "status": "COMPLETED"})
        return httpx.Response(404, json={"error": "unexpected"})

    def captures(self):
        return [c for c in self.calls if c[1].endswith("/capture")]


@pytest.fixture
def providers(monkeypatch, twilio_configured):
    monkeypatch.setattr(settings, "PAYPAL_CLIENT_ID", "paypal-id")
    monkeypatch.setattr(settings, "PAYPAL_CLIENT_SECRET", "paypal-secret")
    monkeypatch.setattr(settings, "PAYPAL_API_BASE", "https://paypal.test")
    fake = FakeProviders()
    set_transport(httpx.MockTransport(fake))
    return fake


def _rates(client, **extra):
    res = client.post("/api/parking/rates", headers=OWNER, json={**RATES, **extra})
    assert res.status_code == 201, res.text
    return res.json()


def test_quote_requires_rates_then_prices_cheapest_mix(tmp_path):
    client = make_client(tmp_path)
    window = {"start_at": "2030-05-01T09:00:00", "end_at": "2030-05-02T11:00:00"}

    missing = client.post("/api/parking/quote", headers=RECEPTION, json=window)
    assert missing.status_code == 400
    assert missing.json()["detail"] == "Parking rates have not been configured. Please add rates first."

    _rates(client)
    quote = client.post("/api/parking/quote", headers=RECEPTION, json=window)
    assert quote.status_code == 200
    body = quote.json()
    assert body["hours"] == 26
    assert body["total"] == 30.0
    assert [(line["unit"], line["quantity"]) for line in body["breakdown"]] == [("day", 1), ("hour", 2)]

    inverted = client.post(
        "/api/parking/quote",
        headers=RECEPTION,
        json={"start_at": "2030-05-01T09:00:00", "end_at": "2030-05-01T08:00:00"},
    )
    assert inverted.status_code == 400


def test_booking_creates_customer_and_enforces_capacity(tmp_path):
    client = make_client(tmp_path)
    _rates(client, capacity_override=1)

    created = client.post("/api/parking/bookings", headers=RECEPTION, json=BOOKING)
    assert created.status_code == 201, created.text
    booking = created.json()
    assert re.fullmatch(r"PAR-\d{8}-0001", booking["reference"])
    assert booking["vehicle_registration"] == "AB12CDE"
    assert booking["customer_mobile"] == "+447700900777"
    assert booking["status"] == "pending_payment"
    assert booking["payment_status"] == "pending"
    assert booking["calculated_price"] == 15.0
    assert booking["duration_minutes"] == 180
    assert booking["initial_request_sms_sent"] is False

    with client.testing_session_local() as db:
        customer = db.get(Customer, booking["customer_id"])
        assert customer.mobile_number == "+447700900777"

    full = client.post("/api/parking/bookings", headers=RECEPTION, json=BOOKING)
    assert full.status_code == 400
    assert full.json()["detail"] == "No parking spaces remaining for the selected period"

    forced = client.post(
        "/api/parking/bookings",
        headers=RECEPTION,
        json={**BOOKING, "capacity_override": True, "capacity_override_reason": "Owner's guest", "override_price": 5},
    )
    assert forced.status_code == 201
    assert forced.json()["reference"].endswith("-0002")
    assert forced.json()["amount_due"] == 5.0
    # same mobile, same customer
    assert forced.json()["customer_id"] == booking["customer_id"]


def test_payment_request_and_paypal_return_confirm_booking(tmp_path, providers):
    client = make_client(tmp_path)
    _rates(client)

    created = client.post("/api/parking/bookings", headers=RECEPTION, json={**BOOKING, "send_payment_request": True})
    assert created.status_code == 201, created.text
    booking = created.json()
    assert booking["initial_request_sms_sent"] is True

    assert len(providers.sms) == 1
    body = providers.sms[0]["Body"][0]
    assert booking["reference"] in body
    assert "£15.00" in body
    assert "https://paypal.test/checkoutnow?token=ORDER1" in body

    # the pending order is reused
    order = client.post(f"/api/parking/bookings/{booking['id']}/payment-order", headers=RECEPTION)
    assert order.status_code == 200
    assert order.json()["paypal_order_id"] == "ORDER1"
    assert order.json()["amount"] == 15.0
    assert len([c for c in providers.calls if c[1] == "/v2/checkout/orders"]) == 1

    returned = client.get("/public/parking/paypal/return", params={"token": "ORDER1"})
    assert returned.status_code == 200
    assert returned.json() == {"reference": booking["reference"], "status": "confirmed", "payment_status": "paid"}

    again = client.get("/public/parking/paypal/return", params={"token": "ORDER1"})
    assert again.json()["status"] == "confirmed"
    assert len(providers.captures()) == 1

    with client.testing_session_local() as db:
        payment = db.query(ParkingBookingPayment).one()
        assert payment.status == "paid"
        assert payment.transaction_id == "CAPTURE1"

    notes = client.get(f"/api/parking/bookings/{booking['id']}/notifications", headers=RECEPTION).json()
    assert [(n["event_type"], n["status"]) for n in notes] == [
        ("payment_request", "sent"),
        ("payment_confirmation", "sent"),
    ]
    assert notes[0]["message_sid"] == "SM1"

    paid_again = client.post(f"/api/parking/bookings/{booking['id']}/payment-order", headers=RECEPTION)
    assert paid_again.status_code == 400
    assert paid_again.json()["detail"] == "Parking booking is already paid"


def test_incomplete_capture_is_reported(tmp_path, providers):
    providers.capture_status = "PENDING"
    client = make_client(tmp_path)
    _rates(client)
    booking = client.post("/api/parking/bookings", headers=RECEPTION, json=BOOKING).json()
    client.post(f"/api/parking/bookings/{booking['id']}/payment-order", headers=RECEPTION)

    res = client.get("/public/parking/paypal/return", params={"token": "ORDER1"})
    assert res.status_code == 502
    assert res.json()["detail"] == "PayPal capture not completed (PENDING)"

    detail = client.get(f"/api/parking/bookings/{booking['id']}", headers=RECEPTION).json()
    assert detail["payment_status"] == "pending"


def test_payment_order_without_paypal_config_is_bad_gateway(tmp_path):
    client = make_client(tmp_path)
    _rates(client)
    booking = client.post("/api/parking/bookings", headers=RECEPTION, json=BOOKING).json()

    res = client.post(f"/api/parking/bookings/{booking['id']}/payment-order", headers=RECEPTION)
    assert res.status_code == 502
    assert res.json()["detail"] == "PayPal is not configured"


def test_cancel_expires_pending_payment(tmp_path):
    client = make_client(tmp_path)
    _rates(client)
    booking = client.post("/api/parking/bookings", headers=RECEPTION, json=BOOKING).json()

    cancelled = client.post(
        f"/api/parking/bookings/{booking['id']}/cancel",
        headers=RECEPTION,
        json={"reason": "Plans changed"},
    )
    assert cancelled.status_code == 200
    assert cancelled.json()["status"] == "cancelled"
    assert cancelled.json()["payment_status"] == "expired"
    assert "Cancelled: Plans changed" in cancelled.json()["notes"]

    twice = client.post(f"/api/parking/bookings/{booking['id']}/cancel", headers=RECEPTION)
    assert twice.status_code == 400
    assert twice.json()["detail"] == "Cannot cancel a cancelled booking"

    # a cancelled booking frees its space
    listed = client.get("/api/parking/bookings", headers=RECEPTION, params={"status": "pending_payment"}).json()
    assert listed == []

    abandoned = client.get("/public/parking/paypal/cancel", params={"booking_id": booking["id"]})
    assert abandoned.json()["status"] == "cancelled"


def _paid_booking(client):
    booking = client.post("/api/parking/bookings", headers=RECEPTION, json=BOOKING).json()
    client.post(f"/api/parking/bookings/{booking['id']}/payment-order", headers=RECEPTION)
    assert client.get("/public/parking/paypal/return", params={"token": "ORDER1"}).json()["payment_status"] == "paid"
    return booking


def test_return_after_cancel_does_not_capture(tmp_path, providers):
    client = make_client(tmp_path)
    _rates(client)
    booking = client.post("/api/parking/bookings", headers=RECEPTION, json=BOOKING).json()
    client.post(f"/api/parking/bookings/{booking['id']}/payment-order", headers=RECEPTION)
    client.post(f"/api/parking/bookings/{booking['id']}/cancel", headers=RECEPTION)

    late = client.get("/public/parking/paypal/return", params={"token": "ORDER1"})
    assert late.status_code == 400
    assert late.json()["detail"] == "This parking payment can no longer be completed"
    assert providers.captures() == []

    detail = client.get(f"/api/parking/bookings/{booking['id']}", headers=RECEPTION).json()
    assert (detail["status"], detail["payment_status"]) == ("cancelled", "expired")


def test_refund_cancels_booking_and_is_manager_only(tmp_path, providers):
    client = make_client(tmp_path)
    _rates(client)
    booking = _paid_booking(client)

    assert client.post(f"/api/parking/bookings/{booking['id']}/refund", headers=RECEPTION).status_code == 403
    too_much = client.post(f"/api/parking/bookings/{booking['id']}/refund", headers=OWNER, json={"amount": 50})
    assert too_much.status_code == 400
    assert too_much.json()["detail"] == "Refund amount cannot exceed the amount paid"

    refunded = client.post(
        f"/api/parking/bookings/{booking['id']}/refund",
        headers=OWNER,
        json={"amount": 10, "reason": "Car park closed"},
    )
    assert refunded.status_code == 200, refunded.text
    assert (refunded.json()["status"], refunded.json()["payment_status"]) == ("cancelled", "refunded")
    assert refunded.json()["cancelled_at"] is not None
    assert providers.refunds == [
        {"amount": {"currency_code": "GBP", "value": "10.00"}, "note_to_payer": "Car park closed"}
    ]

    with client.testing_session_local() as db:
        payment = db.query(ParkingBookingPayment).one()
        assert payment.status == "refunded"
        assert payment.refunded_at is not None
        assert json.loads(payment.metadata_json)["refunded_amount"] == "10.00"

    again = client.post(f"/api/parking/bookings/{booking['id']}/refund", headers=OWNER)
    assert again.status_code == 400
    assert again.json()["detail"] == "No captured payment found to refund"


def test_mark_paid_settles_manually_then_status_can_complete(tmp_path):
    client = make_client(tmp_path)
    _rates(client)
    booking = client.post("/api/parking/bookings", headers=RECEPTION, json=BOOKING).json()

    paid = client.post(f"/api/parking/bookings/{booking['id']}/mark-paid", headers=RECEPTION)
    assert paid.status_code == 200
    assert (paid.json()["status"], paid.json()["payment_status"]) == ("confirmed", "paid")
    assert paid.json()["confirmed_at"] is not None
    with client.testing_session_local() as db:
        payment = db.query(ParkingBookingPayment).one()
        assert (payment.provider, payment.status, float(payment.amount)) == ("manual", "paid", 15.0)
        assert json.loads(payment.metadata_json)["settled_by"] == "front@anchor.test"

    twice = client.post(f"/api/parking/bookings/{booking['id']}/mark-paid", headers=RECEPTION)
    assert twice.status_code == 400
    assert twice.json()["detail"] == "Parking booking is already paid"

    done = client.patch(f"/api/parking/bookings/{booking['id']}", headers=RECEPTION, json={"status": "completed"})
    assert done.status_code == 200
    assert done.json()["status"] == "completed"
    assert client.get("/api/parking/bookings", headers=RECEPTION, params={"status": "completed"}).json()[0]["id"] == booking["id"]

    bogus = client.patch(f"/api/parking/bookings/{booking['id']}", headers=RECEPTION, json={"payment_status": "comped"})
    assert bogus.status_code == 400
    assert bogus.json()["detail"] == "Invalid parking payment status"

    later = {**BOOKING, "start_at": "2030-06-01T09:00:00", "end_at": "2030-06-01T10:00:00"}
    cancelled = client.post("/api/parking/bookings", headers=RECEPTION, json=later).json()
    client.post(f"/api/parking/bookings/{cancelled['id']}/cancel", headers=RECEPTION)
    refused = client.post(f"/api/parking/bookings/{cancelled['id']}/mark-paid", headers=RECEPTION)
    assert refused.status_code == 400
    assert refused.json()["detail"] == "Cannot mark a cancelled booking as paid"


def test_payment_request_with_sms_disabled_is_recorded_as_skipped(tmp_path, providers, monkeypatch):
    monkeypatch.setattr(settings, "SMS_ENABLED", False)
    client = make_client(tmp_path)
    _rates(client)

    booking = client.post("/api/parking/bookings", headers=RECEPTION, json={**BOOKING, "send_payment_request": True}).json()
    assert booking["initial_request_sms_sent"] is False
    assert providers.sms == []

    notes = client.get(f"/api/parking/bookings/{booking['id']}/notifications", headers=RECEPTION).json()
    assert [(n["event_type"], n["status"], n["sent_at"]) for n in notes] == [("payment_request", "skipped", None)]

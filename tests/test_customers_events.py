from urllib.parse import parse_qs

import httpx
from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from venueos.api_customers import router as customers_router
from venueos.api_events import router as events_router
from venueos.core.http import set_transport
from venueos.db import Base, get_db
from venueos.models import Message

OWNER = {"X-Tenant-Slug": "anchor", "X-Actor-Email": "owner@anchor.test", "X-Actor-Role": "owner"}
RECEPTION = {"X-Tenant-Slug": "anchor", "X-Actor-Email": "front@anchor.test", "X-Actor-Role": "reception"}


def make_client(tmp_path):
    db_path = tmp_path / "test_venueos.db"
    engine = create_engine(f"sqlite:///{db_path}", connect_args={"check_same_thread": False})
    TestingSessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    Base.metadata.create_all(bind=engine)

    app = FastAPI()
    app.include_router(customers_router)
    app.include_router(events_router)

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


def _customer(client, first_name="Jane", mobile="07700 900123", **extra):
    res = client.post(
        "/api/customers",
        headers=OWNER,
        json={"first_name": first_name, "last_name": "Doe", "mobile_number": mobile, **extra},
    )
    assert res.status_code == 201, res.text
    return res.json()


def _event(client, **extra):
    payload = {"name": "Quiz Night", "event_date": "2030-03-14", "event_time": "19:30:00", "capacity": 4, **extra}
    res = client.post("/api/events", headers=OWNER, json=payload)
    assert res.status_code == 201, res.text
    return res.json()


def test_customer_mobile_is_normalized_and_unique(tmp_path):
    client = make_client(tmp_path)

    created = _customer(client)
    assert created["mobile_number"] == "+447700900123"
    assert created["full_name"] == "Jane Doe"

    dup = client.post(
        "/api/customers",
        headers=OWNER,
        json={"first_name": "Other", "mobile_number": "+44 7700 900123"},
    )
    assert dup.status_code == 400
    assert dup.json()["detail"] == "A customer with this mobile number already exists"

    bad = client.post("/api/customers", headers=OWNER, json={"first_name": "Bad", "mobile_number": "12"})
    assert bad.status_code == 400
    assert bad.json()["detail"] == "Invalid mobile number"


def test_customer_search_update_and_delete(tmp_path):
    client = make_client(tmp_path)
    jane = _customer(client)
    _customer(client, first_name="Bob", mobile="07700 900456")

    found = client.get("/api/customers", headers=OWNER, params={"search": "bob"})
    assert found.status_code == 200
    body = found.json()
    assert body["total"] == 1
    assert body["items"][0]["first_name"] == "Bob"

    patched = client.patch(f"/api/customers/{jane['id']}", headers=OWNER, json={"sms_opt_in": False, "notes": " VIP "})
    assert patched.status_code == 200
    assert patched.json()["sms_opt_in"] is False
    assert patched.json()["notes"] == "VIP"

    denied = client.delete(f"/api/customers/{jane['id']}", headers=RECEPTION)
    assert denied.status_code == 403

    deleted = client.delete(f"/api/customers/{jane['id']}", headers=OWNER)
    assert deleted.status_code == 204
    assert client.get(f"/api/customers/{jane['id']}", headers=OWNER).status_code == 404


def test_customer_endpoints_require_actor(tmp_path):
    client = make_client(tmp_path)
    res = client.get("/api/customers", headers={"X-Tenant-Slug": "anchor"})
    assert res.status_code == 401


def test_labels_assign_and_bulk_assign(tmp_path):
    client = make_client(tmp_path)
    jane = _customer(client)
    bob = _customer(client, first_name="Bob", mobile="07700 900456")

    label = client.post("/api/customer-labels", headers=OWNER, json={"name": "Regular", "color": "#10b981"})
    assert label.status_code == 201
    label_id = label.json()["id"]
    assert label.json()["color"] == "#10B981"

    dup = client.post("/api/customer-labels", headers=OWNER, json={"name": "regular"})
    assert dup.status_code == 400

    assigned = client.put(f"/api/customers/{jane['id']}/labels/{label_id}", headers=OWNER)
    assert assigned.status_code == 200
    assert [x["name"] for x in assigned.json()] == ["Regular"]

    bulk = client.post(
        f"/api/customer-labels/{label_id}/bulk-assign",
        headers=OWNER,
        json={"customer_ids": [jane["id"], bob["id"], 999]},
    )
    assert bulk.status_code == 200
    assert bulk.json()["count"] == 1

    removed = client.delete(f"/api/customers/{bob['id']}/labels/{label_id}", headers=OWNER)
    assert removed.status_code == 204
    assert client.get(f"/api/customers/{bob['id']}/labels", headers=OWNER).json() == []


def test_booking_respects_capacity_and_uniqueness(tmp_path):
    client = make_client(tmp_path)
    event = _event(client, capacity=2)
    jane = _customer(client)
    bob = _customer(client, first_name="Bob", mobile="07700 900456")

    first = client.post("/api/bookings", headers=OWNER, json={"event_id": event["id"], "customer_id": jane["id"], "seats": 2})
    assert first.status_code == 201
    assert first.json()["customer_name"] == "Jane Doe"

    detail = client.get(f"/api/events/{event['id']}", headers=OWNER)
    assert detail.json()["booked_seats"] == 2

    full = client.post("/api/bookings", headers=OWNER, json={"event_id": event["id"], "customer_id": bob["id"], "seats": 1})
    assert full.status_code == 400
    assert full.json()["detail"] == "Only 0 seats available (capacity: 2)"

    again = client.post("/api/bookings", headers=OWNER, json={"event_id": event["id"], "customer_id": jane["id"], "seats": 1})
    assert again.status_code == 400
    assert again.json()["detail"] == "This customer already has a booking for this event"

    # reminder-only bookings skip the capacity check
    reminder = client.post("/api/bookings", headers=OWNER, json={"event_id": event["id"], "customer_id": bob["id"], "seats": 0})
    assert reminder.status_code == 201

    too_many = client.patch(f"/api/bookings/{reminder.json()['id']}", headers=OWNER, json={"seats": 1})
    assert too_many.status_code == 400


def test_booking_sends_confirmation_sms_once(tmp_path, twilio_configured):
    client = make_client(tmp_path)
    sent = []

    def handler(request: httpx.Request) -> httpx.Response:
        sent.append(parse_qs(request.content.decode()))
        return httpx.Response(201, json={"sid": f"SM{len(sent)}", "status": "queued"})

    set_transport(httpx.MockTransport(handler))
    event = _event(client)
    jane = _customer(client)
    bob = _customer(client, first_name="Bob", mobile="07700 900456")

    booked = client.post("/api/bookings", headers=OWNER, json={"event_id": event["id"], "customer_id": jane["id"], "seats": 1})
    assert booked.status_code == 201
    assert len(sent) == 1
    assert sent[0]["To"] == ["+447700900123"]
    assert "Quiz Night on 14 Mar at 19:30 is confirmed (1 seat)" in sent[0]["Body"][0]

    bulk = client.post(f"/api/events/{event['id']}/bookings/bulk", headers=OWNER, json={"customer_ids": [jane["id"], bob["id"]]})
    assert bulk.status_code == 200
    assert bulk.json()["count"] == 1
    assert len(sent) == 1

    with client.testing_session_local() as db:
        rows = db.query(Message).all()
        assert len(rows) == 1
        assert rows[0].template_key == "booking_confirmation"
        assert rows[0].twilio_message_sid == "SM1"


def test_booking_survives_sms_provider_outage(tmp_path):
    # Twilio credentials are blank; the booking still lands
    client = make_client(tmp_path)
    event = _event(client)
    jane = _customer(client)

    booked = client.post("/api/bookings", headers=OWNER, json={"event_id": event["id"], "customer_id": jane["id"], "seats": 2})
    assert booked.status_code == 201

    listed = client.get(f"/api/events/{event['id']}/bookings", headers=OWNER)
    assert [b["seats"] for b in listed.json()] == [2]


def test_event_status_validation_and_delete(tmp_path):
    client = make_client(tmp_path)
    bad = client.post(
        "/api/events",
        headers=OWNER,
        json={"name": "Gig", "event_date": "2030-01-01", "status": "maybe"},
    )
    assert bad.status_code == 400
    assert bad.json()["detail"] == "Invalid event status"

    event = _event(client)
    upcoming = client.get("/api/events", headers=RECEPTION, params={"from_date": "2030-01-01"})
    assert [e["id"] for e in upcoming.json()] == [event["id"]]

    assert client.post("/api/events", headers=RECEPTION, json={"name": "X", "event_date": "2030-01-01"}).status_code == 403
    assert client.delete(f"/api/events/{event['id']}", headers=OWNER).status_code == 204
    assert client.get(f"/api/events/{event['id']}", headers=OWNER).status_code == 404

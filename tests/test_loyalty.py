import base64
import json
import re
from datetime import timedelta

from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from venueos.api_customers import router as customers_router
from venueos.api_events import router as events_router
from venueos.api_loyalty import public_router as loyalty_public_router
from venueos.api_loyalty import router as loyalty_router
from venueos.db import Base, get_db
from venueos.core.loyalty import QR_TYPE, encode_qr_payload
from venueos.models import LoyaltyMember, LoyaltyQrToken, RewardRedemption, utc_now_naive

OWNER = {"X-Tenant-Slug": "anchor", "X-Actor-Email": "owner@anchor.test", "X-Actor-Role": "owner"}
RECEPTION = {"X-Tenant-Slug": "anchor", "X-Actor-Email": "front@anchor.test", "X-Actor-Role": "reception"}
GUEST = {"X-Tenant-Slug": "anchor"}


def make_client(tmp_path):
    db_path = tmp_path / "test_venueos.db"
    engine = create_engine(f"sqlite:///{db_path}", connect_args={"check_same_thread": False})
    TestingSessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    Base.metadata.create_all(bind=engine)

    app = FastAPI()
    app.include_router(customers_router)
    app.include_router(events_router)
    app.include_router(loyalty_router)
    app.include_router(loyalty_public_router)

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


def _setup_member(client):
    customer = client.post("/api/customers", headers=OWNER, json={"first_name": "Jane", "last_name": "Doe"}).json()
    event = client.post("/api/events", headers=OWNER, json={"name": "Quiz Night", "event_date": "2030-03-14"}).json()
    member = client.post("/api/loyalty/members", headers=OWNER, json={"customer_id": customer["id"]})
    assert member.status_code == 201, member.text
    return customer, event, member.json()


def test_enrollment_seeds_program_and_welcome_bonus(tmp_path):
    client = make_client(tmp_path)
    customer, _, member = _setup_member(client)

    assert member["tier_name"] == "VIP Member"
    assert member["available_points"] == 50
    assert member["lifetime_points"] == 50

    tiers = client.get("/api/loyalty/tiers", headers=RECEPTION).json()
    assert [t["min_events"] for t in tiers] == [0, 5, 10, 20, 40]

    again = client.post("/api/loyalty/members", headers=OWNER, json={"customer_id": customer["id"]})
    assert again.status_code == 400
    assert again.json()["detail"] == "Customer is already enrolled in the loyalty program"

    txns = client.get(f"/api/loyalty/members/{member['id']}/transactions", headers=OWNER).json()
    assert [(t["transaction_type"], t["points"], t["balance_after"]) for t in txns] == [("bonus", 50, 50)]


def test_check_in_awards_points_once_per_event(tmp_path):
    client = make_client(tmp_path)
    customer, event, member = _setup_member(client)

    first = client.post(
        "/api/loyalty/check-ins",
        headers=RECEPTION,
        json={"event_id": event["id"], "customer_id": customer["id"]},
    )
    assert first.status_code == 200
    body = first.json()
    assert body["points_earned"] == 50
    assert body["available_points"] == 100
    assert body["tier_upgraded"] is False

    second = client.post(
        "/api/loyalty/check-ins",
        headers=RECEPTION,
        json={"event_id": event["id"], "customer_id": customer["id"]},
    )
    assert second.status_code == 400
    assert second.json()["detail"] == "Customer already checked in for this event"


def test_check_in_upgrades_tier_on_threshold(tmp_path):
    client = make_client(tmp_path)
    customer, event, member = _setup_member(client)
    with client.testing_session_local() as db:
        row = db.get(LoyaltyMember, member["id"])
        row.lifetime_events = 4
        db.commit()

    res = client.post(
        "/api/loyalty/check-ins",
        headers=RECEPTION,
        json={"event_id": event["id"], "customer_id": customer["id"]},
    )
    body = res.json()
    assert body["tier"] == "Bronze VIP"
    assert body["tier_upgraded"] is True
    # points use the tier held at check-in time
    assert body["points_earned"] == 50

    detail = client.get(f"/api/loyalty/members/{member['id']}", headers=OWNER).json()
    assert detail["lifetime_events"] == 5
    assert detail["tier_name"] == "Bronze VIP"


def test_non_member_cannot_check_in(tmp_path):
    client = make_client(tmp_path)
    _, event, _ = _setup_member(client)
    stranger = client.post("/api/customers", headers=OWNER, json={"first_name": "Bob"}).json()

    res = client.post(
        "/api/loyalty/check-ins",
        headers=RECEPTION,
        json={"event_id": event["id"], "customer_id": stranger["id"]},
    )
    assert res.status_code == 400
    assert res.json()["detail"] == "Customer is not a loyalty member"


def test_redemption_lifecycle(tmp_path):
    client = make_client(tmp_path)
    _, _, member = _setup_member(client)

    reward = client.post(
        "/api/loyalty/rewards",
        headers=OWNER,
        json={"name": "Free pint", "points_cost": 40, "inventory": 1},
    )
    assert reward.status_code == 201
    reward_id = reward.json()["id"]

    redeemed = client.post("/api/loyalty/redemptions", headers=RECEPTION, json={"member_id": member["id"], "reward_id": reward_id})
    assert redeemed.status_code == 201
    redemption = redeemed.json()
    assert re.fullmatch(r"[A-F]{3}\d{4}", redemption["redemption_code"])
    assert redemption["status"] == "pending"

    detail = client.get(f"/api/loyalty/members/{member['id']}", headers=OWNER).json()
    assert detail["available_points"] == 10

    out_of_stock = client.post("/api/loyalty/redemptions", headers=RECEPTION, json={"member_id": member["id"], "reward_id": reward_id})
    assert out_of_stock.status_code == 400
    assert out_of_stock.json()["detail"] == "Reward is out of stock"

    checked = client.post("/api/loyalty/redemptions/validate", headers=RECEPTION, json={"code": redemption["redemption_code"].lower()})
    assert checked.status_code == 200
    assert checked.json()["id"] == redemption["id"]

    pending = client.get("/api/loyalty/redemptions/pending", headers=RECEPTION).json()
    assert [p["id"] for p in pending] == [redemption["id"]]

    processed = client.post(f"/api/loyalty/redemptions/{redemption['id']}/process", headers=RECEPTION)
    assert processed.status_code == 200
    assert processed.json()["status"] == "fulfilled"
    assert processed.json()["fulfilled_by"] == "front@anchor.test"

    reused = client.post("/api/loyalty/redemptions/validate", headers=RECEPTION, json={"code": redemption["redemption_code"]})
    assert reused.status_code == 400
    assert reused.json()["detail"] == "This code has already been used"

    twice = client.post(f"/api/loyalty/redemptions/{redemption['id']}/process", headers=RECEPTION)
    assert twice.status_code == 400
    assert twice.json()["detail"] == "Already redeemed"

    stats = client.get("/api/loyalty/stats", headers=OWNER).json()
    assert stats["points_redeemed"] == 40
    assert stats["pending_redemptions"] == 0

    # a reward with history is retired rather than removed
    assert client.delete(f"/api/loyalty/rewards/{reward_id}", headers=OWNER).status_code == 204
    assert client.get("/api/loyalty/rewards", headers=OWNER).json() == []
    retired = client.get("/api/loyalty/rewards", headers=OWNER, params={"include_inactive": True}).json()
    assert [(r["id"], r["active"]) for r in retired] == [(reward_id, False)]


def test_redemption_requires_points_and_expires(tmp_path):
    client = make_client(tmp_path)
    _, _, member = _setup_member(client)
    costly = client.post("/api/loyalty/rewards", headers=OWNER, json={"name": "Dinner", "points_cost": 5000}).json()
    cheap = client.post("/api/loyalty/rewards", headers=OWNER, json={"name": "Crisps", "points_cost": 5}).json()

    res = client.post("/api/loyalty/redemptions", headers=RECEPTION, json={"member_id": member["id"], "reward_id": costly["id"]})
    assert res.status_code == 400
    assert res.json()["detail"] == "Insufficient points"

    ok = client.post("/api/loyalty/redemptions", headers=RECEPTION, json={"member_id": member["id"], "reward_id": cheap["id"]}).json()
    with client.testing_session_local() as db:
        row = db.get(RewardRedemption, ok["id"])
        row.expires_at = row.generated_at - timedelta(minutes=1)
        db.commit()

    expired = client.post("/api/loyalty/redemptions/validate", headers=RECEPTION, json={"code": ok["redemption_code"]})
    assert expired.status_code == 400
    assert expired.json()["detail"] == "This code has expired"


def test_points_adjustment_cannot_go_negative(tmp_path):
    client = make_client(tmp_path)
    _, _, member = _setup_member(client)

    res = client.post(
        f"/api/loyalty/members/{member['id']}/points",
        headers=OWNER,
        json={"points": -60, "description": "Correction"},
    )
    assert res.status_code == 400
    assert res.json()["detail"] == "Insufficient points for this adjustment"

    bonus = client.post(
        f"/api/loyalty/members/{member['id']}/points",
        headers=OWNER,
        json={"points": 25, "description": "Birthday", "transaction_type": "bonus"},
    )
    assert bonus.status_code == 200
    assert bonus.json()["available_points"] == 75

    denied = client.post(
        f"/api/loyalty/members/{member['id']}/points",
        headers=RECEPTION,
        json={"points": 25, "description": "Nope"},
    )
    assert denied.status_code == 403


def test_guest_qr_self_check_in_is_single_use(tmp_path):
    client = make_client(tmp_path)
    customer, event, member = _setup_member(client)
    booking = client.post(
        "/api/bookings",
        headers=OWNER,
        json={"event_id": event["id"], "customer_id": customer["id"], "seats": 2},
    ).json()

    qr = client.post("/api/loyalty/qr", headers=OWNER, json={"event_id": event["id"], "booking_id": booking["id"]})
    assert qr.status_code == 200
    qr_data = qr.json()["qr_data"]

    checked = client.post("/public/loyalty/qr/validate", headers=GUEST, json={"qr_data": qr_data})
    assert checked.status_code == 200
    assert checked.json()["customer_name"] == "Jane Doe"
    assert checked.json()["member_id"] == member["id"]

    done = client.post("/public/loyalty/qr/check-in", headers=GUEST, json={"qr_data": qr_data})
    assert done.status_code == 200
    assert done.json()["points_earned"] == 50

    replay = client.post("/public/loyalty/qr/check-in", headers=GUEST, json={"qr_data": qr_data})
    assert replay.status_code == 400

    garbage = client.post("/public/loyalty/qr/validate", headers=GUEST, json={"qr_data": "%%%"})
    assert garbage.status_code == 400
    assert garbage.json()["detail"] == "Invalid QR code format"


def _qr(payload: dict) -> str:
    return base64.b64encode(json.dumps(payload).encode("utf-8")).decode("ascii")


def test_qr_validation_reports_each_failure(tmp_path):
    client = make_client(tmp_path)
    customer, event, _ = _setup_member(client)
    later = (utc_now_naive() + timedelta(hours=1)).isoformat()

    cases = [
        (_qr({"type": "table_order", "event_id": event["id"], "token": "abc", "expires": later}), "Invalid QR code type"),
        (_qr({"type": QR_TYPE, "event_id": event["id"], "expires": later}), "Invalid QR code data"),
        (_qr({"type": QR_TYPE, "event_id": event["id"], "token": "abc", "expires": "next tuesday"}), "Invalid QR code data"),
        (
            encode_qr_payload(
                event_id=event["id"], booking_id=None, token="abc", expires=utc_now_naive() - timedelta(minutes=5)
            ),
            "QR code has expired",
        ),
        (_qr({"type": QR_TYPE, "event_id": event["id"], "token": "unknown", "expires": later}), "Invalid or expired QR code"),
    ]
    for qr_data, detail in cases:
        res = client.post("/public/loyalty/qr/validate", headers=GUEST, json={"qr_data": qr_data})
        assert res.status_code == 400, qr_data
        assert res.json()["detail"] == detail


def test_qr_validation_rejects_member_already_checked_in(tmp_path):
    client = make_client(tmp_path)
    customer, event, _ = _setup_member(client)
    booking = client.post(
        "/api/bookings",
        headers=OWNER,
        json={"event_id": event["id"], "customer_id": customer["id"], "seats": 1},
    ).json()
    qr_data = client.post("/api/loyalty/qr", headers=OWNER, json={"event_id": event["id"], "booking_id": booking["id"]}).json()["qr_data"]

    staff = client.post("/api/loyalty/check-ins", headers=RECEPTION, json={"event_id": event["id"], "customer_id": customer["id"]})
    assert staff.status_code == 200

    res = client.post("/public/loyalty/qr/validate", headers=GUEST, json={"qr_data": qr_data})
    assert res.status_code == 400
    assert res.json()["detail"] == "Already checked in for this event"


def test_rejected_self_check_in_leaves_qr_unused(tmp_path):
    client = make_client(tmp_path)
    _, event, _ = _setup_member(client)
    stranger = client.post("/api/customers", headers=OWNER, json={"first_name": "Bob"}).json()
    booking = client.post(
        "/api/bookings",
        headers=OWNER,
        json={"event_id": event["id"], "customer_id": stranger["id"], "seats": 1},
    ).json()
    qr = client.post("/api/loyalty/qr", headers=OWNER, json={"event_id": event["id"], "booking_id": booking["id"]}).json()

    res = client.post("/public/loyalty/qr/check-in", headers=GUEST, json={"qr_data": qr["qr_data"]})
    assert res.status_code == 400
    assert res.json()["detail"] == "Customer is not a loyalty member"

    with client.testing_session_local() as db:
        token = db.query(LoyaltyQrToken).filter(LoyaltyQrToken.token == qr["token"]).one()
        assert token.used_at is None

    # once enrolled the same code still works
    client.post("/api/loyalty/members", headers=OWNER, json={"customer_id": stranger["id"]})
    retry = client.post("/public/loyalty/qr/check-in", headers=GUEST, json={"qr_data": qr["qr_data"]})
    assert retry.status_code == 200
    with client.testing_session_local() as db:
        token = db.query(LoyaltyQrToken).filter(LoyaltyQrToken.token == qr["token"]).one()
        assert token.used_at is not None


def test_redemption_code_collisions_give_up_after_ten_tries(tmp_path, monkeypatch):
    client = make_client(tmp_path)
    _, _, member = _setup_member(client)
    reward = client.post("/api/loyalty/rewards", headers=OWNER, json={"name": "Crisps", "points_cost": 5}).json()

    calls = []

    def same_code():
        calls.append(1)
        return "ABC1234"

    monkeypatch.setattr("venueos.loyalty.generate_redemption_code", same_code)

    first = client.post("/api/loyalty/redemptions", headers=RECEPTION, json={"member_id": member["id"], "reward_id": reward["id"]})
    assert first.status_code == 201
    assert first.json()["redemption_code"] == "ABC1234"
    assert len(calls) == 1

    second = client.post("/api/loyalty/redemptions", headers=RECEPTION, json={"member_id": member["id"], "reward_id": reward["id"]})
    assert second.status_code == 400
    assert second.json()["detail"] == "Could not generate a unique redemption code"
    assert len(calls) == 11

    detail = client.get(f"/api/loyalty/members/{member['id']}", headers=OWNER).json()
    assert detail["available_points"] == 45


def test_cancel_redemption_refunds_points(tmp_path):
    client = make_client(tmp_path)
    _, _, member = _setup_member(client)
    reward = client.post("/api/loyalty/rewards", headers=OWNER, json={"name": "Half pint", "points_cost": 20}).json()
    body = {"member_id": member["id"], "reward_id": reward["id"]}
    first = client.post("/api/loyalty/redemptions", headers=RECEPTION, json=body).json()
    second = client.post("/api/loyalty/redemptions", headers=RECEPTION, json=body).json()

    history = client.get(f"/api/loyalty/members/{member['id']}/redemptions", headers=RECEPTION).json()
    assert [r["id"] for r in history] == [second["id"], first["id"]]

    denied = client.post(f"/api/loyalty/redemptions/{first['id']}/cancel", headers=RECEPTION)
    assert denied.status_code == 403

    cancelled = client.post(f"/api/loyalty/redemptions/{first['id']}/cancel", headers=OWNER)
    assert cancelled.status_code == 200
    assert cancelled.json()["status"] == "cancelled"

    detail = client.get(f"/api/loyalty/members/{member['id']}", headers=OWNER).json()
    assert detail["available_points"] == 30

    latest = client.get(f"/api/loyalty/members/{member['id']}/transactions", headers=OWNER).json()[0]
    assert (latest["transaction_type"], latest["points"], latest["balance_after"]) == ("adjusted", 20, 30)
    assert latest["description"] == "Redemption cancelled - points refunded"

    again = client.post(f"/api/loyalty/redemptions/{first['id']}/cancel", headers=OWNER)
    assert again.status_code == 400
    assert again.json()["detail"] == "Can only cancel pending redemptions"

    checked = client.post("/api/loyalty/redemptions/validate", headers=RECEPTION, json={"code": first["redemption_code"]})
    assert checked.status_code == 400
    assert checked.json()["detail"] == "This redemption has been cancelled"

    processed = client.post(f"/api/loyalty/redemptions/{first['id']}/process", headers=RECEPTION)
    assert processed.status_code == 400
    assert processed.json()["detail"] == "Cannot process a cancelled redemption"

    missing = client.post("/api/loyalty/redemptions/9999/cancel", headers=OWNER)
    assert missing.status_code == 404
    assert missing.json()["detail"] == "Redemption not found"


def test_event_check_in_list_and_stats(tmp_path):
    client = make_client(tmp_path)
    customer, event, _ = _setup_member(client)
    guest = client.post("/api/customers", headers=OWNER, json={"first_name": "Sam", "last_name": "Lee"}).json()
    client.post("/api/loyalty/members", headers=OWNER, json={"customer_id": guest["id"]})

    staff = client.post("/api/loyalty/check-ins", headers=RECEPTION, json={"event_id": event["id"], "customer_id": customer["id"]})
    assert staff.status_code == 200
    booking = client.post(
        "/api/bookings",
        headers=OWNER,
        json={"event_id": event["id"], "customer_id": guest["id"], "seats": 1},
    ).json()
    qr_data = client.post("/api/loyalty/qr", headers=OWNER, json={"event_id": event["id"], "booking_id": booking["id"]}).json()["qr_data"]
    assert client.post("/public/loyalty/qr/check-in", headers=GUEST, json={"qr_data": qr_data}).status_code == 200

    rows = client.get(f"/api/loyalty/events/{event['id']}/check-ins", headers=RECEPTION).json()
    assert [(r["customer_name"], r["check_in_method"]) for r in rows] == [("Sam Lee", "self"), ("Jane Doe", "manual")]
    assert rows[1]["staff_email"] == "front@anchor.test"

    stats = client.get(f"/api/loyalty/events/{event['id']}/check-ins/stats", headers=RECEPTION).json()
    assert stats["total_check_ins"] == 2
    assert stats["check_in_methods"] == {"manual": 1, "self": 1}
    assert stats["total_points_awarded"] == 100
    assert (stats["qr_check_ins"], stats["manual_check_ins"], stats["self_check_ins"]) == (0, 1, 1)

    missing = client.get("/api/loyalty/events/9999/check-ins", headers=RECEPTION)
    assert missing.status_code == 404

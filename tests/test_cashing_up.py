from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from venueos.api_cashing_up import router as cashing_up_router
from venueos.db import Base, get_db

OWNER = {"X-Tenant-Slug": "anchor", "X-Actor-Email": "owner@anchor.test", "X-Actor-Role": "owner"}
MANAGER = {"X-Tenant-Slug": "anchor", "X-Actor-Email": "boss@anchor.test", "X-Actor-Role": "manager"}
RECEPTION = {"X-Tenant-Slug": "anchor", "X-Actor-Email": "front@anchor.test", "X-Actor-Role": "reception"}

BREAKDOWNS = [
    {"payment_type_code": "cash", "expected_amount": 300, "counted_amount": 295.5},
    {"payment_type_code": "card", "payment_type_label": "Card terminal", "expected_amount": 700, "counted_amount": 700},
]
CASH_COUNTS = [{"denomination": 20, "quantity": 10}, {"denomination": 0.05, "quantity": 3}]


def make_client(tmp_path):
    db_path = tmp_path / "test_venueos.db"
    engine = create_engine(f"sqlite:///{db_path}", connect_args={"check_same_thread": False})
    TestingSessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    Base.metadata.create_all(bind=engine)

    app = FastAPI()
    app.include_router(cashing_up_router)

    def override_get_db():
        db = TestingSessionLocal()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    return TestClient(app)


def _site(client, name="Main bar"):
    res = client.post("/api/cashing-up/sites", headers=OWNER, json={"name": name})
    assert res.status_code == 201, res.text
    return res.json()


def _session(client, site_id, session_date="2030-03-15"):
    res = client.post(
        "/api/cashing-up/sessions",
        headers=RECEPTION,
        json={"site_id": site_id, "session_date": session_date, "breakdowns": BREAKDOWNS, "cash_counts": CASH_COUNTS},
    )
    assert res.status_code == 201, res.text
    return res.json()


def test_sites_and_targets_are_owner_managed(tmp_path):
    client = make_client(tmp_path)
    site = _site(client)

    assert client.post("/api/cashing-up/sites", headers=MANAGER, json={"name": "Garden"}).status_code == 403
    dup = client.post("/api/cashing-up/sites", headers=OWNER, json={"name": "Main bar"})
    assert dup.status_code == 400
    assert dup.json()["detail"] == "A site with this name already exists"

    targets = client.put(
        f"/api/cashing-up/sites/{site['id']}/targets",
        headers=OWNER,
        json={"targets": {"0": 500, "4": 1200}},
    )
    assert targets.status_code == 200
    assert targets.json() == [
        {"day_of_week": 0, "target_amount": 500.0},
        {"day_of_week": 4, "target_amount": 1200.0},
    ]

    cleared = client.put(f"/api/cashing-up/sites/{site['id']}/targets", headers=OWNER, json={"targets": {"0": None}})
    assert [t["day_of_week"] for t in cleared.json()] == [4]

    bad = client.put(f"/api/cashing-up/sites/{site['id']}/targets", headers=OWNER, json={"targets": {"7": 10}})
    assert bad.status_code == 400


def test_session_totals_and_uniqueness(tmp_path):
    client = make_client(tmp_path)
    site = _site(client)
    session = _session(client, site["id"])

    assert session["status"] == "draft"
    assert session["prepared_by"] == "front@anchor.test"
    assert session["total_expected_amount"] == 1000.0
    assert session["total_counted_amount"] == 995.5
    assert session["total_variance_amount"] == -4.5
    assert [(b["payment_type_code"], b["payment_type_label"], b["variance_amount"]) for b in session["breakdowns"]] == [
        ("CASH", "Cash", -4.5),
        ("CARD", "Card terminal", 0.0),
    ]
    assert [c["total_amount"] for c in session["cash_counts"]] == [200.0, 0.15]

    dup = client.post(
        "/api/cashing-up/sessions",
        headers=RECEPTION,
        json={"site_id": site["id"], "session_date": "2030-03-15"},
    )
    assert dup.status_code == 400
    assert dup.json()["detail"] == "A session for this site and date already exists."

    missing = client.post("/api/cashing-up/sessions", headers=RECEPTION, json={"site_id": 999, "session_date": "2030-03-15"})
    assert missing.status_code == 404


def test_session_workflow_and_role_gates(tmp_path):
    client = make_client(tmp_path)
    site = _site(client)
    sid = _session(client, site["id"])["id"]

    edited = client.patch(
        f"/api/cashing-up/sessions/{sid}",
        headers=RECEPTION,
        json={"notes": "Till 2 short", "cash_counts": [{"denomination": 10, "quantity": 2}]},
    )
    assert edited.status_code == 200
    assert edited.json()["notes"] == "Till 2 short"
    # breakdowns untouched by a cash-count-only edit
    assert edited.json()["total_counted_amount"] == 995.5
    assert [c["total_amount"] for c in edited.json()["cash_counts"]] == [20.0]

    early = client.post(f"/api/cashing-up/sessions/{sid}/approve", headers=MANAGER)
    assert early.status_code == 400
    assert early.json()["detail"] == "Only submitted sessions can be approved"

    submitted = client.post(f"/api/cashing-up/sessions/{sid}/submit", headers=RECEPTION)
    assert submitted.json()["status"] == "submitted"
    assert submitted.json()["submitted_at"] is not None

    frozen = client.patch(f"/api/cashing-up/sessions/{sid}", headers=RECEPTION, json={"notes": "late"})
    assert frozen.status_code == 400
    assert frozen.json()["detail"] == "Only draft sessions can be edited"

    assert client.post(f"/api/cashing-up/sessions/{sid}/approve", headers=RECEPTION).status_code == 403
    approved = client.post(f"/api/cashing-up/sessions/{sid}/approve", headers=MANAGER)
    assert approved.json()["status"] == "approved"
    assert approved.json()["approved_by"] == "boss@anchor.test"

    locked = client.post(f"/api/cashing-up/sessions/{sid}/lock", headers=MANAGER)
    assert locked.json()["status"] == "locked"

    assert client.post(f"/api/cashing-up/sessions/{sid}/unlock", headers=MANAGER).status_code == 403
    unlocked = client.post(f"/api/cashing-up/sessions/{sid}/unlock", headers=OWNER)
    assert unlocked.json()["status"] == "approved"
    assert unlocked.json()["locked_at"] is None

    listed = client.get("/api/cashing-up/sessions", headers=RECEPTION, params={"status": "approved"}).json()
    assert [s["id"] for s in listed] == [sid]
    assert client.get("/api/cashing-up/sessions", headers=RECEPTION, params={"status": "odd"}).status_code == 400


def test_weekly_summary_and_insights(tmp_path):
    client = make_client(tmp_path)
    site = _site(client)
    client.put(f"/api/cashing-up/sites/{site['id']}/targets", headers=OWNER, json={"targets": {"4": 1200}})
    session = _session(client, site["id"])

    weekly = client.get(
        "/api/cashing-up/weekly",
        headers=RECEPTION,
        params={"site_id": site["id"], "week_start": "2030-03-13"},
    ).json()
    assert weekly["week_start"] == "2030-03-11"
    assert len(weekly["days"]) == 7
    friday = weekly["days"][4]
    assert friday["date"] == "2030-03-15"
    assert friday["session_id"] == session["id"]
    assert friday["counted"] == 995.5
    assert friday["target"] == 1200.0
    assert weekly["days"][0]["target"] is None
    assert weekly["total_counted"] == 995.5
    assert weekly["total_variance"] == -4.5

    insights = client.get(
        "/api/cashing-up/insights",
        headers=RECEPTION,
        params={"site_id": site["id"], "year": 2030},
    ).json()
    assert insights["session_count"] == 1
    assert insights["day_of_week_average"][4] == {"day_of_week": 4, "day": "Friday", "average": 995.5, "sessions": 1}
    assert [(m["payment_type_code"], m["percentage"]) for m in insights["payment_mix"]] == [
        ("CARD", 70.32),
        ("CASH", 29.68),
    ]
    assert insights["monthly_totals"][2] == {"month": 3, "total": 995.5}
    assert insights["total_variance"] == -4.5

    empty = client.get("/api/cashing-up/insights", headers=RECEPTION, params={"site_id": site["id"], "year": 2031}).json()
    assert empty["session_count"] == 0
    assert empty["payment_mix"] == []

from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from venueos.api_rota import router as rota_router
from venueos.db import Base, get_db

MANAGER = {"X-Tenant-Slug": "anchor", "X-Actor-Email": "boss@anchor.test", "X-Actor-Role": "manager"}
RECEPTION = {"X-Tenant-Slug": "anchor", "X-Actor-Email": "front@anchor.test", "X-Actor-Role": "reception"}

# Monday 2030-03-11 .. Sunday 2030-03-17
WEEK_DAY = "2030-03-14"


def make_client(tmp_path):
    db_path = tmp_path / "test_venueos.db"
    engine = create_engine(f"sqlite:///{db_path}", connect_args={"check_same_thread": False})
    TestingSessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    Base.metadata.create_all(bind=engine)

    app = FastAPI()
    app.include_router(rota_router)

    def override_get_db():
        db = TestingSessionLocal()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    return TestClient(app)


def _employee(client, name="Alex", **extra):
    res = client.post("/api/rota/employees", headers=MANAGER, json={"name": name, **extra})
    assert res.status_code == 201, res.text
    return res.json()


def _week(client, day=WEEK_DAY):
    res = client.get("/api/rota/weeks", headers=RECEPTION, params={"day": day})
    assert res.status_code == 200, res.text
    return res.json()


def _shift(client, week_id, **extra):
    payload = {"week_id": week_id, "shift_date": "2030-03-14", "start_time": "17:00:00", "end_time": "23:00:00", **extra}
    res = client.post("/api/rota/shifts", headers=MANAGER, json=payload)
    assert res.status_code == 201, res.text
    return res.json()


def test_employees_are_soft_deleted(tmp_path):
    client = make_client(tmp_path)
    alex = _employee(client, email="Alex@Anchor.test", role="Bar")
    _employee(client, name="Bea")
    assert alex["email"] == "alex@anchor.test"

    denied = client.post("/api/rota/employees", headers=RECEPTION, json={"name": "Nope"})
    assert denied.status_code == 403

    assert client.delete(f"/api/rota/employees/{alex['id']}", headers=MANAGER).status_code == 204
    active = client.get("/api/rota/employees", headers=RECEPTION).json()
    assert [e["name"] for e in active] == ["Bea"]
    everyone = client.get("/api/rota/employees", headers=RECEPTION, params={"include_inactive": True}).json()
    assert [(e["name"], e["is_active"]) for e in everyone] == [("Alex", False), ("Bea", True)]


def test_week_is_keyed_by_monday(tmp_path):
    client = make_client(tmp_path)
    week = _week(client)
    assert week["week_start"] == "2030-03-11"
    assert week["status"] == "draft"
    assert _week(client, day="2030-03-17")["id"] == week["id"]
    assert _week(client, day="2030-03-18")["id"] != week["id"]


def test_shift_window_validation(tmp_path):
    client = make_client(tmp_path)
    week = _week(client)

    outside = client.post(
        "/api/rota/shifts",
        headers=MANAGER,
        json={"week_id": week["id"], "shift_date": "2030-03-18", "start_time": "10:00:00", "end_time": "12:00:00"},
    )
    assert outside.status_code == 400
    assert outside.json()["detail"] == "Shift date must be within this rota week (2030-03-11 to 2030-03-17)"

    backwards = client.post(
        "/api/rota/shifts",
        headers=MANAGER,
        json={"week_id": week["id"], "shift_date": "2030-03-14", "start_time": "22:00:00", "end_time": "02:00:00"},
    )
    assert backwards.status_code == 400
    assert backwards.json()["detail"] == "End time must be after start time"

    late = _shift(client, week["id"], start_time="22:00:00", end_time="02:00:00", is_overnight=True)
    assert late["is_overnight"] is True
    assert late["is_open_shift"] is True


def test_reassign_move_and_sick(tmp_path):
    client = make_client(tmp_path)
    alex = _employee(client)
    week = _week(client)
    shift = _shift(client, week["id"])

    assigned = client.post(f"/api/rota/shifts/{shift['id']}/reassign", headers=MANAGER, json={"employee_id": alex["id"]})
    assert assigned.status_code == 200
    assert assigned.json()["employee_name"] == "Alex"
    assert assigned.json()["is_open_shift"] is False

    moved = client.post(f"/api/rota/shifts/{shift['id']}/move", headers=MANAGER, json={"shift_date": "2030-03-16"})
    assert moved.json()["shift_date"] == "2030-03-16"
    assert moved.json()["employee_id"] == alex["id"]

    sick = client.post(f"/api/rota/shifts/{shift['id']}/sick", headers=MANAGER, json={"reason": "Flu"})
    assert sick.json()["status"] == "sick"
    assert sick.json()["sick_reason"] == "Flu"

    bad = client.patch(f"/api/rota/shifts/{shift['id']}", headers=MANAGER, json={"status": "holiday"})
    assert bad.status_code == 400
    assert bad.json()["detail"] == "Invalid shift status"


def test_publish_snapshots_shifts_and_tracks_changes(tmp_path):
    client = make_client(tmp_path)
    alex = _employee(client)
    week = _week(client)
    kept = _shift(client, week["id"], employee_id=alex["id"])
    dropped = _shift(client, week["id"], shift_date="2030-03-15")
    client.patch(f"/api/rota/shifts/{dropped['id']}", headers=MANAGER, json={"status": "cancelled"})

    assert client.post(f"/api/rota/weeks/{week['id']}/publish", headers=RECEPTION).status_code == 403

    published = client.post(f"/api/rota/weeks/{week['id']}/publish", headers=MANAGER)
    assert published.status_code == 200
    body = published.json()
    assert body["status"] == "published"
    assert body["published_by"] == "boss@anchor.test"
    assert body["has_unpublished_changes"] is False

    snapshot = client.get("/api/rota/published", headers=RECEPTION, params={"day": "2030-03-12"}).json()
    assert [(s["shift_id"], s["employee_name"]) for s in snapshot] == [(kept["id"], "Alex")]

    client.patch(f"/api/rota/shifts/{kept['id']}", headers=MANAGER, json={"start_time": "18:00:00"})
    assert client.get(f"/api/rota/weeks/{week['id']}", headers=RECEPTION).json()["has_unpublished_changes"] is True

    # staff still see what was published until the next publish
    snapshot = client.get("/api/rota/published", headers=RECEPTION, params={"day": WEEK_DAY}).json()
    assert snapshot[0]["start_time"] == "17:00:00"

    client.post(f"/api/rota/weeks/{week['id']}/publish", headers=MANAGER)
    snapshot = client.get("/api/rota/published", headers=RECEPTION, params={"day": WEEK_DAY}).json()
    assert snapshot[0]["start_time"] == "18:00:00"

    assert client.get("/api/rota/published", headers=RECEPTION, params={"day": "2031-01-01"}).json() == []


def test_templates_auto_populate_once(tmp_path):
    client = make_client(tmp_path)
    alex = _employee(client)
    week = _week(client)

    friday = client.post(
        "/api/rota/templates",
        headers=MANAGER,
        json={"name": "Friday bar", "day_of_week": 4, "start_time": "17:00:00", "end_time": "23:00:00", "employee_id": alex["id"]},
    )
    assert friday.status_code == 201
    client.post(
        "/api/rota/templates",
        headers=MANAGER,
        json={"name": "Saturday close", "day_of_week": 5, "start_time": "22:00:00", "end_time": "02:00:00"},
    )
    client.post(
        "/api/rota/templates",
        headers=MANAGER,
        json={"name": "Floating cover", "start_time": "12:00:00", "end_time": "16:00:00"},
    )

    bad_day = client.post(
        "/api/rota/templates",
        headers=MANAGER,
        json={"name": "Someday", "day_of_week": 9, "start_time": "12:00:00", "end_time": "16:00:00"},
    )
    assert bad_day.status_code == 422

    first = client.post(f"/api/rota/weeks/{week['id']}/auto-populate", headers=MANAGER)
    assert first.json()["count"] == 2
    again = client.post(f"/api/rota/weeks/{week['id']}/auto-populate", headers=MANAGER)
    assert again.json()["count"] == 0

    shifts = client.get(f"/api/rota/weeks/{week['id']}/shifts", headers=RECEPTION).json()
    assert [(s["shift_date"], s["employee_name"], s["is_overnight"]) for s in shifts] == [
        ("2030-03-15", "Alex", False),
        ("2030-03-16", None, True),
    ]

    assert client.delete(f"/api/rota/templates/{friday.json()['id']}", headers=MANAGER).status_code == 204
    shifts = client.get(f"/api/rota/weeks/{week['id']}/shifts", headers=RECEPTION).json()
    assert shifts[0]["template_id"] is None
    assert len(client.get("/api/rota/templates", headers=RECEPTION).json()) == 2

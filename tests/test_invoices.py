from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from scripts.job_worker import process_once
from venueos.api import router as platform_router
from venueos.api_invoices import router as invoices_router
from venueos.core.invoice_math import next_recurring_date
from venueos.db import Base, get_db
from venueos.models import BackgroundJob, Invoice

OWNER = {"X-Tenant-Slug": "anchor", "X-Actor-Email": "owner@anchor.test", "X-Actor-Role": "owner"}
MANAGER = {"X-Tenant-Slug": "anchor", "X-Actor-Email": "boss@anchor.test", "X-Actor-Role": "manager"}
RECEPTION = {"X-Tenant-Slug": "anchor", "X-Actor-Email": "front@anchor.test", "X-Actor-Role": "reception"}

LINES = [
    {"description": "Room hire", "quantity": 2, "unit_price": 10, "discount_percentage": 10, "vat_rate": 20},
    {"description": "Deposit", "quantity": 1, "unit_price": 50, "vat_rate": 0},
]


def make_client(tmp_path):
    db_path = tmp_path / "test_venueos.db"
    engine = create_engine(f"sqlite:///{db_path}", connect_args={"check_same_thread": False})
    TestingSessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    Base.metadata.create_all(bind=engine)

    app = FastAPI()
    app.include_router(platform_router)
    app.include_router(invoices_router)

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


def _vendor(client, **extra):
    res = client.post("/api/vendors", headers=OWNER, json={"name": "Brewery Ltd", "payment_terms": 14, **extra})
    assert res.status_code == 201, res.text
    return res.json()


def _invoice(client, vendor_id, **extra):
    payload = {
        "vendor_id": vendor_id,
        "invoice_date": "2020-01-10",
        "invoice_discount_percentage": 10,
        "line_items": LINES,
        **extra,
    }
    res = client.post("/api/invoices", headers=OWNER, json=payload)
    assert res.status_code == 201, res.text
    return res.json()


def test_create_invoice_numbers_and_totals(tmp_path):
    client = make_client(tmp_path)
    vendor = _vendor(client)

    first = _invoice(client, vendor["id"])
    assert first["invoice_number"] == "INV-003UX"
    assert first["status"] == "draft"
    assert first["due_date"] == "2020-01-24"
    assert first["subtotal_amount"] == 68.0
    assert first["discount_amount"] == 6.8
    assert first["vat_amount"] == 3.24
    assert first["total_amount"] == 64.44
    assert [li["total_amount"] for li in first["line_items"]] == [19.44, 45.0]

    second = _invoice(client, vendor["id"], reference="PO-77")
    assert second["invoice_number"] == "INV-003UY"

    found = client.get("/api/invoices", headers=OWNER, params={"search": "PO-77"}).json()
    assert found["total"] == 1
    assert found["items"][0]["id"] == second["id"]
    assert found["items"][0]["line_items"] == []


def test_invoice_validation_errors(tmp_path):
    client = make_client(tmp_path)
    vendor = _vendor(client)

    empty = client.post(
        "/api/invoices",
        headers=OWNER,
        json={"vendor_id": vendor["id"], "invoice_date": "2020-01-10", "line_items": []},
    )
    assert empty.status_code == 400
    assert empty.json()["detail"] == "Invoice must have at least one line item"

    backwards = client.post(
        "/api/invoices",
        headers=OWNER,
        json={"vendor_id": vendor["id"], "invoice_date": "2020-01-10", "due_date": "2020-01-01", "line_items": LINES},
    )
    assert backwards.status_code == 422

    missing_vendor = client.post(
        "/api/invoices",
        headers=OWNER,
        json={"vendor_id": 999, "invoice_date": "2020-01-10", "line_items": LINES},
    )
    assert missing_vendor.status_code == 404

    assert client.get("/api/invoices", headers=RECEPTION).status_code == 403


def test_status_transitions_payments_and_overdue_projection(tmp_path):
    client = make_client(tmp_path)
    vendor = _vendor(client)
    invoice = _invoice(client, vendor["id"])
    iid = invoice["id"]

    jump = client.post(f"/api/invoices/{iid}/status", headers=MANAGER, json={"status": "paid"})
    assert jump.status_code == 400
    assert jump.json()["detail"] == "Invalid status transition from draft to paid"

    draft_payment = client.post(
        f"/api/invoices/{iid}/payments",
        headers=MANAGER,
        json={"amount": 10, "payment_date": "2020-01-20", "payment_method": "cash"},
    )
    assert draft_payment.status_code == 400

    sent = client.post(f"/api/invoices/{iid}/status", headers=MANAGER, json={"status": "sent"})
    assert sent.status_code == 200
    # due date is long gone, so a sent invoice reads as overdue
    assert sent.json()["status"] == "overdue"

    locked = client.patch(f"/api/invoices/{iid}", headers=MANAGER, json={"reference": "late edit"})
    assert locked.status_code == 400
    assert locked.json()["detail"] == "Only draft invoices can be edited"

    partial = client.post(
        f"/api/invoices/{iid}/payments",
        headers=MANAGER,
        json={"amount": 20, "payment_date": "2020-02-01", "payment_method": "bank_transfer"},
    )
    assert partial.status_code == 200
    assert partial.json()["status"] == "partially_paid"
    assert partial.json()["paid_amount"] == 20.0

    too_much = client.post(
        f"/api/invoices/{iid}/payments",
        headers=MANAGER,
        json={"amount": 100, "payment_date": "2020-02-02", "payment_method": "card"},
    )
    assert too_much.status_code == 400
    assert too_much.json()["detail"] == "Payment amount exceeds outstanding balance"

    rest = client.post(
        f"/api/invoices/{iid}/payments",
        headers=MANAGER,
        json={"amount": 44.44, "payment_date": "2020-02-03", "payment_method": "card"},
    )
    assert rest.json()["status"] == "paid"
    assert len(rest.json()["payments"]) == 2

    assert client.delete(f"/api/invoices/{iid}", headers=MANAGER).status_code == 400


def test_draft_edit_recalculates_and_delete(tmp_path):
    client = make_client(tmp_path)
    vendor = _vendor(client)
    invoice = _invoice(client, vendor["id"])

    patched = client.patch(
        f"/api/invoices/{invoice['id']}",
        headers=OWNER,
        json={"invoice_discount_percentage": 0, "line_items": [{"description": "Hire", "quantity": 1, "unit_price": 100}]},
    )
    assert patched.status_code == 200
    assert patched.json()["total_amount"] == 120.0
    assert len(patched.json()["line_items"]) == 1

    summary = client.get("/api/invoices/summary", headers=OWNER).json()
    assert summary["count_draft"] == 1

    assert client.delete(f"/api/invoices/{invoice['id']}", headers=OWNER).status_code == 204
    assert client.get(f"/api/invoices/{invoice['id']}", headers=OWNER).status_code == 404


def test_invoice_pdf_download(tmp_path):
    client = make_client(tmp_path)
    vendor = _vendor(client, address="1 High Street")
    invoice = _invoice(client, vendor["id"])

    res = client.get(f"/api/invoices/{invoice['id']}/pdf", headers=OWNER)
    assert res.status_code == 200
    assert res.headers["content-type"] == "application/pdf"
    assert 'filename="invoice_INV-003UX.pdf"' in res.headers["content-disposition"]
    assert res.content.startswith(b"%PDF")


def test_vendor_with_invoices_is_deactivated_not_deleted(tmp_path):
    client = make_client(tmp_path)
    used = _vendor(client)
    unused = _vendor(client, name="Spare Supplier")
    _invoice(client, used["id"])

    assert client.delete(f"/api/vendors/{unused['id']}", headers=OWNER).json()["outcome"] == "deleted"
    assert client.delete(f"/api/vendors/{used['id']}", headers=OWNER).json()["outcome"] == "deactivated"

    assert client.get("/api/vendors", headers=OWNER).json() == []
    everyone = client.get("/api/vendors", headers=OWNER, params={"include_inactive": True}).json()
    assert [(v["name"], v["is_active"]) for v in everyone] == [("Brewery Ltd", False)]


def test_recurring_invoice_schedule_runs_until_end_date(tmp_path):
    client = make_client(tmp_path)
    vendor = _vendor(client)
    created = client.post(
        "/api/recurring-invoices",
        headers=OWNER,
        json={
            "vendor_id": vendor["id"],
            "frequency": "monthly",
            "start_date": "2020-01-31",
            "end_date": "2020-03-15",
            "days_before_due": 7,
            "line_items": [{"description": "Keg rental", "quantity": 1, "unit_price": 30, "vat_rate": 20}],
        },
    )
    assert created.status_code == 201, created.text
    rid = created.json()["id"]
    assert created.json()["next_invoice_date"] == "2020-01-31"

    first = client.post("/api/recurring-invoices/run-due", headers=OWNER).json()
    assert first["generated"] == 1
    assert first["failed"] == []
    detail = client.get(f"/api/recurring-invoices/{rid}", headers=OWNER).json()
    assert detail["next_invoice_date"] == "2020-02-29"
    assert detail["last_invoice_id"] == first["invoice_ids"][0]

    generated = client.get(f"/api/invoices/{first['invoice_ids'][0]}", headers=OWNER).json()
    assert generated["total_amount"] == 36.0
    assert generated["status"] == "draft"

    second = client.post("/api/recurring-invoices/run-due", headers=OWNER).json()
    assert second["generated"] == 1
    assert client.get(f"/api/recurring-invoices/{rid}", headers=OWNER).json()["is_active"] is False

    third = client.post("/api/recurring-invoices/run-due", headers=OWNER).json()
    assert third["generated"] == 0

    inactive = client.post(f"/api/recurring-invoices/{rid}/generate", headers=OWNER)
    assert inactive.status_code == 400
    assert inactive.json()["detail"] == "Recurring invoice is not active"

    assert client.delete(f"/api/recurring-invoices/{rid}", headers=OWNER).json()["outcome"] == "deactivated"


def test_failed_recurring_run_leaves_no_orphan_invoice(tmp_path, monkeypatch):
    client = make_client(tmp_path)
    vendor = _vendor(client)
    rid = client.post(
        "/api/recurring-invoices",
        headers=OWNER,
        json={
            "vendor_id": vendor["id"],
            "frequency": "weekly",
            "start_date": "2020-01-06",
            "line_items": [{"description": "Glass wash", "quantity": 1, "unit_price": 12, "vat_rate": 20}],
        },
    ).json()["id"]

    def broken_schedule(current, frequency):
        raise ValueError("Unsupported frequency")

    monkeypatch.setattr("venueos.recurring_invoices.next_recurring_date", broken_schedule)
    run = client.post("/api/recurring-invoices/run-due", headers=OWNER).json()
    assert run["generated"] == 0
    assert run["failed"] == [{"recurring_id": rid, "error": "Unsupported frequency"}]

    with client.testing_session_local() as db:
        assert db.query(Invoice).count() == 0
    detail = client.get(f"/api/recurring-invoices/{rid}", headers=OWNER).json()
    assert detail["next_invoice_date"] == "2020-01-06"
    assert detail["last_invoice_id"] is None

    monkeypatch.setattr("venueos.recurring_invoices.next_recurring_date", next_recurring_date)
    retry = client.post("/api/recurring-invoices/run-due", headers=OWNER).json()
    assert retry["generated"] == 1


def test_worker_persists_overdue_status(tmp_path):
    client = make_client(tmp_path)
    vendor = _vendor(client)
    invoice = _invoice(client, vendor["id"])
    client.post(f"/api/invoices/{invoice['id']}/status", headers=OWNER, json={"status": "sent"})

    job = client.post("/api/jobs", headers=OWNER, json={"job_type": "persist_overdue_invoices"})
    assert job.status_code == 201

    processed = process_once(
        queue="default",
        worker_id="test-worker",
        batch_size=5,
        session_factory=client.testing_session_local,
    )
    assert processed == 1

    with client.testing_session_local() as db:
        assert db.get(Invoice, invoice["id"]).status == "overdue"
        row = db.get(BackgroundJob, job.json()["id"])
        assert row.status == "succeeded"
        assert row.result_json == '{"updated": 1}'

    overdue = client.get("/api/invoices", headers=OWNER, params={"status": "overdue"}).json()
    assert overdue["total"] == 1


def test_unknown_job_type_is_rejected(tmp_path):
    client = make_client(tmp_path)
    res = client.post("/api/jobs", headers=OWNER, json={"job_type": "mine_bitcoin"})
    assert res.status_code == 400
    assert client.post("/api/jobs", headers=MANAGER, json={"job_type": "send_sms"}).status_code == 403

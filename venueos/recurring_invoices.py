from datetime import date, timedelta

import structlog
from sqlalchemy import select
from sqlalchemy.orm import Session

from .core.invoice_math import money, next_recurring_date, to_decimal
from .core.validation import clean_text
from .enterprise import safe_audit
from .errors import NotFoundError
from .invoices import announce_invoice_created, get_vendor, stage_invoice, validate_discount, validate_line_items
from .models import RecurringInvoice, RecurringInvoiceLineItem, utc_now_naive

logger = structlog.get_logger("venueos.recurring_invoices")

FREQUENCIES = {"weekly", "monthly", "quarterly", "yearly"}


def get_recurring_invoice(db: Session, tenant_id: int, recurring_id: int) -> RecurringInvoice:
    row = db.execute(
        select(RecurringInvoice).where(RecurringInvoice.tenant_id == tenant_id, RecurringInvoice.id == recurring_id)
    ).scalar_one_or_none()
    if not row:
        raise NotFoundError("Recurring invoice not found")
    return row


def list_recurring_invoices(db: Session, tenant_id: int, active_only: bool = False) -> list[RecurringInvoice]:
    q = db.query(RecurringInvoice).filter(RecurringInvoice.tenant_id == tenant_id)
    if active_only:
        q = q.filter(RecurringInvoice.is_active.is_(True))
    return q.order_by(RecurringInvoice.next_invoice_date.asc(), RecurringInvoice.id.asc()).all()


def _validate_schedule(frequency: str, start_date: date, end_date: date | None, days_before_due: int) -> None:
    if frequency not in FREQUENCIES:
        raise ValueError("Invalid frequency")
    if end_date is not None and end_date < start_date:
        raise ValueError("End date must be on or after start date")
    if days_before_due < 0 or days_before_due > 365:
        raise ValueError("Days before due must be between 0 and 365")


def _set_line_items(row: RecurringInvoice, items: list[dict]) -> None:
    row.line_items.clear()
    for item in items:
        row.line_items.append(
            RecurringInvoiceLineItem(
                catalog_item_id=item["catalog_item_id"],
                description=item["description"],
                quantity=item["quantity"],
                unit_price=money(item["unit_price"]),
                discount_percentage=item["discount_percentage"],
                vat_rate=item["vat_rate"],
            )
        )


def create_recurring_invoice(db: Session, tenant_id: int, data: dict, actor_email: str | None = None) -> RecurringInvoice:
    vendor = get_vendor(db, tenant_id, data["vendor_id"])
    frequency = (data.get("frequency") or "").strip().lower()
    start_date = data["start_date"]
    end_date = data.get("end_date")
    days_before_due = int(data["days_before_due"]) if data.get("days_before_due") is not None else 30
    _validate_schedule(frequency, start_date, end_date, days_before_due)
    items = validate_line_items(data.get("line_items") or [])

    row = RecurringInvoice(
        tenant_id=tenant_id,
        vendor_id=vendor.id,
        frequency=frequency,
        start_date=start_date,
        end_date=end_date,
        next_invoice_date=start_date,
        days_before_due=days_before_due,
        reference=clean_text(data.get("reference"), 200),
        invoice_discount_percentage=validate_discount(data.get("invoice_discount_percentage")),
        notes=clean_text(data.get("notes")),
        internal_notes=clean_text(data.get("internal_notes")),
        is_active=bool(data.get("is_active", True)),
        created_at=utc_now_naive(),
        updated_at=utc_now_naive(),
    )
    _set_line_items(row, items)
    db.add(row)
    db.commit()
    db.refresh(row)
    logger.info("recurring_invoice_created", recurring_id=row.id, frequency=frequency)
    safe_audit(db, tenant_id, "create", "recurring_invoice", row.id, actor_email=actor_email)
    return row


def update_recurring_invoice(
    db: Session,
    tenant_id: int,
    recurring_id: int,
    changes: dict,
    actor_email: str | None = None,
) -> RecurringInvoice:
    row = get_recurring_invoice(db, tenant_id, recurring_id)
    if changes.get("vendor_id") is not None:
        row.vendor_id = get_vendor(db, tenant_id, changes["vendor_id"]).id
    frequency = (changes.get("frequency") or row.frequency).strip().lower()
    start_date = changes.get("start_date") or row.start_date
    end_date = changes["end_date"] if "end_date" in changes else row.end_date
    days_before_due = (
        int(changes["days_before_due"]) if changes.get("days_before_due") is not None else row.days_before_due
    )
    _validate_schedule(frequency, start_date, end_date, days_before_due)
    row.frequency = frequency
    if changes.get("start_date") and not row.last_invoice_id:
        row.next_invoice_date = start_date
    row.start_date = start_date
    row.end_date = end_date
    row.days_before_due = days_before_due
    if changes.get("next_invoice_date") is not None:
        row.next_invoice_date = changes["next_invoice_date"]
    for field, limit in (("reference", 200), ("notes", None), ("internal_notes", None)):
        if field in changes:
            setattr(row, field, clean_text(changes[field], limit))
    if changes.get("invoice_discount_percentage") is not None:
        row.invoice_discount_percentage = validate_discount(changes["invoice_discount_percentage"])
    if changes.get("line_items") is not None:
        _set_line_items(row, validate_line_items(changes["line_items"]))
    row.updated_at = utc_now_naive()
    db.commit()
    db.refresh(row)
    safe_audit(db, tenant_id, "update", "recurring_invoice", row.id, actor_email=actor_email)
    return row


def toggle_recurring_invoice(db: Session, tenant_id: int, recurring_id: int, actor_email: str | None = None) -> RecurringInvoice:
    row = get_recurring_invoice(db, tenant_id, recurring_id)
    row.is_active = not row.is_active
    row.updated_at = utc_now_naive()
    db.commit()
    db.refresh(row)
    safe_audit(
        db,
        tenant_id,
        "toggle",
        "recurring_invoice",
        row.id,
        actor_email=actor_email,
        payload={"is_active": row.is_active},
    )
    return row


def delete_recurring_invoice(db: Session, tenant_id: int, recurring_id: int, actor_email: str | None = None) -> str:
    """Deactivates once invoices have been generated from it; otherwise deletes."""
    row = get_recurring_invoice(db, tenant_id, recurring_id)
    if row.last_invoice_id:
        row.is_active = False
        row.updated_at = utc_now_naive()
        outcome = "deactivated"
    else:
        db.delete(row)
        outcome = "deleted"
    db.commit()
    safe_audit(db, tenant_id, "delete", "recurring_invoice", recurring_id, actor_email=actor_email, payload={"outcome": outcome})
    return outcome


def generate_from_recurring(
    db: Session,
    tenant_id: int,
    recurring_id: int,
    today: date | None = None,
    actor_email: str | None = None,
):
    row = get_recurring_invoice(db, tenant_id, recurring_id)
    if not row.is_active:
        raise ValueError("Recurring invoice is not active")
    invoice_date = today or utc_now_naive().date()
    invoice = stage_invoice(
        db,
        tenant_id,
        vendor_id=row.vendor_id,
        invoice_date=invoice_date,
        due_date=invoice_date + timedelta(days=row.days_before_due),
        reference=row.reference,
        invoice_discount_percentage=row.invoice_discount_percentage,
        notes=row.notes,
        internal_notes=row.internal_notes,
        line_items=[
            {
                "description": li.description,
                "quantity": to_decimal(li.quantity),
                "unit_price": to_decimal(li.unit_price),
                "discount_percentage": to_decimal(li.discount_percentage),
                "vat_rate": to_decimal(li.vat_rate),
                "catalog_item_id": li.catalog_item_id,
            }
            for li in row.line_items
        ],
        actor_email=actor_email,
    )

    row.next_invoice_date = next_recurring_date(row.next_invoice_date, row.frequency)
    row.last_invoice_id = invoice.id
    if row.end_date and row.next_invoice_date > row.end_date:
        row.is_active = False
        logger.info("recurring_invoice_completed", recurring_id=row.id)
    row.updated_at = utc_now_naive()
    # the invoice and the schedule advance land in one commit
    db.commit()
    db.refresh(invoice)
    announce_invoice_created(db, tenant_id, invoice, actor_email=actor_email)
    logger.info(
        "recurring_invoice_generated",
        recurring_id=row.id,
        invoice_id=invoice.id,
        next_invoice_date=row.next_invoice_date.isoformat(),
    )
    return invoice


def process_due_recurring_invoices(db: Session, tenant_id: int | None = None, today: date | None = None) -> dict:
    run_date = today or utc_now_naive().date()
    q = db.query(RecurringInvoice).filter(
        RecurringInvoice.is_active.is_(True),
        RecurringInvoice.next_invoice_date <= run_date,
    )
    if tenant_id is not None:
        q = q.filter(RecurringInvoice.tenant_id == tenant_id)
    due = q.order_by(RecurringInvoice.id.asc()).all()

    generated, failed = [], []
    for row in due:
        try:
            invoice = generate_from_recurring(db, row.tenant_id, row.id, today=run_date)
        except (ValueError, LookupError) as exc:
            db.rollback()
            failed.append({"recurring_id": row.id, "error": str(exc)})
            logger.warning("recurring_invoice_failed", recurring_id=row.id, error=str(exc))
            continue
        generated.append(invoice.id)
    return {"generated": len(generated), "invoice_ids": generated, "failed": failed}

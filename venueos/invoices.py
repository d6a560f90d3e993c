from datetime import date, timedelta

import structlog
from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .config import settings
from .core.cache import dashboard_tag, revalidate_tag
from .core.invoice_math import add_months, calculate_invoice_totals, format_invoice_number, money, to_decimal
from .core.retry import with_retry
from .core.validation import clean_text, normalize_email, sanitize_search
from .enterprise import safe_audit
from .errors import NotFoundError
from .models import (
    Invoice,
    InvoiceLineItem,
    InvoicePayment,
    InvoiceSeries,
    LineItemCatalog,
    Vendor,
    utc_now_naive,
)

logger = structlog.get_logger("venueos.invoices")

INVOICE_STATUSES = {"draft", "sent", "paid", "partially_paid", "overdue", "void", "written_off"}
UNPAID_STATUSES = ("draft", "sent", "partially_paid", "overdue")
PAYABLE_STATUSES = {"sent", "partially_paid", "overdue"}
PAYMENT_METHODS = {"bank_transfer", "card", "cash", "cheque", "other"}
DEFAULT_SERIES = "INV"

STATUS_TRANSITIONS: dict[str, set[str]] = {
    "draft": {"sent", "void"},
    "sent": {"paid", "partially_paid", "overdue", "void", "written_off"},
    "partially_paid": {"paid", "overdue", "void", "written_off"},
    "overdue": {"paid", "partially_paid", "void", "written_off"},
    "paid": set(),
    "void": set(),
    "written_off": set(),
}


def _today() -> date:
    return utc_now_naive().date()


def effective_status(invoice: Invoice, today: date | None = None) -> str:
    """Sent invoices past their due date read as overdue even before the nightly job persists it."""
    if invoice.status == "sent" and invoice.due_date < (today or _today()):
        return "overdue"
    return invoice.status


# Vendors


def get_vendor(db: Session, tenant_id: int, vendor_id: int) -> Vendor:
    row = db.execute(
        select(Vendor).where(Vendor.tenant_id == tenant_id, Vendor.id == vendor_id)
    ).scalar_one_or_none()
    if not row:
        raise NotFoundError("Vendor not found")
    return row


def list_vendors(db: Session, tenant_id: int, include_inactive: bool = False) -> list[Vendor]:
    q = db.query(Vendor).filter(Vendor.tenant_id == tenant_id)
    if not include_inactive:
        q = q.filter(Vendor.is_active.is_(True))
    return q.order_by(Vendor.name.asc()).all()


def _apply_vendor_fields(row: Vendor, data: dict) -> None:
    if "name" in data:
        name = clean_text(data["name"], 200)
        if not name:
            raise ValueError("Vendor name is required")
        row.name = name
    for field, limit in (("contact_name", 200), ("phone", 40), ("address", 500), ("vat_number", 40), ("notes", 1000)):
        if field in data:
            setattr(row, field, clean_text(data[field], limit))
    if "email" in data:
        row.email = normalize_email(data["email"])
    if data.get("payment_terms") is not None:
        terms = int(data["payment_terms"])
        if terms < 0 or terms > 365:
            raise ValueError("Payment terms must be between 0 and 365 days")
        row.payment_terms = terms
    if data.get("is_active") is not None:
        row.is_active = bool(data["is_active"])


def create_vendor(db: Session, tenant_id: int, data: dict, actor_email: str | None = None) -> Vendor:
    row = Vendor(tenant_id=tenant_id, payment_terms=30, is_active=True, created_at=utc_now_naive())
    _apply_vendor_fields(row, {"name": data.get("name"), **data})
    db.add(row)
    db.commit()
    db.refresh(row)
    safe_audit(db, tenant_id, "create", "vendor", row.id, actor_email=actor_email, payload={"name": row.name})
    return row


def update_vendor(db: Session, tenant_id: int, vendor_id: int, changes: dict, actor_email: str | None = None) -> Vendor:
    row = get_vendor(db, tenant_id, vendor_id)
    _apply_vendor_fields(row, changes)
    db.commit()
    db.refresh(row)
    safe_audit(db, tenant_id, "update", "vendor", row.id, actor_email=actor_email)
    return row


def delete_vendor(db: Session, tenant_id: int, vendor_id: int, actor_email: str | None = None) -> str:
    """Returns 'deactivated' when the vendor has invoices, else 'deleted'."""
    row = get_vendor(db, tenant_id, vendor_id)
    has_invoices = db.execute(select(Invoice.id).where(Invoice.vendor_id == row.id).limit(1)).first()
    if has_invoices:
        row.is_active = False
        outcome = "deactivated"
    else:
        db.delete(row)
        outcome = "deleted"
    db.commit()
    safe_audit(db, tenant_id, "delete", "vendor", vendor_id, actor_email=actor_email, payload={"outcome": outcome})
    return outcome


# Line item catalog


def get_catalog_item(db: Session, tenant_id: int, item_id: int) -> LineItemCatalog:
    row = db.execute(
        select(LineItemCatalog).where(LineItemCatalog.tenant_id == tenant_id, LineItemCatalog.id == item_id)
    ).scalar_one_or_none()
    if not row:
        raise NotFoundError("Catalog item not found")
    return row


def list_catalog_items(db: Session, tenant_id: int) -> list[LineItemCatalog]:
    return (
        db.query(LineItemCatalog)
        .filter(LineItemCatalog.tenant_id == tenant_id)
        .order_by(LineItemCatalog.name.asc())
        .all()
    )


def _apply_catalog_fields(row: LineItemCatalog, data: dict) -> None:
    if "name" in data:
        name = clean_text(data["name"], 200)
        if not name:
            raise ValueError("Item name is required")
        row.name = name
    if "description" in data:
        row.description = clean_text(data["description"], 500)
    if data.get("default_price") is not None:
        price = to_decimal(data["default_price"])
        if price < 0:
            raise ValueError("Default price cannot be negative")
        row.default_price = money(price)
    if data.get("default_vat_rate") is not None:
        rate = to_decimal(data["default_vat_rate"])
        if rate < 0 or rate > 100:
            raise ValueError("VAT rate must be between 0 and 100")
        row.default_vat_rate = rate


def create_catalog_item(db: Session, tenant_id: int, data: dict, actor_email: str | None = None) -> LineItemCatalog:
    row = LineItemCatalog(tenant_id=tenant_id, default_price=0, default_vat_rate=20, created_at=utc_now_naive())
    _apply_catalog_fields(row, {"name": data.get("name"), **data})
    db.add(row)
    db.commit()
    db.refresh(row)
    safe_audit(db, tenant_id, "create", "line_item_catalog", row.id, actor_email=actor_email)
    return row


def update_catalog_item(db: Session, tenant_id: int, item_id: int, changes: dict, actor_email: str | None = None) -> LineItemCatalog:
    row = get_catalog_item(db, tenant_id, item_id)
    _apply_catalog_fields(row, changes)
    db.commit()
    db.refresh(row)
    safe_audit(db, tenant_id, "update", "line_item_catalog", row.id, actor_email=actor_email)
    return row


def delete_catalog_item(db: Session, tenant_id: int, item_id: int, actor_email: str | None = None) -> None:
    row = get_catalog_item(db, tenant_id, item_id)
    db.query(InvoiceLineItem).filter(InvoiceLineItem.catalog_item_id == row.id).update(
        {InvoiceLineItem.catalog_item_id: None}, synchronize_session=False
    )
    db.delete(row)
    db.commit()
    safe_audit(db, tenant_id, "delete", "line_item_catalog", item_id, actor_email=actor_email)


# Numbering


def _next_sequence(db: Session, tenant_id: int, series_code: str) -> int:
    series = db.execute(
        select(InvoiceSeries).where(InvoiceSeries.tenant_id == tenant_id, InvoiceSeries.series_code == series_code)
    ).scalar_one_or_none()
    if series is None:
        series = InvoiceSeries(tenant_id=tenant_id, series_code=series_code, current_sequence=0)
        db.add(series)
        db.flush()
    series.current_sequence += 1
    db.flush()
    return series.current_sequence


def generate_invoice_number(db: Session, tenant_id: int, series_code: str = DEFAULT_SERIES) -> str:
    try:
        sequence = with_retry(_next_sequence, db, tenant_id, series_code, on_retry=lambda exc: db.rollback())
    except IntegrityError as exc:
        db.rollback()
        raise ValueError("Failed to generate invoice number") from exc
    return format_invoice_number(series_code, sequence, settings.INVOICE_NUMBER_OFFSET)


# Invoices


def validate_line_items(items: list[dict]) -> list[dict]:
    if not items:
        raise ValueError("Invoice must have at least one line item")
    cleaned = []
    for item in items:
        description = clean_text(item.get("description"), 500)
        if not description:
            raise ValueError("Line item description is required")
        quantity = to_decimal(item.get("quantity", 1))
        unit_price = to_decimal(item.get("unit_price", 0))
        discount = to_decimal(item.get("discount_percentage") or 0)
        vat_rate = to_decimal(item["vat_rate"] if item.get("vat_rate") is not None else 20)
        if quantity <= 0:
            raise ValueError("Quantity must be greater than zero")
        if unit_price < 0:
            raise ValueError("Unit price cannot be negative")
        if discount < 0 or discount > 100:
            raise ValueError("Discount must be between 0 and 100")
        if vat_rate < 0 or vat_rate > 100:
            raise ValueError("VAT rate must be between 0 and 100")
        cleaned.append(
            {
                "description": description,
                "quantity": quantity,
                "unit_price": unit_price,
                "discount_percentage": discount,
                "vat_rate": vat_rate,
                "catalog_item_id": item.get("catalog_item_id"),
            }
        )
    return cleaned


def validate_discount(value):
    pct = to_decimal(value or 0)
    if pct < 0 or pct > 100:
        raise ValueError("Invoice discount must be between 0 and 100")
    return pct


def _set_line_items(invoice: Invoice, items: list[dict]) -> None:
    totals = calculate_invoice_totals(items, invoice.invoice_discount_percentage)
    invoice.line_items.clear()
    for item, line in zip(items, totals["lines"]):
        invoice.line_items.append(
            InvoiceLineItem(
                catalog_item_id=item["catalog_item_id"],
                description=item["description"],
                quantity=item["quantity"],
                unit_price=money(item["unit_price"]),
                discount_percentage=item["discount_percentage"],
                vat_rate=item["vat_rate"],
                **line,
            )
        )
    invoice.subtotal_amount = totals["subtotal_amount"]
    invoice.discount_amount = totals["discount_amount"]
    invoice.vat_amount = totals["vat_amount"]
    invoice.total_amount = totals["total_amount"]


def get_invoice(db: Session, tenant_id: int, invoice_id: int) -> Invoice:
    row = db.execute(
        select(Invoice).where(Invoice.tenant_id == tenant_id, Invoice.id == invoice_id)
    ).scalar_one_or_none()
    if not row:
        raise NotFoundError("Invoice not found")
    return row


def stage_invoice(
    db: Session,
    tenant_id: int,
    *,
    vendor_id: int,
    invoice_date: date,
    due_date: date | None = None,
    reference: str | None = None,
    invoice_discount_percentage=0,
    notes: str | None = None,
    internal_notes: str | None = None,
    line_items: list[dict],
    actor_email: str | None = None,
) -> Invoice:
    """Builds a draft invoice and flushes it without committing."""
    vendor = get_vendor(db, tenant_id, vendor_id)
    items = validate_line_items(line_items)
    due = due_date or (invoice_date + timedelta(days=vendor.payment_terms or 0))
    if due < invoice_date:
        raise ValueError("Due date cannot be before invoice date")

    invoice = Invoice(
        tenant_id=tenant_id,
        invoice_number=generate_invoice_number(db, tenant_id),
        vendor_id=vendor.id,
        invoice_date=invoice_date,
        due_date=due,
        reference=clean_text(reference, 200),
        invoice_discount_percentage=validate_discount(invoice_discount_percentage),
        paid_amount=0,
        status="draft",
        notes=clean_text(notes),
        internal_notes=clean_text(internal_notes),
        created_at=utc_now_naive(),
        updated_at=utc_now_naive(),
    )
    _set_line_items(invoice, items)
    db.add(invoice)
    db.flush()
    return invoice


def announce_invoice_created(db: Session, tenant_id: int, invoice: Invoice, actor_email: str | None = None) -> None:
    logger.info("invoice_created", invoice_id=invoice.id, number=invoice.invoice_number)
    safe_audit(
        db,
        tenant_id,
        "create",
        "invoice",
        invoice.id,
        actor_email=actor_email,
        payload={"number": invoice.invoice_number, "total": str(invoice.total_amount)},
    )
    revalidate_tag(dashboard_tag(tenant_id))


def create_invoice(db: Session, tenant_id: int, **fields) -> Invoice:
    invoice = stage_invoice(db, tenant_id, **fields)
    db.commit()
    db.refresh(invoice)
    announce_invoice_created(db, tenant_id, invoice, actor_email=fields.get("actor_email"))
    return invoice


def update_invoice(db: Session, tenant_id: int, invoice_id: int, changes: dict, actor_email: str | None = None) -> Invoice:
    invoice = get_invoice(db, tenant_id, invoice_id)
    if invoice.status != "draft":
        raise ValueError("Only draft invoices can be edited")
    if changes.get("vendor_id") is not None:
        invoice.vendor_id = get_vendor(db, tenant_id, changes["vendor_id"]).id
    if changes.get("invoice_date") is not None:
        invoice.invoice_date = changes["invoice_date"]
    if changes.get("due_date") is not None:
        invoice.due_date = changes["due_date"]
    if invoice.due_date < invoice.invoice_date:
        raise ValueError("Due date cannot be before invoice date")
    if "reference" in changes:
        invoice.reference = clean_text(changes["reference"], 200)
    if "notes" in changes:
        invoice.notes = clean_text(changes["notes"])
    if "internal_notes" in changes:
        invoice.internal_notes = clean_text(changes["internal_notes"])
    if changes.get("invoice_discount_percentage") is not None:
        invoice.invoice_discount_percentage = validate_discount(changes["invoice_discount_percentage"])

    if changes.get("line_items") is not None:
        items = validate_line_items(changes["line_items"])
    else:
        items = [
            {
                "description": li.description,
                "quantity": li.quantity,
                "unit_price": li.unit_price,
                "discount_percentage": li.discount_percentage,
                "vat_rate": li.vat_rate,
                "catalog_item_id": li.catalog_item_id,
            }
            for li in invoice.line_items
        ]
    _set_line_items(invoice, items)
    invoice.updated_at = utc_now_naive()
    db.commit()
    db.refresh(invoice)
    safe_audit(db, tenant_id, "update", "invoice", invoice.id, actor_email=actor_email)
    revalidate_tag(dashboard_tag(tenant_id))
    return invoice


def update_invoice_status(db: Session, tenant_id: int, invoice_id: int, new_status: str, actor_email: str | None = None) -> Invoice:
    invoice = get_invoice(db, tenant_id, invoice_id)
    target = (new_status or "").strip().lower()
    if target not in INVOICE_STATUSES:
        raise ValueError("Invalid invoice status")
    if target not in STATUS_TRANSITIONS.get(invoice.status, set()):
        raise ValueError(f"Invalid status transition from {invoice.status} to {target}")
    previous = invoice.status
    invoice.status = target
    if target == "paid":
        invoice.paid_amount = invoice.total_amount
    invoice.updated_at = utc_now_naive()
    db.commit()
    db.refresh(invoice)
    logger.info("invoice_status_changed", invoice_id=invoice.id, from_status=previous, to_status=target)
    safe_audit(
        db,
        tenant_id,
        "status_change",
        "invoice",
        invoice.id,
        actor_email=actor_email,
        payload={"from": previous, "to": target},
    )
    revalidate_tag(dashboard_tag(tenant_id))
    return invoice


def delete_invoice(db: Session, tenant_id: int, invoice_id: int, actor_email: str | None = None) -> None:
    invoice = get_invoice(db, tenant_id, invoice_id)
    if invoice.status != "draft":
        raise ValueError("Only draft invoices can be deleted")
    number = invoice.invoice_number
    db.delete(invoice)
    db.commit()
    safe_audit(db, tenant_id, "delete", "invoice", invoice_id, actor_email=actor_email, payload={"number": number})
    revalidate_tag(dashboard_tag(tenant_id))


def record_payment(
    db: Session,
    tenant_id: int,
    invoice_id: int,
    *,
    amount,
    payment_date: date,
    payment_method: str,
    reference: str | None = None,
    notes: str | None = None,
    actor_email: str | None = None,
) -> Invoice:
    invoice = get_invoice(db, tenant_id, invoice_id)
    status = effective_status(invoice)
    if status not in PAYABLE_STATUSES:
        raise ValueError(f"Cannot record payment for invoice with status {status}")
    value = money(amount)
    if value <= 0:
        raise ValueError("Payment amount must be greater than zero")
    if payment_method not in PAYMENT_METHODS:
        raise ValueError("Invalid payment method")
    outstanding = money(invoice.total_amount) - money(invoice.paid_amount)
    if value > outstanding:
        raise ValueError("Payment amount exceeds outstanding balance")

    invoice.payments.append(
        InvoicePayment(
            amount=value,
            payment_date=payment_date,
            payment_method=payment_method,
            reference=clean_text(reference, 200),
            notes=clean_text(notes, 500),
            created_at=utc_now_naive(),
        )
    )
    invoice.paid_amount = money(invoice.paid_amount) + value
    invoice.status = "paid" if invoice.paid_amount >= money(invoice.total_amount) else "partially_paid"
    invoice.updated_at = utc_now_naive()
    db.commit()
    db.refresh(invoice)
    logger.info("invoice_payment_recorded", invoice_id=invoice.id, amount=str(value), status=invoice.status)
    safe_audit(
        db,
        tenant_id,
        "record_payment",
        "invoice",
        invoice.id,
        actor_email=actor_email,
        payload={"amount": str(value), "method": payment_method},
    )
    revalidate_tag(dashboard_tag(tenant_id))
    return invoice


def persist_overdue_invoices(db: Session, tenant_id: int | None = None, today: date | None = None) -> int:
    q = db.query(Invoice).filter(Invoice.status == "sent", Invoice.due_date < (today or _today()))
    if tenant_id is not None:
        q = q.filter(Invoice.tenant_id == tenant_id)
    rows = q.all()
    for row in rows:
        row.status = "overdue"
        row.updated_at = utc_now_naive()
    db.commit()
    for tid in {r.tenant_id for r in rows}:
        revalidate_tag(dashboard_tag(tid))
    if rows:
        logger.info("invoices_marked_overdue", count=len(rows))
    return len(rows)


def list_invoices(
    db: Session,
    tenant_id: int,
    status: str | None = None,
    search: str | None = None,
    page: int = 1,
    page_size: int = 50,
) -> tuple[list[Invoice], int]:
    q = db.query(Invoice).outerjoin(Vendor, Vendor.id == Invoice.vendor_id).filter(Invoice.tenant_id == tenant_id)
    today = _today()
    if status == "unpaid":
        q = q.filter(Invoice.status.in_(UNPAID_STATUSES))
    elif status == "overdue":
        q = q.filter(
            or_(Invoice.status == "overdue", (Invoice.status == "sent") & (Invoice.due_date < today))
        )
    elif status == "sent":
        q = q.filter(Invoice.status == "sent", Invoice.due_date >= today)
    elif status:
        if status not in INVOICE_STATUSES:
            raise ValueError("Invalid invoice status")
        q = q.filter(Invoice.status == status)
    term = sanitize_search(search)
    if term:
        like = f"%{term}%"
        q = q.filter(
            or_(
                Invoice.invoice_number.ilike(like),
                Invoice.reference.ilike(like),
                Vendor.name.ilike(like),
            )
        )
    total = q.count()
    size = max(1, min(int(page_size), 200))
    rows = (
        q.order_by(Invoice.invoice_date.desc(), Invoice.id.desc())
        .offset((max(1, int(page)) - 1) * size)
        .limit(size)
        .all()
    )
    return rows, total


def get_invoice_summary(db: Session, tenant_id: int) -> dict:
    today = _today()
    unpaid = db.query(Invoice).filter(Invoice.tenant_id == tenant_id, Invoice.status.in_(UNPAID_STATUSES)).all()
    outstanding = sum((money(i.total_amount) - money(i.paid_amount) for i in unpaid), money(0))
    overdue = sum(
        (money(i.total_amount) - money(i.paid_amount) for i in unpaid if effective_status(i, today) == "overdue"),
        money(0),
    )
    month_start = today.replace(day=1)
    this_month = db.execute(
        select(func.coalesce(func.sum(Invoice.total_amount), 0)).where(
            Invoice.tenant_id == tenant_id,
            Invoice.invoice_date >= month_start,
            Invoice.invoice_date < add_months(month_start, 1),
            Invoice.status != "void",
        )
    ).scalar()
    count_draft = int(
        db.execute(
            select(func.count(Invoice.id)).where(Invoice.tenant_id == tenant_id, Invoice.status == "draft")
        ).scalar()
        or 0
    )
    return {
        "total_outstanding": float(outstanding),
        "total_overdue": float(overdue),
        "total_this_month": float(money(this_month)),
        "count_draft": count_draft,
    }

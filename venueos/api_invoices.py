from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Response, status
from sqlalchemy.orm import Session

from .db import get_db
from .deps import Actor, get_current_tenant, require, service_errors
from .invoices import (
    create_catalog_item,
    create_invoice,
    create_vendor,
    delete_catalog_item,
    delete_invoice,
    delete_vendor,
    effective_status,
    get_invoice,
    get_invoice_summary,
    list_catalog_items,
    list_invoices,
    list_vendors,
    record_payment,
    update_catalog_item,
    update_invoice,
    update_invoice_status,
    update_vendor,
)
from .models import Invoice, LineItemCatalog, RecurringInvoice, Tenant, Vendor
from .pdf_export import build_invoice_pdf
from .recurring_invoices import (
    create_recurring_invoice,
    delete_recurring_invoice,
    generate_from_recurring,
    get_recurring_invoice,
    list_recurring_invoices,
    process_due_recurring_invoices,
    toggle_recurring_invoice,
    update_recurring_invoice,
)
from .schemas import (
    CatalogItemCreate,
    CatalogItemOut,
    CatalogItemUpdate,
    DeletedOut,
    InvoiceCreate,
    InvoiceOut,
    InvoicePage,
    InvoiceStatusUpdate,
    InvoiceSummaryOut,
    InvoiceUpdate,
    LineItemIn,
    LineItemOut,
    PaymentCreate,
    PaymentOut,
    RecurringInvoiceCreate,
    RecurringInvoiceOut,
    RecurringInvoiceUpdate,
    RecurringRunOut,
    VendorCreate,
    VendorOut,
    VendorUpdate,
)

router = APIRouter(prefix="/api")


def _to_vendor_out(v: Vendor) -> VendorOut:
    return VendorOut(
        id=v.id,
        name=v.name,
        contact_name=v.contact_name,
        email=v.email,
        phone=v.phone,
        address=v.address,
        vat_number=v.vat_number,
        payment_terms=v.payment_terms,
        notes=v.notes,
        is_active=bool(v.is_active),
    )


def _to_catalog_out(c: LineItemCatalog) -> CatalogItemOut:
    return CatalogItemOut(
        id=c.id,
        name=c.name,
        description=c.description,
        default_price=float(c.default_price),
        default_vat_rate=float(c.default_vat_rate),
    )


def _to_invoice_out(i: Invoice, with_children: bool = True) -> InvoiceOut:
    return InvoiceOut(
        id=i.id,
        invoice_number=i.invoice_number,
        vendor_id=i.vendor_id,
        vendor_name=i.vendor.name if i.vendor else None,
        invoice_date=i.invoice_date,
        due_date=i.due_date,
        reference=i.reference,
        invoice_discount_percentage=float(i.invoice_discount_percentage),
        subtotal_amount=float(i.subtotal_amount),
        discount_amount=float(i.discount_amount),
        vat_amount=float(i.vat_amount),
        total_amount=float(i.total_amount),
        paid_amount=float(i.paid_amount),
        status=effective_status(i),
        notes=i.notes,
        internal_notes=i.internal_notes,
        line_items=[
            LineItemOut(
                id=li.id,
                catalog_item_id=li.catalog_item_id,
                description=li.description,
                quantity=float(li.quantity),
                unit_price=float(li.unit_price),
                discount_percentage=float(li.discount_percentage),
                vat_rate=float(li.vat_rate),
                subtotal_amount=float(li.subtotal_amount),
                discount_amount=float(li.discount_amount),
                vat_amount=float(li.vat_amount),
                total_amount=float(li.total_amount),
            )
            for li in i.line_items
        ]
        if with_children
        else [],
        payments=[
            PaymentOut(
                id=p.id,
                amount=float(p.amount),
                payment_date=p.payment_date,
                payment_method=p.payment_method,
                reference=p.reference,
                notes=p.notes,
            )
            for p in i.payments
        ]
        if with_children
        else [],
    )


def _to_recurring_out(r: RecurringInvoice) -> RecurringInvoiceOut:
    return RecurringInvoiceOut(
        id=r.id,
        vendor_id=r.vendor_id,
        frequency=r.frequency,
        start_date=r.start_date,
        end_date=r.end_date,
        next_invoice_date=r.next_invoice_date,
        days_before_due=r.days_before_due,
        reference=r.reference,
        invoice_discount_percentage=float(r.invoice_discount_percentage),
        is_active=bool(r.is_active),
        last_invoice_id=r.last_invoice_id,
        line_items=[
            LineItemIn(
                catalog_item_id=li.catalog_item_id,
                description=li.description,
                quantity=float(li.quantity),
                unit_price=float(li.unit_price),
                discount_percentage=float(li.discount_percentage),
                vat_rate=float(li.vat_rate),
            )
            for li in r.line_items
        ],
    )


# Vendors


@router.get("/vendors", response_model=List[VendorOut])
def vendors_index(
    include_inactive: bool = Query(default=False),
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    actor: Actor = Depends(require("invoices", "view")),
):
    return [_to_vendor_out(v) for v in list_vendors(db, tenant.id, include_inactive=include_inactive)]


@router.post("/vendors", response_model=VendorOut, status_code=status.HTTP_201_CREATED)
def add_vendor(
    payload: VendorCreate,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    actor: Actor = Depends(require("invoices", "create")),
):
    with service_errors():
        v = create_vendor(db, tenant.id, payload.model_dump(), actor_email=actor.email)
    return _to_vendor_out(v)


@router.patch("/vendors/{vendor_id}", response_model=VendorOut)
def patch_vendor(
    vendor_id: int,
    payload: VendorUpdate,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    actor: Actor = Depends(require("invoices", "edit")),
):
    with service_errors():
        v = update_vendor(db, tenant.id, vendor_id, payload.model_dump(exclude_unset=True), actor_email=actor.email)
    return _to_vendor_out(v)


@router.delete("/vendors/{vendor_id}", response_model=DeletedOut)
def remove_vendor(
    vendor_id: int,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    actor: Actor = Depends(require("invoices", "delete")),
):
    with service_errors():
        outcome = delete_vendor(db, tenant.id, vendor_id, actor_email=actor.email)
    return DeletedOut(outcome=outcome)


# Line item catalog


@router.get("/line-item-catalog", response_model=List[CatalogItemOut])
def catalog_index(
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    actor: Actor = Depends(require("invoices", "view")),
):
    return [_to_catalog_out(c) for c in list_catalog_items(db, tenant.id)]


@router.post("/line-item-catalog", response_model=CatalogItemOut, status_code=status.HTTP_201_CREATED)
def add_catalog_item(
    payload: CatalogItemCreate,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    actor: Actor = Depends(require("invoices", "manage")),
):
    with service_errors():
        c = create_catalog_item(db, tenant.id, payload.model_dump(), actor_email=actor.email)
    return _to_catalog_out(c)


@router.patch("/line-item-catalog/{item_id}", response_model=CatalogItemOut)
def patch_catalog_item(
    item_id: int,
    payload: CatalogItemUpdate,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    actor: Actor = Depends(require("invoices", "manage")),
):
    with service_errors():
        c = update_catalog_item(db, tenant.id, item_id, payload.model_dump(exclude_unset=True), actor_email=actor.email)
    return _to_catalog_out(c)


@router.delete("/line-item-catalog/{item_id}", status_code=status.HTTP_204_NO_CONTENT)
def remove_catalog_item(
    item_id: int,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    actor: Actor = Depends(require("invoices", "manage")),
):
    with service_errors():
        delete_catalog_item(db, tenant.id, item_id, actor_email=actor.email)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# Invoices


@router.get("/invoices/summary", response_model=InvoiceSummaryOut)
def invoices_summary(
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    actor: Actor = Depends(require("invoices", "view")),
):
    return InvoiceSummaryOut(**get_invoice_summary(db, tenant.id))


@router.get("/invoices", response_model=InvoicePage)
def invoices_index(
    status_filter: Optional[str] = Query(default=None, alias="status"),
    search: Optional[str] = Query(default=None),
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=50, ge=1, le=200),
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    actor: Actor = Depends(require("invoices", "view")),
):
    with service_errors():
        rows, total = list_invoices(db, tenant.id, status=status_filter, search=search, page=page, page_size=page_size)
    return InvoicePage(
        page=page,
        page_size=page_size,
        total=total,
        items=[_to_invoice_out(i, with_children=False) for i in rows],
    )


@router.post("/invoices", response_model=InvoiceOut, status_code=status.HTTP_201_CREATED)
def add_invoice(
    payload: InvoiceCreate,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    actor: Actor = Depends(require("invoices", "create")),
):
    with service_errors():
        i = create_invoice(
            db,
            tenant.id,
            vendor_id=payload.vendor_id,
            invoice_date=payload.invoice_date,
            due_date=payload.due_date,
            reference=payload.reference,
            invoice_discount_percentage=payload.invoice_discount_percentage,
            notes=payload.notes,
            internal_notes=payload.internal_notes,
            line_items=[li.model_dump() for li in payload.line_items],
            actor_email=actor.email,
        )
    return _to_invoice_out(i)


@router.get("/invoices/{invoice_id}", response_model=InvoiceOut)
def invoice_detail(
    invoice_id: int,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    actor: Actor = Depends(require("invoices", "view")),
):
    with service_errors():
        i = get_invoice(db, tenant.id, invoice_id)
    return _to_invoice_out(i)


@router.get("/invoices/{invoice_id}/pdf")
def invoice_pdf(
    invoice_id: int,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    actor: Actor = Depends(require("invoices", "view")),
):
    with service_errors():
        i = get_invoice(db, tenant.id, invoice_id)
    filename = f"invoice_{i.invoice_number}.pdf"
    return Response(
        content=build_invoice_pdf(i),
        media_type="application/pdf",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.patch("/invoices/{invoice_id}", response_model=InvoiceOut)
def patch_invoice(
    invoice_id: int,
    payload: InvoiceUpdate,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    actor: Actor = Depends(require("invoices", "edit")),
):
    changes = payload.model_dump(exclude_unset=True)
    with service_errors():
        i = update_invoice(db, tenant.id, invoice_id, changes, actor_email=actor.email)
    return _to_invoice_out(i)


@router.post("/invoices/{invoice_id}/status", response_model=InvoiceOut)
def change_invoice_status(
    invoice_id: int,
    payload: InvoiceStatusUpdate,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    actor: Actor = Depends(require("invoices", "edit")),
):
    with service_errors():
        i = update_invoice_status(db, tenant.id, invoice_id, payload.status, actor_email=actor.email)
    return _to_invoice_out(i)


@router.post("/invoices/{invoice_id}/payments", response_model=InvoiceOut)
def add_payment(
    invoice_id: int,
    payload: PaymentCreate,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    actor: Actor = Depends(require("invoices", "edit")),
):
    with service_errors():
        i = record_payment(
            db,
            tenant.id,
            invoice_id,
            amount=payload.amount,
            payment_date=payload.payment_date,
            payment_method=payload.payment_method,
            reference=payload.reference,
            notes=payload.notes,
            actor_email=actor.email,
        )
    return _to_invoice_out(i)


@router.delete("/invoices/{invoice_id}", status_code=status.HTTP_204_NO_CONTENT)
def remove_invoice(
    invoice_id: int,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    actor: Actor = Depends(require("invoices", "delete")),
):
    with service_errors():
        delete_invoice(db, tenant.id, invoice_id, actor_email=actor.email)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# Recurring invoices


@router.get("/recurring-invoices", response_model=List[RecurringInvoiceOut])
def recurring_index(
    active_only: bool = Query(default=False),
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    actor: Actor = Depends(require("invoices", "view")),
):
    return [_to_recurring_out(r) for r in list_recurring_invoices(db, tenant.id, active_only=active_only)]


@router.post("/recurring-invoices", response_model=RecurringInvoiceOut, status_code=status.HTTP_201_CREATED)
def add_recurring(
    payload: RecurringInvoiceCreate,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    actor: Actor = Depends(require("invoices", "create")),
):
    with service_errors():
        r = create_recurring_invoice(db, tenant.id, payload.model_dump(), actor_email=actor.email)
    return _to_recurring_out(r)


@router.get("/recurring-invoices/{recurring_id}", response_model=RecurringInvoiceOut)
def recurring_detail(
    recurring_id: int,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    actor: Actor = Depends(require("invoices", "view")),
):
    with service_errors():
        r = get_recurring_invoice(db, tenant.id, recurring_id)
    return _to_recurring_out(r)


@router.patch("/recurring-invoices/{recurring_id}", response_model=RecurringInvoiceOut)
def patch_recurring(
    recurring_id: int,
    payload: RecurringInvoiceUpdate,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    actor: Actor = Depends(require("invoices", "edit")),
):
    with service_errors():
        r = update_recurring_invoice(
            db, tenant.id, recurring_id, payload.model_dump(exclude_unset=True), actor_email=actor.email
        )
    return _to_recurring_out(r)


@router.post("/recurring-invoices/{recurring_id}/toggle", response_model=RecurringInvoiceOut)
def toggle_recurring(
    recurring_id: int,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    actor: Actor = Depends(require("invoices", "edit")),
):
    with service_errors():
        r = toggle_recurring_invoice(db, tenant.id, recurring_id, actor_email=actor.email)
    return _to_recurring_out(r)


@router.post("/recurring-invoices/{recurring_id}/generate", response_model=InvoiceOut)
def generate_recurring_now(
    recurring_id: int,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    actor: Actor = Depends(require("invoices", "create")),
):
    with service_errors():
        i = generate_from_recurring(db, tenant.id, recurring_id, actor_email=actor.email)
    return _to_invoice_out(i)


@router.post("/recurring-invoices/run-due", response_model=RecurringRunOut)
def run_due_recurring(
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    actor: Actor = Depends(require("invoices", "manage")),
):
    return RecurringRunOut(**process_due_recurring_invoices(db, tenant_id=tenant.id))


@router.delete("/recurring-invoices/{recurring_id}", response_model=DeletedOut)
def remove_recurring(
    recurring_id: int,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    actor: Actor = Depends(require("invoices", "delete")),
):
    with service_errors():
        outcome = delete_recurring_invoice(db, tenant.id, recurring_id, actor_email=actor.email)
    return DeletedOut(outcome=outcome)

from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Response, status
from sqlalchemy.orm import Session

from .customers import (
    assign_label,
    bulk_assign_label,
    create_customer,
    create_label,
    delete_customer,
    delete_label,
    get_customer,
    get_customer_labels,
    list_customers,
    list_labels,
    remove_label,
    update_customer,
    update_label,
)
from .db import get_db
from .deps import Actor, get_current_tenant, require, service_errors
from .models import Customer, CustomerLabel, Tenant
from .schemas import (
    CountOut,
    CustomerCreate,
    CustomerOut,
    CustomerPage,
    CustomerUpdate,
    LabelAssign,
    LabelBulkAssign,
    LabelCreate,
    LabelOut,
    LabelUpdate,
)

router = APIRouter(prefix="/api")


def _to_customer_out(c: Customer) -> CustomerOut:
    return CustomerOut(
        id=c.id,
        first_name=c.first_name,
        last_name=c.last_name,
        full_name=c.full_name,
        mobile_number=c.mobile_number,
        email=c.email,
        sms_opt_in=bool(c.sms_opt_in),
        notes=c.notes,
        created_at=c.created_at,
    )


def _to_label_out(label: CustomerLabel) -> LabelOut:
    return LabelOut(
        id=label.id,
        name=label.name,
        color=label.color,
        description=label.description,
        created_at=label.created_at,
    )


@router.get("/customers", response_model=CustomerPage)
def customers_index(
    search: Optional[str] = Query(default=None),
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=50, ge=1, le=200),
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    actor: Actor = Depends(require("customers", "view")),
):
    rows, total = list_customers(db, tenant.id, search=search, page=page, page_size=page_size)
    return CustomerPage(page=page, page_size=page_size, total=total, items=[_to_customer_out(c) for c in rows])


@router.post("/customers", response_model=CustomerOut, status_code=status.HTTP_201_CREATED)
def add_customer(
    payload: CustomerCreate,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    actor: Actor = Depends(require("customers", "create")),
):
    with service_errors():
        c = create_customer(
            db,
            tenant.id,
            first_name=payload.first_name,
            last_name=payload.last_name,
            mobile_number=payload.mobile_number,
            email=payload.email,
            sms_opt_in=payload.sms_opt_in,
            notes=payload.notes,
            actor_email=actor.email,
        )
    return _to_customer_out(c)


@router.get("/customers/{customer_id}", response_model=CustomerOut)
def customer_detail(
    customer_id: int,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    actor: Actor = Depends(require("customers", "view")),
):
    with service_errors():
        c = get_customer(db, tenant.id, customer_id)
    return _to_customer_out(c)


@router.patch("/customers/{customer_id}", response_model=CustomerOut)
def patch_customer(
    customer_id: int,
    payload: CustomerUpdate,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    actor: Actor = Depends(require("customers", "edit")),
):
    with service_errors():
        c = update_customer(db, tenant.id, customer_id, payload.model_dump(exclude_unset=True), actor_email=actor.email)
    return _to_customer_out(c)


@router.delete("/customers/{customer_id}", status_code=status.HTTP_204_NO_CONTENT)
def remove_customer(
    customer_id: int,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    actor: Actor = Depends(require("customers", "delete")),
):
    with service_errors():
        delete_customer(db, tenant.id, customer_id, actor_email=actor.email)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# Labels


@router.get("/customer-labels", response_model=List[LabelOut])
def labels_index(
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    actor: Actor = Depends(require("customers", "view")),
):
    return [_to_label_out(label) for label in list_labels(db, tenant.id)]


@router.post("/customer-labels", response_model=LabelOut, status_code=status.HTTP_201_CREATED)
def add_label(
    payload: LabelCreate,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    actor: Actor = Depends(require("customers", "manage")),
):
    with service_errors():
        label = create_label(
            db,
            tenant.id,
            name=payload.name,
            color=payload.color,
            description=payload.description,
            auto_apply_rules=payload.auto_apply_rules,
            actor_email=actor.email,
        )
    return _to_label_out(label)


@router.patch("/customer-labels/{label_id}", response_model=LabelOut)
def patch_label(
    label_id: int,
    payload: LabelUpdate,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    actor: Actor = Depends(require("customers", "manage")),
):
    with service_errors():
        label = update_label(db, tenant.id, label_id, payload.model_dump(exclude_unset=True), actor_email=actor.email)
    return _to_label_out(label)


@router.delete("/customer-labels/{label_id}", status_code=status.HTTP_204_NO_CONTENT)
def remove_label_definition(
    label_id: int,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    actor: Actor = Depends(require("customers", "manage")),
):
    with service_errors():
        delete_label(db, tenant.id, label_id, actor_email=actor.email)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/customers/{customer_id}/labels", response_model=List[LabelOut])
def customer_labels(
    customer_id: int,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    actor: Actor = Depends(require("customers", "view")),
):
    with service_errors():
        labels = get_customer_labels(db, tenant.id, customer_id)
    return [_to_label_out(label) for label in labels]


@router.put("/customers/{customer_id}/labels/{label_id}", response_model=List[LabelOut])
def put_customer_label(
    customer_id: int,
    label_id: int,
    payload: Optional[LabelAssign] = None,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    actor: Actor = Depends(require("customers", "edit")),
):
    with service_errors():
        assign_label(
            db,
            tenant.id,
            customer_id,
            label_id,
            notes=payload.notes if payload else None,
            actor_email=actor.email,
        )
        labels = get_customer_labels(db, tenant.id, customer_id)
    return [_to_label_out(label) for label in labels]


@router.delete("/customers/{customer_id}/labels/{label_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_customer_label(
    customer_id: int,
    label_id: int,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    actor: Actor = Depends(require("customers", "edit")),
):
    with service_errors():
        remove_label(db, tenant.id, customer_id, label_id, actor_email=actor.email)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/customer-labels/{label_id}/bulk-assign", response_model=CountOut)
def bulk_assign(
    label_id: int,
    payload: LabelBulkAssign,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    actor: Actor = Depends(require("customers", "edit")),
):
    with service_errors():
        created = bulk_assign_label(db, tenant.id, label_id, payload.customer_ids, actor_email=actor.email)
    return CountOut(count=created)

import json

import structlog
from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from .core.cache import dashboard_tag, revalidate_tag
from .core.validation import clean_text, normalize_email, normalize_phone, sanitize_search, validate_hex_color
from .enterprise import safe_audit
from .errors import NotFoundError
from .models import Customer, CustomerLabel, CustomerLabelAssignment, utc_now_naive

logger = structlog.get_logger("venueos.customers")

DEFAULT_LABEL_COLOR = "#6B7280"


def get_customer(db: Session, tenant_id: int, customer_id: int) -> Customer:
    row = db.execute(
        select(Customer).where(Customer.tenant_id == tenant_id, Customer.id == customer_id)
    ).scalar_one_or_none()
    if not row:
        raise NotFoundError("Customer not found")
    return row


def find_customer_by_mobile(db: Session, tenant_id: int, mobile: str | None) -> Customer | None:
    normalized = normalize_phone(mobile)
    if not normalized:
        return None
    return db.execute(
        select(Customer).where(Customer.tenant_id == tenant_id, Customer.mobile_number == normalized)
    ).scalar_one_or_none()


def _ensure_mobile_free(db: Session, tenant_id: int, mobile: str | None, exclude_id: int | None = None) -> None:
    if not mobile:
        return
    q = select(Customer.id).where(Customer.tenant_id == tenant_id, Customer.mobile_number == mobile)
    if exclude_id is not None:
        q = q.where(Customer.id != exclude_id)
    if db.execute(q).first():
        raise ValueError("A customer with this mobile number already exists")


def create_customer(
    db: Session,
    tenant_id: int,
    *,
    first_name: str,
    last_name: str | None = None,
    mobile_number: str | None = None,
    email: str | None = None,
    sms_opt_in: bool = True,
    notes: str | None = None,
    actor_email: str | None = None,
) -> Customer:
    first = clean_text(first_name, 120)
    if not first:
        raise ValueError("First name is required")
    mobile = normalize_phone(mobile_number)
    _ensure_mobile_free(db, tenant_id, mobile)

    row = Customer(
        tenant_id=tenant_id,
        first_name=first,
        last_name=clean_text(last_name, 120),
        mobile_number=mobile,
        email=normalize_email(email),
        sms_opt_in=bool(sms_opt_in),
        notes=clean_text(notes, 1000),
        created_at=utc_now_naive(),
        updated_at=utc_now_naive(),
    )
    db.add(row)
    db.commit()
    db.refresh(row)
    logger.info("customer_created", customer_id=row.id)
    safe_audit(db, tenant_id, "create", "customer", row.id, actor_email=actor_email)
    revalidate_tag(dashboard_tag(tenant_id))
    return row


def update_customer(
    db: Session,
    tenant_id: int,
    customer_id: int,
    changes: dict,
    actor_email: str | None = None,
) -> Customer:
    row = get_customer(db, tenant_id, customer_id)
    if "first_name" in changes:
        first = clean_text(changes["first_name"], 120)
        if not first:
            raise ValueError("First name is required")
        row.first_name = first
    if "last_name" in changes:
        row.last_name = clean_text(changes["last_name"], 120)
    if "mobile_number" in changes:
        mobile = normalize_phone(changes["mobile_number"])
        _ensure_mobile_free(db, tenant_id, mobile, exclude_id=row.id)
        row.mobile_number = mobile
    if "email" in changes:
        row.email = normalize_email(changes["email"])
    if "sms_opt_in" in changes and changes["sms_opt_in"] is not None:
        row.sms_opt_in = bool(changes["sms_opt_in"])
    if "notes" in changes:
        row.notes = clean_text(changes["notes"], 1000)
    row.updated_at = utc_now_naive()
    db.commit()
    db.refresh(row)
    safe_audit(db, tenant_id, "update", "customer", row.id, actor_email=actor_email, payload=_jsonable(changes))
    return row


def delete_customer(db: Session, tenant_id: int, customer_id: int, actor_email: str | None = None) -> None:
    row = get_customer(db, tenant_id, customer_id)
    db.query(CustomerLabelAssignment).filter(CustomerLabelAssignment.customer_id == row.id).delete(
        synchronize_session=False
    )
    db.delete(row)
    db.commit()
    logger.info("customer_deleted", customer_id=customer_id)
    safe_audit(db, tenant_id, "delete", "customer", customer_id, actor_email=actor_email)
    revalidate_tag(dashboard_tag(tenant_id))


def list_customers(
    db: Session,
    tenant_id: int,
    search: str | None = None,
    page: int = 1,
    page_size: int = 50,
) -> tuple[list[Customer], int]:
    q = db.query(Customer).filter(Customer.tenant_id == tenant_id)
    term = sanitize_search(search)
    if term:
        like = f"%{term}%"
        q = q.filter(
            or_(
                Customer.first_name.ilike(like),
                Customer.last_name.ilike(like),
                Customer.mobile_number.ilike(like),
                Customer.email.ilike(like),
            )
        )
    total = q.count()
    size = max(1, min(int(page_size), 200))
    offset = (max(1, int(page)) - 1) * size
    rows = (
        q.order_by(Customer.first_name.asc(), Customer.last_name.asc(), Customer.id.asc())
        .offset(offset)
        .limit(size)
        .all()
    )
    return rows, total


def find_or_create_customer_by_phone(
    db: Session,
    tenant_id: int,
    *,
    first_name: str,
    last_name: str | None,
    mobile_number: str,
    email: str | None = None,
) -> Customer:
    existing = find_customer_by_mobile(db, tenant_id, mobile_number)
    if existing:
        if email and not existing.email:
            existing.email = normalize_email(email)
            existing.updated_at = utc_now_naive()
            db.commit()
        return existing
    return create_customer(
        db,
        tenant_id,
        first_name=first_name,
        last_name=last_name,
        mobile_number=mobile_number,
        email=email,
    )


def count_customers(db: Session, tenant_id: int, since=None) -> int:
    q = select(func.count(Customer.id)).where(Customer.tenant_id == tenant_id)
    if since is not None:
        q = q.where(Customer.created_at >= since)
    return int(db.execute(q).scalar() or 0)


def _jsonable(changes: dict) -> dict:
    return {k: (v if isinstance(v, (str, int, float, bool)) or v is None else str(v)) for k, v in changes.items()}


# Labels


def get_label(db: Session, tenant_id: int, label_id: int) -> CustomerLabel:
    row = db.execute(
        select(CustomerLabel).where(CustomerLabel.tenant_id == tenant_id, CustomerLabel.id == label_id)
    ).scalar_one_or_none()
    if not row:
        raise NotFoundError("Label not found")
    return row


def _ensure_label_name_free(db: Session, tenant_id: int, name: str, exclude_id: int | None = None) -> None:
    q = select(CustomerLabel.id).where(
        CustomerLabel.tenant_id == tenant_id,
        func.lower(CustomerLabel.name) == name.lower(),
    )
    if exclude_id is not None:
        q = q.where(CustomerLabel.id != exclude_id)
    if db.execute(q).first():
        raise ValueError("A label with this name already exists")


def list_labels(db: Session, tenant_id: int) -> list[CustomerLabel]:
    return (
        db.query(CustomerLabel)
        .filter(CustomerLabel.tenant_id == tenant_id)
        .order_by(CustomerLabel.name.asc())
        .all()
    )


def create_label(
    db: Session,
    tenant_id: int,
    *,
    name: str,
    color: str | None = None,
    description: str | None = None,
    auto_apply_rules: dict | None = None,
    actor_email: str | None = None,
) -> CustomerLabel:
    label_name = clean_text(name, 80)
    if not label_name:
        raise ValueError("Label name is required")
    _ensure_label_name_free(db, tenant_id, label_name)
    row = CustomerLabel(
        tenant_id=tenant_id,
        name=label_name,
        color=validate_hex_color(color) if color else DEFAULT_LABEL_COLOR,
        description=clean_text(description, 500),
        auto_apply_rules_json=json.dumps(auto_apply_rules) if auto_apply_rules else None,
        created_at=utc_now_naive(),
    )
    db.add(row)
    db.commit()
    db.refresh(row)
    safe_audit(db, tenant_id, "create", "customer_label", row.id, actor_email=actor_email, payload={"name": row.name})
    return row


def update_label(
    db: Session,
    tenant_id: int,
    label_id: int,
    changes: dict,
    actor_email: str | None = None,
) -> CustomerLabel:
    row = get_label(db, tenant_id, label_id)
    if changes.get("name") is not None:
        label_name = clean_text(changes["name"], 80)
        if not label_name:
            raise ValueError("Label name is required")
        _ensure_label_name_free(db, tenant_id, label_name, exclude_id=row.id)
        row.name = label_name
    if changes.get("color") is not None:
        row.color = validate_hex_color(changes["color"])
    if "description" in changes:
        row.description = clean_text(changes["description"], 500)
    if "auto_apply_rules" in changes:
        rules = changes["auto_apply_rules"]
        row.auto_apply_rules_json = json.dumps(rules) if rules else None
    db.commit()
    db.refresh(row)
    safe_audit(db, tenant_id, "update", "customer_label", row.id, actor_email=actor_email)
    return row


def delete_label(db: Session, tenant_id: int, label_id: int, actor_email: str | None = None) -> None:
    row = get_label(db, tenant_id, label_id)
    db.query(CustomerLabelAssignment).filter(CustomerLabelAssignment.label_id == row.id).delete(
        synchronize_session=False
    )
    db.delete(row)
    db.commit()
    safe_audit(db, tenant_id, "delete", "customer_label", label_id, actor_email=actor_email)


def assign_label(
    db: Session,
    tenant_id: int,
    customer_id: int,
    label_id: int,
    notes: str | None = None,
    actor_email: str | None = None,
) -> CustomerLabelAssignment:
    get_customer(db, tenant_id, customer_id)
    get_label(db, tenant_id, label_id)
    existing = db.execute(
        select(CustomerLabelAssignment).where(
            CustomerLabelAssignment.customer_id == customer_id,
            CustomerLabelAssignment.label_id == label_id,
        )
    ).scalar_one_or_none()
    if existing:
        return existing
    row = CustomerLabelAssignment(
        tenant_id=tenant_id,
        customer_id=customer_id,
        label_id=label_id,
        notes=clean_text(notes, 500),
        assigned_by=actor_email,
        created_at=utc_now_naive(),
    )
    db.add(row)
    db.commit()
    db.refresh(row)
    safe_audit(
        db,
        tenant_id,
        "assign",
        "customer_label",
        label_id,
        actor_email=actor_email,
        payload={"customer_id": customer_id},
    )
    return row


def remove_label(
    db: Session,
    tenant_id: int,
    customer_id: int,
    label_id: int,
    actor_email: str | None = None,
) -> bool:
    deleted = (
        db.query(CustomerLabelAssignment)
        .filter(
            CustomerLabelAssignment.tenant_id == tenant_id,
            CustomerLabelAssignment.customer_id == customer_id,
            CustomerLabelAssignment.label_id == label_id,
        )
        .delete(synchronize_session=False)
    )
    db.commit()
    if deleted:
        safe_audit(
            db,
            tenant_id,
            "unassign",
            "customer_label",
            label_id,
            actor_email=actor_email,
            payload={"customer_id": customer_id},
        )
    return bool(deleted)


def bulk_assign_label(
    db: Session,
    tenant_id: int,
    label_id: int,
    customer_ids: list[int],
    actor_email: str | None = None,
) -> int:
    get_label(db, tenant_id, label_id)
    wanted = sorted({int(x) for x in customer_ids})
    if not wanted:
        raise ValueError("No customers selected")
    valid = set(
        db.execute(
            select(Customer.id).where(Customer.tenant_id == tenant_id, Customer.id.in_(wanted))
        ).scalars()
    )
    already = set(
        db.execute(
            select(CustomerLabelAssignment.customer_id).where(
                CustomerLabelAssignment.label_id == label_id,
                CustomerLabelAssignment.customer_id.in_(wanted),
            )
        ).scalars()
    )
    created = 0
    for customer_id in wanted:
        if customer_id not in valid or customer_id in already:
            continue
        db.add(
            CustomerLabelAssignment(
                tenant_id=tenant_id,
                customer_id=customer_id,
                label_id=label_id,
                assigned_by=actor_email,
                created_at=utc_now_naive(),
            )
        )
        created += 1
    db.commit()
    logger.info("labels_bulk_assigned", label_id=label_id, created=created)
    safe_audit(
        db,
        tenant_id,
        "bulk_assign",
        "customer_label",
        label_id,
        actor_email=actor_email,
        payload={"requested": len(wanted), "created": created},
    )
    return created


def get_customer_labels(db: Session, tenant_id: int, customer_id: int) -> list[CustomerLabel]:
    get_customer(db, tenant_id, customer_id)
    return (
        db.query(CustomerLabel)
        .join(CustomerLabelAssignment, CustomerLabelAssignment.label_id == CustomerLabel.id)
        .filter(CustomerLabelAssignment.customer_id == customer_id)
        .order_by(CustomerLabel.name.asc())
        .all()
    )

from datetime import date, time, timedelta

import structlog
from sqlalchemy import select
from sqlalchemy.orm import Session

from .core.cache import dashboard_tag, revalidate_tag
from .core.validation import clean_text, normalize_email, normalize_phone
from .enterprise import safe_audit
from .errors import NotFoundError
from .models import (
    Employee,
    RotaPublishedShift,
    RotaShift,
    RotaShiftTemplate,
    RotaWeek,
    utc_now_naive,
)

logger = structlog.get_logger("venueos.rota")

SHIFT_STATUSES = {"scheduled", "sick", "cancelled"}


def week_start_for(day: date) -> date:
    return day - timedelta(days=day.weekday())


# Employees


def get_employee(db: Session, tenant_id: int, employee_id: int) -> Employee:
    row = db.execute(
        select(Employee).where(Employee.tenant_id == tenant_id, Employee.id == employee_id)
    ).scalar_one_or_none()
    if not row:
        raise NotFoundError("Employee not found")
    return row


def list_employees(db: Session, tenant_id: int, include_inactive: bool = False) -> list[Employee]:
    q = db.query(Employee).filter(Employee.tenant_id == tenant_id)
    if not include_inactive:
        q = q.filter(Employee.is_active.is_(True))
    return q.order_by(Employee.name.asc()).all()


def _apply_employee_fields(row: Employee, data: dict) -> None:
    if "name" in data:
        name = clean_text(data["name"], 120)
        if not name:
            raise ValueError("Employee name is required")
        row.name = name
    if "email" in data:
        row.email = normalize_email(data["email"])
    if "phone" in data:
        row.phone = normalize_phone(data["phone"])
    if "role" in data:
        row.role = clean_text(data["role"], 80)
    if data.get("is_active") is not None:
        row.is_active = bool(data["is_active"])


def create_employee(db: Session, tenant_id: int, data: dict, actor_email: str | None = None) -> Employee:
    row = Employee(tenant_id=tenant_id, is_active=True, created_at=utc_now_naive())
    _apply_employee_fields(row, {"name": data.get("name"), **data})
    db.add(row)
    db.commit()
    db.refresh(row)
    safe_audit(db, tenant_id, "create", "employee", row.id, actor_email=actor_email)
    return row


def update_employee(db: Session, tenant_id: int, employee_id: int, changes: dict, actor_email: str | None = None) -> Employee:
    row = get_employee(db, tenant_id, employee_id)
    _apply_employee_fields(row, changes)
    db.commit()
    db.refresh(row)
    safe_audit(db, tenant_id, "update", "employee", row.id, actor_email=actor_email)
    return row


def delete_employee(db: Session, tenant_id: int, employee_id: int, actor_email: str | None = None) -> None:
    """Soft delete: rota history keeps pointing at the employee."""
    row = get_employee(db, tenant_id, employee_id)
    row.is_active = False
    db.commit()
    safe_audit(db, tenant_id, "deactivate", "employee", employee_id, actor_email=actor_email)


# Weeks


def get_or_create_week(db: Session, tenant_id: int, day: date) -> RotaWeek:
    start = week_start_for(day)
    week = db.execute(
        select(RotaWeek).where(RotaWeek.tenant_id == tenant_id, RotaWeek.week_start == start)
    ).scalar_one_or_none()
    if week:
        return week
    week = RotaWeek(tenant_id=tenant_id, week_start=start, status="draft", created_at=utc_now_naive())
    db.add(week)
    db.commit()
    db.refresh(week)
    return week


def get_week(db: Session, tenant_id: int, week_id: int) -> RotaWeek:
    row = db.execute(
        select(RotaWeek).where(RotaWeek.tenant_id == tenant_id, RotaWeek.id == week_id)
    ).scalar_one_or_none()
    if not row:
        raise NotFoundError("Rota week not found")
    return row


def list_week_shifts(db: Session, tenant_id: int, week_id: int) -> list[RotaShift]:
    get_week(db, tenant_id, week_id)
    return (
        db.query(RotaShift)
        .filter(RotaShift.tenant_id == tenant_id, RotaShift.week_id == week_id)
        .order_by(RotaShift.shift_date.asc(), RotaShift.start_time.asc(), RotaShift.id.asc())
        .all()
    )


def _mark_dirty(week: RotaWeek) -> None:
    if week.status == "published":
        week.has_unpublished_changes = True


# Shifts


def _validate_shift_window(week: RotaWeek, shift_date: date, start_time: time, end_time: time, is_overnight: bool) -> None:
    week_end = week.week_start + timedelta(days=6)
    if shift_date < week.week_start or shift_date > week_end:
        raise ValueError(
            f"Shift date must be within this rota week ({week.week_start.isoformat()} to {week_end.isoformat()})"
        )
    if end_time <= start_time and not is_overnight:
        raise ValueError("End time must be after start time")


def get_shift(db: Session, tenant_id: int, shift_id: int) -> RotaShift:
    row = db.execute(
        select(RotaShift).where(RotaShift.tenant_id == tenant_id, RotaShift.id == shift_id)
    ).scalar_one_or_none()
    if not row:
        raise NotFoundError("Shift not found")
    return row


def create_shift(db: Session, tenant_id: int, data: dict, actor_email: str | None = None) -> RotaShift:
    week = get_week(db, tenant_id, data["week_id"])
    is_overnight = bool(data.get("is_overnight"))
    _validate_shift_window(week, data["shift_date"], data["start_time"], data["end_time"], is_overnight)
    employee_id = data.get("employee_id")
    if employee_id is not None:
        get_employee(db, tenant_id, employee_id)
    breaks = int(data.get("unpaid_break_minutes") or 0)
    if breaks < 0:
        raise ValueError("Break minutes cannot be negative")

    row = RotaShift(
        tenant_id=tenant_id,
        week_id=week.id,
        employee_id=employee_id,
        template_id=data.get("template_id"),
        shift_date=data["shift_date"],
        start_time=data["start_time"],
        end_time=data["end_time"],
        unpaid_break_minutes=breaks,
        department=clean_text(data.get("department"), 60),
        status="scheduled",
        is_open_shift=employee_id is None,
        is_overnight=is_overnight,
        notes=clean_text(data.get("notes"), 500),
        created_at=utc_now_naive(),
        updated_at=utc_now_naive(),
    )
    db.add(row)
    _mark_dirty(week)
    db.commit()
    db.refresh(row)
    safe_audit(db, tenant_id, "create", "rota_shift", row.id, actor_email=actor_email)
    return row


def update_shift(db: Session, tenant_id: int, shift_id: int, changes: dict, actor_email: str | None = None) -> RotaShift:
    row = get_shift(db, tenant_id, shift_id)
    week = get_week(db, tenant_id, row.week_id)
    shift_date = changes.get("shift_date") or row.shift_date
    start_time = changes.get("start_time") or row.start_time
    end_time = changes.get("end_time") or row.end_time
    is_overnight = row.is_overnight if changes.get("is_overnight") is None else bool(changes["is_overnight"])
    _validate_shift_window(week, shift_date, start_time, end_time, is_overnight)

    row.shift_date, row.start_time, row.end_time, row.is_overnight = shift_date, start_time, end_time, is_overnight
    if "employee_id" in changes:
        if changes["employee_id"] is not None:
            get_employee(db, tenant_id, changes["employee_id"])
        row.employee_id = changes["employee_id"]
        row.is_open_shift = row.employee_id is None
    if changes.get("unpaid_break_minutes") is not None:
        if int(changes["unpaid_break_minutes"]) < 0:
            raise ValueError("Break minutes cannot be negative")
        row.unpaid_break_minutes = int(changes["unpaid_break_minutes"])
    if "department" in changes:
        row.department = clean_text(changes["department"], 60)
    if "notes" in changes:
        row.notes = clean_text(changes["notes"], 500)
    if changes.get("status") is not None:
        if changes["status"] not in SHIFT_STATUSES:
            raise ValueError("Invalid shift status")
        row.status = changes["status"]
    row.updated_at = utc_now_naive()
    _mark_dirty(week)
    db.commit()
    db.refresh(row)
    safe_audit(db, tenant_id, "update", "rota_shift", row.id, actor_email=actor_email)
    return row


def delete_shift(db: Session, tenant_id: int, shift_id: int, actor_email: str | None = None) -> None:
    row = get_shift(db, tenant_id, shift_id)
    week = get_week(db, tenant_id, row.week_id)
    db.delete(row)
    _mark_dirty(week)
    db.commit()
    safe_audit(db, tenant_id, "delete", "rota_shift", shift_id, actor_email=actor_email)


def reassign_shift(db: Session, tenant_id: int, shift_id: int, employee_id: int | None, actor_email: str | None = None) -> RotaShift:
    return update_shift(db, tenant_id, shift_id, {"employee_id": employee_id}, actor_email=actor_email)


def move_shift(
    db: Session,
    tenant_id: int,
    shift_id: int,
    new_date: date,
    new_employee_id: int | None = None,
    actor_email: str | None = None,
) -> RotaShift:
    changes = {"shift_date": new_date}
    if new_employee_id is not None:
        changes["employee_id"] = new_employee_id
    return update_shift(db, tenant_id, shift_id, changes, actor_email=actor_email)


def mark_shift_sick(db: Session, tenant_id: int, shift_id: int, reason: str | None = None, actor_email: str | None = None) -> RotaShift:
    row = get_shift(db, tenant_id, shift_id)
    week = get_week(db, tenant_id, row.week_id)
    row.status = "sick"
    row.sick_reason = clean_text(reason, 300)
    row.updated_at = utc_now_naive()
    _mark_dirty(week)
    db.commit()
    db.refresh(row)
    logger.info("rota_shift_marked_sick", shift_id=row.id, employee_id=row.employee_id)
    safe_audit(db, tenant_id, "mark_sick", "rota_shift", row.id, actor_email=actor_email)
    return row


# Templates


def get_template(db: Session, tenant_id: int, template_id: int) -> RotaShiftTemplate:
    row = db.execute(
        select(RotaShiftTemplate).where(RotaShiftTemplate.tenant_id == tenant_id, RotaShiftTemplate.id == template_id)
    ).scalar_one_or_none()
    if not row:
        raise NotFoundError("Shift template not found")
    return row


def list_templates(db: Session, tenant_id: int) -> list[RotaShiftTemplate]:
    return (
        db.query(RotaShiftTemplate)
        .filter(RotaShiftTemplate.tenant_id == tenant_id)
        .order_by(RotaShiftTemplate.day_of_week.asc(), RotaShiftTemplate.start_time.asc())
        .all()
    )


def _apply_template_fields(row: RotaShiftTemplate, data: dict) -> None:
    if "name" in data:
        name = clean_text(data["name"], 120)
        if not name:
            raise ValueError("Template name is required")
        row.name = name
    if "day_of_week" in data:
        dow = data["day_of_week"]
        if dow is not None and not 0 <= int(dow) <= 6:
            raise ValueError("Day of week must be between 0 (Monday) and 6 (Sunday)")
        row.day_of_week = dow
    if data.get("start_time") is not None:
        row.start_time = data["start_time"]
    if data.get("end_time") is not None:
        row.end_time = data["end_time"]
    if data.get("unpaid_break_minutes") is not None:
        row.unpaid_break_minutes = max(0, int(data["unpaid_break_minutes"]))
    if "department" in data:
        row.department = clean_text(data["department"], 60)
    if "employee_id" in data:
        row.employee_id = data["employee_id"]
    if data.get("is_active") is not None:
        row.is_active = bool(data["is_active"])


def create_template(db: Session, tenant_id: int, data: dict, actor_email: str | None = None) -> RotaShiftTemplate:
    row = RotaShiftTemplate(tenant_id=tenant_id, is_active=True, unpaid_break_minutes=0)
    _apply_template_fields(row, {"name": data.get("name"), **data})
    if row.start_time is None or row.end_time is None:
        raise ValueError("Start and end time are required")
    if row.employee_id is not None:
        get_employee(db, tenant_id, row.employee_id)
    db.add(row)
    db.commit()
    db.refresh(row)
    safe_audit(db, tenant_id, "create", "rota_template", row.id, actor_email=actor_email)
    return row


def update_template(db: Session, tenant_id: int, template_id: int, changes: dict, actor_email: str | None = None) -> RotaShiftTemplate:
    row = get_template(db, tenant_id, template_id)
    _apply_template_fields(row, changes)
    db.commit()
    db.refresh(row)
    safe_audit(db, tenant_id, "update", "rota_template", row.id, actor_email=actor_email)
    return row


def delete_template(db: Session, tenant_id: int, template_id: int, actor_email: str | None = None) -> None:
    row = get_template(db, tenant_id, template_id)
    db.query(RotaShift).filter(RotaShift.template_id == row.id).update(
        {RotaShift.template_id: None}, synchronize_session=False
    )
    db.delete(row)
    db.commit()
    safe_audit(db, tenant_id, "delete", "rota_template", template_id, actor_email=actor_email)


def auto_populate_week(db: Session, tenant_id: int, week_id: int, actor_email: str | None = None) -> int:
    week = get_week(db, tenant_id, week_id)
    templates = (
        db.query(RotaShiftTemplate)
        .filter(
            RotaShiftTemplate.tenant_id == tenant_id,
            RotaShiftTemplate.is_active.is_(True),
            RotaShiftTemplate.day_of_week.is_not(None),
        )
        .all()
    )
    existing = {
        (tpl_id, shift_date)
        for tpl_id, shift_date in db.execute(
            select(RotaShift.template_id, RotaShift.shift_date).where(
                RotaShift.week_id == week.id, RotaShift.template_id.is_not(None)
            )
        ).all()
    }
    created = 0
    now = utc_now_naive()
    for tpl in templates:
        shift_date = week.week_start + timedelta(days=int(tpl.day_of_week))
        if (tpl.id, shift_date) in existing:
            continue
        db.add(
            RotaShift(
                tenant_id=tenant_id,
                week_id=week.id,
                employee_id=tpl.employee_id,
                template_id=tpl.id,
                shift_date=shift_date,
                start_time=tpl.start_time,
                end_time=tpl.end_time,
                unpaid_break_minutes=tpl.unpaid_break_minutes,
                department=tpl.department,
                status="scheduled",
                is_open_shift=tpl.employee_id is None,
                is_overnight=tpl.end_time <= tpl.start_time,
                created_at=now,
                updated_at=now,
            )
        )
        created += 1
    if created:
        _mark_dirty(week)
    db.commit()
    logger.info("rota_week_auto_populated", week_id=week.id, created=created)
    safe_audit(db, tenant_id, "auto_populate", "rota_week", week.id, actor_email=actor_email, payload={"created": created})
    return created


# Publishing


def publish_week(db: Session, tenant_id: int, week_id: int, actor_email: str | None = None) -> RotaWeek:
    week = get_week(db, tenant_id, week_id)
    db.query(RotaPublishedShift).filter(RotaPublishedShift.week_id == week.id).delete(synchronize_session=False)
    shifts = (
        db.query(RotaShift)
        .filter(RotaShift.week_id == week.id, RotaShift.status != "cancelled")
        .all()
    )
    now = utc_now_naive()
    for shift in shifts:
        db.add(
            RotaPublishedShift(
                tenant_id=tenant_id,
                week_id=week.id,
                shift_id=shift.id,
                employee_id=shift.employee_id,
                shift_date=shift.shift_date,
                start_time=shift.start_time,
                end_time=shift.end_time,
                unpaid_break_minutes=shift.unpaid_break_minutes,
                department=shift.department,
                status=shift.status,
                is_open_shift=shift.is_open_shift,
                published_at=now,
            )
        )
    week.status = "published"
    week.published_at = now
    week.published_by = actor_email
    week.has_unpublished_changes = False
    db.commit()
    db.refresh(week)
    logger.info("rota_week_published", week_id=week.id, shifts=len(shifts))
    safe_audit(db, tenant_id, "publish", "rota_week", week.id, actor_email=actor_email, payload={"shifts": len(shifts)})
    revalidate_tag(dashboard_tag(tenant_id))
    return week


def get_published_shifts(db: Session, tenant_id: int, day: date) -> list[RotaPublishedShift]:
    start = week_start_for(day)
    week = db.execute(
        select(RotaWeek).where(RotaWeek.tenant_id == tenant_id, RotaWeek.week_start == start)
    ).scalar_one_or_none()
    if not week:
        return []
    return (
        db.query(RotaPublishedShift)
        .filter(RotaPublishedShift.week_id == week.id)
        .order_by(RotaPublishedShift.shift_date.asc(), RotaPublishedShift.start_time.asc())
        .all()
    )

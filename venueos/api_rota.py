from datetime import date
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Response, status
from sqlalchemy.orm import Session

from .db import get_db
from .deps import Actor, get_current_tenant, require, service_errors
from .models import Employee, RotaPublishedShift, RotaShift, RotaShiftTemplate, RotaWeek, Tenant
from .rota import (
    auto_populate_week,
    create_employee,
    create_shift,
    create_template,
    delete_employee,
    delete_shift,
    delete_template,
    get_or_create_week,
    get_published_shifts,
    get_week,
    list_employees,
    list_templates,
    list_week_shifts,
    mark_shift_sick,
    move_shift,
    publish_week,
    reassign_shift,
    update_employee,
    update_shift,
    update_template,
)
from .schemas import (
    CountOut,
    EmployeeCreate,
    EmployeeOut,
    EmployeeUpdate,
    PublishedShiftOut,
    RotaWeekOut,
    ShiftCreate,
    ShiftMove,
    ShiftOut,
    ShiftReassign,
    ShiftSick,
    ShiftUpdate,
    TemplateCreate,
    TemplateOut,
    TemplateUpdate,
)

router = APIRouter(prefix="/api/rota")


def _to_employee_out(e: Employee) -> EmployeeOut:
    return EmployeeOut(id=e.id, name=e.name, email=e.email, phone=e.phone, role=e.role, is_active=bool(e.is_active))


def _to_week_out(w: RotaWeek) -> RotaWeekOut:
    return RotaWeekOut(
        id=w.id,
        week_start=w.week_start,
        status=w.status,
        has_unpublished_changes=bool(w.has_unpublished_changes),
        published_at=w.published_at,
        published_by=w.published_by,
    )


def _to_shift_out(s: RotaShift) -> ShiftOut:
    return ShiftOut(
        id=s.id,
        week_id=s.week_id,
        employee_id=s.employee_id,
        employee_name=s.employee.name if s.employee else None,
        template_id=s.template_id,
        shift_date=s.shift_date,
        start_time=s.start_time,
        end_time=s.end_time,
        unpaid_break_minutes=s.unpaid_break_minutes,
        department=s.department,
        status=s.status,
        is_open_shift=bool(s.is_open_shift),
        is_overnight=bool(s.is_overnight),
        notes=s.notes,
        sick_reason=s.sick_reason,
    )


def _to_published_out(p: RotaPublishedShift) -> PublishedShiftOut:
    return PublishedShiftOut(
        shift_id=p.shift_id,
        employee_id=p.employee_id,
        employee_name=p.employee.name if p.employee else None,
        shift_date=p.shift_date,
        start_time=p.start_time,
        end_time=p.end_time,
        unpaid_break_minutes=p.unpaid_break_minutes,
        department=p.department,
        status=p.status,
        is_open_shift=bool(p.is_open_shift),
        published_at=p.published_at,
    )


def _to_template_out(t: RotaShiftTemplate) -> TemplateOut:
    return TemplateOut(
        id=t.id,
        name=t.name,
        day_of_week=t.day_of_week,
        start_time=t.start_time,
        end_time=t.end_time,
        unpaid_break_minutes=t.unpaid_break_minutes,
        department=t.department,
        employee_id=t.employee_id,
        is_active=bool(t.is_active),
    )


# Employees


@router.get("/employees", response_model=List[EmployeeOut])
def employees_index(
    include_inactive: bool = Query(default=False),
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    actor: Actor = Depends(require("rota", "view")),
):
    return [_to_employee_out(e) for e in list_employees(db, tenant.id, include_inactive=include_inactive)]


@router.post("/employees", response_model=EmployeeOut, status_code=status.HTTP_201_CREATED)
def add_employee(
    payload: EmployeeCreate,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    actor: Actor = Depends(require("rota", "edit")),
):
    with service_errors():
        e = create_employee(db, tenant.id, payload.model_dump(), actor_email=actor.email)
    return _to_employee_out(e)


@router.patch("/employees/{employee_id}", response_model=EmployeeOut)
def patch_employee(
    employee_id: int,
    payload: EmployeeUpdate,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    actor: Actor = Depends(require("rota", "edit")),
):
    with service_errors():
        e = update_employee(db, tenant.id, employee_id, payload.model_dump(exclude_unset=True), actor_email=actor.email)
    return _to_employee_out(e)


@router.delete("/employees/{employee_id}", status_code=status.HTTP_204_NO_CONTENT)
def remove_employee(
    employee_id: int,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    actor: Actor = Depends(require("rota", "edit")),
):
    with service_errors():
        delete_employee(db, tenant.id, employee_id, actor_email=actor.email)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# Weeks


@router.get("/weeks", response_model=RotaWeekOut)
def week_for_day(
    day: Optional[date] = Query(default=None),
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    actor: Actor = Depends(require("rota", "view")),
):
    with service_errors():
        w = get_or_create_week(db, tenant.id, day or date.today())
    return _to_week_out(w)


@router.get("/weeks/{week_id}/shifts", response_model=List[ShiftOut])
def week_shifts(
    week_id: int,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    actor: Actor = Depends(require("rota", "view")),
):
    with service_errors():
        rows = list_week_shifts(db, tenant.id, week_id)
    return [_to_shift_out(s) for s in rows]


@router.post("/weeks/{week_id}/auto-populate", response_model=CountOut)
def populate_week(
    week_id: int,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    actor: Actor = Depends(require("rota", "edit")),
):
    with service_errors():
        created = auto_populate_week(db, tenant.id, week_id, actor_email=actor.email)
    return CountOut(count=created)


@router.post("/weeks/{week_id}/publish", response_model=RotaWeekOut)
def publish(
    week_id: int,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    actor: Actor = Depends(require("rota", "publish")),
):
    with service_errors():
        w = publish_week(db, tenant.id, week_id, actor_email=actor.email)
    return _to_week_out(w)


@router.get("/weeks/{week_id}", response_model=RotaWeekOut)
def week_detail(
    week_id: int,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    actor: Actor = Depends(require("rota", "view")),
):
    with service_errors():
        w = get_week(db, tenant.id, week_id)
    return _to_week_out(w)


@router.get("/published", response_model=List[PublishedShiftOut])
def published_shifts(
    day: Optional[date] = Query(default=None),
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    actor: Actor = Depends(require("rota", "view")),
):
    return [_to_published_out(p) for p in get_published_shifts(db, tenant.id, day or date.today())]


# Shifts


@router.post("/shifts", response_model=ShiftOut, status_code=status.HTTP_201_CREATED)
def add_shift(
    payload: ShiftCreate,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    actor: Actor = Depends(require("rota", "edit")),
):
    with service_errors():
        s = create_shift(db, tenant.id, payload.model_dump(), actor_email=actor.email)
    return _to_shift_out(s)


@router.patch("/shifts/{shift_id}", response_model=ShiftOut)
def patch_shift(
    shift_id: int,
    payload: ShiftUpdate,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    actor: Actor = Depends(require("rota", "edit")),
):
    with service_errors():
        s = update_shift(db, tenant.id, shift_id, payload.model_dump(exclude_unset=True), actor_email=actor.email)
    return _to_shift_out(s)


@router.post("/shifts/{shift_id}/reassign", response_model=ShiftOut)
def reassign(
    shift_id: int,
    payload: ShiftReassign,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    actor: Actor = Depends(require("rota", "edit")),
):
    with service_errors():
        s = reassign_shift(db, tenant.id, shift_id, payload.employee_id, actor_email=actor.email)
    return _to_shift_out(s)


@router.post("/shifts/{shift_id}/move", response_model=ShiftOut)
def move(
    shift_id: int,
    payload: ShiftMove,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    actor: Actor = Depends(require("rota", "edit")),
):
    with service_errors():
        s = move_shift(
            db,
            tenant.id,
            shift_id,
            payload.shift_date,
            new_employee_id=payload.employee_id,
            actor_email=actor.email,
        )
    return _to_shift_out(s)


@router.post("/shifts/{shift_id}/sick", response_model=ShiftOut)
def sick(
    shift_id: int,
    payload: Optional[ShiftSick] = None,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    actor: Actor = Depends(require("rota", "edit")),
):
    with service_errors():
        s = mark_shift_sick(db, tenant.id, shift_id, reason=payload.reason if payload else None, actor_email=actor.email)
    return _to_shift_out(s)


@router.delete("/shifts/{shift_id}", status_code=status.HTTP_204_NO_CONTENT)
def remove_shift(
    shift_id: int,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    actor: Actor = Depends(require("rota", "edit")),
):
    with service_errors():
        delete_shift(db, tenant.id, shift_id, actor_email=actor.email)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# Templates


@router.get("/templates", response_model=List[TemplateOut])
def templates_index(
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    actor: Actor = Depends(require("rota", "view")),
):
    return [_to_template_out(t) for t in list_templates(db, tenant.id)]


@router.post("/templates", response_model=TemplateOut, status_code=status.HTTP_201_CREATED)
def add_template(
    payload: TemplateCreate,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    actor: Actor = Depends(require("rota", "edit")),
):
    with service_errors():
        t = create_template(db, tenant.id, payload.model_dump(), actor_email=actor.email)
    return _to_template_out(t)


@router.patch("/templates/{template_id}", response_model=TemplateOut)
def patch_template(
    template_id: int,
    payload: TemplateUpdate,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    actor: Actor = Depends(require("rota", "edit")),
):
    with service_errors():
        t = update_template(db, tenant.id, template_id, payload.model_dump(exclude_unset=True), actor_email=actor.email)
    return _to_template_out(t)


@router.delete("/templates/{template_id}", status_code=status.HTTP_204_NO_CONTENT)
def remove_template(
    template_id: int,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    actor: Actor = Depends(require("rota", "edit")),
):
    with service_errors():
        delete_template(db, tenant.id, template_id, actor_email=actor.email)
    return Response(status_code=status.HTTP_204_NO_CONTENT)

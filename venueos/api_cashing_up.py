from datetime import date
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from .cashing_up import (
    approve_session,
    create_session,
    create_site,
    get_insights,
    get_session,
    get_weekly_summary,
    list_sessions,
    list_site_targets,
    list_sites,
    lock_session,
    set_site_targets,
    submit_session,
    unlock_session,
    update_session,
)
from .db import get_db
from .deps import Actor, get_current_tenant, require, service_errors
from .models import CashingUpSession, CashingUpTarget, Tenant
from .schemas import (
    BreakdownOut,
    CashCountOut,
    SessionCreate,
    SessionOut,
    SessionUpdate,
    SiteCreate,
    SiteOut,
    TargetOut,
    TargetsSet,
)

router = APIRouter(prefix="/api/cashing-up")


def _to_target_out(t: CashingUpTarget) -> TargetOut:
    return TargetOut(day_of_week=t.day_of_week, target_amount=float(t.target_amount))


def _to_session_out(s: CashingUpSession) -> SessionOut:
    return SessionOut(
        id=s.id,
        site_id=s.site_id,
        session_date=s.session_date,
        status=s.status,
        notes=s.notes,
        total_expected_amount=float(s.total_expected_amount),
        total_counted_amount=float(s.total_counted_amount),
        total_variance_amount=float(s.total_variance_amount),
        prepared_by=s.prepared_by,
        approved_by=s.approved_by,
        submitted_at=s.submitted_at,
        approved_at=s.approved_at,
        locked_at=s.locked_at,
        breakdowns=[
            BreakdownOut(
                payment_type_code=b.payment_type_code,
                payment_type_label=b.payment_type_label,
                expected_amount=float(b.expected_amount),
                counted_amount=float(b.counted_amount),
                variance_amount=float(b.variance_amount),
            )
            for b in s.breakdowns
        ],
        cash_counts=[
            CashCountOut(denomination=float(c.denomination), quantity=c.quantity, total_amount=float(c.total_amount))
            for c in s.cash_counts
        ],
    )


@router.get("/sites", response_model=List[SiteOut])
def sites_index(
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    actor: Actor = Depends(require("cashing_up", "view")),
):
    return [SiteOut(id=s.id, name=s.name, is_active=bool(s.is_active)) for s in list_sites(db, tenant.id)]


@router.post("/sites", response_model=SiteOut, status_code=status.HTTP_201_CREATED)
def add_site(
    payload: SiteCreate,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    actor: Actor = Depends(require("settings", "manage")),
):
    with service_errors():
        s = create_site(db, tenant.id, payload.name, actor_email=actor.email)
    return SiteOut(id=s.id, name=s.name, is_active=bool(s.is_active))


@router.get("/sites/{site_id}/targets", response_model=List[TargetOut])
def site_targets(
    site_id: int,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    actor: Actor = Depends(require("cashing_up", "view")),
):
    with service_errors():
        rows = list_site_targets(db, tenant.id, site_id)
    return [_to_target_out(t) for t in rows]


@router.put("/sites/{site_id}/targets", response_model=List[TargetOut])
def put_site_targets(
    site_id: int,
    payload: TargetsSet,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    actor: Actor = Depends(require("settings", "manage")),
):
    with service_errors():
        rows = set_site_targets(db, tenant.id, site_id, payload.targets, actor_email=actor.email)
    return [_to_target_out(t) for t in rows]


@router.get("/sessions", response_model=List[SessionOut])
def sessions_index(
    site_id: Optional[int] = Query(default=None),
    date_from: Optional[date] = Query(default=None),
    date_to: Optional[date] = Query(default=None),
    status_filter: Optional[str] = Query(default=None, alias="status"),
    limit: int = Query(default=100, ge=1, le=1000),
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    actor: Actor = Depends(require("cashing_up", "view")),
):
    with service_errors():
        rows = list_sessions(
            db,
            tenant.id,
            site_id=site_id,
            date_from=date_from,
            date_to=date_to,
            status=status_filter,
            limit=limit,
        )
    return [_to_session_out(s) for s in rows]


@router.post("/sessions", response_model=SessionOut, status_code=status.HTTP_201_CREATED)
def add_session(
    payload: SessionCreate,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    actor: Actor = Depends(require("cashing_up", "edit")),
):
    with service_errors():
        s = create_session(
            db,
            tenant.id,
            site_id=payload.site_id,
            session_date=payload.session_date,
            notes=payload.notes,
            breakdowns=[b.model_dump() for b in payload.breakdowns],
            cash_counts=[c.model_dump() for c in payload.cash_counts],
            actor_email=actor.email,
        )
    return _to_session_out(s)


@router.get("/sessions/{session_id}", response_model=SessionOut)
def session_detail(
    session_id: int,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    actor: Actor = Depends(require("cashing_up", "view")),
):
    with service_errors():
        s = get_session(db, tenant.id, session_id)
    return _to_session_out(s)


@router.patch("/sessions/{session_id}", response_model=SessionOut)
def patch_session(
    session_id: int,
    payload: SessionUpdate,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    actor: Actor = Depends(require("cashing_up", "edit")),
):
    with service_errors():
        s = update_session(
            db,
            tenant.id,
            session_id,
            notes=payload.notes,
            breakdowns=[b.model_dump() for b in payload.breakdowns] if payload.breakdowns is not None else None,
            cash_counts=[c.model_dump() for c in payload.cash_counts] if payload.cash_counts is not None else None,
            actor_email=actor.email,
        )
    return _to_session_out(s)


@router.post("/sessions/{session_id}/submit", response_model=SessionOut)
def submit(
    session_id: int,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    actor: Actor = Depends(require("cashing_up", "submit")),
):
    with service_errors():
        s = submit_session(db, tenant.id, session_id, actor_email=actor.email)
    return _to_session_out(s)


@router.post("/sessions/{session_id}/approve", response_model=SessionOut)
def approve(
    session_id: int,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    actor: Actor = Depends(require("cashing_up", "approve")),
):
    with service_errors():
        s = approve_session(db, tenant.id, session_id, actor_email=actor.email)
    return _to_session_out(s)


@router.post("/sessions/{session_id}/lock", response_model=SessionOut)
def lock(
    session_id: int,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    actor: Actor = Depends(require("cashing_up", "lock")),
):
    with service_errors():
        s = lock_session(db, tenant.id, session_id, actor_email=actor.email)
    return _to_session_out(s)


@router.post("/sessions/{session_id}/unlock", response_model=SessionOut)
def unlock(
    session_id: int,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    actor: Actor = Depends(require("cashing_up", "unlock")),
):
    with service_errors():
        s = unlock_session(db, tenant.id, session_id, actor_email=actor.email)
    return _to_session_out(s)


@router.get("/insights")
def insights(
    site_id: int = Query(gt=0),
    year: Optional[int] = Query(default=None, ge=2000, le=2100),
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    actor: Actor = Depends(require("cashing_up", "view")),
):
    with service_errors():
        return get_insights(db, tenant.id, site_id, year or date.today().year)


@router.get("/weekly")
def weekly(
    site_id: int = Query(gt=0),
    week_start: date = Query(),
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    actor: Actor = Depends(require("cashing_up", "view")),
):
    with service_errors():
        return get_weekly_summary(db, tenant.id, site_id, week_start)

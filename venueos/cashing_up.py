from collections import defaultdict
from datetime import date, timedelta

import structlog
from sqlalchemy import extract, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .core.cache import dashboard_tag, revalidate_tag
from .core.invoice_math import money, to_decimal
from .core.validation import clean_text
from .enterprise import safe_audit
from .errors import NotFoundError
from .models import (
    CashingUpBreakdown,
    CashingUpCashCount,
    CashingUpSession,
    CashingUpSite,
    CashingUpTarget,
    utc_now_naive,
)

logger = structlog.get_logger("venueos.cashing_up")

SESSION_STATUSES = {"draft", "submitted", "approved", "locked"}
DAY_NAMES = ("Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday")


# Sites and targets


def list_sites(db: Session, tenant_id: int) -> list[CashingUpSite]:
    return (
        db.query(CashingUpSite)
        .filter(CashingUpSite.tenant_id == tenant_id)
        .order_by(CashingUpSite.name.asc())
        .all()
    )


def get_site(db: Session, tenant_id: int, site_id: int) -> CashingUpSite:
    row = db.execute(
        select(CashingUpSite).where(CashingUpSite.tenant_id == tenant_id, CashingUpSite.id == site_id)
    ).scalar_one_or_none()
    if not row:
        raise NotFoundError("Site not found")
    return row


def create_site(db: Session, tenant_id: int, name: str, actor_email: str | None = None) -> CashingUpSite:
    site_name = clean_text(name, 120)
    if not site_name:
        raise ValueError("Site name is required")
    taken = db.execute(
        select(CashingUpSite.id).where(CashingUpSite.tenant_id == tenant_id, CashingUpSite.name == site_name)
    ).first()
    if taken:
        raise ValueError("A site with this name already exists")
    row = CashingUpSite(tenant_id=tenant_id, name=site_name, is_active=True)
    db.add(row)
    db.commit()
    db.refresh(row)
    safe_audit(db, tenant_id, "create", "cashing_up_site", row.id, actor_email=actor_email)
    return row


def set_site_targets(db: Session, tenant_id: int, site_id: int, targets: dict[int, object], actor_email: str | None = None) -> list[CashingUpTarget]:
    site = get_site(db, tenant_id, site_id)
    existing = {t.day_of_week: t for t in db.query(CashingUpTarget).filter(CashingUpTarget.site_id == site.id).all()}
    for day_of_week, amount in targets.items():
        dow = int(day_of_week)
        if not 0 <= dow <= 6:
            raise ValueError("Day of week must be between 0 (Monday) and 6 (Sunday)")
        if amount is None:
            if dow in existing:
                db.delete(existing.pop(dow))
            continue
        value = money(amount)
        if value < 0:
            raise ValueError("Target amount cannot be negative")
        if dow in existing:
            existing[dow].target_amount = value
        else:
            existing[dow] = CashingUpTarget(site_id=site.id, day_of_week=dow, target_amount=value)
            db.add(existing[dow])
    db.commit()
    safe_audit(db, tenant_id, "set_targets", "cashing_up_site", site.id, actor_email=actor_email)
    return list_site_targets(db, tenant_id, site.id)


def list_site_targets(db: Session, tenant_id: int, site_id: int) -> list[CashingUpTarget]:
    get_site(db, tenant_id, site_id)
    return (
        db.query(CashingUpTarget)
        .filter(CashingUpTarget.site_id == site_id)
        .order_by(CashingUpTarget.day_of_week.asc())
        .all()
    )


# Sessions


def get_session(db: Session, tenant_id: int, session_id: int) -> CashingUpSession:
    row = db.execute(
        select(CashingUpSession).where(CashingUpSession.tenant_id == tenant_id, CashingUpSession.id == session_id)
    ).scalar_one_or_none()
    if not row:
        raise NotFoundError("Session not found")
    return row


def list_sessions(
    db: Session,
    tenant_id: int,
    site_id: int | None = None,
    date_from: date | None = None,
    date_to: date | None = None,
    status: str | None = None,
    limit: int = 100,
) -> list[CashingUpSession]:
    q = db.query(CashingUpSession).filter(CashingUpSession.tenant_id == tenant_id)
    if site_id is not None:
        q = q.filter(CashingUpSession.site_id == site_id)
    if date_from is not None:
        q = q.filter(CashingUpSession.session_date >= date_from)
    if date_to is not None:
        q = q.filter(CashingUpSession.session_date <= date_to)
    if status:
        if status not in SESSION_STATUSES:
            raise ValueError("Invalid session status")
        q = q.filter(CashingUpSession.status == status)
    return (
        q.order_by(CashingUpSession.session_date.desc(), CashingUpSession.id.desc())
        .limit(max(1, min(int(limit), 1000)))
        .all()
    )


def _replace_children(row: CashingUpSession, breakdowns: list[dict], cash_counts: list[dict]) -> None:
    row.breakdowns.clear()
    row.cash_counts.clear()
    expected_total = money(0)
    counted_total = money(0)
    for item in breakdowns:
        code = clean_text(item.get("payment_type_code"), 20)
        if not code:
            raise ValueError("Payment type code is required")
        expected = money(item.get("expected_amount"))
        counted = money(item.get("counted_amount"))
        expected_total += expected
        counted_total += counted
        row.breakdowns.append(
            CashingUpBreakdown(
                payment_type_code=code.upper(),
                payment_type_label=clean_text(item.get("payment_type_label"), 60) or code.title(),
                expected_amount=expected,
                counted_amount=counted,
                variance_amount=counted - expected,
            )
        )
    for item in cash_counts:
        denomination = to_decimal(item.get("denomination"))
        quantity = int(item.get("quantity") or 0)
        if denomination <= 0:
            raise ValueError("Denomination must be greater than zero")
        if quantity < 0:
            raise ValueError("Quantity cannot be negative")
        row.cash_counts.append(
            CashingUpCashCount(
                denomination=denomination,
                quantity=quantity,
                total_amount=money(denomination * quantity),
            )
        )
    row.total_expected_amount = expected_total
    row.total_counted_amount = counted_total
    row.total_variance_amount = counted_total - expected_total


def create_session(
    db: Session,
    tenant_id: int,
    *,
    site_id: int,
    session_date: date,
    notes: str | None = None,
    breakdowns: list[dict] | None = None,
    cash_counts: list[dict] | None = None,
    actor_email: str | None = None,
) -> CashingUpSession:
    site = get_site(db, tenant_id, site_id)
    duplicate = db.execute(
        select(CashingUpSession.id).where(
            CashingUpSession.site_id == site.id, CashingUpSession.session_date == session_date
        )
    ).first()
    if duplicate:
        raise ValueError("A session for this site and date already exists.")
    now = utc_now_naive()
    row = CashingUpSession(
        tenant_id=tenant_id,
        site_id=site.id,
        session_date=session_date,
        status="draft",
        notes=clean_text(notes, 1000),
        prepared_by=actor_email,
        created_at=now,
        updated_at=now,
    )
    _replace_children(row, breakdowns or [], cash_counts or [])
    db.add(row)
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise ValueError("A session for this site and date already exists.") from exc
    db.refresh(row)
    logger.info("cashing_up_session_created", session_id=row.id, site_id=site.id, session_date=session_date.isoformat())
    safe_audit(db, tenant_id, "create", "cashing_up_session", row.id, actor_email=actor_email)
    revalidate_tag(dashboard_tag(tenant_id))
    return row


def update_session(
    db: Session,
    tenant_id: int,
    session_id: int,
    *,
    notes: str | None = None,
    breakdowns: list[dict] | None = None,
    cash_counts: list[dict] | None = None,
    actor_email: str | None = None,
) -> CashingUpSession:
    row = get_session(db, tenant_id, session_id)
    if row.status != "draft":
        raise ValueError("Only draft sessions can be edited")
    if notes is not None:
        row.notes = clean_text(notes, 1000)
    if breakdowns is not None or cash_counts is not None:
        _replace_children(
            row,
            breakdowns if breakdowns is not None else [_breakdown_dict(b) for b in row.breakdowns],
            cash_counts if cash_counts is not None else [_cash_count_dict(c) for c in row.cash_counts],
        )
    row.updated_at = utc_now_naive()
    db.commit()
    db.refresh(row)
    safe_audit(db, tenant_id, "update", "cashing_up_session", row.id, actor_email=actor_email)
    revalidate_tag(dashboard_tag(tenant_id))
    return row


def _breakdown_dict(b: CashingUpBreakdown) -> dict:
    return {
        "payment_type_code": b.payment_type_code,
        "payment_type_label": b.payment_type_label,
        "expected_amount": b.expected_amount,
        "counted_amount": b.counted_amount,
    }


def _cash_count_dict(c: CashingUpCashCount) -> dict:
    return {"denomination": c.denomination, "quantity": c.quantity}


def _transition(
    db: Session,
    tenant_id: int,
    session_id: int,
    *,
    from_status: str,
    to_status: str,
    error: str,
    action: str,
    actor_email: str | None,
) -> CashingUpSession:
    row = get_session(db, tenant_id, session_id)
    if row.status != from_status:
        raise ValueError(error)
    now = utc_now_naive()
    row.status = to_status
    if action == "submit":
        row.submitted_at = now
    elif action == "approve":
        row.approved_at = now
        row.approved_by = actor_email
    elif action == "lock":
        row.locked_at = now
    elif action == "unlock":
        row.locked_at = None
    row.updated_at = now
    db.commit()
    db.refresh(row)
    logger.info("cashing_up_session_transition", session_id=row.id, action=action, status=to_status)
    safe_audit(db, tenant_id, action, "cashing_up_session", row.id, actor_email=actor_email)
    revalidate_tag(dashboard_tag(tenant_id))
    return row


def submit_session(db: Session, tenant_id: int, session_id: int, actor_email: str | None = None) -> CashingUpSession:
    return _transition(
        db, tenant_id, session_id,
        from_status="draft", to_status="submitted",
        error="Only draft sessions can be submitted", action="submit", actor_email=actor_email,
    )


def approve_session(db: Session, tenant_id: int, session_id: int, actor_email: str | None = None) -> CashingUpSession:
    return _transition(
        db, tenant_id, session_id,
        from_status="submitted", to_status="approved",
        error="Only submitted sessions can be approved", action="approve", actor_email=actor_email,
    )


def lock_session(db: Session, tenant_id: int, session_id: int, actor_email: str | None = None) -> CashingUpSession:
    return _transition(
        db, tenant_id, session_id,
        from_status="approved", to_status="locked",
        error="Only approved sessions can be locked", action="lock", actor_email=actor_email,
    )


def unlock_session(db: Session, tenant_id: int, session_id: int, actor_email: str | None = None) -> CashingUpSession:
    return _transition(
        db, tenant_id, session_id,
        from_status="locked", to_status="approved",
        error="Only locked sessions can be unlocked", action="unlock", actor_email=actor_email,
    )


# Reporting


def get_insights(db: Session, tenant_id: int, site_id: int, year: int) -> dict:
    get_site(db, tenant_id, site_id)
    sessions = (
        db.query(CashingUpSession)
        .filter(
            CashingUpSession.tenant_id == tenant_id,
            CashingUpSession.site_id == site_id,
            extract("year", CashingUpSession.session_date) == year,
        )
        .all()
    )

    by_day: dict[int, list] = defaultdict(list)
    by_month: dict[int, object] = defaultdict(lambda: money(0))
    mix: dict[str, object] = defaultdict(lambda: money(0))
    total_variance = money(0)
    for s in sessions:
        takings = money(s.total_counted_amount)
        by_day[s.session_date.weekday()].append(takings)
        by_month[s.session_date.month] += takings
        total_variance += money(s.total_variance_amount)
        for b in s.breakdowns:
            mix[b.payment_type_code] += money(b.counted_amount)

    mix_total = sum(mix.values(), money(0))
    return {
        "year": year,
        "session_count": len(sessions),
        "day_of_week_average": [
            {
                "day_of_week": dow,
                "day": DAY_NAMES[dow],
                "average": float(money(sum(by_day[dow], money(0)) / len(by_day[dow]))) if by_day[dow] else 0.0,
                "sessions": len(by_day[dow]),
            }
            for dow in range(7)
        ],
        "payment_mix": [
            {
                "payment_type_code": code,
                "amount": float(amount),
                "percentage": round(float(amount / mix_total * 100), 2) if mix_total else 0.0,
            }
            for code, amount in sorted(mix.items())
        ],
        "monthly_totals": [{"month": m, "total": float(by_month.get(m, money(0)))} for m in range(1, 13)],
        "total_variance": float(total_variance),
    }


def get_weekly_summary(db: Session, tenant_id: int, site_id: int, week_start: date) -> dict:
    get_site(db, tenant_id, site_id)
    start = week_start - timedelta(days=week_start.weekday())
    end = start + timedelta(days=6)
    sessions = {
        s.session_date: s
        for s in db.query(CashingUpSession)
        .filter(
            CashingUpSession.tenant_id == tenant_id,
            CashingUpSession.site_id == site_id,
            CashingUpSession.session_date >= start,
            CashingUpSession.session_date <= end,
        )
        .all()
    }
    targets = {t.day_of_week: t.target_amount for t in db.query(CashingUpTarget).filter(CashingUpTarget.site_id == site_id).all()}

    days = []
    for offset in range(7):
        day = start + timedelta(days=offset)
        s = sessions.get(day)
        target = targets.get(day.weekday())
        days.append(
            {
                "date": day,
                "day": DAY_NAMES[day.weekday()],
                "session_id": s.id if s else None,
                "status": s.status if s else None,
                "expected": float(s.total_expected_amount) if s else 0.0,
                "counted": float(s.total_counted_amount) if s else 0.0,
                "variance": float(s.total_variance_amount) if s else 0.0,
                "target": float(target) if target is not None else None,
            }
        )
    return {
        "week_start": start,
        "days": days,
        "total_counted": round(sum(d["counted"] for d in days), 2),
        "total_variance": round(sum(d["variance"] for d in days), 2),
    }

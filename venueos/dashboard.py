from datetime import datetime, time, timedelta

import structlog
from sqlalchemy import and_, or_, select
from sqlalchemy.orm import Session

from .config import settings
from .core.cache import cached, dashboard_tag
from .customers import count_customers
from .events import get_booked_seats, list_upcoming_events
from .invoices import get_invoice_summary
from .loyalty import count_pending_redemptions
from .messaging import get_unread_count
from .models import CashingUpSession, ParkingBooking, RotaWeek, utc_now_naive
from .rota import week_start_for

logger = structlog.get_logger("venueos.dashboard")


def _parking_snapshot(db: Session, tenant_id: int, now: datetime) -> list[dict]:
    day_start = datetime.combine(now.date(), time.min)
    day_end = day_start + timedelta(days=1)
    rows = (
        db.query(ParkingBooking)
        .filter(
            ParkingBooking.tenant_id == tenant_id,
            ParkingBooking.status != "cancelled",
            or_(
                and_(ParkingBooking.start_at >= day_start, ParkingBooking.start_at < day_end),
                ParkingBooking.status == "pending_payment",
            ),
        )
        .order_by(ParkingBooking.start_at.asc())
        .limit(20)
        .all()
    )
    return [
        {
            "id": b.id,
            "reference": b.reference,
            "vehicle_registration": b.vehicle_registration,
            "start_at": b.start_at.isoformat(),
            "end_at": b.end_at.isoformat(),
            "status": b.status,
            "payment_status": b.payment_status,
        }
        for b in rows
    ]


def _rota_snapshot(db: Session, tenant_id: int, now: datetime) -> dict:
    start = week_start_for(now.date())
    week = db.execute(
        select(RotaWeek).where(RotaWeek.tenant_id == tenant_id, RotaWeek.week_start == start)
    ).scalar_one_or_none()
    return {
        "week_start": start.isoformat(),
        "week_id": week.id if week else None,
        "status": week.status if week else "not_started",
        "published_at": week.published_at.isoformat() if week and week.published_at else None,
    }


def _cashing_up_snapshot(db: Session, tenant_id: int) -> list[dict]:
    rows = (
        db.query(CashingUpSession)
        .filter(CashingUpSession.tenant_id == tenant_id)
        .order_by(CashingUpSession.session_date.desc(), CashingUpSession.id.desc())
        .limit(5)
        .all()
    )
    return [
        {
            "id": s.id,
            "site_id": s.site_id,
            "session_date": s.session_date.isoformat(),
            "status": s.status,
            "total_counted": float(s.total_counted_amount or 0),
            "total_variance": float(s.total_variance_amount or 0),
        }
        for s in rows
    ]


@cached(lambda db, tenant_id: dashboard_tag(tenant_id), ttl_seconds=settings.CACHE_DEFAULT_TTL_SECONDS)
def get_dashboard_summary(db: Session, tenant_id: int) -> dict:
    now = utc_now_naive()
    events = []
    for event in list_upcoming_events(db, tenant_id, from_date=now.date(), limit=5):
        events.append(
            {
                "id": event.id,
                "name": event.name,
                "event_date": event.event_date.isoformat(),
                "event_time": event.event_time.isoformat() if event.event_time else None,
                "capacity": event.capacity,
                "booked_seats": get_booked_seats(db, event.id),
                "status": event.status,
            }
        )

    summary = {
        "generated_at": now.isoformat(),
        "upcoming_events": events,
        "customers": {
            "total": count_customers(db, tenant_id),
            "new_last_30_days": count_customers(db, tenant_id, since=now - timedelta(days=30)),
        },
        "unread_messages": get_unread_count(db, tenant_id),
        "pending_redemptions": count_pending_redemptions(db, tenant_id),
        "invoices": get_invoice_summary(db, tenant_id),
        "parking": _parking_snapshot(db, tenant_id, now),
        "rota": _rota_snapshot(db, tenant_id, now),
        "cashing_up": _cashing_up_snapshot(db, tenant_id),
    }
    logger.info("dashboard_built", tenant_id=tenant_id, events=len(events))
    return summary

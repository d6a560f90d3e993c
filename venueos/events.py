from datetime import date, time

import structlog
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .core.cache import cached, dashboard_tag, event_tag, revalidate_tags
from .core.retry import with_retry
from .core.validation import clean_text
from .enterprise import safe_audit
from .errors import NotFoundError
from .messaging import send_sms_best_effort
from .models import Customer, Event, EventBooking, utc_now_naive

logger = structlog.get_logger("venueos.events")

VALID_EVENT_STATUS = {"scheduled", "cancelled", "sold_out", "postponed"}
MAX_SEATS_PER_BOOKING = 100
BULK_ADD_NOTE = "Added via bulk add"


def get_event(db: Session, tenant_id: int, event_id: int) -> Event:
    row = db.execute(
        select(Event).where(Event.tenant_id == tenant_id, Event.id == event_id)
    ).scalar_one_or_none()
    if not row:
        raise NotFoundError("Event not found")
    return row


def _validate_event_status(status: str) -> str:
    normalized = (status or "").strip().lower()
    if normalized not in VALID_EVENT_STATUS:
        raise ValueError("Invalid event status")
    return normalized


def create_event(
    db: Session,
    tenant_id: int,
    *,
    name: str,
    event_date: date,
    event_time: time | None = None,
    capacity: int | None = None,
    category: str | None = None,
    price=0,
    status: str = "scheduled",
    description: str | None = None,
    actor_email: str | None = None,
) -> Event:
    event_name = clean_text(name, 200)
    if not event_name:
        raise ValueError("Event name is required")
    if capacity is not None and capacity < 0:
        raise ValueError("Capacity cannot be negative")
    row = Event(
        tenant_id=tenant_id,
        name=event_name,
        event_date=event_date,
        event_time=event_time,
        capacity=capacity,
        category=clean_text(category, 80),
        price=price or 0,
        status=_validate_event_status(status),
        description=clean_text(description),
        created_at=utc_now_naive(),
    )
    db.add(row)
    db.commit()
    db.refresh(row)
    logger.info("event_created", event_id=row.id)
    safe_audit(db, tenant_id, "create", "event", row.id, actor_email=actor_email, payload={"name": row.name})
    revalidate_tags(dashboard_tag(tenant_id))
    return row


def update_event(db: Session, tenant_id: int, event_id: int, changes: dict, actor_email: str | None = None) -> Event:
    row = get_event(db, tenant_id, event_id)
    if "name" in changes:
        event_name = clean_text(changes["name"], 200)
        if not event_name:
            raise ValueError("Event name is required")
        row.name = event_name
    if changes.get("event_date") is not None:
        row.event_date = changes["event_date"]
    if "event_time" in changes:
        row.event_time = changes["event_time"]
    if "capacity" in changes:
        capacity = changes["capacity"]
        if capacity is not None and capacity < 0:
            raise ValueError("Capacity cannot be negative")
        row.capacity = capacity
    if "category" in changes:
        row.category = clean_text(changes["category"], 80)
    if changes.get("price") is not None:
        row.price = changes["price"]
    if changes.get("status") is not None:
        row.status = _validate_event_status(changes["status"])
    if "description" in changes:
        row.description = clean_text(changes["description"])
    db.commit()
    db.refresh(row)
    safe_audit(db, tenant_id, "update", "event", row.id, actor_email=actor_email)
    revalidate_tags(event_tag(row.id), dashboard_tag(tenant_id))
    return row


def delete_event(db: Session, tenant_id: int, event_id: int, actor_email: str | None = None) -> None:
    row = get_event(db, tenant_id, event_id)
    db.query(EventBooking).filter(EventBooking.event_id == row.id).delete(synchronize_session=False)
    db.delete(row)
    db.commit()
    logger.info("event_deleted", event_id=event_id)
    safe_audit(db, tenant_id, "delete", "event", event_id, actor_email=actor_email)
    revalidate_tags(event_tag(event_id), dashboard_tag(tenant_id))


def list_upcoming_events(db: Session, tenant_id: int, from_date: date | None = None, limit: int = 50) -> list[Event]:
    start = from_date or utc_now_naive().date()
    return (
        db.query(Event)
        .filter(Event.tenant_id == tenant_id, Event.event_date >= start)
        .order_by(Event.event_date.asc(), Event.event_time.asc(), Event.id.asc())
        .limit(max(1, min(int(limit), 500)))
        .all()
    )


@cached(lambda db, event_id: event_tag(event_id), ttl_seconds=60)
def get_booked_seats(db: Session, event_id: int) -> int:
    total = db.execute(
        select(func.coalesce(func.sum(EventBooking.seats), 0)).where(EventBooking.event_id == event_id)
    ).scalar()
    return int(total or 0)


def _validate_seats_and_notes(seats: int, notes: str | None) -> None:
    if seats < 0:
        raise ValueError("Seats cannot be negative")
    if seats > MAX_SEATS_PER_BOOKING:
        raise ValueError(f"Cannot book more than {MAX_SEATS_PER_BOOKING} seats at once")
    if notes and len(notes) > 500:
        raise ValueError("Notes cannot exceed 500 characters")


def _check_capacity(event: Event, booked: int, requested: int) -> None:
    if event.capacity is None or requested <= 0:
        return
    if booked + requested > event.capacity:
        available = max(0, event.capacity - booked)
        raise ValueError(f"Only {available} seats available (capacity: {event.capacity})")


def get_booking(db: Session, tenant_id: int, booking_id: int) -> EventBooking:
    row = db.execute(
        select(EventBooking).where(EventBooking.tenant_id == tenant_id, EventBooking.id == booking_id)
    ).scalar_one_or_none()
    if not row:
        raise NotFoundError("Booking not found")
    return row


def _send_booking_confirmation(db: Session, tenant_id: int, event: Event, customer: Customer, booking: EventBooking) -> None:
    if not customer.mobile_number or not customer.sms_opt_in:
        return
    when = event.event_date.strftime("%d %b")
    if event.event_time:
        when += f" at {event.event_time.strftime('%H:%M')}"
    seats_label = "seat" if booking.seats == 1 else "seats"
    body = (
        f"Hi {customer.first_name}, your booking for {event.name} on {when} is confirmed "
        f"({booking.seats} {seats_label}). See you there!"
    )
    send_sms_best_effort(
        db,
        tenant_id,
        to=customer.mobile_number,
        body=body,
        customer_id=customer.id,
        metadata={"template_key": "booking_confirmation", "event_booking_id": booking.id, "event_id": event.id},
    )


def create_booking(
    db: Session,
    tenant_id: int,
    *,
    event_id: int,
    customer_id: int,
    seats: int,
    notes: str | None = None,
    actor_email: str | None = None,
) -> EventBooking:
    """
    Books seats for a customer. Seats=0 is a reminder-only booking: no capacity
    check, no confirmation SMS.
    """
    _validate_seats_and_notes(seats, notes)
    event = get_event(db, tenant_id, event_id)
    customer = db.execute(
        select(Customer).where(Customer.tenant_id == tenant_id, Customer.id == customer_id)
    ).scalar_one_or_none()
    if not customer:
        raise NotFoundError("Customer not found")

    existing = db.execute(
        select(EventBooking.id).where(EventBooking.event_id == event_id, EventBooking.customer_id == customer_id)
    ).first()
    if existing:
        raise ValueError("This customer already has a booking for this event")

    _check_capacity(event, get_booked_seats(db, event_id), seats)

    def _insert() -> EventBooking:
        row = EventBooking(
            tenant_id=tenant_id,
            event_id=event_id,
            customer_id=customer_id,
            seats=seats,
            notes=clean_text(notes, 500),
            created_at=utc_now_naive(),
            updated_at=utc_now_naive(),
        )
        db.add(row)
        db.commit()
        db.refresh(row)
        return row

    try:
        booking = with_retry(_insert, on_retry=lambda exc: db.rollback())
    except IntegrityError as exc:
        db.rollback()
        raise ValueError("This customer already has a booking for this event") from exc

    logger.info("event_booking_created", booking_id=booking.id, event_id=event_id, seats=seats)
    safe_audit(
        db,
        tenant_id,
        "create",
        "event_booking",
        booking.id,
        actor_email=actor_email,
        payload={"event_id": event_id, "customer_id": customer_id, "seats": seats},
    )
    if seats > 0:
        _send_booking_confirmation(db, tenant_id, event, customer, booking)
    revalidate_tags(event_tag(event_id), dashboard_tag(tenant_id))
    return booking


def bulk_create_bookings(
    db: Session,
    tenant_id: int,
    *,
    event_id: int,
    customer_ids: list[int],
    actor_email: str | None = None,
) -> int:
    get_event(db, tenant_id, event_id)
    wanted = sorted({int(x) for x in customer_ids or []})
    if not wanted:
        raise ValueError("No customers selected")
    valid = set(
        db.execute(
            select(Customer.id).where(Customer.tenant_id == tenant_id, Customer.id.in_(wanted))
        ).scalars()
    )
    booked = set(
        db.execute(
            select(EventBooking.customer_id).where(
                EventBooking.event_id == event_id, EventBooking.customer_id.in_(wanted)
            )
        ).scalars()
    )
    to_create = [cid for cid in wanted if cid in valid and cid not in booked]
    if not to_create:
        raise ValueError("All selected customers already have bookings for this event")

    now = utc_now_naive()
    for customer_id in to_create:
        db.add(
            EventBooking(
                tenant_id=tenant_id,
                event_id=event_id,
                customer_id=customer_id,
                seats=0,
                notes=BULK_ADD_NOTE,
                created_at=now,
                updated_at=now,
            )
        )
    db.commit()
    logger.info("event_bookings_bulk_created", event_id=event_id, created=len(to_create))
    safe_audit(
        db,
        tenant_id,
        "bulk_create",
        "event_booking",
        event_id,
        actor_email=actor_email,
        payload={"created": len(to_create)},
    )
    revalidate_tags(event_tag(event_id), dashboard_tag(tenant_id))
    return len(to_create)


def update_booking(
    db: Session,
    tenant_id: int,
    booking_id: int,
    *,
    seats: int | None = None,
    notes: str | None = None,
    actor_email: str | None = None,
) -> EventBooking:
    booking = get_booking(db, tenant_id, booking_id)
    new_seats = booking.seats if seats is None else seats
    _validate_seats_and_notes(new_seats, notes)

    if new_seats > booking.seats:
        event = get_event(db, tenant_id, booking.event_id)
        booked_elsewhere = get_booked_seats(db, booking.event_id) - booking.seats
        _check_capacity(event, booked_elsewhere, new_seats)

    booking.seats = new_seats
    if notes is not None:
        booking.notes = clean_text(notes, 500)
    booking.updated_at = utc_now_naive()
    db.commit()
    db.refresh(booking)
    safe_audit(
        db,
        tenant_id,
        "update",
        "event_booking",
        booking.id,
        actor_email=actor_email,
        payload={"seats": new_seats},
    )
    revalidate_tags(event_tag(booking.event_id), dashboard_tag(tenant_id))
    return booking


def delete_booking(db: Session, tenant_id: int, booking_id: int, actor_email: str | None = None) -> None:
    booking = get_booking(db, tenant_id, booking_id)
    event_id = booking.event_id
    db.delete(booking)
    db.commit()
    safe_audit(db, tenant_id, "delete", "event_booking", booking_id, actor_email=actor_email, payload={"event_id": event_id})
    revalidate_tags(event_tag(event_id), dashboard_tag(tenant_id))


def list_event_bookings(db: Session, tenant_id: int, event_id: int) -> list[EventBooking]:
    get_event(db, tenant_id, event_id)
    return (
        db.query(EventBooking)
        .join(Customer, Customer.id == EventBooking.customer_id)
        .filter(EventBooking.tenant_id == tenant_id, EventBooking.event_id == event_id)
        .order_by(Customer.first_name.asc(), Customer.last_name.asc(), EventBooking.id.asc())
        .all()
    )

from datetime import date
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Response, status
from sqlalchemy.orm import Session

from .db import get_db
from .deps import Actor, get_current_tenant, require, service_errors
from .events import (
    bulk_create_bookings,
    create_booking,
    create_event,
    delete_booking,
    delete_event,
    get_booked_seats,
    get_event,
    list_event_bookings,
    list_upcoming_events,
    update_booking,
    update_event,
)
from .models import Event, EventBooking, Tenant
from .schemas import (
    BookingBulkCreate,
    BookingCreate,
    BookingOut,
    BookingUpdate,
    CountOut,
    EventCreate,
    EventOut,
    EventUpdate,
)

router = APIRouter(prefix="/api")


def _to_event_out(db: Session, e: Event) -> EventOut:
    return EventOut(
        id=e.id,
        name=e.name,
        event_date=e.event_date,
        event_time=e.event_time,
        capacity=e.capacity,
        category=e.category,
        price=float(e.price or 0),
        status=e.status,
        description=e.description,
        booked_seats=get_booked_seats(db, e.id),
    )


def _to_booking_out(b: EventBooking) -> BookingOut:
    return BookingOut(
        id=b.id,
        event_id=b.event_id,
        customer_id=b.customer_id,
        customer_name=b.customer.full_name if b.customer else None,
        seats=b.seats,
        notes=b.notes,
        created_at=b.created_at,
    )


@router.get("/events", response_model=List[EventOut])
def events_index(
    from_date: Optional[date] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    actor: Actor = Depends(require("events", "view")),
):
    return [_to_event_out(db, e) for e in list_upcoming_events(db, tenant.id, from_date=from_date, limit=limit)]


@router.post("/events", response_model=EventOut, status_code=status.HTTP_201_CREATED)
def add_event(
    payload: EventCreate,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    actor: Actor = Depends(require("events", "create")),
):
    with service_errors():
        e = create_event(
            db,
            tenant.id,
            name=payload.name,
            event_date=payload.event_date,
            event_time=payload.event_time,
            capacity=payload.capacity,
            category=payload.category,
            price=payload.price,
            status=payload.status,
            description=payload.description,
            actor_email=actor.email,
        )
    return _to_event_out(db, e)


@router.get("/events/{event_id}", response_model=EventOut)
def event_detail(
    event_id: int,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    actor: Actor = Depends(require("events", "view")),
):
    with service_errors():
        e = get_event(db, tenant.id, event_id)
    return _to_event_out(db, e)


@router.patch("/events/{event_id}", response_model=EventOut)
def patch_event(
    event_id: int,
    payload: EventUpdate,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    actor: Actor = Depends(require("events", "edit")),
):
    with service_errors():
        e = update_event(db, tenant.id, event_id, payload.model_dump(exclude_unset=True), actor_email=actor.email)
    return _to_event_out(db, e)


@router.delete("/events/{event_id}", status_code=status.HTTP_204_NO_CONTENT)
def remove_event(
    event_id: int,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    actor: Actor = Depends(require("events", "delete")),
):
    with service_errors():
        delete_event(db, tenant.id, event_id, actor_email=actor.email)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/events/{event_id}/bookings", response_model=List[BookingOut])
def event_bookings(
    event_id: int,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    actor: Actor = Depends(require("events", "view")),
):
    with service_errors():
        rows = list_event_bookings(db, tenant.id, event_id)
    return [_to_booking_out(b) for b in rows]


@router.post("/events/{event_id}/bookings/bulk", response_model=CountOut)
def bulk_bookings(
    event_id: int,
    payload: BookingBulkCreate,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    actor: Actor = Depends(require("events", "manage")),
):
    with service_errors():
        created = bulk_create_bookings(
            db, tenant.id, event_id=event_id, customer_ids=payload.customer_ids, actor_email=actor.email
        )
    return CountOut(count=created)


@router.post("/bookings", response_model=BookingOut, status_code=status.HTTP_201_CREATED)
def add_booking(
    payload: BookingCreate,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    actor: Actor = Depends(require("events", "edit")),
):
    with service_errors():
        b = create_booking(
            db,
            tenant.id,
            event_id=payload.event_id,
            customer_id=payload.customer_id,
            seats=payload.seats,
            notes=payload.notes,
            actor_email=actor.email,
        )
    return _to_booking_out(b)


@router.patch("/bookings/{booking_id}", response_model=BookingOut)
def patch_booking(
    booking_id: int,
    payload: BookingUpdate,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    actor: Actor = Depends(require("events", "edit")),
):
    with service_errors():
        b = update_booking(
            db,
            tenant.id,
            booking_id,
            seats=payload.seats,
            notes=payload.notes,
            actor_email=actor.email,
        )
    return _to_booking_out(b)


@router.delete("/bookings/{booking_id}", status_code=status.HTTP_204_NO_CONTENT)
def remove_booking(
    booking_id: int,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    actor: Actor = Depends(require("events", "edit")),
):
    with service_errors():
        delete_booking(db, tenant.id, booking_id, actor_email=actor.email)
    return Response(status_code=status.HTTP_204_NO_CONTENT)

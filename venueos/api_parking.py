import json
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from .core.parking_pricing import calculate_parking_price
from .db import get_db
from .deps import Actor, get_current_tenant, require, service_errors
from .models import ParkingBooking, ParkingBookingNotification, ParkingBookingPayment, ParkingRate, Tenant
from .parking import (
    booking_amount,
    cancel_parking_booking,
    capture_parking_payment,
    create_parking_booking,
    create_parking_payment_order,
    create_rate,
    get_active_rate,
    get_parking_booking,
    list_booking_notifications,
    list_parking_bookings,
    list_rates,
    mark_parking_booking_paid,
    refund_parking_payment,
    send_parking_payment_request,
    update_parking_booking_status,
)
from .schemas import (
    ParkingBookingCreate,
    ParkingBookingOut,
    ParkingBookingUpdate,
    ParkingCancel,
    ParkingNotificationOut,
    ParkingPaymentOut,
    ParkingQuoteIn,
    ParkingQuoteLine,
    ParkingQuoteOut,
    ParkingRateCreate,
    ParkingRateOut,
    ParkingRefund,
)

router = APIRouter(prefix="/api/parking")
public_router = APIRouter(prefix="/public/parking")


def _to_rate_out(r: ParkingRate) -> ParkingRateOut:
    return ParkingRateOut(
        id=r.id,
        effective_from=r.effective_from,
        hourly_rate=float(r.hourly_rate),
        daily_rate=float(r.daily_rate),
        weekly_rate=float(r.weekly_rate),
        monthly_rate=float(r.monthly_rate),
        capacity_override=r.capacity_override,
        notes=r.notes,
    )


def _to_booking_out(b: ParkingBooking) -> ParkingBookingOut:
    return ParkingBookingOut(
        id=b.id,
        reference=b.reference,
        customer_id=b.customer_id,
        customer_first_name=b.customer_first_name,
        customer_last_name=b.customer_last_name,
        customer_mobile=b.customer_mobile,
        customer_email=b.customer_email,
        vehicle_registration=b.vehicle_registration,
        vehicle_make=b.vehicle_make,
        vehicle_model=b.vehicle_model,
        vehicle_colour=b.vehicle_colour,
        start_at=b.start_at,
        end_at=b.end_at,
        duration_minutes=b.duration_minutes,
        calculated_price=float(b.calculated_price),
        override_price=float(b.override_price) if b.override_price is not None else None,
        amount_due=float(booking_amount(b)),
        pricing_breakdown=json.loads(b.pricing_breakdown_json or "[]"),
        status=b.status,
        payment_status=b.payment_status,
        payment_due_at=b.payment_due_at,
        initial_request_sms_sent=bool(b.initial_request_sms_sent),
        confirmed_at=b.confirmed_at,
        cancelled_at=b.cancelled_at,
        notes=b.notes,
    )


def _to_payment_out(p: ParkingBookingPayment) -> ParkingPaymentOut:
    return ParkingPaymentOut(
        id=p.id,
        booking_id=p.booking_id,
        amount=float(p.amount),
        currency=p.currency,
        status=p.status,
        paypal_order_id=p.paypal_order_id,
        approve_url=p.approve_url,
        expires_at=p.expires_at,
        paid_at=p.paid_at,
    )


def _to_notification_out(n: ParkingBookingNotification) -> ParkingNotificationOut:
    return ParkingNotificationOut(
        id=n.id,
        channel=n.channel,
        event_type=n.event_type,
        status=n.status,
        message_sid=n.message_sid,
        sent_at=n.sent_at,
        created_at=n.created_at,
    )


@router.get("/rates", response_model=List[ParkingRateOut])
def rates_index(
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    actor: Actor = Depends(require("parking", "view")),
):
    return [_to_rate_out(r) for r in list_rates(db, tenant.id)]


@router.post("/rates", response_model=ParkingRateOut, status_code=status.HTTP_201_CREATED)
def add_rate(
    payload: ParkingRateCreate,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    actor: Actor = Depends(require("parking", "manage")),
):
    with service_errors():
        r = create_rate(db, tenant.id, payload.model_dump(), actor_email=actor.email)
    return _to_rate_out(r)


@router.post("/quote", response_model=ParkingQuoteOut)
def quote(
    payload: ParkingQuoteIn,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    actor: Actor = Depends(require("parking", "view")),
):
    with service_errors():
        rate = get_active_rate(db, tenant.id)
        if not rate:
            raise ValueError("Parking rates have not been configured. Please add rates first.")
        pricing = calculate_parking_price(payload.start_at, payload.end_at, rate)
    return ParkingQuoteOut(
        total=float(pricing["total"]),
        hours=pricing["hours"],
        breakdown=[
            ParkingQuoteLine(
                unit=line["unit"],
                quantity=line["quantity"],
                rate=float(line["rate"]),
                subtotal=float(line["subtotal"]),
            )
            for line in pricing["breakdown"]
        ],
    )


@router.get("/bookings", response_model=List[ParkingBookingOut])
def bookings_index(
    status_filter: Optional[str] = Query(default=None, alias="status"),
    limit: int = Query(default=200, ge=1, le=1000),
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    actor: Actor = Depends(require("parking", "view")),
):
    return [_to_booking_out(b) for b in list_parking_bookings(db, tenant.id, status=status_filter, limit=limit)]


@router.post("/bookings", response_model=ParkingBookingOut, status_code=status.HTTP_201_CREATED)
def add_booking(
    payload: ParkingBookingCreate,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    actor: Actor = Depends(require("parking", "manage")),
):
    data = payload.model_dump()
    send_request = data.pop("send_payment_request")
    with service_errors():
        b = create_parking_booking(db, tenant.id, actor_email=actor.email, **data)
        if send_request:
            send_parking_payment_request(db, tenant.id, b.id)
            db.refresh(b)
    return _to_booking_out(b)


@router.get("/bookings/{booking_id}", response_model=ParkingBookingOut)
def booking_detail(
    booking_id: int,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    actor: Actor = Depends(require("parking", "view")),
):
    with service_errors():
        b = get_parking_booking(db, tenant.id, booking_id)
    return _to_booking_out(b)


@router.post("/bookings/{booking_id}/cancel", response_model=ParkingBookingOut)
def cancel_booking(
    booking_id: int,
    payload: Optional[ParkingCancel] = None,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    actor: Actor = Depends(require("parking", "manage")),
):
    with service_errors():
        b = cancel_parking_booking(
            db,
            tenant.id,
            booking_id,
            reason=payload.reason if payload else None,
            actor_email=actor.email,
        )
    return _to_booking_out(b)


@router.patch("/bookings/{booking_id}", response_model=ParkingBookingOut)
def update_booking(
    booking_id: int,
    payload: ParkingBookingUpdate,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    actor: Actor = Depends(require("parking", "manage")),
):
    with service_errors():
        b = update_parking_booking_status(
            db, tenant.id, booking_id, actor_email=actor.email, **payload.model_dump(exclude_unset=True)
        )
    return _to_booking_out(b)


@router.post("/bookings/{booking_id}/mark-paid", response_model=ParkingBookingOut)
def mark_paid(
    booking_id: int,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    actor: Actor = Depends(require("parking", "manage")),
):
    with service_errors():
        b = mark_parking_booking_paid(db, tenant.id, booking_id, actor_email=actor.email)
    return _to_booking_out(b)


@router.post("/bookings/{booking_id}/refund", response_model=ParkingBookingOut)
def refund_booking(
    booking_id: int,
    payload: Optional[ParkingRefund] = None,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    actor: Actor = Depends(require("parking", "refund")),
):
    with service_errors():
        b = refund_parking_payment(
            db,
            tenant.id,
            booking_id,
            amount=payload.amount if payload else None,
            reason=payload.reason if payload else None,
            actor_email=actor.email,
        )
    return _to_booking_out(b)


@router.post("/bookings/{booking_id}/payment-order", response_model=ParkingPaymentOut)
def payment_order(
    booking_id: int,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    actor: Actor = Depends(require("parking", "manage")),
):
    with service_errors():
        p = create_parking_payment_order(db, tenant.id, booking_id)
    return _to_payment_out(p)


@router.post("/bookings/{booking_id}/payment-request", response_model=ParkingNotificationOut)
def payment_request(
    booking_id: int,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    actor: Actor = Depends(require("parking", "manage")),
):
    with service_errors():
        n = send_parking_payment_request(db, tenant.id, booking_id)
    return _to_notification_out(n)


@router.get("/bookings/{booking_id}/notifications", response_model=List[ParkingNotificationOut])
def booking_notifications(
    booking_id: int,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    actor: Actor = Depends(require("parking", "view")),
):
    with service_errors():
        rows = list_booking_notifications(db, tenant.id, booking_id)
    return [_to_notification_out(n) for n in rows]


@public_router.get("/paypal/return")
def paypal_return(
    token: str = Query(min_length=1, max_length=80),
    db: Session = Depends(get_db),
):
    # PayPal appends the order id as ?token= on the buyer's return redirect
    with service_errors():
        b = capture_parking_payment(db, order_id=token)
    return {"reference": b.reference, "status": b.status, "payment_status": b.payment_status}


@public_router.get("/paypal/cancel")
def paypal_cancel(
    booking_id: int = Query(gt=0),
    db: Session = Depends(get_db),
):
    # buyer backed out on PayPal; the booking stays pending until paid or cancelled by staff
    b = db.get(ParkingBooking, booking_id)
    if not b:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Parking booking not found")
    return {"reference": b.reference, "status": b.status, "payment_status": b.payment_status}

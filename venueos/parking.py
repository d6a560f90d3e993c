import json
from datetime import datetime, timedelta
from decimal import Decimal

import structlog
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .config import settings
from .core import paypal
from .core.cache import dashboard_tag, revalidate_tag
from .core.parking_pricing import calculate_parking_price
from .core.retry import DEFAULT_RETRY_ON, with_retry
from .core.validation import clean_text, normalize_email, normalize_phone
from .customers import find_or_create_customer_by_phone
from .enterprise import safe_audit
from .errors import IntegrationError, NotFoundError
from .messaging import send_sms
from .models import (
    Customer,
    ParkingBooking,
    ParkingBookingNotification,
    ParkingBookingPayment,
    ParkingRate,
    utc_now_naive,
)

logger = structlog.get_logger("venueos.parking")

BOOKING_STATUSES = {"pending_payment", "confirmed", "completed", "cancelled", "expired"}
PAYMENT_STATUSES = {"pending", "paid", "refunded", "failed", "expired"}
ACTIVE_STATUSES = ("pending_payment", "confirmed")
REFERENCE_PREFIX = "PAR"


# Rates


def get_active_rate(db: Session, tenant_id: int, at: datetime | None = None) -> ParkingRate | None:
    return db.execute(
        select(ParkingRate)
        .where(ParkingRate.tenant_id == tenant_id, ParkingRate.effective_from <= (at or utc_now_naive()))
        .order_by(ParkingRate.effective_from.desc(), ParkingRate.id.desc())
        .limit(1)
    ).scalar_one_or_none()


def list_rates(db: Session, tenant_id: int) -> list[ParkingRate]:
    return (
        db.query(ParkingRate)
        .filter(ParkingRate.tenant_id == tenant_id)
        .order_by(ParkingRate.effective_from.desc(), ParkingRate.id.desc())
        .all()
    )


def create_rate(db: Session, tenant_id: int, data: dict, actor_email: str | None = None) -> ParkingRate:
    values = {}
    for field in ("hourly_rate", "daily_rate", "weekly_rate", "monthly_rate"):
        amount = Decimal(str(data.get(field) or 0))
        if amount <= 0:
            raise ValueError("All parking rates must be greater than zero")
        values[field] = amount
    capacity = data.get("capacity_override")
    if capacity is not None and capacity <= 0:
        raise ValueError("Capacity override must be greater than zero")
    row = ParkingRate(
        tenant_id=tenant_id,
        effective_from=data.get("effective_from") or utc_now_naive(),
        capacity_override=capacity,
        notes=clean_text(data.get("notes"), 500),
        created_at=utc_now_naive(),
        **values,
    )
    db.add(row)
    db.commit()
    db.refresh(row)
    safe_audit(db, tenant_id, "create", "parking_rate", row.id, actor_email=actor_email)
    return row


# Bookings


def get_parking_booking(db: Session, tenant_id: int, booking_id: int) -> ParkingBooking:
    row = db.execute(
        select(ParkingBooking).where(ParkingBooking.tenant_id == tenant_id, ParkingBooking.id == booking_id)
    ).scalar_one_or_none()
    if not row:
        raise NotFoundError("Parking booking not found")
    return row


def list_parking_bookings(
    db: Session,
    tenant_id: int,
    status: str | None = None,
    limit: int = 200,
) -> list[ParkingBooking]:
    q = db.query(ParkingBooking).filter(ParkingBooking.tenant_id == tenant_id)
    if status:
        if status not in BOOKING_STATUSES:
            raise ValueError("Invalid parking booking status")
        q = q.filter(ParkingBooking.status == status)
    return (
        q.order_by(ParkingBooking.start_at.asc(), ParkingBooking.id.asc())
        .limit(max(1, min(int(limit), 1000)))
        .all()
    )


def count_overlapping_bookings(db: Session, tenant_id: int, start: datetime, end: datetime) -> int:
    return int(
        db.execute(
            select(func.count(ParkingBooking.id)).where(
                ParkingBooking.tenant_id == tenant_id,
                ParkingBooking.status.in_(ACTIVE_STATUSES),
                ParkingBooking.start_at <= end,
                ParkingBooking.end_at >= start,
            )
        ).scalar()
        or 0
    )


def _next_reference(db: Session, tenant_id: int) -> str:
    day = utc_now_naive().strftime("%Y%m%d")
    prefix = f"{REFERENCE_PREFIX}-{day}-"
    existing = db.execute(
        select(ParkingBooking.reference).where(
            ParkingBooking.tenant_id == tenant_id,
            ParkingBooking.reference.like(f"{prefix}%"),
        )
    ).scalars()
    highest = 0
    for ref in existing:
        try:
            highest = max(highest, int(ref.rsplit("-", 1)[1]))
        except (IndexError, ValueError):
            continue
    return f"{prefix}{highest + 1:04d}"


def create_parking_booking(
    db: Session,
    tenant_id: int,
    *,
    customer_first_name: str,
    customer_last_name: str | None,
    customer_mobile: str,
    customer_email: str | None = None,
    vehicle_registration: str,
    vehicle_make: str | None = None,
    vehicle_model: str | None = None,
    vehicle_colour: str | None = None,
    start_at: datetime,
    end_at: datetime,
    notes: str | None = None,
    override_price=None,
    override_reason: str | None = None,
    capacity_override: bool = False,
    capacity_override_reason: str | None = None,
    actor_email: str | None = None,
) -> ParkingBooking:
    first_name = clean_text(customer_first_name, 120)
    if not first_name:
        raise ValueError("First name is required")
    if not (customer_mobile or "").strip():
        raise ValueError("Mobile number is required")
    mobile = normalize_phone(customer_mobile)
    registration = "".join((vehicle_registration or "").split()).upper()
    if not registration:
        raise ValueError("Vehicle registration is required")
    email = normalize_email(customer_email)
    if end_at <= start_at:
        raise ValueError("End time must be after start time")
    override = None
    if override_price is not None:
        override = Decimal(str(override_price))
        if override <= 0:
            raise ValueError("Override price must be greater than zero")

    rate = get_active_rate(db, tenant_id)
    if not rate:
        raise ValueError("Parking rates have not been configured. Please add rates first.")

    capacity = rate.capacity_override or settings.PARKING_DEFAULT_CAPACITY
    overlapping = count_overlapping_bookings(db, tenant_id, start_at, end_at)
    if overlapping >= capacity and not capacity_override:
        raise ValueError("No parking spaces remaining for the selected period")

    pricing = calculate_parking_price(start_at, end_at, rate)
    customer = find_or_create_customer_by_phone(
        db,
        tenant_id,
        first_name=first_name,
        last_name=customer_last_name,
        mobile_number=mobile,
        email=email,
    )

    def _insert() -> ParkingBooking:
        now = utc_now_naive()
        row = ParkingBooking(
            tenant_id=tenant_id,
            reference=_next_reference(db, tenant_id),
            customer_id=customer.id,
            customer_first_name=first_name,
            customer_last_name=clean_text(customer_last_name, 120),
            customer_mobile=mobile,
            customer_email=email,
            vehicle_registration=registration,
            vehicle_make=clean_text(vehicle_make, 60),
            vehicle_model=clean_text(vehicle_model, 60),
            vehicle_colour=clean_text(vehicle_colour, 40),
            start_at=start_at,
            end_at=end_at,
            duration_minutes=int((end_at - start_at).total_seconds() // 60),
            calculated_price=pricing["total"],
            pricing_breakdown_json=json.dumps(pricing["breakdown"], default=str),
            override_price=override,
            override_reason=clean_text(override_reason, 300),
            capacity_override=bool(capacity_override),
            capacity_override_reason=clean_text(capacity_override_reason, 300),
            status="pending_payment",
            payment_status="pending",
            payment_due_at=now + timedelta(days=settings.PARKING_PAYMENT_WINDOW_DAYS),
            notes=clean_text(notes, 1000),
            created_at=now,
            updated_at=now,
        )
        db.add(row)
        db.commit()
        db.refresh(row)
        return row

    booking = with_retry(_insert, retry_on=DEFAULT_RETRY_ON + (IntegrityError,), on_retry=lambda exc: db.rollback())
    logger.info("parking_booking_created", booking_id=booking.id, reference=booking.reference)
    safe_audit(
        db,
        tenant_id,
        "create",
        "parking_booking",
        booking.id,
        actor_email=actor_email,
        payload={"reference": booking.reference, "price": str(booking.calculated_price)},
    )
    revalidate_tag(dashboard_tag(tenant_id))
    return booking


def booking_amount(booking: ParkingBooking) -> Decimal:
    return Decimal(str(booking.override_price if booking.override_price is not None else booking.calculated_price))


def create_parking_payment_order(db: Session, tenant_id: int, booking_id: int) -> ParkingBookingPayment:
    booking = get_parking_booking(db, tenant_id, booking_id)
    if booking.payment_status == "paid":
        raise ValueError("Parking booking is already paid")
    amount = booking_amount(booking)
    if amount <= 0:
        raise ValueError("Parking booking amount must be greater than zero to create a payment")

    existing = db.execute(
        select(ParkingBookingPayment)
        .where(
            ParkingBookingPayment.booking_id == booking.id,
            ParkingBookingPayment.status == "pending",
        )
        .order_by(ParkingBookingPayment.id.desc())
        .limit(1)
    ).scalar_one_or_none()
    if existing and existing.approve_url:
        return existing

    base = settings.PUBLIC_BASE_URL.rstrip("/")
    order_id, approve_url = paypal.create_simple_order(
        custom_id=str(booking.id),
        reference=booking.reference,
        description=f"Parking {booking.reference}",
        amount=amount,
        return_url=f"{base}/public/parking/paypal/return?booking_id={booking.id}",
        cancel_url=f"{base}/public/parking/paypal/cancel?booking_id={booking.id}",
    )
    if not approve_url:
        raise IntegrationError("paypal", "PayPal did not return an approval URL")

    payment = ParkingBookingPayment(
        tenant_id=tenant_id,
        booking_id=booking.id,
        provider="paypal",
        amount=amount,
        currency=settings.PAYPAL_CURRENCY,
        status="pending",
        paypal_order_id=order_id,
        approve_url=approve_url,
        expires_at=booking.payment_due_at,
        metadata_json=json.dumps({"reference": booking.reference}),
        created_at=utc_now_naive(),
    )
    db.add(payment)
    db.commit()
    db.refresh(payment)
    logger.info("parking_payment_order_created", booking_id=booking.id, order_id=order_id)
    return payment


def _log_notification(
    db: Session,
    booking: ParkingBooking,
    *,
    event_type: str,
    status: str,
    message_sid: str | None = None,
    payload: dict | None = None,
) -> ParkingBookingNotification:
    row = ParkingBookingNotification(
        tenant_id=booking.tenant_id,
        booking_id=booking.id,
        channel="sms",
        event_type=event_type,
        status=status,
        message_sid=message_sid,
        sent_at=utc_now_naive() if status == "sent" else None,
        payload_json=json.dumps(payload or {}, default=str),
        created_at=utc_now_naive(),
    )
    db.add(row)
    db.commit()
    return row


def _sms_block_reason(db: Session, booking: ParkingBooking) -> str | None:
    if not booking.customer_mobile:
        return "No customer mobile number on booking"
    if booking.customer_id:
        customer = db.get(Customer, booking.customer_id)
        if customer and not customer.sms_opt_in:
            return "Customer has opted out of SMS"
    return None


def _notify(db: Session, booking: ParkingBooking, event_type: str, body: str) -> ParkingBookingNotification:
    reason = _sms_block_reason(db, booking)
    if reason:
        logger.info("parking_sms_skipped", booking_id=booking.id, event_type=event_type, reason=reason)
        return _log_notification(db, booking, event_type=event_type, status="skipped", payload={"reason": reason})
    if settings.CONTACT_PHONE_NUMBER:
        body = f"{body} Questions? Call {settings.CONTACT_PHONE_NUMBER}."
    try:
        result = send_sms(
            db,
            booking.tenant_id,
            to=booking.customer_mobile,
            body=body,
            customer_id=booking.customer_id,
            metadata={"template_key": f"parking_{event_type}", "parking_booking_id": booking.id},
        )
    except (ValueError, IntegrationError) as exc:
        db.rollback()
        logger.warning("parking_sms_failed", booking_id=booking.id, event_type=event_type, error=str(exc))
        return _log_notification(db, booking, event_type=event_type, status="failed", payload={"error": str(exc)})
    if result.get("skipped") or result.get("duplicate"):
        # SMS disabled or already sent under the same key
        return _log_notification(
            db, booking, event_type=event_type, status="skipped", payload={"reason": result.get("status")}
        )
    return _log_notification(
        db,
        booking,
        event_type=event_type,
        status="sent",
        message_sid=result.get("sid"),
        payload={"sms": body},
    )


def send_parking_payment_request(db: Session, tenant_id: int, booking_id: int) -> ParkingBookingNotification:
    booking = get_parking_booking(db, tenant_id, booking_id)
    payment = create_parking_payment_order(db, tenant_id, booking.id)
    due = booking.payment_due_at.strftime("%d %b") if booking.payment_due_at else "soon"
    body = (
        f"Hi {booking.customer_first_name}, your parking booking {booking.reference} at {settings.VENUE_NAME} "
        f"costs £{booking_amount(booking):.2f}. Please pay by {due}: {payment.approve_url}"
    )
    notification = _notify(db, booking, "payment_request", body)
    if notification.status == "sent":
        booking.initial_request_sms_sent = True
        booking.updated_at = utc_now_naive()
        db.commit()
    return notification


def capture_parking_payment(db: Session, order_id: str) -> ParkingBooking:
    payment = db.execute(
        select(ParkingBookingPayment).where(ParkingBookingPayment.paypal_order_id == order_id)
    ).scalar_one_or_none()
    if not payment:
        raise NotFoundError("Payment not found")
    booking = db.get(ParkingBooking, payment.booking_id)
    if payment.status == "paid":
        return booking
    if payment.status != "pending" or booking.status != "pending_payment":
        logger.warning(
            "parking_capture_refused",
            booking_id=booking.id,
            order_id=order_id,
            payment_status=payment.status,
            booking_status=booking.status,
        )
        raise ValueError("This parking payment can no longer be completed")

    result = paypal.capture_order(order_id)
    if result["status"] != "COMPLETED":
        payment.status = "failed"
        payment.metadata_json = json.dumps({"capture_status": result["status"]})
        db.commit()
        raise IntegrationError("paypal", f"PayPal capture not completed ({result['status']})")

    now = utc_now_naive()
    payment.status = "paid"
    payment.transaction_id = result.get("transaction_id")
    payment.paid_at = now
    booking.status = "confirmed"
    booking.payment_status = "paid"
    booking.confirmed_at = now
    booking.updated_at = now
    db.commit()
    db.refresh(booking)
    logger.info("parking_payment_captured", booking_id=booking.id, order_id=order_id)
    safe_audit(
        db,
        booking.tenant_id,
        "payment_captured",
        "parking_booking",
        booking.id,
        payload={"order_id": order_id, "transaction_id": payment.transaction_id},
    )

    body = (
        f"Thanks {booking.customer_first_name}! Parking {booking.reference} is confirmed for "
        f"{booking.start_at.strftime('%d %b %H:%M')} to {booking.end_at.strftime('%d %b %H:%M')}."
    )
    _notify(db, booking, "payment_confirmation", body)
    revalidate_tag(dashboard_tag(booking.tenant_id))
    return booking


def cancel_parking_booking(
    db: Session,
    tenant_id: int,
    booking_id: int,
    reason: str | None = None,
    actor_email: str | None = None,
) -> ParkingBooking:
    booking = get_parking_booking(db, tenant_id, booking_id)
    if booking.status in {"cancelled", "completed"}:
        raise ValueError(f"Cannot cancel a {booking.status} booking")
    now = utc_now_naive()
    booking.status = "cancelled"
    booking.cancelled_at = now
    booking.updated_at = now
    if booking.payment_status == "pending":
        booking.payment_status = "expired"
        db.query(ParkingBookingPayment).filter(
            ParkingBookingPayment.booking_id == booking.id,
            ParkingBookingPayment.status == "pending",
        ).update({ParkingBookingPayment.status: "expired"}, synchronize_session=False)
    if reason:
        booking.notes = clean_text(f"{booking.notes or ''}\nCancelled: {reason}".strip(), 1000)
    db.commit()
    db.refresh(booking)
    safe_audit(
        db,
        tenant_id,
        "cancel",
        "parking_booking",
        booking.id,
        actor_email=actor_email,
        payload={"reason": reason},
    )
    revalidate_tag(dashboard_tag(tenant_id))
    return booking


def _latest_payment(db: Session, booking_id: int, status: str | None = None) -> ParkingBookingPayment | None:
    stmt = select(ParkingBookingPayment).where(ParkingBookingPayment.booking_id == booking_id)
    if status:
        stmt = stmt.where(ParkingBookingPayment.status == status)
    return db.execute(
        stmt.order_by(ParkingBookingPayment.created_at.desc(), ParkingBookingPayment.id.desc()).limit(1)
    ).scalar_one_or_none()


def _merge_metadata(payment: ParkingBookingPayment, **extra) -> str:
    try:
        current = json.loads(payment.metadata_json or "{}")
    except ValueError:
        current = {}
    current.update(extra)
    return json.dumps(current, default=str)


def mark_parking_booking_paid(
    db: Session,
    tenant_id: int,
    booking_id: int,
    actor_email: str | None = None,
) -> ParkingBooking:
    """Settles a booking taken in cash or by card at the bar."""
    booking = get_parking_booking(db, tenant_id, booking_id)
    if booking.payment_status == "paid":
        raise ValueError("Parking booking is already paid")
    if booking.status in {"cancelled", "expired"}:
        raise ValueError(f"Cannot mark a {booking.status} booking as paid")

    now = utc_now_naive()
    amount = booking_amount(booking)
    payment = _latest_payment(db, booking.id)
    if payment is None:
        payment = ParkingBookingPayment(
            tenant_id=tenant_id,
            booking_id=booking.id,
            provider="manual",
            currency=settings.PAYPAL_CURRENCY,
            metadata_json="{}",
            created_at=now,
        )
        db.add(payment)
    payment.status = "paid"
    payment.amount = amount
    payment.paid_at = now
    payment.metadata_json = _merge_metadata(payment, manual_settlement=True, settled_by=actor_email)

    booking.status = "confirmed"
    booking.payment_status = "paid"
    booking.confirmed_at = now
    booking.updated_at = now
    db.commit()
    db.refresh(booking)
    logger.info("parking_booking_marked_paid", booking_id=booking.id, amount=str(amount))
    safe_audit(
        db,
        tenant_id,
        "mark_paid",
        "parking_booking",
        booking.id,
        actor_email=actor_email,
        payload={"amount": str(amount)},
    )
    revalidate_tag(dashboard_tag(tenant_id))
    return booking


def update_parking_booking_status(
    db: Session,
    tenant_id: int,
    booking_id: int,
    *,
    status: str | None = None,
    payment_status: str | None = None,
    notes: str | None = None,
    actor_email: str | None = None,
) -> ParkingBooking:
    booking = get_parking_booking(db, tenant_id, booking_id)
    if status is not None and status not in BOOKING_STATUSES:
        raise ValueError("Invalid parking booking status")
    if payment_status is not None and payment_status not in PAYMENT_STATUSES:
        raise ValueError("Invalid parking payment status")

    now = utc_now_naive()
    changes: dict = {}
    if status is not None and status != booking.status:
        booking.status = status
        changes["status"] = status
        if status == "confirmed" and booking.confirmed_at is None:
            booking.confirmed_at = now
        if status == "cancelled":
            booking.cancelled_at = now
    if payment_status is not None and payment_status != booking.payment_status:
        booking.payment_status = payment_status
        changes["payment_status"] = payment_status
    if notes is not None:
        booking.notes = clean_text(notes, 1000)
        changes["notes"] = booking.notes
    if not changes:
        return booking

    booking.updated_at = now
    db.commit()
    db.refresh(booking)
    safe_audit(db, tenant_id, "update", "parking_booking", booking.id, actor_email=actor_email, payload=changes)
    revalidate_tag(dashboard_tag(tenant_id))
    return booking


def refund_parking_payment(
    db: Session,
    tenant_id: int,
    booking_id: int,
    amount=None,
    reason: str | None = None,
    actor_email: str | None = None,
) -> ParkingBooking:
    """Refunds the captured PayPal payment and cancels the booking."""
    booking = get_parking_booking(db, tenant_id, booking_id)
    payment = _latest_payment(db, booking.id, status="paid")
    if payment is None or not payment.transaction_id:
        raise ValueError("No captured payment found to refund")
    refund = Decimal(str(amount if amount is not None else payment.amount)).quantize(Decimal("0.01"))
    if refund <= 0:
        raise ValueError("Refund amount must be greater than zero")
    if refund > Decimal(str(payment.amount)):
        raise ValueError("Refund amount cannot exceed the amount paid")

    result = paypal.refund_capture(payment.transaction_id, refund, reason=reason, currency=payment.currency)
    if result["status"] not in {"COMPLETED", "PENDING"}:
        raise IntegrationError("paypal", f"PayPal refund not completed ({result['status']})")

    now = utc_now_naive()
    payment.status = "refunded"
    payment.refunded_at = now
    payment.metadata_json = _merge_metadata(
        payment,
        refund_reason=reason,
        refunded_amount=str(refund),
        refund_id=result.get("refund_id"),
    )
    booking.status = "cancelled"
    booking.payment_status = "refunded"
    booking.cancelled_at = now
    booking.updated_at = now
    db.commit()
    db.refresh(booking)
    logger.info("parking_payment_refunded", booking_id=booking.id, amount=str(refund))
    safe_audit(
        db,
        tenant_id,
        "refund",
        "parking_booking",
        booking.id,
        actor_email=actor_email,
        payload={"amount": str(refund), "reason": reason},
    )
    revalidate_tag(dashboard_tag(tenant_id))
    return booking


def list_booking_notifications(db: Session, tenant_id: int, booking_id: int) -> list[ParkingBookingNotification]:
    get_parking_booking(db, tenant_id, booking_id)
    return (
        db.query(ParkingBookingNotification)
        .filter(ParkingBookingNotification.booking_id == booking_id)
        .order_by(ParkingBookingNotification.id.asc())
        .all()
    )

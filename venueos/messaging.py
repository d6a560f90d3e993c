import json

import structlog
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from .config import settings
from .core import twilio
from .core.cache import dashboard_tag, revalidate_tag
from .core.sms_safety import (
    build_sms_dedupe_context,
    claim_idempotency_key,
    evaluate_sms_safety_limits,
    mark_idempotency_key_sent,
    release_idempotency_key,
)
from .core.validation import normalize_phone
from .enterprise import safe_audit
from .errors import IntegrationError, NotFoundError
from .jobs import enqueue_background_job
from .models import Customer, Message, utc_now_naive

logger = structlog.get_logger("venueos.messaging")

RECENT_CONVERSATION_LIMIT = 25
STOP_KEYWORDS = {"STOP", "STOPALL", "UNSUBSCRIBE", "CANCEL", "END", "QUIT"}


def send_sms(
    db: Session,
    tenant_id: int,
    *,
    to: str,
    body: str,
    customer_id: int | None = None,
    metadata: dict | None = None,
) -> dict:
    """
    Sends one SMS through Twilio and records it as an outbound message.

    Returns {"success", "sid", "status", "message_id"} with "skipped" or
    "duplicate" set when nothing was sent. Safety-limit blocks and idempotency
    conflicts raise ValueError; provider failures raise IntegrationError.
    """
    if not settings.SMS_ENABLED:
        logger.info("sms_skipped_disabled", customer_id=customer_id)
        return {"success": True, "skipped": True, "sid": None, "status": "skipped", "message_id": None}

    text = (body or "").strip()
    if not text:
        raise ValueError("Message body is required")
    recipient = normalize_phone(to)
    if not recipient:
        raise ValueError("Invalid mobile number")

    dedupe = build_sms_dedupe_context(to=recipient, body=text, customer_id=customer_id, metadata=metadata)
    if dedupe:
        claim = claim_idempotency_key(db, dedupe["key"], dedupe["request_hash"])
        if claim == "duplicate":
            logger.info("sms_duplicate_suppressed", customer_id=customer_id)
            return {"success": True, "duplicate": True, "sid": None, "status": "duplicate", "message_id": None}
        if claim == "conflict":
            logger.warning("sms_idempotency_conflict", customer_id=customer_id)
            raise ValueError("SMS blocked by idempotency conflict")

    safety = evaluate_sms_safety_limits(db, tenant_id, to=recipient, customer_id=customer_id)
    if not safety["allowed"]:
        if dedupe:
            release_idempotency_key(db, dedupe["key"])
        logger.warning("sms_blocked_by_safety_limit", code=safety["code"], customer_id=customer_id)
        raise ValueError(safety["reason"])

    try:
        result = twilio.send_message(recipient, text)
    except IntegrationError:
        if dedupe:
            release_idempotency_key(db, dedupe["key"])
        raise

    meta = dict(metadata or {})
    row = Message(
        tenant_id=tenant_id,
        customer_id=customer_id,
        direction="outbound",
        body=text,
        to_number=recipient,
        from_number=settings.TWILIO_PHONE_NUMBER or None,
        twilio_message_sid=result["sid"] or None,
        twilio_status=result["status"],
        template_key=meta.get("template_key"),
        read_at=utc_now_naive(),
        metadata_json=json.dumps(meta, default=str),
        created_at=utc_now_naive(),
    )
    db.add(row)
    db.commit()
    db.refresh(row)
    if dedupe:
        mark_idempotency_key_sent(db, dedupe["key"])
    return {"success": True, "sid": result["sid"], "status": result["status"], "message_id": row.id}


def send_sms_best_effort(db: Session, tenant_id: int, **kwargs) -> dict | None:
    """Notification side effect of another write: failures are logged and swallowed."""
    try:
        return send_sms(db, tenant_id, **kwargs)
    except (ValueError, IntegrationError) as exc:
        db.rollback()
        logger.warning(
            "sms_best_effort_failed",
            customer_id=kwargs.get("customer_id"),
            template_key=(kwargs.get("metadata") or {}).get("template_key"),
            error=str(exc),
        )
        return None


def send_customer_sms(
    db: Session,
    tenant_id: int,
    customer_id: int,
    body: str,
    actor_email: str | None = None,
) -> dict:
    customer = db.execute(
        select(Customer).where(Customer.tenant_id == tenant_id, Customer.id == customer_id)
    ).scalar_one_or_none()
    if not customer:
        raise NotFoundError("Customer not found")
    if not customer.mobile_number:
        raise ValueError("Customer has no mobile number")
    if not customer.sms_opt_in:
        raise ValueError("Customer has opted out of SMS")
    result = send_sms(db, tenant_id, to=customer.mobile_number, body=body, customer_id=customer.id)
    safe_audit(db, tenant_id, "send", "message", result.get("message_id"), actor_email=actor_email, payload={"customer_id": customer_id})
    return result


def _unread_filter(tenant_id: int):
    return (
        Message.tenant_id == tenant_id,
        Message.direction == "inbound",
        Message.read_at.is_(None),
    )


def get_unread_count(db: Session, tenant_id: int) -> int:
    return int(db.execute(select(func.count(Message.id)).where(*_unread_filter(tenant_id))).scalar() or 0)


def get_inbox(db: Session, tenant_id: int, limit: int = RECENT_CONVERSATION_LIMIT) -> dict:
    last_at = (
        select(Message.customer_id, func.max(Message.created_at).label("last_at"))
        .where(Message.tenant_id == tenant_id, Message.customer_id.is_not(None))
        .group_by(Message.customer_id)
        .order_by(func.max(Message.created_at).desc())
        .limit(max(1, min(int(limit), 100)))
    )
    recent = db.execute(last_at).all()
    customer_ids = [r.customer_id for r in recent]

    unread_rows = db.execute(
        select(Message.customer_id, func.count(Message.id))
        .where(*_unread_filter(tenant_id), Message.customer_id.in_(customer_ids))
        .group_by(Message.customer_id)
    ).all()
    unread_by_customer = {cid: int(n) for cid, n in unread_rows}
    customers = {
        c.id: c
        for c in db.query(Customer).filter(Customer.tenant_id == tenant_id, Customer.id.in_(customer_ids)).all()
    }

    conversations = []
    for r in recent:
        last_message = (
            db.query(Message)
            .filter(Message.tenant_id == tenant_id, Message.customer_id == r.customer_id)
            .order_by(Message.created_at.desc(), Message.id.desc())
            .first()
        )
        customer = customers.get(r.customer_id)
        conversations.append(
            {
                "customer_id": r.customer_id,
                "customer_name": customer.full_name if customer else "Unknown",
                "mobile_number": customer.mobile_number if customer else None,
                "last_message": last_message.body if last_message else None,
                "last_direction": last_message.direction if last_message else None,
                "last_message_at": r.last_at,
                "unread_count": unread_by_customer.get(r.customer_id, 0),
            }
        )
    return {"conversations": conversations, "total_unread": get_unread_count(db, tenant_id)}


def get_conversation(db: Session, tenant_id: int, customer_id: int) -> list[Message]:
    return (
        db.query(Message)
        .filter(Message.tenant_id == tenant_id, Message.customer_id == customer_id)
        .order_by(Message.created_at.asc(), Message.id.asc())
        .all()
    )


def mark_conversation_read(db: Session, tenant_id: int, customer_id: int) -> int:
    updated = (
        db.query(Message)
        .filter(*_unread_filter(tenant_id), Message.customer_id == customer_id)
        .update({Message.read_at: utc_now_naive()}, synchronize_session=False)
    )
    db.commit()
    revalidate_tag(dashboard_tag(tenant_id))
    return int(updated)


def mark_message_unread(db: Session, tenant_id: int, message_id: int) -> Message:
    row = db.execute(
        select(Message).where(Message.tenant_id == tenant_id, Message.id == message_id)
    ).scalar_one_or_none()
    if not row:
        raise NotFoundError("Message not found")
    if row.direction != "inbound":
        raise ValueError("Only inbound messages can be marked unread")
    row.read_at = None
    db.commit()
    db.refresh(row)
    revalidate_tag(dashboard_tag(tenant_id))
    return row


def record_inbound_message(
    db: Session,
    tenant_id: int,
    *,
    from_number: str,
    body: str,
    sid: str | None = None,
) -> Message:
    sender = normalize_phone(from_number)
    customer = None
    if sender:
        customer = db.execute(
            select(Customer).where(Customer.tenant_id == tenant_id, Customer.mobile_number == sender)
        ).scalar_one_or_none()

    text = (body or "").strip()
    row = Message(
        tenant_id=tenant_id,
        customer_id=customer.id if customer else None,
        direction="inbound",
        body=text,
        from_number=sender,
        to_number=settings.TWILIO_PHONE_NUMBER or None,
        twilio_message_sid=sid,
        twilio_status="received",
        created_at=utc_now_naive(),
    )
    db.add(row)
    if customer and text.upper() in STOP_KEYWORDS:
        customer.sms_opt_in = False
        customer.updated_at = utc_now_naive()
        logger.info("sms_opt_out_received", customer_id=customer.id)
    db.commit()
    db.refresh(row)
    revalidate_tag(dashboard_tag(tenant_id))
    return row


def render_template(message: str, customer: Customer) -> str:
    return (
        message.replace("{{first_name}}", customer.first_name or "")
        .replace("{{last_name}}", customer.last_name or "")
        .strip()
    )


def send_bulk_sms(
    db: Session,
    tenant_id: int,
    customer_ids: list[int],
    message: str,
    metadata: dict | None = None,
    actor_email: str | None = None,
):
    wanted = sorted({int(x) for x in customer_ids or []})
    if not wanted:
        raise ValueError("No customers selected")
    if not (message or "").strip():
        raise ValueError("Message body is required")
    job = enqueue_background_job(
        db,
        job_type="send_bulk_sms",
        payload={"customer_ids": wanted, "message": message, "metadata": metadata or {}},
        tenant_id=tenant_id,
        queue="sms",
    )
    safe_audit(db, tenant_id, "enqueue", "bulk_sms", job.id, actor_email=actor_email, payload={"recipients": len(wanted)})
    return job


def process_bulk_sms(
    db: Session,
    tenant_id: int,
    customer_ids: list[int],
    message: str,
    metadata: dict | None = None,
    job_id: int | None = None,
) -> dict:
    """Worker side of send_bulk_sms; returns {"sent", "skipped", "failed"}."""
    result = {"sent": 0, "skipped": 0, "failed": 0}
    customers = (
        db.query(Customer)
        .filter(Customer.tenant_id == tenant_id, Customer.id.in_(customer_ids))
        .order_by(Customer.id.asc())
        .all()
    )
    result["skipped"] += len(set(customer_ids)) - len(customers)
    for customer in customers:
        if not customer.mobile_number or not customer.sms_opt_in:
            result["skipped"] += 1
            continue
        meta = {**(metadata or {}), "bulk_job_id": job_id, "marketing": True}
        meta.setdefault("template_key", "bulk_sms")
        try:
            sent = send_sms(
                db,
                tenant_id,
                to=customer.mobile_number,
                body=render_template(message, customer),
                customer_id=customer.id,
                metadata=meta,
            )
        except (ValueError, IntegrationError) as exc:
            db.rollback()
            result["failed"] += 1
            logger.warning("bulk_sms_recipient_failed", customer_id=customer.id, error=str(exc))
            continue
        if sent.get("skipped") or sent.get("duplicate"):
            result["skipped"] += 1
        else:
            result["sent"] += 1
    logger.info("bulk_sms_processed", job_id=job_id, **result)
    return result

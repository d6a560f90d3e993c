import hashlib
import json
from datetime import timedelta

import structlog
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from ..config import settings
from ..models import Message, SmsIdempotencyKey, utc_now_naive

logger = structlog.get_logger("venueos.sms_safety")

DEDUPE_CONTEXT_KEYS = (
    "event_booking_id",
    "table_booking_id",
    "private_booking_id",
    "event_id",
    "parking_booking_id",
    "bulk_job_id",
    "waitlist_offer_id",
    "waitlist_entry_id",
    "booking_id",
    "trigger_type",
    "stage",
)


def _stable_serialize(value) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)


def _sha256(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def build_sms_dedupe_context(
    *,
    to: str,
    body: str,
    customer_id: int | None,
    metadata: dict | None,
) -> dict | None:
    """
    Derives the idempotency key for a templated send.

    Only messages carrying metadata["template_key"] are deduplicated. The key
    covers the template, the recipient and whichever booking/job identifiers the
    caller supplied; without any of those a UTC day bucket is used so the same
    template cannot go to one recipient twice on the same day. The request hash
    additionally covers the body, so a different text under the same key is a
    conflict rather than a duplicate.
    """
    metadata = metadata or {}
    template_key = metadata.get("template_key")
    if not template_key:
        return None

    identity = f"customer:{customer_id}" if customer_id else f"to:{to}"
    context = {k: metadata[k] for k in DEDUPE_CONTEXT_KEYS if metadata.get(k) is not None}
    if metadata.get("marketing"):
        context["marketing"] = True
    if metadata.get("manual_interest"):
        context["manual_interest"] = True
    if not context:
        context["day_bucket_utc"] = utc_now_naive().date().isoformat()

    key_material = {"template_key": template_key, "identity": identity, "context": context}
    return {
        "key": "sms:" + _sha256(_stable_serialize(key_material)),
        "request_hash": _sha256(_stable_serialize({**key_material, "body": body})),
    }


def claim_idempotency_key(db: Session, key: str, request_hash: str) -> str:
    """Returns 'claimed', 'duplicate' or 'conflict'."""
    now = utc_now_naive()
    expires_at = now + timedelta(hours=settings.SMS_SAFETY_IDEMPOTENCY_TTL_HOURS)
    row = db.execute(select(SmsIdempotencyKey).where(SmsIdempotencyKey.key == key)).scalar_one_or_none()
    if row is None:
        db.add(SmsIdempotencyKey(key=key, request_hash=request_hash, state="claimed", expires_at=expires_at, created_at=now))
        db.commit()
        return "claimed"
    if row.expires_at <= now:
        row.request_hash = request_hash
        row.state = "claimed"
        row.expires_at = expires_at
        row.created_at = now
        db.commit()
        logger.info("sms_idempotency_reclaimed", key=key)
        return "claimed"
    if row.request_hash == request_hash:
        return "duplicate"
    return "conflict"


def mark_idempotency_key_sent(db: Session, key: str) -> None:
    row = db.execute(select(SmsIdempotencyKey).where(SmsIdempotencyKey.key == key)).scalar_one_or_none()
    if row:
        row.state = "sent"
        db.commit()


def release_idempotency_key(db: Session, key: str) -> None:
    db.query(SmsIdempotencyKey).filter(SmsIdempotencyKey.key == key).delete(synchronize_session=False)
    db.commit()


def _count_outbound(db: Session, tenant_id: int, since, to: str | None = None, customer_id: int | None = None) -> int:
    q = select(func.count(Message.id)).where(
        Message.tenant_id == tenant_id,
        Message.direction == "outbound",
        Message.created_at >= since,
    )
    if customer_id:
        q = q.where(Message.customer_id == customer_id)
    elif to:
        q = q.where(Message.to_number == to)
    return int(db.execute(q).scalar() or 0)


def evaluate_sms_safety_limits(db: Session, tenant_id: int, *, to: str, customer_id: int | None) -> dict:
    """Returns {"allowed": bool, "code": str | None, "reason": str | None}."""
    if not settings.SMS_SAFETY_GUARDS_ENABLED:
        return {"allowed": True, "code": None, "reason": None}

    now = utc_now_naive()
    hour_ago = now - timedelta(hours=1)
    day_ago = now - timedelta(hours=24)

    if _count_outbound(db, tenant_id, hour_ago) >= settings.SMS_SAFETY_GLOBAL_HOURLY_LIMIT:
        return {
            "allowed": False,
            "code": "global_rate_limit",
            "reason": "Global SMS hourly safety limit reached",
        }
    if _count_outbound(db, tenant_id, hour_ago, to=to, customer_id=customer_id) >= settings.SMS_SAFETY_RECIPIENT_HOURLY_LIMIT:
        return {
            "allowed": False,
            "code": "recipient_hourly_limit",
            "reason": "Recipient SMS hourly safety limit reached",
        }
    if _count_outbound(db, tenant_id, day_ago, to=to, customer_id=customer_id) >= settings.SMS_SAFETY_RECIPIENT_DAILY_LIMIT:
        return {
            "allowed": False,
            "code": "recipient_daily_limit",
            "reason": "Recipient SMS daily safety limit reached",
        }
    return {"allowed": True, "code": None, "reason": None}

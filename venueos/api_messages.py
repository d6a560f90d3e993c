from typing import List, Optional

import structlog
from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, status
from starlette.responses import Response
from sqlalchemy.orm import Session

from .config import settings
from .core import twilio
from .db import get_db
from .deps import Actor, get_current_tenant, require, service_errors
from .messaging import (
    get_conversation,
    get_inbox,
    get_unread_count,
    mark_conversation_read,
    mark_message_unread,
    record_inbound_message,
    send_bulk_sms,
    send_customer_sms,
)
from .models import Message, Tenant
from .schemas import BulkSmsSend, CountOut, InboxOut, JobOut, MessageOut, SmsResultOut, SmsSend

router = APIRouter(prefix="/api/messages")
public_router = APIRouter(prefix="/public/twilio")
logger = structlog.get_logger("venueos.webhook")

EMPTY_TWIML = '<?xml version="1.0" encoding="UTF-8"?><Response></Response>'


def _to_message_out(m: Message) -> MessageOut:
    return MessageOut(
        id=m.id,
        customer_id=m.customer_id,
        direction=m.direction,
        body=m.body,
        to_number=m.to_number,
        from_number=m.from_number,
        twilio_message_sid=m.twilio_message_sid,
        twilio_status=m.twilio_status,
        read_at=m.read_at,
        created_at=m.created_at,
    )


@router.get("/inbox", response_model=InboxOut)
def inbox(
    limit: int = Query(default=20, ge=1, le=100),
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    actor: Actor = Depends(require("messages", "view")),
):
    return get_inbox(db, tenant.id, limit=limit)


@router.get("/unread-count", response_model=CountOut)
def unread_count(
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    actor: Actor = Depends(require("messages", "view")),
):
    return CountOut(count=get_unread_count(db, tenant.id))


@router.get("/conversations/{customer_id}", response_model=List[MessageOut])
def conversation(
    customer_id: int,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    actor: Actor = Depends(require("messages", "view")),
):
    return [_to_message_out(m) for m in get_conversation(db, tenant.id, customer_id)]


@router.post("/conversations/{customer_id}/read", response_model=CountOut)
def read_conversation(
    customer_id: int,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    actor: Actor = Depends(require("messages", "view")),
):
    return CountOut(count=mark_conversation_read(db, tenant.id, customer_id))


@router.post("/{message_id}/unread", response_model=MessageOut)
def unread_message(
    message_id: int,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    actor: Actor = Depends(require("messages", "view")),
):
    with service_errors():
        m = mark_message_unread(db, tenant.id, message_id)
    return _to_message_out(m)


@router.post("/customers/{customer_id}", response_model=SmsResultOut)
def send_to_customer(
    customer_id: int,
    payload: SmsSend,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    actor: Actor = Depends(require("messages", "send")),
):
    with service_errors():
        result = send_customer_sms(db, tenant.id, customer_id, payload.body, actor_email=actor.email)
    return SmsResultOut(**result)


@router.post("/bulk", response_model=JobOut, status_code=status.HTTP_202_ACCEPTED)
def bulk_send(
    payload: BulkSmsSend,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    actor: Actor = Depends(require("messages", "manage")),
):
    with service_errors():
        job = send_bulk_sms(db, tenant.id, payload.customer_ids, payload.message, actor_email=actor.email)
    return JobOut(
        id=job.id,
        queue=job.queue,
        job_type=job.job_type,
        status=job.status,
        attempts=job.attempts,
        max_attempts=job.max_attempts,
        run_after=job.run_after,
        last_error=job.last_error,
        created_at=job.created_at,
        finished_at=job.finished_at,
    )


@public_router.post("/inbound")
async def twilio_inbound(
    request: Request,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    x_twilio_signature: Optional[str] = Header(default=None),
):
    form = await request.form()
    params = {key: str(value) for key, value in form.items()}
    if settings.TWILIO_VALIDATE_WEBHOOKS:
        url = settings.PUBLIC_BASE_URL.rstrip("/") + request.url.path
        if not twilio.is_valid_signature(url, params, x_twilio_signature):
            logger.warning("twilio_webhook_invalid_signature", path=request.url.path)
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid signature")

    sender = params.get("From", "")
    if not sender:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing sender")
    row = record_inbound_message(
        db,
        tenant.id,
        from_number=sender,
        body=params.get("Body", ""),
        sid=params.get("MessageSid"),
    )
    logger.info("twilio_inbound_recorded", message_id=row.id, customer_id=row.customer_id)
    return Response(content=EMPTY_TWIML, media_type="application/xml")

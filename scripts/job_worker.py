import argparse
import json
import os
import sys
import time
from datetime import date
from pathlib import Path

import structlog

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from venueos.core.logging_config import setup_logging  # noqa: E402
from venueos.db import SessionLocal  # noqa: E402
from venueos.idempotency import purge_expired_records  # noqa: E402
from venueos.invoices import persist_overdue_invoices  # noqa: E402
from venueos.jobs import (  # noqa: E402
    claim_due_background_jobs,
    enqueue_background_job,
    mark_background_job_failure,
    mark_background_job_success,
)
from venueos.messaging import process_bulk_sms, send_sms  # noqa: E402
from venueos.recurring_invoices import process_due_recurring_invoices  # noqa: E402

logger = structlog.get_logger("venueos.worker")


def _payload(job) -> dict:
    try:
        return json.loads(job.payload_json or "{}")
    except Exception:
        return {}


def _run_date(payload: dict) -> date | None:
    raw = payload.get("today")
    return date.fromisoformat(raw) if raw else None


def _handle_send_sms(db, job) -> dict:
    payload = _payload(job)
    if not job.tenant_id:
        raise RuntimeError("send_sms job requires a tenant")
    to = str(payload.get("to") or "").strip()
    body = str(payload.get("body") or "").strip()
    if not to or not body:
        raise RuntimeError("send_sms job requires 'to' and 'body'")
    return send_sms(
        db,
        int(job.tenant_id),
        to=to,
        body=body,
        customer_id=payload.get("customer_id"),
        metadata=payload.get("metadata") or {},
    )


def _handle_send_bulk_sms(db, job) -> dict:
    payload = _payload(job)
    if not job.tenant_id:
        raise RuntimeError("send_bulk_sms job requires a tenant")
    return process_bulk_sms(
        db,
        int(job.tenant_id),
        [int(x) for x in payload.get("customer_ids") or []],
        str(payload.get("message") or ""),
        metadata=payload.get("metadata") or {},
        job_id=job.id,
    )


def _handle_generate_recurring_invoices(db, job) -> dict:
    payload = _payload(job)
    return process_due_recurring_invoices(db, tenant_id=job.tenant_id, today=_run_date(payload))


def _handle_persist_overdue_invoices(db, job) -> dict:
    payload = _payload(job)
    updated = persist_overdue_invoices(db, tenant_id=job.tenant_id, today=_run_date(payload))
    return {"updated": updated}


def _handle_purge_idempotency_records(db, job) -> dict:
    return {"deleted": purge_expired_records(db)}


HANDLERS = {
    "send_sms": _handle_send_sms,
    "send_bulk_sms": _handle_send_bulk_sms,
    "generate_recurring_invoices": _handle_generate_recurring_invoices,
    "persist_overdue_invoices": _handle_persist_overdue_invoices,
    "purge_idempotency_records": _handle_purge_idempotency_records,
}

DAILY_JOBS = ("persist_overdue_invoices", "generate_recurring_invoices", "purge_idempotency_records")


def enqueue_daily_jobs(session_factory=SessionLocal) -> list[int]:
    with session_factory() as db:
        return [enqueue_background_job(db, job_type=job_type).id for job_type in DAILY_JOBS]


def process_once(queue: str, worker_id: str, batch_size: int, session_factory=SessionLocal) -> int:
    with session_factory() as db:
        jobs = claim_due_background_jobs(db=db, worker_id=worker_id, queue=queue, limit=batch_size)

    processed = 0
    for job in jobs:
        with session_factory() as db:
            try:
                handler = HANDLERS.get(job.job_type)
                if handler is None:
                    raise RuntimeError(f"Unsupported job type: {job.job_type}")
                result = handler(db, job)
                mark_background_job_success(db=db, job_id=job.id, result=result)
            except Exception as exc:
                db.rollback()
                logger.warning("job_failed", job_id=job.id, job_type=job.job_type, error=str(exc))
                mark_background_job_failure(db=db, job_id=job.id, error_message=str(exc))
            processed += 1
    return processed


def main() -> int:
    parser = argparse.ArgumentParser(description="VenueOS background job worker")
    parser.add_argument("--queue", default="default", help="Queue name (default, sms)")
    parser.add_argument("--worker-id", default=f"worker-{os.getpid()}", help="Worker identifier")
    parser.add_argument("--batch-size", type=int, default=10, help="Jobs fetched per poll")
    parser.add_argument("--poll-seconds", type=float, default=2.0, help="Poll interval when queue is empty")
    parser.add_argument("--once", action="store_true", help="Process only one poll cycle and exit")
    parser.add_argument("--enqueue-daily", action="store_true", help="Queue the nightly jobs and exit")
    args = parser.parse_args()
    setup_logging()

    if args.enqueue_daily:
        job_ids = enqueue_daily_jobs()
        logger.info("daily_jobs_enqueued", job_ids=job_ids)
        return 0

    while True:
        processed = process_once(queue=args.queue, worker_id=args.worker_id, batch_size=max(1, args.batch_size))
        if args.once:
            break
        if processed == 0:
            time.sleep(max(0.2, float(args.poll_seconds)))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())

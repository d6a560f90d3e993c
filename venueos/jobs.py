import json
from datetime import timedelta

import structlog
from sqlalchemy import select
from sqlalchemy.orm import Session

from .models import BackgroundJob, utc_now_naive

logger = structlog.get_logger("venueos.jobs")

VALID_JOB_STATUS = {"queued", "running", "succeeded", "dead_letter", "canceled"}

MAX_ATTEMPTS_CAP = 20
CLAIM_LIMIT_CAP = 100
BACKOFF_BASE_SECONDS = 30
BACKOFF_CAP_SECONDS = 3600


def backoff_seconds(attempt: int) -> int:
    """30s, 60s, 120s ... capped at an hour."""
    return min(BACKOFF_CAP_SECONDS, BACKOFF_BASE_SECONDS * 2 ** (max(1, int(attempt)) - 1))


def _get_job(db: Session, job_id: int, tenant_id: int | None = None) -> BackgroundJob | None:
    stmt = select(BackgroundJob).where(BackgroundJob.id == job_id)
    if tenant_id is not None:
        stmt = stmt.where(BackgroundJob.tenant_id == tenant_id)
    return db.execute(stmt).scalar_one_or_none()


def _save(db: Session, job: BackgroundJob) -> BackgroundJob:
    job.updated_at = utc_now_naive()
    db.commit()
    db.refresh(job)
    return job


def enqueue_background_job(
    db: Session,
    job_type: str,
    payload: dict | None = None,
    tenant_id: int | None = None,
    queue: str = "default",
    max_attempts: int = 5,
    run_after=None,
) -> BackgroundJob:
    now = utc_now_naive()
    job = BackgroundJob(
        tenant_id=tenant_id,
        queue=(queue or "default").strip(),
        job_type=(job_type or "").strip(),
        payload_json=json.dumps(payload or {}, ensure_ascii=True, sort_keys=True, default=str),
        status="queued",
        attempts=0,
        max_attempts=max(1, min(int(max_attempts), MAX_ATTEMPTS_CAP)),
        run_after=run_after or now,
        created_at=now,
        updated_at=now,
    )
    db.add(job)
    db.commit()
    db.refresh(job)
    logger.info("job_enqueued", job_id=job.id, job_type=job.job_type, queue=job.queue, tenant_id=tenant_id)
    return job


def list_background_jobs(
    db: Session,
    tenant_id: int | None = None,
    queue: str | None = None,
    status: str | None = None,
    limit: int = 200,
) -> list[BackgroundJob]:
    stmt = select(BackgroundJob)
    if tenant_id is not None:
        stmt = stmt.where(BackgroundJob.tenant_id == tenant_id)
    if queue:
        stmt = stmt.where(BackgroundJob.queue == queue.strip())
    if status:
        wanted = status.strip().lower()
        if wanted not in VALID_JOB_STATUS:
            raise ValueError(f"Invalid job status: {status}")
        stmt = stmt.where(BackgroundJob.status == wanted)
    stmt = stmt.order_by(BackgroundJob.created_at.desc(), BackgroundJob.id.desc()).limit(max(1, min(int(limit), 1000)))
    return list(db.execute(stmt).scalars())


def claim_due_background_jobs(
    db: Session,
    worker_id: str,
    queue: str = "default",
    limit: int = 20,
) -> list[BackgroundJob]:
    """Moves due queued jobs on `queue` to running and counts the attempt."""
    now = utc_now_naive()
    stmt = (
        select(BackgroundJob)
        .where(
            BackgroundJob.status == "queued",
            BackgroundJob.queue == (queue or "default").strip(),
            BackgroundJob.run_after <= now,
        )
        .order_by(BackgroundJob.run_after, BackgroundJob.id)
        .limit(max(1, min(int(limit), CLAIM_LIMIT_CAP)))
    )
    jobs = list(db.execute(stmt).scalars())
    worker = (worker_id or "").strip()[:80] or "worker"
    for job in jobs:
        job.status = "running"
        job.worker_id = worker
        job.attempts = (job.attempts or 0) + 1
        job.updated_at = now
    db.commit()
    # callers use the rows after this session closes
    for job in jobs:
        db.refresh(job)
    return jobs


def mark_background_job_success(db: Session, job_id: int, result: dict | None = None) -> BackgroundJob | None:
    job = _get_job(db, job_id)
    if job is None:
        return None
    job.status = "succeeded"
    job.result_json = json.dumps(result or {}, ensure_ascii=True, sort_keys=True, default=str)
    job.finished_at = utc_now_naive()
    return _save(db, job)


def mark_background_job_failure(db: Session, job_id: int, error_message: str) -> BackgroundJob | None:
    job = _get_job(db, job_id)
    if job is None:
        return None
    job.last_error = (error_message or "").strip()[:500] or "Unknown error"
    attempts = job.attempts or 0
    if attempts >= (job.max_attempts or 1):
        job.status = "dead_letter"
        job.finished_at = utc_now_naive()
        logger.warning("job_dead_lettered", job_id=job.id, job_type=job.job_type, attempts=attempts)
    else:
        job.status = "queued"
        job.run_after = utc_now_naive() + timedelta(seconds=backoff_seconds(attempts))
    return _save(db, job)


def retry_dead_letter_job(db: Session, tenant_id: int, job_id: int) -> BackgroundJob | None:
    job = _get_job(db, job_id, tenant_id)
    if job is None or job.status != "dead_letter":
        return job
    job.status = "queued"
    job.attempts = 0
    job.last_error = None
    job.result_json = None
    job.finished_at = None
    job.run_after = utc_now_naive()
    return _save(db, job)


def cancel_queued_background_job(db: Session, tenant_id: int, job_id: int) -> BackgroundJob | None:
    job = _get_job(db, job_id, tenant_id)
    if job is None or job.status != "queued":
        return job
    job.status = "canceled"
    job.last_error = "Canceled by operator"
    job.finished_at = utc_now_naive()
    return _save(db, job)

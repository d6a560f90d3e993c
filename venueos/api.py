import json
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from .dashboard import get_dashboard_summary
from .db import get_db
from .deps import Actor, get_current_tenant, require, service_errors
from .enterprise import list_audit_logs, list_tenant_user_roles, safe_audit, upsert_tenant_user_role
from .jobs import cancel_queued_background_job, enqueue_background_job, list_background_jobs, retry_dead_letter_job
from .models import BackgroundJob, Tenant
from .observability import get_ops_metrics_snapshot
from .schemas import AuditLogOut, JobCreate, JobOut, TenantRoleOut, TenantRoleSet

router = APIRouter(prefix="/api")

JOB_TYPES = {
    "send_sms",
    "send_bulk_sms",
    "generate_recurring_invoices",
    "persist_overdue_invoices",
    "purge_idempotency_records",
}


def _to_job_out(row: BackgroundJob) -> JobOut:
    return JobOut(
        id=row.id,
        queue=row.queue,
        job_type=row.job_type,
        status=row.status,
        attempts=row.attempts,
        max_attempts=row.max_attempts,
        run_after=row.run_after,
        last_error=row.last_error,
        created_at=row.created_at,
        finished_at=row.finished_at,
    )


@router.get("/dashboard")
def dashboard(
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    actor: Actor = Depends(require("dashboard", "view")),
):
    return get_dashboard_summary(db, tenant.id)


@router.get("/rbac/roles", response_model=List[TenantRoleOut])
def list_roles(
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    actor: Actor = Depends(require("settings", "view")),
):
    return [
        TenantRoleOut(id=r.id, email=r.email, role=r.role, created_at=r.created_at, updated_at=r.updated_at)
        for r in list_tenant_user_roles(db, tenant.id)
    ]


@router.put("/rbac/roles", response_model=TenantRoleOut)
def set_role(
    payload: TenantRoleSet,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    actor: Actor = Depends(require("settings", "manage")),
):
    with service_errors():
        row = upsert_tenant_user_role(db, tenant.id, payload.email, payload.role)
    safe_audit(db, tenant.id, "set_role", "tenant_user_role", row.id, actor_email=actor.email, payload={"role": row.role})
    return TenantRoleOut(id=row.id, email=row.email, role=row.role, created_at=row.created_at, updated_at=row.updated_at)


@router.get("/audit-logs", response_model=List[AuditLogOut])
def audit_logs(
    limit: int = Query(default=200, ge=1, le=1000),
    action: Optional[str] = Query(default=None),
    actor_email: Optional[str] = Query(default=None),
    resource_type: Optional[str] = Query(default=None),
    since_minutes: Optional[int] = Query(default=None, ge=1),
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    actor: Actor = Depends(require("settings", "view")),
):
    rows = list_audit_logs(
        db,
        tenant.id,
        limit=limit,
        action=action,
        actor_email=actor_email,
        resource_type=resource_type,
        since_minutes=since_minutes,
    )
    return [
        AuditLogOut(
            id=r.id,
            actor_email=r.actor_email,
            actor_role=r.actor_role,
            action=r.action,
            resource_type=r.resource_type,
            resource_id=r.resource_id,
            request_id=r.request_id,
            payload=json.loads(r.payload_json or "{}"),
            created_at=r.created_at,
        )
        for r in rows
    ]


@router.get("/jobs", response_model=List[JobOut])
def jobs(
    queue: Optional[str] = Query(default=None),
    status_filter: Optional[str] = Query(default=None, alias="status"),
    limit: int = Query(default=200, ge=1, le=1000),
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    actor: Actor = Depends(require("settings", "view")),
):
    with service_errors():
        rows = list_background_jobs(db, tenant_id=tenant.id, queue=queue, status=status_filter, limit=limit)
    return [_to_job_out(r) for r in rows]


@router.post("/jobs", response_model=JobOut, status_code=status.HTTP_201_CREATED)
def create_job(
    payload: JobCreate,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    actor: Actor = Depends(require("settings", "manage")),
):
    if payload.job_type not in JOB_TYPES:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Unknown job type: {payload.job_type}")
    row = enqueue_background_job(
        db,
        job_type=payload.job_type,
        payload=payload.payload,
        tenant_id=tenant.id,
        queue=payload.queue,
        max_attempts=payload.max_attempts,
    )
    safe_audit(db, tenant.id, "enqueue", "background_job", row.id, actor_email=actor.email, payload={"job_type": row.job_type})
    return _to_job_out(row)


@router.post("/jobs/{job_id}/retry", response_model=JobOut)
def retry_job(
    job_id: int,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    actor: Actor = Depends(require("settings", "manage")),
):
    row = retry_dead_letter_job(db, tenant.id, job_id)
    if not row:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")
    return _to_job_out(row)


@router.post("/jobs/{job_id}/cancel", response_model=JobOut)
def cancel_job(
    job_id: int,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    actor: Actor = Depends(require("settings", "manage")),
):
    row = cancel_queued_background_job(db, tenant.id, job_id)
    if not row:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")
    return _to_job_out(row)


@router.get("/ops/metrics")
def ops_metrics(
    window_minutes: int = Query(default=15, ge=1, le=1440),
    actor: Actor = Depends(require("settings", "view")),
):
    return get_ops_metrics_snapshot(window_minutes=window_minutes)

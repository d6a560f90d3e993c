import json
from datetime import timedelta

import structlog
from sqlalchemy import select
from sqlalchemy.orm import Session

from .config import settings
from .models import AuditLog, Tenant, TenantUserRole, utc_now_naive
from .request_context import actor_email_ctx, actor_role_ctx, request_id_ctx

logger = structlog.get_logger("venueos.rbac")

ROLES = ("owner", "manager", "reception")

_ANYONE = frozenset(ROLES)
_MANAGERS = frozenset({"owner", "manager"})
_OWNER_ONLY = frozenset({"owner"})

# module -> action -> roles allowed
PERMISSIONS: dict[str, dict[str, frozenset[str]]] = {
    "dashboard": {"view": _ANYONE},
    "customers": {"view": _ANYONE, "create": _ANYONE, "edit": _ANYONE, "delete": _MANAGERS, "manage": _MANAGERS},
    "events": {"view": _ANYONE, "create": _MANAGERS, "edit": _ANYONE, "delete": _MANAGERS, "manage": _MANAGERS},
    "loyalty": {"view": _ANYONE, "redeem": _ANYONE, "manage": _MANAGERS},
    "invoices": {action: _MANAGERS for action in ("view", "create", "edit", "delete", "manage")},
    "parking": {"view": _ANYONE, "manage": _ANYONE, "refund": _MANAGERS},
    "rota": {"view": _ANYONE, "edit": _MANAGERS, "publish": _MANAGERS},
    "cashing_up": {
        "view": _ANYONE,
        "edit": _ANYONE,
        "submit": _ANYONE,
        "approve": _MANAGERS,
        "lock": _MANAGERS,
        "unlock": _OWNER_ONLY,
    },
    "messages": {"view": _ANYONE, "send": _ANYONE, "manage": _MANAGERS},
    "menu": {"view": _ANYONE, "manage": _MANAGERS},
    "settings": {"view": _MANAGERS, "manage": _OWNER_ONLY},
}


def _clean_email(value: str | None) -> str | None:
    return (value or "").strip().lower() or None


def _clean_role(value: str | None) -> str | None:
    role = (value or "").strip().lower()
    return role if role in ROLES else None


def get_or_create_tenant(db: Session, slug: str, name: str) -> Tenant:
    slug = (slug or "").strip().lower()
    tenant = db.execute(select(Tenant).where(Tenant.slug == slug)).scalar_one_or_none()
    if tenant is not None:
        return tenant
    tenant = Tenant(slug=slug, name=(name or slug).strip())
    db.add(tenant)
    db.commit()
    db.refresh(tenant)
    logger.info("tenant_created", tenant_slug=slug)
    return tenant


def _stored_role(db: Session, tenant_id: int, email: str) -> TenantUserRole | None:
    return db.execute(
        select(TenantUserRole).where(TenantUserRole.tenant_id == tenant_id, TenantUserRole.email == email)
    ).scalar_one_or_none()


def upsert_tenant_user_role(db: Session, tenant_id: int, email: str, role: str) -> TenantUserRole:
    clean_email, clean_role = _clean_email(email), _clean_role(role)
    if not clean_email:
        raise ValueError("email is required")
    if not clean_role:
        raise ValueError("Invalid role")

    now = utc_now_naive()
    row = _stored_role(db, tenant_id, clean_email)
    if row is None:
        row = TenantUserRole(tenant_id=tenant_id, email=clean_email, created_at=now)
        db.add(row)
    row.role = clean_role
    row.updated_at = now
    db.commit()
    db.refresh(row)
    logger.info("tenant_role_set", tenant_id=tenant_id, email=clean_email, role=clean_role)
    return row


def list_tenant_user_roles(db: Session, tenant_id: int) -> list[TenantUserRole]:
    stmt = select(TenantUserRole).where(TenantUserRole.tenant_id == tenant_id).order_by(TenantUserRole.email)
    return list(db.execute(stmt).scalars())


def resolve_actor_role(
    db: Session,
    tenant_id: int,
    actor_email: str | None,
    actor_role_hint: str | None = None,
) -> str:
    """
    Picks the role an actor acts with.

    A role stored for the tenant wins over whatever the caller claims, so a demoted
    user cannot keep sending the old role header. Without a stored role the hint is
    used, then DEFAULT_ACTOR_ROLE.
    """
    email = _clean_email(actor_email)
    if email:
        stored = _stored_role(db, tenant_id, email)
        if stored is not None and _clean_role(stored.role):
            return stored.role
    return _clean_role(actor_role_hint) or _clean_role(settings.DEFAULT_ACTOR_ROLE) or "reception"


def require_actor(
    db: Session,
    tenant_id: int,
    actor_email: str | None = None,
    actor_role_hint: str | None = None,
    allowed_roles: set[str] | frozenset[str] | None = None,
) -> tuple[str, str]:
    email = _clean_email(actor_email or actor_email_ctx.get())
    if not email:
        raise ValueError("Actor identity is required (X-Actor-Email or Bearer token)")
    role = resolve_actor_role(db, tenant_id, email, actor_role_hint or actor_role_ctx.get())
    if allowed_roles and role not in allowed_roles:
        raise PermissionError(f"Actor role '{role}' cannot perform this operation")
    return email, role


def check_user_permission(role: str | None, module: str, action: str) -> bool:
    role = _clean_role(role)
    return role is not None and role in PERMISSIONS.get(module, {}).get(action, frozenset())


def require_permission(
    db: Session,
    tenant_id: int,
    module: str,
    action: str,
    actor_email: str | None = None,
    actor_role_hint: str | None = None,
) -> tuple[str, str]:
    email, role = require_actor(db, tenant_id, actor_email, actor_role_hint)
    if not check_user_permission(role, module, action):
        logger.info("permission_denied", module=module, action=action, role=role, actor=email)
        raise PermissionError(f"You do not have permission to {action} {module.replace('_', ' ')}")
    return email, role


def write_audit_log(
    db: Session,
    tenant_id: int,
    action: str,
    resource_type: str,
    resource_id: str | int | None = None,
    actor_email: str | None = None,
    actor_role: str | None = None,
    request_id: str | None = None,
    payload: dict | None = None,
) -> AuditLog:
    entry = AuditLog(
        tenant_id=tenant_id,
        actor_email=_clean_email(actor_email or actor_email_ctx.get()),
        actor_role=_clean_role(actor_role or actor_role_ctx.get()),
        action=(action or "").strip(),
        resource_type=(resource_type or "").strip(),
        resource_id=None if resource_id is None else str(resource_id),
        request_id=(request_id or request_id_ctx.get() or "").strip() or None,
        payload_json=json.dumps(payload or {}, ensure_ascii=True, sort_keys=True, default=str),
        created_at=utc_now_naive(),
    )
    db.add(entry)
    db.commit()
    db.refresh(entry)
    return entry


def safe_audit(db: Session, tenant_id: int, action: str, resource_type: str, resource_id=None, **kwargs) -> None:
    """Audit after the main write has committed; a failure here is logged, not raised."""
    try:
        write_audit_log(db, tenant_id, action, resource_type, resource_id, **kwargs)
    except Exception as exc:
        db.rollback()
        logger.warning(
            "audit_write_failed",
            action=action,
            resource_type=resource_type,
            resource_id=resource_id,
            error=str(exc),
        )


def list_audit_logs(
    db: Session,
    tenant_id: int,
    limit: int = 200,
    action: str | None = None,
    actor_email: str | None = None,
    resource_type: str | None = None,
    since_minutes: int | None = None,
) -> list[AuditLog]:
    stmt = select(AuditLog).where(AuditLog.tenant_id == tenant_id)
    if action:
        stmt = stmt.where(AuditLog.action == action.strip())
    if actor_email:
        stmt = stmt.where(AuditLog.actor_email == _clean_email(actor_email))
    if resource_type:
        stmt = stmt.where(AuditLog.resource_type == resource_type.strip())
    if since_minutes is not None:
        stmt = stmt.where(AuditLog.created_at >= utc_now_naive() - timedelta(minutes=max(1, int(since_minutes))))
    stmt = stmt.order_by(AuditLog.created_at.desc(), AuditLog.id.desc()).limit(max(1, min(int(limit), 1000)))
    return list(db.execute(stmt).scalars())

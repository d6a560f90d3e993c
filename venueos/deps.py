from contextlib import contextmanager
from dataclasses import dataclass
from typing import Optional

import structlog
from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.orm import Session

from .authn import extract_identity_from_authorization_header
from .config import settings
from .db import get_db
from .enterprise import get_or_create_tenant, require_permission
from .errors import IntegrationError, NotFoundError
from .models import Tenant

logger = structlog.get_logger("venueos.api")


@dataclass
class Actor:
    email: str
    role: str


def resolve_tenant_slug(header_slug: Optional[str], authorization: Optional[str]) -> str:
    """Header slug or bearer token slug, falling back to the default venue."""
    header = (header_slug or "").strip().lower()
    identity = extract_identity_from_authorization_header(authorization)
    token = (identity.tenant_slug if identity else "").strip().lower()
    if header and token and header != token:
        raise PermissionError("Tenant mismatch with bearer token")
    return header or token or settings.DEFAULT_TENANT_SLUG.strip().lower()


def _resolve_tenant_or_default(db: Session, slug: str) -> Tenant:
    tenant_name = settings.DEFAULT_TENANT_NAME if slug == settings.DEFAULT_TENANT_SLUG else slug
    return get_or_create_tenant(db, slug=slug, name=tenant_name)


def get_current_tenant(
    request: Request,
    db: Session = Depends(get_db),
    x_tenant_slug: Optional[str] = Header(default=None),
) -> Tenant:
    try:
        slug = resolve_tenant_slug(x_tenant_slug, request.headers.get("authorization"))
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc))
    return _resolve_tenant_or_default(db, slug)


def require(module: str, action: str):
    """Dependency factory: resolves the calling actor and checks module/action permission."""

    def _dependency(
        request: Request,
        db: Session = Depends(get_db),
        tenant: Tenant = Depends(get_current_tenant),
        x_actor_email: Optional[str] = Header(default=None),
        x_actor_role: Optional[str] = Header(default=None),
    ) -> Actor:
        email, role_hint = x_actor_email, x_actor_role
        identity = extract_identity_from_authorization_header(request.headers.get("authorization"))
        if identity:
            email = email or identity.email
            role_hint = role_hint or identity.role
        try:
            actor_email, actor_role = require_permission(
                db, tenant.id, module, action, actor_email=email, actor_role_hint=role_hint
            )
        except PermissionError as exc:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc))
        except ValueError as exc:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(exc))
        return Actor(email=actor_email, role=actor_role)

    return _dependency


@contextmanager
def service_errors():
    try:
        yield
    except NotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc))
    except IntegrationError as exc:
        logger.warning("integration_failed", provider=exc.provider, error=str(exc))
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc))
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))

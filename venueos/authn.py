from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt

from .config import settings


@dataclass
class AuthIdentity:
    email: str
    role: str
    tenant_slug: str


def _token_exp(minutes: int) -> datetime:
    return datetime.now(timezone.utc) + timedelta(minutes=max(1, int(minutes)))


def create_access_token(*, identity: AuthIdentity, minutes: int = 60) -> str:
    """Signs a staff token. Used by the sign-in front end and by tests."""
    payload = {
        "sub": identity.email,
        "role": identity.role,
        "tenant_slug": identity.tenant_slug,
        "iss": settings.AUTH_ISSUER,
        "aud": settings.AUTH_AUDIENCE,
        "exp": _token_exp(minutes),
        "iat": datetime.now(timezone.utc),
    }
    return jwt.encode(payload, settings.AUTH_SECRET_KEY, algorithm=settings.AUTH_ALGORITHM)


def decode_access_token(token: str) -> AuthIdentity | None:
    try:
        payload = jwt.decode(
            token,
            settings.AUTH_SECRET_KEY,
            algorithms=[settings.AUTH_ALGORITHM],
            audience=settings.AUTH_AUDIENCE,
            issuer=settings.AUTH_ISSUER,
            options={"verify_aud": True, "verify_iss": True},
        )
    except JWTError:
        return None

    email = str(payload.get("sub") or "").strip().lower()
    role = str(payload.get("role") or "").strip().lower()
    tenant_slug = str(payload.get("tenant_slug") or "").strip().lower()
    if not email or not role or not tenant_slug:
        return None
    return AuthIdentity(email=email, role=role, tenant_slug=tenant_slug)


def extract_identity_from_authorization_header(authorization_header: str | None) -> AuthIdentity | None:
    raw = (authorization_header or "").strip()
    if not raw.lower().startswith("bearer "):
        return None
    token = raw[7:].strip()
    if not token:
        return None
    return decode_access_token(token)

import hashlib
from dataclasses import dataclass
from datetime import timedelta

import structlog
from fastapi import Request, Response
from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .config import settings
from .db import SessionLocal
from .deps import resolve_tenant_slug
from .models import IdempotencyRecord, utc_now_naive

logger = structlog.get_logger("venueos.idempotency")

REPLAYABLE_METHODS = {"POST", "PUT", "PATCH", "DELETE"}
# provider callbacks carry their own delivery ids
UNGUARDED_PREFIXES = ("/docs", "/redoc", "/openapi.json", "/public/")

CONFLICT_BODY = b'{"detail":"Idempotency key reused with different payload"}'


@dataclass(frozen=True)
class ReplayScope:
    tenant_slug: str
    method: str
    path: str
    key: str

    @classmethod
    def from_request(cls, request: Request, key: str) -> "ReplayScope":
        # a header/token mismatch gets a 403 from the tenant dependency
        try:
            slug = resolve_tenant_slug(request.headers.get("x-tenant-slug"), request.headers.get("authorization"))
        except PermissionError:
            slug = (request.headers.get("x-tenant-slug") or "").strip().lower()
        return cls(tenant_slug=slug, method=request.method.upper(), path=request.url.path, key=key.strip())

    def fingerprint(self, body: bytes) -> str:
        digest = hashlib.sha256()
        for part in (self.method, self.path, self.tenant_slug):
            digest.update(part.encode("utf-8"))
            digest.update(b"\x00")
        digest.update(body or b"")
        return digest.hexdigest()


def find_replay(db: Session, scope: ReplayScope) -> IdempotencyRecord | None:
    """Returns the stored outcome for this scope, dropping it first when it has expired."""
    row = db.execute(
        select(IdempotencyRecord).where(
            IdempotencyRecord.tenant_slug == scope.tenant_slug,
            IdempotencyRecord.method == scope.method,
            IdempotencyRecord.path == scope.path,
            IdempotencyRecord.idempotency_key == scope.key,
        )
    ).scalar_one_or_none()
    if row is not None and row.expires_at is not None and row.expires_at <= utc_now_naive():
        db.delete(row)
        db.commit()
        return None
    return row


def remember_outcome(
    db: Session,
    scope: ReplayScope,
    *,
    request_hash: str,
    status_code: int,
    content_type: str | None,
    body: bytes,
) -> IdempotencyRecord | None:
    now = utc_now_naive()
    row = IdempotencyRecord(
        tenant_slug=scope.tenant_slug,
        method=scope.method,
        path=scope.path,
        idempotency_key=scope.key,
        request_hash=request_hash,
        status_code=int(status_code),
        content_type=(content_type or "").strip() or None,
        response_body=body or b"",
        created_at=now,
        expires_at=now + timedelta(hours=max(1, int(settings.IDEMPOTENCY_TTL_HOURS))),
    )
    db.add(row)
    try:
        db.commit()
    except IntegrityError:
        # a concurrent request with the same key stored first
        db.rollback()
        logger.warning("idempotency_store_race", key=scope.key, path=scope.path)
        return None
    return row


def purge_expired_records(db: Session) -> int:
    result = db.execute(delete(IdempotencyRecord).where(IdempotencyRecord.expires_at <= utc_now_naive()))
    db.commit()
    return int(result.rowcount or 0)


async def idempotency_middleware(request: Request, call_next):
    key = (request.headers.get("idempotency-key") or "").strip()
    if (
        not key
        or request.method.upper() not in REPLAYABLE_METHODS
        or request.url.path.startswith(UNGUARDED_PREFIXES)
    ):
        return await call_next(request)

    scope = ReplayScope.from_request(request, key)
    body = await request.body()
    request_hash = scope.fingerprint(body)
    session_factory = getattr(request.app.state, "session_local", SessionLocal)

    with session_factory() as db:
        stored = find_replay(db, scope)
        if stored is not None:
            if stored.request_hash != request_hash:
                logger.info("idempotency_conflict", key=key, path=scope.path)
                return Response(content=CONFLICT_BODY, status_code=409, media_type="application/json")
            logger.info("idempotency_replayed", key=key, path=scope.path, status_code=stored.status_code)
            return Response(
                content=stored.response_body or b"",
                status_code=int(stored.status_code),
                media_type=stored.content_type or "application/json",
                headers={"X-Idempotency-Replayed": "true"},
            )

    async def receive():
        return {"type": "http.request", "body": body, "more_body": False}

    response = await call_next(Request(request.scope, receive))
    chunks = [chunk async for chunk in response.body_iterator]
    payload = b"".join(chunks)

    # 5xx outcomes are not stored so the client can retry them
    if response.status_code < 500:
        with session_factory() as db:
            remember_outcome(
                db,
                scope,
                request_hash=request_hash,
                status_code=response.status_code,
                content_type=response.media_type or response.headers.get("content-type"),
                body=payload,
            )

    return Response(
        content=payload,
        status_code=response.status_code,
        headers=dict(response.headers),
        media_type=response.media_type,
    )

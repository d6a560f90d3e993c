import time
import uuid

import redis
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy import text

from .api import router
from .api_cashing_up import router as cashing_up_router
from .api_customers import router as customers_router
from .api_events import router as events_router
from .api_invoices import router as invoices_router
from .api_loyalty import public_router as loyalty_public_router
from .api_loyalty import router as loyalty_router
from .api_menu import router as menu_router
from .api_messages import public_router as twilio_public_router
from .api_messages import router as messages_router
from .api_parking import public_router as parking_public_router
from .api_parking import router as parking_router
from .api_rota import router as rota_router
from .authn import extract_identity_from_authorization_header
from .config import settings
from .core.logging_config import setup_logging
from .db import Base, SessionLocal, engine
from .idempotency import idempotency_middleware
from .observability import RequestEvent, observe_request
from .request_context import actor_email_ctx, actor_role_ctx, request_id_ctx, tenant_slug_ctx

_MAINTENANCE_BYPASS_PREFIXES = ("/health", "/ping", "/docs", "/redoc", "/openapi.json")
# provider callbacks must keep landing while staff writes are frozen
_READ_ONLY_BYPASS_PREFIXES = (
    "/public/twilio",
    "/public/parking",
)
_SAFE_METHODS = {"GET", "HEAD", "OPTIONS"}
_SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "no-referrer",
    "Permissions-Policy": "camera=(), microphone=(), geolocation=()",
    "Cache-Control": "no-store",
}

if settings.DATABASE_URL.startswith("sqlite") or settings.DB_AUTO_CREATE_ALL:
    Base.metadata.create_all(bind=engine)
elif settings.DB_SCHEMA_CHECK_ON_STARTUP:
    try:
        with SessionLocal() as db:
            db.execute(text("SELECT 1 FROM tenants LIMIT 1"))
    except Exception as exc:
        raise RuntimeError("Database schema check failed. Create the schema before starting the API.") from exc
setup_logging()

app = FastAPI(
    title="VenueOS",
    description="Back office API for a single hospitality venue",
    version="0.1.0",
)
app.state.session_local = SessionLocal


def _header(request: Request, name: str, lower: bool = True) -> str | None:
    value = (request.headers.get(name) or "").strip()
    return (value.lower() if lower else value) or None


def _maintenance_response(request: Request) -> JSONResponse | None:
    path = request.url.path or ""
    retry_after = {"Retry-After": str(max(1, int(settings.MAINTENANCE_RETRY_AFTER_SECONDS)))}
    if settings.MAINTENANCE_MODE and not path.startswith(_MAINTENANCE_BYPASS_PREFIXES):
        return JSONResponse(
            status_code=503,
            content={"detail": "Service temporarily unavailable: maintenance mode"},
            headers=retry_after,
        )
    if (
        settings.MAINTENANCE_READ_ONLY
        and request.method.upper() not in _SAFE_METHODS
        and not path.startswith(_READ_ONLY_BYPASS_PREFIXES)
    ):
        return JSONResponse(status_code=503, content={"detail": "Service is in read-only mode"}, headers=retry_after)
    return None


@app.middleware("http")
async def auth_context_middleware(request: Request, call_next):
    actor_email = _header(request, "x-actor-email")
    actor_role = _header(request, "x-actor-role")
    tenant_slug = _header(request, "x-tenant-slug")

    # explicit headers win; a bearer token fills whatever is missing
    identity = extract_identity_from_authorization_header(request.headers.get("authorization"))
    if identity:
        actor_email = actor_email or identity.email
        actor_role = actor_role or identity.role
        tenant_slug = tenant_slug or identity.tenant_slug

    actor_email_ctx.set(actor_email)
    actor_role_ctx.set(actor_role)
    tenant_slug_ctx.set(tenant_slug)
    return await call_next(request)


@app.middleware("http")
async def maintenance_mode_middleware(request: Request, call_next):
    blocked = _maintenance_response(request)
    if blocked is not None:
        return blocked
    return await call_next(request)


@app.middleware("http")
async def app_idempotency_middleware(request: Request, call_next):
    return await idempotency_middleware(request, call_next)


@app.middleware("http")
async def request_observability_middleware(request: Request, call_next):
    request_id = _header(request, "x-request-id", lower=False) or str(uuid.uuid4())
    request_id_ctx.set(request_id)
    started = time.perf_counter()

    def finished(status_code: int) -> RequestEvent:
        return RequestEvent(
            method=request.method.upper(),
            path=request.url.path,
            status_code=status_code,
            duration_ms=round((time.perf_counter() - started) * 1000.0, 2),
            request_id=request_id,
            tenant_slug=_header(request, "x-tenant-slug"),
        )

    try:
        response = await call_next(request)
    except Exception as exc:
        observe_request(finished(500), error=exc)
        return JSONResponse(status_code=500, content={"detail": "Internal Server Error"}, headers={"X-Request-ID": request_id})

    observe_request(finished(int(response.status_code)))
    response.headers["X-Request-ID"] = request_id
    return response


@app.middleware("http")
async def security_headers_middleware(request: Request, call_next):
    response = await call_next(request)
    if settings.SECURITY_HEADERS_ENABLED:
        for name, value in _SECURITY_HEADERS.items():
            response.headers.setdefault(name, value)
    return response


@app.get("/ping")
def ping():
    return {"ok": True}


@app.get("/health")
def health():
    return {"status": "ok"}


def _database_check() -> str:
    try:
        with app.state.session_local() as db:
            db.execute(text("SELECT 1"))
    except Exception:
        return "error"
    return "ok"


def _redis_check() -> str:
    redis_url = (settings.REDIS_URL or "").strip()
    if not redis_url:
        return "skipped"
    try:
        redis.from_url(redis_url, decode_responses=True).ping()
    except Exception:
        return "error"
    return "ok"


@app.get("/health/ready")
def ready():
    checks = {"db": _database_check(), "redis": _redis_check()}
    if "error" in checks.values():
        return JSONResponse(status_code=503, content={"status": "not_ready", "checks": checks})
    return {"status": "ready", "checks": checks}


for _router in (
    router,
    customers_router,
    events_router,
    loyalty_router,
    invoices_router,
    parking_router,
    rota_router,
    cashing_up_router,
    messages_router,
    menu_router,
    loyalty_public_router,
    parking_public_router,
    twilio_public_router,
):
    app.include_router(_router)

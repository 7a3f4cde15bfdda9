"""
api/main.py -- FastAPI application entry point for FarmAssist.

Run with:      python main.py serve
               uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. SecurityHeadersMiddleware -- browser hardening headers on every response
  2. GZipMiddleware            -- response compression
  3. CORSMiddleware            -- CORS headers for the configured browser origin
  4. SlowAPIMiddleware         -- application-wide rate limit from api.limiter
  5. HardeningMiddleware       -- escape, collapse, strip, validate, scan, size,
                                  log, content-type (api/security.py)
  6. SessionMiddleware         -- signed cookie session (SESSION_SECRET)
  7. log_requests              -- one access-log line per response
  8. audit_route_groups        -- audit events for the auth and admin groups

Lifespan builds the credential store, audit trail, notifier and OIDC
verifier and puts them on app.state; shutdown closes the store.
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.sessions import SessionMiddleware

from api.limiter import GENERAL_LIMIT_MESSAGE, limiter
from api.models import ErrorResponse, FieldError, HealthResponse
from api.routes.admin import router as admin_router
from api.routes.auth import router as auth_router
from api.routes.contact import router as contact_router
from api.routes.oidc import router as oidc_router
from api.routes.users import router as users_router
from api.security import HardeningMiddleware, SecurityHeadersMiddleware, build_steps
from auth.oidc import OIDCVerifier, SigningKeyCache
from auth.store import UserStore
from core.audit import AuditTrail, configure_audit_sink
from core.config import get_settings
from core.errors import AppError
from core.notifier import Notifier

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("farmassist.api")

_settings = get_settings()

API_VERSION = "1.0.0"

AUTH_GROUP = "/api/auth"
ADMIN_GROUP = "/api/admin"


def _in_group(path: str, prefix: str) -> bool:
    return path == prefix or path.startswith(prefix + "/")


def build_oidc_verifier() -> OIDCVerifier:
    return OIDCVerifier(
        _settings.oidc_issuer,
        _settings.oidc_audience,
        environment=_settings.environment,
        dev_bypass=_settings.oidc_dev_bypass,
        cache=SigningKeyCache(_settings.jwks_cache_max_entries, _settings.jwks_cache_ttl_seconds),
        timeout=_settings.outbound_timeout_seconds,
    )


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Create shared services on startup and release them on shutdown."""
    logger.info("FarmAssist API starting up (environment=%s)", _settings.environment)
    configure_audit_sink(_settings.audit_log_path)
    app.state.audit = AuditTrail()
    app.state.user_store = UserStore(_settings.database_url)
    app.state.notifier = Notifier(_settings)
    app.state.oidc_verifier = build_oidc_verifier()

    if not app.state.notifier.email_enabled:
        logger.warning("SMTP not configured -- verification and reset emails will be skipped")
    if not app.state.notifier.sms_enabled:
        logger.warning("SMS provider not configured -- SMS notices will be skipped")
    if not _settings.oidc_issuer:
        logger.warning("OIDC_ISSUER not set -- external bearer tokens will be rejected")

    yield

    app.state.user_store.close()
    logger.info("FarmAssist API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="FarmAssist API",
    description="Authentication, authorization and request hardening for the FarmAssist platform.",
    version=API_VERSION,
    lifespan=lifespan,
    docs_url=None if _settings.is_production else "/docs",
    redoc_url=None,
)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


# ---------------------------------------------------------------------------
# Route-group audit middleware
#
# Registered first, so it is the innermost middleware and sees
# request.state.user as set by protect() or the login handler.
# ---------------------------------------------------------------------------


@app.middleware("http")
async def audit_route_groups(request: Request, call_next):
    response = await call_next(request)
    path = request.url.path
    status = response.status_code
    audit: AuditTrail = request.app.state.audit

    if _in_group(path, AUTH_GROUP):
        if 200 <= status < 400:
            audit.auth_success(request, route=path, status=status)
        elif status in (401, 403) and not getattr(request.state, "auth_failure_recorded", False):
            audit.auth_failure(request, f"status={status}")
    elif _in_group(path, ADMIN_GROUP):
        if request.method == "GET":
            audit.sensitive_action(request, "admin.view", route=path, status=status)
        else:
            audit.sensitive_action(request, "admin.action", method=request.method, route=path, status=status)
    return response


# ---------------------------------------------------------------------------
# Request logging middleware
# ---------------------------------------------------------------------------


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s %d %.1fms %s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        request.client.host if request.client else "unknown",
    )
    return response


# ---------------------------------------------------------------------------
# Middleware stack
#
# add_middleware() wraps everything registered before it, so the LAST call
# here is the OUTERMOST layer. Calls are ordered innermost first.
# ---------------------------------------------------------------------------

app.add_middleware(
    SessionMiddleware,
    secret_key=_settings.session_secret,
    https_only=_settings.https_enable,
    same_site="lax",
)

app.add_middleware(
    HardeningMiddleware,
    steps=build_steps(
        max_body_bytes=_settings.max_body_bytes,
        json_only_prefixes=_settings.json_only_prefixes,
        injection_scan=_settings.injection_scan_enabled,
    ),
    max_body_bytes=_settings.max_body_bytes,
)

# Outside the hardening pipeline: a throttled client is refused before its
# body is buffered and parsed.
app.add_middleware(SlowAPIMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[_settings.cors_origin],
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

app.add_middleware(GZipMiddleware, minimum_size=1024)

app.add_middleware(SecurityHeadersMiddleware)


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, prefix="/api", tags=["Auth"])
app.include_router(users_router, prefix="/api", tags=["Users"])
app.include_router(admin_router, prefix="/api", tags=["Admin"])
app.include_router(oidc_router, prefix="/api", tags=["OIDC"])
app.include_router(contact_router, prefix="/api", tags=["Contact"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same {"success": false, "message": ...} envelope.
# "error" carries internal detail and is only included outside production.
# ---------------------------------------------------------------------------


def _error_response(status_code: int, message: str, error=None, errors=None) -> JSONResponse:
    body = ErrorResponse(
        message=message,
        error=None if _settings.is_production else error,
        errors=errors,
    )
    return JSONResponse(status_code=status_code, content=body.model_dump(exclude_none=True))


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    return _error_response(exc.status_code, exc.message, error=exc.detail)


# Sync on purpose: SlowAPIMiddleware calls this handler without awaiting it.
@app.exception_handler(RateLimitExceeded)
def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with the group's message and a Retry-After header.

    Retry-After is the limit's full window, the longest a client could have
    to wait under a moving window.
    """
    message = exc.detail if exc.limit.error_message else GENERAL_LIMIT_MESSAGE
    response = _error_response(429, message)
    response.headers["Retry-After"] = str(exc.limit.limit.get_expiry())
    client = request.client.host if request.client else "unknown"
    logger.warning("Rate limit exceeded on %s from %s", request.url.path, client)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 400 with one entry per invalid field."""
    errors = []
    for err in exc.errors():
        loc = [str(part) for part in err.get("loc", ()) if part not in ("body", "query", "path")]
        errors.append(FieldError(field=".".join(loc) or "request", message=err.get("msg", "Invalid value")))
    return _error_response(400, "Validation failed", errors=errors)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Map framework HTTP errors (unknown route, wrong method) onto the envelope."""
    if exc.status_code == 404 and exc.detail == "Not Found":
        return _error_response(404, "Route not found")
    return _error_response(exc.status_code, str(exc.detail))


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The traceback goes to the log only; the client gets a generic message.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error_response(500, "Something went wrong!", error=str(exc))


# ---------------------------------------------------------------------------
# Health endpoints
#
# Defined directly in main.py so they are reachable regardless of router
# state. Exempt from rate limiting -- probes must not be throttled.
# ---------------------------------------------------------------------------


def _health() -> HealthResponse:
    return HealthResponse(timestamp=datetime.now(timezone.utc).isoformat())


@app.get("/health", tags=["Health"])
@limiter.exempt
def health() -> HealthResponse:
    """Return API liveness."""
    return _health()


@app.get("/api/health", tags=["Health"])
@limiter.exempt
def api_health() -> HealthResponse:
    """Return API liveness."""
    return _health()

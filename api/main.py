"""
api/main.py -- FastAPI application assembly for Formwork.

Run with:      python main.py
               uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. request_context        -- request ID, security headers, access log, metrics
  2. TrustedHostMiddleware  -- rejects requests with unexpected Host headers
  3. CORSMiddleware         -- adds CORS headers for allowed browser origins
  4. SlowAPIMiddleware      -- enforces the default and per-route rate limits
  5. CSRFMiddleware         -- double-submit token check and rotation

Starlette wraps middleware so the LAST one added is the OUTERMOST. The
add_middleware() calls below therefore run innermost-first.

Lifespan opens the user store on startup and closes it on shutdown.
"""

from __future__ import annotations

import logging
import re
import time
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException

from api.limiter import limiter
from api.models import HealthResponse
from api.routes.v1.auth import router as auth_router
from api.routes.v1.users import router as users_router
from auth.store import UserStore
from core.config import get_settings
from core.errors import (
    AppError,
    error_response,
    from_status,
    internal_error,
    too_many_requests,
    validation_details,
    validation_failed,
)
from core.health import build_health_report
from core.logging import configure_logging
from core.metrics import (
    HTTP_REQUESTS_IN_FLIGHT,
    initialize_metrics,
    record_htmx_request,
    record_http_request,
    update_active_users,
)
from middleware.csrf import CSRFConfig, CSRFMiddleware

settings = get_settings()

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

configure_logging(settings)
logger = logging.getLogger("formwork.api")

# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Open the user store on startup and close it on shutdown.

    Everything before yield runs on startup; everything after yield runs on
    shutdown, even if a request handler raised.
    """
    logger.info("Formwork starting up (environment=%s, version=%s)", settings.environment, settings.version)
    app.state.user_store = UserStore(settings.database_url)
    initialize_metrics(settings.version, settings.environment)
    update_active_users(app.state.user_store.count_users())
    logger.info("User store initialized")

    yield

    app.state.user_store.close()
    logger.info("Formwork shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Formwork API",
    description="HTMX CRUD starter with double-submit CSRF protection.",
    version=settings.version,
    lifespan=lifespan,
    # API docs are a development convenience only.
    docs_url=None if settings.is_production else "/docs",
    redoc_url=None,
    openapi_url=None if settings.is_production else "/openapi.json",
)

# SlowAPIMiddleware looks for app.state.limiter by convention.
app.state.limiter = limiter

# ---------------------------------------------------------------------------
# Middleware stack (innermost first, see module docstring)
# ---------------------------------------------------------------------------

app.add_middleware(CSRFMiddleware, config=CSRFConfig.from_settings(settings))

app.add_middleware(SlowAPIMiddleware)

if settings.enable_cors:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE"],
        allow_headers=["Content-Type", "Authorization", "X-CSRF-Token", "HX-Request", "HX-Target", "HX-Trigger"],
        # Cross-origin pages must be able to read the rotated token.
        expose_headers=["X-CSRF-Token", "X-Request-ID"],
        allow_credentials=True,
        max_age=86400,
    )

app.add_middleware(TrustedHostMiddleware, allowed_hosts=settings.allowed_hosts)

# ---------------------------------------------------------------------------
# Request context middleware
#
# Outermost layer: every response, including CSRF rejections and rate-limit
# errors produced further in, leaves through here and gets a request ID,
# security headers, an access log line and request metrics.
# ---------------------------------------------------------------------------

_CSP = (
    "default-src 'self'; "
    "script-src 'self' 'unsafe-inline' https://unpkg.com; "
    "style-src 'self' 'unsafe-inline'; "
    "img-src 'self' data: https:; "
    "connect-src 'self'; "
    "frame-ancestors 'none'"
)

_SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "Permissions-Policy": "camera=(), microphone=(), geolocation=()",
    "Cross-Origin-Opener-Policy": "same-origin",
    "Content-Security-Policy": _CSP,
}


# Incoming IDs are echoed into logs and headers, so only plain tokens are honoured.
_REQUEST_ID_RE = re.compile(r"^[A-Za-z0-9._-]{1,128}$")


_METRIC_METHODS = frozenset({"GET", "HEAD", "OPTIONS", "POST", "PUT", "PATCH", "DELETE"})


def _route_path(request: Request) -> str:
    """Route template (e.g. /users/{user_id}) so metric labels stay bounded."""
    route = request.scope.get("route")
    return getattr(route, "path", "<unmatched>")


@app.middleware("http")
async def request_context(request: Request, call_next):
    request_id = request.headers.get("X-Request-ID", "")
    if not _REQUEST_ID_RE.match(request_id):
        request_id = uuid.uuid4().hex
    request.state.request_id = request_id

    start = time.perf_counter()
    HTTP_REQUESTS_IN_FLIGHT.inc()
    try:
        response = await call_next(request)
    finally:
        HTTP_REQUESTS_IN_FLIGHT.dec()
    elapsed = time.perf_counter() - start

    response.headers["X-Request-ID"] = request_id
    for name, value in _SECURITY_HEADERS.items():
        response.headers.setdefault(name, value)
    if request.url.scheme == "https":
        response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"

    method = request.method if request.method in _METRIC_METHODS else "OTHER"
    path = _route_path(request)
    record_http_request(method, path, response.status_code, elapsed)
    if request.headers.get("HX-Request") == "true":
        record_htmx_request(method, path)

    logger.info(
        "%s %s %d %.1fms %s %s",
        request.method,
        request.url.path,
        response.status_code,
        elapsed * 1000,
        request.client.host if request.client else "unknown",
        request_id,
    )
    return response


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])
app.include_router(users_router, prefix="/api/v1", tags=["Users"])
# Web UI router is mounted by asgi.py, not here.
# api/ and web/ are independent layers -- only the top-level asgi.py imports both.


# ---------------------------------------------------------------------------
# Exception handlers
#
# Every handler funnels into core.errors.error_response() so clients parse one
# envelope regardless of where the error came from.
# ---------------------------------------------------------------------------


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    return error_response(request, exc, hide_internal_messages=settings.is_production)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Map framework HTTP errors (404 unknown route, 405 wrong method, ...) onto AppError."""
    message = exc.detail if isinstance(exc.detail, str) else None
    response = error_response(request, from_status(exc.status_code, message))
    if exc.headers:
        response.headers.update(exc.headers)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 400 with one {field, message} entry per failing input."""
    return error_response(request, validation_failed(validation_details(exc.errors())))


def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with Retry-After.

    Plain def: SlowAPIMiddleware calls this handler directly and does not
    await it on every slowapi release.
    """
    response = error_response(request, too_many_requests().with_internal(exc))
    retry_after = int(getattr(exc, "retry_after", 0) or 60)
    response.headers["Retry-After"] = str(retry_after)
    return response


app.add_exception_handler(RateLimitExceeded, rate_limit_handler)


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all for unexpected server errors.

    The traceback goes to the log only. The client receives the generic 500
    envelope.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return error_response(request, internal_error(), hide_internal_messages=settings.is_production)


# ---------------------------------------------------------------------------
# Health and metrics
#
# Defined directly in main.py so they are reachable regardless of router
# registration. Health is exempt from the default rate limit: load balancers
# and monitors must not be throttled.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", tags=["Health"], response_model=HealthResponse)
@limiter.exempt
async def health(request: Request) -> JSONResponse:
    """Return service health with a database check."""
    report, status_code = build_health_report(
        getattr(request.app.state, "user_store", None), settings.app_name, settings.version
    )
    return JSONResponse(status_code=status_code, content=report)


def _metrics_enabled() -> None:
    if not settings.enable_metrics:
        raise from_status(404)


@app.get("/metrics", include_in_schema=False, dependencies=[Depends(_metrics_enabled)])
@limiter.exempt
async def metrics() -> Response:
    """Prometheus scrape endpoint. 404 unless ENABLE_METRICS=true."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

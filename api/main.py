"""
api/main.py -- FastAPI application entry point for the tenant portal.

Exposes the session and authorization core over HTTP: login / refresh /
logout, tenant and account administration, and a policy decision endpoint
for the portal's domain services.

Run with:      uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Lifespan handles startup (store, token codec, session manager, purge task)
and shutdown (cancel purge task, stop store workers, close the DB) symmetrically.

Error contract: every auth failure is one 401, every authorization denial is
one 403, a slow or failing store is one 503. Internal reasons go to the audit
log only.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy.exc import SQLAlchemyError

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.accounts import router as accounts_router
from api.routes.v1.auth import router as auth_router
from api.routes.v1.authorize import router as authorize_router
from api.routes.v1.tenants import router as tenants_router
from auth.errors import AuthFailure, Forbidden, TokenError, Unavailable
from auth.sessions import SessionManager
from auth.store import PortalStore
from auth.tokens import TokenCodec
from core.config import get_settings

API_VERSION = "0.3.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("tenantportal.api")

settings = get_settings()

# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------


async def _purge_loop(app: FastAPI, interval: int) -> None:
    """Purge expired consumed-refresh-token records every `interval` seconds.

    A consumed record only matters until the refresh token it blocks stops
    parsing (exp plus the clock-skew leeway), so the table stays small.
    CancelledError from task.cancel() during shutdown propagates out of
    asyncio.sleep and unwinds the coroutine cleanly.
    """
    while True:
        await asyncio.sleep(interval)
        try:
            removed = await asyncio.to_thread(app.state.session_manager.purge_consumed_tokens)
        except Unavailable:
            logger.warning("token purge skipped: store unavailable")
            continue
        if removed:
            logger.info("purged %d expired refresh-token records", removed)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Startup order matters:
      1. Store first -- everything else reads from it.
      2. Codec and session manager second -- they wrap the store.
      3. Purge task last -- references app.state.session_manager.
    """
    logger.info("Tenant portal API starting up")
    app.state.store = PortalStore(settings.database_url) if settings.database_url else PortalStore()
    app.state.session_manager = SessionManager.from_settings(app.state.store, settings, TokenCodec.from_settings(settings))
    logger.info("Auth initialized (accounts present=%s)", app.state.store.has_accounts())
    app.state.purge_task = asyncio.create_task(_purge_loop(app, settings.purge_interval_seconds))

    yield

    app.state.purge_task.cancel()
    app.state.session_manager.close()
    app.state.store.close()
    logger.info("Tenant portal API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Tenant Portal API",
    description="Sessions, tokens and tenant-scoped authorization for the client portal.",
    version=API_VERSION,
    lifespan=lifespan,
    docs_url="/docs" if settings.debug else None,
    redoc_url=None,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# Register in the order you want the request to encounter them:
# TrustedHost -> CORS -> SlowAPI.
# ---------------------------------------------------------------------------

app.add_middleware(TrustedHostMiddleware, allowed_hosts=settings.allowed_hosts)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_methods=["GET", "POST", "PATCH", "DELETE"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter

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
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])
app.include_router(tenants_router, prefix="/api/v1", tags=["Tenants"])
app.include_router(accounts_router, prefix="/api/v1", tags=["Accounts"])
app.include_router(authorize_router, prefix="/api/v1", tags=["Authorization"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


def _error(status_code: int, code: str, message: str, headers: dict[str, str] | None = None) -> JSONResponse:
    response = JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=ErrorDetail(code=code, message=message)).model_dump(exclude_none=True),
    )
    response.headers.update(headers or {})
    return response


@app.exception_handler(AuthFailure)
@app.exception_handler(TokenError)
async def authentication_error_handler(request: Request, exc: AuthFailure | TokenError) -> JSONResponse:
    """One 401 for every credential and token failure.

    The specific kind (unknown email, wrong password, expired, revoked, ...)
    is logged server-side and never returned, so the body cannot be used to
    enumerate accounts or learn token state.
    """
    logger.info("auth failure on %s %s kind=%s", request.method, request.url.path, exc.kind.value)
    return _error(
        401,
        "unauthorized",
        "Authentication failed.",
        {"WWW-Authenticate": "Bearer", "Cache-Control": "no-store"},
    )


@app.exception_handler(Forbidden)
async def forbidden_handler(request: Request, exc: Forbidden) -> JSONResponse:
    """One 403 for every policy denial; the deny reason stays in the audit log."""
    return _error(403, "forbidden", "Access denied.")


@app.exception_handler(Unavailable)
async def unavailable_handler(request: Request, exc: Unavailable) -> JSONResponse:
    logger.warning("store unavailable on %s %s", request.method, request.url.path)
    return _error(503, "unavailable", "Service temporarily unavailable. Retry shortly.", {"Retry-After": "1"})


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a rate limit is exceeded."""
    retry_after = int(getattr(exc, "retry_after", 60))
    return _error(429, "rate_limited", "Too many requests.", {"Retry-After": str(retry_after)})


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 naming the failing fields only.

    Submitted values are never echoed back -- a rejected password must not
    reappear in a response body or a proxy log.
    """
    fields = sorted({".".join(str(part) for part in err.get("loc", ())[1:]) or "body" for err in exc.errors()})
    return JSONResponse(
        status_code=422,
        content=ErrorResponse(
            error=ErrorDetail(
                code="validation_error",
                message="Request validation failed.",
                detail=", ".join(fields),
            )
        ).model_dump(),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions.

    Route handlers raise HTTPException with detail={"code": ..., "message": ...}.
    When detail is already a structured dict, use it directly as the error
    field rather than stringifying it.
    """
    if isinstance(exc.detail, dict):
        response = JSONResponse(status_code=exc.status_code, content={"error": exc.detail})
    else:
        response = _error(exc.status_code, f"http_{exc.status_code}", str(exc.detail))
    response.headers.update(exc.headers or {})
    return response


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception is written to the server log only, never to the
    response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error(500, "internal_error", "An unexpected error occurred.")


# ---------------------------------------------------------------------------
# Health endpoint
#
# No rate limit applied -- health checks from load balancers and monitoring
# systems must not be throttled.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", tags=["Health"])
async def health(request: Request) -> JSONResponse:
    """Return liveness plus a database component check (503 when the store is down)."""
    store: PortalStore = request.app.state.store
    try:
        database_ok = await asyncio.to_thread(store.ping)
    except SQLAlchemyError:
        logger.exception("health check: database ping failed")
        database_ok = False
    body = HealthResponse(
        status="healthy" if database_ok else "degraded",
        version=API_VERSION,
        components={"app": "ok", "database": "ok" if database_ok else "unavailable"},
    )
    return JSONResponse(status_code=200 if database_ok else 503, content=body.model_dump())

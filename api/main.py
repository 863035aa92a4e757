"""
api/main.py -- FastAPI application entry point for the auth service.

Run with:      uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Lifespan is the composition root: it reads Settings once and constructs the
clock, signing key, user store, revocation registry and AuthService
explicitly, then parks them on app.state. No component reaches for a global.
Shutdown cancels the prune task and closes stores symmetrically.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from concurrent.futures import ThreadPoolExecutor
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from auth.keys import KeyProvider
from auth.revocation import SqlRevocationRegistry
from auth.service import AuthService
from auth.store import StoreUnavailable, UserStore
from core.clock import SystemClock
from core.config import get_settings

VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("authservice.api")

# ---------------------------------------------------------------------------
# Background prune task
# ---------------------------------------------------------------------------


async def _prune_loop(app: FastAPI, interval_seconds: int) -> None:
    """Drop revocation entries for naturally expired tokens every interval.

    CancelledError from task.cancel() during shutdown propagates out of
    asyncio.sleep and unwinds the coroutine. A store outage skips one round.
    """
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await asyncio.to_thread(app.state.auth_service.prune_revocations)
        except StoreUnavailable:
            logger.warning("Revocation prune skipped: store unavailable")


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build every component once and tear it down on shutdown.

    Startup order matters:
      1. Settings and clock -- everything else takes them.
      2. Signing key -- loaded once; the issuer refuses to sign without it.
      3. Stores -- user store and revocation registry share the database URL.
      4. AuthService -- wired from the pieces above.
      5. Prune task last -- it calls into the service.
    """
    logger.info("Auth service starting up")
    settings = get_settings()
    clock = SystemClock()
    keys = KeyProvider.from_settings(settings)
    app.state.settings = settings
    app.state.keys = keys
    app.state.user_store = UserStore(settings.database_url, clock=clock)
    app.state.revocations = SqlRevocationRegistry(settings.database_url, clock=clock)
    # last_login_at stamping runs off the request path.
    app.state.executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="auth-bg")
    app.state.auth_service = AuthService.build(
        settings,
        users=app.state.user_store,
        registry=app.state.revocations,
        keys=keys,
        clock=clock,
        executor=app.state.executor,
    )
    logger.info(
        "Auth initialized (alg=%s, access_ttl=%ds, refresh_ttl=%ds)",
        settings.jwt_algorithm,
        settings.access_token_expire_seconds,
        settings.refresh_token_expire_seconds,
    )
    app.state.prune_task = asyncio.create_task(_prune_loop(app, settings.revocation_prune_interval_seconds))

    yield

    app.state.prune_task.cancel()
    app.state.executor.shutdown(wait=True)
    app.state.revocations.close()
    app.state.user_store.close()
    logger.info("Auth service shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Auth Service API",
    description="Credential verification and token lifecycle: login, refresh, logout, introspection.",
    version=VERSION,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# Register in the order you want the request to encounter them:
# TrustedHost -> CORS -> SlowAPI.
# ---------------------------------------------------------------------------

app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=["localhost", "127.0.0.1", "*.localhost", "testserver"],
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost", "http://localhost:3000", "http://127.0.0.1"],
    allow_methods=["GET", "POST", "PATCH", "DELETE"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter

# ---------------------------------------------------------------------------
# Request logging middleware
#
# One line per request: method, path, status, latency, client. Headers and
# bodies are never logged -- they carry passwords and tokens.
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


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a rate limit is exceeded."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = JSONResponse(
        status_code=429,
        content=ErrorResponse(
            error=ErrorDetail(
                code="rate_limited",
                message="Too many requests.",
                detail=str(exc),
            )
        ).model_dump(),
    )
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or query params fail validation.

    Field values are dropped from the echoed errors: a rejected password must
    not be reflected back.
    """
    errors = [{"loc": list(err.get("loc", ())), "msg": err.get("msg", "")} for err in exc.errors()]
    return JSONResponse(
        status_code=422,
        content=ErrorResponse(
            error=ErrorDetail(
                code="validation_error",
                message="Request validation failed.",
                detail=str(errors),
            )
        ).model_dump(),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions.

    Route handlers raise HTTPException with a dict detail; use it directly as
    the error field. Headers (WWW-Authenticate, Retry-After) are preserved.
    """
    headers = getattr(exc, "headers", None)
    if isinstance(exc.detail, dict):
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.detail},
            headers=headers,
        )
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=ErrorDetail(
                code=f"http_{exc.status_code}",
                message=str(exc.detail),
            )
        ).model_dump(),
        headers=headers,
    )


@app.exception_handler(StoreUnavailable)
async def store_unavailable_handler(request: Request, exc: StoreUnavailable) -> JSONResponse:
    """A backing store is down. 503 with Retry-After; the client may retry."""
    logger.warning("Store unavailable on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=503,
        content=ErrorResponse(
            error=ErrorDetail(
                code="unavailable",
                message="Service temporarily unavailable.",
            )
        ).model_dump(),
        headers={"Retry-After": "5"},
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception is written to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            error=ErrorDetail(
                code="internal_error",
                message="An unexpected error occurred.",
            )
        ).model_dump(),
    )


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py so it is always reachable regardless of router
# registration state. No rate limit -- load balancer checks must not be
# throttled.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return liveness plus the state of the signing key and user store."""
    components = {"app": "ok"}
    components["signing_key"] = "ok" if request.app.state.keys.current() is not None else "missing"
    try:
        request.app.state.user_store.has_users()
        components["database"] = "ok"
    except StoreUnavailable:
        components["database"] = "error"
    status = "healthy" if all(v == "ok" for v in components.values()) else "degraded"
    return HealthResponse(status=status, version=VERSION, components=components)

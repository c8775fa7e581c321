"""
api/main.py -- FastAPI application entry point for IDCore.

Composition root: the only place (with main.py) that reads Settings and
constructs collaborators. Services receive everything through their
constructors and are attached to app.state for the routes.

Run with:      uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. CORSMiddleware     -- adds CORS headers for allowed browser origins
  2. SlowAPIMiddleware  -- enforces per-route rate limits from api.limiter
  3. SessionMiddleware  -- holds the OAuth state between redirect and callback

Lifespan handles startup (store, cache, sender, services, admin seed, purge
task) and shutdown (cancel purge task, drain background work, close
connections) symmetrically.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from starlette.concurrency import run_in_threadpool
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.sessions import SessionMiddleware

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from api.routes.v1.users import router as users_router
from auth.credentials import CredentialService
from auth.errors import AuthError, ErrorKind
from auth.linking import FederatedIdentityLinker
from auth.oauth import build_oauth
from auth.recovery import PasswordResetService
from auth.sessions import SessionTokenService
from auth.store import AuthStore
from auth.verification import EmailVerificationService
from cache.store import Cache, CacheError, build_cache
from core.background import BackgroundDispatcher
from core.config import Settings, get_settings
from core.validation import PasswordPolicy
from notify.email import Sender, build_sender

API_VERSION = "0.1.0"

_settings = get_settings()

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=_settings.log_level.upper(),
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("idcore.api")

# ---------------------------------------------------------------------------
# Error kind -> HTTP status
#
# The one place core failures become transport codes. Handlers look up
# exc.kind; they never branch on exception subclasses.
# ---------------------------------------------------------------------------

STATUS_BY_KIND: dict[ErrorKind, int] = {
    ErrorKind.VALIDATION: 422,
    ErrorKind.BAD_REQUEST: 400,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.UNAUTHORIZED: 401,
    ErrorKind.FORBIDDEN: 403,
    ErrorKind.CONFLICT: 409,
    ErrorKind.RATE_LIMITED: 429,
    ErrorKind.INTERNAL: 500,
}

# ---------------------------------------------------------------------------
# Service wiring
# ---------------------------------------------------------------------------


def init_state(
    app: FastAPI,
    settings: Settings,
    *,
    store: AuthStore,
    cache: Cache,
    sender: Sender,
    dispatcher: BackgroundDispatcher,
) -> None:
    """Build every service from its collaborators and attach it to app.state.

    Tests call this directly with in-memory collaborators.
    """
    credentials = CredentialService(
        store,
        cache,
        bcrypt_rounds=settings.bcrypt_rounds,
        require_email_verification=settings.require_email_verification,
    )
    app.state.settings = settings
    app.state.store = store
    app.state.cache = cache
    app.state.sender = sender
    app.state.dispatcher = dispatcher
    app.state.credentials = credentials
    app.state.sessions = SessionTokenService(
        store,
        credentials,
        secret=settings.secret_key,
        access_expire_seconds=settings.access_token_expire_seconds,
        refresh_expire_days=settings.refresh_token_expire_days,
        issuer=settings.jwt_issuer,
        audience=settings.jwt_audience,
    )
    app.state.recovery = PasswordResetService(
        store,
        cache,
        sender,
        dispatcher,
        frontend_url=settings.frontend_url,
        bcrypt_rounds=settings.bcrypt_rounds,
    )
    app.state.verification = EmailVerificationService(
        store,
        cache,
        sender,
        dispatcher,
        frontend_url=settings.frontend_url,
    )
    app.state.linker = FederatedIdentityLinker(store)
    app.state.oauth = build_oauth(settings)
    app.state.password_policy = PasswordPolicy(min_length=settings.password_min_length)


# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------

_PURGE_INTERVAL_SECONDS = 60 * 60


async def _purge_loop(app: FastAPI) -> None:
    """Reap expired tokens and cache entries every hour.

    Runs as a background asyncio task started in lifespan startup. The purge
    itself is synchronous I/O, so it runs in the threadpool. A failed pass is
    logged and retried on the next tick. CancelledError from task.cancel()
    during shutdown propagates out of asyncio.sleep and unwinds cleanly.
    """
    while True:
        await asyncio.sleep(_PURGE_INTERVAL_SECONDS)
        try:
            await run_in_threadpool(app.state.sessions.purge_expired)
            await run_in_threadpool(app.state.cache.purge_expired)
        except (AuthError, CacheError):
            logger.exception("Expired token purge failed")


# ---------------------------------------------------------------------------
# Lifespan -- modern startup / shutdown pattern (replaces @app.on_event)
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Startup order matters:
      1. Store, cache and sender -- leaf collaborators.
      2. Services -- built from the collaborators by init_state().
      3. Admin seed -- needs CredentialService.
      4. Purge task last -- references app.state.sessions.
    """
    logger.info("IDCore API starting up")
    settings = get_settings()
    store = AuthStore(settings.database_url)
    cache = build_cache(settings)
    dispatcher = BackgroundDispatcher()
    init_state(app, settings, store=store, cache=cache, sender=build_sender(settings), dispatcher=dispatcher)
    app.state.credentials.seed_admin(settings.admin_email, settings.admin_password, settings.admin_name)
    logger.info("Services initialized (cache=%s, email=%s)", settings.cache_driver, settings.email_driver)
    app.state.purge_task = asyncio.create_task(_purge_loop(app))

    yield

    app.state.purge_task.cancel()
    dispatcher.shutdown()
    cache.close()
    store.close()
    logger.info("IDCore API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="IDCore API",
    description="Identity and session lifecycle: registration, login, refresh rotation, "
    "password reset, email verification and Google sign-in.",
    version=API_VERSION,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# Register in the order you want the request to encounter them:
# CORS -> SlowAPI -> Session.
# ---------------------------------------------------------------------------

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origin_list,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# SessionMiddleware is required by authlib to store the OAuth state value
# between the authorization redirect and the callback (CSRF protection for
# the authorization code flow).
app.add_middleware(SessionMiddleware, secret_key=_settings.secret_key)

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
app.include_router(users_router, prefix="/api/v1", tags=["Users"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Render a core failure. The status comes from STATUS_BY_KIND."""
    status_code = STATUS_BY_KIND[exc.kind]
    response = JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=ErrorDetail(code=exc.code, message=exc.message)).model_dump(),
    )
    if status_code == 401:
        response.headers["WWW-Authenticate"] = "Bearer"
    return response


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
    """Return 422 with structured error when request body or query params fail validation."""
    return JSONResponse(
        status_code=422,
        content=ErrorResponse(
            error=ErrorDetail(
                code="validation_error",
                message="Request validation failed.",
                detail=str(exc.errors()),
            )
        ).model_dump(),
    )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Return a structured error for FastAPI/Starlette HTTP exceptions (404 routes, 405, ...)."""
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=ErrorDetail(
                code=f"http_{exc.status_code}",
                message=str(exc.detail),
            )
        ).model_dump(),
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception is logged, never returned: the client receives only a
    generic message.
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
# Defined directly in main.py (not in a router) so it is always reachable
# regardless of router registration state. No rate limit applied.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", response_model=HealthResponse, tags=["Health"])
def health(request: Request, response: Response) -> HealthResponse:
    """Return liveness plus database and cache reachability. 503 when either is down."""
    db_ok = request.app.state.store.ping()
    cache_ok = request.app.state.cache.ping()
    if not (db_ok and cache_ok):
        response.status_code = 503
    return HealthResponse(
        status="ok" if db_ok and cache_ok else "degraded",
        version=API_VERSION,
        database="ok" if db_ok else "unavailable",
        cache="ok" if cache_ok else "unavailable",
    )

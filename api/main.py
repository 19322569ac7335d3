"""
api/main.py -- FastAPI application factory for the crmctl controller.

Run with:      python main.py server --listen :5525
               uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. CORSMiddleware      -- only when app.cors is enabled
  2. log_requests        -- one log line per request with latency
  3. SlowAPIMiddleware   -- enforces per-route rate limits from api.limiter
  4. MiddlewareChain     -- auth -> access -> audit, for /api/ paths only

Lifespan builds the Manager and its collaborators from Settings on startup
and tears them down on shutdown. An unreachable store aborts startup.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy.exc import SQLAlchemyError
from starlette.concurrency import run_in_threadpool
from starlette.exceptions import HTTPException

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.accounts import router as accounts_router
from api.routes.auth import router as auth_router
from api.routes.events import router as events_router
from api.routes.roles import router as roles_router
from api.routes.servicekeys import router as servicekeys_router
from auth.authenticator import Authenticator, build_authenticator
from core.config import Settings, get_settings
from core.errors import ControllerError
from manager.manager import Manager
from middleware.access import AccessRequired
from middleware.audit import Auditor
from middleware.auth import ACCESS_TOKEN_HEADER, SERVICE_KEY_HEADER, AuthRequired
from middleware.chain import MiddlewareChain, error_response
from store import kv
from store.sessions import SessionStore
from store.sql import SQLStore

API_VERSION = "1.0.0"

# Browser clients send the first four; the rest carry crmctl credentials.
CORS_ALLOW_HEADERS = ["Origin", "X-Requested-With", "Content-Type", "Accept", ACCESS_TOKEN_HEADER, SERVICE_KEY_HEADER]

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("crmctl.api")

# ---------------------------------------------------------------------------
# Background session GC task
# ---------------------------------------------------------------------------


async def _gc_loop(app: FastAPI, interval: int) -> None:
    """Drop expired sessions (and SQL-stored tokens) every `interval` seconds.

    A failed pass is logged and retried on the next tick; only CancelledError
    from task.cancel() during shutdown ends the loop.
    """
    while True:
        await asyncio.sleep(interval)
        try:
            removed = await run_in_threadpool(app.state.manager.gc_sessions)
        except Exception:
            logger.exception("Session gc failed; retrying in %ds", interval)
            continue
        if removed:
            logger.info("Session gc removed %d expired entries", removed)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


def build_manager(settings: Settings, authenticator: Authenticator | None = None) -> Manager:
    """Compose the Manager from configuration.

    The relational store is always present (MySQL or local SQLite). Redis
    backs auth tokens and sessions only when their sections are configured.
    Connection errors propagate: the server must not start half-wired.
    """
    store = SQLStore(settings.database_url, timeout=settings.mysql.timeout)

    tokens = None
    if settings.redis.configured:
        r = settings.redis
        tokens = kv.RedisTokenStore(kv.connect(r.host, r.port, r.password, r.timeout))
        logger.info("Auth tokens stored in redis at %s:%s", r.host, r.port)
    else:
        logger.warning("[redis] not configured; auth tokens kept in the relational store")

    sessions = None
    if settings.session.configured:
        s = settings.session
        client = kv.connect(s.host, s.port, s.password, s.timeout, max_connections=s.maxpoolsize)
        sessions = SessionStore(client, cookie_name=s.cookiename, lifetime=s.gclifetime)
        logger.info("Sessions stored in redis at %s:%s", s.host, s.port)
    else:
        logger.warning("[session] not configured; cookie sessions disabled")

    return Manager(
        store=store,
        authenticator=authenticator if authenticator is not None else build_authenticator(settings.auth),
        secret_key=settings.app.secret_key,
        sessions=sessions,
        tokens=tokens,
        token_lifetime=settings.app.token_lifetime,
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build the Manager on startup; cancel GC and close stores on shutdown."""
    settings: Settings = app.state.settings
    logger.info("crmctl API starting up")
    manager = build_manager(settings, app.state.authenticator)
    if manager.ensure_admin(settings.auth.admin_password):
        logger.info("Created initial admin account")
    app.state.manager = manager
    app.state.gc_task = asyncio.create_task(_gc_loop(app, settings.session.gclifetime))

    yield

    app.state.gc_task.cancel()
    manager.close()
    logger.info("crmctl API shutdown complete")


# ---------------------------------------------------------------------------
# Request logging middleware
# ---------------------------------------------------------------------------


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
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


async def controller_error_handler(request: Request, exc: ControllerError) -> JSONResponse:
    """Render domain errors with their own status and the class message only."""
    if exc.status_code >= 500:
        logger.error("%s on %s %s", exc.code, request.method, request.url.path, exc_info=exc.__cause__)
    return error_response(exc)


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


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=ErrorDetail(
                code=f"http_{exc.status_code}",
                message=str(exc.detail),
            )
        ).model_dump(),
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception goes to the log only, never to the response body.
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
# Outside /api/ so load balancers reach it without credentials. No rate limit.
# ---------------------------------------------------------------------------


def health(request: Request) -> HealthResponse:
    """Return API liveness, current version and relational store reachability."""
    try:
        request.app.state.manager.store.ping()
        database = "ok"
    except SQLAlchemyError:
        logger.exception("Health check: relational store unreachable")
        database = "error"
    return HealthResponse(version=API_VERSION, components={"app": "ok", "database": database})


# ---------------------------------------------------------------------------
# App factory
# ---------------------------------------------------------------------------


def build_chain(settings: Settings) -> MiddlewareChain:
    return MiddlewareChain(
        [
            AuthRequired(settings.app.auth_whitelist_cidrs),
            AccessRequired(),
            Auditor(settings.app.audit_excludes),
        ]
    )


def create_app(settings: Settings | None = None) -> FastAPI:
    """Build the ASGI app.

    Invalid whitelist CIDRs, audit regexes or an unknown LDAP default access
    level raise ValueError here, before the server binds.
    """
    settings = settings or get_settings()
    if settings.app.debug:
        logging.getLogger("crmctl").setLevel(logging.DEBUG)

    app = FastAPI(
        title="crmctl API",
        description="CRM controller: accounts, access levels, service keys and audit events.",
        version=API_VERSION,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.authenticator = build_authenticator(settings.auth)
    # SlowAPI looks for app.state.limiter by convention.
    app.state.limiter = limiter

    # Last registered runs outermost.
    app.state.chain = build_chain(settings)
    app.middleware("http")(app.state.chain)
    app.add_middleware(SlowAPIMiddleware)
    app.middleware("http")(log_requests)
    if settings.app.cors:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
            allow_headers=CORS_ALLOW_HEADERS,
            max_age=3600,
        )

    app.include_router(auth_router, tags=["Auth"])
    app.include_router(accounts_router, prefix="/api", tags=["Accounts"])
    app.include_router(roles_router, prefix="/api", tags=["Roles"])
    app.include_router(events_router, prefix="/api", tags=["Events"])
    app.include_router(servicekeys_router, prefix="/api", tags=["Service keys"])
    app.add_api_route("/health", health, methods=["GET"], response_model=HealthResponse, tags=["Health"])

    app.add_exception_handler(ControllerError, controller_error_handler)
    app.add_exception_handler(RateLimitExceeded, rate_limit_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)
    return app

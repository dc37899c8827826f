"""
api/main.py -- FastAPI application entry point for SessionGate.

Run with:      uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. log_requests          -- method, path, status, latency for every request
  2. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  3. CORSMiddleware        -- answers preflights, adds CORS headers for allowed origins
  4. session_gate          -- RequestGate decision: allow / redirect / 503
  5. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Lifespan reads Settings once and wires the auth components together
(configure_auth). Tests replace the lifespan and call configure_auth with
in-memory stores and a recording notifier.
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import timedelta

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse, RedirectResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy.exc import SQLAlchemyError

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from api.routes.v1.dashboard import router as dashboard_router
from auth.accounts import AccountService
from auth.gate import GateAction, RequestGate
from auth.notifier import LogNotifier, Notifier, ResendNotifier
from auth.routing import RouteClassifier
from auth.sessions import SessionManager
from auth.store import UserStore
from auth.tokens import SESSION_COOKIE, TokenSigner, clear_session_cookie, set_session_cookie
from auth.verification import VerificationCodeIssuer
from core.config import Settings, get_settings

VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("sessiongate.api")

_settings = get_settings()


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------


def build_notifier(settings: Settings) -> Notifier:
    """Resend in production; log-only when no API key is configured."""
    if settings.resend_api_key:
        return ResendNotifier(settings.resend_api_key, settings.mail_from, timeout=settings.mail_timeout_seconds)
    logger.warning("RESEND_API_KEY not set -- verification emails will be written to the log")
    return LogNotifier()


def configure_auth(app: FastAPI, settings: Settings, user_store: UserStore, notifier: Notifier) -> None:
    """Build the auth components from settings and attach them to app.state.

    The secret key and every duration are passed in explicitly here; no
    component reads configuration on its own.
    """
    signer = TokenSigner(settings.secret_key)
    sessions = SessionManager(
        user_store,
        signer,
        session_duration=timedelta(seconds=settings.session_expire_seconds),
        refresh_duration=timedelta(seconds=settings.refresh_expire_seconds),
        check_revocation=settings.session_check_revocation,
    )
    issuer = VerificationCodeIssuer(
        user_store,
        notifier,
        code_ttl=timedelta(seconds=settings.verification_code_ttl_seconds),
        resend_cooldown=timedelta(seconds=settings.verification_resend_cooldown_seconds),
    )
    app.state.settings = settings
    app.state.user_store = user_store
    app.state.sessions = sessions
    app.state.accounts = AccountService(user_store, issuer, sessions)
    app.state.gate = RequestGate(
        RouteClassifier.from_lists(settings.public_prefixes, settings.private_prefixes),
        sessions,
        login_redirect_url=settings.login_redirect_url,
        timeout_seconds=settings.gate_timeout_seconds,
    )


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Open the auth store and wire components on startup; close it on shutdown."""
    settings = get_settings()
    logger.info("SessionGate API starting up")
    if settings.database_url:
        user_store = UserStore(db_url=settings.database_url, storage_timeout=settings.storage_timeout_seconds)
    else:
        user_store = UserStore(storage_timeout=settings.storage_timeout_seconds)
    configure_auth(app, settings, user_store, build_notifier(settings))
    logger.info(
        "Auth initialized (private=%s, session=%ds, refresh=%ds)",
        settings.private_prefixes,
        settings.session_expire_seconds,
        settings.refresh_expire_seconds,
    )

    yield

    app.state.user_store.close()
    logger.info("SessionGate API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="SessionGate API",
    description="Registration, email verification, signed sessions and route gating.",
    version=VERSION,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# add_middleware() and @app.middleware wrap the app in reverse registration
# order: the last one registered sees the request first.
# ---------------------------------------------------------------------------

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


# ---------------------------------------------------------------------------
# Session gate middleware
#
# Every request is classified. Private paths need a live session: the gate
# validates the cookie (refreshing it when only the access window lapsed) and
# either lets the request through -- recording the user on request.state for
# get_current_user -- or short-circuits with a redirect or a 503.
#
# Registered before CORS and TrustedHost so both wrap it: preflights are
# answered by CORSMiddleware and bad Host headers are rejected before any
# session lookup.
# ---------------------------------------------------------------------------


@app.middleware("http")
async def session_gate(request: Request, call_next):
    # Preflights carry no cookies; they must never be redirected to login.
    if request.method == "OPTIONS":
        return await call_next(request)

    gate: RequestGate = request.app.state.gate
    decision = await gate.check(
        request.url.path,
        request.cookies.get(SESSION_COOKIE),
        query=request.url.query,
    )

    if decision.action is GateAction.REDIRECT:
        resp = RedirectResponse(decision.redirect_url, status_code=302)
        if decision.clear_cookie:
            clear_session_cookie(resp)
        return resp

    if decision.action is GateAction.UNAVAILABLE:
        return JSONResponse(
            status_code=503,
            content=ErrorResponse(
                error=ErrorDetail(
                    code="session_unavailable",
                    message="Session service is temporarily unavailable. Please retry.",
                )
            ).model_dump(),
            headers={"Retry-After": "5"},
        )

    if decision.user_id:
        request.state.user_id = decision.user_id
        request.state.session_id = decision.session_id

    response = await call_next(request)

    if decision.refreshed is not None:
        set_session_cookie(
            response,
            decision.refreshed.token,
            decision.refreshed.refresh_expires_at,
            secure=request.app.state.settings.secure_cookies,
        )
    return response


app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE"],
    allow_headers=["Content-Type"],
    max_age=3600,
)

app.add_middleware(TrustedHostMiddleware, allowed_hosts=_settings.allowed_hosts)


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
app.include_router(dashboard_router, prefix="/api/v1", tags=["Dashboard"])


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


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions.

    Route handlers raise HTTPException with a dict detail; it becomes the
    error field as-is. Headers (e.g. Retry-After) are carried through.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.detail},
            headers=exc.headers,
        )
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=ErrorDetail(
                code=f"http_{exc.status_code}",
                message=str(exc.detail),
            )
        ).model_dump(),
        headers=exc.headers,
    )


@app.exception_handler(Exception)
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
# Defined directly in main.py so it is always reachable regardless of router
# registration. Not rate limited; not gated (not under a private prefix).
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return API liveness, version and a database round-trip check."""
    database = "ok"
    try:
        request.app.state.user_store.ping()
    except SQLAlchemyError:
        logger.warning("Health check: database unreachable")
        database = "error"
    return HealthResponse(
        status="healthy" if database == "ok" else "degraded",
        version=VERSION,
        components={"app": "ok", "database": database},
    )

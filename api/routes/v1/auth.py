"""
api/routes/v1/auth.py -- Authentication and session REST endpoints.

Routes:
  POST   /api/v1/auth/register          -- create account, email verification code
  POST   /api/v1/auth/login             -- password login; sets session cookie
  POST   /api/v1/auth/verify            -- submit verification code; sets session cookie
  POST   /api/v1/auth/verify/resend     -- new code (5-minute cooldown)
  POST   /api/v1/auth/logout            -- revoke session, clear cookie
  GET    /api/v1/auth/session           -- {"status": success|expired|invalid}
  PUT    /api/v1/auth/session/refresh   -- refresh an expired access window
  GET    /api/v1/auth/me                -- current user (requires auth)
  GET    /api/v1/auth/sessions          -- current user's live sessions (requires auth)
  DELETE /api/v1/auth/sessions/{id}     -- revoke one of them (requires auth, ownership checked)

Error mapping:
  AccountService / SessionManager return Outcomes. _raise_for() turns a
  failed Outcome into an HTTPException using _STATUS_BY_KIND, the only place
  that decides status codes. THROTTLED carries a Retry-After header.

Security:
  Login, register, verify and resend are rate-limited per IP.
  Login and verify set Cache-Control: no-store.
  redirect_to is always a server-local path (_safe_next).
"""

from __future__ import annotations

from typing import NoReturn, Optional

from fastapi import APIRouter, Depends, HTTPException, Request, Response
from fastapi.responses import JSONResponse

from api.limiter import AUTH_RATE_LIMIT, limiter
from api.models import (
    LoginRequest,
    LoginResponse,
    MeResponse,
    MessageResponse,
    RegisterRequest,
    RegisterResponse,
    ResendRequest,
    SessionInfo,
    SessionStatusResponse,
    VerifyRequest,
)
from auth.accounts import AccountService
from auth.dependencies import current_session_id, get_current_user
from auth.errors import ErrorKind, Outcome, ThrottledError
from auth.models import IssuedSession, Session, User
from auth.sessions import SessionManager
from auth.tokens import SESSION_COOKIE, clear_session_cookie, set_session_cookie

# Auth policy:
# - register, login, verify, verify/resend, logout, session, session/refresh: public
# - me, sessions, DELETE sessions/{id}: require auth (get_current_user); also
#   listed in PRIVATE_PREFIXES so the gate covers them
router = APIRouter()

_STATUS_BY_KIND: dict[ErrorKind, int] = {
    ErrorKind.VALIDATION: 400,
    ErrorKind.MISMATCH: 400,
    ErrorKind.EXPIRED: 400,
    ErrorKind.BAD_CREDENTIALS: 401,
    ErrorKind.INVALID_SIGNATURE: 401,
    ErrorKind.UNVERIFIED: 403,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.CONFLICT: 409,
    ErrorKind.ALREADY_VERIFIED: 409,
    ErrorKind.THROTTLED: 429,
    ErrorKind.SIGNING: 500,
    ErrorKind.HASHING: 500,
    ErrorKind.DELIVERY: 502,
    ErrorKind.STORAGE: 503,
}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _raise_for(outcome: Outcome) -> NoReturn:
    """Raise the HTTPException matching a failed Outcome."""
    error = outcome.error
    detail: dict = {"code": error.kind.value, "message": error.message}
    if isinstance(outcome.value, str):
        detail["user_id"] = outcome.value
    headers = None
    if isinstance(error, ThrottledError):
        headers = {"Retry-After": str(error.retry_after)}
        detail["detail"] = f"Retry after {error.retry_after} seconds."
    raise HTTPException(status_code=_STATUS_BY_KIND.get(error.kind, 400), detail=detail, headers=headers)


def _safe_next(next_url: Optional[str], default: str) -> str:
    """Validate a post-login redirect target. Only accept relative paths.

    Rejects absolute URLs and protocol-relative URLs ("//evil.example") so a
    crafted redirect_uri cannot send the user off-site after login.
    """
    if next_url and next_url.startswith("/") and not next_url.startswith("//"):
        return next_url
    return default


def _signed_in_response(request: Request, issued: IssuedSession, redirect_uri: Optional[str]) -> JSONResponse:
    settings = request.app.state.settings
    resp = JSONResponse(
        status_code=200,
        content=LoginResponse(
            user_id=issued.user_id,
            expires_at=issued.expires_at.isoformat(),
            redirect_to=_safe_next(redirect_uri, settings.post_login_redirect_url),
        ).model_dump(),
    )
    set_session_cookie(resp, issued.token, issued.refresh_expires_at, secure=settings.secure_cookies)
    resp.headers["Cache-Control"] = "no-store"
    return resp


def session_to_info(session: Session, current_id: Optional[str]) -> SessionInfo:
    return SessionInfo(
        id=session.id,
        created_at=session.created_at or "",
        expires_at=session.expires_at,
        refresh_expires_at=session.refresh_expires_at,
        last_active=session.last_active or "",
        current=session.id == current_id,
    )


def user_to_me(user: User) -> MeResponse:
    return MeResponse(
        user_id=user.id,
        name=user.name,
        email=user.email,
        email_verified_at=user.email_verified_at,
        created_at=user.created_at or "",
    )


# ---------------------------------------------------------------------------
# Registration and verification
# ---------------------------------------------------------------------------


@limiter.limit(AUTH_RATE_LIMIT)
@router.post("/auth/register", response_model=RegisterResponse, status_code=201)
def register(request: Request, body: RegisterRequest) -> JSONResponse:
    """Create an unverified account and email a 5-digit verification code.

    If the account is stored but the email cannot be sent, the response is
    still 201 with status "delivery_error" -- the account exists and the
    user can request a resend from the verification page.
    """
    accounts: AccountService = request.app.state.accounts
    outcome = accounts.register(body.name, body.email, body.password, body.confirm_password)
    if outcome.ok:
        content = RegisterResponse(user_id=outcome.value, message="Verification email sent")
    elif outcome.kind is ErrorKind.DELIVERY:
        content = RegisterResponse(status="delivery_error", user_id=outcome.value, message=outcome.message)
    else:
        _raise_for(outcome)
    return JSONResponse(status_code=201, content=content.model_dump())


@limiter.limit(AUTH_RATE_LIMIT)
@router.post("/auth/verify", response_model=LoginResponse)
def verify(request: Request, body: VerifyRequest) -> JSONResponse:
    """Check the verification code; on success mark the email verified and sign in."""
    accounts: AccountService = request.app.state.accounts
    outcome = accounts.verify_email(body.user_id, body.code)
    if not outcome.ok:
        _raise_for(outcome)
    return _signed_in_response(request, outcome.value, body.redirect_uri)


@limiter.limit(AUTH_RATE_LIMIT)
@router.post("/auth/verify/resend", response_model=MessageResponse)
def resend_verification(request: Request, body: ResendRequest) -> MessageResponse:
    """Send a fresh code. Refused with 429 + Retry-After within the cooldown."""
    accounts: AccountService = request.app.state.accounts
    outcome = accounts.resend_verification(body.user_id)
    if not outcome.ok:
        _raise_for(outcome)
    return MessageResponse(message="Verification email sent")


# ---------------------------------------------------------------------------
# Login / logout
# ---------------------------------------------------------------------------


@limiter.limit(AUTH_RATE_LIMIT)
@router.post("/auth/login", response_model=LoginResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password; set the session cookie.

    Wrong email and wrong password share one generic error. An unverified
    account gets 403 "unverified" with its user_id so the client can open
    the verification step.
    """
    accounts: AccountService = request.app.state.accounts
    outcome = accounts.authenticate(body.email, body.password)
    if not outcome.ok:
        _raise_for(outcome)
    return _signed_in_response(request, outcome.value, body.redirect_uri)


@router.post("/auth/logout", response_model=MessageResponse)
def logout(request: Request) -> JSONResponse:
    """Revoke the session behind the cookie and clear the cookie.

    The cookie is cleared even when revocation fails, but a storage failure
    is still reported (503) so the client knows the server-side session may
    still be live.
    """
    accounts: AccountService = request.app.state.accounts
    outcome = accounts.logout(request.cookies.get(SESSION_COOKIE))
    if outcome.ok:
        resp = JSONResponse(content=MessageResponse(message="Logged out.").model_dump())
    else:
        resp = JSONResponse(
            status_code=_STATUS_BY_KIND[outcome.kind],
            content={"error": {"code": outcome.kind.value, "message": outcome.message}},
        )
    clear_session_cookie(resp)
    return resp


# ---------------------------------------------------------------------------
# Session status / refresh
# ---------------------------------------------------------------------------


def _status_from(outcome: Outcome) -> SessionStatusResponse:
    if outcome.ok:
        value = outcome.value
        return SessionStatusResponse(status="success", user_id=value.user_id, expires_at=value.expires_at.isoformat())
    if outcome.kind is ErrorKind.STORAGE:
        _raise_for(outcome)
    if outcome.kind is ErrorKind.EXPIRED:
        return SessionStatusResponse(status="expired")
    return SessionStatusResponse(status="invalid")


@router.get("/auth/session", response_model=SessionStatusResponse)
def session_status(request: Request) -> SessionStatusResponse:
    """Report whether the session cookie is valid, expired (refreshable) or invalid."""
    token = request.cookies.get(SESSION_COOKIE)
    if not token:
        return SessionStatusResponse(status="invalid")
    sessions: SessionManager = request.app.state.sessions
    return _status_from(sessions.validate(token))


@router.put("/auth/session/refresh", response_model=SessionStatusResponse)
def refresh_session(request: Request) -> JSONResponse:
    """Refresh the session behind the cookie and re-set the cookie on success."""
    token = request.cookies.get(SESSION_COOKIE)
    if not token:
        return JSONResponse(content=SessionStatusResponse(status="invalid").model_dump())
    sessions: SessionManager = request.app.state.sessions
    outcome = sessions.refresh_session(token)
    resp = JSONResponse(content=_status_from(outcome).model_dump())
    if outcome.ok:
        set_session_cookie(
            resp,
            outcome.value.token,
            outcome.value.refresh_expires_at,
            secure=request.app.state.settings.secure_cookies,
        )
    else:
        clear_session_cookie(resp)
    return resp


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/me", response_model=MeResponse)
def me(current_user: User = Depends(get_current_user)) -> MeResponse:
    """Return identity information for the currently authenticated user."""
    return user_to_me(current_user)


@router.get("/auth/sessions", response_model=list[SessionInfo])
def list_sessions(request: Request, current_user: User = Depends(get_current_user)) -> list[SessionInfo]:
    """List the current user's live sessions, newest first. The current one is flagged."""
    sessions: SessionManager = request.app.state.sessions
    outcome = sessions.list_sessions(current_user.id)
    if not outcome.ok:
        _raise_for(outcome)
    current_id = current_session_id(request)
    return [session_to_info(s, current_id) for s in outcome.value]


@router.delete("/auth/sessions/{session_id}", status_code=204)
def revoke_session(
    request: Request,
    session_id: str,
    current_user: User = Depends(get_current_user),
) -> Response:
    """Revoke one of the current user's sessions. Ownership is verified in the store query."""
    sessions: SessionManager = request.app.state.sessions
    outcome = sessions.revoke_user_session(session_id, current_user.id)
    if not outcome.ok:
        _raise_for(outcome)
    if not outcome.value:
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": "Session not found."},
        )
    return Response(status_code=204)

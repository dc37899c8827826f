"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

The session gate middleware already validated (and possibly refreshed) the
session for private paths and left the result on request.state. For paths the
gate does not cover, the "session" cookie is validated here, once, and the
result is stored on request.state the same way.

try_get_current_user() is the soft variant: None when the request carries no
valid session, StorageError when the store cannot answer.
get_current_user() wraps it and raises HTTP 401 (or 503 on a store failure).

Layer rule: may import from fastapi (this module is part of FastAPI's
dependency injection system); no imports from api/ or core/.
"""

from __future__ import annotations

import logging

from fastapi import HTTPException, Request
from sqlalchemy.exc import SQLAlchemyError

from auth.errors import ErrorKind, StorageError
from auth.models import User
from auth.sessions import SessionManager
from auth.store import UserStore
from auth.tokens import SESSION_COOKIE

logger = logging.getLogger("sessiongate.auth.dependencies")


def current_session_id(request: Request) -> str | None:
    """Return the id of the session authenticating this request, if any.

    Reads what the gate or try_get_current_user() recorded; never validates
    the cookie a second time.
    """
    return getattr(request.state, "session_id", None)


def try_get_current_user(request: Request) -> User | None:
    """Return the signed-in User, or None if the request has no valid session.

    Raises StorageError when the session or user store cannot be read, so a
    database outage is not reported as "signed out".
    """
    user_store: UserStore = request.app.state.user_store

    user_id: str | None = getattr(request.state, "user_id", None)
    if not user_id:
        token = request.cookies.get(SESSION_COOKIE)
        if not token:
            return None
        sessions: SessionManager = request.app.state.sessions
        outcome = sessions.validate(token)
        if not outcome.ok:
            if outcome.kind is ErrorKind.STORAGE:
                raise outcome.error
            return None
        user_id = outcome.value.user_id
        request.state.user_id = user_id
        request.state.session_id = outcome.value.session_id

    try:
        user = user_store.get_by_id(user_id)
    except SQLAlchemyError as exc:
        logger.warning("User lookup failed for %s: %s", user_id, exc.__class__.__name__)
        raise StorageError("Unable to load user") from exc
    if user is None or not user.is_verified:
        return None
    return user


def get_current_user(request: Request) -> User:
    """Require authentication. Raises HTTP 401 if the request is not authenticated.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(user: User = Depends(get_current_user)): ...
    """
    try:
        user = try_get_current_user(request)
    except StorageError as exc:
        raise HTTPException(
            status_code=503,
            detail={"code": exc.kind.value, "message": exc.message},
            headers={"Retry-After": "5"},
        ) from exc
    if user is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        )
    return user

"""
auth/gate.py -- Request gate: allow, redirect to login, or report unavailable.

RequestGate.check() is the decision core of the session middleware in
api/main.py. It knows nothing about Starlette objects: it takes the path, the
raw "session" cookie value and the query string, and returns a GateDecision.
The middleware turns the decision into a response.

Decision table for a private path:

    no cookie                          -> REDIRECT
    bad signature / revoked / unknown  -> REDIRECT (+ clear stale cookie)
    valid                              -> ALLOW
    access window expired
        refresh succeeds               -> ALLOW (+ new cookie)
        refresh fails                  -> REDIRECT (+ clear stale cookie)
    storage failure or timeout         -> UNAVAILABLE (503)

Non-private paths are always ALLOW and never touch the session store.

SessionManager calls are blocking (SQLAlchemy), so they run in the default
executor via asyncio.to_thread and are bounded by asyncio.wait_for. The wait
is abandoned at the deadline (the worker thread finishes on its own) and the
timeout is reported as UNAVAILABLE -- it must not look like "not
authenticated".

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from urllib.parse import urlencode

from auth.errors import ErrorKind, Outcome
from auth.models import IssuedSession
from auth.routing import RouteClassifier
from auth.sessions import SessionManager

logger = logging.getLogger("sessiongate.auth.gate")

REDIRECT_PARAM = "redirect_uri"


class GateAction(str, Enum):
    ALLOW = "allow"
    REDIRECT = "redirect"
    UNAVAILABLE = "unavailable"


@dataclass(frozen=True)
class GateDecision:
    action: GateAction
    redirect_url: str | None = None
    user_id: str | None = None
    session_id: str | None = None
    refreshed: IssuedSession | None = None
    clear_cookie: bool = False

    @property
    def allowed(self) -> bool:
        return self.action is GateAction.ALLOW


_ALLOW = GateDecision(GateAction.ALLOW)


def build_login_redirect(login_url: str, path: str, query: str = "") -> str:
    """Return login_url with the original destination in ?redirect_uri=.

    Only the path and query of the request are carried, never scheme or host,
    so the parameter cannot point off-site.
    """
    destination = f"{path}?{query}" if query else path
    separator = "&" if "?" in login_url else "?"
    return login_url + separator + urlencode({REDIRECT_PARAM: destination}, safe="/")


class RequestGate:
    def __init__(
        self,
        classifier: RouteClassifier,
        sessions: SessionManager,
        login_redirect_url: str,
        timeout_seconds: float = 5.0,
    ) -> None:
        self.classifier = classifier
        self.sessions = sessions
        self.login_redirect_url = login_redirect_url
        self.timeout_seconds = timeout_seconds

    async def check(self, path: str, token: str | None, query: str = "") -> GateDecision:
        if not self.classifier.is_private(path):
            return _ALLOW

        if not token:
            return self._redirect(path, query)

        try:
            outcome = await self._call(self.sessions.validate, token)
            if outcome.ok:
                payload = outcome.value
                return GateDecision(GateAction.ALLOW, user_id=payload.user_id, session_id=payload.session_id)

            if outcome.kind is ErrorKind.EXPIRED:
                outcome = await self._call(self.sessions.refresh_session, token)
                if outcome.ok:
                    issued: IssuedSession = outcome.value
                    return GateDecision(
                        GateAction.ALLOW,
                        user_id=issued.user_id,
                        session_id=issued.session_id,
                        refreshed=issued,
                    )
        except asyncio.TimeoutError:
            logger.warning("Session validation for %s timed out after %.1fs", path, self.timeout_seconds)
            return GateDecision(GateAction.UNAVAILABLE)

        if outcome.kind is ErrorKind.STORAGE:
            logger.warning("Session store unavailable while gating %s", path)
            return GateDecision(GateAction.UNAVAILABLE)
        return self._redirect(path, query, clear_cookie=True)

    async def _call(self, fn, token: str) -> Outcome:
        return await asyncio.wait_for(asyncio.to_thread(fn, token), timeout=self.timeout_seconds)

    def _redirect(self, path: str, query: str, clear_cookie: bool = False) -> GateDecision:
        return GateDecision(
            GateAction.REDIRECT,
            redirect_url=build_login_redirect(self.login_redirect_url, path, query),
            clear_cookie=clear_cookie,
        )

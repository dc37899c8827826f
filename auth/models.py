"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Stores and services do
the work; these only own the shape.

Timestamps are UTC ISO 8601 strings (microsecond precision) exactly as the
store persists them. SessionPayload and IssuedSession use datetime because
they never touch the database directly.

Layer rule: stdlib only.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime


@dataclass
class User:
    """A registered account.

    email_verified_at is None until the user enters a valid verification code.
    last_password_change is reserved for a password-change flow and is never
    written by this package.
    """

    name: str
    email: str
    hashed_password: str
    id: str | None = None
    email_verified_at: str | None = None
    created_at: str | None = None
    last_password_change: str | None = None

    @property
    def is_verified(self) -> bool:
        return self.email_verified_at is not None


@dataclass
class Session:
    """One signed-in browser session.

    expires_at bounds the access token; refresh_expires_at bounds how long the
    refresh token can mint new access tokens. revoked_at is set on logout and
    makes the row permanently unusable.
    """

    user_id: str
    access_token: str
    refresh_token: str
    expires_at: str
    refresh_expires_at: str
    id: str | None = None
    created_at: str | None = None
    last_active: str | None = None
    revoked_at: str | None = None

    @property
    def is_revoked(self) -> bool:
        return self.revoked_at is not None


@dataclass
class VerificationRequest:
    """The single outstanding email verification code for a user."""

    user_id: str
    code: int
    issued_at: str
    expires_at: str


@dataclass(frozen=True)
class SessionPayload:
    """Decoded content of a signed session token."""

    session_id: str
    user_id: str
    access_token: str
    refresh_token: str
    expires_at: datetime


@dataclass(frozen=True)
class IssuedSession:
    """A freshly signed session token plus the times the HTTP layer needs for the cookie."""

    token: str
    session_id: str
    user_id: str
    expires_at: datetime
    refresh_expires_at: datetime

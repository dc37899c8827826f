"""
auth/accounts.py -- Account flows: register, log in, verify email, resend, log out.

AccountService is the boundary between the auth components and the HTTP
layer. Components raise AuthError subclasses; every method here returns an
Outcome and never lets an AuthError or a SQLAlchemyError escape.

Flows:
  register            policy check -> uniqueness -> user + first code in one
                      transaction -> email the code. A delivery failure still
                      returns the user id (kind DELIVERY) so the UI can send
                      the user to the verification page and offer a resend.
  authenticate        timing-equalized password check -> verified? -> session.
  verify_email        code check -> mark verified -> session.
  resend_verification cooldown-throttled new code -> email.
  logout              revoke the session behind the cookie.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import logging
import re

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from auth.errors import (
    AuthError,
    BadCredentialsError,
    ConflictError,
    DeliveryError,
    Outcome,
    StorageError,
    UnverifiedError,
    ValidationError,
)
from auth.models import User
from auth.passwords import burn_verification_time, hash_password, validate_password_policy, verify_password
from auth.sessions import SessionManager
from auth.store import UserStore
from auth.verification import VerificationCodeIssuer

logger = logging.getLogger("sessiongate.auth.accounts")

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def normalize_email(email: str) -> str:
    return email.strip().lower()


class AccountService:
    def __init__(self, store: UserStore, issuer: VerificationCodeIssuer, sessions: SessionManager) -> None:
        self.store = store
        self.issuer = issuer
        self.sessions = sessions

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register(self, name: str, email: str, password: str, confirm_password: str) -> Outcome:
        """Create an unverified account and email its verification code.

        Outcome value: the new user id (also present on a DELIVERY failure).
        Failure kinds: VALIDATION, CONFLICT, STORAGE, HASHING, DELIVERY.
        """
        name = name.strip()
        email = normalize_email(email)
        try:
            if not name:
                raise ValidationError("Name is required")
            if not _EMAIL_RE.match(email):
                raise ValidationError("Email address is not valid")
            validate_password_policy(password, confirm_password)

            if self.store.get_by_email(email) is not None:
                raise ConflictError()

            user = User(name=name, email=email, hashed_password=hash_password(password))
            # user_id is assigned by the store; the request is re-keyed on insert.
            first_code = self.issuer.new_request(user_id="")
            user_id = self.store.create_user_with_verification(user, first_code)
        except IntegrityError:
            # A concurrent registration for the same email won the insert.
            return Outcome.failure(ConflictError())
        except SQLAlchemyError as exc:
            logger.error("Registration failed: %s", exc)
            return Outcome.failure(StorageError("Unable to register account"))
        except AuthError as exc:
            return Outcome.failure(exc)

        logger.info("User %s registered", user_id)
        try:
            self.issuer.deliver(email, first_code.code)
        except DeliveryError as exc:
            return Outcome.failure(
                DeliveryError(f"Account created, but the verification email could not be sent: {exc.message}"),
                value=user_id,
            )
        return Outcome.success(user_id)

    # ------------------------------------------------------------------
    # Login
    # ------------------------------------------------------------------

    def authenticate(self, email: str, password: str) -> Outcome:
        """Check credentials and start a session. Outcome value: IssuedSession.

        Unknown email and wrong password both report BAD_CREDENTIALS, and both
        cost one bcrypt check, so neither message nor timing reveals whether
        the account exists. A correct password on an unverified account
        reports UNVERIFIED with the user id as value.
        """
        try:
            user = self.store.get_by_email(normalize_email(email))
        except SQLAlchemyError as exc:
            logger.error("Login lookup failed: %s", exc)
            return Outcome.failure(StorageError("Unable to log in"))

        if user is None:
            burn_verification_time(password)
            return Outcome.failure(BadCredentialsError())
        if not verify_password(password, user.hashed_password):
            return Outcome.failure(BadCredentialsError())
        if not user.is_verified:
            return Outcome.failure(UnverifiedError(user.id), value=user.id)

        return self.sessions.create_session(user.id)

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    def verify_email(self, user_id: str, code: int | str) -> Outcome:
        """Accept a verification code and sign the user in. Outcome value: IssuedSession.

        Failure kinds: NOT_FOUND, ALREADY_VERIFIED, EXPIRED, MISMATCH, STORAGE,
        plus any session-creation failure.
        """
        try:
            self.issuer.verify(user_id, code)
        except SQLAlchemyError as exc:
            logger.error("Verification for %s failed: %s", user_id, exc)
            return Outcome.failure(StorageError("Unable to verify email"))
        except AuthError as exc:
            return Outcome.failure(exc)
        return self.sessions.create_session(user_id)

    def resend_verification(self, user_id: str) -> Outcome:
        """Issue and email a new code. Outcome value: None.

        Failure kinds: NOT_FOUND, ALREADY_VERIFIED, THROTTLED (retry_after on
        the error), STORAGE, DELIVERY.
        """
        try:
            code = self.issuer.resend(user_id)
            user = self.store.get_by_id(user_id)
        except SQLAlchemyError as exc:
            logger.error("Resend for %s failed: %s", user_id, exc)
            return Outcome.failure(StorageError("Unable to send verification email"))
        except AuthError as exc:
            return Outcome.failure(exc)

        try:
            self.issuer.deliver(user.email, code)
        except DeliveryError as exc:
            return Outcome.failure(exc)
        return Outcome.success()

    # ------------------------------------------------------------------
    # Logout
    # ------------------------------------------------------------------

    def logout(self, token: str | None) -> Outcome:
        """Revoke the session behind token. Value: True if a live session was revoked."""
        if not token:
            return Outcome.success(False)
        return self.sessions.invalidate_token(token)

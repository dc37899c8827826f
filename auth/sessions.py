"""
auth/sessions.py -- Session lifecycle: create, validate, refresh, invalidate.

A session is one row in the sessions table plus a signed token in the
client's "session" cookie. The token embeds the session id, user id, both
opaque tokens and the access window end (exp).

  create_session   -- row + signed token. Access window = session_duration,
                      refresh window = refresh_duration from creation.
  validate         -- signature and exp. With check_revocation (default) one
                      point lookup also confirms the row is live and still
                      holds the token's access token.
  refresh_session  -- for a correctly signed token whose access window has
                      lapsed: row must be live, both opaque tokens must match,
                      and the refresh window must still be open. A new access
                      token is swapped in with a later expiry.
  invalidate       -- marks the row revoked. Revoked rows never validate or
                      refresh again; cookie clearing alone is not enough.

Every public method returns an Outcome. Storage failures (including a locked
SQLite database past its busy timeout) become StorageError outcomes, never
"not found".

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import hmac
import logging
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from sqlalchemy.exc import SQLAlchemyError

from auth.errors import AuthError, ExpiredError, NotFoundError, Outcome, SignatureError, StorageError
from auth.models import IssuedSession, Session, SessionPayload
from auth.store import UserStore, from_iso, to_iso
from auth.tokens import TokenSigner

logger = logging.getLogger("sessiongate.auth.sessions")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionManager:
    """Creates, validates, refreshes and revokes sessions.

    Usage:
        sessions = SessionManager(store, TokenSigner(settings.secret_key))
        outcome = sessions.create_session(user_id)
        if outcome.ok:
            set_session_cookie(response, outcome.value.token, outcome.value.refresh_expires_at)
    """

    def __init__(
        self,
        store: UserStore,
        signer: TokenSigner,
        session_duration: timedelta = timedelta(hours=1),
        refresh_duration: timedelta = timedelta(days=7),
        check_revocation: bool = True,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.signer = signer
        self.session_duration = session_duration
        self.refresh_duration = refresh_duration
        self.check_revocation = check_revocation
        self._clock = clock

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    def create_session(self, user_id: str) -> Outcome:
        """Start a session for user_id. Outcome value: IssuedSession.

        Failure kinds: NOT_FOUND (no such user), STORAGE, SIGNING.
        """
        try:
            if self.store.get_by_id(user_id) is None:
                return Outcome.failure(NotFoundError("User not found"))

            now = self._clock()
            expires_at = now + self.session_duration
            refresh_expires_at = now + self.refresh_duration
            access_token = self.signer.generate_opaque_token()
            refresh_token = self.signer.generate_opaque_token()

            session_id = self.store.create_session(
                Session(
                    user_id=user_id,
                    access_token=access_token,
                    refresh_token=refresh_token,
                    created_at=to_iso(now),
                    expires_at=to_iso(expires_at),
                    refresh_expires_at=to_iso(refresh_expires_at),
                    last_active=to_iso(now),
                )
            )
            token = self.signer.sign(
                SessionPayload(
                    session_id=session_id,
                    user_id=user_id,
                    access_token=access_token,
                    refresh_token=refresh_token,
                    expires_at=expires_at,
                )
            )
        except SQLAlchemyError as exc:
            logger.error("Session creation failed for user %s: %s", user_id, exc)
            return Outcome.failure(StorageError("Unable to create session"))
        except AuthError as exc:
            return Outcome.failure(exc)

        logger.info("Session %s created for user %s", session_id, user_id)
        return Outcome.success(
            IssuedSession(
                token=token,
                session_id=session_id,
                user_id=user_id,
                expires_at=expires_at,
                refresh_expires_at=refresh_expires_at,
            )
        )

    # ------------------------------------------------------------------
    # Validate
    # ------------------------------------------------------------------

    def validate(self, token: str) -> Outcome:
        """Check a signed session token. Outcome value: SessionPayload.

        Failure kinds: INVALID_SIGNATURE (tampered, unknown or revoked),
        EXPIRED (access window lapsed -- try refresh_session), STORAGE.
        """
        try:
            payload = self.signer.verify(token)
            if self.check_revocation:
                self._require_live_row(payload)
        except SQLAlchemyError as exc:
            logger.error("Session validation storage failure: %s", exc)
            return Outcome.failure(StorageError())
        except AuthError as exc:
            return Outcome.failure(exc)
        return Outcome.success(payload)

    # ------------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------------

    def refresh_session(self, token: str) -> Outcome:
        """Mint a new access token for a session whose refresh window is open.

        Outcome value: IssuedSession with expires_at strictly later than the
        previous one. Fails closed on anything unexpected.
        """
        try:
            payload = self.signer.verify(token, allow_expired=True)
            row = self._require_live_row(payload, match_refresh=True)

            now = self._clock()
            if now >= from_iso(row.refresh_expires_at):
                return Outcome.failure(ExpiredError("Session has expired."))

            new_access_token = self.signer.generate_opaque_token()
            new_expires_at = now + self.session_duration
            rotated = self.store.rotate_access_token(
                row.id,
                old_access_token=payload.access_token,
                new_access_token=new_access_token,
                expires_at=new_expires_at,
            )
            if not rotated:
                # Revoked or refreshed by a concurrent request since we read it.
                return Outcome.failure(SignatureError("Session is no longer valid."))

            new_token = self.signer.sign(
                SessionPayload(
                    session_id=row.id,
                    user_id=row.user_id,
                    access_token=new_access_token,
                    refresh_token=row.refresh_token,
                    expires_at=new_expires_at,
                )
            )
        except SQLAlchemyError as exc:
            logger.error("Session refresh storage failure: %s", exc)
            return Outcome.failure(StorageError())
        except AuthError as exc:
            return Outcome.failure(exc)

        logger.info("Session %s refreshed", row.id)
        return Outcome.success(
            IssuedSession(
                token=new_token,
                session_id=row.id,
                user_id=row.user_id,
                expires_at=new_expires_at,
                refresh_expires_at=from_iso(row.refresh_expires_at),
            )
        )

    # ------------------------------------------------------------------
    # Invalidate
    # ------------------------------------------------------------------

    def invalidate_session(self, session_id: str) -> Outcome:
        """Revoke a session. Outcome value: True if a live row was revoked."""
        try:
            revoked = self.store.revoke_session(session_id)
        except SQLAlchemyError as exc:
            logger.error("Session %s revoke failed: %s", session_id, exc)
            return Outcome.failure(StorageError())
        if revoked:
            logger.info("Session %s revoked", session_id)
        return Outcome.success(revoked)

    def invalidate_token(self, token: str) -> Outcome:
        """Revoke the session behind a signed token, expired or not.

        Used by logout. A token with a bad signature revokes nothing and
        returns a success with value False -- the caller clears the cookie
        either way.
        """
        try:
            payload = self.signer.verify(token, allow_expired=True)
        except AuthError:
            return Outcome.success(False)
        return self.invalidate_session(payload.session_id)

    def revoke_user_session(self, session_id: str, user_id: str) -> Outcome:
        """Revoke one of user_id's own sessions. Value False if not found or not owned."""
        try:
            revoked = self.store.revoke_session(session_id, user_id=user_id)
        except SQLAlchemyError as exc:
            logger.error("Session %s revoke failed: %s", session_id, exc)
            return Outcome.failure(StorageError())
        return Outcome.success(revoked)

    def list_sessions(self, user_id: str) -> Outcome:
        """Return the user's live sessions, newest first. Value: list[Session]."""
        try:
            return Outcome.success(self.store.list_sessions(user_id))
        except SQLAlchemyError as exc:
            logger.error("Listing sessions for %s failed: %s", user_id, exc)
            return Outcome.failure(StorageError())

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _require_live_row(self, payload: SessionPayload, match_refresh: bool = False) -> Session:
        """Return the session row behind payload or raise SignatureError.

        The row must exist, belong to the same user, not be revoked, and hold
        the same access token (and refresh token when match_refresh).
        """
        row = self.store.get_session(payload.session_id)
        if row is None or row.is_revoked or row.user_id != payload.user_id:
            raise SignatureError("Session is no longer valid.")
        if not hmac.compare_digest(row.access_token, payload.access_token):
            raise SignatureError("Session is no longer valid.")
        if match_refresh and not hmac.compare_digest(row.refresh_token, payload.refresh_token):
            raise SignatureError("Session is no longer valid.")
        return row

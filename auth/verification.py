"""
auth/verification.py -- Email verification codes: issue, resend, verify, deliver.

Per-user state machine:

    NoCode --issue--> Pending --verify ok--> Verified
                         |  ^
                   expiry|  |resend
                         v  |
                       Expired

Rules:
  - Codes are uniform random integers in 10000..99999 (secrets.randbelow).
  - A code lives for code_ttl (1 hour by default).
  - Only one code per user exists; issuing overwrites the previous one.
  - resend() is refused while the current code is younger than the cooldown
    (5 minutes by default). The check and the overwrite are a single
    conditional UPDATE in the store, so the last concurrent writer cannot
    silently replace a code that another request has just sent.
  - verify() compares in constant time; success consumes the code and marks
    the user verified in the same transaction.

Errors are raised, not returned. AccountService is the boundary that turns
them into Outcomes.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import hmac
import logging
import math
import secrets
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from auth.errors import (
    AlreadyVerifiedError,
    DeliveryError,
    ExpiredError,
    MismatchError,
    NotFoundError,
    ThrottledError,
)
from auth.models import VerificationRequest
from auth.notifier import Notifier
from auth.store import UserStore, from_iso, to_iso

logger = logging.getLogger("sessiongate.auth.verification")

CODE_MIN = 10000
CODE_MAX = 99999

VERIFICATION_SUBJECT = "Verify your account"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def generate_code() -> int:
    """Return a uniformly random 5-digit code."""
    return CODE_MIN + secrets.randbelow(CODE_MAX - CODE_MIN + 1)


class VerificationCodeIssuer:
    """Issues, throttles, validates and delivers email verification codes."""

    def __init__(
        self,
        store: UserStore,
        notifier: Notifier,
        code_ttl: timedelta = timedelta(hours=1),
        resend_cooldown: timedelta = timedelta(minutes=5),
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.notifier = notifier
        self.code_ttl = code_ttl
        self.resend_cooldown = resend_cooldown
        self._clock = clock

    def new_request(self, user_id: str) -> VerificationRequest:
        """Build (but do not store) a fresh verification request for user_id."""
        now = self._clock()
        return VerificationRequest(
            user_id=user_id,
            code=generate_code(),
            issued_at=to_iso(now),
            expires_at=to_iso(now + self.code_ttl),
        )

    def issue(self, user_id: str) -> int:
        """Store a new code for user_id, overwriting any previous one, and return it."""
        request = self.new_request(user_id)
        self.store.upsert_verification(request)
        logger.info("Verification code issued for user %s", user_id)
        return request.code

    def resend(self, user_id: str) -> int:
        """Replace the user's code with a new one unless the cooldown is still running.

        Raises:
            NotFoundError:        the user does not exist.
            AlreadyVerifiedError: the user's email is already verified.
            ThrottledError:       the current code is younger than the cooldown.
        """
        user = self.store.get_by_id(user_id)
        if user is None:
            raise NotFoundError("User not found")
        if user.is_verified:
            raise AlreadyVerifiedError()

        now = self._clock()
        current = self.store.get_verification(user_id)
        if current is None:
            return self.issue(user_id)

        wait = self._remaining_cooldown(current, now)
        if wait > 0:
            raise ThrottledError(
                retry_after=wait,
                message=(
                    "Please wait a bit longer! You've already received a verification code "
                    f"less than {self._cooldown_minutes()} minutes ago."
                ),
            )

        request = self.new_request(user_id)
        if not self.store.replace_verification_if_issued_before(request, now - self.resend_cooldown):
            # Another request replaced the code between our read and our write.
            latest = self.store.get_verification(user_id)
            retry = self._remaining_cooldown(latest, now) if latest is not None else 1
            raise ThrottledError(retry_after=retry)
        logger.info("Verification code reissued for user %s", user_id)
        return request.code

    def verify(self, user_id: str, code: int | str) -> None:
        """Accept the code if it is the user's current, unexpired code.

        Check order: user exists -> not yet verified -> code exists ->
        not expired -> exact match.

        Raises:
            NotFoundError:        unknown user or no outstanding code.
            AlreadyVerifiedError: user already verified (covers code reuse).
            ExpiredError:         the code's expiry has passed.
            MismatchError:        the code is wrong.
        """
        user = self.store.get_by_id(user_id)
        if user is None:
            raise NotFoundError("User not found")
        if user.is_verified:
            raise AlreadyVerifiedError()

        current = self.store.get_verification(user_id)
        if current is None:
            raise NotFoundError("Verification code not found")

        now = self._clock()
        if now >= from_iso(current.expires_at):
            raise ExpiredError("Verification code has expired")

        # Compared as bytes so non-ASCII input is a plain mismatch.
        submitted = str(code).strip().encode("utf-8")
        if not hmac.compare_digest(str(current.code).encode("ascii"), submitted):
            raise MismatchError()

        if not self.store.mark_email_verified(user_id, now):
            # A concurrent verify of the same code won the race.
            raise AlreadyVerifiedError()
        logger.info("Email verified for user %s", user_id)

    def deliver(self, email: str, code: int) -> None:
        """Send the code to the user. Raises DeliveryError if the notifier fails."""
        body = f"Verification code: {code}"
        try:
            self.notifier.send(email, VERIFICATION_SUBJECT, body)
        except DeliveryError:
            logger.warning("Verification email to %s could not be delivered", email)
            raise

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _remaining_cooldown(self, current: VerificationRequest, now: datetime) -> int:
        ready_at = from_iso(current.issued_at) + self.resend_cooldown
        return max(math.ceil((ready_at - now).total_seconds()), 0)

    def _cooldown_minutes(self) -> int:
        return max(int(self.resend_cooldown.total_seconds() // 60), 1)

"""
auth/passwords.py -- Password hashing and password policy.

Security design decisions:
  Hashing: bcrypt used directly (no passlib wrapper). The cost factor makes
       brute-force of low-entropy secrets expensive, and every hash carries
       its own salt. Any bcrypt failure while hashing is reported as a generic
       HashingError so the message can never echo the password.

  Timing equalization: _DUMMY_HASH is computed once at module load. Login
       verifies against it when the email is unknown, so response time does
       not reveal whether an account exists.

  Policy: at least 8 characters, one uppercase letter, one digit. bcrypt
       truncates input beyond 72 bytes; the API layer caps passwords at 128
       characters via Pydantic.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import logging
import re

import bcrypt

from auth.errors import HashingError, ValidationError

logger = logging.getLogger("sessiongate.auth.passwords")

MIN_PASSWORD_LENGTH = 8

_UPPERCASE_RE = re.compile(r"[A-Z]")
_DIGIT_RE = re.compile(r"[0-9]")


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password."""
    try:
        return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")
    except (ValueError, TypeError) as exc:
        logger.error("Password hashing failed (%s)", type(exc).__name__)
        raise HashingError() from None


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except (ValueError, TypeError):
        return False


def validate_password_policy(password: str, confirm: str | None = None) -> None:
    """Raise ValidationError with a user-facing message if the password is unacceptable.

    Checks run in a fixed order so the user always sees the first rule they
    broke. The confirmation check is skipped when confirm is None (login).
    """
    if len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters long")
    if not _UPPERCASE_RE.search(password):
        raise ValidationError("Password must have at least one uppercase character")
    if not _DIGIT_RE.search(password):
        raise ValidationError("Password must have at least one number")
    if confirm is not None and password != confirm:
        raise ValidationError("Passwords do not match")


# Computed once at module load so the first login attempt is not measurably
# slower than subsequent ones.
_DUMMY_HASH: str = hash_password("sessiongate_timing_dummy")


def burn_verification_time(plain: str) -> None:
    """Run one bcrypt check against the dummy hash and discard the result."""
    verify_password(plain, _DUMMY_HASH)

"""
auth/errors.py -- Error taxonomy and the Outcome envelope for auth operations.

Leaf components (passwords, tokens, verification, store adapters) raise the
AuthError subclasses below. Service boundaries (SessionManager, AccountService)
catch them and return an Outcome instead, so no public operation lets an
unstructured exception escape to the HTTP layer.

Each error carries an ErrorKind. The API layer maps kinds to status codes in
one table (api/routes/v1/auth.py) and never inspects exception classes.

Layer rule: stdlib only.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    VALIDATION = "validation_error"
    CONFLICT = "conflict"
    NOT_FOUND = "not_found"
    ALREADY_VERIFIED = "already_verified"
    UNVERIFIED = "unverified"
    BAD_CREDENTIALS = "bad_credentials"
    MISMATCH = "mismatch"
    EXPIRED = "expired"
    INVALID_SIGNATURE = "invalid_signature"
    THROTTLED = "throttled"
    STORAGE = "storage_error"
    DELIVERY = "delivery_error"
    SIGNING = "signing_error"
    HASHING = "hashing_error"


class AuthError(Exception):
    """Base class for every failure the auth package reports to callers."""

    kind: ErrorKind = ErrorKind.VALIDATION
    default_message = "Request could not be completed."

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationError(AuthError):
    kind = ErrorKind.VALIDATION
    default_message = "Invalid input."


class ConflictError(AuthError):
    kind = ErrorKind.CONFLICT
    default_message = "Email already registered."


class NotFoundError(AuthError):
    kind = ErrorKind.NOT_FOUND
    default_message = "Not found."


class AlreadyVerifiedError(AuthError):
    kind = ErrorKind.ALREADY_VERIFIED
    default_message = "Email already verified."


class UnverifiedError(AuthError):
    """Correct credentials, but the email address has not been verified yet."""

    kind = ErrorKind.UNVERIFIED
    default_message = "Email address has not been verified."

    def __init__(self, user_id: str, message: str | None = None) -> None:
        self.user_id = user_id
        super().__init__(message)


class BadCredentialsError(AuthError):
    kind = ErrorKind.BAD_CREDENTIALS
    default_message = "Invalid email or password."


class MismatchError(AuthError):
    kind = ErrorKind.MISMATCH
    default_message = "Incorrect verification code."


class ExpiredError(AuthError):
    kind = ErrorKind.EXPIRED
    default_message = "Expired."


class SignatureError(AuthError):
    kind = ErrorKind.INVALID_SIGNATURE
    default_message = "Invalid session token."


class ThrottledError(AuthError):
    """Raised when an action is repeated before its cooldown has elapsed.

    retry_after is the number of whole seconds the caller should wait.
    """

    kind = ErrorKind.THROTTLED
    default_message = "Please wait before trying again."

    def __init__(self, retry_after: int, message: str | None = None) -> None:
        self.retry_after = max(int(retry_after), 1)
        super().__init__(message)


class StorageError(AuthError):
    kind = ErrorKind.STORAGE
    default_message = "Storage is unavailable."


class DeliveryError(AuthError):
    kind = ErrorKind.DELIVERY
    default_message = "Unable to send email."


class SigningError(AuthError):
    kind = ErrorKind.SIGNING
    default_message = "Unable to sign session token."


class HashingError(AuthError):
    kind = ErrorKind.HASHING
    default_message = "Unable to process password."


@dataclass(frozen=True)
class Outcome:
    """Discriminated result of a public auth operation.

    ok=True  -> value holds the result, error is None.
    ok=False -> error holds the AuthError; value may still carry partial data
                (e.g. the user id of an account whose verification email
                could not be delivered).
    """

    ok: bool
    value: Any = None
    error: AuthError | None = None

    @classmethod
    def success(cls, value: Any = None) -> Outcome:
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, error: AuthError, value: Any = None) -> Outcome:
        return cls(ok=False, value=value, error=error)

    @property
    def kind(self) -> ErrorKind | None:
        return self.error.kind if self.error is not None else None

    @property
    def message(self) -> str | None:
        return self.error.message if self.error is not None else None

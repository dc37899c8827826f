"""
auth/tokens.py -- Session token signing, opaque token generation, cookie helpers.

Security design decisions:
  Signed session token: python-jose JWT with HS256. Claims:
       sid -- session row id          sub -- user id
       at  -- access token            rt  -- refresh token
       exp -- access window end (enforced on every verify)
       The expiry travels inside the signature, so a plain validation needs
       no database round-trip.

  Opaque tokens: secrets.token_hex(16) (128 bits) run through
       HMAC-SHA256(SECRET_KEY, raw). The stored access/refresh tokens are
       derived values, so a leaked raw value is useless without the key.
       Generation is synchronous -- the caller always gets a finished string.

  SECRET_KEY is injected by the caller (see TokenSigner.__init__). Rotating it
       invalidates every outstanding session cookie.

  Cookie: "session", httpOnly (no JS access), samesite=strict (never sent on
       cross-site requests), secure when SECURE_COOKIES=true, path "/".
       It lives until the refresh window closes so the gate can still refresh
       an expired access window.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
from datetime import datetime, timezone

from jose import ExpiredSignatureError, JWTError, jwt
from jose.utils import base64url_decode, base64url_encode

from auth.errors import ExpiredError, SignatureError, SigningError
from auth.models import SessionPayload

logger = logging.getLogger("sessiongate.auth.tokens")

SESSION_COOKIE = "session"

_ALGORITHM = "HS256"
_REQUIRED_CLAIMS = ("sid", "sub", "at", "rt", "exp")


class TokenSigner:
    """Signs and verifies session tokens with a process-wide secret.

    Usage:
        signer = TokenSigner(settings.secret_key)
        token = signer.sign(payload)
        payload = signer.verify(token)          # raises SignatureError / ExpiredError
    """

    def __init__(self, secret_key: str) -> None:
        if not secret_key:
            raise ValueError("TokenSigner requires a non-empty secret key.")
        self._secret_key = secret_key

    # ------------------------------------------------------------------
    # Opaque tokens
    # ------------------------------------------------------------------

    def generate_opaque_token(self) -> str:
        """Return HMAC-SHA256(SECRET_KEY, 16 random bytes as hex) as 64 hex chars."""
        raw = secrets.token_hex(16)
        return hmac.new(self._secret_key.encode(), raw.encode(), hashlib.sha256).hexdigest()

    # ------------------------------------------------------------------
    # Signed session tokens
    # ------------------------------------------------------------------

    def sign(self, payload: SessionPayload) -> str:
        """Encode the payload as an HS256 JWT. Raises SigningError on failure."""
        claims = {
            "sid": payload.session_id,
            "sub": payload.user_id,
            "at": payload.access_token,
            "rt": payload.refresh_token,
            "exp": _as_utc(payload.expires_at),
        }
        try:
            return jwt.encode(claims, self._secret_key, algorithm=_ALGORITHM)
        except JWTError as exc:
            logger.error("Session token signing failed: %s", exc)
            raise SigningError() from exc

    def verify(self, token: str, allow_expired: bool = False) -> SessionPayload:
        """Verify signature (and expiry unless allow_expired) and return the payload.

        Raises:
            ExpiredError:   signature is valid but exp has passed.
            SignatureError: token is malformed, tampered, signed with another
                            key, or missing a required claim.
        """
        if not token or not _has_canonical_signature(token):
            raise SignatureError()
        options = {"verify_exp": not allow_expired}
        try:
            claims = jwt.decode(token, self._secret_key, algorithms=[_ALGORITHM], options=options)
        except ExpiredSignatureError as exc:
            raise ExpiredError("Session has expired.") from exc
        except JWTError as exc:
            raise SignatureError() from exc
        if any(claim not in claims for claim in _REQUIRED_CLAIMS):
            raise SignatureError()
        try:
            expires_at = datetime.fromtimestamp(int(claims["exp"]), tz=timezone.utc)
        except (TypeError, ValueError, OverflowError) as exc:
            raise SignatureError() from exc
        return SessionPayload(
            session_id=str(claims["sid"]),
            user_id=str(claims["sub"]),
            access_token=str(claims["at"]),
            refresh_token=str(claims["rt"]),
            expires_at=expires_at,
        )


def _has_canonical_signature(token: str) -> bool:
    """True if the signature segment re-encodes to exactly the same text.

    base64url decoding ignores the unused low bits of the final character, so
    two different token strings can carry the same 32 signature bytes. Only
    the canonical encoding is accepted.
    """
    parts = token.split(".")
    if len(parts) != 3 or not parts[2]:
        return False
    try:
        signature = parts[2].encode("ascii")
        return base64url_encode(base64url_decode(signature)) == signature
    except (UnicodeEncodeError, ValueError):
        return False


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------


def set_session_cookie(response, token: str, expires_at: datetime, secure: bool = False) -> None:
    """Write the signed session token as an httpOnly cookie on the response.

    max_age is derived from expires_at so the cookie disappears when the
    session can no longer be refreshed.

    Args:
        response:   FastAPI/Starlette response object.
        token:      Signed session token.
        expires_at: Refresh window end of the session (timezone-aware).
        secure:     Only send over HTTPS. Driven by Settings.secure_cookies.
    """
    max_age = int((_as_utc(expires_at) - datetime.now(timezone.utc)).total_seconds())
    response.set_cookie(
        SESSION_COOKIE,
        value=token,
        httponly=True,
        samesite="strict",
        secure=secure,
        path="/",
        max_age=max(max_age, 0),
    )


def clear_session_cookie(response) -> None:
    """Expire the session cookie on the client."""
    response.delete_cookie(SESSION_COOKIE, path="/", httponly=True, samesite="strict")

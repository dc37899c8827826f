"""
API request and response models for SessionGate REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

# ---------------------------------------------------------------------------
# Errors and health
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None
    user_id: Optional[str] = None  # set on unverified-login and delivery failures


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Auth -- requests
# ---------------------------------------------------------------------------


class RegisterRequest(BaseModel):
    """Request body for POST /api/v1/auth/register."""

    # No str_strip_whitespace here: whitespace in passwords is significant.
    # AccountService trims name and email itself.
    name: str = Field(min_length=1, max_length=255)
    email: str = Field(min_length=3, max_length=320)
    password: str = Field(min_length=1, max_length=128)
    confirm_password: str = Field(min_length=1, max_length=128)


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login."""

    email: str = Field(min_length=3, max_length=320)
    password: str = Field(min_length=1, max_length=128)
    redirect_uri: Optional[str] = Field(default=None, max_length=2048)


class VerifyRequest(BaseModel):
    """Request body for POST /api/v1/auth/verify.

    code accepts "12345" or a list of five digits [1, 2, 3, 4, 5] (the shape a
    one-box-per-digit input produces); both normalize to the string form.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    user_id: str = Field(min_length=1, max_length=36)
    code: str = Field(pattern=r"^[0-9]{5}$")
    redirect_uri: Optional[str] = Field(default=None, max_length=2048)

    @field_validator("code", mode="before")
    @classmethod
    def join_digits(cls, value):
        if isinstance(value, list):
            return "".join(str(d) for d in value)
        if isinstance(value, int):
            return str(value)
        return value


class ResendRequest(BaseModel):
    """Request body for POST /api/v1/auth/verify/resend."""

    model_config = ConfigDict(str_strip_whitespace=True)

    user_id: str = Field(min_length=1, max_length=36)


# ---------------------------------------------------------------------------
# Auth -- responses
# ---------------------------------------------------------------------------


class RegisterResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: str = "success"
    user_id: str
    message: str


class LoginResponse(BaseModel):
    """Returned by login and verify. The token itself travels only in the cookie."""

    model_config = ConfigDict(frozen=True)

    status: str = "success"
    user_id: str
    expires_at: str
    redirect_to: str


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: str = "success"
    message: str


class SessionStatusResponse(BaseModel):
    """Response for GET /auth/session and PUT /auth/session/refresh.

    status is "success", "expired" (refresh may help) or "invalid".
    """

    model_config = ConfigDict(frozen=True)

    status: str
    user_id: Optional[str] = None
    expires_at: Optional[str] = None


class MeResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: str
    name: str
    email: str
    email_verified_at: Optional[str] = None
    created_at: str


class SessionInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    created_at: str
    expires_at: str
    refresh_expires_at: str
    last_active: str
    current: bool = False


class DashboardResponse(BaseModel):
    """Response for GET /api/v1/dashboard."""

    model_config = ConfigDict(frozen=True)

    user: MeResponse
    active_sessions: int
    sessions: list[SessionInfo]

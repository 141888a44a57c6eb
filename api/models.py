"""
API request and response models for authgate REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Request fields are optional where the session service, not validation, owns
the failure: a login without an identity must come back as
missing_credentials, not as a 422.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class _AuthRequest(BaseModel):
    """Fields shared by every auth request body.

    login and recaptcha are trimmed. Passwords are taken exactly as sent.
    """

    login: Optional[str] = Field(default=None, max_length=255)
    recaptcha: Optional[str] = Field(default=None, max_length=4096)

    @field_validator("login", "recaptcha", mode="before")
    @classmethod
    def strip_whitespace(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip()
        return value


class LoginRequest(_AuthRequest):
    """Request body for POST /api/v1/auth/login."""

    password: Optional[str] = Field(default=None, max_length=255)


class SendResetRequest(_AuthRequest):
    """Request body for POST /api/v1/auth/send-reset."""


class ResetRequest(_AuthRequest):
    """Request body for POST /api/v1/auth/reset."""

    token: Optional[str] = Field(default=None, max_length=255)
    password: Optional[str] = Field(default=None, max_length=255)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class UserResponse(BaseModel):
    """Public view of a Principal."""

    model_config = ConfigDict(frozen=True)

    id: int
    email: str
    full_name: str
    active: bool


class TokenResponse(BaseModel):
    """Response for login, refresh and password reset."""

    model_config = ConfigDict(frozen=True)

    success: bool = True
    access_token: str
    token_type: str = "bearer"
    expires_in: int
    user: UserResponse


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    success: bool = True
    message: str


class ErrorDetail(BaseModel):
    """Machine-readable error payload. code carries the error kind."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None
    site_key: Optional[str] = None


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

"""
auth/models.py -- Domain dataclasses for authentication entities and flow results.

Pattern: Data class (pure data container, zero logic). Stores and the session
service do the work; these types only carry shape.

Flow results are values, not exceptions. Every AuthSessionService flow returns
an AuthResult holding either a success payload (TokenGrant or message) or an
AuthError. The HTTP layer maps ErrorKind to a status code.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


@dataclass
class User:
    """A user directory record.

    email is the login identity. It is stored normalized (stripped, lowercased)
    so lookups and rate-limit buckets agree on one spelling.
    """

    email: str
    full_name: str = ""
    id: int | None = None
    hashed_password: str | None = None
    is_active: bool = True
    created_at: str | None = None
    last_login: str | None = None


@dataclass(frozen=True)
class Principal:
    """The authenticated user, resolved once at the HTTP boundary.

    Passed explicitly into every post-authentication flow. Carries no
    credential material.
    """

    id: int
    email: str
    full_name: str = ""
    is_active: bool = True


@dataclass(frozen=True)
class IssuedToken:
    """A freshly minted bearer token. value is shown to the client once."""

    value: str
    user_id: int
    issued_at: float
    expires_at: float


@dataclass(frozen=True)
class TokenRecord:
    """A persisted token row. Only the HMAC of the token value is stored."""

    id: int
    user_id: int
    token_hash: str
    issued_at: float
    expires_at: float


# ---------------------------------------------------------------------------
# Flow results
# ---------------------------------------------------------------------------


class ErrorKind(str, Enum):
    MISSING_CREDENTIALS = "missing_credentials"
    RATE_LIMITED = "rate_limited"
    CAPTCHA_REQUIRED = "captcha_required"
    UNAUTHORIZED = "unauthorized"
    USER_DISABLED = "user_disabled"
    NOT_FOUND = "not_found"
    BROKER_FAILURE = "broker_failure"


class RateLimitScope(str, Enum):
    IP = "ip"
    IDENTITY = "identity"


class AuthStage(str, Enum):
    """Gates a request passes through, in order. TOKEN_ISSUED is the only success."""

    START = "start"
    IP_CHECKED = "ip_checked"
    CAPTCHA_CHECKED = "captcha_checked"
    CREDENTIAL_CHECKED = "credential_checked"
    ACTIVE_CHECKED = "active_checked"
    TOKEN_ISSUED = "token_issued"


@dataclass(frozen=True)
class AuthError:
    """A terminal gate failure.

    stage is the last gate the request passed before failing. site_key is set
    only for CAPTCHA_REQUIRED, scope only for RATE_LIMITED.
    """

    kind: ErrorKind
    message: str
    stage: AuthStage = AuthStage.START
    site_key: str | None = None
    scope: RateLimitScope | None = None


@dataclass(frozen=True)
class TokenGrant:
    token: str
    expires_in: int
    principal: Principal
    token_type: str = "bearer"


@dataclass(frozen=True)
class AuthResult:
    grant: TokenGrant | None = None
    message: str | None = None
    error: AuthError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class ResetStatus(str, Enum):
    """Outcome of a password broker operation."""

    RESET_LINK_SENT = "reset_link_sent"
    RESET_THROTTLED = "reset_throttled"
    PASSWORD_RESET = "password_reset"
    INVALID_USER = "invalid_user"
    INVALID_TOKEN = "invalid_token"
    INVALID_PASSWORD = "invalid_password"

"""
api/routes/v1/auth.py -- Authentication and session REST endpoints.

Routes:
  POST /api/v1/auth/login              -- password login; returns + sets bearer token
  POST /api/v1/auth/logout             -- revoke the presented token
  POST /api/v1/auth/logout-from-all    -- revoke every token of the caller
  POST /api/v1/auth/refresh            -- swap the presented token for a new one
  GET  /api/v1/auth/me                 -- current user info
  POST /api/v1/auth/send-reset         -- mail a password reset link
  POST /api/v1/auth/reset              -- set a new password with a reset token

The handlers only translate: request -> AuthSessionService call -> response.
Gate ordering, counters and captcha live in auth/service.py. Error kinds map
to status codes in _STATUS_BY_KIND.

Security:
  Anonymous endpoints carry the slowapi per-IP cap (LOGIN_RATE_LIMIT) on top
  of the failure-counting gates.
  Cache-Control: no-store on every response that carries a token.
  Authenticated endpoints resolve the caller once via get_current_session();
  the service receives the Principal explicitly.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.limiter import limiter
from api.models import (
    ErrorDetail,
    ErrorResponse,
    LoginRequest,
    MessageResponse,
    ResetRequest,
    SendResetRequest,
    TokenResponse,
    UserResponse,
)
from auth.dependencies import AuthenticatedSession, client_ip, get_auth_service, get_current_session
from auth.models import AuthError, AuthResult, ErrorKind, Principal
from auth.service import AuthSessionService
from auth.tokens import clear_auth_cookie, set_auth_cookie
from core.config import get_settings

# Auth policy:
# - POST /auth/login, /auth/send-reset, /auth/reset: public, rate-limited
# - POST /auth/logout, /auth/logout-from-all, /auth/refresh: requires auth (get_current_session)
# - GET  /auth/me: requires auth (get_current_session)
router = APIRouter()

_ANON_LIMIT = get_settings().login_rate_limit

_STATUS_BY_KIND: dict[ErrorKind, int] = {
    ErrorKind.MISSING_CREDENTIALS: 401,
    ErrorKind.UNAUTHORIZED: 401,
    ErrorKind.USER_DISABLED: 403,
    ErrorKind.NOT_FOUND: 404,
    # 420 "Enhance Your Calm" -- kept distinct from the captcha 429 so
    # clients can tell "slow down" from "render the widget".
    ErrorKind.RATE_LIMITED: 420,
    ErrorKind.CAPTCHA_REQUIRED: 429,
    ErrorKind.BROKER_FAILURE: 503,
}


# ---------------------------------------------------------------------------
# Response helpers
# ---------------------------------------------------------------------------


def _user_to_response(principal: Principal) -> UserResponse:
    return UserResponse(
        id=principal.id,
        email=principal.email,
        full_name=principal.full_name,
        active=principal.is_active,
    )


def _error_response(error: AuthError, service: AuthSessionService) -> JSONResponse:
    resp = JSONResponse(
        status_code=_STATUS_BY_KIND[error.kind],
        content=ErrorResponse(
            error=ErrorDetail(code=error.kind.value, message=error.message, site_key=error.site_key)
        ).model_dump(exclude_none=True),
    )
    if error.kind is ErrorKind.RATE_LIMITED:
        resp.headers["Retry-After"] = str(service.rate_limiter.ip_window_seconds)
    resp.headers["Cache-Control"] = "no-store"
    return resp


def _respond(result: AuthResult, service: AuthSessionService) -> JSONResponse:
    if result.error is not None:
        return _error_response(result.error, service)
    if result.grant is not None:
        grant = result.grant
        resp = JSONResponse(
            content=TokenResponse(
                access_token=grant.token,
                token_type=grant.token_type,
                expires_in=grant.expires_in,
                user=_user_to_response(grant.principal),
            ).model_dump()
        )
        set_auth_cookie(resp, grant.token, max_age=grant.expires_in, secure=get_settings().secure_cookies)
    else:
        resp = JSONResponse(content=MessageResponse(message=result.message or "").model_dump())
    resp.headers["Cache-Control"] = "no-store"
    return resp


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@limiter.limit(_ANON_LIMIT)  # must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/login", response_model=TokenResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with login and password; return a bearer token."""
    service = get_auth_service(request)
    result = service.login(body.login, body.password, body.recaptcha, client_ip(request))
    return _respond(result, service)


@limiter.limit(_ANON_LIMIT)
@router.post("/auth/send-reset", response_model=MessageResponse)
def send_password_reset(request: Request, body: SendResetRequest) -> JSONResponse:
    """Mail a password reset link to the account behind login."""
    service = get_auth_service(request)
    result = service.send_password_reset(body.login, body.recaptcha, client_ip(request))
    return _respond(result, service)


@limiter.limit(_ANON_LIMIT)
@router.post("/auth/reset", response_model=TokenResponse)
def process_password_reset(request: Request, body: ResetRequest) -> JSONResponse:
    """Set a new password using a reset token; log the user in on success."""
    service = get_auth_service(request)
    result = service.process_password_reset(
        body.login, body.token, body.password, body.recaptcha, client_ip(request)
    )
    return _respond(result, service)


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/logout", response_model=MessageResponse)
def logout(
    session: AuthenticatedSession = Depends(get_current_session),
    service: AuthSessionService = Depends(get_auth_service),
) -> JSONResponse:
    """Revoke the presented token."""
    resp = _respond(service.logout(session.principal, session.token), service)
    clear_auth_cookie(resp)
    return resp


@router.post("/auth/logout-from-all", response_model=MessageResponse)
def logout_all(
    session: AuthenticatedSession = Depends(get_current_session),
    service: AuthSessionService = Depends(get_auth_service),
) -> JSONResponse:
    """Revoke every token of the caller, including the presented one."""
    resp = _respond(service.logout_all(session.principal), service)
    clear_auth_cookie(resp)
    return resp


@router.post("/auth/refresh", response_model=TokenResponse)
def refresh(
    session: AuthenticatedSession = Depends(get_current_session),
    service: AuthSessionService = Depends(get_auth_service),
) -> JSONResponse:
    """Invalidate the presented token and return a new one."""
    return _respond(service.refresh(session.principal, session.token), service)


@router.get("/auth/me", response_model=UserResponse)
def me(session: AuthenticatedSession = Depends(get_current_session)) -> UserResponse:
    """Return identity information for the currently authenticated user."""
    return _user_to_response(session.principal)

"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

The presented token is read from:
  1. Authorization: Bearer <token> header -- API clients and the SPA.
  2. access_token cookie -- set by login/refresh for browser clients.

A token authenticates only if TokenStore.lookup() finds a live row for it
and the owning user is still active. Both checks happen on every request, so
logout, logout-all and account deactivation take effect immediately.

try_get_session() is the soft variant (returns None on failure).
get_current_session() wraps it and raises HTTP 401 if unauthenticated.

Layer rule: no imports from api/. auth/dependencies.py may import from
fastapi because it is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from dataclasses import dataclass

from fastapi import HTTPException, Request

from auth.credentials import principal_from_user
from auth.models import Principal
from auth.service import AuthSessionService
from auth.store import UserStore
from auth.tokens import COOKIE_NAME, TokenStore


@dataclass(frozen=True)
class AuthenticatedSession:
    """The resolved caller: who they are and which token they presented."""

    principal: Principal
    token: str


def presented_token(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[7:].strip() or None
    return request.cookies.get(COOKIE_NAME) or None


def client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def get_auth_service(request: Request) -> AuthSessionService:
    return request.app.state.auth_service


def try_get_session(request: Request) -> AuthenticatedSession | None:
    """Resolve the caller from the presented token. Never raises."""
    token = presented_token(request)
    if not token:
        return None
    token_store: TokenStore = request.app.state.token_store
    record = token_store.lookup(token)
    if record is None:
        return None
    user_store: UserStore = request.app.state.user_store
    user = user_store.get_by_id(record.user_id)
    if user is None or not user.is_active:
        return None
    return AuthenticatedSession(principal=principal_from_user(user), token=token)


def get_current_session(request: Request) -> AuthenticatedSession:
    """Require authentication. Raises HTTP 401 if the request is not authenticated.

    Use as a FastAPI dependency:
        @router.post("/protected")
        def route(session: AuthenticatedSession = Depends(get_current_session)): ...
    """
    session = try_get_session(request)
    if session is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        )
    return session

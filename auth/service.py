"""
auth/service.py -- AuthSessionService: login, logout, refresh and password reset.

Each flow walks the same gates in a fixed order and stops at the first one
that fails:

    START -> IP_CHECKED -> CAPTCHA_CHECKED -> CREDENTIAL_CHECKED
          -> ACTIVE_CHECKED -> TOKEN_ISSUED

Gate failures come back as AuthResult(error=AuthError(...)); nothing is
raised and nothing is retried. The HTTP layer maps ErrorKind to a status.

Counting rules:
  A failed attempt (bad captcha, bad credentials, disabled account, unknown
  reset identity, rejected reset ticket) increments the identity counter once
  and the IP counter once. A request turned away by the IP gate increments
  only the IP counter. Success clears the identity counter.

The Principal for logout / logout_all / refresh is resolved by the caller
from the presented bearer token; this module never looks up a "current user".
"""

from __future__ import annotations

import logging

import requests
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from auth.broker import PasswordBroker, ResetDeliveryError, ResetLinkSender
from auth.captcha import CaptchaVerifier
from auth.credentials import CredentialVerifier, principal_from_user
from auth.models import (
    AuthError,
    AuthResult,
    AuthStage,
    ErrorKind,
    Principal,
    RateLimitScope,
    ResetStatus,
    TokenGrant,
)
from auth.ratelimit import CounterStore, RateLimiter, build_counter_store
from auth.store import UserStore, normalize_identity, redact_identity
from auth.tokens import TokenStore
from core.config import Settings

logger = logging.getLogger("authgate.auth.service")

MSG_LOGGED_OUT = "Successfully logged out"
MSG_LOGGED_OUT_ALL = "Successfully logged out from all sessions"
MSG_RESET_SENT = "Link for restore password has been sent to your email."

_RESET_FAILURE_MESSAGES = {
    ResetStatus.INVALID_USER: "Invalid password reset request.",
    ResetStatus.INVALID_TOKEN: "Invalid or expired password reset token.",
    ResetStatus.INVALID_PASSWORD: "Password does not meet the length requirements.",
}


class AuthSessionService:
    def __init__(
        self,
        rate_limiter: RateLimiter,
        captcha: CaptchaVerifier,
        credentials: CredentialVerifier,
        tokens: TokenStore,
        directory: UserStore,
        broker: PasswordBroker,
        revoke_tokens_on_password_reset: bool = True,
    ) -> None:
        self.rate_limiter = rate_limiter
        self.captcha = captcha
        self.credentials = credentials
        self.tokens = tokens
        self.directory = directory
        self.broker = broker
        self.revoke_tokens_on_password_reset = revoke_tokens_on_password_reset

    # ------------------------------------------------------------------
    # Gate helpers
    # ------------------------------------------------------------------

    def _fail(
        self,
        kind: ErrorKind,
        message: str,
        stage: AuthStage,
        *,
        scope: RateLimitScope | None = None,
    ) -> AuthResult:
        site_key = self.captcha.site_key if kind is ErrorKind.CAPTCHA_REQUIRED else None
        return AuthResult(error=AuthError(kind=kind, message=message, stage=stage, site_key=site_key, scope=scope))

    def _failed_attempt(self, identity: str, ip: str) -> None:
        self.rate_limiter.inc(identity)
        self.rate_limiter.inc_ip(ip)

    def _ip_gate(self, ip: str) -> AuthResult | None:
        if self.rate_limiter.allowed_ip(ip):
            return None
        self.rate_limiter.inc_ip(ip)
        logger.warning("Request from %s rejected by IP gate", ip)
        return self._fail(
            ErrorKind.RATE_LIMITED,
            "Enhance Your Calm",
            AuthStage.START,
            scope=RateLimitScope.IP,
        )

    def _captcha_gate(self, identity: str, captcha_token: str | None, ip: str, message: str) -> AuthResult | None:
        if self.captcha.exempt(identity) or self.captcha.verify(captcha_token, ip):
            return None
        self._failed_attempt(identity, ip)
        logger.info("Captcha required for %s from %s", redact_identity(identity), ip)
        return self._fail(ErrorKind.CAPTCHA_REQUIRED, message, AuthStage.IP_CHECKED)

    def _captcha_or(self, identity: str, kind: ErrorKind, message: str, stage: AuthStage) -> AuthResult:
        """After a counted failure: demand a captcha once the identity lost its exemption."""
        if not self.captcha.exempt(identity):
            return self._fail(ErrorKind.CAPTCHA_REQUIRED, "Captcha required.", stage)
        return self._fail(kind, message, stage)

    def _store_failure(self) -> AuthResult:
        """Database outage in a reset flow. Not counted against the caller."""
        return self._fail(
            ErrorKind.BROKER_FAILURE,
            "Password reset is temporarily unavailable. Try again later.",
            AuthStage.CAPTCHA_CHECKED,
        )

    def _grant(self, principal: Principal) -> AuthResult:
        issued = self.tokens.issue(principal)
        return AuthResult(
            grant=TokenGrant(token=issued.value, expires_in=self.tokens.ttl_seconds, principal=principal)
        )

    # ------------------------------------------------------------------
    # Flows
    # ------------------------------------------------------------------

    def login(self, identity: str | None, secret: str | None, captcha_token: str | None, ip: str) -> AuthResult:
        identity = normalize_identity(identity)
        if not identity:
            return self._fail(ErrorKind.MISSING_CREDENTIALS, "Login is required.", AuthStage.START)

        blocked = self._ip_gate(ip)
        if blocked is not None:
            return blocked

        needs_captcha = self._captcha_gate(identity, captcha_token, ip, "Captcha required.")
        if needs_captcha is not None:
            return needs_captcha

        principal = self.credentials.attempt(identity, secret)
        if principal is None:
            self._failed_attempt(identity, ip)
            logger.info("Failed login for %s from %s", redact_identity(identity), ip)
            return self._captcha_or(
                identity, ErrorKind.UNAUTHORIZED, "Invalid login or password.", AuthStage.CAPTCHA_CHECKED
            )

        if not principal.is_active:
            self._failed_attempt(identity, ip)
            logger.info("Login for disabled user %s refused", principal.id)
            return self._fail(ErrorKind.USER_DISABLED, "User is disabled.", AuthStage.CREDENTIAL_CHECKED)

        self.rate_limiter.forget(identity)
        result = self._grant(principal)
        self.directory.update_last_login(principal.id)
        logger.info("User %s logged in from %s", principal.id, ip)
        return result

    def logout(self, principal: Principal, token: str) -> AuthResult:
        if not self.tokens.revoke(principal, token):
            logger.debug("Logout for user %s found no matching token", principal.id)
        return AuthResult(message=MSG_LOGGED_OUT)

    def logout_all(self, principal: Principal) -> AuthResult:
        revoked = self.tokens.revoke_all_except(principal, None)
        logger.info("User %s ended all sessions (%d tokens revoked)", principal.id, revoked)
        return AuthResult(message=MSG_LOGGED_OUT_ALL)

    def refresh(self, principal: Principal, token: str) -> AuthResult:
        """Swap the presented token for a new one.

        If the presented token is already gone (a concurrent refresh or logout
        won), no new token is minted.
        """
        if not self.tokens.revoke(principal, token):
            return self._fail(ErrorKind.UNAUTHORIZED, "Token is no longer valid.", AuthStage.CREDENTIAL_CHECKED)
        return self._grant(principal)

    def send_password_reset(self, identity: str | None, captcha_token: str | None, ip: str) -> AuthResult:
        identity = normalize_identity(identity)
        if not identity:
            return self._fail(ErrorKind.MISSING_CREDENTIALS, "Login is required.", AuthStage.START)

        blocked = self._ip_gate(ip)
        if blocked is not None:
            return blocked

        generic = "User with such email isn't found or captcha required!"
        needs_captcha = self._captcha_gate(identity, captcha_token, ip, generic)
        if needs_captcha is not None:
            return needs_captcha

        try:
            user = self.directory.get_by_email(identity)
        except SQLAlchemyError:
            logger.exception("User directory lookup failed for %s", redact_identity(identity))
            return self._store_failure()
        if user is None:
            self._failed_attempt(identity, ip)
            if not self.captcha.exempt(identity):
                return self._fail(ErrorKind.CAPTCHA_REQUIRED, generic, AuthStage.CAPTCHA_CHECKED)
            return self._fail(ErrorKind.NOT_FOUND, "User with such email isn't found", AuthStage.CAPTCHA_CHECKED)

        self.rate_limiter.forget(identity)
        try:
            status = self.broker.send_reset_link(user)
        except ResetDeliveryError:
            return self._fail(
                ErrorKind.BROKER_FAILURE,
                "Could not send the password reset link. Try again later.",
                AuthStage.CREDENTIAL_CHECKED,
            )
        except SQLAlchemyError:
            logger.exception("Reset ticket store failed for user %s", user.id)
            return self._store_failure()
        if status is ResetStatus.RESET_THROTTLED:
            # Same answer as a fresh send so the throttle is not observable.
            logger.info("Reset link for user %s not re-sent (throttled)", user.id)
        return AuthResult(message=MSG_RESET_SENT)

    def process_password_reset(
        self,
        identity: str | None,
        reset_token: str | None,
        new_secret: str | None,
        captcha_token: str | None,
        ip: str,
    ) -> AuthResult:
        identity = normalize_identity(identity)
        if not identity:
            return self._fail(ErrorKind.MISSING_CREDENTIALS, "Login is required.", AuthStage.START)

        blocked = self._ip_gate(ip)
        if blocked is not None:
            return blocked

        needs_captcha = self._captcha_gate(identity, captcha_token, ip, "Captcha required.")
        if needs_captcha is not None:
            return needs_captcha

        try:
            status, user = self.broker.reset(identity, reset_token, new_secret)
        except SQLAlchemyError:
            logger.exception("Password reset for %s failed in the database", redact_identity(identity))
            return self._store_failure()
        if status is not ResetStatus.PASSWORD_RESET or user is None:
            self._failed_attempt(identity, ip)
            logger.info("Password reset for %s rejected: %s", redact_identity(identity), status.value)
            return self._captcha_or(
                identity,
                ErrorKind.UNAUTHORIZED,
                _RESET_FAILURE_MESSAGES.get(status, "Password reset failed."),
                AuthStage.CAPTCHA_CHECKED,
            )

        self.rate_limiter.forget(identity)
        principal = principal_from_user(user)
        if self.revoke_tokens_on_password_reset:
            self.tokens.revoke_all_except(principal, None)
        if not principal.is_active:
            return self._fail(ErrorKind.USER_DISABLED, "User is disabled.", AuthStage.CREDENTIAL_CHECKED)
        return self._grant(principal)


def build_service(
    settings: Settings,
    engine: Engine,
    *,
    counter_store: CounterStore | None = None,
    captcha_session: requests.Session | None = None,
    sender: ResetLinkSender | None = None,
) -> AuthSessionService:
    """Assemble the service and its collaborators from Settings.

    Keyword overrides exist for tests and for callers that already hold a
    shared counter store or HTTP session.
    """
    directory = UserStore(engine)
    rate_limiter = RateLimiter(
        counter_store or build_counter_store(settings.rate_limit_storage_uri, engine),
        ip_max_attempts=settings.ip_max_attempts,
        ip_window_seconds=settings.ip_window_seconds,
        captcha_exempt_attempts=settings.captcha_exempt_attempts,
        identity_window_seconds=settings.identity_window_seconds,
    )
    captcha = CaptchaVerifier(
        rate_limiter,
        secret_key=settings.recaptcha_secret_key,
        site_key=settings.recaptcha_site_key,
        verify_url=settings.recaptcha_verify_url,
        timeout=settings.recaptcha_timeout_seconds,
        min_score=settings.recaptcha_min_score,
        session=captcha_session,
    )
    sender = sender or ResetLinkSender(
        settings.reset_url_template,
        smtp_host=settings.smtp_host,
        smtp_port=settings.smtp_port,
        smtp_user=settings.smtp_user,
        smtp_password=settings.smtp_password,
        smtp_use_tls=settings.smtp_use_tls,
        from_email=settings.mail_from,
        debug=settings.debug,
    )
    broker = PasswordBroker(
        engine,
        directory,
        sender,
        secret_key=settings.secret_key,
        ttl_seconds=settings.reset_token_ttl_seconds,
        throttle_seconds=settings.reset_throttle_seconds,
        password_min_length=settings.password_min_length,
    )
    return AuthSessionService(
        rate_limiter=rate_limiter,
        captcha=captcha,
        credentials=CredentialVerifier(directory),
        tokens=TokenStore(engine, secret_key=settings.secret_key, ttl_seconds=settings.token_ttl_seconds),
        directory=directory,
        broker=broker,
        revoke_tokens_on_password_reset=settings.revoke_tokens_on_password_reset,
    )

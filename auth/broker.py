"""
auth/broker.py -- Password-reset tickets and reset-link delivery.

PasswordBroker owns the password_resets table. A ticket is a random token
mailed to the user; only its HMAC is stored, one live ticket per email.
Re-sending replaces the previous ticket, throttled so a caller cannot flood a
mailbox.

reset() consumes the ticket with one conditional DELETE. Its rowcount decides
whether this request is the one that used it, so a ticket works exactly once
even when two resets race. The new hash is written in the same transaction.
Passwords must fit the bcrypt input limit (MAX_PASSWORD_BYTES).

ResetLinkSender renders the link and mails it over SMTP. Without an SMTP host
it logs the link in debug mode and refuses to pretend delivery happened
otherwise.
"""

from __future__ import annotations

import logging
import secrets
import smtplib
import ssl
import time
from collections.abc import Callable
from email.message import EmailMessage
from urllib.parse import quote

from sqlalchemy import select
from sqlalchemy.engine import Engine

from auth.models import ResetStatus, User
from auth.store import UserStore, normalize_identity, password_resets, redact_identity, users
from auth.tokens import MAX_PASSWORD_BYTES, hash_password, hash_secret

logger = logging.getLogger("authgate.auth.broker")


class ResetDeliveryError(Exception):
    """The reset link could not be handed to the mail transport."""


class ResetLinkSender:
    def __init__(
        self,
        url_template: str,
        *,
        smtp_host: str = "",
        smtp_port: int = 587,
        smtp_user: str = "",
        smtp_password: str = "",
        smtp_use_tls: bool = True,
        from_email: str = "",
        debug: bool = False,
    ) -> None:
        self.url_template = url_template
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.debug = debug

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def build_link(self, email: str, token: str) -> str:
        return self.url_template.format(token=quote(token, safe=""), email=quote(email, safe=""))

    def send(self, email: str, token: str) -> None:
        link = self.build_link(email, token)
        if not self.is_configured:
            if self.debug:
                logger.info("SMTP not configured; password reset link for %s: %s", redact_identity(email), link)
                return
            raise ResetDeliveryError("SMTP is not configured")

        message = EmailMessage()
        message["Subject"] = "Reset your password"
        message["From"] = self.from_email
        message["To"] = email
        message.set_content(
            "A password reset was requested for your account.\n\n"
            f"Open this link to choose a new password:\n{link}\n\n"
            "If you did not request it, ignore this message."
        )
        try:
            with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=10) as smtp:
                if self.smtp_use_tls:
                    smtp.starttls(context=ssl.create_default_context())
                if self.smtp_user:
                    smtp.login(self.smtp_user, self.smtp_password)
                smtp.send_message(message)
        except (smtplib.SMTPException, OSError) as e:
            logger.warning("Reset mail to %s failed: %s", redact_identity(email), e)
            raise ResetDeliveryError(str(e)) from e
        logger.info("Password reset link sent to %s", redact_identity(email))


class PasswordBroker:
    def __init__(
        self,
        engine: Engine,
        directory: UserStore,
        sender: ResetLinkSender,
        secret_key: str,
        ttl_seconds: int = 3600,
        throttle_seconds: int = 60,
        password_min_length: int = 8,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.engine = engine
        self.directory = directory
        self.sender = sender
        self.ttl_seconds = ttl_seconds
        self.throttle_seconds = throttle_seconds
        self.password_min_length = password_min_length
        self._secret_key = secret_key
        self._clock = clock

    def _recently_created(self, email: str, now: float) -> bool:
        with self.engine.connect() as conn:
            created_at = conn.execute(
                select(password_resets.c.created_at).where(password_resets.c.email == email)
            ).scalar()
        return created_at is not None and created_at + self.throttle_seconds > now

    def send_reset_link(self, user: User) -> ResetStatus:
        """Create a ticket for user and deliver it.

        Raises ResetDeliveryError if the sender fails; the ticket is dropped so
        the throttle does not block an immediate retry.
        """
        email = normalize_identity(user.email)
        now = self._clock()
        if self._recently_created(email, now):
            logger.info("Reset link for %s throttled", redact_identity(email))
            return ResetStatus.RESET_THROTTLED

        raw = secrets.token_hex(32)
        with self.engine.begin() as conn:
            conn.execute(password_resets.delete().where(password_resets.c.email == email))
            conn.execute(
                password_resets.insert().values(
                    email=email,
                    token_hash=hash_secret(self._secret_key, raw),
                    created_at=now,
                    expires_at=now + self.ttl_seconds,
                )
            )
        try:
            self.sender.send(email, raw)
        except ResetDeliveryError:
            with self.engine.begin() as conn:
                conn.execute(password_resets.delete().where(password_resets.c.email == email))
            raise
        return ResetStatus.RESET_LINK_SENT

    def acceptable_password(self, secret: str | None) -> bool:
        """Between password_min_length characters and MAX_PASSWORD_BYTES bytes."""
        if not secret or len(secret) < self.password_min_length:
            return False
        return len(secret.encode("utf-8")) <= MAX_PASSWORD_BYTES

    def reset(self, identity: str, token: str | None, new_secret: str | None) -> tuple[ResetStatus, User | None]:
        """Consume the ticket and store the new password.

        The password is validated and hashed before the ticket is touched, so
        a rejected password does not burn a valid ticket. Ticket consumption
        and the password write share one transaction.

        Raises sqlalchemy.exc.SQLAlchemyError if the database fails; the
        ticket is left as it was.
        """
        user = self.directory.get_by_email(identity)
        if user is None:
            return ResetStatus.INVALID_USER, None
        if not self.acceptable_password(new_secret):
            return ResetStatus.INVALID_PASSWORD, None
        if not token:
            return ResetStatus.INVALID_TOKEN, None

        hashed = hash_password(new_secret)
        with self.engine.begin() as conn:
            result = conn.execute(
                password_resets.delete().where(
                    (password_resets.c.email == user.email)
                    & (password_resets.c.token_hash == hash_secret(self._secret_key, token))
                    & (password_resets.c.expires_at > self._clock())
                )
            )
            if result.rowcount != 1:
                return ResetStatus.INVALID_TOKEN, None
            conn.execute(users.update().where(users.c.id == user.id).values(hashed_password=hashed))

        logger.info("Password reset completed for user %s", user.id)
        return ResetStatus.PASSWORD_RESET, self.directory.get_by_id(user.id)

    def purge_expired(self) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(password_resets.delete().where(password_resets.c.expires_at <= self._clock()))
        return result.rowcount

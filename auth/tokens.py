"""
auth/tokens.py -- Password hashing, bearer-token minting, and the token table.

Security design decisions:
  Tokens: python-jose JWT (HS256) carrying sub (user id), a random jti, iat
       and exp. The jti makes every token unique and unguessable even when two
       are minted for the same user in the same second. A valid signature is
       not enough to authenticate: the token must also be present in the
       auth_tokens table, which is what makes logout and refresh revoke it.

  Storage: auth_tokens holds HMAC-SHA256(SECRET_KEY, token), never the token.
       Deterministic hashing gives an O(1) lookup through the UNIQUE index, and
       a leaked table is useless without SECRET_KEY.

  Passwords: bcrypt directly (no passlib wrapper). _DUMMY_HASH lets the
       credential check run bcrypt even for unknown identities so response
       time does not reveal whether an account exists.

Layer rule: no imports from api/. Import from core/ is allowed for cookie
settings only; TokenStore takes its secret and TTL explicitly.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
import time
from collections.abc import Callable

import bcrypt
from jose import JWTError, jwt
from sqlalchemy import select
from sqlalchemy.engine import Engine

from auth.models import IssuedToken, Principal, TokenRecord
from auth.store import auth_tokens

logger = logging.getLogger("authgate.auth.tokens")

_ALGORITHM = "HS256"

COOKIE_NAME = "access_token"

# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


# bcrypt input limit. Current bcrypt releases raise ValueError above it
# instead of truncating, so callers must reject longer passwords first.
MAX_PASSWORD_BYTES = 72


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    Raises ValueError if plain is longer than MAX_PASSWORD_BYTES in UTF-8.
    """
    encoded = plain.encode("utf-8")
    if len(encoded) > MAX_PASSWORD_BYTES:
        raise ValueError(f"Password must not exceed {MAX_PASSWORD_BYTES} bytes.")
    return bcrypt.hashpw(encoded, bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    encoded = plain.encode("utf-8")
    if len(encoded) > MAX_PASSWORD_BYTES:
        return False
    try:
        return bcrypt.checkpw(encoded, hashed.encode("utf-8"))
    except ValueError:
        # Malformed hash in the directory -- never a match.
        return False


# Computed once at module load so the first login attempt is not measurably
# slower than subsequent ones.
DUMMY_HASH: str = hash_password("authgate_timing_dummy")


# ---------------------------------------------------------------------------
# Token hashing
# ---------------------------------------------------------------------------


def hash_secret(secret_key: str, raw: str) -> str:
    """Return HMAC-SHA256(secret_key, raw) as a hex string.

    Used for bearer tokens and password-reset tickets alike.
    """
    return hmac.new(secret_key.encode(), raw.encode(), hashlib.sha256).hexdigest()


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class TokenStore:
    """Issues, looks up and revokes bearer tokens.

    Usage:
        tokens = TokenStore(engine, secret_key=settings.secret_key, ttl_seconds=3600)
        issued = tokens.issue(principal)
        record = tokens.lookup(issued.value)
        tokens.revoke(principal, issued.value)
    """

    def __init__(
        self,
        engine: Engine,
        secret_key: str,
        ttl_seconds: int = 3600,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.engine = engine
        self.ttl_seconds = ttl_seconds
        self._secret_key = secret_key
        self._clock = clock

    def _hash(self, token: str) -> str:
        return hash_secret(self._secret_key, token)

    def _encode(self, user_id: int, issued_at: float, expires_at: float) -> str:
        payload = {
            "sub": str(user_id),
            "jti": secrets.token_urlsafe(32),
            "iat": int(issued_at),
            "exp": int(expires_at),
        }
        return jwt.encode(payload, self._secret_key, algorithm=_ALGORITHM)

    def _decode(self, token: str) -> dict | None:
        """Verify the signature and claims. Returns the payload or None.

        Expiry is checked against the store's clock rather than jose's so the
        JWT and the table row agree on when a token dies.
        """
        try:
            payload = jwt.decode(token, self._secret_key, algorithms=[_ALGORITHM], options={"verify_exp": False})
        except JWTError:
            return None
        if "sub" not in payload or "exp" not in payload:
            return None
        try:
            if float(payload["exp"]) <= self._clock():
                return None
            int(payload["sub"])
        except (TypeError, ValueError):
            return None
        return payload

    def issue(self, principal: Principal) -> IssuedToken:
        """Mint a token for principal, persist its hash, and return it."""
        issued_at = self._clock()
        expires_at = issued_at + self.ttl_seconds
        value = self._encode(principal.id, issued_at, expires_at)
        with self.engine.begin() as conn:
            conn.execute(
                auth_tokens.insert().values(
                    user_id=principal.id,
                    token_hash=self._hash(value),
                    issued_at=issued_at,
                    expires_at=expires_at,
                )
            )
        return IssuedToken(value=value, user_id=principal.id, issued_at=issued_at, expires_at=expires_at)

    def lookup(self, token: str) -> TokenRecord | None:
        """Return the live record for token, or None if invalid, revoked or expired."""
        payload = self._decode(token)
        if payload is None:
            return None
        with self.engine.connect() as conn:
            row = conn.execute(
                auth_tokens.select().where(
                    (auth_tokens.c.token_hash == self._hash(token))
                    & (auth_tokens.c.user_id == int(payload["sub"]))
                    & (auth_tokens.c.expires_at > self._clock())
                )
            ).fetchone()
        return _row_to_token(row) if row is not None else None

    def revoke(self, principal: Principal, token: str) -> bool:
        """Delete exactly the one matching token. Returns False if it was not there."""
        with self.engine.begin() as conn:
            result = conn.execute(
                auth_tokens.delete().where(
                    (auth_tokens.c.user_id == principal.id) & (auth_tokens.c.token_hash == self._hash(token))
                )
            )
        return result.rowcount > 0

    def revoke_all_except(self, principal: Principal, keep: str | None = None) -> int:
        """Delete every token of principal except keep (None deletes all). Returns rows deleted."""
        condition = auth_tokens.c.user_id == principal.id
        if keep:
            condition = condition & (auth_tokens.c.token_hash != self._hash(keep))
        with self.engine.begin() as conn:
            result = conn.execute(auth_tokens.delete().where(condition))
        return result.rowcount

    def active_tokens(self, user_id: int) -> list[TokenRecord]:
        """Live tokens for a user, newest first."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                select(auth_tokens)
                .where((auth_tokens.c.user_id == user_id) & (auth_tokens.c.expires_at > self._clock()))
                .order_by(auth_tokens.c.issued_at.desc())
            ).fetchall()
        return [_row_to_token(r) for r in rows]

    def purge_expired(self) -> int:
        """Delete expired rows. Returns number of rows removed."""
        with self.engine.begin() as conn:
            result = conn.execute(auth_tokens.delete().where(auth_tokens.c.expires_at <= self._clock()))
        return result.rowcount


def _row_to_token(row) -> TokenRecord:
    return TokenRecord(
        id=row.id,
        user_id=row.user_id,
        token_hash=row.token_hash,
        issued_at=row.issued_at,
        expires_at=row.expires_at,
    )


# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------


def set_auth_cookie(response, token: str, max_age: int, secure: bool = False) -> None:
    """Write the bearer token as an httpOnly cookie on the response.

    httponly=True: JS cannot read the cookie (XSS mitigation).
    samesite="lax": not sent on cross-site POST (CSRF mitigation for most cases).
    max_age matches the token TTL so both expire together.
    """
    response.set_cookie(
        COOKIE_NAME,
        value=token,
        httponly=True,
        samesite="lax",
        secure=secure,
        max_age=max_age,
    )


def clear_auth_cookie(response) -> None:
    response.delete_cookie(COOKIE_NAME)

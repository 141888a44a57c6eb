"""
auth/store.py -- SQLAlchemy Core schema and the user directory repository.

Pattern: Repository + Data Mapper. UserStore is the repository for the users
table; _row_to_user is the mapper. TokenStore (auth/tokens.py), PasswordBroker
(auth/broker.py) and SqlCounterStore (auth/ratelimit.py) own the other tables
declared here and share one Engine created by create_store_engine().

Security:
  All queries use bound parameters. No f-strings in SQL.

  Token and reset-ticket values are never stored in clear. Their tables hold
  HMAC-SHA256(SECRET_KEY, value) only.

Timestamps:
  created_at / last_login are ISO 8601 strings for display. Anything compared
  against "now" (token expiry, ticket expiry, counter windows) is stored as a
  Float epoch so range checks are plain numeric comparisons.

DB path: auth/authgate.db unless DATABASE_URL is set.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path

from sqlalchemy import Column, Float, Integer, MetaData, String, Table, Text, create_engine, event
from sqlalchemy.engine import Engine

from auth.models import User

DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent / 'authgate.db'}"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

users = Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("full_name", String(255), nullable=False, server_default=""),
    Column("hashed_password", Text),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("created_at", String(32), nullable=False),
    Column("last_login", String(32)),
)

auth_tokens = Table(
    "auth_tokens",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("token_hash", String(64), nullable=False, unique=True),  # HMAC-SHA256 hex
    Column("issued_at", Float, nullable=False),
    Column("expires_at", Float, nullable=False, index=True),
)

password_resets = Table(
    "password_resets",
    metadata,
    Column("email", String(255), primary_key=True),  # one live ticket per email
    Column("token_hash", String(64), nullable=False),
    Column("created_at", Float, nullable=False),
    Column("expires_at", Float, nullable=False),
)

rate_limit_counters = Table(
    "rate_limit_counters",
    metadata,
    Column("key", String(320), primary_key=True),
    Column("count", Integer, nullable=False),
    Column("expires_at", Float, nullable=False),
)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def create_store_engine(db_url: str = "") -> Engine:
    """Create the shared Engine and make sure every auth table exists."""
    db_url = db_url or DEFAULT_DB_URL
    connect_args: dict = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    engine = create_engine(db_url, connect_args=connect_args)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _set_wal_mode)
    metadata.create_all(engine)
    return engine


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def normalize_identity(identity: str | None) -> str:
    """Canonical form of a login identity: stripped and lowercased."""
    return (identity or "").strip().lower()


def redact_identity(identity: str | None) -> str:
    """Log-safe form of an identity: jo***@example.com."""
    identity = normalize_identity(identity)
    if "@" not in identity:
        return f"{identity[:2]}***" if identity else "<empty>"
    local, domain = identity.split("@", 1)
    return f"{local[:2]}***@{domain}"


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for User records -- the user directory.

    Usage:
        engine = create_store_engine()
        store = UserStore(engine)
        store.create_user(User(email="a@x.com", hashed_password=hash_password("secret")))
        user = store.get_by_email("A@x.com")
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def create_user(self, user: User) -> int:
        """Insert a new user and return its assigned database ID.

        Raises sqlalchemy.exc.IntegrityError if the email already exists.
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                users.insert().values(
                    email=normalize_identity(user.email),
                    full_name=user.full_name,
                    hashed_password=user.hashed_password,
                    is_active=1 if user.is_active else 0,
                    created_at=_now_iso(),
                )
            )
            return result.inserted_primary_key[0]

    def get_by_email(self, email: str) -> User | None:
        """Look up a user by login identity (case-insensitive). Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(users.select().where(users.c.email == normalize_identity(email))).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_id(self, user_id: int) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(users.select().where(users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def set_active(self, user_id: int, active: bool) -> bool:
        with self.engine.begin() as conn:
            result = conn.execute(users.update().where(users.c.id == user_id).values(is_active=1 if active else 0))
        return result.rowcount > 0

    def update_last_login(self, user_id: int) -> None:
        """Stamp the current UTC timestamp as last_login after a successful login."""
        with self.engine.begin() as conn:
            conn.execute(users.update().where(users.c.id == user_id).values(last_login=_now_iso()))


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        email=row.email,
        full_name=row.full_name or "",
        hashed_password=row.hashed_password,
        is_active=bool(row.is_active),
        created_at=row.created_at,
        last_login=row.last_login,
    )

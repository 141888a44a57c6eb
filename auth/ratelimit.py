"""
auth/ratelimit.py -- Failure counters for the per-IP and per-identity gates.

Two layers:

  CounterStore -- keyed atomic increment with a fixed window. Expired keys
      read as zero; nothing needs to sweep them.
        LimitsCounterStore: wraps a `limits` storage backend, the same layer
            slowapi counts requests with. "memory://" for a single process,
            "redis://..." when several workers must share counters.
        SqlCounterStore: rate_limit_counters table in the auth database. The
            increment is a single UPDATE ... SET count = count + 1 inside a
            transaction, so concurrent failures on one key are never lost.

  RateLimiter -- the policy. Knows the thresholds and windows and answers
      allowed_ip() / allowed_without_captcha(). Holds no counters itself; the
      store is injected so tests and deployments choose the backend.

The IP counter counts every failed attempt from an address plus every attempt
that is turned away by the IP gate. The identity counter counts failed
attempts against one login identity and is cleared on success. Success never
clears the IP counter.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import Protocol

from limits.storage import storage_from_string
from sqlalchemy import select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from auth.store import normalize_identity, rate_limit_counters

logger = logging.getLogger("authgate.auth.ratelimit")


class CounterStore(Protocol):
    def incr(self, key: str, window_seconds: int) -> int: ...

    def get(self, key: str) -> int: ...

    def clear(self, key: str) -> None: ...


class LimitsCounterStore:
    """CounterStore backed by a `limits` storage URI."""

    def __init__(self, storage_uri: str = "memory://") -> None:
        self._storage = storage_from_string(storage_uri)

    def incr(self, key: str, window_seconds: int) -> int:
        return int(self._storage.incr(key, window_seconds))

    def get(self, key: str) -> int:
        return int(self._storage.get(key))

    def clear(self, key: str) -> None:
        self._storage.clear(key)


class SqlCounterStore:
    """CounterStore persisted in the rate_limit_counters table.

    The window starts at the first increment and is not extended by later
    ones. An expired row is replaced on the next increment and ignored by
    get() until then.
    """

    # Two concurrent "first" increments can race on the INSERT. The loser
    # retries and lands on the UPDATE branch.
    _MAX_RETRIES = 3

    def __init__(self, engine: Engine, clock: Callable[[], float] = time.time) -> None:
        self.engine = engine
        self._clock = clock

    def incr(self, key: str, window_seconds: int) -> int:
        for _ in range(self._MAX_RETRIES):
            now = self._clock()
            try:
                with self.engine.begin() as conn:
                    live = (rate_limit_counters.c.key == key) & (rate_limit_counters.c.expires_at > now)
                    result = conn.execute(
                        rate_limit_counters.update().where(live).values(count=rate_limit_counters.c.count + 1)
                    )
                    if result.rowcount == 0:
                        # Only an expired row may go. A live one belongs to a concurrent
                        # first increment, and the INSERT below then fails and retries.
                        expired = (rate_limit_counters.c.key == key) & (rate_limit_counters.c.expires_at <= now)
                        conn.execute(rate_limit_counters.delete().where(expired))
                        conn.execute(
                            rate_limit_counters.insert().values(key=key, count=1, expires_at=now + window_seconds)
                        )
                    return conn.execute(select(rate_limit_counters.c.count).where(live)).scalar_one()
            except IntegrityError:
                logger.debug("Counter insert race on %s, retrying", key)
        raise RuntimeError(f"Could not increment rate-limit counter {key!r}")

    def get(self, key: str) -> int:
        with self.engine.connect() as conn:
            count = conn.execute(
                select(rate_limit_counters.c.count).where(
                    (rate_limit_counters.c.key == key) & (rate_limit_counters.c.expires_at > self._clock())
                )
            ).scalar()
        return count or 0

    def clear(self, key: str) -> None:
        with self.engine.begin() as conn:
            conn.execute(rate_limit_counters.delete().where(rate_limit_counters.c.key == key))


def build_counter_store(storage_uri: str, engine: Engine) -> CounterStore:
    """Pick the backend named by RATE_LIMIT_STORAGE_URI ("database" = SQL table)."""
    if storage_uri == "database":
        return SqlCounterStore(engine)
    return LimitsCounterStore(storage_uri)


class RateLimiter:
    """Per-IP and per-identity failure policy over a CounterStore.

    ip_max_attempts: failures within ip_window_seconds after which an address
        is turned away regardless of credentials.
    captcha_exempt_attempts: failures within identity_window_seconds an
        identity may accumulate before a captcha is demanded.
    """

    def __init__(
        self,
        store: CounterStore,
        ip_max_attempts: int = 20,
        ip_window_seconds: int = 3600,
        captcha_exempt_attempts: int = 3,
        identity_window_seconds: int = 900,
    ) -> None:
        self.store = store
        self.ip_max_attempts = ip_max_attempts
        self.ip_window_seconds = ip_window_seconds
        self.captcha_exempt_attempts = captcha_exempt_attempts
        self.identity_window_seconds = identity_window_seconds

    @staticmethod
    def _ip_key(ip: str) -> str:
        return f"ip:{ip or 'unknown'}"

    @staticmethod
    def _identity_key(identity: str) -> str:
        return f"identity:{normalize_identity(identity)}"

    # -- IP gate ---------------------------------------------------------

    def ip_attempts(self, ip: str) -> int:
        return self.store.get(self._ip_key(ip))

    def allowed_ip(self, ip: str) -> bool:
        return self.ip_attempts(ip) < self.ip_max_attempts

    def inc_ip(self, ip: str) -> int:
        count = self.store.incr(self._ip_key(ip), self.ip_window_seconds)
        if count == self.ip_max_attempts:
            logger.warning("IP %s reached %d failed attempts -- blocking for the window", ip, count)
        return count

    # -- identity / captcha gate -----------------------------------------

    def attempts(self, identity: str) -> int:
        return self.store.get(self._identity_key(identity))

    def allowed_without_captcha(self, identity: str) -> bool:
        return self.attempts(identity) < self.captcha_exempt_attempts

    def inc(self, identity: str) -> int:
        return self.store.incr(self._identity_key(identity), self.identity_window_seconds)

    def forget(self, identity: str) -> None:
        self.store.clear(self._identity_key(identity))

"""
tests/test_ratelimit.py -- Unit tests for auth/ratelimit.py.

Covers:
  - Both CounterStore backends: increment, read, clear, key isolation
  - SqlCounterStore window semantics on a fake clock: lazy expiry, fixed window
  - SqlCounterStore under concurrent increments: no update is lost
  - RateLimiter: captcha-exempt threshold, forget(), IP threshold, identity
    normalization, IP and identity counters kept apart
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor

import pytest
from conftest import FakeClock
from sqlalchemy import create_engine, event

from auth.ratelimit import LimitsCounterStore, RateLimiter, SqlCounterStore, build_counter_store
from auth.store import create_store_engine, metadata


@pytest.fixture(params=["sql", "limits"])
def counter_store(request, clock: FakeClock):
    if request.param == "sql":
        engine = create_store_engine("sqlite:///:memory:")
        yield SqlCounterStore(engine, clock=clock)
        engine.dispose()
    else:
        yield LimitsCounterStore("memory://")


@pytest.fixture
def sql_store(clock: FakeClock):
    engine = create_store_engine("sqlite:///:memory:")
    yield SqlCounterStore(engine, clock=clock)
    engine.dispose()


class TestCounterStore:
    def test_absent_key_reads_zero(self, counter_store) -> None:
        assert counter_store.get("identity:nobody@x.com") == 0

    def test_incr_counts_up(self, counter_store) -> None:
        assert [counter_store.incr("k", 60) for _ in range(3)] == [1, 2, 3]
        assert counter_store.get("k") == 3

    def test_clear_resets_to_zero(self, counter_store) -> None:
        counter_store.incr("k", 60)
        counter_store.incr("k", 60)
        counter_store.clear("k")
        assert counter_store.get("k") == 0
        assert counter_store.incr("k", 60) == 1

    def test_clear_absent_key_is_noop(self, counter_store) -> None:
        counter_store.clear("never-set")
        assert counter_store.get("never-set") == 0

    def test_keys_are_independent(self, counter_store) -> None:
        counter_store.incr("a", 60)
        counter_store.incr("a", 60)
        counter_store.incr("b", 60)
        assert counter_store.get("a") == 2
        assert counter_store.get("b") == 1


class TestSqlCounterWindow:
    def test_expired_counter_reads_zero(self, sql_store: SqlCounterStore, clock: FakeClock) -> None:
        for _ in range(5):
            sql_store.incr("k", 60)
        clock.advance(61)
        assert sql_store.get("k") == 0, "Expired counter must read as zero without cleanup"

    def test_increment_after_expiry_starts_new_window(self, sql_store: SqlCounterStore, clock: FakeClock) -> None:
        for _ in range(5):
            sql_store.incr("k", 60)
        clock.advance(61)
        assert sql_store.incr("k", 60) == 1

    def test_later_increments_do_not_extend_window(self, sql_store: SqlCounterStore, clock: FakeClock) -> None:
        sql_store.incr("k", 60)
        clock.advance(59)
        sql_store.incr("k", 60)
        assert sql_store.get("k") == 2
        clock.advance(2)
        assert sql_store.get("k") == 0, "Window is fixed from the first increment"


@pytest.fixture
def file_engine(tmp_path):
    """File-backed SQLite engine that several threads can write through."""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'counters.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )

    @event.listens_for(engine, "connect")
    def _autocommit_driver(dbapi_conn, _record):
        dbapi_conn.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    metadata.create_all(engine)
    yield engine
    engine.dispose()


class TestSqlCounterConcurrency:
    def test_concurrent_increments_are_all_counted(self, file_engine) -> None:
        store = SqlCounterStore(file_engine)
        threads, per_thread = 8, 5

        def hammer() -> None:
            for _ in range(per_thread):
                store.incr("ip:203.0.113.7", 60)

        with ThreadPoolExecutor(max_workers=threads) as pool:
            for future in [pool.submit(hammer) for _ in range(threads)]:
                future.result()
        assert store.get("ip:203.0.113.7") == threads * per_thread

    def test_first_increment_only_deletes_expired_rows(self, file_engine) -> None:
        store = SqlCounterStore(file_engine)
        deletes: list[str] = []

        @event.listens_for(file_engine, "before_cursor_execute")
        def _capture(conn, cursor, statement, parameters, context, executemany):
            if statement.lstrip().upper().startswith("DELETE FROM RATE_LIMIT_COUNTERS"):
                deletes.append(statement)

        store.incr("k", 60)
        assert len(deletes) == 1
        assert "expires_at <=" in deletes[0], "A live counter from a concurrent increment must survive"

    def test_expired_row_replaced_live_row_kept(self, sql_store: SqlCounterStore, clock: FakeClock) -> None:
        sql_store.incr("old", 10)
        sql_store.incr("new", 120)
        clock.advance(11)
        assert sql_store.incr("old", 60) == 1
        assert sql_store.incr("new", 60) == 2


class TestBuildCounterStore:
    def test_database_selects_sql_backend(self) -> None:
        engine = create_store_engine("sqlite:///:memory:")
        assert isinstance(build_counter_store("database", engine), SqlCounterStore)
        engine.dispose()

    def test_uri_selects_limits_backend(self) -> None:
        engine = create_store_engine("sqlite:///:memory:")
        assert isinstance(build_counter_store("memory://", engine), LimitsCounterStore)
        engine.dispose()


class TestRateLimiter:
    @pytest.fixture
    def limiter(self, counter_store) -> RateLimiter:
        return RateLimiter(
            counter_store,
            ip_max_attempts=5,
            ip_window_seconds=3600,
            captcha_exempt_attempts=3,
            identity_window_seconds=900,
        )

    def test_fresh_identity_is_exempt(self, limiter: RateLimiter) -> None:
        assert limiter.allowed_without_captcha("a@x.com")

    @pytest.mark.parametrize("failures", [0, 1, 2, 3, 4, 7])
    def test_exemption_lost_at_threshold(self, limiter: RateLimiter, failures: int) -> None:
        """allowed_without_captcha is false exactly when failures >= threshold."""
        for _ in range(failures):
            limiter.inc("a@x.com")
        assert limiter.allowed_without_captcha("a@x.com") is (failures < 3)

    def test_forget_restores_never_failed_state(self, limiter: RateLimiter) -> None:
        for _ in range(10):
            limiter.inc("a@x.com")
        limiter.forget("a@x.com")
        assert limiter.attempts("a@x.com") == 0
        assert limiter.allowed_without_captcha("a@x.com")

    def test_identity_key_is_normalized(self, limiter: RateLimiter) -> None:
        limiter.inc("  A@X.com ")
        limiter.inc("a@x.com")
        assert limiter.attempts("a@X.COM") == 2

    def test_ip_blocked_at_threshold(self, limiter: RateLimiter) -> None:
        for _ in range(4):
            limiter.inc_ip("198.51.100.1")
        assert limiter.allowed_ip("198.51.100.1")
        limiter.inc_ip("198.51.100.1")
        assert not limiter.allowed_ip("198.51.100.1")

    def test_ip_counter_is_per_address(self, limiter: RateLimiter) -> None:
        for _ in range(5):
            limiter.inc_ip("198.51.100.1")
        assert limiter.allowed_ip("198.51.100.2")

    def test_identity_and_ip_counters_are_separate(self, limiter: RateLimiter) -> None:
        for _ in range(5):
            limiter.inc("a@x.com")
        assert limiter.ip_attempts("198.51.100.1") == 0
        limiter.forget("a@x.com")
        limiter.inc_ip("198.51.100.1")
        assert limiter.attempts("a@x.com") == 0

    def test_forget_leaves_ip_counter(self, limiter: RateLimiter) -> None:
        limiter.inc_ip("198.51.100.1")
        limiter.inc("a@x.com")
        limiter.forget("a@x.com")
        assert limiter.ip_attempts("198.51.100.1") == 1


class TestRateLimiterWindowExpiry:
    def test_exemption_returns_after_window(self, sql_store: SqlCounterStore, clock: FakeClock) -> None:
        limiter = RateLimiter(sql_store, captcha_exempt_attempts=3, identity_window_seconds=900)
        for _ in range(3):
            limiter.inc("a@x.com")
        assert not limiter.allowed_without_captcha("a@x.com")
        clock.advance(899)
        assert not limiter.allowed_without_captcha("a@x.com"), "Still inside the window"
        clock.advance(2)
        assert limiter.allowed_without_captcha("a@x.com")

    def test_ip_unblocked_after_window(self, sql_store: SqlCounterStore, clock: FakeClock) -> None:
        limiter = RateLimiter(sql_store, ip_max_attempts=2, ip_window_seconds=600)
        limiter.inc_ip("198.51.100.1")
        limiter.inc_ip("198.51.100.1")
        assert not limiter.allowed_ip("198.51.100.1")
        clock.advance(601)
        assert limiter.allowed_ip("198.51.100.1")

from contextlib import contextmanager
from datetime import datetime, timedelta, timezone

import pytest
from psycopg import errors
from psycopg_pool import PoolTimeout

from keyward.logging import get_logger
from keyward.storage.errors import BackendUnavailable, ConstraintViolation
from keyward.storage.models import (
    AccountStatusUpdate,
    AuditQuery,
    AuditStatus,
    LockoutState,
    Session,
    TokenPurpose,
)
from keyward.storage.postgres import PostgresStore

NOW = datetime(2026, 3, 1, 9, 30, tzinfo=timezone.utc)


class FakeCursor:
    def __init__(self, rowcount=0, rows=None):
        self.rowcount = rowcount
        self._rows = list(rows or [])

    def fetchone(self):
        return self._rows[0] if self._rows else None

    def fetchall(self):
        return list(self._rows)


class FakeConnection:
    """Records statements and replays scripted cursors or errors in order."""

    def __init__(self, results):
        self.results = list(results)
        self.executed = []

    def execute(self, sql, params=None):
        self.executed.append((" ".join(sql.split()), params))
        result = self.results.pop(0) if self.results else FakeCursor()
        if isinstance(result, Exception):
            raise result
        return result


class FakePool:
    def __init__(self, *results, error=None):
        self.conn = FakeConnection(results)
        self.error = error
        self.timeouts = []

    @contextmanager
    def connection(self, timeout=None):
        self.timeouts.append(timeout)
        if self.error is not None:
            raise self.error
        yield self.conn


def _store(pool) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.dsn = "postgresql://unit-test"
    store.timeout_seconds = 2.5
    store.logger = get_logger("keyward.storage.postgres")
    store.pool = pool
    return store


def _account_row(**overrides):
    row = {
        "id": "acct-1",
        "email": "user@example.com",
        "credential_hash": "$argon2id$stub",
        "salt": memoryview(bytes(range(32))),
        "is_verified": False,
        "is_active": True,
        "failed_login_attempts": 0,
        "last_failed_login_at": None,
        "locked": False,
        "locked_until": None,
        "created_at": NOW.replace(tzinfo=None),
        "last_login_at": None,
        "password_changed_at": None,
        "profile": '{"name": "User"}',
    }
    row.update(overrides)
    return row


def test_pool_timeout_maps_to_backend_unavailable():
    pool = FakePool(error=PoolTimeout("no connection"))
    store = _store(pool)

    with pytest.raises(BackendUnavailable) as excinfo:
        store.get_account("acct-1")

    assert excinfo.value.detail == {"timeout_seconds": 2.5}
    assert pool.timeouts == [2.5]


def test_statement_timeout_maps_to_backend_unavailable():
    store = _store(FakePool(errors.QueryCanceled("canceling statement due to statement timeout")))

    with pytest.raises(BackendUnavailable):
        store.get_session("sess-1")


def test_duplicate_email_maps_to_constraint_violation():
    store = _store(FakePool(errors.UniqueViolation("duplicate key")))

    with pytest.raises(ConstraintViolation) as excinfo:
        store.create_account("User@Example.com", "hash", bytes(32))

    assert excinfo.value.detail == {"field": "email"}


def test_create_account_normalizes_email():
    pool = FakePool(FakeCursor(rowcount=1))
    store = _store(pool)

    account = store.create_account(" User@Example.com ", "hash", bytes(32), profile={"a": 1})

    sql, params = pool.conn.executed[0]
    assert sql.startswith("INSERT INTO account")
    assert params[1] == "user@example.com"
    assert params[-1] == '{"a": 1}'
    assert account.email == "user@example.com"


def test_row_mapping_restores_bytes_json_and_utc():
    store = _store(FakePool(FakeCursor(rows=[_account_row()])))

    account = store.get_account("acct-1")

    assert account.salt == bytes(range(32))
    assert account.profile == {"name": "User"}
    assert account.created_at.tzinfo is not None


def test_compare_and_set_reports_lost_race():
    pool = FakePool(FakeCursor(rowcount=0))
    store = _store(pool)
    expected = LockoutState(failed_login_attempts=2)

    won = store.compare_and_set_lockout(
        "acct-1", expected, LockoutState(failed_login_attempts=3, last_failed_login_at=NOW)
    )

    assert won is False
    sql, params = pool.conn.executed[0]
    assert "locked_until IS NOT DISTINCT FROM" in sql
    assert params[-4:] == ("acct-1", 2, False, None)


def test_compare_and_set_reports_win():
    store = _store(FakePool(FakeCursor(rowcount=1)))

    assert store.compare_and_set_lockout("acct-1", LockoutState(), LockoutState()) is True


def test_unlock_builds_conditional_update():
    pool = FakePool(FakeCursor(rows=[_account_row()]))
    store = _store(pool)

    account = store.update_account_status(
        "acct-1", AccountStatusUpdate(account_locked=False, reset_failed_login_attempts=True)
    )

    sql, params = pool.conn.executed[0]
    assert sql.count("failed_login_attempts = 0") == 1
    assert "locked_until = %s" in sql
    assert params == (False, None, "acct-1")
    assert account.id == "acct-1"


def test_lock_without_end_time_clears_stale_locked_until():
    pool = FakePool(FakeCursor(rows=[_account_row(locked=True)]))
    store = _store(pool)

    store.update_account_status("acct-1", AccountStatusUpdate(account_locked=True))

    sql, params = pool.conn.executed[0]
    assert "locked = %s, locked_until = %s" in sql
    assert params == (True, None, "acct-1")


def test_lock_with_end_time_sets_locked_until():
    pool = FakePool(FakeCursor(rows=[_account_row(locked=True)]))
    store = _store(pool)
    until = NOW + timedelta(hours=2)

    store.update_account_status(
        "acct-1", AccountStatusUpdate(account_locked=True, account_locked_until=until)
    )

    _, params = pool.conn.executed[0]
    assert params == (True, until, "acct-1")


def test_session_fingerprint_collision_maps_to_constraint_violation():
    store = _store(FakePool(errors.UniqueViolation("duplicate key")))
    session = Session.new(
        "acct-1",
        access_fingerprint="a",
        refresh_fingerprint="r",
        ttl=timedelta(days=1),
        now=NOW,
    )

    with pytest.raises(ConstraintViolation):
        store.create_session(session)


def test_consume_token_without_owner_scopes_by_null():
    pool = FakePool(FakeCursor(rows=[]))
    store = _store(pool)

    assert store.consume_token(TokenPurpose.PASSWORD_RESET, "fp", NOW) is None

    sql, params = pool.conn.executed[0]
    assert "RETURNING *" in sql
    assert params == ("fp", "password_reset", NOW, None, None)


def test_audit_query_composes_filters():
    pool = FakePool(FakeCursor(rows=[]))
    store = _store(pool)

    store.list_audit_events(AuditQuery(account_id="acct-1", status=AuditStatus.FAILED, limit=5))

    sql, params = pool.conn.executed[0]
    assert "WHERE account_id = %s AND status = %s" in sql
    assert params == ("acct-1", "failed", 5)


def test_purge_expired_counts_rows():
    store = _store(FakePool(FakeCursor(rowcount=3), FakeCursor(rowcount=1)))

    assert store.purge_expired(NOW) == {"sessions": 3, "tokens": 1}

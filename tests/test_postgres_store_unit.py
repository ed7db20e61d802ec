import threading
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone

import pytest
from psycopg import errors
from psycopg_pool import PoolTimeout

from tessera.logging import get_logger
from tessera.storage.errors import ConstraintViolation, StoreUnavailable
from tessera.storage.models import AuditLogEntry, RefreshToken, User
from tessera.storage.postgres import PostgresStore, _from_row


class FakeCursor:
    def __init__(self, rows):
        self._rows = rows

    def fetchone(self):
        return self._rows[0] if self._rows else None

    def fetchall(self):
        return list(self._rows)


class FakeConnection:
    """Records statements and answers them from a queue of canned row lists."""

    def __init__(self, responses=None, error=None):
        self.statements = []
        self.responses = list(responses or [])
        self.error = error
        self.transactions = 0

    def execute(self, sql, params=None):
        self.statements.append((" ".join(sql.split()), params))
        if self.error is not None:
            raise self.error
        rows = self.responses.pop(0) if self.responses else []
        return FakeCursor(rows)

    @contextmanager
    def transaction(self):
        self.transactions += 1
        yield


class FakePool:
    def __init__(self, conn=None, error=None):
        self.conn = conn
        self.error = error
        self.checkouts = 0

    @contextmanager
    def connection(self):
        if self.error is not None:
            raise self.error
        self.checkouts += 1
        yield self.conn


def _store(pool) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.dsn = "postgresql://unit-test"
    store.pool = pool
    store.logger = get_logger("test")
    store._local = threading.local()
    return store


def _now():
    return datetime.now(timezone.utc)


def test_from_row_stringifies_uuid_and_ignores_extra_columns():
    user_uuid = uuid.uuid4()
    row = {
        "id": 1,
        "uuid": user_uuid,
        "email": "a@example.com",
        "password_hash": "h",
        "password_algo": "argon2id",
        "unrelated_column": "ignored",
    }

    user = _from_row(User, row)

    assert user.uuid == str(user_uuid)
    assert user.email == "a@example.com"


def test_redeem_refresh_token_uses_single_conditional_update():
    now = _now()
    row = {
        "id": 3,
        "token_hash": "abc",
        "user_id": 1,
        "session_id": str(uuid.uuid4()),
        "expires_at": now + timedelta(days=1),
        "used_at": now,
        "is_revoked": False,
    }
    conn = FakeConnection(responses=[[row]])
    store = _store(FakePool(conn))

    token = store.redeem_refresh_token("abc", now)

    assert isinstance(token, RefreshToken)
    assert token.used_at == now
    sql, params = conn.statements[0]
    assert sql.startswith("UPDATE refresh_tokens")
    assert "used_at IS NULL AND NOT is_revoked AND expires_at >" in sql
    assert params == (now, "abc", now)


def test_redeem_refresh_token_returns_none_when_no_row_matches():
    store = _store(FakePool(FakeConnection(responses=[[]])))

    assert store.redeem_refresh_token("abc", _now()) is None


def test_record_login_failure_increments_in_one_statement():
    until = _now() + timedelta(minutes=30)
    conn = FakeConnection(responses=[[{"failed_login_attempts": 5, "locked_until": until}]])
    store = _store(FakePool(conn))

    attempts, locked_until = store.record_login_failure(1, max_attempts=5, lockout_until=until)

    assert attempts == 5
    assert locked_until == until
    assert len(conn.statements) == 1
    assert "LEAST(failed_login_attempts + 1" in conn.statements[0][0]


def test_transaction_pins_one_connection_and_nests_savepoints():
    conn = FakeConnection(responses=[[], []])
    pool = FakePool(conn)
    store = _store(pool)

    with store.transaction():
        store.update_password(1, "hash", "argon2id")
        with store.transaction():
            store.update_password(1, "hash2", "argon2id")

    assert pool.checkouts == 1
    assert conn.transactions == 2
    assert len(conn.statements) == 2
    assert getattr(store._local, "conn", None) is None


def test_unique_violation_becomes_constraint_violation():
    conn = FakeConnection(error=errors.UniqueViolation("duplicate key"))
    store = _store(FakePool(conn))

    with pytest.raises(ConstraintViolation) as excinfo:
        store.create_user("a@example.com", "hash", "argon2id")

    assert excinfo.value.detail == {"field": "email"}


def test_pool_timeout_becomes_store_unavailable():
    store = _store(FakePool(error=PoolTimeout("no connection available")))

    with pytest.raises(StoreUnavailable):
        store.get_user(1)


def test_append_audit_entry_serializes_details():
    conn = FakeConnection(responses=[[{"id": 42}]])
    store = _store(FakePool(conn))
    entry = AuditLogEntry(action="user.login", success=False, details={"locked_until": _now()})

    stored = store.append_audit_entry(entry)

    assert stored.id == 42
    assert stored.action == "user.login"
    params = conn.statements[0][1]
    assert isinstance(params[5], str)
    assert "locked_until" in params[5]


def test_list_audit_entries_filters_and_decodes_details():
    row = {
        "id": 1,
        "user_id": 9,
        "session_id": None,
        "action": "user.login",
        "resource": "user",
        "resource_id": None,
        "details": '{"reason": "invalid_password"}',
        "success": False,
        "error_message": "invalid_password",
        "ip_addr": None,
        "user_agent": None,
        "created_at": _now(),
    }
    conn = FakeConnection(responses=[[row]])
    store = _store(FakePool(conn))

    entries = store.list_audit_entries(user_id=9, action="user.login", limit=10)

    assert entries[0].details == {"reason": "invalid_password"}
    sql, params = conn.statements[0]
    assert "WHERE user_id = %s AND action = %s" in sql
    assert params == [9, "user.login", 10, 0]

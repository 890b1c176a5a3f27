import uuid
from datetime import timedelta

import pytest
from psycopg import errors

from cronostudio.logging import get_logger
from cronostudio.storage.errors import ConstraintViolation
from cronostudio.storage.models import OneTimeTokenKind, utcnow
from cronostudio.storage.postgres import PostgresStore


class DummyPool:
    def connection(self):
        raise AssertionError("database access should be stubbed in unit tests")


class FakeResult:
    def __init__(self, row=None, rowcount=0, rows=None):
        self._row = row
        self._rows = rows or []
        self.rowcount = rowcount

    def fetchone(self):
        return self._row

    def fetchall(self):
        return self._rows


class FakeConnection:
    def __init__(self, results):
        self.results = list(results)
        self.statements = []

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def execute(self, sql, params=None):
        self.statements.append((" ".join(sql.split()), params))
        outcome = self.results.pop(0) if self.results else FakeResult()
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class FakePool:
    def __init__(self, *results):
        self.conn = FakeConnection(results)

    def connection(self):
        return self.conn


def _store(pool) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = pool
    store.dsn = "postgresql://unit-test"
    store.logger = get_logger("test")
    return store


def test_non_uuid_ids_never_reach_the_database():
    store = _store(DummyPool())
    assert store.get_production("not-a-uuid") is None
    assert store.get_idea("../../etc") is None


def test_consume_one_time_token_returns_owner():
    user_id = str(uuid.uuid4())
    pool = FakePool(FakeResult({"user_id": user_id}))
    store = _store(pool)

    assert store.consume_one_time_token("hash", OneTimeTokenKind.PASSWORD_RESET) == user_id
    sql, params = pool.conn.statements[0]
    assert sql.startswith("UPDATE one_time_tokens")
    assert "used_at IS NULL" in sql
    assert params == ("hash", "password_reset")


def test_consume_one_time_token_miss():
    store = _store(FakePool(FakeResult(None)))
    assert store.consume_one_time_token("hash", OneTimeTokenKind.EMAIL_VERIFICATION) is None


def test_consume_session_maps_row():
    now = utcnow()
    row = {
        "id": uuid.uuid4(),
        "user_id": uuid.uuid4(),
        "refresh_token_hash": "h",
        "created_at": now,
        "expires_at": now + timedelta(days=1),
        "revoked_at": now,
    }
    store = _store(FakePool(FakeResult(row)))
    sess = store.consume_session("h")
    assert sess.id == str(row["id"])
    assert sess.user_id == str(row["user_id"])
    assert sess.revoked_at == now


def test_unique_violation_becomes_constraint_violation():
    store = _store(FakePool(errors.UniqueViolation("duplicate key")))
    with pytest.raises(ConstraintViolation):
        store.create_user("a@example.com", "hash", "Name")


def test_revoke_user_sessions_keeps_current():
    pool = FakePool(FakeResult(rowcount=2))
    store = _store(pool)
    assert store.revoke_user_sessions("u", except_session_id="keep") == 2
    sql, params = pool.conn.statements[0]
    assert "id <> %s" in sql
    assert params == ("u", "keep")


def test_calendar_range_filters_on_target_date():
    start = utcnow()
    end = start + timedelta(days=30)
    pool = FakePool(FakeResult(rows=[]))
    store = _store(pool)

    assert store.list_productions_in_range("user-1", start, end) == []
    sql, params = pool.conn.statements[0]
    assert "target_date >= %s" in sql
    assert "target_date <= %s" in sql
    assert sql.endswith("ORDER BY target_date ASC")
    assert params == ("user-1", start, end)

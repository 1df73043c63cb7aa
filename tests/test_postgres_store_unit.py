import json
from datetime import timedelta

import pytest
from psycopg import errors

from termingate.storage.errors import StoreUnavailable
from termingate.storage.models import Principal, Session, utcnow
from termingate.storage.postgres import PostgresStore


class DownPool:
    def connection(self):
        raise errors.OperationalError("connection refused")


class FakeCursor:
    def __init__(self, row=None, rowcount=0):
        self._row = row
        self.rowcount = rowcount

    def fetchone(self):
        return self._row

    def fetchall(self):
        return [self._row] if self._row else []


class FakeConnection:
    """Just enough of the http_session table to exercise the session SQL."""

    def __init__(self, rows):
        self.rows = rows
        self.statements = []

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def _data(self, session_id):
        return json.loads(self.rows[session_id]["data"])

    def execute(self, sql, params=()):
        statement = " ".join(sql.split())
        self.statements.append((statement, params))
        if statement.startswith("INSERT INTO http_session"):
            self.rows[params[0]] = {"data": params[1]}
            return FakeCursor()
        if statement.startswith("SELECT data FROM http_session"):
            return FakeCursor(self.rows.get(params[0]))
        if statement.startswith("SELECT data->>'csrf_token'"):
            if params[0] not in self.rows:
                return FakeCursor()
            return FakeCursor({"csrf_token": self._data(params[0]).get("csrf_token")})
        if statement.startswith("UPDATE http_session SET expires_at"):
            _, iso, session_id = params
            if session_id not in self.rows:
                return FakeCursor(rowcount=0)
            data = self._data(session_id)
            data["expires_at"] = iso
            self.rows[session_id] = {"data": json.dumps(data)}
            return FakeCursor(rowcount=1)
        if statement.startswith("UPDATE http_session SET data = jsonb_set(data, '{csrf_token}'"):
            token, session_id = params
            if session_id not in self.rows or self._data(session_id).get("csrf_token"):
                return FakeCursor()
            data = self._data(session_id)
            data["csrf_token"] = token
            self.rows[session_id] = {"data": json.dumps(data)}
            return FakeCursor({"csrf_token": token})
        if statement.startswith("DELETE FROM http_session WHERE id"):
            removed = self.rows.pop(params[0], None)
            return FakeCursor(rowcount=1 if removed else 0)
        raise AssertionError(f"unexpected statement: {statement}")


class FakePool:
    def __init__(self):
        self.rows = {}
        self.conn = FakeConnection(self.rows)

    def connection(self):
        return self.conn


def _bare_store(pool) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = pool
    return store


def test_session_round_trip_through_sql():
    pool = FakePool()
    store = _bare_store(pool)
    session = Session.new()
    session.csrf_token = "c" * 64
    session.principal = Principal(
        user_id="u-1", username="chef", role="admin", login_time=utcnow()
    )

    store.save_session(session)
    loaded = store.get_session(session.id)

    assert not session.is_new
    assert loaded.principal.username == "chef"
    assert loaded.csrf_token == "c" * 64

    assert store.delete_session(session.id) is True
    assert store.delete_session(session.id) is False
    assert store.get_session(session.id) is None


def test_touch_moves_expiry_only():
    pool = FakePool()
    store = _bare_store(pool)
    session = Session.new()
    store.save_session(session)
    later = utcnow() + timedelta(hours=1)

    assert store.touch_session(session.id, later) is True

    statement, params = pool.conn.statements[-1]
    assert statement.startswith("UPDATE http_session")
    assert "WHERE id = %s" in statement
    assert params[0] == later
    assert store.get_session(session.id).expires_at == later


def test_touch_does_not_recreate_deleted_row():
    pool = FakePool()
    store = _bare_store(pool)
    session = Session.new()
    store.save_session(session)
    store.delete_session(session.id)

    assert store.touch_session(session.id, utcnow()) is False
    assert session.id not in pool.rows


def test_csrf_token_set_only_once():
    pool = FakePool()
    store = _bare_store(pool)
    session = Session.new()
    store.save_session(session)

    assert store.set_csrf_token_if_absent(session.id, "a" * 64) == "a" * 64
    assert store.set_csrf_token_if_absent(session.id, "b" * 64) == "a" * 64
    assert store.set_csrf_token_if_absent("missing", "c" * 64) is None
    assert store.get_session(session.id).csrf_token == "a" * 64


@pytest.mark.parametrize(
    "call",
    [
        lambda s: s.save_session(Session.new()),
        lambda s: s.get_session("abc"),
        lambda s: s.touch_session("abc", utcnow()),
        lambda s: s.set_csrf_token_if_absent("abc", "t" * 64),
        lambda s: s.delete_session("abc"),
        lambda s: s.delete_expired_sessions(),
        lambda s: s.verify_connection(),
    ],
)
def test_database_errors_become_store_unavailable(call):
    store = _bare_store(DownPool())
    with pytest.raises(StoreUnavailable):
        call(store)

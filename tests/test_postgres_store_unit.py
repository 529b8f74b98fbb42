import contextlib
import uuid
from datetime import datetime, timedelta, timezone

import psycopg
import pytest

from authcore.logging import get_logger
from authcore.service.authorization import Role
from authcore.storage.common import build_secret_cipher, seal_secret
from authcore.storage.errors import StoreUnavailable
from authcore.storage.postgres import PostgresStore


class DummyPool:
    def connection(self):
        raise AssertionError("database access should be stubbed in unit tests")


class FailingPool:
    @contextlib.contextmanager
    def connection(self):
        raise psycopg.OperationalError("connection to server at 10.0.0.5 failed")
        yield


def _bare_store(pool) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = pool
    store.logger = get_logger("test")
    store._cipher = build_secret_cipher("pg-unit-key")
    return store


def test_row_to_user_opens_sealed_secret():
    store = _bare_store(DummyPool())
    user_id = uuid.uuid4()
    row = {
        "id": user_id,
        "email": "a@example.com",
        "password_hash": "hash",
        "role": "manager",
        "tenant_id": "public",
        "is_active": True,
        "failed_login_attempts": 2,
        "lockout_until": None,
        "two_factor_secret": seal_secret(store._cipher, "JBSWY3DPEHPK3PXP"),
        "created_at": datetime.now(timezone.utc),
        "updated_at": datetime.now(timezone.utc),
    }

    user = store._row_to_user(row)

    assert user.id == str(user_id)
    assert user.role is Role.MANAGER
    assert user.failed_login_attempts == 2
    assert user.two_factor_secret == "JBSWY3DPEHPK3PXP"


def test_row_to_session_stringifies_uuids():
    sid = uuid.uuid4()
    now = datetime.now(timezone.utc)
    row = {
        "id": sid,
        "user_id": uuid.uuid4(),
        "family_id": sid,
        "token_id": "jti",
        "token_expires_at": now + timedelta(minutes=15),
        "refresh_expires_at": now + timedelta(days=1),
        "role": "user",
        "email": "a@example.com",
        "created_at": now,
        "last_accessed_at": now,
        "is_active": True,
        "sequence": 42,
    }

    session = PostgresStore._row_to_session(row)

    assert session.id == str(sid)
    assert session.family_id == str(sid)
    assert session.sequence == 42
    assert session.is_live(now)


def test_update_rejects_fields_outside_allow_list():
    store = _bare_store(DummyPool())
    with pytest.raises(ValueError):
        store.update_user("u", email="x@example.com")
    with pytest.raises(ValueError):
        store.update_session("s", user_id="other")


def test_operational_error_becomes_store_unavailable():
    store = _bare_store(FailingPool())
    with pytest.raises(StoreUnavailable):
        store.is_blacklisted("jti")


class ScriptedCursor:
    def __init__(self, row):
        self.row = row

    def fetchone(self):
        return self.row


class ScriptedConnection:
    def __init__(self, rows):
        self.rows = list(rows)
        self.statements = []
        self.rolled_back = False

    def execute(self, sql, params=None):
        self.statements.append(" ".join(sql.split()))
        return ScriptedCursor(self.rows.pop(0))

    def rollback(self):
        self.rolled_back = True


class ScriptedPool:
    def __init__(self, conn):
        self.conn = conn
        self.checkouts = 0

    @contextlib.contextmanager
    def connection(self):
        self.checkouts += 1
        yield self.conn


def _user_row(user_id):
    now = datetime.now(timezone.utc)
    return {
        "id": user_id,
        "email": "a@example.com",
        "password_hash": "new-hash",
        "role": "user",
        "tenant_id": "public",
        "is_active": True,
        "failed_login_attempts": 0,
        "lockout_until": None,
        "two_factor_secret": None,
        "created_at": now,
        "updated_at": now,
    }


def test_reset_completion_runs_in_one_transaction():
    user_id = uuid.uuid4()
    conn = ScriptedConnection([{"user_id": user_id}, _user_row(user_id)])
    pool = ScriptedPool(conn)
    store = _bare_store(pool)

    user = store.complete_password_reset(
        "h1", datetime.now(timezone.utc), password_hash="new-hash"
    )

    assert user.id == str(user_id)
    assert pool.checkouts == 1
    assert conn.statements[0].startswith("UPDATE password_reset_token")
    assert conn.statements[1].startswith("UPDATE app_user")
    assert not conn.rolled_back


def test_reset_completion_with_spent_token_touches_no_user():
    conn = ScriptedConnection([None])
    store = _bare_store(ScriptedPool(conn))

    assert store.complete_password_reset(
        "h1", datetime.now(timezone.utc), password_hash="new-hash"
    ) is None
    assert len(conn.statements) == 1


def test_reset_completion_rolls_back_when_user_is_gone():
    conn = ScriptedConnection([{"user_id": uuid.uuid4()}, None])
    store = _bare_store(ScriptedPool(conn))

    assert store.complete_password_reset(
        "h1", datetime.now(timezone.utc), password_hash="new-hash"
    ) is None
    assert conn.rolled_back

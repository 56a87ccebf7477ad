from contextlib import contextmanager
from datetime import timedelta
from pathlib import Path

import pytest
from psycopg import errors

from idprovider.storage.errors import ConstraintViolation
from idprovider.storage.models import RefreshToken, RoleName, utcnow
from idprovider.storage.postgres import PostgresStore


class FakeCursor:
    def __init__(self, row=None, rows=None, rowcount=0):
        self._row = row
        self._rows = rows or []
        self.rowcount = rowcount

    def fetchone(self):
        return self._row

    def fetchall(self):
        return list(self._rows)


class FakeConnection:
    """Records SQL and replays scripted cursors in call order."""

    def __init__(self, script=None, raise_on=None):
        self.executed = []
        self.script = list(script or [])
        self.raise_on = raise_on
        self.transactions = 0

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    @contextmanager
    def transaction(self):
        self.transactions += 1
        yield

    def execute(self, sql, params=None):
        self.executed.append((" ".join(sql.split()), params))
        if self.raise_on and self.raise_on in sql:
            raise errors.UniqueViolation("duplicate key value violates unique constraint")
        return self.script.pop(0) if self.script else FakeCursor()


class FakePool:
    def __init__(self, conn):
        self.conn = conn

    def connection(self):
        return self.conn


def _store(tmp_path: Path, conn: FakeConnection) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = FakePool(conn)
    store.fs_root = tmp_path
    return store


def test_rotate_locks_revokes_and_inserts_in_one_transaction(tmp_path):
    conn = FakeConnection(script=[FakeCursor(), FakeCursor(rowcount=2), FakeCursor()])
    store = _store(tmp_path, conn)
    record = RefreshToken.new("alice", "acme", timedelta(days=30), user_id="u-alice")

    revoked = store.rotate_refresh_token(record)

    assert revoked == 2
    assert conn.transactions == 1
    statements = [sql for sql, _ in conn.executed]
    assert statements[0].startswith("SELECT pg_advisory_xact_lock")
    assert statements[1].startswith("UPDATE refresh_token SET revoked = TRUE")
    assert statements[2].startswith("INSERT INTO refresh_token")
    assert conn.executed[1][1] == ("alice", "acme")
    assert conn.executed[2][1][1] == record.token
    assert conn.executed[2][1][-1] == "u-alice"


def test_rotate_maps_unique_violation(tmp_path):
    conn = FakeConnection(raise_on="INSERT INTO refresh_token")
    store = _store(tmp_path, conn)

    with pytest.raises(ConstraintViolation):
        store.rotate_refresh_token(RefreshToken.new("alice", "acme", timedelta(days=1)))


def test_create_tenant_maps_unique_violation(tmp_path):
    store = _store(tmp_path, FakeConnection(raise_on="INSERT INTO tenant"))

    with pytest.raises(ConstraintViolation) as excinfo:
        store.create_tenant("acme", "Acme Corp")
    assert excinfo.value.detail["tenant_id"] == "acme"


def test_refresh_token_row_mapping(tmp_path):
    now = utcnow()
    row = {
        "id": "5f0c6b8e-2c1c-4c59-8d7e-3f1d2c4b5a69",
        "token": "tok",
        "username": "alice",
        "tenant_id": "acme",
        "created_at": now,
        "expires_at": now + timedelta(days=30),
        "revoked": True,
        "user_id": "0b6f1f9e-7d43-4b8e-9a51-2f8c3e6d1a20",
    }
    store = _store(tmp_path, FakeConnection(script=[FakeCursor(row=row)]))

    record = store.get_refresh_token("tok")

    assert record.revoked is True
    assert record.user_id == "0b6f1f9e-7d43-4b8e-9a51-2f8c3e6d1a20"
    assert record.expires_at - record.created_at == timedelta(days=30)


def test_binding_row_mapping(tmp_path):
    row = {"id": "b1", "user_id": "u1", "tenant_id": "acme", "roles": ["ADMIN", "USER"]}
    store = _store(tmp_path, FakeConnection(script=[FakeCursor(row=row)]))

    binding = store.get_user_tenant_role("u1", "acme")

    assert binding.roles == {RoleName.ADMIN, RoleName.USER}


def test_schema_verification_reports_missing_tables(tmp_path):
    cursors = [FakeCursor(row={"oid": "x"})] * 7 + [FakeCursor(row={"oid": None})]
    store = _store(tmp_path, FakeConnection(script=cursors))

    with pytest.raises(RuntimeError, match="revoked_token"):
        store._verify_required_schema()

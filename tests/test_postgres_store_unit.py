from datetime import datetime, timezone
from types import SimpleNamespace

import pytest
from psycopg import errors
from psycopg.types.json import Jsonb

from hikariauth.logging import get_logger
from hikariauth.storage.errors import ConstraintViolation
from hikariauth.storage.migrations import run_migrations
from hikariauth.storage.models import AuditEntry, LoginSnapshot, User
from hikariauth.storage.postgres import PostgresStore

NOW = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


class _ConnCtx:
    def __init__(self, conn):
        self.conn = conn

    async def __aenter__(self):
        return self.conn

    async def __aexit__(self, exc_type, exc, tb):
        return False


class _Tx:
    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False


class DummyCursor:
    def __init__(self, rows, rowcount=0):
        self._rows = rows
        self.rowcount = rowcount

    async def fetchone(self):
        return self._rows[0] if self._rows else None

    async def fetchall(self):
        return list(self._rows)


class DummyConnection:
    def __init__(self, pool):
        self.pool = pool

    async def execute(self, sql, params=None):
        self.pool.executed.append((" ".join(sql.split()), params))
        if self.pool.error is not None:
            raise self.pool.error
        return DummyCursor(self.pool.rows, self.pool.rowcount)


class DummyPool:
    def __init__(self, rows=None, rowcount=0, error=None):
        self.rows = rows or []
        self.rowcount = rowcount
        self.error = error
        self.executed = []

    def connection(self):
        return _ConnCtx(DummyConnection(self))


def _store(pool) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = pool
    store.dsn = "postgresql://unit-test"
    store.logger = get_logger("test")
    return store


def _user_row(**overrides):
    row = {
        "id": "5f0c3c1e-8f8e-4b43-a2c1-8a3f7a3a0b11",
        "email": "a@example.com",
        "username": "alice",
        "password_hash": "$argon2id$x",
        "is_active": True,
        "is_verified": False,
        "is_admin": False,
        "deleted_at": None,
        "verification_token": None,
        "verification_expires": None,
        "password_reset_token": None,
        "password_reset_expires": None,
        "created_at": NOW,
        "updated_at": NOW,
        "last_login_at": None,
    }
    row.update(overrides)
    return row


class _UniqueViolation(errors.UniqueViolation):
    def __init__(self, constraint_name):
        super().__init__("duplicate key value violates unique constraint")
        self._constraint_name = constraint_name

    @property
    def diag(self):
        return SimpleNamespace(constraint_name=self._constraint_name)


async def test_lookups_filter_deleted_rows():
    pool = DummyPool(rows=[_user_row()])
    store = _store(pool)

    user = await store.get_user_by_email("a@example.com")

    assert user.username == "alice"
    sql, params = pool.executed[0]
    assert "deleted_at IS NULL" in sql
    assert params == ("a@example.com",)


async def test_missing_user_is_none():
    store = _store(DummyPool(rows=[]))
    assert await store.get_user("nope") is None


@pytest.mark.parametrize(
    "constraint, field",
    [("users_email_live_key", "email"), ("users_username_live_key", "username"), ("other", None)],
)
async def test_unique_violation_names_the_field(constraint, field):
    store = _store(DummyPool(error=_UniqueViolation(constraint)))
    user = User(id=User.new_id(), email="a@example.com", username="alice", password_hash="h")

    with pytest.raises(ConstraintViolation) as excinfo:
        await store.create_user(user)

    assert excinfo.value.field == field


async def test_mark_verified_is_conditional_update():
    pool = DummyPool(rows=[])
    store = _store(pool)

    assert await store.mark_email_verified("u1", "a@example.com", NOW) is None
    sql, params = pool.executed[0]
    assert "is_verified = FALSE" in sql
    assert "email = %s" in sql
    assert params == (NOW, "u1", "a@example.com")


async def test_password_reset_checks_token_and_expiry():
    pool = DummyPool(rows=[_user_row(password_hash="new")])
    store = _store(pool)

    updated = await store.complete_password_reset("u1", "tok", "new", NOW)

    assert updated.password_hash == "new"
    sql, params = pool.executed[0]
    assert "password_reset_token = %s AND password_reset_expires > %s" in sql
    assert params == ("new", NOW, "u1", "tok", NOW)


async def test_audit_insert_wraps_snapshots_as_jsonb():
    pool = DummyPool(rows=[{"id": 41}])
    store = _store(pool)
    entry = AuditEntry(
        action="login_failed",
        ip_address="203.0.113.7",
        success=False,
        new_values=LoginSnapshot(email="a@example.com"),
        created_at=NOW,
    )

    stored = await store.insert_audit_entry(entry)

    assert stored.id == 41
    _, params = pool.executed[0]
    old_values, new_values = params[6], params[7]
    assert old_values is None
    assert isinstance(new_values, Jsonb)
    assert new_values.obj["kind"] == "login"
    assert new_values.obj["email"] == "a@example.com"


async def test_audit_rows_decode_snapshots():
    row = {
        "id": 7,
        "user_id": None,
        "action": "login_failed",
        "entity_type": "session",
        "entity_id": None,
        "ip_address": "203.0.113.7",
        "user_agent": None,
        "old_values": None,
        "new_values": {"kind": "login", "email": "a@example.com", "remember_me": False, "schema_version": 1},
        "success": False,
        "error_message": "wrong password",
        "created_at": NOW,
    }
    store = _store(DummyPool(rows=[row]))

    (entry,) = await store.list_user_audit("u1", limit=10, offset=0)

    assert entry.new_values == LoginSnapshot(email="a@example.com")
    assert entry.error_message == "wrong password"


async def test_anomaly_queries_use_strict_thresholds():
    pool = DummyPool(
        rows=[
            {
                "ip_address": "203.0.113.66",
                "failed_attempts": 12,
                "unique_users_affected": 3,
                "actions_attempted": ["signup_attempt", "login_failed"],
            }
        ]
    )
    store = _store(pool)

    (hit,) = await store.suspicious_ips(NOW, 10)

    assert hit.actions_attempted == ["login_failed", "signup_attempt"]
    sql, params = pool.executed[0]
    assert "HAVING COUNT(*) > %s" in sql
    assert "ip_address != 'unknown'" in sql
    assert params == (NOW, 10)


async def test_delete_audit_reports_rowcount():
    pool = DummyPool(rowcount=3)
    store = _store(pool)
    assert await store.delete_audit_before(NOW) == 3


async def test_duplicate_migration_is_not_reapplied():
    class MigrationConnection(DummyConnection):
        def transaction(self):
            return _Tx()

        async def execute(self, sql, params=None):
            self.pool.executed.append((" ".join(sql.split()), params))
            if sql.startswith("INSERT INTO migrations"):
                raise _UniqueViolation("migrations_name_key")
            return DummyCursor([])

    pool = DummyPool()
    pool.connection = lambda: _ConnCtx(MigrationConnection(pool))
    store = _store(pool)

    assert await store.apply_migration("initial_schema", "CREATE TABLE x ()") is False
    assert pool.executed[0][0] == "CREATE TABLE x ()"



async def test_fresh_database_gets_schema_and_record():
    state = {"schema": False, "recorded": []}

    class FreshConnection(DummyConnection):
        def transaction(self):
            return _Tx()

        async def execute(self, sql, params=None):
            self.pool.executed.append((" ".join(sql.split()), params))
            if "FROM migrations" in sql and not state["schema"]:
                raise errors.UndefinedTable('relation "migrations" does not exist')
            if "CREATE TABLE IF NOT EXISTS migrations" in sql:
                state["schema"] = True
            if sql.startswith("INSERT INTO migrations"):
                state["recorded"].append(params[0])
            return DummyCursor([])

    pool = DummyPool()
    pool.connection = lambda: _ConnCtx(FreshConnection(pool))
    store = _store(pool)

    assert await store.applied_migration_names() == []
    assert await run_migrations(store) == ["initial_schema"]
    assert state["schema"] is True
    assert state["recorded"] == ["initial_schema"]

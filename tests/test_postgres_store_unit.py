import ipaddress
import json
from datetime import timedelta
from types import SimpleNamespace

import pytest
from psycopg import errors

from eventauth.storage.errors import ConstraintViolation
from eventauth.storage.models import CsrfToken, Session, UserPermission, utcnow
from eventauth.storage.postgres import REQUIRED_TABLES, PostgresStore

USER_ID = "7f9c2f0e-5a4b-4c1e-9d0a-3b2c1d4e5f60"
SESSION_ID = "0b8e6c52-1f3d-4a7e-8c9b-2d4f6a8b0c1e"


class DummyPool:
    def connection(self):
        raise AssertionError("database access should be stubbed in unit tests")


class FakeResult:
    def __init__(self, rows=None, rowcount=0):
        self.rows = rows or []
        self.rowcount = rowcount

    def fetchone(self):
        return self.rows[0] if self.rows else None

    def fetchall(self):
        return list(self.rows)


class FakeConnection:
    """Records statements and replays scripted results in order."""

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


class _UsernameTaken(errors.UniqueViolation):
    diag = SimpleNamespace(constraint_name="app_user_username_key")


def _store(pool) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = pool
    return store


def _user_row(**overrides):
    now = utcnow()
    row = {
        "id": "u1",
        "email": "alice@example.com",
        "username": "alice",
        "first_name": "Alice",
        "last_name": None,
        "role": "ORGANIZER",
        "is_active": True,
        "is_verified": False,
        "phone": None,
        "timezone": None,
        "language": "en",
        "failed_login_attempts": None,
        "locked_until": None,
        "last_login_at": None,
        "deleted_at": None,
        "created_at": now,
        "updated_at": now,
    }
    row.update(overrides)
    return row


class TestUsers:
    def test_create_user_maps_row(self):
        pool = FakePool(FakeResult([_user_row()]))
        user = _store(pool).create_user(" Alice@Example.com ", "alice", role="ORGANIZER")
        sql, params = pool.conn.statements[0]
        assert sql.startswith("INSERT INTO app_user")
        assert "lower(%s)" in sql
        assert params[1] == "Alice@Example.com"
        assert user.last_name == ""
        assert user.timezone == "UTC"
        assert user.failed_login_attempts == 0

    def test_duplicate_username_names_the_field(self):
        pool = FakePool(_UsernameTaken("duplicate key"))
        with pytest.raises(ConstraintViolation) as excinfo:
            _store(pool).create_user("alice@example.com", "alice", role="ONSITE")
        assert excinfo.value.field == "username"

    def test_duplicate_defaults_to_email(self):
        pool = FakePool(errors.UniqueViolation("duplicate key"))
        with pytest.raises(ConstraintViolation) as excinfo:
            _store(pool).create_user("alice@example.com", "alice", role="ONSITE")
        assert excinfo.value.field == "email"

    def test_update_rejects_unknown_columns_before_touching_db(self):
        with pytest.raises(ValueError):
            _store(DummyPool()).update_user("u1", password_hash="x")

    def test_update_builds_assignments(self):
        pool = FakePool(FakeResult([_user_row(is_active=False)]))
        user = _store(pool).update_user(USER_ID, is_active=False, failed_login_attempts=0)
        sql, params = pool.conn.statements[0]
        assert "is_active = %s, failed_login_attempts = %s, updated_at = now()" in sql
        assert params == [False, 0, USER_ID]
        assert user.is_active is False

    def test_save_password_for_missing_user(self):
        pool = FakePool(errors.ForeignKeyViolation("fk"))
        with pytest.raises(ConstraintViolation):
            _store(pool).save_password("missing", "hash")

    def test_create_user_writes_credential_in_same_connection(self):
        pool = FakePool(FakeResult([_user_row()]), FakeResult())
        _store(pool).create_user(
            "alice@example.com", "alice", role="ONSITE", password_hash="argon2-hash"
        )
        (user_sql, user_params), (cred_sql, cred_params) = pool.conn.statements
        assert user_sql.startswith("INSERT INTO app_user")
        assert cred_sql.startswith("INSERT INTO user_credential")
        assert cred_params == (user_params[0], "argon2-hash", "argon2id")

    def test_create_user_without_password_skips_credential(self):
        pool = FakePool(FakeResult([_user_row()]))
        _store(pool).create_user("alice@example.com", "alice", role="ONSITE")
        assert len(pool.conn.statements) == 1


class TestSessions:
    def test_session_row_mapping(self):
        now = utcnow()
        row = {
            "id": "s1",
            "user_id": "u1",
            "session_token": "tok",
            "refresh_token_hash": None,
            "created_at": now,
            "expires_at": now + timedelta(hours=1),
            "last_activity_at": None,
            "is_active": True,
            "ip_addr": ipaddress.ip_address("10.0.0.1"),
            "user_agent": "pytest",
            "remember_me": False,
            "access_jti": "j1",
            "access_expires_at": None,
            "revoked_at": None,
        }
        session = _store(FakePool(FakeResult([row]))).get_session(SESSION_ID)
        assert session.ip_addr == "10.0.0.1"
        assert session.refresh_token_hash == ""
        assert session.last_activity_at == now

    def test_rotation_reports_lost_race(self):
        pool = FakePool(FakeResult([]))
        now = utcnow()
        rotated = _store(pool).rotate_refresh_token(
            SESSION_ID, "old", "new", access_jti="j2", access_expires_at=now, now=now
        )
        assert rotated is False
        sql, params = pool.conn.statements[0]
        assert "WHERE id = %s AND refresh_token_hash = %s AND is_active" in sql
        assert params[-3:] == (SESSION_ID, "old", now)

    def test_delete_stale_sessions_returns_rowcount(self):
        pool = FakePool(FakeResult(rowcount=3))
        assert _store(pool).delete_stale_sessions(utcnow()) == 3


class TestJsonColumns:
    def test_role_permissions_decoded_from_text(self):
        row = {"name": "ONSITE", "permissions": json.dumps({"project": ["read"]}), "description": None}
        role = _store(FakePool(FakeResult([row]))).get_role("ONSITE")
        assert role.permissions == {"project": ["read"]}
        assert role.description == ""

    def test_user_permissions_filter_by_resource(self):
        row = {
            "id": "p1",
            "user_id": "u1",
            "resource_type": "bom",
            "actions": ["read", "write"],
            "expires_at": None,
            "granted_by": None,
            "created_at": utcnow(),
        }
        pool = FakePool(FakeResult([row]))
        grants = _store(pool).list_user_permissions(USER_ID, utcnow(), "bom")
        sql, params = pool.conn.statements[0]
        assert "resource_type IN (%s, '*')" in sql
        assert params[-1] == "bom"
        assert grants[0].actions == ["read", "write"]

    def test_security_log_filters(self):
        pool = FakePool(FakeResult([]))
        _store(pool).list_security_log(activity_type="IP-Mismatch", limit=5)
        sql, params = pool.conn.statements[0]
        assert "WHERE activity_type = %s" in sql
        assert params == ["IP-Mismatch", 5]


def _session(ip_addr):
    now = utcnow()
    return Session(
        id=SESSION_ID,
        user_id=USER_ID,
        session_token="tok",
        created_at=now,
        expires_at=now + timedelta(hours=1),
        last_activity_at=now,
        ip_addr=ip_addr,
    )


class TestTypedColumns:
    """Values that Postgres would reject as INET or UUID never reach a query."""

    @pytest.mark.parametrize(
        "raw,stored",
        [
            ("unknown", None),
            ("", None),
            ("203.0.113.7, 10.0.0.1", None),
            (" 10.0.0.1 ", "10.0.0.1"),
            ("2001:DB8::1", "2001:db8::1"),
        ],
    )
    def test_session_ip_normalized(self, raw, stored):
        pool = FakePool(FakeResult())
        _store(pool).create_session(_session(raw))
        _, params = pool.conn.statements[0]
        assert params[8] == stored

    def test_csrf_ip_normalized(self):
        pool = FakePool(FakeResult())
        token = CsrfToken(
            token="abc", expires_at=utcnow() + timedelta(minutes=5), ip_address="testclient"
        )
        stored = _store(pool).create_csrf_token(token)
        _, params = pool.conn.statements[0]
        assert params[4] is None
        assert stored.ip_address == "testclient"

    def test_non_uuid_lookups_skip_the_database(self):
        store = _store(DummyPool())
        now = utcnow()
        assert store.get_user("xyz") is None
        assert store.update_user("xyz", is_active=False) is None
        assert store.get_password_record("xyz") is None
        assert store.get_session("not-a-uuid") is None
        assert store.deactivate_session("not-a-uuid", now) is None
        assert store.find_active_session("not-a-uuid", "hash", now) is None
        assert store.rotate_refresh_token(
            "not-a-uuid", "a", "b", access_jti="j", access_expires_at=now, now=now
        ) is False
        assert store.list_active_sessions("xyz", now) == []
        assert store.list_user_permissions("xyz", now) == []

    def test_grant_to_non_uuid_user_is_a_constraint_violation(self):
        grant = UserPermission(id=SESSION_ID, user_id="xyz", resource_type="bom", actions=["write"])
        with pytest.raises(ConstraintViolation):
            _store(DummyPool()).grant_user_permission(grant)


class TestSchemaCheck:
    def test_missing_tables_reported(self):
        results = [FakeResult([{"oid": "x"}]) for _ in REQUIRED_TABLES]
        results[0] = FakeResult([{"oid": None}])
        store = _store(FakePool(*results))
        with pytest.raises(RuntimeError) as excinfo:
            store._verify_required_schema()
        assert REQUIRED_TABLES[0] in str(excinfo.value)

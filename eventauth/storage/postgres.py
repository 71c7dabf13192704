from __future__ import annotations

import json
import uuid
from datetime import datetime
from ipaddress import ip_address
from typing import Any, Dict, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from eventauth.logging import get_logger
from eventauth.storage.errors import ConstraintViolation
from eventauth.storage.models import (
    BlacklistedToken,
    CsrfToken,
    OwnedResource,
    RoleDefinition,
    SecurityLogEntry,
    Session,
    User,
    UserPermission,
    utcnow,
)

_USER_COLUMNS = frozenset(
    {
        "email",
        "username",
        "first_name",
        "last_name",
        "role",
        "is_active",
        "is_verified",
        "phone",
        "timezone",
        "language",
        "failed_login_attempts",
        "locked_until",
        "last_login_at",
        "deleted_at",
    }
)

REQUIRED_TABLES = (
    "app_user",
    "user_credential",
    "auth_session",
    "blacklisted_token",
    "csrf_token",
    "app_role",
    "user_permission",
    "security_log",
    "owned_resource",
)


def _is_uuid(value: Any) -> bool:
    try:
        uuid.UUID(str(value))
    except ValueError:
        return False
    return True


def _inet(value: Optional[str]) -> Optional[str]:
    """Normalize an address for an INET column; anything unparsable is stored as NULL."""
    if not value:
        return None
    try:
        return str(ip_address(value.strip()))
    except ValueError:
        return None


def _unique_field(exc: errors.UniqueViolation, default: str) -> str:
    constraint = getattr(getattr(exc, "diag", None), "constraint_name", None) or ""
    if "username" in constraint:
        return "username"
    if "email" in constraint:
        return "email"
    return default


class PostgresStore:
    """Postgres-backed credential store (schema in ``scripts/schema.sql``)."""

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def _verify_required_schema(self) -> None:
        with self._connect() as conn:
            missing_tables = []
            for table in REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)
        if missing_tables:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Apply scripts/schema.sql first.".format(
                    ", ".join(sorted(missing_tables))
                )
            )

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    # row mapping
    @staticmethod
    def _user_from_row(row: Dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            username=row["username"],
            first_name=row.get("first_name") or "",
            last_name=row.get("last_name") or "",
            role=row.get("role") or "ONSITE",
            is_active=row.get("is_active", True),
            is_verified=row.get("is_verified", False),
            phone=row.get("phone"),
            timezone=row.get("timezone") or "UTC",
            language=row.get("language") or "de",
            failed_login_attempts=row.get("failed_login_attempts") or 0,
            locked_until=row.get("locked_until"),
            last_login_at=row.get("last_login_at"),
            deleted_at=row.get("deleted_at"),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
        )

    @staticmethod
    def _session_from_row(row: Dict[str, Any]) -> Session:
        raw_ip = row.get("ip_addr")
        return Session(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            session_token=row["session_token"],
            refresh_token_hash=row.get("refresh_token_hash") or "",
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            last_activity_at=row.get("last_activity_at") or row["created_at"],
            is_active=row.get("is_active", True),
            ip_addr=str(raw_ip) if raw_ip is not None else None,
            user_agent=row.get("user_agent"),
            remember_me=row.get("remember_me", False),
            access_jti=row.get("access_jti"),
            access_expires_at=row.get("access_expires_at"),
            revoked_at=row.get("revoked_at"),
        )

    @staticmethod
    def _csrf_from_row(row: Dict[str, Any]) -> CsrfToken:
        raw_ip = row.get("ip_address")
        return CsrfToken(
            token=row["token"],
            expires_at=row["expires_at"],
            user_id=str(row["user_id"]) if row.get("user_id") else None,
            used=row.get("used", False),
            ip_address=str(raw_ip) if raw_ip is not None else None,
            user_agent=row.get("user_agent"),
            created_at=row.get("created_at") or utcnow(),
        )

    @staticmethod
    def _json(value: Any) -> Any:
        if isinstance(value, str):
            try:
                return json.loads(value)
            except json.JSONDecodeError:
                return {}
        return value

    # users
    def create_user(
        self,
        email: str,
        username: str,
        *,
        role: str,
        first_name: str = "",
        last_name: str = "",
        phone: Optional[str] = None,
        timezone: str = "UTC",
        language: str = "de",
        is_active: bool = True,
        password_hash: Optional[str] = None,
        password_algo: str = "argon2id",
    ) -> User:
        user_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, email, username, first_name, last_name, role, phone, timezone, language, is_active)
                    VALUES (%s, lower(%s), %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        user_id,
                        email.strip(),
                        username,
                        first_name,
                        last_name,
                        role,
                        phone,
                        timezone,
                        language,
                        is_active,
                    ),
                ).fetchone()
                # same transaction: a user row never exists without its credential
                if password_hash is not None:
                    conn.execute(
                        """
                        INSERT INTO user_credential (user_id, password_hash, password_algo, last_updated_at)
                        VALUES (%s, %s, %s, now())
                        """,
                        (user_id, password_hash, password_algo),
                    )
        except errors.UniqueViolation as exc:
            field = _unique_field(exc, "email")
            raise ConstraintViolation(f"{field} already exists", {"field": field}) from exc
        return self._user_from_row(row)

    def get_user(self, user_id: str) -> Optional[User]:
        if not _is_uuid(user_id):
            return None
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM app_user WHERE id = %s", (user_id,)).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = lower(%s)", (email.strip(),)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_username(self, username: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE lower(username) = lower(%s)", (username,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def update_user(self, user_id: str, **fields: Any) -> Optional[User]:
        unknown = set(fields) - _USER_COLUMNS
        if unknown:
            raise ValueError(f"cannot update user fields: {', '.join(sorted(unknown))}")
        if not _is_uuid(user_id):
            return None
        if not fields:
            return self.get_user(user_id)
        assignments = ", ".join(f"{name} = %s" for name in fields)
        params = list(fields.values()) + [user_id]
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"UPDATE app_user SET {assignments}, updated_at = now() WHERE id = %s RETURNING *",
                    params,
                ).fetchone()
        except errors.UniqueViolation as exc:
            field = _unique_field(exc, "email")
            raise ConstraintViolation(f"{field} already exists", {"field": field}) from exc
        return self._user_from_row(row) if row else None

    def increment_failed_logins(
        self, user_id: str, *, max_attempts: int, lock_until: datetime
    ) -> Optional[User]:
        if not _is_uuid(user_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user
                SET failed_login_attempts = failed_login_attempts + 1,
                    locked_until = CASE
                        WHEN %s > 0 AND failed_login_attempts + 1 >= %s THEN %s
                        ELSE locked_until
                    END,
                    updated_at = now()
                WHERE id = %s
                RETURNING *
                """,
                (max_attempts, max_attempts, lock_until, user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    # credentials
    def save_password(
        self, user_id: str, password_hash: str, password_algo: str = "argon2id"
    ) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_credential (user_id, password_hash, password_algo, last_updated_at)
                    VALUES (%s, %s, %s, now())
                    ON CONFLICT (user_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        password_algo = EXCLUDED.password_algo,
                        last_updated_at = now()
                    """,
                    (user_id, password_hash, password_algo),
                )
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation(
                "user not found for credentials", {"user_id": user_id}
            ) from exc

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        if not _is_uuid(user_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM user_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return str(row["password_hash"]), str(row["password_algo"])

    # sessions
    def create_session(self, session: Session) -> Session:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO auth_session (
                        id, user_id, session_token, refresh_token_hash, created_at, expires_at,
                        last_activity_at, is_active, ip_addr, user_agent, remember_me,
                        access_jti, access_expires_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        session.id,
                        session.user_id,
                        session.session_token,
                        session.refresh_token_hash,
                        session.created_at,
                        session.expires_at,
                        session.last_activity_at,
                        session.is_active,
                        _inet(session.ip_addr),
                        session.user_agent,
                        session.remember_me,
                        session.access_jti,
                        session.access_expires_at,
                    ),
                )
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation(
                "session user missing", {"user_id": session.user_id}
            ) from exc
        return session

    def get_session(self, session_id: str) -> Optional[Session]:
        if not _is_uuid(session_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE id = %s", (session_id,)
            ).fetchone()
        return self._session_from_row(row) if row else None

    def find_active_session(
        self, session_id: str, refresh_token_hash: str, now: datetime
    ) -> Optional[Session]:
        if not _is_uuid(session_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM auth_session
                WHERE id = %s AND refresh_token_hash = %s AND is_active AND expires_at > %s
                """,
                (session_id, refresh_token_hash, now),
            ).fetchone()
        return self._session_from_row(row) if row else None

    def rotate_refresh_token(
        self,
        session_id: str,
        expected_hash: str,
        new_hash: str,
        *,
        access_jti: str,
        access_expires_at: datetime,
        now: datetime,
    ) -> bool:
        if not _is_uuid(session_id):
            return False
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE auth_session
                SET refresh_token_hash = %s, access_jti = %s, access_expires_at = %s, last_activity_at = %s
                WHERE id = %s AND refresh_token_hash = %s AND is_active AND expires_at > %s
                RETURNING id
                """,
                (new_hash, access_jti, access_expires_at, now, session_id, expected_hash, now),
            ).fetchone()
        return row is not None

    def touch_session(self, session_id: str, now: datetime) -> None:
        if not _is_uuid(session_id):
            return
        with self._connect() as conn:
            conn.execute(
                "UPDATE auth_session SET last_activity_at = %s WHERE id = %s",
                (now, session_id),
            )

    def deactivate_session(self, session_id: str, now: datetime) -> Optional[Session]:
        if not _is_uuid(session_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE auth_session
                SET is_active = FALSE, revoked_at = COALESCE(revoked_at, %s)
                WHERE id = %s
                RETURNING *
                """,
                (now, session_id),
            ).fetchone()
        return self._session_from_row(row) if row else None

    def deactivate_user_sessions(
        self, user_id: str, now: datetime, *, except_session_id: Optional[str] = None
    ) -> List[Session]:
        if not _is_uuid(user_id):
            return []
        with self._connect() as conn:
            rows = conn.execute(
                """
                UPDATE auth_session
                SET is_active = FALSE, revoked_at = %s
                WHERE user_id = %s AND is_active AND (%s::text IS NULL OR id::text <> %s::text)
                RETURNING *
                """,
                (now, user_id, except_session_id, except_session_id),
            ).fetchall()
        return [self._session_from_row(row) for row in rows]

    def list_active_sessions(self, user_id: str, now: datetime) -> List[Session]:
        if not _is_uuid(user_id):
            return []
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM auth_session
                WHERE user_id = %s AND is_active AND expires_at > %s
                ORDER BY last_activity_at DESC
                """,
                (user_id, now),
            ).fetchall()
        return [self._session_from_row(row) for row in rows]

    def delete_stale_sessions(self, now: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM auth_session WHERE NOT is_active AND expires_at <= %s",
                (now,),
            )
            return result.rowcount

    # token blacklist
    def blacklist_token(self, entry: BlacklistedToken) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO blacklisted_token (jti, user_id, reason, expires_at, created_at)
                VALUES (%s, %s, %s, %s, %s)
                ON CONFLICT (jti) DO NOTHING
                """,
                (entry.jti, entry.user_id, entry.reason, entry.expires_at, entry.created_at),
            )

    def is_token_blacklisted(self, jti: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT 1 AS hit FROM blacklisted_token WHERE jti = %s", (jti,)
            ).fetchone()
        return row is not None

    def purge_expired_blacklist(self, now: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM blacklisted_token WHERE expires_at <= %s", (now,)
            )
            return result.rowcount

    # csrf
    def create_csrf_token(self, token: CsrfToken) -> CsrfToken:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO csrf_token (token, user_id, expires_at, used, ip_address, user_agent, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        token.token,
                        token.user_id,
                        token.expires_at,
                        token.used,
                        _inet(token.ip_address),
                        token.user_agent,
                        token.created_at,
                    ),
                )
        except errors.UniqueViolation as exc:
            raise ConstraintViolation(
                "csrf token already exists", {"field": "token"}
            ) from exc
        return token

    def get_csrf_token(self, value: str) -> Optional[CsrfToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM csrf_token WHERE token = %s", (value,)
            ).fetchone()
        return self._csrf_from_row(row) if row else None

    def mark_csrf_token_used(self, value: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE csrf_token SET used = TRUE WHERE token = %s AND NOT used RETURNING token",
                (value,),
            ).fetchone()
        return row is not None

    def delete_csrf_token(self, value: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM csrf_token WHERE token = %s", (value,))

    def delete_expired_csrf_tokens(self, now: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM csrf_token WHERE expires_at <= %s", (now,))
            return result.rowcount

    # roles and direct grants
    def get_role(self, name: str) -> Optional[RoleDefinition]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM app_role WHERE name = %s", (name,)).fetchone()
        if not row:
            return None
        return RoleDefinition(
            name=row["name"],
            permissions=self._json(row.get("permissions")) or {},
            description=row.get("description") or "",
        )

    def list_roles(self) -> List[RoleDefinition]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM app_role ORDER BY name").fetchall()
        return [
            RoleDefinition(
                name=row["name"],
                permissions=self._json(row.get("permissions")) or {},
                description=row.get("description") or "",
            )
            for row in rows
        ]

    def upsert_role(self, role: RoleDefinition) -> RoleDefinition:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO app_role (name, permissions, description)
                VALUES (%s, %s, %s)
                ON CONFLICT (name) DO UPDATE
                SET permissions = EXCLUDED.permissions, description = EXCLUDED.description
                """,
                (role.name, json.dumps(role.permissions), role.description),
            )
        return role

    def grant_user_permission(self, permission: UserPermission) -> UserPermission:
        if not _is_uuid(permission.user_id):
            raise ConstraintViolation("user does not exist", {"user_id": permission.user_id})
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_permission (id, user_id, resource_type, actions, expires_at, granted_by, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        permission.id,
                        permission.user_id,
                        permission.resource_type,
                        json.dumps(permission.actions),
                        permission.expires_at,
                        permission.granted_by,
                        permission.created_at,
                    ),
                )
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation(
                "user does not exist", {"user_id": permission.user_id}
            ) from exc
        return permission

    def list_user_permissions(
        self, user_id: str, now: datetime, resource_type: Optional[str] = None
    ) -> List[UserPermission]:
        if not _is_uuid(user_id):
            return []
        query = (
            "SELECT * FROM user_permission "
            "WHERE user_id = %s AND (expires_at IS NULL OR expires_at > %s)"
        )
        params: list[Any] = [user_id, now]
        if resource_type is not None:
            query += " AND resource_type IN (%s, '*')"
            params.append(resource_type)
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [
            UserPermission(
                id=str(row["id"]),
                user_id=str(row["user_id"]),
                resource_type=row["resource_type"],
                actions=list(self._json(row.get("actions")) or []),
                expires_at=row.get("expires_at"),
                granted_by=str(row["granted_by"]) if row.get("granted_by") else None,
                created_at=row.get("created_at") or utcnow(),
            )
            for row in rows
        ]

    # security log
    def append_security_log(self, entry: SecurityLogEntry) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO security_log (id, user_id, activity_type, severity, details, created_at)
                VALUES (%s, %s, %s, %s, %s, %s)
                """,
                (
                    entry.id,
                    entry.user_id,
                    entry.activity_type,
                    entry.severity,
                    json.dumps(entry.details, default=str),
                    entry.created_at,
                ),
            )

    def list_security_log(
        self,
        *,
        user_id: Optional[str] = None,
        activity_type: Optional[str] = None,
        limit: int = 100,
    ) -> List[SecurityLogEntry]:
        clauses: list[str] = []
        params: list[Any] = []
        if user_id is not None:
            clauses.append("user_id = %s")
            params.append(user_id)
        if activity_type is not None:
            clauses.append("activity_type = %s")
            params.append(activity_type)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(limit)
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM security_log {where} ORDER BY created_at DESC LIMIT %s",
                params,
            ).fetchall()
        return [
            SecurityLogEntry(
                id=str(row["id"]),
                user_id=row["user_id"],
                activity_type=row["activity_type"],
                severity=row["severity"],
                details=self._json(row.get("details")) or {},
                created_at=row["created_at"],
            )
            for row in rows
        ]

    # owned business records
    def get_resource(self, resource_type: str, resource_id: str) -> Optional[OwnedResource]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM owned_resource WHERE resource_type = %s AND id = %s",
                (resource_type, resource_id),
            ).fetchone()
        if not row:
            return None
        return OwnedResource(
            id=str(row["id"]),
            resource_type=row["resource_type"],
            attributes=self._json(row.get("attributes")) or {},
        )

    def put_resource(self, resource: OwnedResource) -> OwnedResource:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO owned_resource (resource_type, id, attributes)
                VALUES (%s, %s, %s)
                ON CONFLICT (resource_type, id) DO UPDATE SET attributes = EXCLUDED.attributes
                """,
                (resource.resource_type, resource.id, json.dumps(resource.attributes)),
            )
        return resource

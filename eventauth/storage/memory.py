from __future__ import annotations

import copy
import threading
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

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

_IMMUTABLE_USER_FIELDS = frozenset({"id", "created_at"})


class MemoryStore:
    """Dict-backed credential store for tests and single-process development.

    Records are copied on the way in and out so callers cannot mutate stored
    state without going through a store method.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.sessions: Dict[str, Session] = {}
        self.blacklist: Dict[str, BlacklistedToken] = {}
        self.csrf_tokens: Dict[str, CsrfToken] = {}
        self.roles: Dict[str, RoleDefinition] = {}
        self.user_permissions: Dict[str, UserPermission] = {}
        self.security_log: List[SecurityLogEntry] = []
        self.resources: Dict[tuple[str, str], OwnedResource] = {}
        # RLock so compound operations can call simple accessors
        self._data_lock = threading.RLock()

    @staticmethod
    def _copy(obj):
        return copy.copy(obj) if obj is not None else None

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
        normalized_email = email.strip().lower()
        with self._data_lock:
            if any(u.email == normalized_email for u in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            if any(u.username.lower() == username.lower() for u in self.users.values()):
                raise ConstraintViolation(
                    "username already exists", {"field": "username"}
                )
            user = User(
                id=str(uuid.uuid4()),
                email=normalized_email,
                username=username,
                first_name=first_name,
                last_name=last_name,
                role=role,
                phone=phone,
                timezone=timezone,
                language=language,
                is_active=is_active,
            )
            self.users[user.id] = user
            if password_hash is not None:
                self.credentials[user.id] = (password_hash, password_algo)
            return self._copy(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self._copy(self.users.get(user_id))

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = email.strip().lower()
        with self._data_lock:
            return self._copy(
                next((u for u in self.users.values() if u.email == normalized), None)
            )

    def get_user_by_username(self, username: str) -> Optional[User]:
        normalized = username.lower()
        with self._data_lock:
            return self._copy(
                next(
                    (u for u in self.users.values() if u.username.lower() == normalized),
                    None,
                )
            )

    def update_user(self, user_id: str, **fields: Any) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            for name, value in fields.items():
                if name in _IMMUTABLE_USER_FIELDS or not hasattr(user, name):
                    raise ValueError(f"cannot update user field '{name}'")
                setattr(user, name, value)
            user.updated_at = utcnow()
            return self._copy(user)

    def increment_failed_logins(
        self, user_id: str, *, max_attempts: int, lock_until: datetime
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.failed_login_attempts += 1
            if max_attempts > 0 and user.failed_login_attempts >= max_attempts:
                user.locked_until = lock_until
            user.updated_at = utcnow()
            return self._copy(user)

    # credentials
    def save_password(
        self, user_id: str, password_hash: str, password_algo: str = "argon2id"
    ) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            self.credentials[user_id] = (password_hash, password_algo)

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    # sessions
    def create_session(self, session: Session) -> Session:
        with self._data_lock:
            if session.user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": session.user_id})
            if session.id in self.sessions:
                raise ConstraintViolation("session already exists", {"field": "id"})
            self.sessions[session.id] = self._copy(session)
            return self._copy(session)

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            return self._copy(self.sessions.get(session_id))

    def find_active_session(
        self, session_id: str, refresh_token_hash: str, now: datetime
    ) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if (
                not sess
                or not sess.is_active
                or sess.refresh_token_hash != refresh_token_hash
                or sess.is_expired(now)
            ):
                return None
            return self._copy(sess)

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
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if (
                not sess
                or not sess.is_active
                or sess.is_expired(now)
                or sess.refresh_token_hash != expected_hash
            ):
                return False
            sess.refresh_token_hash = new_hash
            sess.access_jti = access_jti
            sess.access_expires_at = access_expires_at
            sess.last_activity_at = now
            return True

    def touch_session(self, session_id: str, now: datetime) -> None:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if sess:
                sess.last_activity_at = now

    def deactivate_session(self, session_id: str, now: datetime) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess:
                return None
            if sess.is_active:
                sess.is_active = False
                sess.revoked_at = now
            return self._copy(sess)

    def deactivate_user_sessions(
        self, user_id: str, now: datetime, *, except_session_id: Optional[str] = None
    ) -> List[Session]:
        with self._data_lock:
            revoked: List[Session] = []
            for sess in self.sessions.values():
                if sess.user_id != user_id or not sess.is_active:
                    continue
                if except_session_id and sess.id == except_session_id:
                    continue
                sess.is_active = False
                sess.revoked_at = now
                revoked.append(self._copy(sess))
            return revoked

    def list_active_sessions(self, user_id: str, now: datetime) -> List[Session]:
        with self._data_lock:
            active = [
                s
                for s in self.sessions.values()
                if s.user_id == user_id and s.is_active and not s.is_expired(now)
            ]
            active.sort(key=lambda s: s.last_activity_at, reverse=True)
            return [self._copy(s) for s in active]

    def delete_stale_sessions(self, now: datetime) -> int:
        with self._data_lock:
            stale = [
                sid
                for sid, s in self.sessions.items()
                if not s.is_active and s.is_expired(now)
            ]
            for sid in stale:
                self.sessions.pop(sid, None)
            return len(stale)

    # token blacklist
    def blacklist_token(self, entry: BlacklistedToken) -> None:
        with self._data_lock:
            self.blacklist[entry.jti] = self._copy(entry)

    def is_token_blacklisted(self, jti: str) -> bool:
        with self._data_lock:
            return jti in self.blacklist

    def purge_expired_blacklist(self, now: datetime) -> int:
        with self._data_lock:
            expired = [jti for jti, e in self.blacklist.items() if e.expires_at <= now]
            for jti in expired:
                self.blacklist.pop(jti, None)
            return len(expired)

    # csrf
    def create_csrf_token(self, token: CsrfToken) -> CsrfToken:
        with self._data_lock:
            if token.token in self.csrf_tokens:
                raise ConstraintViolation("csrf token already exists", {"field": "token"})
            self.csrf_tokens[token.token] = self._copy(token)
            return self._copy(token)

    def get_csrf_token(self, value: str) -> Optional[CsrfToken]:
        with self._data_lock:
            return self._copy(self.csrf_tokens.get(value))

    def mark_csrf_token_used(self, value: str) -> bool:
        with self._data_lock:
            record = self.csrf_tokens.get(value)
            if not record or record.used:
                return False
            record.used = True
            return True

    def delete_csrf_token(self, value: str) -> None:
        with self._data_lock:
            self.csrf_tokens.pop(value, None)

    def delete_expired_csrf_tokens(self, now: datetime) -> int:
        with self._data_lock:
            expired = [v for v, t in self.csrf_tokens.items() if t.expires_at <= now]
            for value in expired:
                self.csrf_tokens.pop(value, None)
            return len(expired)

    # roles and direct grants
    def get_role(self, name: str) -> Optional[RoleDefinition]:
        with self._data_lock:
            return copy.deepcopy(self.roles.get(name))

    def list_roles(self) -> List[RoleDefinition]:
        with self._data_lock:
            return [copy.deepcopy(r) for r in self.roles.values()]

    def upsert_role(self, role: RoleDefinition) -> RoleDefinition:
        with self._data_lock:
            self.roles[role.name] = copy.deepcopy(role)
            return role

    def grant_user_permission(self, permission: UserPermission) -> UserPermission:
        with self._data_lock:
            if permission.user_id not in self.users:
                raise ConstraintViolation(
                    "user does not exist", {"user_id": permission.user_id}
                )
            self.user_permissions[permission.id] = copy.deepcopy(permission)
            return permission

    def list_user_permissions(
        self, user_id: str, now: datetime, resource_type: Optional[str] = None
    ) -> List[UserPermission]:
        with self._data_lock:
            return [
                copy.deepcopy(p)
                for p in self.user_permissions.values()
                if p.user_id == user_id
                and not p.is_expired(now)
                and (resource_type is None or p.resource_type in (resource_type, "*"))
            ]

    # security log
    def append_security_log(self, entry: SecurityLogEntry) -> None:
        with self._data_lock:
            self.security_log.append(copy.deepcopy(entry))

    def list_security_log(
        self,
        *,
        user_id: Optional[str] = None,
        activity_type: Optional[str] = None,
        limit: int = 100,
    ) -> List[SecurityLogEntry]:
        with self._data_lock:
            matches = [
                e
                for e in reversed(self.security_log)
                if (user_id is None or e.user_id == user_id)
                and (activity_type is None or e.activity_type == activity_type)
            ]
            return [copy.deepcopy(e) for e in matches[:limit]]

    # owned business records
    def get_resource(self, resource_type: str, resource_id: str) -> Optional[OwnedResource]:
        with self._data_lock:
            return copy.deepcopy(self.resources.get((resource_type, resource_id)))

    def put_resource(self, resource: OwnedResource) -> OwnedResource:
        with self._data_lock:
            self.resources[(resource.resource_type, resource.id)] = copy.deepcopy(resource)
            return resource

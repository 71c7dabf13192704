from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional, Protocol

from eventauth.storage.models import (
    BlacklistedToken,
    CsrfToken,
    OwnedResource,
    RoleDefinition,
    SecurityLogEntry,
    Session,
    User,
    UserPermission,
)


class CredentialStore(Protocol):
    """Persistence contract shared by the memory and Postgres stores.

    Every component receives the store explicitly; nothing caches user or
    session state in-process, so revocations are visible on the next request.
    Uniqueness violations surface as ``ConstraintViolation``.
    """

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
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user_by_username(self, username: str) -> Optional[User]: ...

    def update_user(self, user_id: str, **fields: Any) -> Optional[User]: ...

    def increment_failed_logins(
        self, user_id: str, *, max_attempts: int, lock_until: datetime
    ) -> Optional[User]: ...

    # credentials
    def save_password(
        self, user_id: str, password_hash: str, password_algo: str = "argon2id"
    ) -> None: ...

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]: ...

    # sessions
    def create_session(self, session: Session) -> Session: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def find_active_session(
        self, session_id: str, refresh_token_hash: str, now: datetime
    ) -> Optional[Session]: ...

    def rotate_refresh_token(
        self,
        session_id: str,
        expected_hash: str,
        new_hash: str,
        *,
        access_jti: str,
        access_expires_at: datetime,
        now: datetime,
    ) -> bool: ...

    def touch_session(self, session_id: str, now: datetime) -> None: ...

    def deactivate_session(self, session_id: str, now: datetime) -> Optional[Session]: ...

    def deactivate_user_sessions(
        self, user_id: str, now: datetime, *, except_session_id: Optional[str] = None
    ) -> List[Session]: ...

    def list_active_sessions(self, user_id: str, now: datetime) -> List[Session]: ...

    def delete_stale_sessions(self, now: datetime) -> int: ...

    # token blacklist
    def blacklist_token(self, entry: BlacklistedToken) -> None: ...

    def is_token_blacklisted(self, jti: str) -> bool: ...

    def purge_expired_blacklist(self, now: datetime) -> int: ...

    # csrf
    def create_csrf_token(self, token: CsrfToken) -> CsrfToken: ...

    def get_csrf_token(self, value: str) -> Optional[CsrfToken]: ...

    def mark_csrf_token_used(self, value: str) -> bool: ...

    def delete_csrf_token(self, value: str) -> None: ...

    def delete_expired_csrf_tokens(self, now: datetime) -> int: ...

    # roles and direct grants
    def get_role(self, name: str) -> Optional[RoleDefinition]: ...

    def list_roles(self) -> List[RoleDefinition]: ...

    def upsert_role(self, role: RoleDefinition) -> RoleDefinition: ...

    def grant_user_permission(self, permission: UserPermission) -> UserPermission: ...

    def list_user_permissions(
        self, user_id: str, now: datetime, resource_type: Optional[str] = None
    ) -> List[UserPermission]: ...

    # security log (append-only)
    def append_security_log(self, entry: SecurityLogEntry) -> None: ...

    def list_security_log(
        self,
        *,
        user_id: Optional[str] = None,
        activity_type: Optional[str] = None,
        limit: int = 100,
    ) -> List[SecurityLogEntry]: ...

    # owned business records
    def get_resource(self, resource_type: str, resource_id: str) -> Optional[OwnedResource]: ...

    def put_resource(self, resource: OwnedResource) -> OwnedResource: ...

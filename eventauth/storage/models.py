from __future__ import annotations

import secrets
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    """Closed set of account roles."""

    ADMIN = "ADMIN"
    ORGANIZER = "ORGANIZER"
    ONSITE = "ONSITE"
    EXTERNAL_VENDOR = "EXTERNAL_VENDOR"

    @classmethod
    def parse(cls, value: "str | Role") -> "Role":
        """Resolve a role name, accepting legacy aliases (MANAGER, USER)."""
        if isinstance(value, Role):
            return value
        normalized = str(value).strip().upper()
        normalized = _ROLE_ALIASES.get(normalized, normalized)
        try:
            return cls(normalized)
        except ValueError:
            raise ValueError(f"unknown role '{value}'") from None


_ROLE_ALIASES = {"MANAGER": "ORGANIZER", "USER": "ONSITE"}

PRIVILEGED_ROLES = frozenset({Role.ADMIN, Role.ORGANIZER})


@dataclass
class User:
    id: str
    email: str
    username: str
    first_name: str = ""
    last_name: str = ""
    role: str = Role.ONSITE.value
    is_active: bool = True
    is_verified: bool = False
    phone: Optional[str] = None
    timezone: str = "UTC"
    language: str = "de"
    failed_login_attempts: int = 0
    locked_until: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def display_name(self) -> str:
        full = f"{self.first_name} {self.last_name}".strip()
        return full or self.username

    def is_locked(self, now: Optional[datetime] = None) -> bool:
        if self.locked_until is None:
            return False
        return self.locked_until > (now or utcnow())


@dataclass
class Session:
    id: str
    user_id: str
    session_token: str
    created_at: datetime
    expires_at: datetime
    last_activity_at: datetime
    refresh_token_hash: str = ""
    is_active: bool = True
    ip_addr: Optional[str] = None
    user_agent: Optional[str] = None
    remember_me: bool = False
    access_jti: Optional[str] = None
    access_expires_at: Optional[datetime] = None
    revoked_at: Optional[datetime] = None

    @classmethod
    def new(
        cls,
        user_id: str,
        ttl: timedelta = timedelta(hours=24),
        *,
        ip_addr: str | None = None,
        user_agent: str | None = None,
        remember_me: bool = False,
        now: Optional[datetime] = None,
    ) -> "Session":
        now = now or utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            session_token=secrets.token_urlsafe(32),
            created_at=now,
            expires_at=now + ttl,
            last_activity_at=now,
            ip_addr=ip_addr,
            user_agent=user_agent,
            remember_me=remember_me,
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at <= (now or utcnow())


@dataclass
class BlacklistedToken:
    jti: str
    expires_at: datetime
    user_id: Optional[str] = None
    reason: str = "revoked"
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class CsrfToken:
    token: str
    expires_at: datetime
    user_id: Optional[str] = None
    used: bool = False
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class RoleDefinition:
    """Stored role: ``permissions`` maps resource to a list of actions or ``"*"``."""

    name: str
    permissions: Dict[str, Any]
    description: str = ""


@dataclass
class UserPermission:
    id: str
    user_id: str
    resource_type: str
    actions: List[str]
    expires_at: Optional[datetime] = None
    granted_by: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at is not None and self.expires_at <= (now or utcnow())


@dataclass
class SecurityLogEntry:
    id: str
    user_id: str
    activity_type: str
    severity: str
    details: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class OwnedResource:
    """Minimal view of a business record used for ownership checks."""

    id: str
    resource_type: str
    attributes: Dict[str, Optional[str]] = field(default_factory=dict)

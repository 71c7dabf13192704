from __future__ import annotations

import re
import unicodedata
from datetime import datetime, timezone
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from eventauth.logging import get_correlation_id
from eventauth.service.passwords import validate_password_format
from eventauth.service.tokens import TokenPair
from eventauth.storage.models import SecurityLogEntry, Session, User

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "internal_error",
    "request_timeout",
    "invalid_credentials",
    "user_already_exists",
    "user_inactive",
    "user_not_found",
    "token_invalid",
    "token_expired",
    "invalid_refresh_token",
})


def _default_request_id() -> str:
    return get_correlation_id() or str(uuid4())


def _utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


class ErrorBody(BaseModel):
    """Error envelope body with a stable, machine readable code."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """Wrapper for every JSON response."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=_default_request_id)
    timestamp: str = Field(default_factory=_utc_timestamp)


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize and strip zero-width and bidi override characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    bidi_overrides = {chr(c) for c in range(0x202A, 0x202F)}
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in value if c not in zero_width and c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")
_USERNAME_PATTERN = re.compile(r"^[a-zA-Z0-9_-]{3,30}$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_password(value: str) -> str:
    problems = validate_password_format(value)
    if problems:
        raise ValueError("; ".join(problems))
    return value


class _CamelModel(BaseModel):
    """Request bodies arrive camelCased; snake_case is accepted too."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class RegisterRequest(_CamelModel):
    email: str
    username: str
    password: str
    first_name: str = Field(..., min_length=1, max_length=100)
    last_name: str = Field(..., min_length=1, max_length=100)
    phone: Optional[str] = Field(default=None, max_length=32)
    timezone: str = Field(default="UTC", max_length=64)
    language: str = Field(default="de", min_length=2, max_length=8)

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("username")
    @classmethod
    def _validate_username(cls, value: str) -> str:
        if not _USERNAME_PATTERN.match(value):
            raise ValueError(
                "username must be 3-30 characters of letters, digits, underscores or hyphens"
            )
        return value

    @field_validator("password")
    @classmethod
    def _validate_register_password(cls, value: str) -> str:
        return _validate_password(value)

    @field_validator("first_name", "last_name")
    @classmethod
    def _strip_names(cls, value: str) -> str:
        stripped = _normalize_unicode(value).strip()
        if not stripped:
            raise ValueError("must not be blank")
        return stripped


class LoginRequest(_CamelModel):
    email: str
    password: str = Field(..., min_length=1, max_length=128)
    remember_me: bool = False

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class RefreshRequest(_CamelModel):
    refresh_token: str = Field(..., min_length=1, max_length=4096)


class ChangePasswordRequest(_CamelModel):
    current_password: str = Field(..., min_length=1, max_length=128)
    new_password: str
    confirm_password: Optional[str] = None

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password(value)

    @model_validator(mode="after")
    def _passwords_match(self):
        if self.confirm_password is not None and self.confirm_password != self.new_password:
            raise ValueError("password confirmation does not match")
        return self


class GrantPermissionRequest(_CamelModel):
    resource_type: str = Field(..., min_length=1, max_length=64)
    actions: List[str] = Field(..., min_length=1, max_length=32)
    expires_at: Optional[datetime] = None

    @field_validator("actions")
    @classmethod
    def _validate_actions(cls, value: List[str]) -> List[str]:
        cleaned = [item.strip() for item in value if item and item.strip()]
        if not cleaned:
            raise ValueError("at least one action is required")
        return cleaned

    @field_validator("expires_at")
    @classmethod
    def _assume_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


class UserResponse(BaseModel):
    id: str
    email: str
    username: str
    first_name: str
    last_name: str
    display_name: str
    role: str
    is_active: bool
    is_verified: bool
    phone: Optional[str] = None
    timezone: str
    language: str
    last_login_at: Optional[datetime] = None
    created_at: datetime

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            email=user.email,
            username=user.username,
            first_name=user.first_name,
            last_name=user.last_name,
            display_name=user.display_name,
            role=user.role,
            is_active=user.is_active,
            is_verified=user.is_verified,
            phone=user.phone,
            timezone=user.timezone,
            language=user.language,
            last_login_at=user.last_login_at,
            created_at=user.created_at,
        )


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "Bearer"

    @classmethod
    def from_pair(cls, pair: TokenPair) -> "TokenResponse":
        return cls(
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            expires_in=pair.expires_in,
            token_type=pair.token_type,
        )


class AuthPayload(BaseModel):
    user: UserResponse
    tokens: TokenResponse
    session_id: str


class SessionResponse(BaseModel):
    id: str
    created_at: datetime
    expires_at: datetime
    last_activity_at: datetime
    ip_addr: Optional[str] = None
    user_agent: Optional[str] = None
    remember_me: bool = False
    current: bool = False

    @classmethod
    def from_session(cls, session: Session, *, current_session_id: Optional[str] = None) -> "SessionResponse":
        return cls(
            id=session.id,
            created_at=session.created_at,
            expires_at=session.expires_at,
            last_activity_at=session.last_activity_at,
            ip_addr=session.ip_addr,
            user_agent=session.user_agent,
            remember_me=session.remember_me,
            current=session.id == current_session_id,
        )


class CsrfTokenResponse(BaseModel):
    csrf_token: str
    expires_at: datetime


class PermissionsResponse(BaseModel):
    role: str
    permissions: List[str]


class SecurityLogEntryResponse(BaseModel):
    id: str
    user_id: str
    activity_type: str
    severity: str
    details: dict
    created_at: datetime

    @classmethod
    def from_entry(cls, entry: SecurityLogEntry) -> "SecurityLogEntryResponse":
        return cls(
            id=entry.id,
            user_id=entry.user_id,
            activity_type=entry.activity_type,
            severity=entry.severity,
            details=entry.details,
            created_at=entry.created_at,
        )


class RefreshPayload(BaseModel):
    tokens: TokenResponse
    session_id: str

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from eventauth.config import Settings
from eventauth.logging import get_logger
from eventauth.service import audit as audit_events
from eventauth.service.audit import SecurityAuditLog, SecuritySeverity
from eventauth.service.errors import (
    ForbiddenError,
    InvalidCredentialsError,
    InvalidRefreshTokenError,
    NotFoundError,
    TokenExpiredError,
    TokenInvalidError,
    UserAlreadyExistsError,
    UserInactiveError,
    UserNotFoundError,
    ValidationError,
)
from eventauth.service.passwords import PasswordService, validate_password_format
from eventauth.service.sessions import SessionManager
from eventauth.service.tokens import TokenPair, TokenService
from eventauth.storage.errors import ConstraintViolation
from eventauth.storage.models import Role, Session, User, utcnow
from eventauth.storage.protocol import CredentialStore

logger = get_logger(__name__)

INVALID_CREDENTIALS_MESSAGE = "Invalid credentials"


@dataclass
class AuthResult:
    user: User
    session: Session
    tokens: TokenPair


class AuthService:
    """Registration, login, refresh, logout and password change.

    The only component that mints or revokes sessions and tokens.
    """

    def __init__(
        self,
        store: CredentialStore,
        passwords: PasswordService,
        tokens: TokenService,
        sessions: SessionManager,
        audit: SecurityAuditLog,
        settings: Settings,
    ) -> None:
        self.store = store
        self.passwords = passwords
        self.tokens = tokens
        self.sessions = sessions
        self.audit = audit
        self.settings = settings
        self._dummy_hash: Optional[str] = None

    def _now(self) -> datetime:
        return utcnow()

    async def register(
        self,
        email: str,
        username: str,
        password: str,
        *,
        first_name: str = "",
        last_name: str = "",
        phone: Optional[str] = None,
        timezone: str = "UTC",
        language: str = "de",
        role: Optional[str] = None,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AuthResult:
        email = email.strip().lower()
        problems = validate_password_format(password)
        if problems:
            raise ValidationError(
                "password does not meet requirements", detail={"password": problems}
            )
        assigned_role = Role.parse(role or self.settings.default_role).value

        if self.store.get_user_by_email(email) or self.store.get_user_by_username(username):
            raise UserAlreadyExistsError("user with this email or username already exists")

        password_hash = await self.passwords.hash_async(password)
        try:
            user = self.store.create_user(
                email,
                username,
                role=assigned_role,
                first_name=first_name,
                last_name=last_name,
                phone=phone,
                timezone=timezone,
                language=language,
                password_hash=password_hash,
                password_algo=self.passwords.algo,
            )
        except ConstraintViolation as exc:
            # lost a race against a concurrent registration
            raise UserAlreadyExistsError(
                "user with this email or username already exists", detail=exc.detail
            ) from exc

        issued = await self.sessions.create_session(
            user, ip_addr=ip_addr, user_agent=user_agent
        )
        logger.info("user_registered", user_id=user.id, role=user.role)
        return AuthResult(user=user, session=issued.session, tokens=issued.tokens)

    async def login(
        self,
        email: str,
        password: str,
        *,
        remember_me: bool = False,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AuthResult:
        user = self.store.get_user_by_email(email.strip().lower())
        record = self.store.get_password_record(user.id) if user else None
        if not user or user.deleted_at is not None or not record:
            # keep timing close to the wrong-password path
            await self.passwords.verify_async(password, await self._get_dummy_hash())
            await self.audit.record(
                None,
                audit_events.LOGIN_FAILED,
                {"reason": "unknown_user", "ip": ip_addr},
                severity=SecuritySeverity.INFO,
            )
            raise InvalidCredentialsError(INVALID_CREDENTIALS_MESSAGE)

        stored_hash, _algo = record
        if not await self.passwords.verify_async(password, stored_hash):
            await self._record_failed_login(user, ip_addr)
            raise InvalidCredentialsError(INVALID_CREDENTIALS_MESSAGE)

        now = self._now()
        if not user.is_active:
            raise UserInactiveError("account is deactivated")
        if user.is_locked(now):
            raise ForbiddenError("account is locked")

        await self._maybe_rehash(user.id, password, stored_hash)

        issued = await self.sessions.create_session(
            user, remember_me=remember_me, ip_addr=ip_addr, user_agent=user_agent
        )
        updated = self.store.update_user(
            user.id, failed_login_attempts=0, locked_until=None, last_login_at=now
        )
        logger.info("login_succeeded", user_id=user.id, session_id=issued.session.id)
        return AuthResult(user=updated or user, session=issued.session, tokens=issued.tokens)

    async def refresh(
        self,
        refresh_token: str,
        *,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AuthResult:
        try:
            claims = self.tokens.verify_refresh_token(refresh_token)
        except TokenExpiredError as exc:
            raise InvalidRefreshTokenError("refresh token expired") from exc
        except TokenInvalidError as exc:
            raise InvalidRefreshTokenError("invalid refresh token") from exc

        now = self._now()
        digest = self.tokens.hash_refresh_token(refresh_token)
        session = self.store.find_active_session(claims.session_id, digest, now)
        if session is None or session.user_id != claims.user_id:
            await self._explain_refresh_miss(claims.session_id, claims.user_id, digest, now)
            raise InvalidRefreshTokenError("invalid refresh token")

        user = self.store.get_user(session.user_id)
        if not user or user.deleted_at is not None:
            raise InvalidRefreshTokenError("invalid refresh token")
        if not user.is_active:
            raise UserInactiveError("account is deactivated")

        pair = await self.sessions.rotate_tokens(
            user, session, refresh_token, ip_addr=ip_addr, user_agent=user_agent
        )
        return AuthResult(user=user, session=session, tokens=pair)

    async def logout(self, session_id: str) -> None:
        await self.sessions.revoke(session_id, reason="logout")

    async def logout_all(self, user_id: str) -> int:
        return await self.sessions.revoke_all(user_id, reason="logout_all")

    async def change_password(
        self, user_id: str, current_password: str, new_password: str
    ) -> int:
        """Replace the password and revoke every session of the user.

        Returns the number of sessions revoked.
        """
        record = self.store.get_password_record(user_id)
        if not record or not await self.passwords.verify_async(current_password, record[0]):
            raise InvalidCredentialsError("current password is incorrect", status_code=400)
        problems = validate_password_format(new_password)
        if problems:
            raise ValidationError(
                "password does not meet requirements", detail={"new_password": problems}
            )
        if current_password == new_password:
            raise ValidationError("new password must differ from the current password")

        new_hash = await self.passwords.hash_async(new_password)
        self.store.save_password(user_id, new_hash, self.passwords.algo)
        revoked = await self.sessions.revoke_all(user_id, reason="password_change")
        logger.info("password_changed", user_id=user_id, sessions_revoked=revoked)
        return revoked

    def list_sessions(self, user_id: str) -> List[Session]:
        return self.sessions.list_active(user_id)

    async def revoke_session(self, user_id: str, session_id: str) -> Session:
        session = self.store.get_session(session_id)
        # other users' sessions look the same as missing ones
        if not session or session.user_id != user_id or not session.is_active:
            raise NotFoundError("session not found")
        revoked = await self.sessions.revoke(session_id, reason="user_revoked")
        return revoked or session

    def get_profile(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if not user or user.deleted_at is not None:
            raise UserNotFoundError("user not found")
        return user

    def sweep_expired(self) -> Dict[str, int]:
        now = self._now()
        return {
            "sessions": self.sessions.cleanup_expired(),
            "blacklisted_tokens": self.store.purge_expired_blacklist(now),
        }

    async def _record_failed_login(self, user: User, ip_addr: Optional[str]) -> None:
        max_attempts = self.settings.max_failed_logins
        lock_until = self._now() + timedelta(minutes=self.settings.lockout_minutes)
        updated = self.store.increment_failed_logins(
            user.id, max_attempts=max_attempts, lock_until=lock_until
        )
        attempts = updated.failed_login_attempts if updated else None
        details: Dict[str, Any] = {"reason": "wrong_password", "ip": ip_addr, "attempts": attempts}
        await self.audit.record(
            user.id, audit_events.LOGIN_FAILED, details, severity=SecuritySeverity.INFO
        )
        if max_attempts > 0 and attempts == max_attempts:
            await self.audit.record(
                user.id,
                audit_events.ACCOUNT_LOCKED,
                {"ip": ip_addr, "locked_until": lock_until.isoformat(), "attempts": attempts},
                severity=SecuritySeverity.ERROR,
            )

    async def _maybe_rehash(self, user_id: str, password: str, stored_hash: str) -> None:
        if not await self.passwords.needs_rehash_async(stored_hash):
            return
        try:
            new_hash = await self.passwords.hash_async(password)
            self.store.save_password(user_id, new_hash, self.passwords.algo)
            logger.info("password_rehashed", user_id=user_id)
        except Exception as exc:
            logger.warning("password_rehash_failed", user_id=user_id, error=str(exc))

    async def _explain_refresh_miss(
        self, session_id: str, user_id: str, digest: str, now: datetime
    ) -> None:
        existing = self.store.get_session(session_id)
        if not existing or not existing.is_active or existing.user_id != user_id:
            return
        if existing.is_expired(now):
            await self.sessions.revoke(existing.id, reason="expired")
        elif existing.refresh_token_hash != digest:
            await self.audit.record(
                user_id,
                audit_events.REFRESH_TOKEN_REUSE,
                {"session_id": session_id},
                severity=SecuritySeverity.ERROR,
            )

    async def _get_dummy_hash(self) -> str:
        if self._dummy_hash is None:
            self._dummy_hash = await self.passwords.hash_async("dummy-password-for-timing")
        return self._dummy_hash

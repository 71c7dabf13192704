from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional

from eventauth.logging import get_logger
from eventauth.service import audit as audit_events
from eventauth.service.audit import SecurityAuditLog, SecuritySeverity
from eventauth.service.authorization import AuthorizationEngine, PermissionSet
from eventauth.service.errors import (
    AuthenticationError,
    ForbiddenError,
    TokenExpiredError,
    TokenInvalidError,
    UserInactiveError,
    UserNotFoundError,
)
from eventauth.service.tokens import TokenClaims, TokenService
from eventauth.storage.models import PRIVILEGED_ROLES, Role, User, utcnow
from eventauth.storage.protocol import CredentialStore

logger = get_logger(__name__)


@dataclass
class AuthContext:
    """Identity attached to an authenticated request."""

    user_id: str
    email: str
    role: str
    session_id: str
    token_id: str
    permissions: PermissionSet = field(default_factory=PermissionSet)
    user: Optional[User] = None

    @property
    def is_privileged(self) -> bool:
        return _is_privileged(self.role)


def _is_privileged(role: str) -> bool:
    try:
        return Role.parse(role) in PRIVILEGED_ROLES
    except ValueError:
        return False


class RequestAuthenticator:
    """Per-request bearer token authentication.

    Every call re-reads the blacklist, the user and the session from the
    store so revocations apply on the very next request.
    """

    def __init__(
        self,
        store: CredentialStore,
        tokens: TokenService,
        authorization: AuthorizationEngine,
        audit: SecurityAuditLog,
        *,
        cache: Optional[Any] = None,
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.authorization = authorization
        self.audit = audit
        self.cache = cache

    async def authenticate(
        self,
        authorization: Optional[str],
        *,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AuthContext:
        if not authorization:
            raise TokenInvalidError("authorization header missing")
        token = self.tokens.extract_from_header(authorization)
        if token is None:
            raise TokenInvalidError("authorization header must use the Bearer scheme")
        claims = await self._verify(token, ip_addr=ip_addr)
        return await self._resolve(claims, ip_addr=ip_addr, user_agent=user_agent)

    async def authenticate_optional(
        self,
        authorization: Optional[str],
        *,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Optional[AuthContext]:
        """Like :meth:`authenticate`, but header and token problems yield None.

        Failures after the token verified (revoked token, missing user,
        locked account) are still raised.
        """
        token = self.tokens.extract_from_header(authorization)
        if token is None:
            return None
        try:
            claims = await self._verify(token, ip_addr=ip_addr)
        except (TokenInvalidError, TokenExpiredError):
            return None
        return await self._resolve(claims, ip_addr=ip_addr, user_agent=user_agent)

    async def _verify(self, token: str, *, ip_addr: Optional[str]) -> TokenClaims:
        try:
            return self.tokens.verify_access_token(token)
        except TokenExpiredError:
            raise TokenExpiredError("access token expired") from None
        except TokenInvalidError as exc:
            await self.audit.record(
                None,
                audit_events.JWT_VALIDATION_ERROR,
                {"reason": exc.message, "ip": ip_addr},
            )
            raise TokenInvalidError("invalid access token") from None

    async def _resolve(
        self,
        claims: TokenClaims,
        *,
        ip_addr: Optional[str],
        user_agent: Optional[str],
    ) -> AuthContext:
        if await self._is_blacklisted(claims.jti):
            await self.audit.record(
                claims.user_id,
                audit_events.BLACKLISTED_TOKEN_USED,
                {"jti": claims.jti, "session_id": claims.session_id, "ip": ip_addr},
                severity=SecuritySeverity.ERROR,
            )
            raise TokenInvalidError("invalid access token")

        now = utcnow()
        user = self.store.get_user(claims.user_id)
        if user is None or user.deleted_at is not None:
            raise UserNotFoundError("user not found")
        if not user.is_active:
            raise UserInactiveError("account is deactivated")
        if user.is_locked(now):
            raise ForbiddenError("account is locked")

        session = self.store.get_session(claims.session_id)
        if (
            session is None
            or session.user_id != user.id
            or not session.is_active
            or session.is_expired(now)
        ):
            raise TokenInvalidError("session is no longer active")

        await self._check_binding(claims, user, ip_addr=ip_addr, user_agent=user_agent)

        context = AuthContext(
            user_id=user.id,
            email=user.email,
            role=user.role,
            session_id=session.id,
            token_id=claims.jti,
            permissions=self.authorization.effective_permissions(user.id, user.role),
            user=user,
        )
        self._record_activity(session.id, user.id)
        return context

    async def _is_blacklisted(self, jti: str) -> bool:
        try:
            if self.cache and await self.cache.is_access_token_denylisted(jti):
                return True
            return self.store.is_token_blacklisted(jti)
        except Exception as exc:
            # fail closed
            logger.error(
                "blacklist_check_failed",
                jti=jti,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return True

    async def _check_binding(
        self,
        claims: TokenClaims,
        user: User,
        *,
        ip_addr: Optional[str],
        user_agent: Optional[str],
    ) -> None:
        if claims.ip and ip_addr and claims.ip != ip_addr:
            await self.audit.record(
                user.id,
                audit_events.IP_MISMATCH,
                {"token_ip": claims.ip, "request_ip": ip_addr, "session_id": claims.session_id},
            )
            if _is_privileged(user.role):
                raise AuthenticationError("session bound to a different network address")
        if claims.user_agent and user_agent and claims.user_agent != user_agent:
            await self.audit.record(
                user.id,
                audit_events.USER_AGENT_MISMATCH,
                {
                    "token_user_agent": claims.user_agent,
                    "request_user_agent": user_agent,
                    "session_id": claims.session_id,
                },
                severity=SecuritySeverity.INFO,
            )

    def _record_activity(self, session_id: str, user_id: str) -> None:
        now = utcnow()
        try:
            self.store.touch_session(session_id, now)
            self.store.update_user(user_id, last_login_at=now)
        except Exception as exc:
            logger.warning(
                "activity_update_failed",
                user_id=user_id,
                session_id=session_id,
                error=str(exc),
            )

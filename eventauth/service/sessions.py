from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, List, Optional

from eventauth.config import Settings
from eventauth.logging import get_logger
from eventauth.service.errors import InvalidRefreshTokenError
from eventauth.service.tokens import TokenPair, TokenService
from eventauth.storage.models import BlacklistedToken, Session, User, utcnow
from eventauth.storage.protocol import CredentialStore

logger = get_logger(__name__)


@dataclass
class IssuedSession:
    session: Session
    tokens: TokenPair


class SessionManager:
    """Owns the session table: creation, refresh rotation and revocation.

    A session holds exactly one valid refresh token at a time; only its
    SHA-256 digest is stored. Rotation is a compare-and-swap on that digest.
    """

    def __init__(
        self,
        store: CredentialStore,
        tokens: TokenService,
        settings: Settings,
        *,
        cache: Optional[Any] = None,
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.settings = settings
        self.cache = cache

    def _now(self) -> datetime:
        return utcnow()

    def session_ttl(self, remember_me: bool) -> timedelta:
        if remember_me:
            return timedelta(days=self.settings.remember_me_session_days)
        return timedelta(hours=self.settings.session_ttl_hours)

    async def create_session(
        self,
        user: User,
        *,
        remember_me: bool = False,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> IssuedSession:
        session = Session.new(
            user.id,
            self.session_ttl(remember_me),
            ip_addr=ip_addr,
            user_agent=user_agent,
            remember_me=remember_me,
            now=self._now(),
        )
        pair = self.tokens.issue_pair(
            user, session.id, remember_me=remember_me, ip=ip_addr, user_agent=user_agent
        )
        session.refresh_token_hash = self.tokens.hash_refresh_token(pair.refresh_token)
        session.access_jti = pair.access_claims.jti
        session.access_expires_at = _from_timestamp(pair.access_claims.expires_at)
        stored = self.store.create_session(session)
        logger.info(
            "session_created",
            user_id=user.id,
            session_id=session.id,
            remember_me=remember_me,
        )
        return IssuedSession(session=stored, tokens=pair)

    async def rotate_tokens(
        self,
        user: User,
        session: Session,
        presented_refresh_token: str,
        *,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> TokenPair:
        """Swap the session's refresh token for a fresh pair.

        The swap only succeeds if the stored digest still matches the token
        that was presented, so two concurrent refreshes with the same token
        cannot both win.
        """
        pair = self.tokens.issue_pair(
            user,
            session.id,
            remember_me=session.remember_me,
            ip=ip_addr,
            user_agent=user_agent,
        )
        swapped = self.store.rotate_refresh_token(
            session.id,
            self.tokens.hash_refresh_token(presented_refresh_token),
            self.tokens.hash_refresh_token(pair.refresh_token),
            access_jti=pair.access_claims.jti,
            access_expires_at=_from_timestamp(pair.access_claims.expires_at),
            now=self._now(),
        )
        if not swapped:
            logger.warning("refresh_rotation_lost", session_id=session.id, user_id=user.id)
            raise InvalidRefreshTokenError("invalid refresh token")
        # the previous access token dies with its refresh token
        await self._blacklist_access_token(session, reason="rotated")
        logger.info("session_tokens_rotated", session_id=session.id, user_id=user.id)
        return pair

    async def revoke(self, session_id: str, *, reason: str = "logout") -> Optional[Session]:
        session = self.store.deactivate_session(session_id, self._now())
        if session is None:
            return None
        await self._blacklist_access_token(session, reason=reason)
        logger.info("session_revoked", session_id=session_id, user_id=session.user_id, reason=reason)
        return session

    async def revoke_all(
        self,
        user_id: str,
        *,
        except_session_id: Optional[str] = None,
        reason: str = "logout_all",
    ) -> int:
        revoked = self.store.deactivate_user_sessions(
            user_id, self._now(), except_session_id=except_session_id
        )
        for session in revoked:
            await self._blacklist_access_token(session, reason=reason)
        logger.info("user_sessions_revoked", user_id=user_id, count=len(revoked), reason=reason)
        return len(revoked)

    def list_active(self, user_id: str) -> List[Session]:
        return self.store.list_active_sessions(user_id, self._now())

    def touch(self, session_id: str) -> None:
        self.store.touch_session(session_id, self._now())

    def cleanup_expired(self) -> int:
        """Delete sessions that are both expired and inactive."""
        return self.store.delete_stale_sessions(self._now())

    async def _blacklist_access_token(self, session: Session, *, reason: str) -> None:
        if not session.access_jti or not session.access_expires_at:
            return
        if session.access_expires_at <= self._now():
            return
        self.store.blacklist_token(
            BlacklistedToken(
                jti=session.access_jti,
                expires_at=session.access_expires_at,
                user_id=session.user_id,
                reason=reason,
            )
        )
        if self.cache:
            try:
                await self.cache.denylist_access_token(session.access_jti, session.access_expires_at)
            except Exception as exc:
                # the store entry above is authoritative
                logger.warning(
                    "access_token_denylist_cache_failed",
                    session_id=session.id,
                    error=str(exc),
                )


def _from_timestamp(ts: int) -> datetime:
    return datetime.fromtimestamp(ts, tz=timezone.utc)

from __future__ import annotations

import secrets
from datetime import datetime, timedelta
from typing import Any, Mapping, Optional

from eventauth.config import Settings
from eventauth.logging import get_logger
from eventauth.service import audit as audit_events
from eventauth.service.audit import SecurityAuditLog
from eventauth.service.errors import ForbiddenError
from eventauth.storage.models import CsrfToken, utcnow
from eventauth.storage.protocol import CredentialStore

logger = get_logger(__name__)

SAFE_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})
CSRF_HEADER = "x-csrf-token"
CSRF_FIELD = "csrfToken"

CSRF_MISSING_MESSAGE = "CSRF token missing"
CSRF_INVALID_MESSAGE = "invalid CSRF token"


class CsrfService:
    """Single-use CSRF tokens bound to the issuing client.

    Lifecycle: issued -> consumed, or issued -> expired. Consumption is a
    compare-and-swap on the ``used`` flag so a token can only ever pass once.
    """

    def __init__(self, store: CredentialStore, audit: SecurityAuditLog, settings: Settings) -> None:
        self.store = store
        self.audit = audit
        self.settings = settings

    def _now(self) -> datetime:
        return utcnow()

    def issue_token(
        self,
        *,
        user_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> CsrfToken:
        now = self._now()
        token = CsrfToken(
            token=secrets.token_urlsafe(32),
            expires_at=now + timedelta(minutes=self.settings.csrf_token_ttl_minutes),
            user_id=user_id,
            ip_address=ip_address,
            user_agent=user_agent,
            created_at=now,
        )
        return self.store.create_csrf_token(token)

    def is_exempt(self, method: str, path: str) -> bool:
        if method.upper() in SAFE_METHODS:
            return True
        return any(
            path == prefix or path.startswith(prefix.rstrip("/") + "/")
            for prefix in self.settings.csrf_exempt_paths
        )

    @staticmethod
    def extract(
        headers: Mapping[str, str],
        body: Optional[Mapping[str, Any]] = None,
        query: Optional[Mapping[str, str]] = None,
    ) -> Optional[str]:
        """Find the token in the header, then the body, then the query string."""
        value = headers.get(CSRF_HEADER)
        if value:
            return value
        if isinstance(body, Mapping):
            candidate = body.get(CSRF_FIELD)
            if isinstance(candidate, str) and candidate:
                return candidate
        if query:
            candidate = query.get(CSRF_FIELD)
            if candidate:
                return candidate
        return None

    async def protect(
        self,
        method: str,
        path: str,
        token: Optional[str],
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Optional[CsrfToken]:
        """Enforce CSRF for one request; returns the consumed token, if any."""
        if self.is_exempt(method, path):
            return None
        if not token:
            raise ForbiddenError(CSRF_MISSING_MESSAGE)
        return await self.validate(token, ip_address=ip_address, user_agent=user_agent)

    async def validate(
        self,
        value: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> CsrfToken:
        try:
            record = self.store.get_csrf_token(value)
        except Exception as exc:
            logger.error("csrf_lookup_failed", error_type=type(exc).__name__, error=str(exc))
            raise ForbiddenError(CSRF_INVALID_MESSAGE) from exc
        if record is None:
            raise ForbiddenError(CSRF_INVALID_MESSAGE)

        if record.expires_at <= self._now():
            self.store.delete_csrf_token(value)
            raise ForbiddenError(CSRF_INVALID_MESSAGE)
        if record.used:
            logger.warning("csrf_token_replayed", user_id=record.user_id)
            raise ForbiddenError(CSRF_INVALID_MESSAGE)

        if record.ip_address and record.ip_address != ip_address:
            await self.audit.record(
                record.user_id,
                audit_events.CSRF_IP_MISMATCH,
                {"expected_ip": record.ip_address, "actual_ip": ip_address},
            )
            raise ForbiddenError(CSRF_INVALID_MESSAGE)
        if record.user_agent and record.user_agent != user_agent:
            await self.audit.record(
                record.user_id,
                audit_events.CSRF_USER_AGENT_MISMATCH,
                {"expected_user_agent": record.user_agent, "actual_user_agent": user_agent},
            )
            raise ForbiddenError(CSRF_INVALID_MESSAGE)

        if not self.store.mark_csrf_token_used(value):
            # another request consumed it between lookup and swap
            raise ForbiddenError(CSRF_INVALID_MESSAGE)
        record.used = True
        return record

    def cleanup_expired(self) -> int:
        return self.store.delete_expired_csrf_tokens(self._now())

from __future__ import annotations

import asyncio
import uuid
from enum import Enum
from typing import Any, Dict, List, Optional

from eventauth.logging import get_logger
from eventauth.storage.models import SecurityLogEntry, utcnow
from eventauth.storage.protocol import CredentialStore

logger = get_logger(__name__)

UNKNOWN_USER = "unknown"

IP_MISMATCH = "IP-Mismatch"
USER_AGENT_MISMATCH = "UA-Mismatch"
JWT_VALIDATION_ERROR = "JWT_VALIDATION_ERROR"
BLACKLISTED_TOKEN_USED = "BLACKLISTED_TOKEN_USED"
CSRF_IP_MISMATCH = "CSRF_IP_MISMATCH"
CSRF_USER_AGENT_MISMATCH = "CSRF_USER_AGENT_MISMATCH"
ACCOUNT_LOCKED = "ACCOUNT_LOCKED"
REFRESH_TOKEN_REUSE = "REFRESH_TOKEN_REUSE"
LOGIN_FAILED = "LOGIN_FAILED"


class SecuritySeverity(str, Enum):
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class SecurityAuditLog:
    """Append-only record of suspicious activity.

    Writes are best effort: a failing store is logged and swallowed so an
    audit problem never changes an authentication decision.
    """

    def __init__(self, store: CredentialStore) -> None:
        self.store = store

    async def record(
        self,
        user_id: Optional[str],
        activity_type: str,
        details: Optional[Dict[str, Any]] = None,
        *,
        severity: SecuritySeverity = SecuritySeverity.WARNING,
    ) -> Optional[SecurityLogEntry]:
        entry = SecurityLogEntry(
            id=str(uuid.uuid4()),
            user_id=user_id or UNKNOWN_USER,
            activity_type=activity_type,
            severity=SecuritySeverity(severity).value,
            details=dict(details or {}),
            created_at=utcnow(),
        )
        try:
            await asyncio.to_thread(self.store.append_security_log, entry)
        except Exception as exc:
            logger.error(
                "security_log_write_failed",
                activity_type=activity_type,
                user_id=entry.user_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return None
        logger.warning(
            "security_event",
            activity_type=activity_type,
            user_id=entry.user_id,
            severity=entry.severity,
        )
        return entry

    def list_entries(
        self,
        *,
        user_id: Optional[str] = None,
        activity_type: Optional[str] = None,
        limit: int = 100,
    ) -> List[SecurityLogEntry]:
        return self.store.list_security_log(
            user_id=user_id, activity_type=activity_type, limit=limit
        )

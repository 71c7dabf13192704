from __future__ import annotations

import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, Response

from eventauth.api.dependencies import (
    client_ip,
    get_current_user,
    get_optional_user,
    require_permission,
    require_roles,
)
from eventauth.api.schemas import (
    AuthPayload,
    ChangePasswordRequest,
    CsrfTokenResponse,
    Envelope,
    GrantPermissionRequest,
    LoginRequest,
    PermissionsResponse,
    RefreshPayload,
    RefreshRequest,
    RegisterRequest,
    SecurityLogEntryResponse,
    SessionResponse,
    TokenResponse,
    UserResponse,
)
from eventauth.logging import get_logger
from eventauth.service.errors import NotFoundError
from eventauth.service.request_auth import AuthContext
from eventauth.service.runtime import check_rate_limit, get_runtime
from eventauth.storage.models import Role, UserPermission

logger = get_logger(__name__)


def _http_error(
    code: str,
    message: str,
    status_code: int,
    details: Optional[dict | str] = None,
    headers: Optional[dict[str, str]] = None,
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload, headers=headers)


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    def apply_headers(self, response: Response) -> None:
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))
        response.headers["X-RateLimit-Reset"] = str(self.reset_seconds)


async def _enforce_rate_limit(
    runtime, key: str, limit: int, window_seconds: int, *, response: Optional[Response] = None
) -> RateLimitInfo:
    """Consume one token for ``key`` or raise 429.

    Raises:
        HTTPException with 429 and a Retry-After header when the bucket is empty
    """
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True
    )
    info = RateLimitInfo(limit, remaining, reset_seconds)

    if response is not None:
        info.apply_headers(response)

    if not allowed:
        logger.warning("rate_limit_exceeded", key=key, limit=limit, window_seconds=window_seconds)
        raise _http_error(
            "rate_limited",
            "too many requests, please try again later",
            status_code=429,
            details={"retry_after": max(1, reset_seconds)},
            headers={"Retry-After": str(max(1, reset_seconds))},
        )

    return info


async def _limit_auth_requests(request: Request) -> None:
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"auth:{client_ip(request)}",
        runtime.settings.rate_limit_max_requests,
        runtime.settings.rate_limit_window_seconds,
    )


router = APIRouter(prefix="/auth", tags=["auth"], dependencies=[Depends(_limit_auth_requests)])
admin_router = APIRouter(
    prefix="/admin",
    tags=["admin"],
    dependencies=[Depends(require_roles(Role.ADMIN)), Depends(require_permission("system", "admin"))],
)


@router.get("/csrf-token", response_model=Envelope)
async def issue_csrf_token(
    request: Request,
    user_agent: Optional[str] = Header(None),
    principal: Optional[AuthContext] = Depends(get_optional_user),
):
    """Issue a single-use CSRF token bound to this client."""
    runtime = get_runtime()
    token = runtime.csrf.issue_token(
        user_id=principal.user_id if principal else None,
        ip_address=client_ip(request),
        user_agent=user_agent,
    )
    return Envelope(
        status="ok",
        data=CsrfTokenResponse(csrf_token=token.token, expires_at=token.expires_at),
    )


@router.post("/register", response_model=Envelope, status_code=201)
async def register(
    body: RegisterRequest,
    request: Request,
    user_agent: Optional[str] = Header(None),
):
    """Create an account and open its first session.

    Raises:
        400: If the payload or password policy check fails
        409: If the email or username is taken
        429: If this address registers too often
    """
    runtime = get_runtime()
    ip_addr = client_ip(request)
    await _enforce_rate_limit(
        runtime,
        f"register:{ip_addr}",
        runtime.settings.register_rate_limit_per_minute,
        60,
    )
    result = await runtime.auth.register(
        body.email,
        body.username,
        body.password,
        first_name=body.first_name,
        last_name=body.last_name,
        phone=body.phone,
        timezone=body.timezone,
        language=body.language,
        ip_addr=ip_addr,
        user_agent=user_agent,
    )
    return Envelope(
        status="ok",
        data=AuthPayload(
            user=UserResponse.from_user(result.user),
            tokens=TokenResponse.from_pair(result.tokens),
            session_id=result.session.id,
        ),
    )


@router.post("/login", response_model=Envelope)
async def login(
    body: LoginRequest,
    request: Request,
    response: Response,
    user_agent: Optional[str] = Header(None),
):
    """Authenticate with email and password.

    Unknown emails and wrong passwords produce the same 401.
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"login:{body.email.lower()}",
        runtime.settings.login_rate_limit_per_minute,
        60,
        response=response,
    )
    result = await runtime.auth.login(
        body.email,
        body.password,
        remember_me=body.remember_me,
        ip_addr=client_ip(request),
        user_agent=user_agent,
    )
    return Envelope(
        status="ok",
        data=AuthPayload(
            user=UserResponse.from_user(result.user),
            tokens=TokenResponse.from_pair(result.tokens),
            session_id=result.session.id,
        ),
    )


@router.post("/refresh", response_model=Envelope)
async def refresh(
    body: RefreshRequest,
    request: Request,
    user_agent: Optional[str] = Header(None),
):
    runtime = get_runtime()
    result = await runtime.auth.refresh(
        body.refresh_token,
        ip_addr=client_ip(request),
        user_agent=user_agent,
    )
    return Envelope(
        status="ok",
        data=RefreshPayload(
            tokens=TokenResponse.from_pair(result.tokens),
            session_id=result.session.id,
        ),
    )


@router.post("/logout", response_model=Envelope)
async def logout(principal: AuthContext = Depends(get_current_user)):
    runtime = get_runtime()
    await runtime.auth.logout(principal.session_id)
    return Envelope(status="ok", data={"session_id": principal.session_id, "revoked": True})


@router.post("/logout-all", response_model=Envelope)
async def logout_all(principal: AuthContext = Depends(get_current_user)):
    """Revoke every session of the caller, including the current one."""
    runtime = get_runtime()
    revoked = await runtime.auth.logout_all(principal.user_id)
    return Envelope(status="ok", data={"sessions_revoked": revoked})


@router.put("/change-password", response_model=Envelope)
async def change_password(
    body: ChangePasswordRequest,
    principal: AuthContext = Depends(get_current_user),
):
    """Replace the caller's password; all sessions are revoked afterwards."""
    runtime = get_runtime()
    revoked = await runtime.auth.change_password(
        principal.user_id, body.current_password, body.new_password
    )
    return Envelope(status="ok", data={"sessions_revoked": revoked})


@router.get("/sessions", response_model=Envelope)
async def list_sessions(principal: AuthContext = Depends(get_current_user)):
    runtime = get_runtime()
    sessions = runtime.auth.list_sessions(principal.user_id)
    return Envelope(
        status="ok",
        data=[
            SessionResponse.from_session(session, current_session_id=principal.session_id)
            for session in sessions
        ],
    )


@router.delete("/sessions/{session_id}", response_model=Envelope)
async def revoke_session(session_id: str, principal: AuthContext = Depends(get_current_user)):
    runtime = get_runtime()
    session = await runtime.auth.revoke_session(principal.user_id, session_id)
    return Envelope(status="ok", data={"session_id": session.id, "revoked": True})


@router.get("/profile", response_model=Envelope)
async def get_profile(principal: AuthContext = Depends(get_current_user)):
    runtime = get_runtime()
    user = principal.user or runtime.auth.get_profile(principal.user_id)
    return Envelope(status="ok", data=UserResponse.from_user(user))


@router.get("/permissions", response_model=Envelope)
async def get_permissions(principal: AuthContext = Depends(get_current_user)):
    return Envelope(
        status="ok",
        data=PermissionsResponse(
            role=principal.role, permissions=principal.permissions.as_strings()
        ),
    )


@admin_router.get("/security-log", response_model=Envelope)
async def list_security_log(
    user_id: Optional[str] = Query(None),
    activity_type: Optional[str] = Query(None),
    limit: int = Query(100, ge=1, le=500),
):
    runtime = get_runtime()
    entries = runtime.audit.list_entries(
        user_id=user_id, activity_type=activity_type, limit=limit
    )
    return Envelope(
        status="ok",
        data=[SecurityLogEntryResponse.from_entry(entry) for entry in entries],
    )


@admin_router.post("/users/{user_id}/permissions", response_model=Envelope, status_code=201)
async def grant_permission(
    user_id: str,
    body: GrantPermissionRequest,
    principal: AuthContext = Depends(get_current_user),
):
    """Grant ``actions`` on ``resource_type`` directly to a user."""
    runtime = get_runtime()
    target = runtime.store.get_user(user_id)
    if not target or target.deleted_at is not None:
        raise NotFoundError("user not found")
    grant = runtime.store.grant_user_permission(
        UserPermission(
            id=str(uuid.uuid4()),
            user_id=user_id,
            resource_type=body.resource_type,
            actions=body.actions,
            expires_at=body.expires_at,
            granted_by=principal.user_id,
        )
    )
    logger.info(
        "permission_granted",
        user_id=user_id,
        resource_type=grant.resource_type,
        actions=grant.actions,
        granted_by=principal.user_id,
    )
    return Envelope(
        status="ok",
        data={
            "id": grant.id,
            "user_id": grant.user_id,
            "resource_type": grant.resource_type,
            "actions": grant.actions,
            "expires_at": grant.expires_at.isoformat() if grant.expires_at else None,
        },
    )

from __future__ import annotations

from ipaddress import ip_address
from typing import Optional

from fastapi import Depends, Header, Request

from eventauth.service.request_auth import AuthContext
from eventauth.service.runtime import get_runtime
from eventauth.storage.models import Role


def _parse_ip(value: str) -> Optional[str]:
    try:
        return str(ip_address(value.strip()))
    except ValueError:
        return None


def client_ip(request: Request) -> str:
    """Client address as seen by the outermost trusted proxy.

    With ``TRUSTED_PROXY_HOPS=0`` only the socket peer counts. Otherwise the
    entry appended by the N-th proxy from the right of ``X-Forwarded-For``
    is used, falling back to ``X-Real-IP`` and then the peer.
    """
    peer = request.client.host if request.client and request.client.host else "unknown"
    hops = get_runtime().settings.trusted_proxy_hops
    if hops <= 0:
        return peer
    forwarded = [
        item.strip()
        for item in request.headers.get("x-forwarded-for", "").split(",")
        if item.strip()
    ]
    if forwarded:
        candidate = _parse_ip(forwarded[-min(hops, len(forwarded))])
        if candidate:
            return candidate
    real_ip = _parse_ip(request.headers.get("x-real-ip", ""))
    return real_ip or peer


async def get_current_user(
    request: Request,
    authorization: Optional[str] = Header(None),
    user_agent: Optional[str] = Header(None),
) -> AuthContext:
    runtime = get_runtime()
    ctx = await runtime.request_auth.authenticate(
        authorization,
        ip_addr=client_ip(request),
        user_agent=user_agent,
    )
    request.state.auth = ctx
    return ctx


async def get_optional_user(
    request: Request,
    authorization: Optional[str] = Header(None),
    user_agent: Optional[str] = Header(None),
) -> Optional[AuthContext]:
    """Attach the identity when a valid bearer token is present, else None."""
    runtime = get_runtime()
    ctx = await runtime.request_auth.authenticate_optional(
        authorization,
        ip_addr=client_ip(request),
        user_agent=user_agent,
    )
    request.state.auth = ctx
    return ctx


def require_roles(*roles: Role | str):
    """Dependency factory: the caller's role must be one of ``roles``."""

    async def _require_roles(ctx: AuthContext = Depends(get_current_user)) -> AuthContext:
        get_runtime().authorization.authorize_role(ctx.role, roles)
        return ctx

    return _require_roles


def require_permission(resource: str, action: str):
    """Dependency factory: the caller needs ``resource:action`` (wildcards honoured)."""

    async def _require_permission(ctx: AuthContext = Depends(get_current_user)) -> AuthContext:
        get_runtime().authorization.authorize_permission(ctx.user_id, ctx.role, resource, action)
        return ctx

    return _require_permission


def require_ownership(resource_type: str, id_param: str = "id"):
    """Dependency factory: the caller must own the resource named by a path parameter."""

    async def _require_ownership(
        request: Request, ctx: AuthContext = Depends(get_current_user)
    ) -> AuthContext:
        resource_id = request.path_params.get(id_param)
        get_runtime().authorization.authorize_ownership(ctx.user_id, resource_type, resource_id)
        return ctx

    return _require_ownership

from __future__ import annotations

import asyncio
import contextlib
import json
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional
from urllib.parse import parse_qsl

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from eventauth.api.dependencies import client_ip
from eventauth.api.error_handling import _error_response, register_exception_handlers
from eventauth.api.routes import admin_router, router
from eventauth.api.schemas import Envelope
from eventauth.config import Settings, get_settings
from eventauth.logging import get_logger, set_correlation_id
from eventauth.service.csrf import CSRF_MISSING_MESSAGE, CsrfService
from eventauth.service.errors import ServiceError

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3

_maintenance_task: asyncio.Task | None = None


async def _run_maintenance(interval_seconds: int) -> None:
    """Periodically sweep expired sessions, CSRF tokens and blacklist rows."""
    from eventauth.service.runtime import get_runtime

    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await asyncio.to_thread(get_runtime().run_maintenance)
        except Exception as exc:
            logger.error("maintenance_sweep_failed", error_type=type(exc).__name__, error=str(exc))


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the maintenance sweep on startup; release connections on shutdown."""
    global _maintenance_task
    from eventauth.service.runtime import get_runtime

    try:
        runtime = get_runtime()
        _maintenance_task = asyncio.create_task(
            _run_maintenance(runtime.settings.cleanup_interval_seconds)
        )
    except Exception as exc:
        logger.error("startup_failed", error=str(exc))

    yield

    try:
        if _maintenance_task:
            _maintenance_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await _maintenance_task
            logger.info("maintenance_task_stopped")
        await get_runtime().close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


def _allowed_origins(settings: Settings) -> List[str]:
    if settings.cors_allow_origins:
        return settings.cors_allow_origins
    # wildcard is not allowed together with credentials
    return [
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:3000",
        "http://127.0.0.1:5173",
    ]


async def _csrf_body_token(request: Request) -> Optional[Dict[str, Any]]:
    """Parse a JSON or urlencoded body just far enough to find the CSRF field."""
    content_type = request.headers.get("content-type", "")
    if not content_type.startswith(("application/json", "application/x-www-form-urlencoded")):
        return None
    raw = await request.body()
    if not raw:
        return None
    if content_type.startswith("application/x-www-form-urlencoded"):
        return dict(parse_qsl(raw.decode("latin-1")))
    try:
        parsed = json.loads(raw)
    except ValueError:
        return None
    return parsed if isinstance(parsed, dict) else None


def _install_middleware(app: FastAPI, settings: Settings) -> None:
    # registration order is inner to outer: CSRF runs last, correlation id first

    @app.middleware("http")
    async def enforce_csrf_token(request: Request, call_next):
        from eventauth.service.runtime import get_runtime

        csrf = get_runtime().csrf
        path = request.url.path
        if csrf.is_exempt(request.method, path):
            return await call_next(request)
        body = None
        if not request.headers.get("x-csrf-token"):
            body = await _csrf_body_token(request)
        token = CsrfService.extract(request.headers, body, request.query_params)
        try:
            await csrf.protect(
                request.method,
                path,
                token,
                ip_address=client_ip(request),
                user_agent=request.headers.get("user-agent"),
            )
        except ServiceError as exc:
            logger.warning(
                "csrf_rejected",
                path=path,
                method=request.method,
                reason="missing" if exc.message == CSRF_MISSING_MESSAGE else "invalid",
            )
            return _error_response(exc.status_code, exc.message, code=exc.error_code)
        return await call_next(request)

    @app.middleware("http")
    async def enforce_request_deadline(request: Request, call_next):
        timeout = settings.request_timeout_seconds
        try:
            return await asyncio.wait_for(call_next(request), timeout=timeout)
        except asyncio.TimeoutError:
            logger.error(
                "request_timeout",
                path=request.url.path,
                method=request.method,
                timeout_seconds=timeout,
            )
            return _error_response(504, "request timed out", code="request_timeout")

    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        response = await call_next(request)
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
        if request.url.path.startswith(("/auth/", "/admin/")):
            response.headers.setdefault("Cache-Control", "no-store")
        if request.url.scheme == "https":
            response.headers.setdefault(
                "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
            )
        return response

    @app.middleware("http")
    async def add_correlation_id(request: Request, call_next):
        """Tag the request with X-Request-ID (client supplied or generated)."""
        correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    app.add_middleware(
        CORSMiddleware,
        allow_origins=_allowed_origins(settings),
        allow_credentials=settings.cors_allow_credentials,
        allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=[
            "Content-Type",
            "Authorization",
            "X-CSRF-Token",
            "X-Request-ID",
        ],
        expose_headers=["X-Request-ID", "Retry-After"],
        max_age=3600,
    )


async def health() -> JSONResponse:
    """Report store and Redis reachability."""
    from eventauth.service.runtime import get_runtime

    async def _run_bounded(label: str, func) -> bool:
        try:
            await asyncio.wait_for(asyncio.to_thread(func), HEALTH_CHECK_TIMEOUT_SECONDS)
            return True
        except asyncio.TimeoutError:
            logger.error(
                "health_check_timeout", component=label, timeout=HEALTH_CHECK_TIMEOUT_SECONDS
            )
        except Exception as exc:
            logger.error(f"health_check_{label}_failed", error=str(exc))
        return False

    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {}

    if hasattr(runtime.store, "verify_connection"):
        db_ok = await _run_bounded("database", runtime.store.verify_connection)
        checks["database"] = {"status": "healthy" if db_ok else "unhealthy"}
    else:
        db_ok = True
        checks["database"] = {"status": "healthy", "type": "memory"}

    if runtime.cache is not None:
        redis_ok = await _run_bounded("redis", runtime.cache.verify_connection)
        checks["redis"] = {"status": "healthy" if redis_ok else "unhealthy"}
    else:
        redis_ok = True
        checks["redis"] = {"status": "not_configured"}

    healthy = db_ok and redis_ok
    envelope = Envelope(
        status="ok",
        data={
            "status": "healthy" if healthy else "unhealthy",
            "checks": checks,
            "version": __version__,
        },
    )
    return JSONResponse(status_code=200 if healthy else 503, content=envelope.model_dump())


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or get_settings()
    app = FastAPI(
        title="Event Manager Auth",
        version=__version__,
        lifespan=lifespan,
        docs_url="/api/docs",
        redoc_url=None,
        openapi_url="/api/openapi.json",
    )
    _install_middleware(app, settings)
    register_exception_handlers(app)
    app.include_router(router)
    app.include_router(admin_router)
    app.add_api_route("/health", health, methods=["GET"], tags=["health"])
    return app


app = create_app()

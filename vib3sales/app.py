from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import RedirectResponse

from vib3sales.api.error_handling import error_response, register_exception_handlers
from vib3sales.api.routes import ACCESS_COOKIE, crm_router, router
from vib3sales.config import Settings
from vib3sales.logging import get_logger, set_correlation_id
from vib3sales.service.errors import ServiceError

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"

_sweep_task: asyncio.Task | None = None


async def _run_periodic_sweep(interval_seconds: int) -> None:
    """Prune stale login attempts, dead sessions and expired CSRF tokens."""
    from vib3sales.service.runtime import get_runtime

    while True:
        await asyncio.sleep(interval_seconds)
        try:
            runtime = get_runtime()
            removed = await asyncio.to_thread(runtime.sweep)
            removed["csrf_tokens"] = await runtime.csrf.sweep()
            logger.info("periodic_sweep_complete", **removed)
        except Exception as exc:
            logger.error("periodic_sweep_failed", error_type=type(exc).__name__, error=str(exc))


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events."""
    global _sweep_task
    from vib3sales.service.runtime import get_runtime

    runtime = get_runtime()
    interval = runtime.settings.cleanup_interval_seconds
    if interval > 0:
        _sweep_task = asyncio.create_task(_run_periodic_sweep(interval))

    yield

    try:
        if _sweep_task:
            _sweep_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await _sweep_task
            _sweep_task = None
        await get_runtime().close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="Vib3 Idea Sales API", version=__version__, lifespan=lifespan)


_CSRF_SAFE_METHODS = {"GET", "HEAD", "OPTIONS", "TRACE"}
# anonymous entry points; they never act on the cookie's session
_CSRF_EXEMPT_PATHS = {
    "/api/auth/signup",
    "/api/auth/login",
    "/api/auth/verify-email",
    "/api/auth/forgot-password",
    "/api/auth/reset-password",
}


def _allowed_origins() -> List[str]:
    if _settings.cors_allow_origins:
        return _settings.cors_allow_origins
    # local dev hosts; no wildcard while credentials are allowed
    return [
        "http://localhost:3000",
        "http://localhost:5000",
        "http://localhost:5173",
        "http://127.0.0.1:5000",
        "http://127.0.0.1:5173",
    ]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=_settings.cors_allow_credentials,
    allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-CSRF-Token", "X-Request-ID"],
    expose_headers=["X-Request-ID", "Retry-After"],
    max_age=3600,
)


@app.middleware("http")
async def enforce_csrf_token(request: Request, call_next):
    """Require ``X-CSRF-Token`` on cookie-authenticated state-changing requests.

    Bearer clients and anonymous requests pass through; the route decides
    whether they are allowed.
    """
    if request.method.upper() in _CSRF_SAFE_METHODS:
        return await call_next(request)
    if request.url.path in _CSRF_EXEMPT_PATHS:
        return await call_next(request)
    if request.headers.get("Authorization"):
        return await call_next(request)
    cookie_token = request.cookies.get(ACCESS_COOKIE)
    if not cookie_token:
        return await call_next(request)

    from vib3sales.service.runtime import get_runtime

    runtime = get_runtime()
    try:
        ctx = await runtime.auth.authenticate(None, cookie_token)
    except ServiceError:
        # stale cookie; the route answers 401 if it needs a user
        return await call_next(request)
    if not await runtime.csrf.verify(ctx.session_id, request.headers.get("X-CSRF-Token")):
        logger.warning("csrf_rejected", path=request.url.path, session_id=ctx.session_id)
        return error_response(403, "Invalid or missing CSRF token", code="forbidden")
    return await call_next(request)


@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("X-XSS-Protection", "1; mode=block")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    if request.url.path.startswith("/api/") or request.url.path == "/healthz":
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    if _is_https(request) and _settings.enable_hsts:
        response.headers.setdefault(
            "Strict-Transport-Security", "max-age=31536000; includeSubDomains"
        )
    response.headers.setdefault(
        "Content-Security-Policy",
        "default-src 'self'; script-src 'self'; style-src 'self' 'unsafe-inline'; "
        "img-src 'self' data: https:; connect-src 'self'; font-src 'self'; "
        "frame-ancestors 'none'; base-uri 'self'; form-action 'self'",
    )
    return response


def _is_https(request: Request) -> bool:
    proto = request.headers.get("x-forwarded-proto") or request.url.scheme
    return proto.split(",")[0].strip().lower() == "https"


@app.middleware("http")
async def redirect_to_https(request: Request, call_next):
    if _settings.force_https and not _is_https(request):
        target = request.url.replace(scheme="https")
        return RedirectResponse(str(target), status_code=301)
    return await call_next(request)


# registered last so it runs outermost and every log line carries the id
@app.middleware("http")
async def add_correlation_id(request: Request, call_next):
    """Honour or mint ``X-Request-ID`` and echo it on the response."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


register_exception_handlers(app)
app.include_router(router)
app.include_router(crm_router)


HEALTH_CHECK_TIMEOUT_SECONDS = 3


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    """Dependency checks for the database and Redis, each bounded by a timeout."""
    from vib3sales.service.runtime import get_runtime

    checks: Dict[str, Dict[str, Any]] = {}

    async def _run_bounded(label: str, func) -> bool:
        try:
            await asyncio.wait_for(asyncio.to_thread(func), HEALTH_CHECK_TIMEOUT_SECONDS)
            return True
        except asyncio.TimeoutError:
            logger.error(
                "health_check_timeout", component=label, timeout=HEALTH_CHECK_TIMEOUT_SECONDS
            )
        except Exception as exc:
            logger.error("health_check_failed", component=label, error=str(exc))
        return False

    runtime = get_runtime()
    db_ok = await _run_bounded("database", runtime.store.verify_connection)
    checks["database"] = {
        "status": "healthy" if db_ok else "unhealthy",
        "type": "memory" if runtime.settings.use_memory_store else "postgres",
    }

    redis_ok = True
    if runtime.cache is not None:
        redis_ok = await _run_bounded("redis", runtime.cache.verify_connection)
        checks["redis"] = {"status": "healthy" if redis_ok else "unhealthy"}
    else:
        checks["redis"] = {"status": "not_configured"}

    return {
        "status": "healthy" if db_ok and redis_ok else "unhealthy",
        "checks": checks,
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }

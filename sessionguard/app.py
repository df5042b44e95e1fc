from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from typing import List

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from sessionguard.api.error_handling import _error_response, register_exception_handlers
from sessionguard.api.routes import ACCESS_COOKIE, router
from sessionguard.config import Settings
from sessionguard.logging import get_logger, set_correlation_id
from sessionguard.service.csrf import CSRF_COOKIE, CSRF_HEADER, CsrfGuard
from sessionguard.service.gateway import AuthGateway
from sessionguard.service.runtime import get_runtime

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"

# Unauthenticated entry points; a stale access cookie must not block them
_CSRF_EXEMPT_PATHS = frozenset({
    "/v1/auth/signup",
    "/v1/auth/login",
    "/v1/auth/reset/request",
    "/v1/auth/reset/confirm",
})

_cleanup_task: asyncio.Task | None = None


async def _run_periodic_cleanup(interval_seconds: int) -> None:
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            summary = await get_runtime().auth.cleanup_expired()
            logger.info("periodic_cleanup_complete", **summary)
        except Exception as exc:
            logger.error("periodic_cleanup_failed", error=str(exc))


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _cleanup_task
    try:
        runtime = get_runtime()
        _cleanup_task = asyncio.create_task(
            _run_periodic_cleanup(runtime.settings.cleanup_interval_seconds)
        )
    except Exception as exc:
        logger.error("startup_failed", error=str(exc))

    yield

    try:
        if _cleanup_task:
            _cleanup_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await _cleanup_task
        await get_runtime().close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="sessionguard", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    if _settings.cors_allow_origins:
        return _settings.cors_allow_origins
    # Local dev hosts only; never a wildcard while credentials are allowed
    return [
        "http://localhost",
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:3000",
        "http://127.0.0.1:5173",
    ]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=_settings.cors_allow_credentials,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", CSRF_HEADER, "X-Request-ID"],
    expose_headers=[
        "X-Request-ID",
        "Retry-After",
        "X-RateLimit-Limit",
        "X-RateLimit-Remaining",
        "X-RateLimit-Reset",
    ],
    max_age=3600,
)


@app.middleware("http")
async def enforce_csrf_token(request: Request, call_next):
    """Double-submit check for cookie-authenticated state-changing requests.

    Credential precedence matches the gateway: whenever an access cookie is
    present it is the credential, even alongside an Authorization header.
    Bearer-only clients carry no ambient credential and are not checked. When
    the access cookie does not verify, the request falls through and the
    authentication dependency rejects it.
    """
    access_cookie, cookie_authenticated = AuthGateway.extract_access_token(
        request.headers.get("Authorization"), request.cookies.get(ACCESS_COOKIE)
    )
    if not CsrfGuard.requires_check(request.method, cookie_authenticated=cookie_authenticated):
        return await call_next(request)
    if request.url.path in _CSRF_EXEMPT_PATHS:
        return await call_next(request)

    runtime = get_runtime()
    user_id = runtime.tokens.verify_access(access_cookie)
    if user_id is None:
        return await call_next(request)
    if not runtime.csrf.verify_request(
        header_token=request.headers.get(CSRF_HEADER),
        cookie_token=request.cookies.get(CSRF_COOKIE),
        user_id=user_id,
    ):
        logger.warning(
            "csrf_rejected",
            path=request.url.path,
            method=request.method,
            user_id=user_id,
        )
        return _error_response(403, "missing or invalid CSRF token", code="csrf_invalid")
    return await call_next(request)


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    if request.url.path.startswith("/v1/") or request.url.path == "/healthz":
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    response.headers.setdefault("Content-Security-Policy", "default-src 'none'; frame-ancestors 'none'")
    return response


# Registered last so it runs first and the correlation id covers every log line
@app.middleware("http")
async def add_correlation_id(request, call_next):
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.get("/healthz")
async def healthz():
    runtime = get_runtime()
    checks = {"store": "ok", "cache": "disabled"}
    healthy = True
    try:
        if not runtime.store.ping():
            checks["store"] = "unavailable"
            healthy = False
    except Exception as exc:
        logger.warning("health_store_failed", error=str(exc))
        checks["store"] = "unavailable"
        healthy = False
    if runtime.cache is not None:
        checks["cache"] = "ok"
    status_code = 200 if healthy else 503
    body = {"status": "ok" if healthy else "degraded", "checks": checks, "version": __version__}
    return JSONResponse(status_code=status_code, content=body)


register_exception_handlers(app)
app.include_router(router)

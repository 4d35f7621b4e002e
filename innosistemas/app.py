from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, Dict, List

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from starlette.concurrency import run_in_threadpool

from innosistemas.api.error_handling import _error_response, register_exception_handlers
from innosistemas.api.routes import (
    RATE_LIMIT_MESSAGE,
    admit_request,
    extract_bearer_token,
    router,
)
from innosistemas.config import Settings
from innosistemas.logging import (
    bind_request_context,
    clear_request_context,
    get_logger,
    set_correlation_id,
)

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"

# Never rate limited
_UNMETERED_PATHS = {"/healthz", "/docs", "/redoc", "/openapi.json"}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime on startup and release its resources on shutdown."""
    from innosistemas.service.runtime import close_runtime, get_runtime

    get_runtime()
    logger.info("runtime_started")

    yield

    try:
        close_runtime()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="InnoSistemas Auth", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    if _settings.cors_allow_origins:
        return _settings.cors_allow_origins
    # Local dev hosts; no wildcard because credentials are allowed
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
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=["X-Request-ID", "X-RateLimit-Limit", "X-RateLimit-Remaining"],
    max_age=3600,
)


@app.middleware("http")
async def admit_requests(request: Request, call_next):
    """Resolve the bearer token, then run token-bucket admission.

    Authenticated callers are keyed by email and anonymous ones by client IP.
    The resolved ``AuthContext`` is stored on ``request.state`` so handlers
    receive it explicitly through the ``get_user`` dependency.
    """
    if request.method.upper() == "OPTIONS" or request.url.path in _UNMETERED_PATHS:
        return await call_next(request)

    from innosistemas.service.runtime import get_runtime

    runtime = get_runtime()
    token = extract_bearer_token(request.headers.get("Authorization"))
    ctx = None
    if token:
        ctx = await run_in_threadpool(runtime.auth.authenticate_request, token)
    request.state.auth_context = ctx

    if not runtime.rate_limiter.is_enabled:
        return await call_next(request)

    allowed, info = await run_in_threadpool(admit_request, runtime, request, ctx)
    if not allowed:
        response = _error_response(429, RATE_LIMIT_MESSAGE, code="rate_limited")
        info.apply_headers(response)
        return response
    response = await call_next(request)
    info.apply_headers(response)
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    if request.url.path.startswith("/v1/"):
        response.headers.setdefault("Cache-Control", "no-store")
    return response


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag each request with a correlation ID for log tracing.

    Taken from the X-Request-ID header when present, otherwise generated,
    and echoed back in the X-Request-ID response header.
    """
    client_request_id = request.headers.get("X-Request-ID")
    correlation_id = set_correlation_id(client_request_id)
    clear_request_context()
    bind_request_context(method=request.method, path=request.url.path)
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
def health() -> Dict[str, Any]:
    """Report TTL store reachability and rate limiter state."""
    from innosistemas.service.runtime import get_runtime

    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {}
    healthy = True
    try:
        runtime.cache.verify_connection()
        checks["cache"] = {"status": "healthy", "type": type(runtime.cache).__name__}
    except Exception as exc:
        healthy = False
        checks["cache"] = {"status": "unhealthy", "error": type(exc).__name__}
    checks["rate_limiter"] = {"enabled": runtime.rate_limiter.is_enabled}
    return {
        "status": "healthy" if healthy else "unhealthy",
        "version": __version__,
        "checks": checks,
    }

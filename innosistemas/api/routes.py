from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, Response

from innosistemas.api.schemas import (
    AuthResponse,
    Envelope,
    LoginRequest,
    LogoutResponse,
    PrincipalResponse,
    RateLimitStatsResponse,
    RevocationClearResponse,
    TokenRefreshRequest,
    TokenRequest,
)
from innosistemas.logging import get_logger
from innosistemas.service.auth import AuthContext
from innosistemas.service.errors import (
    ACCESS_DENIED_MESSAGE,
    AUTHENTICATION_REQUIRED_MESSAGE,
)
from innosistemas.service.rate_limit import TrafficClass
from innosistemas.service.runtime import get_runtime
from innosistemas.storage.models import Permission, Role

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

RATE_LIMIT_MESSAGE = "Rate limit exceeded. Please try again later."

_AUTH_PATH_SUFFIXES = ("/auth/login", "/auth/refresh", "/auth/register")


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


def extract_bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def is_auth_endpoint(path: str, method: str) -> bool:
    """Login, refresh, register and GraphQL POSTs draw from the auth bucket."""
    normalized = path.rstrip("/")
    if normalized.endswith(_AUTH_PATH_SUFFIXES):
        return True
    return method.upper() == "POST" and normalized.endswith("/graphql")


def client_ip(request: Request, *, trust_proxy_headers: bool) -> str:
    if trust_proxy_headers:
        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded:
            first = forwarded.split(",")[0].strip()
            if first:
                return first
        real_ip = request.headers.get("X-Real-IP")
        if real_ip and real_ip.strip():
            return real_ip.strip()
    return request.client.host if request.client else "unknown"


def rate_limit_key(request: Request, ctx: Optional[AuthContext], *, trust_proxy_headers: bool) -> str:
    if ctx is not None:
        return f"user:{ctx.email}"
    return f"ip:{client_ip(request, trust_proxy_headers=trust_proxy_headers)}"


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining")

    def __init__(self, limit: int, remaining: int):
        self.limit = limit
        self.remaining = remaining

    def apply_headers(self, response: Response) -> None:
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))


def admit_request(runtime, request: Request, ctx: Optional[AuthContext]) -> tuple[bool, RateLimitInfo]:
    """Consult the rate limiter for ``request``; returns (allowed, header info)."""
    limiter = runtime.rate_limiter
    traffic_class = (
        TrafficClass.AUTH
        if is_auth_endpoint(request.url.path, request.method)
        else TrafficClass.GENERAL
    )
    key = rate_limit_key(
        request, ctx, trust_proxy_headers=runtime.settings.trust_proxy_headers
    )
    allowed = limiter.allow(key, 1, traffic_class)
    info = RateLimitInfo(
        limiter.capacity(traffic_class), limiter.available_tokens(key, traffic_class)
    )
    if not allowed:
        logger.warning(
            "request_rate_limited",
            key=key,
            traffic_class=traffic_class.value,
            path=request.url.path,
        )
    return allowed, info


def get_user(
    request: Request, authorization: Optional[str] = Header(None)
) -> AuthContext:
    # The admission middleware already resolved the bearer token
    ctx = getattr(request.state, "auth_context", None)
    if ctx is None:
        ctx = get_runtime().auth.authenticate_request(extract_bearer_token(authorization))
    if ctx is None:
        raise _http_error("unauthorized", AUTHENTICATION_REQUIRED_MESSAGE, status_code=401)
    return ctx


def get_admin_user(principal: AuthContext = Depends(get_user)) -> AuthContext:
    if not principal.has_role(Role.ADMIN):
        raise _http_error("forbidden", ACCESS_DENIED_MESSAGE, status_code=403)
    return principal


def require_permission(permission: Permission | str):
    """Build a dependency that admits principals holding ``permission``."""
    required = Permission(permission).value

    def dependency(principal: AuthContext = Depends(get_user)) -> AuthContext:
        if not principal.has_permission(required):
            raise _http_error("forbidden", ACCESS_DENIED_MESSAGE, status_code=403)
        return principal

    return dependency


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
def login(body: LoginRequest):
    """Authenticate with email and password and return a token pair.

    Raises:
        401: unknown user, wrong password or unexpected failure
        429: auth rate limit exceeded for this client
    """
    runtime = get_runtime()
    tokens = runtime.auth.login(body.email, body.password)
    return Envelope(status="ok", data=AuthResponse.from_tokens(tokens))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
def refresh(body: TokenRefreshRequest):
    """Rotate a refresh token into a new access/refresh pair."""
    runtime = get_runtime()
    tokens = runtime.auth.refresh_token(body.refresh_token)
    return Envelope(status="ok", data=AuthResponse.from_tokens(tokens))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
def logout(authorization: Optional[str] = Header(None)):
    runtime = get_runtime()
    result = runtime.auth.logout(extract_bearer_token(authorization))
    return Envelope(status="ok", data=LogoutResponse.from_result(result))


@router.post("/auth/logout-all", response_model=Envelope, tags=["auth"])
def logout_all(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    result = runtime.auth.logout_from_all_devices(principal.email)
    return Envelope(status="ok", data=LogoutResponse.from_result(result))


@router.get("/me", response_model=Envelope, tags=["auth"])
def me(principal: AuthContext = Depends(get_user)):
    return Envelope(status="ok", data=PrincipalResponse.from_context(principal))


@router.get("/admin/rate-limits/{key}", response_model=Envelope, tags=["admin"])
def rate_limit_stats(key: str, principal: AuthContext = Depends(get_admin_user)):
    limiter = get_runtime().rate_limiter
    return Envelope(
        status="ok",
        data=RateLimitStatsResponse(
            key=key,
            general_available=limiter.available_tokens(key, TrafficClass.GENERAL),
            auth_available=limiter.available_tokens(key, TrafficClass.AUTH),
            general_stats=limiter.stats(key, TrafficClass.GENERAL),
            auth_stats=limiter.stats(key, TrafficClass.AUTH),
            enabled=limiter.is_enabled,
        ),
    )


@router.delete("/admin/rate-limits/{key}", response_model=Envelope, tags=["admin"])
def reset_rate_limit(key: str, principal: AuthContext = Depends(get_admin_user)):
    get_runtime().rate_limiter.reset(key)
    logger.info("admin_rate_limit_reset", admin_id=principal.user_id)
    return Envelope(status="ok", data={"key": key, "reset": True})


@router.post("/admin/revocations/remove", response_model=Envelope, tags=["admin"])
def remove_revocation(body: TokenRequest, principal: AuthContext = Depends(get_admin_user)):
    removed = get_runtime().revocations.unrevoke(body.token)
    logger.info("admin_revocation_removed", admin_id=principal.user_id, removed=removed)
    return Envelope(status="ok", data={"removed": removed})


@router.post("/admin/revocations/clear", response_model=Envelope, tags=["admin"])
def clear_revocations(principal: AuthContext = Depends(get_admin_user)):
    removed = get_runtime().revocations.clear()
    logger.info("admin_revocations_cleared", admin_id=principal.user_id, removed=removed)
    return Envelope(status="ok", data=RevocationClearResponse(removed=removed))

from __future__ import annotations

from enum import Enum
from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code used in the response envelope:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - rate_limited (429)
    - validation_error (400)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class AuthFailureKind(str, Enum):
    """Why a login, refresh or request authentication was refused."""

    TOKEN_MALFORMED = "token_malformed"
    TOKEN_EXPIRED = "token_expired"
    TOKEN_REVOKED = "token_revoked"
    TOKEN_INVALID = "token_invalid"
    WRONG_TOKEN_TYPE = "wrong_token_type"
    USER_NOT_FOUND = "user_not_found"
    INVALID_CREDENTIALS = "invalid_credentials"
    NO_ACTIVE_SESSIONS = "no_active_sessions"
    STORAGE_UNAVAILABLE = "storage_unavailable"
    AUTHENTICATION_FAILED = "authentication_failed"
    REFRESH_FAILED = "refresh_failed"


AUTH_FAILURE_MESSAGES: dict[AuthFailureKind, str] = {
    AuthFailureKind.TOKEN_MALFORMED: "Token inválido",
    AuthFailureKind.TOKEN_EXPIRED: "Token inválido",
    AuthFailureKind.TOKEN_INVALID: "Token inválido",
    AuthFailureKind.TOKEN_REVOKED: "Token inválido o revocado",
    AuthFailureKind.WRONG_TOKEN_TYPE: "Token no es un refresh token",
    AuthFailureKind.USER_NOT_FOUND: "Usuario no encontrado",
    AuthFailureKind.INVALID_CREDENTIALS: "Credenciales inválidas",
    AuthFailureKind.NO_ACTIVE_SESSIONS: "No hay sesiones activas",
    AuthFailureKind.STORAGE_UNAVAILABLE: "Servicio temporalmente no disponible",
    AuthFailureKind.AUTHENTICATION_FAILED: "Error durante la autenticación",
    AuthFailureKind.REFRESH_FAILED: "Error al renovar el token",
}

ACCESS_DENIED_MESSAGE = "No tiene permisos suficientes para acceder a este recurso"
AUTHENTICATION_REQUIRED_MESSAGE = "Autenticación requerida"


class AuthenticationFailed(AuthenticationError):
    """Login or refresh refused.

    Every kind produces the same status and error code; only the fixed
    message differs, so the response shape never reveals which check failed.
    """

    def __init__(self, kind: AuthFailureKind) -> None:
        super().__init__(AUTH_FAILURE_MESSAGES[kind])
        self.kind = kind


class CredentialsError(Exception):
    """Raised by the credential authenticator."""


class BadCredentials(CredentialsError):
    """Password did not match the stored record."""


class AccountDisabled(CredentialsError):
    """Identity exists but is disabled or locked."""


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "RateLimitedError",
    "ServerError",
    "AuthFailureKind",
    "AUTH_FAILURE_MESSAGES",
    "ACCESS_DENIED_MESSAGE",
    "AUTHENTICATION_REQUIRED_MESSAGE",
    "AuthenticationFailed",
    "CredentialsError",
    "BadCredentials",
    "AccountDisabled",
]

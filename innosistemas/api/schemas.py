from __future__ import annotations

import re
import unicodedata
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from innosistemas.service.auth import AuthContext, AuthTokens, LogoutResult
from innosistemas.storage.models import IdentitySummary

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(f"unknown error code: {value}")
        return value


class Envelope(BaseModel):
    """API response envelope."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = unicodedata.normalize("NFKC", value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


class LoginRequest(BaseModel):
    email: str
    password: str = Field(..., min_length=1, max_length=128)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1, max_length=4096)


class TokenRequest(BaseModel):
    token: str = Field(..., min_length=1, max_length=4096)


class UserInfo(BaseModel):
    id: int
    email: str
    role: str
    first_name: str
    last_name: str
    full_name: str
    team_id: Optional[int] = None
    course_id: Optional[int] = None

    @classmethod
    def from_summary(cls, summary: IdentitySummary) -> "UserInfo":
        return cls(
            id=summary.id,
            email=summary.email,
            role=summary.role.value,
            first_name=summary.first_name,
            last_name=summary.last_name,
            full_name=summary.full_name,
            team_id=summary.team_id,
            course_id=summary.course_id,
        )


class AuthResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "Bearer"
    user: UserInfo

    @classmethod
    def from_tokens(cls, tokens: AuthTokens) -> "AuthResponse":
        return cls(
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            token_type=tokens.token_type,
            user=UserInfo.from_summary(tokens.user),
        )


class LogoutResponse(BaseModel):
    success: bool
    message: str

    @classmethod
    def from_result(cls, result: LogoutResult) -> "LogoutResponse":
        return cls(success=result.success, message=result.message)


class PrincipalResponse(BaseModel):
    user_id: Optional[int] = None
    email: str
    role: str
    name: Optional[str] = None
    team_id: Optional[int] = None
    course_id: Optional[int] = None
    authorities: List[str] = Field(default_factory=list)
    can_send_notifications: bool = False

    @classmethod
    def from_context(cls, ctx: AuthContext) -> "PrincipalResponse":
        return cls(
            user_id=ctx.user_id,
            email=ctx.email,
            role=ctx.role,
            name=ctx.name,
            team_id=ctx.team_id,
            course_id=ctx.course_id,
            authorities=list(ctx.authorities),
            can_send_notifications=ctx.has_permission("SEND_NOTIFICATIONS"),
        )


class RateLimitStatsResponse(BaseModel):
    key: str
    general_available: int
    auth_available: int
    general_stats: str
    auth_stats: str
    enabled: bool


class RevocationClearResponse(BaseModel):
    removed: int

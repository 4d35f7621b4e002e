from __future__ import annotations

from dataclasses import dataclass, field
from typing import Generic, List, Optional, Protocol, TypeVar

from innosistemas.logging import get_logger
from innosistemas.service.errors import (
    AuthenticationFailed,
    AuthFailureKind,
    BadCredentials,
)
from innosistemas.service.revocation import TokenRevocationStore
from innosistemas.service.sessions import SessionRegistry
from innosistemas.service.tokens import TokenClaims, TokenCodec
from innosistemas.storage.models import Identity, IdentitySummary, Role

logger = get_logger(__name__)

LOGOUT_OK = "Logout exitoso"
LOGOUT_ALL_OK = "Logout exitoso de todos los dispositivos"
LOGOUT_INVALID_TOKEN = "Token inválido"
LOGOUT_FAILED = "Error durante el logout"

T = TypeVar("T")


class IdentityLookup(Protocol):
    def find_by_email(self, email: Optional[str]) -> Optional[Identity]: ...


class CredentialAuthenticator(Protocol):
    def authenticate(self, email: str, password: str) -> Identity: ...


@dataclass(frozen=True)
class AuthOutcome(Generic[T]):
    """Ok(value) or Err(failure) returned by the orchestrator internals."""

    value: Optional[T] = None
    failure: Optional[AuthFailureKind] = None

    @classmethod
    def success(cls, value: T) -> "AuthOutcome[T]":
        return cls(value=value)

    @classmethod
    def error(cls, failure: AuthFailureKind) -> "AuthOutcome[T]":
        return cls(failure=failure)

    @property
    def ok(self) -> bool:
        return self.failure is None

    def unwrap(self) -> T:
        if self.failure is not None:
            raise AuthenticationFailed(self.failure)
        return self.value  # type: ignore[return-value]


@dataclass(frozen=True)
class AuthTokens:
    access_token: str
    refresh_token: str
    user: IdentitySummary
    token_type: str = "Bearer"


@dataclass(frozen=True)
class LogoutResult:
    success: bool
    message: str
    sessions_invalidated: int = 0


@dataclass
class AuthContext:
    """Claims of an authenticated request, passed explicitly to handlers."""

    user_id: Optional[int]
    email: str
    role: str
    token: str
    expires_at: float
    team_id: Optional[int] = None
    course_id: Optional[int] = None
    name: Optional[str] = None
    authorities: List[str] = field(default_factory=list)

    @classmethod
    def from_claims(cls, claims: TokenClaims, token: str) -> "AuthContext":
        return cls(
            user_id=claims.user_id,
            email=claims.subject,
            role=claims.role or "",
            token=token,
            expires_at=claims.expires_at,
            team_id=claims.team_id,
            course_id=claims.course_id,
            name=claims.name,
            authorities=list(claims.authorities),
        )

    def has_role(self, role: Role | str) -> bool:
        return self.role == Role(role).value

    def has_permission(self, permission: str) -> bool:
        return permission in self.authorities


class AuthService:
    """Login, refresh, logout and request authentication.

    Composes the token codec, revocation store and session registry. The
    ``attempt_*`` methods return ``AuthOutcome`` values; ``login`` and
    ``refresh_token`` unwrap them and raise ``AuthenticationFailed``. Logout
    operations never raise and report through ``LogoutResult``.
    """

    def __init__(
        self,
        identities: IdentityLookup,
        authenticator: CredentialAuthenticator,
        codec: TokenCodec,
        revocations: TokenRevocationStore,
        sessions: SessionRegistry,
    ) -> None:
        self.identities = identities
        self.authenticator = authenticator
        self.codec = codec
        self.revocations = revocations
        self.sessions = sessions
        self.logger = logger

    def _fail(self, kind: AuthFailureKind, **context) -> AuthOutcome:
        self.logger.warning("auth_failed", kind=kind.value, **context)
        return AuthOutcome.error(kind)

    def _issue(self, identity: Identity) -> AuthTokens:
        return AuthTokens(
            access_token=self.codec.issue_access_token(identity),
            refresh_token=self.codec.issue_refresh_token(identity),
            user=IdentitySummary.from_identity(identity),
        )

    # ------------------------------------------------------------------
    # login
    # ------------------------------------------------------------------

    def attempt_login(self, email: str, password: str) -> AuthOutcome[AuthTokens]:
        try:
            identity = self.identities.find_by_email(email)
            if identity is None:
                return self._fail(AuthFailureKind.USER_NOT_FOUND)
            try:
                self.authenticator.authenticate(email, password)
            except BadCredentials:
                return self._fail(AuthFailureKind.INVALID_CREDENTIALS, identity_id=identity.id)
            tokens = self._issue(identity)
            if not self.sessions.register_session(identity.email, tokens.access_token):
                self.logger.warning("session_register_degraded", identity_id=identity.id)
        except Exception as exc:
            self.logger.error(
                "login_unexpected_error",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return self._fail(AuthFailureKind.AUTHENTICATION_FAILED)
        self.logger.info("login_succeeded", identity_id=identity.id, role=identity.role.value)
        return AuthOutcome.success(tokens)

    def login(self, email: str, password: str) -> AuthTokens:
        return self.attempt_login(email, password).unwrap()

    def validate_credentials(self, email: str, password: str) -> bool:
        try:
            self.authenticator.authenticate(email, password)
        except Exception as exc:
            self.logger.info("credentials_rejected", error_type=type(exc).__name__)
            return False
        return True

    # ------------------------------------------------------------------
    # refresh
    # ------------------------------------------------------------------

    def attempt_refresh(self, refresh_token: Optional[str]) -> AuthOutcome[AuthTokens]:
        # Revocation is checked before the signature is trusted
        if self.revocations.is_revoked(refresh_token):
            return self._fail(AuthFailureKind.TOKEN_REVOKED)
        verification = self.codec.verify(refresh_token)
        if not verification.ok:
            return self._fail(
                AuthFailureKind.TOKEN_INVALID, reason=verification.failure.value
            )
        claims = verification.claims
        if not claims.is_refresh:
            return self._fail(AuthFailureKind.WRONG_TOKEN_TYPE)
        try:
            identity = self.identities.find_by_email(claims.subject)
        except Exception as exc:
            self.logger.error("identity_lookup_failed", error=str(exc))
            return self._fail(AuthFailureKind.STORAGE_UNAVAILABLE)
        if identity is None:
            return self._fail(AuthFailureKind.USER_NOT_FOUND)
        if not self.sessions.has_active_sessions(identity.email):
            return self._fail(AuthFailureKind.NO_ACTIVE_SESSIONS, identity_id=identity.id)
        try:
            # Issue from the stored identity so role changes take effect
            tokens = self._issue(identity)
            # Concurrent refreshes of one token: only the first claim wins
            if not self.revocations.claim(refresh_token, claims.expires_at):
                return self._fail(AuthFailureKind.TOKEN_REVOKED, identity_id=identity.id)
        except Exception as exc:
            self.logger.error(
                "refresh_unexpected_error",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return self._fail(AuthFailureKind.REFRESH_FAILED)
        self.logger.info("token_refreshed", identity_id=identity.id)
        return AuthOutcome.success(tokens)

    def refresh_token(self, refresh_token: Optional[str]) -> AuthTokens:
        return self.attempt_refresh(refresh_token).unwrap()

    # ------------------------------------------------------------------
    # logout
    # ------------------------------------------------------------------

    def logout(self, access_token: Optional[str]) -> LogoutResult:
        try:
            verification = self.codec.verify(access_token)
            if not verification.ok:
                self.logger.info("logout_rejected", reason=verification.failure.value)
                return LogoutResult(False, LOGOUT_INVALID_TOKEN)
            claims = verification.claims
            self.revocations.revoke(access_token, claims.expires_at)
            removed = self.sessions.invalidate_all_user_sessions(claims.subject)
        except Exception as exc:
            self.logger.error(
                "logout_failed", error_type=type(exc).__name__, error=str(exc)
            )
            return LogoutResult(False, LOGOUT_FAILED)
        self.logger.info("logout_succeeded", user_id=claims.user_id, sessions=removed)
        return LogoutResult(True, LOGOUT_OK, removed)

    def logout_from_all_devices(self, identity: Optional[str]) -> LogoutResult:
        try:
            removed = self.sessions.invalidate_all_user_sessions(identity)
        except Exception as exc:
            self.logger.error(
                "logout_all_failed", error_type=type(exc).__name__, error=str(exc)
            )
            return LogoutResult(False, LOGOUT_FAILED)
        self.logger.info("logout_all_succeeded", sessions=removed)
        return LogoutResult(True, LOGOUT_ALL_OK, removed)

    # ------------------------------------------------------------------
    # request authentication
    # ------------------------------------------------------------------

    def authenticate_request(self, token: Optional[str]) -> Optional[AuthContext]:
        """Resolve a bearer token into an ``AuthContext`` or ``None``."""
        if not token:
            return None
        if self.revocations.is_revoked(token):
            self.logger.warning("revoked_token_presented")
            return None
        verification = self.codec.verify(token)
        if not verification.ok:
            return None
        claims = verification.claims
        if claims.is_refresh:
            self.logger.warning("refresh_token_used_as_bearer", user_id=claims.user_id)
            return None
        identity = self.identities.find_by_email(claims.subject)
        if identity is None or not identity.is_active or identity.is_locked:
            self.logger.warning("bearer_identity_unavailable", user_id=claims.user_id)
            return None
        return AuthContext.from_claims(claims, token)

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional, Tuple

from innosistemas.logging import get_logger
from innosistemas.storage.models import Identity

logger = get_logger(__name__)

_ALGORITHM = "HS256"


class TokenKind(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"


class TokenFailure(str, Enum):
    """Reason a token failed verification. Callers only see "invalid"."""

    MALFORMED = "malformed"
    EXPIRED = "expired"
    UNSUPPORTED_ALGORITHM = "unsupported_algorithm"
    BAD_SIGNATURE = "bad_signature"


@dataclass(frozen=True)
class TokenClaims:
    subject: str
    user_id: Optional[int]
    kind: TokenKind
    issued_at: float
    expires_at: float
    token_id: Optional[str] = None
    email: Optional[str] = None
    role: Optional[str] = None
    team_id: Optional[int] = None
    course_id: Optional[int] = None
    name: Optional[str] = None
    authorities: Tuple[str, ...] = field(default_factory=tuple)

    @property
    def is_refresh(self) -> bool:
        return self.kind is TokenKind.REFRESH

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "TokenClaims":
        authorities = payload.get("authorities") or ()
        if isinstance(authorities, str):
            authorities = [item for item in authorities.split(",") if item]
        return cls(
            subject=str(payload["sub"]),
            user_id=_optional_int(payload.get("userId")),
            kind=TokenKind(payload.get("type", TokenKind.ACCESS.value)),
            issued_at=float(payload.get("iat", 0)),
            expires_at=float(payload["exp"]),
            token_id=payload.get("jti"),
            email=payload.get("email"),
            role=payload.get("role"),
            team_id=_optional_int(payload.get("teamId")),
            course_id=_optional_int(payload.get("courseId")),
            name=payload.get("name"),
            authorities=tuple(str(item) for item in authorities),
        )


@dataclass(frozen=True)
class TokenVerification:
    """Outcome of ``TokenCodec.verify``: claims when valid, a failure otherwise."""

    claims: Optional[TokenClaims] = None
    failure: Optional[TokenFailure] = None

    @property
    def ok(self) -> bool:
        return self.claims is not None


class _TokenRejected(Exception):
    def __init__(self, failure: TokenFailure, reason: str) -> None:
        super().__init__(reason)
        self.failure = failure
        self.reason = reason


def _optional_int(value: Any) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


class TokenCodec:
    """Issues and verifies HS256 identity tokens.

    Access tokens carry the full claim set (role, team, course, authorities);
    refresh tokens only identify the subject and are marked ``type=refresh``.
    Expiry is checked against the injected wall clock with no leeway.
    """

    def __init__(
        self,
        secret: str,
        *,
        access_ttl_seconds: int,
        refresh_ttl_seconds: int,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not secret:
            raise ValueError("token secret must not be empty")
        if access_ttl_seconds <= 0 or refresh_ttl_seconds <= 0:
            raise ValueError("token TTLs must be positive")
        self._key = secret.encode("utf-8")
        self.access_ttl_seconds = access_ttl_seconds
        self.refresh_ttl_seconds = refresh_ttl_seconds
        self._clock = clock

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        digest = hmac.new(self._key, signing_input.encode(), hashlib.sha256).digest()
        return self._encode_segment(digest)

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": _ALGORITHM, "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: Optional[str]) -> dict[str, Any]:
        if not token or not isinstance(token, str):
            raise _TokenRejected(TokenFailure.MALFORMED, "empty token")
        try:
            header_b64, payload_b64, sig_b64 = token.strip().split(".")
        except ValueError:
            raise _TokenRejected(TokenFailure.MALFORMED, "wrong segment count")

        try:
            header = json.loads(self._decode_segment(header_b64))
        except (binascii.Error, ValueError, UnicodeDecodeError):
            raise _TokenRejected(TokenFailure.MALFORMED, "header not decodable")
        if not isinstance(header, dict):
            raise _TokenRejected(TokenFailure.MALFORMED, "header not an object")
        # Reject "none" and asymmetric algorithms before touching the signature
        if header.get("alg") != _ALGORITHM:
            raise _TokenRejected(
                TokenFailure.UNSUPPORTED_ALGORITHM, f"alg={header.get('alg')!r}"
            )

        if not sig_b64.isascii():
            raise _TokenRejected(TokenFailure.MALFORMED, "signature not ascii")
        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig, sig_b64):
            raise _TokenRejected(TokenFailure.BAD_SIGNATURE, "signature mismatch")

        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (binascii.Error, ValueError, UnicodeDecodeError):
            raise _TokenRejected(TokenFailure.MALFORMED, "payload not decodable")
        if not isinstance(payload, dict) or not payload.get("sub"):
            raise _TokenRejected(TokenFailure.MALFORMED, "missing subject")
        exp = payload.get("exp")
        if isinstance(exp, bool) or not isinstance(exp, (int, float)):
            raise _TokenRejected(TokenFailure.MALFORMED, "missing expiry")
        if exp <= self._clock():
            raise _TokenRejected(TokenFailure.EXPIRED, "token expired")
        return payload

    def _base_claims(self, identity: Identity, kind: TokenKind, ttl: int) -> dict[str, Any]:
        now = int(self._clock())
        return {
            "sub": identity.email,
            "userId": identity.id,
            "type": kind.value,
            "iat": now,
            "exp": now + ttl,
            "jti": str(uuid.uuid4()),
        }

    def issue_access_token(self, identity: Identity) -> str:
        payload = self._base_claims(identity, TokenKind.ACCESS, self.access_ttl_seconds)
        payload.update(
            {
                "email": identity.email,
                "role": identity.role.value,
                "name": identity.full_name,
                "authorities": identity.authorities,
            }
        )
        if identity.team_id is not None:
            payload["teamId"] = identity.team_id
        if identity.course_id is not None:
            payload["courseId"] = identity.course_id
        return self._encode_jwt(payload)

    def issue_refresh_token(self, identity: Identity) -> str:
        payload = self._base_claims(identity, TokenKind.REFRESH, self.refresh_ttl_seconds)
        return self._encode_jwt(payload)

    def verify(self, token: Optional[str]) -> TokenVerification:
        try:
            payload = self._decode_jwt(token)
            claims = TokenClaims.from_payload(payload)
        except _TokenRejected as exc:
            self._log_rejection(exc)
            return TokenVerification(failure=exc.failure)
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("jwt_claims_invalid", error=str(exc))
            return TokenVerification(failure=TokenFailure.MALFORMED)
        return TokenVerification(claims=claims)

    def _log_rejection(self, exc: _TokenRejected) -> None:
        if exc.failure is TokenFailure.EXPIRED:
            logger.info("jwt_expired")
        elif exc.failure is TokenFailure.UNSUPPORTED_ALGORITHM:
            logger.warning("jwt_invalid_algorithm", reason=exc.reason)
        elif exc.failure is TokenFailure.BAD_SIGNATURE:
            logger.warning("jwt_signature_invalid")
        else:
            logger.warning("jwt_malformed", reason=exc.reason)

    def get_all_claims(self, token: Optional[str]) -> dict[str, Any]:
        try:
            return self._decode_jwt(token)
        except _TokenRejected as exc:
            logger.debug("jwt_claims_unavailable", failure=exc.failure.value)
            return {}

    def extract_claim(self, token: Optional[str], name: str) -> Any:
        """Best-effort claim read; ``None`` when the token does not verify."""
        return self.get_all_claims(token).get(name)

    def get_subject(self, token: Optional[str]) -> Optional[str]:
        return self.extract_claim(token, "sub")

    def get_user_id(self, token: Optional[str]) -> Optional[int]:
        return _optional_int(self.extract_claim(token, "userId"))

    def get_role(self, token: Optional[str]) -> Optional[str]:
        return self.extract_claim(token, "role")

    def get_team_id(self, token: Optional[str]) -> Optional[int]:
        return _optional_int(self.extract_claim(token, "teamId"))

    def get_course_id(self, token: Optional[str]) -> Optional[int]:
        return _optional_int(self.extract_claim(token, "courseId"))

    def get_expiration(self, token: Optional[str]) -> Optional[float]:
        exp = self.extract_claim(token, "exp")
        return float(exp) if exp is not None else None

    def is_refresh_token(self, token: Optional[str]) -> bool:
        return self.extract_claim(token, "type") == TokenKind.REFRESH.value

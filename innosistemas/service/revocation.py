from __future__ import annotations

import math
import time
from typing import Callable, Optional

from innosistemas.logging import get_logger
from innosistemas.storage.common import TTLStore

logger = get_logger(__name__)

REVOKED_MARKER = "revoked"


class TokenRevocationStore:
    """Blacklist of revoked tokens that expires alongside the tokens themselves.

    Writes fail open (a lost revocation is logged, the caller carries on) and
    reads fail closed (an unreadable store reports the token as revoked).
    """

    def __init__(
        self,
        store: TTLStore,
        *,
        prefix: str = "token:blacklist:",
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.prefix = prefix
        self._clock = clock

    def _key(self, token: str) -> str:
        return f"{self.prefix}{token}"

    def revoke(self, token: Optional[str], expires_at: Optional[float]) -> bool:
        """Blacklist ``token`` until ``expires_at`` (epoch seconds).

        Returns whether an entry was written. Already expired tokens and
        missing expiries write nothing.
        """
        if not token:
            logger.warning("token_revoke_skipped", reason="empty_token")
            return False
        if expires_at is None:
            logger.warning("token_revoke_skipped", reason="missing_expiry")
            return False
        ttl_millis = math.ceil((float(expires_at) - self._clock()) * 1000)
        if ttl_millis <= 0:
            logger.debug("token_revoke_skipped", reason="already_expired")
            return False
        try:
            self.store.set(self._key(token), REVOKED_MARKER, ttl_millis)
        except Exception as exc:
            logger.error(
                "token_revoke_failed",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        logger.info("token_revoked", ttl_millis=ttl_millis)
        return True

    def claim(self, token: str, expires_at: float) -> bool:
        """Revoke ``token`` only if no entry exists yet, atomically.

        Returns False when another caller revoked it first, so a single-use
        token is consumed once. Expired tokens and storage failures return
        True, the latter failing open like :meth:`revoke`.
        """
        ttl_millis = math.ceil((float(expires_at) - self._clock()) * 1000)
        if ttl_millis <= 0:
            return True
        try:
            claimed = self.store.set_if_absent(self._key(token), REVOKED_MARKER, ttl_millis)
        except Exception as exc:
            logger.error(
                "token_claim_failed",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return True
        if not claimed:
            logger.warning("token_claim_lost")
        return claimed

    def is_revoked(self, token: Optional[str]) -> bool:
        if not token:
            return False
        try:
            return bool(self.store.exists(self._key(token)))
        except Exception as exc:
            # Deny access while the store is unreadable
            logger.error(
                "token_revocation_check_failed_defaulting_to_revoked",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return True

    def unrevoke(self, token: Optional[str]) -> bool:
        if not token:
            return False
        try:
            removed = self.store.delete(self._key(token))
        except Exception as exc:
            logger.error("token_unrevoke_failed", error=str(exc))
            return False
        logger.info("token_unrevoked", removed=removed)
        return removed

    def clear(self) -> int:
        try:
            keys = self.store.keys_by_prefix(self.prefix)
            if not keys:
                return 0
            removed = self.store.delete_many(keys)
        except Exception as exc:
            logger.error("token_revocations_clear_failed", error=str(exc))
            return 0
        logger.info("token_revocations_cleared", removed=removed)
        return removed

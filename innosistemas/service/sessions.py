from __future__ import annotations

import hashlib
from typing import Optional

from innosistemas.logging import get_logger
from innosistemas.storage.common import TTLStore

logger = get_logger(__name__)

ACTIVE_MARKER = "active"


def _digest(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


class SessionRegistry:
    """Active sessions per identity, one TTL key per session.

    Keys are ``session:<sha256(identity)>:<sha256(token)>``; hashing both parts
    keeps identities containing ``:`` or ``*`` from matching another identity's
    prefix scan.
    """

    def __init__(
        self, store: TTLStore, *, ttl_seconds: int, prefix: str = "session:"
    ) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self.store = store
        self.ttl_seconds = ttl_seconds
        self.prefix = prefix

    def _identity_prefix(self, identity: str) -> str:
        return f"{self.prefix}{_digest(identity.strip().lower())}:"

    def register_session(self, identity: Optional[str], session_token: Optional[str]) -> bool:
        if not identity or not session_token:
            logger.warning("session_register_skipped", reason="missing_identity_or_token")
            return False
        key = self._identity_prefix(identity) + _digest(session_token)
        try:
            self.store.set(key, ACTIVE_MARKER, self.ttl_seconds * 1000)
        except Exception as exc:
            logger.error(
                "session_register_failed",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        return True

    def active_session_count(self, identity: Optional[str]) -> int:
        if not identity:
            return 0
        return len(self.store.keys_by_prefix(self._identity_prefix(identity)))

    def has_active_sessions(self, identity: Optional[str]) -> bool:
        try:
            return self.active_session_count(identity) > 0
        except Exception as exc:
            # Unknown session state forces a fresh login
            logger.error("session_lookup_failed", error=str(exc))
            return False

    def invalidate_session(self, identity: Optional[str], session_token: Optional[str]) -> bool:
        if not identity or not session_token:
            return False
        return self.store.delete(self._identity_prefix(identity) + _digest(session_token))

    def invalidate_all_user_sessions(self, identity: Optional[str]) -> int:
        """Remove every session for ``identity``; storage errors propagate."""
        if not identity:
            return 0
        keys = self.store.keys_by_prefix(self._identity_prefix(identity))
        if not keys:
            return 0
        removed = self.store.delete_many(keys)
        logger.info("sessions_invalidated", removed=removed)
        return removed

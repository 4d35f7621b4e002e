from __future__ import annotations

import threading
import time
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple

from innosistemas.logging import get_logger
from innosistemas.storage.errors import ConstraintViolation
from innosistemas.storage.models import Identity, Role


class MemoryTTLStore:
    """In-process key-value store with per-key expiry.

    Mirrors the subset of Redis used by the revocation store and the session
    registry. Expired keys are dropped lazily on access.
    """

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._entries: Dict[str, Tuple[str, float]] = {}
        self._lock = threading.RLock()

    def _live(self, key: str, now: float) -> bool:
        entry = self._entries.get(key)
        if entry is None:
            return False
        if entry[1] <= now:
            del self._entries[key]
            return False
        return True

    def set(self, key: str, value: str, ttl_millis: int) -> None:
        if ttl_millis <= 0:
            raise ValueError("ttl_millis must be positive")
        with self._lock:
            self._entries[key] = (value, self._clock() + ttl_millis / 1000.0)

    def set_if_absent(self, key: str, value: str, ttl_millis: int) -> bool:
        if ttl_millis <= 0:
            raise ValueError("ttl_millis must be positive")
        with self._lock:
            now = self._clock()
            if self._live(key, now):
                return False
            self._entries[key] = (value, now + ttl_millis / 1000.0)
            return True

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            if not self._live(key, self._clock()):
                return None
            return self._entries[key][0]

    def exists(self, key: str) -> bool:
        with self._lock:
            return self._live(key, self._clock())

    def delete(self, key: str) -> bool:
        with self._lock:
            now = self._clock()
            live = self._live(key, now)
            self._entries.pop(key, None)
            return live

    def keys_by_prefix(self, prefix: str) -> Set[str]:
        with self._lock:
            now = self._clock()
            return {
                key
                for key in list(self._entries)
                if key.startswith(prefix) and self._live(key, now)
            }

    def delete_many(self, keys: Iterable[str]) -> int:
        removed = 0
        with self._lock:
            for key in keys:
                if self.delete(key):
                    removed += 1
        return removed

    def purge_expired(self) -> int:
        with self._lock:
            now = self._clock()
            expired = [key for key, (_, exp) in self._entries.items() if exp <= now]
            for key in expired:
                del self._entries[key]
            return len(expired)

    def verify_connection(self) -> None:
        return None

    def close(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            now = self._clock()
            return sum(1 for key in list(self._entries) if self._live(key, now))


class MemoryIdentityStore:
    """Thread-safe in-memory identity and credential records."""

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.identities: Dict[int, Identity] = {}
        self.credentials: Dict[int, tuple[str, str]] = {}
        self._id_seq = 1
        self._data_lock = threading.RLock()

    def create_identity(
        self,
        email: str,
        *,
        role: Role | str = Role.STUDENT,
        first_name: str = "",
        last_name: str = "",
        team_id: Optional[int] = None,
        course_id: Optional[int] = None,
        is_active: bool = True,
        is_locked: bool = False,
        identity_id: Optional[int] = None,
    ) -> Identity:
        normalized = email.strip().lower()
        with self._data_lock:
            if self._find(normalized) is not None:
                raise ConstraintViolation("email already exists", {"field": "email"})
            if identity_id is None:
                identity_id = self._id_seq
            elif identity_id in self.identities:
                raise ConstraintViolation("identity id already exists", {"field": "id"})
            self._id_seq = max(self._id_seq, identity_id) + 1
            identity = Identity(
                id=identity_id,
                email=normalized,
                role=Role(role),
                first_name=first_name,
                last_name=last_name,
                team_id=team_id,
                course_id=course_id,
                is_active=is_active,
                is_locked=is_locked,
            )
            self.identities[identity_id] = identity
            self.logger.info("identity_created", identity_id=identity_id, role=identity.role.value)
            return identity

    def _find(self, normalized_email: str) -> Optional[Identity]:
        for identity in self.identities.values():
            if identity.email == normalized_email:
                return identity
        return None

    def find_by_email(self, email: Optional[str]) -> Optional[Identity]:
        if not email:
            return None
        with self._data_lock:
            return self._find(email.strip().lower())

    def get_identity(self, identity_id: int) -> Optional[Identity]:
        with self._data_lock:
            return self.identities.get(identity_id)

    def update_role(self, identity_id: int, role: Role | str) -> Optional[Identity]:
        with self._data_lock:
            identity = self.identities.get(identity_id)
            if identity is None:
                return None
            identity.role = Role(role)
            return identity

    def set_active(self, identity_id: int, active: bool) -> Optional[Identity]:
        with self._data_lock:
            identity = self.identities.get(identity_id)
            if identity is None:
                return None
            identity.is_active = active
            return identity

    def list_identities(self) -> List[Identity]:
        with self._data_lock:
            return sorted(self.identities.values(), key=lambda ident: ident.id)

    def save_password(
        self, identity_id: int, password_hash: str, password_algo: str
    ) -> None:
        with self._data_lock:
            if identity_id not in self.identities:
                raise ConstraintViolation(
                    "identity not found for credentials", {"identity_id": identity_id}
                )
            self.credentials[identity_id] = (password_hash, password_algo)

    def get_password_record(self, identity_id: int) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(identity_id)

from __future__ import annotations

import json
from pathlib import Path
from typing import Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from innosistemas.logging import get_logger
from innosistemas.service.errors import AccountDisabled, BadCredentials
from innosistemas.storage.errors import ConstraintViolation
from innosistemas.storage.models import Identity, Role

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"


class IdentityStore(Protocol):
    def find_by_email(self, email: Optional[str]) -> Optional[Identity]: ...

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
    ) -> Identity: ...

    def save_password(
        self, identity_id: int, password_hash: str, password_algo: str
    ) -> None: ...

    def get_password_record(self, identity_id: int) -> Optional[tuple[str, str]]: ...


class PasswordAuthenticator:
    """Checks email/password pairs against argon2id records in the identity store."""

    def __init__(self, store: IdentityStore) -> None:
        self.store = store
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self.logger = logger

    def _hash_password(self, password: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(password), PASSWORD_ALGO

    def set_password(self, identity: Identity, password: str) -> None:
        pwd_hash, algo = self._hash_password(password)
        self.store.save_password(identity.id, pwd_hash, algo)

    def register(self, email: str, password: str, **profile) -> Identity:
        identity = self.store.create_identity(email, **profile)
        self.set_password(identity, password)
        return identity

    def authenticate(self, email: str, password: str) -> Identity:
        """Return the identity for valid credentials.

        Raises:
            BadCredentials: unknown email, missing record or wrong password
            AccountDisabled: identity is inactive or locked
        """
        identity = self.store.find_by_email(email)
        if identity is None:
            raise BadCredentials("unknown identity")
        record = self.store.get_password_record(identity.id)
        if not record:
            self.logger.warning("password_record_missing", identity_id=identity.id)
            raise BadCredentials("no password record")
        stored_hash, algo = record
        if algo != PASSWORD_ALGO:
            self.logger.warning("password_algo_mismatch", identity_id=identity.id, algo=algo)
            raise BadCredentials("unsupported password algorithm")
        try:
            self._pwd_hasher.verify(stored_hash, password or "")
        except (InvalidHash, VerifyMismatchError, VerificationError):
            self.logger.warning("password_verification_failed", identity_id=identity.id)
            raise BadCredentials("password mismatch")
        if not identity.is_active or identity.is_locked:
            self.logger.warning(
                "login_blocked",
                identity_id=identity.id,
                active=identity.is_active,
                locked=identity.is_locked,
            )
            raise AccountDisabled("identity disabled or locked")
        return identity

    def load_seed_file(self, path: str | Path) -> int:
        """Register identities listed in a JSON seed file.

        The file holds a list of objects with ``email``, ``password`` and the
        optional profile fields ``role``, ``first_name``, ``last_name``,
        ``team_id``, ``course_id`` and ``id``. Existing emails are skipped.
        """
        entries = json.loads(Path(path).read_text(encoding="utf-8"))
        if not isinstance(entries, list):
            raise ValueError("identity seed file must contain a JSON list")
        created = 0
        for entry in entries:
            profile = {
                "role": entry.get("role", Role.STUDENT.value),
                "first_name": entry.get("first_name", ""),
                "last_name": entry.get("last_name", ""),
                "team_id": entry.get("team_id"),
                "course_id": entry.get("course_id"),
                "identity_id": entry.get("id"),
            }
            try:
                self.register(entry["email"], entry["password"], **profile)
            except ConstraintViolation:
                self.logger.info("identity_seed_skipped", reason="duplicate")
                continue
            created += 1
        self.logger.info("identity_seed_loaded", created=created, path=str(path))
        return created

"""Tests for per-identity session tracking."""

from unittest.mock import MagicMock

import pytest

from innosistemas.service.sessions import SessionRegistry
from innosistemas.storage.errors import StorageUnavailable
from innosistemas.storage.memory import MemoryTTLStore

EMAIL = "estudiante@udea.edu.co"


@pytest.fixture
def store(clock):
    return MemoryTTLStore(clock=clock)


@pytest.fixture
def registry(store):
    return SessionRegistry(store, ttl_seconds=3600)


class TestRegisterSession:
    def test_register_marks_identity_active(self, registry):
        assert registry.has_active_sessions(EMAIL) is False

        assert registry.register_session(EMAIL, "token-1") is True
        assert registry.has_active_sessions(EMAIL) is True

    def test_sessions_counted_per_token(self, registry):
        registry.register_session(EMAIL, "token-1")
        registry.register_session(EMAIL, "token-2")
        registry.register_session(EMAIL, "token-2")

        assert registry.active_session_count(EMAIL) == 2

    def test_identity_lookup_is_case_insensitive(self, registry):
        registry.register_session("Estudiante@UdeA.edu.co", "token-1")
        assert registry.has_active_sessions(EMAIL)

    def test_register_returns_false_on_storage_failure(self):
        store = MagicMock()
        store.set.side_effect = StorageUnavailable("set")
        registry = SessionRegistry(store, ttl_seconds=60)

        assert registry.register_session(EMAIL, "token-1") is False

    def test_register_requires_identity_and_token(self, registry):
        assert registry.register_session("", "token") is False
        assert registry.register_session(EMAIL, None) is False

    def test_sessions_expire_with_ttl(self, registry, clock):
        registry.register_session(EMAIL, "token-1")
        clock.advance(3600)
        assert registry.has_active_sessions(EMAIL) is False


class TestIsolation:
    def test_identities_do_not_share_sessions(self, registry):
        registry.register_session(EMAIL, "token-1")
        assert registry.has_active_sessions("profesor@udea.edu.co") is False

    def test_prefix_like_identity_does_not_match(self, registry):
        """An identity that is a textual prefix of another stays separate."""
        registry.register_session("a@x.co", "token-1")
        assert registry.has_active_sessions("a@x.c") is False


class TestInvalidate:
    def test_invalidate_all_returns_count(self, registry):
        registry.register_session(EMAIL, "token-1")
        registry.register_session(EMAIL, "token-2")

        assert registry.invalidate_all_user_sessions(EMAIL) == 2
        assert registry.has_active_sessions(EMAIL) is False

    def test_invalidate_all_leaves_other_identities(self, registry):
        registry.register_session(EMAIL, "token-1")
        registry.register_session("profesor@udea.edu.co", "token-2")

        registry.invalidate_all_user_sessions(EMAIL)
        assert registry.has_active_sessions("profesor@udea.edu.co")

    def test_invalidate_missing_identity_returns_zero(self, registry):
        assert registry.invalidate_all_user_sessions("nobody@udea.edu.co") == 0
        assert registry.invalidate_all_user_sessions(None) == 0
        assert registry.invalidate_all_user_sessions("") == 0

    def test_invalidate_all_propagates_storage_errors(self):
        store = MagicMock()
        store.keys_by_prefix.side_effect = StorageUnavailable("scan")
        registry = SessionRegistry(store, ttl_seconds=60)

        with pytest.raises(StorageUnavailable):
            registry.invalidate_all_user_sessions(EMAIL)

    def test_invalidate_single_session(self, registry):
        registry.register_session(EMAIL, "token-1")
        registry.register_session(EMAIL, "token-2")

        assert registry.invalidate_session(EMAIL, "token-1") is True
        assert registry.active_session_count(EMAIL) == 1

    def test_has_active_sessions_false_when_store_unreadable(self):
        store = MagicMock()
        store.keys_by_prefix.side_effect = StorageUnavailable("scan")
        registry = SessionRegistry(store, ttl_seconds=60)

        assert registry.has_active_sessions(EMAIL) is False


def test_rejects_non_positive_ttl(store):
    with pytest.raises(ValueError):
        SessionRegistry(store, ttl_seconds=0)

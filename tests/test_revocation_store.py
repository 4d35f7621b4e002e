"""Tests for the token blacklist and its fail-open/fail-closed asymmetry."""

from unittest.mock import MagicMock, patch

import pytest

from innosistemas.service.revocation import REVOKED_MARKER, TokenRevocationStore
from innosistemas.storage.errors import StorageUnavailable
from innosistemas.storage.memory import MemoryTTLStore

TOKEN = "header.payload.signature"


@pytest.fixture
def memory_store(clock):
    return MemoryTTLStore(clock=clock)


@pytest.fixture
def revocations(memory_store, clock):
    return TokenRevocationStore(memory_store, clock=clock)


@pytest.fixture
def mock_store():
    return MagicMock()


@pytest.fixture
def mocked_revocations(mock_store, clock):
    return TokenRevocationStore(mock_store, clock=clock)


class TestRevoke:
    def test_revoke_writes_prefixed_key_with_millisecond_ttl(
        self, mocked_revocations, mock_store, clock
    ):
        """Entries use token:blacklist:<token> and the remaining lifetime in ms."""
        assert mocked_revocations.revoke(TOKEN, clock.now + 3600) is True

        mock_store.set.assert_called_once_with(
            f"token:blacklist:{TOKEN}", REVOKED_MARKER, 3_600_000
        )

    def test_revoke_expired_token_writes_nothing(self, mocked_revocations, mock_store, clock):
        """An already expired token needs no blacklist entry."""
        assert mocked_revocations.revoke(TOKEN, clock.now - 3600) is False
        assert mocked_revocations.revoke(TOKEN, clock.now) is False

        mock_store.set.assert_not_called()

    def test_sub_millisecond_remainder_rounds_up(self, mocked_revocations, mock_store, clock):
        """A token still valid for a fraction of a millisecond stays covered."""
        assert mocked_revocations.revoke(TOKEN, clock.now + 0.0004) is True
        assert mocked_revocations.revoke(TOKEN, clock.now + 1.0005) is True

        ttls = [call.args[2] for call in mock_store.set.call_args_list]
        assert ttls == [1, 1001]

    def test_revoke_without_expiry_writes_nothing(self, mocked_revocations, mock_store):
        assert mocked_revocations.revoke(TOKEN, None) is False
        mock_store.set.assert_not_called()

    def test_revoke_empty_token_is_noop(self, mocked_revocations, mock_store, clock):
        assert mocked_revocations.revoke("", clock.now + 60) is False
        assert mocked_revocations.revoke(None, clock.now + 60) is False
        mock_store.set.assert_not_called()

    def test_revoked_until_expiry_then_unseen(self, revocations, clock):
        """Entries disappear when the token would have expired anyway."""
        revocations.revoke(TOKEN, clock.now + 10)
        assert revocations.is_revoked(TOKEN)

        clock.advance(9.5)
        assert revocations.is_revoked(TOKEN)

        clock.advance(0.5)
        assert not revocations.is_revoked(TOKEN)

    def test_other_tokens_unaffected(self, revocations, clock):
        revocations.revoke(TOKEN, clock.now + 60)
        assert not revocations.is_revoked("other.token.value")


class TestStorageFailureAsymmetry:
    """Write failures fail open, read failures fail closed."""

    def test_revoke_swallows_storage_error(self, mocked_revocations, mock_store, clock):
        """revoke must not raise when the store is down."""
        mock_store.set.side_effect = StorageUnavailable("set")

        with patch("innosistemas.service.revocation.logger") as mock_logger:
            result = mocked_revocations.revoke(TOKEN, clock.now + 3600)

        assert result is False
        assert mock_logger.error.call_args[0][0] == "token_revoke_failed"

    def test_is_revoked_true_when_store_raises(self, mocked_revocations, mock_store):
        """Unreadable store means the token is treated as revoked."""
        mock_store.exists.side_effect = StorageUnavailable("exists")

        assert mocked_revocations.is_revoked(TOKEN) is True

    def test_is_revoked_true_on_unexpected_error(self, mocked_revocations, mock_store):
        mock_store.exists.side_effect = RuntimeError("Redis connection failed")
        assert mocked_revocations.is_revoked(TOKEN) is True

    def test_same_outage_both_directions(self, mocked_revocations, mock_store, clock):
        """One outage: revoke returns quietly, is_revoked denies."""
        mock_store.set.side_effect = ConnectionError("down")
        mock_store.exists.side_effect = ConnectionError("down")

        mocked_revocations.revoke(TOKEN, clock.now + 60)
        assert mocked_revocations.is_revoked(TOKEN) is True


class TestIsRevoked:
    def test_none_result_means_not_revoked(self, mocked_revocations, mock_store):
        mock_store.exists.return_value = None
        assert mocked_revocations.is_revoked(TOKEN) is False

    def test_empty_token_not_revoked(self, mocked_revocations, mock_store):
        assert mocked_revocations.is_revoked("") is False
        assert mocked_revocations.is_revoked(None) is False
        mock_store.exists.assert_not_called()


class TestAdministrativeRemoval:
    def test_unrevoke_removes_entry(self, revocations, clock):
        revocations.revoke(TOKEN, clock.now + 60)

        assert revocations.unrevoke(TOKEN) is True
        assert not revocations.is_revoked(TOKEN)

    def test_unrevoke_is_idempotent(self, revocations):
        assert revocations.unrevoke(TOKEN) is False
        assert revocations.unrevoke(TOKEN) is False

    def test_unrevoke_swallows_storage_error(self, mocked_revocations, mock_store):
        mock_store.delete.side_effect = StorageUnavailable("delete")
        assert mocked_revocations.unrevoke(TOKEN) is False

    def test_clear_removes_only_blacklist_entries(self, revocations, memory_store, clock):
        revocations.revoke("a.b.c", clock.now + 60)
        revocations.revoke("d.e.f", clock.now + 60)
        memory_store.set("session:abc:def", "active", 60_000)

        assert revocations.clear() == 2
        assert not revocations.is_revoked("a.b.c")
        assert memory_store.exists("session:abc:def")

    def test_clear_with_no_entries_skips_delete(self, mocked_revocations, mock_store):
        mock_store.keys_by_prefix.return_value = set()

        assert mocked_revocations.clear() == 0
        mock_store.keys_by_prefix.assert_called_once_with("token:blacklist:")
        mock_store.delete_many.assert_not_called()

    def test_clear_swallows_storage_error(self, mocked_revocations, mock_store):
        mock_store.keys_by_prefix.side_effect = StorageUnavailable("scan")
        assert mocked_revocations.clear() == 0


class TestClaim:
    def test_first_claim_wins(self, revocations, clock):
        assert revocations.claim(TOKEN, clock.now + 60) is True
        assert revocations.claim(TOKEN, clock.now + 60) is False
        assert revocations.is_revoked(TOKEN)

    def test_claim_after_plain_revoke_is_lost(self, revocations, clock):
        revocations.revoke(TOKEN, clock.now + 60)

        assert revocations.claim(TOKEN, clock.now + 60) is False

    def test_claim_uses_set_if_absent(self, mocked_revocations, mock_store, clock):
        mock_store.set_if_absent.return_value = True

        assert mocked_revocations.claim(TOKEN, clock.now + 1.0005) is True
        mock_store.set_if_absent.assert_called_once_with(
            f"token:blacklist:{TOKEN}", REVOKED_MARKER, 1001
        )

    def test_expired_token_claim_writes_nothing(self, mocked_revocations, mock_store, clock):
        assert mocked_revocations.claim(TOKEN, clock.now - 1) is True
        mock_store.set_if_absent.assert_not_called()

    def test_claim_fails_open(self, mocked_revocations, mock_store, clock):
        mock_store.set_if_absent.side_effect = StorageUnavailable("set_if_absent")

        assert mocked_revocations.claim(TOKEN, clock.now + 60) is True

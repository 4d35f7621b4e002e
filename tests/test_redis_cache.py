"""Tests for the Redis TTL store adapter against a mocked client."""

from unittest.mock import MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from innosistemas.storage.errors import StorageUnavailable
from innosistemas.storage.redis_cache import RedisCache


@pytest.fixture
def client():
    return MagicMock()


@pytest.fixture
def cache(client):
    return RedisCache("redis://localhost:6379/0", client=client)


class TestCommands:
    def test_set_uses_millisecond_expiry(self, cache, client):
        cache.set("token:blacklist:abc", "revoked", 1500)
        client.set.assert_called_once_with("token:blacklist:abc", "revoked", px=1500)

    def test_set_rejects_non_positive_ttl(self, cache, client):
        with pytest.raises(ValueError):
            cache.set("k", "v", 0)
        client.set.assert_not_called()

    def test_exists_and_delete_return_bools(self, cache, client):
        client.exists.return_value = 1
        client.delete.return_value = 0

        assert cache.exists("k") is True
        assert cache.delete("k") is False

    def test_set_if_absent_uses_nx(self, cache, client):
        client.set.side_effect = [True, None]

        assert cache.set_if_absent("token:blacklist:abc", "revoked", 1500) is True
        assert cache.set_if_absent("token:blacklist:abc", "revoked", 1500) is False
        client.set.assert_called_with("token:blacklist:abc", "revoked", px=1500, nx=True)

    def test_get_passes_through(self, cache, client):
        client.get.return_value = "active"
        assert cache.get("k") == "active"

    def test_keys_by_prefix_uses_scan(self, cache, client):
        client.scan_iter.return_value = iter(["session:a:1", "session:a:2"])

        assert cache.keys_by_prefix("session:a:") == {"session:a:1", "session:a:2"}
        client.scan_iter.assert_called_once_with(match="session:a:*", count=500)
        client.keys.assert_not_called()

    def test_keys_by_prefix_escapes_glob_characters(self, cache, client):
        client.scan_iter.return_value = iter([])

        cache.keys_by_prefix("session:a*b?[x]\\:")

        client.scan_iter.assert_called_once_with(
            match="session:a\\*b\\?\\[x\\]\\\\:*", count=500
        )

    def test_delete_many_batches(self, cache, client):
        client.delete.side_effect = lambda *keys: len(keys)
        keys = [f"k{i}" for i in range(1200)]

        assert cache.delete_many(keys) == 1200
        assert client.delete.call_count == 3

    def test_delete_many_empty(self, cache, client):
        assert cache.delete_many([]) == 0
        client.delete.assert_not_called()

    def test_verify_and_close(self, cache, client):
        cache.verify_connection()
        cache.close()
        client.ping.assert_called_once()
        client.close.assert_called_once()


class TestFailures:
    @pytest.mark.parametrize(
        "method,args,attr",
        [
            ("set", ("k", "v", 10), "set"),
            ("set_if_absent", ("k", "v", 10), "set"),
            ("get", ("k",), "get"),
            ("exists", ("k",), "exists"),
            ("delete", ("k",), "delete"),
            ("keys_by_prefix", ("p",), "scan_iter"),
            ("delete_many", (["a"],), "delete"),
            ("verify_connection", (), "ping"),
        ],
    )
    def test_redis_errors_become_storage_unavailable(self, cache, client, method, args, attr):
        getattr(client, attr).side_effect = RedisConnectionError("refused")

        with pytest.raises(StorageUnavailable):
            getattr(cache, method)(*args)

    def test_timeout_is_a_storage_failure(self, cache, client):
        client.exists.side_effect = RedisTimeoutError("timed out")
        with pytest.raises(StorageUnavailable):
            cache.exists("k")

from __future__ import annotations

from typing import Iterable, Optional, Set

from redis import Redis
from redis.exceptions import RedisError

from innosistemas.storage.errors import StorageUnavailable

# Keys are deleted in batches so a large revocation set never builds one huge DEL
_DELETE_BATCH = 500

# Characters SCAN MATCH treats as glob syntax
_GLOB_SPECIALS = frozenset("*?[]\\")


def _glob_escape(text: str) -> str:
    return "".join("\\" + ch if ch in _GLOB_SPECIALS else ch for ch in text)


class RedisCache:
    """Synchronous Redis wrapper exposing the TTL key-value contract.

    Every command runs with the configured socket timeout; a timeout or any
    other ``RedisError`` surfaces as ``StorageUnavailable`` so callers handle
    a single failure type.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = DEFAULT_OPERATION_TIMEOUT,
        client: Optional[Redis] = None,
    ):
        self.redis_url = redis_url
        self.client = client or Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity."""
        try:
            self.client.ping()
        except RedisError as exc:
            raise StorageUnavailable("ping", exc) from exc

    def set(self, key: str, value: str, ttl_millis: int) -> None:
        if ttl_millis <= 0:
            raise ValueError("ttl_millis must be positive")
        try:
            self.client.set(key, value, px=int(ttl_millis))
        except RedisError as exc:
            raise StorageUnavailable("set", exc) from exc

    def set_if_absent(self, key: str, value: str, ttl_millis: int) -> bool:
        if ttl_millis <= 0:
            raise ValueError("ttl_millis must be positive")
        try:
            # SET NX answers None when the key already exists
            return bool(self.client.set(key, value, px=int(ttl_millis), nx=True))
        except RedisError as exc:
            raise StorageUnavailable("set_if_absent", exc) from exc

    def get(self, key: str) -> Optional[str]:
        try:
            return self.client.get(key)
        except RedisError as exc:
            raise StorageUnavailable("get", exc) from exc

    def exists(self, key: str) -> bool:
        try:
            return bool(self.client.exists(key))
        except RedisError as exc:
            raise StorageUnavailable("exists", exc) from exc

    def delete(self, key: str) -> bool:
        try:
            return bool(self.client.delete(key))
        except RedisError as exc:
            raise StorageUnavailable("delete", exc) from exc

    def keys_by_prefix(self, prefix: str) -> Set[str]:
        # SCAN instead of KEYS so enumeration never blocks the server
        try:
            pattern = f"{_glob_escape(prefix)}*"
            return set(self.client.scan_iter(match=pattern, count=500))
        except RedisError as exc:
            raise StorageUnavailable("scan", exc) from exc

    def delete_many(self, keys: Iterable[str]) -> int:
        pending = list(keys)
        removed = 0
        try:
            for start in range(0, len(pending), _DELETE_BATCH):
                batch = pending[start : start + _DELETE_BATCH]
                removed += int(self.client.delete(*batch) or 0)
        except RedisError as exc:
            raise StorageUnavailable("delete_many", exc) from exc
        return removed

    def close(self) -> None:
        """Close the connection pool. Call when shutting down or resetting runtime."""
        self.client.close()

"""Contracts shared by the Redis and in-memory storage backends."""

from __future__ import annotations

from typing import Iterable, Optional, Protocol, Set


class TTLStore(Protocol):
    """Key-value store with per-key expiry in milliseconds."""

    def set(self, key: str, value: str, ttl_millis: int) -> None: ...

    def set_if_absent(self, key: str, value: str, ttl_millis: int) -> bool: ...

    def get(self, key: str) -> Optional[str]: ...

    def exists(self, key: str) -> bool: ...

    def delete(self, key: str) -> bool: ...

    def keys_by_prefix(self, prefix: str) -> Set[str]: ...

    def delete_many(self, keys: Iterable[str]) -> int: ...

    def verify_connection(self) -> None: ...

    def close(self) -> None: ...

"""Per-key token bucket admission control.

Two traffic classes are tracked independently for every key: ``general``
for ordinary requests and ``auth`` for login/refresh/register. Buckets start
full, refill continuously at ``refill_tokens / refill_period`` tokens per
second and never exceed their capacity.
"""

from __future__ import annotations

import threading
import time
import zlib
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

from innosistemas.logging import get_logger

logger = get_logger(__name__)

NO_DATA_TEMPLATE = "No data for key: {key}"


class TrafficClass(str, Enum):
    GENERAL = "general"
    AUTH = "auth"


@dataclass(frozen=True)
class BucketPolicy:
    capacity: int
    refill_tokens: int
    refill_period_seconds: float

    def __post_init__(self) -> None:
        if self.capacity <= 0:
            raise ValueError("capacity must be positive")
        if self.refill_tokens <= 0:
            raise ValueError("refill_tokens must be positive")
        if self.refill_period_seconds <= 0:
            raise ValueError("refill_period_seconds must be positive")

    @property
    def refill_rate(self) -> float:
        """Tokens restored per second."""
        return self.refill_tokens / self.refill_period_seconds


class TokenBucket:
    """Single bucket guarded by its own lock."""

    __slots__ = ("policy", "tokens", "last_refill", "retired", "_lock")

    def __init__(self, policy: BucketPolicy, now: float) -> None:
        self.policy = policy
        self.tokens = float(policy.capacity)
        self.last_refill = now
        # Set once the bucket has been dropped from its map
        self.retired = False
        self._lock = threading.Lock()

    def _refill(self, now: float) -> None:
        elapsed = now - self.last_refill
        if elapsed > 0:
            self.tokens = min(
                float(self.policy.capacity),
                self.tokens + elapsed * self.policy.refill_rate,
            )
            self.last_refill = now

    def try_consume(self, cost: int, now: float) -> Optional[bool]:
        """Consume ``cost`` tokens; ``None`` when the bucket was retired."""
        with self._lock:
            if self.retired:
                return None
            self._refill(now)
            if self.tokens >= cost:
                self.tokens -= cost
                return True
            return False

    def available(self, now: float) -> int:
        with self._lock:
            self._refill(now)
            return int(self.tokens)

    def retire_if_full(self, now: float) -> bool:
        with self._lock:
            self._refill(now)
            if self.tokens >= self.policy.capacity:
                self.retired = True
            return self.retired


BucketKey = Tuple[TrafficClass, str]


class StripedBucketMap:
    """Concurrent bucket map split across independently locked stripes.

    Stripe locks only guard lookup and insertion; token arithmetic happens
    under the bucket's own lock, so unrelated keys never wait on each other
    while consuming.
    """

    def __init__(self, stripes: int = 64) -> None:
        if stripes <= 0:
            raise ValueError("stripes must be positive")
        self._maps: List[Dict[BucketKey, TokenBucket]] = [{} for _ in range(stripes)]
        self._locks = [threading.Lock() for _ in range(stripes)]

    def _stripe(self, key: BucketKey) -> int:
        # crc32 keeps stripe assignment stable across processes
        return zlib.crc32(f"{key[0].value}:{key[1]}".encode("utf-8")) % len(self._maps)

    def get(self, key: BucketKey) -> Optional[TokenBucket]:
        idx = self._stripe(key)
        with self._locks[idx]:
            return self._maps[idx].get(key)

    def get_or_create(
        self, key: BucketKey, factory: Callable[[], TokenBucket]
    ) -> TokenBucket:
        idx = self._stripe(key)
        with self._locks[idx]:
            bucket = self._maps[idx].get(key)
            if bucket is None:
                bucket = factory()
                self._maps[idx][key] = bucket
            return bucket

    def pop(self, key: BucketKey) -> Optional[TokenBucket]:
        idx = self._stripe(key)
        with self._locks[idx]:
            return self._maps[idx].pop(key, None)

    def remove_if(self, predicate: Callable[[TokenBucket], bool]) -> int:
        removed = 0
        for idx, stripe in enumerate(self._maps):
            with self._locks[idx]:
                doomed = [key for key, bucket in stripe.items() if predicate(bucket)]
                for key in doomed:
                    del stripe[key]
                removed += len(doomed)
        return removed

    def clear(self) -> None:
        for idx, stripe in enumerate(self._maps):
            with self._locks[idx]:
                stripe.clear()

    def __len__(self) -> int:
        total = 0
        for idx, stripe in enumerate(self._maps):
            with self._locks[idx]:
                total += len(stripe)
        return total


class RateLimiter:
    """Admission control for the ``general`` and ``auth`` traffic classes."""

    def __init__(
        self,
        general: BucketPolicy,
        auth: BucketPolicy,
        *,
        enabled: bool = True,
        buckets: Optional[StripedBucketMap] = None,
        clock: Callable[[], float] = time.monotonic,
        prune_interval_seconds: float = 0.0,
    ) -> None:
        self.policies = {TrafficClass.GENERAL: general, TrafficClass.AUTH: auth}
        self.enabled = enabled
        self.buckets = buckets if buckets is not None else StripedBucketMap()
        self._clock = clock
        self._prune_interval = prune_interval_seconds
        self._last_prune = clock()
        self._prune_lock = threading.Lock()
        self._closed = False

    @property
    def is_enabled(self) -> bool:
        return self.enabled

    def allow(
        self,
        key: Optional[str],
        cost: int = 1,
        traffic_class: TrafficClass = TrafficClass.GENERAL,
    ) -> bool:
        if cost <= 0:
            raise ValueError("cost must be positive")
        if not self.enabled:
            return True
        if self._closed:
            raise RuntimeError("rate limiter is closed")
        now = self._clock()
        bucket_key = (traffic_class, key or "")
        policy = self.policies[traffic_class]
        allowed = None
        while allowed is None:
            bucket = self.buckets.get_or_create(
                bucket_key, lambda: TokenBucket(policy, now)
            )
            allowed = bucket.try_consume(cost, now)
        if not allowed:
            logger.warning(
                "rate_limit_exceeded",
                key=key,
                traffic_class=traffic_class.value,
                cost=cost,
            )
        self._maybe_prune(now)
        return allowed

    def allow_request(self, key: Optional[str], cost: int = 1) -> bool:
        return self.allow(key, cost, TrafficClass.GENERAL)

    def allow_auth_request(self, key: Optional[str], cost: int = 1) -> bool:
        return self.allow(key, cost, TrafficClass.AUTH)

    def available_tokens(
        self, key: Optional[str], traffic_class: TrafficClass = TrafficClass.GENERAL
    ) -> int:
        bucket = self.buckets.get((traffic_class, key or ""))
        if bucket is None:
            return self.policies[traffic_class].capacity
        return bucket.available(self._clock())

    def capacity(self, traffic_class: TrafficClass = TrafficClass.GENERAL) -> int:
        return self.policies[traffic_class].capacity

    def reset(self, key: Optional[str]) -> None:
        for traffic_class in TrafficClass:
            self.buckets.pop((traffic_class, key or ""))
        logger.info("rate_limit_reset", key=key)

    def clear_all(self) -> None:
        self.buckets.clear()
        logger.info("rate_limit_cleared")

    def stats(
        self, key: Optional[str], traffic_class: TrafficClass = TrafficClass.GENERAL
    ) -> str:
        bucket = self.buckets.get((traffic_class, key or ""))
        if bucket is None:
            return NO_DATA_TEMPLATE.format(key=key)
        return (
            f"Bucket[key={key}, class={traffic_class.value}, "
            f"tokens={bucket.available(self._clock())}, "
            f"capacity={bucket.policy.capacity}]"
        )

    def prune_full_buckets(self) -> int:
        """Drop buckets that have refilled to capacity.

        A full bucket behaves exactly like an unseen key, so removing it
        frees memory without changing any admission decision.
        """
        now = self._clock()
        removed = self.buckets.remove_if(lambda bucket: bucket.retire_if_full(now))
        if removed:
            logger.debug("rate_limit_buckets_pruned", removed=removed)
        return removed

    def _maybe_prune(self, now: float) -> None:
        if self._prune_interval <= 0 or now - self._last_prune < self._prune_interval:
            return
        # Only one caller prunes per interval; the rest skip
        if not self._prune_lock.acquire(blocking=False):
            return
        try:
            if now - self._last_prune >= self._prune_interval:
                self._last_prune = now
                self.prune_full_buckets()
        finally:
            self._prune_lock.release()

    def close(self) -> None:
        self._closed = True
        self.buckets.clear()

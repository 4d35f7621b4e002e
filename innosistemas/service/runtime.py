from __future__ import annotations

import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from innosistemas.config import get_settings, reset_settings_cache
from innosistemas.logging import get_logger
from innosistemas.service.auth import AuthService
from innosistemas.service.credentials import PasswordAuthenticator
from innosistemas.service.rate_limit import BucketPolicy, RateLimiter, StripedBucketMap
from innosistemas.service.revocation import TokenRevocationStore
from innosistemas.service.sessions import SessionRegistry
from innosistemas.service.tokens import TokenCodec
from innosistemas.storage.common import TTLStore
from innosistemas.storage.memory import MemoryIdentityStore, MemoryTTLStore
from innosistemas.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password in a URL for safe logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = parsed.hostname or ""
            if parsed.port:
                netloc = f"{netloc}:{parsed.port}"
            if parsed.username:
                netloc = f"{parsed.username}:***@{netloc}"
            else:
                netloc = f":***@{netloc}"
            return urlunparse((
                parsed.scheme,
                netloc,
                parsed.path,
                parsed.params,
                parsed.query,
                parsed.fragment,
            ))
        return url
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        self.cache: TTLStore = self._build_cache()

        self.store = MemoryIdentityStore()
        self.authenticator = PasswordAuthenticator(self.store)
        if self.settings.identity_seed_path:
            self.authenticator.load_seed_file(self.settings.identity_seed_path)

        self.codec = TokenCodec(
            self.settings.jwt_secret,
            access_ttl_seconds=self.settings.access_token_ttl_seconds,
            refresh_ttl_seconds=self.settings.refresh_token_ttl_seconds,
        )
        self.revocations = TokenRevocationStore(self.cache)
        self.sessions = SessionRegistry(
            self.cache, ttl_seconds=self.settings.refresh_token_ttl_seconds
        )
        self.rate_limiter = RateLimiter(
            BucketPolicy(
                self.settings.rate_limit_capacity,
                self.settings.rate_limit_refill_tokens,
                self.settings.rate_limit_refill_period_seconds,
            ),
            BucketPolicy(
                self.settings.auth_rate_limit_capacity,
                self.settings.auth_rate_limit_refill_tokens,
                self.settings.auth_rate_limit_refill_period_seconds,
            ),
            enabled=self.settings.rate_limit_enabled,
            buckets=StripedBucketMap(self.settings.rate_limit_stripes),
            prune_interval_seconds=self.settings.rate_limit_prune_interval_seconds,
        )
        self.auth = AuthService(
            self.store,
            self.authenticator,
            self.codec,
            self.revocations,
            self.sessions,
        )
        logger.info(
            "runtime_init_complete",
            cache_type=type(self.cache).__name__,
            rate_limit_enabled=self.rate_limiter.is_enabled,
        )

    def _build_cache(self) -> TTLStore:
        if self.settings.use_memory_store:
            return MemoryTTLStore()

        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(
                    self.settings.redis_url,
                    socket_timeout=self.settings.redis_socket_timeout,
                )
                cache.verify_connection()
                return cache
            except Exception as exc:
                redis_error = exc

        if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is required for token revocation and sessions; start Redis or set "
                "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
            ) from redis_error

        fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            message=(
                f"Running without Redis under {fallback_mode}; revocations and sessions "
                "are process-local."
            ),
            mode=fallback_mode,
        )
        return MemoryTTLStore()

    def close(self) -> None:
        self.rate_limiter.close()
        self.cache.close()


runtime: Optional[Runtime] = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking:
    - First check without lock (fast path for existing runtime)
    - Second check with lock to prevent race condition during creation
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def close_runtime() -> None:
    """Tear down the runtime singleton at application shutdown."""
    global runtime
    with _runtime_lock:
        if runtime is not None:
            runtime.close()
            runtime = None


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None:
            try:
                runtime.close()
            except Exception as exc:
                # Connection may already be closed
                logger.debug("runtime_close_failed", error=str(exc))

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime

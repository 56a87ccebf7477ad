from __future__ import annotations

import asyncio
import threading
from datetime import timedelta
from typing import Optional
from urllib.parse import urlparse, urlunparse

from idprovider.config import get_settings, reset_settings_cache
from idprovider.logging import get_logger
from idprovider.service.auth import AuthService
from idprovider.service.cleanup import TokenCleanupWorker
from idprovider.service.passwords import Argon2PasswordVerifier
from idprovider.service.refresh_tokens import RefreshTokenManager
from idprovider.service.revocation import RevocationRegistry
from idprovider.service.roles import RoleService
from idprovider.service.tenants import TenantService
from idprovider.service.tokens import TokenService
from idprovider.storage.memory import MemoryStore
from idprovider.storage.postgres import PostgresStore
from idprovider.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a URL with ``***`` for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store = (
                MemoryStore(
                    fs_root=self.settings.shared_fs_root,
                    persist=not self.settings.test_mode,
                )
                if self.settings.use_memory_store
                else PostgresStore(
                    self.settings.database_url, fs_root=self.settings.shared_fs_root
                )
            )
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # Sync client in test mode avoids binding to pytest's event loops
                if self.settings.test_mode:
                    cache = SyncRedisCache(self.settings.redis_url)
                else:
                    cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if not self.cache:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for the access-token blacklist cache; start Redis or "
                    "set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true to use the store only."
                ) from redis_error
            fallback_mode = (
                "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            )
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                mode=fallback_mode,
            )

        self.passwords = Argon2PasswordVerifier()
        self.revocation = RevocationRegistry(self.store, self.cache)
        self.tokens = TokenService(
            self.settings.jwt_secret,
            self.revocation,
            ttl=timedelta(milliseconds=self.settings.access_token_ttl_ms),
            issuer=self.settings.jwt_issuer,
            algorithm=self.settings.jwt_algorithm,
            leeway_seconds=self.settings.clock_skew_leeway_seconds,
        )
        self.refresh_tokens = RefreshTokenManager(
            self.store, ttl=timedelta(milliseconds=self.settings.refresh_token_ttl_ms)
        )
        self.roles = RoleService(self.store)
        self.tenants = TenantService(self.store, self.passwords)
        self.auth = AuthService(
            self.tenants,
            self.roles,
            self.tokens,
            self.refresh_tokens,
            self.revocation,
            self.passwords,
            allow_signup=self.settings.allow_signup,
        )
        self.cleanup_worker = TokenCleanupWorker(
            self.refresh_tokens,
            self.revocation,
            interval=self.settings.token_cleanup_interval_seconds,
        )

        self.roles.initialize_global_roles()
        self.roles.initialize_default_permissions()

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            redis_enabled=self.cache is not None,
            jwt_algorithm=self.settings.jwt_algorithm.value,
            access_token_ttl_ms=self.settings.access_token_ttl_ms,
            refresh_token_ttl_ms=self.settings.refresh_token_ttl_ms,
        )


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Double-checked locking: the unlocked read is the fast path once the
    runtime exists; the locked re-check prevents two concurrent creations.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def _close_cache(cache: RedisCache | SyncRedisCache) -> None:
    try:
        asyncio.get_running_loop().create_task(cache.close())
    except RuntimeError:
        asyncio.run(cache.close())


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and runtime.cache is not None:
            try:
                _close_cache(runtime.cache)
            except Exception as exc:
                logger.warning("runtime_cache_close_failed", error=str(exc))

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime

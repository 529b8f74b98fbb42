from __future__ import annotations

import asyncio
import threading
from datetime import timedelta
from typing import Optional
from urllib.parse import urlparse, urlunparse

from authcore.config import get_settings, reset_settings_cache
from authcore.logging import get_logger
from authcore.service.auth import AuthService
from authcore.service.authorization import AuthorizationEngine
from authcore.service.credentials import CredentialManager
from authcore.service.password_reset import PasswordResetFlow
from authcore.service.revocation import RevocationRegistry
from authcore.service.sessions import SessionManager, SessionPolicy
from authcore.service.tokens import TokenIssuer
from authcore.storage.memory import MemoryStore
from authcore.storage.postgres import PostgresStore
from authcore.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password in a connection URL before it is logged.

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

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store = (
                MemoryStore(
                    fs_root=self.settings.shared_fs_root,
                    encryption_key=self.settings.jwt_secret,
                )
                if self.settings.use_memory_store
                else PostgresStore(
                    self.settings.database_url,
                    fs_root=self.settings.shared_fs_root,
                    encryption_key=self.settings.jwt_secret,
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
                # Sync client under TEST_MODE so pytest's per-test loops never own it
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
            if (
                not self.settings.test_mode
                and not self.settings.allow_redis_fallback_dev
            ):
                raise RuntimeError(
                    "Redis is required for the access-token denylist; "
                    "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error

            fallback_mode = (
                "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            )
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; revocation checks "
                    "go straight to the durable store."
                ),
                mode=fallback_mode,
            )

        self.credentials = CredentialManager(
            time_cost=self.settings.password_hash_time_cost,
            memory_cost=self.settings.password_hash_memory_cost,
        )
        self.revocations = RevocationRegistry(self.store, self.cache)
        self.tokens = TokenIssuer(
            self.settings.jwt_secret,
            issuer=self.settings.jwt_issuer,
            audience=self.settings.jwt_audience,
            consumption_store=self.store,
            access_ttl_minutes=self.settings.access_token_ttl_minutes,
            refresh_ttl_minutes=self.settings.refresh_token_ttl_minutes,
            clock_skew_seconds=self.settings.jwt_clock_skew_seconds,
        )
        self.sessions = SessionManager(
            self.store,
            self.revocations,
            default_policy=SessionPolicy(
                max_concurrent_sessions=self.settings.max_concurrent_sessions,
                require_device_consistency=self.settings.require_device_consistency,
            ),
            expired_grace=timedelta(hours=self.settings.expired_session_grace_hours),
        )
        self.authorization = AuthorizationEngine()
        self.password_reset = PasswordResetFlow(
            self.store,
            self.credentials,
            self.sessions,
            ttl_minutes=self.settings.password_reset_ttl_minutes,
        )
        self.auth = AuthService(
            self.store,
            self.settings,
            credentials=self.credentials,
            tokens=self.tokens,
            revocations=self.revocations,
            sessions=self.sessions,
            password_reset=self.password_reset,
            authorization=self.authorization,
        )

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            redis_enabled=self.cache is not None,
            max_concurrent_sessions=self.settings.max_concurrent_sessions,
        )

    async def close(self) -> None:
        """Release Redis and database connections on shutdown."""
        if self.cache is not None:
            await self.cache.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
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


def _close_cache(cache) -> None:
    if isinstance(cache, SyncRedisCache):
        # Sync client underneath; close it directly
        cache.client.close()
        return
    try:
        loop = asyncio.get_running_loop()
        loop.create_task(cache.close())
    except RuntimeError:
        asyncio.run(cache.close())


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None:
            if runtime.cache is not None:
                try:
                    _close_cache(runtime.cache)
                except Exception as exc:
                    logger.warning("runtime_cache_close_failed", error=str(exc))
            if isinstance(runtime.store, PostgresStore):
                runtime.store.close()

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime

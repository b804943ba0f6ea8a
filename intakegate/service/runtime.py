from __future__ import annotations

import asyncio
import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from intakegate.config import get_settings, reset_settings_cache
from intakegate.logging import get_logger
from intakegate.service.audit import AuditService
from intakegate.service.crypto import FieldCipher
from intakegate.service.email import EmailService
from intakegate.service.lifecycle import LifecycleScheduler
from intakegate.service.policy import PolicyEngine
from intakegate.service.progress import ProgressService
from intakegate.service.rate_limit import ANONYMOUS_CLASS, AUTHENTICATED_CLASS, RateLimiter
from intakegate.service.recovery import RecoveryService
from intakegate.service.secrets import LocalKeyProvider
from intakegate.service.sessions import SessionService
from intakegate.service.tokens import TokenService
from intakegate.storage.memory import MemoryStore
from intakegate.storage.postgres import PostgresStore
from intakegate.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for safe logging.

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

        self.keys = LocalKeyProvider(
            self.settings.shared_fs_root,
            signing_private_key=self.settings.signing_private_key,
            field_encryption_key=self.settings.field_encryption_key,
            timeout_seconds=self.settings.store_timeout_seconds,
        )
        self.cipher = FieldCipher(self.keys.get_encryption_key())

        try:
            self.store = (
                MemoryStore(fs_root=self.settings.shared_fs_root, cipher=self.cipher)
                if self.settings.use_memory_store
                else PostgresStore(
                    self.settings.database_url,
                    cipher=self.cipher,
                    timeout_seconds=self.settings.store_timeout_seconds,
                )
            )
            logger.info(
                "runtime_store_initialized",
                store_type="memory" if self.settings.use_memory_store else "postgres",
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="memory" if self.settings.use_memory_store else "postgres",
                error_type=type(exc).__name__,
            )
            raise

        self.cache = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # Use sync Redis client in test mode to avoid event loop issues
                if self.settings.test_mode:
                    cache = SyncRedisCache(
                        self.settings.redis_url,
                        socket_timeout=self.settings.cache_timeout_seconds,
                    )
                else:
                    cache = RedisCache(
                        self.settings.redis_url,
                        socket_timeout=self.settings.cache_timeout_seconds,
                    )
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if not self.cache:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for progress caching, rate limits and recovery tokens; "
                    "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error

            fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=type(redis_error).__name__ if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; rate limits, recovery tokens and "
                    "progress locks are in-process only."
                ),
                mode=fallback_mode,
            )

        self.audit = AuditService(self.store, fs_root=self.settings.shared_fs_root)
        self.policy = PolicyEngine(self.audit)
        self.tokens = TokenService(self.store, self.keys, self.audit, self.settings)
        self.progress = ProgressService(self.store, self.audit, self.cache, self.settings)
        self.rate_limiter = RateLimiter(
            self.cache,
            self.audit,
            window_seconds=self.settings.rate_limit_window_seconds,
            limits={
                ANONYMOUS_CLASS: self.settings.rate_limit_anonymous,
                AUTHENTICATED_CLASS: self.settings.rate_limit_authenticated,
            },
        )
        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
        )
        self.recovery = RecoveryService(
            self.store,
            self.cache,
            self.tokens,
            self.audit,
            self.email,
            self.cipher,
            self.settings,
        )
        self.sessions = SessionService(
            self.store,
            self.audit,
            self.policy,
            self.tokens,
            self.progress,
            self.cipher,
            self.settings,
        )
        self.scheduler = LifecycleScheduler(self.store, self.audit, self.tokens, self.settings)

        logger.info(
            "runtime_initialized",
            redis_enabled=self.cache is not None,
            email_configured=self.email.is_configured,
            scheduler_enabled=self.settings.scheduler_enabled,
        )

    def close(self) -> None:
        close_store = getattr(self.store, "close", None)
        if callable(close_store):
            close_store()
        self.keys.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking: the unlocked read is the fast path and the
    locked re-check prevents two threads from building two runtimes.
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
        cache._sync_client.close()
        return
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        asyncio.run(cache.close())
    else:
        loop.create_task(cache.close())


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None:
            if runtime.cache is not None:
                try:
                    _close_cache(runtime.cache)
                except (OSError, RuntimeError):
                    # Connection may already be closed
                    logger.debug("runtime_cache_close_failed")
            runtime.close()

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime

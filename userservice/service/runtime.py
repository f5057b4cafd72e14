from __future__ import annotations

import asyncio
import threading
from datetime import datetime
from typing import Callable, Optional, Union
from urllib.parse import urlparse

from userservice.config import get_settings, reset_settings_cache
from userservice.logging import get_logger
from userservice.service.auth import AuthService
from userservice.service.login import LoginService
from userservice.service.metrics import LogReporter, MetricsReporter
from userservice.service.notify import LogPadNotifier, PadNotifier
from userservice.service.passwords import PasswordHasher
from userservice.service.sessions import SessionValidator
from userservice.storage.memory import MemorySessionStore, MemoryStore
from userservice.storage.postgres import PostgresStore
from userservice.storage.redis_cache import RedisSessionStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a URL with ``***`` for logging."""
    if not url:
        return url
    parsed = urlparse(url)
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return parsed._replace(netloc=netloc).geturl()


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(
        self,
        *,
        clock: Optional[Callable[[], datetime]] = None,
        reporter: Optional[MetricsReporter] = None,
        notifier: Optional[PadNotifier] = None,
    ):
        self.settings = get_settings()
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        try:
            self.store: Union[MemoryStore, PostgresStore] = (
                MemoryStore()
                if self.settings.use_memory_store
                else PostgresStore(
                    self.settings.database_url,
                    statement_timeout_ms=int(self.settings.store_timeout_seconds * 1000),
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

        self.session_store: Union[MemorySessionStore, RedisSessionStore]
        if self.settings.use_memory_store:
            self.session_store = MemorySessionStore(clock=clock)
        else:
            self.session_store = self._connect_redis(clock)

        self.reporter: MetricsReporter = reporter or LogReporter()
        self.hasher = PasswordHasher.from_settings(self.settings)
        self.logins = LoginService(
            self.store,
            self.hasher,
            self.settings,
            reporter=self.reporter,
            clock=clock,
        )
        self.sessions = SessionValidator(
            self.session_store,
            self.settings,
            reporter=self.reporter,
            clock=clock,
        )
        self.auth = AuthService(
            self.logins,
            self.sessions,
            notifier=notifier or LogPadNotifier(),
        )

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            redis_enabled=isinstance(self.session_store, RedisSessionStore),
            lockout_threshold=self.settings.lockout_threshold,
            session_ttl_minutes=self.settings.session_ttl_minutes,
            max_concurrent_sessions=self.settings.max_concurrent_sessions,
        )

    def _connect_redis(
        self, clock: Optional[Callable[[], datetime]]
    ) -> Union[MemorySessionStore, RedisSessionStore]:
        redis_error: Exception | None = None
        try:
            cache = RedisSessionStore(
                self.settings.redis_url,
                socket_timeout=self.settings.store_timeout_seconds,
            )
            cache.verify_connection()
            return cache
        except Exception as exc:
            redis_error = exc

        if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is required for sessions; start Redis or set "
                "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
            ) from redis_error

        fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error),
            mode=fallback_mode,
            message=f"Running without Redis under {fallback_mode}; sessions are in-memory only.",
        )
        return MemorySessionStore(clock=clock)

    async def close(self) -> None:
        await self.session_store.close()
        await asyncio.to_thread(self.store.close)


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Double-checked locking: the unlocked read is the fast path, the locked
    re-check prevents two threads from both building a runtime.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def _close_for_reset(current: Runtime) -> None:
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        asyncio.run(current.close())
        return
    loop.create_task(current.close())


def reset_runtime_for_tests(**kwargs) -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs.

    Keyword arguments (``clock``, ``reporter``, ``notifier``) are passed to
    the new :class:`Runtime`.
    """
    global runtime

    with _runtime_lock:
        if runtime is not None:
            try:
                _close_for_reset(runtime)
            except Exception as exc:
                logger.warning("runtime_close_failed", error=str(exc))

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(**kwargs)
        return runtime

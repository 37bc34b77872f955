from __future__ import annotations

import threading
from datetime import timedelta
from typing import Optional
from urllib.parse import urlparse, urlunparse

from ssocenter.config import get_settings, reset_settings_cache
from ssocenter.logging import get_logger
from ssocenter.service.oauth import OAuth2Engine
from ssocenter.service.reaper import Reaper
from ssocenter.service.revocation import RevocationCache
from ssocenter.service.session_validator import SessionValidator
from ssocenter.service.tickets import SessionTicketCodec
from ssocenter.service.users import UserDirectory
from ssocenter.storage.memory import MemoryStore
from ssocenter.storage.postgres import PostgresStore
from ssocenter.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a URL with '***' for logging.

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

        try:
            self.store = (
                MemoryStore()
                if self.settings.use_memory_store
                else PostgresStore(
                    self.settings.database_url,
                    statement_timeout_ms=self.settings.database_statement_timeout_ms,
                    pool_timeout=self.settings.database_pool_timeout_seconds,
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
                error=str(exc),
            )
            raise

        self.cache = None
        if self.settings.redis_url:
            try:
                # Sync client in test mode avoids binding to pytest event loops
                if self.settings.test_mode:
                    self.cache = SyncRedisCache(
                        self.settings.redis_url,
                        socket_timeout=self.settings.revocation_timeout_seconds,
                    )
                else:
                    self.cache = RedisCache(
                        self.settings.redis_url,
                        socket_timeout=self.settings.revocation_timeout_seconds,
                    )
            except ValueError as exc:
                logger.warning(
                    "redis_url_invalid",
                    redis_url=_mask_url_password(self.settings.redis_url),
                    error=str(exc),
                )
                self.cache = None

        self.revocations = RevocationCache(
            self.cache,
            timeout_seconds=self.settings.revocation_timeout_seconds,
            fail_closed=self.settings.revocation_fail_closed,
        )
        if self.revocations.mode != "redis":
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                message=(
                    "Session revocations are held in process memory only; "
                    "logouts are not shared across nodes."
                ),
            )
        self.oauth = OAuth2Engine(self.store, self.settings)
        self.users = UserDirectory(self.store)
        self.tickets = SessionTicketCodec(
            self.settings.session_secret,
            ttl=timedelta(minutes=self.settings.session_ttl_minutes),
        )
        self.sessions = SessionValidator(self.revocations, self.tickets)
        self.reaper = Reaper(
            self.revocations, interval_seconds=self.settings.reaper_interval_seconds
        )
        logger.info("runtime_init_complete", revocation_mode=self.revocations.mode)

    async def close(self) -> None:
        await self.reaper.stop()
        if self.cache:
            await self.cache.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


_runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Return the process-wide runtime, building it on first use."""
    global _runtime
    if _runtime is None:
        with _runtime_lock:
            if _runtime is None:
                _runtime = Runtime()
    return _runtime


def reset_runtime_for_tests() -> Runtime:
    """Reset the runtime singleton for isolated test runs.

    Only available when TEST_MODE is enabled.
    """
    global _runtime
    settings = get_settings()
    if not settings.test_mode:
        raise RuntimeError("reset_runtime_for_tests is only available in TEST_MODE")
    with _runtime_lock:
        # SyncRedisCache wraps a sync client; close it directly
        if _runtime is not None and isinstance(_runtime.cache, SyncRedisCache):
            _runtime.cache.client.close()
        reset_settings_cache()
        _runtime = Runtime()
        return _runtime

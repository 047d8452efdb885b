from __future__ import annotations

import asyncio
import threading
from typing import Optional, Set
from urllib.parse import urlparse, urlunparse

from credstore.config import Settings, get_settings, reset_settings_cache
from credstore.logging import get_logger
from credstore.service.codes import OneTimeCodeManager
from credstore.service.devices import DeviceRegistry
from credstore.service.geo import HttpGeoResolver, NullGeoResolver
from credstore.service.session_cache import SessionMetadataCache
from credstore.service.token_store import TokenStore
from credstore.service.user_agent import RegexUserAgentParser
from credstore.storage.memory import MemoryStore
from credstore.storage.postgres import PostgresStore
from credstore.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password in a connection URL with ``***`` for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if not parsed.password:
            return url
        netloc = parsed.hostname or ""
        if parsed.port:
            netloc = f"{netloc}:{parsed.port}"
        netloc = f"{parsed.username or ''}:***@{netloc}"
        return urlunparse(
            (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
        )
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Wires the durable store, metadata cache and credential services together."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        logger.info(
            "runtime_init_started",
            store_type=store_type,
            test_mode=self.settings.test_mode,
        )
        try:
            self.store = (
                MemoryStore()
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache = self._connect_cache()

        ua_parser = RegexUserAgentParser()
        geo = (
            HttpGeoResolver(
                self.settings.geo_lookup_url, timeout=self.settings.geo_timeout_seconds
            )
            if self.settings.geo_lookup_url
            else NullGeoResolver()
        )
        self.geo = geo
        self.session_cache = SessionMetadataCache(
            self.store,
            self.cache,
            self.settings,
            config=self.settings.last_access_time_updates(),
            ua_parser=ua_parser,
            geo=geo,
        )
        self.tokens = TokenStore(
            self.store, self.session_cache, self.settings, ua_parser=ua_parser
        )
        self.devices = DeviceRegistry(self.store, self.session_cache, self.settings)
        self.codes = OneTimeCodeManager(self.store, self.settings)
        logger.info("runtime_init_completed", store_type=store_type, cache=bool(self.cache))

    def _connect_cache(self):
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # The sync client avoids event loop binding under pytest
                if self.settings.test_mode:
                    cache = SyncRedisCache(self.settings.redis_url)
                else:
                    cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                return cache
            except Exception as exc:
                redis_error = exc

        if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is required for session telemetry; start Redis or set "
                "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true to run without it."
            ) from redis_error

        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            mode="TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV",
        )
        return None

    async def close(self) -> None:
        await self.tokens.close()
        if isinstance(self.geo, HttpGeoResolver):
            await self.geo.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


# Cache closes scheduled on a running loop; held until they finish
_pending_closes: Set[asyncio.Task] = set()


def _cache_close_finished(task: asyncio.Task) -> None:
    _pending_closes.discard(task)
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.warning("runtime_cache_close_failed", error=str(exc))


def reset_runtime_for_tests() -> Runtime:
    """Rebuild the runtime singleton from a freshly read environment."""
    global runtime
    with _runtime_lock:
        if runtime is not None and runtime.cache is not None:
            try:
                if isinstance(runtime.cache, SyncRedisCache):
                    # Closing the sync client never awaits anything
                    asyncio.run(runtime.cache.close())
                else:
                    try:
                        loop = asyncio.get_running_loop()
                    except RuntimeError:
                        asyncio.run(runtime.cache.close())
                    else:
                        task = loop.create_task(runtime.cache.close())
                        _pending_closes.add(task)
                        task.add_done_callback(_cache_close_finished)
            except Exception as exc:
                logger.warning("runtime_cache_close_failed", error=str(exc))
        reset_settings_cache()
        runtime = Runtime()
        return runtime

from __future__ import annotations

import json
from typing import Any, Dict, List, Optional

import redis.asyncio as aioredis
from redis import Redis

_SESSION_TOKENS_PREFIX = "credstore:session_tokens:"


def _session_key(uid: str) -> str:
    return f"{_SESSION_TOKENS_PREFIX}{uid}"


def _decode_entries(raw: Optional[str]) -> Optional[List[Dict[str, Any]]]:
    if raw is None:
        return None
    entries = json.loads(raw)
    if not isinstance(entries, list):
        raise ValueError("cached session tokens must be a JSON array")
    return entries


class RedisCache:
    """Redis-backed metadata cache holding one JSON array of session telemetry per uid.

    Errors from the client propagate; callers decide whether a failure is
    fatal. Values never expire on their own: entries are removed when their
    token is deleted or the account is reset or deleted.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # A short-lived sync client avoids binding the async client to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def get_session_tokens(self, uid: str) -> Optional[List[Dict[str, Any]]]:
        return _decode_entries(await self.client.get(_session_key(uid)))

    async def set_session_tokens(self, uid: str, entries: List[Dict[str, Any]]) -> None:
        await self.client.set(_session_key(uid), json.dumps(entries))

    async def delete_session_tokens(self, uid: str) -> None:
        await self.client.delete(_session_key(uid))

    async def close(self) -> None:
        await self.client.aclose()


class SyncRedisCache:
    """Synchronous Redis wrapper for test mode.

    Exposes the same awaitable API as :class:`RedisCache` so the service layer
    does not care which one it holds, without binding a client to the pytest
    event loop.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        self._sync_client.ping()

    async def get_session_tokens(self, uid: str) -> Optional[List[Dict[str, Any]]]:
        return _decode_entries(self._sync_client.get(_session_key(uid)))

    async def set_session_tokens(self, uid: str, entries: List[Dict[str, Any]]) -> None:
        self._sync_client.set(_session_key(uid), json.dumps(entries))

    async def delete_session_tokens(self, uid: str) -> None:
        self._sync_client.delete(_session_key(uid))

    async def close(self) -> None:
        self._sync_client.close()

import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from credstore.storage.redis_cache import RedisCache, SyncRedisCache


def _sync_cache(stored=None):
    cache = SyncRedisCache.__new__(SyncRedisCache)
    cache._sync_client = MagicMock()
    cache._sync_client.get.return_value = stored
    return cache


async def test_sync_cache_roundtrip_uses_uid_key():
    entries = [{"token_id": "t" * 64, "ua_browser": "Firefox"}]
    cache = _sync_cache(json.dumps(entries))

    await cache.set_session_tokens("u" * 32, entries)
    assert await cache.get_session_tokens("u" * 32) == entries

    key, value = cache._sync_client.set.call_args.args
    assert key == "credstore:session_tokens:" + "u" * 32
    assert json.loads(value) == entries


async def test_missing_key_is_none():
    assert await _sync_cache(None).get_session_tokens("u" * 32) is None


async def test_non_array_value_rejected():
    with pytest.raises(ValueError):
        await _sync_cache(json.dumps({"oops": 1})).get_session_tokens("u" * 32)


async def test_async_cache_delete_and_close():
    cache = RedisCache.__new__(RedisCache)
    cache.client = MagicMock()
    cache.client.delete = AsyncMock()
    cache.client.aclose = AsyncMock()

    await cache.delete_session_tokens("u" * 32)
    await cache.close()

    cache.client.delete.assert_awaited_once_with("credstore:session_tokens:" + "u" * 32)
    cache.client.aclose.assert_awaited_once()

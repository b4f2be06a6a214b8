# tests/services/test_message_cache.py
from __future__ import annotations

import json

import pytest

from realtime_channels.core.settings import Settings
from realtime_channels.services.memory_store import InMemoryStore
from realtime_channels.services.message_cache import (
    MemoryMessageCache,
    RedisMessageCache,
    cache_key,
    create_message_cache,
)


def test_cache_key_prefixes() -> None:
    assert cache_key("direct", "c1") == "channel:message:c1"
    assert cache_key("group", "g1") == "channel:messages:g1"


@pytest.mark.asyncio
async def test_redis_cache_appends_then_trims(mocker) -> None:
    client = mocker.AsyncMock()
    cache = RedisMessageCache(client, 200)
    record = {"id": "m1", "channelId": "c1", "message": "hi"}

    await cache.append("direct", record)

    client.rpush.assert_awaited_once_with("channel:message:c1", json.dumps(record))
    client.ltrim.assert_awaited_once_with("channel:message:c1", -200, -1)


@pytest.mark.asyncio
async def test_redis_cache_keys_group_messages_by_group(mocker) -> None:
    client = mocker.AsyncMock()
    cache = RedisMessageCache(client, 50)

    await cache.append("group", {"id": "m2", "groupId": "g1", "channelId": "g1"})

    assert client.rpush.await_args.args[0] == "channel:messages:g1"
    client.ltrim.assert_awaited_once_with("channel:messages:g1", -50, -1)


@pytest.mark.asyncio
async def test_redis_cache_close(mocker) -> None:
    client = mocker.AsyncMock()
    await RedisMessageCache(client, 200).close()
    client.aclose.assert_awaited_once()


@pytest.mark.asyncio
async def test_memory_cache_writes_to_store() -> None:
    store = InMemoryStore(capacity=2)
    cache = MemoryMessageCache(store)

    for index in range(3):
        await cache.append("direct", {"id": f"m{index}", "channelId": "c1", "createdAt": f"2026-01-0{index + 1}"})

    assert [m["id"] for m in store.get("direct", "c1")] == ["m1", "m2"]


def test_backend_follows_redis_setting(mocker) -> None:
    store = InMemoryStore()
    local = Settings(use_redis=False, environment="test")
    remote = Settings(use_redis=True, environment="test", redis_url="redis://cache:6379/1", message_cache_size=200)
    from_url = mocker.patch.object(RedisMessageCache, "from_url", return_value=mocker.sentinel.redis_cache)

    assert isinstance(create_message_cache(local, store), MemoryMessageCache)
    assert create_message_cache(remote, store) is mocker.sentinel.redis_cache
    from_url.assert_called_once_with("redis://cache:6379/1", 200)

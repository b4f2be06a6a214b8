"""Bounded per-channel list of recent messages.

Best-effort read accelerator next to the persistence path: append-then-trim,
not safe against concurrent writers in other processes.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from typing import Any, Protocol

from redis.asyncio import Redis as AsyncRedis

from realtime_channels.core.settings import Settings
from realtime_channels.services.memory_store import InMemoryStore, StoreKind

logger = logging.getLogger(__name__)


def cache_key(kind: StoreKind, channel_id: str) -> str:
    """Return the Redis list key holding a channel's recent messages."""
    prefix = "channel:message" if kind == "direct" else "channel:messages"
    return f"{prefix}:{channel_id}"


class MessageCache(Protocol):
    async def append(self, kind: StoreKind, message: Mapping[str, Any]) -> None: ...

    async def close(self) -> None: ...


class RedisMessageCache:
    """Redis list per channel, trimmed to the newest ``size`` entries."""

    def __init__(self, client: AsyncRedis, size: int) -> None:
        self._client = client
        self.size = size

    @classmethod
    def from_url(cls, url: str, size: int) -> RedisMessageCache:
        return cls(AsyncRedis.from_url(url), size)

    async def append(self, kind: StoreKind, message: Mapping[str, Any]) -> None:
        key = cache_key(kind, str(message.get("groupId") or message.get("channelId")))
        await self._client.rpush(key, json.dumps(dict(message), default=str))
        await self._client.ltrim(key, -self.size, -1)

    async def close(self) -> None:
        await self._client.aclose()


class MemoryMessageCache:
    """Cache backed by the process-local :class:`InMemoryStore`."""

    def __init__(self, store: InMemoryStore) -> None:
        self._store = store

    async def append(self, kind: StoreKind, message: Mapping[str, Any]) -> None:
        self._store.add(kind, message)

    async def close(self) -> None:
        return None


def create_message_cache(settings: Settings, store: InMemoryStore) -> MessageCache:
    """Use Redis lists when Redis is configured, the in-memory store otherwise."""
    if settings.redis_enabled:
        return RedisMessageCache.from_url(settings.redis_url, settings.message_cache_size)
    return MemoryMessageCache(store)

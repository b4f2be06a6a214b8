"""Publish/subscribe substrate used to report persistence back to sockets.

The persistence worker publishes ``message:persisted`` style events; the
realtime process subscribes and forwards them to socket rooms. Two variants
share one shape: Redis channels (cross-process) and an in-process dispatcher.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections import defaultdict
from collections.abc import Awaitable, Callable
from typing import Any, Protocol

import redis
from redis.asyncio import Redis as AsyncRedis

from realtime_channels.core.settings import Settings

logger = logging.getLogger(__name__)

PERSISTED_EVENT = "message:persisted"
GROUP_PERSISTED_EVENT = "group:message:persisted"
USER_DEACTIVATED_EVENT = "user:deactivated"
GROUP_DELETED_EVENT = "group:deleted"

FORWARDED_EVENTS: tuple[str, ...] = (
    PERSISTED_EVENT,
    GROUP_PERSISTED_EVENT,
    USER_DEACTIVATED_EVENT,
    GROUP_DELETED_EVENT,
)

Subscriber = Callable[[dict[str, Any]], Awaitable[None] | None]


class PubSub(Protocol):
    """Contract shared by the Redis and in-process variants."""

    def publish(self, event: str, payload: dict[str, Any]) -> None: ...

    def subscribe(self, event: str, handler: Subscriber) -> None: ...

    async def start(self) -> None: ...

    async def close(self) -> None: ...

    async def ping(self) -> bool: ...


class InMemoryPubSub:
    """Process-local dispatcher; ``publish`` is safe to call from worker threads."""

    def __init__(self) -> None:
        self._subscribers: dict[str, list[Subscriber]] = defaultdict(list)
        self._loop: asyncio.AbstractEventLoop | None = None
        self._tasks: set[asyncio.Task[Any]] = set()

    async def start(self) -> None:
        self._loop = asyncio.get_running_loop()

    def subscribe(self, event: str, handler: Subscriber) -> None:
        self._subscribers[event].append(handler)

    def publish(self, event: str, payload: dict[str, Any]) -> None:
        loop = self._loop
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None

        if loop is None or running is loop:
            self._dispatch(event, payload)
        else:
            loop.call_soon_threadsafe(self._dispatch, event, payload)

    def _dispatch(self, event: str, payload: dict[str, Any]) -> None:
        for handler in list(self._subscribers.get(event, ())):
            try:
                result = handler(payload)
            except Exception as exc:
                logger.error("Subscriber for %s failed: %s", event, exc)
                continue
            if asyncio.iscoroutine(result):
                task = asyncio.ensure_future(result, loop=self._loop)
                self._tasks.add(task)
                task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Subscriber task failed: %s", task.exception())

    async def wait_idle(self) -> None:
        """Wait for in-flight subscriber coroutines to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def ping(self) -> bool:
        return False

    async def close(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        self._subscribers.clear()


class RedisPubSub:
    """Redis channel variant.

    Publishing uses the blocking client so it can be called from Celery tasks
    and worker threads; the listener runs on the event loop with the asyncio
    client.
    """

    def __init__(self, url: str) -> None:
        self._url = url
        self._publisher = redis.Redis.from_url(url)
        self._async: AsyncRedis | None = None
        self._subscribers: dict[str, list[Subscriber]] = defaultdict(list)
        self._listener: asyncio.Task[None] | None = None

    def subscribe(self, event: str, handler: Subscriber) -> None:
        self._subscribers[event].append(handler)

    def publish(self, event: str, payload: dict[str, Any]) -> None:
        self._publisher.publish(event, json.dumps(payload, default=str))
        logger.debug("Published %s to Redis", event)

    async def start(self) -> None:
        if self._listener is not None or not self._subscribers:
            return
        self._async = AsyncRedis.from_url(self._url)
        pubsub = self._async.pubsub()
        await pubsub.subscribe(*self._subscribers.keys())
        logger.info("Subscribed to %d Redis channels: %s",
                    len(self._subscribers), ", ".join(self._subscribers))
        self._listener = asyncio.create_task(self._listen(pubsub))

    async def _listen(self, pubsub: Any) -> None:
        try:
            async for message in pubsub.listen():
                if message.get("type") != "message":
                    continue
                channel = message["channel"]
                if isinstance(channel, bytes):
                    channel = channel.decode()
                try:
                    data = json.loads(message["data"])
                except (TypeError, ValueError) as exc:
                    logger.error("[%s] Invalid payload: %s", channel, exc)
                    continue
                for handler in list(self._subscribers.get(channel, ())):
                    try:
                        result = handler(data)
                        if asyncio.iscoroutine(result):
                            await result
                    except Exception as exc:
                        logger.error("Subscriber for %s failed: %s", channel, exc)
        finally:
            await pubsub.unsubscribe()
            await pubsub.aclose()

    async def ping(self) -> bool:
        client = self._async or AsyncRedis.from_url(self._url)
        return bool(await client.ping())

    async def close(self) -> None:
        if self._listener is not None:
            self._listener.cancel()
            try:
                await self._listener
            except asyncio.CancelledError:
                pass
            self._listener = None
        if self._async is not None:
            await self._async.aclose()
            self._async = None
        self._publisher.close()


def create_pubsub(settings: Settings) -> PubSub:
    """Return the pub/sub variant matching the configured queue mode."""
    if settings.redis_enabled:
        return RedisPubSub(settings.redis_url)
    return InMemoryPubSub()

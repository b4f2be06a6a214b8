# tests/services/test_pubsub.py
from __future__ import annotations

import asyncio
from typing import Any

import pytest

from realtime_channels.core.settings import Settings
from realtime_channels.services.pubsub import (
    PERSISTED_EVENT,
    InMemoryPubSub,
    RedisPubSub,
    create_pubsub,
)


@pytest.mark.asyncio
async def test_async_subscriber_receives_published_event() -> None:
    pubsub = InMemoryPubSub()
    received: list[dict[str, Any]] = []

    async def on_persisted(event: dict[str, Any]) -> None:
        received.append(event)

    pubsub.subscribe(PERSISTED_EVENT, on_persisted)
    await pubsub.start()
    pubsub.publish(PERSISTED_EVENT, {"id": "m1"})
    await pubsub.wait_idle()

    assert received == [{"id": "m1"}]
    await pubsub.close()


@pytest.mark.asyncio
async def test_publish_from_worker_thread_lands_on_the_loop() -> None:
    pubsub = InMemoryPubSub()
    received: list[dict[str, Any]] = []

    async def on_persisted(event: dict[str, Any]) -> None:
        received.append(event)

    pubsub.subscribe(PERSISTED_EVENT, on_persisted)
    await pubsub.start()
    await asyncio.to_thread(pubsub.publish, PERSISTED_EVENT, {"id": "m2"})
    await asyncio.sleep(0.01)
    await pubsub.wait_idle()

    assert received == [{"id": "m2"}]
    await pubsub.close()


@pytest.mark.asyncio
async def test_failing_subscriber_does_not_block_others() -> None:
    pubsub = InMemoryPubSub()
    received: list[str] = []

    def broken(event: dict[str, Any]) -> None:
        raise RuntimeError("boom")

    pubsub.subscribe(PERSISTED_EVENT, broken)
    pubsub.subscribe(PERSISTED_EVENT, lambda event: received.append(event["id"]))
    await pubsub.start()
    pubsub.publish(PERSISTED_EVENT, {"id": "m3"})

    assert received == ["m3"]
    assert await pubsub.ping() is False
    await pubsub.close()


def test_variant_follows_queue_mode() -> None:
    assert isinstance(create_pubsub(Settings(use_redis=False, environment="test")), InMemoryPubSub)
    assert isinstance(create_pubsub(Settings(use_redis=True)), RedisPubSub)

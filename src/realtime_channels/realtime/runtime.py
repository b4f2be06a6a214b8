"""Per-process container for the realtime pipeline's collaborators."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from typing import Any, TypeVar

from sqlalchemy.orm import Session, sessionmaker

from realtime_channels.core.settings import Settings
from realtime_channels.realtime.manager import Connection, ConnectionManager
from realtime_channels.realtime.presence import PresenceHandler, PresenceRegistry
from realtime_channels.services.memory_store import InMemoryStore
from realtime_channels.services.message_cache import MessageCache, create_message_cache
from realtime_channels.services.pubsub import (
    GROUP_DELETED_EVENT,
    GROUP_PERSISTED_EVENT,
    PERSISTED_EVENT,
    USER_DEACTIVATED_EVENT,
    PubSub,
    create_pubsub,
)
from realtime_channels.services.queue import JobQueue, create_job_queue
from realtime_channels.workers.persistence import PersistenceWorker
from realtime_channels.workers.sweeper import DeactivationSweeper

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ChatRuntime:
    """Owns the connection manager, presence registry, queue, pub/sub and caches.

    Created once at startup and torn down at shutdown. Backends are chosen
    from settings at construction time unless passed in explicitly.
    """

    def __init__(
        self,
        settings: Settings,
        session_factory: sessionmaker[Session],
        *,
        manager: ConnectionManager | None = None,
        presence: PresenceRegistry | None = None,
        queue: JobQueue | None = None,
        pubsub: PubSub | None = None,
        store: InMemoryStore | None = None,
        cache: MessageCache | None = None,
    ) -> None:
        self.settings = settings
        self.session_factory = session_factory
        self.manager = manager or ConnectionManager()
        self.presence = presence or PresenceRegistry()
        self.store = store or InMemoryStore(settings.message_cache_size)
        self.pubsub = pubsub or create_pubsub(settings)
        self.queue: JobQueue | None = queue if queue is not None else create_job_queue(settings)
        self.cache = cache or create_message_cache(settings, self.store)
        self.worker = PersistenceWorker(session_factory, self.pubsub)
        self.sweeper = DeactivationSweeper(session_factory, self.pubsub, settings)
        self._presence_handlers: dict[str, PresenceHandler] = {}
        self.started = False
        self.started_at: float | None = None

    async def start(self, *, consume: bool = True, sweep: bool = True) -> None:
        """Wire pub/sub forwarding and start the fallback consumer and sweeper."""
        self.pubsub.subscribe(PERSISTED_EVENT, self._forward_persisted)
        self.pubsub.subscribe(GROUP_PERSISTED_EVENT, self._forward_group_persisted)
        self.pubsub.subscribe(USER_DEACTIVATED_EVENT, self._forward_user_deactivated)
        self.pubsub.subscribe(GROUP_DELETED_EVENT, self._forward_group_deleted)
        await self.pubsub.start()

        # Durable jobs are consumed by Celery workers in their own processes.
        if consume and self.queue is not None and not self.queue.durable:
            self.queue.process(self.worker.process_job)

        if sweep:
            await self.sweeper.start()
        self.started = True
        self.started_at = time.monotonic()

    async def shutdown(self) -> None:
        await self.sweeper.stop()
        await self.manager.close_all()
        if self.queue is not None:
            await self.queue.shutdown()
        await self.pubsub.close()
        try:
            await self.cache.close()
        except Exception as exc:
            logger.debug("Message cache close failed: %s", exc)
        self.presence.clear()
        self.started = False

    async def run_db(self, fn: Callable[..., T], *args: Any, commit: bool = False, **kwargs: Any) -> T:
        """Run ``fn(session, *args, **kwargs)`` in a worker thread with its own session."""
        return await asyncio.to_thread(self._call_with_session, fn, args, kwargs, commit)

    async def run_db_factory(self, fn: Callable[..., T], *args: Any) -> T:
        """Run ``fn(session_factory, *args)`` in a worker thread; ``fn`` owns its sessions."""
        return await asyncio.to_thread(fn, self.session_factory, *args)

    def _call_with_session(
        self, fn: Callable[..., T], args: tuple[Any, ...], kwargs: dict[str, Any], commit: bool
    ) -> T:
        with self.session_factory() as db:
            try:
                result = fn(db, *args, **kwargs)
                if commit:
                    db.commit()
                return result
            except Exception:
                db.rollback()
                raise

    def presence_handler(self, connection: Connection) -> PresenceHandler:
        handler = self._presence_handlers.get(connection.id)
        if handler is None:
            handler = PresenceHandler(self.presence, self.manager, connection)
            self._presence_handlers[connection.id] = handler
        return handler

    async def disconnect(self, connection: Connection, reason: str = "transport close") -> None:
        """Tear down one connection: stop its handlers, update presence, drop rooms."""
        await connection.cancel_pending()
        handler = self._presence_handlers.pop(connection.id, None)
        if handler is not None:
            try:
                await handler.offline(reason)
            except Exception as exc:
                logger.warning("Presence cleanup failed for %s: %s", connection.id, exc)
        self.manager.disconnect(connection.id)

    async def _forward_persisted(self, event: dict[str, Any]) -> None:
        channel_id = event.get("channelId")
        if channel_id:
            await self.manager.emit_to_room(channel_id, PERSISTED_EVENT, event)

    async def _forward_group_persisted(self, event: dict[str, Any]) -> None:
        group_id = event.get("groupId") or event.get("channelId")
        if group_id:
            await self.manager.emit_to_room(f"group:{group_id}", GROUP_PERSISTED_EVENT, event)

    async def _forward_user_deactivated(self, event: dict[str, Any]) -> None:
        await self.manager.broadcast(USER_DEACTIVATED_EVENT, event)
        logger.debug("Broadcast user:deactivated for %s users", event.get("count"))

    async def _forward_group_deleted(self, event: dict[str, Any]) -> None:
        await self.manager.broadcast(GROUP_DELETED_EVENT, event)

    async def ping_redis(self) -> bool:
        return await self.pubsub.ping()

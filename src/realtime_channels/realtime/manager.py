"""Room-based WebSocket connection manager.

Tracks live connections, the rooms each one has joined, and fans events out
to rooms. Every frame on the wire is ``{"event": <name>, "data": <payload>}``.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable, Iterable
from typing import Any, Protocol

from fastapi.encoders import jsonable_encoder

logger = logging.getLogger(__name__)

EventHandler = Callable[[dict[str, Any]], Awaitable[None]]


class Transport(Protocol):
    async def send_json(self, data: Any) -> None: ...


class Connection:
    """One client connection and its per-event handler registry.

    Inbound events are scheduled as independent tasks, so the handler for an
    event may still be running when the next event on the same connection
    starts. A failing handler never affects other events or connections.
    """

    def __init__(
        self,
        manager: ConnectionManager,
        transport: Transport,
        user: dict[str, Any],
        connection_id: str | None = None,
    ) -> None:
        self.id = connection_id or str(uuid.uuid4())
        self.user = user
        self.rooms: set[str] = set()
        self._manager = manager
        self._transport = transport
        self._handlers: dict[str, EventHandler] = {}
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def user_id(self) -> str:
        return str(self.user["id"])

    @property
    def user_name(self) -> str:
        return str(self.user.get("name") or "Anonymous")

    def on(self, event: str, handler: EventHandler) -> None:
        """Register ``handler`` for ``event``, replacing any previous one."""
        self._handlers[event] = handler

    def handles(self, event: str) -> bool:
        return event in self._handlers

    def dispatch(self, event: str | None, data: Any) -> asyncio.Task[None] | None:
        """Schedule the handler for ``event``; unknown events are ignored."""
        handler = self._handlers.get(event or "")
        if handler is None:
            logger.debug("Connection %s: no handler for %r", self.id, event)
            return None
        payload = data if isinstance(data, dict) else {}
        task = asyncio.create_task(self._run(event, handler, payload))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(self, event: str, handler: EventHandler, payload: dict[str, Any]) -> None:
        try:
            await handler(payload)
        except Exception as exc:
            logger.error("Unhandled error in %s for connection %s: %s", event, self.id, exc,
                         exc_info=True)
            await self.emit("error", {"event": event, "message": str(exc)})

    async def wait_idle(self) -> None:
        """Wait until every in-flight handler task has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def cancel_pending(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def send(self, event: str, data: Any) -> None:
        """Write one frame to the transport; errors propagate to the caller."""
        await self._transport.send_json({"event": event, "data": jsonable_encoder(data)})

    async def emit(self, event: str, data: Any) -> None:
        """Send an event to this connection only."""
        await self._manager.emit_to_connection(self.id, event, data)

    async def to_room(self, room: str, event: str, data: Any) -> None:
        """Send to everyone in ``room`` except this connection."""
        await self._manager.emit_to_room(room, event, data, skip=self.id)

    def join(self, room: str) -> None:
        self._manager.join(self.id, room)

    def leave(self, room: str) -> None:
        self._manager.leave(self.id, room)


class ConnectionManager:
    """Owns every live connection of this process and their room memberships."""

    def __init__(self) -> None:
        self._connections: dict[str, Connection] = {}
        self._rooms: dict[str, set[str]] = {}

    def connect(
        self, transport: Transport, user: dict[str, Any], connection_id: str | None = None
    ) -> Connection:
        """Register a connection and join it to its own id room and its user room."""
        connection = Connection(self, transport, user, connection_id)
        self._connections[connection.id] = connection
        self.join(connection.id, connection.id)
        self.join(connection.id, connection.user_id)
        logger.info("Client %s connected (user=%s)", connection.id, connection.user_id)
        return connection

    def disconnect(self, connection_id: str) -> None:
        connection = self._connections.pop(connection_id, None)
        if connection is None:
            return
        for room in list(connection.rooms):
            self.leave(connection_id, room)
        logger.info("Client %s disconnected", connection_id)

    def identify(self, connection: Connection, user: dict[str, Any]) -> None:
        """Attach a resolved user to ``connection`` and move it to that user's room."""
        self.leave(connection.id, connection.user_id)
        connection.user = user
        self.join(connection.id, connection.user_id)

    def get(self, connection_id: str) -> Connection | None:
        return self._connections.get(connection_id)

    def join(self, connection_id: str, room: str) -> None:
        connection = self._connections.get(connection_id)
        if connection is None:
            return
        self._rooms.setdefault(room, set()).add(connection_id)
        connection.rooms.add(room)

    def leave(self, connection_id: str, room: str) -> None:
        members = self._rooms.get(room)
        if members is not None:
            members.discard(connection_id)
            if not members:
                del self._rooms[room]
        connection = self._connections.get(connection_id)
        if connection is not None:
            connection.rooms.discard(room)

    def join_user(self, user_id: str, room: str) -> None:
        """Join every connection of ``user_id`` to ``room``."""
        for connection_id in list(self._rooms.get(str(user_id), ())):
            self.join(connection_id, room)

    def rooms_of(self, connection_id: str) -> set[str]:
        connection = self._connections.get(connection_id)
        return set(connection.rooms) if connection else set()

    def room_members(self, room: str) -> set[str]:
        return set(self._rooms.get(room, ()))

    def connections_for_user(self, user_id: str) -> list[Connection]:
        return [c for c in self._connections.values() if c.user_id == str(user_id)]

    async def emit_to_connection(self, connection_id: str, event: str, data: Any) -> None:
        await self._send_many([connection_id], event, data)

    async def emit_to_room(
        self, room: str, event: str, data: Any, skip: str | None = None
    ) -> None:
        targets = [cid for cid in self._rooms.get(room, ()) if cid != skip]
        await self._send_many(targets, event, data)

    async def broadcast(self, event: str, data: Any, skip: str | None = None) -> None:
        targets = [cid for cid in self._connections if cid != skip]
        await self._send_many(targets, event, data)

    async def _send_many(self, connection_ids: Iterable[str], event: str, data: Any) -> None:
        dead: list[str] = []
        for connection_id in list(connection_ids):
            connection = self._connections.get(connection_id)
            if connection is None:
                continue
            try:
                await connection.send(event, data)
            except Exception as exc:
                logger.warning("Dropping connection %s after send failure: %s", connection_id, exc)
                dead.append(connection_id)
        for connection_id in dead:
            self.disconnect(connection_id)

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    def connected_user_ids(self) -> list[str]:
        return sorted({c.user_id for c in self._connections.values()})

    async def close_all(self) -> None:
        for connection in list(self._connections.values()):
            await connection.cancel_pending()
            self.disconnect(connection.id)

"""Online presence, user status and typing indicators."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from threading import Lock
from typing import TYPE_CHECKING, Any

from realtime_channels.db.time import isoformat_now

if TYPE_CHECKING:
    from realtime_channels.realtime.manager import Connection, ConnectionManager

logger = logging.getLogger(__name__)

STATUS_ONLINE = "online"
STATUS_AWAY = "away"
STATUS_BUSY = "busy"
STATUS_OFFLINE = "offline"

SETTABLE_STATUSES = (STATUS_ONLINE, STATUS_AWAY, STATUS_BUSY)


@dataclass
class PresenceRecord:
    status: str = STATUS_OFFLINE
    last_seen: str | None = None
    username: str | None = None
    connections: set[str] = field(default_factory=set)

    def to_dict(self) -> dict[str, Any]:
        return {"status": self.status, "lastSeen": self.last_seen, "username": self.username}


class PresenceRegistry:
    """Per-user set of live connection ids plus a status record.

    A user is online exactly while their connection set is non-empty.
    """

    def __init__(self) -> None:
        self._records: dict[str, PresenceRecord] = {}
        self._lock = Lock()

    def connect(self, user_id: str, connection_id: str, username: str | None = None) -> bool:
        """Add a connection; return True when the user just came online."""
        with self._lock:
            record = self._records.setdefault(user_id, PresenceRecord())
            first = not record.connections
            record.connections.add(connection_id)
            record.status = STATUS_ONLINE
            record.last_seen = isoformat_now()
            record.username = username
        return first

    def disconnect(self, user_id: str, connection_id: str) -> bool:
        """Remove a connection; return True when the user just went offline."""
        with self._lock:
            record = self._records.get(user_id)
            if record is None or connection_id not in record.connections:
                return False
            record.connections.discard(connection_id)
            if record.connections:
                return False
            record.status = STATUS_OFFLINE
            record.last_seen = isoformat_now()
            return True

    def set_status(self, user_id: str, status: str) -> str | None:
        """Set a user-chosen status; return the timestamp, or None if rejected."""
        if status not in SETTABLE_STATUSES:
            return None
        with self._lock:
            record = self._records.setdefault(user_id, PresenceRecord())
            record.status = status
            record.last_seen = isoformat_now()
            return record.last_seen

    def status_of(self, user_id: str) -> dict[str, Any]:
        with self._lock:
            record = self._records.get(user_id)
            return record.to_dict() if record else {"status": STATUS_OFFLINE, "lastSeen": None}

    def connection_ids(self, user_id: str) -> list[str]:
        with self._lock:
            record = self._records.get(user_id)
            return sorted(record.connections) if record else []

    def online_users(self) -> list[str]:
        with self._lock:
            return [uid for uid, r in self._records.items() if r.connections]

    def is_online(self, user_id: str) -> bool:
        with self._lock:
            record = self._records.get(user_id)
            return bool(record and record.connections)

    def clear(self) -> None:
        with self._lock:
            self._records.clear()


class PresenceHandler:
    """Socket events for presence, status and typing."""

    def __init__(
        self, registry: PresenceRegistry, manager: ConnectionManager, connection: Connection
    ) -> None:
        self.registry = registry
        self.manager = manager
        self.connection = connection

    def register(self) -> None:
        self.connection.on("typing:start", self.typing_start)
        self.connection.on("typing:stop", self.typing_stop)
        self.connection.on("user:status:update", self.status_update)

    async def online(self) -> None:
        conn = self.connection
        if self.registry.connect(conn.user_id, conn.id, conn.user_name):
            logger.info("[presence] %s online (%s)", conn.user_name, conn.id)
            await self.manager.broadcast(
                "user:online",
                {"userId": conn.user_id, "username": conn.user_name, "timestamp": isoformat_now()},
            )

    async def typing_start(self, data: dict[str, Any]) -> None:
        conversation_id = data.get("conversationId")
        if not conversation_id:
            return
        await self.connection.to_room(
            conversation_id,
            "user:typing",
            {
                "userId": self.connection.user_id,
                "username": self.connection.user_name,
                "conversationId": conversation_id,
                "type": data.get("type") or "direct",
            },
        )

    async def typing_stop(self, data: dict[str, Any]) -> None:
        conversation_id = data.get("conversationId")
        if not conversation_id:
            return
        await self.connection.to_room(
            conversation_id,
            "user:stop:typing",
            {"userId": self.connection.user_id, "conversationId": conversation_id},
        )

    async def status_update(self, data: dict[str, Any]) -> None:
        status = data.get("status")
        timestamp = self.registry.set_status(self.connection.user_id, status)
        if timestamp is None:
            logger.debug("Ignoring invalid status %r from %s", status, self.connection.user_id)
            return
        await self.manager.broadcast(
            "user:status:changed",
            {"userId": self.connection.user_id, "status": status, "timestamp": timestamp},
        )

    async def offline(self, reason: str = "disconnect") -> None:
        """Clear typing indicators in every joined room and publish offline if last."""
        conn = self.connection
        for room in sorted(conn.rooms):
            if room in (conn.id, conn.user_id):
                continue
            await conn.to_room(room, "user:stop:typing", {"userId": conn.user_id, "conversationId": room})

        if self.registry.disconnect(conn.user_id, conn.id):
            status = self.registry.status_of(conn.user_id)
            await self.manager.broadcast(
                "user:offline",
                {"userId": conn.user_id, "timestamp": status["lastSeen"], "username": conn.user_name},
                skip=conn.id,
            )
            logger.info("[presence] %s offline (%s) - Reason: %s", conn.user_name, conn.id, reason)
        else:
            logger.debug(
                "[presence] %s connection closed (%s), %d remaining",
                conn.user_name, conn.id, len(self.registry.connection_ids(conn.user_id)),
            )

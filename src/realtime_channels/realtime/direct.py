"""Direct (one-to-one) message delivery.

A send is broadcast to the channel room before anything is written, then
handed to persistence. Later failures are logged or reported to the sender
but never retract the broadcast.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any

from realtime_channels.db.time import isoformat_now
from realtime_channels.errors import NotAMemberError, PayloadValidationError
from realtime_channels.schemas.message import ChatMessage
from realtime_channels.services import channels as channel_service
from realtime_channels.services.formatter import format_message
from realtime_channels.services.queue import (
    PERSIST_DIRECT_JOB,
    default_job_options,
    require_queue,
)
from realtime_channels.utils.conversation import conversation_id, direct_channel_key

if TYPE_CHECKING:
    from realtime_channels.realtime.manager import Connection
    from realtime_channels.realtime.runtime import ChatRuntime

logger = logging.getLogger(__name__)


class DirectChatHandler:
    """Handles ``message:send``, ``direct:history`` and ``message:read`` for one connection."""

    def __init__(self, runtime: ChatRuntime, connection: Connection) -> None:
        self.runtime = runtime
        self.connection = connection

    @property
    def user(self) -> dict[str, Any]:
        return self.connection.user

    def register(self) -> None:
        self.connection.on("message:send", self.send)
        self.connection.on("direct:history", self.history)
        self.connection.on("message:read", self.read)

    async def load_channels(self) -> list[dict[str, Any]]:
        """Join every direct channel room of the user and emit ``channels:load``."""
        user_id = self.connection.user_id
        try:
            channels = await self.runtime.run_db(channel_service.load_user_direct_channels, user_id)
        except Exception as exc:
            logger.error("[DirectHandler] Failed to load user channels: %s", exc)
            return []

        for channel in channels:
            self.connection.join(channel["id"])
            for participant in channel.get("participants", ()):
                if participant["userId"] != user_id:
                    self.connection.join(conversation_id(user_id, participant["userId"]))

        await self.connection.emit("channels:load", channels)
        logger.debug("[DirectHandler] %s joined %d direct channels", user_id, len(channels))
        return channels

    async def _resolve_channel(self, receiver_id: str) -> str:
        user_id = self.connection.user_id
        channel_id = await self.runtime.run_db_factory(
            channel_service.ensure_direct_channel, user_id, str(receiver_id)
        )
        # Both participants' live connections follow the channel from now on.
        manager = self.runtime.manager
        room = conversation_id(user_id, receiver_id)
        for uid in (user_id, str(receiver_id)):
            manager.join_user(uid, channel_id)
            manager.join_user(uid, room)
        return channel_id

    async def send(self, payload: dict[str, Any]) -> None:
        temp_id = payload.get("tempId")
        try:
            await self._send(dict(payload))
        except Exception as exc:
            logger.error("[DirectHandler] Message send error: %s", exc)
            await self.connection.emit(
                "message:error",
                {"error": "Failed to send message", "details": str(exc), "tempId": temp_id},
            )

    async def _send(self, payload: dict[str, Any]) -> None:
        settings = self.runtime.settings
        temp_id = payload.get("tempId")
        receiver_id = payload.get("receiverId")

        if not payload.get("channelId") and receiver_id:
            payload["channelId"] = await self._resolve_channel(receiver_id)
        if not payload.get("channelId"):
            raise PayloadValidationError("Missing channelId or receiverId")

        message = format_message(
            payload,
            self.user,
            {"status": "queued", "tempId": temp_id, "unreadApplied": True},
            max_length=settings.max_message_length,
        )
        record = message.to_wire()

        await self.runtime.manager.emit_to_room(
            message.channel_id,
            "message:receive",
            {**record, "tempId": temp_id, "optimistic": True},
        )
        await self.connection.emit(
            "message:ack",
            {
                "tempId": temp_id,
                "id": message.id,
                "status": message.status,
                "createdAt": message.created_at,
            },
        )

        persisted = await self._persist(message, record)
        await self._update_unread(message)
        await self._cache(record)

        if message.receiver_id:
            await self.runtime.manager.emit_to_room(
                conversation_id(message.receiver_id, message.sender_id),
                "message:delivered",
                {"tempId": temp_id, "id": message.id, "channelId": message.channel_id},
            )

        # Queued messages are confirmed by the worker through pub/sub.
        if persisted is not None:
            await self.connection.emit(
                "message:persisted",
                {
                    "tempId": temp_id,
                    "id": message.id,
                    "channelId": message.channel_id,
                    "persistedAt": persisted.get("persistedAt") or isoformat_now(),
                },
            )

    async def _persist(self, message: ChatMessage, record: dict[str, Any]) -> dict[str, Any] | None:
        """Write inline or enqueue. Returns the worker result for inline writes."""
        if self.runtime.settings.direct_inline_persistence:
            try:
                result = await asyncio.to_thread(
                    self.runtime.worker.persist, record, is_group=False, publish=False
                )
                logger.debug("[DirectHandler] Message saved inline: %s", message.id)
                return result
            except Exception as exc:
                logger.error("[DirectHandler] Failed to save message %s: %s", message.id, exc)
                self.runtime.store.add("direct", record)
                return None

        queue = require_queue(self.runtime.queue)
        try:
            await queue.add(PERSIST_DIRECT_JOB, record, default_job_options(self.runtime.settings))
            logger.debug("[DirectHandler] Queued message %s for persistence", message.id)
        except Exception as exc:
            logger.warning("[DirectHandler] Failed to queue message %s: %s", message.id, exc)
            self.runtime.store.add("direct", record)
        return None

    async def _update_unread(self, message: ChatMessage) -> None:
        try:
            updates = await self.runtime.run_db(
                channel_service.increment_unread,
                message.channel_id,
                message.sender_id,
                commit=True,
            )
        except Exception as exc:
            logger.warning("[DirectHandler] Unread count update failed: %s", exc)
            return
        for update in updates:
            await self.runtime.manager.emit_to_room(update["userId"], "message:unread", update)

    async def _cache(self, record: dict[str, Any]) -> None:
        try:
            await self.runtime.cache.append("direct", record)
        except Exception as exc:
            logger.debug("Message cache store failed (safe to ignore): %s", exc)

    async def history(self, data: dict[str, Any]) -> None:
        try:
            receiver_id = data.get("receiverId")
            if not receiver_id:
                raise PayloadValidationError("receiverId is required")

            user_id = self.connection.user_id
            conv_id = conversation_id(user_id, receiver_id)
            limit = self.runtime.settings.history_limit
            channel_id, messages = await self._load_history(direct_channel_key(user_id, receiver_id), limit)

            await self.connection.emit(
                "direct:history",
                {"channelId": channel_id or conv_id, "conversationId": conv_id, "messages": messages},
            )
            logger.debug("[DirectHandler] Sent %d messages to user %s", len(messages), user_id)
        except Exception as exc:
            logger.error("[DirectHandler] Error in direct:history: %s", exc)
            await self.connection.emit(
                "message:error",
                {"error": "Failed to load message history", "details": str(exc)},
            )

    async def _load_history(self, key: str, limit: int) -> tuple[str | None, list[dict[str, Any]]]:
        def load(db: Any) -> tuple[str | None, list[dict[str, Any]]]:
            channel = channel_service.find_direct_channel(db, key)
            if channel is None:
                return None, []
            return channel.id, channel_service.message_history(db, channel.id, limit)

        try:
            channel_id, messages = await self.runtime.run_db(load)
        except Exception as exc:
            logger.warning("[DirectHandler] Durable history unavailable: %s", exc)
            return None, []

        if channel_id and not messages:
            messages = self.runtime.store.get("direct", channel_id, limit)
        return channel_id, messages

    async def read(self, data: dict[str, Any]) -> None:
        try:
            user_id = self.connection.user_id
            channel_id = data.get("channelId")
            receiver_id = data.get("receiverId")
            if not channel_id and receiver_id:
                key = direct_channel_key(user_id, receiver_id)
                channel = await self.runtime.run_db(channel_service.find_direct_channel, key)
                channel_id = channel.id if channel is not None else None
            if not channel_id:
                raise PayloadValidationError("Missing channelId or receiverId")

            allowed = await self.runtime.run_db(channel_service.is_participant, channel_id, user_id)
            if not allowed:
                logger.warning("[DirectHandler] Unauthorized read attempt by %s on %s", user_id, channel_id)
                raise NotAMemberError("Not a participant of this channel")

            reset = await self.runtime.run_db(
                channel_service.mark_as_read, channel_id, user_id, commit=True
            )
            if reset:
                await self.connection.emit(
                    "message:read:confirm", {"channelId": channel_id, "unreadCount": 0}
                )
        except Exception as exc:
            logger.error("[DirectHandler] Error in message:read: %s", exc)
            await self.connection.emit(
                "message:error", {"error": "Failed to mark messages as read", "details": str(exc)}
            )

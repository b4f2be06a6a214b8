"""Group message delivery and group management events.

Unlike direct sends, membership is verified before the optimistic broadcast,
so a non-member never reaches the group room.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from realtime_channels.errors import NotAMemberError, PayloadValidationError
from realtime_channels.schemas.message import ChatMessage
from realtime_channels.services import channels as channel_service
from realtime_channels.services import groups as group_service
from realtime_channels.services.formatter import format_message
from realtime_channels.services.polls import create_poll
from realtime_channels.services.pubsub import GROUP_DELETED_EVENT
from realtime_channels.services.queue import (
    PERSIST_GROUP_JOB,
    default_job_options,
    require_queue,
)

if TYPE_CHECKING:
    from realtime_channels.realtime.manager import Connection
    from realtime_channels.realtime.runtime import ChatRuntime

logger = logging.getLogger(__name__)

NOT_A_MEMBER = "You are not a member of this group"


def group_room(group_id: str) -> str:
    return f"group:{group_id}"


class GroupChatHandler:
    """Group events for one connection."""

    def __init__(self, runtime: ChatRuntime, connection: Connection) -> None:
        self.runtime = runtime
        self.connection = connection

    def register(self) -> None:
        conn = self.connection
        conn.on("group:create", self.create)
        conn.on("group:get", self.get)
        conn.on("group:assignAdmin", self.assign_admin)
        conn.on("group:delete:soft", self.soft_delete)
        conn.on("group:leave", self.leave)
        conn.on("group:message:send", self.send)
        conn.on("group:history", self.history)
        conn.on("group:read", self.read)
        conn.on("group:poll:create", self.create_poll)

    async def _fail(self, event: str, summary: str, exc: Exception, **extra: Any) -> None:
        logger.error("[GroupHandler] %s: %s", event, exc)
        await self.connection.emit(event, {"error": summary, "details": str(exc), **extra})

    async def _history(self, group_id: str) -> list[dict[str, Any]]:
        limit = self.runtime.settings.history_limit
        try:
            messages = await self.runtime.run_db(channel_service.message_history, group_id, limit)
        except Exception as exc:
            logger.warning("[GroupHandler] Durable history unavailable for %s: %s", group_id, exc)
            messages = []
        return messages or self.runtime.store.get("group", group_id, limit)

    async def auto_join(self) -> int:
        """Join every group room of the user and emit ``group:auto:joined`` per group."""
        user_id = self.connection.user_id
        try:
            details = await self.runtime.run_db(
                lambda db: [group_service.serialize_group(g) for g in group_service.groups_by_user(db, user_id)]
            )
        except Exception as exc:
            logger.warning("[GroupHandler] Failed to auto-join groups for %s: %s", user_id, exc)
            return 0

        for group in details:
            self.connection.join(group_room(group["id"]))
            members = await self.runtime.run_db(group_service.members_by_group, group["id"])
            messages = await self._history(group["id"])
            await self.connection.emit(
                "group:auto:joined", {"group": group, "members": members, "messages": messages}
            )
        logger.debug("[GroupHandler] %s auto-joined %d groups", user_id, len(details))
        return len(details)

    async def create(self, data: dict[str, Any]) -> None:
        try:
            group = await self.runtime.run_db(
                group_service.create_group,
                name=data.get("name"),
                description=data.get("description"),
                avatar=data.get("avatar"),
                created_by=self.connection.user_id,
                member_ids=data.get("members") or [],
                min_members=self.runtime.settings.group_min_members,
                commit=True,
            )
            room = group_room(group["id"])
            self.connection.join(room)
            for member_id in data.get("members") or []:
                self.runtime.manager.join_user(str(member_id), room)

            await self.connection.emit("group:create:success", {"group": group})
            logger.info("[GroupHandler] User %s created group %s", self.connection.user_id, group["id"])
        except Exception as exc:
            await self._fail("group:create:error", str(exc), exc)

    async def get(self, data: dict[str, Any]) -> None:
        try:
            group_id = data.get("groupId")
            if not group_id:
                raise PayloadValidationError("Missing groupId")

            def load(db: Any) -> dict[str, Any]:
                if not group_service.is_member(db, group_id, self.connection.user_id):
                    raise NotAMemberError(NOT_A_MEMBER)
                group = group_service.get_group(db, group_id)
                return {
                    "group": group_service.serialize_group(group),
                    "members": group_service.members_by_group(db, group_id),
                }

            result = await self.runtime.run_db(load)
            result["messages"] = await self._history(group_id)
            await self.connection.emit("group:get:success", result)
        except Exception as exc:
            await self._fail("group:get:error", str(exc), exc)

    async def assign_admin(self, data: dict[str, Any]) -> None:
        try:
            group_id, user_id = data.get("groupId"), data.get("userId")
            if not group_id or not user_id:
                raise PayloadValidationError("groupId and userId are required")
            role = await self.runtime.run_db(
                group_service.assign_admin_role,
                group_id,
                self.connection.user_id,
                str(user_id),
                commit=True,
            )
            await self.connection.emit("group:assignAdmin:success", {"userId": user_id, "role": role})
        except Exception as exc:
            await self._fail("group:assignAdmin:error", str(exc), exc)

    async def soft_delete(self, data: dict[str, Any]) -> None:
        try:
            group_id = data.get("groupId")
            if not group_id:
                raise PayloadValidationError("Missing groupId")
            await self.runtime.run_db(
                group_service.soft_delete_group, group_id, self.connection.user_id, commit=True
            )
            self.runtime.pubsub.publish(
                GROUP_DELETED_EVENT,
                {"groupId": group_id, "deletedBy": self.connection.user_id, "softDeleted": True},
            )
            await self.connection.emit(
                "group:delete:success",
                {"groupId": group_id, "message": "Group soft-deleted successfully"},
            )
            logger.info("[GroupHandler] User %s soft-deleted group:%s", self.connection.user_id, group_id)
        except Exception as exc:
            await self._fail("group:delete:error", str(exc), exc)

    async def leave(self, data: dict[str, Any]) -> None:
        group_id = data.get("groupId")
        try:
            if not group_id:
                raise PayloadValidationError("Missing groupId")
            await self.runtime.run_db(
                group_service.remove_member, group_id, self.connection.user_id, commit=True
            )
            room = group_room(group_id)
            self.connection.leave(room)
            await self.runtime.manager.emit_to_room(
                room, "group:member:left", {"groupId": group_id, "userId": self.connection.user_id}
            )
            await self.connection.emit(
                "group:leave:ack", {"groupId": group_id, "userId": self.connection.user_id, "left": True}
            )
            logger.info("[GroupHandler] %s left group:%s", self.connection.user_id, group_id)
        except Exception as exc:
            await self._fail("group:leave:error", str(exc), exc, groupId=group_id)

    async def send(self, payload: dict[str, Any]) -> None:
        temp_id = payload.get("tempId")
        try:
            await self._send(dict(payload))
        except Exception as exc:
            await self._fail("group:message:error", "Failed to send group message", exc, tempId=temp_id)

    async def _send(self, payload: dict[str, Any]) -> None:
        user_id = self.connection.user_id
        temp_id = payload.get("tempId")
        group_id = payload.get("groupId") or payload.get("channelId")
        if not group_id:
            raise PayloadValidationError("Missing groupId")

        if not await self.runtime.run_db(group_service.is_member, group_id, user_id):
            logger.warning("[GroupHandler] Unauthorized send by %s in group:%s", user_id, group_id)
            await self.connection.emit(
                "group:message:error", {"error": NOT_A_MEMBER, "details": NOT_A_MEMBER, "tempId": temp_id}
            )
            return

        room = group_room(group_id)
        self.connection.join(room)

        payload.update({"groupId": group_id, "channelId": group_id, "isGroup": True})
        message = format_message(
            payload,
            self.connection.user,
            {"status": "queued", "tempId": temp_id, "unreadApplied": True},
            max_length=self.runtime.settings.max_message_length,
        )
        record = message.to_wire()

        await self.runtime.manager.emit_to_room(room, "group:message:receive", {**record, "optimistic": True})
        await self.connection.emit(
            "group:message:ack",
            {
                "temp_id": message.client_message_id,
                "tempId": temp_id,
                "id": message.id,
                "status": "queued",
                "createdAt": message.created_at,
            },
        )

        queue = require_queue(self.runtime.queue)
        try:
            await queue.add(PERSIST_GROUP_JOB, record, default_job_options(self.runtime.settings))
            logger.debug("[GroupHandler] Queued group message %s for persistence", message.id)
        except Exception as exc:
            logger.warning("[GroupHandler] Failed to queue group message: %s", exc)
            self.runtime.store.add("group", record)

        await self._update_unread(message)
        try:
            await self.runtime.cache.append("group", record)
        except Exception as exc:
            logger.debug("Message cache failed (safe): %s", exc)

        await self.connection.to_room(
            room, "group:message:delivered", {"messageId": message.id, "senderId": message.sender_id}
        )

    async def _update_unread(self, message: ChatMessage) -> None:
        try:
            updates = await self.runtime.run_db(
                channel_service.increment_unread, message.channel_id, message.sender_id, commit=True
            )
        except Exception as exc:
            logger.warning("[GroupHandler] Unread count update failed: %s", exc)
            return
        for update in updates:
            await self.runtime.manager.emit_to_room(
                update["userId"], "group:message:unread", {**update, "groupId": message.channel_id}
            )

    async def history(self, data: dict[str, Any]) -> None:
        group_id = data.get("groupId")
        try:
            if not group_id:
                raise PayloadValidationError("Missing groupId")
            if not await self.runtime.run_db(group_service.is_member, group_id, self.connection.user_id):
                raise NotAMemberError(NOT_A_MEMBER)
            messages = await self._history(group_id)
            await self.connection.emit("group:history", {"groupId": group_id, "messages": messages})
        except Exception as exc:
            await self._fail("group:history:error", "Failed to load group history", exc, groupId=group_id)

    async def read(self, data: dict[str, Any]) -> None:
        group_id = data.get("groupId")
        user_id = self.connection.user_id
        try:
            if not group_id:
                raise PayloadValidationError("Missing groupId")
            if not await self.runtime.run_db(group_service.is_member, group_id, user_id):
                raise NotAMemberError(NOT_A_MEMBER)

            if await self.runtime.run_db(channel_service.mark_as_read, group_id, user_id, commit=True):
                await self.connection.emit("group:read:confirm", {"groupId": group_id, "unreadCount": 0})

            messages = await self._history(group_id)
            await self.connection.emit("group:history:update", {"groupId": group_id, "messages": messages})
        except Exception as exc:
            await self._fail("group:read:error", "Failed to mark group as read", exc, groupId=group_id)

    async def create_poll(self, data: dict[str, Any]) -> None:
        try:
            channel_id = data.get("channelId") or data.get("groupId")
            if not channel_id:
                raise PayloadValidationError("Missing channelId")
            user_id = self.connection.user_id

            def create(db: Any) -> dict[str, Any]:
                if not group_service.is_member(db, channel_id, user_id):
                    raise NotAMemberError(NOT_A_MEMBER)
                return create_poll(
                    db,
                    channel_id=channel_id,
                    question=data.get("question"),
                    options=data.get("options") or [],
                    created_by=user_id,
                    sender_name=self.connection.user_name,
                )

            poll = await self.runtime.run_db(create, commit=True)
            await self.runtime.manager.emit_to_room(group_room(channel_id), "group:poll:created", poll)
        except Exception as exc:
            await self._fail("group:poll:error", str(exc), exc)

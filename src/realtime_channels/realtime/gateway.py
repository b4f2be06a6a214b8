"""WebSocket endpoint and connection bootstrap.

Clients connect to the socket path with ``userId`` (required) and ``name``
query parameters, then send JSON frames ``{"event": ..., "data": ...}``.
Chat handlers are attached once the client identifies with ``user:connect``.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect, status

from realtime_channels.core.settings import settings
from realtime_channels.realtime.direct import DirectChatHandler
from realtime_channels.realtime.group import GroupChatHandler
from realtime_channels.realtime.manager import Connection
from realtime_channels.realtime.runtime import ChatRuntime
from realtime_channels.services import channels as channel_service
from realtime_channels.services.users import list_users, resolve_or_create_user

router = APIRouter()
logger = logging.getLogger(__name__)


async def attach_user(runtime: ChatRuntime, connection: Connection, user: dict[str, Any]) -> None:
    """Identify ``connection`` as ``user`` and register the chat handlers.

    Also loads direct channels (``channels:load``), auto-joins groups
    (``group:auto:joined``) and reports who is online (``users:online``).
    """
    runtime.manager.identify(connection, user)

    presence = runtime.presence_handler(connection)
    presence.register()
    direct = DirectChatHandler(runtime, connection)
    direct.register()
    group = GroupChatHandler(runtime, connection)
    group.register()

    await presence.online()
    await connection.emit("users:online", runtime.presence.online_users())
    await direct.load_channels()
    await group.auto_join()


def register_connection_handlers(runtime: ChatRuntime, connection: Connection) -> None:
    """Events available before and after ``user:connect``."""

    async def user_connect(data: dict[str, Any]) -> None:
        user_name = (data.get("userName") or "").strip()
        if not user_name:
            await connection.emit("error", {"message": "Username required"})
            return
        try:
            row = await runtime.run_db_factory(resolve_or_create_user, user_name)
        except Exception as exc:
            logger.error("[user:connect] Error: %s", exc)
            await connection.emit("error", {"message": "Failed to connect user"})
            return

        user = {"id": row.id, "name": row.name}
        await connection.emit("user:connected", {"userId": row.id, "userName": row.name})
        logger.info("[User] Connected: %s (%s)", row.name, row.id)
        await attach_user(runtime, connection, user)

    async def get_channels(data: dict[str, Any]) -> None:
        try:
            channels = await runtime.run_db(channel_service.list_channels)
            await connection.emit("channels", channels)
        except Exception as exc:
            logger.error("Error fetching channels: %s", exc)
            await connection.emit("error", {"message": "Failed to fetch channels"})

    async def get_channel_members(data: dict[str, Any]) -> None:
        channel_id = data.get("channelId")
        try:
            members = await runtime.run_db(channel_service.get_participants, channel_id)
            await connection.emit("channelMembers", {"channelId": channel_id, "members": members})
        except Exception as exc:
            logger.error("Error fetching channel members: %s", exc)
            await connection.emit("error", {"message": "Failed to fetch channel members"})

    async def get_channel_messages(data: dict[str, Any]) -> None:
        channel_id = data.get("channelId")
        try:
            messages = await runtime.run_db(channel_service.channel_messages, channel_id)
            await connection.emit("channelMessages", {"channelId": channel_id, "messages": messages})
        except Exception as exc:
            logger.error("Error fetching channel messages: %s", exc)
            await connection.emit("error", {"message": "Failed to fetch channel messages"})

    async def get_users(data: dict[str, Any]) -> None:
        try:
            await connection.emit("users", await runtime.run_db(list_users))
        except Exception as exc:
            logger.error("Error fetching users: %s", exc)
            await connection.emit("error", {"message": "Failed to fetch users"})

    connection.on("user:connect", user_connect)
    connection.on("getChannels", get_channels)
    connection.on("getChannelMembers", get_channel_members)
    connection.on("getChannelMessages", get_channel_messages)
    connection.on("getUsers", get_users)


@router.websocket(settings.socket_path)
async def socket_endpoint(
    websocket: WebSocket,
    user_id: str | None = Query(default=None, alias="userId"),
    name: str = Query(default="Anonymous"),
) -> None:
    """Realtime chat socket."""
    if not user_id:
        logger.info("Rejecting socket without userId")
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason="userId required")
        return

    runtime: ChatRuntime = websocket.app.state.runtime
    await websocket.accept()
    connection = runtime.manager.connect(websocket, {"id": user_id, "name": name})
    register_connection_handlers(runtime, connection)

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                frame = json.loads(raw)
            except json.JSONDecodeError as exc:
                logger.warning("Invalid JSON from client %s: %s", connection.id, exc)
                await connection.emit("error", {"message": "Invalid JSON payload"})
                continue
            if not isinstance(frame, dict):
                await connection.emit("error", {"message": "Frames must be JSON objects"})
                continue
            connection.dispatch(frame.get("event"), frame.get("data"))
    except WebSocketDisconnect as exc:
        logger.info("WebSocket connection closed for client %s (code=%s)", connection.id, exc.code)
    finally:
        await runtime.disconnect(connection)

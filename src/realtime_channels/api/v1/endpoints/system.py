"""System and introspection endpoints."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Annotated, Any

from fastapi import APIRouter, Depends, Request
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from realtime_channels.core.settings import settings
from realtime_channels.db.session import check_connection, get_db
from realtime_channels.db.time import isoformat_now
from realtime_channels.models import Channel, ChannelParticipant, Message, User
from realtime_channels.models.channel import CHANNEL_DIRECT, CHANNEL_GROUP
from realtime_channels.realtime.runtime import ChatRuntime

router = APIRouter(prefix="/system", tags=["system"])
logger = logging.getLogger(__name__)

SessionDep = Annotated[Session, Depends(get_db)]


def get_runtime(request: Request) -> ChatRuntime:
    """Return the runtime created at application startup."""
    return request.app.state.runtime


RuntimeDep = Annotated[ChatRuntime, Depends(get_runtime)]


def _queue_mode(runtime: ChatRuntime) -> str:
    if runtime.queue is None:
        return "unavailable"
    return "celery" if runtime.queue.durable else "in-memory"


async def collect_health(runtime: ChatRuntime) -> dict[str, Any]:
    """Probe the database and Redis and summarize live socket state.

    Returns:
        The health document; ``status`` is ``"ok"`` only when the database is
        reachable and Redis is either reachable or not configured.
    """
    try:
        await asyncio.to_thread(check_connection, runtime.session_factory)
        database = "connected"
    except Exception as exc:
        logger.error("Health check database probe failed: %s", exc)
        database = "disconnected"

    if runtime.settings.redis_enabled:
        try:
            redis = "connected" if await runtime.ping_redis() else "disconnected"
        except Exception as exc:
            logger.warning("Health check Redis probe failed: %s", exc)
            redis = "disconnected"
    else:
        redis = "disabled"

    healthy = database == "connected" and redis != "disconnected"
    return {
        "status": "ok" if healthy else "degraded",
        "database": database,
        "redis": redis,
        "queue": _queue_mode(runtime),
        "sockets": {
            "totalConnected": runtime.manager.connection_count,
            "onlineUsers": len(runtime.presence.online_users()),
            "connectedUserIds": runtime.manager.connected_user_ids(),
        },
        "uptime": round(time.monotonic() - runtime.started_at, 3) if runtime.started_at else 0.0,
        "timestamp": isoformat_now(),
    }


@router.get("/config")
async def get_system_config() -> dict[str, Any]:
    """Expose the non-secret parts of the running configuration.

    Returns:
        Queue, cache and transport settings. Connection URLs are omitted.
    """
    return {
        "app": {"name": settings.app_name, "version": settings.app_version},
        "environment": settings.environment,
        "redis_enabled": settings.redis_enabled,
        "queue": {
            "name": settings.queue_name,
            "attempts": settings.job_attempts,
            "backoff_ms": settings.job_backoff_ms,
            "concurrency": settings.worker_concurrency,
            "rate_limit": settings.worker_rate_limit,
            "direct_inline_persistence": settings.direct_inline_persistence,
        },
        "messages": {
            "cache_size": settings.message_cache_size,
            "history_limit": settings.history_limit,
            "max_length": settings.max_message_length,
        },
        "groups": {"min_members": settings.group_min_members},
        "socket_path": settings.socket_path,
    }


@router.get("/stats")
async def get_system_stats(db: SessionDep, runtime: RuntimeDep) -> dict[str, Any]:
    """Row counts plus the live connection picture."""

    def count(model: Any, *criteria: Any) -> int:
        stmt = select(func.count()).select_from(model)
        for criterion in criteria:
            stmt = stmt.where(criterion)
        return int(db.execute(stmt).scalar_one())

    return {
        "users": count(User, User.is_active.is_(True)),
        "channels": {
            "direct": count(Channel, Channel.type == CHANNEL_DIRECT, Channel.deleted_at.is_(None)),
            "group": count(Channel, Channel.type == CHANNEL_GROUP, Channel.deleted_at.is_(None)),
        },
        "participants": count(ChannelParticipant, ChannelParticipant.left_at.is_(None)),
        "messages": count(Message),
        "sockets": runtime.manager.connection_count,
        "online_users": len(runtime.presence.online_users()),
        "buffered_messages": len(runtime.store),
    }

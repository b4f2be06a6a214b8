"""Process-local, per-channel message ring buffers.

Used for fast history reads and as the last-resort holding area when a
message cannot be handed to the persistence queue. Not a system of record:
contents are lost on restart and are not shared between processes.
"""

from __future__ import annotations

import logging
from collections import deque
from collections.abc import Mapping
from threading import Lock
from typing import Any, Literal

logger = logging.getLogger(__name__)

StoreKind = Literal["direct", "group"]

DEFAULT_CAPACITY = 200
DEFAULT_HISTORY_LIMIT = 50


def _sort_key(message: Mapping[str, Any]) -> str:
    return str(message.get("createdAt") or "")


class InMemoryStore:
    """Bounded message lists keyed by channel id (direct) or group id (group)."""

    def __init__(self, capacity: int = DEFAULT_CAPACITY) -> None:
        self.capacity = capacity
        self._lists: dict[StoreKind, dict[str, deque[dict[str, Any]]]] = {
            "direct": {},
            "group": {},
        }
        self._lock = Lock()

    def add(self, kind: StoreKind, message: Mapping[str, Any]) -> None:
        """Append ``message``; only the newest ``capacity`` entries are kept.

        A message whose ``id`` is already held is not added twice.
        """
        key = message.get("channelId") if kind == "direct" else (
            message.get("groupId") or message.get("channelId")
        )
        if not key:
            logger.warning("InMemoryStore: missing channel/group id for %s message", kind)
            return

        message_id = message.get("id")
        with self._lock:
            bucket = self._lists[kind].setdefault(key, deque(maxlen=self.capacity))
            if message_id and any(held.get("id") == message_id for held in bucket):
                return
            bucket.append(dict(message))
            size = len(bucket)
        logger.debug("InMemoryStore: added %s message to %s (%d held)", kind, key, size)

    def get(self, kind: StoreKind, key: str, limit: int = DEFAULT_HISTORY_LIMIT) -> list[dict[str, Any]]:
        """Return up to ``limit`` most recent messages, oldest first."""
        with self._lock:
            messages = list(self._lists[kind].get(key, ()))
        messages.sort(key=_sort_key)
        return messages[-limit:] if limit > 0 else []

    def clear(self, kind: StoreKind, key: str | None = None) -> None:
        """Drop one channel's messages, or every channel of ``kind``."""
        with self._lock:
            if key:
                self._lists[kind].pop(key, None)
            else:
                self._lists[kind].clear()
        logger.debug("InMemoryStore: cleared %s messages%s", kind, f" for {key}" if key else "")

    def conversations_for(self, user_id: str) -> list[dict[str, Any]]:
        """Summarize the direct conversations held in memory that involve ``user_id``.

        One entry per channel, built from the first message seen for it.
        """
        with self._lock:
            everything = [msg for bucket in self._lists["direct"].values() for msg in bucket]

        seen: dict[str, dict[str, Any]] = {}
        for msg in everything:
            sender, receiver = msg.get("senderId"), msg.get("receiverId")
            if user_id not in (sender, receiver):
                continue
            channel_id = msg.get("channelId")
            if channel_id in seen:
                continue
            seen[channel_id] = {
                "channelId": channel_id,
                "participantId": receiver if sender == user_id else sender,
                "lastMessage": msg.get("message"),
                "lastMessageAt": msg.get("createdAt"),
            }
        return list(seen.values())

    def __len__(self) -> int:
        with self._lock:
            return sum(len(b) for lists in self._lists.values() for b in lists.values())

# src/realtime_channels/schemas/message.py
"""Canonical message record exchanged between handlers, queue and worker."""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class MessageType(str, Enum):
    """Kinds of message the formatter can detect."""

    TEXT = "text"
    IMAGE = "image"
    VIDEO = "video"
    AUDIO = "audio"
    FILE = "file"
    EMOJI = "emoji"
    REPLY = "reply"
    REACTION = "reaction"
    SYSTEM = "system"
    POLL = "poll"
    LOCATION = "location"
    CONTACT = "contact"
    LINK = "link"


class MessageStatus(str, Enum):
    """Server-side lifecycle of a message. Never regresses once persisted."""

    QUEUED = "queued"
    SENT = "sent"
    PERSISTED = "persisted"


class _WireModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
    )

    def to_wire(self) -> dict[str, Any]:
        """Serialize with camelCase keys, as sent over the socket and the queue."""
        return self.model_dump(mode="json", by_alias=True)


class Attachment(_WireModel):
    """Normalized attachment reference."""

    id: str
    url: str | None = None
    mime_type: str = "application/octet-stream"
    size: int | None = None
    meta: dict[str, Any] | None = None
    filename: str | None = None


class ChatMessage(_WireModel):
    """A formatted message snapshot.

    ``unread_applied`` records that the realtime handler already incremented
    the unread counters for this message, so the persistence worker must not
    increment them a second time.
    """

    id: str
    client_message_id: str
    temp_id: str | None = None
    channel_id: str
    group_id: str | None = None
    session_id: str | None = None
    sender_id: str | None = None
    sender_name: str = "Unknown"
    receiver_id: str | None = None
    receiver_name: str | None = None
    message_type: str = MessageType.TEXT.value
    message: str | None = None
    content: Any = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    status: str = MessageStatus.QUEUED.value
    is_read: bool = False
    is_group: bool = False
    encrypted: bool = False
    encryption_version: str | None = None
    attachments: list[Attachment] = Field(default_factory=list)
    created_at: str
    updated_at: str
    version: int = 1
    unread_applied: bool = False

    @property
    def room(self) -> str:
        """Socket room the message is broadcast into."""
        if self.is_group:
            return f"group:{self.group_id or self.channel_id}"
        return self.channel_id

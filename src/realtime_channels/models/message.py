# src/realtime_channels/models/message.py
"""Models describing persisted chat messages and their attachments."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from realtime_channels.db.session import Base
from realtime_channels.db.time import utcnow
from realtime_channels.models.user import new_id


class Message(Base):
    """Durable copy of a chat message, written by the persistence worker.

    ``id``, ``temp_id`` and ``client_message_id`` are each indexed because any
    of them identifies an already-persisted message.
    """

    __tablename__ = "message"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    temp_id: Mapped[str | None] = mapped_column(Text, nullable=True, index=True)
    client_message_id: Mapped[str | None] = mapped_column(Text, nullable=True, index=True)

    channel_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    session_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    sender_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    sender_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    receiver_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    receiver_name: Mapped[str | None] = mapped_column(Text, nullable=True)

    message_type: Mapped[str] = mapped_column(String(16), nullable=False, default="text")
    message: Mapped[str | None] = mapped_column(Text, nullable=True)
    content: Mapped[Any] = mapped_column(JSON, nullable=True)
    # "metadata" is reserved on declarative classes.
    meta_data: Mapped[dict[str, Any]] = mapped_column("metadata", JSON, default=dict)

    status: Mapped[str] = mapped_column(String(16), nullable=False, default="persisted")
    is_group: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_read: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    encrypted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    encryption_version: Mapped[str | None] = mapped_column(Text, nullable=True)
    poll_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("poll.id"), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )
    persisted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    attachments: Mapped[list[MessageAttachment]] = relationship(
        "MessageAttachment",
        back_populates="parent",
        cascade="all, delete-orphan",
        order_by="MessageAttachment.position",
    )


class MessageAttachment(Base):
    """File, image or media reference attached to a message."""

    __tablename__ = "message_attachment"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    message_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("message.id", ondelete="CASCADE"), nullable=False, index=True
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    url: Mapped[str | None] = mapped_column(Text, nullable=True)
    mime_type: Mapped[str | None] = mapped_column(Text, nullable=True)
    size: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    filename: Mapped[str | None] = mapped_column(Text, nullable=True)
    meta: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)

    parent: Mapped[Message] = relationship("Message", back_populates="attachments")

"""Conversion between durable message rows and wire records."""

from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime
from typing import Any

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from realtime_channels.db.time import utcnow
from realtime_channels.models import Message, MessageAttachment
from realtime_channels.models.user import new_id


def _iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_timestamp(value: Any) -> datetime:
    """Parse an ISO-8601 wire timestamp, falling back to now."""
    if isinstance(value, datetime):
        return value
    if isinstance(value, str) and value:
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            pass
    return utcnow()


def serialize_attachment(att: MessageAttachment) -> dict[str, Any]:
    return {
        "id": att.id,
        "url": att.url,
        "mimeType": att.mime_type,
        "size": att.size,
        "filename": att.filename,
        "meta": att.meta,
    }


def serialize_message(message: Message) -> dict[str, Any]:
    """Return the camelCase wire form of a persisted message."""
    return {
        "id": message.id,
        "tempId": message.temp_id,
        "clientMessageId": message.client_message_id,
        "channelId": message.channel_id,
        "groupId": message.channel_id if message.is_group else None,
        "sessionId": message.session_id,
        "senderId": message.sender_id,
        "senderName": message.sender_name,
        "receiverId": message.receiver_id,
        "receiverName": message.receiver_name,
        "messageType": message.message_type,
        "message": message.message,
        "content": message.content,
        "metadata": message.meta_data or {},
        "status": message.status,
        "isGroup": message.is_group,
        "isRead": message.is_read,
        "encrypted": message.encrypted,
        "encryptionVersion": message.encryption_version,
        "pollId": message.poll_id,
        "attachments": [serialize_attachment(a) for a in message.attachments],
        "createdAt": _iso(message.created_at),
        "updatedAt": _iso(message.updated_at),
        "persistedAt": _iso(message.persisted_at),
    }


def find_duplicate(db: Session, record: Mapping[str, Any]) -> str | None:
    """Return the id of a stored message matching any dedup key of ``record``.

    ``id``, ``tempId`` and ``clientMessageId`` are each sufficient; keys that
    are absent never match.
    """
    clauses = []
    if record.get("id"):
        clauses.append(Message.id == record["id"])
    if record.get("tempId"):
        clauses.append(Message.temp_id == record["tempId"])
    if record.get("clientMessageId"):
        clauses.append(Message.client_message_id == record["clientMessageId"])
    if not clauses:
        return None
    return db.scalar(select(Message.id).where(or_(*clauses)).limit(1))


def message_from_record(
    record: Mapping[str, Any], *, channel_id: str, is_group: bool, persisted_at: datetime
) -> Message:
    """Build a :class:`Message` row (with attachments) from a wire record."""
    message = Message(
        id=record.get("id") or new_id(),
        temp_id=record.get("tempId"),
        client_message_id=record.get("clientMessageId"),
        channel_id=channel_id,
        session_id=record.get("sessionId"),
        sender_id=record.get("senderId"),
        sender_name=record.get("senderName"),
        receiver_id=None if is_group else record.get("receiverId"),
        receiver_name=None if is_group else record.get("receiverName"),
        message_type=record.get("messageType") or "text",
        message=record.get("message"),
        content=record.get("content"),
        meta_data=dict(record.get("metadata") or {}),
        status="persisted",
        is_group=is_group,
        is_read=bool(record.get("isRead", False)),
        encrypted=bool(record.get("encrypted", False)),
        encryption_version=record.get("encryptionVersion"),
        poll_id=record.get("pollId"),
        created_at=parse_timestamp(record.get("createdAt")),
        updated_at=persisted_at,
        persisted_at=persisted_at,
    )
    for position, att in enumerate(record.get("attachments") or ()):
        message.attachments.append(
            MessageAttachment(
                id=att.get("id") or new_id(),
                position=position,
                url=att.get("url"),
                mime_type=att.get("mimeType") or att.get("mime_type"),
                size=att.get("size"),
                filename=att.get("filename"),
                meta=att.get("meta"),
            )
        )
    return message

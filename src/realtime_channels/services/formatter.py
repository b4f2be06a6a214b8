# src/realtime_channels/services/formatter.py
"""Normalization of client-submitted payloads into message records.

Everything here is a pure transformation: no I/O, and identical inputs give
identical output apart from generated ids and timestamps.
"""

from __future__ import annotations

import re
import uuid
from collections.abc import Iterable, Mapping
from typing import Any
from urllib.parse import urlsplit

from realtime_channels.db.time import isoformat_now
from realtime_channels.schemas.message import Attachment, ChatMessage, MessageType

DEFAULT_MIME_TYPE = "application/octet-stream"
MAX_TEXT_LENGTH = 10_000
METADATA_VERSION = "1.0.0"

_URL_RE = re.compile(r"https?://\S+")

# Explicit payload flags, checked in this order after attachments.
_FLAG_TYPES: tuple[tuple[str, MessageType], ...] = (
    ("emoji", MessageType.EMOJI),
    ("replyTo", MessageType.REPLY),
    ("reaction", MessageType.REACTION),
    ("system", MessageType.SYSTEM),
    ("poll", MessageType.POLL),
    ("location", MessageType.LOCATION),
    ("contact", MessageType.CONTACT),
)


def _user_field(user: Any, name: str) -> Any:
    if user is None:
        return None
    if isinstance(user, Mapping):
        return user.get(name)
    return getattr(user, name, None)


def _sender_name(user: Any) -> str:
    for field in ("name", "username", "display_name", "displayName"):
        value = _user_field(user, field)
        if value:
            return str(value)
    email = _user_field(user, "email")
    if email:
        return str(email).split("@")[0]
    return "Unknown"


def _filename_from_url(url: str) -> str | None:
    try:
        parts = urlsplit(url)
    except ValueError:
        return None
    if not parts.scheme or not parts.netloc:
        return None
    filename = parts.path.rsplit("/", 1)[-1]
    return filename or None


def normalize_attachments(attachments: Iterable[Mapping[str, Any]] | None) -> list[Attachment]:
    """Return attachments with ids, MIME types and derived filenames filled in."""
    normalized: list[Attachment] = []
    for att in attachments or ():
        url = att.get("url")
        filename = att.get("filename") or att.get("name")
        if url and not filename:
            filename = _filename_from_url(url)
        normalized.append(
            Attachment(
                id=att.get("id") or str(uuid.uuid4()),
                url=url,
                mime_type=att.get("mimeType") or att.get("mime_type") or DEFAULT_MIME_TYPE,
                size=att.get("size") or None,
                meta=att.get("meta") or None,
                filename=filename,
            )
        )
    return normalized


def _payload_text(payload: Mapping[str, Any]) -> str:
    content = payload.get("content")
    if isinstance(content, Mapping):
        text = content.get("text")
    elif isinstance(content, str):
        text = content
    else:
        text = None
    return text or payload.get("message") or ""


def detect_message_type(payload: Mapping[str, Any]) -> str:
    """Infer the message type of a raw payload.

    Attachment MIME prefixes win, then explicit flags, then a text consisting
    of exactly one URL. Otherwise the caller's ``messageType`` or ``"text"``.
    """
    attachments = payload.get("attachments") or []
    if attachments:
        mime = attachments[0].get("mimeType") or attachments[0].get("mime_type") or ""
        for prefix, kind in (
            ("image/", MessageType.IMAGE),
            ("video/", MessageType.VIDEO),
            ("audio/", MessageType.AUDIO),
        ):
            if mime.startswith(prefix):
                return kind.value
        return MessageType.FILE.value

    for flag, kind in _FLAG_TYPES:
        if payload.get(flag):
            return kind.value

    text = _payload_text(payload)
    urls = _URL_RE.findall(text)
    if len(urls) == 1 and text.strip() == urls[0]:
        return MessageType.LINK.value

    return payload.get("messageType") or payload.get("type") or MessageType.TEXT.value


def sanitize_text(value: Any, max_length: int = MAX_TEXT_LENGTH) -> Any:
    """Trim and cap a text value; non-strings pass through unchanged."""
    if isinstance(value, str):
        return value.strip()[:max_length]
    return value


def process_content(payload: Mapping[str, Any], max_length: int = MAX_TEXT_LENGTH) -> dict[str, Any]:
    """Build the structured content block, trimming and capping its text."""
    raw = payload.get("content")
    if isinstance(raw, Mapping):
        content = dict(raw)
    else:
        content = {
            "text": raw if isinstance(raw, str) else (payload.get("message") or payload.get("text") or ""),
            "blocks": payload.get("blocks") or [],
            "replyTo": payload.get("replyTo"),
            "emoji": payload.get("emoji"),
            "reaction": payload.get("reaction"),
            "system": payload.get("system"),
        }

    if content.get("text"):
        content["text"] = sanitize_text(content["text"], max_length)
    return content


def build_metadata(payload: Mapping[str, Any]) -> dict[str, Any]:
    """Merge caller metadata over defaults and stamp timestamp/version if absent."""
    supplied = payload.get("metadata") or {}
    metadata: dict[str, Any] = {"device": "web", "client": "socket", **supplied}
    metadata["device"] = metadata.get("device") or "web"
    metadata["client"] = metadata.get("client") or "socket"
    if not metadata.get("timestamp"):
        metadata["timestamp"] = isoformat_now()
    if not metadata.get("version"):
        metadata["version"] = METADATA_VERSION
    return metadata


def format_message(
    payload: Mapping[str, Any],
    user: Any,
    overrides: Mapping[str, Any] | None = None,
    *,
    max_length: int = MAX_TEXT_LENGTH,
) -> ChatMessage:
    """Format a socket payload into a canonical :class:`ChatMessage`.

    ``channelId`` is taken from ``channelId``, ``groupId`` or ``sessionId`` in
    that order. ``overrides`` are applied last, keyed by wire (camelCase) or
    attribute name.
    """
    now = isoformat_now()
    content = process_content(payload, max_length=max_length)
    text = content.get("text") or sanitize_text(payload.get("message"), max_length) or None

    record: dict[str, Any] = {
        "id": str(uuid.uuid4()),
        "clientMessageId": payload.get("clientMessageId") or str(uuid.uuid4()),
        "tempId": payload.get("tempId"),
        "channelId": payload.get("channelId") or payload.get("groupId") or payload.get("sessionId"),
        "groupId": payload.get("groupId"),
        "sessionId": payload.get("sessionId"),
        "senderId": _user_field(user, "id"),
        "senderName": _sender_name(user),
        "receiverId": payload.get("receiverId"),
        "receiverName": payload.get("receiverName"),
        "messageType": detect_message_type(payload),
        "message": text,
        "content": content,
        "metadata": build_metadata(payload),
        "status": "queued",
        "isRead": False,
        "isGroup": bool(payload.get("isGroup") or payload.get("groupId")),
        "encrypted": bool(payload.get("encrypted", False)),
        "encryptionVersion": payload.get("encryptionVersion"),
        "attachments": normalize_attachments(payload.get("attachments")),
        "createdAt": now,
        "updatedAt": now,
    }
    if overrides:
        record.update(overrides)
    if record["senderId"] is not None:
        record["senderId"] = str(record["senderId"])
    return ChatMessage.model_validate(record)


def create_system_message(
    text: str, channel_id: str, metadata: Mapping[str, Any] | None = None
) -> ChatMessage:
    """Return a system notice for ``channel_id``."""
    return format_message(
        {
            "content": {"text": text, "system": True},
            "channelId": channel_id,
            "system": True,
            "metadata": dict(metadata or {}),
        },
        {"id": "system", "name": "System"},
        {"status": "sent"},
    )


def create_reaction_message(
    reaction: str, message_id: str, channel_id: str, user: Any
) -> ChatMessage:
    """Return a reaction to ``message_id`` sent by ``user``."""
    return format_message(
        {
            "content": {"reaction": reaction, "reactsTo": message_id},
            "channelId": channel_id,
            "reaction": True,
        },
        user,
        {"status": "sent"},
    )


def validate_message_payload(payload: Mapping[str, Any] | None) -> list[str]:
    """Return a list of problems with ``payload``; empty when it is sendable."""
    if not payload:
        return ["Payload is required"]

    errors: list[str] = []
    has_content = payload.get("content") or payload.get("message") or payload.get("text")
    attachments = payload.get("attachments") or []
    if not has_content and not attachments:
        errors.append("Message must have content or attachments")
    for index, att in enumerate(attachments):
        if not att.get("url"):
            errors.append(f"Attachment {index} missing URL")
    return errors

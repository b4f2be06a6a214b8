# tests/test_formatter.py
from __future__ import annotations

from typing import Any

import pytest

from realtime_channels.services.formatter import (
    METADATA_VERSION,
    create_reaction_message,
    create_system_message,
    detect_message_type,
    format_message,
    validate_message_payload,
)

ALICE: dict[str, Any] = {"id": "u-alice", "name": "Alice"}


def test_text_is_trimmed_and_defaults_applied() -> None:
    message = format_message({"channelId": "c1", "message": "   hello there  "}, ALICE)

    assert message.message == "hello there"
    assert message.content["text"] == "hello there"
    assert message.message_type == "text"
    assert message.sender_id == "u-alice"
    assert message.sender_name == "Alice"
    assert message.status == "queued"
    assert message.version == 1
    assert message.is_read is False
    assert message.id and message.client_message_id
    assert message.created_at == message.updated_at


def test_text_is_capped_at_max_length() -> None:
    message = format_message({"channelId": "c1", "message": "hello world"}, ALICE, max_length=5)
    assert message.content["text"] == "hello"


def test_message_text_is_sanitized_when_content_has_no_text() -> None:
    payload = {"channelId": "c1", "content": {"emoji": ":)"}, "message": "  " + "a" * 20000 + "  "}

    message = format_message(payload, ALICE)

    assert message.message == "a" * 10000
    assert message.content == {"emoji": ":)"}


def test_client_message_id_is_kept_when_supplied() -> None:
    message = format_message({"channelId": "c1", "message": "x", "clientMessageId": "cm-1"}, ALICE)
    assert message.client_message_id == "cm-1"


@pytest.mark.parametrize(
    "mime, expected",
    [
        ("image/png", "image"),
        ("video/mp4", "video"),
        ("audio/ogg", "audio"),
        ("application/pdf", "file"),
    ],
)
def test_attachment_mime_decides_type(mime: str, expected: str) -> None:
    payload = {"attachments": [{"url": "https://cdn.example.com/a/b.bin", "mimeType": mime}]}
    assert detect_message_type(payload) == expected


def test_attachments_are_normalized() -> None:
    message = format_message(
        {"channelId": "c1", "attachments": [{"url": "https://cdn.example.com/files/pic.png"}]},
        ALICE,
    )

    (attachment,) = message.attachments
    assert attachment.id
    assert attachment.filename == "pic.png"
    assert attachment.mime_type == "application/octet-stream"
    assert message.message_type == "file"


def test_lone_url_is_a_link_but_url_in_sentence_is_text() -> None:
    assert detect_message_type({"message": "https://example.com/page"}) == "link"
    assert detect_message_type({"message": "see https://example.com/page"}) == "text"


def test_flags_follow_their_precedence() -> None:
    assert detect_message_type({"message": "x", "replyTo": "m1"}) == "reply"
    assert detect_message_type({"message": "x", "emoji": True, "replyTo": "m1"}) == "emoji"
    assert detect_message_type({"message": "x", "messageType": "custom"}) == "custom"


@pytest.mark.parametrize(
    "user, expected",
    [
        ({"id": "1", "name": "Ann"}, "Ann"),
        ({"id": "1", "username": "ann_u"}, "ann_u"),
        ({"id": "1", "displayName": "Ann D"}, "Ann D"),
        ({"id": "1", "email": "ann@example.com"}, "ann"),
        ({"id": "1"}, "Unknown"),
    ],
)
def test_sender_name_derivation(user: dict[str, Any], expected: str) -> None:
    assert format_message({"channelId": "c1", "message": "x"}, user).sender_name == expected


def test_metadata_defaults_and_caller_values() -> None:
    defaults = format_message({"channelId": "c1", "message": "x"}, ALICE).metadata
    assert defaults["device"] == "web"
    assert defaults["client"] == "socket"
    assert defaults["version"] == METADATA_VERSION
    assert defaults["timestamp"]

    custom = format_message(
        {"channelId": "c1", "message": "x", "metadata": {"device": "ios", "trace": "t-1"}}, ALICE
    ).metadata
    assert custom["device"] == "ios"
    assert custom["client"] == "socket"
    assert custom["trace"] == "t-1"


def test_overrides_are_applied_last() -> None:
    message = format_message(
        {"channelId": "c1", "message": "x", "tempId": "ignored"},
        ALICE,
        {"tempId": "t-1", "status": "sent", "unreadApplied": True},
    )
    assert message.temp_id == "t-1"
    assert message.status == "sent"
    assert message.unread_applied is True


def test_wire_form_uses_camel_case() -> None:
    wire = format_message({"channelId": "c1", "message": "x", "tempId": "t-1"}, ALICE).to_wire()

    for key in ("clientMessageId", "channelId", "senderId", "messageType", "createdAt", "tempId",
                "unreadApplied", "isGroup"):
        assert key in wire
    assert "client_message_id" not in wire


def test_group_payload_targets_group_room() -> None:
    message = format_message({"groupId": "g1", "message": "hi"}, ALICE)
    assert message.channel_id == "g1"
    assert message.is_group is True
    assert message.room == "group:g1"


def test_encryption_fields_pass_through() -> None:
    message = format_message(
        {"channelId": "c1", "message": "cipher", "encrypted": True, "encryptionVersion": "v2"}, ALICE
    )
    assert message.encrypted is True
    assert message.encryption_version == "v2"


def test_system_and_reaction_messages() -> None:
    system = create_system_message("Alice joined", "c1")
    assert system.message_type == "system"
    assert system.sender_name == "System"
    assert system.status == "sent"

    reaction = create_reaction_message(":+1:", "m-1", "c1", ALICE)
    assert reaction.message_type == "reaction"
    assert reaction.content["reactsTo"] == "m-1"


def test_validate_message_payload() -> None:
    assert validate_message_payload(None) == ["Payload is required"]
    assert validate_message_payload({"channelId": "c1"}) == ["Message must have content or attachments"]
    assert validate_message_payload({"attachments": [{"mimeType": "image/png"}]}) == [
        "Attachment 0 missing URL"
    ]
    assert validate_message_payload({"message": "ok"}) == []

# tests/services/test_memory_store.py
from __future__ import annotations

from typing import Any

from realtime_channels.services.memory_store import InMemoryStore


def _message(index: int, channel_id: str = "c1", **extra: Any) -> dict[str, Any]:
    return {
        "id": f"m{index}",
        "channelId": channel_id,
        "message": f"message {index}",
        "createdAt": f"2026-01-01T00:{index // 60:02d}:{index % 60:02d}.000Z",
        **extra,
    }


def test_store_keeps_only_the_newest_capacity_messages() -> None:
    store = InMemoryStore(capacity=200)
    for index in range(201):
        store.add("direct", _message(index))

    held = store.get("direct", "c1", limit=1000)
    assert len(held) == 200
    assert held[0]["id"] == "m1"
    assert held[-1]["id"] == "m200"


def test_get_returns_newest_limit_oldest_first() -> None:
    store = InMemoryStore()
    for index in (3, 1, 2, 4):
        store.add("direct", _message(index))

    assert [m["id"] for m in store.get("direct", "c1", limit=2)] == ["m3", "m4"]
    assert store.get("direct", "c1", limit=0) == []
    assert store.get("direct", "unknown") == []


def test_same_message_id_is_held_once() -> None:
    store = InMemoryStore()
    store.add("direct", _message(1))
    store.add("direct", _message(1))
    assert len(store) == 1


def test_message_without_key_is_ignored() -> None:
    store = InMemoryStore()
    store.add("direct", {"id": "m1", "message": "lost"})
    assert len(store) == 0


def test_group_messages_are_keyed_by_group_id() -> None:
    store = InMemoryStore()
    store.add("group", _message(1, channel_id="g1", groupId="g1"))
    store.add("group", _message(2, channel_id="ignored", groupId="g1"))

    assert [m["id"] for m in store.get("group", "g1")] == ["m1", "m2"]
    assert store.get("direct", "g1") == []


def test_clear_one_channel_or_all() -> None:
    store = InMemoryStore()
    store.add("direct", _message(1, channel_id="c1"))
    store.add("direct", _message(2, channel_id="c2"))

    store.clear("direct", "c1")
    assert store.get("direct", "c1") == []
    assert len(store) == 1

    store.clear("direct")
    assert len(store) == 0


def test_conversations_for_user() -> None:
    store = InMemoryStore()
    store.add("direct", _message(1, channel_id="c1", senderId="alice", receiverId="bob"))
    store.add("direct", _message(2, channel_id="c1", senderId="bob", receiverId="alice"))
    store.add("direct", _message(3, channel_id="c2", senderId="carol", receiverId="alice"))
    store.add("direct", _message(4, channel_id="c3", senderId="carol", receiverId="dave"))

    summary = {c["channelId"]: c for c in store.conversations_for("alice")}
    assert set(summary) == {"c1", "c2"}
    assert summary["c1"]["participantId"] == "bob"
    assert summary["c2"]["participantId"] == "carol"
    assert summary["c1"]["lastMessage"] == "message 1"

# tests/realtime/test_manager.py
from __future__ import annotations

import asyncio
from typing import Any

import pytest

from realtime_channels.realtime.manager import ConnectionManager


class RecordingSocket:
    def __init__(self) -> None:
        self.frames: list[dict[str, Any]] = []
        self.broken = False

    async def send_json(self, data: Any) -> None:
        if self.broken:
            raise RuntimeError("connection reset")
        self.frames.append(data)


def test_connection_joins_its_own_and_user_rooms() -> None:
    manager = ConnectionManager()
    conn = manager.connect(RecordingSocket(), {"id": "u1", "name": "Ann"}, connection_id="c1")

    assert manager.rooms_of("c1") == {"c1", "u1"}
    assert manager.connection_count == 1
    assert manager.connected_user_ids() == ["u1"]

    manager.identify(conn, {"id": "u-db", "name": "Ann"})
    assert manager.rooms_of("c1") == {"c1", "u-db"}
    assert manager.room_members("u1") == set()

    manager.disconnect("c1")
    assert manager.connection_count == 0
    assert manager.room_members("u-db") == set()


def test_join_user_covers_every_connection_of_that_user() -> None:
    manager = ConnectionManager()
    manager.connect(RecordingSocket(), {"id": "u1"}, connection_id="a")
    manager.connect(RecordingSocket(), {"id": "u1"}, connection_id="b")
    manager.connect(RecordingSocket(), {"id": "u2"}, connection_id="c")

    manager.join_user("u1", "room-1")

    assert manager.room_members("room-1") == {"a", "b"}
    assert [c.id for c in manager.connections_for_user("u1")] == ["a", "b"]


@pytest.mark.asyncio
async def test_room_emission_honours_skip() -> None:
    manager = ConnectionManager()
    sockets = {cid: RecordingSocket() for cid in ("a", "b", "c")}
    for cid, socket in sockets.items():
        manager.connect(socket, {"id": f"user-{cid}"}, connection_id=cid)
        manager.join(cid, "room")

    await manager.emit_to_room("room", "ping", {"n": 1}, skip="a")

    assert sockets["a"].frames == []
    assert sockets["b"].frames == [{"event": "ping", "data": {"n": 1}}]
    assert sockets["c"].frames == [{"event": "ping", "data": {"n": 1}}]


@pytest.mark.asyncio
async def test_dead_connection_is_dropped_on_send_failure() -> None:
    manager = ConnectionManager()
    healthy, dead = RecordingSocket(), RecordingSocket()
    dead.broken = True
    manager.connect(healthy, {"id": "u1"}, connection_id="ok")
    manager.connect(dead, {"id": "u2"}, connection_id="gone")

    await manager.broadcast("hello", {})

    assert manager.get("gone") is None
    assert healthy.frames == [{"event": "hello", "data": {}}]


@pytest.mark.asyncio
async def test_handler_failure_is_isolated_per_event() -> None:
    manager = ConnectionManager()
    socket = RecordingSocket()
    conn = manager.connect(socket, {"id": "u1"}, connection_id="c1")
    handled: list[Any] = []

    async def broken(data: dict[str, Any]) -> None:
        raise ValueError("bad payload")

    async def working(data: dict[str, Any]) -> None:
        handled.append(data)

    conn.on("broken", broken)
    conn.on("working", working)
    conn.dispatch("broken", {})
    conn.dispatch("working", {"x": 1})
    assert conn.dispatch("unknown", {}) is None
    await conn.wait_idle()

    assert handled == [{"x": 1}]
    assert {"event": "error", "data": {"event": "broken", "message": "bad payload"}} in socket.frames


@pytest.mark.asyncio
async def test_events_on_one_connection_may_overlap() -> None:
    manager = ConnectionManager()
    conn = manager.connect(RecordingSocket(), {"id": "u1"}, connection_id="c1")
    order: list[str] = []
    release = asyncio.Event()

    async def slow(data: dict[str, Any]) -> None:
        order.append("slow:start")
        await release.wait()
        order.append("slow:end")

    async def fast(data: dict[str, Any]) -> None:
        order.append("fast")
        release.set()

    conn.on("slow", slow)
    conn.on("fast", fast)
    conn.dispatch("slow", {})
    conn.dispatch("fast", {})
    await conn.wait_idle()

    assert order == ["slow:start", "fast", "slow:end"]


@pytest.mark.asyncio
async def test_cancel_pending_stops_in_flight_handlers() -> None:
    manager = ConnectionManager()
    conn = manager.connect(RecordingSocket(), {"id": "u1"}, connection_id="c1")

    async def forever(data: dict[str, Any]) -> None:
        await asyncio.Event().wait()

    conn.on("forever", forever)
    task = conn.dispatch("forever", {})
    await asyncio.sleep(0)
    await conn.cancel_pending()

    assert task is not None and task.cancelled()

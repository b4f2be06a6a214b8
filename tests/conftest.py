# tests/conftest.py
from __future__ import annotations

import asyncio
import itertools
from collections.abc import Iterator
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from realtime_channels.core.settings import Settings
from realtime_channels.db.session import Base, build_engine
from realtime_channels.models import ChannelParticipant, User
from realtime_channels.models.channel import CHANNEL_GROUP, ROLE_MEMBER, ROLE_OWNER, Channel
from realtime_channels.realtime.gateway import register_connection_handlers
from realtime_channels.realtime.manager import Connection
from realtime_channels.realtime.runtime import ChatRuntime
from realtime_channels.services.pubsub import InMemoryPubSub
from realtime_channels.services.queue import InMemoryJobQueue

_ANON_IDS = itertools.count(1)


class FakeSocket:
    """Transport double that records every frame sent to it."""

    def __init__(self) -> None:
        self.frames: list[dict[str, Any]] = []
        self.closed = False

    async def send_json(self, data: Any) -> None:
        if self.closed:
            raise RuntimeError("socket closed")
        self.frames.append(data)

    def events(self, name: str) -> list[Any]:
        return [frame["data"] for frame in self.frames if frame["event"] == name]

    def names(self) -> list[str]:
        return [frame["event"] for frame in self.frames]

    def last(self, name: str) -> Any:
        found = self.events(name)
        assert found, f"no {name!r} frame in {self.names()}"
        return found[-1]

    def clear(self) -> None:
        self.frames.clear()


def make_settings(tmp_path: Path, **overrides: Any) -> Settings:
    values: dict[str, Any] = {
        "database_url": f"sqlite:///{tmp_path / 'realtime.db'}",
        "use_redis": False,
        "environment": "test",
        "deactivation_enabled": False,
        "group_min_members": 3,
    }
    values.update(overrides)
    return Settings(**values)


@pytest.fixture()
def test_settings(tmp_path: Path) -> Settings:
    return make_settings(tmp_path)


@pytest.fixture()
def engine(test_settings: Settings) -> Iterator[Engine]:
    engine = build_engine(test_settings.database_url)
    Base.metadata.create_all(bind=engine)
    try:
        yield engine
    finally:
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture()
def session_factory(engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture()
def db_session(session_factory: sessionmaker[Session]) -> Iterator[Session]:
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


def add_user(session_factory: sessionmaker[Session], name: str, **fields: Any) -> str:
    with session_factory() as db:
        user = User(name=name, **fields)
        db.add(user)
        db.commit()
        return user.id


def add_group(
    session_factory: sessionmaker[Session], owner_id: str, member_ids: list[str], name: str = "team"
) -> str:
    with session_factory() as db:
        group = Channel(name=name, type=CHANNEL_GROUP, created_by=owner_id)
        db.add(group)
        db.flush()
        db.add(ChannelParticipant(channel_id=group.id, user_id=owner_id, role=ROLE_OWNER))
        for member_id in member_ids:
            db.add(ChannelParticipant(channel_id=group.id, user_id=member_id, role=ROLE_MEMBER))
        db.commit()
        return group.id


@pytest.fixture()
def users(session_factory: sessionmaker[Session]) -> dict[str, str]:
    """Four active users keyed by name."""
    return {name: add_user(session_factory, name) for name in ("alice", "bob", "carol", "dave")}


async def settle(runtime: ChatRuntime, *connections: Connection) -> None:
    """Let handlers, queued jobs and forwarded pub/sub events run to completion."""
    for _ in range(3):
        for connection in connections:
            await connection.wait_idle()
        if isinstance(runtime.queue, InMemoryJobQueue):
            await runtime.queue.drain()
        # Worker threads hand events back with call_soon_threadsafe.
        await asyncio.sleep(0.01)
        if isinstance(runtime.pubsub, InMemoryPubSub):
            await runtime.pubsub.wait_idle()


async def open_socket(runtime: ChatRuntime, name: str) -> tuple[Connection, FakeSocket]:
    """Connect a fake client and identify it as ``name`` through ``user:connect``."""
    socket = FakeSocket()
    connection = runtime.manager.connect(socket, {"id": f"anon-{next(_ANON_IDS)}", "name": name})
    register_connection_handlers(runtime, connection)
    connection.dispatch("user:connect", {"userName": name})
    await settle(runtime, connection)
    assert socket.events("user:connected"), socket.names()
    return connection, socket


@pytest_asyncio.fixture()
async def runtime(test_settings: Settings, session_factory: sessionmaker[Session]):
    runtime = ChatRuntime(
        test_settings,
        session_factory,
        queue=InMemoryJobQueue(),
        pubsub=InMemoryPubSub(),
    )
    await runtime.start(sweep=False)
    try:
        yield runtime
    finally:
        await runtime.shutdown()


@pytest.fixture()
def group_factory(session_factory: sessionmaker[Session]):
    """Create a group directly in the database: ``group_factory(owner_id, [member_ids])``."""

    def _create(owner_id: str, member_ids: list[str], name: str = "team") -> str:
        return add_group(session_factory, owner_id, member_ids, name)

    return _create


@pytest.fixture()
def settled(runtime: ChatRuntime):
    """``await settled(*connections)`` waits for all pending pipeline work."""

    async def _settle(*connections: Connection) -> None:
        await settle(runtime, *connections)

    return _settle


@pytest.fixture()
def connect(runtime: ChatRuntime):
    """``await connect("alice")`` opens an identified fake client."""

    async def _connect(name: str) -> tuple[Connection, FakeSocket]:
        return await open_socket(runtime, name)

    return _connect

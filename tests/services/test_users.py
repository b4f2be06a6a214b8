# tests/services/test_users.py
from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest
from sqlalchemy import func, select

from realtime_channels.db.time import utcnow
from realtime_channels.errors import PayloadValidationError
from realtime_channels.models import ChannelParticipant, User
from realtime_channels.services.channels import ensure_direct_channel
from realtime_channels.services.users import (
    deactivate_abandoned_users,
    list_users,
    resolve_or_create_user,
)


def test_user_is_created_once_and_reused(session_factory):
    first = resolve_or_create_user(session_factory, "  erin ")
    second = resolve_or_create_user(session_factory, "erin")

    assert first.id == second.id
    assert first.name == "erin"
    assert second.last_login is not None


def test_concurrent_connects_converge_on_one_user(session_factory):
    with ThreadPoolExecutor(max_workers=6) as pool:
        ids = {u.id for u in pool.map(lambda _: resolve_or_create_user(session_factory, "frank"), range(6))}

    assert len(ids) == 1
    with session_factory() as db:
        assert db.scalar(select(func.count()).select_from(User).where(User.name == "frank")) == 1


def test_blank_name_is_rejected(session_factory):
    with pytest.raises(PayloadValidationError):
        resolve_or_create_user(session_factory, "   ")


def test_abandoned_users_are_deactivated(session_factory, users):
    channel_id = ensure_direct_channel(session_factory, users["alice"], users["bob"])
    now = utcnow()
    with session_factory() as db:
        db.get(User, users["bob"]).last_login = now - timedelta(days=365 * 3)
        db.get(User, users["carol"]).last_login = now - timedelta(days=30)
        db.commit()

        swept = deactivate_abandoned_users(db, inactivity_years=2, now=now)
        db.commit()

        assert [u["name"] for u in swept] == ["bob"]
        assert [u["name"] for u in list_users(db)] == ["alice", "carol", "dave"]
        participant = db.scalars(
            select(ChannelParticipant).where(
                ChannelParticipant.channel_id == channel_id,
                ChannelParticipant.user_id == users["bob"],
            )
        ).one()
        assert participant.is_active is False

        assert deactivate_abandoned_users(db, inactivity_years=2, now=now) == []


def test_reconnect_reactivates_a_swept_user(session_factory, users):
    with session_factory() as db:
        db.get(User, users["bob"]).last_login = utcnow() - timedelta(days=365 * 3)
        db.commit()
        deactivate_abandoned_users(db, inactivity_years=2)
        db.commit()

    user = resolve_or_create_user(session_factory, "bob")
    assert user.is_active is True
    assert user.deleted_at is None

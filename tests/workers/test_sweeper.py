# tests/workers/test_sweeper.py
from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from realtime_channels.db.time import utcnow
from realtime_channels.models import User
from realtime_channels.services.pubsub import USER_DEACTIVATED_EVENT
from realtime_channels.workers.sweeper import DeactivationSweeper


def _age(session_factory, user_id: str, days: int) -> None:
    with session_factory() as db:
        db.get(User, user_id).last_login = utcnow() - timedelta(days=days)
        db.commit()


def test_sweep_publishes_one_batch_event(session_factory, users, test_settings, mocker):
    pubsub = mocker.Mock()
    _age(session_factory, users["bob"], 365 * 3)
    _age(session_factory, users["carol"], 365 * 5)

    swept = DeactivationSweeper(session_factory, pubsub, test_settings).run_once()

    assert sorted(u["name"] for u in swept) == ["bob", "carol"]
    pubsub.publish.assert_called_once()
    event_name, event = pubsub.publish.call_args.args
    assert event_name == USER_DEACTIVATED_EVENT
    assert event["count"] == 2
    assert event["event"] == USER_DEACTIVATED_EVENT
    assert event["timestamp"]


def test_quiet_sweep_publishes_nothing(session_factory, users, test_settings, mocker):
    pubsub = mocker.Mock()
    assert DeactivationSweeper(session_factory, pubsub, test_settings).run_once() == []
    pubsub.publish.assert_not_called()


@pytest.mark.asyncio
async def test_background_loop_sweeps_and_stops(session_factory, users, test_settings, mocker):
    pubsub = mocker.Mock()
    _age(session_factory, users["dave"], 365 * 3)
    settings = test_settings.model_copy(
        update={"deactivation_enabled": True, "deactivation_interval_seconds": 3600}
    )
    sweeper = DeactivationSweeper(session_factory, pubsub, settings)

    await sweeper.start()
    for _ in range(100):
        if pubsub.publish.called:
            break
        await asyncio.sleep(0.02)
    await sweeper.stop()

    pubsub.publish.assert_called_once()
    assert pubsub.publish.call_args.args[1]["users"][0]["name"] == "dave"


@pytest.mark.asyncio
async def test_disabled_sweeper_does_not_start(session_factory, test_settings, mocker):
    sweeper = DeactivationSweeper(session_factory, mocker.Mock(), test_settings)
    await sweeper.start()
    await sweeper.stop()

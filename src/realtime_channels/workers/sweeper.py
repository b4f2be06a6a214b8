"""Periodic deactivation of abandoned accounts."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any

from sqlalchemy.orm import Session, sessionmaker

from realtime_channels.core.settings import Settings
from realtime_channels.db.time import isoformat_now
from realtime_channels.services.pubsub import USER_DEACTIVATED_EVENT, PubSub
from realtime_channels.services.users import deactivate_abandoned_users

logger = logging.getLogger(__name__)


class DeactivationSweeper:
    """Runs :func:`deactivate_abandoned_users` on a fixed interval.

    Each sweep that deactivates at least one account publishes a
    ``user:deactivated`` batch event.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        pubsub: PubSub,
        settings: Settings,
    ) -> None:
        self._session_factory = session_factory
        self._pubsub = pubsub
        self._settings = settings
        self._task: asyncio.Task[None] | None = None
        self._stopping = asyncio.Event()

    def run_once(self) -> list[dict[str, Any]]:
        """Sweep once and return the deactivated users."""
        with self._session_factory() as db:
            try:
                users = deactivate_abandoned_users(
                    db, inactivity_years=self._settings.user_inactivity_years
                )
                db.commit()
            except Exception:
                db.rollback()
                raise

        if users:
            self._pubsub.publish(
                USER_DEACTIVATED_EVENT,
                {
                    "event": USER_DEACTIVATED_EVENT,
                    "count": len(users),
                    "users": users,
                    "timestamp": isoformat_now(),
                },
            )
        return users

    async def start(self) -> None:
        """Start the background sweep loop."""
        if not self._settings.deactivation_enabled:
            return

        if self._task is None or self._task.done():
            self._stopping.clear()
            self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        """Stop the background sweep loop."""
        if self._task is None:
            return

        self._stopping.set()
        await self._task
        self._task = None

    async def _run(self) -> None:
        interval = max(1.0, float(self._settings.deactivation_interval_seconds))

        while not self._stopping.is_set():
            try:
                users = await asyncio.to_thread(self.run_once)
                if users:
                    logger.info("Deactivation sweep removed %d users", len(users))
            except Exception as exc:
                logger.error("Deactivation sweep failed: %s", exc, exc_info=True)

            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(self._stopping.wait(), timeout=interval)

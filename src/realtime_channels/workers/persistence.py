"""Durable write path for queued messages.

The worker consumes persistence jobs from either queue backend, writes the
message, its attachments and the unread increments in one transaction, and
republishes a ``persisted`` event through the pub/sub substrate so the
realtime layer can confirm delivery to the sender.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from datetime import datetime
from typing import Any

from sqlalchemy.orm import Session, sessionmaker

from realtime_channels.db.time import utcnow
from realtime_channels.errors import PayloadValidationError
from realtime_channels.services.channels import current_unread, increment_unread
from realtime_channels.services.messages import find_duplicate, message_from_record
from realtime_channels.services.pubsub import (
    GROUP_PERSISTED_EVENT,
    PERSISTED_EVENT,
    PubSub,
)
from realtime_channels.services.queue import PERSIST_GROUP_JOB

logger = logging.getLogger(__name__)


def _iso(value: datetime) -> str:
    return value.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _job_fields(job: Any) -> tuple[str | None, Mapping[str, Any]]:
    """Return ``(name, data)`` from a queue Job, a ``{name, data}`` mapping or a bare record."""
    if isinstance(job, Mapping):
        data = job.get("data")
        if isinstance(data, Mapping):
            return job.get("name"), data
        return job.get("name"), job
    return getattr(job, "name", None), getattr(job, "data", None) or {}


class PersistenceWorker:
    """Idempotent, transactional message writer.

    ``process_job`` is synchronous: the Celery task calls it directly and the
    in-memory queue runs it in a worker thread.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        pubsub: PubSub | None = None,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._pubsub = pubsub
        self._clock = clock

    def process_job(self, job: Any) -> dict[str, Any]:
        """Persist one queued message.

        Args:
            job: A queue job, a ``{"name", "data"}`` mapping or a message record.

        Returns:
            ``{"ok": True, "note": "duplicate"}`` when any dedup key already
            exists, otherwise ``{"ok": True, "created": ..., "unreadUpdates": ...}``.

        Raises:
            Exception: Any failure inside the transaction, after rolling back.
        """
        name, data = _job_fields(job)
        is_group = name == PERSIST_GROUP_JOB or bool(data.get("isGroup"))
        return self.persist(data, is_group=is_group)

    def persist(
        self, record: Mapping[str, Any], *, is_group: bool = False, publish: bool = True
    ) -> dict[str, Any]:
        if is_group:
            channel_id = record.get("groupId") or record.get("channelId")
        else:
            channel_id = record.get("channelId")
        if not channel_id:
            raise PayloadValidationError("Job data is missing channelId")

        persisted_at = self._clock()
        db = self._session_factory()
        try:
            duplicate = find_duplicate(db, record)
            if duplicate is not None:
                db.rollback()
                logger.info("Skipping duplicate message %s (stored as %s)", record.get("id"), duplicate)
                return {"ok": True, "note": "duplicate", "id": duplicate}

            message = message_from_record(
                record, channel_id=channel_id, is_group=is_group, persisted_at=persisted_at
            )
            db.add(message)
            db.flush()

            if record.get("unreadApplied"):
                unread_updates = current_unread(db, channel_id, record.get("senderId"))
            else:
                unread_updates = increment_unread(db, channel_id, record.get("senderId"))

            message_id = message.id
            db.commit()
        except Exception as exc:
            db.rollback()
            logger.error("Failed to persist message %s: %s", record.get("id"), exc)
            raise
        finally:
            db.close()

        event = {
            "id": message_id,
            "clientMessageId": record.get("clientMessageId"),
            "tempId": record.get("tempId"),
            "channelId": channel_id,
            "senderId": record.get("senderId"),
            "messageType": record.get("messageType") or "text",
            "unreadUpdates": unread_updates,
            "status": "persisted",
            "persistedAt": _iso(persisted_at),
        }
        if is_group:
            event["groupId"] = channel_id
        if publish:
            self._publish(GROUP_PERSISTED_EVENT if is_group else PERSISTED_EVENT, event)

        logger.debug("Persisted message %s in %s", message_id, channel_id)
        return {
            "ok": True,
            "created": {"id": message_id, "channelId": channel_id},
            "unreadUpdates": unread_updates,
            "persistedAt": event["persistedAt"],
        }

    def _publish(self, event: str, payload: dict[str, Any]) -> None:
        if self._pubsub is None:
            return
        try:
            self._pubsub.publish(event, payload)
        except Exception as exc:
            # The row is committed; a lost notification must not trigger a retry.
            logger.warning("Could not publish %s for %s: %s", event, payload.get("id"), exc)

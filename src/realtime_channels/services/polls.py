"""Polls posted into group conversations."""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.orm import Session

from realtime_channels.db.time import utcnow
from realtime_channels.errors import PayloadValidationError
from realtime_channels.models import Message, Poll, PollOption

logger = logging.getLogger(__name__)


def create_poll(
    db: Session,
    *,
    channel_id: str,
    question: str,
    options: list[str],
    created_by: str,
    sender_name: str | None = None,
) -> dict[str, Any]:
    """Create a poll, its options and the ``poll`` message announcing it.

    Everything is added to the caller's transaction.
    """
    question = (question or "").strip()
    cleaned = [str(o).strip() for o in options or () if str(o).strip()]
    if not question:
        raise PayloadValidationError("Poll question is required")
    if len(cleaned) < 2:
        raise PayloadValidationError("A poll needs at least two options")

    poll = Poll(question=question, created_by_id=created_by)
    poll.options = [PollOption(text=text) for text in cleaned]
    db.add(poll)
    db.flush()

    now = utcnow()
    db.add(
        Message(
            channel_id=channel_id,
            sender_id=created_by,
            sender_name=sender_name,
            message_type="poll",
            message=question,
            content={"text": question, "poll": True, "options": cleaned},
            meta_data={},
            is_group=True,
            poll_id=poll.id,
            created_at=now,
            persisted_at=now,
        )
    )
    db.flush()
    logger.debug("Poll %s created in %s", poll.id, channel_id)
    return {
        "pollId": poll.id,
        "question": poll.question,
        "options": [{"id": o.id, "text": o.text} for o in poll.options],
        "createdBy": created_by,
    }

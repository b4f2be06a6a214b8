"""Channel lookups, participation checks and unread counters.

Functions taking a ``Session`` never commit; the caller owns the transaction
so the same helpers serve both the realtime handlers and the persistence
worker's single-transaction write.
"""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from realtime_channels.models import Channel, ChannelParticipant, Message, User
from realtime_channels.models.channel import CHANNEL_DIRECT, ROLE_MEMBER
from realtime_channels.services.messages import serialize_message
from realtime_channels.utils.conversation import direct_channel_key

logger = logging.getLogger(__name__)


def _active_channel():
    return (Channel.is_active.is_(True), Channel.deleted_at.is_(None))


def active_user_criteria():
    return (User.is_active.is_(True), User.deleted_at.is_(None))


def active_participant_criteria():
    """Participation rows that have not been left or deactivated by the sweep."""
    return (ChannelParticipant.left_at.is_(None), ChannelParticipant.is_active.is_(True))


def serialize_channel(channel: Channel) -> dict[str, Any]:
    """Return the wire representation of a channel row."""
    return {
        "id": channel.id,
        "name": channel.name,
        "type": channel.type,
        "avatar": channel.avatar,
        "description": channel.description,
        "createdBy": channel.created_by,
        "createdAt": channel.created_at.isoformat() if channel.created_at else None,
        "updatedAt": channel.updated_at.isoformat() if channel.updated_at else None,
    }


def find_direct_channel(db: Session, key: str) -> Channel | None:
    """Return the active direct channel stored under ``key``."""
    return db.scalars(
        select(Channel)
        .where(Channel.direct_key == key, Channel.type == CHANNEL_DIRECT, *_active_channel())
        .limit(1)
    ).first()


def ensure_direct_channel(
    session_factory: sessionmaker[Session], user_a: str, user_b: str
) -> str:
    """Return the id of the direct channel between two users, creating it once.

    When both users create the channel at the same moment the unique
    ``direct_key`` rejects the second insert and the loser reads the winner's
    row. Lookup and insert run in separate transactions so the insert starts
    with a write.
    """
    key = direct_channel_key(user_a, user_b)

    with session_factory() as db:
        existing = find_direct_channel(db, key)
        if existing is not None:
            logger.debug("Existing direct channel found: %s", existing.id)
            return existing.id

    with session_factory() as db:
        try:
            channel = Channel(name=key, type=CHANNEL_DIRECT, direct_key=key, created_by=user_a)
            db.add(channel)
            db.flush()
            db.add_all([
                ChannelParticipant(channel_id=channel.id, user_id=user_a, role=ROLE_MEMBER),
                ChannelParticipant(channel_id=channel.id, user_id=user_b, role=ROLE_MEMBER),
            ])
            db.commit()
            logger.debug("Created direct channel %s for %s, %s", channel.id, user_a, user_b)
            return channel.id
        except IntegrityError:
            db.rollback()
            logger.debug("Direct channel %s created concurrently; reading winner", key)

    with session_factory() as db:
        existing = db.scalars(select(Channel).where(Channel.direct_key == key)).first()
        if existing is None:
            raise LookupError(f"Direct channel {key} vanished after conflict")
        return existing.id


def is_participant(db: Session, channel_id: str, user_id: str) -> bool:
    """Return True when ``user_id`` is an active participant of an active channel."""
    row = db.execute(
        select(ChannelParticipant.id)
        .join(User, ChannelParticipant.user_id == User.id)
        .join(Channel, ChannelParticipant.channel_id == Channel.id)
        .where(
            ChannelParticipant.channel_id == channel_id,
            ChannelParticipant.user_id == user_id,
            *active_participant_criteria(),
            *active_user_criteria(),
            *_active_channel(),
        )
        .limit(1)
    ).first()
    return row is not None


def get_participants(db: Session, channel_id: str) -> list[dict[str, Any]]:
    """Return active participants of a channel as ``{userId, name}``."""
    rows = db.execute(
        select(ChannelParticipant.user_id, User.name, User.avatar)
        .join(User, ChannelParticipant.user_id == User.id)
        .join(Channel, ChannelParticipant.channel_id == Channel.id)
        .where(
            ChannelParticipant.channel_id == channel_id,
            *active_participant_criteria(),
            *active_user_criteria(),
            *_active_channel(),
        )
        .order_by(ChannelParticipant.joined_at)
    ).all()
    return [{"userId": r.user_id, "name": r.name, "userName": r.name, "userAvatar": r.avatar}
            for r in rows]


def get_channels_for_user(db: Session, user_id: str, channel_type: str | None = None) -> list[Channel]:
    """Return every active channel the user currently participates in."""
    query = (
        select(Channel)
        .join(ChannelParticipant, ChannelParticipant.channel_id == Channel.id)
        .join(User, ChannelParticipant.user_id == User.id)
        .where(
            ChannelParticipant.user_id == user_id,
            *active_participant_criteria(),
            *active_user_criteria(),
            *_active_channel(),
        )
        .order_by(Channel.name)
    )
    if channel_type is not None:
        query = query.where(Channel.type == channel_type)
    return list(db.scalars(query).all())


def load_user_direct_channels(db: Session, user_id: str) -> list[dict[str, Any]]:
    """Return the user's direct channels with participants and full message lists."""
    channels = []
    for channel in get_channels_for_user(db, user_id, CHANNEL_DIRECT):
        data = serialize_channel(channel)
        data["participants"] = get_participants(db, channel.id)
        data["messages"] = channel_messages(db, channel.id)
        channels.append(data)
    return channels


def list_channels(db: Session) -> list[dict[str, Any]]:
    """Return every active channel, newest first."""
    rows = db.scalars(
        select(Channel).where(*_active_channel()).order_by(Channel.created_at.desc())
    ).all()
    return [serialize_channel(c) for c in rows]


def channel_messages(db: Session, channel_id: str) -> list[dict[str, Any]]:
    """Return all durable messages of a channel, oldest first, with attachments."""
    rows = db.scalars(
        select(Message)
        .where(Message.channel_id == channel_id)
        .order_by(Message.created_at.asc())
    ).all()
    return [serialize_message(m) for m in rows]


def message_history(db: Session, channel_id: str, limit: int) -> list[dict[str, Any]]:
    """Return the newest ``limit`` durable messages of a channel, oldest first."""
    rows = db.scalars(
        select(Message)
        .where(Message.channel_id == channel_id)
        .order_by(Message.created_at.desc())
        .limit(limit)
    ).all()
    return [serialize_message(m) for m in reversed(rows)]


def increment_unread(db: Session, channel_id: str, sender_id: str | None) -> list[dict[str, Any]]:
    """Add one to every other participant's unread counter.

    The increment happens in place in the database, so concurrent senders
    cannot lose updates. Returns ``{userId, channelId, unreadCount}`` per
    affected participant.
    """
    others = (
        ChannelParticipant.channel_id == channel_id,
        ChannelParticipant.user_id != sender_id,
        *active_participant_criteria(),
    )
    db.execute(
        update(ChannelParticipant)
        .where(*others)
        .values(unread_count=ChannelParticipant.unread_count + 1)
        .execution_options(synchronize_session=False)
    )
    return current_unread(db, channel_id, sender_id)


def current_unread(db: Session, channel_id: str, sender_id: str | None) -> list[dict[str, Any]]:
    """Return the unread counters of every participant other than ``sender_id``."""
    rows = db.execute(
        select(ChannelParticipant.user_id, ChannelParticipant.unread_count).where(
            ChannelParticipant.channel_id == channel_id,
            ChannelParticipant.user_id != sender_id,
            *active_participant_criteria(),
        )
    ).all()
    return [
        {"userId": r.user_id, "channelId": channel_id, "unreadCount": r.unread_count}
        for r in rows
    ]


def mark_as_read(db: Session, channel_id: str, user_id: str) -> bool:
    """Reset the caller's unread counter to zero; False when no row matched."""
    result = db.execute(
        update(ChannelParticipant)
        .where(
            ChannelParticipant.channel_id == channel_id,
            ChannelParticipant.user_id == user_id,
        )
        .values(unread_count=0)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        logger.warning("No participant record for user %s in channel %s", user_id, channel_id)
        return False
    return True


def unread_count(db: Session, channel_id: str, user_id: str) -> int | None:
    """Return one participant's unread counter, or None if not a participant."""
    return db.scalar(
        select(ChannelParticipant.unread_count).where(
            ChannelParticipant.channel_id == channel_id,
            ChannelParticipant.user_id == user_id,
        )
    )

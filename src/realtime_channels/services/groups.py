# src/realtime_channels/services/groups.py
"""Group channel management: creation, membership and roles."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from realtime_channels.db.time import utcnow
from realtime_channels.errors import (
    NotAMemberError,
    PayloadValidationError,
    PermissionDeniedError,
)
from realtime_channels.models import Channel, ChannelParticipant, User
from realtime_channels.models.channel import (
    CHANNEL_GROUP,
    ROLE_ADMIN,
    ROLE_MEMBER,
    ROLE_OWNER,
)
from realtime_channels.services.channels import active_participant_criteria, active_user_criteria, serialize_channel

logger = logging.getLogger(__name__)


def _group_query(group_id: str):
    return select(Channel).where(
        Channel.id == group_id,
        Channel.type == CHANNEL_GROUP,
        Channel.is_active.is_(True),
        Channel.deleted_at.is_(None),
    )


def serialize_group(group: Channel) -> dict[str, Any]:
    data = serialize_channel(group)
    data["isGroup"] = True
    return data


def create_group(
    db: Session,
    *,
    name: str,
    created_by: str,
    member_ids: Iterable[str],
    description: str | None = None,
    avatar: str | None = None,
    min_members: int = 3,
) -> dict[str, Any]:
    """Create a group owned by ``created_by`` with the given members.

    The creator counts toward ``min_members``; duplicate ids and the
    creator's own id in ``member_ids`` do not.
    """
    if not name or not str(name).strip():
        raise PayloadValidationError("Group name is required")

    others = list(dict.fromkeys(str(m) for m in member_ids if m and str(m) != str(created_by)))
    if len(others) + 1 < min_members:
        raise PayloadValidationError(f"At least {min_members} members required to create a group")

    group = Channel(
        name=str(name).strip(),
        type=CHANNEL_GROUP,
        description=description,
        avatar=avatar,
        created_by=created_by,
    )
    db.add(group)
    db.flush()

    db.add(ChannelParticipant(channel_id=group.id, user_id=created_by, role=ROLE_OWNER))
    for member_id in others:
        db.add(ChannelParticipant(channel_id=group.id, user_id=member_id, role=ROLE_MEMBER))
    db.flush()

    logger.info("Group %s created by %s with %d members", group.id, created_by, len(others) + 1)
    return serialize_group(group)


def get_group(db: Session, group_id: str) -> Channel | None:
    """Return an active, non-deleted group."""
    return db.scalars(_group_query(group_id)).first()


def _participant(db: Session, group_id: str, user_id: str) -> ChannelParticipant | None:
    return db.scalars(
        select(ChannelParticipant)
        .join(User, ChannelParticipant.user_id == User.id)
        .where(
            ChannelParticipant.channel_id == group_id,
            ChannelParticipant.user_id == user_id,
            *active_participant_criteria(),
            *active_user_criteria(),
        )
    ).first()


def member_role(db: Session, group_id: str, user_id: str) -> str | None:
    """Return the user's role in an active group, or None for non-members."""
    if get_group(db, group_id) is None:
        return None
    participant = _participant(db, group_id, user_id)
    return participant.role if participant else None


def is_member(db: Session, group_id: str, user_id: str) -> bool:
    return member_role(db, group_id, user_id) is not None


def members_by_group(db: Session, group_id: str) -> list[dict[str, Any]]:
    """Return ``{userId, name, role}`` for every current member of a group."""
    rows = db.execute(
        select(ChannelParticipant.user_id, ChannelParticipant.role, User.name, User.avatar)
        .join(User, ChannelParticipant.user_id == User.id)
        .where(
            ChannelParticipant.channel_id == group_id,
            *active_participant_criteria(),
            *active_user_criteria(),
        )
        .order_by(ChannelParticipant.joined_at)
    ).all()
    return [
        {"userId": r.user_id, "name": r.name, "role": r.role, "avatar": r.avatar}
        for r in rows
    ]


def groups_by_user(db: Session, user_id: str) -> list[Channel]:
    """Return every active group the user belongs to."""
    return list(
        db.scalars(
            select(Channel)
            .join(ChannelParticipant, ChannelParticipant.channel_id == Channel.id)
            .where(
                ChannelParticipant.user_id == user_id,
                *active_participant_criteria(),
                Channel.type == CHANNEL_GROUP,
                Channel.is_active.is_(True),
                Channel.deleted_at.is_(None),
            )
            .order_by(Channel.created_at)
        ).all()
    )


def add_member(db: Session, group_id: str, user_id: str, role: str = ROLE_MEMBER) -> None:
    """Add ``user_id`` to a group, re-activating a previous membership."""
    existing = db.scalars(
        select(ChannelParticipant).where(
            ChannelParticipant.channel_id == group_id,
            ChannelParticipant.user_id == user_id,
        )
    ).first()
    if existing is not None:
        existing.left_at = None
        existing.is_active = True
        existing.role = role
    else:
        db.add(ChannelParticipant(channel_id=group_id, user_id=user_id, role=role))
    db.flush()


def remove_member(db: Session, group_id: str, user_id: str) -> None:
    """Mark the user as having left the group."""
    participant = _participant(db, group_id, user_id)
    if participant is None:
        raise NotAMemberError("Not a member of this group")
    participant.left_at = utcnow()
    participant.is_active = False
    db.flush()


def assign_admin_role(db: Session, group_id: str, assigned_by: str, user_id: str) -> str:
    """Promote ``user_id`` to admin; only owners and admins may do so."""
    role = member_role(db, group_id, assigned_by)
    if role is None:
        raise NotAMemberError("Not a member of this group")
    if role not in (ROLE_OWNER, ROLE_ADMIN):
        raise PermissionDeniedError("Only owners and admins can assign admins")

    target = _participant(db, group_id, user_id)
    if target is None:
        raise NotAMemberError("Target user is not a member of this group")
    if target.role != ROLE_OWNER:
        target.role = ROLE_ADMIN
    db.flush()
    return target.role


def soft_delete_group(db: Session, group_id: str, user_id: str) -> None:
    """Soft-delete a group. Only its owner may do this."""
    role = member_role(db, group_id, user_id)
    if role is None:
        raise NotAMemberError("Not a member of this group")
    if role != ROLE_OWNER:
        raise PermissionDeniedError("Only the group owner can delete the group")

    db.execute(
        update(Channel)
        .where(Channel.id == group_id)
        .values(deleted_at=utcnow(), is_active=False)
        .execution_options(synchronize_session=False)
    )
    logger.info("Group %s soft-deleted by %s", group_id, user_id)
